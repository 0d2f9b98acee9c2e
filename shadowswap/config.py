"""
SHADOWSWAP Configuration System

Unified configuration management with YAML files, environment variables,
schema validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (SHADOWSWAP_*)
    2. Runtime overrides (ConfigManager.set)
    3. Config files passed to ConfigManager.load_from_file
    4. Project config file (./shadowswap.yaml)
    5. Default values

Config files are validated against CONFIG_SCHEMA (JSON Schema 2020-12)
before any value is applied, so a bad file never half-applies.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml
from jsonschema import Draft202012Validator

T = TypeVar("T")

HOUR = 3600
DAY = 24 * HOUR


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[Optional[T], T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value!r}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            try:
                return int(value)  # type: ignore
            except ValueError:
                raise ConfigValidationError(f"{self.env_var}: expected integer, got {value!r}") from None
        return value  # type: ignore

    def on_change(self, callback: Callable[[Optional[T], T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


def _positive(x: Any) -> bool:
    return isinstance(x, int) and not isinstance(x, bool) and x > 0


def _non_negative(x: Any) -> bool:
    return isinstance(x, int) and not isinstance(x, bool) and x >= 0


@dataclass
class ProtocolConfig:
    """Timing and fee parameters shared by both ledgers."""
    default_intent_timeout: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=HOUR,
        env_var="SHADOWSWAP_DEFAULT_INTENT_TIMEOUT",
        description="Deadline offset applied when an intent is created without one (seconds)",
        validator=_positive,
    ))
    max_intent_timeout: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=7 * DAY,
        env_var="SHADOWSWAP_MAX_INTENT_TIMEOUT",
        description="Latest allowed deadline, relative to creation time (seconds)",
        validator=_positive,
    ))
    manual_refund_buffer: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=DAY,
        env_var="SHADOWSWAP_MANUAL_REFUND_BUFFER",
        description="Grace period after the deadline before a depositor may self-refund (seconds)",
        validator=_non_negative,
    ))
    emergency_delay: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=7 * DAY,
        env_var="SHADOWSWAP_EMERGENCY_DELAY",
        description="Time a ledger must stay paused before emergency withdrawal (seconds)",
        validator=_non_negative,
    ))
    fee_bps: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=10,
        env_var="SHADOWSWAP_FEE_BPS",
        description="Protocol fee in basis points (max 1000)",
        validator=lambda x: _non_negative(x) and x <= 1000,
    ))


@dataclass
class RelayerConfig:
    """Configuration for the off-ledger relayer."""
    sync_interval_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=30,
        env_var="SHADOWSWAP_RELAYER_SYNC_INTERVAL",
        description="Interval between relayer passes (seconds)",
        validator=_positive,
    ))
    batch_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=50,
        env_var="SHADOWSWAP_RELAYER_BATCH_SIZE",
        description="Maximum registrations, settlements or refunds per pass",
        validator=_positive,
    ))
    skip_unchanged_roots: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="SHADOWSWAP_RELAYER_SKIP_UNCHANGED",
        description="Skip root sync when the root equals the last synced root",
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="SHADOWSWAP_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="SHADOWSWAP_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))
    audit_enabled: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="SHADOWSWAP_AUDIT_ENABLED",
        description="Record owner/relayer operations in the audit log",
    ))


@dataclass
class ShadowswapConfig:
    """
    Root configuration for SHADOWSWAP.

    Aggregates all component configurations and provides
    loading/saving functionality.
    """
    protocol: ProtocolConfig = field(default_factory=ProtocolConfig)
    relayer: RelayerConfig = field(default_factory=RelayerConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False)


# =============================================================================
# FILE SCHEMA
# =============================================================================

_INT = {"type": "integer"}

CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "shadowswap configuration",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "protocol": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "default_intent_timeout": {**_INT, "minimum": 1},
                "max_intent_timeout": {**_INT, "minimum": 1},
                "manual_refund_buffer": {**_INT, "minimum": 0},
                "emergency_delay": {**_INT, "minimum": 0},
                "fee_bps": {**_INT, "minimum": 0, "maximum": 1000},
            },
        },
        "relayer": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "sync_interval_seconds": {**_INT, "minimum": 1},
                "batch_size": {**_INT, "minimum": 1},
                "skip_unchanged_roots": {"type": "boolean"},
            },
        },
        "observability": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "log_level": {"enum": ["debug", "info", "warning", "error", "critical"]},
                "log_format": {"enum": ["json", "text"]},
                "audit_enabled": {"type": "boolean"},
            },
        },
    },
}


def validate_document(data: Any) -> List[str]:
    """Validate a config document against CONFIG_SCHEMA; returns error strings."""
    validator = Draft202012Validator(CONFIG_SCHEMA)
    errors = []
    for e in sorted(validator.iter_errors(data), key=str):
        location = ".".join(str(p) for p in e.absolute_path) or "<root>"
        errors.append(f"{location}: {e.message}")
    return errors


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = ShadowswapConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[ShadowswapConfig], None]] = []
        self._initialized = True

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton so the next ConfigManager() starts from defaults."""
        with cls._lock:
            cls._instance = None

    @property
    def config(self) -> ShadowswapConfig:
        """Get the current configuration."""
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file.

        Raises ConfigError if the file is missing and ConfigValidationError
        if it does not match CONFIG_SCHEMA.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f)

        if data is None:
            return

        errors = validate_document(data)
        if errors:
            raise ConfigValidationError(f"{path}: " + "; ".join(errors))

        self._apply_dict(data)
        if path not in self._config_paths:
            self._config_paths.append(path)

    def load_defaults(self) -> None:
        """Load ./shadowswap.yaml if it exists."""
        path = Path("shadowswap.yaml")
        if path.exists():
            self.load_from_file(path)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any]) -> None:
            for key, value in values.items():
                if hasattr(config_obj, key):
                    attr = getattr(config_obj, key)
                    if isinstance(attr, ConfigValue):
                        attr.set(value)
                    elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                        apply_to_config(attr, value)

        apply_to_config(self._config, data)

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, "__dataclass_fields__") or part not in obj.__dataclass_fields__:
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("protocol.fee_bps", 25)
        """
        attr = self._resolve(path)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("protocol.default_intent_timeout")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def watch(self, callback: Callable[[ShadowswapConfig], None]) -> None:
        """Register a callback for configuration changes."""
        self._watchers.append(callback)

    def reload(self) -> None:
        """Reload configuration from all loaded files."""
        for path in self._config_paths:
            if path.exists():
                self.load_from_file(path)

        for watcher in self._watchers:
            watcher(self._config)

    def validate(self) -> List[str]:
        """
        Validate all configuration values, including cross-field rules.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value!r}")
                except ConfigError as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)

        if not errors:
            protocol = self._config.protocol
            if protocol.default_intent_timeout.get() > protocol.max_intent_timeout.get():
                errors.append("protocol.default_intent_timeout: exceeds protocol.max_intent_timeout")
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = str(obj.default)
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def get_config() -> ShadowswapConfig:
    """Get the current SHADOWSWAP configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
