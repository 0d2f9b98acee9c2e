"""
SHADOWSWAP Observability

Structured logging with correlation IDs, operation timing and a
hash-chained audit trail for privileged ledger operations.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │          Ledgers / Relayer / CLI                         │
    │  logger.info("msg", intent_id=x)   audit.log(...)       │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                 ShadowswapLogger                         │
    │  Context propagation, correlation IDs, structured data  │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │       "shadowswap" stdlib logger handlers                │
    │  StructuredHandler (json) │ StreamHandler (text)         │
    └─────────────────────────────────────────────────────────┘

Logger names follow ``shadowswap.<component>.<name>``; every component
logger propagates to the package logger, which owns the single handler.
"""

from __future__ import annotations

import contextlib
import contextvars
import functools
import hashlib
import json
import logging
import sys
import threading
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

ROOT_LOGGER = "shadowswap"

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


class Component(Enum):
    """System components for logger naming."""
    SOURCE = "source"
    DESTINATION = "destination"
    REGISTRY = "registry"
    RELAYER = "relayer"
    CONFIG = "config"
    CLI = "cli"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    component: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class StructuredHandler(logging.Handler):
    """Logging handler that outputs one JSON object per line."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=getattr(record, "correlation_id", "") or correlation_id_var.get(),
                component=getattr(record, "component", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            stream = self.stream or sys.stderr
            stream.write(event.to_json() + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)


def configure_logging(
    level: Optional[str] = None,
    fmt: Optional[str] = None,
    stream: Any = None,
) -> logging.Logger:
    """(Re)install the package handler from arguments or ObservabilityConfig."""
    from shadowswap.config import get_config

    obs = get_config().observability
    level = level or obs.log_level.get()
    fmt = fmt or obs.log_format.get()

    root = logging.getLogger(ROOT_LOGGER)
    for handler in list(root.handlers):
        if getattr(handler, "_shadowswap", False):
            root.removeHandler(handler)

    if fmt == "json":
        handler: logging.Handler = StructuredHandler(stream)
    else:
        handler = logging.StreamHandler(stream)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler._shadowswap = True  # type: ignore[attr-defined]

    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper()))
    return root


def _ensure_configured() -> None:
    root = logging.getLogger(ROOT_LOGGER)
    if not any(getattr(h, "_shadowswap", False) for h in root.handlers):
        configure_logging()


class ShadowswapLogger:
    """
    Structured logger for SHADOWSWAP components.

    Includes the correlation ID and component in every log event.
    Keyword arguments other than the reserved ones become event context.
    """

    def __init__(self, name: str, component: Component):
        self.name = name
        self.component = component
        self._logger = logging.getLogger(f"{ROOT_LOGGER}.{component.value}.{name}")
        _ensure_configured()

    @property
    def stdlib(self) -> logging.Logger:
        return self._logger

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        extra = {
            "component": self.component.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "correlation_id": correlation_id_var.get(),
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.DEBUG if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=round(duration_ms, 3),
            **context,
        )


def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    """Get the current correlation ID, creating one if unset."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


@contextlib.contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation ID for the duration of a block."""
    cid = correlation_id or generate_correlation_id()
    token = correlation_id_var.set(cid)
    try:
        yield cid
    finally:
        correlation_id_var.reset(token)


_loggers: Dict[Tuple[str, Component], ShadowswapLogger] = {}
_loggers_lock = threading.Lock()


def get_logger(name: str, component: Component) -> ShadowswapLogger:
    """Get a logger for a SHADOWSWAP component."""
    key = (name, component)
    with _loggers_lock:
        if key not in _loggers:
            _loggers[key] = ShadowswapLogger(name, component)
        return _loggers[key]


T = TypeVar("T")


def timed_operation(
    logger: ShadowswapLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations.

    Failures are logged with the BridgeError code when one is raised.
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            error_code = ""
            try:
                return func(*args, **kwargs)
            except Exception as exc:
                code = getattr(exc, "code", None)
                error_code = getattr(code, "value", "") or type(exc).__name__
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                if error_code:
                    logger.operation(operation_name, duration_ms, False, failure=error_code)
                else:
                    logger.operation(operation_name, duration_ms)
        return wrapper
    return decorator


# =============================================================================
# AUDIT TRAIL
# =============================================================================

AUDIT_GENESIS = "genesis"


@dataclass
class AuditEvent:
    """Audit record for a privileged operation."""
    event_id: str
    timestamp: str
    actor: str
    action: str
    resource_type: str
    resource_id: str
    outcome: str  # success, failure, denied
    correlation_id: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AuditLogger:
    """
    Tamper-evident audit trail with hash chaining.

    Each entry hash covers the canonical JSON of the event plus the
    previous entry hash; ``verify_chain`` recomputes the whole chain.
    """

    def __init__(self, logger: ShadowswapLogger):
        self._logger = logger
        self._last_hash: str = AUDIT_GENESIS
        self._entries: List[Tuple[AuditEvent, str]] = []
        self._lock = threading.Lock()

    @staticmethod
    def _compute_hash(event: AuditEvent, previous: str) -> str:
        data = json.dumps(event.to_dict(), sort_keys=True, default=str) + previous
        return hashlib.sha256(data.encode()).hexdigest()

    @property
    def head(self) -> str:
        return self._last_hash

    @property
    def entries(self) -> List[AuditEvent]:
        with self._lock:
            return [event for event, _ in self._entries]

    def log(
        self,
        actor: str,
        action: str,
        resource_type: str,
        resource_id: str,
        outcome: str,
        **details: Any,
    ) -> AuditEvent:
        """Append an audit event and emit it on the component logger."""
        event = AuditEvent(
            event_id=uuid.uuid4().hex,
            timestamp=datetime.now(timezone.utc).isoformat(),
            actor=actor,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            outcome=outcome,
            correlation_id=get_correlation_id(),
            details=details,
        )

        with self._lock:
            event_hash = self._compute_hash(event, self._last_hash)
            self._last_hash = event_hash
            self._entries.append((event, event_hash))

        self._logger.info(
            f"AUDIT: {action} on {resource_type}/{resource_id}",
            operation="audit",
            outcome=outcome,
            actor=actor,
            event_hash=event_hash,
        )
        return event

    def verify_chain(self) -> bool:
        """Recompute every hash from genesis."""
        with self._lock:
            previous = AUDIT_GENESIS
            for event, recorded in self._entries:
                expected = self._compute_hash(event, previous)
                if expected != recorded:
                    return False
                previous = recorded
            return previous == self._last_hash
