"""Per-ledger token allow-list.

Each ledger owns one TokenRegistry inside its persisted store. The registry
only holds state and enforces configuration rules; owner checks and event
emission live in shadowswap.ledger.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, List, Optional, Tuple

from shadowswap.hardening import ErrorCode, ValidationFailure, StateConflict, Validators

MAX_DECIMALS = 77


@dataclass
class TokenConfig:
    supported: bool
    min_amount: int
    max_amount: int
    decimals: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _check_bounds(min_amount: int, max_amount: int, decimals: int) -> None:
    for name, value in (("min_amount", min_amount), ("max_amount", max_amount)):
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationFailure(ErrorCode.INVALID_TOKEN_CONFIG, f"{name} must be a non-negative int")
    if min_amount == 0 or max_amount == 0 or min_amount > max_amount:
        raise ValidationFailure(
            ErrorCode.INVALID_TOKEN_CONFIG,
            "require 0 < min_amount <= max_amount",
            min_amount=min_amount,
            max_amount=max_amount,
        )
    if isinstance(decimals, bool) or not isinstance(decimals, int) or not 0 <= decimals <= MAX_DECIMALS:
        raise ValidationFailure(ErrorCode.INVALID_TOKEN_CONFIG, f"decimals must be within 0..{MAX_DECIMALS}")


class TokenRegistry:
    """
    Token configs keyed by address plus an enumerable list of supported tokens.

    Removal marks the config unsupported and compacts the list with
    swap-with-last-and-pop, so list order is not stable across removals.
    """

    def __init__(self):
        self._configs: Dict[str, TokenConfig] = {}
        self._tokens: List[str] = []
        self._positions: Dict[str, int] = {}

    def add(self, token: str, min_amount: int, max_amount: int, decimals: int) -> TokenConfig:
        token = Validators.address(token, "token", code=ErrorCode.INVALID_TOKEN)
        if self.is_supported(token):
            raise StateConflict(ErrorCode.ALREADY_SUPPORTED, "token already supported", token=token)
        _check_bounds(min_amount, max_amount, decimals)

        config = TokenConfig(True, min_amount, max_amount, decimals)
        self._configs[token] = config
        self._positions[token] = len(self._tokens)
        self._tokens.append(token)
        return config

    def update(self, token: str, min_amount: int, max_amount: int, decimals: int) -> TokenConfig:
        token = Validators.address(token, "token", code=ErrorCode.INVALID_TOKEN)
        if not self.is_supported(token):
            raise ValidationFailure(ErrorCode.TOKEN_NOT_SUPPORTED, "token not supported", token=token)
        _check_bounds(min_amount, max_amount, decimals)

        config = TokenConfig(True, min_amount, max_amount, decimals)
        self._configs[token] = config
        return config

    def remove(self, token: str) -> None:
        token = Validators.address(token, "token", code=ErrorCode.INVALID_TOKEN)
        if not self.is_supported(token):
            raise ValidationFailure(ErrorCode.TOKEN_NOT_SUPPORTED, "token not supported", token=token)

        self._configs[token].supported = False
        pos = self._positions.pop(token)
        last = self._tokens.pop()
        if last != token:
            self._tokens[pos] = last
            self._positions[last] = pos

    def is_supported(self, token: str) -> bool:
        config = self._configs.get(token.strip().lower()) if isinstance(token, str) else None
        return bool(config and config.supported)

    def get(self, token: str) -> Optional[TokenConfig]:
        """Config for `token`, including unsupported (removed) ones."""
        if not isinstance(token, str):
            return None
        return self._configs.get(token.strip().lower())

    def snapshot(self) -> Tuple[Dict[str, TokenConfig], List[str], Dict[str, int]]:
        """Copy of the registry contents, bounded by the number of tokens ever added."""
        return {t: replace(c) for t, c in self._configs.items()}, list(self._tokens), dict(self._positions)

    def restore(self, saved: Tuple[Dict[str, TokenConfig], List[str], Dict[str, int]]) -> None:
        configs, tokens, positions = saved
        self._configs = {t: replace(c) for t, c in configs.items()}
        self._tokens = list(tokens)
        self._positions = dict(positions)

    @property
    def tokens(self) -> List[str]:
        """Supported tokens in list order."""
        return list(self._tokens)

    def check_amount(self, token: str, amount: int) -> str:
        """Validate a token/amount pair; returns the normalized token address."""
        token = Validators.address(token, "token", code=ErrorCode.INVALID_TOKEN)
        amount = Validators.amount(amount)
        config = self._configs.get(token)
        if config is None or not config.supported:
            raise ValidationFailure(ErrorCode.TOKEN_NOT_SUPPORTED, "token not supported", token=token)
        if amount < config.min_amount or amount > config.max_amount:
            raise ValidationFailure(
                ErrorCode.AMOUNT_OUT_OF_BOUNDS,
                f"amount must be within {config.min_amount}..{config.max_amount}",
                token=token,
                amount=amount,
            )
        return token

    def to_dict(self) -> Dict[str, Any]:
        return {token: self._configs[token].to_dict() for token in self._tokens}
