"""
SHADOWSWAP Validation and Hardening Module

Error taxonomy, input validators and invariant checks shared by both ledgers
and the relayer.

Error categories:
    ValidationFailure      Malformed input. Resubmit with corrected input.
    StateConflict          Stale view or lost race. Re-read state first.
    AuthorizationFailure   Wrong caller, bad signature or bad proof.
    CustodyFailure         Balance or transfer problem at payout time.

Every failure carries a discrete ErrorCode so relayer and solver processes
can branch on it without parsing messages.

Security Model:
    - All inputs are untrusted until validated
    - All cryptographic comparisons are constant-time
    - All state mutations are atomic (see shadowswap.ledger.atomic)
"""

from __future__ import annotations

import hmac
import re
from enum import Enum
from typing import Any, Dict


# =============================================================================
# ERROR CODES
# =============================================================================

class ErrorCategory(Enum):
    """Coarse classification used for recovery decisions."""
    VALIDATION = "validation"
    STATE_CONFLICT = "state_conflict"
    AUTHORIZATION = "authorization"
    CUSTODY = "custody"


class ErrorCode(Enum):
    """Named failure conditions."""
    # Validation
    INVALID_TOKEN = "InvalidToken"
    INVALID_TOKEN_CONFIG = "InvalidTokenConfig"
    TOKEN_NOT_SUPPORTED = "TokenNotSupported"
    AMOUNT_OUT_OF_BOUNDS = "AmountOutOfBounds"
    INVALID_DEADLINE = "InvalidDeadline"
    INVALID_ADDRESS = "InvalidAddress"
    INVALID_AMOUNT = "InvalidAmount"
    INVALID_CHAIN = "InvalidChain"
    INVALID_FEE_CONFIG = "InvalidFeeConfig"
    INVALID_BYTES32 = "InvalidBytes32"

    # State conflict
    ALREADY_SUPPORTED = "AlreadySupported"
    COMMITMENT_USED = "CommitmentUsed"
    INTENT_EXISTS = "IntentExists"
    ALREADY_PROCESSED = "AlreadyProcessed"
    ALREADY_FILLED = "AlreadyFilled"
    ALREADY_CLAIMED = "AlreadyClaimed"
    ALREADY_REGISTERED = "AlreadyRegistered"
    NULLIFIER_USED = "NullifierUsed"
    NOT_REGISTERED = "NotRegistered"
    NOT_FILLED = "NotFilled"
    INTENT_NOT_FOUND = "IntentNotFound"
    INTENT_EXPIRED = "IntentExpired"
    DEADLINE_NOT_REACHED = "DeadlineNotReached"
    REFUND_BUFFER_ACTIVE = "RefundBufferActive"
    PARAMS_MISMATCH = "ParamsMismatch"
    PAUSED = "Paused"
    NOT_PAUSED = "NotPaused"
    EMERGENCY_DELAY_ACTIVE = "EmergencyDelayActive"
    ROOT_NOT_SYNCED = "RootNotSynced"

    # Authorization
    NOT_OWNER = "NotOwner"
    NOT_RELAYER = "NotRelayer"
    NOT_REFUND_RECIPIENT = "NotRefundRecipient"
    INVALID_SIGNATURE = "InvalidSignature"
    INVALID_PROOF = "InvalidProof"
    INVALID_COMMITMENT = "InvalidCommitment"
    INVALID_SEALED_SECRET = "InvalidSealedSecret"

    # Custody
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    TRANSFER_FAILED = "TransferFailed"


# =============================================================================
# EXCEPTION TYPES
# =============================================================================

class BridgeError(Exception):
    """Base exception for every protocol failure."""

    category: ErrorCategory = ErrorCategory.VALIDATION

    def __init__(self, code: ErrorCode, message: str = "", **context: Any):
        self.code = code
        self.message = message or code.value
        self.context = context
        super().__init__(f"{code.value}: {self.message}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "category": self.category.value,
            "message": self.message,
            "context": {k: str(v) for k, v in self.context.items()},
        }


class ValidationFailure(BridgeError):
    """Input rejected before touching state."""
    category = ErrorCategory.VALIDATION


class StateConflict(BridgeError):
    """Operation conflicts with the current ledger state."""
    category = ErrorCategory.STATE_CONFLICT


class AuthorizationFailure(BridgeError):
    """Caller, signature or proof not accepted."""
    category = ErrorCategory.AUTHORIZATION


class CustodyFailure(BridgeError):
    """Escrow could not honour a payout."""
    category = ErrorCategory.CUSTODY


class InvariantViolation(Exception):
    """State machine invariant violated. Indicates a bug, never user error."""
    pass


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

ZERO_ADDRESS = "0x" + "0" * 40
ZERO_BYTES32 = "0x" + "0" * 64


class Validators:
    """Collection of input validators.

    Validators return the normalized (lowercase) value or raise
    ValidationFailure with the matching ErrorCode.
    """

    ADDRESS_PATTERN = re.compile(r'^0x[a-f0-9]{40}$')
    BYTES32_PATTERN = re.compile(r'^0x[a-f0-9]{64}$')

    MAX_UINT256 = (1 << 256) - 1
    MAX_CHAIN_ID = (1 << 32) - 1

    @classmethod
    def address(
        cls,
        value: Any,
        field_name: str = "address",
        code: ErrorCode = ErrorCode.INVALID_ADDRESS,
        allow_zero: bool = False,
    ) -> str:
        """Validate an address (0x + 40 hex). The zero address is the null sentinel."""
        if not isinstance(value, str):
            raise ValidationFailure(code, f"{field_name}: expected string, got {type(value).__name__}")
        lower = value.strip().lower()
        if not cls.ADDRESS_PATTERN.match(lower):
            raise ValidationFailure(code, f"{field_name}: must be 0x + 40 hex chars", value=value)
        if lower == ZERO_ADDRESS and not allow_zero:
            raise ValidationFailure(code, f"{field_name}: null address not allowed")
        return lower

    @classmethod
    def bytes32(cls, value: Any, field_name: str = "value") -> str:
        """Validate a 32-byte value encoded as 0x + 64 hex chars."""
        if not isinstance(value, str):
            raise ValidationFailure(
                ErrorCode.INVALID_BYTES32,
                f"{field_name}: expected string, got {type(value).__name__}",
            )
        lower = value.strip().lower()
        if not cls.BYTES32_PATTERN.match(lower):
            raise ValidationFailure(ErrorCode.INVALID_BYTES32, f"{field_name}: must be 0x + 64 hex chars", value=value)
        return lower

    @classmethod
    def amount(cls, value: Any, field_name: str = "amount", allow_zero: bool = False) -> int:
        """Validate an integer amount in base units."""
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationFailure(
                ErrorCode.INVALID_AMOUNT,
                f"{field_name}: expected int base units, got {type(value).__name__}",
            )
        if value < 0 or value > cls.MAX_UINT256:
            raise ValidationFailure(ErrorCode.INVALID_AMOUNT, f"{field_name}: out of uint256 range", value=value)
        if value == 0 and not allow_zero:
            raise ValidationFailure(ErrorCode.INVALID_AMOUNT, f"{field_name}: must be positive")
        return value

    @classmethod
    def chain_id(cls, value: Any, field_name: str = "chain_id") -> int:
        """Validate a chain identifier (uint32, non-zero)."""
        if isinstance(value, bool) or not isinstance(value, int) or not 0 < value <= cls.MAX_CHAIN_ID:
            raise ValidationFailure(ErrorCode.INVALID_CHAIN, f"{field_name}: must be a uint32 > 0", value=value)
        return value

    @classmethod
    def fee_bps(cls, value: Any, maximum: int = 1000) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= maximum:
            raise ValidationFailure(ErrorCode.INVALID_FEE_CONFIG, f"fee_bps must be within 0..{maximum}", value=value)
        return value


# =============================================================================
# CRYPTOGRAPHIC UTILITIES
# =============================================================================

class CryptoUtils:
    """Cryptographic utility functions with security hardening."""

    @staticmethod
    def secure_compare_str(a: str, b: str) -> bool:
        """Constant-time string comparison."""
        return hmac.compare_digest(a.encode(), b.encode())


# =============================================================================
# STATE MACHINE INVARIANTS
# =============================================================================

class InvariantChecker:
    """Enforces state machine invariants."""

    @staticmethod
    def check_monotonic_increase(field_name: str, old_value: int, new_value: int) -> None:
        """Ensure value only increases."""
        if new_value < old_value:
            raise InvariantViolation(
                f"{field_name} must be monotonically increasing: "
                f"cannot go from {old_value} to {new_value}"
            )

    @staticmethod
    def check_non_negative(field_name: str, value: int) -> None:
        if value < 0:
            raise InvariantViolation(f"{field_name} cannot be negative: {value}")

    @staticmethod
    def check_exclusive_flags(intent_id: str, filled: bool, refunded: bool) -> None:
        """An intent can never be both settled and refunded."""
        if filled and refunded:
            raise InvariantViolation(f"intent {intent_id} is both filled and refunded")

