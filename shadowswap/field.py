"""Field hash primitive and commitment/nullifier helpers.

The protocol needs a deterministic, collision-resistant hash from a fixed
tuple of 2, 3 or 4 field elements to one field element. On-ledger this is a
Poseidon permutation over the BN254 scalar field; the permutation itself is
an external collaborator. This module exposes:

- `hash_fields(*xs)`: the primitive every other module calls
- `set_hash_primitive(fn)`: install another implementation (e.g. Poseidon)
- privacy helpers built on top of the primitive

Default primitive:
- SHA-256
- Domain separation by arity:
  - H(x1..xk) = SHA256(b"shadowswap.field.v1/" || k || x1 || ... || xk) mod p
  - each xi is reduced mod p and encoded as 32 big-endian bytes

Values travel as 32-byte hex strings (0x + 64 lowercase hex) so they can be
used directly as Merkle leaves and identifiers. Integers are accepted too.
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from typing import Callable, Dict, Sequence, Union

from shadowswap.hardening import Validators

# BN254 (alt_bn128) scalar field modulus.
FIELD_MODULUS = 21888242871839275222246405745257275088548364400416034343698204186575808495617

ZERO = "0x" + "0" * 64

# Second input of the nullifier derivation hash.
NULLIFIER_TAG = int.from_bytes(b"shadowswap.nullifier", "big")

_DOMAIN = b"shadowswap.field.v1/"

FieldLike = Union[int, str]
HashPrimitive = Callable[[Sequence[int]], int]


def to_int(value: FieldLike) -> int:
    """Convert a field-like value (int or 32-byte hex) into an int."""
    if isinstance(value, bool):
        raise TypeError("bool is not a field element")
    if isinstance(value, int):
        if value < 0:
            raise ValueError("field elements must be non-negative")
        return value
    if isinstance(value, str):
        s = value.strip().lower()
        if s.startswith("0x"):
            s = s[2:]
        if not s or len(s) > 64:
            raise ValueError("hex field element must be 1..64 hex chars")
        return int(s, 16)
    raise TypeError(f"unsupported field element type: {type(value).__name__}")


def to_hex32(value: int) -> str:
    """Render an int as 0x + 64 lowercase hex chars."""
    if value < 0 or value >= 1 << 256:
        raise ValueError("value does not fit in 32 bytes")
    return "0x" + value.to_bytes(32, "big").hex()


def _sha256_field_hash(inputs: Sequence[int]) -> int:
    h = hashlib.sha256()
    h.update(_DOMAIN)
    h.update(bytes([len(inputs)]))
    for x in inputs:
        h.update(x.to_bytes(32, "big"))
    return int.from_bytes(h.digest(), "big") % FIELD_MODULUS


_primitive: HashPrimitive = _sha256_field_hash


def set_hash_primitive(fn: HashPrimitive | None) -> None:
    """Install a hash primitive. `None` restores the default.

    Changing the primitive changes every commitment, root and proof, so it
    must be done once at process start, identically on every participant.
    """
    global _primitive
    _primitive = fn or _sha256_field_hash


def hash_fields(*values: FieldLike) -> str:
    """Hash 2, 3 or 4 field elements. Inputs are reduced mod the field prime."""
    if len(values) not in (2, 3, 4):
        raise ValueError(f"hash arity must be 2, 3 or 4, got {len(values)}")
    reduced = [to_int(v) % FIELD_MODULUS for v in values]
    return to_hex32(_primitive(reduced) % FIELD_MODULUS)


# ---------------------------------------------------------------------------
# Privacy parameters
# ---------------------------------------------------------------------------


def generate_secret() -> str:
    """Random secret, already reduced into the field."""
    return to_hex32(secrets.randbelow(FIELD_MODULUS - 1) + 1)


def derive_nullifier(secret: FieldLike) -> str:
    """Nullifier revealed at claim time; one per secret."""
    return hash_fields(secret, NULLIFIER_TAG)


def compute_commitment(secret: FieldLike, nullifier: FieldLike, amount: int, chain_id: int) -> str:
    """Commitment = H(secret, nullifier, amount, chainId). Public; hides the secret."""
    return hash_fields(secret, nullifier, amount, chain_id)


def generate_intent_id(user: str, token: str, amount: int, nonce: int | None = None) -> str:
    """Unique intent identifier bound to the depositor, asset and amount."""
    user = Validators.address(user, "user")
    token = Validators.address(token, "token")
    nonce = secrets.randbits(64) if nonce is None else nonce
    material = (
        bytes.fromhex(user[2:])
        + bytes.fromhex(token[2:])
        + amount.to_bytes(32, "big")
        + nonce.to_bytes(32, "big")
    )
    return "0x" + hashlib.sha256(material).hexdigest()


@dataclass(frozen=True)
class PrivacyParams:
    """Client-side privacy material for one intent. `secret` never goes on-ledger."""
    intent_id: str
    secret: str
    nullifier: str
    commitment: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "intent_id": self.intent_id,
            "secret": self.secret,
            "nullifier": self.nullifier,
            "commitment": self.commitment,
        }


def generate_privacy_params(user: str, token: str, amount: int, chain_id: int) -> PrivacyParams:
    """Generate secret, nullifier, commitment and intent id for a new intent.

    `amount` and `chain_id` must be the values the destination ledger will
    check at claim time: the registered amount and the source chain id.
    """
    secret = generate_secret()
    nullifier = derive_nullifier(secret)
    return PrivacyParams(
        intent_id=generate_intent_id(user, token, amount),
        secret=secret,
        nullifier=nullifier,
        commitment=compute_commitment(secret, nullifier, amount, chain_id),
    )
