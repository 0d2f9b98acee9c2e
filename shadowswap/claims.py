"""Claim authorization signatures (Ed25519).

A recipient authorizes the relayer to claim a fill on their behalf by
signing the tuple (destination chain id, intent id, nullifier, recipient).
The destination ledger accepts the authorization only if:

- the signature verifies under the embedded public key, and
- the public key derives the recipient address.

Addresses are derived as ``0x`` + the last 20 bytes of SHA-256(public key),
so a recipient address is bound to exactly one signing key.

Keys travel as OKP/Ed25519 JWKs, signatures as unpadded base64url.
"""

from __future__ import annotations

import base64
import hashlib
import struct
from dataclasses import dataclass
from typing import Any, Dict, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from shadowswap.hardening import AuthorizationFailure, ErrorCode, Validators

CLAIM_DOMAIN = b"shadowswap.claim.v1"


def b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


def public_key_bytes(key: Ed25519PublicKey) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def address_from_public_key(pub: bytes) -> str:
    """Recipient address controlled by an Ed25519 public key."""
    if len(pub) != 32:
        raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(pub)}")
    return "0x" + hashlib.sha256(pub).digest()[-20:].hex()


def generate_ed25519_jwk(kid: str = "claim-1") -> Dict[str, Any]:
    """Generate a new Ed25519 OKP JWK keypair, annotated with its address."""
    priv = Ed25519PrivateKey.generate()

    priv_bytes = priv.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    pub_bytes = public_key_bytes(priv.public_key())

    return {
        "kty": "OKP",
        "crv": "Ed25519",
        "x": b64url_encode(pub_bytes),
        "d": b64url_encode(priv_bytes),
        "kid": kid,
        "address": address_from_public_key(pub_bytes),
    }


def load_private_key_from_jwk(jwk: Dict[str, Any]) -> Tuple[Ed25519PrivateKey, str]:
    """Load an Ed25519 private key from an OKP JWK.

    Returns:
        (private_key, address) with the address derived from the private key.
    """
    if jwk.get("kty") != "OKP" or jwk.get("crv") != "Ed25519":
        raise ValueError("Only OKP/Ed25519 JWK is supported")

    d = jwk.get("d")
    if not d:
        raise ValueError("JWK must include 'd' (private key)")

    priv = Ed25519PrivateKey.from_private_bytes(b64url_decode(d))
    return priv, address_from_public_key(public_key_bytes(priv.public_key()))


def claim_message(dest_chain_id: int, intent_id: str, nullifier: str, recipient: str) -> bytes:
    """Signing input for a claim authorization."""
    dest_chain_id = Validators.chain_id(dest_chain_id, "dest_chain_id")
    intent_id = Validators.bytes32(intent_id, "intent_id")
    nullifier = Validators.bytes32(nullifier, "nullifier")
    recipient = Validators.address(recipient, "recipient")
    return b"".join([
        CLAIM_DOMAIN,
        struct.pack(">I", dest_chain_id),
        bytes.fromhex(intent_id[2:]),
        bytes.fromhex(nullifier[2:]),
        bytes.fromhex(recipient[2:]),
    ])


@dataclass(frozen=True)
class ClaimAuthorization:
    """Signed permission to pay a fill out to `recipient`."""
    public_key: str  # base64url, 32 raw bytes
    signature: str   # base64url, 64 raw bytes

    def to_dict(self) -> Dict[str, str]:
        return {"public_key": self.public_key, "signature": self.signature}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClaimAuthorization":
        return cls(public_key=str(data["public_key"]), signature=str(data["signature"]))

    @property
    def signer_address(self) -> str:
        return address_from_public_key(b64url_decode(self.public_key))


def sign_claim(
    private_key: Ed25519PrivateKey,
    dest_chain_id: int,
    intent_id: str,
    nullifier: str,
    recipient: str,
) -> ClaimAuthorization:
    msg = claim_message(dest_chain_id, intent_id, nullifier, recipient)
    return ClaimAuthorization(
        public_key=b64url_encode(public_key_bytes(private_key.public_key())),
        signature=b64url_encode(private_key.sign(msg)),
    )


def verify_claim(
    auth: ClaimAuthorization,
    dest_chain_id: int,
    intent_id: str,
    nullifier: str,
    recipient: str,
) -> None:
    """Raise AuthorizationFailure(InvalidSignature) unless `auth` is valid."""
    msg = claim_message(dest_chain_id, intent_id, nullifier, recipient)
    try:
        pub_bytes = b64url_decode(auth.public_key)
        sig = b64url_decode(auth.signature)
    except (AttributeError, TypeError, ValueError) as exc:
        raise AuthorizationFailure(ErrorCode.INVALID_SIGNATURE, f"malformed authorization: {exc}") from None

    if len(pub_bytes) != 32 or len(sig) != 64:
        raise AuthorizationFailure(ErrorCode.INVALID_SIGNATURE, "malformed authorization: bad key or signature length")

    if address_from_public_key(pub_bytes) != recipient.strip().lower():
        raise AuthorizationFailure(ErrorCode.INVALID_SIGNATURE, "signer does not control recipient", recipient=recipient)

    try:
        Ed25519PublicKey.from_public_bytes(pub_bytes).verify(sig, msg)
    except InvalidSignature:
        raise AuthorizationFailure(ErrorCode.INVALID_SIGNATURE, "signature does not verify") from None
