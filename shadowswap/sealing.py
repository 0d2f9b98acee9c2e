"""Sealed claim secrets handed from a user to the relayer.

A user who wants the relayer to claim on their behalf encrypts the claim
material (secret, nullifier, recipient and the signed ClaimAuthorization)
to the relayer's X25519 public key. Only the relayer can open it, and the
intent id is bound in as associated data so a sealed blob cannot be
replayed against another intent.

Wire format (hex, 0x-prefixed):

    version (1) || ephemeral public key (32) || nonce (12) || ciphertext+tag

Key agreement is ephemeral-static X25519, the AES-256-GCM key is derived
with HKDF-SHA256 over the shared secret, salted with both public keys.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from shadowswap.claims import ClaimAuthorization
from shadowswap.hardening import AuthorizationFailure, ErrorCode, ValidationFailure, Validators

_VERSION = b"\x01"
_KEY_SIZE = 32
_NONCE_SIZE = 12
_TAG_SIZE = 16
_HKDF_INFO = b"shadowswap.sealed-claim.v1"


def _raw_public(key: X25519PublicKey) -> bytes:
    return key.public_bytes(encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw)


def _derive_key(shared: bytes, ephemeral_pub: bytes, recipient_pub: bytes) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=ephemeral_pub + recipient_pub,
        info=_HKDF_INFO,
    )
    return hkdf.derive(shared)


@dataclass(frozen=True)
class ClaimSecret:
    """Everything the relayer needs to call claim_withdrawal for one intent."""
    secret: str
    nullifier: str
    recipient: str
    authorization: ClaimAuthorization

    def to_dict(self) -> Dict[str, Any]:
        return {
            "secret": self.secret,
            "nullifier": self.nullifier,
            "recipient": self.recipient,
            "authorization": self.authorization.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClaimSecret":
        return cls(
            secret=Validators.bytes32(data["secret"], "secret"),
            nullifier=Validators.bytes32(data["nullifier"], "nullifier"),
            recipient=Validators.address(data["recipient"], "recipient"),
            authorization=ClaimAuthorization.from_dict(data["authorization"]),
        )


class SealingKey:
    """The relayer's X25519 keypair for opening sealed claim secrets."""

    def __init__(self, private_key: X25519PrivateKey):
        self._private_key = private_key
        self.public_bytes = _raw_public(private_key.public_key())

    @classmethod
    def generate(cls) -> "SealingKey":
        return cls(X25519PrivateKey.generate())

    @classmethod
    def from_hex(cls, private_hex: str) -> "SealingKey":
        raw = bytes.fromhex(private_hex[2:] if private_hex.startswith("0x") else private_hex)
        return cls(X25519PrivateKey.from_private_bytes(raw))

    @property
    def public_key(self) -> str:
        return "0x" + self.public_bytes.hex()

    def open(self, intent_id: str, sealed: str) -> ClaimSecret:
        """Decrypt a sealed blob; AuthorizationFailure(InvalidSealedSecret) on any defect."""
        intent_id = Validators.bytes32(intent_id, "intent_id")
        try:
            blob = bytes.fromhex(sealed[2:] if sealed.startswith("0x") else sealed)
        except (AttributeError, ValueError):
            raise AuthorizationFailure(ErrorCode.INVALID_SEALED_SECRET, "sealed secret is not hex") from None

        if len(blob) < 1 + _KEY_SIZE + _NONCE_SIZE + _TAG_SIZE or blob[:1] != _VERSION:
            raise AuthorizationFailure(ErrorCode.INVALID_SEALED_SECRET, "unknown sealed secret format")

        ephemeral_pub = blob[1:1 + _KEY_SIZE]
        nonce = blob[1 + _KEY_SIZE:1 + _KEY_SIZE + _NONCE_SIZE]
        ciphertext = blob[1 + _KEY_SIZE + _NONCE_SIZE:]

        shared = self._private_key.exchange(X25519PublicKey.from_public_bytes(ephemeral_pub))
        key = _derive_key(shared, ephemeral_pub, self.public_bytes)
        try:
            plaintext = AESGCM(key).decrypt(nonce, ciphertext, intent_id.encode("ascii"))
        except InvalidTag:
            raise AuthorizationFailure(
                ErrorCode.INVALID_SEALED_SECRET,
                "sealed secret does not open for this relayer and intent",
                intent_id=intent_id,
            ) from None

        try:
            return ClaimSecret.from_dict(json.loads(plaintext.decode("utf-8")))
        except (KeyError, TypeError, ValueError, ValidationFailure):
            raise AuthorizationFailure(ErrorCode.INVALID_SEALED_SECRET, "sealed payload is malformed") from None


def seal_claim_secret(relayer_public_key: str, intent_id: str, claim: ClaimSecret) -> str:
    """Encrypt `claim` to the relayer key, bound to `intent_id`."""
    intent_id = Validators.bytes32(intent_id, "intent_id")
    recipient_pub = bytes.fromhex(relayer_public_key[2:] if relayer_public_key.startswith("0x") else relayer_public_key)
    if len(recipient_pub) != _KEY_SIZE:
        raise ValueError(f"X25519 public key must be {_KEY_SIZE} bytes, got {len(recipient_pub)}")

    ephemeral = X25519PrivateKey.generate()
    ephemeral_pub = _raw_public(ephemeral.public_key())
    shared = ephemeral.exchange(X25519PublicKey.from_public_bytes(recipient_pub))
    key = _derive_key(shared, ephemeral_pub, recipient_pub)

    nonce = os.urandom(_NONCE_SIZE)
    payload = json.dumps(claim.to_dict(), sort_keys=True).encode("utf-8")
    ciphertext = AESGCM(key).encrypt(nonce, payload, intent_id.encode("ascii"))
    return "0x" + (_VERSION + ephemeral_pub + nonce + ciphertext).hex()
