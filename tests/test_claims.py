"""
Claim authorization (Ed25519) tests.
"""

import pytest

from shadowswap.claims import (
    CLAIM_DOMAIN,
    ClaimAuthorization,
    address_from_public_key,
    b64url_decode,
    b64url_encode,
    claim_message,
    generate_ed25519_jwk,
    load_private_key_from_jwk,
    sign_claim,
    verify_claim,
)
from shadowswap.hardening import AuthorizationFailure, ErrorCode, ValidationFailure

CHAIN = 5003
INTENT = "0x" + "aa" * 32
NULLIFIER = "0x" + "bb" * 32


class TestKeys:
    def test_jwk_roundtrip_preserves_address(self):
        jwk = generate_ed25519_jwk("relayer-key")
        priv, address = load_private_key_from_jwk(jwk)
        assert jwk["kid"] == "relayer-key"
        assert address == jwk["address"]
        assert address == address_from_public_key(b64url_decode(jwk["x"]))

    def test_rejects_non_ed25519_jwk(self):
        with pytest.raises(ValueError):
            load_private_key_from_jwk({"kty": "EC", "crv": "P-256", "d": "AA"})
        jwk = generate_ed25519_jwk()
        del jwk["d"]
        with pytest.raises(ValueError):
            load_private_key_from_jwk(jwk)

    def test_address_requires_32_byte_key(self):
        with pytest.raises(ValueError):
            address_from_public_key(b"\x01" * 31)

    def test_b64url_is_unpadded(self):
        encoded = b64url_encode(b"\xff\xfe")
        assert "=" not in encoded
        assert b64url_decode(encoded) == b"\xff\xfe"


class TestClaimSignatures:
    """Tests for signing and verifying claim authorizations."""

    def setup_method(self):
        self.priv, self.recipient = load_private_key_from_jwk(generate_ed25519_jwk())

    def test_sign_and_verify(self):
        auth = sign_claim(self.priv, CHAIN, INTENT, NULLIFIER, self.recipient)
        verify_claim(auth, CHAIN, INTENT, NULLIFIER, self.recipient)
        assert auth.signer_address == self.recipient

    def test_message_layout(self):
        msg = claim_message(CHAIN, INTENT, NULLIFIER, self.recipient)
        assert msg.startswith(CLAIM_DOMAIN)
        assert len(msg) == len(CLAIM_DOMAIN) + 4 + 32 + 32 + 20

    @pytest.mark.parametrize("chain,intent,nullifier", [
        (CHAIN + 1, INTENT, NULLIFIER),
        (CHAIN, "0x" + "cc" * 32, NULLIFIER),
        (CHAIN, INTENT, "0x" + "dd" * 32),
    ])
    def test_signature_bound_to_every_field(self, chain, intent, nullifier):
        auth = sign_claim(self.priv, CHAIN, INTENT, NULLIFIER, self.recipient)
        with pytest.raises(AuthorizationFailure) as exc:
            verify_claim(auth, chain, intent, nullifier, self.recipient)
        assert exc.value.code == ErrorCode.INVALID_SIGNATURE

    def test_foreign_key_cannot_authorize_recipient(self):
        other, _ = load_private_key_from_jwk(generate_ed25519_jwk())
        auth = sign_claim(other, CHAIN, INTENT, NULLIFIER, self.recipient)
        with pytest.raises(AuthorizationFailure):
            verify_claim(auth, CHAIN, INTENT, NULLIFIER, self.recipient)

    def test_malformed_authorization(self):
        for auth in (
            ClaimAuthorization(public_key="!!!", signature="!!!"),
            ClaimAuthorization(public_key=b64url_encode(b"\x00" * 5), signature=b64url_encode(b"\x00" * 64)),
        ):
            with pytest.raises(AuthorizationFailure) as exc:
                verify_claim(auth, CHAIN, INTENT, NULLIFIER, self.recipient)
            assert exc.value.code == ErrorCode.INVALID_SIGNATURE

    def test_dict_roundtrip(self):
        auth = sign_claim(self.priv, CHAIN, INTENT, NULLIFIER, self.recipient)
        assert ClaimAuthorization.from_dict(auth.to_dict()) == auth

    def test_invalid_fields_rejected_before_signing(self):
        with pytest.raises(ValidationFailure):
            sign_claim(self.priv, CHAIN, "0x1234", NULLIFIER, self.recipient)
