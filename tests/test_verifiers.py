"""Tests for Ed25519 signature verification."""
import pytest
from nacl.signing import SigningKey

from quorum_custody.verifiers import Ed25519SignatureVerifier


@pytest.fixture
def key():
    return SigningKey.generate()


class TestEd25519SignatureVerifier:
    def test_valid_signature(self, key):
        signature = key.sign(b"payload").signature.hex()
        assert Ed25519SignatureVerifier().verify(b"payload", key.verify_key.encode().hex(), signature)

    def test_tampered_payload(self, key):
        signature = key.sign(b"payload").signature.hex()
        assert not Ed25519SignatureVerifier().verify(b"payl0ad", key.verify_key.encode().hex(), signature)

    def test_other_key(self, key):
        signature = key.sign(b"payload").signature.hex()
        other = SigningKey.generate().verify_key.encode().hex()
        assert not Ed25519SignatureVerifier().verify(b"payload", other, signature)

    @pytest.mark.parametrize(
        "public_key,signature",
        [("zz", "00" * 64), ("00" * 16, "00" * 64), (None, "00" * 64)],
    )
    def test_malformed_input(self, key, public_key, signature):
        assert not Ed25519SignatureVerifier().verify(b"payload", public_key, signature)

    def test_truncated_signature(self, key):
        signature = key.sign(b"payload").signature.hex()[:-2]
        assert not Ed25519SignatureVerifier().verify(b"payload", key.verify_key.encode().hex(), signature)
