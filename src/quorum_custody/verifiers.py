"""Ed25519 signature verification backed by PyNaCl."""
from __future__ import annotations

import logging

from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import VerifyKey

from .interfaces import SignatureVerifier

logger = logging.getLogger(__name__)


class Ed25519SignatureVerifier(SignatureVerifier):
    """Verifies hex-encoded Ed25519 signatures against hex-encoded public keys."""

    def verify(self, payload: bytes, public_key: str, signature: str) -> bool:
        try:
            verify_key = VerifyKey(bytes.fromhex(public_key))
            verify_key.verify(payload, bytes.fromhex(signature))
        except BadSignatureError:
            return False
        except (ValueError, TypeError, CryptoError) as e:
            logger.debug(f"Malformed Ed25519 key or signature: {e}")
            return False
        return True
