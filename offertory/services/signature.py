"""Gateway signature computation and verification.

The gateway signs the exact serialized request body: the signature is the
hex SHA-512 digest of ``body || secret``. Verification recomputes the digest
over the raw bytes as received (never a re-serialized dict, whose key order
or spacing may differ) and compares in constant time.
"""

import hashlib
import hmac
import logging
from typing import Union

from offertory.api.errors import MalformedPayload, MissingSignature

logger = logging.getLogger(__name__)


class SignatureVerifier:
    """Compute and check gateway signatures with a shared secret."""

    def __init__(self, secret_key: str):
        if not secret_key:
            raise ValueError("Signature secret key is required")
        self._secret = secret_key.encode("utf-8")

    @staticmethod
    def _as_bytes(raw_body: Union[bytes, bytearray, str]) -> bytes:
        if isinstance(raw_body, (bytes, bytearray)):
            return bytes(raw_body)
        if isinstance(raw_body, str):
            return raw_body.encode("utf-8")
        raise MalformedPayload(f"Cannot sign payload of type {type(raw_body).__name__}")

    def compute(self, raw_body: Union[bytes, bytearray, str]) -> str:
        """Hex digest of SHA-512(body || secret)."""
        return hashlib.sha512(self._as_bytes(raw_body) + self._secret).hexdigest()

    def verify(self, raw_body: Union[bytes, bytearray, str], signature: str | None) -> bool:
        """
        Check a caller-supplied signature against the body.

        Args:
            raw_body: Exact request body bytes
            signature: Hex digest from the signature header

        Returns:
            True when the signature matches, False otherwise

        Raises:
            MissingSignature: If no signature was supplied
            MalformedPayload: If the body is not bytes or text
        """
        if signature is None or not signature.strip():
            raise MissingSignature()

        expected = self.compute(raw_body)
        supplied = signature.strip().lower()
        matched = hmac.compare_digest(expected.encode("ascii"), supplied.encode("utf-8"))
        if not matched:
            logger.debug("Signature mismatch for %d-byte payload", len(self._as_bytes(raw_body)))
        return matched


__all__ = ["SignatureVerifier"]
