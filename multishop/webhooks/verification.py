"""Svix webhook signature verification — constant-time HMAC.

Clerk delivers webhooks through Svix. Each delivery carries three headers:

    svix-id         unique message id (stable across retries)
    svix-timestamp  unix seconds when the message was signed
    svix-signature  space-separated "v1,<base64 sig>" entries

Security contract:
- All comparisons use hmac.compare_digest() (constant-time)
- Missing header -> MissingHeaders, before any HMAC work
- Bad signature, bad timestamp or empty secret -> VerificationFailed (fail-closed)
- Timestamp tolerance: 300s (5 min) either side of now to prevent replay
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass

from multishop.errors import MissingHeaders, VerificationFailed

logger = logging.getLogger(__name__)

SVIX_ID_HEADER = "svix-id"
SVIX_TIMESTAMP_HEADER = "svix-timestamp"
SVIX_SIGNATURE_HEADER = "svix-signature"

_SECRET_PREFIX = "whsec_"
_SIGNATURE_VERSION = "v1"
DEFAULT_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class SvixHeaders:
    """The three Svix transport headers of one delivery."""

    msg_id: str
    timestamp: str
    signature: str


def extract_headers(headers: dict[str, str]) -> SvixHeaders:
    """Pull the Svix headers out of a lowercase-keyed header dict.

    Raises:
        MissingHeaders: if any of the three headers is absent or empty
    """
    msg_id = headers.get(SVIX_ID_HEADER)
    timestamp = headers.get(SVIX_TIMESTAMP_HEADER)
    signature = headers.get(SVIX_SIGNATURE_HEADER)
    if not msg_id or not timestamp or not signature:
        raise MissingHeaders()
    return SvixHeaders(msg_id=msg_id, timestamp=timestamp, signature=signature)


def decode_secret(secret: str) -> bytes:
    """Turn a "whsec_..." signing secret into raw HMAC key bytes."""
    if secret.startswith(_SECRET_PREFIX):
        secret = secret[len(_SECRET_PREFIX):]
    try:
        return base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError):
        # Secrets not in Svix format are used as-is
        return secret.encode("utf-8")


def sign(secret: str, msg_id: str, timestamp: str, body: bytes) -> str:
    """Compute the base64 v1 signature for a message."""
    signed_content = f"{msg_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(decode_secret(secret), signed_content, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def _parse_signatures(signature_header: str) -> list[str]:
    """Return the v1 signatures from a "v1,sig v1,sig2" header."""
    sigs = []
    for item in signature_header.split(" "):
        version, _, value = item.strip().partition(",")
        if version == _SIGNATURE_VERSION and value:
            sigs.append(value)
    return sigs


class SignatureVerifier:
    """Verifies Svix-signed payloads against one shared secret."""

    def __init__(self, secret: str, tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS):
        self._secret = secret
        self._tolerance = tolerance_seconds

    def verify(self, body: bytes, headers: SvixHeaders) -> None:
        """Verify a delivery. Returns None on success.

        Raises:
            VerificationFailed: on any signature or timestamp mismatch
        """
        if not self._secret:
            logger.warning("Signing secret not set — rejecting webhook")
            raise VerificationFailed()

        try:
            timestamp = int(headers.timestamp)
        except (ValueError, TypeError):
            logger.warning("Svix timestamp is not an integer: %r", headers.timestamp)
            raise VerificationFailed()

        # Replay protection
        if abs(time.time() - timestamp) > self._tolerance:
            logger.warning("Svix timestamp too old/future: %s", timestamp)
            raise VerificationFailed()

        candidates = _parse_signatures(headers.signature)
        if not candidates:
            raise VerificationFailed()

        expected = sign(self._secret, headers.msg_id, headers.timestamp, body).encode("utf-8")
        # Bytes comparison: header values may carry non-ASCII characters
        if not any(hmac.compare_digest(expected, sig.encode("utf-8")) for sig in candidates):
            raise VerificationFailed()
