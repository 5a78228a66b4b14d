"""HMAC-SHA256 signatures for telephony webhooks.

The provider signs the raw request body with the shared webhook secret and
sends the hex digest in ``x-retell-signature``.
"""

import hashlib
import hmac

from ringledger.exceptions import InvalidSignatureError, MissingSignatureError

SIGNATURE_HEADER = "x-retell-signature"


def compute_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of ``body`` under ``secret``."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str | None) -> None:
    """Verify a webhook signature in constant time.

    Raises:
        MissingSignatureError: No signature was sent.
        InvalidSignatureError: The signature does not match the body.
    """
    if not signature:
        raise MissingSignatureError
    expected = compute_signature(secret, body)
    if not hmac.compare_digest(signature.strip().lower().encode(), expected.encode()):
        raise InvalidSignatureError
