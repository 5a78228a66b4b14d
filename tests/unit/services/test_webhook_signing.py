"""Unit tests for telephony webhook signatures."""

import pytest

from ringledger.exceptions import InvalidSignatureError, MissingSignatureError
from ringledger.services.webhook_signing import compute_signature, verify_signature

SECRET = "retell_test_secret"
BODY = b'{"event":"call_ended","call":{"call_id":"c1"}}'


@pytest.mark.unit
class TestVerifySignature:
    def test_valid_signature(self):
        verify_signature(SECRET, BODY, compute_signature(SECRET, BODY))

    def test_signature_is_case_and_whitespace_insensitive(self):
        verify_signature(SECRET, BODY, f"  {compute_signature(SECRET, BODY).upper()} ")

    def test_missing_signature(self):
        with pytest.raises(MissingSignatureError):
            verify_signature(SECRET, BODY, None)
        with pytest.raises(MissingSignatureError):
            verify_signature(SECRET, BODY, "")

    def test_tampered_body(self):
        signature = compute_signature(SECRET, BODY)
        with pytest.raises(InvalidSignatureError):
            verify_signature(SECRET, BODY + b" ", signature)

    def test_wrong_secret(self):
        with pytest.raises(InvalidSignatureError):
            verify_signature(SECRET, BODY, compute_signature("other", BODY))

    def test_non_ascii_signature_rejected(self):
        with pytest.raises(InvalidSignatureError):
            verify_signature(SECRET, BODY, "é" * 64)
