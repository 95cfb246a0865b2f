"""
Unit Tests for webhook payload signing
"""

import hashlib
import hmac
import json

import pytest

from leadflow.core.signing import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    compute_signature,
    sign_payload,
    verify_signature,
)

NOW = 1_768_478_400


@pytest.mark.unit
def test_signature_covers_timestamp_and_body():
    signed = sign_payload({"b": 1, "a": [1, 2]}, secret="s3cret", now=NOW)

    expected = hmac.new(b"s3cret", f"{NOW}.".encode() + signed.body, hashlib.sha256).hexdigest()
    assert signed.headers[SIGNATURE_HEADER] == f"sha256={expected}"
    assert signed.headers[TIMESTAMP_HEADER] == str(NOW)
    assert signed.body == b'{"a":[1,2],"b":1}'
    assert signed.headers["Content-Type"] == "application/json"


@pytest.mark.unit
def test_unsigned_without_secret():
    signed = sign_payload({"a": 1})
    assert SIGNATURE_HEADER not in signed.headers
    assert json.loads(signed.body) == {"a": 1}


@pytest.mark.unit
def test_verify_signature():
    body = b'{"event":"form_submitted"}'
    header = "sha256=" + compute_signature("s3cret", body, NOW)

    assert verify_signature("s3cret", body, header, str(NOW), now=NOW)
    assert verify_signature("s3cret", body, compute_signature("s3cret", body, NOW), str(NOW), now=NOW)
    assert not verify_signature("other", body, header, str(NOW), now=NOW)
    assert not verify_signature("s3cret", body + b" ", header, str(NOW), now=NOW)
    assert not verify_signature("s3cret", body, None, str(NOW), now=NOW)


@pytest.mark.unit
def test_verify_rejects_replayed_or_retimed_requests():
    body = b'{"event":"form_submitted"}'
    header = "sha256=" + compute_signature("s3cret", body, NOW)

    # Captured request replayed ten minutes later
    assert not verify_signature("s3cret", body, header, str(NOW), now=NOW + 600)
    # Fresh timestamp pasted onto the old signature
    assert not verify_signature("s3cret", body, header, str(NOW + 600), now=NOW + 600)
    assert not verify_signature("s3cret", body, header, None, now=NOW)
    assert not verify_signature("s3cret", body, header, "yesterday", now=NOW)
    assert verify_signature("s3cret", body, header, str(NOW), now=NOW + 600, tolerance=900)


@pytest.mark.unit
def test_tolerance_from_environment(monkeypatch):
    body = b"{}"
    header = compute_signature("s3cret", body, NOW)
    monkeypatch.setenv("WEBHOOK_TOLERANCE_SECONDS", "30")

    assert verify_signature("s3cret", body, header, str(NOW), now=NOW + 29)
    assert not verify_signature("s3cret", body, header, str(NOW), now=NOW + 31)


@pytest.mark.unit
def test_user_agent_override(monkeypatch):
    monkeypatch.setenv("WEBHOOK_USER_AGENT", "Acme-Automations/2.0")
    assert sign_payload({}).headers["User-Agent"] == "Acme-Automations/2.0"
