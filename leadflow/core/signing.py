"""
Webhook payload signing.

Outbound webhooks carry an HMAC-SHA256 signature over the timestamp and the
exact body bytes, "<timestamp>.<body>":

    X-Leadflow-Signature: sha256=<hexdigest>
    X-Leadflow-Timestamp: <unix seconds>

Receivers recompute the digest with the shared secret, compare in constant
time and reject timestamps older than the tolerance (`verify_signature`).
The same helpers verify inbound webhook triggers.
"""

import hashlib
import hmac
import json
import os
import time
from typing import Any, Dict, Optional

from pydantic import BaseModel

SIGNATURE_HEADER = "X-Leadflow-Signature"
TIMESTAMP_HEADER = "X-Leadflow-Timestamp"
SIGNATURE_PREFIX = "sha256="

DEFAULT_USER_AGENT = "Leadflow-Workflow-Engine/1.0"
DEFAULT_TOLERANCE_SECONDS = 300


class SignedPayload(BaseModel):
    body: bytes
    headers: Dict[str, str]


def compute_signature(secret: str, body: bytes, timestamp: int) -> str:
    message = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(
    secret: str,
    body: bytes,
    signature_header: Optional[str],
    timestamp_header: Optional[str],
    now: Optional[float] = None,
    tolerance: Optional[int] = None,
) -> bool:
    """
    Check a "sha256=<hex>" header against the timestamp and body.

    A missing or unparsable timestamp, or one further than `tolerance`
    seconds from `now` (env WEBHOOK_TOLERANCE_SECONDS), fails the check so a
    captured request cannot be replayed later.
    """
    if not signature_header or not timestamp_header:
        return False
    try:
        timestamp = int(timestamp_header)
    except ValueError:
        return False

    if tolerance is None:
        tolerance = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", str(DEFAULT_TOLERANCE_SECONDS)))
    now = time.time() if now is None else now
    if abs(now - timestamp) > tolerance:
        return False

    provided = signature_header[len(SIGNATURE_PREFIX):] if signature_header.startswith(SIGNATURE_PREFIX) else signature_header
    return hmac.compare_digest(compute_signature(secret, body, timestamp), provided)


def sign_payload(payload: Dict[str, Any], secret: Optional[str] = None, now: Optional[float] = None) -> SignedPayload:
    """
    Serialize `payload` to JSON and build the request headers.

    Without a secret the body is sent unsigned.
    """
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
    timestamp = int(time.time() if now is None else now)
    headers = {
        "Content-Type": "application/json",
        "User-Agent": os.getenv("WEBHOOK_USER_AGENT", DEFAULT_USER_AGENT),
        TIMESTAMP_HEADER: str(timestamp),
    }
    if secret:
        headers[SIGNATURE_HEADER] = SIGNATURE_PREFIX + compute_signature(secret, body, timestamp)
    return SignedPayload(body=body, headers=headers)
