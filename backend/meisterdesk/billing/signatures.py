"""Webhook authenticity checks for Paddle and FastSpring deliveries.

Paddle signs ``"{ts}:{raw_body}"`` with HMAC-SHA256 and sends
``Paddle-Signature: ts=<unix>;h1=<hex digest>``. When the signature is missing
or wrong, a delivery from one of Paddle's published source IPs is still
accepted, but only with a warning (degraded trust).

FastSpring signs the raw body with HMAC-SHA256 and sends the base64 digest in
``X-FS-Signature``.
"""

import base64
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass

from meisterdesk.billing.exceptions import AuthenticityError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookTrust:
    """How a delivery was authenticated (reported back in the webhook response)."""

    signature_valid: bool
    ip_valid: bool | None = None  # None = IP check not applicable

    @property
    def degraded(self) -> bool:
        return not self.signature_valid

    def as_dict(self) -> dict[str, str]:
        result = {"signature": "valid" if self.signature_valid else "invalid"}
        if self.ip_valid is not None:
            result["ip"] = "verified" if self.ip_valid else "unverified"
        return result


def parse_paddle_signature(header: str | None) -> tuple[str, str] | None:
    """Split a ``ts=...;h1=...`` header into ``(timestamp, signature)``."""
    if not header:
        return None
    parts: dict[str, str] = {}
    for chunk in header.split(";"):
        if "=" not in chunk:
            continue
        key, value = chunk.split("=", 1)
        parts[key.strip()] = value.strip()
    ts = parts.get("ts")
    h1 = parts.get("h1")
    if not ts or not h1:
        return None
    return ts, h1


def verify_paddle_signature(
    raw_body: bytes,
    header: str | None,
    secret: str,
    tolerance_seconds: int = 0,
    now: float | None = None,
) -> bool:
    """Check a Paddle-Signature header against the raw request body."""
    if not secret:
        logger.warning("Paddle webhook secret is not configured; signature cannot be verified")
        return False

    parsed = parse_paddle_signature(header)
    if parsed is None:
        return False
    ts, received = parsed

    if tolerance_seconds > 0:
        try:
            age = abs((now if now is not None else time.time()) - int(ts))
        except ValueError:
            return False
        if age > tolerance_seconds:
            logger.warning("Paddle signature timestamp outside tolerance (%ss old)", int(age))
            return False

    signed_payload = ts.encode("utf-8") + b":" + raw_body
    expected = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, received)


def verify_paddle_ip(source_ip: str | None, allowed_ips: list[str]) -> bool:
    """Check the delivery's source address against Paddle's published IPs."""
    return bool(source_ip) and source_ip in allowed_ips


def verify_fastspring_signature(raw_body: bytes, header: str | None, secret: str) -> bool:
    """Check an X-FS-Signature header (base64 HMAC-SHA256 of the raw body)."""
    if not secret or not header:
        return False
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, header.strip())


def authenticate_paddle(
    raw_body: bytes,
    header: str | None,
    source_ip: str | None,
    *,
    secret: str,
    allowed_ips: list[str],
    tolerance_seconds: int = 0,
) -> WebhookTrust:
    """Authenticate a Paddle delivery or raise :class:`AuthenticityError` (401)."""
    signature_valid = verify_paddle_signature(raw_body, header, secret, tolerance_seconds)
    ip_valid = verify_paddle_ip(source_ip, allowed_ips)

    if not signature_valid and not ip_valid:
        logger.error(
            "Paddle webhook rejected: signature %s and source IP %s not allowlisted",
            "missing" if not header else "invalid",
            source_ip,
        )
        raise AuthenticityError("Invalid signature and unknown source IP", status_code=401)

    if not signature_valid:
        logger.warning(
            "Paddle webhook accepted on IP allowlist only (source %s); signature %s",
            source_ip,
            "missing" if not header else "invalid",
        )
    return WebhookTrust(signature_valid=signature_valid, ip_valid=ip_valid)


def authenticate_fastspring(
    raw_body: bytes,
    header: str | None,
    *,
    secret: str,
    test_mode: bool = False,
) -> WebhookTrust:
    """Authenticate a FastSpring delivery or raise :class:`AuthenticityError` (403)."""
    if not secret:
        if test_mode:
            logger.warning("FastSpring HMAC secret not configured; accepting unsigned delivery (test mode)")
            return WebhookTrust(signature_valid=False)
        logger.error("FastSpring webhook rejected: HMAC secret not configured")
        raise AuthenticityError("Signature verification unavailable", status_code=403)

    if not verify_fastspring_signature(raw_body, header, secret):
        logger.error("FastSpring webhook rejected: signature %s", "missing" if not header else "invalid")
        raise AuthenticityError("Invalid signature", status_code=403)

    return WebhookTrust(signature_valid=True)
