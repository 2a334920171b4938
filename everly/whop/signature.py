"""
HMAC verification for inbound Whop webhooks.

The digest must be computed over the raw request bytes. Parsing the JSON and
re-serializing it changes whitespace/key order and breaks the signature.
"""
import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

SIGNATURE_HEADERS = ("x-whop-signature", "whop-signature")


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    reason: str


def extract_signature(headers) -> str:
    """Return the signature header value, or "" if none was sent."""
    for name in SIGNATURE_HEADERS:
        value = headers.get(name)
        if value:
            return value.strip()
    return ""


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of raw_body keyed with secret."""
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_hmac_sha256(raw_body: bytes, header_signature: Optional[str], secret: Optional[str]) -> VerificationResult:
    """
    Verify a webhook signature.

    With no secret configured verification is bypassed (reason "no-secret").
    That is the local/dev escape hatch, never a production setting.
    """
    if not secret:
        return VerificationResult(ok=True, reason="no-secret")
    if not header_signature:
        return VerificationResult(ok=False, reason="missing-signature")

    expected = compute_signature(raw_body, secret).encode("utf-8")
    supplied = header_signature.encode("utf-8")
    # compare_digest handles the length mismatch case in constant time as well
    ok = hmac.compare_digest(expected, supplied)
    return VerificationResult(ok=ok, reason="ok" if ok else "mismatch")
