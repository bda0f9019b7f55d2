# Overview: HMAC-SHA256 signing helpers for webhook and identity assertions.

"""
Both external collaborators that push data to us (the payment gateway webhook
and the identity provider login callback) sign the raw request body with a
shared secret. The signature header carries the lowercase hex digest,
optionally prefixed with "sha256=".
"""

from __future__ import annotations

import hashlib
import hmac


class SignatureError(Exception):
    """Raised when a signature header is missing or does not match."""
    pass


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str) -> None:
    """
    Verify that signature is the HMAC-SHA256 of body under secret.

    Raises:
        SignatureError: if the header is missing, the secret is not configured,
        or the digest does not match (constant-time compare)
    """
    if not signature:
        raise SignatureError("Missing signature")
    if not secret:
        raise SignatureError("Signature secret is not configured")

    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]

    expected = compute_signature(body, secret)
    if not hmac.compare_digest(expected, provided.lower()):
        raise SignatureError("Invalid signature")
