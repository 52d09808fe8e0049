from __future__ import annotations

import hashlib
import hmac


def _hex_hmac(secret: str, body: bytes, digestmod) -> str:
    return hmac.new(secret.encode("utf-8"), body, digestmod).hexdigest()


def _safe_equal(expected: str, provided: str) -> bool:
    # compare_digest on str rejects non-ASCII input with TypeError.
    try:
        return hmac.compare_digest(expected, provided)
    except TypeError:
        return False


def verify_vercel_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    """
    Vercel signs the raw request body with HMAC-SHA1 and sends the hex digest in
    `x-vercel-signature`. A `sha1=` prefix is tolerated.
    """
    if not secret or not signature or body is None:
        return False
    provided = signature.strip()
    if provided.lower().startswith("sha1="):
        provided = provided[5:]
    if not provided:
        return False
    return _safe_equal(_hex_hmac(secret, bytes(body), hashlib.sha1), provided.lower())


def _verify_sha256(body: bytes, signature: str | None, secret: str | None) -> bool:
    if not secret or not signature or body is None:
        return False
    prefix = "sha256="
    provided = signature.strip()
    if not provided.startswith(prefix):
        return False
    expected = prefix + _hex_hmac(secret, bytes(body), hashlib.sha256)
    return _safe_equal(expected, provided.lower())


def verify_github_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    """
    GitHub sends `x-hub-signature-256: sha256=<hex HMAC-SHA256 of the raw body>`.
    """
    return _verify_sha256(body, signature, secret)


def verify_agent_callback_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    """
    Agent completion callbacks carry `x-deployfix-signature` in the GitHub format,
    keyed with `agent_callback_secret`.
    """
    return _verify_sha256(body, signature, secret)
