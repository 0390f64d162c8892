import base64
import hashlib
import hmac
import json
import secrets
import string
import time
from typing import Any

from fastapi import Header, HTTPException, Request

from backend.config import Settings

DEVICE_SECRET_PREFIX = "sk_live_"
DEVICE_SECRET_ALPHABET = string.ascii_lowercase + string.digits
DEVICE_SECRET_LENGTH = 32
STAFF_ROLES = ("staff", "admin")


def generate_device_secret() -> str:
    body = "".join(secrets.choice(DEVICE_SECRET_ALPHABET) for _ in range(DEVICE_SECRET_LENGTH))
    return f"{DEVICE_SECRET_PREFIX}{body}"


def mask_secret(secret: str) -> str:
    if len(secret) <= 14:
        return "•" * len(secret)
    return secret[:10] + "•" * 20 + secret[-4:]


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _sign(signing_key: str, payload_b64: str) -> str:
    digest = hmac.new(
        signing_key.encode("utf-8"),
        payload_b64.encode("ascii"),
        hashlib.sha256,
    ).digest()
    return _b64url_encode(digest)


def issue_session_token(settings: Settings, subject: str, *, role: str = "staff") -> tuple[str, dict[str, Any]]:
    """
    Mint a staff bearer token. Production tokens come from the identity
    provider sharing `signing_key`; this is used by tooling and tests.
    """
    now = int(time.time())
    payload = {
        "sub": subject.strip(),
        "role": role,
        "iat": now,
        "exp": now + settings.auth_token_ttl_seconds,
    }
    payload_json = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    payload_b64 = _b64url_encode(payload_json.encode("utf-8"))
    token = f"{payload_b64}.{_sign(settings.signing_key, payload_b64)}"
    return token, payload


def _claims_usable(claims: Any, now: int) -> bool:
    if not isinstance(claims, dict):
        return False
    subject, expires, role = claims.get("sub"), claims.get("exp"), claims.get("role", "staff")
    return (
        isinstance(subject, str)
        and bool(subject.strip())
        and isinstance(expires, int)
        and expires >= now
        and role in STAFF_ROLES
    )


def decode_session_token(settings: Settings, token: str) -> dict[str, Any] | None:
    """Claims of a valid, unexpired staff token; None for anything else."""
    if not token or not token.isascii():
        return None
    payload_b64, dot, signature = token.partition(".")
    if not dot or not settings.signing_key:
        return None
    if not hmac.compare_digest(signature, _sign(settings.signing_key, payload_b64)):
        return None

    try:
        claims = json.loads(_b64url_decode(payload_b64))
    except (ValueError, UnicodeDecodeError):
        return None
    return claims if _claims_usable(claims, int(time.time())) else None


def require_session(request: Request, authorization: str | None = Header(default=None)) -> dict[str, Any]:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing bearer token.")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization scheme.")

    payload = decode_session_token(request.app.state.settings, token.strip())
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired session token.")

    return payload
