import base64
import binascii
import hashlib
import hmac
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Header, HTTPException, status

from casematch.env import env_csv, env_flag, env_int

logger = logging.getLogger(__name__)

TOKEN_TTL_HOURS = env_int("AUTH_TOKEN_TTL_HOURS", 24)
AUTH_REQUIRED = env_flag("AUTH_REQUIRED", False)
_AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me")


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64urldecode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def _sign(payload: bytes) -> bytes:
    return hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()


def create_access_token(actor_id: str, *, ttl_hours: Optional[int] = None) -> tuple[str, str]:
    """Issue a signed token for an actor. Session issuance lives elsewhere; tests and tools use this."""
    expiry = datetime.now(timezone.utc) + timedelta(hours=ttl_hours or TOKEN_TTL_HOURS)
    payload = f"{actor_id}|{int(expiry.timestamp())}".encode("utf-8")
    token = f"{_b64url(payload)}.{_b64url(_sign(payload))}"
    return token, expiry.isoformat()


def verify_access_token(token: str) -> Optional[str]:
    try:
        payload_part, sig_part = token.split(".", 1)
        payload = _b64urldecode(payload_part)
        sent_sig = _b64urldecode(sig_part)
        actor_id, expiry_ts = payload.decode("utf-8").split("|", 1)
        expires = int(expiry_ts)
    except (ValueError, binascii.Error, UnicodeDecodeError):
        return None
    if not hmac.compare_digest(sent_sig, _sign(payload)):
        return None
    if datetime.now(timezone.utc).timestamp() > expires:
        return None
    return actor_id


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def resolve_request_actor(authorization: Optional[str]) -> Optional[str]:
    token = parse_bearer_token(authorization)
    if not token:
        return None
    return verify_access_token(token)


def assert_actor_authorized(
    actor_id: str,
    authorization: Optional[str] = Header(default=None),
) -> None:
    """Reject requests whose bearer token names someone other than the acting id."""
    token_actor = resolve_request_actor(authorization)
    if not token_actor:
        if AUTH_REQUIRED:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
        return
    if token_actor != actor_id:
        logger.warning("Actor mismatch token=%s actor=%s", token_actor, actor_id)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token user does not match actor")


def admin_user_ids() -> set[str]:
    return set(env_csv("ADMIN_USER_IDS", ""))


def assert_admin_authorized(authorization: Optional[str] = Header(default=None)) -> str:
    """Operator-only routes always need a token naming a configured admin."""
    token_actor = resolve_request_actor(authorization)
    if not token_actor:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    if token_actor not in admin_user_ids():
        logger.warning("Admin route refused actor=%s", token_actor)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return token_actor
