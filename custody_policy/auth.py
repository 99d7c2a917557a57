"""Request signing for the custody API and key checks for our own endpoints."""

import hashlib
import hmac
import secrets
import time

from fastapi import Header, HTTPException
from jose import JWTError, jwt

from custody_policy.config import settings


def generate_timestamp() -> str:
    """Unix seconds as a string, as the custody API expects in X-API-Timestamp."""
    return str(int(time.time()))


def generate_hmac_signature(
    api_secret: str, timestamp: str, method: str, path: str, body: str = ""
) -> str:
    """HMAC-SHA256 over timestamp + METHOD + path + body, hex encoded."""
    message = f"{timestamp}{method.upper()}{path}{body}"
    return hmac.new(api_secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def build_jwt(
    signing_key: str,
    key_id: str,
    tenant_id: str,
    audience: str,
    algorithm: str = "RS256",
    ttl_seconds: int = 3600,
) -> str:
    """Self-signed bearer token identifying the tenant."""
    now = int(time.time())
    claims = {
        "sub": tenant_id,
        "iss": tenant_id,
        "aud": audience,
        "iat": now,
        "exp": now + ttl_seconds,
    }
    return jwt.encode(claims, signing_key, algorithm=algorithm, headers={"kid": key_id})


def is_jwt_expired(token: str, leeway: int = 0) -> bool:
    """True when the token has no readable exp claim or expires within leeway seconds."""
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return True
    exp = claims.get("exp")
    if not exp:
        return True
    return exp - leeway < time.time()


async def require_service_key(
    x_api_key: str = Header(default=None, alias="X-API-Key"),
) -> None:
    """Require X-API-Key when a service key is configured.

    With no key configured the endpoints are open, for local use.
    """
    expected = settings.service_api_key
    if not expected:
        return
    if not x_api_key:
        raise HTTPException(401, "API key required. Include X-API-Key header.")
    if not secrets.compare_digest(x_api_key, expected):
        raise HTTPException(401, "Invalid API key")
