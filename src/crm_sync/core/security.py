"""Service JWTs, signed OAuth state, and webhook routing tokens.

Provides the security primitives used by the API layer:
- Service-to-service bearer tokens issued to the host CRM (tenant_id claim)
- OAuth ``state`` parameters: short-lived JWTs that carry the tenant and
  provider through the provider's consent screen and protect the callback
  against CSRF
- Opaque per-connection webhook routing tokens
"""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta, timezone

import structlog
from fastapi import HTTPException, status
from jose import JWTError, jwt

from src.crm_sync.config import get_settings

logger = structlog.get_logger(__name__)

SERVICE_TOKEN_TYPE = "service"
OAUTH_STATE_TYPE = "oauth_state"


# ── Service Tokens ────────────────────────────────────────────────────────────


def create_service_token(
    tenant_id: str,
    subject: str = "host-crm",
    expires_delta: timedelta | None = None,
) -> str:
    """Create a service JWT scoped to one tenant."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": subject,
        "tenant_id": tenant_id,
        "exp": expire,
        "iat": now,
        "type": SERVICE_TOKEN_TYPE,
    }
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_service_token(token: str) -> dict:
    """Decode and validate a service JWT.

    Returns:
        The decoded payload dict.

    Raises:
        HTTPException(401): If the token is invalid, expired, or wrong type.
    """
    settings = get_settings()
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        raise credentials_exception
    if payload.get("type") != SERVICE_TOKEN_TYPE or not payload.get("tenant_id"):
        raise credentials_exception
    return payload


# ── OAuth State ───────────────────────────────────────────────────────────────


def create_oauth_state(tenant_id: str, provider: str) -> str:
    """Signed, expiring state parameter for the authorization-code flow."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    to_encode = {
        "tenant_id": tenant_id,
        "provider": provider,
        "nonce": uuid.uuid4().hex,
        "iat": now,
        "exp": now + timedelta(minutes=settings.OAUTH_STATE_EXPIRE_MINUTES),
        "type": OAUTH_STATE_TYPE,
    }
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_oauth_state(state: str, provider: str) -> str:
    """Validate a state parameter and return its tenant id.

    Raises:
        ValueError: If the state is forged, expired, or issued for another provider.
    """
    settings = get_settings()
    try:
        payload = jwt.decode(state, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired OAuth state") from exc
    if payload.get("type") != OAUTH_STATE_TYPE or payload.get("provider") != provider:
        raise ValueError("OAuth state does not match this provider")
    tenant_id = payload.get("tenant_id")
    if not tenant_id:
        raise ValueError("OAuth state has no tenant")
    return tenant_id


# ── Webhook Routing Tokens ────────────────────────────────────────────────────


def generate_routing_token() -> str:
    """Opaque URL-safe token identifying a connection in its webhook URL."""
    return secrets.token_urlsafe(32)
