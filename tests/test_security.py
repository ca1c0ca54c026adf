"""Service JWTs, OAuth state and webhook routing tokens."""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi import HTTPException

from src.crm_sync.core.security import (
    create_oauth_state,
    create_service_token,
    decode_oauth_state,
    generate_routing_token,
    verify_service_token,
)

from tests.doubles import TENANT_ID


# ── Service Tokens ────────────────────────────────────────────────────────────


def test_service_token_roundtrip():
    payload = verify_service_token(create_service_token(TENANT_ID))

    assert payload["tenant_id"] == TENANT_ID
    assert payload["sub"] == "host-crm"
    assert payload["type"] == "service"


def test_expired_service_token_rejected():
    token = create_service_token(TENANT_ID, expires_delta=timedelta(seconds=-5))

    with pytest.raises(HTTPException) as exc_info:
        verify_service_token(token)

    assert exc_info.value.status_code == 401


def test_oauth_state_is_not_a_service_token():
    """A state parameter leaked from a redirect must not authenticate API calls."""
    with pytest.raises(HTTPException):
        verify_service_token(create_oauth_state(TENANT_ID, "hubspot"))


# ── OAuth State ───────────────────────────────────────────────────────────────


def test_oauth_state_carries_tenant():
    state = create_oauth_state(TENANT_ID, "bullhorn")

    assert decode_oauth_state(state, "bullhorn") == TENANT_ID


def test_oauth_state_is_bound_to_provider():
    state = create_oauth_state(TENANT_ID, "bullhorn")

    with pytest.raises(ValueError, match="provider"):
        decode_oauth_state(state, "hubspot")


def test_service_token_is_not_an_oauth_state():
    with pytest.raises(ValueError):
        decode_oauth_state(create_service_token(TENANT_ID), "hubspot")


def test_forged_oauth_state():
    with pytest.raises(ValueError, match="Invalid or expired"):
        decode_oauth_state("not.a.jwt", "hubspot")


# ── Routing Tokens ────────────────────────────────────────────────────────────


def test_routing_tokens_are_unique_and_url_safe():
    tokens = {generate_routing_token() for _ in range(50)}

    assert len(tokens) == 50
    assert all("/" not in t and "+" not in t for t in tokens)
