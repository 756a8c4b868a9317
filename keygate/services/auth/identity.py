"""OAuth authorization-code client for the external identity provider."""

from __future__ import annotations

from dataclasses import dataclass
import base64
import logging
import secrets
from typing import Any
from urllib.parse import urlencode

import httpx

from keygate.core.config import get_settings
from keygate.core.errors import IdentityConfigError, IdentityProviderError


logger = logging.getLogger(__name__)

CALLBACK_PATH = "/v1/auth/callback"


@dataclass(frozen=True)
class IdentityProfile:
    external_id: int
    username: str
    name: str | None
    avatar_template: str | None
    trust_level: int
    silenced: bool
    active: bool


def _client_credentials() -> tuple[str, str]:
    settings = get_settings()
    if not settings.oauth_client_id:
        raise IdentityConfigError("OAUTH_CLIENT_ID is not set")
    if not settings.oauth_client_secret:
        raise IdentityConfigError("OAUTH_CLIENT_SECRET is not set")
    return settings.oauth_client_id, settings.oauth_client_secret


def _timeout_s() -> float:
    return get_settings().key_backend_timeout_ms / 1000.0


def redirect_uri() -> str:
    return f"{get_settings().site_url.rstrip('/')}{CALLBACK_PATH}"


def generate_state() -> str:
    # Use a cryptographically secure value for the CSRF state cookie.
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("utf-8")


def build_authorize_url(state: str) -> str:
    client_id, _secret = _client_credentials()
    query = {
        "client_id": client_id,
        "redirect_uri": redirect_uri(),
        "response_type": "code",
        "state": state,
    }
    return f"{get_settings().oauth_authorize_url}?{urlencode(query)}"


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("error_description") or body.get("error") or response.reason_phrase)
    return response.reason_phrase


async def exchange_code(code: str, *, transport: httpx.AsyncBaseTransport | None = None) -> str:
    """Trade an authorization code for an access token.

    Client credentials travel as HTTP Basic auth; the redirect URI must match
    the one used to start the flow.
    """
    client_id, client_secret = _client_credentials()
    payload = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri(),
    }
    try:
        async with httpx.AsyncClient(timeout=_timeout_s(), transport=transport) as client:
            response = await client.post(
                get_settings().oauth_token_url,
                data=payload,
                auth=(client_id, client_secret),
            )
    except httpx.HTTPError as exc:
        raise IdentityProviderError(f"token exchange failed: {exc}") from exc
    if response.status_code >= 400:
        logger.warning("oauth_token_exchange_failed status=%s", response.status_code)
        raise IdentityProviderError(f"token exchange failed: {_error_text(response)}")
    try:
        body = response.json()
    except ValueError as exc:
        raise IdentityProviderError("token exchange returned a non-JSON body") from exc
    access_token = body.get("access_token") if isinstance(body, dict) else None
    if not access_token:
        raise IdentityProviderError("token exchange response missing access_token")
    return str(access_token)


def _parse_profile(body: Any) -> IdentityProfile:
    if not isinstance(body, dict) or not body.get("id") or not body.get("username"):
        raise IdentityProviderError("user info response is malformed")
    try:
        external_id = int(body["id"])
        trust_level = int(body.get("trust_level") or 0)
    except (TypeError, ValueError) as exc:
        raise IdentityProviderError("user info response is malformed") from exc
    return IdentityProfile(
        external_id=external_id,
        username=str(body["username"]),
        name=body.get("name"),
        avatar_template=body.get("avatar_template"),
        trust_level=trust_level,
        silenced=bool(body.get("silenced", False)),
        active=bool(body.get("active", True)),
    )


async def fetch_user_info(
    access_token: str, *, transport: httpx.AsyncBaseTransport | None = None
) -> IdentityProfile:
    try:
        async with httpx.AsyncClient(timeout=_timeout_s(), transport=transport) as client:
            response = await client.get(
                get_settings().oauth_userinfo_url,
                headers={"Authorization": f"Bearer {access_token}"},
            )
    except httpx.HTTPError as exc:
        raise IdentityProviderError(f"user info request failed: {exc}") from exc
    if response.status_code >= 400:
        logger.warning("oauth_userinfo_failed status=%s", response.status_code)
        raise IdentityProviderError(f"user info request failed [{response.status_code}]")
    try:
        body = response.json()
    except ValueError as exc:
        raise IdentityProviderError("user info returned a non-JSON body") from exc
    return _parse_profile(body)
