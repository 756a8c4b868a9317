"""HTTP adapter for the remote credential backend.

The backend exposes server actions as ``POST /api/actions/{module}/{action}``
and answers ``{"ok": true, "data": ...}`` or ``{"ok": false, "error": "..."}``.
Every failure surfaces as :class:`KeyBackendError`; callers decide the
fallback. The only retry is a single session refresh on ``401`` when the
backend is configured for session authentication.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
import time
from typing import Any, Protocol

import httpx

from keygate.core.config import get_settings
from keygate.core.errors import KeyBackendConfigError, KeyBackendError
from keygate.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

AUTH_MODE_TOKEN = "token"
AUTH_MODE_SESSION = "session"


@dataclass(frozen=True)
class BackendUser:
    id: int
    name: str
    is_enabled: bool
    role: str


@dataclass(frozen=True)
class BackendKey:
    id: int
    name: str
    key: str


@dataclass(frozen=True)
class ProvisionedUser:
    user: BackendUser
    key: BackendKey


@dataclass(frozen=True)
class KeyUsage:
    key_id: int
    used: float
    limit: float
    remaining: float

    def as_dict(self) -> dict[str, float]:
        return {"used": self.used, "limit": self.limit, "remaining": self.remaining}


@dataclass(frozen=True)
class BackendSession:
    id: str
    user_id: int | None
    username: str
    model: str
    started_at: str | None
    status: str | None = None


@dataclass(frozen=True)
class OverviewStats:
    total_users: int
    active_users: int
    total_keys: int
    active_keys: int
    active_sessions: int
    total_requests: int


class KeyBackend(Protocol):
    # Capability set the key policy consumes; implemented by the HTTP client and test fakes.
    async def add_user(self, name: str) -> ProvisionedUser: ...

    async def set_user_enabled(self, user_id: int, enabled: bool) -> None: ...

    async def set_key_enabled(self, key_id: int, enabled: bool) -> None: ...

    async def get_key_usage(self, key_id: int) -> KeyUsage: ...

    async def list_active_sessions(self) -> list[BackendSession]: ...

    async def get_overview_stats(self) -> OverviewStats: ...


def _number(value: Any) -> float:
    # Missing, non-numeric or non-finite counters read as zero.
    if isinstance(value, bool) or value is None:
        return 0.0
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return 0.0
    return parsed if math.isfinite(parsed) else 0.0


def _int(value: Any) -> int:
    return int(_number(value))


def _error_message(response: httpx.Response) -> str:
    # Prefer the backend's own error text over the HTTP reason phrase.
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or response.reason_phrase)
    return response.reason_phrase


class KeyBackendClient:
    def __init__(
        self,
        *,
        base_url: str | None = None,
        admin_token: str | None = None,
        auth_mode: str | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._base_url = base_url if base_url is not None else settings.key_backend_url
        self._admin_token = admin_token if admin_token is not None else settings.key_backend_admin_token
        self._auth_mode = (auth_mode or settings.key_backend_auth_mode).lower()
        self._timeout_s = timeout_s if timeout_s is not None else settings.key_backend_timeout_ms / 1000.0
        self._login_path = settings.key_backend_session_login_path
        self._session_cookie = settings.key_backend_session_cookie
        # Injected in tests to route requests through httpx.MockTransport.
        self._transport = transport
        self._session_token: str | None = None
        self._session_lock = asyncio.Lock()

    def _resolved_base_url(self) -> str:
        if not self._base_url:
            raise KeyBackendConfigError("KEY_BACKEND_URL is not set")
        return self._base_url.rstrip("/")

    def _resolved_admin_token(self) -> str:
        if not self._admin_token:
            raise KeyBackendConfigError("KEY_BACKEND_ADMIN_TOKEN is not set")
        return self._admin_token

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport)

    async def _login(self) -> str:
        # Exchange the admin credential for a backend session token.
        url = f"{self._resolved_base_url()}{self._login_path}"
        try:
            async with self._client() as client:
                response = await client.post(url, json={"key": self._resolved_admin_token()})
        except httpx.HTTPError as exc:
            raise KeyBackendError(f"session login failed: {exc}") from exc
        if response.status_code >= 400:
            raise KeyBackendError(
                f"session login failed [{response.status_code}]: {_error_message(response)}",
                status_code=response.status_code,
            )
        token = response.cookies.get(self._session_cookie)
        if not token:
            try:
                payload = response.json()
            except ValueError:
                payload = {}
            if isinstance(payload, dict):
                data = payload.get("data")
                token = payload.get("token") or (data.get("token") if isinstance(data, dict) else None)
        if not token:
            raise KeyBackendError("session login response did not include a token")
        increment_counter("key_backend_session_logins_total")
        return str(token)

    async def _current_session_token(self) -> str:
        async with self._session_lock:
            if self._session_token is None:
                self._session_token = await self._login()
            return self._session_token

    async def _refresh_session_token(self, stale: str) -> str:
        # Only one refresh per expired token; concurrent callers reuse the new one.
        async with self._session_lock:
            if self._session_token is None or self._session_token == stale:
                self._session_token = await self._login()
            return self._session_token

    def _auth_headers(self, token: str) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {token}"}
        if self._auth_mode == AUTH_MODE_SESSION:
            headers["Cookie"] = f"{self._session_cookie}={token}"
        return headers

    async def _post(self, url: str, body: dict[str, Any], token: str) -> httpx.Response:
        async with self._client() as client:
            return await client.post(url, json=body, headers=self._auth_headers(token))

    async def _action(self, module: str, action: str, body: dict[str, Any] | None = None) -> Any:
        url = f"{self._resolved_base_url()}/api/actions/{module}/{action}"
        payload = body or {}
        integration = f"key_backend.{module}.{action}"
        start = time.monotonic()
        success = False
        try:
            if self._auth_mode == AUTH_MODE_SESSION:
                token = await self._current_session_token()
                response = await self._post(url, payload, token)
                if response.status_code == 401:
                    logger.info("key_backend_session_expired action=%s/%s", module, action)
                    token = await self._refresh_session_token(token)
                    response = await self._post(url, payload, token)
            else:
                response = await self._post(url, payload, self._resolved_admin_token())
            data = self._unwrap(module, action, response)
            success = True
            return data
        except httpx.HTTPError as exc:
            raise KeyBackendError(f"{module}/{action} request failed: {exc}") from exc
        finally:
            record_external_call(
                integration=integration,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )

    @staticmethod
    def _unwrap(module: str, action: str, response: httpx.Response) -> Any:
        if response.status_code >= 400:
            raise KeyBackendError(
                f"{module}/{action} failed [{response.status_code}]: {_error_message(response)}",
                status_code=response.status_code,
            )
        try:
            result = response.json()
        except ValueError as exc:
            raise KeyBackendError(
                f"{module}/{action} returned a non-JSON body", status_code=response.status_code
            ) from exc
        if not isinstance(result, dict):
            raise KeyBackendError(
                f"{module}/{action} returned an unexpected body", status_code=response.status_code
            )
        if result.get("ok") is False:
            raise KeyBackendError(
                f"{module}/{action} rejected: {result.get('error') or 'unknown error'}",
                status_code=response.status_code,
            )
        return result.get("data")

    async def add_user(self, name: str) -> ProvisionedUser:
        """Create a backend user; the backend issues a default ``sk-`` key with it."""
        data = await self._action("users", "addUser", {"name": name})
        if not isinstance(data, dict):
            raise KeyBackendError("users/addUser returned no data")
        raw_user = data.get("user")
        raw_key = data.get("defaultKey")
        if not isinstance(raw_user, dict) or not isinstance(raw_key, dict) or not raw_key.get("key"):
            raise KeyBackendError("users/addUser response is missing user or defaultKey")
        return ProvisionedUser(
            user=BackendUser(
                id=_int(raw_user.get("id")),
                name=str(raw_user.get("name") or name),
                is_enabled=bool(raw_user.get("isEnabled", True)),
                role=str(raw_user.get("role") or "user"),
            ),
            key=BackendKey(
                id=_int(raw_key.get("id")),
                name=str(raw_key.get("name") or ""),
                key=str(raw_key["key"]),
            ),
        )

    async def set_user_enabled(self, user_id: int, enabled: bool) -> None:
        await self._action("users", "editUser", {"id": user_id, "isEnabled": enabled})

    async def set_key_enabled(self, key_id: int, enabled: bool) -> None:
        # editKey is a plain assignment, so re-applying the current state is harmless.
        await self._action("keys", "editKey", {"id": key_id, "isEnabled": enabled})

    async def get_key_usage(self, key_id: int) -> KeyUsage:
        data = await self._action("keys", "getKeyLimitUsage", {"keyId": key_id})
        if data is not None and not isinstance(data, dict):
            raise KeyBackendError("keys/getKeyLimitUsage returned an unexpected body")
        data = data or {}
        return KeyUsage(
            key_id=key_id,
            used=_number(data.get("used")),
            limit=_number(data.get("limit")),
            remaining=_number(data.get("remaining")),
        )

    async def list_active_sessions(self) -> list[BackendSession]:
        data = await self._action("statistics", "getActiveSessions")
        if not isinstance(data, list):
            raise KeyBackendError("statistics/getActiveSessions returned an unexpected body")
        sessions: list[BackendSession] = []
        for item in data:
            if not isinstance(item, dict):
                continue
            user_id = item.get("userId")
            sessions.append(
                BackendSession(
                    id=str(item.get("id") or ""),
                    user_id=_int(user_id) if user_id is not None else None,
                    username=str(item.get("username") or ""),
                    model=str(item.get("model") or ""),
                    started_at=item.get("startedAt"),
                    status=item.get("status"),
                )
            )
        return sessions

    async def get_overview_stats(self) -> OverviewStats:
        data = await self._action("statistics", "getOverview")
        if not isinstance(data, dict):
            raise KeyBackendError("statistics/getOverview returned an unexpected body")
        return OverviewStats(
            total_users=_int(data.get("totalUsers")),
            active_users=_int(data.get("activeUsers")),
            total_keys=_int(data.get("totalKeys")),
            active_keys=_int(data.get("activeKeys")),
            active_sessions=_int(data.get("activeSessions")),
            total_requests=_int(data.get("totalRequests")),
        )


_key_backend: KeyBackendClient | None = None


def get_key_backend() -> KeyBackendClient:
    # Cache the client so the backend session token is shared across requests.
    global _key_backend
    if _key_backend is None:
        _key_backend = KeyBackendClient()
    return _key_backend


def reset_key_backend() -> None:
    # Reset cached clients for deterministic tests.
    global _key_backend
    _key_backend = None
