from __future__ import annotations


class KeygateError(Exception):
    """Base error for keygate."""


class ConfigError(KeygateError):
    """Missing or invalid required configuration."""


class KeyBackendConfigError(ConfigError):
    """Credential backend URL or admin token is not configured."""


class IdentityConfigError(ConfigError):
    """OAuth client credentials are not configured."""


class SessionConfigError(ConfigError):
    """Session signing or key sealing secret is not configured."""


class KeyBackendError(KeygateError):
    """Credential backend call failed (network, non-2xx, business error, bad body)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class KeyReactivationError(KeyBackendError):
    """Re-enabling an auto-disabled key during login failed."""


class IdentityProviderError(KeygateError):
    """OAuth code exchange or user info lookup failed."""


class TrackedUserNotFound(KeygateError):
    """Policy evaluation requested for a user that does not exist."""


class LoginRejected(KeygateError):
    """Login flow refused the user; category maps to a callback error code."""

    def __init__(self, category: str, reason: str | None = None) -> None:
        super().__init__(category if reason is None else f"{category}: {reason}")
        self.category = category
        self.reason = reason
