"""
Error taxonomy for the sync core.

Every error carries an ``origin`` so callers can send the user to the right
remedy: ``internal`` means the local configuration must be edited,
``external`` means the platform is unreachable or the connection must be
re-established.
"""

from __future__ import annotations

from dataclasses import dataclass

INTERNAL = "internal"
EXTERNAL = "external"


class StockRouteError(Exception):
    """Base class for sync-core failures."""

    origin = INTERNAL

    def __init__(self, message: str, *, reasons: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.reasons = list(reasons or [])


class ConfigInvalid(StockRouteError):
    """Local configuration was rejected at save time."""


class InvalidRoutingConfig(ConfigInvalid):
    """Routing cannot produce a destination warehouse."""


class VerificationFailed(StockRouteError):
    """Saved configuration was missing or incomplete on read-back."""


class SyncAlreadyRunning(StockRouteError):
    """A run for the same (channel, entity kind) is already in flight."""


class PlatformFetchError(StockRouteError):
    """Network or HTTP failure talking to an external platform."""

    origin = EXTERNAL

    def __init__(self, message: str, *, status_code: int | None = None, reasons: list[str] | None = None):
        super().__init__(message, reasons=reasons)
        self.status_code = status_code


class PlatformAuthError(PlatformFetchError):
    """The platform rejected the stored credentials (reconnect required)."""


class InvalidOAuthState(StockRouteError):
    """OAuth callback carried an unknown, expired, or mismatched state token."""

    origin = EXTERNAL


@dataclass(frozen=True)
class TransformWarning:
    """Non-fatal mapping issue; the record still merges with a default."""

    external_id: str
    field: str
    value: str | None
    message: str
