"""Error taxonomy shared by the funnel services and the HTTP layer."""

from __future__ import annotations


class FunnelAnalyticsError(Exception):
    """Base class for funnel engine failures."""


class FunnelNotFoundError(FunnelAnalyticsError):
    """Funnel does not exist for the requesting owner (or tracking is disabled)."""

    def __init__(self, funnel_id: str, message: str = "Funnel not found"):
        super().__init__(message)
        self.funnel_id = funnel_id
        self.message = message


class InvalidInputError(FunnelAnalyticsError, ValueError):
    """Malformed request input, rejected before any data access."""


class StorageFailureError(FunnelAnalyticsError):
    """Definition/event store unreachable or erroring. Safe for the caller to retry."""
