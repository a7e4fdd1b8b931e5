"""Exceptions raised by the dashboard service."""
from __future__ import annotations


class DashboardError(Exception):
    """Base class for dashboard failures."""


class ServiceNotInitializedError(DashboardError):
    """A mutation was attempted before the first ``refresh()``."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"{operation} called before the dashboard was refreshed")
        self.operation = operation


class FetchError(DashboardError):
    """The raw batch could not be fetched; carries a user-facing message."""
