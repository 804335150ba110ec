from __future__ import annotations


class WatchdogError(Exception):
    """Base class for watchdog errors."""


class PersistenceFailure(WatchdogError):
    """A storage read or write failed. Aborts the current tick only."""


class NotificationFailure(WatchdogError):
    """An outbound webhook call failed. Captured, logged and swallowed."""


class ConfigurationGap(WatchdogError):
    """A webhook or token is not configured; the outbound call is skipped."""
