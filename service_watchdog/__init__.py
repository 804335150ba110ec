"""Service watchdog: health checks, automatic remediation and uptime history."""

from .models import DaySummary, Service, StatusLogEntry
from .retry import Outcome
from .watchdog import Watchdog

__all__ = ["DaySummary", "Outcome", "Service", "StatusLogEntry", "Watchdog"]
