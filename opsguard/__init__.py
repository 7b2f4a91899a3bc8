"""OpsGuard escalation and SLA engine."""

__version__ = "0.1.0"
