"""
Monitoring and observability package.
"""

from perpl_mm.monitoring.health import HealthChecker, start_metrics_server
from perpl_mm.monitoring.metrics_rich import BotMetrics

__all__ = [
    "BotMetrics",
    "HealthChecker",
    "start_metrics_server",
]
