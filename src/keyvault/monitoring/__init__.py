# Monitoring Module - Usage analytics and health scoring

from .usage_monitor import UsageMonitor, health_status

__all__ = ["UsageMonitor", "health_status"]
