"""
Monitoring Module

Prometheus metrics and component health checks.
"""

from .health_checker import HealthChecker
from .metrics_collector import MetricsCollector

__all__ = ["HealthChecker", "MetricsCollector"]
