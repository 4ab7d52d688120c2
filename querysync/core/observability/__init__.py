"""
Observability Module

Latency tracking and slow-operation reporting.
"""

from .performance_monitor import LatencyStats, OperationSample, PerformanceMonitor

__all__ = ["LatencyStats", "OperationSample", "PerformanceMonitor"]
