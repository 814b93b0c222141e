"""Logging, metrics and health checks."""
from .health import HealthCheck, HealthCheckError
from .logging import get_logger, setup_logging
from .metrics import MetricsCollector, metrics

__all__ = [
    "HealthCheck",
    "HealthCheckError",
    "MetricsCollector",
    "get_logger",
    "metrics",
    "setup_logging",
]
