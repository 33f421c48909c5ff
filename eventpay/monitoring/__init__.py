"""Monitoring module for logging and metrics."""
from eventpay.monitoring.logging import redact_sensitive, setup_logging
from eventpay.monitoring.metrics import MetricsCollector, metrics

__all__ = ["setup_logging", "redact_sensitive", "MetricsCollector", "metrics"]
