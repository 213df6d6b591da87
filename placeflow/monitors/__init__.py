"""
Placeflow - Monitoring

Passive observers of the job queue: error classification, metrics
snapshots and queue store health.
"""

from .error_classifier import ErrorClassifier, classify
from .metrics_collector import MetricsCollector
from .store_health import StoreHealth, get_store_health

__all__ = [
    "ErrorClassifier",
    "classify",
    "MetricsCollector",
    "StoreHealth",
    "get_store_health",
]
