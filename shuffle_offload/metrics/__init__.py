"""Lifecycle metrics sinks."""
from .base import NoOpShuffleClientMetrics, ShuffleClientMetrics
from .logging import LoggingShuffleClientMetrics

__all__ = ["ShuffleClientMetrics", "NoOpShuffleClientMetrics", "LoggingShuffleClientMetrics"]
