"""Admission control, worker pools and location resolution."""
from .admission import AdmissionController, LaneSnapshot, TaskSnapshot, TransferFuture
from .pool import TransferOutcome, TransferWorkerPool
from .resolvers import LocationResolver, RedisLocationRegistry, TransportLocationResolver
from .retry import RetryPolicy, call_with_retries

__all__ = [
    "AdmissionController",
    "LaneSnapshot",
    "TaskSnapshot",
    "TransferFuture",
    "TransferOutcome",
    "TransferWorkerPool",
    "LocationResolver",
    "RedisLocationRegistry",
    "TransportLocationResolver",
    "RetryPolicy",
    "call_with_retries",
]
