"""
Service layer: cache, error recovery and the worker pool.

The retrieval orchestrator lives in ``contextrag.services.retrieval_service``;
it is not re-exported here because the query stages import the cache and
recovery modules from this package.
"""

from .cache_layer import CacheLayer, InvalidationResult, InvalidationTrigger
from .error_recovery import ErrorRecoveryCoordinator
from .worker_pool import JobPriority, WorkerPool

__all__ = [
    "CacheLayer",
    "InvalidationResult",
    "InvalidationTrigger",
    "ErrorRecoveryCoordinator",
    "JobPriority",
    "WorkerPool",
]
