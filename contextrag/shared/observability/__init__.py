# Observability package
from .logging import (
    get_correlation_id,
    get_logger,
    set_correlation_id,
    setup_logging,
)
from .metrics import get_metrics, setup_metrics

__all__ = [
    "get_logger",
    "setup_logging",
    "get_correlation_id",
    "set_correlation_id",
    "setup_metrics",
    "get_metrics",
]
