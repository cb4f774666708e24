"""Call execution and response aggregation."""

from .aggregator import ResponseAggregator
from .executor import CallExecutor

__all__ = ["CallExecutor", "ResponseAggregator"]
