"""Engine exceptions, mapped to HTTP status codes in ``main``."""

from __future__ import annotations

from typing import List, Optional


class FunnelEngineError(Exception):
    """Base class. ``retryable`` tells callers whether a retry can succeed."""

    retryable = False


class FunnelNotFoundError(FunnelEngineError):
    def __init__(self, funnel_id: str, detail: Optional[str] = None):
        self.funnel_id = funnel_id
        super().__init__(detail or f"Funnel {funnel_id} not found")


class FunnelValidationError(FunnelEngineError):
    """A funnel definition failed publish-time validation."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid funnel definition")


class InvalidActivityRecord(FunnelEngineError):
    """A single activity record is unusable (missing identity or timestamp)."""


class QueryCancelledError(FunnelEngineError):
    """A query hit its deadline or was cancelled. No partial result is returned."""

    retryable = True


class WorkerPoolSaturatedError(FunnelEngineError):
    retryable = True

    def __init__(self, pending: int):
        self.pending = pending
        super().__init__(f"Query pool saturated ({pending} queries pending), retry later")
