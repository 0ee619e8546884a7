"""Exception types for the metrics pipeline, split into retryable and permanent kinds."""

from typing import Optional


class MetricsPipelineError(Exception):
    """Base exception for all pipeline errors."""

    retryable = False


class MalformedEventError(MetricsPipelineError):
    """Raised when a message body cannot be classified. Never retried."""

    def __init__(self, reason: str, event_id: Optional[str] = None):
        self.reason = reason
        self.event_id = event_id
        super().__init__(f"Malformed event: {reason}")


class ClaimContentionError(MetricsPipelineError):
    """Raised when another worker holds an unexpired claim on the event."""

    retryable = True

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event {event_id} is claimed by another worker")


class VersionConflictError(MetricsPipelineError):
    """Raised when an optimistic write lost the race to a concurrent writer."""

    retryable = True

    def __init__(self, scope_key: str, expected_version: int):
        self.scope_key = scope_key
        self.expected_version = expected_version
        super().__init__(f"Version conflict on {scope_key} (expected version {expected_version})")


class StoreUnavailableError(MetricsPipelineError):
    """Raised for network or service failures of the dedup or metrics store."""

    retryable = True

    def __init__(self, store: str, message: str):
        self.store = store
        super().__init__(f"{store} unavailable: {message}")


class RetryBudgetExhaustedError(MetricsPipelineError):
    """Raised when the aggregator gave up after its bounded attempts."""

    retryable = True

    def __init__(self, scope_key: str, attempts: int):
        self.scope_key = scope_key
        self.attempts = attempts
        super().__init__(f"Gave up updating {scope_key} after {attempts} attempts")
