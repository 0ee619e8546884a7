"""
Applies metrics deltas to scope documents with an optimistic read-modify-write loop.

Counter updates are commutative and associative, so losing a version race is
always resolved by re-reading and re-adding; no compensation is ever needed.
"""

import random
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from aws_lambda_powertools import Logger

from .errors import VersionConflictError
from .metrics_store import ConditionalStore
from .model import AggregationResult, MetricsDelta, MetricsDocument, ScopeTarget


class Aggregator:
    """
    Adds deltas to scoped counter documents.

    Args:
        store: Any ConditionalStore implementation.
        logger: The Powertools Logger instance for structured logging.
        max_attempts: Upper bound on read-modify-write attempts per call.
        base_delay_seconds: First backoff delay; doubled on every conflict.
        max_elapsed_seconds: Upper bound on total time spent in one call.
        sleep: Injectable for tests.
        monotonic: Injectable for tests.
    """

    def __init__(
        self,
        store: ConditionalStore,
        logger: Logger,
        max_attempts: int = 5,
        base_delay_seconds: float = 0.05,
        max_elapsed_seconds: Optional[float] = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._logger = logger
        self._max_attempts = max_attempts
        self._base_delay = base_delay_seconds
        self._max_elapsed = max_elapsed_seconds
        self._sleep = sleep
        self._monotonic = monotonic

    def _backoff(self, attempt: int) -> float:
        # Exponential backoff with jitter: base, 2*base, 4*base ... plus up to one base of noise.
        return (self._base_delay * (2**attempt)) + random.uniform(0.0, self._base_delay)

    def apply(self, target: ScopeTarget, delta: MetricsDelta) -> AggregationResult:
        """
        Adds `delta` to the counters of `target`.

        Returns a successful result carrying the stored document, or an
        unsuccessful one once the attempt or time budget is spent. Store
        outages propagate as StoreUnavailableError.
        """
        if not delta:
            return AggregationResult(success=True, target=target, attempts=0)

        started = self._monotonic()
        conflicts = 0
        for attempt in range(self._max_attempts):
            current: MetricsDocument = self._store.get_document(target) or MetricsDocument.empty(target)
            new_counters = delta.apply_to(current.counters)
            try:
                stored = self._store.conditional_put(
                    target, new_counters, current.version, datetime.now(timezone.utc)
                )
            except VersionConflictError:
                conflicts += 1
                self._logger.debug(
                    "Version conflict; retrying.",
                    extra={"scope": target.key, "attempt": attempt + 1, "expectedVersion": current.version},
                )
                if attempt + 1 >= self._max_attempts:
                    break
                wait_time = self._backoff(attempt)
                if self._max_elapsed is not None and (self._monotonic() - started) + wait_time > self._max_elapsed:
                    self._logger.warning(
                        "Aggregation time budget exhausted.",
                        extra={"scope": target.key, "attempts": attempt + 1},
                    )
                    return AggregationResult(success=False, target=target, attempts=attempt + 1, conflicts=conflicts)
                self._sleep(wait_time)
                continue

            return AggregationResult(
                success=True, target=target, attempts=attempt + 1, conflicts=conflicts, document=stored
            )

        self._logger.warning(
            "Aggregation retry budget exhausted.",
            extra={"scope": target.key, "attempts": self._max_attempts, "conflicts": conflicts},
        )
        return AggregationResult(success=False, target=target, attempts=self._max_attempts, conflicts=conflicts)
