"""
Core business logic for the Metrics Aggregation Pipeline.

These functions hold no global state and make no AWS calls of their own. They
receive every dependency, including the Powertools logger, through a
PipelineContext built by the entry points (app.py and worker.py), which keeps
them unit-testable with in-memory fakes.

Per message the state machine is:

    Received -> Classified -> Duplicate (ack)
                           -> Claimed -> Aggregating -> Completed (ack)
                                                     -> Failed, retryable (no ack)
             -> Malformed -> Dead-lettered (ack)
"""

import time
from dataclasses import dataclass
from typing import Callable

from aws_lambda_powertools import Logger, Metrics
from aws_lambda_powertools.metrics import MetricUnit

from . import classifier
from .aggregator import Aggregator
from .dead_letter import DeadLetterRouter
from .dedup import DedupStore
from .errors import (
    ClaimContentionError,
    MalformedEventError,
    RetryBudgetExhaustedError,
    StoreUnavailableError,
)
from .model import BatchSummary, ClaimResult, ClaimStatus, Event, MessageOutcome, OutcomeStatus, QueueMessage
from .reputation import ReputationMonitor


@dataclass
class PipelineContext:
    """Everything process_message needs, wired once per cold start."""

    dedup: DedupStore
    aggregator: Aggregator
    router: DeadLetterRouter
    reputation: ReputationMonitor
    logger: Logger
    claim_ttl_seconds: int = 60
    claim_recheck_attempts: int = 2
    claim_recheck_delay_seconds: float = 0.2
    sleep: Callable[[float], None] = time.sleep


@dataclass
class _EventStats:
    conflicts: int = 0
    reputation_breaches: int = 0


def claim_with_recheck(event_id: str, ctx: PipelineContext) -> ClaimResult:
    """
    Claims an event, waiting briefly while another worker holds the claim.

    Raises:
        ClaimContentionError: If the claim is still held after all rechecks.
    """
    for attempt in range(ctx.claim_recheck_attempts + 1):
        claim = ctx.dedup.claim(event_id, ctx.claim_ttl_seconds)
        if claim.status is not ClaimStatus.ALREADY_CLAIMED:
            return claim
        if attempt < ctx.claim_recheck_attempts:
            ctx.sleep(ctx.claim_recheck_delay_seconds)
    raise ClaimContentionError(event_id)


def aggregate_event(event: Event, ctx: PipelineContext, stats: _EventStats) -> OutcomeStatus:
    """
    Claims the event, applies its delta to every target scope and completes it.

    The claim guards all target scopes as one unit of work: the record is only
    marked COMPLETED after every scope succeeded. Each finished scope is
    recorded on the claim, so a retried attempt skips it even when marking the
    event COMPLETED is what failed.

    Raises:
        ClaimContentionError: Another worker is processing the event.
        RetryBudgetExhaustedError: A scope update lost too many version races.
        StoreUnavailableError: The dedup or metrics store failed.
    """
    claim = claim_with_recheck(event.event_id, ctx)
    if claim.status is ClaimStatus.ALREADY_COMPLETED:
        return OutcomeStatus.DUPLICATE

    for target in event.targets:
        if target.key in claim.applied_scopes:
            ctx.logger.info("Scope already applied by an earlier attempt.", extra={"eventId": event.event_id, "scope": target.key})
            continue

        result = ctx.aggregator.apply(target, event.delta)
        stats.conflicts += result.conflicts
        if not result.success:
            raise RetryBudgetExhaustedError(target.key, result.attempts)

        ctx.dedup.mark_scope_applied(event.event_id, target.key)
        if result.document is not None:
            stats.reputation_breaches += len(ctx.reputation.evaluate(result.document, event.delta))

    ctx.dedup.complete(event.event_id)
    return OutcomeStatus.PROCESSED


def process_message(message: QueueMessage, ctx: PipelineContext) -> MessageOutcome:
    """
    Drives one message through classify -> dedup -> aggregate.

    Args:
        message: The received queue message.
        ctx: The wired dependencies.

    Returns:
        Exactly one outcome. PROCESSED, DUPLICATE and DEAD_LETTERED messages may
        be acknowledged; RETRY and DEFERRED messages must be left on the queue.
    """
    try:
        event = classifier.classify(message.body)
    except MalformedEventError as e:
        ctx.logger.error(
            "Malformed event.",
            extra={"messageId": message.message_id, "eventId": e.event_id, "reason": e.reason},
        )
        if ctx.router.route(message, e.reason):
            return MessageOutcome(message, OutcomeStatus.DEAD_LETTERED, event_id=e.event_id, reason=e.reason)
        return MessageOutcome(message, OutcomeStatus.RETRY, event_id=e.event_id, reason=f"dead-letter routing failed: {e.reason}")

    stats = _EventStats()
    try:
        status = aggregate_event(event, ctx, stats)
    except ClaimContentionError as e:
        ctx.logger.info("Event still claimed elsewhere; deferring.", extra={"messageId": message.message_id, "eventId": event.event_id})
        return MessageOutcome(message, OutcomeStatus.DEFERRED, event_id=event.event_id, reason=str(e))
    except (StoreUnavailableError, RetryBudgetExhaustedError) as e:
        ctx.logger.warning(
            "Transient failure; message will be redelivered.",
            extra={"messageId": message.message_id, "eventId": event.event_id, "error": str(e)},
        )
        return MessageOutcome(
            message, OutcomeStatus.RETRY, event_id=event.event_id, reason=str(e), conflicts=stats.conflicts
        )

    if status is OutcomeStatus.DUPLICATE:
        ctx.logger.info("Duplicate event skipped.", extra={"messageId": message.message_id, "eventId": event.event_id})
    else:
        ctx.logger.info(
            "Event aggregated.",
            extra={"eventId": event.event_id, "type": event.type.value, "scopes": [t.key for t in event.targets]},
        )
    return MessageOutcome(
        message,
        status,
        event_id=event.event_id,
        conflicts=stats.conflicts,
        reputation_breaches=stats.reputation_breaches,
    )


def emit_metrics(metrics: Metrics, summary: BatchSummary, latency_ms: int) -> None:
    """Adds one batch's counts to the Powertools metrics buffer (only non-zero counts)."""
    counts = {
        "MessagesProcessed": summary.processed,
        "DuplicatesSkipped": summary.duplicates,
        "MessagesDeadLettered": summary.dead_lettered,
        "MessagesRetried": summary.retried,
        "MessagesDeferred": summary.deferred,
        "VersionConflicts": summary.version_conflicts,
        "ReputationRisk": summary.reputation_breaches,
    }
    for name, value in counts.items():
        if value > 0:
            metrics.add_metric(name=name, unit=MetricUnit.Count, value=value)
    metrics.add_metric(name="BatchLatencyMs", unit=MetricUnit.Milliseconds, value=latency_ms)
