"""
Data models for the Metrics Aggregation Pipeline.

This module defines the core data structures used to pass information between
different parts of the application. Using enums, dataclasses and TypedDicts
keeps the data contracts explicit, statically checked by mypy, and
self-documenting.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, TypedDict

GLOBAL_SCOPE_ID = "global"

COUNTER_NAMES: Tuple[str, ...] = (
    "totalLeadsImported",
    "totalEmailsSent",
    "totalBounces",
    "totalHardBounces",
    "totalSoftBounces",
    "totalComplaints",
    "totalDelivered",
    "totalOpens",
    "totalClicks",
    "totalRejected",
    "totalDelayed",
    "totalVerificationPassed",
    "totalVerificationFailed",
    "totalSkipped",
    "totalErrors",
    "verifierCreditsUsed",
)


class SQSEventRecordAttributes(TypedDict, total=False):
    ApproximateReceiveCount: str


class SQSEventRecord(TypedDict, total=False):
    """
    Represents the structure of a single SQS message record from a Lambda event.

    This provides static type checking for message attributes, ensuring that any
    access to keys like 'messageId' or 'receiptHandle' is validated by mypy.
    """

    messageId: str
    receiptHandle: str
    body: str
    attributes: SQSEventRecordAttributes
    # Other SQS attributes are available but are not used by this application.


class Scope(str, Enum):
    GLOBAL = "GLOBAL"
    CAMPAIGN = "CAMPAIGN"


class EventType(str, Enum):
    LEAD_IMPORTED = "LEAD_IMPORTED"
    EMAIL_SENT = "EMAIL_SENT"
    HARD_BOUNCE = "HARD_BOUNCE"
    SOFT_BOUNCE = "SOFT_BOUNCE"
    COMPLAINT = "COMPLAINT"
    DELIVERED = "DELIVERED"
    OPENED = "OPENED"
    CLICKED = "CLICKED"
    REJECTED = "REJECTED"
    DELAYED = "DELAYED"
    VERIFICATION_PASSED = "VERIFICATION_PASSED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    SKIPPED = "SKIPPED"
    ERROR = "ERROR"


class ClaimStatus(str, Enum):
    ACQUIRED = "ACQUIRED"
    ALREADY_CLAIMED = "ALREADY_CLAIMED"
    ALREADY_COMPLETED = "ALREADY_COMPLETED"


class RecordState(str, Enum):
    CLAIMED = "CLAIMED"
    COMPLETED = "COMPLETED"


class OutcomeStatus(str, Enum):
    PROCESSED = "PROCESSED"
    DUPLICATE = "DUPLICATE"
    DEAD_LETTERED = "DEAD_LETTERED"
    RETRY = "RETRY"
    DEFERRED = "DEFERRED"

    @property
    def acknowledged(self) -> bool:
        """True when the message may be deleted from the source queue."""
        return self in (OutcomeStatus.PROCESSED, OutcomeStatus.DUPLICATE, OutcomeStatus.DEAD_LETTERED)


@dataclass(frozen=True)
class ScopeTarget:
    """One metrics document an event contributes to."""

    scope: Scope
    scope_id: str

    @classmethod
    def global_scope(cls) -> "ScopeTarget":
        return cls(Scope.GLOBAL, GLOBAL_SCOPE_ID)

    @classmethod
    def campaign(cls, campaign_id: str) -> "ScopeTarget":
        return cls(Scope.CAMPAIGN, campaign_id)

    @property
    def key(self) -> str:
        """Stable string form, used in the dedup record's applied-scope set."""
        return f"{self.scope.value}#{self.scope_id}"


class MetricsDelta(Mapping[str, int]):
    """
    An immutable, sparse set of non-negative counter increments.

    Counter names outside COUNTER_NAMES and negative or non-integer values are
    rejected on construction, so any delta that exists can only ever move
    counters upwards. Zero increments are dropped.
    """

    def __init__(self, increments: Optional[Mapping[str, int]] = None):
        cleaned: Dict[str, int] = {}
        for name, value in (increments or {}).items():
            if name not in COUNTER_NAMES:
                raise ValueError(f"Unknown counter '{name}'")
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"Increment for '{name}' must be an integer, got {value!r}")
            if value < 0:
                raise ValueError(f"Increment for '{name}' must not be negative, got {value}")
            if value:
                cleaned[name] = value
        self._increments = cleaned

    def __getitem__(self, name: str) -> int:
        return self._increments[name]

    def __iter__(self):
        return iter(self._increments)

    def __len__(self) -> int:
        return len(self._increments)

    def __repr__(self) -> str:
        return f"MetricsDelta({self._increments!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Mapping):
            return dict(self._increments) == dict(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(frozenset(self._increments.items()))

    def __add__(self, other: "MetricsDelta") -> "MetricsDelta":
        merged = dict(self._increments)
        for name, value in other.items():
            merged[name] = merged.get(name, 0) + value
        return MetricsDelta(merged)

    def apply_to(self, counters: Mapping[str, int]) -> Dict[str, int]:
        """Returns a full counter mapping with this delta added field-wise."""
        result = {name: int(counters.get(name, 0)) for name in COUNTER_NAMES}
        for name, value in self._increments.items():
            result[name] += value
        return result


def zero_counters() -> Dict[str, int]:
    return {name: 0 for name in COUNTER_NAMES}


@dataclass(frozen=True)
class Event:
    """A classified lifecycle event. Never persisted; only its processing record is."""

    event_id: str
    type: EventType
    targets: Tuple[ScopeTarget, ...]
    delta: MetricsDelta
    timestamp: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass
class MetricsDocument:
    """
    The stored counters of one scope.

    Attributes:
        scope: GLOBAL or CAMPAIGN.
        scope_id: "global" or the campaign identifier.
        counters: All counter values; missing counters read as 0.
        version: Optimistic-concurrency token. 0 means the document does not exist yet.
        last_updated_at: Timestamp of the last successful update, if any.
    """

    scope: Scope
    scope_id: str
    counters: Dict[str, int] = field(default_factory=zero_counters)
    version: int = 0
    last_updated_at: Optional[datetime] = None

    @classmethod
    def empty(cls, target: ScopeTarget) -> "MetricsDocument":
        return cls(scope=target.scope, scope_id=target.scope_id)

    @property
    def target(self) -> ScopeTarget:
        return ScopeTarget(self.scope, self.scope_id)


@dataclass(frozen=True)
class ClaimResult:
    status: ClaimStatus
    applied_scopes: FrozenSet[str] = frozenset()


@dataclass
class AggregationResult:
    """Outcome of one Aggregator.apply call."""

    success: bool
    target: ScopeTarget
    attempts: int = 0
    conflicts: int = 0
    document: Optional[MetricsDocument] = None


@dataclass(frozen=True)
class QueueMessage:
    """A transport-neutral view of one received queue message."""

    message_id: str
    receipt_handle: str
    body: str
    receive_count: int = 1

    @classmethod
    def from_sqs_record(cls, record: SQSEventRecord) -> "QueueMessage":
        """Builds a message from a Lambda SQS event record."""
        attributes = record.get("attributes") or {}
        return cls(
            message_id=record["messageId"],
            receipt_handle=record.get("receiptHandle", ""),
            body=record.get("body", ""),
            receive_count=int(attributes.get("ApproximateReceiveCount", "1")),
        )


@dataclass
class MessageOutcome:
    """The final, per-message result reported back to the queue."""

    message: QueueMessage
    status: OutcomeStatus
    event_id: Optional[str] = None
    reason: Optional[str] = None
    conflicts: int = 0
    reputation_breaches: int = 0


@dataclass
class BatchSummary:
    """Per-status counts for one processed batch, used for logging and metrics."""

    total: int = 0

    processed: int = 0
    duplicates: int = 0
    dead_lettered: int = 0
    retried: int = 0
    deferred: int = 0
    version_conflicts: int = 0
    reputation_breaches: int = 0
    failed_message_ids: List[str] = field(default_factory=list)

    @classmethod
    def from_outcomes(cls, outcomes: List[MessageOutcome]) -> "BatchSummary":
        summary = cls(total=len(outcomes))
        for outcome in outcomes:
            summary.version_conflicts += outcome.conflicts
            summary.reputation_breaches += outcome.reputation_breaches
            if outcome.status is OutcomeStatus.PROCESSED:
                summary.processed += 1
            elif outcome.status is OutcomeStatus.DUPLICATE:
                summary.duplicates += 1
            elif outcome.status is OutcomeStatus.DEAD_LETTERED:
                summary.dead_lettered += 1
            elif outcome.status is OutcomeStatus.RETRY:
                summary.retried += 1
            else:
                summary.deferred += 1
            if not outcome.status.acknowledged:
                summary.failed_message_ids.append(outcome.message.message_id)
        return summary
