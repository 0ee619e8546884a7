import json
import os
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

import pytest

# Must be set before any metrics_aggregator module that reads configuration is imported.
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("AWS_SECURITY_TOKEN", "testing")
os.environ.setdefault("AWS_SESSION_TOKEN", "testing")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
os.environ.setdefault("AWS_REGION", "us-east-1")
os.environ.setdefault("USE_MOTO", "1")
os.environ.setdefault("METRICS_TABLE", "test-metrics")
os.environ.setdefault("DEDUP_TABLE", "test-processed-events")
os.environ.setdefault("QUEUE_URL", "https://sqs.us-east-1.amazonaws.com/123456789012/test-events")
os.environ.setdefault("DEAD_LETTER_QUEUE_URL", "https://sqs.us-east-1.amazonaws.com/123456789012/test-events-dlq")
os.environ.setdefault("POWERTOOLS_METRICS_NAMESPACE", "TestMetricsPipeline")
os.environ.setdefault("POWERTOOLS_SERVICE_NAME", "metrics-aggregator-test")

import boto3  # noqa: E402
from aws_lambda_powertools import Logger  # noqa: E402
from moto import mock_aws  # noqa: E402

from metrics_aggregator.aggregator import Aggregator  # noqa: E402
from metrics_aggregator.core import PipelineContext  # noqa: E402
from metrics_aggregator.errors import StoreUnavailableError, VersionConflictError  # noqa: E402
from metrics_aggregator.model import (  # noqa: E402
    ClaimResult,
    ClaimStatus,
    MetricsDocument,
    QueueMessage,
    RecordState,
    ScopeTarget,
    zero_counters,
)
from metrics_aggregator.reputation import ReputationMonitor  # noqa: E402

METRICS_TABLE = os.environ["METRICS_TABLE"]
DEDUP_TABLE = os.environ["DEDUP_TABLE"]


# --- In-memory fakes implementing the store contracts ---

class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryMetricsStore:
    """ConditionalStore with version checks and injectable conflicts/outages."""

    def __init__(self):
        self._docs: Dict[str, MetricsDocument] = {}
        self._lock = threading.Lock()
        self.conflicts_to_inject = 0
        self.always_conflict: Set[str] = set()
        self.unavailable: Set[str] = set()
        self.successful_puts = 0

    @staticmethod
    def _copy(doc: MetricsDocument) -> MetricsDocument:
        return MetricsDocument(doc.scope, doc.scope_id, dict(doc.counters), doc.version, doc.last_updated_at)

    def get_document(self, target: ScopeTarget) -> Optional[MetricsDocument]:
        with self._lock:
            if target.key in self.unavailable:
                raise StoreUnavailableError("metrics store", "injected outage")
            doc = self._docs.get(target.key)
            return self._copy(doc) if doc else None

    def conditional_put(self, target, counters, expected_version, updated_at) -> MetricsDocument:
        with self._lock:
            if target.key in self.unavailable:
                raise StoreUnavailableError("metrics store", "injected outage")
            if target.key in self.always_conflict:
                raise VersionConflictError(target.key, expected_version)
            if self.conflicts_to_inject > 0:
                self.conflicts_to_inject -= 1
                raise VersionConflictError(target.key, expected_version)
            current = self._docs.get(target.key)
            if (current.version if current else 0) != expected_version:
                raise VersionConflictError(target.key, expected_version)
            doc = MetricsDocument(target.scope, target.scope_id, dict(counters), expected_version + 1, updated_at)
            self._docs[target.key] = doc
            self.successful_puts += 1
            return self._copy(doc)

    def counters(self, target: ScopeTarget) -> Dict[str, int]:
        doc = self._docs.get(target.key)
        return dict(doc.counters) if doc else zero_counters()


@dataclass
class _Record:
    state: RecordState
    claim_expires_at: float
    applied_scopes: Set[str]
    attempts: int = 1


class InMemoryDedupStore:
    """Same claim/complete semantics as DedupStore, with a controllable clock."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock or FakeClock()
        self.records: Dict[str, _Record] = {}
        self._lock = threading.Lock()
        self.acquired: List[str] = []
        self.unavailable = False

    def claim(self, event_id: str, ttl_seconds: int) -> ClaimResult:
        with self._lock:
            if self.unavailable:
                raise StoreUnavailableError("dedup store", "injected outage")
            now = self.clock()
            record = self.records.get(event_id)
            if record is None:
                self.records[event_id] = _Record(RecordState.CLAIMED, now + ttl_seconds, set())
            elif record.state is RecordState.COMPLETED:
                return ClaimResult(ClaimStatus.ALREADY_COMPLETED)
            elif record.claim_expires_at > now:
                return ClaimResult(ClaimStatus.ALREADY_CLAIMED)
            else:
                record.claim_expires_at = now + ttl_seconds
                record.attempts += 1
            self.acquired.append(event_id)
            return ClaimResult(ClaimStatus.ACQUIRED, frozenset(self.records[event_id].applied_scopes))

    def mark_scope_applied(self, event_id: str, scope_key: str) -> bool:
        with self._lock:
            record = self.records.get(event_id)
            if record is None:
                return False
            record.applied_scopes.add(scope_key)
            return True

    def complete(self, event_id: str) -> None:
        with self._lock:
            record = self.records.setdefault(event_id, _Record(RecordState.COMPLETED, 0, set()))
            record.state = RecordState.COMPLETED


class RecordingRouter:
    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.routed: List[tuple] = []

    def route(self, message: QueueMessage, reason: str) -> bool:
        self.routed.append((message, reason))
        return self.succeed


# --- Fixtures ---

@pytest.fixture
def logger() -> Logger:
    return Logger(service="metrics-aggregator-test", level="DEBUG")


@pytest.fixture
def metrics_store() -> InMemoryMetricsStore:
    return InMemoryMetricsStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dedup_store(clock) -> InMemoryDedupStore:
    return InMemoryDedupStore(clock)


@pytest.fixture
def router() -> RecordingRouter:
    return RecordingRouter()


@pytest.fixture
def pipeline(metrics_store, dedup_store, router, logger) -> PipelineContext:
    aggregator = Aggregator(metrics_store, logger, max_attempts=5, base_delay_seconds=0, sleep=lambda s: None)
    return PipelineContext(
        dedup=dedup_store,
        aggregator=aggregator,
        router=router,
        reputation=ReputationMonitor(logger),
        logger=logger,
        claim_ttl_seconds=30,
        claim_recheck_attempts=2,
        claim_recheck_delay_seconds=0,
        sleep=lambda s: None,
    )


@pytest.fixture
def aws():
    with mock_aws():
        yield


@pytest.fixture
def dynamodb(aws):
    resource = boto3.resource("dynamodb", region_name="us-east-1")
    resource.create_table(
        TableName=METRICS_TABLE,
        KeySchema=[
            {"AttributeName": "scope", "KeyType": "HASH"},
            {"AttributeName": "scopeId", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "scope", "AttributeType": "S"},
            {"AttributeName": "scopeId", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )
    resource.create_table(
        TableName=DEDUP_TABLE,
        KeySchema=[{"AttributeName": "eventId", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "eventId", "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
    )
    return resource


@pytest.fixture
def sqs(aws):
    return boto3.client("sqs", region_name="us-east-1")


@pytest.fixture
def queue_urls(sqs) -> Dict[str, str]:
    return {
        "source": sqs.create_queue(QueueName="test-events")["QueueUrl"],
        "dlq": sqs.create_queue(QueueName="test-events-dlq")["QueueUrl"],
    }


def make_message(body: str, message_id: str = "msg-1", receive_count: int = 1) -> QueueMessage:
    return QueueMessage(message_id=message_id, receipt_handle=f"rh-{message_id}", body=body, receive_count=receive_count)


def envelope(event_id: str, event_type: str, targets=None, payload=None, timestamp: str = "2026-10-18T09:30:00Z") -> str:
    body = {"eventId": event_id, "type": event_type, "timestamp": timestamp, "payload": payload or {}}
    if targets is not None:
        body["targets"] = targets
    return json.dumps(body)


def campaign(campaign_id: str) -> dict:
    return {"scope": "CAMPAIGN", "scopeId": campaign_id}


GLOBAL = {"scope": "GLOBAL"}
