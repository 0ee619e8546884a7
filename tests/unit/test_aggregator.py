"""Unit tests for the optimistic-concurrency Aggregator and the DynamoDB metrics store."""
import itertools
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest
from conftest import METRICS_TABLE

from metrics_aggregator.aggregator import Aggregator
from metrics_aggregator.errors import StoreUnavailableError, VersionConflictError
from metrics_aggregator.metrics_store import DynamoMetricsStore
from metrics_aggregator.model import MetricsDelta, Scope, ScopeTarget

GLOBAL_TARGET = ScopeTarget.global_scope()


def make_aggregator(store, logger, **kwargs):
    kwargs.setdefault("base_delay_seconds", 0)
    kwargs.setdefault("sleep", lambda s: None)
    return Aggregator(store, logger, **kwargs)


def test_absent_document_starts_at_zero_version_one(metrics_store, logger):
    result = make_aggregator(metrics_store, logger).apply(GLOBAL_TARGET, MetricsDelta({"totalEmailsSent": 1}))

    assert result.success
    assert result.attempts == 1
    assert result.document.version == 1
    assert result.document.counters["totalEmailsSent"] == 1
    assert result.document.last_updated_at is not None


def test_conflicts_are_retried_until_success(metrics_store, logger):
    metrics_store.conflicts_to_inject = 3
    sleeps = []
    aggregator = make_aggregator(metrics_store, logger, base_delay_seconds=0.01, sleep=sleeps.append)

    result = aggregator.apply(GLOBAL_TARGET, MetricsDelta({"totalDelivered": 1}))

    assert result.success
    assert (result.attempts, result.conflicts) == (4, 3)
    assert len(sleeps) == 3
    # Exponential growth: each wait is at least the doubled base.
    assert sleeps[0] >= 0.01 and sleeps[1] >= 0.02 and sleeps[2] >= 0.04
    assert metrics_store.counters(GLOBAL_TARGET)["totalDelivered"] == 1


def test_retry_budget_exhausted_leaves_counters_untouched(metrics_store, logger):
    metrics_store.always_conflict.add(GLOBAL_TARGET.key)
    result = make_aggregator(metrics_store, logger, max_attempts=5).apply(GLOBAL_TARGET, MetricsDelta({"totalOpens": 1}))

    assert not result.success
    assert (result.attempts, result.conflicts) == (5, 5)
    assert metrics_store.counters(GLOBAL_TARGET)["totalOpens"] == 0


def test_elapsed_time_budget_stops_retries(metrics_store, logger):
    metrics_store.always_conflict.add(GLOBAL_TARGET.key)
    ticks = itertools.count(start=0, step=2)
    aggregator = make_aggregator(
        metrics_store, logger, max_attempts=50, max_elapsed_seconds=5, monotonic=lambda: next(ticks)
    )

    result = aggregator.apply(GLOBAL_TARGET, MetricsDelta({"totalOpens": 1}))

    assert not result.success
    assert result.attempts < 50


def test_store_outage_propagates(metrics_store, logger):
    metrics_store.unavailable.add(GLOBAL_TARGET.key)
    with pytest.raises(StoreUnavailableError):
        make_aggregator(metrics_store, logger).apply(GLOBAL_TARGET, MetricsDelta({"totalOpens": 1}))


def test_empty_delta_is_a_no_op(metrics_store, logger):
    result = make_aggregator(metrics_store, logger).apply(GLOBAL_TARGET, MetricsDelta())
    assert result.success
    assert metrics_store.successful_puts == 0


def test_deltas_commute(metrics_store, logger):
    aggregator = make_aggregator(metrics_store, logger)
    deltas = [
        MetricsDelta({"totalEmailsSent": 2}),
        MetricsDelta({"totalOpens": 1, "totalClicks": 1}),
        MetricsDelta({"totalEmailsSent": 1, "totalBounces": 1}),
    ]
    campaign_a, campaign_b = ScopeTarget.campaign("a"), ScopeTarget.campaign("b")
    for delta in deltas:
        aggregator.apply(campaign_a, delta)
    for delta in reversed(deltas):
        aggregator.apply(campaign_b, delta)

    assert metrics_store.counters(campaign_a) == metrics_store.counters(campaign_b)
    assert metrics_store.counters(campaign_a)["totalEmailsSent"] == 3


def test_concurrent_updates_lose_nothing(metrics_store, logger):
    """Ten concurrent +1 updates with six injected conflicts converge to exactly ten."""
    metrics_store.conflicts_to_inject = 6
    # Real races between threads add to the injected conflicts, so allow a generous budget.
    aggregator = make_aggregator(metrics_store, logger, max_attempts=25)
    target = ScopeTarget.campaign("camp-1")

    with ThreadPoolExecutor(max_workers=10) as executor:
        results = list(executor.map(lambda _: aggregator.apply(target, MetricsDelta({"totalDelivered": 1})), range(10)))

    assert all(r.success for r in results)
    assert sum(r.conflicts for r in results) >= 6
    assert metrics_store.counters(target)["totalDelivered"] == 10


# --- DynamoMetricsStore against moto ---

def test_dynamo_store_round_trip(dynamodb, logger):
    store = DynamoMetricsStore(dynamodb.Table(METRICS_TABLE), logger)
    target = ScopeTarget.campaign("camp-42")
    now = datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)

    assert store.get_document(target) is None

    written = store.conditional_put(target, {"totalBounces": 1}, 0, now)
    assert written.version == 1

    stored = store.get_document(target)
    assert stored.scope is Scope.CAMPAIGN
    assert stored.scope_id == "camp-42"
    assert stored.version == 1
    assert stored.counters["totalBounces"] == 1
    assert stored.counters["totalOpens"] == 0
    assert isinstance(stored.counters["totalBounces"], int)
    assert stored.last_updated_at == now


def test_dynamo_store_rejects_stale_versions(dynamodb, logger):
    store = DynamoMetricsStore(dynamodb.Table(METRICS_TABLE), logger)
    now = datetime.now(timezone.utc)
    store.conditional_put(GLOBAL_TARGET, {"totalOpens": 1}, 0, now)

    with pytest.raises(VersionConflictError):
        store.conditional_put(GLOBAL_TARGET, {"totalOpens": 5}, 0, now)
    with pytest.raises(VersionConflictError):
        store.conditional_put(GLOBAL_TARGET, {"totalOpens": 5}, 7, now)

    store.conditional_put(GLOBAL_TARGET, {"totalOpens": 2}, 1, now)
    assert store.get_document(GLOBAL_TARGET).counters["totalOpens"] == 2


def test_aggregator_against_dynamo(dynamodb, logger):
    aggregator = make_aggregator(DynamoMetricsStore(dynamodb.Table(METRICS_TABLE), logger), logger)
    for _ in range(3):
        assert aggregator.apply(GLOBAL_TARGET, MetricsDelta({"totalEmailsSent": 1})).success

    item = dynamodb.Table(METRICS_TABLE).get_item(Key={"scope": "GLOBAL", "scopeId": "global"})["Item"]
    assert item["totalEmailsSent"] == 3
    assert item["version"] == 3
