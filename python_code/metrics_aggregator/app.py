"""
Main AWS Lambda handler for the Metrics Aggregation Pipeline.

This module serves as the entry point when the function is triggered by an
SQS event-source mapping. Its responsibilities include:
  - Loading and validating configuration from environment variables.
  - Initializing and caching the AWS clients and the wired BatchWorker.
  - Running every record of the SQS batch through the per-message pipeline.
  - Deferring claim-contended messages and returning a partial batch response,
    so that only failed messages are redelivered.
  - Emitting batch metrics.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from aws_lambda_powertools import Logger, Metrics

from . import clients, core
from .config import load_settings
from .model import BatchSummary, OutcomeStatus, QueueMessage
from .transport import SqsTransport
from .worker import BatchWorker, build_worker

# --- Configuration (loaded once at cold start) ---
SETTINGS = load_settings()

# --- Global Setup ---
logger = Logger(service=SETTINGS.service_name, level=SETTINGS.log_level)
logger.append_keys(environment=SETTINGS.environment)
metrics = Metrics(namespace=SETTINGS.metrics_namespace, service=SETTINGS.service_name)
metrics.set_default_dimensions(environment=SETTINGS.environment)

# Created lazily and reused across warm invocations.
WORKER: Optional[BatchWorker] = None
TRANSPORT: Optional[SqsTransport] = None


def get_worker() -> BatchWorker:
    """
    Returns the cached BatchWorker and transport, creating them on first use.

    Clients are created on the first invocation rather than at import so that
    test fixtures (moto) are active before any boto3 client exists.
    """
    global WORKER, TRANSPORT
    if WORKER is None or TRANSPORT is None:
        logger.info("Initializing AWS clients and batch worker.")
        sqs_client = clients.get_sqs_client()
        WORKER = build_worker(SETTINGS, sqs_client, logger)
        TRANSPORT = SqsTransport(sqs_client, SETTINGS.queue_url, logger)
    return WORKER


def _build_response(failed_message_ids: List[str]) -> Dict[str, Any]:
    """Builds the partial batch response understood by the SQS event-source mapping."""
    return {"batchItemFailures": [{"itemIdentifier": msg_id} for msg_id in failed_message_ids]}


# --- LAMBDA HANDLER ---

@metrics.log_metrics
@logger.inject_lambda_context
def handler(event: Dict, context: Any) -> Dict[str, Any]:
    """
    Main Lambda entry point. Aggregates a batch of SQS messages.

    The function must be configured with `ReportBatchItemFailures`. Failures
    are reported per message and never raised: a successful sibling is always
    acknowledged, even if other messages in the same batch fail.

    This function follows these steps:
    1. Converts the SQS records into queue messages.
    2. Processes them with bounded parallelism through classify -> dedup -> aggregate.
    3. Extends the visibility of messages deferred because of claim contention.
    4. Emits batch metrics.
    5. Returns the ids of every message that must be redelivered.
    """
    start_time = datetime.now(timezone.utc)
    records = event.get("Records", [])
    if not records:
        logger.info("No messages to process.")
        return _build_response([])

    logger.info(f"Received {len(records)} messages to process.")
    worker = get_worker()
    messages = [QueueMessage.from_sqs_record(record) for record in records]
    outcomes = worker.process_batch(messages)

    deferred = [o.message for o in outcomes if o.status is OutcomeStatus.DEFERRED]
    if deferred and TRANSPORT is not None:
        TRANSPORT.defer(deferred, SETTINGS.contention_defer_seconds)

    summary = BatchSummary.from_outcomes(outcomes)
    latency_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
    core.emit_metrics(metrics, summary, latency_ms)

    log_payload = {
        "received": summary.total,
        "processed": summary.processed,
        "duplicates_skipped": summary.duplicates,
        "dead_lettered": summary.dead_lettered,
        "retried": summary.retried,
        "deferred": summary.deferred,
        "latency_ms": latency_ms,
    }
    if summary.failed_message_ids:
        logger.warning("Batch finished with failures.", extra=log_payload)
    else:
        logger.info("Successfully processed batch.", extra=log_payload)
    return _build_response(summary.failed_message_ids)
