"""
Batch processing and the long-poll worker loop.

`BatchWorker` runs the per-message pipeline over a batch with bounded
parallelism; it is shared by the Lambda handler (app.py) and by `Poller`, the
standalone consumer for deployments that poll the queue themselves:

    python -m metrics_aggregator.worker
"""

import os
import signal
import socket
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import List, Optional, cast

from aws_lambda_powertools import Logger, Metrics
from botocore.exceptions import BotoCoreError, ClientError

from mypy_boto3_dynamodb.service_resource import Table
from mypy_boto3_sqs.client import SQSClient

from . import clients, core
from .aggregator import Aggregator
from .config import Settings, load_settings
from .dead_letter import DeadLetterRouter
from .dedup import DedupStore
from .metrics_store import DynamoMetricsStore
from .model import BatchSummary, MessageOutcome, OutcomeStatus, QueueMessage
from .reputation import ReputationMonitor
from .transport import SqsTransport


class BatchWorker:
    """
    Processes one batch of messages and returns one outcome per message, in input order.

    Messages are independent: they run concurrently on at most `max_workers`
    threads and one message failing never affects its siblings.
    """

    def __init__(self, ctx: core.PipelineContext, max_workers: int = 8, max_receive_count: int = 5):
        self.ctx = ctx
        self._max_workers = max_workers
        self._max_receive_count = max_receive_count

    def _process_one(self, message: QueueMessage) -> MessageOutcome:
        try:
            outcome = core.process_message(message, self.ctx)
        except Exception as e:
            self.ctx.logger.exception("Unexpected error processing message.", extra={"messageId": message.message_id})
            outcome = MessageOutcome(message, OutcomeStatus.RETRY, reason=f"{type(e).__name__}: {e}")

        if outcome.status is OutcomeStatus.RETRY and message.receive_count >= self._max_receive_count:
            self.ctx.logger.warning(
                "Message reached max receive count and will be redriven to the dead-letter queue.",
                extra={"messageId": message.message_id, "receiveCount": message.receive_count, "reason": outcome.reason},
            )
        return outcome

    def process_batch(self, messages: List[QueueMessage]) -> List[MessageOutcome]:
        if not messages:
            return []
        workers = min(self._max_workers, len(messages))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(executor.map(self._process_one, messages))


def build_worker(
    settings: Settings,
    sqs_client: SQSClient,
    logger: Logger,
    worker_id: Optional[str] = None,
) -> BatchWorker:
    """
    Wires the stores, aggregator and router for `settings` into a BatchWorker.

    The stores get thread-local tables because the worker threads of a batch
    must not share a boto3 resource.
    """
    worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
    ctx = core.PipelineContext(
        dedup=DedupStore(
            cast(Table, clients.ThreadLocalTable(settings.dedup_table)),
            logger,
            worker_id=worker_id,
            retention_hours=settings.dedup_retention_hours,
        ),
        aggregator=Aggregator(
            DynamoMetricsStore(cast(Table, clients.ThreadLocalTable(settings.metrics_table)), logger),
            logger,
            max_attempts=settings.max_conflict_retries,
            base_delay_seconds=settings.retry_base_delay_ms / 1000,
            max_elapsed_seconds=settings.retry_max_elapsed_seconds,
        ),
        router=DeadLetterRouter(sqs_client, settings.dead_letter_queue_url, logger),
        reputation=ReputationMonitor(
            logger,
            max_bounce_rate=settings.max_bounce_rate,
            max_complaint_rate=settings.max_complaint_rate,
        ),
        logger=logger,
        claim_ttl_seconds=settings.claim_ttl_seconds,
        claim_recheck_attempts=settings.claim_recheck_attempts,
        claim_recheck_delay_seconds=settings.claim_recheck_delay_ms / 1000,
    )
    return BatchWorker(ctx, max_workers=settings.max_workers, max_receive_count=settings.max_receive_count)


class Poller:
    """Receive -> process -> report loop against an SQS queue."""

    def __init__(self, transport: SqsTransport, worker: BatchWorker, settings: Settings, logger: Logger, metrics: Metrics):
        self._transport = transport
        self._worker = worker
        self._settings = settings
        self._logger = logger
        self._metrics = metrics
        self._stopping = False

    def stop(self, *_args) -> None:
        """Requests a graceful stop after the current batch. Usable as a signal handler."""
        self._logger.info("Stop requested; finishing current batch.")
        self._stopping = True

    @property
    def stopping(self) -> bool:
        return self._stopping

    def run_once(self) -> List[MessageOutcome]:
        messages = self._transport.receive(
            self._settings.batch_size,
            self._settings.wait_time_seconds,
            self._settings.visibility_timeout_seconds,
        )
        if not messages:
            return []

        start_time = datetime.now(timezone.utc)
        outcomes = self._worker.process_batch(messages)
        delete_failures = self._transport.report_outcome(outcomes, self._settings.contention_defer_seconds)

        summary = BatchSummary.from_outcomes(outcomes)
        latency_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        core.emit_metrics(self._metrics, summary, latency_ms)
        self._metrics.flush_metrics()
        self._logger.info(
            "Batch complete.",
            extra={
                "received": summary.total,
                "processed": summary.processed,
                "duplicates": summary.duplicates,
                "dead_lettered": summary.dead_lettered,
                "retried": summary.retried,
                "deferred": summary.deferred,
                "delete_failures": delete_failures,
                "latency_ms": latency_ms,
            },
        )
        return outcomes

    def run(self, max_batches: Optional[int] = None) -> int:
        """
        Polls until stopped (or until `max_batches` receives have been made).

        Queue errors are logged and the loop continues with the next receive.

        Returns:
            The number of batches received.
        """
        batches = 0
        while not self._stopping and (max_batches is None or batches < max_batches):
            batches += 1
            try:
                self.run_once()
            except (ClientError, BotoCoreError) as e:
                self._logger.error("Queue receive failed.", extra={"error": str(e)})
        return batches


def main() -> None:
    settings = load_settings()
    logger = Logger(service=settings.service_name, level=settings.log_level)
    logger.append_keys(environment=settings.environment)
    metrics = Metrics(namespace=settings.metrics_namespace, service=settings.service_name)
    metrics.set_default_dimensions(environment=settings.environment)

    sqs_client = clients.get_sqs_client()
    worker = build_worker(settings, sqs_client, logger)
    poller = Poller(SqsTransport(sqs_client, settings.queue_url, logger), worker, settings, logger, metrics)

    signal.signal(signal.SIGTERM, poller.stop)
    signal.signal(signal.SIGINT, poller.stop)
    logger.info("Starting metrics worker.", extra={"queueUrl": settings.queue_url})
    poller.run()


if __name__ == "__main__":
    main()
