"""
SQS transport: receiving batches and reporting per-message outcomes.

Acknowledged messages are deleted, deferred messages get their visibility
extended, and messages that should be retried are left alone so the queue's
visibility timeout and redrive policy take over.
"""

import random
import time
from typing import Callable, Dict, List, cast

from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

from mypy_boto3_sqs.client import SQSClient
from mypy_boto3_sqs.type_defs import (
    ChangeMessageVisibilityBatchRequestEntryTypeDef,
    DeleteMessageBatchRequestEntryTypeDef,
)

from .model import MessageOutcome, OutcomeStatus, QueueMessage

SQS_BATCH_LIMIT = 10


class SqsTransport:
    """Receive/acknowledge operations against one SQS queue."""

    def __init__(
        self,
        sqs_client: SQSClient,
        queue_url: str,
        logger: Logger,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._sqs = sqs_client
        self._queue_url = queue_url
        self._logger = logger
        self._sleep = sleep

    def receive(self, max_messages: int, wait_time_seconds: int, visibility_timeout_seconds: int) -> List[QueueMessage]:
        """Long-polls for up to `max_messages` messages."""
        response = self._sqs.receive_message(
            QueueUrl=self._queue_url,
            MaxNumberOfMessages=max_messages,
            WaitTimeSeconds=wait_time_seconds,
            VisibilityTimeout=visibility_timeout_seconds,
            AttributeNames=["ApproximateReceiveCount"],
        )
        return [
            QueueMessage(
                message_id=m["MessageId"],
                receipt_handle=m["ReceiptHandle"],
                body=m.get("Body", ""),
                receive_count=int(m.get("Attributes", {}).get("ApproximateReceiveCount", "1")),
            )
            for m in response.get("Messages", [])
        ]

    def report_outcome(self, outcomes: List[MessageOutcome], defer_seconds: int) -> int:
        """
        Reports a processed batch back to the queue.

        Returns:
            The number of acknowledged messages that could not be deleted.
        """
        acknowledged = [o.message for o in outcomes if o.status.acknowledged]
        deferred = [o.message for o in outcomes if o.status is OutcomeStatus.DEFERRED]
        self.defer(deferred, defer_seconds)
        return self.delete_messages(acknowledged)

    def defer(self, messages: List[QueueMessage], seconds: int) -> None:
        """Best-effort visibility extension; failures are logged, not raised."""
        for i in range(0, len(messages), SQS_BATCH_LIMIT):
            entries = cast(
                List[ChangeMessageVisibilityBatchRequestEntryTypeDef],
                [
                    {"Id": m.message_id, "ReceiptHandle": m.receipt_handle, "VisibilityTimeout": seconds}
                    for m in messages[i : i + SQS_BATCH_LIMIT]
                ],
            )
            try:
                response = self._sqs.change_message_visibility_batch(QueueUrl=self._queue_url, Entries=entries)
            except (ClientError, BotoCoreError) as e:
                self._logger.warning("Could not defer messages.", extra={"error": str(e), "count": len(entries)})
                continue
            if failed := response.get("Failed"):
                self._logger.warning("Partial failure deferring messages.", extra={"failed_messages": failed})

    def delete_messages(self, messages: List[QueueMessage]) -> int:
        """
        Deletes a list of messages from SQS, retrying failures with exponential backoff.

        This function deletes messages in batches of 10. If a batch deletion fails
        partially or completely, it will retry up to 3 times with increasing delays
        to handle transient network or API errors.

        Args:
            messages: The messages to delete.

        Returns:
            The total count of messages that ultimately failed to be deleted after all retries.
        """
        if not messages:
            return 0

        total_failed_count = 0
        message_map: Dict[str, str] = {m.message_id: m.receipt_handle for m in messages}

        message_ids_to_delete = list(message_map.keys())
        for i in range(0, len(message_ids_to_delete), SQS_BATCH_LIMIT):
            batch_ids = message_ids_to_delete[i : i + SQS_BATCH_LIMIT]

            # This list will shrink on each successful partial deletion
            entries_to_delete = cast(
                List[DeleteMessageBatchRequestEntryTypeDef],
                [{"Id": msg_id, "ReceiptHandle": message_map[msg_id]} for msg_id in batch_ids],
            )

            for attempt in range(3):
                try:
                    response = self._sqs.delete_message_batch(QueueUrl=self._queue_url, Entries=entries_to_delete)

                    if failed_batch := response.get("Failed"):
                        self._logger.warning(
                            "Partial failure in SQS delete batch.",
                            extra={"attempt": attempt + 1, "failed_messages": failed_batch},
                        )
                        failed_ids = {f["Id"] for f in failed_batch}
                        entries_to_delete = [e for e in entries_to_delete if e["Id"] in failed_ids]
                    else:
                        self._logger.info(f"Successfully deleted {len(batch_ids)} SQS messages in batch.")
                        entries_to_delete = []
                        break

                except (ClientError, BotoCoreError) as e:
                    self._logger.error(
                        "Error on SQS delete_message_batch.",
                        extra={"error": str(e), "attempt": attempt + 1},
                    )

                # Exponential backoff with jitter: 0.2s, 0.4s, 0.8s + random jitter
                wait_time = (0.2 * (2**attempt)) + random.uniform(0.0, 0.1)
                self._logger.info(f"Waiting {wait_time:.2f}s before SQS delete retry.")
                self._sleep(wait_time)

            if entries_to_delete:
                final_failed_count = len(entries_to_delete)
                self._logger.critical(
                    f"{final_failed_count} messages failed to be deleted after all retries.",
                    extra={"failed_ids": [e["Id"] for e in entries_to_delete]},
                )
                total_failed_count += final_failed_count

        return total_failed_count
