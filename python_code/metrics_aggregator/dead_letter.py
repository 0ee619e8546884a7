"""Best-effort forwarding of unprocessable messages to the dead-letter queue."""

from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

from mypy_boto3_sqs.client import SQSClient

from .model import QueueMessage


class DeadLetterRouter:
    """
    Copies a message and the reason it was rejected to a holding queue for manual inspection.

    `route` never raises. A failure to route is logged and reported as False;
    the caller then leaves the message to the source queue's own redrive
    policy rather than retrying the route itself.
    """

    def __init__(self, sqs_client: SQSClient, dead_letter_queue_url: str, logger: Logger):
        self._sqs = sqs_client
        self._queue_url = dead_letter_queue_url
        self._logger = logger

    def route(self, message: QueueMessage, reason: str) -> bool:
        if not self._queue_url:
            self._logger.error(
                "No dead-letter queue configured; message left to queue redrive.",
                extra={"messageId": message.message_id, "reason": reason},
            )
            return False
        try:
            self._sqs.send_message(
                QueueUrl=self._queue_url,
                MessageBody=message.body,
                MessageAttributes={
                    "reason": {"DataType": "String", "StringValue": reason[:1024] or "unknown"},
                    "sourceMessageId": {"DataType": "String", "StringValue": message.message_id},
                    "receiveCount": {"DataType": "Number", "StringValue": str(message.receive_count)},
                },
            )
        except (ClientError, BotoCoreError) as e:
            self._logger.error(
                "Failed to route message to dead-letter queue.",
                extra={"messageId": message.message_id, "reason": reason, "error": str(e)},
            )
            return False

        self._logger.warning("Message routed to dead-letter queue.", extra={"messageId": message.message_id, "reason": reason})
        return True
