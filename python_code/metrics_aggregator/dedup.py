"""
Processed-event records in DynamoDB, used to deduplicate at-least-once deliveries.

Each record is keyed by `eventId` and moves CLAIMED -> COMPLETED. A claim is a
lease: once `claimExpiresAt` has passed without completion, any worker may take
the claim over. All transitions are single conditional writes, so no lock is
ever held across a network call.
"""

import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

from mypy_boto3_dynamodb.service_resource import Table

from .errors import StoreUnavailableError
from .model import ClaimResult, ClaimStatus, RecordState

_CLAIM_CONDITION = "attribute_not_exists(eventId) OR (#state = :claimed AND claimExpiresAt <= :now)"


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class DedupStore:
    """
    Claim/complete primitives over the processed-event table.

    Args:
        table: The boto3 DynamoDB Table resource holding processed-event records.
        logger: The Powertools Logger instance for structured logging.
        worker_id: Recorded on each claim to make stuck claims traceable.
        retention_hours: How long records are kept (DynamoDB TTL on `expiresAt`).
        clock: Returns the current time as epoch seconds; injectable for tests.
    """

    def __init__(
        self,
        table: Table,
        logger: Logger,
        worker_id: str,
        retention_hours: int = 24,
        clock: Callable[[], float] = time.time,
    ):
        self._table = table
        self._logger = logger
        self._worker_id = worker_id
        self._retention_seconds = retention_hours * 3600
        self._clock = clock

    def _iso_now(self, now: float) -> str:
        return datetime.fromtimestamp(now, tz=timezone.utc).isoformat()

    def claim(self, event_id: str, ttl_seconds: int) -> ClaimResult:
        """
        Atomically claims processing rights for an event.

        The write succeeds only if no record exists or the existing record is a
        claim whose lease has expired. A lost condition is resolved with a
        consistent read; if the record disappeared in between (TTL deletion),
        the claim is attempted once more.

        Args:
            event_id: The dedup key of the event.
            ttl_seconds: Length of the claim lease.

        Returns:
            ACQUIRED with the scopes earlier attempts already applied,
            ALREADY_COMPLETED for a true duplicate, or ALREADY_CLAIMED while
            another worker's lease is active.

        Raises:
            StoreUnavailableError: On any DynamoDB failure other than a lost condition.
        """
        for _ in range(2):
            now = self._clock()
            try:
                response = self._table.update_item(
                    Key={"eventId": event_id},
                    UpdateExpression=(
                        "SET #state = :claimed, claimedAt = :claimed_at, claimedBy = :worker, "
                        "claimExpiresAt = :lease, expiresAt = :expires ADD attempts :one"
                    ),
                    ConditionExpression=_CLAIM_CONDITION,
                    ExpressionAttributeNames={"#state": "state"},
                    ExpressionAttributeValues={
                        ":claimed": RecordState.CLAIMED.value,
                        ":claimed_at": self._iso_now(now),
                        ":worker": self._worker_id,
                        ":lease": int(now) + ttl_seconds,
                        ":expires": int(now) + self._retention_seconds,
                        ":now": int(now),
                        ":one": 1,
                    },
                    ReturnValues="ALL_NEW",
                )
            except ClientError as e:
                if not _is_conditional_failure(e):
                    self._logger.exception("Unexpected DynamoDB error during claim.", extra={"eventId": event_id})
                    raise StoreUnavailableError("dedup store", str(e)) from e
                existing = self.get_record(event_id)
                if existing is None:
                    self._logger.info("Processed-event record vanished during claim; retrying.", extra={"eventId": event_id})
                    continue
                if existing.get("state") == RecordState.COMPLETED.value:
                    self._logger.info(f"Duplicate event detected: {event_id}")
                    return ClaimResult(ClaimStatus.ALREADY_COMPLETED)
                self._logger.info(
                    "Event is claimed by another worker.",
                    extra={"eventId": event_id, "claimedBy": existing.get("claimedBy")},
                )
                return ClaimResult(ClaimStatus.ALREADY_CLAIMED)
            except BotoCoreError as e:
                raise StoreUnavailableError("dedup store", str(e)) from e

            attributes = response.get("Attributes", {})
            applied = frozenset(str(s) for s in attributes.get("appliedScopes", set()))
            if int(attributes.get("attempts", 1)) > 1:
                self._logger.warning(
                    "Reclaimed an expired claim.",
                    extra={"eventId": event_id, "attempts": int(attributes["attempts"]), "appliedScopes": sorted(applied)},
                )
            return ClaimResult(ClaimStatus.ACQUIRED, applied)

        return ClaimResult(ClaimStatus.ALREADY_CLAIMED)

    def mark_scope_applied(self, event_id: str, scope_key: str) -> bool:
        """
        Records that one target scope of a claimed event has been aggregated.

        Returns False (and logs) when the record no longer exists, in which case
        there is nothing left to protect.
        """
        try:
            self._table.update_item(
                Key={"eventId": event_id},
                UpdateExpression="ADD appliedScopes :scope",
                ConditionExpression="attribute_exists(eventId)",
                ExpressionAttributeValues={":scope": {scope_key}},
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                self._logger.warning(
                    "Processed-event record missing while marking scope applied.",
                    extra={"eventId": event_id, "scope": scope_key},
                )
                return False
            raise StoreUnavailableError("dedup store", str(e)) from e
        except BotoCoreError as e:
            raise StoreUnavailableError("dedup store", str(e)) from e
        return True

    def complete(self, event_id: str) -> None:
        """Marks the event COMPLETED and starts its retention window. Idempotent."""
        now = self._clock()
        try:
            self._table.update_item(
                Key={"eventId": event_id},
                UpdateExpression="SET #state = :completed, completedAt = :completed_at, expiresAt = :expires REMOVE claimExpiresAt",
                ExpressionAttributeNames={"#state": "state"},
                ExpressionAttributeValues={
                    ":completed": RecordState.COMPLETED.value,
                    ":completed_at": self._iso_now(now),
                    ":expires": int(now) + self._retention_seconds,
                },
            )
        except (ClientError, BotoCoreError) as e:
            self._logger.exception("Failed to mark event completed.", extra={"eventId": event_id})
            raise StoreUnavailableError("dedup store", str(e)) from e

    def get_record(self, event_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self._table.get_item(Key={"eventId": event_id}, ConsistentRead=True)
        except (ClientError, BotoCoreError) as e:
            raise StoreUnavailableError("dedup store", str(e)) from e
        return response.get("Item")
