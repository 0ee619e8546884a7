"""
Scoped counter documents with optimistic concurrency.

`ConditionalStore` is the compare-and-swap abstraction the Aggregator is written
against; `DynamoMetricsStore` implements it with a version-conditional PutItem.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Protocol

from aws_lambda_powertools import Logger
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from mypy_boto3_dynamodb.service_resource import Table

from .errors import StoreUnavailableError, VersionConflictError
from .model import COUNTER_NAMES, MetricsDocument, Scope, ScopeTarget


class ConditionalStore(Protocol):
    def get_document(self, target: ScopeTarget) -> Optional[MetricsDocument]:
        """Returns the current document, or None if the scope has never been written."""

    def conditional_put(
        self,
        target: ScopeTarget,
        counters: Mapping[str, int],
        expected_version: int,
        updated_at: datetime,
    ) -> MetricsDocument:
        """
        Writes `counters` only if the stored version equals `expected_version`.

        Returns the stored document (version `expected_version + 1`), or raises
        VersionConflictError if another writer got there first.
        """


def _to_int(value: Any) -> int:
    if isinstance(value, Decimal):
        return int(value)
    return int(value or 0)


def document_from_item(item: Dict[str, Any]) -> MetricsDocument:
    """Converts a raw DynamoDB item (Decimals, ISO strings) into a MetricsDocument."""
    last_updated = item.get("lastUpdatedAt")
    return MetricsDocument(
        scope=Scope(item["scope"]),
        scope_id=str(item["scopeId"]),
        counters={name: _to_int(item.get(name, 0)) for name in COUNTER_NAMES},
        version=_to_int(item.get("version", 0)),
        last_updated_at=datetime.fromisoformat(last_updated) if last_updated else None,
    )


class DynamoMetricsStore:
    """
    Metrics documents in a DynamoDB table keyed by `scope` (HASH) and `scopeId` (RANGE).

    Counters are stored as top-level number attributes so dashboards can read
    them without unpacking a nested map.
    """

    def __init__(self, table: Table, logger: Logger):
        self._table = table
        self._logger = logger

    def get_document(self, target: ScopeTarget) -> Optional[MetricsDocument]:
        try:
            response = self._table.get_item(
                Key={"scope": target.scope.value, "scopeId": target.scope_id},
                ConsistentRead=True,
            )
        except (ClientError, BotoCoreError) as e:
            self._logger.error("Failed to read metrics document.", extra={"scope": target.key, "error": str(e)})
            raise StoreUnavailableError("metrics store", str(e)) from e
        item = response.get("Item")
        return document_from_item(item) if item else None

    def conditional_put(
        self,
        target: ScopeTarget,
        counters: Mapping[str, int],
        expected_version: int,
        updated_at: datetime,
    ) -> MetricsDocument:
        new_version = expected_version + 1
        item: Dict[str, Any] = {
            "scope": target.scope.value,
            "scopeId": target.scope_id,
            "version": new_version,
            "lastUpdatedAt": updated_at.isoformat(),
        }
        item.update({name: int(counters.get(name, 0)) for name in COUNTER_NAMES})

        if expected_version == 0:
            condition = Attr("version").not_exists()
        else:
            condition = Attr("version").eq(expected_version)

        try:
            self._table.put_item(Item=item, ConditionExpression=condition)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                raise VersionConflictError(target.key, expected_version) from e
            self._logger.error("Failed to write metrics document.", extra={"scope": target.key, "error": str(e)})
            raise StoreUnavailableError("metrics store", str(e)) from e
        except BotoCoreError as e:
            raise StoreUnavailableError("metrics store", str(e)) from e

        return MetricsDocument(
            scope=target.scope,
            scope_id=target.scope_id,
            counters={name: int(counters.get(name, 0)) for name in COUNTER_NAMES},
            version=new_version,
            last_updated_at=updated_at,
        )
