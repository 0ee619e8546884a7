"""
A factory module for creating and providing boto3 clients.

This module is the core of the Dependency Injection (DI) pattern for the
application. It allows the handler and the poller to receive either real AWS
clients or mocked clients during testing, based on whether `moto` is active.
This makes the application's business logic fully testable without making
real AWS calls.

Low-level clients are thread-safe and are shared by every worker thread.
DynamoDB resources are not, so tables are handed out per thread through
`ThreadLocalTable`.
"""

import logging
import os
import threading
from typing import Any, Callable, Optional

import boto3
import botocore.config

from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource, Table
from mypy_boto3_sqs import SQSClient

logger = logging.getLogger(__name__)

# A shared, robust retry configuration for clients that need to be resilient
# to transient network or server-side errors. Conditional-check failures are
# not retried by botocore; those are handled by the application.
BOTO_CONFIG_RETRYABLE = botocore.config.Config(
    retries={"max_attempts": 5, "mode": "adaptive"}
)


def _aws_region() -> Optional[str]:
    aws_region = os.environ.get("AWS_REGION")
    if not aws_region:
        logger.warning("AWS_REGION not set, boto3 will attempt to resolve it.")
    return aws_region


def get_sqs_client() -> SQSClient:
    """
    Returns the SQS client shared by the whole process.

    It inspects the environment for a `USE_MOTO` flag only to log that mocked
    clients are expected. When the moto fixture is active the boto3 calls
    below are intercepted and return mocked clients; otherwise real AWS
    clients are created.

    The AWS region is explicitly read from the environment to ensure consistent
    and predictable behavior across all clients.
    """
    if os.environ.get("USE_MOTO"):
        logger.info("MOTO ENABLED: Returning mocked AWS clients.")

    sqs_client: SQSClient = boto3.client(
        "sqs", region_name=_aws_region(), config=BOTO_CONFIG_RETRYABLE
    )
    return sqs_client


def new_dynamodb_resource() -> DynamoDBServiceResource:
    """Creates a DynamoDB resource on its own session, for use by a single thread."""
    dynamodb_resource: DynamoDBServiceResource = boto3.Session().resource(
        "dynamodb", region_name=_aws_region(), config=BOTO_CONFIG_RETRYABLE
    )
    return dynamodb_resource


class ThreadLocalTable:
    """
    Stands in for a boto3 DynamoDB `Table`, giving every thread its own instance.

    Attribute access (`put_item`, `update_item`, ...) is forwarded to the
    calling thread's table, which is created on that thread's first use.

    Args:
        table_name: The DynamoDB table name.
        resource_factory: Builds a fresh DynamoDB resource; injectable for tests.
    """

    def __init__(
        self,
        table_name: str,
        resource_factory: Callable[[], DynamoDBServiceResource] = new_dynamodb_resource,
    ):
        self.table_name = table_name
        self._resource_factory = resource_factory
        self._local = threading.local()

    def get(self) -> Table:
        table = getattr(self._local, "table", None)
        if table is None:
            table = self._resource_factory().Table(self.table_name)
            self._local.table = table
        return table

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return getattr(self.get(), name)
