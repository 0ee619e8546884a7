"""Sender-reputation checks run against freshly updated metrics documents."""

from dataclasses import dataclass
from typing import List, Optional

from aws_lambda_powertools import Logger

from .model import MetricsDelta, MetricsDocument

REPUTATION_COUNTERS = frozenset({"totalBounces", "totalComplaints"})


@dataclass(frozen=True)
class ReputationBreach:
    metric: str
    value: float
    threshold: float


class ReputationMonitor:
    """
    Flags scopes whose bounce or complaint rate exceeds the configured thresholds.

    The check is advisory only: it logs and reports breaches, it never changes
    how the triggering message is acknowledged.
    """

    def __init__(self, logger: Logger, max_bounce_rate: float = 0.05, max_complaint_rate: float = 0.001):
        self._logger = logger
        self.max_bounce_rate = max_bounce_rate
        self.max_complaint_rate = max_complaint_rate

    def evaluate(self, document: MetricsDocument, delta: Optional[MetricsDelta] = None) -> List[ReputationBreach]:
        """
        Returns the thresholds `document` currently exceeds.

        When `delta` is given, only updates that touched bounces or complaints
        are checked.
        """
        if delta is not None and not REPUTATION_COUNTERS.intersection(delta):
            return []
        sent = document.counters.get("totalEmailsSent", 0)
        if sent <= 0:
            return []

        breaches = []
        bounce_rate = document.counters.get("totalBounces", 0) / sent
        if bounce_rate > self.max_bounce_rate:
            breaches.append(ReputationBreach("bounceRate", bounce_rate, self.max_bounce_rate))
        complaint_rate = document.counters.get("totalComplaints", 0) / sent
        if complaint_rate > self.max_complaint_rate:
            breaches.append(ReputationBreach("complaintRate", complaint_rate, self.max_complaint_rate))

        for breach in breaches:
            self._logger.error(
                "REPUTATION RISK: rate exceeded threshold",
                extra={
                    "scope": document.target.key,
                    "metric": breach.metric,
                    "value": round(breach.value, 6),
                    "threshold": breach.threshold,
                    "emailsSent": sent,
                },
            )
        return breaches
