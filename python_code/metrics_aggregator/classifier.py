"""
Turns raw queue message bodies into typed events with their counter deltas.

Everything in this module is a pure function: no I/O and no shared mutable
state, so it is safe to call concurrently for every message of a batch. Any
body that cannot be classified raises MalformedEventError, which is permanent.

Two wire formats are understood:
  - the pipeline's own envelope:
        {"eventId", "type", "targets": [{"scope", "scopeId"}], "timestamp", "payload"}
  - SES event notifications delivered through SNS, as published by a
    configuration-set event destination.
"""

import json
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import MalformedEventError
from .model import Event, EventType, MetricsDelta, Scope, ScopeTarget

DELTA_TEMPLATES: Mapping[EventType, Mapping[str, int]] = MappingProxyType({
    EventType.LEAD_IMPORTED: {"totalLeadsImported": 1},
    EventType.EMAIL_SENT: {"totalEmailsSent": 1},
    EventType.HARD_BOUNCE: {"totalBounces": 1, "totalHardBounces": 1},
    EventType.SOFT_BOUNCE: {"totalBounces": 1, "totalSoftBounces": 1},
    EventType.COMPLAINT: {"totalComplaints": 1},
    EventType.DELIVERED: {"totalDelivered": 1},
    EventType.OPENED: {"totalOpens": 1},
    EventType.CLICKED: {"totalClicks": 1},
    EventType.REJECTED: {"totalRejected": 1},
    EventType.DELAYED: {"totalDelayed": 1},
    EventType.VERIFICATION_PASSED: {"totalVerificationPassed": 1, "verifierCreditsUsed": 1},
    EventType.VERIFICATION_FAILED: {"totalVerificationFailed": 1, "verifierCreditsUsed": 1},
    EventType.SKIPPED: {"totalSkipped": 1},
    EventType.ERROR: {"totalErrors": 1},
})

# Counters whose increment comes from a payload field instead of the template.
PAYLOAD_COUNTS: Mapping[EventType, Tuple[str, str]] = MappingProxyType({
    EventType.LEAD_IMPORTED: ("totalLeadsImported", "count"),
    EventType.VERIFICATION_PASSED: ("verifierCreditsUsed", "creditsUsed"),
    EventType.VERIFICATION_FAILED: ("verifierCreditsUsed", "creditsUsed"),
})

SES_EVENT_TYPES: Mapping[str, EventType] = MappingProxyType({
    "Send": EventType.EMAIL_SENT,
    "Delivery": EventType.DELIVERED,
    "Complaint": EventType.COMPLAINT,
    "Reject": EventType.REJECTED,
    "DeliveryDelay": EventType.DELAYED,
    "Open": EventType.OPENED,
    "Click": EventType.CLICKED,
    # "Bounce" is resolved to HARD_BOUNCE / SOFT_BOUNCE from bounceType.
})

# SES emits these at most once per mail; the rest can repeat (several opens, clicks, delays).
SES_ONE_SHOT_TYPES = frozenset({"Send", "Delivery", "Bounce", "Complaint", "Reject"})

CAMPAIGN_TAG = "campaignId"


def build_delta(event_type: EventType, payload: Mapping[str, Any], event_id: Optional[str] = None) -> MetricsDelta:
    """Looks up the delta template for `event_type` and fills in payload-driven counts."""
    increments = dict(DELTA_TEMPLATES[event_type])
    if event_type in PAYLOAD_COUNTS:
        counter, field_name = PAYLOAD_COUNTS[event_type]
        value = payload.get(field_name, increments[counter])
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise MalformedEventError(f"payload.{field_name} must be a non-negative integer", event_id)
        increments[counter] = value
    return MetricsDelta(increments)


def _parse_json(raw: Any, what: str, event_id: Optional[str] = None) -> Dict[str, Any]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        raise MalformedEventError(f"{what} is not valid JSON", event_id) from None
    if not isinstance(data, dict):
        raise MalformedEventError(f"{what} is not a JSON object", event_id)
    return data


def _parse_timestamp(value: Any, event_id: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise MalformedEventError("timestamp must be an ISO-8601 string", event_id)
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise MalformedEventError(f"timestamp '{value}' is not ISO-8601", event_id) from None
    return value


def parse_targets(raw: Any, event_id: Optional[str] = None) -> Tuple[ScopeTarget, ...]:
    """
    Validates the `targets` list of an envelope.

    A missing or empty list means the global scope only. Duplicates are
    collapsed, keeping first-seen order.
    """
    if raw is None or raw == []:
        return (ScopeTarget.global_scope(),)
    if not isinstance(raw, list):
        raise MalformedEventError("targets must be a list", event_id)

    targets: List[ScopeTarget] = []
    for entry in raw:
        if not isinstance(entry, dict) or not isinstance(entry.get("scope"), str):
            raise MalformedEventError("each target needs a 'scope'", event_id)
        try:
            scope = Scope(entry["scope"].upper())
        except ValueError:
            raise MalformedEventError(f"unknown scope '{entry['scope']}'", event_id) from None

        if scope is Scope.GLOBAL:
            target = ScopeTarget.global_scope()
        else:
            scope_id = entry.get("scopeId")
            if not isinstance(scope_id, str) or not scope_id.strip():
                raise MalformedEventError("campaign targets need a non-empty 'scopeId'", event_id)
            target = ScopeTarget.campaign(scope_id.strip())

        if target not in targets:
            targets.append(target)
    return tuple(targets)


def _classify_envelope(data: Dict[str, Any]) -> Event:
    event_id = data.get("eventId")
    if not isinstance(event_id, str) or not event_id.strip():
        raise MalformedEventError("missing 'eventId'")

    raw_type = data.get("type")
    if not isinstance(raw_type, str):
        raise MalformedEventError("missing 'type'", event_id)
    try:
        event_type = EventType[raw_type.strip().upper()]
    except KeyError:
        raise MalformedEventError(f"unknown event type '{raw_type}'", event_id) from None

    payload = data.get("payload") or {}
    if not isinstance(payload, dict):
        raise MalformedEventError("payload must be an object", event_id)

    return Event(
        event_id=event_id,
        type=event_type,
        targets=parse_targets(data.get("targets"), event_id),
        delta=build_delta(event_type, payload, event_id),
        timestamp=_parse_timestamp(data.get("timestamp"), event_id),
        payload=payload,
    )


def _classify_ses_notification(envelope: Dict[str, Any]) -> Event:
    sns_message_id = envelope.get("MessageId")
    message = _parse_json(envelope.get("Message"), "SNS Message", sns_message_id)

    ses_type = message.get("eventType") or message.get("notificationType")
    mail = message.get("mail")
    if not isinstance(mail, dict) or not isinstance(mail.get("messageId"), str):
        raise MalformedEventError("SES notification without mail.messageId", sns_message_id)

    if ses_type == "Bounce":
        bounce = message.get("bounce") or {}
        is_permanent = isinstance(bounce, dict) and bounce.get("bounceType") == "Permanent"
        event_type = EventType.HARD_BOUNCE if is_permanent else EventType.SOFT_BOUNCE
    elif ses_type in SES_EVENT_TYPES:
        event_type = SES_EVENT_TYPES[ses_type]
    else:
        raise MalformedEventError(f"unsupported SES event type '{ses_type}'", sns_message_id)

    if ses_type in SES_ONE_SHOT_TYPES:
        event_id = f"ses:{mail['messageId']}:{ses_type}"
    elif isinstance(sns_message_id, str) and sns_message_id:
        event_id = sns_message_id
    else:
        raise MalformedEventError(f"SES {ses_type} notification without an SNS MessageId")

    targets = [ScopeTarget.global_scope()]
    tags = mail.get("tags") or {}
    campaign_ids = tags.get(CAMPAIGN_TAG) if isinstance(tags, dict) else None
    if isinstance(campaign_ids, list) and campaign_ids and isinstance(campaign_ids[0], str) and campaign_ids[0]:
        targets.append(ScopeTarget.campaign(campaign_ids[0]))

    return Event(
        event_id=event_id,
        type=event_type,
        targets=tuple(targets),
        delta=build_delta(event_type, {}, event_id),
        timestamp=_parse_timestamp(mail.get("timestamp") or envelope.get("Timestamp"), event_id),
        payload=message,
    )


def classify(body: str) -> Event:
    """
    Classifies one raw message body.

    Args:
        body: The message body exactly as received from the queue.

    Returns:
        The typed Event, with its delta and target scopes populated.

    Raises:
        MalformedEventError: For unparseable bodies, unknown types, or invalid fields.
    """
    data = _parse_json(body, "message body")
    if data.get("Type") == "Notification" and "Message" in data:
        return _classify_ses_notification(data)
    return _classify_envelope(data)
