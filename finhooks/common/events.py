"""Event envelope, delivery task and dead-letter message shapes.

The envelope's JSON form is also the exact outbound webhook body, so its field
names are the camelCase wire names integrators see.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

EVENT_TOPIC_PREFIX = "events."
EVENT_TOPIC_PATTERN = r"^events\..+"
DELIVERY_TOPIC = "webhooks.delivery"
DLQ_TOPIC = "webhooks.dlq"


class EventType(str, Enum):
    """Closed set of event types integrators can subscribe to."""

    BILLING_PAID = "billing.paid"
    BILLING_CREATED = "billing.created"
    BILLING_EXPIRED = "billing.expired"
    BILLING_REFUNDED = "billing.refunded"
    WITHDRAW_DONE = "withdraw.done"
    WITHDRAW_FAILED = "withdraw.failed"
    ENROLLMENT_CREATED = "enrollment.created"
    CHARGE_CREATED = "charge.created"
    CHARGE_PAID = "charge.paid"
    CHARGE_EXPIRED = "charge.expired"
    WEBHOOK_TEST = "webhook.test"


EVENT_TYPES = frozenset(item.value for item in EventType)


def event_topic(event_type: str) -> str:
    """Routing key for one event family, e.g. `events.charge.paid`."""

    return f"{EVENT_TOPIC_PREFIX}{event_type}"


class EventEnvelope(BaseModel):
    """Immutable business event destined for webhook fan-out."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    timestamp: str = Field(min_length=1)
    tenant_id: str = Field(alias="tenantId", min_length=1)
    trace_id: str | None = Field(default=None, alias="traceId")
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def create(
        cls,
        event_type: str,
        tenant_id: str,
        data: dict[str, Any] | None = None,
        trace_id: str | None = None,
        event_id: str | None = None,
    ) -> "EventEnvelope":
        """Stamp a new envelope with its id and occurrence time.

        Consumers never fill these in, so redeliveries and replays keep them.
        """

        return cls(
            id=event_id or f"evt_{uuid4().hex}",
            type=event_type,
            timestamp=datetime.now(timezone.utc).isoformat(),
            tenant_id=tenant_id,
            trace_id=trace_id,
            data=data or {},
        )

    def to_wire(self) -> dict[str, Any]:
        """Wire form `{id, type, timestamp, tenantId, traceId?, data}`."""

        wire = self.model_dump(by_alias=True)
        if wire["traceId"] is None:
            del wire["traceId"]
        return wire

    def canonical_body(self) -> str:
        """Compact JSON used both as HTTP body and as signing input."""

        return json.dumps(self.to_wire(), separators=(",", ":"), ensure_ascii=False)


class DeliveryTask(BaseModel):
    """One queued attempt of one delivery record."""

    model_config = ConfigDict(populate_by_name=True)

    delivery_record_id: str = Field(alias="deliveryRecordId", min_length=1)
    subscription_id: str = Field(alias="subscriptionId", min_length=1)
    attempt: int = Field(default=1, ge=1)
    envelope: EventEnvelope

    def to_wire(self) -> dict[str, Any]:
        return {
            "deliveryRecordId": self.delivery_record_id,
            "subscriptionId": self.subscription_id,
            "attempt": self.attempt,
            "envelope": self.envelope.to_wire(),
        }


class DeadLetter(BaseModel):
    """Message parked on the dead-letter topic for manual inspection."""

    reason: str
    error_type: str
    source: str
    replay_topic: str | None = None
    failed_message: dict[str, Any] | str | None = None
    dead_lettered_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
