"""API request/response schemas for the webhook admin and publish endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from finhooks.common.events import EventType


class SubscriptionCreateRequest(BaseModel):
    """Payload accepted by `POST /webhooks`."""

    name: str = Field(min_length=1, max_length=200)
    url: str = Field(min_length=1)
    events: list[EventType] = Field(min_length=1)
    dev_mode: bool = False


class SubscriptionUpdateRequest(BaseModel):
    """Partial update; omitted fields stay unchanged."""

    name: str | None = Field(default=None, min_length=1, max_length=200)
    url: str | None = None
    events: list[EventType] | None = None
    active: bool | None = None


class SubscriptionResponse(BaseModel):
    """Subscription view; the signing secret is never part of it."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    public_id: str
    name: str
    url: str = Field(validation_alias="endpoint_url")
    events: list[str] = Field(validation_alias="subscribed_events")
    state: str
    consecutive_failures: int
    dev_mode: bool
    last_attempt_at: datetime | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime | None = None


class SubscriptionCreatedResponse(SubscriptionResponse):
    secret: str


class SecretRotationResponse(BaseModel):
    id: str
    public_id: str
    secret: str


class TestEventResponse(BaseModel):
    event_id: str
    queued: bool


class DeliveryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_id: str
    event_type: str
    status: str
    attempt_count: int
    next_attempt_at: datetime | None = None
    last_http_status: int | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class AttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    delivery_id: str
    event_id: str
    event_type: str
    attempt_number: int
    success: bool
    http_status: int | None = None
    latency_ms: int
    error_message: str | None = None
    response_body_excerpt: str | None = None
    created_at: datetime | None = None


class PublishEventRequest(BaseModel):
    """Internal publish payload for services that cannot embed the publisher."""

    model_config = ConfigDict(populate_by_name=True)

    type: EventType
    tenant_id: str = Field(alias="tenantId", min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    trace_id: str | None = Field(default=None, alias="traceId")


class PublishEventResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(alias="eventId")
