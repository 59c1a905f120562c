"""Event publisher used in-process by business services.

`publish` returns only after the broker confirmed the write; any broker error
surfaces as `EventPublishError` so the calling use case decides whether to
retry or drop the notification.
"""

from typing import Any

from finhooks.common.bus import MessageBus
from finhooks.common.errors import EventPublishError
from finhooks.common.events import EventEnvelope, EventType, event_topic
from finhooks.common.logging import log_context, logger
from finhooks.common.metrics import events_published_total


class EventPublisher:
    """Publishes immutable event envelopes onto `events.<type>` topics."""

    def __init__(self, bus: MessageBus, service_name: str = "publisher") -> None:
        self.bus = bus
        self.service_name = service_name

    async def publish(
        self,
        event_type: EventType | str,
        tenant_id: str,
        data: dict[str, Any],
        trace_id: str | None = None,
    ) -> dict[str, str]:
        """Build a new envelope for one business event and publish it once."""

        known_type = EventType(event_type)
        envelope = EventEnvelope.create(known_type.value, tenant_id, data, trace_id=trace_id)
        await self.publish_envelope(envelope)
        return {"eventId": envelope.id}

    async def publish_envelope(self, envelope: EventEnvelope) -> None:
        """Publish an already-built envelope; replays keep the original id."""

        with log_context(trace_id=envelope.trace_id or "", event_id=envelope.id):
            try:
                await self.bus.publish(event_topic(envelope.type), envelope, key=envelope.id)
            except Exception as exc:
                logger.error(
                    "event_publish_failed event_type=%s tenant_id=%s error=%s",
                    envelope.type,
                    envelope.tenant_id,
                    exc,
                )
                raise EventPublishError(f"publish of {envelope.id} not confirmed: {exc}") from exc
            events_published_total.labels(service=self.service_name, event_type=envelope.type).inc()
            logger.info("event_published event_type=%s tenant_id=%s", envelope.type, envelope.tenant_id)
