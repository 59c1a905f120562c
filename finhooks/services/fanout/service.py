"""Fan-out worker: one event envelope in, one delivery task per subscriber out."""

from datetime import datetime, timezone

from pydantic import ValidationError

from finhooks.common.bus import MessageBus
from finhooks.common.deliveries import upsert_delivery_record
from finhooks.common.events import DELIVERY_TOPIC, EVENT_TOPIC_PATTERN, DeliveryTask, EventEnvelope, event_topic
from finhooks.common.logging import log_context, logger
from finhooks.common.metrics import deliveries_created_total, event_queue_delay_seconds
from finhooks.common.state_machine import PENDING
from finhooks.common.subscriptions import find_active_subscriptions


class FanoutIncomplete(RuntimeError):
    """Some subscriptions did not get a delivery task; the envelope must be redelivered."""


class FanoutService:
    """Resolves matching subscriptions and enqueues their delivery tasks."""

    def __init__(self, session_factory, bus: MessageBus, service_name: str = "fanout") -> None:
        self.session_factory = session_factory
        self.bus = bus
        self.service_name = service_name

    def _observe_queue_delay(self, envelope: EventEnvelope) -> None:
        try:
            occurred_at = datetime.fromisoformat(envelope.timestamp.replace("Z", "+00:00"))
        except ValueError:
            return
        if occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)
        delay_seconds = max(0.0, (datetime.now(timezone.utc) - occurred_at).total_seconds())
        event_queue_delay_seconds.labels(service=self.service_name, topic=event_topic(envelope.type)).observe(
            delay_seconds
        )

    async def enqueue_delivery(self, subscription_id: str, envelope: EventEnvelope) -> bool:
        """Ensure the delivery record exists and queue its task while PENDING.

        Safe to repeat: the record is created at most once, and records already
        retrying or finished are left to the retry scheduler / skipped.
        Returns True when a task was published.
        """

        with self.session_factory() as db:
            record, created = upsert_delivery_record(db, subscription_id, envelope)
            db.commit()
        if created:
            deliveries_created_total.labels(service=self.service_name, event_type=envelope.type).inc()
        if record.status != PENDING:
            logger.info(
                "delivery_already_in_progress delivery_id=%s subscription_id=%s status=%s",
                record.id,
                subscription_id,
                record.status,
            )
            return False
        task = DeliveryTask(
            delivery_record_id=record.id,
            subscription_id=subscription_id,
            attempt=record.attempt_count,
            envelope=envelope,
        )
        await self.bus.publish(DELIVERY_TOPIC, task, key=record.id)
        logger.info(
            "delivery_task_enqueued delivery_id=%s subscription_id=%s created=%s",
            record.id,
            subscription_id,
            created,
        )
        return True

    async def handle_event(self, payload: dict) -> None:
        """Fan one envelope out to every matching ACTIVE subscription.

        Malformed envelopes are dropped. Registry errors propagate so the broker
        redelivers; per-subscription errors are isolated and reported once all
        subscriptions were tried.
        """

        try:
            envelope = EventEnvelope.model_validate(payload)
        except ValidationError as exc:
            logger.warning(
                "malformed_envelope_dropped event_id=%s errors=%s",
                payload.get("id"),
                [error["loc"] for error in exc.errors()],
            )
            return

        with log_context(trace_id=envelope.trace_id or "", event_id=envelope.id):
            self._observe_queue_delay(envelope)
            with self.session_factory() as db:
                subscription_ids = [
                    sub.id for sub in find_active_subscriptions(db, envelope.tenant_id, envelope.type)
                ]
            if not subscription_ids:
                logger.info(
                    "no_matching_subscriptions event_type=%s tenant_id=%s", envelope.type, envelope.tenant_id
                )
                return

            logger.info(
                "fanout_started event_type=%s tenant_id=%s subscriptions=%s",
                envelope.type,
                envelope.tenant_id,
                len(subscription_ids),
            )
            failed: list[str] = []
            for subscription_id in subscription_ids:
                try:
                    await self.enqueue_delivery(subscription_id, envelope)
                except Exception as exc:
                    failed.append(subscription_id)
                    logger.error(
                        "fanout_subscription_failed subscription_id=%s error=%s", subscription_id, exc
                    )
            if failed:
                raise FanoutIncomplete(f"{len(failed)} of {len(subscription_ids)} subscriptions not enqueued")

    async def start_consumers(self) -> None:
        """Consume every `events.*` topic."""

        await self.bus.consume(self.handle_event, group_id="webhooks-fanout", pattern=EVENT_TOPIC_PATTERN)
