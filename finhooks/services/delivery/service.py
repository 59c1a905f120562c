"""Delivery worker: signed HTTP callbacks with retry, backoff and circuit breaking.

Per task: skip finished/stale/not-yet-due records, fail fast for inactive
subscriptions, POST the signed envelope, log the attempt, then either finalize
the record or schedule the next attempt. Retries are persisted as
`RETRYING` + `next_attempt_at` and re-published by `retry_publisher`, so a
worker restart never loses a scheduled retry.
"""

import asyncio
import random
import time
from dataclasses import dataclass
from datetime import timedelta

import httpx
from opentelemetry import trace
from pydantic import ValidationError

from finhooks.common.bus import MessageBus
from finhooks.common.config import WebhookSettings
from finhooks.common.deliveries import (
    as_utc,
    claim_due_retries,
    release_retry_claim,
    transition_delivery,
    update_retry_backlog_metrics,
    utcnow,
)
from finhooks.common.events import DELIVERY_TOPIC, DLQ_TOPIC, DeadLetter, DeliveryTask, EventEnvelope
from finhooks.common.logging import log_context, logger
from finhooks.common.metrics import (
    delivery_attempts_total,
    delivery_latency_seconds,
    dlq_published_total,
    duplicate_tasks_skipped_total,
    retries_total,
    subscriptions_disabled_total,
)
from finhooks.common.models import DeliveryAttempt, DeliveryRecord, Subscription
from finhooks.common.retry import next_retry_delay_ms
from finhooks.common.signing import EVENT_ID_HEADER, EVENT_TYPE_HEADER, SIGNATURE_HEADER, now_ms, signature_header
from finhooks.common.state_machine import ACTIVE, FAILED, RETRYING, SUCCESS, TERMINAL_DELIVERY_STATES
from finhooks.common.subscriptions import record_delivery_failure, record_delivery_success
from finhooks.common.tracing import sanitize_url

USER_AGENT = "finhooks-webhooks/1.0"
SUBSCRIPTION_INACTIVE = "subscription inactive"


@dataclass(frozen=True)
class AttemptOutcome:
    """Result of one HTTP attempt; `http_status` is None for network failures."""

    success: bool
    http_status: int | None
    response_excerpt: str | None
    latency_ms: int
    error: str | None


@dataclass(frozen=True)
class _Target:
    record_id: str
    status: str
    attempt: int
    subscription_id: str
    endpoint_url: str
    signing_secret: str


class DeliveryService:
    """Consumes delivery tasks and drives record + subscription state."""

    def __init__(
        self,
        session_factory,
        bus: MessageBus,
        settings: WebhookSettings,
        http_client: httpx.AsyncClient | None = None,
        rng: random.Random | None = None,
        service_name: str = "delivery",
    ) -> None:
        self.session_factory = session_factory
        self.bus = bus
        self.settings = settings
        self.rng = rng
        self.service_name = service_name
        self._http = http_client
        self._owns_http = http_client is None
        self._tracer = trace.get_tracer("finhooks.delivery")

    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.settings.delivery_timeout_seconds)
        return self._http

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    def _skip(self, reason: str, record_id: str) -> None:
        duplicate_tasks_skipped_total.labels(service=self.service_name, reason=reason).inc()
        logger.info("delivery_task_skipped delivery_id=%s reason=%s", record_id, reason)

    async def handle_task(self, payload: dict) -> None:
        """Process one delivery task (broker handler)."""

        try:
            task = DeliveryTask.model_validate(payload)
        except ValidationError as exc:
            logger.warning(
                "malformed_delivery_task_dropped errors=%s", [error["loc"] for error in exc.errors()]
            )
            return
        with log_context(
            trace_id=task.envelope.trace_id or "",
            event_id=task.envelope.id,
            delivery_id=task.delivery_record_id,
        ):
            await self._process(task)

    def _load_target(self, task: DeliveryTask) -> _Target | None:
        """Apply the pre-attempt guards; None means there is nothing to send."""

        now = utcnow()
        with self.session_factory() as db:
            record = db.get(DeliveryRecord, task.delivery_record_id)
            if record is None:
                logger.warning("delivery_record_missing delivery_id=%s", task.delivery_record_id)
                return None
            if record.status in TERMINAL_DELIVERY_STATES:
                self._skip("terminal", record.id)
                return None
            if task.attempt != record.attempt_count:
                self._skip("stale", record.id)
                return None
            next_attempt_at = as_utc(record.next_attempt_at)
            if next_attempt_at is not None and next_attempt_at > now:
                release_retry_claim(db, record.id)
                db.commit()
                self._skip("not_due", record.id)
                return None

            subscription = db.get(Subscription, record.subscription_id)
            if subscription is None or subscription.state != ACTIVE:
                transition_delivery(
                    db,
                    record.id,
                    record.status,
                    record.attempt_count,
                    FAILED,
                    last_error=SUBSCRIPTION_INACTIVE,
                    next_attempt_at=None,
                )
                db.commit()
                logger.info(
                    "delivery_cancelled subscription_id=%s state=%s reason=%s",
                    record.subscription_id,
                    subscription.state if subscription else "MISSING",
                    SUBSCRIPTION_INACTIVE,
                )
                return None

            return _Target(
                record_id=record.id,
                status=record.status,
                attempt=record.attempt_count,
                subscription_id=subscription.id,
                endpoint_url=subscription.endpoint_url,
                signing_secret=subscription.signing_secret,
            )

    async def attempt(self, url: str, secret: str, envelope: EventEnvelope) -> AttemptOutcome:
        """POST the signed envelope once; never raises for HTTP/network failures."""

        body = envelope.canonical_body()
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            EVENT_ID_HEADER: envelope.id,
            EVENT_TYPE_HEADER: envelope.type,
            SIGNATURE_HEADER: signature_header(secret, now_ms(), body),
        }
        with self._tracer.start_as_current_span(
            "webhook.delivery",
            attributes={"http.method": "POST", "http.url": sanitize_url(url), "webhook.event_type": envelope.type},
        ) as span:
            start = time.perf_counter()
            status_code: int | None = None
            excerpt: str | None = None
            error: str | None = None
            try:
                response = await self.http().post(
                    url,
                    content=body.encode("utf-8"),
                    headers=headers,
                    timeout=self.settings.delivery_timeout_seconds,
                )
                status_code = response.status_code
                excerpt = response.text[: self.settings.response_excerpt_chars]
                span.set_attribute("http.status_code", status_code)
                if not 200 <= status_code < 300:
                    error = f"HTTP_{status_code}"
            except httpx.TimeoutException as exc:
                error = f"timeout: {exc}" if str(exc) else "timeout"
            except httpx.HTTPError as exc:
                error = f"connection error: {exc}" if str(exc) else f"connection error: {type(exc).__name__}"
            latency_ms = int((time.perf_counter() - start) * 1000)
            if error is not None:
                span.set_status(trace.StatusCode.ERROR, error)

        delivery_latency_seconds.labels(service=self.service_name).observe(latency_ms / 1000)
        return AttemptOutcome(
            success=error is None,
            http_status=status_code,
            response_excerpt=excerpt,
            latency_ms=latency_ms,
            error=error,
        )

    def _log_attempt(self, target: _Target, envelope: EventEnvelope, outcome: AttemptOutcome) -> None:
        with self.session_factory() as db:
            db.add(
                DeliveryAttempt(
                    delivery_id=target.record_id,
                    subscription_id=target.subscription_id,
                    event_id=envelope.id,
                    event_type=envelope.type,
                    payload_snapshot=envelope.to_wire(),
                    http_status=outcome.http_status,
                    response_body_excerpt=outcome.response_excerpt,
                    latency_ms=outcome.latency_ms,
                    success=outcome.success,
                    error_message=outcome.error,
                    attempt_number=target.attempt,
                )
            )
            db.commit()

    async def _process(self, task: DeliveryTask) -> None:
        target = self._load_target(task)
        if target is None:
            return

        outcome = await self.attempt(target.endpoint_url, target.signing_secret, task.envelope)
        delivery_attempts_total.labels(
            service=self.service_name, outcome="success" if outcome.success else "failure"
        ).inc()
        # The attempt is on record before any state transition.
        self._log_attempt(target, task.envelope, outcome)

        if outcome.success:
            self._finalize_success(target, outcome)
        else:
            await self._handle_failure(target, task, outcome)

    def _finalize_success(self, target: _Target, outcome: AttemptOutcome) -> None:
        now = utcnow()
        with self.session_factory() as db:
            transition_delivery(
                db,
                target.record_id,
                target.status,
                target.attempt,
                SUCCESS,
                last_http_status=outcome.http_status,
                last_error=None,
                next_attempt_at=None,
            )
            record_delivery_success(db, target.subscription_id, now)
            db.commit()
        logger.info(
            "delivery_succeeded subscription_id=%s attempt=%s http_status=%s latency_ms=%s",
            target.subscription_id,
            target.attempt,
            outcome.http_status,
            outcome.latency_ms,
        )

    async def _handle_failure(self, target: _Target, task: DeliveryTask, outcome: AttemptOutcome) -> None:
        error = outcome.error or "unknown error"
        exhausted = target.attempt >= self.settings.max_attempts
        if exhausted:
            await self.bus.publish(
                DLQ_TOPIC,
                DeadLetter(
                    reason=error,
                    error_type="RETRY_EXHAUSTED",
                    source=self.service_name,
                    replay_topic=DELIVERY_TOPIC,
                    failed_message=task.to_wire(),
                ),
                key=target.record_id,
            )
            dlq_published_total.labels(
                service=self.service_name, topic=DLQ_TOPIC, error_type="RETRY_EXHAUSTED"
            ).inc()

        now = utcnow()
        with self.session_factory() as db:
            failures, disabled = record_delivery_failure(
                db, target.subscription_id, error, self.settings.disable_threshold, now
            )
            if exhausted:
                transition_delivery(
                    db,
                    target.record_id,
                    target.status,
                    target.attempt,
                    FAILED,
                    last_http_status=outcome.http_status,
                    last_error=error,
                    next_attempt_at=None,
                )
                delay_ms = None
            else:
                delay_ms = next_retry_delay_ms(
                    target.attempt,
                    self.settings.retry_schedule_ms,
                    self.settings.retry_jitter_ratio,
                    self.rng,
                )
                transition_delivery(
                    db,
                    target.record_id,
                    target.status,
                    target.attempt,
                    RETRYING,
                    attempt_count=target.attempt + 1,
                    next_attempt_at=now + timedelta(milliseconds=delay_ms),
                    last_http_status=outcome.http_status,
                    last_error=error,
                    task_published_at=None,
                )
            db.commit()

        logger.warning(
            "delivery_failed subscription_id=%s attempt=%s http_status=%s error=%s consecutive_failures=%s",
            target.subscription_id,
            target.attempt,
            outcome.http_status,
            error,
            failures,
        )
        if disabled:
            subscriptions_disabled_total.labels(service=self.service_name).inc()
            logger.error(
                "subscription_auto_disabled subscription_id=%s consecutive_failures=%s",
                target.subscription_id,
                failures,
            )
        if exhausted:
            logger.error(
                "delivery_retries_exhausted subscription_id=%s attempts=%s", target.subscription_id, target.attempt
            )
        else:
            retries_total.labels(service=self.service_name).inc()
            logger.info("delivery_retry_scheduled next_attempt=%s delay_ms=%s", target.attempt + 1, delay_ms)

    async def publish_due_retries(self, limit: int = 100) -> int:
        """Re-publish tasks for every due retry; returns how many were published."""

        with self.session_factory() as db:
            records = claim_due_retries(db, limit=limit, claim_timeout_seconds=self.settings.retry_claim_timeout_seconds)
            update_retry_backlog_metrics(db, self.service_name)
            db.commit()
        published = 0
        for record in records:
            task = DeliveryTask(
                delivery_record_id=record.id,
                subscription_id=record.subscription_id,
                attempt=record.attempt_count,
                envelope=EventEnvelope.model_validate(record.envelope),
            )
            try:
                await self.bus.publish(DELIVERY_TOPIC, task, key=record.id)
                published += 1
            except Exception as exc:
                logger.exception("retry_publish_failed delivery_id=%s error=%s", record.id, exc)
                with self.session_factory() as db:
                    release_retry_claim(db, record.id)
                    db.commit()
        return published

    async def retry_publisher(self) -> None:
        """Continuously re-publish due retries."""

        while True:
            try:
                await self.publish_due_retries()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("retry_publisher_error error=%s", exc)
            await asyncio.sleep(self.settings.retry_poll_interval_seconds)

    async def start_consumers(self) -> None:
        """Start the delivery task consumer."""

        await self.bus.consume(self.handle_task, group_id="webhooks-delivery", topics=[DELIVERY_TOPIC])
