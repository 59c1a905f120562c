"""Subscription registration and maintenance for integrators and admins.

Secrets are generated here and returned only by `create` and `rotate_secret`.
Subscriptions are addressed by internal id or public id and always checked
against the caller's tenant.
"""

import secrets
from urllib.parse import urlsplit
from uuid import uuid4

from sqlalchemy import func, or_, select, update

from finhooks.common.config import WebhookSettings
from finhooks.common.deliveries import utcnow
from finhooks.common.errors import (
    SubscriptionForbidden,
    SubscriptionLimitExceeded,
    SubscriptionNotFound,
    SubscriptionValidationError,
)
from finhooks.common.events import EVENT_TYPES, EventEnvelope, EventType
from finhooks.common.logging import logger
from finhooks.common.models import DeliveryAttempt, DeliveryRecord, Subscription
from finhooks.common.state_machine import ACTIVE, INACTIVE, SUBSCRIPTION_TRANSITIONS, validate_transition
from finhooks.services.fanout.service import FanoutService

PUBLIC_ID_PREFIX = "wh_"
SECRET_BYTES = 32


def generate_secret() -> str:
    return secrets.token_hex(SECRET_BYTES)


def generate_public_id() -> str:
    return f"{PUBLIC_ID_PREFIX}{secrets.token_hex(12)}"


def validate_events(events: list[str]) -> list[str]:
    """Normalize a subscription's event filter against the closed event set."""

    values = [event.value if isinstance(event, EventType) else event for event in events]
    if not values:
        raise SubscriptionValidationError("at least one event type is required")
    unknown = sorted(set(values) - EVENT_TYPES)
    if unknown:
        raise SubscriptionValidationError(f"unknown event types: {', '.join(unknown)}")
    return sorted(set(values))


def validate_endpoint_url(url: str, dev_mode: bool) -> str:
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise SubscriptionValidationError("endpoint URL must be an absolute http(s) URL")
    if parts.scheme != "https" and not dev_mode:
        raise SubscriptionValidationError("endpoint URL must use https outside dev mode")
    return url


class SubscriptionService:
    """CRUD, activation, secret rotation and test sends for subscriptions."""

    def __init__(self, session_factory, fanout: FanoutService, settings: WebhookSettings) -> None:
        self.session_factory = session_factory
        self.fanout = fanout
        self.settings = settings

    def _get_owned(self, db, tenant_id: str, subscription_id: str) -> Subscription:
        subscription = db.execute(
            select(Subscription).where(
                or_(Subscription.id == subscription_id, Subscription.public_id == subscription_id)
            )
        ).scalar_one_or_none()
        if subscription is None:
            raise SubscriptionNotFound(subscription_id)
        if subscription.tenant_id != tenant_id:
            raise SubscriptionForbidden()
        return subscription

    def create(
        self, tenant_id: str, name: str, endpoint_url: str, events: list[str], dev_mode: bool = False
    ) -> tuple[Subscription, str]:
        """Register an endpoint; returns it with its signing secret (shown once)."""

        if not name.strip():
            raise SubscriptionValidationError("name is required")
        validate_endpoint_url(endpoint_url, dev_mode)
        event_types = validate_events(events)
        secret = generate_secret()
        with self.session_factory() as db:
            current = db.execute(
                select(func.count()).select_from(Subscription).where(Subscription.tenant_id == tenant_id)
            ).scalar_one()
            if current >= self.settings.max_subscriptions_per_tenant:
                raise SubscriptionLimitExceeded(self.settings.max_subscriptions_per_tenant)
            subscription = Subscription(
                id=str(uuid4()),
                public_id=generate_public_id(),
                tenant_id=tenant_id,
                name=name.strip(),
                endpoint_url=endpoint_url,
                signing_secret=secret,
                subscribed_events=event_types,
                state=ACTIVE,
                consecutive_failures=0,
                dev_mode=dev_mode,
            )
            db.add(subscription)
            db.commit()
            db.refresh(subscription)
        logger.info(
            "subscription_created subscription_id=%s tenant_id=%s events=%s",
            subscription.id,
            tenant_id,
            event_types,
        )
        return subscription, secret

    def list_for_tenant(self, tenant_id: str, include_inactive: bool = True) -> list[Subscription]:
        with self.session_factory() as db:
            query = select(Subscription).where(Subscription.tenant_id == tenant_id)
            if not include_inactive:
                query = query.where(Subscription.state == ACTIVE)
            return list(db.execute(query.order_by(Subscription.created_at)).scalars().all())

    def get(self, tenant_id: str, subscription_id: str) -> Subscription:
        with self.session_factory() as db:
            return self._get_owned(db, tenant_id, subscription_id)

    def update(
        self,
        tenant_id: str,
        subscription_id: str,
        name: str | None = None,
        endpoint_url: str | None = None,
        events: list[str] | None = None,
        active: bool | None = None,
    ) -> Subscription:
        with self.session_factory() as db:
            subscription = self._get_owned(db, tenant_id, subscription_id)
            if name is not None:
                if not name.strip():
                    raise SubscriptionValidationError("name is required")
                subscription.name = name.strip()
            if endpoint_url is not None:
                subscription.endpoint_url = validate_endpoint_url(endpoint_url, subscription.dev_mode)
            if events is not None:
                subscription.subscribed_events = validate_events(events)
            if active is not None:
                self._set_state(subscription, ACTIVE if active else INACTIVE)
            subscription.updated_at = utcnow()
            db.commit()
            db.refresh(subscription)
            return subscription

    @staticmethod
    def _set_state(subscription: Subscription, new_state: str) -> None:
        validate_transition(subscription.state, new_state, SUBSCRIPTION_TRANSITIONS)
        previous_state = subscription.state
        subscription.state = new_state
        if new_state == ACTIVE and previous_state != ACTIVE:
            subscription.consecutive_failures = 0

    def activate(self, tenant_id: str, subscription_id: str) -> Subscription:
        """Manual re-enable (also the only way out of DISABLED)."""

        return self.update(tenant_id, subscription_id, active=True)

    def deactivate(self, tenant_id: str, subscription_id: str) -> Subscription:
        return self.update(tenant_id, subscription_id, active=False)

    def delete(self, tenant_id: str, subscription_id: str) -> str:
        with self.session_factory() as db:
            subscription = self._get_owned(db, tenant_id, subscription_id)
            deleted_id = subscription.id
            db.delete(subscription)
            db.commit()
        logger.info("subscription_deleted subscription_id=%s tenant_id=%s", deleted_id, tenant_id)
        return deleted_id

    def rotate_secret(self, tenant_id: str, subscription_id: str) -> tuple[Subscription, str]:
        """Replace the signing secret; the old one stops working immediately."""

        new_secret = generate_secret()
        with self.session_factory() as db:
            subscription = self._get_owned(db, tenant_id, subscription_id)
            db.execute(
                update(Subscription)
                .where(Subscription.id == subscription.id)
                .values(signing_secret=new_secret, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            db.commit()
            db.refresh(subscription)
        logger.info("subscription_secret_rotated subscription_id=%s", subscription.id)
        return subscription, new_secret

    async def send_test_event(self, tenant_id: str, subscription_id: str) -> dict:
        """Queue a `webhook.test` delivery to one subscription through the normal delivery path."""

        with self.session_factory() as db:
            subscription = self._get_owned(db, tenant_id, subscription_id)
        envelope = EventEnvelope.create(
            EventType.WEBHOOK_TEST.value,
            tenant_id,
            event_id=f"evt_test_{uuid4()}",
            trace_id=f"trace_test_{uuid4()}",
            data={
                "message": "Test event from finhooks",
                "webhook": {
                    "id": subscription.public_id,
                    "name": subscription.name,
                    "url": subscription.endpoint_url,
                },
            },
        )
        queued = await self.fanout.enqueue_delivery(subscription.id, envelope)
        return {"event_id": envelope.id, "queued": queued}

    def list_deliveries(self, tenant_id: str, subscription_id: str, limit: int = 50) -> list[DeliveryRecord]:
        with self.session_factory() as db:
            subscription = self._get_owned(db, tenant_id, subscription_id)
            return list(
                db.execute(
                    select(DeliveryRecord)
                    .where(DeliveryRecord.subscription_id == subscription.id)
                    .order_by(DeliveryRecord.created_at.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )

    def list_attempts(self, tenant_id: str, subscription_id: str, limit: int = 50) -> list[DeliveryAttempt]:
        with self.session_factory() as db:
            subscription = self._get_owned(db, tenant_id, subscription_id)
            return list(
                db.execute(
                    select(DeliveryAttempt)
                    .where(DeliveryAttempt.subscription_id == subscription.id)
                    .order_by(DeliveryAttempt.created_at.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )
