"""Subscription registry queries and circuit-breaker bookkeeping."""

from datetime import datetime

from sqlalchemy import and_, case, select, update

from finhooks.common.models import Subscription
from finhooks.common.state_machine import ACTIVE, DISABLED, INACTIVE

LAST_ERROR_MAX_CHARS = 500


def find_active_subscriptions(db, tenant_id: str, event_type: str) -> list[Subscription]:
    """ACTIVE subscriptions of `tenant_id` that listen to `event_type`."""

    candidates = db.execute(
        select(Subscription)
        .where(Subscription.tenant_id == tenant_id, Subscription.state == ACTIVE)
        .order_by(Subscription.created_at)
    ).scalars()
    # Per-tenant subscription count is capped, so filtering here stays cheap.
    return [sub for sub in candidates if event_type in (sub.subscribed_events or [])]


def record_delivery_success(db, subscription_id: str, now: datetime) -> None:
    """Reset the failure counter and lift an automatic disable."""

    db.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id)
        .values(
            consecutive_failures=0,
            # An admin deactivation that raced the attempt wins.
            state=case((Subscription.state == INACTIVE, INACTIVE), else_=ACTIVE),
            last_attempt_at=now,
            last_success_at=now,
            last_error=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )


def record_delivery_failure(
    db, subscription_id: str, error: str, threshold: int, now: datetime
) -> tuple[int, bool]:
    """Count one failed attempt; disable at `threshold` consecutive failures.

    Returns the new failure count and whether this call disabled the
    subscription.
    """

    previous_state = db.execute(select(Subscription.state).where(Subscription.id == subscription_id)).scalar_one()
    db.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id)
        .values(
            consecutive_failures=Subscription.consecutive_failures + 1,
            state=case(
                (
                    and_(Subscription.consecutive_failures + 1 >= threshold, Subscription.state == ACTIVE),
                    DISABLED,
                ),
                else_=Subscription.state,
            ),
            last_attempt_at=now,
            last_failure_at=now,
            last_error=error[:LAST_ERROR_MAX_CHARS],
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    failures, state = db.execute(
        select(Subscription.consecutive_failures, Subscription.state).where(Subscription.id == subscription_id)
    ).one()
    return failures, state == DISABLED and previous_state != DISABLED
