"""Delivery record helpers: idempotent creation, guarded transitions, retry claims.

Every write is a single-row conditional statement, so concurrent workers racing
on the same record either win cleanly or get a conflict they can redeliver.
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from finhooks.common.events import EventEnvelope
from finhooks.common.metrics import retry_oldest_due_age_seconds, retry_pending_total
from finhooks.common.models import DeliveryRecord
from finhooks.common.state_machine import PENDING, RETRYING, validate_transition

_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize datetimes read back from stores that drop tzinfo."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def upsert_delivery_record(db, subscription_id: str, envelope: EventEnvelope) -> tuple[DeliveryRecord, bool]:
    """Create the `(subscription_id, event id)` record unless it already exists.

    Returns the stored record and whether this call created it.
    """

    dialect = db.get_bind().dialect.name
    insert = _INSERTS.get(dialect)
    if insert is None:
        raise ValueError(f"upsert not supported for dialect {dialect}")
    now = utcnow()
    result = db.execute(
        insert(DeliveryRecord)
        .values(
            id=str(uuid4()),
            subscription_id=subscription_id,
            event_id=envelope.id,
            event_type=envelope.type,
            envelope=envelope.to_wire(),
            attempt_count=1,
            status=PENDING,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["subscription_id", "event_id"])
    )
    record = db.execute(
        select(DeliveryRecord).where(
            DeliveryRecord.subscription_id == subscription_id,
            DeliveryRecord.event_id == envelope.id,
        )
    ).scalar_one()
    return record, result.rowcount == 1


def transition_delivery(
    db,
    record_id: str,
    current_status: str,
    current_attempt: int,
    new_status: str,
    **values,
) -> None:
    """Apply one validated state change guarded by `(id, status, attempt_count)`."""

    validate_transition(current_status, new_status)
    result = db.execute(
        update(DeliveryRecord)
        .where(
            DeliveryRecord.id == record_id,
            DeliveryRecord.status == current_status,
            DeliveryRecord.attempt_count == current_attempt,
        )
        .values(status=new_status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise RuntimeError(
            f"concurrency conflict for delivery {record_id} "
            f"(expected {current_status} at attempt {current_attempt})"
        )


def _claimable(now: datetime, claim_timeout_seconds: int):
    stale_before = now - timedelta(seconds=claim_timeout_seconds)
    return (
        DeliveryRecord.status == RETRYING,
        DeliveryRecord.next_attempt_at <= now,
        or_(DeliveryRecord.task_published_at.is_(None), DeliveryRecord.task_published_at < stale_before),
    )


def claim_due_retries(db, limit: int = 100, claim_timeout_seconds: int = 300) -> list[DeliveryRecord]:
    """Claim RETRYING records whose `next_attempt_at` has passed.

    Claims left behind by a crashed publisher are taken again once older than
    `claim_timeout_seconds`.
    """

    now = utcnow()
    conditions = _claimable(now, claim_timeout_seconds)
    due_ids = (
        db.execute(
            select(DeliveryRecord.id)
            .where(*conditions)
            .order_by(DeliveryRecord.next_attempt_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        .scalars()
        .all()
    )
    claimed: list[str] = []
    for record_id in due_ids:
        result = db.execute(
            update(DeliveryRecord)
            .where(DeliveryRecord.id == record_id, *conditions)
            .values(task_published_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed.append(record_id)
    if not claimed:
        return []
    return list(db.execute(select(DeliveryRecord).where(DeliveryRecord.id.in_(claimed))).scalars().all())


def release_retry_claim(db, record_id: str) -> None:
    """Hand a RETRYING record back to the scheduler."""

    db.execute(
        update(DeliveryRecord)
        .where(DeliveryRecord.id == record_id, DeliveryRecord.status == RETRYING)
        .values(task_published_at=None)
        .execution_options(synchronize_session=False)
    )


def reset_for_replay(db, record_id: str) -> DeliveryRecord:
    """Give a FAILED record a fresh attempt budget for manual replay."""

    record = db.get(DeliveryRecord, record_id, populate_existing=True)
    if record is None:
        raise ValueError(f"delivery not found: {record_id}")
    transition_delivery(
        db,
        record.id,
        record.status,
        record.attempt_count,
        PENDING,
        attempt_count=1,
        next_attempt_at=None,
        last_error=None,
        task_published_at=None,
    )
    db.refresh(record)
    return record


def update_retry_backlog_metrics(db, service_name: str) -> None:
    """Update gauges for retry depth and the oldest overdue retry."""

    now = utcnow()
    pending_count = db.execute(
        select(func.count()).select_from(DeliveryRecord).where(DeliveryRecord.status == RETRYING)
    ).scalar_one()
    oldest_due = db.execute(
        select(func.min(DeliveryRecord.next_attempt_at)).where(
            DeliveryRecord.status == RETRYING,
            DeliveryRecord.next_attempt_at <= now,
        )
    ).scalar_one()
    age_seconds = 0.0
    if oldest_due is not None:
        age_seconds = max(0.0, (now - as_utc(oldest_due)).total_seconds())
    retry_pending_total.labels(service=service_name).set(float(pending_count))
    retry_oldest_due_age_seconds.labels(service=service_name).set(age_seconds)
