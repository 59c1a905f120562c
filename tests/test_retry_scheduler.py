"""Durable retry scheduling: claims, re-publication and replay resets."""

from datetime import timedelta

import pytest
from sqlalchemy import select, update

from finhooks.common.bus import InMemoryBus
from finhooks.common.deliveries import (
    claim_due_retries,
    release_retry_claim,
    reset_for_replay,
    transition_delivery,
    upsert_delivery_record,
    utcnow,
)
from finhooks.common.errors import InvalidTransition
from finhooks.common.events import DELIVERY_TOPIC, EventEnvelope
from finhooks.common.models import DeliveryRecord
from finhooks.common.state_machine import FAILED, PENDING, RETRYING
from finhooks.services.delivery.service import DeliveryService


def _envelope(event_id="evt_1"):
    return EventEnvelope(
        id=event_id,
        type="charge.paid",
        timestamp="2026-10-16T12:00:00+00:00",
        tenant_id="m1",
        data={"amountCents": 10000},
    )


def _retrying_record(session_factory, subscription_id, event_id="evt_1", due_in_seconds=-1) -> str:
    with session_factory() as db:
        record, _ = upsert_delivery_record(db, subscription_id, _envelope(event_id))
        transition_delivery(
            db,
            record.id,
            PENDING,
            1,
            RETRYING,
            attempt_count=2,
            next_attempt_at=utcnow() + timedelta(seconds=due_in_seconds),
        )
        db.commit()
        return record.id


def test_upsert_is_idempotent(session_factory, make_subscription):
    subscription, _ = make_subscription()
    with session_factory() as db:
        first, created = upsert_delivery_record(db, subscription.id, _envelope())
        second, created_again = upsert_delivery_record(db, subscription.id, _envelope())
        db.commit()
        count = len(db.execute(select(DeliveryRecord)).scalars().all())
    assert created is True
    assert created_again is False
    assert first.id == second.id
    assert count == 1


def test_transition_conflict_raises(session_factory, make_subscription):
    subscription, _ = make_subscription()
    with session_factory() as db:
        record, _ = upsert_delivery_record(db, subscription.id, _envelope())
        with pytest.raises(RuntimeError, match="concurrency conflict"):
            transition_delivery(db, record.id, PENDING, 2, RETRYING)


def test_only_due_retries_are_claimed(session_factory, make_subscription):
    subscription, _ = make_subscription()
    due_id = _retrying_record(session_factory, subscription.id, "evt_due", due_in_seconds=-1)
    _retrying_record(session_factory, subscription.id, "evt_later", due_in_seconds=60)

    with session_factory() as db:
        claimed = claim_due_retries(db)
        db.commit()
    assert [record.id for record in claimed] == [due_id]

    with session_factory() as db:
        assert claim_due_retries(db) == []


def test_stale_claims_are_reclaimed(session_factory, make_subscription):
    subscription, _ = make_subscription()
    record_id = _retrying_record(session_factory, subscription.id)
    with session_factory() as db:
        assert len(claim_due_retries(db)) == 1
        db.commit()
    with session_factory() as db:
        db.execute(
            update(DeliveryRecord)
            .where(DeliveryRecord.id == record_id)
            .values(task_published_at=utcnow() - timedelta(seconds=600))
        )
        db.commit()
    with session_factory() as db:
        assert [record.id for record in claim_due_retries(db, claim_timeout_seconds=300)] == [record_id]


def test_released_claim_is_claimable_again(session_factory, make_subscription):
    subscription, _ = make_subscription()
    record_id = _retrying_record(session_factory, subscription.id)
    with session_factory() as db:
        claim_due_retries(db)
        release_retry_claim(db, record_id)
        db.commit()
    with session_factory() as db:
        assert len(claim_due_retries(db)) == 1


async def test_publish_due_retries_rebuilds_task(session_factory, bus, delivery, make_subscription):
    subscription, _ = make_subscription()
    record_id = _retrying_record(session_factory, subscription.id)

    assert await delivery.publish_due_retries() == 1
    [task] = bus.published(DELIVERY_TOPIC)
    assert task["deliveryRecordId"] == record_id
    assert task["subscriptionId"] == subscription.id
    assert task["attempt"] == 2
    assert task["envelope"]["id"] == "evt_1"
    assert task["envelope"]["data"] == {"amountCents": 10000}

    assert await delivery.publish_due_retries() == 0


async def test_failed_publish_releases_claim(session_factory, settings, make_subscription):
    subscription, _ = make_subscription()
    record_id = _retrying_record(session_factory, subscription.id)
    closed_bus = InMemoryBus()
    await closed_bus.close()

    assert await DeliveryService(session_factory, closed_bus, settings).publish_due_retries() == 0
    with session_factory() as db:
        assert db.get(DeliveryRecord, record_id).task_published_at is None


def test_reset_for_replay_restores_attempt_budget(session_factory, make_subscription):
    subscription, _ = make_subscription()
    with session_factory() as db:
        record, _ = upsert_delivery_record(db, subscription.id, _envelope())
        transition_delivery(db, record.id, PENDING, 1, FAILED, attempt_count=5, last_error="HTTP_500")
        db.commit()
        replayed = reset_for_replay(db, record.id)
        db.commit()
    assert replayed.status == PENDING
    assert replayed.attempt_count == 1
    assert replayed.last_error is None


def test_reset_for_replay_requires_failed_record(session_factory, make_subscription):
    subscription, _ = make_subscription()
    with session_factory() as db:
        record, _ = upsert_delivery_record(db, subscription.id, _envelope())
        db.commit()
        with pytest.raises(InvalidTransition):
            reset_for_replay(db, record.id)
        with pytest.raises(ValueError):
            reset_for_replay(db, "missing")
