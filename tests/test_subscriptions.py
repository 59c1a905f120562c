"""Subscription registry rules and circuit-breaker bookkeeping."""

import re

import pytest
from sqlalchemy import select

from finhooks.common.deliveries import utcnow
from finhooks.common.errors import (
    SubscriptionForbidden,
    SubscriptionLimitExceeded,
    SubscriptionNotFound,
    SubscriptionValidationError,
)
from finhooks.common.events import DELIVERY_TOPIC
from finhooks.common.models import DeliveryRecord, Subscription
from finhooks.common.state_machine import ACTIVE, DISABLED, INACTIVE
from finhooks.common.subscriptions import (
    find_active_subscriptions,
    record_delivery_failure,
    record_delivery_success,
)
from finhooks.services.admin.service import validate_endpoint_url, validate_events


def _fail(session_factory, subscription_id, times, threshold=10):
    results = []
    with session_factory() as db:
        for _ in range(times):
            results.append(record_delivery_failure(db, subscription_id, "HTTP_500", threshold, utcnow()))
        db.commit()
    return results


def _state(session_factory, subscription_id):
    with session_factory() as db:
        subscription = db.get(Subscription, subscription_id)
        return subscription.state, subscription.consecutive_failures


def test_nine_failures_keep_subscription_active(session_factory, make_subscription):
    subscription, _ = make_subscription()
    _fail(session_factory, subscription.id, 9)
    assert _state(session_factory, subscription.id) == (ACTIVE, 9)


def test_tenth_failure_disables(session_factory, make_subscription):
    subscription, _ = make_subscription()
    results = _fail(session_factory, subscription.id, 10)
    assert results[-1] == (10, True)
    assert not any(disabled for _, disabled in results[:-1])
    assert _state(session_factory, subscription.id) == (DISABLED, 10)

    # Further failures are counted but do not report a new disable.
    assert _fail(session_factory, subscription.id, 1) == [(11, False)]


def test_intervening_success_resets_counter(session_factory, make_subscription):
    subscription, _ = make_subscription()
    _fail(session_factory, subscription.id, 9)
    with session_factory() as db:
        record_delivery_success(db, subscription.id, utcnow())
        db.commit()
    assert _state(session_factory, subscription.id) == (ACTIVE, 0)

    _fail(session_factory, subscription.id, 9)
    assert _state(session_factory, subscription.id) == (ACTIVE, 9)


def test_success_does_not_undo_admin_deactivation(session_factory, subscriptions, make_subscription):
    subscription, _ = make_subscription()
    subscriptions.deactivate("m1", subscription.id)
    with session_factory() as db:
        record_delivery_success(db, subscription.id, utcnow())
        db.commit()
    assert _state(session_factory, subscription.id) == (INACTIVE, 0)


def test_last_error_is_truncated(session_factory, make_subscription):
    subscription, _ = make_subscription()
    with session_factory() as db:
        record_delivery_failure(db, subscription.id, "e" * 2_000, 10, utcnow())
        db.commit()
        assert len(db.get(Subscription, subscription.id).last_error) == 500


def test_find_active_subscriptions_filters_tenant_event_and_state(
    session_factory, subscriptions, make_subscription
):
    match, _ = make_subscription(name="match")
    paused, _ = make_subscription(name="paused")
    subscriptions.deactivate("m1", paused.id)
    make_subscription(name="other-event", events=["billing.paid"])
    make_subscription(tenant_id="m2", name="other-tenant")

    with session_factory() as db:
        found = find_active_subscriptions(db, "m1", "charge.paid")
    assert [sub.id for sub in found] == [match.id]


def test_create_generates_public_id_and_secret(make_subscription):
    subscription, secret = make_subscription(events=["charge.paid", "billing.paid", "charge.paid"])
    assert re.fullmatch(r"wh_[0-9a-f]{24}", subscription.public_id)
    assert re.fullmatch(r"[0-9a-f]{64}", secret)
    assert subscription.signing_secret == secret
    assert subscription.subscribed_events == ["billing.paid", "charge.paid"]
    assert subscription.state == ACTIVE
    assert subscription.consecutive_failures == 0


def test_endpoint_url_rules():
    assert validate_endpoint_url("https://hooks.example.com/x", dev_mode=False)
    assert validate_endpoint_url("http://localhost:8080/x", dev_mode=True)
    with pytest.raises(SubscriptionValidationError):
        validate_endpoint_url("http://hooks.example.com/x", dev_mode=False)
    with pytest.raises(SubscriptionValidationError):
        validate_endpoint_url("ftp://hooks.example.com/x", dev_mode=True)
    with pytest.raises(SubscriptionValidationError):
        validate_endpoint_url("not a url", dev_mode=True)


def test_event_filter_rules():
    with pytest.raises(SubscriptionValidationError):
        validate_events([])
    with pytest.raises(SubscriptionValidationError):
        validate_events(["charge.paid", "charge.teleported"])


def test_tenant_limit(subscriptions, settings, make_subscription):
    for index in range(settings.max_subscriptions_per_tenant):
        make_subscription(name=f"hook-{index}")
    with pytest.raises(SubscriptionLimitExceeded):
        make_subscription(name="one-too-many")
    make_subscription(tenant_id="m2")


def test_tenant_ownership(subscriptions, make_subscription):
    subscription, _ = make_subscription()
    assert subscriptions.get("m1", subscription.public_id).id == subscription.id
    with pytest.raises(SubscriptionForbidden):
        subscriptions.get("m2", subscription.id)
    with pytest.raises(SubscriptionNotFound):
        subscriptions.get("m1", "wh_missing")


def test_activate_resets_failures(session_factory, subscriptions, make_subscription):
    subscription, _ = make_subscription()
    _fail(session_factory, subscription.id, 10)
    assert _state(session_factory, subscription.id) == (DISABLED, 10)

    subscriptions.activate("m1", subscription.id)
    assert _state(session_factory, subscription.id) == (ACTIVE, 0)


def test_updating_an_active_subscription_keeps_failure_count(
    session_factory, subscriptions, make_subscription
):
    subscription, _ = make_subscription()
    _fail(session_factory, subscription.id, 3)

    subscriptions.update("m1", subscription.id, active=True)
    assert _state(session_factory, subscription.id) == (ACTIVE, 3)

    subscriptions.update("m1", subscription.id, name="renamed")
    assert _state(session_factory, subscription.id) == (ACTIVE, 3)


def test_update_fields(subscriptions, make_subscription):
    subscription, _ = make_subscription()
    updated = subscriptions.update(
        "m1",
        subscription.id,
        name="renamed",
        endpoint_url="https://other.example.com/hook",
        events=["withdraw.done"],
        active=False,
    )
    assert updated.name == "renamed"
    assert updated.endpoint_url == "https://other.example.com/hook"
    assert updated.subscribed_events == ["withdraw.done"]
    assert updated.state == INACTIVE
    with pytest.raises(SubscriptionValidationError):
        subscriptions.update("m1", subscription.id, endpoint_url="http://other.example.com/hook")


def test_rotate_secret_replaces_secret(session_factory, subscriptions, make_subscription):
    subscription, old_secret = make_subscription()
    _, new_secret = subscriptions.rotate_secret("m1", subscription.id)
    assert new_secret != old_secret
    with session_factory() as db:
        assert db.get(Subscription, subscription.id).signing_secret == new_secret


def test_delete_removes_subscription(subscriptions, make_subscription):
    subscription, _ = make_subscription()
    assert subscriptions.delete("m1", subscription.id) == subscription.id
    assert subscriptions.list_for_tenant("m1") == []


def test_list_can_exclude_inactive(subscriptions, make_subscription):
    active, _ = make_subscription(name="active")
    paused, _ = make_subscription(name="paused")
    subscriptions.deactivate("m1", paused.id)
    assert {sub.id for sub in subscriptions.list_for_tenant("m1")} == {active.id, paused.id}
    assert [sub.id for sub in subscriptions.list_for_tenant("m1", include_inactive=False)] == [active.id]


async def test_send_test_event_targets_one_subscription(
    session_factory, bus, subscriptions, make_subscription
):
    subscription, _ = make_subscription(events=["billing.paid"])
    make_subscription(name="bystander", events=["billing.paid"])

    result = await subscriptions.send_test_event("m1", subscription.id)

    assert result["queued"] is True
    assert result["event_id"].startswith("evt_test_")
    [task] = bus.published(DELIVERY_TOPIC)
    assert task["subscriptionId"] == subscription.id
    envelope = task["envelope"]
    assert envelope["type"] == "webhook.test"
    assert envelope["traceId"].startswith("trace_test_")
    assert envelope["data"]["webhook"] == {
        "id": subscription.public_id,
        "name": subscription.name,
        "url": subscription.endpoint_url,
    }
    with session_factory() as db:
        [record] = db.execute(select(DeliveryRecord)).scalars().all()
    assert record.event_id == result["event_id"]
