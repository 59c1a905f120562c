"""In-memory bus acknowledgement semantics and message encoding."""

import json

import pytest

from finhooks.common.bus import InMemoryBus, KafkaBus, build_bus, decode_value, encode_value
from finhooks.common.config import WebhookSettings
from finhooks.common.events import EVENT_TOPIC_PATTERN, EventEnvelope


def test_encode_uses_wire_form():
    envelope = EventEnvelope(
        id="evt_1",
        type="charge.paid",
        timestamp="2026-10-16T12:00:00+00:00",
        tenant_id="m1",
        data={"amountCents": 10000},
    )
    decoded = json.loads(encode_value(envelope))
    assert decoded == {
        "id": "evt_1",
        "type": "charge.paid",
        "timestamp": envelope.timestamp,
        "tenantId": "m1",
        "data": {"amountCents": 10000},
    }


def test_decode_rejects_non_objects():
    assert decode_value(b'{"a": 1}') == {"a": 1}
    assert decode_value(b"[1, 2]") is None
    assert decode_value(b"not json") is None
    assert decode_value(b"\xff\xfe") is None
    assert decode_value(None) is None


async def test_failed_handler_sees_message_again():
    """A message is only acknowledged once its handler returned."""

    bus = InMemoryBus()
    await bus.publish("events.charge.paid", {"n": 1})
    await bus.publish("events.charge.paid", {"n": 2})
    seen: list[int] = []
    fail_once = {"armed": True}

    async def handler(payload):
        seen.append(payload["n"])
        if payload["n"] == 2 and fail_once["armed"]:
            fail_once["armed"] = False
            raise RuntimeError("boom")

    assert await bus.drain(handler, "g1", topics=["events.charge.paid"]) == 1
    assert await bus.drain(handler, "g1", topics=["events.charge.paid"]) == 1
    assert seen == [1, 2, 2]
    assert await bus.drain(handler, "g1", topics=["events.charge.paid"]) == 0


async def test_groups_have_independent_cursors_and_patterns():
    bus = InMemoryBus()
    await bus.publish("events.charge.paid", {"n": 1})
    await bus.publish("webhooks.delivery", {"n": 2})
    await bus.publish("events.billing.paid", {"n": 3})

    events: list[int] = []
    tasks: list[int] = []

    async def on_event(payload):
        events.append(payload["n"])

    async def on_task(payload):
        tasks.append(payload["n"])

    await bus.drain(on_event, "fanout", pattern=EVENT_TOPIC_PATTERN)
    await bus.drain(on_task, "delivery", topics=["webhooks.delivery"])
    assert events == [1, 3]
    assert tasks == [2]


async def test_publish_after_close_fails():
    bus = InMemoryBus()
    await bus.close()
    with pytest.raises(RuntimeError):
        await bus.publish("events.charge.paid", {})


def test_build_bus_selects_adapter():
    assert isinstance(build_bus(WebhookSettings(_env_file=None, bus_backend="memory")), InMemoryBus)
    kafka = build_bus(WebhookSettings(_env_file=None, bus_backend="kafka", consumer_prefetch=3))
    assert isinstance(kafka, KafkaBus)
    assert kafka.prefetch == 3
    with pytest.raises(ValueError):
        build_bus(WebhookSettings(_env_file=None, bus_backend="carrier-pigeon"))
