"""Shared fixtures: SQLite-backed stores, the in-memory bus and a scripted endpoint."""

import random

import httpx
import pytest

from finhooks.common import models  # noqa: F401  (registers tables on Base.metadata)
from finhooks.common.bus import InMemoryBus
from finhooks.common.config import WebhookSettings
from finhooks.common.db import Base, create_session_factory
from finhooks.common.events import DELIVERY_TOPIC, EVENT_TOPIC_PATTERN
from finhooks.services.admin.service import SubscriptionService
from finhooks.services.delivery.service import DeliveryService
from finhooks.services.fanout.service import FanoutService
from finhooks.services.publisher.service import EventPublisher


class ScriptedEndpoint:
    """httpx mock handler returning queued outcomes, then `default_status`."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.outcomes: list = []
        self.default_status = 200
        self.body = "ok"

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if self.outcomes else self.default_status
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, text=self.body)


@pytest.fixture
def settings():
    return WebhookSettings(_env_file=None, bus_backend="memory", api_key="test-key")


@pytest.fixture
def session_factory(tmp_path):
    factory = create_session_factory(
        f"sqlite:///{tmp_path / 'webhooks.db'}",
        connect_args={"check_same_thread": False},
    )
    engine = factory.kw["bind"]
    Base.metadata.create_all(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def bus():
    return InMemoryBus()


@pytest.fixture
def publisher(bus):
    return EventPublisher(bus)


@pytest.fixture
def fanout(session_factory, bus):
    return FanoutService(session_factory, bus)


@pytest.fixture
def subscriptions(session_factory, fanout, settings):
    return SubscriptionService(session_factory, fanout, settings)


@pytest.fixture
def make_subscription(subscriptions):
    """Create a subscription; returns `(subscription, secret)`."""

    def _make(tenant_id="m1", events=("charge.paid",), url="https://hooks.example.com/finhooks", **kwargs):
        return subscriptions.create(tenant_id, kwargs.pop("name", "orders"), url, list(events), **kwargs)

    return _make


@pytest.fixture
def endpoint():
    return ScriptedEndpoint()


@pytest.fixture
async def make_delivery(session_factory, bus, settings, endpoint):
    """Build a DeliveryService against the scripted endpoint, with optional setting overrides."""

    clients: list[httpx.AsyncClient] = []

    def _make(**overrides) -> DeliveryService:
        client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
        clients.append(client)
        return DeliveryService(
            session_factory,
            bus,
            settings.model_copy(update=overrides),
            http_client=client,
            rng=random.Random(7),
        )

    yield _make
    for client in clients:
        await client.aclose()


@pytest.fixture
async def delivery(make_delivery):
    return make_delivery()


@pytest.fixture
def pump(bus, fanout):
    """Drive queued messages through fan-out and delivery once each."""

    async def _pump(delivery: DeliveryService) -> None:
        await bus.drain(fanout.handle_event, "webhooks-fanout", pattern=EVENT_TOPIC_PATTERN)
        await bus.drain(delivery.handle_task, "webhooks-delivery", topics=[DELIVERY_TOPIC])

    return _pump
