"""Admin/publish API process: subscription management plus internal event intake."""

from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI

from finhooks.common.bus import build_bus
from finhooks.common.config import settings
from finhooks.common.db import create_session_factory
from finhooks.common.logging import configure_logging
from finhooks.common.startup import log_startup_config
from finhooks.common.tracing import instrument_app, setup_tracing
from finhooks.services.admin.api import create_app
from finhooks.services.admin.service import SubscriptionService
from finhooks.services.fanout.service import FanoutService
from finhooks.services.publisher.service import EventPublisher

configure_logging()
setup_tracing(settings.service_name, settings.otel_exporter_otlp_endpoint)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "KAFKA_BOOTSTRAP_SERVERS", "REDIS_URL", "API_KEY", "BUS_BACKEND"],
)
session_factory = create_session_factory(settings.postgres_dsn)
bus = build_bus(settings)
publisher = EventPublisher(bus, service_name=settings.service_name)
subscriptions = SubscriptionService(
    session_factory, FanoutService(session_factory, bus, service_name=settings.service_name), settings
)
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Flush and close the producer on shutdown."""

    yield
    await bus.close()


app = create_app(subscriptions, publisher, settings, cache=rdb, lifespan=lifespan)
instrument_app(app)
