"""Delivery worker lifecycle: task consumer, retry scheduler and probes."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from finhooks.common.bus import build_bus
from finhooks.common.config import settings
from finhooks.common.db import create_session_factory
from finhooks.common.logging import configure_logging
from finhooks.common.metrics import metrics_response
from finhooks.common.startup import log_startup_config
from finhooks.common.tracing import instrument_app, setup_tracing
from finhooks.services.delivery.service import DeliveryService

configure_logging()
setup_tracing(settings.service_name, settings.otel_exporter_otlp_endpoint)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "KAFKA_BOOTSTRAP_SERVERS",
        "DELIVERY_TIMEOUT_SECONDS",
        "MAX_ATTEMPTS",
        "DISABLE_THRESHOLD",
        "RETRY_SCHEDULE_MS",
        "CONSUMER_PREFETCH",
    ],
)
bus = build_bus(settings)
service = DeliveryService(
    create_session_factory(settings.postgres_dsn), bus, settings, service_name=settings.service_name
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the retry scheduler and task consumer with the app lifecycle."""

    retry_task = asyncio.create_task(service.retry_publisher())
    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    retry_task.cancel()
    consumer_task.cancel()
    await service.close()
    await bus.close()


app = FastAPI(title="Finhooks Delivery Worker", lifespan=lifespan)
instrument_app(app)


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
