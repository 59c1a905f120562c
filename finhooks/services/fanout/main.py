"""Fan-out worker lifecycle and probe endpoints."""

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
from finhooks.services.fanout.service import FanoutService

configure_logging()
setup_tracing(settings.service_name, settings.otel_exporter_otlp_endpoint)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "KAFKA_BOOTSTRAP_SERVERS", "CONSUMER_PREFETCH", "BUS_BACKEND"],
)
bus = build_bus(settings)
service = FanoutService(create_session_factory(settings.postgres_dsn), bus, service_name=settings.service_name)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the event consumer loop with the FastAPI application lifecycle."""

    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    consumer_task.cancel()
    await bus.close()


app = FastAPI(title="Finhooks Fan-out Worker", lifespan=lifespan)
instrument_app(app)


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
