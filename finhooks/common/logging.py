"""Structured JSON logging with event/delivery context fields."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from finhooks.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
delivery_id_ctx: ContextVar[str] = ContextVar("delivery_id", default="")


class ContextFilter(logging.Filter):
    """Inject service and correlation identifiers into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.event_id = event_id_ctx.get()
        record.delivery_id = delivery_id_ctx.get()
        return True


def configure_logging() -> None:
    """Configure root logger once per process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(event_id)s %(delivery_id)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)


@contextmanager
def log_context(trace_id: str | None = None, event_id: str | None = None, delivery_id: str | None = None):
    """Bind correlation ids for the duration of one message handler."""

    tokens = []
    if trace_id is not None:
        tokens.append((trace_id_ctx, trace_id_ctx.set(trace_id)))
    if event_id is not None:
        tokens.append((event_id_ctx, event_id_ctx.set(event_id)))
    if delivery_id is not None:
        tokens.append((delivery_id_ctx, delivery_id_ctx.set(delivery_id)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


logger = logging.getLogger("finhooks")
