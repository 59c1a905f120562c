"""HTTP surface for subscription management and internal event publishing.

Every route requires the shared `X-Api-Key`; subscription routes are scoped to
the caller's `X-Tenant-Id`. `POST /internal/events` honours an optional
`Idempotency-Key` through a Redis cache, like the payment gateway does.
"""

import json
from time import perf_counter

from fastapi import Depends, FastAPI, Header, HTTPException, Request

from finhooks.common.config import WebhookSettings
from finhooks.common.errors import (
    EventPublishError,
    InvalidTransition,
    SubscriptionError,
    SubscriptionForbidden,
    SubscriptionLimitExceeded,
    SubscriptionNotFound,
)
from finhooks.common.logging import logger, trace_id_ctx
from finhooks.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from finhooks.services.admin.schemas import (
    AttemptResponse,
    DeliveryResponse,
    PublishEventRequest,
    PublishEventResponse,
    SecretRotationResponse,
    SubscriptionCreatedResponse,
    SubscriptionCreateRequest,
    SubscriptionResponse,
    SubscriptionUpdateRequest,
    TestEventResponse,
)
from finhooks.services.admin.service import SubscriptionService
from finhooks.services.publisher.service import EventPublisher


def _subscription_error(exc: Exception) -> HTTPException:
    """Map domain errors to HTTP status codes."""

    if isinstance(exc, SubscriptionNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, SubscriptionForbidden):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, (SubscriptionLimitExceeded, InvalidTransition)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=422, detail=str(exc))


def _idempotency_cache_key(tenant_id: str, idempotency_key: str) -> str:
    return f"idempotency:event:{tenant_id}:{idempotency_key}"


def create_app(
    subscriptions: SubscriptionService,
    publisher: EventPublisher,
    settings: WebhookSettings,
    cache=None,
    lifespan=None,
) -> FastAPI:
    """Build the admin app around already-constructed services.

    `cache` is a Redis client (or anything with `get`/`setex`); without one,
    idempotency keys are ignored.
    """

    app = FastAPI(title="Finhooks Webhook Admin", lifespan=lifespan)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    def enforce_api_key(x_api_key: str | None = Header(default=None)) -> None:
        """Reject requests that do not provide the configured API key."""

        if x_api_key != settings.api_key:
            raise HTTPException(status_code=401, detail="invalid API key")

    def tenant(
        _: None = Depends(enforce_api_key),
        x_tenant_id: str | None = Header(default=None),
    ) -> str:
        if not x_tenant_id:
            raise HTTPException(status_code=400, detail="X-Tenant-Id header is required")
        return x_tenant_id

    @app.post("/webhooks", status_code=201, response_model=SubscriptionCreatedResponse)
    def create_subscription(req: SubscriptionCreateRequest, tenant_id: str = Depends(tenant)):
        """Register an endpoint; the signing secret is only returned here."""

        try:
            subscription, secret = subscriptions.create(
                tenant_id, req.name, req.url, [event.value for event in req.events], req.dev_mode
            )
        except SubscriptionError as exc:
            raise _subscription_error(exc) from exc
        view = SubscriptionResponse.model_validate(subscription)
        return SubscriptionCreatedResponse(**view.model_dump(), secret=secret)

    @app.get("/webhooks", response_model=list[SubscriptionResponse])
    def list_subscriptions(tenant_id: str = Depends(tenant)):
        return [SubscriptionResponse.model_validate(sub) for sub in subscriptions.list_for_tenant(tenant_id)]

    @app.get("/webhooks/{subscription_id}", response_model=SubscriptionResponse)
    def get_subscription(subscription_id: str, tenant_id: str = Depends(tenant)):
        try:
            return SubscriptionResponse.model_validate(subscriptions.get(tenant_id, subscription_id))
        except SubscriptionError as exc:
            raise _subscription_error(exc) from exc

    @app.patch("/webhooks/{subscription_id}", response_model=SubscriptionResponse)
    def update_subscription(
        subscription_id: str, req: SubscriptionUpdateRequest, tenant_id: str = Depends(tenant)
    ):
        try:
            subscription = subscriptions.update(
                tenant_id,
                subscription_id,
                name=req.name,
                endpoint_url=req.url,
                events=[event.value for event in req.events] if req.events is not None else None,
                active=req.active,
            )
        except (SubscriptionError, InvalidTransition) as exc:
            raise _subscription_error(exc) from exc
        return SubscriptionResponse.model_validate(subscription)

    @app.delete("/webhooks/{subscription_id}")
    def delete_subscription(subscription_id: str, tenant_id: str = Depends(tenant)):
        try:
            deleted_id = subscriptions.delete(tenant_id, subscription_id)
        except SubscriptionError as exc:
            raise _subscription_error(exc) from exc
        return {"id": deleted_id, "deleted": True}

    @app.post("/webhooks/{subscription_id}/rotate-secret", response_model=SecretRotationResponse)
    def rotate_secret(subscription_id: str, tenant_id: str = Depends(tenant)):
        try:
            subscription, secret = subscriptions.rotate_secret(tenant_id, subscription_id)
        except SubscriptionError as exc:
            raise _subscription_error(exc) from exc
        return SecretRotationResponse(id=subscription.id, public_id=subscription.public_id, secret=secret)

    @app.post("/webhooks/{subscription_id}/activate", response_model=SubscriptionResponse)
    def activate_subscription(subscription_id: str, tenant_id: str = Depends(tenant)):
        """Manual re-enable, including after an automatic disable."""

        try:
            return SubscriptionResponse.model_validate(subscriptions.activate(tenant_id, subscription_id))
        except (SubscriptionError, InvalidTransition) as exc:
            raise _subscription_error(exc) from exc

    @app.post("/webhooks/{subscription_id}/deactivate", response_model=SubscriptionResponse)
    def deactivate_subscription(subscription_id: str, tenant_id: str = Depends(tenant)):
        try:
            return SubscriptionResponse.model_validate(subscriptions.deactivate(tenant_id, subscription_id))
        except (SubscriptionError, InvalidTransition) as exc:
            raise _subscription_error(exc) from exc

    @app.post("/webhooks/{subscription_id}/test", response_model=TestEventResponse)
    async def send_test_event(subscription_id: str, tenant_id: str = Depends(tenant)):
        """Queue a `webhook.test` delivery to this endpoint only."""

        try:
            result = await subscriptions.send_test_event(tenant_id, subscription_id)
        except SubscriptionError as exc:
            raise _subscription_error(exc) from exc
        return TestEventResponse(**result)

    @app.get("/webhooks/{subscription_id}/deliveries", response_model=list[DeliveryResponse])
    def list_deliveries(subscription_id: str, limit: int = 50, tenant_id: str = Depends(tenant)):
        try:
            records = subscriptions.list_deliveries(tenant_id, subscription_id, limit=min(limit, 200))
        except SubscriptionError as exc:
            raise _subscription_error(exc) from exc
        return [DeliveryResponse.model_validate(record) for record in records]

    @app.get("/webhooks/{subscription_id}/attempts", response_model=list[AttemptResponse])
    def list_attempts(subscription_id: str, limit: int = 50, tenant_id: str = Depends(tenant)):
        try:
            attempts = subscriptions.list_attempts(tenant_id, subscription_id, limit=min(limit, 200))
        except SubscriptionError as exc:
            raise _subscription_error(exc) from exc
        return [AttemptResponse.model_validate(attempt) for attempt in attempts]

    @app.post("/internal/events", status_code=202, response_model=PublishEventResponse)
    async def publish_event(
        req: PublishEventRequest,
        _: None = Depends(enforce_api_key),
        idempotency_key: str | None = Header(default=None),
    ):
        """Publish one business event; a repeated Idempotency-Key returns the first result."""

        if req.trace_id:
            trace_id_ctx.set(req.trace_id)
        cache_key = _idempotency_cache_key(req.tenant_id, idempotency_key) if idempotency_key else None
        if cache is not None and cache_key is not None:
            try:
                cached = cache.get(cache_key)
                if cached:
                    return json.loads(cached)
            except Exception as exc:
                logger.warning("idempotency_cache_read_failed: %s", exc)

        try:
            result = await publisher.publish(req.type, req.tenant_id, req.data, trace_id=req.trace_id)
        except EventPublishError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

        if cache is not None and cache_key is not None:
            try:
                cache.setex(cache_key, settings.idempotency_ttl_seconds, json.dumps(result))
            except Exception as exc:
                logger.warning("idempotency_cache_write_failed: %s", exc)
        return result

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app
