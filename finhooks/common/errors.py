"""Error types raised by webhook services and mapped at the HTTP edge."""


class SubscriptionError(ValueError):
    """Base class for admin-facing subscription errors."""


class SubscriptionNotFound(SubscriptionError):
    def __init__(self, subscription_id: str) -> None:
        super().__init__(f"subscription not found: {subscription_id}")
        self.subscription_id = subscription_id


class SubscriptionForbidden(SubscriptionError):
    def __init__(self) -> None:
        super().__init__("subscription belongs to another tenant")


class SubscriptionValidationError(SubscriptionError):
    """Invalid URL, unknown event types or an empty name."""


class SubscriptionLimitExceeded(SubscriptionError):
    def __init__(self, limit: int) -> None:
        super().__init__(f"limit of {limit} subscriptions per tenant reached")
        self.limit = limit


class InvalidTransition(ValueError):
    """A state change not allowed by the delivery/subscription state machines."""


class EventPublishError(RuntimeError):
    """The broker rejected or did not confirm an event publish."""
