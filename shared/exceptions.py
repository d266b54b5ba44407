"""Error taxonomy for the order lifecycle and notification pipeline.

Only ``InvalidTransition``, ``InvalidOrder`` and ``OrderNotFound`` ever reach an
HTTP caller. Transport problems are converted into results by the dispatcher
and into job state by the queue sweep.
"""
from typing import Optional


class PipelineError(Exception):
    """Base class for order lifecycle and notification errors."""


class InvalidTransition(PipelineError):
    """Requested status is outside the enum or not reachable from the current one."""

    def __init__(self, requested: str, current: Optional[str] = None):
        self.requested = requested
        self.current = current
        if current is None:
            message = f"Unknown order status: {requested!r}"
        else:
            message = f"Cannot move order from {current!r} to {requested!r}"
        super().__init__(message)


class InvalidOrder(PipelineError):
    """Order draft violates a creation rule (totals, items)."""


class OrderNotFound(PipelineError):
    """No order exists for the given order number."""

    def __init__(self, order_number: str):
        self.order_number = order_number
        super().__init__(f"Order {order_number} not found")


class TransportFailure(PipelineError):
    """An email or SMS provider call failed."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class RecipientUnresolved(PipelineError):
    """No usable email address on the order. Carried on a skipped result, never raised."""

    def __init__(self, order_number: str):
        self.order_number = order_number
        super().__init__(f"No recipient email for order {order_number}")


class RetryExhausted(PipelineError):
    """A job reached the retry ceiling. Its message is stored on the job, never raised."""

    def __init__(self, kind: str, order_number: str, attempts: int, last_error: str):
        self.kind = kind
        self.order_number = order_number
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{kind} for order {order_number} failed after {attempts} attempts: {last_error}")
