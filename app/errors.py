"""
Error taxonomy shared by the submission endpoint, the worker and the store backends.
`retryable` tells the worker loop whether redelivery can fix the failure.
"""


class OrderPipelineError(Exception):
    retryable = False


class InvalidInput(OrderPipelineError):
    """Client-fixable input; rejected before any side effect."""


class InvalidTransition(OrderPipelineError):
    """Requested status does not follow the lifecycle from the current status."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move order from {current} to {requested}")


class NotFound(OrderPipelineError):
    retryable = True

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class AlreadyExists(OrderPipelineError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} already exists")


class Conflict(OrderPipelineError):
    """Stored version no longer matches the expected concurrency token."""

    retryable = True

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} was modified concurrently")


class TransportDecodeError(OrderPipelineError):
    """Queue payload could not be decoded into an order."""


class StoreUnavailable(OrderPipelineError):
    retryable = True
