"""Order lifecycle error taxonomy.

Every error here is an expected, recoverable outcome reported back to the
caller. ``AlreadyTakenError`` and ``StaleStateError`` are normal results of
concurrent use and are not system failures. Persistence errors are not
wrapped: SQLAlchemy errors propagate unchanged.
"""

from typing import Any


class OrderLifecycleError(Exception):
    """Base exception for order lifecycle outcomes."""

    code = "order_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class OrderNotFoundError(OrderLifecycleError):
    """Referenced order does not exist."""

    code = "not_found"


class IllegalTransitionError(OrderLifecycleError):
    """Requested target is not the unique legal successor of the current status."""

    code = "illegal_transition"


class UnauthorizedActorError(OrderLifecycleError):
    """Acting principal does not own the order for the requested action."""

    code = "unauthorized"


class LocationRequiredError(OrderLifecycleError):
    """A forward transition was requested without a location snapshot."""

    code = "location_required"


class AlreadyTakenError(OrderLifecycleError):
    """Another driver claimed the order first."""

    code = "already_taken"


class StaleStateError(OrderLifecycleError):
    """The order already moved past the state the request expected."""

    code = "stale_state"


class OrderValidationError(OrderLifecycleError):
    """Order input failed validation at creation time."""

    code = "validation_error"
