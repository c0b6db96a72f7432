"""Order lifecycle: statuses, allowed transitions and tracking progress.

::

    payment_pending -> pending -> confirmed -> processing -> shipped -> delivered
          |               \\__________\\____________\\___________\\____> cancelled
          +--> payment_failed

``payment_pending`` is left only through a verified gateway callback.  The
operator moves orders along the main line one step at a time and may cancel
any order that has not reached a terminal state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from .errors import InvalidStatusError, InvalidTransitionError

PAYMENT_PENDING = "payment_pending"
PENDING = "pending"
CONFIRMED = "confirmed"
PROCESSING = "processing"
SHIPPED = "shipped"
DELIVERED = "delivered"
CANCELLED = "cancelled"
PAYMENT_FAILED = "payment_failed"

ALL_STATUSES = (
    PAYMENT_PENDING, PENDING, CONFIRMED, PROCESSING, SHIPPED, DELIVERED, CANCELLED, PAYMENT_FAILED,
)
TERMINAL_STATUSES = frozenset({DELIVERED, CANCELLED, PAYMENT_FAILED})

# Statuses an operator may set from the admin surface.
ADMIN_STATUSES = frozenset({PENDING, CONFIRMED, PROCESSING, SHIPPED, DELIVERED, CANCELLED})

_FORWARD = {
    PENDING: CONFIRMED,
    CONFIRMED: PROCESSING,
    PROCESSING: SHIPPED,
    SHIPPED: DELIVERED,
}

# Gateway-driven moves; never reachable from the admin surface.
_PAYMENT_OUTCOMES = {
    PAYMENT_PENDING: frozenset({PENDING, PAYMENT_FAILED}),
}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def admin_transition_allowed(current: str, requested: str) -> bool:
    """Whether an operator may move an order from ``current`` to ``requested``."""
    if current in TERMINAL_STATUSES:
        return False
    if requested == CANCELLED:
        return True
    return _FORWARD.get(current) == requested


def check_admin_transition(current: str, requested: str) -> None:
    """Raise if ``requested`` is unknown or not reachable from ``current``."""
    if requested not in ADMIN_STATUSES:
        raise InvalidStatusError(requested)
    if not admin_transition_allowed(current, requested):
        raise InvalidTransitionError(current, requested)


def payment_transition_allowed(current: str, requested: str) -> bool:
    return requested in _PAYMENT_OUTCOMES.get(current, frozenset())


@dataclass(frozen=True)
class Progress:
    step: int
    message: str
    percentage: int


_PROGRESS: Dict[str, Progress] = {
    PAYMENT_PENDING: Progress(0, "Awaiting payment confirmation", 0),
    PENDING: Progress(1, "Order placed successfully", 20),
    CONFIRMED: Progress(2, "Order confirmed, preparing for delivery", 40),
    PROCESSING: Progress(3, "Order is being prepared", 60),
    SHIPPED: Progress(4, "Order shipped, on the way", 80),
    DELIVERED: Progress(5, "Order delivered successfully", 100),
    CANCELLED: Progress(0, "Order cancelled", 0),
    PAYMENT_FAILED: Progress(0, "Payment failed", 0),
}


def progress_for(status: str) -> Progress:
    # unknown values (legacy rows) are shown as a freshly placed order
    return _PROGRESS.get(status, _PROGRESS[PENDING])


def tracking_view(status: str) -> Dict[str, object]:
    """The tracking block returned alongside an order."""
    progress = progress_for(status)
    return {
        "currentStatus": status,
        "currentStep": progress.step,
        "statusMessage": progress.message,
        "progressPercentage": progress.percentage,
        "isDelivered": status == DELIVERED,
        "isCancelled": status == CANCELLED,
        "canTrack": status not in (CANCELLED, PAYMENT_FAILED),
    }
