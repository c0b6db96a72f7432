"""Top-level package for the ghee shop order system.

The business logic lives in :mod:`order_service`, persistence in
:mod:`dao`, the payment gateway adapter in :mod:`payment_service` and the
customer notifications in :mod:`notification_service`.  :mod:`web` wires
everything into a JSON HTTP API.
"""

__version__ = "1.0.0"
