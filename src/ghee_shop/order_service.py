"""
Business logic for the shop: order placement, the payment flow, tracking
and the admin operations.  The HTTP layer and the CLI both call into
:class:`OrderService`; it returns plain dicts ready for JSON.
"""

from __future__ import annotations

import logging
import random
import re
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional, Tuple

from . import order_status as st
from .dao import Database, NewOrder, Order, OrderDAO, OrderItem, ProductDAO
from .errors import (
    InvalidStatusError,
    InvalidTransitionError,
    NotFoundError,
    OrderNotFoundError,
    PaymentGatewayError,
    PaymentVerificationError,
    ProductNotFoundError,
    ValidationError,
)
from .invoices import CompanyInfo, invoice_filename, render_order_pdf
from .metrics import (
    ORDER_CREATE_DURATION_SECONDS,
    ORDER_STATUS_TRANSITIONS_TOTAL,
    ORDERS_CREATED_TOTAL,
    PAYMENT_CALLBACKS_TOTAL,
)
from .notification_service import NoticeItem, NotificationDispatcher, OrderNotice
from .payment_service import FAILED, PENDING, SUCCESS, PhonePeGateway

logger = logging.getLogger(__name__)

ORDER_NUMBER_ATTEMPTS = 5
MAX_ID = 2 ** 63 - 1  # SQLite INTEGER
MAX_QUANTITY = 1000
REVENUE_EXCLUDED = (st.CANCELLED, st.PAYMENT_FAILED, st.PAYMENT_PENDING)
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_EMAIL_RE = re.compile(r'^[^\s@<>,;"]+@[^\s@<>,;"]+\.[^\s@<>,;"]+$')


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def _money(value: float) -> float:
    return round(float(value), 2)


def transaction_reference(order_number: str) -> str:
    """Gateway transaction id for an order; unique because order numbers are."""
    return f"TXN_{order_number}"


@dataclass
class LineRequest:
    product_id: int
    quantity: int


@dataclass
class CheckoutRequest:
    """Validated customer, delivery and item details from a storefront payload."""

    customer_name: str
    customer_phone: str
    delivery_address: str
    city: str
    pincode: str
    items: List[LineRequest] = field(default_factory=list)
    customer_email: Optional[str] = None
    landmark: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "CheckoutRequest":
        """
        Parse the JSON body.  Prices or totals sent by the client are ignored;
        only product ids and quantities are read from the item list.

        Raises:
            ValidationError: On a missing field or a malformed item.
        """
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")

        required = ("customerName", "customerPhone", "deliveryAddress", "city", "pincode")
        values: Dict[str, str] = {}
        missing = []
        for key in required:
            value = payload.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                value = str(value)
            if not isinstance(value, str) or not value.strip():
                missing.append(key)
            else:
                values[key] = value.strip()
        if missing:
            raise ValidationError("Missing required fields: " + ", ".join(missing))

        raw_items = payload.get("items")
        if not isinstance(raw_items, list) or not raw_items:
            raise ValidationError("Order must contain at least one item")
        items = [_parse_line(raw, idx) for idx, raw in enumerate(raw_items)]

        return cls(
            customer_name=values["customerName"],
            customer_phone=values["customerPhone"],
            delivery_address=values["deliveryAddress"],
            city=values["city"],
            pincode=values["pincode"],
            items=items,
            customer_email=_optional_email(payload.get("customerEmail"), "customerEmail"),
            landmark=_optional_str(payload.get("landmark")),
        )


def _optional_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _optional_email(value: Any, name: str) -> Optional[str]:
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    email = _optional_str(value)
    if email is not None and not _EMAIL_RE.match(email):
        raise ValidationError(f"{name} is not a valid email address")
    return email


def _in_id_range(value: int) -> bool:
    return 0 < value <= MAX_ID


def _as_int(value: Any) -> Optional[int]:
    """Whole numbers in ``1..MAX_ID``; anything else is None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    elif isinstance(value, str) and re.fullmatch(r"[0-9]+", value.strip()):
        value = int(value.strip())
    if not isinstance(value, int) or not _in_id_range(value):
        return None
    return value


def _parse_line(raw: Any, index: int) -> LineRequest:
    if not isinstance(raw, dict):
        raise ValidationError(f"Item {index + 1} must be an object")
    product_id = _as_int(raw.get("productId"))
    if product_id is None:
        raise ValidationError(f"Item {index + 1} has an invalid productId")
    quantity = _as_int(raw.get("quantity"))
    if quantity is None or quantity > MAX_QUANTITY:
        raise ValidationError(f"Item {index + 1} must have a quantity between 1 and {MAX_QUANTITY}")
    return LineRequest(product_id=product_id, quantity=quantity)


@dataclass
class PricedOrder:
    items: List[OrderItem]
    subtotal: float
    delivery_charge: float

    @property
    def total(self) -> float:
        return _money(self.subtotal + self.delivery_charge)


def _validate_day(value: Optional[str], name: str) -> Optional[str]:
    if not value:
        return None
    if not _DATE_RE.match(value):
        raise ValidationError(f"{name} must be a date in YYYY-MM-DD format")
    return value


class OrderService:
    """
    Orchestrates catalog, order store, payment gateway and notifications.

    Collaborators are passed in so each process (server, CLI, tests) builds
    exactly the set it needs.
    """

    def __init__(
        self,
        db: Database,
        gateway: PhonePeGateway,
        notifier: NotificationDispatcher,
        order_prefix: str = "AFK",
        delivery_fee: float = 49.0,
        company: Optional[CompanyInfo] = None,
    ) -> None:
        self.db = db
        self.products = ProductDAO(db)
        self.orders = OrderDAO(db)
        self.gateway = gateway
        self.notifier = notifier
        self.order_prefix = order_prefix
        self.delivery_fee = float(delivery_fee)
        self.company = company or CompanyInfo()

    # ---- Catalog ----

    def list_products(self) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self.products.list_products()]

    def get_product(self, product_id: int) -> Dict[str, Any]:
        product = self.products.get_product(product_id) if _in_id_range(product_id) else None
        if product is None:
            raise NotFoundError("Product not found")
        return product.to_dict()

    # ---- Pricing ----

    def price_items(self, lines: List[LineRequest]) -> PricedOrder:
        """Price every line from the catalog; any unknown product rejects the lot."""
        catalog = self.products.get_products(line.product_id for line in lines)
        for line in lines:
            if line.product_id not in catalog:
                raise ProductNotFoundError(line.product_id)

        items: List[OrderItem] = []
        free_delivery = False
        for line in lines:
            product = catalog[line.product_id]
            items.append(
                OrderItem(
                    product_id=product.id,
                    product_name=f"{product.name} {product.grams}g",
                    quantity=line.quantity,
                    price_per_unit=product.price,
                    total_price=_money(product.price * line.quantity),
                )
            )
            free_delivery = free_delivery or product.free_delivery
        subtotal = _money(sum(item.total_price for item in items))
        delivery = 0.0 if free_delivery else self.delivery_fee
        return PricedOrder(items=items, subtotal=subtotal, delivery_charge=delivery)

    def new_order_number(self) -> str:
        return f"{self.order_prefix}{_epoch_ms()}{random.randint(0, 999):03d}"

    def _persist(
        self, request: CheckoutRequest, priced: PricedOrder, status: str, with_reference: bool
    ) -> Tuple[int, str]:
        """Insert order + items atomically, regenerating the number on a collision.

        With ``with_reference`` the gateway transaction id is derived from the
        order number and written in the same insert.
        """
        last_error: Optional[sqlite3.IntegrityError] = None
        for _ in range(ORDER_NUMBER_ATTEMPTS):
            number = self.new_order_number()
            try:
                order_id = self.orders.create_order(
                    NewOrder(
                        order_number=number,
                        customer_name=request.customer_name,
                        customer_phone=request.customer_phone,
                        customer_email=request.customer_email,
                        delivery_address=request.delivery_address,
                        city=request.city,
                        pincode=request.pincode,
                        landmark=request.landmark,
                        subtotal=priced.subtotal,
                        delivery_charge=priced.delivery_charge,
                        total_amount=priced.total,
                        status=status,
                        items=priced.items,
                        payment_reference=transaction_reference(number) if with_reference else None,
                    )
                )
                return order_id, number
            except sqlite3.IntegrityError as exc:
                if "order_number" not in str(exc):
                    raise
                last_error = exc
                logger.warning("Order number collision; regenerating", extra={"order_number": number})
        raise RuntimeError("Could not allocate a unique order number") from last_error

    def _place(
        self, payload: Any, status: str, channel: str, with_reference: bool = False
    ) -> Tuple[int, str, PricedOrder]:
        start = time.perf_counter()
        request = CheckoutRequest.from_payload(payload)
        priced = self.price_items(request.items)
        order_id, number = self._persist(request, priced, status, with_reference)
        ORDERS_CREATED_TOTAL.inc(channel=channel)
        ORDER_CREATE_DURATION_SECONDS.observe(time.perf_counter() - start, channel=channel)
        logger.info(
            "Order created",
            extra={
                "order_number": number,
                "extra": {"order_id": order_id, "status": status, "total_amount": priced.total, "channel": channel},
            },
        )
        return order_id, number, priced

    def _notify(self, order_id: int) -> None:
        try:
            order = self.orders.get_by_id(order_id)
            if order is not None:
                self.notifier.dispatch_order_confirmation(OrderNotice.from_order(order))
        except Exception:
            logger.exception("Could not dispatch order confirmation", extra={"extra": {"order_id": order_id}})

    # ---- Direct checkout ----

    def create_order(self, payload: Any) -> Dict[str, Any]:
        order_id, number, priced = self._place(payload, st.PENDING, channel="direct")
        self._notify(order_id)
        return {
            "success": True,
            "message": "Order placed successfully",
            "orderNumber": number,
            "orderId": order_id,
            "totalAmount": priced.total,
            "subtotal": priced.subtotal,
            "deliveryCharge": priced.delivery_charge,
            "status": st.PENDING,
        }

    # ---- Payment flow ----

    def _record_transition(self, order: Order, new_status: str) -> bool:
        moved = self.orders.update_status_if(order.id, order.status, new_status)
        if moved:
            ORDER_STATUS_TRANSITIONS_TOTAL.inc(from_status=order.status, to_status=new_status)
            logger.info(
                "Order status changed",
                extra={"order_number": order.order_number, "extra": {"from": order.status, "to": new_status}},
            )
        return moved

    def initiate_payment(self, payload: Any) -> Dict[str, Any]:
        """Create a ``payment_pending`` order and open a gateway checkout for it.

        Raises:
            PaymentGatewayError: When the gateway cannot open a session; the
                order is marked ``payment_failed`` first.
        """
        if not self.gateway.configured:
            raise PaymentGatewayError("Online payment is not configured")
        order_id, number, priced = self._place(payload, st.PAYMENT_PENDING, channel="gateway", with_reference=True)
        transaction_id = transaction_reference(number)
        order = self.orders.get_by_id(order_id)
        try:
            session = self.gateway.initiate_checkout(priced.total, order.customer_phone, transaction_id)
        except PaymentGatewayError:
            self._record_transition(order, st.PAYMENT_FAILED)
            logger.error(
                "Payment initiation failed",
                extra={"order_number": number, "transaction_id": transaction_id},
            )
            raise
        return {
            "success": True,
            "orderNumber": number,
            "orderId": order_id,
            "merchantTransactionId": session.merchant_transaction_id,
            "paymentUrl": session.payment_url,
            "totalAmount": priced.total,
        }

    def handle_payment_callback(self, response: Any, checksum: Any) -> Dict[str, Any]:
        """Apply a gateway callback to the order it references.

        Only a ``payment_pending`` order is moved; replays of a processed
        callback leave the order as it is.
        """
        try:
            callback = self.gateway.verify_callback(
                response if isinstance(response, str) else "",
                checksum if isinstance(checksum, str) else "",
            )
        except PaymentVerificationError:
            PAYMENT_CALLBACKS_TOTAL.inc(outcome="rejected")
            logger.warning("Payment callback rejected")
            raise
        if not callback.transaction_id:
            PAYMENT_CALLBACKS_TOTAL.inc(outcome="rejected")
            raise PaymentVerificationError("Callback carries no transaction id")

        order = self.orders.get_by_payment_reference(callback.transaction_id)
        if order is None:
            PAYMENT_CALLBACKS_TOTAL.inc(outcome="unknown_order")
            raise OrderNotFoundError(callback.transaction_id)

        outcome = callback.outcome
        PAYMENT_CALLBACKS_TOTAL.inc(outcome=outcome)
        target = {SUCCESS: st.PENDING, FAILED: st.PAYMENT_FAILED}.get(outcome)
        changed = False
        if target and st.payment_transition_allowed(order.status, target):
            changed = self._record_transition(order, target)
            if changed and target == st.PENDING:
                self._notify(order.id)

        current = self.orders.get_by_id(order.id)
        logger.info(
            "Payment callback processed",
            extra={
                "order_number": order.order_number,
                "transaction_id": callback.transaction_id,
                "extra": {"code": callback.code, "changed": changed, "status": current.status},
            },
        )
        return {
            "success": True,
            "orderNumber": current.order_number,
            "paymentStatus": outcome,
            "status": current.status,
            "changed": changed,
        }

    def check_payment_status(self, transaction_id: str) -> Dict[str, Any]:
        """Ask the gateway about a transaction; reporting only, the order is not moved."""
        order = self.orders.get_by_payment_reference(transaction_id)
        if order is None:
            raise OrderNotFoundError(transaction_id)
        status = self.gateway.check_status(transaction_id)
        return {
            "success": status.status != FAILED,
            "transactionId": transaction_id,
            "paymentStatus": status.status,
            "code": status.code,
            "message": status.message,
            "orderNumber": order.order_number,
            "orderStatus": order.status,
            "isPending": status.status == PENDING,
        }

    # ---- Public lookups ----

    def get_order(self, order_number: str) -> Dict[str, Any]:
        order = self.orders.get_by_number(order_number)
        if order is None:
            raise OrderNotFoundError(order_number)
        return order.to_dict()

    def track_order(self, order_number: str) -> Dict[str, Any]:
        order = self.orders.get_by_number(order_number)
        if order is None:
            raise OrderNotFoundError(order_number)
        return {"order": order.to_dict(), "tracking": st.tracking_view(order.status)}

    def track_by_phone(self, phone: str) -> Dict[str, Any]:
        orders = self.orders.list_by_phone(phone.strip(), exclude_statuses=st.TERMINAL_STATUSES)
        if not orders:
            return {"message": "No pending orders found for this phone number", "count": 0, "orders": []}
        return {
            "message": "Orders found",
            "count": len(orders),
            "orders": [o.to_dict() for o in orders],
        }

    # ---- Admin ----

    def list_orders(
        self,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        start_date = _validate_day(start_date, "startDate")
        end_date = _validate_day(end_date, "endDate")
        if status and status not in st.ALL_STATUSES:
            raise InvalidStatusError(status)
        return [o.to_dict() for o in self.orders.list_orders(start_date, end_date, status or None)]

    def get_order_by_id(self, order_id: int) -> Dict[str, Any]:
        order = self.orders.get_by_id(order_id) if _in_id_range(order_id) else None
        if order is None:
            raise OrderNotFoundError(order_id)
        return order.to_dict()

    def update_status(self, order_id: int, new_status: Any) -> Dict[str, Any]:
        """Operator status change, guarded by the lifecycle rules.

        Raises:
            InvalidStatusError: ``new_status`` is not an admin-settable status.
            InvalidTransitionError: Not reachable from the current status.
            OrderNotFoundError: No such order.
        """
        if not isinstance(new_status, str) or new_status not in st.ADMIN_STATUSES:
            raise InvalidStatusError(str(new_status))
        order = self.orders.get_by_id(order_id) if _in_id_range(order_id) else None
        if order is None:
            raise OrderNotFoundError(order_id)
        st.check_admin_transition(order.status, new_status)
        if not self._record_transition(order, new_status):
            # lost a race with another update; report against the fresh status
            fresh = self.orders.get_by_id(order_id)
            raise InvalidTransitionError(fresh.status if fresh else order.status, new_status)
        updated = self.orders.get_by_id(order_id)
        return {
            "success": True,
            "message": "Order status updated successfully",
            "order": updated.to_dict(),
        }

    def update_product(self, product_id: int, payload: Any) -> Dict[str, Any]:
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        if not _in_id_range(product_id) or self.products.get_product(product_id) is None:
            raise NotFoundError("Product not found")

        price = payload.get("price")
        if price is not None:
            if isinstance(price, bool) or not isinstance(price, (int, float)) or price < 0:
                raise ValidationError("price must be a non-negative number")
            price = _money(price)
        free_delivery = payload.get("freeDelivery")
        if free_delivery is not None and not isinstance(free_delivery, bool):
            raise ValidationError("freeDelivery must be true or false")
        description = payload.get("description")
        if description is not None and not isinstance(description, str):
            raise ValidationError("description must be a string")
        badge = payload.get("badge")
        if badge is not None and not isinstance(badge, str):
            raise ValidationError("badge must be a string")
        if price is None and free_delivery is None and description is None and badge is None:
            raise ValidationError("Nothing to update")

        self.products.update_product(product_id, price, free_delivery, description, badge)
        logger.info(
            "Product updated",
            extra={"extra": {"product_id": product_id, "fields": sorted(k for k, v in payload.items() if v is not None)}},
        )
        return {
            "success": True,
            "message": "Product updated successfully",
            "product": self.products.get_product(product_id).to_dict(),
        }

    def stats(self, start_date: Optional[str] = None, end_date: Optional[str] = None) -> Dict[str, Any]:
        start_date = _validate_day(start_date, "startDate")
        end_date = _validate_day(end_date, "endDate")
        data = self.orders.stats(start_date, end_date, revenue_excluded=REVENUE_EXCLUDED)
        by_status = data["byStatus"]
        data["byStatus"] = {name: by_status.get(name, 0) for name in st.ALL_STATUSES}
        data["totalRevenue"] = _money(data["totalRevenue"])
        return data

    def search(self, query: Optional[str]) -> List[Dict[str, Any]]:
        if not query or not query.strip():
            raise ValidationError("Search query is required")
        return [o.to_dict() for o in self.orders.search(query.strip())]

    def render_invoice(self, order_id: int) -> Tuple[str, bytes]:
        """Return ``(filename, pdf_bytes)`` for the slip + invoice document."""
        order = self.orders.get_by_id(order_id) if _in_id_range(order_id) else None
        if order is None:
            raise OrderNotFoundError(order_id)
        if not order.items:
            raise NotFoundError(f"Order {order.order_number} has no items")
        return invoice_filename(order), render_order_pdf(order, self.company)

    def send_test_notification(self, payload: Any) -> Dict[str, Any]:
        payload = payload if isinstance(payload, dict) else {}
        phone = _optional_str(payload.get("phoneNumber"))
        email = _optional_email(payload.get("email"), "email")
        if not phone and not email:
            raise ValidationError("Phone number or email is required")
        notice = OrderNotice(
            customer_name=_optional_str(payload.get("name")) or "Test Customer",
            customer_phone=phone or "",
            customer_email=email,
            order_number=f"TEST{_epoch_ms()}",
            total_amount=649,
            items=[NoticeItem("Pure Cow Ghee 500g", 1, 600, 600)],
        )
        result = self.notifier.send_order_confirmation(notice)
        data = result.to_dict()
        data["method"] = self.notifier.method
        data["configuration"] = self.notifier.describe_configuration()
        return data

    def health(self, keep_alive_status: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return {
            "status": "ok",
            "message": f"{self.company.name} API is running",
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "keepAlive": keep_alive_status,
            "paymentGateway": self.gateway.breaker_state(),
        }
