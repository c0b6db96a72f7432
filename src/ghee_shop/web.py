# web.py
"""
JSON HTTP API for the storefront and the admin panel.

Built on the standard library's ``ThreadingHTTPServer``: one thread per
request, each with its own SQLite connection that is closed when the
request finishes.  All routes live under ``/api``; ``/metrics`` serves the
Prometheus text exposition.

Run the server with::

    ghee-shop serve

It listens on ``HOST:PORT`` (default ``0.0.0.0:3000``).  Use CTRL+C to stop.
"""

from __future__ import annotations

import hmac
import json
import logging
import re
import time
import urllib.parse
import uuid
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from . import __version__
from .catalog import seed_products
from .config import Settings
from .dao import Database, ProductDAO
from .errors import AuthorizationError, NotFoundError, ShopError, ValidationError
from .invoices import CompanyInfo
from .keep_alive import KeepAliveService
from .logging_config import configure_logging
from .metrics import HTTP_REQUEST_LATENCY_SECONDS, HTTP_REQUESTS_TOTAL, generate_metrics_text
from .notification_service import NotificationDispatcher
from .order_service import OrderService
from .payment_service import PhonePeGateway

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 1024 * 1024


@dataclass
class ShopApp:
    """Everything one server process needs, wired together."""

    settings: Settings
    db: Database
    service: OrderService
    keep_alive: Optional[KeepAliveService] = None


def build_app(settings: Settings, session: Optional[requests.Session] = None) -> ShopApp:
    """Create the schema, seed the catalog and wire the collaborators.

    ``session`` is shared by the payment gateway and the notification
    providers; tests pass a mock to keep everything offline.
    """
    db = Database(settings.database_path)
    db.create_schema()
    seed_products(ProductDAO(db))

    http = session or requests.Session()
    gateway = PhonePeGateway(settings.payment, session=http, timeout=settings.http_timeout)
    notifier = NotificationDispatcher(settings.notifications, session=http, timeout=settings.http_timeout)
    n = settings.notifications
    company = CompanyInfo(
        name=n.business_name, address=n.business_address, phone=n.business_phone, email=n.business_email,
    )
    service = OrderService(
        db,
        gateway,
        notifier,
        order_prefix=settings.order_prefix,
        delivery_fee=settings.delivery_fee,
        company=company,
    )
    keep_alive = KeepAliveService(db, interval=settings.keep_alive_interval)
    # the startup thread's connection is not reused by request threads
    db.close_thread_connection()
    return ShopApp(settings=settings, db=db, service=service, keep_alive=keep_alive)


class ShopHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, server_address: Tuple[str, int], app: ShopApp) -> None:
        self.app = app
        super().__init__(server_address, ShopRequestHandler)


# -----------------------------------------------------------------------------
# Routing table: (method, pattern, route label, handler name, admin only)
# -----------------------------------------------------------------------------
Route = Tuple[str, "re.Pattern[str]", str, str, bool]


def _route(method: str, pattern: str, label: str, handler: str, admin: bool = False) -> Route:
    return (method, re.compile("^" + pattern + "$"), label, handler, admin)


_ID = r"([0-9]{1,19})"  # row ids fit in a SQLite INTEGER

ROUTES: List[Route] = [
    _route("GET", r"/api/health", "/api/health", "_handle_health"),
    _route("GET", r"/api/products", "/api/products", "_handle_products_list"),
    _route("GET", r"/api/products/" + _ID, "/api/products/:id", "_handle_product_get"),
    _route("POST", r"/api/orders", "/api/orders", "_handle_order_create"),
    _route("GET", r"/api/orders/([^/]+)", "/api/orders/:orderNumber", "_handle_order_get"),
    _route("GET", r"/api/track/phone/([^/]+)", "/api/track/phone/:phone", "_handle_track_phone"),
    _route("GET", r"/api/track/([^/]+)", "/api/track/:orderNumber", "_handle_track"),
    _route("POST", r"/api/payment/initiate", "/api/payment/initiate", "_handle_payment_initiate"),
    _route("POST", r"/api/payment/callback", "/api/payment/callback", "_handle_payment_callback"),
    _route("GET", r"/api/payment/status/([^/]+)", "/api/payment/status/:id", "_handle_payment_status"),
    _route("GET", r"/api/admin/orders", "/api/admin/orders", "_handle_admin_orders", admin=True),
    _route("GET", r"/api/admin/orders/" + _ID, "/api/admin/orders/:id", "_handle_admin_order_get", admin=True),
    _route("PUT", r"/api/admin/orders/" + _ID + r"/status", "/api/admin/orders/:id/status",
           "_handle_admin_order_status", admin=True),
    _route("GET", r"/api/admin/orders/" + _ID + r"/pdf", "/api/admin/orders/:id/pdf", "_handle_admin_order_pdf", admin=True),
    _route("PUT", r"/api/admin/products/" + _ID, "/api/admin/products/:id", "_handle_admin_product_update", admin=True),
    _route("GET", r"/api/admin/stats", "/api/admin/stats", "_handle_admin_stats", admin=True),
    _route("GET", r"/api/admin/search", "/api/admin/search", "_handle_admin_search", admin=True),
    _route("POST", r"/api/admin/test-notification", "/api/admin/test-notification",
           "_handle_admin_test_notification", admin=True),
]


class ShopRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler implementing the shop JSON API."""

    server: ShopHTTPServer
    server_version = f"GheeShop/{__version__}"

    # Per-request fields
    _route_label = "unmatched"
    _request_start_time: Optional[float] = None
    _metrics_recorded = False
    request_id = ""

    @property
    def app(self) -> ShopApp:
        return self.server.app

    @property
    def service(self) -> OrderService:
        return self.server.app.service

    # -------------------
    # Response utilities
    # -------------------
    def _cors_headers(self) -> None:
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Methods", "GET, POST, PUT, OPTIONS")
        self.send_header("Access-Control-Allow-Headers", "Content-Type, x-api-key, X-VERIFY")

    def _send_bytes(self, body: bytes, content_type: str, status: int = 200,
                    headers: Optional[Dict[str, str]] = None) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.send_header("X-Request-ID", self.request_id)
        self._cors_headers()
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)
        self._record_metrics(status)

    def _send_json(self, payload: Any, status: int = 200) -> None:
        body = json.dumps(payload, default=str).encode("utf-8")
        self._send_bytes(body, "application/json; charset=utf-8", status)

    def _send_error_json(self, status: int, message: str) -> None:
        self._send_json({"success": False, "error": message}, status)

    # -------------------
    # Metrics helper
    # -------------------
    def _record_metrics(self, status: int) -> None:
        """Record request count and latency once per request."""
        if self._metrics_recorded:
            return
        self._metrics_recorded = True
        latency = time.perf_counter() - self._request_start_time if self._request_start_time else 0.0
        HTTP_REQUESTS_TOTAL.inc(route=self._route_label, method=self.command, status=str(status))
        HTTP_REQUEST_LATENCY_SECONDS.observe(latency, route=self._route_label)
        logger.info(
            "%s %s -> %s", self.command, self._route_label, status,
            extra={"request_id": self.request_id, "extra": {"latency_ms": round(latency * 1000, 1)}},
        )

    def log_message(self, format: str, *args: Any) -> None:
        # access lines are emitted by _record_metrics as JSON
        logger.debug(format % args, extra={"request_id": self.request_id})

    # -------------------
    # Request parsing
    # -------------------
    def _path_and_query(self) -> Tuple[str, Dict[str, str]]:
        parsed = urllib.parse.urlsplit(self.path)
        query = {k: v[0] for k, v in urllib.parse.parse_qs(parsed.query).items() if v}
        path = urllib.parse.unquote(parsed.path)
        if len(path) > 1:
            path = path.rstrip("/")
        return path, query

    def _read_json(self) -> Any:
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            raise ValidationError("Invalid Content-Length header")
        if length < 0:
            raise ValidationError("Invalid Content-Length header")
        if length > MAX_BODY_BYTES:
            raise ValidationError("Request body too large")
        raw = self.rfile.read(length) if length else b""
        if not raw.strip():
            return {}
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            raise ValidationError("Invalid JSON body")

    def _require_admin(self) -> None:
        expected = self.app.settings.admin_api_key
        if not expected:
            raise AuthorizationError("Admin access is not configured")
        supplied = self.headers.get("x-api-key") or ""
        if not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
            raise AuthorizationError("Unauthorized: Invalid API key")

    # -------------
    # Dispatch
    # -------------
    def _begin_request(self) -> None:
        self._request_start_time = time.perf_counter()
        self._metrics_recorded = False
        self._route_label = "unmatched"
        self.request_id = self.headers.get("X-Request-ID") or uuid.uuid4().hex

    def _dispatch(self) -> None:
        self._begin_request()
        try:
            path, query = self._path_and_query()
            if self.command == "OPTIONS":
                self._route_label = "preflight"
                self._send_bytes(b"", "text/plain", 204)
                return
            if path == "/metrics" and self.command == "GET":
                self._route_label = "/metrics"
                self._send_bytes(generate_metrics_text(), "text/plain; version=0.0.4")
                return
            for method, pattern, label, handler_name, admin in ROUTES:
                if method != self.command:
                    continue
                match = pattern.match(path)
                if match is None:
                    continue
                self._route_label = label
                if admin:
                    self._require_admin()
                handler: Callable[..., None] = getattr(self, handler_name)
                handler(query, *match.groups())
                return
            raise NotFoundError("Route not found")
        except ShopError as exc:
            if exc.status >= 500:
                logger.error(exc.message, extra={"request_id": self.request_id, "extra": {"code": exc.code}})
            self._send_error_json(exc.status, exc.message)
        except Exception:
            logger.exception("Unhandled error", extra={"request_id": self.request_id})
            self._send_error_json(500, "Internal server error")
        finally:
            self.app.db.close_thread_connection()

    do_GET = _dispatch
    do_POST = _dispatch
    do_PUT = _dispatch
    do_OPTIONS = _dispatch

    # -----------------
    # Public handlers
    # -----------------
    def _handle_health(self, query: Dict[str, str]) -> None:
        keep_alive = self.app.keep_alive
        self._send_json(self.service.health(keep_alive.status() if keep_alive else None))

    def _handle_products_list(self, query: Dict[str, str]) -> None:
        self._send_json(self.service.list_products())

    def _handle_product_get(self, query: Dict[str, str], product_id: str) -> None:
        self._send_json(self.service.get_product(int(product_id)))

    def _handle_order_create(self, query: Dict[str, str]) -> None:
        self._send_json(self.service.create_order(self._read_json()), 201)

    def _handle_order_get(self, query: Dict[str, str], order_number: str) -> None:
        self._send_json(self.service.get_order(order_number))

    def _handle_track(self, query: Dict[str, str], order_number: str) -> None:
        self._send_json(self.service.track_order(order_number))

    def _handle_track_phone(self, query: Dict[str, str], phone: str) -> None:
        self._send_json(self.service.track_by_phone(phone))

    def _handle_payment_initiate(self, query: Dict[str, str]) -> None:
        self._send_json(self.service.initiate_payment(self._read_json()))

    def _handle_payment_callback(self, query: Dict[str, str]) -> None:
        body = self._read_json()
        body = body if isinstance(body, dict) else {}
        checksum = body.get("checksum") or self.headers.get("X-VERIFY")
        self._send_json(self.service.handle_payment_callback(body.get("response"), checksum))

    def _handle_payment_status(self, query: Dict[str, str], transaction_id: str) -> None:
        self._send_json(self.service.check_payment_status(transaction_id))

    # -----------------
    # Admin handlers
    # -----------------
    def _handle_admin_orders(self, query: Dict[str, str]) -> None:
        self._send_json(
            self.service.list_orders(query.get("startDate"), query.get("endDate"), query.get("status"))
        )

    def _handle_admin_order_get(self, query: Dict[str, str], order_id: str) -> None:
        self._send_json(self.service.get_order_by_id(int(order_id)))

    def _handle_admin_order_status(self, query: Dict[str, str], order_id: str) -> None:
        body = self._read_json()
        status = body.get("status") if isinstance(body, dict) else None
        self._send_json(self.service.update_status(int(order_id), status))

    def _handle_admin_order_pdf(self, query: Dict[str, str], order_id: str) -> None:
        filename, pdf = self.service.render_invoice(int(order_id))
        self._send_bytes(
            pdf,
            "application/pdf",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    def _handle_admin_product_update(self, query: Dict[str, str], product_id: str) -> None:
        self._send_json(self.service.update_product(int(product_id), self._read_json()))

    def _handle_admin_stats(self, query: Dict[str, str]) -> None:
        self._send_json(self.service.stats(query.get("startDate"), query.get("endDate")))

    def _handle_admin_search(self, query: Dict[str, str]) -> None:
        self._send_json(self.service.search(query.get("query")))

    def _handle_admin_test_notification(self, query: Dict[str, str]) -> None:
        self._send_json(self.service.send_test_notification(self._read_json()))


def run_server(app: ShopApp) -> None:
    """Start the threaded HTTP server and serve requests until interrupted."""
    settings = app.settings
    httpd = ShopHTTPServer((settings.host, settings.port), app)
    if app.keep_alive is not None:
        app.keep_alive.start()
    logger.info(
        "Serving",
        extra={"extra": {
            "host": settings.host,
            "port": settings.port,
            "payment_env": settings.payment.environment,
            "notifications": app.service.notifier.describe_configuration(),
        }},
    )
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        httpd.server_close()
        if app.keep_alive is not None:
            app.keep_alive.stop()


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_dir, settings.log_level)
    run_server(build_app(settings))


if __name__ == "__main__":
    main()
