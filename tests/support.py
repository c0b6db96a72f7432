# --- path/bootstrap (keep this at the very top) ---
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if SRC.is_dir() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
# --- end path/bootstrap ---

import base64
import json
import os
import tempfile
from unittest import mock

import requests

from ghee_shop.catalog import seed_products
from ghee_shop.config import NotificationSettings, PaymentSettings, Settings
from ghee_shop.dao import Database, ProductDAO
from ghee_shop.notification_service import NotificationDispatcher
from ghee_shop.order_service import OrderService
from ghee_shop.payment_service import PhonePeGateway

SALT_KEY = "test-salt-key"
MERCHANT_ID = "MERCHANTUAT"


def fresh_db():
    """
    Create a fresh temporary DB file with the schema and default catalog.
    Returns ``(Database, path)``; the caller removes the file in tearDown.
    """
    tmp = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
    tmp.close()
    db = Database(tmp.name)
    db.create_schema()
    seed_products(ProductDAO(db))
    return db, tmp.name


def remove_db(db, path):
    db.close_thread_connection()
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(path + suffix)
        except FileNotFoundError:
            pass


def payment_settings():
    return PaymentSettings(merchant_id=MERCHANT_ID, salt_key=SALT_KEY, salt_index="1")


def fake_response(body=None, status=200, text=""):
    response = mock.Mock(spec=requests.Response)
    response.status_code = status
    response.ok = 200 <= status < 400
    response.text = text or json.dumps(body or {})
    if body is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = body
    return response


def checkout_response(url="https://pay.example/checkout/abc"):
    return fake_response({
        "success": True,
        "code": "PAYMENT_INITIATED",
        "data": {"instrumentResponse": {"type": "PAY_PAGE", "redirectInfo": {"url": url, "method": "GET"}}},
    })


def fake_session():
    """A requests.Session stand-in whose calls succeed with a checkout redirect."""
    session = mock.Mock(spec=requests.Session)
    session.request.return_value = checkout_response()
    session.get.return_value = fake_response({}, text="Message queued")
    session.post.return_value = fake_response({"result": True})
    return session


def signed_callback(transaction_id, code="PAYMENT_SUCCESS", salt_key=SALT_KEY):
    """Build ``(base64_response, checksum)`` the way the gateway signs callbacks."""
    payload = {
        "success": code == "PAYMENT_SUCCESS",
        "code": code,
        "message": "Callback",
        "data": {"merchantId": MERCHANT_ID, "merchantTransactionId": transaction_id, "amount": 64900},
    }
    encoded = base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")
    gateway = PhonePeGateway(PaymentSettings(merchant_id=MERCHANT_ID, salt_key=salt_key))
    return encoded, gateway.callback_checksum(encoded)


def make_gateway(session=None, **kwargs):
    kwargs.setdefault("backoff_base", 0.0)
    kwargs.setdefault("backoff_jitter", 0.0)
    return PhonePeGateway(payment_settings(), session=session or fake_session(), **kwargs)


def make_service(db, session=None, notifier=None):
    session = session or fake_session()
    notifier = notifier or mock.Mock(spec=NotificationDispatcher)
    return OrderService(db, make_gateway(session), notifier)


def make_settings(db_path, **overrides):
    settings = Settings(
        database_path=db_path,
        host="127.0.0.1",
        port=0,
        admin_api_key="admin-secret",
        keep_alive_interval=0,
        payment=payment_settings(),
        notifications=NotificationSettings(method="none"),
    )
    for name, value in overrides.items():
        setattr(settings, name, value)
    return settings


def order_payload(*lines, **fields):
    payload = {
        "customerName": "Lakshmi",
        "customerPhone": "9876543210",
        "customerEmail": "lakshmi@example.com",
        "deliveryAddress": "12 Temple Street",
        "city": "Chennai",
        "pincode": "600001",
        "items": [{"productId": pid, "quantity": qty} for pid, qty in lines],
    }
    payload.update(fields)
    return payload
