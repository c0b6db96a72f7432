# payment_service.py
"""
Hosted-checkout payment gateway adapter (PhonePe PG v1 protocol).

- Payloads are base64-encoded JSON signed with a salted SHA-256 ``X-VERIFY``.
- Callbacks are verified against the same salt before anything is trusted.
- Transport errors are retried with exponential backoff + jitter.
- A simple circuit breaker (threshold + cooldown) fails fast while the
  gateway is unreachable; its state is exposed for health and metrics.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Dict, Optional

import requests

from .config import PaymentSettings
from .errors import PaymentGatewayError, PaymentVerificationError
from .metrics import PAYMENT_CIRCUIT_OPEN

logger = logging.getLogger(__name__)

PAY_ENDPOINT = "/pg/v1/pay"

# Normalized payment outcomes
SUCCESS = "success"
PENDING = "pending"
FAILED = "failed"

CODE_SUCCESS = "PAYMENT_SUCCESS"
CODE_PENDING = "PAYMENT_PENDING"


def normalize_code(code: Optional[str]) -> str:
    """Map a gateway status code onto ``success | pending | failed``."""
    if code == CODE_SUCCESS:
        return SUCCESS
    if code == CODE_PENDING:
        return PENDING
    return FAILED


def to_minor_units(amount: float) -> int:
    """Rupees to paise."""
    return int(round(float(amount) * 100))


def _sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass
class CheckoutSession:
    merchant_transaction_id: str
    payment_url: str


@dataclass
class CallbackPayload:
    """A verified and decoded gateway callback."""

    code: str
    transaction_id: Optional[str]
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def outcome(self) -> str:
        return normalize_code(self.code)


@dataclass
class PaymentStatus:
    status: str
    code: str
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)


class PhonePeGateway:
    """
    Client for the PhonePe hosted checkout with:
      - Retries (exponential backoff + jitter) on connection errors
      - Circuit breaker (failure threshold + cooldown)

    The HTTP session is injectable so tests can substitute a mock.
    """

    def __init__(
        self,
        settings: PaymentSettings,
        session: Optional[requests.Session] = None,
        timeout: float = 15.0,
        failure_threshold: int = 3,
        cooldown_seconds: int = 30,
        max_attempts: int = 3,
        backoff_base: float = 0.25,   # seconds
        backoff_max: float = 2.0,     # cap per attempt
        backoff_jitter: float = 0.10  # +/- jitter seconds
    ) -> None:
        self.settings = settings
        self.session = session or requests.Session()
        self.timeout = timeout

        # Circuit breaker state
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._failure_count = 0
        self._circuit_open_until: Optional[datetime] = None
        self._lock = threading.Lock()

        # Retry/backoff tuning
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.backoff_jitter = backoff_jitter

    # ----- signing -----
    @property
    def configured(self) -> bool:
        return bool(self.settings.merchant_id and self.settings.salt_key)

    def _x_verify(self, text: str) -> str:
        return _sha256_hex(text + self.settings.salt_key) + "###" + self.settings.salt_index

    def encode_payload(self, payload: Dict[str, Any]) -> str:
        raw = json.dumps(payload, separators=(",", ":"))
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    def pay_checksum(self, base64_payload: str) -> str:
        return self._x_verify(base64_payload + PAY_ENDPOINT)

    def callback_checksum(self, base64_response: str) -> str:
        return self._x_verify(base64_response)

    def status_endpoint(self, transaction_id: str) -> str:
        return f"/pg/v1/status/{self.settings.merchant_id}/{transaction_id}"

    # ----- circuit breaker helpers -----
    def _is_circuit_open(self) -> bool:
        with self._lock:
            if self._circuit_open_until is None:
                return False
            if datetime.now(UTC) >= self._circuit_open_until:
                # cooldown elapsed -> close breaker
                self._circuit_open_until = None
                self._failure_count = 0
                PAYMENT_CIRCUIT_OPEN.set(0)
                logger.info("Payment gateway circuit closed")
                return False
            return True

    def _record_failure(self) -> bool:
        """Count a transport failure; returns True when the breaker trips."""
        with self._lock:
            self._failure_count += 1
            if self._failure_count < self.failure_threshold:
                return False
            self._circuit_open_until = datetime.now(UTC) + timedelta(seconds=self.cooldown_seconds)
        PAYMENT_CIRCUIT_OPEN.set(1)
        logger.warning(
            "Payment gateway circuit opened",
            extra={"extra": {"cooldown_seconds": self.cooldown_seconds}},
        )
        return True

    def _record_success(self) -> None:
        with self._lock:
            self._failure_count = 0

    def breaker_state(self) -> Dict[str, object]:
        """Expose breaker state for dashboards/logging."""
        is_open = self._is_circuit_open()
        with self._lock:
            open_until = self._circuit_open_until
            failures = self._failure_count
        return {
            "is_open": is_open,
            "failure_count": failures,
            "open_until": open_until.isoformat() if open_until else None,
            "failure_threshold": self.failure_threshold,
            "cooldown_seconds": self.cooldown_seconds,
        }

    # ----- backoff helper -----
    def _backoff_sleep(self, attempt_index: int) -> None:
        # attempt_index is 0-based; delay grows 0.25, 0.5, 1.0, ... up to cap
        delay = min(self.backoff_base * (2 ** attempt_index), self.backoff_max)
        jitter = (random.random() * 2 - 1) * self.backoff_jitter
        time.sleep(max(0.0, delay + jitter))

    # ----- transport -----
    def _request(self, method: str, endpoint: str, **kwargs: Any) -> Dict[str, Any]:
        """Send a request with retries and CB; returns the decoded JSON body."""
        if not self.configured:
            raise PaymentGatewayError("Payment gateway not configured. Set PHONEPE_MERCHANT_ID and PHONEPE_SALT_KEY")
        if self._is_circuit_open():
            raise PaymentGatewayError("Payment service unavailable (circuit breaker open)")

        url = self.settings.base_url + endpoint
        last_error: Optional[Exception] = None
        for attempt in range(self.max_attempts):
            try:
                response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as exc:
                last_error = exc
                logger.warning(
                    "Payment gateway unreachable",
                    extra={"extra": {"endpoint": endpoint, "attempt": attempt + 1, "error": str(exc)}},
                )
                if self._record_failure():
                    break
                if attempt < self.max_attempts - 1:
                    self._backoff_sleep(attempt)
                continue
            except requests.RequestException as exc:
                # not transient (bad URL, redirect loop, broken body); no retry
                raise PaymentGatewayError(f"Payment gateway request failed: {exc}") from exc
            self._record_success()
            try:
                body = response.json()
            except ValueError as exc:
                raise PaymentGatewayError(
                    f"Payment gateway returned a non-JSON response (HTTP {response.status_code})"
                ) from exc
            if not isinstance(body, dict):
                raise PaymentGatewayError(
                    f"Payment gateway returned an unexpected response (HTTP {response.status_code})"
                )
            return body
        raise PaymentGatewayError(f"Payment gateway unreachable: {last_error}") from last_error

    # ----- main APIs -----
    def initiate_checkout(
        self, amount: float, customer_phone: str, transaction_id: str
    ) -> CheckoutSession:
        """Open a hosted checkout session and return its redirect URL.

        Raises:
            PaymentGatewayError: If the gateway cannot be reached or declines.
        """
        payload = {
            "merchantId": self.settings.merchant_id,
            "merchantTransactionId": transaction_id,
            "merchantUserId": f"USER_{customer_phone}",
            "amount": to_minor_units(amount),
            "redirectUrl": self.settings.redirect_url,
            "redirectMode": "REDIRECT",
            "callbackUrl": self.settings.callback_url,
            "mobileNumber": customer_phone,
            "paymentInstrument": {"type": "PAY_PAGE"},
        }
        encoded = self.encode_payload(payload)
        body = self._request(
            "POST",
            PAY_ENDPOINT,
            json={"request": encoded},
            headers={"Content-Type": "application/json", "X-VERIFY": self.pay_checksum(encoded)},
        )
        if not body.get("success"):
            raise PaymentGatewayError(body.get("message") or "Payment initiation failed")
        try:
            url = body["data"]["instrumentResponse"]["redirectInfo"]["url"]
        except (KeyError, TypeError) as exc:
            raise PaymentGatewayError("Payment gateway response carried no redirect URL") from exc
        logger.info("Checkout session opened", extra={"transaction_id": transaction_id})
        return CheckoutSession(merchant_transaction_id=transaction_id, payment_url=url)

    def verify_callback(self, base64_response: str, checksum: str) -> CallbackPayload:
        """Check the callback signature and decode it.

        Raises:
            PaymentVerificationError: On a missing or wrong checksum, an
                undecodable payload, or when no salt key is configured (an
                unsalted checksum can be computed by anyone).
        """
        if not self.configured:
            raise PaymentVerificationError("Payment gateway not configured; callback cannot be verified")
        if not base64_response or not checksum:
            raise PaymentVerificationError("Missing payment response or checksum")
        expected = self.callback_checksum(base64_response)
        if not hmac.compare_digest(expected.encode("utf-8"), checksum.encode("utf-8")):
            raise PaymentVerificationError("Invalid checksum")
        try:
            decoded = json.loads(base64.b64decode(base64_response, validate=True).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise PaymentVerificationError("Undecodable payment response") from exc
        if not isinstance(decoded, dict):
            raise PaymentVerificationError("Undecodable payment response")
        data = decoded.get("data") if isinstance(decoded.get("data"), dict) else {}
        return CallbackPayload(
            code=str(decoded.get("code") or ""),
            transaction_id=data.get("merchantTransactionId"),
            data=decoded,
        )

    def check_status(self, transaction_id: str) -> PaymentStatus:
        endpoint = self.status_endpoint(transaction_id)
        body = self._request(
            "GET",
            endpoint,
            headers={
                "Content-Type": "application/json",
                "X-VERIFY": self._x_verify(endpoint),
                "X-MERCHANT-ID": self.settings.merchant_id,
            },
        )
        if not body.get("success"):
            return PaymentStatus(
                status=FAILED,
                code=str(body.get("code") or "FAILED"),
                message=body.get("message") or "Payment failed",
            )
        code = str(body.get("code") or "")
        return PaymentStatus(
            status=normalize_code(code),
            code=code,
            message=body.get("message") or "",
            data=body.get("data") or {},
        )
