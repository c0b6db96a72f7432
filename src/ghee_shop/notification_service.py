"""
Customer order confirmations over WhatsApp and email.

The channel is chosen by ``NOTIFICATION_METHOD`` (``none``, ``email``,
``whatsapp`` or ``both``).  WhatsApp messages go through one of several
HTTP providers; ``link`` only builds a wa.me link for the operator to click.
Email is sent over SMTP with a plain-text body and an HTML alternative.

Sending never raises: every channel reports into a
:class:`NotificationResult`, and :func:`NotificationDispatcher.dispatch_order_confirmation`
runs the whole thing on a daemon thread so order placement never waits on it.
"""

from __future__ import annotations

import asyncio
import html
import logging
import re
import threading
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiosmtplib
import requests

from .config import NotificationSettings
from .dao import Order
from .metrics import NOTIFICATIONS_TOTAL

logger = logging.getLogger(__name__)

CALLMEBOT_URL = "https://api.callmebot.com/whatsapp.php"
INTERAKT_URL = "https://api.interakt.ai/v1/public/message/"


def format_phone_for_whatsapp(phone: str) -> str:
    """Digits only, with the 91 country code added to bare 10-digit numbers."""
    cleaned = re.sub(r"\D", "", phone or "")
    if len(cleaned) == 10:
        cleaned = "91" + cleaned
    return cleaned


def format_amount(value: float) -> str:
    value = float(value)
    return str(int(value)) if value.is_integer() else f"{value:.2f}"


@dataclass
class NoticeItem:
    product_name: str
    quantity: int
    price_per_unit: float
    total_price: float


@dataclass
class OrderNotice:
    """The subset of an order a confirmation message needs."""

    customer_name: str
    customer_phone: str
    order_number: str
    total_amount: float
    items: List[NoticeItem] = field(default_factory=list)
    customer_email: Optional[str] = None

    @classmethod
    def from_order(cls, order: Order) -> "OrderNotice":
        return cls(
            customer_name=order.customer_name,
            customer_phone=order.customer_phone,
            customer_email=order.customer_email,
            order_number=order.order_number,
            total_amount=order.total_amount,
            items=[
                NoticeItem(i.product_name, i.quantity, i.price_per_unit, i.total_price)
                for i in order.items
            ],
        )


@dataclass
class ChannelResult:
    success: bool
    message: str
    skipped: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success, "message": self.message}
        data.update(self.details)
        return data


@dataclass
class NotificationResult:
    success: bool
    message: str
    channels: Dict[str, ChannelResult] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "details": {name: r.to_dict() for name, r in self.channels.items()},
        }


# ------------------------------------------------------------------------------
# Message rendering
# ------------------------------------------------------------------------------

class MessageRenderer:
    def __init__(self, business_name: str, business_phone: str = "") -> None:
        self.business_name = business_name
        self.business_phone = business_phone

    def whatsapp(self, notice: OrderNotice) -> str:
        lines = [
            f"*{self.business_name} Order Confirmed!*",
            "",
            f"Hello {notice.customer_name},",
            "",
            "Your order has been confirmed!",
            "",
            "*Order Details:*",
            f"Order ID: {notice.order_number}",
            f"Total Amount: ₹{format_amount(notice.total_amount)}",
            "",
        ]
        if notice.items:
            lines.append("*Items Ordered:*")
            for item in notice.items:
                lines.append(f"• {item.product_name} x {item.quantity} - ₹{format_amount(item.total_price)}")
            lines.append("")
        lines.append("Thank you for your order! We'll deliver fresh homemade ghee to your doorstep.")
        lines.append("")
        lines.append(f"Track your order with ID: {notice.order_number}")
        lines.append("")
        if self.business_phone:
            lines.append(f"For any queries, call: {self.business_phone}")
        lines.append("")
        lines.append(f"{self.business_name} - Pure & Fresh Homemade Ghee")
        return "\n".join(lines)

    def email_subject(self, notice: OrderNotice) -> str:
        return f"Order Confirmed - {notice.order_number} | {self.business_name}"

    def email_text(self, notice: OrderNotice) -> str:
        lines = [
            f"{self.business_name} - Order Confirmation",
            "",
            f"Hello {notice.customer_name},",
            "",
            "Thank you for your order! We're excited to deliver fresh, homemade ghee to your doorstep.",
            "",
            f"Order ID: {notice.order_number}",
            "Status: Order Confirmed",
            "",
        ]
        if notice.items:
            lines.append("Order Items:")
            for item in notice.items:
                lines.append(
                    f"• {item.product_name} - Qty: {item.quantity} × ₹{format_amount(item.price_per_unit)}"
                    f" = ₹{format_amount(item.total_price)}"
                )
            lines.append("")
        lines.append(f"Total Amount: ₹{format_amount(notice.total_amount)}")
        lines.append("")
        lines.append("We'll process your order and deliver it soon.")
        lines.append("")
        if self.business_phone:
            lines.append(f"For any queries, call: {self.business_phone}")
            lines.append("")
        lines.append(f"Thank you for choosing {self.business_name}!")
        lines.append("Pure & Fresh Homemade Ghee")
        return "\n".join(lines)

    def email_html(self, notice: OrderNotice) -> str:
        esc = html.escape
        items_html = ""
        if notice.items:
            rows = "".join(
                f'<div class="item"><strong>{esc(i.product_name)}</strong><br>'
                f"Quantity: {i.quantity} × ₹{format_amount(i.price_per_unit)} = ₹{format_amount(i.total_price)}</div>"
                for i in notice.items
            )
            items_html = f'<div class="items"><h3>Order Items:</h3>{rows}</div>'
        phone_html = (
            f"<p>For any queries, feel free to call us at: <strong>{esc(self.business_phone)}</strong></p>"
            if self.business_phone else ""
        )
        return f"""<!DOCTYPE html>
<html>
<head>
  <style>
    body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
    .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
    .header {{ background: #d97706; color: white; padding: 30px; text-align: center; }}
    .order-box {{ background: #fef3c7; padding: 20px; margin: 20px 0; }}
    .item {{ padding: 10px; border-bottom: 1px solid #e5e7eb; }}
    .total {{ font-size: 20px; font-weight: bold; color: #059669; }}
  </style>
</head>
<body>
  <div class="container">
    <div class="header"><h1>{esc(self.business_name)}</h1><p>Order Confirmation</p></div>
    <h2>Hello {esc(notice.customer_name)},</h2>
    <p>Thank you for your order! We're excited to deliver fresh, homemade ghee to your doorstep.</p>
    <div class="order-box"><strong>Order ID: {esc(notice.order_number)}</strong><p>Order Confirmed</p></div>
    {items_html}
    <div class="total">Total Amount: ₹{format_amount(notice.total_amount)}</div>
    <p>You can track your order using the Order ID: <strong>{esc(notice.order_number)}</strong></p>
    {phone_html}
    <p>Thank you for choosing {esc(self.business_name)}!</p>
  </div>
</body>
</html>
"""


# ------------------------------------------------------------------------------
# WhatsApp providers
# ------------------------------------------------------------------------------

class NotificationError(Exception):
    """A provider refused or could not be reached."""


class WhatsAppProvider:
    """Abstract base for WhatsApp senders."""

    name = "base"

    def send(self, phone: str, message: str) -> ChannelResult:
        raise NotImplementedError


class LinkProvider(WhatsAppProvider):
    """Builds a wa.me link; the operator sends it by hand."""

    name = "link"

    def send(self, phone: str, message: str) -> ChannelResult:
        link = f"https://wa.me/{phone}?text={quote(message, safe='')}"
        logger.info("WhatsApp message ready", extra={"extra": {"phone": phone, "link": link}})
        return ChannelResult(
            True, "WhatsApp link generated (manual send required)", details={"link": link, "method": self.name}
        )


class CallMeBotProvider(WhatsAppProvider):
    """Forwards the message to the business's own number via CallMeBot."""

    name = "callmebot"

    def __init__(self, session: requests.Session, api_key: str, own_phone: str, timeout: float) -> None:
        self.session = session
        self.api_key = api_key
        self.own_phone = own_phone
        self.timeout = timeout

    def send(self, phone: str, message: str) -> ChannelResult:
        if not self.api_key or not self.own_phone:
            raise NotificationError("CallMeBot not configured. Set CALLMEBOT_API_KEY and CALLMEBOT_PHONE")
        response = self.session.get(
            CALLMEBOT_URL,
            params={
                "phone": self.own_phone,
                "text": f"[ORDER NOTIFICATION]\n\nCustomer: {phone}\n\n{message}",
                "apikey": self.api_key,
            },
            timeout=self.timeout,
        )
        if not response.ok:
            raise NotificationError(f"CallMeBot failed: {response.text}")
        return ChannelResult(
            True, "WhatsApp sent via CallMeBot (check your phone)", details={"method": self.name}
        )


class WatiProvider(WhatsAppProvider):
    name = "wati"

    def __init__(self, session: requests.Session, api_url: str, api_key: str, timeout: float) -> None:
        self.session = session
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout

    def send(self, phone: str, message: str) -> ChannelResult:
        if not self.api_url or not self.api_key:
            raise NotificationError("WATI not configured. Set WATI_API_URL and WATI_API_KEY")
        response = self.session.post(
            self.api_url,
            json={"whatsappNumber": phone, "text": message},
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
        )
        data = _json_or_empty(response)
        if not response.ok or not data.get("result"):
            raise NotificationError(data.get("message") or "WATI API failed")
        return ChannelResult(True, "WhatsApp sent via WATI", details={"method": self.name})


class InteraktProvider(WhatsAppProvider):
    name = "interakt"

    def __init__(self, session: requests.Session, api_key: str, timeout: float) -> None:
        self.session = session
        self.api_key = api_key
        self.timeout = timeout

    def send(self, phone: str, message: str) -> ChannelResult:
        if not self.api_key:
            raise NotificationError("Interakt not configured. Set INTERAKT_API_KEY")
        response = self.session.post(
            INTERAKT_URL,
            json={
                "countryCode": "+91",
                "phoneNumber": re.sub(r"^91", "", phone),
                "type": "Text",
                "data": {"message": message},
            },
            headers={"Authorization": f"Basic {self.api_key}"},
            timeout=self.timeout,
        )
        if not response.ok:
            raise NotificationError(_json_or_empty(response).get("message") or "Interakt API failed")
        return ChannelResult(True, "WhatsApp sent via Interakt", details={"method": self.name})


def _json_or_empty(response: requests.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


# ------------------------------------------------------------------------------
# Email
# ------------------------------------------------------------------------------

class EmailSender:
    """
    SMTP sender built on aiosmtplib; implicit TLS when ``secure`` is set,
    STARTTLS otherwise.  Each send runs its own event loop, so it can be
    called from the notification thread or a request thread alike.
    """

    def __init__(self, settings: NotificationSettings, timeout: float) -> None:
        self.settings = settings
        self.timeout = timeout

    async def _deliver(self, msg: EmailMessage) -> None:
        s = self.settings
        smtp = aiosmtplib.SMTP(
            hostname=s.smtp_host,
            port=s.smtp_port,
            use_tls=s.smtp_secure,  # use_tls in aiosmtplib = connect with SSL
            start_tls=not s.smtp_secure,
            timeout=self.timeout,
        )
        async with smtp as conn:
            await conn.login(s.email_user, s.email_password)
            await conn.send_message(msg)

    def send(self, to: str, subject: str, text: str, html_body: str) -> ChannelResult:
        s = self.settings
        if not s.email_user or not s.email_password:
            raise NotificationError("Email not configured. Set EMAIL_USER and EMAIL_PASSWORD")
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f'"{s.business_name}" <{s.email_user}>'
        msg["To"] = to
        msg.set_content(text)
        msg.add_alternative(html_body, subtype="html")

        asyncio.run(self._deliver(msg))
        return ChannelResult(True, "Email sent successfully")


# ------------------------------------------------------------------------------
# Dispatcher
# ------------------------------------------------------------------------------

class NotificationDispatcher:
    """Sends order confirmations on the configured channels."""

    def __init__(
        self,
        settings: NotificationSettings,
        session: Optional[requests.Session] = None,
        timeout: float = 15.0,
    ) -> None:
        self.settings = settings
        self.method = settings.method
        self.session = session or requests.Session()
        self.timeout = timeout
        self.renderer = MessageRenderer(settings.business_name, settings.business_phone)
        self.email = EmailSender(settings, timeout)

    def whatsapp_provider(self) -> WhatsAppProvider:
        s = self.settings
        provider = s.whatsapp_provider
        if provider == "callmebot":
            return CallMeBotProvider(self.session, s.callmebot_api_key, s.callmebot_phone, self.timeout)
        if provider == "wati":
            return WatiProvider(self.session, s.wati_api_url, s.wati_api_key, self.timeout)
        if provider == "interakt":
            return InteraktProvider(self.session, s.interakt_api_key, self.timeout)
        return LinkProvider()

    def _send_whatsapp(self, notice: OrderNotice) -> ChannelResult:
        phone = format_phone_for_whatsapp(notice.customer_phone)
        if not phone:
            return ChannelResult(False, "No phone number provided", skipped=True)
        return self.whatsapp_provider().send(phone, self.renderer.whatsapp(notice))

    def _send_email(self, notice: OrderNotice) -> ChannelResult:
        if not notice.customer_email:
            return ChannelResult(False, "No email provided", skipped=True)
        return self.email.send(
            notice.customer_email,
            self.renderer.email_subject(notice),
            self.renderer.email_text(notice),
            self.renderer.email_html(notice),
        )

    def _channels(self) -> List[str]:
        if self.method == "both":
            return ["whatsapp", "email"]
        if self.method in ("whatsapp", "email"):
            return [self.method]
        return []

    def send_order_confirmation(self, notice: OrderNotice) -> NotificationResult:
        """Send on every configured channel; failures are reported, never raised."""
        channels = self._channels()
        if not channels:
            logger.info(
                "Notifications disabled",
                extra={"order_number": notice.order_number, "extra": {"total_amount": notice.total_amount}},
            )
            return NotificationResult(True, "Notifications disabled")

        senders = {"whatsapp": self._send_whatsapp, "email": self._send_email}
        results: Dict[str, ChannelResult] = {}
        for channel in channels:
            try:
                result = senders[channel](notice)
            except (
                NotificationError, requests.RequestException, aiosmtplib.SMTPException, OSError, ValueError,
            ) as exc:
                logger.warning(
                    "Notification failed",
                    extra={"order_number": notice.order_number, "extra": {"channel": channel, "error": str(exc)}},
                )
                result = ChannelResult(False, str(exc))
            outcome = "skipped" if result.skipped else ("sent" if result.success else "failed")
            NOTIFICATIONS_TOTAL.inc(channel=channel, outcome=outcome)
            results[channel] = result

        ok = all(r.success or r.skipped for r in results.values())
        logger.info(
            "Order confirmation processed",
            extra={
                "order_number": notice.order_number,
                "extra": {name: r.message for name, r in results.items()},
            },
        )
        return NotificationResult(ok, "Notification sent" if ok else "Some notifications failed", results)

    def dispatch_order_confirmation(self, notice: OrderNotice) -> threading.Thread:
        """Fire-and-forget: send on a daemon thread and return the thread."""

        def _run() -> None:
            try:
                self.send_order_confirmation(notice)
            except Exception:
                logger.exception("Unexpected notification error", extra={"order_number": notice.order_number})

        thread = threading.Thread(target=_run, name=f"notify-{notice.order_number}", daemon=True)
        thread.start()
        return thread

    def describe_configuration(self) -> Dict[str, Any]:
        """Which settings are present for the active method (no secrets)."""
        s = self.settings
        info: Dict[str, Any] = {
            "method": self.method,
            "businessName": s.business_name,
            "businessPhone": bool(s.business_phone),
        }
        if self.method in ("email", "both"):
            info["email"] = {
                "user": bool(s.email_user),
                "password": bool(s.email_password),
                "smtpHost": s.smtp_host,
                "smtpPort": s.smtp_port,
                "secure": s.smtp_secure,
            }
        if self.method in ("whatsapp", "both"):
            provider = s.whatsapp_provider
            wa: Dict[str, Any] = {"provider": provider}
            if provider == "callmebot":
                wa.update(apiKey=bool(s.callmebot_api_key), phone=bool(s.callmebot_phone))
            elif provider == "wati":
                wa.update(apiUrl=bool(s.wati_api_url), apiKey=bool(s.wati_api_key))
            elif provider == "interakt":
                wa.update(apiKey=bool(s.interakt_api_key))
            else:
                wa["note"] = "Link mode - messages require manual sending"
            info["whatsapp"] = wa
        return info
