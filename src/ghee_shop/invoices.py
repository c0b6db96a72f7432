"""
One-page A4 order document rendered with PyMuPDF.

The top half is a delivery slip (sender, recipient box, order summary), the
bottom half an itemised invoice; a dashed cut line separates them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import fitz  # PyMuPDF

from .dao import TIMESTAMP_FORMAT, Order
from .order_status import PAYMENT_FAILED, PAYMENT_PENDING

PAGE_WIDTH, PAGE_HEIGHT = fitz.paper_size("a4")
HALF = PAGE_HEIGHT / 2
MARGIN = 30

GOLD = (0.83, 0.69, 0.22)
GREY = (0.4, 0.4, 0.4)
LIGHT = (0.8, 0.8, 0.8)
BLACK = (0, 0, 0)
WHITE = (1, 1, 1)
GREEN = (0.16, 0.65, 0.27)
AMBER = (0.8, 0.6, 0.0)

# Base-14 fonts carry no rupee glyph
CURRENCY = "Rs."


@dataclass
class CompanyInfo:
    """Sender block printed on the slip and the invoice."""

    name: str = "Amma Fresh"
    address: str = ""
    phone: str = ""
    email: str = ""


def invoice_filename(order: Order) -> str:
    return f"Order_{order.order_number}.pdf"


def payment_mode(order: Order) -> str:
    """PAID when the order went through the gateway successfully, else COD."""
    if order.payment_reference and order.status not in (PAYMENT_PENDING, PAYMENT_FAILED):
        return "PAID"
    return "COD"


def _money(value: float) -> str:
    value = float(value)
    return f"{CURRENCY} {int(value)}" if value.is_integer() else f"{CURRENCY} {value:.2f}"


def _date(created_at: str) -> str:
    try:
        return datetime.strptime(created_at, TIMESTAMP_FORMAT).strftime("%d/%m/%Y")
    except (TypeError, ValueError):
        return created_at or ""


def _text(page: fitz.Page, x: float, y: float, text: str, size: float = 9,
          bold: bool = False, color=BLACK) -> None:
    # y is the top of the line; insert_text wants the baseline
    page.insert_text(
        fitz.Point(x, y + size), text, fontsize=size,
        fontname="hebo" if bold else "helv", color=color,
    )


def _box(page: fitz.Page, x0: float, y0: float, x1: float, y1: float, text: str,
         size: float = 9, bold: bool = False, color=BLACK, align: int = fitz.TEXT_ALIGN_LEFT) -> None:
    page.insert_textbox(
        fitz.Rect(x0, y0, x1, y1), text, fontsize=size,
        fontname="hebo" if bold else "helv", color=color, align=align,
    )


def _cut_line(page: fitz.Page) -> None:
    page.draw_line(fitz.Point(0, HALF), fitz.Point(PAGE_WIDTH, HALF), color=LIGHT, width=1, dashes="[5 5] 0")
    _box(page, MARGIN, HALF - 16, PAGE_WIDTH - MARGIN, HALF - 2, "- - CUT HERE - -",
         size=9, color=GREY, align=fitz.TEXT_ALIGN_CENTER)


def _delivery_slip(page: fitz.Page, order: Order, company: CompanyInfo) -> None:
    y = MARGIN
    _box(page, MARGIN, y, PAGE_WIDTH - MARGIN, y + 24, "DELIVERY ADDRESS",
         size=18, bold=True, color=GOLD, align=fitz.TEXT_ALIGN_CENTER)

    y += 35
    _text(page, MARGIN, y, "FROM:", size=10, color=GREY)
    _text(page, MARGIN, y + 15, company.name, size=11, bold=True)
    line_y = y + 30
    if company.address:
        _box(page, MARGIN, line_y, MARGIN + 250, line_y + 36, company.address, size=9)
        line_y += 36
    if company.phone:
        _text(page, MARGIN, line_y, f"Phone: {company.phone}", size=9)

    to_x = PAGE_WIDTH / 2 + 10
    box_w = PAGE_WIDTH - MARGIN - to_x
    page.draw_rect(fitz.Rect(to_x, y, to_x + box_w, y + 150), color=GOLD, width=2)
    inner = to_x + 10
    _text(page, inner, y + 10, "TO:", size=10, color=GREY)
    _box(page, inner, y + 28, to_x + box_w - 10, y + 46, order.customer_name.upper(), size=12, bold=True)
    _box(page, inner, y + 48, to_x + box_w - 10, y + 84, order.delivery_address, size=10)
    _text(page, inner, y + 86, f"{order.city} - {order.pincode}", size=10)
    phone_y = y + 102
    if order.landmark:
        _box(page, inner, phone_y, to_x + box_w - 10, phone_y + 14, f"Landmark: {order.landmark}", size=9, color=GREY)
        phone_y += 16
    _text(page, inner, phone_y, f"Phone: {order.customer_phone}", size=10, bold=True)

    y = HALF - 80
    page.draw_line(fitz.Point(MARGIN, y), fitz.Point(PAGE_WIDTH - MARGIN, y), color=LIGHT, width=1)
    y += 15
    mid = PAGE_WIDTH / 2
    _text(page, MARGIN, y, "Order Number:", color=GREY)
    _text(page, MARGIN + 100, y, order.order_number, bold=True)
    _text(page, mid, y, "Order Date:", color=GREY)
    _text(page, mid + 80, y, _date(order.created_at), bold=True)
    y += 15
    mode = payment_mode(order)
    _text(page, MARGIN, y, "Payment:", color=GREY)
    _text(page, MARGIN + 100, y, mode, bold=True, color=GREEN if mode == "PAID" else AMBER)
    _text(page, mid, y, "Amount:", color=GREY)
    _text(page, mid + 80, y, _money(order.total_amount), size=11, bold=True, color=GOLD)


def _invoice(page: fitz.Page, order: Order, company: CompanyInfo) -> None:
    right = PAGE_WIDTH - MARGIN
    content_w = right - MARGIN
    y = HALF + MARGIN
    _text(page, MARGIN, y, "INVOICE", size=20, bold=True, color=GOLD)
    _box(page, right - 160, y + 5, right, y + 20, f"#{order.order_number}",
         size=10, color=GREY, align=fitz.TEXT_ALIGN_RIGHT)

    y += 35
    _text(page, MARGIN, y, company.name, size=9, bold=True)
    if company.address:
        _box(page, MARGIN, y + 12, MARGIN + 200, y + 34, company.address, size=8)
    if company.phone:
        _text(page, MARGIN, y + 36, f"Phone: {company.phone}", size=8)

    cx = PAGE_WIDTH / 2 + 20
    _text(page, cx, y, "BILL TO:", size=8, color=GREY)
    _text(page, cx, y + 12, order.customer_name, size=9, bold=True)
    _box(page, cx, y + 24, right, y + 46, order.delivery_address, size=8)
    _text(page, cx, y + 48, f"{order.city} - {order.pincode}", size=8)
    _text(page, cx, y + 60, f"Phone: {order.customer_phone}", size=8)

    y = HALF + MARGIN + 110
    _text(page, MARGIN, y, f"Date: {_date(order.created_at)}", size=8, color=GREY)
    _box(page, right - 120, y, right, y + 12, f"Payment: {payment_mode(order)}",
         size=8, color=GREY, align=fitz.TEXT_ALIGN_RIGHT)

    y += 25
    page.draw_rect(fitz.Rect(MARGIN, y, right, y + 20), color=GOLD, fill=GOLD)
    _text(page, MARGIN + 5, y + 5, "ITEM", bold=True, color=WHITE)
    _box(page, MARGIN + 260, y + 5, MARGIN + 310, y + 18, "QTY", bold=True, color=WHITE, align=fitz.TEXT_ALIGN_CENTER)
    _box(page, MARGIN + 320, y + 5, MARGIN + 400, y + 18, "PRICE", bold=True, color=WHITE, align=fitz.TEXT_ALIGN_RIGHT)
    _box(page, MARGIN + 410, y + 5, right - 5, y + 18, "TOTAL", bold=True, color=WHITE, align=fitz.TEXT_ALIGN_RIGHT)
    y += 20

    for index, item in enumerate(order.items):
        if index % 2 == 0:
            page.draw_rect(fitz.Rect(MARGIN, y, right, y + 18), color=None, fill=(0.97, 0.97, 0.97))
        _text(page, MARGIN + 5, y + 4, item.product_name)
        _box(page, MARGIN + 260, y + 4, MARGIN + 310, y + 17, str(item.quantity), align=fitz.TEXT_ALIGN_CENTER)
        _box(page, MARGIN + 320, y + 4, MARGIN + 400, y + 17, _money(item.price_per_unit), align=fitz.TEXT_ALIGN_RIGHT)
        _box(page, MARGIN + 410, y + 4, right - 5, y + 17, _money(item.total_price), align=fitz.TEXT_ALIGN_RIGHT)
        y += 18

    y += 10
    tx = right - 200
    _text(page, tx, y, "Subtotal:", color=GREY)
    _box(page, tx + 100, y, right, y + 13, _money(order.subtotal), align=fitz.TEXT_ALIGN_RIGHT)
    y += 15
    _text(page, tx, y, "Delivery Charges:", color=GREY)
    delivery = "FREE" if not order.delivery_charge else _money(order.delivery_charge)
    _box(page, tx + 100, y, right, y + 13, delivery, align=fitz.TEXT_ALIGN_RIGHT)
    y += 15
    page.draw_line(fitz.Point(tx, y), fitz.Point(right, y), color=GOLD, width=1)
    y += 8
    _text(page, tx, y, "Total Amount:", size=11, bold=True, color=GOLD)
    _box(page, tx + 100, y, right, y + 16, _money(order.total_amount),
         size=11, bold=True, color=GOLD, align=fitz.TEXT_ALIGN_RIGHT)

    y = PAGE_HEIGHT - MARGIN - 30
    _box(page, MARGIN, y, MARGIN + content_w, y + 12, "Thank you for your order!",
         size=8, color=GREY, align=fitz.TEXT_ALIGN_CENTER)
    if company.email:
        _box(page, MARGIN, y + 12, MARGIN + content_w, y + 24, company.email,
             size=8, color=GREY, align=fitz.TEXT_ALIGN_CENTER)


def render_order_pdf(order: Order, company: CompanyInfo | None = None) -> bytes:
    """Render the slip + invoice page for ``order`` (items must be loaded)."""
    company = company or CompanyInfo()
    doc = fitz.open()
    try:
        page = doc.new_page(width=PAGE_WIDTH, height=PAGE_HEIGHT)
        _cut_line(page)
        _delivery_slip(page, order, company)
        _invoice(page, order, company)
        doc.set_metadata({"title": f"Order {order.order_number}", "creator": company.name})
        return doc.tobytes()
    finally:
        doc.close()
