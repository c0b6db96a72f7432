import support  # noqa: F401  (path bootstrap)

import unittest

import fitz  # PyMuPDF

from ghee_shop.dao import Order, OrderItem
from ghee_shop.invoices import CompanyInfo, invoice_filename, payment_mode, render_order_pdf


def sample_order(**overrides):
    fields = dict(
        id=7,
        order_number="AFK1700000000000123",
        customer_name="Lakshmi",
        customer_phone="9876543210",
        customer_email=None,
        delivery_address="12 Temple Street",
        city="Chennai",
        pincode="600001",
        landmark="Near the tank",
        subtotal=600.0,
        delivery_charge=49.0,
        total_amount=649.0,
        status="pending",
        payment_reference=None,
        created_at="2024-03-05 10:15:00",
        updated_at="2024-03-05 10:15:00",
        items=[OrderItem(3, "Pure Cow Ghee 500g", 1, 600.0, 600.0)],
    )
    fields.update(overrides)
    return Order(**fields)


class TestInvoicePdf(unittest.TestCase):

    def render_text(self, order, company=None):
        pdf = render_order_pdf(order, company)
        doc = fitz.open(stream=pdf, filetype="pdf")
        try:
            self.assertEqual(doc.page_count, 1)
            return doc[0].get_text()
        finally:
            doc.close()

    def test_document_carries_order_details(self):
        text = self.render_text(sample_order(), CompanyInfo(name="Amma Fresh", phone="9000000000"))
        self.assertIn("AFK1700000000000123", text)
        self.assertIn("LAKSHMI", text)
        self.assertIn("Pure Cow Ghee 500g", text)
        self.assertIn("Phone: 9000000000", text)
        self.assertIn("05/03/2024", text)
        self.assertIn("COD", text)

    def test_free_delivery_printed(self):
        order = sample_order(delivery_charge=0.0, total_amount=600.0)
        self.assertIn("FREE", self.render_text(order))

    def test_filename(self):
        self.assertEqual(invoice_filename(sample_order()), "Order_AFK1700000000000123.pdf")

    def test_payment_mode(self):
        self.assertEqual(payment_mode(sample_order()), "COD")
        self.assertEqual(payment_mode(sample_order(payment_reference="TXN_7_1")), "PAID")
        self.assertEqual(payment_mode(sample_order(payment_reference="TXN_7_1", status="payment_failed")), "COD")
        self.assertEqual(payment_mode(sample_order(payment_reference="TXN_7_1", status="payment_pending")), "COD")


if __name__ == "__main__":
    unittest.main(verbosity=2)
