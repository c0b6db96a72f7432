import support

import unittest
from unittest import mock

import requests

from ghee_shop import order_status as st
from ghee_shop.config import NotificationSettings, PaymentSettings
from ghee_shop.dao import NewOrder, OrderDAO, OrderItem
from ghee_shop.errors import (
    InvalidStatusError,
    InvalidTransitionError,
    NotFoundError,
    OrderNotFoundError,
    PaymentGatewayError,
    PaymentVerificationError,
    ProductNotFoundError,
    ValidationError,
)
from ghee_shop.notification_service import NotificationDispatcher
from ghee_shop.order_service import MAX_QUANTITY, CheckoutRequest
from ghee_shop.payment_service import PhonePeGateway


class ServiceTestCase(unittest.TestCase):

    def setUp(self):
        self.db, self.db_path = support.fresh_db()
        self.session = support.fake_session()
        self.notifier = mock.Mock(spec=NotificationDispatcher)
        self.service = support.make_service(self.db, self.session, self.notifier)

    def tearDown(self):
        support.remove_db(self.db, self.db_path)

    def order_count(self):
        (n,) = self.db.connection().execute("SELECT COUNT(*) FROM orders;").fetchone()
        return n


class TestCheckoutRequest(unittest.TestCase):

    def test_missing_fields_listed(self):
        with self.assertRaises(ValidationError) as ctx:
            CheckoutRequest.from_payload({"customerName": "A", "items": [{"productId": 1, "quantity": 1}]})
        self.assertIn("customerPhone", ctx.exception.message)
        self.assertIn("pincode", ctx.exception.message)

    def test_numeric_fields_coerced(self):
        req = CheckoutRequest.from_payload(support.order_payload((1, 1), customerPhone=9876543210, pincode=600001))
        self.assertEqual(req.customer_phone, "9876543210")
        self.assertEqual(req.pincode, "600001")

    def test_bad_items_rejected(self):
        for items in ([], None, [{"productId": 1, "quantity": 0}], [{"productId": "x", "quantity": 1}], ["1"]):
            with self.assertRaises(ValidationError, msg=repr(items)):
                CheckoutRequest.from_payload(support.order_payload(items=items))

    def test_non_object_body(self):
        with self.assertRaises(ValidationError):
            CheckoutRequest.from_payload(["not", "a", "dict"])

    def test_numbers_outside_integer_range_rejected(self):
        huge = 10 ** 19
        for line in (
            {"productId": huge, "quantity": 1},
            {"productId": 1, "quantity": huge},
            {"productId": 1, "quantity": MAX_QUANTITY + 1},
            {"productId": 1, "quantity": 1e30},
            {"productId": "\u00b2", "quantity": 1},
            {"productId": -1, "quantity": 1},
        ):
            with self.assertRaises(ValidationError, msg=repr(line)):
                CheckoutRequest.from_payload(support.order_payload(items=[line]))

    def test_numeric_strings_accepted(self):
        req = CheckoutRequest.from_payload(support.order_payload(items=[{"productId": "2", "quantity": " 3 "}]))
        self.assertEqual((req.items[0].product_id, req.items[0].quantity), (2, 3))

    def test_customer_email_validated(self):
        for email in ("a@b.com\r\nBcc: victim@example.com", "not-an-email", 42):
            with self.assertRaises(ValidationError, msg=repr(email)):
                CheckoutRequest.from_payload(support.order_payload((1, 1), customerEmail=email))
        req = CheckoutRequest.from_payload(support.order_payload((1, 1), customerEmail=" ravi@example.com "))
        self.assertEqual(req.customer_email, "ravi@example.com")
        self.assertIsNone(CheckoutRequest.from_payload(support.order_payload((1, 1), customerEmail="")).customer_email)


class TestCreateOrder(ServiceTestCase):

    def test_totals_come_from_catalog(self):
        payload = support.order_payload((3, 1))
        payload["items"][0]["price"] = 1
        payload["totalAmount"] = 1

        result = self.service.create_order(payload)

        self.assertEqual(result["subtotal"], 600)
        self.assertEqual(result["deliveryCharge"], 49)
        self.assertEqual(result["totalAmount"], 649)
        self.assertEqual(result["status"], st.PENDING)
        self.assertTrue(result["orderNumber"].startswith("AFK"))
        order = self.service.get_order(result["orderNumber"])
        self.assertEqual(order["items"][0]["price_per_unit"], 600)
        self.assertEqual(order["items"][0]["product_name"], "Pure Cow Ghee 500g")

    def test_free_delivery_product_waives_fee(self):
        result = self.service.create_order(support.order_payload((1, 2), (5, 1)))
        self.assertEqual(result["subtotal"], 1440)
        self.assertEqual(result["deliveryCharge"], 0)
        self.assertEqual(result["totalAmount"], 1440)

    def test_unknown_product_persists_nothing(self):
        with self.assertRaises(ProductNotFoundError) as ctx:
            self.service.create_order(support.order_payload((1, 1), (999, 1)))
        self.assertEqual(ctx.exception.status, 404)
        self.assertEqual(self.order_count(), 0)
        self.notifier.dispatch_order_confirmation.assert_not_called()

    def test_confirmation_dispatched_with_order_details(self):
        result = self.service.create_order(support.order_payload((2, 1)))
        notice = self.notifier.dispatch_order_confirmation.call_args.args[0]
        self.assertEqual(notice.order_number, result["orderNumber"])
        self.assertEqual(notice.customer_email, "lakshmi@example.com")
        self.assertEqual(len(notice.items), 1)

    def test_notifier_failure_does_not_fail_order(self):
        self.notifier.dispatch_order_confirmation.side_effect = RuntimeError("boom")
        result = self.service.create_order(support.order_payload((2, 1)))
        self.assertTrue(result["success"])
        self.assertEqual(self.order_count(), 1)

    def test_order_number_collision_regenerates(self):
        first = self.service.create_order(support.order_payload((1, 1)))
        with mock.patch.object(
            self.service, "new_order_number", side_effect=[first["orderNumber"], "AFK-FRESH"]
        ):
            second = self.service.create_order(support.order_payload((1, 1)))
        self.assertEqual(second["orderNumber"], "AFK-FRESH")
        self.assertEqual(self.order_count(), 2)

    def test_order_number_shape(self):
        number = self.service.new_order_number()
        self.assertRegex(number, r"^AFK\d{16}$")


class TestPaymentFlow(ServiceTestCase):

    def start_payment(self):
        return self.service.initiate_payment(support.order_payload((3, 1)))

    def test_initiate_creates_payment_pending_order(self):
        result = self.start_payment()
        self.assertEqual(result["paymentUrl"], "https://pay.example/checkout/abc")
        self.assertEqual(result["merchantTransactionId"], f"TXN_{result['orderNumber']}")
        order = OrderDAO(self.db).get_by_id(result["orderId"])
        self.assertEqual(order.status, st.PAYMENT_PENDING)
        self.assertEqual(order.payment_reference, result["merchantTransactionId"])
        self.notifier.dispatch_order_confirmation.assert_not_called()

    def test_gateway_failure_marks_order_failed(self):
        self.session.request.side_effect = requests.ConnectionError("down")
        with self.assertRaises(PaymentGatewayError):
            self.start_payment()
        orders = OrderDAO(self.db).list_orders()
        self.assertEqual(len(orders), 1)
        self.assertEqual(orders[0].status, st.PAYMENT_FAILED)

    def test_unexpected_gateway_replies_mark_order_failed(self):
        failures = (
            {"return_value": support.fake_response(["unexpected"])},
            {"side_effect": requests.exceptions.InvalidURL("bad url")},
            {"side_effect": requests.exceptions.ChunkedEncodingError("truncated")},
        )
        for reply in failures:
            self.session.request.reset_mock(return_value=True, side_effect=True)
            self.session.request.configure_mock(**reply)
            with self.assertRaises(PaymentGatewayError, msg=repr(reply)):
                self.start_payment()
        statuses = [o.status for o in OrderDAO(self.db).list_orders()]
        self.assertEqual(statuses, [st.PAYMENT_FAILED] * 3)

    def test_reference_stored_with_the_order(self):
        with mock.patch.object(self.service.gateway, "initiate_checkout", side_effect=RuntimeError("crash")):
            with self.assertRaises(RuntimeError):
                self.start_payment()
        (order,) = OrderDAO(self.db).list_orders()
        self.assertEqual(order.payment_reference, f"TXN_{order.order_number}")

    def test_unconfigured_gateway_refuses_payment(self):
        self.service.gateway = PhonePeGateway(PaymentSettings(), session=self.session)
        with self.assertRaises(PaymentGatewayError):
            self.start_payment()
        self.assertEqual(self.order_count(), 0)
        self.session.request.assert_not_called()

    def test_unsalted_callback_cannot_confirm_order(self):
        dao = OrderDAO(self.db)
        order_id = dao.create_order(NewOrder(
            order_number="AFK77", customer_name="Ravi", customer_phone="9876543210",
            delivery_address="4 Lake Road", city="Madurai", pincode="625001",
            subtotal=600.0, delivery_charge=49.0, total_amount=649.0, status=st.PAYMENT_PENDING,
            items=[OrderItem(3, "Pure Cow Ghee 500g", 1, 600.0, 600.0)], payment_reference="TXN_AFK77",
        ))
        self.service.gateway = PhonePeGateway(PaymentSettings(), session=self.session)
        encoded, forged = support.signed_callback("TXN_AFK77", salt_key="")

        with self.assertRaises(PaymentVerificationError):
            self.service.handle_payment_callback(encoded, forged)

        self.assertEqual(dao.get_by_id(order_id).status, st.PAYMENT_PENDING)
        self.notifier.dispatch_order_confirmation.assert_not_called()

    def test_successful_callback_confirms_and_notifies(self):
        started = self.start_payment()
        encoded, checksum = support.signed_callback(started["merchantTransactionId"])

        result = self.service.handle_payment_callback(encoded, checksum)

        self.assertTrue(result["changed"])
        self.assertEqual(result["status"], st.PENDING)
        self.assertEqual(result["paymentStatus"], "success")
        self.notifier.dispatch_order_confirmation.assert_called_once()

    def test_callback_replay_is_idempotent(self):
        started = self.start_payment()
        encoded, checksum = support.signed_callback(started["merchantTransactionId"])
        self.service.handle_payment_callback(encoded, checksum)
        self.service.update_status(started["orderId"], st.CONFIRMED)

        replay = self.service.handle_payment_callback(encoded, checksum)

        self.assertFalse(replay["changed"])
        self.assertEqual(replay["status"], st.CONFIRMED)
        self.assertEqual(self.notifier.dispatch_order_confirmation.call_count, 1)

    def test_failed_callback_marks_payment_failed(self):
        started = self.start_payment()
        encoded, checksum = support.signed_callback(started["merchantTransactionId"], code="PAYMENT_ERROR")
        result = self.service.handle_payment_callback(encoded, checksum)
        self.assertEqual(result["status"], st.PAYMENT_FAILED)
        self.notifier.dispatch_order_confirmation.assert_not_called()

    def test_pending_callback_changes_nothing(self):
        started = self.start_payment()
        encoded, checksum = support.signed_callback(started["merchantTransactionId"], code="PAYMENT_PENDING")
        result = self.service.handle_payment_callback(encoded, checksum)
        self.assertFalse(result["changed"])
        self.assertEqual(result["status"], st.PAYMENT_PENDING)

    def test_bad_checksum_leaves_order_untouched(self):
        started = self.start_payment()
        encoded, _ = support.signed_callback(started["merchantTransactionId"])
        with self.assertRaises(PaymentVerificationError):
            self.service.handle_payment_callback(encoded, "0" * 64 + "###1")
        order = OrderDAO(self.db).get_by_id(started["orderId"])
        self.assertEqual(order.status, st.PAYMENT_PENDING)

    def test_callback_for_unknown_transaction(self):
        encoded, checksum = support.signed_callback("TXN_404_1")
        with self.assertRaises(OrderNotFoundError):
            self.service.handle_payment_callback(encoded, checksum)

    def test_check_payment_status_reports_only(self):
        started = self.start_payment()
        self.session.request.return_value = support.fake_response(
            {"success": True, "code": "PAYMENT_SUCCESS", "message": "Done", "data": {}}
        )
        result = self.service.check_payment_status(started["merchantTransactionId"])
        self.assertEqual(result["paymentStatus"], "success")
        self.assertFalse(result["isPending"])
        self.assertEqual(result["orderStatus"], st.PAYMENT_PENDING)
        with self.assertRaises(OrderNotFoundError):
            self.service.check_payment_status("TXN_missing")


class TestTracking(ServiceTestCase):

    def test_track_order(self):
        placed = self.service.create_order(support.order_payload((1, 1)))
        view = self.service.track_order(placed["orderNumber"])
        self.assertEqual(view["order"]["order_number"], placed["orderNumber"])
        self.assertEqual(view["tracking"]["progressPercentage"], 20)
        with self.assertRaises(OrderNotFoundError):
            self.service.track_order("AFK0")

    def test_track_by_phone_lists_active_orders_only(self):
        kept = self.service.create_order(support.order_payload((1, 1), customerPhone="9000000009"))
        done = self.service.create_order(support.order_payload((1, 1), customerPhone="9000000009"))
        self.service.update_status(done["orderId"], st.CANCELLED)

        result = self.service.track_by_phone(" 9000000009 ")
        self.assertEqual(result["count"], 1)
        self.assertEqual(result["orders"][0]["order_number"], kept["orderNumber"])

        empty = self.service.track_by_phone("9111111111")
        self.assertEqual(empty["count"], 0)
        self.assertEqual(empty["orders"], [])


class TestAdminOperations(ServiceTestCase):

    def test_status_walks_forward(self):
        placed = self.service.create_order(support.order_payload((1, 1)))
        for status in (st.CONFIRMED, st.PROCESSING, st.SHIPPED, st.DELIVERED):
            result = self.service.update_status(placed["orderId"], status)
            self.assertEqual(result["order"]["status"], status)

    def test_invalid_updates(self):
        placed = self.service.create_order(support.order_payload((1, 1)))
        with self.assertRaises(InvalidStatusError):
            self.service.update_status(placed["orderId"], "lost")
        with self.assertRaises(InvalidTransitionError):
            self.service.update_status(placed["orderId"], st.SHIPPED)
        self.service.update_status(placed["orderId"], st.CANCELLED)
        with self.assertRaises(InvalidTransitionError):
            self.service.update_status(placed["orderId"], st.CONFIRMED)
        with self.assertRaises(OrderNotFoundError):
            self.service.update_status(9999, st.CONFIRMED)

    def test_list_orders_validation(self):
        self.service.create_order(support.order_payload((1, 1)))
        self.assertEqual(len(self.service.list_orders()), 1)
        self.assertEqual(self.service.list_orders(status=st.CANCELLED), [])
        with self.assertRaises(ValidationError):
            self.service.list_orders(start_date="01/02/2024")
        with self.assertRaises(InvalidStatusError):
            self.service.list_orders(status="archived")

    def test_update_product(self):
        result = self.service.update_product(2, {"price": 320, "freeDelivery": True})
        self.assertEqual(result["product"]["price"], 320)
        self.assertTrue(result["product"]["free_delivery"])
        placed = self.service.create_order(support.order_payload((2, 1)))
        self.assertEqual(placed["totalAmount"], 320)

    def test_update_product_rejects_bad_input(self):
        with self.assertRaises(ValidationError):
            self.service.update_product(2, {"price": -1})
        with self.assertRaises(ValidationError):
            self.service.update_product(2, {"freeDelivery": "yes"})
        with self.assertRaises(ValidationError):
            self.service.update_product(2, {})
        with self.assertRaises(NotFoundError):
            self.service.update_product(999, {"price": 1})

    def test_stats_revenue_excludes_unpaid_and_cancelled(self):
        self.service.create_order(support.order_payload((3, 1)))  # 649
        cancelled = self.service.create_order(support.order_payload((5, 1)))
        self.service.update_status(cancelled["orderId"], st.CANCELLED)
        self.service.initiate_payment(support.order_payload((6, 1)))

        stats = self.service.stats()

        self.assertEqual(stats["totalOrders"], 3)
        self.assertEqual(stats["byStatus"][st.PENDING], 1)
        self.assertEqual(stats["byStatus"][st.CANCELLED], 1)
        self.assertEqual(stats["byStatus"][st.PAYMENT_PENDING], 1)
        self.assertEqual(stats["byStatus"][st.DELIVERED], 0)
        self.assertEqual(stats["totalRevenue"], 649)

    def test_search(self):
        placed = self.service.create_order(support.order_payload((1, 1), customerName="Meenakshi"))
        hits = self.service.search("meenak")
        self.assertEqual([h["order_number"] for h in hits], [placed["orderNumber"]])
        with self.assertRaises(ValidationError):
            self.service.search("  ")

    def test_render_invoice(self):
        placed = self.service.create_order(support.order_payload((1, 1)))
        filename, pdf = self.service.render_invoice(placed["orderId"])
        self.assertEqual(filename, f"Order_{placed['orderNumber']}.pdf")
        self.assertTrue(pdf.startswith(b"%PDF"))
        with self.assertRaises(OrderNotFoundError):
            self.service.render_invoice(9999)

    def test_ids_beyond_integer_range_not_found(self):
        huge = 10 ** 19
        with self.assertRaises(NotFoundError):
            self.service.get_product(huge)
        with self.assertRaises(OrderNotFoundError):
            self.service.get_order_by_id(huge)
        with self.assertRaises(OrderNotFoundError):
            self.service.update_status(huge, st.CONFIRMED)
        with self.assertRaises(NotFoundError):
            self.service.update_product(huge, {"price": 1})
        with self.assertRaises(OrderNotFoundError):
            self.service.render_invoice(huge)

    def test_send_test_notification(self):
        self.service.notifier = NotificationDispatcher(NotificationSettings(method="none"), session=self.session)
        result = self.service.send_test_notification({"phoneNumber": "9876543210"})
        self.assertTrue(result["success"])
        self.assertEqual(result["method"], "none")
        self.assertEqual(result["configuration"]["method"], "none")
        with self.assertRaises(ValidationError):
            self.service.send_test_notification({})
        with self.assertRaises(ValidationError):
            self.service.send_test_notification({"email": "a@b.com\r\nBcc: victim@example.com"})

    def test_health(self):
        health = self.service.health({"active": False})
        self.assertEqual(health["status"], "ok")
        self.assertTrue(health["timestamp"].endswith("Z"))
        self.assertFalse(health["paymentGateway"]["is_open"])


if __name__ == "__main__":
    unittest.main(verbosity=2)
