import support

import sqlite3
import threading
import unittest

from ghee_shop.catalog import DEFAULT_PRODUCTS, seed_products
from ghee_shop.dao import KeepAliveDAO, NewOrder, OrderDAO, OrderItem, ProductDAO


def new_order(number, status="pending", phone="9876543210", items=None, total=649.0):
    return NewOrder(
        order_number=number,
        customer_name="Ravi",
        customer_phone=phone,
        delivery_address="4 Lake Road",
        city="Madurai",
        pincode="625001",
        subtotal=600.0,
        delivery_charge=49.0,
        total_amount=total,
        status=status,
        items=items if items is not None else [OrderItem(3, "Pure Cow Ghee 500g", 1, 600.0, 600.0)],
    )


class TestDatabaseIntegration(unittest.TestCase):
    """
    DAO tests against a temp SQLite file: schema, catalog, atomic order
    writes and the guarded status update.
    """

    def setUp(self):
        self.db, self.db_path = support.fresh_db()
        self.products = ProductDAO(self.db)
        self.orders = OrderDAO(self.db)

    def tearDown(self):
        support.remove_db(self.db, self.db_path)

    def test_seed_is_idempotent_and_ordered_by_weight(self):
        self.assertEqual(self.products.count(), len(DEFAULT_PRODUCTS))
        self.assertEqual(seed_products(self.products), 0)
        grams = [p.grams for p in self.products.list_products()]
        self.assertEqual(grams, sorted(grams))
        one_kg = [p for p in self.products.list_products() if p.grams == 1000][0]
        self.assertTrue(one_kg.free_delivery)
        self.assertEqual(one_kg.badge, "Free Delivery")

    def test_get_product_absent_returns_none(self):
        self.assertIsNone(self.products.get_product(9999))
        found = self.products.get_products([1, 2, 9999])
        self.assertEqual(sorted(found), [1, 2])

    def test_update_product_only_touches_given_fields(self):
        before = self.products.get_product(1)
        self.assertTrue(self.products.update_product(1, price=150))
        after = self.products.get_product(1)
        self.assertEqual(after.price, 150)
        self.assertEqual(after.description, before.description)
        self.assertFalse(after.free_delivery)
        self.products.update_product(1, free_delivery=True, badge="Deal")
        after = self.products.get_product(1)
        self.assertTrue(after.free_delivery)
        self.assertEqual(after.badge, "Deal")
        self.assertFalse(self.products.update_product(9999, price=1))

    def test_create_order_persists_items(self):
        order_id = self.orders.create_order(new_order("AFK1"))
        order = self.orders.get_by_id(order_id)
        self.assertEqual(order.order_number, "AFK1")
        self.assertEqual(len(order.items), 1)
        self.assertEqual(order.items[0].product_name, "Pure Cow Ghee 500g")
        self.assertEqual(self.orders.get_by_number("AFK1").id, order_id)

    def test_duplicate_order_number_rejected_without_partial_write(self):
        self.orders.create_order(new_order("AFK-DUP"))
        with self.assertRaises(sqlite3.IntegrityError):
            self.orders.create_order(new_order("AFK-DUP"))
        conn = self.db.connection()
        (orders,) = conn.execute("SELECT COUNT(*) FROM orders;").fetchone()
        (items,) = conn.execute("SELECT COUNT(*) FROM order_items;").fetchone()
        self.assertEqual((orders, items), (1, 1))

    def test_failed_item_insert_rolls_back_order_row(self):
        # product 9999 violates the order_items foreign key
        bad = new_order("AFK-BAD", items=[OrderItem(9999, "Ghost", 1, 1.0, 1.0)])
        with self.assertRaises(sqlite3.IntegrityError):
            self.orders.create_order(bad)
        self.assertIsNone(self.orders.get_by_number("AFK-BAD"))

    def test_update_status_if_is_conditional(self):
        order_id = self.orders.create_order(new_order("AFK2"))
        self.assertTrue(self.orders.update_status_if(order_id, "pending", "confirmed"))
        # stale expectation: no change
        self.assertFalse(self.orders.update_status_if(order_id, "pending", "cancelled"))
        self.assertEqual(self.orders.get_by_id(order_id).status, "confirmed")

    def test_concurrent_guarded_updates_apply_once(self):
        order_id = self.orders.create_order(new_order("AFK3"))
        results = []

        def worker(target):
            try:
                results.append(OrderDAO(self.db).update_status_if(order_id, "pending", target))
            finally:
                self.db.close_thread_connection()

        threads = [threading.Thread(target=worker, args=(t,)) for t in ("confirmed", "cancelled")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(sorted(results), [False, True])

    def test_payment_reference_lookup(self):
        order = new_order("AFK4", status="payment_pending")
        order.payment_reference = "TXN_AFK4"
        order_id = self.orders.create_order(order)
        self.assertEqual(self.orders.get_by_payment_reference("TXN_AFK4").id, order_id)
        self.assertEqual(self.orders.get_by_id(order_id).payment_reference, "TXN_AFK4")
        self.assertIsNone(self.orders.get_by_payment_reference("TXN_AFK"))

    def test_list_filters_phone_and_search(self):
        a = self.orders.create_order(new_order("AFK10", phone="9000000001"))
        self.orders.create_order(new_order("AFK11", phone="9000000001", status="delivered"))
        self.orders.create_order(new_order("AFK12", phone="9000000002", status="cancelled"))

        self.assertEqual(len(self.orders.list_orders()), 3)
        self.assertEqual([o.order_number for o in self.orders.list_orders(status="cancelled")], ["AFK12"])
        self.assertEqual(self.orders.list_orders(start_date="2999-01-01"), [])
        self.assertEqual(len(self.orders.list_orders(end_date="2999-01-01")), 3)

        active = self.orders.list_by_phone("9000000001", exclude_statuses=["delivered", "cancelled"])
        self.assertEqual([o.id for o in active], [a])

        self.assertEqual([o.order_number for o in self.orders.search("AFK11")], ["AFK11"])
        self.assertEqual(len(self.orders.search("Ravi")), 3)

    def test_stats_counts_and_revenue(self):
        self.orders.create_order(new_order("AFK20", total=649.0))
        self.orders.create_order(new_order("AFK21", status="cancelled", total=1000.0))
        stats = self.orders.stats(revenue_excluded=["cancelled"])
        self.assertEqual(stats["totalOrders"], 2)
        self.assertEqual(stats["byStatus"], {"pending": 1, "cancelled": 1})
        self.assertAlmostEqual(stats["totalRevenue"], 649.0)


class TestKeepAliveDAO(unittest.TestCase):

    def setUp(self):
        self.db, self.db_path = support.fresh_db()
        self.dao = KeepAliveDAO(self.db)

    def tearDown(self):
        support.remove_db(self.db, self.db_path)

    def test_counter_initializes_and_wraps(self):
        self.assertIsNone(self.dao.get())
        self.assertEqual(self.dao.increment(3).count, 1)
        self.assertEqual(self.dao.increment(3).count, 2)
        self.assertEqual(self.dao.increment(3).count, 3)
        self.assertEqual(self.dao.increment(3).count, 1)
        self.assertEqual(self.dao.get().count, 1)


if __name__ == "__main__":
    unittest.main(verbosity=2)
