"""
SQLite persistence for products, orders and the keep-alive heartbeat.

Connections are opened one per thread and configured for concurrent use:
WAL journal, a busy timeout and enforced foreign keys.  Multi-statement
writes run inside ``with conn:`` so they commit or roll back together.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def utc_now() -> str:
    """Current UTC time in the storage format (sortable as text)."""
    return datetime.now(UTC).strftime(TIMESTAMP_FORMAT)


def _ensure_parent_dir(path: str) -> None:
    parent = os.path.dirname(os.path.abspath(path))
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)


# ------------------------------------------------------------------------------
# Connection management
# ------------------------------------------------------------------------------

class Database:
    """Owns the database path and hands out one connection per thread."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._local = threading.local()

    def _new_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with concurrency safeguards.

        The busy timeout makes SQLite wait for a competing writer instead of
        failing with ``database is locked``; WAL lets readers proceed while a
        write transaction is open.

        Raises:
            sqlite3.OperationalError: If the database cannot be opened.
        """
        if self.path != ":memory:":
            _ensure_parent_dir(self.path)
        try:
            conn = sqlite3.connect(self.path, check_same_thread=False, timeout=10.0)
        except sqlite3.OperationalError as e:
            logger.error("DB open failed", extra={"extra": {"path": self.path, "error": str(e)}})
            raise
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA busy_timeout = 10000;")
        try:
            conn.execute("PRAGMA journal_mode = WAL;")
        except sqlite3.OperationalError:
            # e.g. unsupported filesystem; rollback journal still works
            logger.warning("WAL journal not available", extra={"extra": {"path": self.path}})
        return conn

    def connection(self) -> sqlite3.Connection:
        """Return this thread's connection, opening it on first use."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._new_connection()
            self._local.conn = conn
        return conn

    def close_thread_connection(self) -> None:
        """Close the calling thread's connection, if one was opened."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            self._local.conn = None
            conn.close()

    def check(self) -> bool:
        """Run a trivial query; used by the ``check-db`` command."""
        row = self.connection().execute("SELECT 1;").fetchone()
        return row is not None and row[0] == 1

    def create_schema(self) -> None:
        for dao in (ProductDAO(self), OrderDAO(self), KeepAliveDAO(self)):
            dao.create_table()


# ------------------------------------------------------------------------------
# Domain models
# ------------------------------------------------------------------------------

@dataclass
class Product:
    id: int
    name: str
    grams: int
    liter: float
    price: float
    description: str
    image: str
    badge: Optional[str]
    free_delivery: bool
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Product":
        return cls(
            id=row["id"],
            name=row["name"],
            grams=row["grams"],
            liter=row["liter"],
            price=row["price"],
            description=row["description"],
            image=row["image"],
            badge=row["badge"],
            free_delivery=bool(row["free_delivery"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class OrderItem:
    """A purchased line, frozen at the catalog price of the moment."""

    product_id: int
    product_name: str
    quantity: int
    price_per_unit: float
    total_price: float
    id: Optional[int] = None
    order_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Order:
    id: int
    order_number: str
    customer_name: str
    customer_phone: str
    customer_email: Optional[str]
    delivery_address: str
    city: str
    pincode: str
    landmark: Optional[str]
    subtotal: float
    delivery_charge: float
    total_amount: float
    status: str
    payment_reference: Optional[str]
    created_at: str
    updated_at: str
    items: List[OrderItem] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Order":
        return cls(**{name: row[name] for name in _ORDER_COLUMNS})

    def to_dict(self, include_items: bool = True) -> Dict[str, Any]:
        data = {name: getattr(self, name) for name in _ORDER_COLUMNS}
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


@dataclass
class NewOrder:
    """Everything needed to insert an order; the number is assigned by the DAO caller."""

    order_number: str
    customer_name: str
    customer_phone: str
    delivery_address: str
    city: str
    pincode: str
    subtotal: float
    delivery_charge: float
    total_amount: float
    status: str
    items: List[OrderItem]
    customer_email: Optional[str] = None
    landmark: Optional[str] = None
    payment_reference: Optional[str] = None


_ORDER_COLUMNS = (
    "id", "order_number", "customer_name", "customer_phone", "customer_email",
    "delivery_address", "city", "pincode", "landmark", "subtotal",
    "delivery_charge", "total_amount", "status", "payment_reference",
    "created_at", "updated_at",
)
_ORDER_SELECT = "SELECT " + ", ".join(_ORDER_COLUMNS) + " FROM orders"


# ------------------------------------------------------------------------------
# Base DAO
# ------------------------------------------------------------------------------

class BaseDAO:
    """Base class for all DAOs; tables are created with IF NOT EXISTS."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def _conn(self) -> sqlite3.Connection:
        return self.db.connection()

    def create_table(self) -> None:
        return


# ------------------------------------------------------------------------------
# Product DAO
# ------------------------------------------------------------------------------

class ProductDAO(BaseDAO):
    """DAO for catalog products."""

    def create_table(self) -> None:
        conn = self._conn()
        with conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS products (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    grams INTEGER NOT NULL,
                    liter REAL NOT NULL,
                    price REAL NOT NULL CHECK (price >= 0),
                    description TEXT NOT NULL DEFAULT '',
                    image TEXT NOT NULL DEFAULT '',
                    badge TEXT,
                    free_delivery INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )

    def count(self) -> int:
        (n,) = self._conn().execute("SELECT COUNT(*) FROM products;").fetchone()
        return int(n)

    def insert_many(self, products: Iterable[Dict[str, Any]]) -> int:
        """Insert catalog rows in one transaction; returns how many were written."""
        ts = utc_now()
        rows = [
            (
                p["name"], p["grams"], p["liter"], p["price"], p.get("description", ""),
                p.get("image", ""), p.get("badge"), 1 if p.get("free_delivery") else 0, ts, ts,
            )
            for p in products
        ]
        conn = self._conn()
        with conn:
            conn.executemany(
                "INSERT INTO products (name, grams, liter, price, description, image, badge,"
                " free_delivery, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);",
                rows,
            )
        return len(rows)

    def get_product(self, product_id: int) -> Optional[Product]:
        row = self._conn().execute("SELECT * FROM products WHERE id = ?;", (product_id,)).fetchone()
        return Product.from_row(row) if row else None

    def get_products(self, product_ids: Iterable[int]) -> Dict[int, Product]:
        """Fetch several products at once, keyed by id; unknown ids are absent."""
        ids = sorted(set(product_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        rows = self._conn().execute(
            f"SELECT * FROM products WHERE id IN ({placeholders});", ids
        ).fetchall()
        return {row["id"]: Product.from_row(row) for row in rows}

    def list_products(self) -> List[Product]:
        rows = self._conn().execute("SELECT * FROM products ORDER BY grams, id;").fetchall()
        return [Product.from_row(r) for r in rows]

    def update_product(
        self,
        product_id: int,
        price: float | None = None,
        free_delivery: bool | None = None,
        description: str | None = None,
        badge: str | None = None,
    ) -> bool:
        """Apply the given fields; ``None`` leaves a field untouched."""
        conn = self._conn()
        with conn:
            cur = conn.execute(
                """
                UPDATE products
                SET price = COALESCE(?, price),
                    free_delivery = COALESCE(?, free_delivery),
                    description = COALESCE(?, description),
                    badge = COALESCE(?, badge),
                    updated_at = ?
                WHERE id = ?;
                """,
                (
                    price,
                    None if free_delivery is None else int(bool(free_delivery)),
                    description,
                    badge,
                    utc_now(),
                    product_id,
                ),
            )
        return cur.rowcount > 0


# ------------------------------------------------------------------------------
# Order DAO
# ------------------------------------------------------------------------------

class OrderDAO(BaseDAO):
    """DAO for the orders and order_items tables."""

    def create_table(self) -> None:
        conn = self._conn()
        with conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS orders (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    order_number TEXT NOT NULL UNIQUE,
                    customer_name TEXT NOT NULL,
                    customer_phone TEXT NOT NULL,
                    customer_email TEXT,
                    delivery_address TEXT NOT NULL,
                    city TEXT NOT NULL,
                    pincode TEXT NOT NULL,
                    landmark TEXT,
                    subtotal REAL NOT NULL,
                    delivery_charge REAL NOT NULL,
                    total_amount REAL NOT NULL,
                    status TEXT NOT NULL,
                    payment_reference TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS order_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    order_id INTEGER NOT NULL,
                    product_id INTEGER NOT NULL,
                    product_name TEXT NOT NULL,
                    quantity INTEGER NOT NULL CHECK (quantity > 0),
                    price_per_unit REAL NOT NULL,
                    total_price REAL NOT NULL,
                    FOREIGN KEY (order_id) REFERENCES orders(id),
                    FOREIGN KEY (product_id) REFERENCES products(id)
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_phone ON orders(customer_phone);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_payment_ref ON orders(payment_reference);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items(order_id);")

    def create_order(self, order: NewOrder) -> int:
        """Insert the order row and all of its items in one transaction.

        Raises:
            sqlite3.IntegrityError: If ``order_number`` is already taken.  Nothing
                is written in that case.
        """
        conn = self._conn()
        ts = utc_now()
        with conn:
            cur = conn.execute(
                """
                INSERT INTO orders (order_number, customer_name, customer_phone, customer_email,
                    delivery_address, city, pincode, landmark, subtotal, delivery_charge,
                    total_amount, status, payment_reference, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    order.order_number, order.customer_name, order.customer_phone,
                    order.customer_email, order.delivery_address, order.city, order.pincode,
                    order.landmark, order.subtotal, order.delivery_charge, order.total_amount,
                    order.status, order.payment_reference, ts, ts,
                ),
            )
            order_id = cur.lastrowid
            conn.executemany(
                "INSERT INTO order_items (order_id, product_id, product_name, quantity,"
                " price_per_unit, total_price) VALUES (?, ?, ?, ?, ?, ?);",
                [
                    (order_id, it.product_id, it.product_name, it.quantity, it.price_per_unit, it.total_price)
                    for it in order.items
                ],
            )
        return order_id

    def _one(self, where: str, params: tuple) -> Optional[Order]:
        row = self._conn().execute(f"{_ORDER_SELECT} WHERE {where};", params).fetchone()
        if row is None:
            return None
        order = Order.from_row(row)
        order.items = self.items_for(order.id)
        return order

    def get_by_id(self, order_id: int) -> Optional[Order]:
        return self._one("id = ?", (order_id,))

    def get_by_number(self, order_number: str) -> Optional[Order]:
        return self._one("order_number = ?", (order_number,))

    def get_by_payment_reference(self, reference: str) -> Optional[Order]:
        return self._one("payment_reference = ?", (reference,))

    def items_for(self, order_id: int) -> List[OrderItem]:
        rows = self._conn().execute(
            "SELECT id, order_id, product_id, product_name, quantity, price_per_unit, total_price"
            " FROM order_items WHERE order_id = ? ORDER BY id;",
            (order_id,),
        ).fetchall()
        return [
            OrderItem(
                id=r["id"], order_id=r["order_id"], product_id=r["product_id"],
                product_name=r["product_name"], quantity=r["quantity"],
                price_per_unit=r["price_per_unit"], total_price=r["total_price"],
            )
            for r in rows
        ]

    def _with_items(self, rows: Iterable[sqlite3.Row]) -> List[Order]:
        orders = [Order.from_row(r) for r in rows]
        for order in orders:
            order.items = self.items_for(order.id)
        return orders

    def list_orders(
        self,
        start_date: str | None = None,
        end_date: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> List[Order]:
        """Newest first.  ``end_date`` is a day (``YYYY-MM-DD``) and is inclusive."""
        clauses, params = _date_filters(start_date, end_date)
        if status:
            clauses.append("status = ?")
            params.append(status)
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        params.append(limit)
        rows = self._conn().execute(
            f"{_ORDER_SELECT}{where} ORDER BY created_at DESC, id DESC LIMIT ?;", params
        ).fetchall()
        return self._with_items(rows)

    def list_by_phone(self, phone: str, exclude_statuses: Iterable[str] = ()) -> List[Order]:
        excluded = list(exclude_statuses)
        sql = f"{_ORDER_SELECT} WHERE customer_phone = ?"
        params: List[Any] = [phone]
        if excluded:
            sql += " AND status NOT IN (" + ", ".join("?" for _ in excluded) + ")"
            params.extend(excluded)
        rows = self._conn().execute(sql + " ORDER BY created_at DESC, id DESC;", params).fetchall()
        return self._with_items(rows)

    def update_status_if(self, order_id: int, expected: str, new_status: str) -> bool:
        """
        Atomically move an order from ``expected`` to ``new_status``.  Returns
        False when the order is missing or its status has changed meanwhile,
        so two concurrent updates can never both apply.
        """
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "UPDATE orders SET status = ?, updated_at = ? WHERE id = ? AND status = ?;",
                (new_status, utc_now(), order_id, expected),
            )
        return cur.rowcount > 0

    def stats(
        self,
        start_date: str | None = None,
        end_date: str | None = None,
        revenue_excluded: Iterable[str] = (),
    ) -> Dict[str, Any]:
        """Order counts per status and revenue over the optional date range."""
        clauses, params = _date_filters(start_date, end_date)
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        conn = self._conn()
        rows = conn.execute(
            f"SELECT status, COUNT(*) AS n FROM orders{where} GROUP BY status;", params
        ).fetchall()
        by_status = {r["status"]: r["n"] for r in rows}

        excluded = list(revenue_excluded)
        rev_clauses = list(clauses)
        rev_params = list(params)
        if excluded:
            rev_clauses.append("status NOT IN (" + ", ".join("?" for _ in excluded) + ")")
            rev_params.extend(excluded)
        rev_where = (" WHERE " + " AND ".join(rev_clauses)) if rev_clauses else ""
        (revenue,) = conn.execute(
            f"SELECT COALESCE(SUM(total_amount), 0) FROM orders{rev_where};", rev_params
        ).fetchone()
        return {
            "totalOrders": sum(by_status.values()),
            "byStatus": by_status,
            "totalRevenue": float(revenue),
        }

    def search(self, query: str, limit: int = 50) -> List[Order]:
        """Match order number, phone or customer name (substring, case-insensitive)."""
        pattern = f"%{query}%"
        rows = self._conn().execute(
            f"{_ORDER_SELECT} WHERE order_number LIKE ? OR customer_phone LIKE ? OR customer_name LIKE ?"
            " ORDER BY created_at DESC, id DESC LIMIT ?;",
            (pattern, pattern, pattern, limit),
        ).fetchall()
        return self._with_items(rows)


def _date_filters(start_date: str | None, end_date: str | None) -> tuple[List[str], List[Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if start_date:
        clauses.append("created_at >= ?")
        params.append(start_date)
    if end_date:
        clauses.append("created_at <= ?")
        params.append(f"{end_date} 23:59:59")
    return clauses, params


# ------------------------------------------------------------------------------
# Keep-alive DAO
# ------------------------------------------------------------------------------

@dataclass
class KeepAliveRecord:
    count: int
    last_updated: str


class KeepAliveDAO(BaseDAO):
    """Single-row heartbeat counter (``id = 1``)."""

    def create_table(self) -> None:
        conn = self._conn()
        with conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS keep_alive (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    count INTEGER NOT NULL,
                    last_updated TEXT NOT NULL
                );
                """
            )

    def get(self) -> Optional[KeepAliveRecord]:
        row = self._conn().execute("SELECT count, last_updated FROM keep_alive WHERE id = 1;").fetchone()
        return KeepAliveRecord(row["count"], row["last_updated"]) if row else None

    def increment(self, max_count: int) -> KeepAliveRecord:
        """Bump the counter, wrapping to 1 once it passes ``max_count``."""
        conn = self._conn()
        ts = utc_now()
        with conn:
            row = conn.execute("SELECT count FROM keep_alive WHERE id = 1;").fetchone()
            current = row["count"] if row else 0
            new_count = current + 1 if current < max_count else 1
            conn.execute(
                "INSERT INTO keep_alive (id, count, last_updated) VALUES (1, ?, ?)"
                " ON CONFLICT(id) DO UPDATE SET count = excluded.count, last_updated = excluded.last_updated;",
                (new_count, ts),
            )
        return KeepAliveRecord(new_count, ts)
