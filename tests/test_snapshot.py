import dataclasses
import pathlib
import sqlite3
import sys
from datetime import datetime, timezone
from decimal import Decimal

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from database import create_schema
from services.snapshot import AnalyticsSnapshot, Order, SnapshotUnavailableError


class _FirestoreTimestamp:
    def __init__(self, moment):
        self._moment = moment

    def toDate(self):
        return self._moment


def test_from_documents_coerces_loose_order_documents():
    snapshot = AnalyticsSnapshot.from_documents(
        orders=[
            {
                "id": "order-1",
                "createdAt": _FirestoreTimestamp(datetime(2024, 5, 1, 9, 30)),
                "totalAmount": "149.90",
                "status": "Shipped",
                "products": [
                    {"productId": "p1", "name": "Shirt", "price": 49.95, "quantity": "2"},
                    {"productId": "p2", "name": "Socks", "price": -3, "quantity": 1},
                ],
            },
            {"id": "order-2", "createdAt": "not a date", "status": ""},
        ],
        products=[{"id": "p1", "name": "Shirt", "categoryId": "c1"}],
        categories=[{"id": "c1", "name": "Apparel"}],
    )

    first, second = snapshot.orders
    assert first.created_at == datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)
    assert first.total_amount == Decimal("149.90")
    assert [item.revenue for item in first.line_items] == [Decimal("99.90"), Decimal("0")]
    assert first.line_items[0].quantity == 2

    assert second.created_at is None
    assert second.total_amount == Decimal("0")
    assert second.status is None
    assert second.line_items == ()

    assert snapshot.products_by_id["p1"].category_id == "c1"
    assert snapshot.categories_by_id["c1"].name == "Apparel"


def test_iso_timestamps_are_normalised_to_utc():
    order = Order.from_document({"id": "o", "created_at": "2024-05-01T10:00:00+02:00"})
    assert order.created_at == datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)


def test_epoch_seconds_are_accepted():
    order = Order.from_document({"id": "o", "createdAt": 0})
    assert order.created_at == datetime(1970, 1, 1, tzinfo=timezone.utc)


def test_records_are_read_only():
    order = Order.from_document({"id": "o", "totalAmount": 5})
    with pytest.raises(dataclasses.FrozenInstanceError):
        order.total_amount = Decimal("10")


def test_build_reads_sqlite_tables():
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    create_schema(conn.cursor())
    conn.execute("INSERT INTO categories (id, name) VALUES (?, ?)", ("c1", "Apparel"))
    conn.execute(
        "INSERT INTO products (id, name, category_id, price) VALUES (?, ?, ?, ?)",
        ("p1", "Shirt", "c1", 25.0),
    )
    conn.execute(
        "INSERT INTO orders (id, status, total_amount, created_at) VALUES (?, ?, ?, ?)",
        ("o1", "Pending", 50.0, "2024-05-20T10:00:00Z"),
    )
    conn.executemany(
        "INSERT INTO order_line_items (order_id, product_id, name, unit_price, quantity) VALUES (?, ?, ?, ?, ?)",
        [("o1", "p1", "Shirt", 25.0, 2), ("orphan", "p1", "Shirt", 25.0, 9)],
    )
    conn.commit()

    snapshot = AnalyticsSnapshot.build(conn)
    conn.close()

    assert len(snapshot.orders) == 1
    order = snapshot.orders[0]
    assert order.status == "Pending"
    assert order.total_amount == Decimal("50.0")
    assert order.created_at == datetime(2024, 5, 20, 10, 0, tzinfo=timezone.utc)
    assert [(item.product_id, item.quantity) for item in order.line_items] == [("p1", 2)]
    assert snapshot.products[0].category_id == "c1"
    assert snapshot.categories[0].name == "Apparel"


def test_build_treats_missing_tables_as_empty():
    conn = sqlite3.connect(":memory:")
    snapshot = AnalyticsSnapshot.build(conn)
    conn.close()
    assert snapshot == AnalyticsSnapshot()


def test_build_wraps_database_failures():
    conn = sqlite3.connect(":memory:")
    conn.close()
    with pytest.raises(SnapshotUnavailableError):
        AnalyticsSnapshot.build(conn)


def test_snapshot_and_lookups_are_read_only():
    snapshot = AnalyticsSnapshot.from_documents(
        products=[{"id": "p1", "name": "Shirt", "categoryId": "c1"}],
        categories=[{"id": "c1", "name": "Apparel"}],
    )
    with pytest.raises(dataclasses.FrozenInstanceError):
        snapshot.orders = ()
    with pytest.raises(TypeError):
        snapshot.products_by_id["p2"] = snapshot.products[0]
    assert dict(snapshot.categories_by_id) == {"c1": snapshot.categories[0]}


def test_snapshot_accepts_lists_and_stores_tuples():
    order = Order.from_document({"id": "o"})
    snapshot = AnalyticsSnapshot(orders=[order])
    assert snapshot.orders == (order,)


@pytest.mark.parametrize(
    "document",
    [
        {"id": "o", "createdAt": "0001-01-01T00:00:00+05:00"},
        {"id": "o", "createdAt": float("inf")},
        {"id": "o", "totalAmount": float("inf"), "lineItems": [{"productId": "p", "quantity": float("inf")}]},
        {"id": "o", "totalAmount": "NaN", "lineItems": [{"productId": "p", "quantity": "1e400", "price": "-Infinity"}]},
    ],
)
def test_out_of_range_values_degrade_to_defaults(document):
    order = Order.from_document(document)
    assert order.total_amount == Decimal("0")
    assert all(item.quantity == 0 and item.revenue == 0 for item in order.line_items)
    if "createdAt" in document:
        assert order.created_at is None
