"""Typed, read-only snapshots of the order, product and category datasets."""

from __future__ import annotations

import logging
import sqlite3
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from dateutil.parser import parse as dateutil_parse

LOGGER = logging.getLogger(__name__)

ZERO = Decimal("0")


class SnapshotUnavailableError(RuntimeError):
    """Raised when the underlying datasets cannot be read."""


# ---------------------------------------------------------------------------
# Boundary coercion helpers
# ---------------------------------------------------------------------------


def _first_present(document: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = document.get(key)
        if value not in (None, ""):
            return value
    return None


def _parse_datetime(value: Any) -> Optional[datetime]:
    """Coerce a loosely-typed timestamp into an aware UTC ``datetime``.

    Accepts ``datetime``/``date`` instances, epoch seconds, ISO-ish strings and
    document-store timestamp objects exposing ``to_datetime`` or ``toDate``.
    Anything that cannot be interpreted yields ``None``.
    """

    if value in (None, ""):
        return None
    for accessor in ("to_datetime", "toDate"):
        converter = getattr(value, accessor, None)
        if callable(converter):
            try:
                value = converter()
            except (TypeError, ValueError):
                return None
            break
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, bool):
        return None
    elif isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        try:
            parsed = dateutil_parse(str(value))
        except (TypeError, ValueError, OverflowError):
            LOGGER.debug("Ignoring unparseable timestamp %r", value)
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError:
        LOGGER.debug("Ignoring out-of-range timestamp %r", value)
        return None


def _decimal(value: Any) -> Decimal:
    """Non-negative ``Decimal`` for a monetary field; junk and negatives become 0."""

    if value in (None, "") or isinstance(value, bool):
        return ZERO
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return ZERO
    if not amount.is_finite() or amount < 0:
        return ZERO
    return amount


def _int(value: Any) -> int:
    if value in (None, "") or isinstance(value, bool):
        return 0
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        # inf and nan land here too
        try:
            number = int(float(value))
        except (TypeError, ValueError, OverflowError):
            return 0
    return max(0, number)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text != "" else None


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LineItem:
    product_id: str
    name: str
    unit_price: Decimal = ZERO
    quantity: int = 0

    @property
    def revenue(self) -> Decimal:
        return self.unit_price * self.quantity

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "LineItem":
        product_id = _text(_first_present(document, "productId", "product_id"))
        name = _text(_first_present(document, "name", "productName", "product_name"))
        return cls(
            product_id=product_id or "",
            name=name or product_id or "Unnamed product",
            unit_price=_decimal(
                _first_present(document, "unitPrice", "unit_price", "price")
            ),
            quantity=_int(document.get("quantity")),
        )


@dataclass(frozen=True)
class Order:
    id: str
    created_at: Optional[datetime] = None
    total_amount: Decimal = ZERO
    status: Optional[str] = None
    line_items: Tuple[LineItem, ...] = ()

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "Order":
        raw_items = _first_present(document, "lineItems", "line_items", "products", "items")
        line_items: List[LineItem] = []
        if isinstance(raw_items, (list, tuple)):
            for entry in raw_items:
                if isinstance(entry, Mapping):
                    line_items.append(LineItem.from_document(entry))
        return cls(
            id=str(_first_present(document, "id", "order_id", "orderId") or ""),
            created_at=_parse_datetime(
                _first_present(document, "createdAt", "created_at", "orderDate", "order_date")
            ),
            total_amount=_decimal(_first_present(document, "totalAmount", "total_amount")),
            status=_text(document.get("status")),
            line_items=tuple(line_items),
        )


@dataclass(frozen=True)
class Product:
    id: str
    name: str = ""
    category_id: Optional[str] = None

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "Product":
        return cls(
            id=str(_first_present(document, "id", "product_id") or ""),
            name=_text(document.get("name")) or "",
            category_id=_text(_first_present(document, "categoryId", "category_id")),
        )


@dataclass(frozen=True)
class Category:
    id: str
    name: str = ""

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "Category":
        return cls(
            id=str(_first_present(document, "id", "category_id") or ""),
            name=_text(document.get("name")) or "",
        )


# ---------------------------------------------------------------------------
# SQLite access
# ---------------------------------------------------------------------------


def _table_exists(conn: sqlite3.Connection, table_name: str) -> bool:
    """Return ``True`` if the table exists in the connected database."""

    cursor = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
        (table_name,),
    )
    return cursor.fetchone() is not None


def _rows_to_dicts(cursor: sqlite3.Cursor) -> List[Dict[str, Any]]:
    """Normalise sqlite rows to plain dictionaries, whatever the row factory."""

    columns = [description[0] for description in cursor.description or ()]
    normalised: List[Dict[str, Any]] = []
    for row in cursor.fetchall():
        if isinstance(row, sqlite3.Row):
            normalised.append({key: row[key] for key in row.keys()})
        else:
            normalised.append(dict(zip(columns, row)))
    return normalised


def _fetch_table(conn: sqlite3.Connection, table_name: str) -> List[Dict[str, Any]]:
    """Fetch all rows from ``table_name`` as dictionaries.

    Missing tables are treated as empty datasets.
    """

    if not _table_exists(conn, table_name):
        return []
    return _rows_to_dicts(conn.execute(f"SELECT * FROM {table_name}"))


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AnalyticsSnapshot:
    """Point-in-time bundle of the three datasets the analytics engine joins.

    The snapshot is frozen and holds tuples of frozen records, so reducers
    cannot mutate it. The id lookups are built once at construction.
    """

    orders: Tuple[Order, ...] = ()
    products: Tuple[Product, ...] = ()
    categories: Tuple[Category, ...] = ()

    _products_by_id: Optional[Dict[str, Product]] = field(
        init=False, default=None, repr=False, compare=False
    )
    _categories_by_id: Optional[Dict[str, Category]] = field(
        init=False, default=None, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "orders", tuple(self.orders))
        object.__setattr__(self, "products", tuple(self.products))
        object.__setattr__(self, "categories", tuple(self.categories))
        object.__setattr__(
            self,
            "_products_by_id",
            {product.id: product for product in self.products if product.id},
        )
        object.__setattr__(
            self,
            "_categories_by_id",
            {category.id: category for category in self.categories if category.id},
        )

    @classmethod
    def from_documents(
        cls,
        orders: Iterable[Mapping[str, Any]] = (),
        products: Iterable[Mapping[str, Any]] = (),
        categories: Iterable[Mapping[str, Any]] = (),
    ) -> "AnalyticsSnapshot":
        """Build a snapshot from loosely-typed document dictionaries."""

        return cls(
            orders=tuple(Order.from_document(doc) for doc in orders),
            products=tuple(Product.from_document(doc) for doc in products),
            categories=tuple(Category.from_document(doc) for doc in categories),
        )

    @classmethod
    def build(cls, conn: sqlite3.Connection) -> "AnalyticsSnapshot":
        """Assemble a snapshot from the SQLite database.

        Any database failure is re-raised as :class:`SnapshotUnavailableError`.
        """

        try:
            order_rows = _fetch_table(conn, "orders")
            line_item_rows = _fetch_table(conn, "order_line_items")
            product_rows = _fetch_table(conn, "products")
            category_rows = _fetch_table(conn, "categories")
        except sqlite3.Error as exc:
            raise SnapshotUnavailableError(f"Could not read analytics snapshot: {exc}") from exc

        items_by_order: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for row in line_item_rows:
            order_id = row.get("order_id")
            if order_id is None:
                continue
            items_by_order[str(order_id)].append(row)

        order_documents = []
        for row in order_rows:
            document = dict(row)
            document["line_items"] = items_by_order.get(str(row.get("id")), [])
            order_documents.append(document)

        snapshot = cls.from_documents(order_documents, product_rows, category_rows)
        LOGGER.debug(
            "Loaded analytics snapshot: %d orders, %d line items, %d products, %d categories",
            len(snapshot.orders),
            len(line_item_rows),
            len(snapshot.products),
            len(snapshot.categories),
        )
        return snapshot

    # ------------------------------------------------------------------
    # Derived lookups
    # ------------------------------------------------------------------
    @property
    def products_by_id(self) -> Mapping[str, Product]:
        return MappingProxyType(self._products_by_id or {})

    @property
    def categories_by_id(self) -> Mapping[str, Category]:
        return MappingProxyType(self._categories_by_id or {})


__all__ = [
    "AnalyticsSnapshot",
    "Category",
    "LineItem",
    "Order",
    "Product",
    "SnapshotUnavailableError",
]
