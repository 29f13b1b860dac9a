"""Order analytics engine powering the reporting view."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import pytz

from .snapshot import (
    AnalyticsSnapshot,
    Category,
    Order,
    Product,
    ZERO,
)

LOGGER = logging.getLogger(__name__)

UNKNOWN_LABEL = "Unknown"
DEFAULT_WINDOW_DAYS = 30
TOP_PRODUCTS_LIMIT = 5
SALES_BUCKET_COUNT = 14


# ---------------------------------------------------------------------------
# Helper utilities
# ---------------------------------------------------------------------------


def _number(value: Decimal) -> Union[int, float]:
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def _resolve_timezone(tz_name: Optional[str]) -> pytz.BaseTzInfo:
    if not tz_name:
        return pytz.utc
    try:
        return pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        LOGGER.warning("Unknown timezone '%s'; falling back to UTC", tz_name)
        return pytz.utc


def _utc_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def _local_date(moment: datetime, tzinfo: pytz.BaseTzInfo) -> date:
    """Calendar day of ``moment`` as seen by a viewer in ``tzinfo``.

    Instants too close to the ends of the calendar to shift keep their UTC day.
    """

    try:
        return moment.astimezone(tzinfo).date()
    except OverflowError:
        return moment.date()


# ---------------------------------------------------------------------------
# Parameter primitives
# ---------------------------------------------------------------------------


@dataclass
class ReportParameter:
    name: str
    label: str
    param_type: str
    description: str = ""
    default: Any = None
    options: Optional[List[Dict[str, Any]]] = None

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "label": self.label,
            "type": self.param_type,
            "description": self.description,
            "options": list(self.options or []),
            "default": self.default,
        }

    def normalise(self, value: Any) -> int:
        """Validate a window length.

        The offered options are suggestions only; any positive integer is
        accepted.
        """

        candidate = self.default if value in (None, "") else value
        if isinstance(candidate, bool):
            raise ValueError(f"{self.label} must be a positive whole number of days")
        try:
            days = int(str(candidate).strip()) if isinstance(candidate, str) else int(candidate)
        except (TypeError, ValueError, OverflowError):
            raise ValueError(f"{self.label} must be a positive whole number of days")
        if isinstance(candidate, float) and candidate != days:
            raise ValueError(f"{self.label} must be a positive whole number of days")
        if days < 1:
            raise ValueError(f"{self.label} must be at least 1 day, got {days}")
        return days


WINDOW_PARAMETER = ReportParameter(
    name="days",
    label="Time Range",
    param_type="integer",
    description="Trailing number of days of orders to include.",
    default=DEFAULT_WINDOW_DAYS,
    options=[
        {"value": 7, "label": "Last 7 days"},
        {"value": 30, "label": "Last 30 days"},
        {"value": 90, "label": "Last 3 months"},
        {"value": 365, "label": "Last year"},
    ],
)


def normalise_window_days(value: Any) -> int:
    return WINDOW_PARAMETER.normalise(value)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrderTotals:
    total_revenue: Decimal = ZERO
    total_orders: int = 0
    average_order_value: Decimal = ZERO


@dataclass(frozen=True)
class ProductSales:
    name: str
    units_sold: int
    revenue: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "unitsSold": self.units_sold,
            "revenue": _number(self.revenue),
        }


@dataclass(frozen=True)
class SalesBucket:
    # ``date`` is the string "Unknown" for undated orders
    date: Union[date, str]
    order_count: int
    revenue: Decimal

    def to_dict(self) -> Dict[str, Any]:
        label = self.date.isoformat() if isinstance(self.date, date) else str(self.date)
        return {
            "date": label,
            "orderCount": self.order_count,
            "revenue": _number(self.revenue),
        }


@dataclass(frozen=True)
class AnalyticsReport:
    """Composite result of one analytics run over one snapshot."""

    total_revenue: Decimal
    total_orders: int
    average_order_value: Decimal
    top_products: List[ProductSales] = field(default_factory=list)
    revenue_by_category: Dict[str, Decimal] = field(default_factory=dict)
    sales_over_time: List[SalesBucket] = field(default_factory=list)
    orders_by_status: Dict[str, int] = field(default_factory=dict)
    window_days: int = DEFAULT_WINDOW_DAYS
    timezone_name: str = "UTC"
    generated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalRevenue": _number(self.total_revenue),
            "totalOrders": self.total_orders,
            "averageOrderValue": _number(self.average_order_value),
            "topProducts": [entry.to_dict() for entry in self.top_products],
            "revenueByCategory": [
                {"name": name, "value": _number(value)}
                for name, value in self.revenue_by_category.items()
            ],
            "salesOverTime": [bucket.to_dict() for bucket in self.sales_over_time],
            "ordersByStatus": [
                {"status": status, "count": count}
                for status, count in self.orders_by_status.items()
            ],
            "meta": {
                "windowDays": self.window_days,
                "timezone": self.timezone_name,
                "generatedAt": self.generated_at.isoformat() if self.generated_at else None,
            },
        }


@dataclass(frozen=True)
class DashboardStats:
    total_products: int = 0
    total_categories: int = 0
    total_orders: int = 0
    total_revenue: Decimal = ZERO
    today_orders: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalProducts": self.total_products,
            "totalCategories": self.total_categories,
            "totalOrders": self.total_orders,
            "totalRevenue": _number(self.total_revenue),
            "todayOrders": self.today_orders,
        }


# ---------------------------------------------------------------------------
# Reducers
# ---------------------------------------------------------------------------


def filter_by_window(
    orders: Iterable[Order],
    window_days: int,
    *,
    now: Optional[datetime] = None,
    tz: Optional[pytz.BaseTzInfo] = None,
) -> List[Order]:
    """Keep the orders placed on or after the first local day of the window.

    The cutoff is the start of the viewer's local day ``window_days`` days
    before ``now``. Undated orders are treated as epoch-old and never match.
    """

    days = normalise_window_days(window_days)
    tzinfo = tz or pytz.utc
    today = _local_date(_utc_now(now), tzinfo)
    try:
        cutoff = today - timedelta(days=days)
    except OverflowError:
        cutoff = date.min

    return [
        order
        for order in orders
        if order.created_at is not None and _local_date(order.created_at, tzinfo) >= cutoff
    ]


def compute_totals(orders: Sequence[Order]) -> OrderTotals:
    total_revenue = sum((order.total_amount for order in orders), ZERO)
    total_orders = len(orders)
    average = total_revenue / total_orders if total_orders else ZERO
    return OrderTotals(
        total_revenue=total_revenue,
        total_orders=total_orders,
        average_order_value=average,
    )


def top_products(orders: Iterable[Order], limit: int = TOP_PRODUCTS_LIMIT) -> List[ProductSales]:
    """Rank products by line-item revenue.

    Names come from the line items themselves so the ranking reflects what was
    sold, not the current catalog entry. Ties keep first-seen order.
    """

    if limit <= 0:
        return []

    aggregates: Dict[str, Dict[str, Any]] = {}
    for order in orders:
        for item in order.line_items:
            entry = aggregates.setdefault(
                item.product_id,
                {"name": item.name, "units": 0, "revenue": ZERO},
            )
            entry["units"] += item.quantity
            entry["revenue"] += item.revenue

    ranked = [
        ProductSales(name=entry["name"], units_sold=entry["units"], revenue=entry["revenue"])
        for entry in aggregates.values()
    ]
    ranked.sort(key=lambda entry: entry.revenue, reverse=True)
    return ranked[:limit]


def revenue_by_category(
    orders: Iterable[Order],
    products: Union[Mapping[str, Product], Iterable[Product]],
    categories: Union[Mapping[str, Category], Iterable[Category]],
) -> Dict[str, Decimal]:
    """Sum line-item revenue per category display name.

    Line items whose product is missing from the snapshot, or whose product
    points at a missing category, accumulate under ``"Unknown"``.
    """

    if not isinstance(products, Mapping):
        products = {product.id: product for product in products if product.id}
    if not isinstance(categories, Mapping):
        categories = {category.id: category for category in categories if category.id}

    totals: Dict[str, Decimal] = {}
    for order in orders:
        for item in order.line_items:
            label = UNKNOWN_LABEL
            product = products.get(item.product_id)
            if product is not None and product.category_id is not None:
                category = categories.get(product.category_id)
                if category is not None and category.name:
                    label = category.name
            totals[label] = totals.get(label, ZERO) + item.revenue
    return totals


def orders_by_status(orders: Iterable[Order]) -> Dict[str, int]:
    # Exact-match keys: "Pending" and "pending" are separate buckets.
    counts: Dict[str, int] = {}
    for order in orders:
        status = order.status or UNKNOWN_LABEL
        counts[status] = counts.get(status, 0) + 1
    return counts


def sales_over_time(
    orders: Iterable[Order],
    bucket_count: int = SALES_BUCKET_COUNT,
    *,
    tz: Optional[pytz.BaseTzInfo] = None,
) -> List[SalesBucket]:
    """Group orders into local calendar-day buckets, keeping the latest ones.

    Undated orders collect in a single ``"Unknown"`` bucket that is left out of
    the chronological sort and placed ahead of the dated buckets, so it is the
    first to go when the series is truncated.
    """

    if bucket_count <= 0:
        return []

    tzinfo = tz or pytz.utc
    buckets: Dict[Union[date, str], Dict[str, Any]] = {}
    for order in orders:
        key: Union[date, str] = (
            _local_date(order.created_at, tzinfo) if order.created_at else UNKNOWN_LABEL
        )
        entry = buckets.setdefault(key, {"orders": 0, "revenue": ZERO})
        entry["orders"] += 1
        entry["revenue"] += order.total_amount

    dated = sorted(key for key in buckets if isinstance(key, date))
    ordered_keys: List[Union[date, str]] = []
    if UNKNOWN_LABEL in buckets:
        ordered_keys.append(UNKNOWN_LABEL)
    ordered_keys.extend(dated)

    return [
        SalesBucket(
            date=key,
            order_count=buckets[key]["orders"],
            revenue=buckets[key]["revenue"],
        )
        for key in ordered_keys[-bucket_count:]
    ]


# ---------------------------------------------------------------------------
# Facades
# ---------------------------------------------------------------------------


def build_report(
    snapshot: AnalyticsSnapshot,
    window_days: int = DEFAULT_WINDOW_DAYS,
    *,
    now: Optional[datetime] = None,
    timezone_name: str = "UTC",
) -> AnalyticsReport:
    """Run every reducer over a single windowed pass of ``snapshot``."""

    days = normalise_window_days(window_days)
    tzinfo = _resolve_timezone(timezone_name)
    current = _utc_now(now)

    filtered = filter_by_window(snapshot.orders, days, now=current, tz=tzinfo)
    totals = compute_totals(filtered)
    report = AnalyticsReport(
        total_revenue=totals.total_revenue,
        total_orders=totals.total_orders,
        average_order_value=totals.average_order_value,
        top_products=top_products(filtered),
        revenue_by_category=revenue_by_category(
            filtered, snapshot.products_by_id, snapshot.categories_by_id
        ),
        sales_over_time=sales_over_time(filtered, tz=tzinfo),
        orders_by_status=orders_by_status(filtered),
        window_days=days,
        timezone_name=tzinfo.zone,
        generated_at=current,
    )
    LOGGER.debug(
        "Built analytics report over %d of %d orders (window=%d days, tz=%s)",
        len(filtered),
        len(snapshot.orders),
        days,
        tzinfo.zone,
    )
    return report


def build_dashboard_stats(
    snapshot: AnalyticsSnapshot,
    *,
    now: Optional[datetime] = None,
    timezone_name: str = "UTC",
) -> DashboardStats:
    """Catalog and order headline counts for the landing dashboard.

    ``today_orders`` counts orders dated on or after the start of the viewer's
    local day, so future-dated orders are included.
    """

    tzinfo = _resolve_timezone(timezone_name)
    today = _local_date(_utc_now(now), tzinfo)
    today_orders = sum(
        1
        for order in snapshot.orders
        if order.created_at is not None and _local_date(order.created_at, tzinfo) >= today
    )
    return DashboardStats(
        total_products=len(snapshot.products),
        total_categories=len(snapshot.categories),
        total_orders=len(snapshot.orders),
        total_revenue=sum((order.total_amount for order in snapshot.orders), ZERO),
        today_orders=today_orders,
    )


class AnalyticsEngine:
    """Acquires snapshots from the data store and hands them to the reducers."""

    def window_options(self) -> Dict[str, Any]:
        return WINDOW_PARAMETER.describe()

    def run_report(
        self,
        conn: sqlite3.Connection,
        window_days: Any = None,
        *,
        timezone_name: str = "UTC",
        now: Optional[datetime] = None,
    ) -> AnalyticsReport:
        days = normalise_window_days(window_days)
        snapshot = AnalyticsSnapshot.build(conn)
        return build_report(snapshot, days, now=now, timezone_name=timezone_name)

    def run_dashboard(
        self,
        conn: sqlite3.Connection,
        *,
        timezone_name: str = "UTC",
        now: Optional[datetime] = None,
    ) -> DashboardStats:
        snapshot = AnalyticsSnapshot.build(conn)
        return build_dashboard_stats(snapshot, now=now, timezone_name=timezone_name)


_engine_instance: Optional[AnalyticsEngine] = None


def get_analytics_engine() -> AnalyticsEngine:
    global _engine_instance
    if _engine_instance is None:
        _engine_instance = AnalyticsEngine()
    return _engine_instance


__all__ = [
    "AnalyticsEngine",
    "AnalyticsReport",
    "DashboardStats",
    "OrderTotals",
    "ProductSales",
    "SalesBucket",
    "build_dashboard_stats",
    "build_report",
    "compute_totals",
    "filter_by_window",
    "get_analytics_engine",
    "normalise_window_days",
    "orders_by_status",
    "revenue_by_category",
    "sales_over_time",
    "top_products",
]
