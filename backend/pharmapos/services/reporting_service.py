# Overview: Service-layer operations for reporting; encapsulates business logic and database work.

"""
Sales reporting and the dashboard summary.

Calendar dates are local dates in Config.REPORT_TIMEZONE. Sales are
stored with UTC timestamps, so a date range is turned into UTC bounds
first and each sale is then bucketed by its local date.
"""

from __future__ import annotations

from collections import OrderedDict
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable
from zoneinfo import ZoneInfo

from flask import current_app

from ..extensions import db
from ..models import Product, Sale, User
from ..errors import ValidationError
from pharmapos.time_utils import (
    get_zone,
    local_date_of,
    local_day_bounds_utc,
    parse_iso_date,
    utcnow,
)


GROUP_BY_CHOICES = ("day", "product", "staff")

# Longest range a single report may cover
MAX_REPORT_DAYS = 366


class ReportError(ValidationError):
    """Raised when report parameters are invalid."""
    pass


def report_zone(zone_name: str | None = None) -> ZoneInfo:
    name = zone_name or current_app.config.get("REPORT_TIMEZONE", "UTC")
    try:
        return get_zone(name)
    except ValueError as exc:
        raise ReportError(str(exc)) from exc


def local_today(zone: ZoneInfo) -> date:
    return local_date_of(utcnow(), zone)


def _coerce_date(value, key: str) -> date | None:
    if value is None or isinstance(value, date):
        return value
    try:
        return parse_iso_date(value)
    except (TypeError, ValueError):
        raise ReportError(f"{key} must be a YYYY-MM-DD date")


def parse_date_range(start, end, zone: ZoneInfo) -> tuple[date, date]:
    start_date = _coerce_date(start, "start_date")
    end_date = _coerce_date(end, "end_date")

    if end_date is None:
        end_date = start_date or local_today(zone)
    if start_date is None:
        start_date = end_date

    if start_date > end_date:
        raise ReportError("start_date must be on or before end_date")
    if (end_date - start_date).days >= MAX_REPORT_DAYS:
        raise ReportError(f"Date range cannot exceed {MAX_REPORT_DAYS} days")
    return start_date, end_date


def _average(revenue: int, transactions: int) -> int:
    if not transactions:
        return 0
    return int((Decimal(revenue) / Decimal(transactions)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _sales_between(start_date: date, end_date: date, zone: ZoneInfo) -> list[Sale]:
    lower, upper = local_day_bounds_utc(start_date, end_date, zone)
    return (
        db.session.query(Sale)
        .filter(Sale.created_at >= lower, Sale.created_at < upper)
        .order_by(Sale.created_at.asc(), Sale.id.asc())
        .all()
    )


def _units(sale: Sale) -> int:
    return sum(line.quantity for line in sale.lines)


def _totals(sales: Iterable[Sale]) -> dict:
    revenue = subtotal = tax = units = count = 0
    for sale in sales:
        revenue += sale.total_cents
        subtotal += sale.subtotal_cents
        tax += sale.tax_cents
        units += _units(sale)
        count += 1
    return {
        "revenue_cents": revenue,
        "subtotal_cents": subtotal,
        "tax_cents": tax,
        "transactions": count,
        "units_sold": units,
        "average_transaction_cents": _average(revenue, count),
    }


def _group_by_day(sales: list[Sale], zone: ZoneInfo) -> list[dict]:
    buckets: OrderedDict[date, list[Sale]] = OrderedDict()
    for sale in sales:
        buckets.setdefault(local_date_of(sale.created_at, zone), []).append(sale)

    rows = []
    for day in sorted(buckets):
        totals = _totals(buckets[day])
        rows.append({
            "date": day.isoformat(),
            "revenue_cents": totals["revenue_cents"],
            "subtotal_cents": totals["subtotal_cents"],
            "tax_cents": totals["tax_cents"],
            "transactions": totals["transactions"],
            "units_sold": totals["units_sold"],
        })
    return rows


def _group_by_product(sales: list[Sale]) -> list[dict]:
    """Keyed on the name printed on the receipt, so a renamed product splits."""
    rows: dict[str, dict] = {}
    for sale in sales:
        for line in sale.lines:
            row = rows.setdefault(line.product_name, {
                "product_name": line.product_name,
                "units_sold": 0,
                "revenue_cents": 0,
                "sale_ids": set(),
                "product_ids": set(),
            })
            row["units_sold"] += line.quantity
            row["revenue_cents"] += line.line_total_cents
            row["sale_ids"].add(sale.id)
            if line.product_id is not None:
                row["product_ids"].add(line.product_id)

    result = []
    for row in rows.values():
        row["transactions"] = len(row.pop("sale_ids"))
        row["product_ids"] = sorted(row["product_ids"])
        result.append(row)
    result.sort(key=lambda r: (-r["revenue_cents"], r["product_name"]))
    return result


def _group_by_staff(sales: list[Sale]) -> list[dict]:
    rows: dict[int, dict] = {}
    for sale in sales:
        row = rows.setdefault(sale.staff_id, {
            "staff_id": sale.staff_id,
            "staff_name": None,
            "revenue_cents": 0,
            "transactions": 0,
            "units_sold": 0,
        })
        row["revenue_cents"] += sale.total_cents
        row["transactions"] += 1
        row["units_sold"] += _units(sale)

    if rows:
        names = dict(
            db.session.query(User.id, User.full_name).filter(User.id.in_(list(rows))).all()
        )
        for staff_id, row in rows.items():
            row["staff_name"] = names.get(staff_id)

    result = []
    for row in rows.values():
        row["average_transaction_cents"] = _average(row["revenue_cents"], row["transactions"])
        result.append(row)
    result.sort(key=lambda r: (-r["revenue_cents"], r["staff_name"] or ""))
    return result


def sales_report(
    *,
    start_date=None,
    end_date=None,
    group_by: str = "day",
    zone_name: str | None = None,
) -> dict:
    """
    Sales between two local calendar dates (inclusive), grouped by
    day, product or staff, plus overall totals.

    The sum of daily revenue always equals the sum of the queried sales' totals.
    """
    if group_by not in GROUP_BY_CHOICES:
        raise ReportError(f"group_by must be one of: {', '.join(GROUP_BY_CHOICES)}")

    zone = report_zone(zone_name)
    start, end = parse_date_range(start_date, end_date, zone)
    sales = _sales_between(start, end, zone)

    if group_by == "day":
        rows = _group_by_day(sales, zone)
    elif group_by == "product":
        rows = _group_by_product(sales)
    else:
        rows = _group_by_staff(sales)

    return {
        "group_by": group_by,
        "start_date": start.isoformat(),
        "end_date": end.isoformat(),
        "timezone": zone.key,
        "currency": current_app.config.get("CURRENCY", "KES"),
        "rows": rows,
        "totals": _totals(sales),
    }


def dashboard_summary(today: date | None = None, zone_name: str | None = None) -> dict:
    """
    Figures for the back-office dashboard.

    - today's and month-to-date revenue
    - product, low-stock and expiring-soon counts
    - top 5 products by revenue over the last 7 days
    - 7-day trend, one row per day including days without sales
    """
    zone = report_zone(zone_name)
    if today is None:
        today = local_today(zone)

    week_start = today - timedelta(days=6)
    month_start = today.replace(day=1)

    today_sales = _sales_between(today, today, zone)
    month_sales = _sales_between(month_start, today, zone)
    week_sales = _sales_between(week_start, today, zone)

    warning_days = current_app.config.get("EXPIRY_WARNING_DAYS", 90)

    product_count = db.session.query(Product).count()
    low_stock_count = (
        db.session.query(Product)
        .filter(Product.stock_level <= Product.minimum_stock)
        .count()
    )
    expiring_count = (
        db.session.query(Product)
        .filter(Product.expiry_date <= today + timedelta(days=warning_days))
        .count()
    )

    by_day = {row["date"]: row for row in _group_by_day(week_sales, zone)}
    trend = []
    for offset in range(7):
        day = (week_start + timedelta(days=offset)).isoformat()
        row = by_day.get(day)
        trend.append({
            "date": day,
            "revenue_cents": row["revenue_cents"] if row else 0,
            "transactions": row["transactions"] if row else 0,
        })

    today_totals = _totals(today_sales)
    return {
        "date": today.isoformat(),
        "timezone": zone.key,
        "currency": current_app.config.get("CURRENCY", "KES"),
        "today_revenue_cents": today_totals["revenue_cents"],
        "today_transactions": today_totals["transactions"],
        "month_revenue_cents": _totals(month_sales)["revenue_cents"],
        "product_count": product_count,
        "low_stock_count": low_stock_count,
        "expiring_soon_count": expiring_count,
        "top_products": _group_by_product(week_sales)[:5],
        "sales_trend": trend,
        "generated_at": datetime.now(zone).isoformat(timespec="seconds"),
    }
