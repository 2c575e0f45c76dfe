# Overview: Flask API routes for sales operations; parses input and returns JSON responses.

# backend/pharmapos/routes/sales.py
"""Completed sales and receipt reprints (read-only)."""

from flask import Blueprint, request, jsonify, current_app

from ..services import checkout_service
from ..services.reporting_service import ReportError, parse_date_range, report_zone
from ..errors import PosError
from ..decorators import require_auth, require_permission
from pharmapos.time_utils import local_day_bounds_utc


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


@sales_bp.get("")
@require_auth
@require_permission("VIEW_SALES")
def list_sales_route():
    """
    Recent sales, newest first.

    Query params:
    - start_date, end_date: YYYY-MM-DD local dates (optional, inclusive)
    - staff_id: int (optional)
    - limit: int (optional, default 100, max 500)
    """
    start_raw = request.args.get("start_date")
    end_raw = request.args.get("end_date")
    staff_id = request.args.get("staff_id", type=int)
    limit = min(max(request.args.get("limit", 100, type=int), 1), 500)

    try:
        start = end = None
        if start_raw or end_raw:
            zone = report_zone()
            start_date, end_date = parse_date_range(start_raw, end_raw, zone)
            start, end = local_day_bounds_utc(start_date, end_date, zone)

        sales = checkout_service.list_sales(start=start, end=end, staff_id=staff_id, limit=limit)
    except ReportError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list sales")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"sales": [s.to_dict() for s in sales], "count": len(sales)})


@sales_bp.get("/<int:sale_id>")
@require_auth
@require_permission("VIEW_SALES")
def get_sale_route(sale_id: int):
    try:
        sale = checkout_service.get_sale(sale_id)
    except PosError as e:
        return jsonify(e.to_dict()), e.http_status

    return jsonify({"sale": sale.to_dict(include_lines=True)})


@sales_bp.get("/<int:sale_id>/receipt")
@require_auth
@require_permission("VIEW_SALES")
def get_receipt_route(sale_id: int):
    """Receipt reprint."""
    try:
        receipt = checkout_service.get_receipt(sale_id)
    except PosError as e:
        return jsonify(e.to_dict()), e.http_status

    return jsonify({"receipt": receipt.to_dict()})


@sales_bp.get("/receipt/<string:receipt_number>")
@require_auth
@require_permission("VIEW_SALES")
def get_sale_by_receipt_route(receipt_number: str):
    try:
        sale = checkout_service.get_sale_by_receipt(receipt_number)
    except PosError as e:
        return jsonify(e.to_dict()), e.http_status

    return jsonify({"sale": sale.to_dict(include_lines=True)})
