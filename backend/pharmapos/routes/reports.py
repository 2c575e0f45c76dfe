from flask import Blueprint, jsonify, request

from pharmapos.decorators import require_auth, require_permission
from pharmapos.services import reporting_service


reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")


@reports_bp.get("/sales")
@require_auth
@require_permission("VIEW_REPORTS")
def sales_report():
    group_by = request.args.get("group_by", "day")
    start_date = request.args.get("start_date")
    end_date = request.args.get("end_date")

    try:
        report = reporting_service.sales_report(
            start_date=start_date,
            end_date=end_date,
            group_by=group_by,
        )
        return jsonify(report), 200
    except reporting_service.ReportError as exc:
        return jsonify(exc.to_dict()), exc.http_status


@reports_bp.get("/dashboard")
@require_auth
@require_permission("VIEW_REPORTS")
def dashboard():
    today_raw = request.args.get("date")
    try:
        today = reporting_service.parse_date_range(
            today_raw, today_raw, reporting_service.report_zone()
        )[0] if today_raw else None
        return jsonify(reporting_service.dashboard_summary(today=today)), 200
    except reporting_service.ReportError as exc:
        return jsonify(exc.to_dict()), exc.http_status
