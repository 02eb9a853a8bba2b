"""Admin withdrawals APIs (cross-user listing + CSV export)."""

from flask import Blueprint, Response, jsonify, request

from models_withdrawals import WITHDRAWAL_STATUS_PENDING, WITHDRAWAL_STATUS_VERIFIED, Withdrawal
from push_api import _admin_ok


admin_withdrawals = Blueprint("admin_withdrawals", __name__)


def _require_admin():
    if not _admin_ok(request):
        return jsonify({"success": False, "code": "unauthorized", "message": "Admin access required"}), 403
    return None


def _filtered_query():
    status = (request.args.get("status") or "").strip().lower()
    uid = (request.args.get("uid") or "").strip()

    q = Withdrawal.query
    if status in {WITHDRAWAL_STATUS_PENDING, WITHDRAWAL_STATUS_VERIFIED}:
        q = q.filter(Withdrawal.status == status)
    if uid:
        q = q.filter(Withdrawal.user_uid == uid)
    return q.order_by(Withdrawal.created_at.desc(), Withdrawal.id.desc())


@admin_withdrawals.get("/api/admin/withdrawals")
def api_admin_list_withdrawals():
    err = _require_admin()
    if err:
        return err

    rows = _filtered_query().limit(500).all()
    return jsonify({"success": True, "withdrawals": [w.to_dict() for w in rows]})


@admin_withdrawals.get("/api/admin/withdrawals/export.csv")
def api_admin_export_csv():
    err = _require_admin()
    if err:
        return err

    rows = _filtered_query().limit(5000).all()

    lines = ["id,user_uid,amount,coins,exchange_rate,status,created_at,verified_at,verified_by"]
    for w in rows:
        ca_s = w.created_at.isoformat() if w.created_at else ""
        va_s = w.verified_at.isoformat() if w.verified_at else ""
        lines.append(
            f"{w.id},{w.user_uid},{w.amount:.2f},{w.coins},{w.exchange_rate},{w.status},{ca_s},{va_s},{w.verified_by or ''}"
        )
    return Response("\n".join(lines), mimetype="text/csv")
