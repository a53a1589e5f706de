from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from rebooked.extensions import db
from rebooked.models import JobRun, User
from rebooked.services.reconciliation_service import redrive_refund, redrive_settlement, stuck_orders, wallet_drift
from rebooked.services.settings_service import all_settings, set_setting, settings_cache
from rebooked.utils.jwt_utils import decode_token, get_bearer_token
from rebooked.utils.observability import get_request_id

recon_bp = Blueprint("recon_bp", __name__, url_prefix="/api/admin/reconcile")


def _current_user() -> User | None:
    token = get_bearer_token(request.headers.get("Authorization", ""))
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        return None
    try:
        uid = int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
    return db.session.get(User, uid)


def _admin_or_none() -> User | None:
    u = _current_user()
    if not u or (u.role or "").strip().lower() not in ("admin", "super_admin"):
        return None
    return u


def _admin_required():
    return jsonify({"ok": False, "error": "FORBIDDEN", "message": "Admin required", "status": 403, "trace_id": get_request_id()}), 403


@recon_bp.get("/stuck-orders")
def list_stuck_orders():
    if not _admin_or_none():
        return _admin_required()
    limit = request.args.get("limit", type=int) or 200
    return jsonify(stuck_orders(limit=max(1, min(limit, 1000)))), 200


@recon_bp.get("/wallet-drift")
def wallet_ledger_drift():
    if not _admin_or_none():
        return _admin_required()
    return jsonify(wallet_drift()), 200


@recon_bp.post("/orders/<int:order_id>/settlement")
def redrive_order_settlement(order_id: int):
    u = _admin_or_none()
    if not u:
        return _admin_required()
    return jsonify({"ok": True, "result": redrive_settlement(order_id, actor_id=int(u.id))}), 200


@recon_bp.post("/orders/<int:order_id>/refund")
def redrive_order_refund(order_id: int):
    u = _admin_or_none()
    if not u:
        return _admin_required()
    data = request.get_json(silent=True) or {}
    result = redrive_refund(order_id, actor_id=int(u.id), reason=str(data.get("reason") or "").strip())
    return jsonify({"ok": bool(result.get("success")), "result": result}), 200


@recon_bp.post("/commit-deadline-sweep")
def run_sweep():
    if not _admin_or_none():
        return _admin_required()
    from rebooked.jobs.commit_deadline_runner import run_commit_deadline_sweep

    data = request.get_json(silent=True) or {}
    limit = int(data.get("limit") or current_app.config.get("COMMIT_DEADLINE_SWEEP_LIMIT", 200))
    return jsonify(run_commit_deadline_sweep(limit=max(1, min(limit, 5000)))), 200


@recon_bp.get("/job-runs")
def job_runs():
    if not _admin_or_none():
        return _admin_required()
    rows = JobRun.query.order_by(JobRun.ran_at.desc()).limit(50).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200


@recon_bp.get("/settings")
def get_settings():
    if not _admin_or_none():
        return _admin_required()
    return jsonify({"ok": True, "settings": all_settings(), "cache": settings_cache().stats()}), 200


@recon_bp.put("/settings")
def put_settings():
    u = _admin_or_none()
    if not u:
        return _admin_required()
    data = request.get_json(silent=True) or {}
    for key, value in data.items():
        set_setting(str(key), value, actor_id=int(u.id))
    return jsonify({"ok": True, "settings": all_settings()}), 200
