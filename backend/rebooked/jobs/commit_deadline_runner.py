from __future__ import annotations

from datetime import datetime

from flask import current_app

from rebooked.extensions import db
from rebooked.models import Order
from rebooked.services.errors import OrderFlowError
from rebooked.services.order_state_machine import OrderStatus, expire_order
from rebooked.services.settings_service import commit_deadline_job_enabled
from rebooked.utils.events import log_event
from rebooked.utils.job_runs import record_job_run
from rebooked.utils.observability import report_exception

JOB_NAME = "commit_deadline_sweep"


def _now():
    return datetime.utcnow()


def expired_orders_query(now: datetime | None = None):
    now = now or _now()
    return Order.query.filter(
        Order.status == OrderStatus.PAID,
        Order.commit_deadline.isnot(None),
        Order.commit_deadline < now,
        Order.refund_status.in_(("none", "pending")),
    )


def run_commit_deadline_sweep(*, limit: int = 200) -> dict:
    """Cancel and refund paid orders whose seller let the commit window lapse.

    Rules:
      - Only ``paid`` orders past ``commit_deadline`` are touched.
      - A refund that fails leaves the order ``paid`` with ``refund_status=pending``
        so the next run picks it up again.
      - ``refund_status=failed`` orders wait for an operator.
    """
    started_at = _now()
    if not commit_deadline_job_enabled():
        result = {
            "ok": False,
            "disabled": True,
            "processed": 0,
            "expired": 0,
            "failed": 0,
            "skipped": 0,
            "errors": 0,
            "ts": _now().isoformat(),
        }
        record_job_run(job_name=JOB_NAME, ok=False, started_at=started_at, error="disabled_by_flag", summary=result)
        return result

    processed = 0
    expired = 0
    failed = 0
    skipped = 0
    errors = 0

    rows = expired_orders_query(started_at).order_by(Order.commit_deadline.asc(), Order.id.asc()).limit(int(limit)).all()
    for order in rows:
        processed += 1
        try:
            outcome = expire_order(order)
        except OrderFlowError as exc:
            # status moved under us or no refund path; the order is surfaced elsewhere
            db.session.rollback()
            skipped += 1
            current_app.logger.warning(
                "commit_deadline_expire_skipped order_id=%s code=%s err=%s", order.id, exc.code, exc
            )
            continue
        except Exception as exc:
            db.session.rollback()
            errors += 1
            current_app.logger.exception("commit_deadline_expire_failed order_id=%s", order.id)
            report_exception(exc, job=JOB_NAME, order_id=order.id)
            log_event(
                "commit_deadline_expire_error",
                order_id=int(order.id),
                severity="ERROR",
                commit=True,
            )
            continue
        if outcome.success:
            expired += 1
        else:
            failed += 1

    result = {
        "ok": True,
        "processed": processed,
        "expired": expired,
        "failed": failed,
        "skipped": skipped,
        "errors": errors,
        "ts": _now().isoformat(),
    }
    record_job_run(
        job_name=JOB_NAME,
        ok=errors == 0,
        started_at=started_at,
        error=None if errors == 0 else f"errors={errors}",
        summary=result,
    )
    current_app.logger.info(
        "commit_deadline_sweep processed=%s expired=%s failed=%s skipped=%s errors=%s",
        processed,
        expired,
        failed,
        skipped,
        errors,
    )
    return result


def run_once(*, limit: int = 200) -> dict:
    from rebooked import create_app

    app = create_app()
    with app.app_context():
        return run_commit_deadline_sweep(limit=limit)
