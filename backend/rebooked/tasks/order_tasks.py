from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload, default=str))


def _retry_countdown(retries: int) -> int:
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


@shared_task(
    bind=True,
    name="rebooked.tasks.order_tasks.run_commit_deadline_sweep",
    max_retries=3,
)
def run_commit_deadline_sweep(self, *, limit: int | None = None, trace_id: str = ""):
    started = time.perf_counter()
    limit = int(limit or current_app.config.get("COMMIT_DEADLINE_SWEEP_LIMIT", 200))
    from rebooked.jobs.commit_deadline_runner import run_commit_deadline_sweep as _sweep

    try:
        result = _sweep(limit=max(1, min(limit, 5000)))
        _task_log(
            "run_commit_deadline_sweep",
            status="ok" if bool(result.get("ok")) else "skipped",
            started_at=started,
            trace_id=trace_id,
            limit=limit,
            expired=result.get("expired", 0),
            failed=result.get("failed", 0),
        )
        return result
    except Exception as exc:
        # whole-run crash only; per-order refunds are guarded by their own claims
        if int(self.request.retries or 0) < int(self.max_retries or 0):
            countdown = _retry_countdown(int(self.request.retries or 0))
            _task_log(
                "run_commit_deadline_sweep",
                status="retrying",
                started_at=started,
                trace_id=trace_id,
                detail=str(exc),
                countdown=countdown,
            )
            raise self.retry(exc=exc, countdown=countdown)
        _task_log(
            "run_commit_deadline_sweep",
            status="failed",
            started_at=started,
            trace_id=trace_id,
            detail=str(exc),
        )
        raise
