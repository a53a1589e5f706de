from __future__ import annotations

import json
from datetime import datetime

from flask import current_app

from rebooked.extensions import db
from rebooked.models import JobRun


def record_job_run(
    *,
    job_name: str,
    ok: bool,
    started_at: datetime,
    error: str | None = None,
    summary: dict | None = None,
) -> JobRun | None:
    duration_ms: int | None = None
    try:
        duration_ms = max(0, int((datetime.utcnow() - started_at).total_seconds() * 1000))
    except (TypeError, ValueError):
        duration_ms = None
    try:
        row = JobRun(
            job_name=(job_name or "unknown").strip()[:64],
            ran_at=datetime.utcnow(),
            ok=bool(ok),
            duration_ms=duration_ms,
            summary_json=json.dumps(summary or {}, default=str),
            error=(error or "")[:1000] or None,
        )
        db.session.add(row)
        db.session.commit()
        return row
    except Exception:
        db.session.rollback()
        current_app.logger.exception("job_run_record_failed job_name=%s", job_name)
        return None
