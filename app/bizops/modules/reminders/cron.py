"""
Scheduler entry points: /api/cron/<job>.

POST runs the sweep for every active organization (or ``?org=<slug>``). When CRON_SECRET is
set the caller must send ``Authorization: Bearer <secret>``. GET only reports that the job
exists.
"""
from __future__ import annotations

import hmac
import logging

from flask import Blueprint, current_app, request

from app.bizops.db import db_session
from app.bizops.errors import AuthError, NotFoundError
from app.bizops.tenancy import organization_by_slug

from .service import JOBS, run_job

logger = logging.getLogger(__name__)

bp = Blueprint("cron", __name__)


def _check_secret() -> None:
    secret = (current_app.config.get("CRON_SECRET") or "").strip()
    if not secret:
        return
    header = request.headers.get("Authorization") or ""
    token = header[7:].strip() if header.lower().startswith("bearer ") else ""
    if not token or not hmac.compare_digest(token, secret):
        logger.warning("Rejected cron call to %s from %s", request.path, request.remote_addr)
        raise AuthError("Unauthorized")


def _job_or_404(job: str) -> str:
    if job not in JOBS:
        raise NotFoundError(f"Unknown job: {job}")
    return job


@bp.get("/<job>")
def cron_status(job: str):
    return {"ok": True, "job": _job_or_404(job)}


@bp.post("/<job>")
def cron_run(job: str):
    _job_or_404(job)
    _check_secret()
    s = db_session()
    slug = (request.args.get("org") or "").strip() or None
    if slug:
        organization_by_slug(s, slug)
    results = run_job(s, job, org_slug=slug)
    return {
        "ok": True,
        "job": job,
        "results": [r.to_dict() for r in results],
        "success": sum(r.success for r in results),
        "errors": sum(r.errors for r in results),
        "skipped": sum(r.skipped for r in results),
    }
