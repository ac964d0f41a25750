"""Batch sweeps over persisted drafts, and an optional in-process timer for them.

Both sweeps are normally triggered by an external cron hitting ``/cron/*``.
Each draft is handled independently: its outcome is committed before the next
one starts, and a failure on one draft never aborts the sweep.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import httpx
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import ObjectDeletedError
from sqlalchemy.orm import Session

from postpilot.clock import utcnow
from postpilot.config import settings
from postpilot.db import crud, crud_connections, models
from postpilot.db.base import SessionLocal
from postpilot.services.analytics import PostAnalytics, fetch_post_analytics, normalize_post_urn
from postpilot.services.connections import resolve_connection
from postpilot.services.publish import publish_post

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 25
MIN_SYNC_INTERVAL_MINUTES = 60
CONNECTION_ERROR_BACKOFF = timedelta(hours=6)
CONTENT_ERROR_CODES = ("content_required", "content_too_long")


@dataclass
class DraftOutcome:
    status: str  # published | synced | skipped | failed
    error: Optional[str] = None
    error_code: Optional[str] = None
    analytics: Optional[PostAnalytics] = None


class UnrecordedPublish(Exception):
    """LinkedIn accepted the post but the draft row could not be updated."""

    def __init__(self, post_id: str):
        super().__init__(post_id)
        self.post_id = post_id


def publish_draft(db: Session, draft: models.Draft, now: datetime, client: Optional[httpx.Client] = None) -> DraftOutcome:
    if not (draft.content or "").strip():
        crud.record_publish_error(db, draft, "Content is required.", unschedule=True)
        return DraftOutcome("failed", "Content is required.", "content_required")

    resolved = resolve_connection(db, draft.user_id, now=now, client=client)
    if not resolved.ok:
        crud.record_publish_error(db, draft, resolved.error)
        return DraftOutcome("failed", resolved.error, resolved.error_code)

    result = publish_post(
        resolved.access_token,
        resolved.connection.linkedin_user_id,
        draft.content,
        image_url=draft.image_url,
        client=client,
    )
    if not result.ok:
        crud.record_publish_error(db, draft, result.error, unschedule=result.error_code in CONTENT_ERROR_CODES)
        if result.revoked:
            crud_connections.delete_connection(db, draft.user_id)
        return DraftOutcome("failed", result.error, result.error_code)

    try:
        crud.record_publish_success(db, draft, result.post_id, now=now)
    except SQLAlchemyError as e:
        raise UnrecordedPublish(result.post_id) from e
    return DraftOutcome("published")


def sync_draft_analytics(db: Session, draft: models.Draft, now: datetime, client: Optional[httpx.Client] = None) -> DraftOutcome:
    resolved = resolve_connection(db, draft.user_id, now=now, client=client)
    if not resolved.ok:
        crud.record_analytics_error(db, draft, resolved.error, now, backoff_until=now + CONNECTION_ERROR_BACKOFF)
        return DraftOutcome("failed", resolved.error, resolved.error_code)

    result = fetch_post_analytics(
        resolved.access_token,
        normalize_post_urn(draft.linkedin_post_id),
        client=client,
        now=now,
    )
    if not result.ok:
        message = result.error or "LinkedIn analytics unavailable."
        crud.record_analytics_error(db, draft, message, now, backoff_until=result.backoff_until)
        if result.revoked:
            crud_connections.delete_connection(db, draft.user_id)
        return DraftOutcome("failed", message, result.error_code)

    crud.record_analytics_success(db, draft, result.analytics.as_dict(), now)
    return DraftOutcome("synced", analytics=result.analytics)


def analytics_skip_reason(draft: models.Draft, now: datetime) -> Optional[str]:
    if not draft.linkedin_post_id:
        return "no post id"
    if draft.analytics_backoff_until and draft.analytics_backoff_until > now:
        return "backoff"
    cutoff = now - timedelta(minutes=MIN_SYNC_INTERVAL_MINUTES)
    if draft.last_analytics_synced_at and draft.last_analytics_synced_at > cutoff:
        return "recently synced"
    return None


def _run_isolated(db: Session, draft: models.Draft, label: str, step: Callable[[], DraftOutcome],
                  on_crash: Callable[[Exception], Optional[DraftOutcome]]) -> DraftOutcome:
    draft_id = inspect(draft).identity[0]
    try:
        return step()
    except Exception as exc:
        logger.exception("%s failed for draft %s", label, draft_id)
        db.rollback()
        try:
            outcome = on_crash(exc)
        except SQLAlchemyError:
            logger.exception("Could not record %s failure for draft %s", label, draft_id)
            db.rollback()
            outcome = None
        return outcome or DraftOutcome("failed", "Unexpected error", "unexpected")


def _publish_crashed(db: Session, draft: models.Draft, now: datetime, exc: Exception) -> Optional[DraftOutcome]:
    if isinstance(exc, UnrecordedPublish):
        # already live on LinkedIn; must not be picked up again
        crud.record_publish_success(db, draft, exc.post_id, now=now)
        return DraftOutcome("published")
    crud.record_publish_error(db, draft, "Publishing failed unexpectedly. It will be retried.")
    return None


def _analytics_crashed(db: Session, draft: models.Draft, now: datetime) -> None:
    crud.record_analytics_error(db, draft, "LinkedIn analytics unavailable.", now)


def run_publish_sweep(db: Session, now: Optional[datetime] = None, client: Optional[httpx.Client] = None) -> Dict[str, Any]:
    now = now or utcnow()
    drafts = crud.list_due_scheduled_drafts(db, now, MAX_BATCH_SIZE)
    processed = published = failed = 0

    for draft in drafts:
        processed += 1
        outcome = _run_isolated(
            db, draft, "Publish",
            lambda: publish_draft(db, draft, now, client),
            lambda exc: _publish_crashed(db, draft, now, exc),
        )
        if outcome.status == "published":
            published += 1
        else:
            failed += 1

    logger.info("Publish sweep: processed=%s published=%s failed=%s", processed, published, failed)
    return {"success": True, "processed": processed, "published": published, "failed": failed}


def run_analytics_sweep(db: Session, now: Optional[datetime] = None, client: Optional[httpx.Client] = None) -> Dict[str, Any]:
    now = now or utcnow()
    drafts = crud.list_drafts_for_analytics(db, MAX_BATCH_SIZE)
    processed = synced = skipped = failed = 0

    for draft in drafts:
        processed += 1
        try:
            reason = analytics_skip_reason(draft, now)
        except ObjectDeletedError:
            reason = "deleted"
        if reason:
            logger.debug("Skipping analytics for draft %s: %s", inspect(draft).identity[0], reason)
            skipped += 1
            continue
        outcome = _run_isolated(
            db, draft, "Analytics sync",
            lambda: sync_draft_analytics(db, draft, now, client),
            lambda exc: _analytics_crashed(db, draft, now),
        )
        if outcome.status == "synced":
            synced += 1
        else:
            failed += 1

    logger.info(
        "Analytics sweep: processed=%s synced=%s skipped=%s failed=%s", processed, synced, skipped, failed
    )
    return {"success": True, "processed": processed, "synced": synced, "skipped": skipped, "failed": failed}


# --- in-process timer ---

scheduler: Optional[BackgroundScheduler] = None


def _run_job(sweep: Callable[[Session], Dict[str, Any]]) -> Dict[str, Any]:
    # each job run gets its own session
    db = SessionLocal()
    try:
        return sweep(db)
    finally:
        db.close()

def run_publish_job() -> Dict[str, Any]:
    return _run_job(run_publish_sweep)

def run_analytics_job() -> Dict[str, Any]:
    return _run_job(run_analytics_sweep)


def start_scheduler(publish_cron: Optional[str] = None, analytics_cron: Optional[str] = None) -> bool:
    """Start the background timer; returns False if it is already running."""
    global scheduler
    if scheduler and scheduler.running:
        return False

    publish_cron = publish_cron or settings.publish_sweep_cron
    analytics_cron = analytics_cron or settings.analytics_sweep_cron
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(run_publish_job, CronTrigger.from_crontab(publish_cron, timezone="UTC"),
                      id="publish_sweep", replace_existing=True, max_instances=1, coalesce=True)
    scheduler.add_job(run_analytics_job, CronTrigger.from_crontab(analytics_cron, timezone="UTC"),
                      id="analytics_sweep", replace_existing=True, max_instances=1, coalesce=True)
    scheduler.start()
    logger.info("Sweep scheduler started (publish=%r analytics=%r)", publish_cron, analytics_cron)
    return True

def stop_scheduler() -> bool:
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Sweep scheduler stopped")
        return True
    return False

def scheduler_status() -> Dict[str, Any]:
    running = bool(scheduler and scheduler.running)
    jobs = []
    if running:
        jobs = [
            {"id": job.id, "next_run_at": job.next_run_time.isoformat() if job.next_run_time else None}
            for job in scheduler.get_jobs()
        ]
    return {"running": running, "jobs": jobs}
