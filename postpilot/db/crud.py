import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from postpilot.clock import utcnow
from postpilot.db import models, token_crypto

logger = logging.getLogger(__name__)

WRITE_ATTEMPTS = 3

EDITABLE_DRAFT_FIELDS = ("content", "tone", "image_url", "scheduled_at", "status", "trend_tag", "trend_title")

ANALYTICS_COLUMNS = {
    "impressions": "analytics_impressions",
    "clicks": "analytics_clicks",
    "likes": "analytics_likes",
    "comments": "analytics_comments",
    "shares": "analytics_shares",
    "engagement": "analytics_engagement",
    "engagement_rate": "analytics_engagement_rate",
}


# --- drafts ---

def get_draft(db: Session, draft_id: str, user_id: str) -> Optional[models.Draft]:
    return (
        db.query(models.Draft)
        .filter(models.Draft.id == draft_id, models.Draft.user_id == user_id)
        .first()
    )

def list_drafts(db: Session, user_id: str) -> List[models.Draft]:
    return (
        db.query(models.Draft)
        .filter(models.Draft.user_id == user_id)
        .order_by(models.Draft.updated_at.desc())
        .all()
    )

def list_published_drafts(db: Session, user_id: str, limit: int = 50) -> List[models.Draft]:
    return (
        db.query(models.Draft)
        .filter(
            models.Draft.user_id == user_id,
            models.Draft.status == "published",
            models.Draft.linkedin_post_id.isnot(None),
        )
        .order_by(models.Draft.published_at.desc())
        .limit(limit)
        .all()
    )

def create_draft(db: Session, user_id: str, data: Dict[str, Any]) -> models.Draft:
    fields = {k: v for k, v in data.items() if k in EDITABLE_DRAFT_FIELDS}
    obj = models.Draft(user_id=user_id, **fields)
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj

def update_draft(db: Session, draft: models.Draft, changes: Dict[str, Any]) -> models.Draft:
    """Apply only the editor fields present in `changes`."""
    for key, value in changes.items():
        if key in EDITABLE_DRAFT_FIELDS:
            setattr(draft, key, value)
    db.add(draft)
    db.commit()
    db.refresh(draft)
    return draft

def delete_draft(db: Session, draft_id: str, user_id: str) -> bool:
    deleted = (
        db.query(models.Draft)
        .filter(models.Draft.id == draft_id, models.Draft.user_id == user_id)
        .delete()
    )
    db.commit()
    return bool(deleted)

def list_due_scheduled_drafts(db: Session, now: datetime, limit: int) -> List[models.Draft]:
    return (
        db.query(models.Draft)
        .filter(
            models.Draft.status == "scheduled",
            models.Draft.scheduled_at.isnot(None),
            models.Draft.scheduled_at <= now,
        )
        .order_by(models.Draft.scheduled_at.asc())
        .limit(limit)
        .all()
    )

def list_drafts_for_analytics(db: Session, limit: int) -> List[models.Draft]:
    return (
        db.query(models.Draft)
        .filter(models.Draft.status == "published", models.Draft.linkedin_post_id.isnot(None))
        .order_by(models.Draft.last_analytics_synced_at.asc().nulls_first())
        .limit(limit)
        .all()
    )

def _write_draft(db: Session, draft: models.Draft, updates: Dict[str, Any]) -> models.Draft:
    """Persist pipeline results through the version check.

    A concurrent editor commit bumps the version; in that case the row is
    re-read and the same updates are applied on top of the editor's change,
    up to ``WRITE_ATTEMPTS`` times.
    """
    draft_id, user_id = draft.id, draft.user_id
    row, attempt = draft, 1
    while True:
        for key, value in updates.items():
            setattr(row, key, value)
        try:
            db.commit()
            return row
        except StaleDataError:
            db.rollback()
            if attempt >= WRITE_ATTEMPTS:
                logger.error("Draft %s kept changing; giving up after %s attempts", draft_id, attempt)
                raise
            logger.warning("Draft %s changed during processing; reapplying result", draft_id)
        attempt += 1
        row = get_draft(db, draft_id, user_id)
        if row is None:
            logger.warning("Draft %s was deleted during processing", draft_id)
            return draft

def record_publish_success(db: Session, draft: models.Draft, post_id: str, now: Optional[datetime] = None) -> models.Draft:
    return _write_draft(db, draft, {
        "status": "published",
        "linkedin_post_id": post_id,
        "published_at": now or utcnow(),
        "linkedin_error": None,
    })

def record_publish_error(db: Session, draft: models.Draft, message: str, unschedule: bool = False) -> models.Draft:
    updates: Dict[str, Any] = {"linkedin_error": message}
    if unschedule:
        updates["status"] = "draft"
    return _write_draft(db, draft, updates)

def record_analytics_success(db: Session, draft: models.Draft, metrics: Dict[str, Any], now: datetime) -> models.Draft:
    updates: Dict[str, Any] = {
        "analytics_error": None,
        "analytics_backoff_until": None,
        "last_analytics_synced_at": now,
    }
    for name, column in ANALYTICS_COLUMNS.items():
        if metrics.get(name) is not None:
            updates[column] = metrics[name]
    return _write_draft(db, draft, updates)

def record_analytics_error(
    db: Session,
    draft: models.Draft,
    message: str,
    now: datetime,
    backoff_until: Optional[datetime] = None,
) -> models.Draft:
    return _write_draft(db, draft, {
        "analytics_error": message,
        "last_analytics_synced_at": now,
        "analytics_backoff_until": backoff_until,
    })


# --- preferences ---

def get_preferences(db: Session, user_id: str) -> Optional[models.UserPreferences]:
    return db.query(models.UserPreferences).filter(models.UserPreferences.user_id == user_id).first()

def upsert_preferences(db: Session, user_id: str, data: Dict[str, Any]) -> models.UserPreferences:
    row = get_preferences(db, user_id) or models.UserPreferences(user_id=user_id)
    for key in ("display_name", "niche", "onboarding_completed"):
        if key in data:
            setattr(row, key, data[key])
    db.add(row)
    db.commit()
    db.refresh(row)
    return row

def set_ai_gateway_key(db: Session, user_id: str, api_key: str) -> models.UserPreferences:
    row = get_preferences(db, user_id) or models.UserPreferences(user_id=user_id)
    row.ai_gateway_key_encrypted = token_crypto.encrypt_token(api_key)
    row.ai_gateway_key_last4 = api_key[-4:]
    row.ai_gateway_key_updated_at = utcnow()
    db.add(row)
    db.commit()
    db.refresh(row)
    return row

def clear_ai_gateway_key(db: Session, user_id: str) -> None:
    row = get_preferences(db, user_id)
    if not row:
        return
    row.ai_gateway_key_encrypted = None
    row.ai_gateway_key_last4 = None
    row.ai_gateway_key_updated_at = None
    db.add(row)
    db.commit()
