# postpilot/routers/drafts.py
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from postpilot.clock import isoformat, to_naive_utc, utcnow
from postpilot.db import crud, models
from postpilot.deps import CurrentUser, get_current_user, get_db
from postpilot.errors import api_error

router = APIRouter(prefix="/drafts", tags=["drafts"])

# Fields a published post no longer accepts
LOCKED_AFTER_PUBLISH = ("content", "image_url", "scheduled_at", "status")


class DraftIn(BaseModel):
    content: str = ""
    tone: Optional[str] = "professional"
    image_url: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    status: Literal["draft", "scheduled"] = "draft"
    trend_tag: Optional[str] = None
    trend_title: Optional[str] = None

class DraftPatch(BaseModel):
    content: Optional[str] = None
    tone: Optional[str] = None
    image_url: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    status: Optional[Literal["draft", "scheduled"]] = None
    trend_tag: Optional[str] = None
    trend_title: Optional[str] = None
    version: Optional[int] = None


def draft_to_dict(d: models.Draft) -> Dict[str, Any]:
    return {
        "id": d.id,
        "user_id": d.user_id,
        "content": d.content,
        "tone": d.tone,
        "image_url": d.image_url,
        "scheduled_at": isoformat(d.scheduled_at),
        "status": d.status,
        "trend_tag": d.trend_tag,
        "trend_title": d.trend_title,
        "linkedin_post_id": d.linkedin_post_id,
        "published_at": isoformat(d.published_at),
        "linkedin_error": d.linkedin_error,
        "analytics_impressions": d.analytics_impressions,
        "analytics_clicks": d.analytics_clicks,
        "analytics_likes": d.analytics_likes,
        "analytics_comments": d.analytics_comments,
        "analytics_shares": d.analytics_shares,
        "analytics_engagement": d.analytics_engagement,
        "analytics_engagement_rate": d.analytics_engagement_rate,
        "last_analytics_synced_at": isoformat(d.last_analytics_synced_at),
        "analytics_error": d.analytics_error,
        "analytics_backoff_until": isoformat(d.analytics_backoff_until),
        "version": d.version,
        "created_at": isoformat(d.created_at),
        "updated_at": isoformat(d.updated_at),
    }

def ensure_future_schedule(scheduled_at: Optional[datetime]) -> None:
    if scheduled_at is None:
        raise api_error(400, "A scheduled draft needs a scheduled_at time")
    if scheduled_at <= utcnow():
        raise api_error(400, "Scheduled time must be in the future")


@router.get("")
def list_drafts(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, List[Dict[str, Any]]]:
    return {"drafts": [draft_to_dict(d) for d in crud.list_drafts(db, user.id)]}

@router.post("")
def create_draft(body: DraftIn, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
    data = body.model_dump()
    data["scheduled_at"] = to_naive_utc(body.scheduled_at)
    data["tone"] = body.tone or "professional"
    if body.status == "scheduled":
        ensure_future_schedule(data["scheduled_at"])
    draft = crud.create_draft(db, user.id, data)
    return {"draft": draft_to_dict(draft)}

@router.get("/{draft_id}")
def get_draft(draft_id: str, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
    draft = crud.get_draft(db, draft_id, user.id)
    if not draft:
        raise api_error(404, "Draft not found")
    return {"draft": draft_to_dict(draft)}

@router.patch("/{draft_id}")
def update_draft(
    draft_id: str,
    body: DraftPatch,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    draft = crud.get_draft(db, draft_id, user.id)
    if not draft:
        raise api_error(404, "Draft not found")

    changes = body.model_dump(exclude_unset=True)
    expected_version = changes.pop("version", None)
    for key in ("content", "status"):
        if key in changes and changes[key] is None:
            del changes[key]
    if expected_version is not None and expected_version != draft.version:
        raise api_error(409, "Draft was modified elsewhere. Reload and try again.", version=draft.version)
    if draft.status == "published" and any(k in changes for k in LOCKED_AFTER_PUBLISH):
        raise api_error(409, "Published drafts cannot be edited.")

    if "scheduled_at" in changes:
        changes["scheduled_at"] = to_naive_utc(changes["scheduled_at"])
    if "status" in changes or "scheduled_at" in changes:
        status = changes.get("status", draft.status)
        if status == "scheduled":
            ensure_future_schedule(changes.get("scheduled_at", draft.scheduled_at))

    try:
        draft = crud.update_draft(db, draft, changes)
    except StaleDataError:
        db.rollback()
        raise api_error(409, "Draft was modified elsewhere. Reload and try again.")
    return {"draft": draft_to_dict(draft)}

@router.delete("/{draft_id}")
def delete_draft(draft_id: str, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
    if not crud.delete_draft(db, draft_id, user.id):
        raise api_error(404, "Draft not found")
    return {"success": True}
