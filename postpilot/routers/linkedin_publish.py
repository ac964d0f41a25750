# postpilot/routers/linkedin_publish.py
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from postpilot.clock import to_naive_utc, utcnow
from postpilot.db import crud, crud_connections
from postpilot.deps import CurrentUser, get_current_user, get_db
from postpilot.errors import api_error
from postpilot.routers.drafts import draft_to_dict, ensure_future_schedule
from postpilot.services.connections import REVOKED_MESSAGE, resolve_connection
from postpilot.services.publish import publish_post

logger = logging.getLogger(__name__)

router = APIRouter(tags=["linkedin"])


class PublishIn(BaseModel):
    draft_id: Optional[str] = Field(None, alias="draftId")
    content: Optional[str] = None
    image_url: Optional[str] = Field(None, alias="imageUrl")

class PublishOrScheduleIn(PublishIn):
    schedule_date: Optional[datetime] = Field(None, alias="scheduleDate")


def _publish_now(db: Session, user_id: str, body: PublishIn) -> Dict[str, Any]:
    content = body.content or ""
    if not content.strip():
        raise api_error(400, "Content is required")

    draft = None
    if body.draft_id:
        draft = crud.get_draft(db, body.draft_id, user_id)
        if not draft:
            raise api_error(404, "Draft not found")
        if draft.status == "published":
            raise api_error(409, "Draft is already published")

    now = utcnow()
    resolved = resolve_connection(db, user_id, now=now)
    if not resolved.ok:
        status = 401 if resolved.error_code == "token_expired" else 400
        raise api_error(status, resolved.error, needsReconnect=True)

    result = publish_post(
        resolved.access_token,
        resolved.connection.linkedin_user_id,
        content,
        image_url=body.image_url,
    )
    if not result.ok:
        if draft is not None:
            crud.record_publish_error(db, draft, result.error)
        if result.revoked:
            crud_connections.delete_connection(db, user_id)
            raise api_error(401, REVOKED_MESSAGE, needsReconnect=True)
        raise api_error(400, result.error)

    if draft is not None:
        crud.record_publish_success(db, draft, result.post_id, now=now)
    logger.info("Published post %s for user %s", result.post_id, user_id)
    return {"success": True, "postId": result.post_id, "postUrl": result.post_url}


@router.post("/linkedin/post")
def publish(body: PublishIn, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
    return _publish_now(db, user.id, body)


@router.post("/publish")
def publish_or_schedule(
    body: PublishOrScheduleIn,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Publish immediately, or schedule the draft when ``scheduleDate`` is given."""
    if body.schedule_date is None:
        return _publish_now(db, user.id, body)

    if not body.draft_id:
        raise api_error(400, "draftId is required to schedule a post")
    scheduled_at = to_naive_utc(body.schedule_date)
    ensure_future_schedule(scheduled_at)

    draft = crud.get_draft(db, body.draft_id, user.id)
    if not draft:
        raise api_error(404, "Draft not found")
    if draft.status == "published":
        raise api_error(409, "Draft is already published")

    resolved = resolve_connection(db, user.id)
    if not resolved.ok:
        status = 401 if resolved.error_code == "token_expired" else 400
        raise api_error(status, resolved.error, needsReconnect=True)

    changes: Dict[str, Any] = {"status": "scheduled", "scheduled_at": scheduled_at}
    if body.content is not None:
        changes["content"] = body.content
    if body.image_url is not None:
        changes["image_url"] = body.image_url
    draft = crud.update_draft(db, draft, changes)
    logger.info("Scheduled draft %s for %s", draft.id, scheduled_at)
    return {"success": True, "scheduled": True, "draft": draft_to_dict(draft)}
