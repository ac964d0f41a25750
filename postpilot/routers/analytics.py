# postpilot/routers/analytics.py
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from postpilot.clock import isoformat, utcnow
from postpilot.db import crud, models
from postpilot.deps import CurrentUser, get_current_user, get_db
from postpilot.errors import api_error
from postpilot.services.analytics import PostAnalytics
from postpilot.services.connections import REVOKED_MESSAGE
from postpilot.services.scheduler import sync_draft_analytics

router = APIRouter(prefix="/analytics", tags=["analytics"])

# error_code -> (status, needsReconnect)
ERROR_STATUS = {
    "not_connected": (400, True),
    "token_expired": (401, True),
    "revoked": (401, True),
    "rate_limited": (429, False),
}


class RefreshIn(BaseModel):
    draft_id: str = Field(..., alias="draftId")


def analytics_to_camel(a: PostAnalytics) -> Dict[str, Any]:
    return {
        "impressions": a.impressions,
        "clicks": a.clicks,
        "likes": a.likes,
        "comments": a.comments,
        "shares": a.shares,
        "engagement": a.engagement,
        "engagementRate": a.engagement_rate,
    }

def stored_analytics(d: models.Draft) -> Dict[str, Any]:
    return {
        "draftId": d.id,
        "postId": d.linkedin_post_id,
        "content": d.content,
        "publishedAt": isoformat(d.published_at),
        "impressions": d.analytics_impressions,
        "clicks": d.analytics_clicks,
        "likes": d.analytics_likes,
        "comments": d.analytics_comments,
        "shares": d.analytics_shares,
        "engagement": d.analytics_engagement,
        "engagementRate": d.analytics_engagement_rate,
        "lastSyncedAt": isoformat(d.last_analytics_synced_at),
        "error": d.analytics_error,
    }


@router.post("/refresh")
def refresh(body: RefreshIn, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
    draft = crud.get_draft(db, body.draft_id, user.id)
    if not draft:
        raise api_error(404, "Draft not found")
    if not draft.linkedin_post_id:
        raise api_error(400, "Draft has not been published to LinkedIn")

    now = utcnow()
    if draft.analytics_backoff_until and draft.analytics_backoff_until > now:
        raise api_error(
            429,
            "LinkedIn analytics temporarily unavailable. Try again later.",
            retryAfter=isoformat(draft.analytics_backoff_until),
        )

    outcome = sync_draft_analytics(db, draft, now)
    if outcome.status != "synced":
        status, reconnect = ERROR_STATUS.get(outcome.error_code, (400, False))
        message = REVOKED_MESSAGE if outcome.error_code == "revoked" else outcome.error
        extra = {"needsReconnect": True} if reconnect else {}
        raise api_error(status, message, **extra)

    return {"success": True, "analytics": analytics_to_camel(outcome.analytics)}


@router.get("/posts")
def posts(
    limit: Optional[int] = 50,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, List[Dict[str, Any]]]:
    drafts = crud.list_published_drafts(db, user.id, limit=max(1, min(limit or 50, 200)))
    return {"posts": [stored_analytics(d) for d in drafts]}
