# postpilot/routers/user.py
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from postpilot.clock import isoformat
from postpilot.db import crud, models
from postpilot.deps import CurrentUser, get_current_user, get_db
from postpilot.errors import api_error
from postpilot.routers.auth_linkedin import connection_status

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/user", tags=["user"])


class PreferencesIn(BaseModel):
    display_name: Optional[str] = None
    niche: Optional[str] = None
    onboarding_completed: Optional[bool] = None

class AIKeyIn(BaseModel):
    api_key: str = Field(..., alias="apiKey")


def preferences_to_dict(p: Optional[models.UserPreferences]) -> Dict[str, Any]:
    if p is None:
        return {
            "display_name": None,
            "niche": None,
            "onboarding_completed": False,
            "has_ai_key": False,
            "ai_key_last4": None,
        }
    return {
        "display_name": p.display_name,
        "niche": p.niche,
        "onboarding_completed": bool(p.onboarding_completed),
        "has_ai_key": bool(p.ai_gateway_key_encrypted),
        "ai_key_last4": p.ai_gateway_key_last4,
        "updated_at": isoformat(p.updated_at),
    }


@router.get("/social-status")
def social_status(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
    linkedin = connection_status(db, user.id)
    return {
        "linkedin": {
            "connected": linkedin["connected"],
            "expired": linkedin["expired"],
            "username": linkedin["email"],
            "name": linkedin["name"],
            "picture": linkedin["picture"],
        }
    }

@router.get("/preferences")
def get_preferences(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
    return {"preferences": preferences_to_dict(crud.get_preferences(db, user.id))}

@router.post("/preferences")
def save_preferences(
    body: PreferencesIn,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    data = body.model_dump(exclude_unset=True)
    if data.get("onboarding_completed") is None:
        data.pop("onboarding_completed", None)
    row = crud.upsert_preferences(db, user.id, data)
    return {"preferences": preferences_to_dict(row)}


@router.post("/ai-key")
def save_ai_key(body: AIKeyIn, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
    api_key = body.api_key.strip()
    if len(api_key) < 8:
        raise api_error(400, "API key looks too short")
    row = crud.set_ai_gateway_key(db, user.id, api_key)
    logger.info("Stored AI gateway key for user %s", user.id)
    return {"success": True, "last4": row.ai_gateway_key_last4}

@router.delete("/ai-key")
def delete_ai_key(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
    crud.clear_ai_gateway_key(db, user.id)
    return {"success": True}
