# postpilot/routers/auth_linkedin.py
import html
import json
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse
from sqlalchemy.orm import Session

from postpilot.config import settings
from postpilot.clock import utcnow
from postpilot.db import crud_connections
from postpilot.deps import CurrentUser, get_current_user, get_db
from postpilot.errors import ConfigurationError, LinkedInOAuthError, OAuthStateError, api_error
from postpilot.services import linkedin_api
from postpilot.services.oauth_state import create_state, get_state_secret, verify_state

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/linkedin", tags=["linkedin-auth"])

CALLBACK_PATH = "/linkedin/callback"


def _redirect_uri(request: Request, origin: Optional[str] = None) -> str:
    if settings.linkedin_redirect_uri:
        return settings.linkedin_redirect_uri
    base = (origin or str(request.base_url)).rstrip("/")
    return f"{base}{CALLBACK_PATH}"

def _script_json(message: Dict[str, Any]) -> str:
    """JSON safe to inline in a <script> block."""
    return (
        json.dumps(message)
        .replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )

def _popup_page(title: str, message: Dict[str, Any], text: str) -> HTMLResponse:
    body = f"""<!DOCTYPE html>
<html>
  <head><title>{html.escape(title)}</title></head>
  <body>
    <script>
      window.opener && window.opener.postMessage({_script_json(message)}, '*');
      window.close();
    </script>
    <p>{html.escape(text)}</p>
  </body>
</html>"""
    return HTMLResponse(body)

def _popup_error(error: str) -> HTMLResponse:
    return _popup_page(
        "LinkedIn Connection Failed",
        {"type": "LINKEDIN_AUTH_ERROR", "error": error},
        f"Connection failed: {error}. You can close this window.",
    )


@router.get("/auth")
def start_auth(
    request: Request,
    origin: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
) -> Dict[str, str]:
    if not settings.linkedin_client_id:
        raise api_error(500, "LinkedIn client ID not configured")
    try:
        state = create_state(user.id, get_state_secret(), ttl=timedelta(seconds=settings.linkedin_state_ttl_seconds))
    except ConfigurationError as e:
        logger.error("Cannot start LinkedIn auth: %s", e)
        raise api_error(500, "LinkedIn OAuth is not configured")
    return {"authUrl": linkedin_api.auth_url(state, _redirect_uri(request, origin))}


@router.get("/callback")
def callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    db: Session = Depends(get_db),
) -> HTMLResponse:
    if error:
        logger.warning("LinkedIn OAuth error: %s %s", error, error_description)
        return _popup_error(error_description or error)

    if not code or not state:
        return _popup_error("Missing authorization code")

    try:
        payload = verify_state(state, get_state_secret())
    except OAuthStateError as e:
        logger.warning("Rejected LinkedIn OAuth state: %s", e)
        return _popup_error("Invalid state parameter")
    except ConfigurationError as e:
        logger.error("LinkedIn callback misconfigured: %s", e)
        return _popup_error("Server configuration error")

    if not settings.linkedin_client_id or not settings.linkedin_client_secret:
        return _popup_error("Server configuration error")

    try:
        token = linkedin_api.exchange_code_for_token(code, _redirect_uri(request))
        profile = linkedin_api.fetch_userinfo(token["access_token"])
        crud_connections.upsert_connection(
            db,
            user_id=payload.user_id,
            linkedin_user_id=profile["sub"],
            access_token=token["access_token"],
            expires_in=token.get("expires_in", 3600),
            refresh_token=token.get("refresh_token"),
            name=profile.get("name"),
            email=profile.get("email"),
            picture=profile.get("picture"),
        )
    except LinkedInOAuthError as e:
        return _popup_error(str(e))
    except ConfigurationError as e:
        logger.error("LinkedIn callback misconfigured: %s", e)
        return _popup_error("Server configuration error")
    except httpx.HTTPError as e:
        logger.warning("LinkedIn callback network error: %s", e)
        return _popup_error("Connection failed")
    except Exception:
        logger.exception("LinkedIn callback failed for user %s", payload.user_id)
        db.rollback()
        return _popup_error("Connection failed")

    logger.info("LinkedIn connected for user %s", payload.user_id)
    return _popup_page(
        "LinkedIn Connected!",
        {
            "type": "LINKEDIN_AUTH_SUCCESS",
            "data": {
                "name": profile.get("name") or "",
                "email": profile.get("email") or "",
                "picture": profile.get("picture") or "",
            },
        },
        "LinkedIn connected successfully! You can close this window.",
    )


def connection_status(db: Session, user_id: str) -> Dict[str, Any]:
    conn = crud_connections.get_connection(db, user_id)
    if not conn:
        return {"connected": False, "expired": False, "name": None, "email": None, "picture": None}
    expired = crud_connections.is_token_expired(conn, utcnow())
    return {
        "connected": not expired,
        "expired": expired,
        "name": conn.linkedin_name,
        "email": conn.linkedin_email,
        "picture": conn.linkedin_picture,
    }

@router.get("/status")
def status(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
    return connection_status(db, user.id)

@router.delete("/status")
def disconnect(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
    crud_connections.delete_connection(db, user.id)
    logger.info("LinkedIn disconnected for user %s", user.id)
    return {"success": True}
