import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx
from cryptography.fernet import InvalidToken
from sqlalchemy.orm import Session

from postpilot.clock import utcnow
from postpilot.db import crud_connections
from postpilot.db.models import LinkedInConnection
from postpilot.errors import LinkedInOAuthError
from postpilot.services import linkedin_api

logger = logging.getLogger(__name__)

NOT_CONNECTED_MESSAGE = "LinkedIn not connected. Please reconnect in Settings."
TOKEN_EXPIRED_MESSAGE = "LinkedIn token expired. Please reconnect in Settings."
REVOKED_MESSAGE = "LinkedIn access was revoked. Please reconnect your account in Settings."


@dataclass
class ResolvedConnection:
    connection: Optional[LinkedInConnection] = None
    access_token: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None  # not_connected | token_expired

    @property
    def ok(self) -> bool:
        return self.error is None


def _try_refresh(db: Session, conn: LinkedInConnection, client: Optional[httpx.Client]) -> Optional[str]:
    refresh_token = crud_connections.get_refresh_token(conn)
    if not refresh_token:
        return None
    try:
        resp = linkedin_api.exchange_refresh_for_token(refresh_token, client=client)
    except (LinkedInOAuthError, httpx.HTTPError) as e:
        logger.warning("Refreshing LinkedIn token for user %s failed: %s", conn.user_id, e)
        return None
    crud_connections.update_access_token(
        db,
        conn,
        resp["access_token"],
        resp.get("expires_in", 3600),
        new_refresh_token=resp.get("refresh_token"),
    )
    return resp["access_token"]


def resolve_connection(
    db: Session,
    user_id: str,
    now: Optional[datetime] = None,
    client: Optional[httpx.Client] = None,
) -> ResolvedConnection:
    """Load the user's connection and a usable access token.

    An expired token is refreshed once when a refresh token is on file.
    """
    conn = crud_connections.get_connection(db, user_id)
    if not conn:
        return ResolvedConnection(error=NOT_CONNECTED_MESSAGE, error_code="not_connected")

    try:
        if crud_connections.is_token_expired(conn, now or utcnow()):
            access_token = _try_refresh(db, conn, client)
            if not access_token:
                return ResolvedConnection(connection=conn, error=TOKEN_EXPIRED_MESSAGE, error_code="token_expired")
            return ResolvedConnection(connection=conn, access_token=access_token)
        return ResolvedConnection(connection=conn, access_token=crud_connections.get_access_token(conn))
    except InvalidToken:
        return ResolvedConnection(connection=conn, error=NOT_CONNECTED_MESSAGE, error_code="not_connected")
