import hmac
import logging
from typing import Generator, Optional

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from postpilot.config import settings
from postpilot.db.base import SessionLocal, engine, Base
from postpilot.db import models  # noqa: F401  (registers tables on Base)
from postpilot.errors import api_error

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)


class CurrentUser(BaseModel):
    id: str
    email: Optional[str] = None


def init_db() -> None:
    Base.metadata.create_all(bind=engine)

def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> CurrentUser:
    """Resolve the caller from a Supabase-issued session JWT."""
    if credentials is None or not settings.supabase_jwt_secret:
        raise api_error(401, "Unauthorized")
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.supabase_jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
        )
    except JWTError as e:
        logger.info("Rejected session token: %s", e)
        raise api_error(401, "Unauthorized")
    user_id = payload.get("sub")
    if not isinstance(user_id, str) or not user_id:
        raise api_error(401, "Unauthorized")
    return CurrentUser(id=user_id, email=payload.get("email"))


def require_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    if not settings.cron_secret or not authorization:
        raise api_error(401, "Unauthorized")
    expected = f"Bearer {settings.cron_secret}"
    if not hmac.compare_digest(authorization.encode("utf-8"), expected.encode("utf-8")):
        raise api_error(401, "Unauthorized")
