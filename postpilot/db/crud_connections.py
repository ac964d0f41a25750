# postpilot/db/crud_connections.py
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from postpilot.clock import utcnow
from postpilot.db.models import LinkedInConnection
from postpilot.db import token_crypto


def get_connection(db: Session, user_id: str) -> Optional[LinkedInConnection]:
    return db.query(LinkedInConnection).filter(LinkedInConnection.user_id == user_id).first()

def upsert_connection(
    db: Session,
    user_id: str,
    linkedin_user_id: str,
    access_token: str,
    expires_in: int,
    refresh_token: Optional[str] = None,
    name: Optional[str] = None,
    email: Optional[str] = None,
    picture: Optional[str] = None,
) -> LinkedInConnection:
    """One row per user: a new authorization overwrites the previous one."""
    row = get_connection(db, user_id)
    if not row:
        row = LinkedInConnection(user_id=user_id)
    row.linkedin_user_id = linkedin_user_id
    row.access_token_encrypted = token_crypto.encrypt_token(access_token)
    row.refresh_token_encrypted = token_crypto.encrypt_token(refresh_token) if refresh_token else None
    row.expires_at = utcnow() + timedelta(seconds=int(expires_in))
    row.linkedin_name = name
    row.linkedin_email = email
    row.linkedin_picture = picture
    row.updated_at = utcnow()
    db.add(row)
    db.commit()
    db.refresh(row)
    return row

def delete_connection(db: Session, user_id: str) -> bool:
    deleted = db.query(LinkedInConnection).filter(LinkedInConnection.user_id == user_id).delete()
    db.commit()
    return bool(deleted)

def is_token_expired(conn: LinkedInConnection, now: Optional[datetime] = None) -> bool:
    return conn.expires_at is None or conn.expires_at < (now or utcnow())

def get_access_token(conn: LinkedInConnection) -> str:
    return token_crypto.decrypt_token(conn.access_token_encrypted)

def get_refresh_token(conn: LinkedInConnection) -> Optional[str]:
    if not conn.refresh_token_encrypted:
        return None
    return token_crypto.decrypt_token(conn.refresh_token_encrypted)

def update_access_token(
    db: Session,
    conn: LinkedInConnection,
    new_access_token: str,
    expires_in: int,
    new_refresh_token: Optional[str] = None,
) -> LinkedInConnection:
    conn.access_token_encrypted = token_crypto.encrypt_token(new_access_token)
    conn.expires_at = utcnow() + timedelta(seconds=int(expires_in))
    if new_refresh_token:
        conn.refresh_token_encrypted = token_crypto.encrypt_token(new_refresh_token)
    db.add(conn)
    db.commit()
    db.refresh(conn)
    return conn
