import os
import time
from datetime import timedelta

import pytest
from cryptography.fernet import Fernet

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["FERNET_KEY"] = Fernet.generate_key().decode()
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret"
os.environ["LINKEDIN_STATE_SECRET"] = "test-state-secret"
os.environ["LINKEDIN_CLIENT_ID"] = "test-client-id"
os.environ["LINKEDIN_CLIENT_SECRET"] = "test-client-secret"
os.environ["LINKEDIN_REDIRECT_URI"] = ""
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["SCHEDULER_ENABLED"] = "false"

from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import sessionmaker

from postpilot.clock import utcnow
from postpilot.db import crud_connections, models
from postpilot.db.base import Base, make_engine
from postpilot.deps import get_db
from postpilot.main import app

USER_ID = "user-1"
MEMBER_ID = "member-abc"


@pytest.fixture
def db():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def client(db):
    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()


def make_jwt(user_id: str = USER_ID, **claims) -> str:
    payload = {
        "sub": user_id,
        "aud": "authenticated",
        "email": f"{user_id}@example.com",
        "exp": int(time.time()) + 3600,
    }
    payload.update(claims)
    return jwt.encode(payload, "test-jwt-secret", algorithm="HS256")


def auth_headers(user_id: str = USER_ID) -> dict:
    return {"Authorization": f"Bearer {make_jwt(user_id)}"}


def make_connection(db, user_id: str = USER_ID, expired: bool = False, refresh_token=None):
    conn = crud_connections.upsert_connection(
        db,
        user_id=user_id,
        linkedin_user_id=MEMBER_ID,
        access_token="access-token",
        expires_in=3600,
        refresh_token=refresh_token,
        name="Ada Lovelace",
        email="ada@example.com",
        picture="https://media.example.com/ada.png",
    )
    if expired:
        conn.expires_at = utcnow() - timedelta(minutes=1)
        db.commit()
    return conn


def make_draft(db, user_id: str = USER_ID, **fields) -> models.Draft:
    fields.setdefault("content", "Hello world")
    draft = models.Draft(user_id=user_id, **fields)
    db.add(draft)
    db.commit()
    db.refresh(draft)
    return draft
