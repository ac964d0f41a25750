import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, String, Text

from postpilot.clock import utcnow
from postpilot.db.base import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class LinkedInConnection(Base):
    __tablename__ = "linkedin_connections"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), unique=True, nullable=False, index=True)
    linkedin_user_id = Column(String(128), nullable=False)
    access_token_encrypted = Column(Text, nullable=False)
    refresh_token_encrypted = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=False)
    linkedin_name = Column(String(256), nullable=True)
    linkedin_email = Column(String(320), nullable=True)
    linkedin_picture = Column(String(2048), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Draft(Base):
    __tablename__ = "drafts"
    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    content = Column(Text, nullable=False, default="")
    tone = Column(String(64), default="professional")
    image_url = Column(String(2048), nullable=True)
    scheduled_at = Column(DateTime, nullable=True)
    status = Column(String(16), nullable=False, default="draft")  # draft | scheduled | published
    trend_tag = Column(String(256), nullable=True)
    trend_title = Column(String(512), nullable=True)

    # publish outcome
    linkedin_post_id = Column(String(256), nullable=True)
    published_at = Column(DateTime, nullable=True)
    linkedin_error = Column(Text, nullable=True)

    # analytics snapshot
    analytics_impressions = Column(Integer, nullable=True)
    analytics_clicks = Column(Integer, nullable=True)
    analytics_likes = Column(Integer, nullable=True)
    analytics_comments = Column(Integer, nullable=True)
    analytics_shares = Column(Integer, nullable=True)
    analytics_engagement = Column(Integer, nullable=True)
    analytics_engagement_rate = Column(Float, nullable=True)
    last_analytics_synced_at = Column(DateTime, nullable=True)
    analytics_error = Column(Text, nullable=True)
    analytics_backoff_until = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index("ix_drafts_status_scheduled_at", "status", "scheduled_at"),
    )


class UserPreferences(Base):
    __tablename__ = "user_preferences"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), unique=True, nullable=False, index=True)
    display_name = Column(String(256), nullable=True)
    niche = Column(String(256), nullable=True)
    onboarding_completed = Column(Boolean, nullable=False, default=False)
    ai_gateway_key_encrypted = Column(Text, nullable=True)
    ai_gateway_key_last4 = Column(String(4), nullable=True)
    ai_gateway_key_updated_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
