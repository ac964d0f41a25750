import json
from datetime import timedelta

import httpx
import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from postpilot.clock import utcnow
from postpilot.db import crud, crud_connections, models
from postpilot.services import scheduler
from postpilot.services.connections import NOT_CONNECTED_MESSAGE, TOKEN_EXPIRED_MESSAGE
from postpilot.services.publish import PublishResult

from conftest import USER_ID, make_connection, make_draft


class FakeLinkedIn:
    """MockTransport handler that records every request it sees."""

    def __init__(self, post_status=201, analytics=None, analytics_status=200, token_status=200):
        self.requests = []
        self.post_status = post_status
        self.analytics = analytics if analytics is not None else {"likesSummary": {"totalCount": 3}, "impressionCount": 30}
        self.analytics_status = analytics_status
        self.token_status = token_status
        self.posted = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/v2/posts":
            if self.post_status >= 400:
                return httpx.Response(self.post_status, json={"serviceErrorCode": 65601, "message": "revoked"})
            self.posted += 1
            return httpx.Response(201, headers={"x-restli-id": f"urn:li:share:{self.posted}"})
        if path.startswith("/v2/socialActions/"):
            return httpx.Response(self.analytics_status, json=self.analytics)
        if path == "/oauth/v2/accessToken":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "fresh-token", "expires_in": 5184000})
        return httpx.Response(404)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))


# --- publish sweep ---

def test_only_due_drafts_are_processed(db):
    make_connection(db)
    now = utcnow()
    due = [make_draft(db, status="scheduled", scheduled_at=now - timedelta(minutes=m)) for m in (5, 10)]
    later = make_draft(db, status="scheduled", scheduled_at=now + timedelta(hours=1))
    fake = FakeLinkedIn()

    summary = scheduler.run_publish_sweep(db, now=now, client=fake.client())

    assert summary == {"success": True, "processed": 2, "published": 2, "failed": 0}
    for d in due:
        db.refresh(d)
        assert d.status == "published"
    db.refresh(later)
    assert later.status == "scheduled"


def test_scheduled_draft_end_to_end(db):
    make_connection(db)
    now = utcnow()
    draft = make_draft(db, content="Hello world", status="scheduled", scheduled_at=now - timedelta(hours=1))
    fake = FakeLinkedIn()

    scheduler.run_publish_sweep(db, now=now, client=fake.client())

    db.refresh(draft)
    assert draft.status == "published"
    assert draft.linkedin_post_id == "urn:li:share:1"
    assert draft.linkedin_error is None
    assert draft.published_at == now
    body = json.loads(fake.requests[-1].content)
    assert body["commentary"] == "Hello world"
    assert body["author"] == "urn:li:person:member-abc"


def test_drafts_and_published_rows_are_ignored(db):
    make_connection(db)
    now = utcnow()
    make_draft(db, status="draft", scheduled_at=now - timedelta(hours=1))
    make_draft(db, status="published", linkedin_post_id="urn:li:share:9", scheduled_at=now - timedelta(hours=1))

    summary = scheduler.run_publish_sweep(db, now=now, client=FakeLinkedIn().client())
    assert summary["processed"] == 0


def test_missing_connection_keeps_draft_scheduled(db):
    now = utcnow()
    draft = make_draft(db, status="scheduled", scheduled_at=now - timedelta(minutes=1))

    summary = scheduler.run_publish_sweep(db, now=now, client=FakeLinkedIn().client())

    assert summary["failed"] == 1
    db.refresh(draft)
    assert draft.status == "scheduled"
    assert draft.linkedin_error == NOT_CONNECTED_MESSAGE


def test_blank_content_is_unscheduled(db):
    make_connection(db)
    now = utcnow()
    draft = make_draft(db, content="   ", status="scheduled", scheduled_at=now - timedelta(minutes=1))
    fake = FakeLinkedIn()

    scheduler.run_publish_sweep(db, now=now, client=fake.client())

    db.refresh(draft)
    assert draft.status == "draft"
    assert draft.linkedin_error == "Content is required."
    assert fake.requests == []


def test_overlong_content_is_unscheduled(db):
    make_connection(db)
    now = utcnow()
    draft = make_draft(db, content="x" * 3001, status="scheduled", scheduled_at=now - timedelta(minutes=1))

    scheduler.run_publish_sweep(db, now=now, client=FakeLinkedIn().client())

    db.refresh(draft)
    assert draft.status == "draft"
    assert "3000" in draft.linkedin_error


def test_revoked_token_deletes_connection(db):
    make_connection(db)
    now = utcnow()
    draft = make_draft(db, status="scheduled", scheduled_at=now - timedelta(minutes=1))

    scheduler.run_publish_sweep(db, now=now, client=FakeLinkedIn(post_status=401).client())

    db.refresh(draft)
    assert draft.status == "scheduled"
    assert draft.linkedin_error == "revoked"
    assert crud_connections.get_connection(db, USER_ID) is None


def test_expired_token_is_refreshed_before_publishing(db):
    make_connection(db, expired=True, refresh_token="refresh-token")
    now = utcnow()
    draft = make_draft(db, status="scheduled", scheduled_at=now - timedelta(minutes=1))
    fake = FakeLinkedIn()

    scheduler.run_publish_sweep(db, now=now, client=fake.client())

    db.refresh(draft)
    assert draft.status == "published"
    conn = crud_connections.get_connection(db, USER_ID)
    assert crud_connections.get_access_token(conn) == "fresh-token"
    assert fake.requests[-1].headers["Authorization"] == "Bearer fresh-token"


def test_expired_token_without_refresh(db):
    make_connection(db, expired=True)
    now = utcnow()
    draft = make_draft(db, status="scheduled", scheduled_at=now - timedelta(minutes=1))

    summary = scheduler.run_publish_sweep(db, now=now, client=FakeLinkedIn().client())

    assert summary["failed"] == 1
    db.refresh(draft)
    assert draft.linkedin_error == TOKEN_EXPIRED_MESSAGE


def test_one_crashing_draft_does_not_stop_the_sweep(db, monkeypatch):
    make_connection(db)
    now = utcnow()
    bad = make_draft(db, content="boom", status="scheduled", scheduled_at=now - timedelta(minutes=2))
    good = make_draft(db, content="fine", status="scheduled", scheduled_at=now - timedelta(minutes=1))

    def fake_publish(access_token, member_id, content, image_url=None, client=None):
        if content == "boom":
            raise RuntimeError("unexpected")
        return PublishResult(post_id="urn:li:share:42", post_url="https://www.linkedin.com/feed/update/urn:li:share:42")

    monkeypatch.setattr(scheduler, "publish_post", fake_publish)

    summary = scheduler.run_publish_sweep(db, now=now)

    assert summary == {"success": True, "processed": 2, "published": 1, "failed": 1}
    db.refresh(bad)
    db.refresh(good)
    assert bad.status == "scheduled"
    assert bad.linkedin_error == "Publishing failed unexpectedly. It will be retried."
    assert good.status == "published"


def test_batch_is_capped(db, monkeypatch):
    make_connection(db)
    now = utcnow()
    for i in range(4):
        make_draft(db, status="scheduled", scheduled_at=now - timedelta(minutes=i + 1))
    monkeypatch.setattr(scheduler, "MAX_BATCH_SIZE", 3)

    summary = scheduler.run_publish_sweep(db, now=now, client=FakeLinkedIn().client())
    assert summary["processed"] == 3


def _edit_elsewhere(db, draft_id, **fields):
    editor = Session(bind=db.get_bind())
    row = editor.get(models.Draft, draft_id)
    for key, value in fields.items():
        setattr(row, key, value)
    editor.commit()
    editor.close()


def test_concurrent_edit_is_not_overwritten(db):
    """An editor commit between load and result write keeps the edit and still records the outcome."""
    now = utcnow()
    draft = make_draft(db, status="scheduled", scheduled_at=now - timedelta(minutes=1))

    _edit_elsewhere(db, draft.id, tone="casual")

    result = crud.record_publish_error(db, draft, "LinkedIn not connected.")

    assert result.tone == "casual"
    assert result.linkedin_error == "LinkedIn not connected."
    assert result.version == 3


def test_post_is_not_republished_when_first_write_fails(db, monkeypatch):
    make_connection(db)
    now = utcnow()
    draft = make_draft(db, status="scheduled", scheduled_at=now - timedelta(minutes=1))
    fake = FakeLinkedIn()
    real_record = crud.record_publish_success
    calls = []

    def flaky_record(session, row, post_id, now=None):
        calls.append(post_id)
        if len(calls) == 1:
            raise OperationalError("UPDATE drafts", {}, Exception("database is locked"))
        return real_record(session, row, post_id, now=now)

    monkeypatch.setattr(crud, "record_publish_success", flaky_record)

    summary = scheduler.run_publish_sweep(db, now=now, client=fake.client())

    assert summary == {"success": True, "processed": 1, "published": 1, "failed": 0}
    assert calls == ["urn:li:share:1", "urn:li:share:1"]
    db.refresh(draft)
    assert draft.status == "published"
    assert draft.linkedin_post_id == "urn:li:share:1"

    scheduler.run_publish_sweep(db, now=now, client=fake.client())
    assert fake.posted == 1


def test_write_is_reapplied_after_repeated_edits(db, monkeypatch):
    now = utcnow()
    draft = make_draft(db, status="scheduled", scheduled_at=now - timedelta(minutes=1))
    _edit_elsewhere(db, draft.id, tone="casual")
    real_get = crud.get_draft
    pending = ["formal"]

    def get_then_edit(session, draft_id, user_id):
        row = real_get(session, draft_id, user_id)
        if pending:
            _edit_elsewhere(session, draft_id, tone=pending.pop())
        return row

    monkeypatch.setattr(crud, "get_draft", get_then_edit)

    result = crud.record_publish_success(db, draft, "urn:li:share:7", now=now)

    assert result.status == "published"
    assert result.linkedin_post_id == "urn:li:share:7"
    assert result.tone == "formal"
    assert result.version == 4


def test_write_gives_up_when_the_row_keeps_changing(db, monkeypatch):
    now = utcnow()
    draft = make_draft(db, status="scheduled", scheduled_at=now - timedelta(minutes=1))
    _edit_elsewhere(db, draft.id, tone="casual")
    real_get = crud.get_draft

    def get_then_edit(session, draft_id, user_id):
        row = real_get(session, draft_id, user_id)
        _edit_elsewhere(session, draft_id, tone=f"v{row.version}")
        return row

    monkeypatch.setattr(crud, "get_draft", get_then_edit)

    with pytest.raises(StaleDataError):
        crud.record_publish_error(db, draft, "LinkedIn not connected.")


# --- analytics sweep ---

def _published(db, **fields):
    fields.setdefault("linkedin_post_id", "urn:li:share:1")
    return make_draft(db, status="published", published_at=utcnow() - timedelta(days=1), **fields)


def test_backoff_draft_is_skipped_without_network(db):
    make_connection(db)
    now = utcnow()
    _published(db, analytics_backoff_until=now + timedelta(minutes=30))
    fake = FakeLinkedIn()

    summary = scheduler.run_analytics_sweep(db, now=now, client=fake.client())

    assert summary == {"success": True, "processed": 1, "synced": 0, "skipped": 1, "failed": 0}
    assert fake.requests == []


def test_recently_synced_draft_is_skipped(db):
    make_connection(db)
    now = utcnow()
    _published(db, last_analytics_synced_at=now - timedelta(minutes=10))

    summary = scheduler.run_analytics_sweep(db, now=now, client=FakeLinkedIn().client())
    assert summary["skipped"] == 1


def test_sync_stores_snapshot(db):
    make_connection(db)
    now = utcnow()
    draft = _published(db, last_analytics_synced_at=now - timedelta(hours=2), analytics_error="old")

    summary = scheduler.run_analytics_sweep(db, now=now, client=FakeLinkedIn().client())

    assert summary["synced"] == 1
    db.refresh(draft)
    assert draft.analytics_likes == 3
    assert draft.analytics_impressions == 30
    assert draft.analytics_engagement == 3
    assert draft.analytics_engagement_rate == 0.1
    assert draft.analytics_error is None
    assert draft.last_analytics_synced_at == now


def test_missing_metrics_keep_previous_values(db):
    make_connection(db)
    now = utcnow()
    draft = _published(db, analytics_impressions=500)

    scheduler.run_analytics_sweep(db, now=now, client=FakeLinkedIn(analytics={"likes": 1}).client())

    db.refresh(draft)
    assert draft.analytics_impressions == 500
    assert draft.analytics_likes == 1


def test_rate_limit_records_backoff(db):
    make_connection(db)
    now = utcnow()
    draft = _published(db)

    summary = scheduler.run_analytics_sweep(db, now=now, client=FakeLinkedIn(analytics_status=429, analytics={}).client())

    assert summary["failed"] == 1
    db.refresh(draft)
    assert draft.analytics_backoff_until == now + timedelta(hours=1)
    assert draft.last_analytics_synced_at == now


def test_revoked_token_during_analytics_deletes_connection(db):
    make_connection(db)
    now = utcnow()
    draft = _published(db)
    fake = FakeLinkedIn(analytics_status=401, analytics={"serviceErrorCode": 65601, "message": "revoked"})

    summary = scheduler.run_analytics_sweep(db, now=now, client=fake.client())

    assert summary["failed"] == 1
    assert crud_connections.get_connection(db, USER_ID) is None
    db.refresh(draft)
    assert draft.status == "published"
    assert draft.analytics_error == "revoked"
    assert draft.last_analytics_synced_at == now


def test_missing_connection_backs_off(db):
    now = utcnow()
    draft = _published(db)

    scheduler.run_analytics_sweep(db, now=now, client=FakeLinkedIn().client())

    db.refresh(draft)
    assert draft.analytics_error == NOT_CONNECTED_MESSAGE
    assert draft.analytics_backoff_until == now + timedelta(hours=6)


def test_never_synced_drafts_come_first(db, monkeypatch):
    make_connection(db)
    now = utcnow()
    old = _published(db, last_analytics_synced_at=now - timedelta(days=2))
    fresh = _published(db)
    monkeypatch.setattr(scheduler, "MAX_BATCH_SIZE", 1)

    scheduler.run_analytics_sweep(db, now=now, client=FakeLinkedIn().client())

    db.refresh(old)
    db.refresh(fresh)
    assert fresh.last_analytics_synced_at == now
    assert old.last_analytics_synced_at == now - timedelta(days=2)


@pytest.mark.parametrize("fields, reason", [
    ({"linkedin_post_id": None}, "no post id"),
    ({"analytics_backoff_until": "future"}, "backoff"),
    ({"last_analytics_synced_at": "recent"}, "recently synced"),
    ({}, None),
])
def test_analytics_skip_reason(fields, reason):
    now = utcnow()
    values = {"future": now + timedelta(minutes=1), "recent": now - timedelta(minutes=59)}
    draft = models.Draft(linkedin_post_id="urn:li:share:1")
    for key, value in fields.items():
        setattr(draft, key, values.get(value, value))
    assert scheduler.analytics_skip_reason(draft, now) == reason


# --- in-process timer ---

def test_start_and_stop_scheduler():
    assert scheduler.start_scheduler("*/5 * * * *", "0 * * * *") is True
    try:
        assert scheduler.start_scheduler() is False
        status = scheduler.scheduler_status()
        assert status["running"] is True
        assert {job["id"] for job in status["jobs"]} == {"publish_sweep", "analytics_sweep"}
    finally:
        assert scheduler.stop_scheduler() is True
    assert scheduler.scheduler_status() == {"running": False, "jobs": []}
    assert scheduler.stop_scheduler() is False
