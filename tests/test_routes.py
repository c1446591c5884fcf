from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

import app
from models import ChatChannel, ChatChannelMembership, Request, Task
from schedule.clock import to_millis
from schedule.week import get_or_create_current_week

NY = ZoneInfo("America/New_York")
NOW = datetime(2024, 9, 4, 12, tzinfo=timezone.utc)
TOKEN = "test-csrf-token"
HEADERS = {"X-CSRF-Token": TOKEN}


@pytest.fixture
def client(monkeypatch, session_factory, seeded):
    monkeypatch.setattr(app, "SessionLocal", session_factory)
    monkeypatch.setattr(app, "utcnow", lambda: NOW)
    with app.app.test_client() as client:
        yield client


def _login(client, user, parish):
    with client.session_transaction() as sess:
        sess["_user_id"] = user.id
        sess["_fresh"] = True
        sess["parish_id"] = parish.id
        sess["_csrf"] = TOKEN


def _create_mass(client, **overrides):
    payload = {
        "title": "Mass",
        "location": "Sanctuary",
        "starts_at": "2024-09-04T09:00",
        "ends_at": "2024-09-04T10:00",
    }
    payload.update(overrides)
    return client.post("/api/events", json=payload, headers=HEADERS)


def test_healthz():
    with app.app.test_client() as client:
        assert client.get("/healthz").get_json() == {"ok": True}


def test_login_is_required(client):
    response = client.get("/api/this-week")
    assert response.status_code == 401
    assert "error" in response.get_json()


def test_this_week_for_member(client, seeded):
    _login(client, seeded.users.member, seeded.parish)
    body = client.get("/api/this-week").get_json()
    assert body["week"]["label"] == "2024-W36"
    assert body["selection"] == "current"
    assert body["timezone"] == "America/New_York (Eastern Time)"
    assert body["stats"] == {"done": 0, "total": 0, "pct": 0}

    nxt = client.get("/api/this-week?week=next").get_json()
    assert nxt["week"]["label"] == "2024-W37"
    assert nxt["selection"] == "next"


def test_non_members_are_forbidden(client, seeded):
    _login(client, seeded.users.outsider, seeded.parish)
    response = client.get("/api/this-week")
    assert response.status_code == 403


def test_mutations_need_csrf_token(client, seeded):
    _login(client, seeded.users.shepherd, seeded.parish)
    response = client.post("/api/events", json={"title": "Mass"})
    assert response.status_code == 400
    assert "CSRF" in response.get_json()["error"]


def test_leader_creates_event_in_parish_time(client, seeded):
    _login(client, seeded.users.shepherd, seeded.parish)
    response = _create_mass(client)
    assert response.status_code == 201
    body = response.get_json()
    assert body["starts_at"] == "2024-09-04T13:00:00+00:00"
    assert body["recurrence"]["freq"] == "NONE"

    _login(client, seeded.users.member, seeded.parish)
    calendar = client.get("/api/calendar?view=week").get_json()
    assert calendar["days"][0] == "2024-09-02"
    assert [(item["title"], item["day"]) for item in calendar["events"]] == [("Mass", "2024-09-04")]


def test_month_view_returns_whole_grid(client, seeded):
    _login(client, seeded.users.member, seeded.parish)
    body = client.get("/api/calendar?view=month").get_json()
    assert body["view"] == "month"
    assert len(body["days"]) == 42
    assert body["days"][0] == "2024-08-26"


def test_invalid_rule_is_rejected_and_rolled_back(client, seeded):
    _login(client, seeded.users.shepherd, seeded.parish)
    response = _create_mass(client, recurrence_freq="WEEKLY", recurrence_interval=0)
    assert response.status_code == 400
    assert "interval" in response.get_json()["error"]
    assert client.get("/api/calendar").get_json()["events"] == []


def test_member_cannot_create_event(client, seeded):
    _login(client, seeded.users.member, seeded.parish)
    assert _create_mass(client).status_code == 403


def test_cancel_one_occurrence(client, seeded):
    _login(client, seeded.users.shepherd, seeded.parish)
    event_id = _create_mass(client, recurrence_freq="WEEKLY").get_json()["id"]
    millis = to_millis(datetime(2024, 9, 4, 13, tzinfo=timezone.utc))

    response = client.patch(f"/api/events/{event_id}/occurrences/{millis}", json={"cancel": True}, headers=HEADERS)
    assert response.get_json() == {"cancelled": True, "instance_id": f"{event_id}-{millis}"}
    assert client.get("/api/calendar").get_json()["events"] == []

    missing = client.patch(f"/api/events/{event_id}/occurrences/{millis + 1000}", json={"cancel": True}, headers=HEADERS)
    assert missing.status_code == 404


def test_move_one_occurrence(client, seeded):
    _login(client, seeded.users.shepherd, seeded.parish)
    event_id = _create_mass(client, recurrence_freq="WEEKLY").get_json()["id"]
    millis = to_millis(datetime(2024, 9, 4, 13, tzinfo=timezone.utc))

    response = client.patch(
        f"/api/events/{event_id}/occurrences/{millis}",
        json={"starts_at": "2024-09-05T18:00", "ends_at": "2024-09-05T19:00"},
        headers=HEADERS,
    )
    assert response.status_code == 200
    assert response.get_json()["recurrence_parent_id"] == event_id

    events = client.get("/api/calendar").get_json()["events"]
    assert [(item["id"], item["day"], item["is_override"]) for item in events] == [
        (f"{event_id}-{millis}", "2024-09-05", True)
    ]


def test_task_done_and_defer(client, seeded, db):
    week = get_or_create_current_week(db, seeded.parish.id, NOW, NY)
    task = Task(parish_id=seeded.parish.id, week_id=week.id, owner_id=seeded.users.member.id, title="Set up chairs")
    db.add(task)
    db.commit()

    _login(client, seeded.users.invited, seeded.parish)
    assert client.post(f"/api/tasks/{task.id}/done", headers=HEADERS).status_code == 403

    _login(client, seeded.users.member, seeded.parish)
    done = client.post(f"/api/tasks/{task.id}/done", headers=HEADERS).get_json()
    assert done["status"] == "DONE"
    assert done["completed_by_id"] == seeded.users.member.id

    reopened = client.delete(f"/api/tasks/{task.id}/done", headers=HEADERS).get_json()
    assert reopened["status"] == "OPEN"

    deferred = client.post(f"/api/tasks/{task.id}/defer", json={"week": "next"}, headers=HEADERS).get_json()
    assert deferred["week_id"] != week.id
    body = client.get("/api/this-week?week=next").get_json()
    assert [item["title"] for item in body["tasks"]] == ["Set up chairs"]


def test_requests_feed_is_filtered(client, seeded, db):
    db.add_all([
        Request(parish_id=seeded.parish.id, created_by_id=seeded.users.member.id, title="Hall booking"),
        Request(
            parish_id=seeded.parish.id,
            created_by_id=seeded.users.coordinator.id,
            title="Confession",
            visibility_scope="CLERGY_ONLY",
        ),
    ])
    db.commit()

    _login(client, seeded.users.admin, seeded.parish)
    assert [row["title"] for row in client.get("/api/requests").get_json()] == ["Hall booking"]

    _login(client, seeded.users.shepherd, seeded.parish)
    titles = sorted(row["title"] for row in client.get("/api/requests").get_json())
    assert titles == ["Confession", "Hall booking"]

    _login(client, seeded.users.member, seeded.parish)
    scoped = client.get("/api/requests?scope=CLERGY_ONLY").get_json()
    assert scoped == []


def test_digest_lifecycle(client, seeded):
    _login(client, seeded.users.member, seeded.parish)
    assert client.post("/api/digest", json={"content": "Hi"}, headers=HEADERS).status_code == 403

    _login(client, seeded.users.admin, seeded.parish)
    preview = client.post("/api/digest/preview", headers=HEADERS).get_json()
    assert preview["content"].startswith("Tasks\n- No tasks this week.")

    assert client.post("/api/digest", json={"content": ""}, headers=HEADERS).status_code == 400

    draft = client.post("/api/digest", json={"content": "Draft"}, headers=HEADERS).get_json()
    assert draft["status"] == "draft"
    published = client.post("/api/digest/publish", json={"content": "Final"}, headers=HEADERS).get_json()
    assert published["status"] == "published"

    revert = client.post("/api/digest", json={"content": "Again"}, headers=HEADERS)
    assert revert.status_code == 409
    assert revert.get_json()["error"] == "Cannot revert a published digest"

    body = client.get("/api/this-week").get_json()
    assert body["digest"] == {"status": "PUBLISHED", "content": "Final"}


def test_channels_feed_is_filtered(client, seeded, db):
    notices = ChatChannel(parish_id=seeded.parish.id, name="Notices", type="ANNOUNCEMENT")
    notices.memberships = [ChatChannelMembership(user_id=seeded.users.coordinator.id)]
    db.add_all([
        ChatChannel(parish_id=seeded.parish.id, name="General", type="PARISH"),
        ChatChannel(parish_id=seeded.parish.id, name="Choir chat", type="GROUP", group_id=seeded.choir.id),
        notices,
    ])
    db.commit()

    _login(client, seeded.users.invited, seeded.parish)
    assert [row["name"] for row in client.get("/api/channels").get_json()] == ["General"]

    _login(client, seeded.users.member, seeded.parish)
    assert [row["name"] for row in client.get("/api/channels").get_json()] == ["Choir chat", "General"]

    _login(client, seeded.users.coordinator, seeded.parish)
    body = client.get("/api/channels").get_json()
    assert [row["name"] for row in body] == ["Choir chat", "General", "Notices"]
    assert body[-1]["restricted"] is True
