from datetime import datetime, timezone
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest

from models import Announcement, Task
from schedule.context import load_visibility_context
from schedule.digest import (
    assert_digest_transition,
    build_digest_content,
    build_week_summary,
    completion_stats,
    generate_digest_preview,
    get_digest,
    publish_digest,
    save_digest_draft,
)
from schedule.errors import Forbidden, InvalidTransition, NotFound
from schedule.events import create_event
from schedule.week import get_or_create_current_week

NY = ZoneInfo("America/New_York")
UTC = timezone.utc
NOW = datetime(2024, 9, 4, 12, tzinfo=UTC)


def stub_tasks(*statuses):
    return [SimpleNamespace(title=f"Task {n}", status=status) for n, status in enumerate(statuses)]


@pytest.mark.parametrize(
    "statuses, expected",
    [
        (("DONE", "DONE", "OPEN"), (2, 3, 67)),
        (("DONE",) + ("OPEN",) * 7, (1, 8, 13)),
        (("DONE", "OPEN"), (1, 2, 50)),
        ((), (0, 0, 0)),
    ],
)
def test_completion_rounds_half_up(statuses, expected):
    stats = completion_stats(stub_tasks(*statuses))
    assert (stats.done, stats.total, stats.pct) == expected


def test_digest_content_is_sorted_and_formatted():
    tasks = [
        SimpleNamespace(title="Print bulletin", status="DONE"),
        SimpleNamespace(title="Arrange flowers", status="OPEN"),
    ]
    events = [
        SimpleNamespace(title="Rehearsal", location=None, starts_at=datetime(2024, 9, 4, 18), ends_at=datetime(2024, 9, 4, 19)),
        SimpleNamespace(title="Mass", location="Sanctuary", starts_at=datetime(2024, 9, 4, 9), ends_at=datetime(2024, 9, 4, 10)),
    ]
    assert build_digest_content(tasks, events, tz=UTC) == (
        "Tasks\n"
        "- [ ] Arrange flowers\n"
        "- [x] Print bulletin\n"
        "\n"
        "Events\n"
        "- Mass (09:00-10:00) @ Sanctuary\n"
        "- Rehearsal (18:00-19:00)"
    )


def test_digest_content_for_an_empty_week():
    assert build_digest_content([], [], tz=UTC) == (
        "Tasks\n- No tasks this week.\n\nEvents\n- No events this week."
    )


@pytest.mark.parametrize(
    "current, target",
    [(None, "DRAFT"), ("DRAFT", "PUBLISHED"), ("PUBLISHED", "PUBLISHED"), ("DRAFT", "DRAFT")],
)
def test_allowed_transitions(current, target):
    assert_digest_transition(current, target)


def test_published_digest_cannot_revert():
    with pytest.raises(InvalidTransition, match="Cannot revert a published digest"):
        assert_digest_transition("PUBLISHED", "DRAFT")
    with pytest.raises(ValueError):
        assert_digest_transition("DRAFT", "ARCHIVED")


@pytest.fixture
def week(db, seeded):
    week = get_or_create_current_week(db, seeded.parish.id, NOW, NY)
    member = seeded.users.member
    parish_id = seeded.parish.id
    db.add_all([
        Task(parish_id=parish_id, week_id=week.id, owner_id=member.id, title="Set up chairs", status="OPEN"),
        Task(parish_id=parish_id, week_id=week.id, owner_id=member.id, title="Print bulletin", status="DONE"),
        Task(parish_id=parish_id, week_id=week.id, owner_id=member.id, title="Call mum", visibility="PRIVATE"),
        Announcement(parish_id=parish_id, title="Parish picnic", published_at=datetime(2024, 9, 3)),
        Announcement(parish_id=parish_id, title="Advent plans"),
    ])
    shepherd = load_visibility_context(db, parish_id, seeded.users.shepherd.id)
    create_event(
        db,
        parish_id,
        shepherd,
        {
            "title": "Mass",
            "location": "Sanctuary",
            "starts_at": datetime(2024, 9, 4, 9, tzinfo=NY),
            "ends_at": datetime(2024, 9, 4, 10, tzinfo=NY),
        },
        tz=NY,
    )
    db.flush()
    return week


def viewer(db, world, key):
    return load_visibility_context(db, world.parish.id, getattr(world.users, key).id)


def test_week_summary_is_filtered_per_viewer(db, seeded, week):
    mine = build_week_summary(db, seeded.parish.id, week.id, viewer(db, seeded, "member"), NY)
    assert sorted(task.title for task in mine.tasks) == ["Call mum", "Print bulletin", "Set up chairs"]
    assert mine.stats.pct == 33
    assert [row.title for row in mine.announcements] == ["Parish picnic"]
    assert [event.title for event in mine.events] == ["Mass"]

    theirs = build_week_summary(db, seeded.parish.id, week.id, viewer(db, seeded, "shepherd"), NY)
    assert len(theirs.tasks) == 2
    assert theirs.stats.to_dict() == {"done": 1, "total": 2, "pct": 50}
    assert theirs.to_dict()["week"]["label"] == "2024-W36"


def test_week_summary_keeps_six_newest_announcements(db, seeded, week):
    db.add_all([
        Announcement(parish_id=seeded.parish.id, title=f"Notice {day}", published_at=datetime(2024, 9, day))
        for day in range(4, 11)
    ])
    db.flush()

    summary = build_week_summary(db, seeded.parish.id, week.id, viewer(db, seeded, "member"), NY)
    assert [row.title for row in summary.announcements] == [f"Notice {day}" for day in range(10, 4, -1)]


def test_preview_uses_the_current_week(db, seeded, week):
    content = generate_digest_preview(db, seeded.parish.id, viewer(db, seeded, "shepherd"), now=NOW, tz=NY)
    assert content == (
        "Tasks\n"
        "- [x] Print bulletin\n"
        "- [ ] Set up chairs\n"
        "\n"
        "Events\n"
        "- Mass (09:00-10:00) @ Sanctuary"
    )
    with pytest.raises(Forbidden):
        generate_digest_preview(db, seeded.parish.id, viewer(db, seeded, "member"), now=NOW, tz=NY)


def test_draft_then_publish_then_no_revert(db, seeded, week):
    admin = viewer(db, seeded, "admin")
    parish_id = seeded.parish.id

    draft = save_digest_draft(db, parish_id, week.id, admin, "First pass")
    assert draft.status == "DRAFT"
    assert draft.published_at is None

    published = publish_digest(db, parish_id, week.id, admin, "Final", now=NOW)
    assert published.id == draft.id
    assert published.status == "PUBLISHED"
    assert published.published_at == datetime(2024, 9, 4, 12)

    publish_digest(db, parish_id, week.id, admin, "Final, with typo fixed", now=NOW)
    with pytest.raises(InvalidTransition):
        save_digest_draft(db, parish_id, week.id, admin, "Oops")

    stored = get_digest(db, parish_id, week.id)
    assert stored.status == "PUBLISHED"
    assert stored.content == "Final, with typo fixed"


def test_digest_writes_need_a_leader_and_a_real_week(db, seeded, week):
    with pytest.raises(Forbidden):
        save_digest_draft(db, seeded.parish.id, week.id, viewer(db, seeded, "member"), "Hi")
    with pytest.raises(NotFound):
        save_digest_draft(db, seeded.parish.id, "missing", viewer(db, seeded, "admin"), "Hi")
