from datetime import datetime

import pytest

from models import Announcement, ChatChannel, ChatChannelMembership, Event, Request, Task
from schedule.context import load_visibility_context
from schedule.errors import Forbidden
from schedule.visibility import (
    GroupAccess,
    VisibilityContext,
    can_manage,
    can_view,
    require_coordinator_or_admin,
    ruleset_for,
)

SHEPHERD = VisibilityContext(user_id="u-shepherd", parish_role="SHEPHERD")
ADMIN = VisibilityContext(user_id="u-admin", parish_role="ADMIN")
MEMBER = VisibilityContext(
    user_id="u-member",
    parish_role="MEMBER",
    groups={"choir": GroupAccess(role="PARISHIONER", status="ACTIVE")},
)
COORDINATOR = VisibilityContext(
    user_id="u-coord",
    parish_role="MEMBER",
    groups={"choir": GroupAccess(role="COORDINATOR", status="ACTIVE")},
)
INVITED = VisibilityContext(
    user_id="u-invited",
    parish_role="MEMBER",
    groups={"choir": GroupAccess(role="PARISHIONER", status="INVITED")},
)
OUTSIDER = VisibilityContext(user_id="u-outsider")


def task(**overrides):
    values = dict(owner_id="u-owner", created_by_id="u-owner", visibility="PUBLIC", approval_status="APPROVED", group_id=None)
    values.update(overrides)
    return Task(title="Fold bulletins", **values)


def event(**overrides):
    values = dict(created_by_id="u-owner", visibility="PUBLIC", group_id=None)
    values.update(overrides)
    return Event(title="Rehearsal", **values)


class TestTasks:
    def test_public_approved_task_is_visible_to_members(self):
        assert can_view(task(), MEMBER)
        assert not can_view(task(), OUTSIDER)

    def test_private_task_is_only_visible_to_owner(self):
        private = task(visibility="PRIVATE")
        assert can_view(private, VisibilityContext(user_id="u-owner", parish_role="MEMBER"))
        assert not can_view(private, MEMBER)
        assert not can_view(private, SHEPHERD)

    def test_pending_task_is_hidden_from_everyone_but_its_author(self):
        pending = task(approval_status="PENDING", owner_id="u-other")
        assert not can_view(pending, SHEPHERD)
        assert can_view(pending, VisibilityContext(user_id="u-owner", parish_role="MEMBER"))

    def test_manage_rules(self):
        choir_task = task(group_id="choir")
        assert can_manage(choir_task, VisibilityContext(user_id="u-owner", parish_role="MEMBER"))
        assert can_manage(choir_task, ADMIN)
        assert can_manage(choir_task, COORDINATOR)
        assert not can_manage(choir_task, MEMBER)
        assert not can_manage(choir_task, OUTSIDER)

    def test_creator_who_is_not_owner_can_view_but_not_manage(self):
        delegated = task(owner_id="u-other", created_by_id="u-member", visibility="PRIVATE")
        assert can_view(delegated, MEMBER)
        assert not can_manage(delegated, MEMBER)


class TestEvents:
    def test_group_event_needs_active_membership(self):
        rehearsal = event(visibility="GROUP", group_id="choir")
        assert can_view(rehearsal, MEMBER)
        assert can_view(rehearsal, COORDINATOR)
        assert can_view(rehearsal, ADMIN)
        assert not can_view(rehearsal, INVITED)

    def test_private_event_is_for_leaders_and_creator(self):
        meeting = event(visibility="PRIVATE")
        assert can_view(meeting, SHEPHERD)
        assert can_view(meeting, VisibilityContext(user_id="u-owner", parish_role="MEMBER"))
        assert not can_view(meeting, MEMBER)

    def test_unknown_scope_is_hidden(self):
        assert not can_view(event(visibility="SECRET"), MEMBER)

    def test_group_coordinator_manages_group_event(self):
        rehearsal = event(visibility="GROUP", group_id="choir")
        assert can_manage(rehearsal, COORDINATOR)
        assert not can_manage(rehearsal, MEMBER)


def channel(kind="PARISH", group_id=None, members=()):
    value = ChatChannel(id=f"chan-{kind.lower()}", name=kind.title(), type=kind, group_id=group_id)
    value.memberships = [ChatChannelMembership(user_id=user_id) for user_id in members]
    return value


class TestAnnouncements:
    def test_draft_is_only_visible_to_leaders_and_author(self):
        draft = Announcement(title="Lent", scope_type="PARISH", created_by_id="u-author")
        assert can_view(draft, ADMIN)
        assert can_view(draft, VisibilityContext(user_id="u-author", parish_role="MEMBER"))
        assert not can_view(draft, MEMBER)

    def test_published_parish_announcement_is_visible_to_members(self):
        note = Announcement(title="Lent", scope_type="PARISH", published_at=datetime(2024, 9, 1))
        assert can_view(note, MEMBER)
        assert not can_view(note, OUTSIDER)

    def test_group_chat_announcement_follows_group_membership(self):
        note = Announcement(
            title="Robes",
            scope_type="CHAT",
            published_at=datetime(2024, 9, 1),
            chat_channel=channel("GROUP", group_id="choir"),
        )
        assert can_view(note, MEMBER)
        assert not can_view(note, INVITED)
        assert not can_view(note, SHEPHERD)

    def test_restricted_channel_requires_channel_membership(self):
        restricted = channel("ANNOUNCEMENT", members=["u-member"])
        note = Announcement(title="Keys", scope_type="CHAT", published_at=datetime(2024, 9, 1), chat_channel=restricted)
        listed = VisibilityContext(user_id="u-member", parish_role="MEMBER", channel_ids=frozenset({restricted.id}))
        assert can_view(note, listed)
        assert not can_view(note, COORDINATOR)

    def test_chat_announcement_without_channel_is_hidden(self):
        note = Announcement(title="Orphan", scope_type="CHAT", published_at=datetime(2024, 9, 1))
        assert not can_view(note, MEMBER)

    def test_coordinators_do_not_manage_announcements(self):
        note = Announcement(title="Lent", scope_type="PARISH", published_at=datetime(2024, 9, 1))
        assert can_manage(note, SHEPHERD)
        assert not can_manage(note, COORDINATOR)


class TestRequests:
    def test_clergy_only(self):
        request = Request(title="Confession", created_by_id="u-member", visibility_scope="CLERGY_ONLY")
        assert can_view(request, SHEPHERD)
        assert not can_view(request, ADMIN)
        assert can_view(request, MEMBER)
        assert not can_manage(request, ADMIN)
        assert can_manage(request, SHEPHERD)

    def test_admin_all(self):
        request = Request(title="Room", created_by_id="u-other", visibility_scope="ADMIN_ALL")
        assert can_view(request, ADMIN)
        assert can_view(request, SHEPHERD)
        assert not can_view(request, MEMBER)

    def test_admin_specific_needs_assignment(self):
        request = Request(title="Keys", created_by_id="u-other", visibility_scope="ADMIN_SPECIFIC", assigned_to_id="u-admin")
        assert can_view(request, ADMIN)
        assert can_view(request, SHEPHERD)
        assert not can_view(request, VisibilityContext(user_id="u-admin-2", parish_role="ADMIN"))

    def test_requester_cannot_manage_own_request(self):
        request = Request(title="Room", created_by_id="u-member", visibility_scope="ADMIN_ALL")
        assert can_view(request, MEMBER)
        assert not can_manage(request, MEMBER)


def test_channels_are_open_to_leaders():
    group_channel = channel("GROUP", group_id="choir")
    assert can_view(group_channel, ADMIN)
    assert can_view(group_channel, MEMBER)
    assert not can_view(group_channel, INVITED)


def test_coordinator_guard():
    assert require_coordinator_or_admin(COORDINATOR, "choir") is COORDINATOR
    assert require_coordinator_or_admin(ADMIN, "choir") is ADMIN
    with pytest.raises(Forbidden):
        require_coordinator_or_admin(MEMBER, "choir")


def test_unregistered_entities_are_rejected():
    with pytest.raises(TypeError):
        ruleset_for(object())


def test_context_is_loaded_from_memberships(db, seeded):
    ctx = load_visibility_context(db, seeded.parish.id, seeded.users.coordinator.id)
    assert ctx.parish_role == "MEMBER"
    assert ctx.coordinates(seeded.choir.id)

    invited = load_visibility_context(db, seeded.parish.id, seeded.users.invited.id)
    assert not invited.is_active_in(seeded.choir.id)

    outsider = load_visibility_context(db, seeded.parish.id, seeded.users.outsider.id)
    assert not outsider.is_member
    assert outsider.groups == {}
