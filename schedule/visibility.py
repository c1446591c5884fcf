"""Who may see and who may manage parish content.

``can_view`` and ``can_manage`` are pure: the caller loads the viewer's
memberships into a ``VisibilityContext`` and passes already-fetched rows
(chat channels eager-loaded where announcements need them). Each entity type
registers a small ``Ruleset``; the resolver itself holds no per-type logic
beyond what those rulesets declare.

Authorship wins over scope: whoever owns or created a row can always see it.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Tuple

from .config import CLERGY_ROLES, GROUP_MANAGER_ROLES, LEADER_ROLES
from .errors import Forbidden


@dataclass(frozen=True, slots=True)
class GroupAccess:
    role: str
    status: str

    @property
    def active(self) -> bool:
        return self.status == "ACTIVE"


@dataclass(frozen=True, slots=True)
class VisibilityContext:
    user_id: str
    parish_id: Optional[str] = None
    parish_role: Optional[str] = None
    groups: Mapping[str, GroupAccess] = field(default_factory=dict)
    channel_ids: FrozenSet[str] = frozenset()

    @property
    def is_member(self) -> bool:
        return self.parish_role is not None

    @property
    def is_leader(self) -> bool:
        return self.parish_role in LEADER_ROLES

    @property
    def is_clergy(self) -> bool:
        return self.parish_role in CLERGY_ROLES

    def is_active_in(self, group_id: Optional[str]) -> bool:
        access = self.groups.get(group_id) if group_id else None
        return bool(access and access.active)

    def coordinates(self, group_id: Optional[str]) -> bool:
        access = self.groups.get(group_id) if group_id else None
        return bool(access and access.active and access.role in GROUP_MANAGER_ROLES)


ScopeRule = Callable[[Any, VisibilityContext], bool]


@dataclass(frozen=True)
class Ruleset:
    """Declarative visibility rules for one entity type.

    owner_fields grant view; manage_owner_fields grant manage. scope_field
    names the attribute whose value picks a rule from scope_rules (unknown
    values are hidden). approval_field/approved limit the scope rules to
    approved rows. draft_field marks rows that only leaders see while the
    field is empty.
    """

    owner_fields: Tuple[str, ...] = ()
    manage_owner_fields: Tuple[str, ...] = ()
    scope_field: Optional[str] = None
    scope_rules: Mapping[str, ScopeRule] = field(default_factory=dict)
    approval_field: Optional[str] = None
    approved: str = "APPROVED"
    draft_field: Optional[str] = None
    group_field: Optional[str] = None
    leaders_manage: bool = True
    coordinators_manage: bool = True
    members_only: bool = True
    manage_requires_view: bool = False


def _anyone(entity: Any, ctx: VisibilityContext) -> bool:
    return True


def _nobody(entity: Any, ctx: VisibilityContext) -> bool:
    return False


def _leaders(entity: Any, ctx: VisibilityContext) -> bool:
    return ctx.is_leader


def _group_members(entity: Any, ctx: VisibilityContext) -> bool:
    return ctx.is_leader or ctx.is_active_in(getattr(entity, "group_id", None))


def channel_open_to(channel: Any, ctx: VisibilityContext) -> bool:
    """Group channels need an ACTIVE group membership; parish and
    announcement channels are open unless they carry an explicit member list
    the viewer is not on."""
    if channel is None:
        return False
    if channel.type == "GROUP":
        return ctx.is_active_in(channel.group_id)
    if channel.type in {"PARISH", "ANNOUNCEMENT"}:
        return not channel.restricted or channel.id in ctx.channel_ids
    return False


def _chat_scoped(entity: Any, ctx: VisibilityContext) -> bool:
    return channel_open_to(getattr(entity, "chat_channel", None), ctx)


def _chat_channel(entity: Any, ctx: VisibilityContext) -> bool:
    return ctx.is_leader or channel_open_to(entity, ctx)


def _clergy_only(entity: Any, ctx: VisibilityContext) -> bool:
    return ctx.is_clergy


def _admin_specific(entity: Any, ctx: VisibilityContext) -> bool:
    if ctx.is_clergy:
        return True
    return ctx.is_leader and getattr(entity, "assigned_to_id", None) == ctx.user_id


TASK_RULES = Ruleset(
    owner_fields=("owner_id", "created_by_id"),
    manage_owner_fields=("owner_id",),
    scope_field="visibility",
    scope_rules={"PUBLIC": _anyone, "PRIVATE": _nobody},
    approval_field="approval_status",
    group_field="group_id",
)

EVENT_RULES = Ruleset(
    owner_fields=("created_by_id",),
    manage_owner_fields=("created_by_id",),
    scope_field="visibility",
    scope_rules={"PUBLIC": _anyone, "GROUP": _group_members, "PRIVATE": _leaders},
    group_field="group_id",
)

ANNOUNCEMENT_RULES = Ruleset(
    owner_fields=("created_by_id",),
    manage_owner_fields=("created_by_id",),
    scope_field="scope_type",
    scope_rules={"PARISH": _anyone, "CHAT": _chat_scoped},
    draft_field="published_at",
    coordinators_manage=False,
)

CHAT_CHANNEL_RULES = Ruleset(
    scope_field="type",
    scope_rules={"PARISH": _chat_channel, "ANNOUNCEMENT": _chat_channel, "GROUP": _chat_channel},
    group_field="group_id",
)

REQUEST_RULES = Ruleset(
    owner_fields=("created_by_id",),
    manage_owner_fields=(),
    scope_field="visibility_scope",
    scope_rules={
        "CLERGY_ONLY": _clergy_only,
        "ADMIN_ALL": _leaders,
        "ADMIN_SPECIFIC": _admin_specific,
    },
    coordinators_manage=False,
    manage_requires_view=True,
)

RULESETS: Dict[str, Ruleset] = {
    "Task": TASK_RULES,
    "Event": EVENT_RULES,
    "Announcement": ANNOUNCEMENT_RULES,
    "ChatChannel": CHAT_CHANNEL_RULES,
    "Request": REQUEST_RULES,
}


def ruleset_for(entity: Any) -> Ruleset:
    # occurrences are checked against the row they were expanded from
    source = getattr(type(entity), "__name__", "")
    if source == "EventInstance":
        return EVENT_RULES
    try:
        return RULESETS[source]
    except KeyError:
        raise TypeError(f"No visibility rules registered for {source}") from None


def _owned(entity: Any, ctx: VisibilityContext, fields: Tuple[str, ...]) -> bool:
    return any(getattr(entity, name, None) == ctx.user_id for name in fields)


def can_view(entity: Any, ctx: VisibilityContext, rules: Optional[Ruleset] = None) -> bool:
    rules = rules or ruleset_for(entity)
    if rules.members_only and not ctx.is_member:
        return False
    if _owned(entity, ctx, rules.owner_fields):
        return True
    if rules.draft_field and getattr(entity, rules.draft_field, None) is None:
        return ctx.is_leader
    if rules.approval_field and getattr(entity, rules.approval_field, None) != rules.approved:
        return False
    if rules.scope_field is None:
        return True
    rule = rules.scope_rules.get(getattr(entity, rules.scope_field, None))
    return bool(rule and rule(entity, ctx))


def can_manage(entity: Any, ctx: VisibilityContext, rules: Optional[Ruleset] = None) -> bool:
    rules = rules or ruleset_for(entity)
    if not ctx.is_member:
        return False
    if rules.manage_requires_view and not can_view(entity, ctx, rules):
        return False
    if rules.leaders_manage and ctx.is_leader:
        return True
    if rules.coordinators_manage and rules.group_field:
        if ctx.coordinates(getattr(entity, rules.group_field, None)):
            return True
    return _owned(entity, ctx, rules.manage_owner_fields)


def require_coordinator_or_admin(ctx: VisibilityContext, group_id: str) -> VisibilityContext:
    if ctx.is_leader or ctx.coordinates(group_id):
        return ctx
    raise Forbidden("Coordinator or parish leader required")
