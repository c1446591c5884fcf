"""Load a viewer's memberships into a VisibilityContext."""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import ChatChannel, ChatChannelMembership, Group, GroupMembership, Membership

from .visibility import GroupAccess, VisibilityContext


def get_parish_membership(session: Session, parish_id: str, user_id: str):
    stmt = select(Membership).where(Membership.parish_id == parish_id, Membership.user_id == user_id)
    return session.execute(stmt).scalar_one_or_none()


def load_visibility_context(session: Session, parish_id: str, user_id: str) -> VisibilityContext:
    membership = get_parish_membership(session, parish_id, user_id)

    group_rows = session.execute(
        select(GroupMembership.group_id, GroupMembership.role, GroupMembership.status)
        .join(Group, Group.id == GroupMembership.group_id)
        .where(GroupMembership.user_id == user_id, Group.parish_id == parish_id)
    ).all()

    channel_ids = session.execute(
        select(ChatChannelMembership.channel_id)
        .join(ChatChannel, ChatChannel.id == ChatChannelMembership.channel_id)
        .where(ChatChannelMembership.user_id == user_id, ChatChannel.parish_id == parish_id)
    ).scalars().all()

    return VisibilityContext(
        user_id=user_id,
        parish_id=parish_id,
        parish_role=membership.role if membership else None,
        groups={row.group_id: GroupAccess(role=row.role, status=row.status) for row in group_rows},
        channel_ids=frozenset(channel_ids),
    )
