"""Visibility-filtered listings of announcements, requests and chat channels."""
from __future__ import annotations

from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from models import Announcement, ChatChannel, Request

from .visibility import VisibilityContext, can_view


def list_visible_announcements(
    session: Session,
    parish_id: str,
    viewer: VisibilityContext,
    status: Optional[str] = None,
    include_archived: bool = False,
    limit: Optional[int] = None,
) -> List[Announcement]:
    """Newest first. ``status`` narrows to "draft" or "published"."""
    if not viewer.is_member:
        return []
    stmt = (
        select(Announcement)
        .options(selectinload(Announcement.chat_channel).selectinload(ChatChannel.memberships))
        .where(Announcement.parish_id == parish_id)
        .order_by(func.coalesce(Announcement.published_at, Announcement.created_at).desc(), Announcement.id)
    )
    if not include_archived:
        stmt = stmt.where(Announcement.archived_at.is_(None))
    if status == "draft":
        stmt = stmt.where(Announcement.published_at.is_(None))
    elif status == "published":
        stmt = stmt.where(Announcement.published_at.is_not(None))

    visible = [row for row in session.execute(stmt).scalars() if can_view(row, viewer)]
    return visible[:limit] if limit is not None else visible


def list_visible_requests(
    session: Session,
    parish_id: str,
    viewer: VisibilityContext,
    type: Optional[str] = None,
    assignee_id: Optional[str] = None,
    visibility_scope: Optional[str] = None,
) -> List[Request]:
    if not viewer.is_member:
        return []
    stmt = select(Request).where(Request.parish_id == parish_id).order_by(Request.updated_at.desc(), Request.id)
    if type:
        stmt = stmt.where(Request.type == type)
    if assignee_id:
        stmt = stmt.where(Request.assigned_to_id == assignee_id)
    if visibility_scope:
        stmt = stmt.where(Request.visibility_scope == visibility_scope)
    return [row for row in session.execute(stmt).scalars() if can_view(row, viewer)]


def list_visible_channels(session: Session, parish_id: str, viewer: VisibilityContext) -> List[ChatChannel]:
    if not viewer.is_member:
        return []
    stmt = (
        select(ChatChannel)
        .options(selectinload(ChatChannel.memberships))
        .where(ChatChannel.parish_id == parish_id)
        .order_by(ChatChannel.name)
    )
    return [row for row in session.execute(stmt).scalars() if can_view(row, viewer)]


def announcement_to_dict(row: Announcement) -> dict:
    return {
        "id": row.id,
        "title": row.title,
        "body": row.body,
        "scope_type": row.scope_type,
        "chat_channel_id": row.chat_channel_id,
        "published_at": row.published_at.isoformat() + "Z" if row.published_at else None,
        "draft": row.published_at is None,
    }


def request_to_dict(row: Request) -> dict:
    return {
        "id": row.id,
        "title": row.title,
        "type": row.type,
        "status": row.status,
        "visibility_scope": row.visibility_scope,
        "assigned_to_id": row.assigned_to_id,
        "created_by_id": row.created_by_id,
    }


def channel_to_dict(row: ChatChannel) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "type": row.type,
        "group_id": row.group_id,
        "restricted": row.restricted,
    }
