"""Task state changes: completion, deferral and week rollover."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Task, Week

from .clock import to_storage, utcnow
from .errors import Forbidden, NotFound
from .visibility import VisibilityContext, can_manage, can_view

LOGGER = logging.getLogger(__name__)


def get_task(session: Session, parish_id: str, task_id: str, ctx: Optional[VisibilityContext] = None) -> Task:
    task = session.get(Task, task_id)
    if task is None or task.parish_id != parish_id or task.archived_at is not None:
        raise NotFound("Task not found")
    # hidden rows look missing to the viewer
    if ctx is not None and not can_view(task, ctx):
        raise NotFound("Task not found")
    return task


def _require_manage(task: Task, ctx: VisibilityContext) -> None:
    if not can_manage(task, ctx):
        raise Forbidden("You cannot change this task")


def mark_task_done(session: Session, parish_id: str, task_id: str, ctx: VisibilityContext, now: Optional[datetime] = None) -> Task:
    task = get_task(session, parish_id, task_id, ctx)
    _require_manage(task, ctx)
    if task.status != "DONE":
        task.status = "DONE"
        task.completed_at = to_storage(now or utcnow())
        task.completed_by_id = ctx.user_id
        LOGGER.info("Task %s marked done by %s", task.id, ctx.user_id)
    return task


def unmark_task_done(session: Session, parish_id: str, task_id: str, ctx: VisibilityContext) -> Task:
    task = get_task(session, parish_id, task_id, ctx)
    _require_manage(task, ctx)
    if task.status == "DONE":
        task.status = "OPEN"
        task.completed_at = None
        task.completed_by_id = None
        LOGGER.info("Task %s reopened by %s", task.id, ctx.user_id)
    return task


def defer_task(session: Session, parish_id: str, task_id: str, ctx: VisibilityContext, target_week: Week) -> Task:
    """Move an open task to another week. Only the owner may defer."""
    task = get_task(session, parish_id, task_id, ctx)
    if task.owner_id != ctx.user_id:
        raise Forbidden("Only the owner can defer a task")
    if task.status == "DONE":
        raise ValueError("Completed tasks cannot be deferred")
    if target_week.parish_id != parish_id:
        raise NotFound("Week not found")
    task.week_id = target_week.id
    return task


def rollover_open_tasks(session: Session, parish_id: str, from_week_id: str, to_week_id: str) -> int:
    """Copy open tasks of one week into the next; returns how many were copied.

    A task that already has a copy in the target week is skipped, so calling
    this twice does nothing the second time.
    """
    already = set(
        session.execute(
            select(Task.rolled_from_task_id).where(
                Task.week_id == to_week_id, Task.rolled_from_task_id.is_not(None)
            )
        ).scalars()
    )
    open_tasks = session.execute(
        select(Task)
        .where(
            Task.parish_id == parish_id,
            Task.week_id == from_week_id,
            Task.status == "OPEN",
            Task.archived_at.is_(None),
        )
        .order_by(Task.created_at, Task.id)
    ).scalars().all()

    rolled = 0
    for task in open_tasks:
        if task.id in already:
            continue
        session.add(
            Task(
                parish_id=parish_id,
                week_id=to_week_id,
                group_id=task.group_id,
                owner_id=task.owner_id,
                created_by_id=task.created_by_id,
                title=task.title,
                notes=task.notes,
                status="OPEN",
                visibility=task.visibility,
                approval_status=task.approval_status,
                rolled_from_task_id=task.id,
            )
        )
        rolled += 1
    if rolled:
        session.flush()
    return rolled
