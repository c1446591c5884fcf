# models.py
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship, validates

from schedule.clock import resolve_timezone

Base = declarative_base()


def new_id() -> str:
    return uuid.uuid4().hex


# All DateTime columns hold naive UTC.


class Parish(Base):
    __tablename__ = "parishes"
    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String(160), nullable=False)
    slug = Column(String(80), unique=True, nullable=False)
    timezone = Column(String(64))
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    deactivated_at = Column(DateTime)

    memberships = relationship("Membership", back_populates="parish", cascade="all, delete-orphan")
    weeks = relationship("Week", back_populates="parish")

    @validates("timezone")
    def validate_timezone(self, key, value):
        value = (value or "").strip() or None
        if value is not None:
            resolve_timezone(value)
        return value


class User(Base):
    __tablename__ = "users"
    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String(120))
    email = Column(String(255), unique=True)
    active_parish_id = Column(String(32), ForeignKey("parishes.id", ondelete="SET NULL"))
    discord_webhook = Column(String(255))
    notification_channels = Column(JSON, default=list)
    digest_enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    memberships = relationship("Membership", back_populates="user", cascade="all, delete-orphan")


class Membership(Base):
    __tablename__ = "memberships"
    __table_args__ = (UniqueConstraint("parish_id", "user_id", name="uq_membership_parish_user"),)
    id = Column(String(32), primary_key=True, default=new_id)
    parish_id = Column(String(32), ForeignKey("parishes.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role = Column(String(20), default="MEMBER", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    parish = relationship("Parish", back_populates="memberships")
    user = relationship("User", back_populates="memberships")


class Group(Base):
    __tablename__ = "groups"
    id = Column(String(32), primary_key=True, default=new_id)
    parish_id = Column(String(32), ForeignKey("parishes.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(160), nullable=False)
    description = Column(Text)
    visibility = Column(String(20), default="PUBLIC", nullable=False)
    archived_at = Column(DateTime)

    memberships = relationship("GroupMembership", back_populates="group", cascade="all, delete-orphan")


class GroupMembership(Base):
    __tablename__ = "group_memberships"
    __table_args__ = (UniqueConstraint("group_id", "user_id", name="uq_group_membership_group_user"),)
    id = Column(String(32), primary_key=True, default=new_id)
    group_id = Column(String(32), ForeignKey("groups.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role = Column(String(20), default="PARISHIONER", nullable=False)
    status = Column(String(20), default="ACTIVE", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    group = relationship("Group", back_populates="memberships")


class Week(Base):
    __tablename__ = "weeks"
    __table_args__ = (UniqueConstraint("parish_id", "starts_on", name="uq_week_parish_starts_on"),)
    id = Column(String(32), primary_key=True, default=new_id)
    parish_id = Column(String(32), ForeignKey("parishes.id", ondelete="CASCADE"), nullable=False)
    starts_on = Column(DateTime, nullable=False)
    ends_on = Column(DateTime, nullable=False)
    label = Column(String(16), nullable=False)
    rolled_over_at = Column(DateTime)

    parish = relationship("Parish", back_populates="weeks")
    tasks = relationship("Task", back_populates="week")
    events = relationship("Event", back_populates="week")


class Task(Base):
    __tablename__ = "tasks"
    id = Column(String(32), primary_key=True, default=new_id)
    parish_id = Column(String(32), ForeignKey("parishes.id", ondelete="CASCADE"), nullable=False)
    week_id = Column(String(32), ForeignKey("weeks.id", ondelete="CASCADE"), nullable=False)
    group_id = Column(String(32), ForeignKey("groups.id", ondelete="SET NULL"))
    owner_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_by_id = Column(String(32), ForeignKey("users.id", ondelete="SET NULL"))
    title = Column(String(255), nullable=False)
    notes = Column(Text)
    status = Column(String(20), default="OPEN", nullable=False)
    visibility = Column(String(20), default="PUBLIC", nullable=False)
    approval_status = Column(String(20), default="APPROVED", nullable=False)
    completed_at = Column(DateTime)
    completed_by_id = Column(String(32), ForeignKey("users.id", ondelete="SET NULL"))
    archived_at = Column(DateTime)
    rolled_from_task_id = Column(String(32), ForeignKey("tasks.id", ondelete="SET NULL"))
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    week = relationship("Week", back_populates="tasks")
    owner = relationship("User", foreign_keys=[owner_id])


class Event(Base):
    __tablename__ = "events"
    id = Column(String(32), primary_key=True, default=new_id)
    parish_id = Column(String(32), ForeignKey("parishes.id", ondelete="CASCADE"), nullable=False)
    week_id = Column(String(32), ForeignKey("weeks.id", ondelete="CASCADE"), nullable=False)
    group_id = Column(String(32), ForeignKey("groups.id", ondelete="SET NULL"))
    created_by_id = Column(String(32), ForeignKey("users.id", ondelete="SET NULL"))
    title = Column(String(255), nullable=False)
    location = Column(String(255))
    summary = Column(Text)
    starts_at = Column(DateTime, nullable=False)
    ends_at = Column(DateTime, nullable=False)
    visibility = Column(String(20), default="PUBLIC", nullable=False)
    recurrence_freq = Column(String(10), default="NONE", nullable=False)
    recurrence_interval = Column(Integer, default=1, nullable=False)
    recurrence_by_weekday = Column(JSON, default=list)
    recurrence_until = Column(DateTime)
    recurrence_parent_id = Column(String(32), ForeignKey("events.id", ondelete="CASCADE"))
    recurrence_original_starts_at = Column(DateTime)
    deleted_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    week = relationship("Week", back_populates="events")


class EventRecurrenceException(Base):
    __tablename__ = "event_recurrence_exceptions"
    __table_args__ = (
        UniqueConstraint("event_id", "occurrence_starts_at", name="uq_event_exception_occurrence"),
    )
    id = Column(String(32), primary_key=True, default=new_id)
    event_id = Column(String(32), ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    occurrence_starts_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ChatChannel(Base):
    __tablename__ = "chat_channels"
    id = Column(String(32), primary_key=True, default=new_id)
    parish_id = Column(String(32), ForeignKey("parishes.id", ondelete="CASCADE"), nullable=False)
    group_id = Column(String(32), ForeignKey("groups.id", ondelete="CASCADE"))
    name = Column(String(160), nullable=False)
    type = Column(String(20), default="PARISH", nullable=False)

    memberships = relationship("ChatChannelMembership", back_populates="channel", cascade="all, delete-orphan")

    @property
    def restricted(self) -> bool:
        """True when access is limited to an explicit member list."""
        return bool(self.memberships)


class ChatChannelMembership(Base):
    __tablename__ = "chat_channel_memberships"
    __table_args__ = (UniqueConstraint("channel_id", "user_id", name="uq_channel_membership"),)
    id = Column(String(32), primary_key=True, default=new_id)
    channel_id = Column(String(32), ForeignKey("chat_channels.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    channel = relationship("ChatChannel", back_populates="memberships")


class Announcement(Base):
    __tablename__ = "announcements"
    id = Column(String(32), primary_key=True, default=new_id)
    parish_id = Column(String(32), ForeignKey("parishes.id", ondelete="CASCADE"), nullable=False)
    created_by_id = Column(String(32), ForeignKey("users.id", ondelete="SET NULL"))
    title = Column(String(255), nullable=False)
    body = Column(Text)
    scope_type = Column(String(20), default="PARISH", nullable=False)
    chat_channel_id = Column(String(32), ForeignKey("chat_channels.id", ondelete="SET NULL"))
    published_at = Column(DateTime)
    archived_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    chat_channel = relationship("ChatChannel")


class Request(Base):
    __tablename__ = "requests"
    id = Column(String(32), primary_key=True, default=new_id)
    parish_id = Column(String(32), ForeignKey("parishes.id", ondelete="CASCADE"), nullable=False)
    created_by_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    assigned_to_id = Column(String(32), ForeignKey("users.id", ondelete="SET NULL"))
    title = Column(String(255), nullable=False)
    type = Column(String(40), default="GENERIC", nullable=False)
    status = Column(String(20), default="SUBMITTED", nullable=False)
    visibility_scope = Column(String(20), default="ADMIN_ALL", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Digest(Base):
    __tablename__ = "digests"
    __table_args__ = (UniqueConstraint("parish_id", "week_id", name="uq_digest_parish_week"),)
    id = Column(String(32), primary_key=True, default=new_id)
    parish_id = Column(String(32), ForeignKey("parishes.id", ondelete="CASCADE"), nullable=False)
    week_id = Column(String(32), ForeignKey("weeks.id", ondelete="CASCADE"), nullable=False)
    content = Column(Text, nullable=False, default="")
    status = Column(String(20), default="DRAFT", nullable=False)
    published_at = Column(DateTime)
    created_by_id = Column(String(32), ForeignKey("users.id", ondelete="SET NULL"))


class EventReminder(Base):
    """One reminder per member per occurrence start."""

    __tablename__ = "event_reminders"
    __table_args__ = (
        UniqueConstraint("event_id", "user_id", "occurrence_starts_at", name="uq_event_reminder_occurrence"),
    )
    id = Column(String(32), primary_key=True, default=new_id)
    event_id = Column(String(32), ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    occurrence_starts_at = Column(DateTime, nullable=False)
    sent_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class DigestDelivery(Base):
    __tablename__ = "digest_deliveries"
    __table_args__ = (UniqueConstraint("parish_id", "week_id", "user_id", name="uq_digest_delivery_week_user"),)
    id = Column(String(32), primary_key=True, default=new_id)
    parish_id = Column(String(32), ForeignKey("parishes.id", ondelete="CASCADE"), nullable=False)
    week_id = Column(String(32), ForeignKey("weeks.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    sent_at = Column(DateTime, default=datetime.utcnow, nullable=False)
