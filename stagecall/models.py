"""SQLAlchemy models for StageCall."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()

STATUS_DRAFT = "draft"
STATUS_PLANNED = "planned"
REHEARSAL_STATUSES = {STATUS_DRAFT, STATUS_PLANNED}

RECIPIENT_PENDING = "pending"
RECIPIENT_RESPONDED = "responded"

ATTENDANCE_YES = "yes"
ATTENDANCE_NO = "no"
ATTENDANCE_EMERGENCY = "emergency"
ATTENDANCE_STATUSES = {ATTENDANCE_YES, ATTENDANCE_NO, ATTENDANCE_EMERGENCY}


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class Member(Base):
    __tablename__ = "members"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(120), nullable=False)
    email = Column(String(255), nullable=True, unique=True)
    role = Column(String(32), nullable=False, default="member")
    api_token = Column(String(128), nullable=False, unique=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    extra_roles = relationship(
        "MemberRole",
        back_populates="member",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def roles(self) -> set[str]:
        """Primary role plus every extra role."""
        return {self.role, *(entry.role for entry in self.extra_roles)}

    @property
    def display_name(self) -> str:
        return (self.name or "").strip() or (self.email or "").strip() or "A member"


class MemberRole(Base):
    __tablename__ = "member_roles"
    __table_args__ = (UniqueConstraint("member_id", "role"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    member_id = Column(
        String(36), ForeignKey("members.id", ondelete="CASCADE"), nullable=False
    )
    role = Column(String(32), nullable=False)

    member = relationship("Member", back_populates="extra_roles")


class Rehearsal(Base):
    __tablename__ = "rehearsals"

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String(255), nullable=False)
    start = Column(DateTime, nullable=False, index=True)
    end = Column(DateTime, nullable=False)
    location = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default=STATUS_DRAFT)
    registration_deadline = Column(DateTime, nullable=True)
    required_roles = Column(JSON, nullable=False, default=list)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, nullable=False)

    invitees = relationship(
        "RehearsalInvitee",
        back_populates="rehearsal",
        cascade="all, delete-orphan",
    )
    notifications = relationship(
        "Notification",
        back_populates="rehearsal",
        cascade="all, delete-orphan",
        order_by="Notification.created_at",
    )
    attendance = relationship(
        "RehearsalAttendance",
        back_populates="rehearsal",
        cascade="all, delete-orphan",
    )

    @property
    def is_draft(self) -> bool:
        return self.status == STATUS_DRAFT

    @property
    def invitee_ids(self) -> set[str]:
        return {entry.member_id for entry in self.invitees}


class RehearsalInvitee(Base):
    __tablename__ = "rehearsal_invitees"
    __table_args__ = (UniqueConstraint("rehearsal_id", "member_id"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    rehearsal_id = Column(
        String(36), ForeignKey("rehearsals.id", ondelete="CASCADE"), nullable=False
    )
    member_id = Column(String(36), nullable=False)

    rehearsal = relationship("Rehearsal", back_populates="invitees")


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=_uuid)
    rehearsal_id = Column(
        String(36),
        ForeignKey("rehearsals.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=True)
    type = Column(String(32), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    rehearsal = relationship("Rehearsal", back_populates="notifications")
    recipients = relationship(
        "NotificationRecipient",
        back_populates="notification",
        cascade="all, delete-orphan",
    )


class NotificationRecipient(Base):
    __tablename__ = "notification_recipients"
    __table_args__ = (UniqueConstraint("notification_id", "member_id"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    notification_id = Column(
        String(36),
        ForeignKey("notifications.id", ondelete="CASCADE"),
        nullable=False,
    )
    member_id = Column(String(36), nullable=False, index=True)
    state = Column(String(16), nullable=False, default=RECIPIENT_PENDING)
    response = Column(String(16), nullable=True)
    responded_at = Column(DateTime, nullable=True)

    notification = relationship("Notification", back_populates="recipients")

    @property
    def has_responded(self) -> bool:
        return self.state == RECIPIENT_RESPONDED


class RehearsalAttendance(Base):
    """A member's latest answer for one rehearsal, independent of threads."""

    __tablename__ = "rehearsal_attendance"
    __table_args__ = (UniqueConstraint("rehearsal_id", "member_id"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    rehearsal_id = Column(
        String(36), ForeignKey("rehearsals.id", ondelete="CASCADE"), nullable=False
    )
    member_id = Column(String(36), nullable=False, index=True)
    status = Column(String(16), nullable=False)
    emergency_reason = Column(String(500), nullable=True)
    updated_at = Column(DateTime, default=_now, nullable=False)

    rehearsal = relationship("Rehearsal", back_populates="attendance")


class BlockedDay(Base):
    __tablename__ = "blocked_days"

    id = Column(String(36), primary_key=True, default=_uuid)
    member_id = Column(
        String(36), ForeignKey("members.id", ondelete="CASCADE"), nullable=False
    )
    day = Column(Date, nullable=False, index=True)
    reason = Column(String(255), nullable=True)
