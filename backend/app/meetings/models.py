"""SQLAlchemy models for the meetings module."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, TimestampMixin, as_utc, utcnow


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class MeetingStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    ENDED = "ended"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (MeetingStatus.ENDED, MeetingStatus.CANCELLED)


class EndReason(str, enum.Enum):
    MANUAL = "manual"
    TIME_LIMIT = "time_limit"
    ALL_LEFT = "all_left"


class LinkState(str, enum.Enum):
    UNUSED = "unused"
    USED = "used"
    EXPIRED = "expired"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class Meeting(TimestampMixin, Base):
    __tablename__ = "meetings"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    host_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tenant_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("tenants.id", ondelete="SET NULL"), nullable=True, index=True
    )
    calendar_event_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    participants: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    max_participants: Mapped[int] = mapped_column(Integer, default=10, nullable=False)

    # Provider room; the URL is only handed out by a successful join.
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_room_name: Mapped[str] = mapped_column(
        String(100), unique=True, nullable=False
    )
    provider_room_url: Mapped[str] = mapped_column(String(500), nullable=False)

    status: Mapped[MeetingStatus] = mapped_column(
        Enum(MeetingStatus), default=MeetingStatus.SCHEDULED, nullable=False, index=True
    )
    scheduled_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    duration_limit_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    auto_end_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    ended_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    end_reason: Mapped[EndReason | None] = mapped_column(Enum(EndReason), nullable=True)

    recording_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    screen_share_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    chat_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    cancellation_policy_hours: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    allow_client_cancellation: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    cancelled_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Relationships
    links: Mapped[list["MeetingLink"]] = relationship(
        "MeetingLink", back_populates="meeting", lazy="selectin"
    )

    def is_associated(self, user_id: uuid.UUID) -> bool:
        return self.host_id == user_id or str(user_id) in (self.participants or [])


class MeetingLink(Base):
    __tablename__ = "meeting_links"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    meeting_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("meetings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    token: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    created_by: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    used_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    meeting: Mapped[Meeting] = relationship(
        "Meeting", back_populates="links", lazy="selectin"
    )

    def state(self, now: datetime | None = None) -> LinkState:
        if self.used:
            return LinkState.USED
        if as_utc(self.expires_at) <= (now or utcnow()):
            return LinkState.EXPIRED
        return LinkState.UNUSED


class OrphanedRoom(Base):
    """A provider room whose meeting was never persisted."""

    __tablename__ = "orphaned_rooms"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    room_name: Mapped[str] = mapped_column(String(100), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
