"""Persistence for meetings and single-use links.

Every status change and every link redemption is a single conditional
``UPDATE`` whose ``WHERE`` clause carries the precondition, so two requests
racing on the same row cannot both win. Callers own the transaction.
"""

import uuid
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import Text, cast, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.pagination import PaginationParams, paginate
from app.meetings.models import Meeting, MeetingLink, MeetingStatus, OrphanedRoom


# ---------------------------------------------------------------------------
# Meetings
# ---------------------------------------------------------------------------


async def insert_meeting(db: AsyncSession, meeting: Meeting) -> Meeting:
    db.add(meeting)
    await db.flush()
    return meeting


async def get_meeting(db: AsyncSession, meeting_id: uuid.UUID) -> Meeting | None:
    result = await db.execute(
        select(Meeting)
        .where(Meeting.id == meeting_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def transition_meeting(
    db: AsyncSession,
    meeting_id: uuid.UUID,
    from_statuses: Iterable[MeetingStatus],
    to_status: MeetingStatus,
    **values,
) -> bool:
    """Move a meeting to ``to_status`` only if it is currently in ``from_statuses``.

    Returns whether the row was updated.
    """
    result = await db.execute(
        update(Meeting)
        .where(Meeting.id == meeting_id, Meeting.status.in_(list(from_statuses)))
        .values(status=to_status, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def count_hosted_since(db: AsyncSession, host_id: uuid.UUID, since: datetime) -> int:
    return await db.scalar(
        select(func.count())
        .select_from(Meeting)
        .where(Meeting.host_id == host_id, Meeting.created_at >= since)
    ) or 0


async def list_meetings_for_user(
    db: AsyncSession,
    user_id: uuid.UUID,
    pagination: PaginationParams,
    status: MeetingStatus | None = None,
) -> tuple[list[Meeting], int]:
    """Meetings the user hosts or is invited to, newest first."""
    # Participants are a JSON list of id strings; match the quoted id.
    invited = cast(Meeting.participants, Text).contains(f'"{user_id}"')
    query = select(Meeting).where(or_(Meeting.host_id == user_id, invited))
    if status is not None:
        query = query.where(Meeting.status == status)

    return await paginate(
        db, query.order_by(Meeting.created_at.desc()), pagination, populate_existing=True
    )


async def find_overdue_meetings(db: AsyncSession, now: datetime) -> list[Meeting]:
    result = await db.execute(
        select(Meeting).where(
            Meeting.status == MeetingStatus.ACTIVE,
            Meeting.auto_end_at.is_not(None),
            Meeting.auto_end_at <= now,
        )
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Links
# ---------------------------------------------------------------------------


async def insert_link(db: AsyncSession, link: MeetingLink) -> MeetingLink:
    db.add(link)
    await db.flush()
    return link


async def get_link_by_token(db: AsyncSession, token: str) -> MeetingLink | None:
    result = await db.execute(
        select(MeetingLink)
        .where(MeetingLink.token == token)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_links(db: AsyncSession, meeting_id: uuid.UUID) -> list[MeetingLink]:
    result = await db.execute(
        select(MeetingLink)
        .where(MeetingLink.meeting_id == meeting_id)
        .order_by(MeetingLink.created_at.desc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def redeem_link(
    db: AsyncSession,
    token: str,
    user_id: uuid.UUID,
    now: datetime,
) -> bool:
    """Mark a link used if, and only if, it is still unused and unexpired."""
    result = await db.execute(
        update(MeetingLink)
        .where(
            MeetingLink.token == token,
            MeetingLink.used.is_(False),
            MeetingLink.expires_at > now,
        )
        .values(used=True, used_at=now, used_by=user_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def expire_unused_links(db: AsyncSession, meeting_id: uuid.UUID, now: datetime) -> int:
    result = await db.execute(
        update(MeetingLink)
        .where(MeetingLink.meeting_id == meeting_id, MeetingLink.used.is_(False))
        .values(expires_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def has_redeemed_link(db: AsyncSession, meeting_id: uuid.UUID, user_id: uuid.UUID) -> bool:
    found = await db.scalar(
        select(MeetingLink.id).where(
            MeetingLink.meeting_id == meeting_id, MeetingLink.used_by == user_id
        ).limit(1)
    )
    return found is not None


# ---------------------------------------------------------------------------
# Orphaned provider rooms
# ---------------------------------------------------------------------------


async def record_orphaned_room(
    db: AsyncSession, provider: str, room_name: str, error: str | None
) -> OrphanedRoom:
    orphan = OrphanedRoom(provider=provider, room_name=room_name, last_error=error)
    db.add(orphan)
    await db.flush()
    return orphan


async def list_orphaned_rooms(db: AsyncSession, provider: str) -> list[OrphanedRoom]:
    result = await db.execute(
        select(OrphanedRoom)
        .where(OrphanedRoom.provider == provider)
        .order_by(OrphanedRoom.created_at)
    )
    return list(result.scalars().all())
