"""Business logic for the meetings module.

``MeetingAdapter`` is the only entry point that creates meetings, hands out
join credentials and moves a meeting through its lifecycle::

    scheduled -> active -> ended
    scheduled | active -> cancelled

Status changes are published on the change feed after the transaction that
made them commits.
"""

import logging
import secrets
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.activity.service import log_activity
from app.auth.models import User
from app.config import Settings
from app.core.exceptions import (
    AppError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from app.core.pagination import PaginationParams
from app.core.realtime import ChangeFeed, RowChange
from app.database import as_utc, utcnow
from app.meetings import store
from app.meetings.models import (
    EndReason,
    LinkState,
    Meeting,
    MeetingLink,
    MeetingStatus,
)
from app.meetings.providers import RoomCapabilities, RoomProvider
from app.meetings.quota import QuotaEnforcer, QuotaUsage
from app.meetings.schemas import MeetingOptions

logger = logging.getLogger(__name__)

CANNOT_CANCEL_MESSAGE = "You cannot cancel this meeting at this time"

StatusCallback = Callable[[str, str | None], Awaitable[None] | None]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class CreatedMeeting:
    meeting_id: uuid.UUID
    meeting_url: str
    token: str
    expires_at: datetime
    duration_minutes: int
    title: str
    host_id: uuid.UUID


@dataclass
class LinkValidation:
    valid: bool
    reason: str | None = None
    message: str | None = None
    meeting_id: uuid.UUID | None = None
    title: str | None = None
    host_name: str | None = None
    expires_at: datetime | None = None


@dataclass
class JoinResult:
    success: bool
    meeting_id: uuid.UUID | None = None
    room_url: str | None = None
    join_token: str | None = None
    auto_end_at: datetime | None = None
    duration_minutes: int | None = None
    reason: str | None = None
    error: str | None = None


@dataclass
class EndResult:
    success: bool
    meeting_id: uuid.UUID
    status: MeetingStatus
    end_reason: EndReason | None = None
    duration_seconds: int | None = None
    already_ended: bool = False


@dataclass
class CancelResult:
    success: bool
    error: str | None = None


@dataclass
class MeetingStatusView:
    meeting_id: uuid.UUID
    title: str
    status: MeetingStatus
    time_exceeded: bool
    time_remaining: int | None
    auto_end_at: datetime | None
    end_reason: EndReason | None
    started_at: datetime | None
    ended_at: datetime | None


_LINK_MESSAGES = {
    "not_found": "This meeting link does not exist.",
    "used": "This meeting link has already been used.",
    "expired": "This meeting link has expired.",
    "unknown": "This meeting link could not be verified.",
}


def _invalid_link(reason: str) -> LinkValidation:
    return LinkValidation(valid=False, reason=reason, message=_LINK_MESSAGES[reason])


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class MeetingAdapter:
    def __init__(
        self,
        settings: Settings,
        provider: RoomProvider,
        quota: QuotaEnforcer,
        feed: ChangeFeed,
    ):
        self.settings = settings
        self.provider = provider
        self.quota = quota
        self.feed = feed

    def meeting_url(self, token: str) -> str:
        return f"{self.settings.public_base_url.rstrip('/')}/meet/{token}"

    # -- creation -----------------------------------------------------------

    async def create_meeting(
        self,
        db: AsyncSession,
        title: str,
        host: User,
        options: MeetingOptions,
    ) -> CreatedMeeting:
        """Schedule a meeting and issue its single-use link.

        The quota gate runs first and the provider room is created before any
        row is written. If persisting fails the room is torn down again.
        """
        decision = await self.quota.check(
            db, host.id, host.tenant_id, requested_minutes=options.duration_minutes
        )
        duration = decision.duration_minutes
        scheduled_start = as_utc(options.scheduled_start)
        max_participants = options.max_participants or self.settings.default_max_participants

        room = await self.provider.create_room(
            title,
            max_participants,
            RoomCapabilities(
                recording=options.recording_enabled,
                screen_share=options.screen_share_enabled,
                chat=options.chat_enabled,
            ),
            start_time=scheduled_start,
            duration_minutes=duration,
        )

        now = utcnow()
        token = secrets.token_urlsafe(32)
        expires_at = (scheduled_start or now) + timedelta(minutes=duration)
        policy_hours = options.cancellation_policy_hours
        if policy_hours is None:
            policy_hours = self.settings.default_cancellation_policy_hours

        try:
            meeting = await store.insert_meeting(
                db,
                Meeting(
                    host_id=host.id,
                    tenant_id=host.tenant_id,
                    calendar_event_id=options.calendar_event_id,
                    title=title,
                    participants=[str(p) for p in options.participants],
                    max_participants=max_participants,
                    provider=self.provider.name,
                    provider_room_name=room.name,
                    provider_room_url=room.url,
                    status=MeetingStatus.SCHEDULED,
                    scheduled_start=scheduled_start,
                    duration_limit_minutes=duration,
                    recording_enabled=options.recording_enabled,
                    screen_share_enabled=options.screen_share_enabled,
                    chat_enabled=options.chat_enabled,
                    cancellation_policy_hours=policy_hours,
                    allow_client_cancellation=options.allow_client_cancellation,
                ),
            )
            await store.insert_link(
                db,
                MeetingLink(
                    meeting_id=meeting.id,
                    token=token,
                    created_by=host.id,
                    expires_at=expires_at,
                ),
            )
            log_activity(
                db,
                user_id=host.id,
                action="created",
                resource_type="meeting",
                resource_id=str(meeting.id),
                details={"title": title, "duration_minutes": duration, "plan": decision.quota.plan},
            )
            await db.commit()
        except Exception as exc:
            await db.rollback()
            logger.error("Failed to persist meeting for room %s", room.name, exc_info=True)
            await self._discard_room(db, room.name, str(exc))
            raise

        logger.info("Meeting %s scheduled by %s (%d min)", meeting.id, host.id, duration)
        return CreatedMeeting(
            meeting_id=meeting.id,
            meeting_url=self.meeting_url(token),
            token=token,
            expires_at=expires_at,
            duration_minutes=duration,
            title=title,
            host_id=host.id,
        )

    async def _discard_room(self, db: AsyncSession, room_name: str, error: str) -> None:
        try:
            await self.provider.delete_room(room_name)
            return
        except AppError:
            logger.warning("Could not delete room %s, recording it as orphaned", room_name, exc_info=True)

        try:
            await store.record_orphaned_room(db, self.provider.name, room_name, error)
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("Could not record orphaned room %s", room_name)

    # -- links --------------------------------------------------------------

    async def validate_meeting_link(self, db: AsyncSession, token: str) -> LinkValidation:
        """Report whether a link can still be redeemed. Never writes."""
        link = await store.get_link_by_token(db, token)
        if link is None:
            return _invalid_link("not_found")

        meeting = await store.get_meeting(db, link.meeting_id)
        if meeting is None:
            return _invalid_link("unknown")

        state = link.state()
        if state is LinkState.USED:
            return _invalid_link("used")
        if state is LinkState.EXPIRED or meeting.status.is_terminal:
            return _invalid_link("expired")

        host = await db.scalar(select(User).where(User.id == meeting.host_id))
        return LinkValidation(
            valid=True,
            meeting_id=meeting.id,
            title=meeting.title,
            host_name=host.full_name if host else None,
            expires_at=as_utc(link.expires_at),
        )

    async def join_meeting(
        self,
        db: AsyncSession,
        token: str,
        user_id: uuid.UUID,
        user_name: str,
    ) -> JoinResult:
        """Redeem a single-use link for provider credentials.

        Redemption, the first-join activation and credential issuance share
        one transaction: a provider failure leaves the link unused.
        """
        now = utcnow()
        if not await store.redeem_link(db, token, user_id, now):
            reason = await self._unredeemable_reason(db, token, now)
            await db.rollback()
            logger.info("Rejected join with %s link", reason)
            return JoinResult(success=False, reason=reason, error=_LINK_MESSAGES[reason])

        link = await store.get_link_by_token(db, token)
        meeting = await store.get_meeting(db, link.meeting_id)
        if meeting is None or meeting.status.is_terminal:
            await db.rollback()
            return JoinResult(success=False, reason="expired", error=_LINK_MESSAGES["expired"])
        if meeting.status is MeetingStatus.ACTIVE and self.status_view(meeting, now).time_exceeded:
            meeting_id = meeting.id
            await db.rollback()
            logger.info("Refused join to meeting %s past its time limit", meeting_id)
            await self._end_at_time_limit(db, meeting_id)
            return JoinResult(success=False, reason="expired", error=_LINK_MESSAGES["expired"])

        activated = False
        if meeting.status is MeetingStatus.SCHEDULED:
            activated = await store.transition_meeting(
                db,
                meeting.id,
                [MeetingStatus.SCHEDULED],
                MeetingStatus.ACTIVE,
                started_at=now,
                auto_end_at=now + timedelta(minutes=meeting.duration_limit_minutes),
            )
            meeting = await store.get_meeting(db, meeting.id)

        auto_end_at = as_utc(meeting.auto_end_at)
        try:
            credential = await self.provider.issue_join_token(
                meeting.provider_room_name,
                user_name,
                is_owner=meeting.host_id == user_id,
                identity=f"user-{user_id}",
                expires_at=auto_end_at,
            )
        except ProviderError:
            meeting_id = meeting.id
            await db.rollback()
            logger.warning("Join token issuance failed for meeting %s", meeting_id, exc_info=True)
            raise

        log_activity(
            db,
            user_id=user_id,
            action="joined",
            resource_type="meeting",
            resource_id=str(meeting.id),
            details={"link_id": str(link.id)},
        )
        await db.commit()

        if activated:
            await self._publish_status(meeting.id, MeetingStatus.SCHEDULED, MeetingStatus.ACTIVE)

        return JoinResult(
            success=True,
            meeting_id=meeting.id,
            room_url=meeting.provider_room_url,
            join_token=credential.token,
            auto_end_at=auto_end_at,
            duration_minutes=meeting.duration_limit_minutes,
        )

    async def _unredeemable_reason(self, db: AsyncSession, token: str, now: datetime) -> str:
        link = await store.get_link_by_token(db, token)
        if link is None:
            return "not_found"
        if link.state(now) is LinkState.USED:
            return "used"
        return "expired"

    async def list_meeting_links(
        self, db: AsyncSession, meeting_id: uuid.UUID, user: User
    ) -> list[MeetingLink]:
        meeting = await self._get_meeting(db, meeting_id)
        if meeting.host_id != user.id and not user.is_admin:
            raise ForbiddenError("Only the host can view a meeting's links.")
        return await store.list_links(db, meeting_id)

    # -- lifecycle ----------------------------------------------------------

    async def start_meeting(self, db: AsyncSession, meeting_id: uuid.UUID, user: User) -> Meeting:
        """Explicitly activate a scheduled meeting. Host or admin only."""
        meeting = await self._get_meeting(db, meeting_id)
        if meeting.host_id != user.id and not user.is_admin:
            raise ForbiddenError("Only the host can start this meeting.")
        if meeting.status is MeetingStatus.ACTIVE:
            return meeting
        if meeting.status.is_terminal:
            raise ValidationError(f"Cannot start a meeting that is {meeting.status.value}.")

        now = utcnow()
        started = await store.transition_meeting(
            db,
            meeting.id,
            [MeetingStatus.SCHEDULED],
            MeetingStatus.ACTIVE,
            started_at=now,
            auto_end_at=now + timedelta(minutes=meeting.duration_limit_minutes),
        )
        if started:
            log_activity(
                db,
                user_id=user.id,
                action="started",
                resource_type="meeting",
                resource_id=str(meeting.id),
            )
        meeting = await store.get_meeting(db, meeting.id)
        if not started and meeting.status is not MeetingStatus.ACTIVE:
            current = meeting.status
            await db.rollback()
            raise ConflictError(f"Meeting {meeting_id} was {current.value} before it could start.")
        await db.commit()

        if started:
            await self._publish_status(meeting.id, MeetingStatus.SCHEDULED, MeetingStatus.ACTIVE)
        return meeting

    async def end_meeting(
        self,
        db: AsyncSession,
        meeting_id: uuid.UUID,
        user: User | None,
        reason: str,
        duration_seconds: int | None = None,
    ) -> EndResult:
        """End an active meeting.

        ``user`` is None only for the server-side time-limit sweep. Ending an
        already ended meeting succeeds without changing anything.
        """
        try:
            end_reason = EndReason(reason)
        except ValueError:
            raise ValidationError(f"Invalid end reason: {reason}") from None
        if duration_seconds is not None and duration_seconds < 0:
            raise ValidationError("Duration cannot be negative.")

        meeting = await self._get_meeting(db, meeting_id)
        if user is not None:
            await self._ensure_associated(db, meeting, user)

        if meeting.status is MeetingStatus.ENDED:
            return self._already_ended(meeting)
        if meeting.status is not MeetingStatus.ACTIVE:
            raise ValidationError(f"Cannot end a meeting that is {meeting.status.value}.")

        now = utcnow()
        if duration_seconds is None:
            started_at = as_utc(meeting.started_at)
            duration_seconds = int((now - started_at).total_seconds()) if started_at else 0

        ended = await store.transition_meeting(
            db,
            meeting.id,
            [MeetingStatus.ACTIVE],
            MeetingStatus.ENDED,
            ended_at=now,
            end_reason=end_reason,
            duration_seconds=duration_seconds,
        )
        if not ended:
            await db.rollback()
            meeting = await self._get_meeting(db, meeting_id)
            if meeting.status is MeetingStatus.ENDED:
                return self._already_ended(meeting)
            raise ValidationError(f"Cannot end a meeting that is {meeting.status.value}.")

        await store.expire_unused_links(db, meeting.id, now)
        log_activity(
            db,
            user_id=user.id if user else None,
            action="ended",
            resource_type="meeting",
            resource_id=str(meeting.id),
            details={"reason": end_reason.value, "duration_seconds": duration_seconds},
        )
        await db.commit()

        logger.info("Meeting %s ended (%s)", meeting.id, end_reason.value)
        await self._publish_status(meeting.id, MeetingStatus.ACTIVE, MeetingStatus.ENDED, end_reason)
        await self._delete_room_quietly(meeting.provider_room_name)

        return EndResult(
            success=True,
            meeting_id=meeting.id,
            status=MeetingStatus.ENDED,
            end_reason=end_reason,
            duration_seconds=duration_seconds,
        )

    @staticmethod
    def _already_ended(meeting: Meeting) -> EndResult:
        return EndResult(
            success=True,
            meeting_id=meeting.id,
            status=MeetingStatus.ENDED,
            end_reason=meeting.end_reason,
            duration_seconds=meeting.duration_seconds,
            already_ended=True,
        )

    def can_cancel(self, meeting: Meeting, user: User, now: datetime | None = None) -> bool:
        """Whether ``user`` may cancel ``meeting`` right now.

        The host may cancel any live meeting. Other participants need the
        meeting to allow it and must be at least ``cancellation_policy_hours``
        ahead of the scheduled start.
        """
        if meeting.status.is_terminal:
            return False
        if meeting.host_id == user.id or user.is_admin:
            return True
        if not meeting.is_associated(user.id) or not meeting.allow_client_cancellation:
            return False
        if meeting.scheduled_start is None:
            return True

        now = now or utcnow()
        notice = as_utc(meeting.scheduled_start) - now
        return notice >= timedelta(hours=meeting.cancellation_policy_hours)

    async def cancel_meeting(
        self,
        db: AsyncSession,
        meeting_id: uuid.UUID,
        user: User,
        reason: str | None = None,
    ) -> CancelResult:
        meeting = await self._get_meeting(db, meeting_id)
        if not self.can_cancel(meeting, user):
            await db.rollback()
            return CancelResult(success=False, error=CANNOT_CANCEL_MESSAGE)

        now = utcnow()
        previous = meeting.status
        cancelled = await store.transition_meeting(
            db,
            meeting.id,
            [MeetingStatus.SCHEDULED, MeetingStatus.ACTIVE],
            MeetingStatus.CANCELLED,
            cancelled_by=user.id,
            cancelled_at=now,
            cancellation_reason=reason,
        )
        if not cancelled:
            await db.rollback()
            return CancelResult(success=False, error=CANNOT_CANCEL_MESSAGE)

        await store.expire_unused_links(db, meeting.id, now)
        log_activity(
            db,
            user_id=user.id,
            action="cancelled",
            resource_type="meeting",
            resource_id=str(meeting.id),
            details={"reason": reason} if reason else None,
        )
        await db.commit()

        logger.info("Meeting %s cancelled by %s", meeting.id, user.id)
        await self._publish_status(meeting.id, previous, MeetingStatus.CANCELLED)
        await self._delete_room_quietly(meeting.provider_room_name)
        return CancelResult(success=True)

    # -- status -------------------------------------------------------------

    async def get_meeting_status(self, db: AsyncSession, meeting_id: uuid.UUID) -> MeetingStatusView:
        meeting = await self._get_meeting(db, meeting_id)
        return self.status_view(meeting)

    def status_view(self, meeting: Meeting, now: datetime | None = None) -> MeetingStatusView:
        now = now or utcnow()
        auto_end_at = as_utc(meeting.auto_end_at)
        time_exceeded = auto_end_at is not None and now >= auto_end_at
        time_remaining = None
        if meeting.status is MeetingStatus.ACTIVE and auto_end_at is not None:
            time_remaining = max(int((auto_end_at - now).total_seconds()), 0)

        return MeetingStatusView(
            meeting_id=meeting.id,
            title=meeting.title,
            status=meeting.status,
            time_exceeded=time_exceeded,
            time_remaining=time_remaining,
            auto_end_at=auto_end_at,
            end_reason=meeting.end_reason,
            started_at=as_utc(meeting.started_at),
            ended_at=as_utc(meeting.ended_at),
        )

    def subscribe_meeting_status(
        self, meeting_id: uuid.UUID, on_change: StatusCallback
    ) -> Callable[[], None]:
        """Call ``on_change(status, end_reason)`` whenever the meeting's status changes."""

        def handle(change: RowChange):
            if not change.changed("status"):
                return None
            return on_change(change.new["status"], change.new.get("end_reason"))

        return self.feed.subscribe("meetings", str(meeting_id), "UPDATE", handle)

    async def _publish_status(
        self,
        meeting_id: uuid.UUID,
        old: MeetingStatus,
        new: MeetingStatus,
        end_reason: EndReason | None = None,
    ) -> None:
        await self.feed.publish(
            RowChange(
                table="meetings",
                row_id=str(meeting_id),
                event="UPDATE",
                new={"status": new.value, "end_reason": end_reason.value if end_reason else None},
                old={"status": old.value},
            )
        )

    # -- queries ------------------------------------------------------------

    async def get_meeting_for_user(
        self, db: AsyncSession, meeting_id: uuid.UUID, user: User
    ) -> Meeting:
        meeting = await self._get_meeting(db, meeting_id)
        await self._ensure_associated(db, meeting, user)
        return meeting

    async def list_user_meetings(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        status: MeetingStatus | None = None,
        pagination: PaginationParams | None = None,
    ) -> tuple[list[Meeting], int]:
        pagination = pagination or PaginationParams()
        return await store.list_meetings_for_user(db, user_id, pagination, status=status)

    async def usage(self, db: AsyncSession, user: User) -> QuotaUsage:
        return await self.quota.usage(db, user.id, user.tenant_id)

    # -- background sweeps --------------------------------------------------

    async def end_overdue_meetings(self, db: AsyncSession) -> int:
        """End every active meeting whose auto-end deadline has passed."""
        overdue_ids = [m.id for m in await store.find_overdue_meetings(db, utcnow())]
        count = 0
        for meeting_id in overdue_ids:
            if await self._end_at_time_limit(db, meeting_id):
                count += 1
        return count

    async def _end_at_time_limit(self, db: AsyncSession, meeting_id: uuid.UUID) -> bool:
        """End an overdue meeting. False if someone else ended or cancelled it first."""
        try:
            result = await self.end_meeting(db, meeting_id, None, EndReason.TIME_LIMIT.value)
        except ValidationError:
            await db.rollback()
            return False
        return not result.already_ended

    async def sweep_orphaned_rooms(self, db: AsyncSession) -> int:
        """Retry deletion of provider rooms left behind by failed creations."""
        orphans = await store.list_orphaned_rooms(db, self.provider.name)
        deleted = 0
        for orphan in orphans:
            try:
                await self.provider.delete_room(orphan.room_name)
            except AppError as exc:
                orphan.attempts += 1
                orphan.last_error = exc.message
                logger.warning("Orphaned room %s still not deleted", orphan.room_name)
                continue
            await db.delete(orphan)
            deleted += 1
        await db.commit()
        return deleted

    # -- helpers ------------------------------------------------------------

    async def _get_meeting(self, db: AsyncSession, meeting_id: uuid.UUID) -> Meeting:
        meeting = await store.get_meeting(db, meeting_id)
        if meeting is None:
            raise NotFoundError("Meeting", str(meeting_id))
        return meeting

    async def _ensure_associated(self, db: AsyncSession, meeting: Meeting, user: User) -> None:
        if user.is_admin or meeting.is_associated(user.id):
            return
        if await store.has_redeemed_link(db, meeting.id, user.id):
            return
        raise ForbiddenError("You are not a participant of this meeting.")

    async def _delete_room_quietly(self, room_name: str) -> None:
        try:
            await self.provider.delete_room(room_name)
        except AppError:
            logger.warning("Failed to delete provider room %s", room_name, exc_info=True)
