"""FastAPI router for the meetings module."""

import asyncio
import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession

from app.activity.schemas import ActivityLogResponse
from app.activity.service import list_activity
from app.auth.models import Role, User
from app.core.exceptions import AppError
from app.core.pagination import PaginationParams, build_pagination_meta, get_pagination
from app.dependencies import (
    get_current_user,
    get_db,
    get_meeting_adapter,
    require_role,
    resolve_user,
)
from app.meetings.models import MeetingStatus
from app.meetings.schemas import (
    CancelMeetingRequest,
    CancelMeetingResponse,
    CreatedMeetingResponse,
    EndMeetingRequest,
    EndMeetingResponse,
    JoinRequest,
    JoinResponse,
    LinkValidationResponse,
    MeetingCreate,
    MeetingLinkResponse,
    MeetingListItem,
    MeetingResponse,
    MeetingStatusResponse,
    QuotaUsageResponse,
)
from app.meetings.service import MeetingAdapter

router = APIRouter()
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


@router.post("/", status_code=201)
async def create_meeting(
    data: MeetingCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
    adapter: Annotated[MeetingAdapter, Depends(get_meeting_adapter)],
    current_user: Annotated[User, Depends(require_role([Role.ADMIN, Role.MEMBER]))],
) -> dict:
    """Schedule a meeting and return its single-use link."""
    created = await adapter.create_meeting(db, data.title, current_user, data)
    return {"data": CreatedMeetingResponse.model_validate(created)}


@router.get("/")
async def list_meetings(
    db: Annotated[AsyncSession, Depends(get_db)],
    adapter: Annotated[MeetingAdapter, Depends(get_meeting_adapter)],
    current_user: Annotated[User, Depends(get_current_user)],
    pagination: Annotated[PaginationParams, Depends(get_pagination)],
    status: MeetingStatus | None = None,
) -> dict:
    """List meetings the current user hosts or is invited to."""
    meetings, total_count = await adapter.list_user_meetings(
        db, current_user.id, status=status, pagination=pagination
    )
    return {
        "data": [MeetingListItem.model_validate(m) for m in meetings],
        "meta": build_pagination_meta(total_count, pagination),
    }


@router.get("/usage")
async def get_usage(
    db: Annotated[AsyncSession, Depends(get_db)],
    adapter: Annotated[MeetingAdapter, Depends(get_meeting_adapter)],
    current_user: Annotated[User, Depends(get_current_user)],
) -> dict:
    """This month's meeting count against the current user's plan."""
    usage = await adapter.usage(db, current_user)
    return {"data": QuotaUsageResponse.model_validate(usage)}


# ---------------------------------------------------------------------------
# Single-use links
# ---------------------------------------------------------------------------


@router.get("/by-token/{token}/validate")
async def validate_link(
    token: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    adapter: Annotated[MeetingAdapter, Depends(get_meeting_adapter)],
) -> dict:
    """Check a meeting link without redeeming it. No authentication required."""
    validation = await adapter.validate_meeting_link(db, token)
    return {"data": LinkValidationResponse.model_validate(validation)}


@router.post("/by-token/{token}/join")
async def join_meeting(
    token: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    adapter: Annotated[MeetingAdapter, Depends(get_meeting_adapter)],
    current_user: Annotated[User, Depends(get_current_user)],
    data: JoinRequest | None = None,
) -> dict:
    """Redeem a meeting link for room credentials."""
    user_name = (data.user_name if data else None) or current_user.full_name
    result = await adapter.join_meeting(db, token, current_user.id, user_name)
    return {"data": JoinResponse.model_validate(result)}


# ---------------------------------------------------------------------------
# Single meeting
# ---------------------------------------------------------------------------


@router.get("/{meeting_id}")
async def get_meeting(
    meeting_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    adapter: Annotated[MeetingAdapter, Depends(get_meeting_adapter)],
    current_user: Annotated[User, Depends(get_current_user)],
) -> dict:
    meeting = await adapter.get_meeting_for_user(db, meeting_id, current_user)
    return {"data": MeetingResponse.model_validate(meeting)}


@router.get("/{meeting_id}/status")
async def get_meeting_status(
    meeting_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    adapter: Annotated[MeetingAdapter, Depends(get_meeting_adapter)],
    current_user: Annotated[User, Depends(get_current_user)],
) -> dict:
    meeting = await adapter.get_meeting_for_user(db, meeting_id, current_user)
    return {"data": MeetingStatusResponse.model_validate(adapter.status_view(meeting))}


@router.post("/{meeting_id}/start")
async def start_meeting(
    meeting_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    adapter: Annotated[MeetingAdapter, Depends(get_meeting_adapter)],
    current_user: Annotated[User, Depends(get_current_user)],
) -> dict:
    meeting = await adapter.start_meeting(db, meeting_id, current_user)
    return {"data": MeetingStatusResponse.model_validate(adapter.status_view(meeting))}


@router.post("/{meeting_id}/end")
async def end_meeting(
    meeting_id: uuid.UUID,
    data: EndMeetingRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    adapter: Annotated[MeetingAdapter, Depends(get_meeting_adapter)],
    current_user: Annotated[User, Depends(get_current_user)],
) -> dict:
    result = await adapter.end_meeting(
        db, meeting_id, current_user, data.reason.value, data.duration_seconds
    )
    return {"data": EndMeetingResponse.model_validate(result)}


@router.post("/{meeting_id}/cancel")
async def cancel_meeting(
    meeting_id: uuid.UUID,
    data: CancelMeetingRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    adapter: Annotated[MeetingAdapter, Depends(get_meeting_adapter)],
    current_user: Annotated[User, Depends(get_current_user)],
) -> dict:
    result = await adapter.cancel_meeting(db, meeting_id, current_user, data.reason)
    return {"data": CancelMeetingResponse.model_validate(result)}


@router.get("/{meeting_id}/links")
async def list_links(
    meeting_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    adapter: Annotated[MeetingAdapter, Depends(get_meeting_adapter)],
    current_user: Annotated[User, Depends(get_current_user)],
) -> dict:
    links = await adapter.list_meeting_links(db, meeting_id, current_user)
    return {"data": [MeetingLinkResponse.model_validate(link) for link in links]}


@router.get("/{meeting_id}/activity")
async def list_meeting_activity(
    meeting_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    adapter: Annotated[MeetingAdapter, Depends(get_meeting_adapter)],
    current_user: Annotated[User, Depends(get_current_user)],
    pagination: Annotated[PaginationParams, Depends(get_pagination)],
) -> dict:
    """Audit trail of a meeting, newest first."""
    await adapter.get_meeting_for_user(db, meeting_id, current_user)
    entries, total_count = await list_activity(db, "meeting", str(meeting_id), pagination)
    return {
        "data": [ActivityLogResponse.model_validate(e) for e in entries],
        "meta": build_pagination_meta(total_count, pagination),
    }


# ---------------------------------------------------------------------------
# Realtime status
# ---------------------------------------------------------------------------


@router.websocket("/{meeting_id}/status/ws")
async def meeting_status_ws(
    websocket: WebSocket,
    meeting_id: uuid.UUID,
    token: str = Query(...),
):
    """Push status changes of one meeting to a connected client.

    Sends the current status on connect, then one message per change. The
    subscription is taken before the snapshot is read, so a change committed
    while the socket is being accepted is queued rather than lost.
    """
    app_state = websocket.app.state
    adapter: MeetingAdapter = app_state.meeting_adapter
    changes: asyncio.Queue[tuple[str, str | None]] = asyncio.Queue()

    def enqueue(status: str, end_reason: str | None) -> None:
        changes.put_nowait((status, end_reason))

    unsubscribe = adapter.subscribe_meeting_status(meeting_id, enqueue)
    try:
        async with app_state.session_factory() as db:
            user = await resolve_user(db, token, app_state.settings)
            if user is None:
                await websocket.close(code=4001, reason="Invalid token")
                return
            try:
                meeting = await adapter.get_meeting_for_user(db, meeting_id, user)
            except AppError as exc:
                await websocket.close(code=4003, reason=exc.message)
                return
            view = adapter.status_view(meeting)

        await websocket.accept()
        last_status = view.status.value
        await websocket.send_json(
            {
                "type": "status",
                "status": last_status,
                "end_reason": view.end_reason.value if view.end_reason else None,
            }
        )

        async def forward() -> None:
            nonlocal last_status
            while True:
                status, end_reason = await changes.get()
                # Changes that landed before the snapshot was read are already in it.
                if status == last_status:
                    continue
                last_status = status
                await websocket.send_json({"type": "status", "status": status, "end_reason": end_reason})

        forwarder = asyncio.create_task(forward())
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug("Status subscriber for meeting %s disconnected", meeting_id)
        finally:
            forwarder.cancel()
    finally:
        unsubscribe()
