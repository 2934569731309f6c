"""Pydantic schemas for the meetings module."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.meetings.models import EndReason, MeetingStatus


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class MeetingOptions(BaseModel):
    participants: list[uuid.UUID] = Field(default_factory=list)
    scheduled_start: datetime | None = None
    duration_minutes: int | None = Field(None, gt=0)
    max_participants: int | None = Field(None, ge=1, le=500)
    calendar_event_id: uuid.UUID | None = None
    recording_enabled: bool = False
    screen_share_enabled: bool = True
    chat_enabled: bool = True
    cancellation_policy_hours: int | None = Field(None, ge=0)
    allow_client_cancellation: bool = True


class MeetingCreate(MeetingOptions):
    title: str = Field(min_length=1, max_length=255)


class JoinRequest(BaseModel):
    user_name: str | None = Field(None, max_length=255)


class EndMeetingRequest(BaseModel):
    reason: EndReason = EndReason.MANUAL
    duration_seconds: int | None = Field(None, ge=0)


class CancelMeetingRequest(BaseModel):
    reason: str | None = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class CreatedMeetingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    meeting_id: uuid.UUID
    meeting_url: str
    token: str
    expires_at: datetime
    duration_minutes: int
    title: str
    host_id: uuid.UUID


class MeetingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    host_id: uuid.UUID
    tenant_id: uuid.UUID | None
    calendar_event_id: uuid.UUID | None
    title: str
    participants: list[str]
    max_participants: int
    provider: str
    status: MeetingStatus
    scheduled_start: datetime | None
    duration_limit_minutes: int
    started_at: datetime | None
    auto_end_at: datetime | None
    ended_at: datetime | None
    duration_seconds: int | None
    end_reason: EndReason | None
    recording_enabled: bool
    screen_share_enabled: bool
    chat_enabled: bool
    cancellation_policy_hours: int
    allow_client_cancellation: bool
    cancelled_by: uuid.UUID | None
    cancelled_at: datetime | None
    cancellation_reason: str | None
    created_at: datetime


class MeetingListItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    title: str
    status: MeetingStatus
    host_id: uuid.UUID
    scheduled_start: datetime | None
    duration_limit_minutes: int
    created_at: datetime


class LinkValidationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    valid: bool
    reason: str | None = None
    message: str | None = None
    meeting_id: uuid.UUID | None = None
    title: str | None = None
    host_name: str | None = None
    expires_at: datetime | None = None


class JoinResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    success: bool
    meeting_id: uuid.UUID | None = None
    room_url: str | None = None
    join_token: str | None = None
    auto_end_at: datetime | None = None
    duration_minutes: int | None = None
    reason: str | None = None
    error: str | None = None


class MeetingLinkResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    token: str
    created_by: uuid.UUID
    created_at: datetime
    expires_at: datetime
    used: bool
    used_at: datetime | None
    used_by: uuid.UUID | None


class EndMeetingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    success: bool
    meeting_id: uuid.UUID
    status: MeetingStatus
    end_reason: EndReason | None = None
    duration_seconds: int | None = None
    already_ended: bool = False


class CancelMeetingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    success: bool
    error: str | None = None


class MeetingStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    meeting_id: uuid.UUID
    title: str
    status: MeetingStatus
    time_exceeded: bool
    time_remaining: int | None
    auto_end_at: datetime | None
    end_reason: EndReason | None
    started_at: datetime | None
    ended_at: datetime | None


class QuotaUsageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    plan: str
    unrestricted: bool
    meetings_this_month: int
    meetings_remaining: int | None
    max_meetings_per_month: int
    max_minutes_per_meeting: int
