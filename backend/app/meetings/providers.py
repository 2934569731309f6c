"""Video room providers.

The only place that knows how a provider names rooms, what its room URLs look
like and how its join credentials are minted. API secrets stay in server
settings; callers only ever see ``ProviderRoom`` and ``JoinToken``.
"""

import json
import logging
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta

import httpx

from app.config import Settings
from app.core.exceptions import (
    RoomCreationFailed,
    RoomDeletionFailed,
    TokenIssuanceFailed,
    ValidationError,
)
from app.database import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoomCapabilities:
    recording: bool = False
    screen_share: bool = True
    chat: bool = True


@dataclass(frozen=True)
class ProviderRoom:
    name: str
    url: str
    not_before: datetime | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class JoinToken:
    token: str
    expires_at: datetime | None = None


def generate_room_name(prefix: str = "room") -> str:
    return f"{prefix}-{int(time.time())}-{secrets.token_hex(4)}"


def room_window(
    start_time: datetime | None,
    duration_minutes: int | None,
    now: datetime | None = None,
) -> tuple[datetime | None, datetime | None]:
    """Return the (not_before, expires_at) pair for a new room.

    Without a fixed start the duration is measured from now.
    """
    not_before = start_time
    expires_at = None
    if duration_minutes:
        anchor = start_time or now or utcnow()
        expires_at = anchor + timedelta(minutes=duration_minutes)
    return not_before, expires_at


class RoomProvider(ABC):
    name: str

    @abstractmethod
    async def create_room(
        self,
        title: str,
        max_participants: int,
        capabilities: RoomCapabilities,
        start_time: datetime | None = None,
        duration_minutes: int | None = None,
    ) -> ProviderRoom:
        """Create a room. Raises RoomCreationFailed."""

    @abstractmethod
    async def issue_join_token(
        self,
        room_name: str,
        user_name: str,
        is_owner: bool,
        identity: str | None = None,
        expires_at: datetime | None = None,
    ) -> JoinToken:
        """Mint a short-lived credential for one participant. Raises TokenIssuanceFailed."""

    @abstractmethod
    async def delete_room(self, room_name: str) -> None:
        """Tear a room down. Raises RoomDeletionFailed."""


# ---------------------------------------------------------------------------
# LiveKit
# ---------------------------------------------------------------------------


class LiveKitRoomProvider(RoomProvider):
    name = "livekit"

    def __init__(self, settings: Settings):
        self._settings = settings

    def _api(self):
        """Create LiveKit API client. Raise ValidationError if not configured."""
        from livekit.api import LiveKitAPI

        if not self._settings.livekit_url or not self._settings.livekit_api_key:
            raise ValidationError("LiveKit is not configured.")
        return LiveKitAPI(
            url=self._settings.livekit_url,
            api_key=self._settings.livekit_api_key,
            api_secret=self._settings.livekit_api_secret,
        )

    async def create_room(
        self,
        title: str,
        max_participants: int,
        capabilities: RoomCapabilities,
        start_time: datetime | None = None,
        duration_minutes: int | None = None,
    ) -> ProviderRoom:
        from livekit.api import CreateRoomRequest

        room_name = generate_room_name()
        not_before, expires_at = room_window(start_time, duration_minutes)
        # LiveKit has no native room window; clients and tokens read it from metadata.
        metadata = json.dumps(
            {
                "title": title,
                "recording": capabilities.recording,
                "screen_share": capabilities.screen_share,
                "chat": capabilities.chat,
                "not_before": not_before.isoformat() if not_before else None,
                "expires_at": expires_at.isoformat() if expires_at else None,
            }
        )

        lk_api = self._api()
        try:
            room = await lk_api.room.create_room(
                CreateRoomRequest(
                    name=room_name,
                    max_participants=max_participants,
                    empty_timeout=self._settings.room_empty_timeout_seconds,
                    metadata=metadata,
                )
            )
        except Exception as exc:
            logger.warning("LiveKit room creation failed for %s", room_name, exc_info=True)
            raise RoomCreationFailed(str(exc) or "Failed to create LiveKit room") from exc
        finally:
            await lk_api.aclose()

        logger.info("Created LiveKit room %s", room.name)
        return ProviderRoom(
            name=room.name,
            url=self._settings.livekit_url,
            not_before=not_before,
            expires_at=expires_at,
        )

    async def issue_join_token(
        self,
        room_name: str,
        user_name: str,
        is_owner: bool,
        identity: str | None = None,
        expires_at: datetime | None = None,
    ) -> JoinToken:
        from livekit.api import AccessToken, VideoGrants

        if not self._settings.livekit_api_key or not self._settings.livekit_api_secret:
            raise TokenIssuanceFailed("LiveKit is not configured.")

        try:
            token = AccessToken(self._settings.livekit_api_key, self._settings.livekit_api_secret)
            token.with_identity(identity or f"guest-{secrets.token_hex(4)}")
            token.with_name(user_name)
            token.with_grants(
                VideoGrants(room_join=True, room=room_name, room_admin=is_owner)
            )
            if expires_at is not None:
                token.with_ttl(max(expires_at - utcnow(), timedelta(minutes=1)))
            jwt = token.to_jwt()
        except Exception as exc:
            logger.warning("LiveKit token generation failed for %s", room_name, exc_info=True)
            raise TokenIssuanceFailed(str(exc) or "Failed to generate meeting token") from exc

        return JoinToken(token=jwt, expires_at=expires_at)

    async def delete_room(self, room_name: str) -> None:
        from livekit.api import DeleteRoomRequest

        lk_api = self._api()
        try:
            await lk_api.room.delete_room(DeleteRoomRequest(room=room_name))
        except Exception as exc:
            raise RoomDeletionFailed(str(exc) or "Failed to delete LiveKit room") from exc
        finally:
            await lk_api.aclose()


# ---------------------------------------------------------------------------
# Daily
# ---------------------------------------------------------------------------


class DailyRoomProvider(RoomProvider):
    name = "daily"

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self._settings = settings
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        if not self._settings.daily_api_key:
            raise ValidationError("Daily is not configured.")
        return httpx.AsyncClient(
            base_url=self._settings.daily_api_url,
            headers={"Authorization": f"Bearer {self._settings.daily_api_key}"},
            timeout=10.0,
            transport=self._transport,
        )

    @staticmethod
    def _error_message(response: httpx.Response, default: str) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text or default
        return payload.get("info") or payload.get("error") or default

    async def create_room(
        self,
        title: str,
        max_participants: int,
        capabilities: RoomCapabilities,
        start_time: datetime | None = None,
        duration_minutes: int | None = None,
    ) -> ProviderRoom:
        room_name = generate_room_name()
        not_before, expires_at = room_window(start_time, duration_minutes)

        properties: dict = {
            "enable_screenshare": capabilities.screen_share,
            "enable_chat": capabilities.chat,
            "max_participants": max_participants,
            "start_video_off": False,
            "start_audio_off": False,
        }
        if capabilities.recording:
            properties["enable_recording"] = "cloud"
        if not_before is not None:
            properties["nbf"] = int(not_before.timestamp())
        if expires_at is not None:
            properties["exp"] = int(expires_at.timestamp())

        try:
            async with self._client() as client:
                response = await client.post(
                    "/rooms", json={"name": room_name, "properties": properties}
                )
        except httpx.HTTPError as exc:
            raise RoomCreationFailed(str(exc) or "Failed to create Daily room") from exc

        if response.is_error:
            message = self._error_message(response, "Failed to create Daily room")
            logger.warning("Daily room creation rejected (%s): %s", response.status_code, message)
            raise RoomCreationFailed(message)

        room = response.json()
        logger.info("Created Daily room %s", room["name"])
        return ProviderRoom(
            name=room["name"],
            url=room["url"],
            not_before=not_before,
            expires_at=expires_at,
        )

    async def issue_join_token(
        self,
        room_name: str,
        user_name: str,
        is_owner: bool,
        identity: str | None = None,
        expires_at: datetime | None = None,
    ) -> JoinToken:
        properties: dict = {
            "room_name": room_name,
            "user_name": user_name,
            "is_owner": is_owner,
            "start_video_off": False,
            "start_audio_off": False,
        }
        if identity:
            properties["user_id"] = identity
        if expires_at is not None:
            properties["exp"] = int(expires_at.timestamp())

        try:
            async with self._client() as client:
                response = await client.post("/meeting-tokens", json={"properties": properties})
        except httpx.HTTPError as exc:
            raise TokenIssuanceFailed(str(exc) or "Failed to generate meeting token") from exc

        if response.is_error:
            message = self._error_message(response, "Failed to generate meeting token")
            logger.warning("Daily token request rejected (%s): %s", response.status_code, message)
            raise TokenIssuanceFailed(message)

        return JoinToken(token=response.json()["token"], expires_at=expires_at)

    async def delete_room(self, room_name: str) -> None:
        try:
            async with self._client() as client:
                response = await client.delete(f"/rooms/{room_name}")
        except httpx.HTTPError as exc:
            raise RoomDeletionFailed(str(exc) or "Failed to delete Daily room") from exc

        # Already gone is as good as deleted.
        if response.is_error and response.status_code != 404:
            raise RoomDeletionFailed(self._error_message(response, "Failed to delete Daily room"))


def build_room_provider(settings: Settings) -> RoomProvider:
    if settings.video_provider == "daily":
        return DailyRoomProvider(settings)
    if settings.video_provider == "livekit":
        return LiveKitRoomProvider(settings)
    raise ValueError(f"Unknown video provider: {settings.video_provider}")
