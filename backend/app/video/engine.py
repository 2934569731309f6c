"""Lifecycle of one participant's call.

States::

    idle -> initializing -> idle -> joining -> joined -> leaving -> left
                 any failure -> error

The engine owns at most one call object at a time. Provider events are
forwarded to listeners registered with ``on``; a listener that raises is
logged and skipped.
"""

import asyncio
import enum
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from app.video.call import CallFactory, CallObject
from app.video.errors import (
    ModerationError,
    ScreenShareError,
    VideoEngineError,
    normalize_error,
    screen_share_error,
)
from app.video.platform import ClientPlatform

logger = logging.getLogger(__name__)

FORWARDED_EVENTS = (
    "joined-meeting",
    "left-meeting",
    "participant-joined",
    "participant-left",
    "participant-updated",
    "error",
    "track-started",
    "track-stopped",
    "recording-started",
    "recording-stopped",
    "app-message",
)

Listener = Callable[[dict[str, Any] | None], None]


class EngineState(str, enum.Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    JOINING = "joining"
    JOINED = "joined"
    LEAVING = "leaving"
    LEFT = "left"
    ERROR = "error"


@dataclass
class Participant:
    session_id: str
    user_name: str | None = None
    user_id: str | None = None
    local: bool = False
    audio: bool = False
    video: bool = False
    screen: bool = False

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Participant":
        return cls(
            session_id=payload["session_id"],
            user_name=payload.get("user_name"),
            user_id=payload.get("user_id"),
            local=bool(payload.get("local", False)),
            audio=bool(payload.get("audio", False)),
            video=bool(payload.get("video", False)),
            screen=bool(payload.get("screen", False)),
        )


class VideoEngine:
    def __init__(
        self,
        call_factory: CallFactory,
        platform: ClientPlatform | None = None,
        settle_delay: float = 0.1,
    ):
        self._factory = call_factory
        self._platform = platform or ClientPlatform()
        self._settle_delay = settle_delay
        self._call: CallObject | None = None
        self._listeners: dict[str, list[Listener]] = {}
        self.state = EngineState.IDLE
        self.participants: dict[str, Participant] = {}
        self.local_audio = False
        self.local_video = False
        self.screen_sharing = False
        self.room_locked = False

    @property
    def call_object(self) -> CallObject | None:
        return self._call

    # -- lifecycle ----------------------------------------------------------

    async def initialize(self) -> None:
        """Create the call object. Safe to call repeatedly."""
        if self._call is not None and self.state is EngineState.IDLE:
            logger.debug("Video engine already initialized")
            return
        if self.state is EngineState.INITIALIZING:
            logger.debug("Video engine initialization already in progress")
            return

        previous = self.state
        self.state = EngineState.INITIALIZING
        try:
            if self._call is not None:
                logger.warning("Video engine in %s state, recreating call object", previous.value)
                await self._release_call()
                await asyncio.sleep(self._settle_delay)

            await self._destroy_stray_instance()
            self._call = self._factory.create()
            self._forward_events()
            self.state = EngineState.IDLE
        except Exception as exc:
            self.state = EngineState.ERROR
            logger.error("Video engine initialization failed", exc_info=True)
            raise normalize_error(exc) from exc

    async def _destroy_stray_instance(self) -> None:
        try:
            stray = self._factory.current_instance()
            if stray is None:
                return
            logger.warning("Found a leftover call instance, destroying it")
            await stray.destroy()
            await asyncio.sleep(2 * self._settle_delay)
        except Exception:
            logger.warning("Could not clean up leftover call instance", exc_info=True)

    async def join(self, url: str, user_name: str, token: str | None = None) -> None:
        if self._call is None:
            raise VideoEngineError("not-initialized", "Video engine is not initialized")
        if self.state is not EngineState.IDLE:
            raise VideoEngineError("invalid-state", f"Cannot join from state: {self.state.value}")

        self.state = EngineState.JOINING
        try:
            await self._call.join(url, user_name, token)
            # Everyone starts with camera and microphone on.
            await self._call.set_local_audio(True)
            await self._call.set_local_video(True)
        except Exception as exc:
            self.state = EngineState.ERROR
            raise normalize_error(exc) from exc

        self.local_audio = True
        self.local_video = True
        self.state = EngineState.JOINED

    async def leave(self) -> None:
        if self._call is None or self.state is not EngineState.JOINED:
            return

        self.state = EngineState.LEAVING
        try:
            await self._call.leave()
        except Exception as exc:
            self.state = EngineState.ERROR
            raise normalize_error(exc) from exc
        self._reset_session()
        self.state = EngineState.LEFT

    async def destroy(self) -> None:
        """Tear everything down from any state. Never raises."""
        if self._call is not None:
            await self._release_call()
        self._reset_session()
        self._listeners.clear()
        self.state = EngineState.IDLE

    async def _release_call(self) -> None:
        call, self._call = self._call, None
        try:
            await call.destroy()
        except Exception:
            logger.warning("Error destroying call object", exc_info=True)
        self._reset_session()

    def _reset_session(self) -> None:
        self.participants.clear()
        self.local_audio = False
        self.local_video = False
        self.screen_sharing = False
        self.room_locked = False

    # -- local media --------------------------------------------------------

    def _require_joined(self, action: str) -> CallObject:
        if self._call is None or self.state is not EngineState.JOINED:
            raise VideoEngineError("not-in-call", f"Cannot {action}: not in call")
        return self._call

    async def set_local_audio(self, enabled: bool) -> None:
        call = self._require_joined("set audio")
        try:
            await call.set_local_audio(enabled)
        except Exception as exc:
            raise normalize_error(exc) from exc
        self.local_audio = enabled

    async def set_local_video(self, enabled: bool) -> None:
        call = self._require_joined("set video")
        try:
            await call.set_local_video(enabled)
        except Exception as exc:
            raise normalize_error(exc) from exc
        self.local_video = enabled

    async def start_screen_share(self) -> None:
        call = self._require_joined("share screen")
        if not self._platform.supports_display_capture:
            if self._platform.is_mobile:
                raise ScreenShareError(
                    "not-supported",
                    "Screen sharing is not supported on mobile devices. Please use a desktop browser.",
                    recoverable=False,
                )
            raise ScreenShareError(
                "not-supported",
                "Screen sharing is not supported in this browser. Please use Chrome, Firefox, or Edge.",
                recoverable=False,
            )

        try:
            await call.start_screen_share()
        except Exception as exc:
            raise screen_share_error(exc) from exc
        self.screen_sharing = True

    async def stop_screen_share(self) -> None:
        call = self._require_joined("stop screen share")
        try:
            await call.stop_screen_share()
        except Exception as exc:
            raise normalize_error(exc) from exc
        self.screen_sharing = False

    # -- moderation ---------------------------------------------------------

    async def _moderate(self, action: str, operation: Callable[[CallObject], Awaitable[None]]) -> None:
        call = self._require_joined(action)
        try:
            await operation(call)
        except Exception as exc:
            logger.warning("Moderation action failed: %s", action, exc_info=True)
            cause = normalize_error(exc)
            raise ModerationError(action, cause.message, recoverable=cause.recoverable) from exc

    async def mute_participant(self, session_id: str) -> None:
        await self._moderate(
            "mute participant", lambda call: call.update_participant(session_id, audio=False)
        )

    async def unmute_participant(self, session_id: str) -> None:
        await self._moderate(
            "unmute participant", lambda call: call.update_participant(session_id, audio=True)
        )

    async def disable_participant_camera(self, session_id: str) -> None:
        await self._moderate(
            "disable camera", lambda call: call.update_participant(session_id, video=False)
        )

    async def enable_participant_camera(self, session_id: str) -> None:
        await self._moderate(
            "enable camera", lambda call: call.update_participant(session_id, video=True)
        )

    async def remove_participant(self, session_id: str) -> None:
        await self._moderate(
            "remove participant", lambda call: call.update_participant(session_id, eject=True)
        )

    async def set_room_locked(self, locked: bool) -> None:
        action = "lock room" if locked else "unlock room"
        await self._moderate(action, lambda call: call.update_room_config(locked=locked))
        self.room_locked = locked

    async def send_chat_message(self, message: str, to: str | None = None) -> None:
        async def send(call: CallObject) -> None:
            local = call.participants().get("local") or {}
            await call.send_app_message(
                {
                    "type": "chat",
                    "message": message,
                    "sender": local.get("user_name") or "Anonymous",
                    "sender_session_id": local.get("session_id"),
                    "timestamp": int(time.time() * 1000),
                },
                to or "*",
            )

        await self._moderate("send message", send)

    # -- queries ------------------------------------------------------------

    def local_session_id(self) -> str | None:
        if self._call is None:
            return None
        local = self._call.participants().get("local")
        return local.get("session_id") if local else None

    # -- events -------------------------------------------------------------

    def on(self, event: str, handler: Listener) -> None:
        handlers = self._listeners.setdefault(event, [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, event: str, handler: Listener) -> None:
        handlers = self._listeners.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def _forward_events(self) -> None:
        for event in FORWARDED_EVENTS:
            self._call.on(event, self._make_forwarder(event))

    def _make_forwarder(self, event: str) -> Listener:
        def forward(payload: dict[str, Any] | None = None) -> None:
            self._track_participants(event, payload)
            self._emit(event, payload)

        return forward

    def _track_participants(self, event: str, payload: dict[str, Any] | None) -> None:
        if event in ("participant-joined", "participant-updated") and payload:
            participant = Participant.from_payload(payload)
            self.participants[participant.session_id] = participant
        elif event == "participant-left" and payload:
            self.participants.pop(payload.get("session_id"), None)
        elif event == "joined-meeting" and payload:
            for data in (payload.get("participants") or {}).values():
                participant = Participant.from_payload(data)
                self.participants[participant.session_id] = participant
        elif event == "left-meeting":
            self.participants.clear()

    def _emit(self, event: str, payload: dict[str, Any] | None) -> None:
        for handler in list(self._listeners.get(event, [])):
            try:
                handler(payload)
            except Exception:
                logger.exception("Error in %s event handler", event)
