"""Call objects: the per-session connection to a provider room.

The engine only talks to the ``CallObject`` protocol. Payloads passed to event
handlers are plain dicts; participant payloads carry ``session_id``,
``user_id``, ``user_name``, ``local``, ``audio``, ``video`` and ``screen``.
"""

import json
import logging
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from app.config import Settings
from app.video.errors import CallError

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any] | None], None]


@runtime_checkable
class CallObject(Protocol):
    """Protocol every provider call object implements."""

    async def join(self, url: str, user_name: str, token: str | None = None) -> None:
        ...

    async def leave(self) -> None:
        ...

    async def destroy(self) -> None:
        ...

    async def set_local_audio(self, enabled: bool) -> None:
        ...

    async def set_local_video(self, enabled: bool) -> None:
        ...

    async def start_screen_share(self) -> None:
        ...

    async def stop_screen_share(self) -> None:
        ...

    async def update_participant(
        self,
        session_id: str,
        *,
        audio: bool | None = None,
        video: bool | None = None,
        eject: bool = False,
    ) -> None:
        ...

    async def update_room_config(self, *, locked: bool) -> None:
        ...

    async def send_app_message(self, payload: dict[str, Any], to: str = "*") -> None:
        ...

    def participants(self) -> dict[str, dict[str, Any]]:
        """Participants keyed by session id, plus the caller under ``"local"``."""
        ...

    def on(self, event: str, handler: EventHandler) -> None:
        ...


@runtime_checkable
class CallFactory(Protocol):
    def create(self) -> CallObject:
        ...

    def current_instance(self) -> CallObject | None:
        """The call object this process still holds from an earlier session, if any."""
        ...


# ---------------------------------------------------------------------------
# LiveKit
# ---------------------------------------------------------------------------


def _participant_payload(participant, local: bool = False) -> dict[str, Any]:
    from livekit import rtc

    kinds = {pub.source for pub in participant.track_publications.values()}
    return {
        "session_id": participant.sid,
        "user_id": participant.identity,
        "user_name": participant.name,
        "local": local,
        "audio": rtc.TrackSource.SOURCE_MICROPHONE in kinds,
        "video": rtc.TrackSource.SOURCE_CAMERA in kinds,
        "screen": rtc.TrackSource.SOURCE_SCREENSHARE in kinds,
    }


def recording_event(old_metadata: str, new_metadata: str) -> str | None:
    """Map a room metadata change to a recording event.

    Recording runs server-side through egress, which flags it in the room
    metadata as ``{"recording": true}``.
    """

    def recording(metadata: str) -> bool:
        try:
            data = json.loads(metadata) if metadata else {}
        except ValueError:
            return False
        return isinstance(data, dict) and bool(data.get("recording"))

    was, now = recording(old_metadata), recording(new_metadata)
    if was == now:
        return None
    return "recording-started" if now else "recording-stopped"


def disconnect_error(reason: Any, leaving: bool) -> dict[str, Any] | None:
    """The ``error`` payload for a disconnect nobody asked for, else None."""
    if leaving:
        return None
    return {
        "code": "connection-error",
        "message": f"Disconnected from the meeting: {reason}",
        "recoverable": True,
    }


class LiveKitCallObject:
    """A LiveKit room connection speaking the call-object protocol.

    Media is published from in-process sources; moderation goes through the
    LiveKit server API since room admin rights live there.
    """

    def __init__(self, settings: Settings, on_destroy: Callable[["LiveKitCallObject"], None]):
        from livekit import rtc

        self._settings = settings
        self._on_destroy = on_destroy
        self._room = rtc.Room()
        self._handlers: dict[str, list[EventHandler]] = {}
        self._local_tracks: dict[str, Any] = {}
        self._sources: dict[str, Any] = {}
        self._leaving = False
        self._wire_room_events()

    # -- events -------------------------------------------------------------

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def _dispatch(self, event: str, payload: dict[str, Any] | None) -> None:
        for handler in list(self._handlers.get(event, [])):
            handler(payload)

    def _wire_room_events(self) -> None:
        room = self._room

        @room.on("participant_connected")
        def _joined(participant):
            self._dispatch("participant-joined", _participant_payload(participant))

        @room.on("participant_disconnected")
        def _left(participant):
            self._dispatch("participant-left", _participant_payload(participant))

        @room.on("participant_metadata_changed")
        def _metadata(participant, old_metadata, new_metadata):
            self._dispatch("participant-updated", _participant_payload(participant))

        @room.on("participant_name_changed")
        def _renamed(participant, old_name, new_name):
            self._dispatch("participant-updated", _participant_payload(participant))

        @room.on("track_subscribed")
        def _track_started(track, publication, participant):
            self._dispatch(
                "track-started",
                {"session_id": participant.sid, "track_sid": publication.sid, "kind": str(track.kind)},
            )

        @room.on("track_unsubscribed")
        def _track_stopped(track, publication, participant):
            self._dispatch(
                "track-stopped",
                {"session_id": participant.sid, "track_sid": publication.sid, "kind": str(track.kind)},
            )

        @room.on("data_received")
        def _data(packet):
            try:
                data = json.loads(packet.data)
            except ValueError:
                logger.debug("Ignoring non-JSON data packet")
                return
            sender = packet.participant.sid if packet.participant else None
            self._dispatch("app-message", {"data": data, "from": sender})

        @room.on("room_metadata_changed")
        def _room_metadata(old_metadata, new_metadata):
            event = recording_event(old_metadata, new_metadata)
            if event:
                self._dispatch(event, {"metadata": new_metadata})

        @room.on("disconnected")
        def _disconnected(reason):
            error = disconnect_error(reason, self._leaving)
            if error:
                self._dispatch("error", error)
            self._dispatch("left-meeting", {"reason": str(reason)})

    # -- session ------------------------------------------------------------

    async def join(self, url: str, user_name: str, token: str | None = None) -> None:
        from livekit import rtc

        if not token:
            raise CallError("not-allowed", "A join token is required for LiveKit rooms")
        try:
            await self._room.connect(url, token, options=rtc.RoomOptions(auto_subscribe=True))
        except rtc.ConnectError as exc:
            raise CallError("connection-error", str(exc)) from exc
        self._leaving = False
        self._dispatch("joined-meeting", {"participants": self.participants()})

    async def leave(self) -> None:
        self._leaving = True
        await self._room.disconnect()

    async def destroy(self) -> None:
        self._leaving = True
        try:
            if self._room.isconnected():
                await self._room.disconnect()
        finally:
            self._handlers.clear()
            self._on_destroy(self)

    # -- local media --------------------------------------------------------

    async def _set_local_track(self, kind: str, enabled: bool) -> None:
        from livekit import rtc

        local = self._room.local_participant
        track = self._local_tracks.get(kind)
        if not enabled:
            if track is not None:
                await local.unpublish_track(track.sid)
                del self._local_tracks[kind]
            return
        if track is not None:
            return

        options = rtc.TrackPublishOptions()
        if kind == "audio":
            source = self._sources.setdefault("audio", rtc.AudioSource(48000, 1))
            track = rtc.LocalAudioTrack.create_audio_track("microphone", source)
            options.source = rtc.TrackSource.SOURCE_MICROPHONE
        else:
            source = self._sources.setdefault("video", rtc.VideoSource(1280, 720))
            track = rtc.LocalVideoTrack.create_video_track("camera", source)
            options.source = rtc.TrackSource.SOURCE_CAMERA
        await local.publish_track(track, options)
        self._local_tracks[kind] = track

    async def set_local_audio(self, enabled: bool) -> None:
        await self._set_local_track("audio", enabled)

    async def set_local_video(self, enabled: bool) -> None:
        await self._set_local_track("video", enabled)

    async def start_screen_share(self) -> None:
        raise CallError(
            "not-supported",
            "NotSupportedError: screen capture is not available to server-side participants",
        )

    async def stop_screen_share(self) -> None:
        return None

    # -- moderation ---------------------------------------------------------

    def _api(self):
        from livekit.api import LiveKitAPI

        return LiveKitAPI(
            url=self._settings.livekit_url,
            api_key=self._settings.livekit_api_key,
            api_secret=self._settings.livekit_api_secret,
        )

    def _remote_by_session(self, session_id: str):
        for participant in self._room.remote_participants.values():
            if participant.sid == session_id:
                return participant
        raise CallError("participant-not-found", f"No participant with session {session_id}")

    async def update_participant(
        self,
        session_id: str,
        *,
        audio: bool | None = None,
        video: bool | None = None,
        eject: bool = False,
    ) -> None:
        from livekit import rtc
        from livekit.api import MuteRoomTrackRequest, RoomParticipantIdentity

        participant = self._remote_by_session(session_id)
        lk_api = self._api()
        try:
            if eject:
                await lk_api.room.remove_participant(
                    RoomParticipantIdentity(room=self._room.name, identity=participant.identity)
                )
                return
            wanted = {
                rtc.TrackSource.SOURCE_MICROPHONE: audio,
                rtc.TrackSource.SOURCE_CAMERA: video,
            }
            for publication in participant.track_publications.values():
                enabled = wanted.get(publication.source)
                if enabled is None:
                    continue
                await lk_api.room.mute_published_track(
                    MuteRoomTrackRequest(
                        room=self._room.name,
                        identity=participant.identity,
                        track_sid=publication.sid,
                        muted=not enabled,
                    )
                )
        finally:
            await lk_api.aclose()

    async def update_room_config(self, *, locked: bool) -> None:
        from livekit.api import UpdateRoomMetadataRequest

        try:
            metadata = json.loads(self._room.metadata or "{}")
        except ValueError:
            metadata = {}
        metadata["locked"] = locked

        lk_api = self._api()
        try:
            await lk_api.room.update_room_metadata(
                UpdateRoomMetadataRequest(room=self._room.name, metadata=json.dumps(metadata))
            )
        finally:
            await lk_api.aclose()

    async def send_app_message(self, payload: dict[str, Any], to: str = "*") -> None:
        destinations = []
        if to != "*":
            destinations = [self._remote_by_session(to).identity]
        await self._room.local_participant.publish_data(
            json.dumps(payload), reliable=True, destination_identities=destinations
        )

    def participants(self) -> dict[str, dict[str, Any]]:
        result = {
            p.sid: _participant_payload(p) for p in self._room.remote_participants.values()
        }
        if self._room.isconnected():
            result["local"] = _participant_payload(self._room.local_participant, local=True)
        return result


class LiveKitCallFactory:
    """Hands out LiveKit call objects and remembers the live one."""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._current: LiveKitCallObject | None = None

    def create(self) -> LiveKitCallObject:
        self._current = LiveKitCallObject(self._settings, on_destroy=self._release)
        logger.debug("Created LiveKit call object")
        return self._current

    def current_instance(self) -> LiveKitCallObject | None:
        return self._current

    def _release(self, call: LiveKitCallObject) -> None:
        if self._current is call:
            self._current = None
