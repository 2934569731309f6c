"""
Tests for the client-side video engine.
"""
import asyncio

import pytest

from app.video.call import (
    CallFactory,
    CallObject,
    LiveKitCallFactory,
    disconnect_error,
    recording_event,
)
from app.video.engine import EngineState, VideoEngine
from app.video.errors import (
    CallError,
    ModerationError,
    RecoveryAction,
    ScreenShareError,
    VideoEngineError,
    describe_error,
    normalize_error,
)
from app.video.platform import ClientPlatform

IPHONE = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15"
DESKTOP = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/120.0"


# ============================================
# FAKE CALL OBJECTS
# ============================================

class FakeCall:
    """Records what the engine asks of it; fails on demand."""

    def __init__(self):
        self.handlers = {}
        self.fail = {}
        self.destroyed = False
        self.joined_with = None
        self.audio = None
        self.video = None
        self.sharing = False
        self.updates = []
        self.locked = None
        self.messages = []

    def _check(self, name):
        if name in self.fail:
            raise self.fail[name]

    async def join(self, url, user_name, token=None):
        self._check("join")
        self.joined_with = (url, user_name, token)

    async def leave(self):
        self._check("leave")

    async def destroy(self):
        self.destroyed = True
        self._check("destroy")

    async def set_local_audio(self, enabled):
        self._check("set_local_audio")
        self.audio = enabled

    async def set_local_video(self, enabled):
        self._check("set_local_video")
        self.video = enabled

    async def start_screen_share(self):
        self._check("start_screen_share")
        self.sharing = True

    async def stop_screen_share(self):
        self._check("stop_screen_share")
        self.sharing = False

    async def update_participant(self, session_id, *, audio=None, video=None, eject=False):
        self._check("update_participant")
        self.updates.append((session_id, audio, video, eject))

    async def update_room_config(self, *, locked):
        self._check("update_room_config")
        self.locked = locked

    async def send_app_message(self, payload, to="*"):
        self._check("send_app_message")
        self.messages.append((payload, to))

    def participants(self):
        return {"local": {"session_id": "local-1", "user_name": "Alice", "local": True}}

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    def fire(self, event, payload=None):
        for handler in self.handlers.get(event, []):
            handler(payload)


class FakeCallFactory:
    def __init__(self, stray=None):
        self.created = []
        self.stray = stray
        self.fail_create = None

    def create(self):
        if self.fail_create:
            raise self.fail_create
        call = FakeCall()
        self.created.append(call)
        return call

    def current_instance(self):
        return self.stray


# ============================================
# FIXTURES
# ============================================

@pytest.fixture
def factory():
    return FakeCallFactory()


@pytest.fixture
def engine(factory):
    return VideoEngine(factory, settle_delay=0)


@pytest.fixture
async def joined_engine(engine):
    await engine.initialize()
    await engine.join("https://rooms.example.com/room-1", "Alice", "jwt")
    return engine


@pytest.mark.unit
class TestInitialize:
    """Test call object creation."""

    def test_fake_call_satisfies_protocol(self):
        assert isinstance(FakeCall(), CallObject)

    def test_livekit_factory_satisfies_protocol(self, test_settings):
        factory = LiveKitCallFactory(test_settings)
        assert isinstance(factory, CallFactory)
        assert factory.current_instance() is None

    async def test_initialize_creates_one_call(self, engine, factory):
        await engine.initialize()
        await engine.initialize()

        assert len(factory.created) == 1
        assert engine.state is EngineState.IDLE
        assert engine.call_object is factory.created[0]

    async def test_concurrent_initialize_creates_one_call(self):
        """A second caller during initialization does not create another call."""
        factory = FakeCallFactory(stray=FakeCall())
        engine = VideoEngine(factory, settle_delay=0.01)

        await asyncio.gather(engine.initialize(), engine.initialize(), engine.initialize())

        assert len(factory.created) == 1
        assert engine.state is EngineState.IDLE

    async def test_stray_instance_is_destroyed(self):
        stray = FakeCall()
        engine = VideoEngine(FakeCallFactory(stray=stray), settle_delay=0)

        await engine.initialize()

        assert stray.destroyed

    async def test_stray_cleanup_failure_is_ignored(self):
        stray = FakeCall()
        stray.fail["destroy"] = RuntimeError("already gone")
        factory = FakeCallFactory(stray=stray)
        engine = VideoEngine(factory, settle_delay=0)

        await engine.initialize()

        assert len(factory.created) == 1

    async def test_creation_failure_sets_error_state(self, engine, factory):
        factory.fail_create = RuntimeError("duplicate call instance")

        with pytest.raises(VideoEngineError) as exc_info:
            await engine.initialize()

        assert exc_info.value.code == "unknown-error"
        assert engine.state is EngineState.ERROR

        factory.fail_create = None
        await engine.initialize()
        assert engine.state is EngineState.IDLE

    async def test_reinitialize_after_error_replaces_call(self, engine, factory):
        await engine.initialize()
        first = factory.created[0]
        first.fail["join"] = CallError("meeting-full", "Meeting is full")
        with pytest.raises(VideoEngineError):
            await engine.join("https://rooms.example.com/room-1", "Alice")

        await engine.initialize()

        assert first.destroyed
        assert len(factory.created) == 2
        assert engine.call_object is factory.created[1]
        assert engine.state is EngineState.IDLE


@pytest.mark.unit
class TestJoinAndLeave:
    """Test joining and leaving a room."""

    async def test_join_before_initialize(self, engine):
        with pytest.raises(VideoEngineError) as exc_info:
            await engine.join("https://rooms.example.com/room-1", "Alice")
        assert exc_info.value.code == "not-initialized"

    async def test_join_turns_media_on(self, joined_engine):
        call = joined_engine.call_object

        assert joined_engine.state is EngineState.JOINED
        assert call.joined_with == ("https://rooms.example.com/room-1", "Alice", "jwt")
        assert call.audio is True and call.video is True
        assert joined_engine.local_audio and joined_engine.local_video

    async def test_join_twice_is_rejected(self, joined_engine):
        with pytest.raises(VideoEngineError) as exc_info:
            await joined_engine.join("https://rooms.example.com/room-1", "Alice")
        assert exc_info.value.code == "invalid-state"

    async def test_join_failure_is_normalized(self, engine, factory):
        await engine.initialize()
        factory.created[0].fail["join"] = CallError("meeting-full", "Meeting is full")

        with pytest.raises(VideoEngineError) as exc_info:
            await engine.join("https://rooms.example.com/room-1", "Alice")

        assert exc_info.value.code == "meeting-full"
        assert not exc_info.value.recoverable
        assert engine.state is EngineState.ERROR

    async def test_leave(self, joined_engine):
        joined_engine.call_object.fire("participant-joined", {"session_id": "s-2"})

        await joined_engine.leave()

        assert joined_engine.state is EngineState.LEFT
        assert joined_engine.participants == {}
        assert not joined_engine.local_audio

    async def test_leave_when_not_joined_is_noop(self, engine):
        await engine.initialize()
        await engine.leave()
        assert engine.state is EngineState.IDLE

    async def test_destroy_never_raises(self, joined_engine):
        call = joined_engine.call_object
        call.fail["destroy"] = RuntimeError("transport closed")
        calls = []
        joined_engine.on("participant-joined", calls.append)

        await joined_engine.destroy()

        assert call.destroyed
        assert joined_engine.call_object is None
        assert joined_engine.state is EngineState.IDLE
        call.fire("participant-joined", {"session_id": "s-2"})
        assert calls == []

    async def test_destroy_without_call(self, engine):
        await engine.destroy()
        assert engine.state is EngineState.IDLE

    async def test_destroy_after_failed_initialize(self, engine, factory):
        received = []
        engine.on("participant-joined", received.append)
        factory.fail_create = RuntimeError("duplicate call instance")
        with pytest.raises(VideoEngineError):
            await engine.initialize()
        assert engine.state is EngineState.ERROR

        await engine.destroy()

        assert engine.state is EngineState.IDLE
        assert engine._listeners == {}
        assert engine.participants == {}


@pytest.mark.unit
class TestLocalMedia:
    """Test local audio, video and screen share."""

    @pytest.mark.parametrize(
        "operation",
        ["set_local_audio", "set_local_video"],
    )
    async def test_media_requires_call(self, engine, operation):
        await engine.initialize()
        with pytest.raises(VideoEngineError) as exc_info:
            await getattr(engine, operation)(False)
        assert exc_info.value.code == "not-in-call"

    async def test_toggle_audio(self, joined_engine):
        await joined_engine.set_local_audio(False)
        assert joined_engine.call_object.audio is False
        assert not joined_engine.local_audio

    async def test_screen_share_requires_call(self, engine):
        with pytest.raises(VideoEngineError) as exc_info:
            await engine.start_screen_share()
        assert exc_info.value.code == "not-in-call"

    async def test_screen_share_on_mobile(self, factory):
        engine = VideoEngine(factory, ClientPlatform.from_user_agent(IPHONE), settle_delay=0)
        await engine.initialize()
        await engine.join("https://rooms.example.com/room-1", "Alice")

        with pytest.raises(ScreenShareError) as exc_info:
            await engine.start_screen_share()

        assert exc_info.value.code == "not-supported"
        assert "mobile devices" in exc_info.value.message
        assert not factory.created[0].sharing

    async def test_screen_share_in_unsupported_browser(self, factory):
        platform = ClientPlatform(user_agent=DESKTOP, supports_display_capture=False)
        engine = VideoEngine(factory, platform, settle_delay=0)
        await engine.initialize()
        await engine.join("https://rooms.example.com/room-1", "Alice")

        with pytest.raises(ScreenShareError) as exc_info:
            await engine.start_screen_share()

        assert "Chrome, Firefox, or Edge" in exc_info.value.message

    async def test_screen_share_start_and_stop(self, joined_engine):
        await joined_engine.start_screen_share()
        assert joined_engine.screen_sharing

        await joined_engine.stop_screen_share()
        assert not joined_engine.screen_sharing

    @pytest.mark.parametrize(
        "raised, code, recoverable",
        [
            (CallError("cancelled", "User cancelled screen share prompt"), "cancelled", True),
            (RuntimeError("NotAllowedError: Permission denied"), "permission-denied", False),
            (RuntimeError("NotSupportedError: getDisplayMedia"), "not-supported", False),
            (RuntimeError("NotFoundError: no display"), "no-source", False),
            (RuntimeError("encoder crashed"), "failed", False),
        ],
    )
    async def test_screen_share_errors(self, joined_engine, raised, code, recoverable):
        joined_engine.call_object.fail["start_screen_share"] = raised

        with pytest.raises(ScreenShareError) as exc_info:
            await joined_engine.start_screen_share()

        assert exc_info.value.code == code
        assert exc_info.value.recoverable is recoverable
        assert not joined_engine.screen_sharing

    async def test_generic_failure_message(self, joined_engine):
        joined_engine.call_object.fail["start_screen_share"] = RuntimeError("encoder crashed")

        with pytest.raises(ScreenShareError) as exc_info:
            await joined_engine.start_screen_share()

        assert exc_info.value.message == "Screen sharing failed: encoder crashed"


@pytest.mark.unit
class TestModeration:
    """Test host controls."""

    async def test_mute_participant(self, joined_engine):
        await joined_engine.mute_participant("s-2")
        assert joined_engine.call_object.updates == [("s-2", False, None, False)]

    async def test_remove_participant(self, joined_engine):
        await joined_engine.remove_participant("s-2")
        assert joined_engine.call_object.updates == [("s-2", None, None, True)]

    async def test_moderation_failure(self, joined_engine):
        joined_engine.call_object.fail["update_participant"] = CallError("not-allowed", "not an owner")

        with pytest.raises(ModerationError) as exc_info:
            await joined_engine.disable_participant_camera("s-2")

        error = exc_info.value
        assert error.code == "moderation-failed"
        assert error.message == "Failed to disable camera: not an owner"
        assert not error.recoverable

    @pytest.mark.parametrize(
        "cause, recoverable",
        [
            (CallError("participant-not-found", "no such participant"), False),
            (CallError("network-error", "socket closed"), True),
            (TimeoutError("no answer"), True),
        ],
    )
    async def test_moderation_recoverability_follows_cause(self, joined_engine, cause, recoverable):
        joined_engine.call_object.fail["update_participant"] = cause

        with pytest.raises(ModerationError) as exc_info:
            await joined_engine.mute_participant("s-2")

        assert exc_info.value.recoverable is recoverable
        assert describe_error(exc_info.value).action is (
            RecoveryAction.RETRY if recoverable else RecoveryAction.REFRESH
        )

    async def test_moderation_requires_call(self, engine):
        with pytest.raises(VideoEngineError) as exc_info:
            await engine.mute_participant("s-2")
        assert exc_info.value.code == "not-in-call"

    async def test_lock_room(self, joined_engine):
        await joined_engine.set_room_locked(True)

        assert joined_engine.call_object.locked is True
        assert joined_engine.room_locked

    async def test_chat_message(self, joined_engine):
        await joined_engine.send_chat_message("hello")

        payload, to = joined_engine.call_object.messages[0]
        assert to == "*"
        assert payload["type"] == "chat"
        assert payload["message"] == "hello"
        assert payload["sender"] == "Alice"
        assert payload["sender_session_id"] == "local-1"

    async def test_local_session_id(self, joined_engine):
        assert joined_engine.local_session_id() == "local-1"


@pytest.mark.unit
class TestEvents:
    """Test event forwarding and participant tracking."""

    async def test_events_reach_listeners(self, joined_engine):
        received = []
        joined_engine.on("participant-joined", received.append)

        joined_engine.call_object.fire("participant-joined", {"session_id": "s-2", "user_name": "Bob"})

        assert received == [{"session_id": "s-2", "user_name": "Bob"}]
        assert joined_engine.participants["s-2"].user_name == "Bob"

    async def test_failing_listener_does_not_stop_others(self, joined_engine):
        received = []

        def broken(payload):
            raise RuntimeError("listener bug")

        joined_engine.on("participant-joined", broken)
        joined_engine.on("participant-joined", received.append)

        joined_engine.call_object.fire("participant-joined", {"session_id": "s-2"})

        assert received == [{"session_id": "s-2"}]

    async def test_off_removes_listener(self, joined_engine):
        received = []
        joined_engine.on("app-message", received.append)
        joined_engine.off("app-message", received.append)

        joined_engine.call_object.fire("app-message", {"data": "hi"})

        assert received == []

    async def test_participant_left(self, joined_engine):
        call = joined_engine.call_object
        call.fire("participant-joined", {"session_id": "s-2"})
        call.fire("participant-updated", {"session_id": "s-2", "audio": True})
        assert joined_engine.participants["s-2"].audio

        call.fire("participant-left", {"session_id": "s-2"})
        assert "s-2" not in joined_engine.participants

    async def test_listeners_survive_reinitialize(self, engine, factory):
        received = []
        engine.on("participant-joined", received.append)
        await engine.initialize()
        factory.created[0].fail["join"] = ConnectionError("socket closed")
        with pytest.raises(VideoEngineError):
            await engine.join("https://rooms.example.com/room-1", "Alice")

        await engine.initialize()
        factory.created[1].fire("participant-joined", {"session_id": "s-3"})

        assert received == [{"session_id": "s-3"}]


@pytest.mark.unit
class TestLiveKitEvents:
    """Test how LiveKit room events map to engine events."""

    @pytest.mark.parametrize(
        "old, new, expected",
        [
            ("", '{"recording": true}', "recording-started"),
            ('{"recording": true}', '{"recording": false}', "recording-stopped"),
            ('{"recording": true}', '{"recording": true, "topic": "x"}', None),
            ("", "not json", None),
        ],
    )
    def test_recording_event(self, old, new, expected):
        assert recording_event(old, new) == expected

    def test_unexpected_disconnect_is_an_error(self):
        error = disconnect_error("SIGNAL_CLOSE", leaving=False)

        assert error["code"] == "connection-error"
        assert error["recoverable"] is True
        assert disconnect_error("CLIENT_INITIATED", leaving=True) is None

    async def test_engine_forwards_recording_and_errors(self, joined_engine):
        received = []
        joined_engine.on("recording-started", received.append)
        joined_engine.on("error", received.append)

        joined_engine.call_object.fire("recording-started", {"metadata": '{"recording": true}'})
        joined_engine.call_object.fire("error", disconnect_error("SIGNAL_CLOSE", leaving=False))

        assert received[0] == {"metadata": '{"recording": true}'}
        assert received[1]["code"] == "connection-error"


@pytest.mark.unit
class TestErrorNormalization:
    """Test error codes and user-facing descriptions."""

    def test_timeout_is_recoverable(self):
        error = normalize_error(TimeoutError("took too long"))
        assert error.code == "timeout"
        assert error.recoverable

    def test_connection_error(self):
        error = normalize_error(ConnectionError("reset by peer"))
        assert error.code == "connection-error"
        assert error.recoverable

    def test_unknown_error(self):
        error = normalize_error(ValueError("odd"))
        assert error.to_dict() == {"code": "unknown-error", "message": "odd", "recoverable": False}

    def test_call_error_keeps_code(self):
        error = normalize_error(CallError("network-error", "offline"))
        assert error.code == "network-error"
        assert error.recoverable

    def test_describe_known_code(self):
        description = describe_error(CallError("meeting-full", "room at capacity"))
        assert description.user_message == "This meeting is full. Please try again later."
        assert description.action is RecoveryAction.RETRY

    def test_describe_unknown_code(self):
        description = describe_error(RuntimeError("codec negotiation failed"))
        assert description.user_message == "codec negotiation failed"
        assert description.action is RecoveryAction.REFRESH
        assert not description.recoverable

    def test_platform_detection(self):
        assert ClientPlatform.from_user_agent(IPHONE).is_mobile
        assert not ClientPlatform.from_user_agent(IPHONE).supports_display_capture
        assert ClientPlatform.from_user_agent(DESKTOP).supports_display_capture
