import asyncio
import base64
import json
import logging
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

import messages
from messages import MessageType, ErrorCode
from command_server import CommandServer
from models import AudioType, SyncMode, TimerPhase, TimerSettings, TimerState
from session_authority import SessionAuthority
from stores import AudioAssetStore, SessionStore, SettingsStore
from timer_engine import TimerEngine

DEVICE_ID = "3f1c2b9e-8d7a-4c5e-9b1f-2a6d4e8c0f13"
MP3_BYTES = b"ID3" + b"\x00" * 200


class FakeConnection:
    def __init__(self):
        self.sent: list[str] = []

    async def send(self, text: str):
        self.sent.append(text)

    def replies(self) -> list:
        return [messages.decode(text) for text in self.sent]


class BrokenConnection:
    async def send(self, text: str):
        raise OSError("gone")


class StalledConnection:
    async def send(self, text: str):
        await asyncio.Event().wait()


class BuggyConnection:
    async def send(self, text: str):
        raise RuntimeError("unexpected")


def frame(
message_type: str, payload=None, command_id: str = "cmd-1") -> str:
    return messages.encode(messages.make_envelope(message_type, payload, command_id=command_id))


@pytest_asyncio.fixture
async def server(tmp_path):
    settings = SettingsStore(tmp_path / "settings.toml")
    await settings.load()
    timer = TimerEngine(settings.get(), tick_interval=0.01)
    server = CommandServer(
        {"id": DEVICE_ID, "port": 0, "broadcast_interval": 0.05},
        timer,
        settings,
        SessionAuthority(SessionStore(tmp_path / "session.toml")),
        AudioAssetStore(tmp_path / "sounds"),
        host="127.0.0.1",
    )
    yield server
    await server.stop()
    await timer.close()


@pytest.fixture
def connection():
    return FakeConnection()


class TestCommandDispatch:
    """Tests for frame handling, without a socket."""

    @pytest.mark.asyncio
    async def test_start_is_acknowledged(self, server, connection):
        """Test the ack carries both the command id and this device's id."""
        await server._handle_text(connection, frame(MessageType.START_TIMER))
        [reply] = connection.replies()
        assert reply.type == MessageType.COMMAND_ACK
        assert reply.command_id == "cmd-1"
        assert reply.device_id == DEVICE_ID
        assert reply.payload.command_id == "cmd-1"
        assert reply.payload.message == "Timer started"
        assert server._timer.state.is_running

    @pytest.mark.asyncio
    async def test_unknown_command(self, server, connection):
        await server._handle_text(connection, frame("SELF_DESTRUCT"))
        [reply] = connection.replies()
        assert reply.type == MessageType.COMMAND_ERROR
        assert reply.payload.error_code == ErrorCode.UNKNOWN_COMMAND

    @pytest.mark.asyncio
    async def test_malformed_frame_gets_no_reply(self, server, connection):
        await server._handle_text(connection, "not json at all")
        assert connection.sent == []

    @pytest.mark.asyncio
    async def test_oversized_integer_gets_no_reply(self, server, connection):
        await server._handle_text(connection, '{"type":"START_TIMER","timestamp":' + "1" * 5000 + '}')
        assert connection.sent == []

    @pytest.mark.asyncio
    async def test_invalid_payload(self, server, connection):
        text = json.dumps({"type": "SET_EMERGENCY_TIME", "timestamp": 1, "commandId": "c9",
                           "payload": {"minutes": 1, "seconds": 99}})
        await server._handle_text(connection, text)
        [reply] = connection.replies()
        assert reply.payload.error_code == ErrorCode.INVALID_PAYLOAD
        assert reply.command_id == "c9"

    @pytest.mark.asyncio
    async def test_handler_failure_is_reported(self, server, connection):
        with patch.object(server._timer, "start", AsyncMock(side_effect=RuntimeError("boom"))):
            await server._handle_text(connection, frame(MessageType.START_TIMER))
        [reply] = connection.replies()
        assert reply.payload.error_code == ErrorCode.PROCESSING_ERROR
        assert reply.payload.message == "boom"

    @pytest.mark.asyncio
    async def test_emergency_time(self, server, connection):
        await server._handle_text(connection, frame(MessageType.SET_EMERGENCY_TIME, {"minutes": 3, "seconds": 5}))
        assert server._timer.state == TimerState(TimerPhase.MATCH, 185)

    @pytest.mark.asyncio
    async def test_sync_mode(self, server, connection):
        await server._handle_text(connection, frame(MessageType.SET_SYNC_MODE,
                                                    {"mode": "CENTRALIZED", "controllerId": "desk"}))
        assert server.sync_mode is SyncMode.CENTRALIZED
        assert server.controller_id == "desk"

        await server._handle_text(connection, frame(MessageType.SET_SYNC_MODE, {"mode": "independent"}))
        assert server.sync_mode is SyncMode.INDEPENDENT
        assert server.controller_id is None
        assert [r.payload.message for r in connection.replies()] == ["Sync mode updated"] * 2

    @pytest.mark.asyncio
    async def test_invalid_sync_mode(self, server, connection):
        await server._handle_text(connection, frame(MessageType.SET_SYNC_MODE, {"mode": "anarchy"}))
        [reply] = connection.replies()
        assert reply.payload.error_code == ErrorCode.INVALID_MODE
        assert server.sync_mode is SyncMode.INDEPENDENT

    @pytest.mark.asyncio
    async def test_get_settings(self, server, connection):
        await server._handle_text(connection, frame(MessageType.GET_SETTINGS))
        [reply] = connection.replies()
        assert reply.type == MessageType.SETTINGS_RESPONSE
        assert reply.payload == TimerSettings()

    @pytest.mark.asyncio
    async def test_update_settings_keeps_local_sounds(self, server, connection):
        """Test sound paths from another device are ignored and an idle timer picks up the new length."""
        await server._handle_text(connection, frame(MessageType.UPDATE_SETTINGS, {
            "warmupMinutes": 2, "startSoundUri": "/elsewhere/start.mp3",
        }))
        settings = server._settings.get()
        assert settings.warmup_minutes == 2
        assert settings.start_sound_uri is None
        assert server._timer.state.time_left_seconds == 120
        assert connection.replies()[-1].payload.message == "Settings updated"

    @pytest.mark.asyncio
    async def test_sync_settings_ack(self, server, connection):
        await server._handle_text(connection, frame(MessageType.SYNC_SETTINGS, {"matchMinutes": 60}))
        assert server._settings.get().match_minutes == 60
        assert connection.replies()[-1].payload.message == "Settings synced"

    @pytest.mark.asyncio
    async def test_sync_timer_state(self, server, connection):
        await server._handle_text(connection, frame(MessageType.SYNC_TIMER_STATE,
                                                    {"phase": "BREAK", "timeLeftSeconds": 30, "isRunning": False}))
        assert server._timer.state == TimerState(TimerPhase.BREAK, 30, is_paused=True)


class TestSessionCommands:

    @pytest.mark.asyncio
    async def test_create_session(self, server, connection):
        await server._handle_text(connection, frame(MessageType.CREATE_SESSION, {"password": "1234"}))
        status, ack = connection.replies()
        assert status.type == MessageType.SESSION_STATUS
        assert status.payload.is_protected
        assert "passwordHash" not in json.loads(connection.sent[0])["payload"]
        assert ack.payload.details["isProtected"] is True
        assert ack.payload.details["sessionId"] == status.payload.session_id

    @pytest.mark.asyncio
    async def test_auth_success(self, server, connection):
        await server._handle_text(connection, frame(MessageType.CREATE_SESSION, {"password": "1234"}))
        connection.sent.clear()

        await server._handle_text(connection, frame(MessageType.AUTH_REQUEST,
                                                    {"controllerId": "desk", "password": "1234"}))
        auth, status, ack = connection.replies()
        assert auth.type == MessageType.AUTH_RESPONSE
        assert auth.payload.success
        assert status.payload.authorized_count == 1
        assert ack.type == MessageType.COMMAND_ACK

    @pytest.mark.asyncio
    async def test_auth_failure(self, server, connection):
        await server._handle_text(connection, frame(MessageType.CREATE_SESSION, {"password": "1234"}))
        connection.sent.clear()

        await server._handle_text(connection, frame(MessageType.AUTH_REQUEST,
                                                    {"controllerId": "desk", "password": "0000"}))
        auth, err = connection.replies()
        assert not auth.payload.success
        assert auth.payload.error_code == "INVALID_PASSWORD"
        assert err.payload.error_code == "INVALID_PASSWORD"

    @pytest.mark.asyncio
    async def test_auth_without_session(self, server, connection):
        await server._handle_text(connection, frame(MessageType.AUTH_REQUEST, {"controllerId": "desk"}))
        auth, err = connection.replies()
        assert auth.payload.error_code == "NO_ACTIVE_SESSION"
        assert err.type == MessageType.COMMAND_ERROR

    @pytest.mark.asyncio
    async def test_end_session(self, server, connection):
        await server._handle_text(connection, frame(MessageType.CREATE_SESSION, {}))
        connection.sent.clear()
        await server._handle_text(connection, frame(MessageType.END_SESSION))
        status, ack = connection.replies()
        assert not status.payload.is_active
        assert ack.payload.message == "Session ended"

    @pytest.mark.asyncio
    async def test_get_session_status(self, server, connection):
        await server._handle_text(connection, frame(MessageType.GET_SESSION_STATUS))
        [status] = connection.replies()
        assert status.type == MessageType.SESSION_STATUS
        assert not status.payload.is_active


class TestAudioCommands:

    @staticmethod
    def upload(data: bytes, audio_type: str = "start") -> str:
        return frame(MessageType.UPLOAD_AUDIO, {
            "audioType": audio_type, "fileName": "beep.mp3", "fileData": base64.b64encode(data).decode("ascii"),
        })

    @pytest.mark.asyncio
    async def test_upload(self, server, connection, tmp_path):
        with patch("stores.probe_duration_async", AsyncMock(return_value=3.2)):
            await server._handle_text(connection, self.upload(MP3_BYTES))

        [reply] = connection.replies()
        path = tmp_path / "sounds" / "start_sound.mp3"
        assert reply.type == MessageType.COMMAND_ACK
        assert reply.payload.details == {"filePath": str(path), "durationSeconds": 3}
        assert path.read_bytes() == MP3_BYTES

        settings = server._settings.get()
        assert settings.start_sound_uri == str(path)
        assert settings.start_sound_duration_seconds == 3
        assert server._timer.settings == settings

    @pytest.mark.asyncio
    async def test_upload_bad_base64(self, server, connection):
        await server._handle_text(connection, frame(MessageType.UPLOAD_AUDIO,
                                                    {"audioType": "end", "fileData": "!!!not base64"}))
        [reply] = connection.replies()
        assert reply.payload.error_code == ErrorCode.INVALID_PAYLOAD

    @pytest.mark.asyncio
    async def test_upload_not_mp3(self, server, connection, tmp_path):
        await server._handle_text(connection, self.upload(b"RIFF" + b"\x00" * 200))
        [reply] = connection.replies()
        assert reply.payload.error_code == ErrorCode.INVALID_AUDIO
        assert not (tmp_path / "sounds" / "start_sound.mp3").exists()

    @pytest.mark.asyncio
    async def test_upload_too_long_keeps_old_file(self, server, connection, tmp_path):
        """Test a rejected upload does not replace the sound already on the device."""
        with patch("stores.probe_duration_async", AsyncMock(return_value=2.0)):
            await server._handle_text(connection, self.upload(MP3_BYTES))
        longer = b"ID3" + b"\x01" * 200
        with patch("stores.probe_duration_async", AsyncMock(return_value=25.0)):
            await server._handle_text(connection, self.upload(longer))

        reply = connection.replies()[-1]
        assert reply.payload.error_code == ErrorCode.INVALID_AUDIO
        assert (tmp_path / "sounds" / "start_sound.mp3").read_bytes() == MP3_BYTES
        assert server._settings.get().start_sound_duration_seconds == 2

    @pytest.mark.asyncio
    async def test_delete_clears_settings(self, server, connection, tmp_path):
        with patch("stores.probe_duration_async", AsyncMock(return_value=2.0)):
            await server._handle_text(connection, self.upload(MP3_BYTES, "end"))
        await server._handle_text(connection, frame(MessageType.DELETE_AUDIO, {"audioType": "end"}))
        await server._handle_text(connection, frame(MessageType.DELETE_AUDIO, {"audioType": "end"}))

        assert [r.type for r in connection.replies()] == [MessageType.COMMAND_ACK] * 3
        assert not (tmp_path / "sounds" / "end_sound.mp3").exists()
        assert server._settings.get().end_sound_uri is None
        assert server._settings.get().end_sound_duration_seconds == 0


class TestBroadcast:

    @pytest.mark.asyncio
    async def test_failing_connection_is_dropped(self, server, connection):
        server._connections["good"] = connection
        server._connections["bad"] = BrokenConnection()

        await server.broadcast(messages.make_envelope(MessageType.STATE_UPDATE, TimerState(), DEVICE_ID))
        assert list(server._connections) == ["good"]
        assert len(connection.sent) == 1

    @pytest.mark.asyncio
    async def test_stalled_connection_does_not_hold_up_others(self, server, connection):
        server._connections["stalled"] = StalledConnection()
        server._connections["good"] = connection

        with patch("command_server.BROADCAST_SEND_TIMEOUT", 0.05):
            await server.broadcast(messages.make_envelope(MessageType.STATE_UPDATE, TimerState(), DEVICE_ID))
        assert list(server._connections) == ["good"]
        assert len(connection.sent) == 1

    @pytest.mark.asyncio
    async def test_unexpected_send_error_is_contained(self, server, connection):
        server._connections["buggy"] = BuggyConnection()
        server._connections["good"] = connection

        await server.broadcast(messages.make_envelope(MessageType.STATE_UPDATE, TimerState(), DEVICE_ID))
        assert len(connection.sent) == 1

    @pytest.mark.asyncio
    async def test_loop_survives_a_failed_broadcast(self, server):
        """Test one failing round does not end the periodic broadcast."""
        calls = []

        async def broadcast(envelope):
            calls.append(envelope.type)
            if len(calls) == 1:
                raise RuntimeError("first round fails")

        with patch.object(server, "broadcast", broadcast):
            task = asyncio.create_task(server._broadcast_loop())
            await asyncio.sleep(0.2)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
        assert len(calls) > 1
        assert set(calls) == {MessageType.STATE_UPDATE}


class TestServer:
    """Tests against a listening socket."""

    @pytest.mark.asyncio
    async def test_start_twice_and_stop_twice(self, server, caplog):
        with caplog.at_level(logging.WARNING):
            await server.start()
            await server.start()
        assert "already running" in caplog.text
        assert server.is_running
        await server.stop()
        await server.stop()
        assert not server.is_running

    @pytest.mark.asyncio
    async def test_command_round_trip(self, server):
        await server.start()
        async with connect(f"ws://127.0.0.1:{server.port}/ws") as websocket:
            await websocket.send(frame(MessageType.START_TIMER, command_id="round-trip"))
            while True:
                reply = messages.decode(await websocket.recv())
                if reply.type != MessageType.STATE_UPDATE:
                    break
        assert reply.type == MessageType.COMMAND_ACK
        assert reply.command_id == "round-trip"

    @pytest.mark.asyncio
    async def test_state_is_broadcast(self, server):
        await server.start()
        async with connect(f"ws://127.0.0.1:{server.port}/ws") as websocket:
            update = messages.decode(await websocket.recv())
        assert update.type == MessageType.STATE_UPDATE
        assert update.device_id == DEVICE_ID
        assert update.payload == TimerState(TimerPhase.WARMUP, 300)

    @pytest.mark.asyncio
    async def test_wrong_path_is_refused(self, server):
        await server.start()
        async with connect(f"ws://127.0.0.1:{server.port}/other") as websocket:
            with pytest.raises(ConnectionClosed) as info:
                await websocket.recv()
        assert info.value.rcvd.code == 1008

    @pytest.mark.asyncio
    async def test_bad_frame_keeps_connection_open(self, server):
        """Test a frame the JSON parser chokes on does not close the socket."""
        await server.start()
        async with connect(f"ws://127.0.0.1:{server.port}/ws") as websocket:
            await websocket.send('{"type":"START_TIMER","timestamp":' + "1" * 5000 + '}')
            await websocket.send(frame(MessageType.START_TIMER, command_id="after-bad-frame"))
            while True:
                reply = messages.decode(await websocket.recv())
                if reply.type != MessageType.STATE_UPDATE:
                    break
        assert reply.type == MessageType.COMMAND_ACK
        assert reply.command_id == "after-bad-frame"
