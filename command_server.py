"""
MatchClock
Copyright (C) 2024 thiccaxe

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published
by the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import asyncio
import base64
import binascii
import logging
from typing import Optional
from urllib.parse import urlsplit

from websockets.asyncio.server import serve, Server, ServerConnection
from websockets.exceptions import ConnectionClosed
from websockets.frames import CloseCode

import messages
from messages import MessageType, ErrorCode, Envelope, CommandAck, CommandError, AuthResponse
from models import MAX_FRAME_BYTES, SOCKET_PATH, SyncMode, TimerSettings
from session_authority import SessionAuthority, SessionError
from stores import AudioAssetStore, SettingsStore, MAX_AUDIO_SECONDS
from timer_engine import TimerEngine

BROADCAST_SEND_TIMEOUT = 5.0


class CommandServer:
    """
    Websocket endpoint of a device.

    Decodes command frames, drives the timer, session and asset stores, and
    answers every command on the connection it came from. A background task
    broadcasts the timer state to every connection.
    """
    _server: Optional[Server] = None
    _broadcast_task: Optional[asyncio.Task] = None

    def __init__(self, config: dict, timer: TimerEngine, settings: SettingsStore,
                 authority: SessionAuthority, assets: AudioAssetStore, host: str = ""):
        self._config = config
        self._device_id: str = config["id"]
        self._host = host
        self._timer = timer
        self._settings = settings
        self._authority = authority
        self._assets = assets
        self._connections: dict[str, ServerConnection] = dict()
        self._sync_mode = SyncMode.INDEPENDENT
        self._controller_id: Optional[str] = None

        self._command_handlers = {
            MessageType.START_TIMER: self._handle_timer_command,
            MessageType.PAUSE_TIMER: self._handle_timer_command,
            MessageType.RESUME_TIMER: self._handle_timer_command,
            MessageType.RESTART_TIMER: self._handle_timer_command,
            MessageType.SET_EMERGENCY_TIME: self._handle_emergency_time,
            MessageType.SET_SYNC_MODE: self._handle_sync_mode,
            MessageType.GET_SETTINGS: self._handle_get_settings,
            MessageType.UPDATE_SETTINGS: self._handle_settings_update,
            MessageType.SYNC_SETTINGS: self._handle_settings_update,
            MessageType.SYNC_TIMER_STATE: self._handle_sync_timer_state,
            MessageType.CREATE_SESSION: self._handle_create_session,
            MessageType.AUTH_REQUEST: self._handle_auth_request,
            MessageType.REVOKE_CONTROLLER: self._handle_revoke_controller,
            MessageType.GET_SESSION_STATUS: self._handle_get_session_status,
            MessageType.END_SESSION: self._handle_end_session,
            MessageType.UPLOAD_AUDIO: self._handle_upload_audio,
            MessageType.DELETE_AUDIO: self._handle_delete_audio,
        }

    @property
    def sync_mode(self) -> SyncMode:
        return self._sync_mode

    @property
    def controller_id(self) -> Optional[str]:
        return self._controller_id

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> Optional[int]:
        """The bound port, which differs from the configured one when that is 0."""
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    async def start(self):
        if self._server is not None:
            logging.warning("Command server already running, ignoring start")
            return

        port = int(self._config["port"])
        logging.debug(f"Starting command server on port {port}")
        self._server = await serve(self._handler, self._host, port, max_size=MAX_FRAME_BYTES)
        self._broadcast_task = asyncio.create_task(self._broadcast_loop())
        logging.info(f"Command server listening on port {self.port}")

    async def stop(self):
        if self._server is None:
            return

        logging.debug("Stopping command server")
        if self._broadcast_task is not None:
            self._broadcast_task.cancel()
            try:
                await self._broadcast_task
            except asyncio.CancelledError:
                pass
            self._broadcast_task = None

        server, self._server = self._server, None
        server.close()
        await server.wait_closed()
        self._connections.clear()
        logging.info("Command server stopped")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def _handler(self, connection: ServerConnection):
        path = urlsplit(connection.request.path).path
        if path != SOCKET_PATH:
            logging.warning(f"Rejecting connection to {path}")
            await connection.close(CloseCode.POLICY_VIOLATION, f"use {SOCKET_PATH}")
            return

        key = str(connection.id)
        self._connections[key] = connection
        logging.info(f"Client connected: {connection.remote_address} ({len(self._connections)} connected)")
        try:
            async for message in connection:
                if isinstance(message, bytes):
                    logging.warning("Received binary frame, ignoring")
                    continue
                await self._handle_text(connection, message)
        except ConnectionClosed:
            logging.debug("Websocket connection closed")
        finally:
            self._connections.pop(key, None)
            logging.info(f"Client disconnected ({len(self._connections)} connected)")

    async def _handle_text(self, connection, text: str):
        try:
            envelope = messages.decode(text)
        except messages.PayloadError as e:
            logging.warning(f"{e}")
            await self._reply_error(connection, e.command_id, ErrorCode.INVALID_PAYLOAD, e.reason)
            return
        except messages.DecodeError as e:
            logging.warning(f"Dropping malformed frame: {e}")
            return

        logging.debug(f"Received {envelope.type} ({envelope.command_id=})")
        handler = self._command_handlers.get(envelope.type)
        if handler is None:
            logging.warning(f"Unknown message type: {envelope.type}")
            await self._reply_error(connection, envelope.command_id, ErrorCode.UNKNOWN_COMMAND,
                                    f"Unknown command: {envelope.type}")
            return

        try:
            await handler(connection, envelope)
        except Exception as e:
            logging.exception(e)
            await self._reply_error(connection, envelope.command_id, ErrorCode.PROCESSING_ERROR, str(e))

    async def _send(self, connection, envelope: Envelope) -> bool:
        try:
            await connection.send(messages.encode(envelope))
            return True
        except ConnectionClosed:
            logging.debug("Could not reply, connection already closed")
            return False

    async def _reply(self, connection, message_type: str, payload, command_id: Optional[str]):
        await self._send(connection, messages.make_envelope(message_type, payload, self._device_id, command_id))

    async def _ack(self, connection, command_id: Optional[str], message: str, details: Optional[dict] = None):
        await self._reply(connection, MessageType.COMMAND_ACK,
                          CommandAck(command_id, "success", message, details or {}), command_id)

    async def _reply_error(self, connection, command_id: Optional[str], error_code: str, message: str):
        await self._reply(connection, MessageType.COMMAND_ERROR,
                          CommandError(command_id, error_code, message), command_id)

    async def _send_to_client(self, key: str, connection: ServerConnection, text: str):
        try:
            await asyncio.wait_for(connection.send(text), BROADCAST_SEND_TIMEOUT)
        except (ConnectionClosed, OSError, asyncio.TimeoutError) as e:
            logging.warning(f"Failed to send to client {key}, dropping it: {e!r}")
            self._connections.pop(key, None)

    async def broadcast(self, envelope: Envelope):
        if not self._connections:
            return

        text = messages.encode(envelope)
        clients = list(self._connections.items())
        results = await asyncio.gather(
            *(self._send_to_client(key, connection, text) for key, connection in clients),
            return_exceptions=True
        )
        for (key, _), result in zip(clients, results):
            if isinstance(result, Exception):
                logging.error(f"Unexpected error sending to client {key}: {result!r}")

    async def _broadcast_loop(self):
        interval = float(self._config.get("broadcast_interval", 1.0))
        while True:
            try:
                await self.broadcast(
                    messages.make_envelope(MessageType.STATE_UPDATE, self._timer.state, self._device_id))
            except Exception as e:
                logging.exception(e)
            await asyncio.sleep(interval)

    async def _store_settings(self, settings: TimerSettings):
        await self._settings.set(settings)
        await self._timer.apply_settings(settings)

    async def _handle_timer_command(self, connection, envelope: Envelope):
        action, message = {
            MessageType.START_TIMER: (self._timer.start, "Timer started"),
            MessageType.PAUSE_TIMER: (self._timer.pause, "Timer paused"),
            MessageType.RESUME_TIMER: (self._timer.resume, "Timer resumed"),
            MessageType.RESTART_TIMER: (self._timer.restart, "Timer restarted"),
        }[envelope.type]
        await action()
        await self._ack(connection, envelope.command_id, message)

    async def _handle_emergency_time(self, connection, envelope: Envelope):
        await self._timer.set_emergency_time(envelope.payload.minutes, envelope.payload.seconds)
        await self._ack(connection, envelope.command_id, "Emergency time set")

    async def _handle_sync_mode(self, connection, envelope: Envelope):
        request = envelope.payload
        mode = request.mode.lower()
        if mode == SyncMode.CENTRALIZED.value:
            self._sync_mode = SyncMode.CENTRALIZED
            self._controller_id = request.controller_id
            logging.info(f"Sync mode set to centralized, controller {request.controller_id}")
        elif mode == SyncMode.INDEPENDENT.value:
            self._sync_mode = SyncMode.INDEPENDENT
            self._controller_id = None
            logging.info("Sync mode set to independent")
        else:
            logging.warning(f"Invalid sync mode: {request.mode}")
            await self._reply_error(connection, envelope.command_id, ErrorCode.INVALID_MODE,
                                    f"Invalid sync mode: {request.mode}")
            return
        await self._ack(connection, envelope.command_id, "Sync mode updated")

    async def _handle_get_settings(self, connection, envelope: Envelope):
        await self._reply(connection, MessageType.SETTINGS_RESPONSE, self._settings.get(), envelope.command_id)

    async def _handle_settings_update(self, connection, envelope: Envelope):
        settings = envelope.payload.apply_to(self._settings.get())
        await self._store_settings(settings)
        message = "Settings synced" if envelope.type == MessageType.SYNC_SETTINGS else "Settings updated"
        await self._ack(connection, envelope.command_id, message)

    async def _handle_sync_timer_state(self, connection, envelope: Envelope):
        sync = envelope.payload
        await self._timer.sync_to(sync.phase, sync.time_left_seconds, sync.is_running)
        await self._ack(connection, envelope.command_id, "Timer state synced")

    async def _send_session_status(self, connection, command_id: Optional[str]):
        await self._reply(connection, MessageType.SESSION_STATUS,
                          self._authority.get_state().to_status_payload(), command_id)

    async def _handle_create_session(self, connection, envelope: Envelope):
        state = await self._authority.create_session(envelope.payload.password, envelope.payload.owner)
        await self._send_session_status(connection, envelope.command_id)
        await self._ack(connection, envelope.command_id, "Session created",
                        {"sessionId": state.session_id, "isProtected": state.is_protected})

    async def _handle_auth_request(self, connection, envelope: Envelope):
        request = envelope.payload
        try:
            state = await self._authority.authenticate(request.controller_id, request.password)
        except SessionError as e:
            await self._reply(connection, MessageType.AUTH_RESPONSE,
                              AuthResponse(False, request.controller_id, None, e.code.value, e.message),
                              envelope.command_id)
            await self._reply_error(connection, envelope.command_id, e.code.value, e.message)
            return

        await self._reply(connection, MessageType.AUTH_RESPONSE,
                          AuthResponse(True, request.controller_id, state.session_id, None, "Authenticated"),
                          envelope.command_id)
        await self._send_session_status(connection, envelope.command_id)
        await self._ack(connection, envelope.command_id, "Authenticated", {"sessionId": state.session_id})

    async def _handle_revoke_controller(self, connection, envelope: Envelope):
        try:
            await self._authority.revoke(envelope.payload.controller_id)
        except SessionError as e:
            await self._reply_error(connection, envelope.command_id, e.code.value, e.message)
            return
        await self._send_session_status(connection, envelope.command_id)
        await self._ack(connection, envelope.command_id, "Controller revoked")

    async def _handle_get_session_status(self, connection, envelope: Envelope):
        await self._send_session_status(connection, envelope.command_id)

    async def _handle_end_session(self, connection, envelope: Envelope):
        await self._authority.end_session()
        await self._send_session_status(connection, envelope.command_id)
        await self._ack(connection, envelope.command_id, "Session ended")

    async def _handle_upload_audio(self, connection, envelope: Envelope):
        upload = envelope.payload
        try:
            data = base64.b64decode(upload.file_data, validate=True)
        except (binascii.Error, ValueError) as e:
            logging.warning(f"Failed to decode base64 audio data: {e}")
            await self._reply_error(connection, envelope.command_id, ErrorCode.INVALID_PAYLOAD,
                                    "Invalid base64 file data")
            return

        error = self._assets.validate(data)
        if error is None:
            duration = await self._assets.duration_seconds(data)
            if duration > MAX_AUDIO_SECONDS:
                error = f"Audio too long. Maximum duration is {MAX_AUDIO_SECONDS} seconds (got {duration}s)"
        if error is not None:
            await self._reply_error(connection, envelope.command_id, ErrorCode.INVALID_AUDIO, error)
            return

        try:
            path = await self._assets.save(upload.audio_type, data)
        except OSError as e:
            logging.exception(e)
            await self._reply_error(connection, envelope.command_id, ErrorCode.SAVE_FAILED,
                                    f"Failed to save audio file: {e}")
            return

        await self._store_settings(self._settings.get().with_sound(upload.audio_type, str(path), duration))
        logging.info(f"Audio uploaded: {upload.audio_type.value} {path} ({duration}s)")
        await self._ack(connection, envelope.command_id, "Audio file uploaded successfully",
                        {"filePath": str(path), "durationSeconds": duration})

    async def _handle_delete_audio(self, connection, envelope: Envelope):
        audio_type = envelope.payload.audio_type
        if not await self._assets.delete(audio_type):
            await self._reply_error(connection, envelope.command_id, ErrorCode.PROCESSING_ERROR,
                                    "Failed to delete audio file")
            return

        await self._store_settings(self._settings.get().with_sound(audio_type, None, 0))
        logging.info(f"Audio deleted: {audio_type.value}")
        await self._ack(connection, envelope.command_id, "Audio file deleted successfully")
