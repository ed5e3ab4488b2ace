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
import logging
from typing import Awaitable, Callable, Optional

from connection_manager import ConnectionManager, DeviceRequestError
from messages import (
    MessageType, Envelope, EmergencyTime, SyncModeRequest, SettingsUpdate, TimerSync, CreateSession,
    AuthRequest, SessionStatus,
)
from models import (
    AuthStatus, BatchResult, DeviceResult, SyncMode, TimerSettings, TimerState, DEVICE_LOCAL_SETTINGS,
)

"""
The controller's view of the clock.

One connected device is the master: its broadcasts are mirrored here and its
settings are the ones pushed to every other device. The choice is local to
this controller; devices know nothing about it.
"""


class NoMasterDeviceError(Exception):
    def __init__(self):
        super().__init__("No master device selected")


class DeviceNotConnectedError(Exception):
    def __init__(self, device_id: str):
        super().__init__(f"Device {device_id} is not connected")
        self.device_id = device_id


def shared_settings(settings: TimerSettings) -> SettingsUpdate:
    """Settings that can be copied between devices; sound paths stay with their device."""
    update = SettingsUpdate.from_settings(settings)
    for attribute in DEVICE_LOCAL_SETTINGS:
        update.values.pop(attribute, None)
    return update


class SyncOrchestrator:

    def __init__(self, config: dict, connections: ConnectionManager,
                 sleep: Callable[[float], Awaitable] = asyncio.sleep):
        self._config = config
        self._controller_id: str = config["id"]
        self._settings_confirm_delay = float(config.get("settings_confirm_delay", 0.5))
        self._connections = connections
        self._sleep = sleep

        self._master_device_id: Optional[str] = None
        self.last_known_state: Optional[TimerState] = None
        self.last_known_settings: Optional[TimerSettings] = None
        self.auth_status: dict[str, AuthStatus] = dict()
        self.session_status: dict[str, SessionStatus] = dict()

        self._state_subscribers: list[Callable[[TimerState], None]] = []
        self._settings_subscribers: list[Callable[[TimerSettings], None]] = []
        self._message_subscribers: list[Callable[[str, Envelope], None]] = []
        self._tasks: set[asyncio.Task] = set()

        self._connections.add_connection_listener(self._on_connection_changed)
        self._connections.add_message_listener(self._on_message)

    @property
    def controller_id(self) -> str:
        return self._controller_id

    @property
    def master_device_id(self) -> Optional[str]:
        return self._master_device_id

    @property
    def connections(self) -> ConnectionManager:
        return self._connections

    def subscribe_state(self, callback: Callable[[TimerState], None]):
        self._state_subscribers.append(callback)

    def subscribe_settings(self, callback: Callable[[TimerSettings], None]):
        self._settings_subscribers.append(callback)

    def subscribe_messages(self, callback: Callable[[str, Envelope], None]):
        self._message_subscribers.append(callback)

    def _spawn(self, coroutine):
        task = asyncio.ensure_future(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def close(self):
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    def _device_name(self, device_id: str) -> str:
        device = self._connections.device(device_id)
        return device.name if device is not None else device_id

    def _make_master(self, device_id: Optional[str]):
        self._master_device_id = device_id
        self.last_known_settings = None
        if device_id is None:
            logging.warning("No connected device left to act as master")
            return
        logging.info(f"Master device is now {self._device_name(device_id)}")
        self._spawn(self._connections.send_command(device_id, MessageType.GET_SETTINGS))

    def _on_connection_changed(self, device_id: str, connected: bool):
        if connected:
            if self._master_device_id is None:
                self._make_master(device_id)
            elif device_id != self._master_device_id and self.last_known_state is not None:
                # bring the newcomer in line before its own first broadcast
                self._spawn(self._connections.send_command(
                    device_id, MessageType.SYNC_TIMER_STATE, TimerSync.from_state(self.last_known_state)))
            return

        if device_id == self._master_device_id:
            remaining = [other for other in self._connections.connected_device_ids() if other != device_id]
            self._make_master(remaining[0] if remaining else None)

    @staticmethod
    def _notify(subscribers: list, *args):
        for subscriber in list(subscribers):
            try:
                subscriber(*args)
            except Exception as e:
                logging.exception(e)

    def _on_message(self, device_id: str, envelope: Envelope):
        # mirrors are updated before any subscriber runs
        from_master = device_id == self._master_device_id
        if envelope.type == MessageType.AUTH_RESPONSE:
            response = envelope.payload
            self.auth_status[device_id] = AuthStatus(response.success, response.controller_id, response.session_id)
        elif envelope.type == MessageType.SESSION_STATUS:
            self.session_status[device_id] = envelope.payload
        elif from_master and envelope.type == MessageType.STATE_UPDATE:
            self.last_known_state = envelope.payload
        elif from_master and envelope.type == MessageType.SETTINGS_RESPONSE:
            self.last_known_settings = envelope.payload

        self._notify(self._message_subscribers, device_id, envelope)
        if from_master and envelope.type == MessageType.STATE_UPDATE:
            self._notify(self._state_subscribers, envelope.payload)
        elif from_master and envelope.type == MessageType.SETTINGS_RESPONSE:
            self._notify(self._settings_subscribers, envelope.payload)

    async def set_master(self, device_id: str):
        if not self._connections.is_connected(device_id):
            raise DeviceNotConnectedError(device_id)
        self._master_device_id = device_id
        self.last_known_settings = None
        logging.info(f"Master device set to {self._device_name(device_id)}")
        await self._connections.send_command(device_id, MessageType.GET_SETTINGS)

    async def _send_to(self, device_id: str, message_type: str, payload=None) -> DeviceResult:
        command_id = await self._connections.send_command(device_id, message_type, payload)
        if command_id is None:
            return DeviceResult(device_id, self._device_name(device_id), False, "Send failed")
        return DeviceResult(device_id, self._device_name(device_id), True, "Sent", {"commandId": command_id})

    async def send_timer_command(self, message_type: str, payload=None) -> BatchResult:
        device_ids = self._connections.connected_device_ids()
        results = await asyncio.gather(*(self._send_to(device_id, message_type, payload) for device_id in device_ids))
        batch = BatchResult(list(results))
        logging.info(f"{message_type}: {batch.summary()}")
        return batch

    async def start_all(self) -> BatchResult:
        return await self.send_timer_command(MessageType.START_TIMER)

    async def pause_all(self) -> BatchResult:
        return await self.send_timer_command(MessageType.PAUSE_TIMER)

    async def resume_all(self) -> BatchResult:
        return await self.send_timer_command(MessageType.RESUME_TIMER)

    async def restart_all(self) -> BatchResult:
        return await self.send_timer_command(MessageType.RESTART_TIMER)

    async def set_emergency_time_all(self, minutes: int, seconds: int) -> BatchResult:
        return await self.send_timer_command(MessageType.SET_EMERGENCY_TIME, EmergencyTime(minutes, seconds))

    async def set_sync_mode_all(self, mode: SyncMode) -> BatchResult:
        controller_id = self._controller_id if mode is SyncMode.CENTRALIZED else None
        return await self.send_timer_command(MessageType.SET_SYNC_MODE, SyncModeRequest(mode.value, controller_id))

    async def refresh_master_settings(self) -> bool:
        """Ask the master for its settings; the reply lands in `last_known_settings`."""
        if self._master_device_id is None:
            return False
        return await self._connections.send_command(self._master_device_id, MessageType.GET_SETTINGS) is not None

    async def update_master_settings(self, settings: TimerSettings) -> bool:
        if self._master_device_id is None:
            raise NoMasterDeviceError()

        master = self._master_device_id
        if await self._connections.send_command(master, MessageType.UPDATE_SETTINGS, shared_settings(settings)) is None:
            return False
        # TODO: wait for the COMMAND_ACK via ConnectionManager.request instead of a fixed delay
        await self._sleep(self._settings_confirm_delay)
        return await self.refresh_master_settings()

    async def _sync_follower(self, device_id: str, settings: SettingsUpdate,
                             state: Optional[TimerState]) -> DeviceResult:
        result = await self._send_to(device_id, MessageType.SYNC_SETTINGS, settings)
        if result.success and state is not None:
            result = await self._send_to(device_id, MessageType.SYNC_TIMER_STATE, TimerSync.from_state(state))
        return result

    async def sync_settings_from_master(self) -> Optional[BatchResult]:
        """
        Push the master's settings (and timer state, when known) to every other
        connected device. Without cached settings this only asks the master for
        them and returns None, the caller retries once they have arrived.
        """
        if self._master_device_id is None:
            raise NoMasterDeviceError()

        if self.last_known_settings is None:
            logging.info("Master settings not known yet, requesting them")
            await self._connections.send_command(self._master_device_id, MessageType.GET_SETTINGS)
            return None

        settings = shared_settings(self.last_known_settings)
        state = self.last_known_state
        followers = [
            device_id for device_id in self._connections.connected_device_ids()
            if device_id != self._master_device_id
        ]
        results = await asyncio.gather(*(self._sync_follower(device_id, settings, state) for device_id in followers))
        batch = BatchResult(list(results))
        logging.info(f"Settings sync: {batch.summary()}")
        return batch

    async def request_result(self, device_id: str, message_type: str, payload=None,
                             timeout: Optional[float] = None) -> DeviceResult:
        """One correlated command, folded into a DeviceResult."""
        name = self._device_name(device_id)
        try:
            reply = await self._connections.request(device_id, message_type, payload, timeout)
        except DeviceRequestError as e:
            return DeviceResult(device_id, name, False, e.reason)

        if reply.type == MessageType.COMMAND_ACK:
            return DeviceResult(device_id, name, True, reply.payload.message, reply.payload.details)
        error = reply.payload
        return DeviceResult(device_id, name, False, error.message or error.error_code, {"errorCode": error.error_code})

    async def _request_all(self, message_type: str, payload=None) -> BatchResult:
        device_ids = self._connections.connected_device_ids()
        results = await asyncio.gather(*(self.request_result(device_id, message_type, payload)
                                         for device_id in device_ids))
        return BatchResult(list(results))

    async def create_session(self, password: Optional[str] = None, owner: Optional[str] = None) -> BatchResult:
        return await self._request_all(MessageType.CREATE_SESSION, CreateSession(password, owner))

    async def authenticate(self, device_id: str, password: str) -> AuthStatus:
        if not self._connections.is_connected(device_id):
            raise DeviceNotConnectedError(device_id)
        result = await self.request_result(device_id, MessageType.AUTH_REQUEST,
                                           AuthRequest(self._controller_id, password))
        status = self.auth_status.get(device_id)
        if status is None or status.is_authorized != result.success:
            status = AuthStatus(result.success, self._controller_id,
                                result.details.get("sessionId") if result.success else None)
            self.auth_status[device_id] = status
        if not result.success:
            logging.warning(f"Authentication with {result.device_name} failed: {result.message}")
        return status

    async def authenticate_all(self, password: str) -> BatchResult:
        return await self._request_all(MessageType.AUTH_REQUEST, AuthRequest(self._controller_id, password))

    async def end_session(self) -> BatchResult:
        return await self._request_all(MessageType.END_SESSION)

    async def request_session_status(self) -> BatchResult:
        """Replies arrive as SESSION_STATUS frames and land in `session_status`."""
        return await self.send_timer_command(MessageType.GET_SESSION_STATUS)
