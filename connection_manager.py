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
import dataclasses
import logging
from typing import Awaitable, Callable, Optional

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException

import messages
from messages import Envelope, REPLY_TYPES
from models import MAX_FRAME_BYTES, Device

MessageListener = Callable[[str, Envelope], None]
ConnectionListener = Callable[[str, bool], None]

OPEN_TIMEOUT = 10


class DeviceConnectError(Exception):
    def __init__(self, device: Device, reason: str):
        super().__init__(f"Could not connect to {device.name} ({device.socket_url}): {reason}")
        self.device = device
        self.reason = reason


class DeviceRequestError(Exception):
    def __init__(self, device_id: str, reason: str):
        super().__init__(f"{device_id}: {reason}")
        self.device_id = device_id
        self.reason = reason


async def websocket_connector(url: str):
    return await connect(url, max_size=MAX_FRAME_BYTES, open_timeout=OPEN_TIMEOUT)


@dataclasses.dataclass(eq=False)
class _DeviceLink:
    device: Device
    socket: object = None
    reader_task: Optional[asyncio.Task] = None
    reconnect_task: Optional[asyncio.Task] = None
    attempts: int = 0
    pending: dict = dataclasses.field(default_factory=dict)


class ConnectionManager:
    """
    Holds one socket per device.

    A socket closed by the device is reopened with a linearly growing delay,
    up to `max_reconnect_attempts` times, after which the device is dropped.
    Frames are reported to message listeners under the id of the device the
    socket belongs to.
    """

    def __init__(self, config: dict, connector: Callable[[str], Awaitable] = websocket_connector,
                 sleep: Callable[[float], Awaitable] = asyncio.sleep):
        self._config = config
        self._base_delay = float(config.get("reconnect_base_delay", 2.0))
        self._max_attempts = min(int(config.get("max_reconnect_attempts", 5)), 5)
        self._request_timeout = float(config.get("request_timeout", 15.0))
        self._connector = connector
        self._sleep = sleep
        self._links: dict[str, _DeviceLink] = dict()
        self._message_listeners: list[MessageListener] = []
        self._connection_listeners: list[ConnectionListener] = []

    def add_message_listener(self, listener: MessageListener):
        self._message_listeners.append(listener)

    def add_connection_listener(self, listener: ConnectionListener):
        self._connection_listeners.append(listener)

    def device(self, device_id: str) -> Optional[Device]:
        link = self._links.get(device_id)
        return link.device if link is not None else None

    def devices(self) -> list[Device]:
        return [link.device for link in self._links.values()]

    def connected_device_ids(self) -> list[str]:
        return [device_id for device_id, link in self._links.items() if link.socket is not None]

    def is_connected(self, device_id: str) -> bool:
        link = self._links.get(device_id)
        return link is not None and link.socket is not None

    async def connect(self, device: Device):
        existing = self._links.pop(device.id, None)
        if existing is not None:
            logging.debug(f"Replacing existing socket for {device.id}")
            await self._teardown(existing)

        try:
            socket = await self._connector(device.socket_url)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            logging.warning(f"Could not connect to {device.name} at {device.socket_url}: {e!r}")
            raise DeviceConnectError(device, str(e) or type(e).__name__) from e

        link = _DeviceLink(device)
        self._links[device.id] = link
        self._opened(link, socket)

    async def disconnect(self, device_id: str) -> bool:
        link = self._links.pop(device_id, None)
        if link is None:
            return False
        was_connected = link.socket is not None
        await self._teardown(link)
        logging.info(f"Disconnected from {link.device.name}")
        if was_connected:
            self._notify_connection(device_id, False)
        return True

    async def close_all(self):
        for device_id in list(self._links):
            await self.disconnect(device_id)

    async def send(self, device_id: str, envelope: Envelope) -> bool:
        link = self._links.get(device_id)
        if link is None or link.socket is None:
            logging.warning(f"Cannot send {envelope.type}, {device_id} is not connected")
            return False
        try:
            await link.socket.send(messages.encode(envelope))
            return True
        except (ConnectionClosed, OSError) as e:
            logging.warning(f"Failed to send {envelope.type} to {device_id}: {e!r}")
            return False

    async def send_command(self, device_id: str, message_type: str, payload=None) -> Optional[str]:
        """Fire and forget. Returns the command id, or None when nothing was sent."""
        command_id = messages.new_command_id()
        if await self.send(device_id, messages.make_envelope(message_type, payload, command_id=command_id)):
            return command_id
        return None

    async def request(self, device_id: str, message_type: str, payload=None,
                      timeout: Optional[float] = None) -> Envelope:
        """
        Send a command and wait for the COMMAND_ACK or COMMAND_ERROR carrying
        its command id. Raises DeviceRequestError when the device is not
        connected, the send fails, the socket closes or no reply arrives in time.
        """
        link = self._links.get(device_id)
        if link is None or link.socket is None:
            raise DeviceRequestError(device_id, "Device not connected")

        timeout = timeout if timeout is not None else self._request_timeout
        command_id = messages.new_command_id()
        future = asyncio.get_running_loop().create_future()
        link.pending[command_id] = future
        try:
            if not await self.send(device_id, messages.make_envelope(message_type, payload, command_id=command_id)):
                raise DeviceRequestError(device_id, "Send failed")
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as e:
            raise DeviceRequestError(device_id, f"No reply within {timeout:g}s") from e
        finally:
            link.pending.pop(command_id, None)

    def _opened(self, link: _DeviceLink, socket):
        link.socket = socket
        link.attempts = 0
        link.device.connected = True
        link.reader_task = asyncio.create_task(self._read_loop(link, socket))
        logging.info(f"Connected to {link.device.name} ({link.device.id})")
        self._notify_connection(link.device.id, True)

    async def _teardown(self, link: _DeviceLink):
        # the reconnect task goes first so nothing reopens the socket behind us
        for task in (link.reconnect_task, link.reader_task):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        link.reconnect_task = None
        link.reader_task = None

        socket, link.socket = link.socket, None
        link.device.connected = False
        self._fail_pending(link, "Disconnected")
        if socket is not None:
            try:
                await socket.close()
            except (ConnectionClosed, OSError) as e:
                logging.debug(f"Error closing socket: {e!r}")

    async def _read_loop(self, link: _DeviceLink, socket):
        try:
            async for text in socket:
                if isinstance(text, bytes):
                    logging.warning(f"Ignoring binary frame from {link.device.id}")
                    continue
                try:
                    envelope = messages.decode(text)
                except messages.DecodeError as e:
                    logging.warning(f"Dropping malformed frame from {link.device.id}: {e}")
                    continue
                self._dispatch(link, envelope)
        except ConnectionClosed as e:
            logging.debug(f"Connection to {link.device.id} closed: {e!r}")
        except Exception as e:
            # the link is closed whenever its reader exits
            logging.exception(e)
            logging.warning(f"Reader for {link.device.id} failed, closing the socket")
            try:
                await socket.close()
            except (ConnectionClosed, OSError) as close_error:
                logging.debug(f"Error closing socket: {close_error!r}")

        # cancellation by disconnect() never reaches this point
        self._closed_remotely(link, socket)

    def _dispatch(self, link: _DeviceLink, envelope: Envelope):
        if envelope.type in REPLY_TYPES and envelope.command_id is not None:
            future = link.pending.get(envelope.command_id)
            if future is not None and not future.done():
                future.set_result(envelope)

        for listener in list(self._message_listeners):
            try:
                listener(link.device.id, envelope)
            except Exception as e:
                logging.exception(e)

    def _notify_connection(self, device_id: str, connected: bool):
        for listener in list(self._connection_listeners):
            try:
                listener(device_id, connected)
            except Exception as e:
                logging.exception(e)

    def _fail_pending(self, link: _DeviceLink, reason: str):
        for future in link.pending.values():
            if not future.done():
                future.set_exception(DeviceRequestError(link.device.id, reason))
        link.pending.clear()

    def _closed_remotely(self, link: _DeviceLink, socket):
        if self._links.get(link.device.id) is not link or link.socket is not socket:
            return
        link.socket = None
        link.reader_task = None
        link.device.connected = False
        self._fail_pending(link, "Connection closed")
        logging.warning(f"Lost connection to {link.device.name}")
        self._notify_connection(link.device.id, False)
        link.reconnect_task = asyncio.create_task(self._reconnect(link))

    async def _reconnect(self, link: _DeviceLink):
        device = link.device
        while link.attempts < self._max_attempts:
            link.attempts += 1
            delay = self._base_delay * link.attempts
            logging.info(f"Reconnecting to {device.name} in {delay:g}s ({link.attempts}/{self._max_attempts})")
            await self._sleep(delay)
            try:
                socket = await self._connector(device.socket_url)
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                logging.warning(f"Reconnect to {device.name} failed: {e!r}")
                continue
            link.reconnect_task = None
            self._opened(link, socket)
            return

        logging.error(f"Giving up on {device.name} after {self._max_attempts} attempts")
        link.reconnect_task = None
        if self._links.get(device.id) is link:
            del self._links[device.id]
