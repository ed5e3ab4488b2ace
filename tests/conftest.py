import asyncio
from typing import Callable, Optional

import pytest

import messages
from messages import MessageType, CommandAck, CommandError
from models import Device


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeSocket:
    """In-memory client socket: frames pushed with `push` are read by the connection manager."""

    def __init__(self, responder: Optional[Callable] = None):
        self.sent: list[str] = []
        self.closed = False
        self.fail_send = False
        self.responder = responder
        self._incoming: asyncio.Queue = asyncio.Queue()

    def sent_envelopes(self) -> list:
        return [messages.decode(text) for text in self.sent]

    def sent_types(self) -> list:
        return [envelope.type for envelope in self.sent_envelopes()]

    def push(self, envelope):
        self._incoming.put_nowait(messages.encode(envelope))

    def push_raw(self, text: str):
        self._incoming.put_nowait(text)

    def drop(self):
        """The device went away."""
        self._incoming.put_nowait(None)

    def fail(self, error: Exception):
        """The next read raises `error`."""
        self._incoming.put_nowait(error)

    async def send(self, text: str):
        if self.fail_send or self.closed:
            raise OSError("socket is gone")
        self.sent.append(text)
        if self.responder is not None:
            for reply in self.responder(messages.decode(text)) or []:
                self.push(reply)

    async def close(self):
        self.closed = True
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class FakeConnector:
    def __init__(self):
        self.calls: list[str] = []
        self.sockets: dict[str, list[FakeSocket]] = dict()
        self.failing: set[str] = set()
        self.responders: dict[str, Callable] = dict()

    async def __call__(self, url: str) -> FakeSocket:
        self.calls.append(url)
        if url in self.failing:
            raise OSError("connection refused")
        socket = FakeSocket(self.responders.get(url))
        self.sockets.setdefault(url, []).append(socket)
        return socket

    def socket(self, device: Device) -> FakeSocket:
        return self.sockets[device.socket_url][-1]


def ack(envelope, message: str = "ok", details: Optional[dict] = None):
    return messages.make_envelope(MessageType.COMMAND_ACK, CommandAck(envelope.command_id, "success", message, details or {}),
                                  command_id=envelope.command_id)


def error(envelope, error_code: str, message: str = ""):
    return messages.make_envelope(MessageType.COMMAND_ERROR, CommandError(envelope.command_id, error_code, message),
                                  command_id=envelope.command_id)


def ack_everything(envelope):
    if envelope.command_id is None:
        return []
    return [ack(envelope)]


async def settle(rounds: int = 20):
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_device(address: str, name: str, port: int = 8080) -> Device:
    return Device(Device.make_id(address, port), name, address, port)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def controller_config():
    return {
        "id": "front-desk",
        "devices_file": "devices.toml",
        "reconnect_base_delay": 2.0,
        "max_reconnect_attempts": 5,
        "settings_confirm_delay": 0.5,
        "request_timeout": 1.0,
    }
