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
import socket
from typing import Callable, Optional

import zeroconf
from zeroconf import IPVersion, ServiceStateChange
from zeroconf.asyncio import AsyncZeroconf, AsyncServiceInfo, AsyncServiceBrowser

SERVICE_TYPE = "_squashtimer._tcp.local."
SERVICE_NAME_PREFIX = "Squash Timer - "
RESOLVE_TIMEOUT_MS = 3000


class ZeroconfManager:

    def __init__(self):
        self._zeroconf = AsyncZeroconf(ip_version=IPVersion.V4Only)

    @property
    def zeroconf(self) -> AsyncZeroconf:
        return self._zeroconf

    async def register_service(self, service: AsyncServiceInfo):
        await self._zeroconf.async_register_service(service)

    async def unregister_service(self, service: AsyncServiceInfo):
        await self._zeroconf.async_unregister_service(service)

    async def unregister_all_services(self):
        await self._zeroconf.async_unregister_all_services()

    async def close(self):
        await self._zeroconf.async_close()


class ZeroconfException(Exception): pass


def local_address() -> str:
    """Address of the interface that routes to the LAN, 127.0.0.1 when there is none."""
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
        try:
            # no packet is sent for a UDP connect
            probe.connect(("10.255.255.255", 1))
            return probe.getsockname()[0]
        except OSError:
            return "127.0.0.1"


class ClockAdvertisement:
    """Publishes this device as `Squash Timer - <name>` so controllers can find it."""
    _service: Optional[AsyncServiceInfo] = None

    def __init__(self, config: dict, manager: Optional[ZeroconfManager] = None):
        self._config = config
        self._manager = manager

    async def register(self, port: int, device_id: str, device_name: str):
        if self._manager is None:
            self._manager = ZeroconfManager()
        records = {
            "deviceId": device_id,
            "deviceName": device_name,
        }
        service = AsyncServiceInfo(
            SERVICE_TYPE,
            f"{SERVICE_NAME_PREFIX}{device_name}.{SERVICE_TYPE}",
            addresses=[socket.inet_aton(local_address())],
            port=port,
            properties=records,
            server=f"squash-timer-{device_id[:8]}.local."
        )
        try:
            await self._manager.register_service(service)
        except zeroconf.Error as e:
            logging.exception(e)
            raise ZeroconfException() from e
        self._service = service
        logging.debug(f"Registered service {service.name} on port {port}")

    async def unregister(self):
        if self._manager is None:
            return
        if self._service is not None:
            await self._manager.unregister_service(self._service)
        await self._manager.close()
        self._service = None
        self._manager = None
        logging.debug(f"Unregistered services.")

    async def __aenter__(self):
        try:
            await self.register(int(self._config['port']), self._config['id'], self._config['name'])
        except ZeroconfException:
            # the device keeps serving, controllers can still add it by address
            logging.warning("Could not advertise the clock on the network")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.unregister()


@dataclasses.dataclass
class DiscoveredClock:
    address: str
    port: int
    name: str
    device_id: Optional[str] = None


class ClockBrowser:
    """Reports every clock that appears on the network to `on_found`."""

    def __init__(self, on_found: Callable[[DiscoveredClock], None], manager: Optional[ZeroconfManager] = None):
        self._on_found = on_found
        self._manager = manager if manager is not None else ZeroconfManager()
        self._browser: Optional[AsyncServiceBrowser] = None
        self._tasks: set[asyncio.Task] = set()

    def _on_service_state_change(self, zeroconf: zeroconf.Zeroconf, service_type: str, name: str,
                                 state_change: ServiceStateChange):
        if state_change is not ServiceStateChange.Added:
            return
        task = asyncio.ensure_future(self._resolve(service_type, name))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _resolve(self, service_type: str, name: str):
        info = AsyncServiceInfo(service_type, name)
        if not await info.async_request(self._manager.zeroconf.zeroconf, RESOLVE_TIMEOUT_MS):
            logging.debug(f"Could not resolve {name}")
            return
        addresses = info.parsed_addresses(IPVersion.V4Only)
        if not addresses or info.port is None:
            return

        properties = {
            key.decode(): value.decode() for key, value in info.properties.items() if value is not None
        }
        display_name = properties.get("deviceName")
        if display_name is None:
            display_name = name.removesuffix(f".{service_type}").removeprefix(SERVICE_NAME_PREFIX)
        clock = DiscoveredClock(addresses[0], info.port, display_name, properties.get("deviceId"))
        logging.info(f"Discovered {clock.name} at {clock.address}:{clock.port}")
        self._on_found(clock)

    async def start(self):
        self._browser = AsyncServiceBrowser(
            self._manager.zeroconf.zeroconf, SERVICE_TYPE, handlers=[self._on_service_state_change])

    async def stop(self):
        if self._browser is not None:
            await self._browser.async_cancel()
            self._browser = None
        for task in list(self._tasks):
            task.cancel()
        await self._manager.close()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
