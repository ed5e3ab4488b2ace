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
import contextlib
import logging
import os
from pathlib import Path

from command_server import CommandServer
from config import Config, ConfigurationLoadError, DEVICE_SCHEMA
from logger import setup_logging
from mdns_registration import ClockAdvertisement
from models import AudioType, TimerSettings
from session_authority import SessionAuthority
from stores import AudioAssetStore, SessionStore, SettingsStore
from timer_engine import TimerEngine


class MatchClock:

    def __init__(self, config: dict):
        self._config = config
        data_dir = Path(config["data_dir"])
        self._settings = SettingsStore(data_dir / "settings.toml")
        self._sessions = SessionStore(data_dir / "session.toml")
        self._assets = AudioAssetStore(data_dir / "sounds")
        self._authority = SessionAuthority(self._sessions)
        self._timer = TimerEngine()
        self._timer.set_cue_listener(self._on_cue)
        self._settings.subscribe(self._on_settings_changed)
        self._command_server = CommandServer(
            self._config, self._timer, self._settings, self._authority, self._assets)
        if self._config["advertise"]:
            self._mdns = ClockAdvertisement(self._config)
        else:
            self._mdns = contextlib.nullcontext()

    def _on_cue(self, audio_type: AudioType):
        # playback is handled by whatever renders the clock
        logging.info(f"Cue: {audio_type.value} sound")

    def _on_settings_changed(self, settings: TimerSettings):
        logging.debug(f"Settings changed: {settings}")

    async def begin(self):
        logging.info(f"Starting Match Clock {self._config['name']}")
        await self._settings.load()
        await self._sessions.load()
        await self._timer.apply_settings(self._settings.get())

        logging.info("Starting Command Server")
        async with self._command_server:
            logging.info("Starting MDNS")
            async with self._mdns:
                try:
                    logging.info("Ctrl^C to quit")
                    while True:
                        await asyncio.sleep(1)
                except asyncio.CancelledError:
                    logging.info("Cancelled ...")
                finally:
                    logging.info("Stopping Clock ...")
                    await self._timer.close()


async def main():
    logging.info("Starting match clock ...")

    config = Config(os.environ.get("MATCH_CLOCK_CONFIG", "./device.toml"), DEVICE_SCHEMA)

    try:
        await config.initialize()

        match_clock = MatchClock(config["device"])
        await match_clock.begin()
    except ConfigurationLoadError:
        logging.error("Could not load configuration. Exiting")
        return
    finally:
        await config.close()


def run():
    setup_logging()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
