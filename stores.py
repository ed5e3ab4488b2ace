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

import dataclasses
import logging
from pathlib import Path
from typing import Callable, Optional, Union

import aiofiles
import aiofiles.os
import tomlkit
import tomlkit.exceptions

from audio_probe import AudioProbeError, probe_duration_async
from models import AudioType, SessionState, TimerSettings

MIN_AUDIO_BYTES = 128
MAX_AUDIO_BYTES = 5 * 1024 * 1024
MAX_AUDIO_SECONDS = 20

SOUND_FILE_NAMES = {
    AudioType.START: "start_sound.mp3",
    AudioType.END: "end_sound.mp3",
}


async def _read_toml(path: Path) -> Optional[dict]:
    try:
        async with aiofiles.open(path, 'r') as toml_file:
            return tomlkit.parse(await toml_file.read()).unwrap()
    except FileNotFoundError:
        return None
    except tomlkit.exceptions.ParseError as e:
        logging.exception(e)
        logging.warning(f"{path} is not valid TOML, starting from defaults")
        return None


async def _write_toml(path: Path, data: dict):
    path.parent.mkdir(parents=True, exist_ok=True)
    document = tomlkit.document()
    for key, value in data.items():
        if value is not None:
            document[key] = value
    # readers only ever see the old file or the complete new one
    staging = path.with_name(path.name + ".tmp")
    async with aiofiles.open(staging, 'w') as toml_file:
        await toml_file.write(tomlkit.dumps(document))
    try:
        await aiofiles.os.replace(staging, path)
    except OSError:
        await aiofiles.os.remove(staging)
        raise


class SettingsStore:
    """Persisted TimerSettings. Subscribers are called after every `set`."""

    def __init__(self, path: Path):
        self._path = Path(path)
        self._settings = TimerSettings()
        self._subscribers: list[Callable[[TimerSettings], None]] = []

    async def load(self) -> TimerSettings:
        data = await _read_toml(self._path)
        if data is not None:
            fields = {field.name for field in dataclasses.fields(TimerSettings)}
            try:
                self._settings = TimerSettings(**{k: v for k, v in data.items() if k in fields})
            except TypeError as e:
                logging.exception(e)
                logging.warning(f"Settings in {self._path} do not match, using defaults")
        logging.debug(f"Loaded settings {self._settings}")
        return self._settings

    def get(self) -> TimerSettings:
        return self._settings

    async def set(self, settings: TimerSettings):
        self._settings = settings
        await _write_toml(self._path, dataclasses.asdict(settings))
        for subscriber in list(self._subscribers):
            subscriber(settings)

    def subscribe(self, callback: Callable[[TimerSettings], None]):
        self._subscribers.append(callback)


class SessionStore:
    def __init__(self, path: Path):
        self._path = Path(path)
        self._state = SessionState.inactive()

    async def load(self) -> SessionState:
        data = await _read_toml(self._path)
        if data is not None and data.get("is_active"):
            self._state = SessionState(
                session_id=data.get("session_id", ""),
                is_active=True,
                is_protected=data.get("is_protected", False),
                password_hash=data.get("password_hash"),
                created_at=data.get("created_at", 0),
                authorized_controllers=frozenset(data.get("authorized_controllers", [])),
                owner=data.get("owner"),
            )
        else:
            self._state = SessionState.inactive()
        return self._state

    def get(self) -> SessionState:
        return self._state

    async def save(self, state: SessionState):
        self._state = state
        data = dataclasses.asdict(state)
        data["authorized_controllers"] = sorted(state.authorized_controllers)
        await _write_toml(self._path, data)

    async def clear(self):
        await self.save(SessionState.inactive())


class AudioAssetStore:
    """Cue sounds on this device, one file per AudioType."""

    def __init__(self, sounds_dir: Path):
        self._sounds_dir = Path(sounds_dir)

    def path(self, audio_type: AudioType) -> Path:
        return self._sounds_dir / SOUND_FILE_NAMES[audio_type]

    @staticmethod
    def validate(data: bytes) -> Optional[str]:
        """Returns an error message, or None when the bytes look like an MP3."""
        if len(data) < MIN_AUDIO_BYTES:
            return "File too small to be a valid MP3"

        has_id3_tag = data[:3] == b"ID3"
        has_frame_sync = data[0] == 0xFF and (data[1] & 0xE0) == 0xE0
        if not has_id3_tag and not has_frame_sync:
            return "File does not appear to be a valid MP3"

        if len(data) > MAX_AUDIO_BYTES:
            return "File too large (max 5MB)"
        return None

    async def save(self, audio_type: AudioType, data: bytes) -> Path:
        self._sounds_dir.mkdir(parents=True, exist_ok=True)
        path = self.path(audio_type)
        async with aiofiles.open(path, 'wb') as sound_file:
            await sound_file.write(data)
        logging.debug(f"Saved audio file {path}, {len(data)} bytes")
        return path

    async def delete(self, audio_type: AudioType) -> bool:
        path = self.path(audio_type)
        if not await aiofiles.os.path.exists(path):
            return True
        try:
            await aiofiles.os.remove(path)
        except OSError as e:
            logging.exception(e)
            return False
        logging.debug(f"Deleted audio file {path}")
        return True

    @staticmethod
    async def duration_seconds(source: Union[Path, bytes]) -> int:
        """Whole seconds of audio in a saved file or raw bytes; 0 when probing fails."""
        try:
            return int(await probe_duration_async(source if isinstance(source, bytes) else str(source)))
        except AudioProbeError:
            logging.warning("Failed to get audio duration")
            return 0
