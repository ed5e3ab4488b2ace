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

import base64
import dataclasses
import logging
import mimetypes
from pathlib import Path
from typing import Optional

import aiofiles

from audio_probe import AudioProbeError, probe_duration_async
from messages import MessageType, AudioUpload, AudioDelete
from models import AudioType, BatchResult
from stores import MAX_AUDIO_BYTES, MAX_AUDIO_SECONDS
from sync_orchestrator import SyncOrchestrator

UPLOAD_TIMEOUT = 30.0


@dataclasses.dataclass
class AudioFile:
    name: str
    content_type: str
    data: bytes

    @classmethod
    async def from_path(cls, path) -> "AudioFile":
        path = Path(path)
        async with aiofiles.open(path, 'rb') as audio_file:
            data = await audio_file.read()
        content_type, _ = mimetypes.guess_type(path.name)
        return cls(path.name, content_type or "application/octet-stream", data)


@dataclasses.dataclass
class ValidationResult:
    valid: bool
    duration_seconds: Optional[float] = None
    error: Optional[str] = None


class AssetValidationError(Exception):
    def __init__(self, result: ValidationResult):
        super().__init__(result.error)
        self.result = result


async def validate(audio: AudioFile) -> ValidationResult:
    """Checks type, size and duration locally, before any device is involved."""
    if "audio/mpeg" not in audio.content_type and not audio.name.lower().endswith(".mp3"):
        return ValidationResult(False, error="Only MP3 files are supported")

    if len(audio.data) > MAX_AUDIO_BYTES:
        return ValidationResult(False, error="File too large. Maximum size is 5MB")

    try:
        duration = await probe_duration_async(audio.data)
    except AudioProbeError:
        return ValidationResult(False, error="Failed to read audio file. Please ensure it is a valid MP3.")

    if duration > MAX_AUDIO_SECONDS:
        return ValidationResult(
            False, duration,
            f"Audio too long. Maximum duration is {MAX_AUDIO_SECONDS} seconds (got {round(duration)}s)")
    return ValidationResult(True, duration)


class AssetReplicator:
    """
    Copies cue sounds to every connected device, one device at a time.
    A failure on one device never stops the others.
    """

    def __init__(self, orchestrator: SyncOrchestrator, timeout: float = UPLOAD_TIMEOUT):
        self._orchestrator = orchestrator
        self._timeout = timeout

    async def upload_to_all(self, audio: AudioFile, audio_type: AudioType) -> BatchResult:
        validation = await validate(audio)
        if not validation.valid:
            logging.warning(f"Rejected {audio.name}: {validation.error}")
            raise AssetValidationError(validation)

        upload = AudioUpload(
            audio_type,
            audio.name,
            base64.b64encode(audio.data).decode("ascii"),
            round(validation.duration_seconds),
        )
        batch = BatchResult()
        for device_id in self._orchestrator.connections.connected_device_ids():
            result = await self._orchestrator.request_result(
                device_id, MessageType.UPLOAD_AUDIO, upload, self._timeout)
            logging.info(f"Upload of {audio.name} to {result.device_name}: "
                         f"{'ok' if result.success else result.message}")
            batch.results.append(result)

        await self._finish(batch)
        return batch

    async def delete_from_all(self, audio_type: AudioType) -> BatchResult:
        batch = BatchResult()
        for device_id in self._orchestrator.connections.connected_device_ids():
            result = await self._orchestrator.request_result(
                device_id, MessageType.DELETE_AUDIO, AudioDelete(audio_type), self._timeout)
            batch.results.append(result)

        await self._finish(batch)
        return batch

    async def _finish(self, batch: BatchResult):
        logging.info(batch.summary())
        if batch.succeeded:
            await self._orchestrator.refresh_master_settings()
