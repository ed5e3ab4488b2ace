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
import io
import logging
import os
from typing import Union

import av
import av.error


class AudioProbeError(Exception):
    pass


def probe_duration(source: Union[bytes, str, os.PathLike]) -> float:
    """
    Duration of an audio file in seconds, read from the container header or,
    failing that, from the first audio stream. Raises AudioProbeError when
    the data cannot be opened or carries no duration.
    """
    if isinstance(source, (bytes, bytearray)):
        source = io.BytesIO(source)

    try:
        with av.open(source, mode="r") as container:
            if container.duration is not None:
                return container.duration / av.time_base
            for stream in container.streams.audio:
                if stream.duration is not None and stream.time_base is not None:
                    return float(stream.duration * stream.time_base)
    except av.error.FFmpegError as e:
        logging.debug(f"Could not probe audio: {e}")
        raise AudioProbeError(str(e)) from e

    raise AudioProbeError("no duration in audio container")


async def probe_duration_async(source: Union[bytes, str, os.PathLike]) -> float:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, probe_duration, source)
