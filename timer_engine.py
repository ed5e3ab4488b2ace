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
import math
import time
from typing import Callable, Optional

from models import AudioType, TimerPhase, TimerSettings, TimerState

TICK_INTERVAL = 0.1

# a cue fires when the remaining time enters (duration - CUE_WINDOW, duration]
CUE_WINDOW = 2


class TimerEngine:
    """
    The device's authoritative countdown.

    All state changes go through one lock. While running, a task polls a
    monotonic deadline and rolls over to the next phase at zero.
    """

    def __init__(self, settings: Optional[TimerSettings] = None,
                 clock: Callable[[], float] = time.monotonic, tick_interval: float = TICK_INTERVAL):
        self._settings = settings if settings is not None else TimerSettings()
        self._clock = clock
        self._tick_interval = tick_interval
        self._state = TimerState(TimerPhase.WARMUP, self._settings.phase_seconds(TimerPhase.WARMUP))
        self._lock = asyncio.Lock()
        self._deadline: float = 0.0
        self._task: Optional[asyncio.Task] = None
        self._subscribers: list[Callable[[TimerState], None]] = []
        self._cue_listener: Optional[Callable[[AudioType], None]] = None
        self._cues_fired: set[AudioType] = set()

    @property
    def state(self) -> TimerState:
        return self._state

    @property
    def settings(self) -> TimerSettings:
        return self._settings

    def subscribe(self, callback: Callable[[TimerState], None]):
        self._subscribers.append(callback)

    def set_cue_listener(self, callback: Optional[Callable[[AudioType], None]]):
        self._cue_listener = callback

    def _set_state(self, state: TimerState):
        if state == self._state:
            return
        self._state = state
        for subscriber in list(self._subscribers):
            subscriber(state)

    async def _stop_task(self):
        task, self._task = self._task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _remaining(self) -> int:
        return max(0, math.ceil(self._deadline - self._clock()))

    def _begin(self):
        self._deadline = self._clock() + self._state.time_left_seconds
        self._set_state(dataclasses.replace(self._state, is_running=True, is_paused=False))
        self._task = asyncio.create_task(self._run())

    async def start(self):
        async with self._lock:
            if self._state.is_running:
                return
            self._begin()
        logging.debug(f"Timer started in {self._state.phase.value} at {self._state.format_time()}")

    async def pause(self):
        async with self._lock:
            if not self._state.is_running:
                return
            remaining = self._remaining()
            await self._stop_task()
            self._set_state(dataclasses.replace(
                self._state, time_left_seconds=remaining, is_running=False, is_paused=True))
        logging.debug(f"Timer paused at {self._state.format_time()}")

    async def resume(self):
        async with self._lock:
            if not self._state.is_paused:
                return
            self._begin()
        logging.debug(f"Timer resumed at {self._state.format_time()}")

    async def restart(self):
        async with self._lock:
            await self._stop_task()
            self._cues_fired.clear()
            self._set_state(TimerState(TimerPhase.WARMUP, self._settings.phase_seconds(TimerPhase.WARMUP)))
        logging.debug("Timer restarted")

    async def set_emergency_time(self, minutes: int, seconds: int):
        async with self._lock:
            await self._stop_task()
            self._cues_fired.clear()
            self._set_state(TimerState(TimerPhase.MATCH, minutes * 60 + seconds))
        logging.debug(f"Emergency time set to {minutes}:{seconds:02}")

    async def sync_to(self, phase: TimerPhase, time_left_seconds: int, running: bool):
        """Adopt another device's state. A stopped source leaves this device paused."""
        async with self._lock:
            await self._stop_task()
            if phase != self._state.phase:
                self._cues_fired.clear()
            self._set_state(TimerState(phase, time_left_seconds, is_running=False, is_paused=not running))
            if running:
                self._begin()
        logging.debug(f"Timer synced to {phase.value} {time_left_seconds}s running={running}")

    async def apply_settings(self, settings: TimerSettings):
        async with self._lock:
            self._settings = settings
            state = self._state
            if not state.is_running and not state.is_paused:
                self._set_state(dataclasses.replace(state, time_left_seconds=settings.phase_seconds(state.phase)))

    async def close(self):
        async with self._lock:
            await self._stop_task()

    async def _run(self):
        while True:
            async with self._lock:
                remaining = self._remaining()
                if remaining <= 0:
                    next_phase = self._state.phase.next()
                    self._cues_fired.clear()
                    self._set_state(dataclasses.replace(
                        self._state, phase=next_phase, time_left_seconds=self._settings.phase_seconds(next_phase)))
                    self._deadline = self._clock() + self._state.time_left_seconds
                    logging.info(f"Timer phase changed to {next_phase.value}")
                    continue
                self._set_state(dataclasses.replace(self._state, time_left_seconds=remaining))
                self._check_cues()
            await asyncio.sleep(self._tick_interval)

    def _check_cues(self):
        state = self._state
        if state.phase is TimerPhase.WARMUP:
            audio_type, duration = AudioType.START, self._settings.start_sound_duration_seconds
        elif state.phase is TimerPhase.MATCH:
            audio_type, duration = AudioType.END, self._settings.end_sound_duration_seconds
        else:
            return

        if duration <= 0 or audio_type in self._cues_fired:
            return
        if duration - CUE_WINDOW < state.time_left_seconds <= duration:
            self._cues_fired.add(audio_type)
            if self._cue_listener is not None:
                self._cue_listener(audio_type)
