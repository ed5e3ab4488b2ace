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
import enum
import time
from typing import Optional

DEFAULT_PORT = 8080
SOCKET_PATH = "/ws"

# large enough for a base64 encoded 5 MiB cue sound
MAX_FRAME_BYTES = 8 * 1024 * 1024


class TimerPhase(str, enum.Enum):
    WARMUP = "WARMUP"
    MATCH = "MATCH"
    BREAK = "BREAK"

    def next(self) -> "TimerPhase":
        return {
            TimerPhase.WARMUP: TimerPhase.MATCH,
            TimerPhase.MATCH: TimerPhase.BREAK,
            TimerPhase.BREAK: TimerPhase.WARMUP,
        }[self]

    @property
    def label(self) -> str:
        return {
            TimerPhase.WARMUP: "Match Warm Up",
            TimerPhase.MATCH: "Relay Doubles Match In Progress",
            TimerPhase.BREAK: "Break Between Schedules",
        }[self]


class SyncMode(str, enum.Enum):
    INDEPENDENT = "independent"
    CENTRALIZED = "centralized"


class AudioType(str, enum.Enum):
    START = "start"
    END = "end"


@dataclasses.dataclass(frozen=True)
class TimerState:
    phase: TimerPhase = TimerPhase.WARMUP
    time_left_seconds: int = 0
    is_running: bool = False
    is_paused: bool = False

    def __post_init__(self):
        if self.is_running and self.is_paused:
            raise ValueError("timer cannot be running and paused at the same time")
        if self.time_left_seconds < 0:
            raise ValueError(f"negative time left: {self.time_left_seconds}")

    def format_time(self) -> str:
        minutes, seconds = divmod(self.time_left_seconds, 60)
        return f"{minutes}:{seconds:02}"

    def to_payload(self) -> dict:
        return {
            "phase": self.phase.value,
            "timeLeftSeconds": self.time_left_seconds,
            "isRunning": self.is_running,
            "isPaused": self.is_paused,
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "TimerState":
        return cls(
            phase=TimerPhase(payload["phase"]),
            time_left_seconds=payload["timeLeftSeconds"],
            is_running=payload["isRunning"],
            is_paused=payload["isPaused"],
        )


# wire key -> attribute name
SETTINGS_FIELDS = {
    "warmupMinutes": "warmup_minutes",
    "matchMinutes": "match_minutes",
    "breakMinutes": "break_minutes",
    "startSoundUri": "start_sound_uri",
    "endSoundUri": "end_sound_uri",
    "startSoundDurationSeconds": "start_sound_duration_seconds",
    "endSoundDurationSeconds": "end_sound_duration_seconds",
    "timerFontSize": "timer_font_size",
    "messageFontSize": "message_font_size",
    "timerColor": "timer_color",
    "messageColor": "message_color",
}

# sound uris are paths on the device that stored the file
DEVICE_LOCAL_SETTINGS = ("start_sound_uri", "end_sound_uri")


@dataclasses.dataclass(frozen=True)
class TimerSettings:
    warmup_minutes: int = 5
    match_minutes: int = 85
    break_minutes: int = 5
    start_sound_uri: Optional[str] = None
    end_sound_uri: Optional[str] = None
    start_sound_duration_seconds: int = 0
    end_sound_duration_seconds: int = 0
    timer_font_size: int = 120
    message_font_size: int = 48
    timer_color: int = 0xFF00A8E8
    message_color: int = 0xFFFF6B35

    def phase_seconds(self, phase: TimerPhase) -> int:
        return {
            TimerPhase.WARMUP: self.warmup_minutes,
            TimerPhase.MATCH: self.match_minutes,
            TimerPhase.BREAK: self.break_minutes,
        }[phase] * 60

    def with_sound(self, audio_type: AudioType, uri: Optional[str], duration_seconds: int) -> "TimerSettings":
        if audio_type is AudioType.START:
            return dataclasses.replace(self, start_sound_uri=uri, start_sound_duration_seconds=duration_seconds)
        return dataclasses.replace(self, end_sound_uri=uri, end_sound_duration_seconds=duration_seconds)

    def to_payload(self) -> dict:
        payload = {}
        for key, attribute in SETTINGS_FIELDS.items():
            value = getattr(self, attribute)
            if value is not None:
                payload[key] = value
        return payload

    @classmethod
    def from_payload(cls, payload: dict) -> "TimerSettings":
        return cls(**{attribute: payload[key] for key, attribute in SETTINGS_FIELDS.items() if key in payload})


@dataclasses.dataclass(frozen=True)
class SessionState:
    session_id: str
    is_active: bool
    is_protected: bool
    password_hash: Optional[str] = None
    created_at: int = 0
    authorized_controllers: frozenset = frozenset()
    owner: Optional[str] = None

    @staticmethod
    def create_unprotected(session_id: str, owner: Optional[str] = None) -> "SessionState":
        return SessionState(session_id, True, False, None, int(time.time() * 1000), frozenset(), owner)

    @staticmethod
    def create_protected(session_id: str, password_hash: str, owner: Optional[str] = None) -> "SessionState":
        return SessionState(session_id, True, True, password_hash, int(time.time() * 1000), frozenset(), owner)

    @staticmethod
    def inactive() -> "SessionState":
        return SessionState("", False, False)

    def is_authorized(self, controller_id: str) -> bool:
        return not self.is_protected or controller_id in self.authorized_controllers

    def add_authorized_controller(self, controller_id: str) -> "SessionState":
        return dataclasses.replace(self, authorized_controllers=self.authorized_controllers | {controller_id})

    def remove_authorized_controller(self, controller_id: str) -> "SessionState":
        return dataclasses.replace(self, authorized_controllers=self.authorized_controllers - {controller_id})

    def to_status_payload(self) -> dict:
        """Public view of the session, never includes the password hash."""
        return {
            "sessionId": self.session_id,
            "isActive": self.is_active,
            "isProtected": self.is_protected,
            "createdAt": self.created_at,
            "authorizedCount": len(self.authorized_controllers),
            "owner": self.owner,
        }


@dataclasses.dataclass
class AuthStatus:
    is_authorized: bool
    controller_id: str
    session_id: Optional[str] = None


@dataclasses.dataclass
class Device:
    id: str
    name: str
    address: str
    port: int = DEFAULT_PORT
    connected: bool = False

    @property
    def socket_url(self) -> str:
        return f"ws://{self.address}:{self.port}{SOCKET_PATH}"

    @staticmethod
    def make_id(address: str, port: int) -> str:
        return f"{address}:{port}"


@dataclasses.dataclass
class DeviceResult:
    device_id: str
    device_name: str
    success: bool
    message: str = ""
    details: dict = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class BatchResult:
    """
    per-target outcome of a fan-out operation. there is no rollback: failed
    targets stay stale until they are driven again individually.
    """
    results: list = dataclasses.field(default_factory=list)

    @property
    def succeeded(self) -> list:
        return [result for result in self.results if result.success]

    @property
    def failed(self) -> list:
        return [result for result in self.results if not result.success]

    @property
    def all_succeeded(self) -> bool:
        return bool(self.results) and not self.failed

    @property
    def all_failed(self) -> bool:
        return bool(self.results) and not self.succeeded

    @property
    def partial(self) -> bool:
        return bool(self.succeeded) and bool(self.failed)

    @property
    def failed_device_names(self) -> list:
        return [result.device_name for result in self.failed]

    def summary(self) -> str:
        total = len(self.results)
        if total == 0:
            return "No connected devices"
        if self.all_succeeded:
            return f"{total}/{total} succeeded"
        if self.all_failed:
            return f"0/{total} succeeded: {self.failed[0].message}"
        return f"{len(self.succeeded)}/{total} succeeded; failed: {', '.join(self.failed_device_names)}"
