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
import json
import time
import typing
import uuid

from voluptuous import Schema, Required, Optional, Any, All, Range, Length, In, Lower, Invalid, REMOVE_EXTRA

from models import TimerPhase, TimerSettings, TimerState, SETTINGS_FIELDS, DEVICE_LOCAL_SETTINGS, AudioType

"""
Wire format shared by the device server and the controller.

Every frame is one UTF-8 JSON object:
    {"type": str, "timestamp": int (epoch ms), "deviceId": str?, "commandId": str?, "payload": ...}

Timestamps are informational only and are never used to order frames across devices.
"""


class MessageType:
    # controller -> device
    START_TIMER = "START_TIMER"
    PAUSE_TIMER = "PAUSE_TIMER"
    RESUME_TIMER = "RESUME_TIMER"
    RESTART_TIMER = "RESTART_TIMER"
    SET_EMERGENCY_TIME = "SET_EMERGENCY_TIME"
    SET_SYNC_MODE = "SET_SYNC_MODE"
    GET_SETTINGS = "GET_SETTINGS"
    UPDATE_SETTINGS = "UPDATE_SETTINGS"
    SYNC_SETTINGS = "SYNC_SETTINGS"
    SYNC_TIMER_STATE = "SYNC_TIMER_STATE"
    CREATE_SESSION = "CREATE_SESSION"
    AUTH_REQUEST = "AUTH_REQUEST"
    REVOKE_CONTROLLER = "REVOKE_CONTROLLER"
    GET_SESSION_STATUS = "GET_SESSION_STATUS"
    END_SESSION = "END_SESSION"
    UPLOAD_AUDIO = "UPLOAD_AUDIO"
    DELETE_AUDIO = "DELETE_AUDIO"

    # device -> controller
    STATE_UPDATE = "STATE_UPDATE"
    SETTINGS_RESPONSE = "SETTINGS_RESPONSE"
    SESSION_STATUS = "SESSION_STATUS"
    AUTH_RESPONSE = "AUTH_RESPONSE"
    COMMAND_ACK = "COMMAND_ACK"
    COMMAND_ERROR = "COMMAND_ERROR"


TIMER_COMMANDS = (
    MessageType.START_TIMER,
    MessageType.PAUSE_TIMER,
    MessageType.RESUME_TIMER,
    MessageType.RESTART_TIMER,
)

# payload is ignored for these
NO_PAYLOAD_TYPES = TIMER_COMMANDS + (
    MessageType.GET_SETTINGS,
    MessageType.GET_SESSION_STATUS,
    MessageType.END_SESSION,
)

REPLY_TYPES = (MessageType.COMMAND_ACK, MessageType.COMMAND_ERROR)


class ErrorCode:
    UNKNOWN_COMMAND = "UNKNOWN_COMMAND"
    INVALID_MODE = "INVALID_MODE"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    PROCESSING_ERROR = "PROCESSING_ERROR"
    INVALID_AUDIO = "INVALID_AUDIO"
    SAVE_FAILED = "SAVE_FAILED"


class DecodeError(Exception):
    pass


class PayloadError(DecodeError):
    """The envelope was readable but its payload does not fit its type."""

    def __init__(self, message_type: str, command_id: typing.Optional[str], reason: str):
        super().__init__(f"invalid {message_type} payload: {reason}")
        self.message_type = message_type
        self.command_id = command_id
        self.reason = reason


@dataclasses.dataclass
class Envelope:
    type: str
    payload: typing.Any = None
    timestamp: int = 0
    device_id: typing.Optional[str] = None
    command_id: typing.Optional[str] = None


@dataclasses.dataclass
class EmergencyTime:
    minutes: int
    seconds: int

    def to_payload(self) -> dict:
        return {"minutes": self.minutes, "seconds": self.seconds}


@dataclasses.dataclass
class SyncModeRequest:
    mode: str
    controller_id: typing.Optional[str] = None

    def to_payload(self) -> dict:
        return {"mode": self.mode, "controllerId": self.controller_id}


@dataclasses.dataclass
class SettingsUpdate:
    """A partial TimerSettings; only the keys the sender included."""
    values: dict = dataclasses.field(default_factory=dict)

    def apply_to(self, settings: TimerSettings, include_device_local: bool = False) -> TimerSettings:
        changes = {
            attribute: value for attribute, value in self.values.items()
            if include_device_local or attribute not in DEVICE_LOCAL_SETTINGS
        }
        return dataclasses.replace(settings, **changes)

    def to_payload(self) -> dict:
        reverse = {attribute: key for key, attribute in SETTINGS_FIELDS.items()}
        return {reverse[attribute]: value for attribute, value in self.values.items()}

    @classmethod
    def from_settings(cls, settings: TimerSettings) -> "SettingsUpdate":
        return cls({attribute: getattr(settings, attribute) for attribute in SETTINGS_FIELDS.values()})


@dataclasses.dataclass
class TimerSync:
    phase: TimerPhase
    time_left_seconds: int
    is_running: bool = False

    def to_payload(self) -> dict:
        return {"phase": self.phase.value, "timeLeftSeconds": self.time_left_seconds, "isRunning": self.is_running}

    @classmethod
    def from_state(cls, state: TimerState) -> "TimerSync":
        return cls(state.phase, state.time_left_seconds, state.is_running)


@dataclasses.dataclass
class CreateSession:
    password: typing.Optional[str] = None
    owner: typing.Optional[str] = None

    def to_payload(self) -> dict:
        return {"password": self.password, "owner": self.owner}


@dataclasses.dataclass
class AuthRequest:
    controller_id: str
    password: str = ""

    def to_payload(self) -> dict:
        return {"controllerId": self.controller_id, "password": self.password}


@dataclasses.dataclass
class RevokeController:
    controller_id: str

    def to_payload(self) -> dict:
        return {"controllerId": self.controller_id}


@dataclasses.dataclass
class AudioUpload:
    audio_type: AudioType
    file_name: str
    file_data: str  # base64
    duration_seconds: typing.Optional[int] = None

    def to_payload(self) -> dict:
        return {
            "audioType": self.audio_type.value,
            "fileName": self.file_name,
            "fileData": self.file_data,
            "durationSeconds": self.duration_seconds,
        }


@dataclasses.dataclass
class AudioDelete:
    audio_type: AudioType

    def to_payload(self) -> dict:
        return {"audioType": self.audio_type.value}


@dataclasses.dataclass
class SessionStatus:
    session_id: str
    is_active: bool
    is_protected: bool
    created_at: int = 0
    authorized_count: int = 0
    owner: typing.Optional[str] = None

    def to_payload(self) -> dict:
        return {
            "sessionId": self.session_id,
            "isActive": self.is_active,
            "isProtected": self.is_protected,
            "createdAt": self.created_at,
            "authorizedCount": self.authorized_count,
            "owner": self.owner,
        }


@dataclasses.dataclass
class AuthResponse:
    success: bool
    controller_id: str
    session_id: typing.Optional[str] = None
    error_code: typing.Optional[str] = None
    message: str = ""

    def to_payload(self) -> dict:
        return {
            "success": self.success,
            "controllerId": self.controller_id,
            "sessionId": self.session_id,
            "errorCode": self.error_code,
            "message": self.message,
        }


@dataclasses.dataclass
class CommandAck:
    command_id: typing.Optional[str]
    status: str = "success"
    message: str = ""
    details: dict = dataclasses.field(default_factory=dict)

    def to_payload(self) -> dict:
        return {"commandId": self.command_id, "status": self.status, "message": self.message, "details": self.details}


@dataclasses.dataclass
class CommandError:
    command_id: typing.Optional[str]
    error_code: str
    message: str = ""

    def to_payload(self) -> dict:
        return {"commandId": self.command_id, "errorCode": self.error_code, "message": self.message}


OptionalString = Any(None, str)
Minutes = All(int, Range(min=1))
Seconds = All(int, Range(min=0))
AudioTypeName = All(str, Lower, In([audio_type.value for audio_type in AudioType]))
PhaseName = In([phase.value for phase in TimerPhase])

ENVELOPE_SCHEMA = Schema({
    Required('type'): All(str, Length(min=1)),
    Required('timestamp', default=0): All(int, Range(min=0)),
    Optional('deviceId', default=None): OptionalString,
    Optional('commandId', default=None): OptionalString,
    Optional('payload', default=None): object,
}, extra=REMOVE_EXTRA)

SETTINGS_SCHEMA = Schema({
    Optional('warmupMinutes'): Minutes,
    Optional('matchMinutes'): Minutes,
    Optional('breakMinutes'): Minutes,
    Optional('startSoundUri'): OptionalString,
    Optional('endSoundUri'): OptionalString,
    Optional('startSoundDurationSeconds'): Seconds,
    Optional('endSoundDurationSeconds'): Seconds,
    Optional('timerFontSize'): All(int, Range(min=1)),
    Optional('messageFontSize'): All(int, Range(min=1)),
    Optional('timerColor'): All(int, Range(min=0)),
    Optional('messageColor'): All(int, Range(min=0)),
}, extra=REMOVE_EXTRA)

EMERGENCY_TIME_SCHEMA = Schema({
    Required('minutes'): Seconds,
    Required('seconds'): All(int, Range(min=0, max=59)),
}, extra=REMOVE_EXTRA)

SYNC_MODE_SCHEMA = Schema({
    Required('mode'): str,
    Optional('controllerId', default=None): OptionalString,
}, extra=REMOVE_EXTRA)

TIMER_SYNC_SCHEMA = Schema({
    Required('phase'): PhaseName,
    Required('timeLeftSeconds'): Seconds,
    Optional('isRunning', default=False): bool,
}, extra=REMOVE_EXTRA)

STATE_UPDATE_SCHEMA = Schema({
    Required('phase'): PhaseName,
    Required('timeLeftSeconds'): Seconds,
    Required('isRunning'): bool,
    Optional('isPaused', default=False): bool,
}, extra=REMOVE_EXTRA)

CREATE_SESSION_SCHEMA = Schema({
    Optional('password', default=None): OptionalString,
    Optional('owner', default=None): OptionalString,
}, extra=REMOVE_EXTRA)

AUTH_REQUEST_SCHEMA = Schema({
    Required('controllerId'): All(str, Length(min=1)),
    Optional('password', default=""): OptionalString,
}, extra=REMOVE_EXTRA)

REVOKE_CONTROLLER_SCHEMA = Schema({
    Required('controllerId'): All(str, Length(min=1)),
}, extra=REMOVE_EXTRA)

UPLOAD_AUDIO_SCHEMA = Schema({
    Required('audioType'): AudioTypeName,
    Optional('fileName', default=""): str,
    Required('fileData'): str,
    Optional('durationSeconds', default=None): Any(None, int),
}, extra=REMOVE_EXTRA)

DELETE_AUDIO_SCHEMA = Schema({
    Required('audioType'): AudioTypeName,
}, extra=REMOVE_EXTRA)

SESSION_STATUS_SCHEMA = Schema({
    Required('sessionId'): str,
    Required('isActive'): bool,
    Required('isProtected'): bool,
    Optional('createdAt', default=0): int,
    Optional('authorizedCount', default=0): int,
    Optional('owner', default=None): OptionalString,
}, extra=REMOVE_EXTRA)

AUTH_RESPONSE_SCHEMA = Schema({
    Required('success'): bool,
    Required('controllerId'): str,
    Optional('sessionId', default=None): OptionalString,
    Optional('errorCode', default=None): OptionalString,
    Optional('message', default=""): str,
}, extra=REMOVE_EXTRA)

COMMAND_ACK_SCHEMA = Schema({
    Optional('commandId', default=None): OptionalString,
    Optional('status', default="success"): str,
    Optional('message', default=""): str,
    Optional('details', default=dict): dict,
}, extra=REMOVE_EXTRA)

COMMAND_ERROR_SCHEMA = Schema({
    Optional('commandId', default=None): OptionalString,
    Required('errorCode'): str,
    Optional('message', default=""): str,
}, extra=REMOVE_EXTRA)


def _settings_update(payload) -> SettingsUpdate:
    data = SETTINGS_SCHEMA(payload)
    return SettingsUpdate({SETTINGS_FIELDS[key]: value for key, value in data.items()})


def _timer_sync(payload) -> TimerSync:
    data = TIMER_SYNC_SCHEMA(payload)
    return TimerSync(TimerPhase(data['phase']), data['timeLeftSeconds'], data['isRunning'])


def _upload(payload) -> AudioUpload:
    data = UPLOAD_AUDIO_SCHEMA(payload)
    return AudioUpload(AudioType(data['audioType']), data['fileName'], data['fileData'], data['durationSeconds'])


def _sync_mode(payload) -> SyncModeRequest:
    data = SYNC_MODE_SCHEMA(payload)
    return SyncModeRequest(data['mode'], data['controllerId'])


def _auth_request(payload) -> AuthRequest:
    data = AUTH_REQUEST_SCHEMA(payload)
    return AuthRequest(data['controllerId'], data['password'] or "")


PAYLOAD_PARSERS: dict[str, typing.Callable[[typing.Any], typing.Any]] = {
    MessageType.SET_EMERGENCY_TIME: lambda p: EmergencyTime(**EMERGENCY_TIME_SCHEMA(p)),
    MessageType.SET_SYNC_MODE: _sync_mode,
    MessageType.UPDATE_SETTINGS: _settings_update,
    MessageType.SYNC_SETTINGS: _settings_update,
    MessageType.SYNC_TIMER_STATE: _timer_sync,
    MessageType.CREATE_SESSION: lambda p: CreateSession(**CREATE_SESSION_SCHEMA(p if p is not None else {})),
    MessageType.AUTH_REQUEST: _auth_request,
    MessageType.REVOKE_CONTROLLER: lambda p: RevokeController(REVOKE_CONTROLLER_SCHEMA(p)['controllerId']),
    MessageType.UPLOAD_AUDIO: _upload,
    MessageType.DELETE_AUDIO: lambda p: AudioDelete(AudioType(DELETE_AUDIO_SCHEMA(p)['audioType'])),
    MessageType.STATE_UPDATE: lambda p: TimerState.from_payload(STATE_UPDATE_SCHEMA(p)),
    MessageType.SETTINGS_RESPONSE: lambda p: TimerSettings.from_payload(SETTINGS_SCHEMA(p)),
    MessageType.SESSION_STATUS: lambda p: _session_status(SESSION_STATUS_SCHEMA(p)),
    MessageType.AUTH_RESPONSE: lambda p: _auth_response(AUTH_RESPONSE_SCHEMA(p)),
    MessageType.COMMAND_ACK: lambda p: _command_ack(COMMAND_ACK_SCHEMA(p)),
    MessageType.COMMAND_ERROR: lambda p: _command_error(COMMAND_ERROR_SCHEMA(p)),
}


def _session_status(data: dict) -> SessionStatus:
    return SessionStatus(data['sessionId'], data['isActive'], data['isProtected'], data['createdAt'],
                         data['authorizedCount'], data['owner'])


def _auth_response(data: dict) -> AuthResponse:
    return AuthResponse(data['success'], data['controllerId'], data['sessionId'], data['errorCode'], data['message'])


def _command_ack(data: dict) -> CommandAck:
    return CommandAck(data['commandId'], data['status'], data['message'], data['details'])


def _command_error(data: dict) -> CommandError:
    return CommandError(data['commandId'], data['errorCode'], data['message'])


def new_command_id() -> str:
    return uuid.uuid4().hex


def now_ms() -> int:
    return int(time.time() * 1000)


def make_envelope(message_type: str, payload=None, device_id: typing.Optional[str] = None,
                  command_id: typing.Optional[str] = None) -> Envelope:
    return Envelope(message_type, payload, now_ms(), device_id, command_id)


def encode(envelope: Envelope) -> str:
    payload = envelope.payload
    if hasattr(payload, "to_payload"):
        payload = payload.to_payload()
    packet = {
        "type": envelope.type,
        "timestamp": envelope.timestamp,
        "payload": payload if payload is not None else {},
    }
    if envelope.device_id is not None:
        packet["deviceId"] = envelope.device_id
    if envelope.command_id is not None:
        packet["commandId"] = envelope.command_id
    return json.dumps(packet, separators=(",", ":"))


def decode(text: typing.Union[str, bytes]) -> Envelope:
    """
    Decode one frame. Raises DecodeError for anything that is not an envelope,
    PayloadError when a known type carries a payload that does not fit it.
    Unknown types are passed through with their raw payload.
    """
    try:
        packet = json.loads(text)
    except (ValueError, RecursionError, UnicodeDecodeError, TypeError) as e:
        raise DecodeError(f"frame is not JSON: {e}") from e

    try:
        data = ENVELOPE_SCHEMA(packet)
    except Invalid as e:
        raise DecodeError(f"malformed envelope: {e}") from e

    message_type = data['type']
    payload = data['payload']
    if message_type in NO_PAYLOAD_TYPES:
        payload = None
    elif message_type in PAYLOAD_PARSERS:
        try:
            payload = PAYLOAD_PARSERS[message_type](payload)
        except (Invalid, ValueError, KeyError, TypeError) as e:
            raise PayloadError(message_type, data['commandId'], str(e)) from e

    return Envelope(message_type, payload, data['timestamp'], data['deviceId'], data['commandId'])
