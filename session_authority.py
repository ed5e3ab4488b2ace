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
import collections
import enum
import hashlib
import logging
import time
import uuid
from typing import Callable, Optional

from models import SessionState


class SessionErrorCode(str, enum.Enum):
    NO_ACTIVE_SESSION = "NO_ACTIVE_SESSION"
    INVALID_PASSWORD = "INVALID_PASSWORD"
    RATE_LIMITED = "RATE_LIMITED"


class SessionError(Exception):
    def __init__(self, code: SessionErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class AuthRateLimiter:
    """
    Sliding window of failed authentication attempts, keyed by controller id.

    Only failed attempts are recorded. Timestamps older than the window are
    pruned when the controller is next checked.
    """

    def __init__(self, max_attempts: int = 5, window_seconds: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock
        self._attempts: dict[str, collections.deque] = dict()

    def _prune(self, controller_id: str) -> collections.deque:
        attempts = self._attempts.setdefault(controller_id, collections.deque())
        cutoff = self._clock() - self.window_seconds
        while attempts and attempts[0] <= cutoff:
            attempts.popleft()
        return attempts

    def allow(self, controller_id: str) -> bool:
        return len(self._prune(controller_id)) < self.max_attempts

    def record(self, controller_id: str):
        self._prune(controller_id).append(self._clock())

    def attempts(self, controller_id: str) -> int:
        return len(self._prune(controller_id))

    def clear(self):
        self._attempts.clear()


class SessionAuthority:
    """
    Owns the device's optional password protection and its authorized
    controllers. Every mutation is persisted through the session store.
    """

    def __init__(self, store, rate_limiter: Optional[AuthRateLimiter] = None):
        self._store = store
        self._rate_limiter = rate_limiter if rate_limiter is not None else AuthRateLimiter()
        self._lock = asyncio.Lock()

    @property
    def rate_limiter(self) -> AuthRateLimiter:
        return self._rate_limiter

    @staticmethod
    def hash_password(password: str) -> str:
        return hashlib.sha256(password.encode("utf-8")).hexdigest()

    def get_state(self) -> SessionState:
        return self._store.get()

    async def create_session(self, password: Optional[str] = None, owner: Optional[str] = None) -> SessionState:
        session_id = str(uuid.uuid4())
        if password is None or not password.strip():
            logging.info(f"Creating unprotected session {session_id}")
            state = SessionState.create_unprotected(session_id, owner)
        else:
            logging.info(f"Creating protected session {session_id}")
            state = SessionState.create_protected(session_id, self.hash_password(password), owner)

        async with self._lock:
            await self._store.save(state)
        return state

    async def authenticate(self, controller_id: str, password: str) -> SessionState:
        async with self._lock:
            if not self._rate_limiter.allow(controller_id):
                logging.warning(f"Rate limit exceeded for controller {controller_id}")
                raise SessionError(SessionErrorCode.RATE_LIMITED, "Too many authentication attempts. Please wait.")

            state = self._store.get()
            if not state.is_active:
                logging.warning("No active session to authenticate against")
                raise SessionError(SessionErrorCode.NO_ACTIVE_SESSION, "No active session")

            if not state.is_protected:
                logging.debug(f"Session is not protected, granting access to {controller_id}")
                return state

            if self.hash_password(password or "") != state.password_hash:
                self._rate_limiter.record(controller_id)
                logging.warning(f"Invalid password for controller {controller_id}")
                raise SessionError(SessionErrorCode.INVALID_PASSWORD, "Invalid password")

            state = state.add_authorized_controller(controller_id)
            await self._store.save(state)

        logging.info(f"Controller {controller_id} authenticated")
        return state

    async def is_authorized(self, controller_id: str) -> bool:
        state = self._store.get()
        if not state.is_active:
            return True
        return state.is_authorized(controller_id)

    async def revoke(self, controller_id: str) -> SessionState:
        async with self._lock:
            state = self._store.get()
            if not state.is_active:
                raise SessionError(SessionErrorCode.NO_ACTIVE_SESSION, "No active session")
            state = state.remove_authorized_controller(controller_id)
            await self._store.save(state)

        logging.info(f"Controller {controller_id} authorization revoked")
        return state

    async def end_session(self):
        async with self._lock:
            await self._store.clear()
            self._rate_limiter.clear()
        logging.info("Session ended")
