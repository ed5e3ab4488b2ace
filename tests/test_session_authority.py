import pytest

from session_authority import SessionAuthority, SessionError, SessionErrorCode, AuthRateLimiter
from stores import SessionStore


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path / "session.toml")


@pytest.fixture
def authority(store, clock):
    return SessionAuthority(store, AuthRateLimiter(clock=clock))


class TestAuthRateLimiter:

    def test_allows_until_limit(self, clock):
        limiter = AuthRateLimiter(max_attempts=2, window_seconds=10, clock=clock)
        assert limiter.allow("desk")
        limiter.record("desk")
        limiter.record("desk")
        assert not limiter.allow("desk")

    def test_old_attempts_expire(self, clock):
        """Test an attempt exactly one window old no longer counts."""
        limiter = AuthRateLimiter(max_attempts=1, window_seconds=10, clock=clock)
        limiter.record("desk")
        clock.advance(10)
        assert limiter.allow("desk")
        assert limiter.attempts("desk") == 0


class TestSessionAuthority:

    @pytest.mark.asyncio
    async def test_open_access_without_session(self, authority):
        """Test every controller is authorized while no session is active."""
        assert not authority.get_state().is_active
        assert await authority.is_authorized("anyone")

    @pytest.mark.asyncio
    async def test_blank_password_creates_unprotected_session(self, authority):
        state = await authority.create_session("   ")
        assert state.is_active
        assert not state.is_protected
        assert state.password_hash is None
        assert await authority.is_authorized("anyone")

    @pytest.mark.asyncio
    async def test_correct_password_authorizes_and_persists(self, authority, tmp_path):
        """Test a successful login is written to disk."""
        created = await authority.create_session("1234", owner="club")
        assert created.is_protected
        assert created.password_hash == SessionAuthority.hash_password("1234")
        assert not await authority.is_authorized("desk")

        state = await authority.authenticate("desk", "1234")
        assert "desk" in state.authorized_controllers
        assert await authority.is_authorized("desk")

        reloaded = await SessionStore(tmp_path / "session.toml").load()
        assert reloaded.session_id == created.session_id
        assert reloaded.authorized_controllers == frozenset({"desk"})
        assert reloaded.owner == "club"

    @pytest.mark.asyncio
    async def test_wrong_password(self, authority):
        await authority.create_session("1234")
        with pytest.raises(SessionError) as info:
            await authority.authenticate("desk", "0000")
        assert info.value.code is SessionErrorCode.INVALID_PASSWORD
        assert authority.rate_limiter.attempts("desk") == 1
        assert not await authority.is_authorized("desk")

    @pytest.mark.asyncio
    async def test_no_active_session(self, authority):
        with pytest.raises(SessionError) as info:
            await authority.authenticate("desk", "1234")
        assert info.value.code is SessionErrorCode.NO_ACTIVE_SESSION
        assert authority.rate_limiter.attempts("desk") == 0

    @pytest.mark.asyncio
    async def test_unprotected_session_accepts_any_password(self, authority):
        """Test unprotected sessions do not add controllers or count attempts."""
        await authority.create_session(None)
        state = await authority.authenticate("desk", "whatever")
        assert state.authorized_controllers == frozenset()
        assert authority.rate_limiter.attempts("desk") == 0

    @pytest.mark.asyncio
    async def test_rate_limited_after_five_failures(self, authority, clock):
        """Test the sixth attempt is refused even with the right password, until the window passes."""
        await authority.create_session("1234")
        for _ in range(5):
            with pytest.raises(SessionError):
                await authority.authenticate("desk", "0000")
            clock.advance(1)

        with pytest.raises(SessionError) as info:
            await authority.authenticate("desk", "1234")
        assert info.value.code is SessionErrorCode.RATE_LIMITED

        clock.advance(61)
        state = await authority.authenticate("desk", "1234")
        assert "desk" in state.authorized_controllers

    @pytest.mark.asyncio
    async def test_rate_limit_is_per_controller(self, authority):
        await authority.create_session("1234")
        for _ in range(5):
            with pytest.raises(SessionError):
                await authority.authenticate("desk", "0000")

        state = await authority.authenticate("court-side", "1234")
        assert "court-side" in state.authorized_controllers

    @pytest.mark.asyncio
    async def test_revoke(self, authority):
        await authority.create_session("1234")
        await authority.authenticate("desk", "1234")
        state = await authority.revoke("desk")
        assert "desk" not in state.authorized_controllers
        assert not await authority.is_authorized("desk")

    @pytest.mark.asyncio
    async def test_revoke_without_session(self, authority):
        with pytest.raises(SessionError) as info:
            await authority.revoke("desk")
        assert info.value.code is SessionErrorCode.NO_ACTIVE_SESSION

    @pytest.mark.asyncio
    async def test_end_session_resets_everything(self, authority, tmp_path):
        await authority.create_session("1234")
        with pytest.raises(SessionError):
            await authority.authenticate("desk", "0000")

        await authority.end_session()
        assert not authority.get_state().is_active
        assert authority.rate_limiter.attempts("desk") == 0
        assert await authority.is_authorized("desk")
        assert not (await SessionStore(tmp_path / "session.toml").load()).is_active

    @pytest.mark.asyncio
    async def test_new_session_replaces_old(self, authority):
        """Test controllers authorized in the previous session must log in again."""
        first = await authority.create_session("1234")
        await authority.authenticate("desk", "1234")
        second = await authority.create_session("5678")
        assert second.session_id != first.session_id
        assert not await authority.is_authorized("desk")
        with pytest.raises(SessionError):
            await authority.authenticate("desk", "1234")
