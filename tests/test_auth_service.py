import pytest

from sessionauth.service.auth import AuthService, extract_bearer
from sessionauth.service.errors import (
    InternalError,
    InvalidCredentialsError,
    UserBlockedError,
    UserNotFoundError,
    ValidationError,
)
from sessionauth.storage.errors import StoreTimeout
from sessionauth.storage.models import TokenSlots, utcnow

PASSWORD = "correct-horse"


@pytest.fixture
def auth(memory_store, settings):
    memory_store.create_user(5, "a@x.com", "Alice", PASSWORD)
    memory_store.create_user(6, "b@x.com", "Bob", PASSWORD)
    return AuthService(memory_store, settings)


class _FailingSlotsStore:
    """Wraps a store and makes token-slot reads fail like a dead database."""

    def __init__(self, inner):
        self.inner = inner

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def get_token_slots(self, user_id):
        raise StoreTimeout("statement timeout")


class TestLogin:
    """Login ordering and the persisted pair it produces."""

    async def test_success_persists_returned_pair(self, auth, memory_store):
        result = await auth.login("a@x.com", PASSWORD)

        claims = auth.codec.verify_access_token(result.tokens.access_token)
        assert claims.user_id == 5 == result.user.id
        assert memory_store.get_token_slots(5) == TokenSlots(
            result.tokens.access_token, result.tokens.refresh_token
        )

    async def test_email_is_normalized(self, auth):
        result = await auth.login("  A@X.COM ", PASSWORD)
        assert result.user.email == "a@x.com"

    async def test_blocked_user_gets_no_tokens(self, auth, memory_store):
        memory_store.set_block_status(5, utcnow())

        with pytest.raises(UserBlockedError):
            await auth.login("a@x.com", PASSWORD)
        assert memory_store.get_token_slots(5).empty

    async def test_block_checked_before_password(self, auth, memory_store):
        memory_store.set_block_status(5, utcnow())

        with pytest.raises(UserBlockedError):
            await auth.login("a@x.com", "wrong-password")

    async def test_wrong_password_leaves_slots_untouched(self, auth, memory_store):
        first = await auth.login("a@x.com", PASSWORD)

        with pytest.raises(InvalidCredentialsError):
            await auth.login("a@x.com", "wrong-password")

        assert memory_store.get_token_slots(5) == TokenSlots(
            first.tokens.access_token, first.tokens.refresh_token
        )

    async def test_unknown_email(self, auth):
        with pytest.raises(UserNotFoundError):
            await auth.login("nobody@x.com", PASSWORD)

    async def test_malformed_input_rejected_before_store(self, auth):
        with pytest.raises(ValidationError) as excinfo:
            await auth.login("not-an-email", PASSWORD)
        assert excinfo.value.detail == {"field": "email"}

        with pytest.raises(ValidationError) as excinfo:
            await auth.login("a@x.com", "   ")
        assert excinfo.value.detail == {"field": "password"}

    async def test_second_login_supersedes_first(self, auth):
        first = await auth.login("a@x.com", PASSWORD)
        await auth.login("a@x.com", PASSWORD)

        assert await auth.validate_access_token(first.tokens.access_token) is None

    async def test_store_failure_is_internal_error(self, memory_store, settings):
        memory_store.create_user(5, "a@x.com", "Alice", PASSWORD)

        class _Broken:
            def __getattr__(self, name):
                return getattr(memory_store, name)

            def persist_token_pair(self, *args):
                raise StoreTimeout("statement timeout")

        auth = AuthService(_Broken(), settings)
        with pytest.raises(InternalError):
            await auth.login("a@x.com", PASSWORD)


class TestRefresh:
    """Refresh rotates the access token and fails closed."""

    async def test_rotates_access_keeps_refresh(self, auth, memory_store):
        login = await auth.login("a@x.com", PASSWORD)

        result = await auth.refresh(login.tokens.refresh_token, 5)

        assert result.must_logout is False
        assert result.tokens.refresh_token == login.tokens.refresh_token
        assert result.tokens.access_token != login.tokens.access_token
        assert memory_store.get_token_slots(5) == TokenSlots(
            result.tokens.access_token, login.tokens.refresh_token
        )
        assert await auth.validate_access_token(login.tokens.access_token) is None
        assert await auth.validate_access_token(result.tokens.access_token) is not None

    async def test_picks_up_renamed_user(self, auth, memory_store):
        login = await auth.login("a@x.com", PASSWORD)
        memory_store.users[5].display_name = "Alice Liddell"

        result = await auth.refresh(login.tokens.refresh_token, 5)

        claims = auth.codec.verify_access_token(result.tokens.access_token)
        assert claims.display_name == "Alice Liddell"

    async def test_superseded_token_forces_logout(self, auth, memory_store):
        stale = await auth.login("a@x.com", PASSWORD)
        await auth.login("a@x.com", PASSWORD)

        result = await auth.refresh(stale.tokens.refresh_token, 5)

        assert result.must_logout is True
        assert result.tokens is None
        assert memory_store.get_token_slots(5).empty

    async def test_token_of_other_user_forces_logout(self, auth, memory_store):
        alice = await auth.login("a@x.com", PASSWORD)
        await auth.login("b@x.com", PASSWORD)

        result = await auth.refresh(alice.tokens.refresh_token, 6)

        assert result.must_logout is True
        assert memory_store.get_token_slots(6).empty
        # The real owner's session is not touched by a mismatched claim
        assert memory_store.get_token_slots(5).refresh_token == alice.tokens.refresh_token

    async def test_invalid_token_clears_claimed_user(self, auth, memory_store):
        await auth.login("a@x.com", PASSWORD)

        result = await auth.refresh("garbage", 5)

        assert result.must_logout is True
        assert memory_store.get_token_slots(5).empty

    async def test_access_token_cannot_refresh(self, auth):
        login = await auth.login("a@x.com", PASSWORD)
        result = await auth.refresh(login.tokens.access_token, 5)
        assert result.must_logout is True

    async def test_persisted_mismatch_scenario(self, auth, memory_store):
        presented = auth.codec.issue_refresh_token(5)
        memory_store.persist_token_pair(5, "acc", auth.codec.issue_refresh_token(5))

        result = await auth.refresh(presented, 5)

        assert result.must_logout is True
        slots = memory_store.get_token_slots(5)
        assert slots.access_token is None and slots.refresh_token is None

    async def test_store_failure_forces_logout(self, memory_store, settings):
        memory_store.create_user(5, "a@x.com", "Alice", PASSWORD)
        auth = AuthService(memory_store, settings)
        login = await auth.login("a@x.com", PASSWORD)

        broken = AuthService(_FailingSlotsStore(memory_store), settings)
        result = await broken.refresh(login.tokens.refresh_token, 5)

        assert result.must_logout is True
        assert memory_store.get_token_slots(5).empty

    async def test_failed_clear_still_forces_logout(self, memory_store, settings):
        memory_store.create_user(5, "a@x.com", "Alice", PASSWORD)

        class _BrokenWrites:
            def __getattr__(self, name):
                return getattr(memory_store, name)

            def persist_token_pair(self, *args):
                raise RuntimeError("driver bug")

        auth = AuthService(_BrokenWrites(), settings)
        result = await auth.refresh("garbage", 5)

        assert result.must_logout is True
        assert result.tokens is None

    async def test_logout_during_refresh_is_not_undone(self, memory_store, settings):
        memory_store.create_user(5, "a@x.com", "Alice", PASSWORD)
        login = await AuthService(memory_store, settings).login("a@x.com", PASSWORD)

        class _LogoutAfterLookup:
            def __getattr__(self, name):
                return getattr(memory_store, name)

            def get_token_slots(self, user_id):
                slots = memory_store.get_token_slots(user_id)
                memory_store.persist_token_pair(user_id, None, None)
                return slots

        auth = AuthService(_LogoutAfterLookup(), settings)
        result = await auth.refresh(login.tokens.refresh_token, 5)

        assert result.must_logout is True
        assert memory_store.get_token_slots(5).empty


class TestLogoutAndGuard:
    """Revocation is visible to the next validation."""

    async def test_logout_revokes_access_token(self, auth):
        login = await auth.login("a@x.com", PASSWORD)
        token = login.tokens.access_token
        assert await auth.validate_access_token(token) is not None

        await auth.logout(5)

        assert auth.codec.verify_access_token(token) is not None
        assert await auth.validate_access_token(token) is None

    async def test_logout_is_idempotent(self, auth, memory_store):
        await auth.login("a@x.com", PASSWORD)
        await auth.logout(5)
        await auth.logout(5)
        assert memory_store.get_token_slots(5).empty

    async def test_block_does_not_end_open_session(self, auth, memory_store):
        login = await auth.login("a@x.com", PASSWORD)
        memory_store.set_block_status(5, utcnow())

        ctx = await auth.validate_access_token(login.tokens.access_token)

        assert ctx is not None and ctx.user_id == 5

    async def test_guard_resolves_identity(self, auth):
        login = await auth.login("a@x.com", PASSWORD)
        ctx = await auth.validate_access_token(login.tokens.access_token)
        assert (ctx.user_id, ctx.email, ctx.display_name) == (5, "a@x.com", "Alice")

    async def test_guard_fails_closed_when_store_down(self, memory_store, settings):
        memory_store.create_user(5, "a@x.com", "Alice", PASSWORD)
        login = await AuthService(memory_store, settings).login("a@x.com", PASSWORD)

        broken = AuthService(_FailingSlotsStore(memory_store), settings)

        assert await broken.validate_access_token(login.tokens.access_token) is None

    async def test_guard_fails_closed_on_store_bug(self, memory_store, settings):
        memory_store.create_user(5, "a@x.com", "Alice", PASSWORD)
        login = await AuthService(memory_store, settings).login("a@x.com", PASSWORD)

        class _Buggy:
            def __getattr__(self, name):
                return getattr(memory_store, name)

            def get_token_slots(self, user_id):
                raise RuntimeError("adapter bug")

        auth = AuthService(_Buggy(), settings)

        assert await auth.validate_access_token(login.tokens.access_token) is None

    async def test_garbage_token_never_reaches_store(self, memory_store, settings):
        memory_store.create_user(5, "a@x.com", "Alice", PASSWORD)
        calls = []

        class _Spy:
            def __getattr__(self, name):
                return getattr(memory_store, name)

            def get_token_slots(self, user_id):
                calls.append(user_id)
                return memory_store.get_token_slots(user_id)

        auth = AuthService(_Spy(), settings)
        assert await auth.validate_access_token("not.a.token") is None
        assert calls == []


class TestExtractBearer:
    """Authorization header parsing."""

    def test_valid(self):
        assert extract_bearer("Bearer abc.def.ghi") == "abc.def.ghi"
        assert extract_bearer("bearer abc") == "abc"

    def test_invalid(self):
        for header in [None, "", "Bearer", "Basic abc", "Bearer a b", "abc"]:
            assert extract_bearer(header) is None
