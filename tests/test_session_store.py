import asyncio
import copy
from datetime import datetime
from typing import Optional

from config import get_settings
from errors import AuthError, AuthErrorReason, DataError
from models import AuthEvent, Role
from schemas import Identity, ProfileOut, SignUpResult
from session_store import SessionState, SessionStore

BOOTSTRAP = "admin@financeapp.com"


def fast_settings():
    settings = copy.copy(get_settings())
    settings.bootstrap_admin_email = BOOTSTRAP
    settings.profile_timeout_secs = 0.05
    settings.sign_out_timeout_secs = 0.05
    settings.profile_retry_attempts = 3
    settings.profile_retry_delay_secs = 0
    settings.session_key_prefix = "sb-finance"
    return settings


class FakeDirectory:
    def __init__(self) -> None:
        self.listeners = []
        self.current: Optional[Identity] = None
        self.profiles: dict[str, ProfileOut] = {}
        self.profile_delays: dict[str, float] = {}
        self.lookup_error: Optional[Exception] = None
        self.sign_out_mode = "ok"
        self.missing_profile_updates = 0
        self.get_profile_calls = 0
        self.update_attempts = 0

    def on_identity_change(self, callback):
        self.listeners.append(callback)
        return lambda: self.listeners.remove(callback)

    def emit(self, event: AuthEvent, identity: Optional[Identity]) -> None:
        self.current = identity
        for callback in list(self.listeners):
            callback(event, identity)

    async def get_current_identity(self) -> Optional[Identity]:
        return self.current

    async def sign_in(self, email: str, password: str) -> Identity:
        if password != "secret":
            raise AuthError(AuthErrorReason.invalid_credentials)
        identity = Identity(id=f"id-{email}", email=email)
        self.emit(AuthEvent.signed_in, identity)
        return identity

    async def sign_up(self, email: str, password: str, name: str) -> SignUpResult:
        return SignUpResult(requires_confirmation=True, confirmation_token="tok")

    async def sign_out(self) -> None:
        if self.sign_out_mode == "fail":
            raise AuthError(AuthErrorReason.network)
        if self.sign_out_mode == "hang":
            await asyncio.sleep(3600)
        self.emit(AuthEvent.signed_out, None)

    async def refresh_session(self) -> Optional[Identity]:
        self.emit(AuthEvent.token_refreshed, self.current)
        return self.current

    async def get_profile(self, user_id: str) -> Optional[ProfileOut]:
        self.get_profile_calls += 1
        delay = self.profile_delays.get(user_id)
        if delay:
            await asyncio.sleep(delay)
        if self.lookup_error is not None:
            raise self.lookup_error
        return self.profiles.get(user_id)

    async def insert_profile(self, profile: ProfileOut) -> ProfileOut:
        self.profiles[profile.id] = profile
        return profile

    async def update_profile(self, user_id: str, fields: dict) -> ProfileOut:
        self.update_attempts += 1
        if self.missing_profile_updates > 0:
            self.missing_profile_updates -= 1
            raise DataError.not_found("Profile")
        data = self.profiles[user_id].model_dump()
        data.update(fields)
        self.profiles[user_id] = ProfileOut(**data)
        return self.profiles[user_id]

    async def create_user(self, email, password, name, role) -> Identity:
        return Identity(id=f"id-{email}", email=email, name=name)


def stored_profile(user_id: str, name: str, role: Role = Role.employee) -> ProfileOut:
    now = datetime(2025, 1, 1)
    return ProfileOut(
        id=user_id, name=name, email=f"{name}@example.com", role=role,
        created_at=now, updated_at=now,
    )


def test_new_identity_gets_employee_fallback_profile() -> None:
    async def scenario():
        directory = FakeDirectory()
        store = SessionStore(directory, storage={}, settings=fast_settings())
        await store.start()
        state = await store.sign_in("rina@example.com", "secret")
        return directory, state

    directory, state = asyncio.run(scenario())

    assert state.profile.role == Role.employee
    assert state.profile.name == "rina"
    assert state.loading is False
    assert "id-rina@example.com" in directory.profiles


def test_bootstrap_email_gets_admin_fallback_profile() -> None:
    async def scenario():
        store = SessionStore(FakeDirectory(), storage={}, settings=fast_settings())
        await store.start()
        return await store.sign_in(BOOTSTRAP, "secret")

    state = asyncio.run(scenario())

    assert state.profile.role == Role.admin


def test_stored_profile_wins_over_fallback() -> None:
    async def scenario():
        directory = FakeDirectory()
        directory.profiles["id-boss@example.com"] = stored_profile(
            "id-boss@example.com", "Boss", Role.admin
        )
        store = SessionStore(directory, storage={}, settings=fast_settings())
        await store.start()
        return await store.sign_in("boss@example.com", "secret")

    state = asyncio.run(scenario())

    assert state.profile.name == "Boss"
    assert state.role == Role.admin


def test_failed_sign_in_leaves_state_signed_out() -> None:
    async def scenario():
        store = SessionStore(FakeDirectory(), storage={}, settings=fast_settings())
        await store.start()
        try:
            await store.sign_in("rina@example.com", "wrong")
        except AuthError as exc:
            return exc, store.state
        raise AssertionError("sign_in should fail")

    error, state = asyncio.run(scenario())

    assert error.reason == AuthErrorReason.invalid_credentials
    assert state == SessionState()


def test_slow_profile_lookup_falls_back_and_releases_loading() -> None:
    async def scenario():
        directory = FakeDirectory()
        directory.profile_delays["id-slow@example.com"] = 5
        store = SessionStore(directory, storage={}, settings=fast_settings())
        await store.start()
        return await store.sign_in("slow@example.com", "secret")

    state = asyncio.run(scenario())

    assert state.loading is False
    assert state.profile.id == "id-slow@example.com"
    assert state.profile.role == Role.employee


def test_lookup_error_falls_back() -> None:
    async def scenario():
        directory = FakeDirectory()
        directory.lookup_error = DataError.permission_denied()
        store = SessionStore(directory, storage={}, settings=fast_settings())
        await store.start()
        return await store.sign_in(BOOTSTRAP, "secret")

    state = asyncio.run(scenario())

    assert state.profile.role == Role.admin
    assert state.loading is False


def test_newer_identity_wins_over_stale_resolution() -> None:
    async def scenario():
        settings = fast_settings()
        settings.profile_timeout_secs = 1
        directory = FakeDirectory()
        directory.profiles["id-a"] = stored_profile("id-a", "Ayu")
        directory.profiles["id-b"] = stored_profile("id-b", "Budi")
        directory.profile_delays["id-a"] = 0.2
        store = SessionStore(directory, storage={}, settings=settings)
        await store.start()
        seen = []
        store.subscribe(lambda state: seen.append(state))

        directory.emit(AuthEvent.signed_in, Identity(id="id-a", email="a@example.com"))
        directory.emit(AuthEvent.signed_in, Identity(id="id-b", email="b@example.com"))
        state = await store.settled()
        await asyncio.sleep(0.3)
        return state, store.state, seen

    settled, later, seen = asyncio.run(scenario())

    assert settled.profile.name == "Budi"
    assert later.profile.name == "Budi"
    assert all(s.profile is None or s.profile.name != "Ayu" for s in seen)


def test_token_refresh_for_same_user_does_not_refetch_profile() -> None:
    async def scenario():
        directory = FakeDirectory()
        store = SessionStore(directory, storage={}, settings=fast_settings())
        await store.start()
        await store.sign_in("rina@example.com", "secret")
        calls = directory.get_profile_calls
        state = await store.refresh()
        return calls, directory.get_profile_calls, state

    before, after, state = asyncio.run(scenario())

    assert before == after
    assert state.profile.name == "rina"


def test_sign_out_clears_state_when_remote_call_fails() -> None:
    async def scenario():
        directory = FakeDirectory()
        storage = {"sb-finance-auth-token": "abc", "theme": "dark"}
        store = SessionStore(directory, storage=storage, settings=fast_settings())
        await store.start()
        await store.sign_in("rina@example.com", "secret")
        directory.sign_out_mode = "fail"
        await store.sign_out()
        return store.state, storage

    state, storage = asyncio.run(scenario())

    assert state.user is None
    assert state.profile is None
    assert state.loading is False
    assert storage == {"theme": "dark"}


def test_sign_out_clears_state_when_remote_call_hangs() -> None:
    async def scenario():
        directory = FakeDirectory()
        storage = {"sb-finance-auth-token": "abc"}
        store = SessionStore(directory, storage=storage, settings=fast_settings())
        await store.start()
        await store.sign_in("rina@example.com", "secret")
        directory.sign_out_mode = "hang"
        await asyncio.wait_for(store.sign_out(), 2)
        return store.state, storage

    state, storage = asyncio.run(scenario())

    assert state == SessionState()
    assert storage == {}


def test_create_user_retries_until_profile_row_exists() -> None:
    async def scenario():
        directory = FakeDirectory()
        directory.profiles["id-new@example.com"] = stored_profile(
            "id-new@example.com", "new"
        )
        directory.missing_profile_updates = 2
        store = SessionStore(directory, storage={}, settings=fast_settings())
        profile = await store.create_user(
            "new@example.com", "secret1", "Nadia", Role.admin
        )
        return directory, profile

    directory, profile = asyncio.run(scenario())

    assert directory.update_attempts == 3
    assert profile.name == "Nadia"
    assert profile.role == Role.admin


def test_create_user_inserts_profile_after_retries_run_out() -> None:
    async def scenario():
        directory = FakeDirectory()
        directory.missing_profile_updates = 10
        store = SessionStore(directory, storage={}, settings=fast_settings())
        profile = await store.create_user(
            "late@example.com", "secret1", "Lukas", Role.employee
        )
        return directory, profile

    directory, profile = asyncio.run(scenario())

    assert directory.update_attempts == 3
    assert directory.profiles["id-late@example.com"] == profile
    assert profile.name == "Lukas"


def test_start_announces_loading_before_restore_finishes() -> None:
    async def scenario():
        directory = FakeDirectory()
        directory.current = Identity(id="id-rina@example.com", email="rina@example.com")
        directory.profiles[directory.current.id] = stored_profile(
            directory.current.id, "Rina"
        )
        store = SessionStore(directory, storage={}, settings=fast_settings())
        seen = []
        store.subscribe(seen.append)
        await store.start()
        return seen

    seen = asyncio.run(scenario())

    assert seen[0] == SessionState(loading=True)
    assert seen[-1].loading is False
    assert seen[-1].profile.name == "Rina"
