"""Authoritative session state for one client.

The store owns the ``(user, profile, loading)`` triple. Consumers read it
through :attr:`SessionStore.state`, an immutable snapshot, and may subscribe
to changes; every transition goes through the store.

Identity changes arrive as events from the directory. Each event bumps a
generation counter, and a profile resolution only lands if its generation
is still current, so a slow lookup for an old sign-in can never overwrite
a newer session. Resolution is bounded by ``profile_timeout_secs``; on
timeout or lookup failure a fallback profile is used and ``loading`` is
released.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, MutableMapping, Optional

from config import Settings, get_settings
from directory import DirectoryAdapter, Unsubscribe, default_profile
from errors import DataError, DataErrorKind, ProfileResolutionTimeout
from models import AuthEvent, Role
from schemas import Identity, ProfileOut, SignUpResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionState:
    user: Optional[Identity] = None
    profile: Optional[ProfileOut] = None
    loading: bool = False

    @property
    def authenticated(self) -> bool:
        return self.user is not None

    @property
    def role(self) -> Optional[Role]:
        return self.profile.role if self.profile else None


StateListener = Callable[[SessionState], None]


class SessionStore:
    def __init__(
        self,
        directory: DirectoryAdapter,
        *,
        storage: MutableMapping[str, str],
        settings: Optional[Settings] = None,
    ) -> None:
        self.directory = directory
        self.storage = storage
        self.settings = settings or get_settings()
        self._user: Optional[Identity] = None
        self._profile: Optional[ProfileOut] = None
        self._loading = False
        self._generation = 0
        self._pending: Optional[asyncio.Task] = None
        self._listeners: list[StateListener] = []
        self._unsubscribe: Optional[Unsubscribe] = None

    # lifecycle

    async def start(self) -> SessionState:
        """Subscribe to identity changes and restore a persisted session."""
        if self._unsubscribe is None:
            self._unsubscribe = self.directory.on_identity_change(
                self._handle_identity_change
            )
        self._loading = True
        self._notify()
        try:
            identity = await self.directory.get_current_identity()
        except Exception:
            logger.exception("session_restore_failed")
            identity = None
        self._handle_identity_change(AuthEvent.initial_session, identity)
        await self.settled()
        return self.state

    def close(self) -> None:
        self._generation += 1
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._listeners.clear()

    # read side

    @property
    def state(self) -> SessionState:
        return SessionState(user=self._user, profile=self._profile, loading=self._loading)

    def subscribe(self, listener: StateListener) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.state
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("session_listener_failed")

    async def settled(self) -> SessionState:
        """Wait until no profile resolution is in flight."""
        while self._pending is not None and not self._pending.done():
            await asyncio.wait({self._pending})
        return self.state

    # identity events

    def _handle_identity_change(
        self, event: AuthEvent, identity: Optional[Identity]
    ) -> None:
        self._generation += 1
        generation = self._generation
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

        if identity is None:
            self._user = None
            self._profile = None
            self._loading = False
            self._notify()
            return

        same_user = self._profile is not None and self._profile.id == identity.id
        self._user = identity
        if same_user and event in (AuthEvent.token_refreshed, AuthEvent.user_updated):
            self._loading = False
            self._notify()
            return

        if not same_user:
            self._profile = None
        self._loading = True
        self._notify()
        self._pending = asyncio.get_running_loop().create_task(
            self._resolve_for(identity, generation)
        )

    async def _resolve_for(self, identity: Identity, generation: int) -> None:
        timeout = self.settings.profile_timeout_secs
        try:
            profile = await asyncio.wait_for(self.resolve_profile(identity), timeout)
        except asyncio.TimeoutError:
            timed_out = ProfileResolutionTimeout(identity.id, timeout)
            logger.warning(f"profile_resolution_timeout: {timed_out}")
            profile = self._fallback_profile(identity)
        if generation != self._generation:
            logger.info(
                f"profile_resolution_discarded: user_id={identity.id} "
                f"generation={generation} current={self._generation}"
            )
            return
        self._profile = profile
        self._loading = False
        self._notify()

    def _fallback_profile(self, identity: Identity) -> ProfileOut:
        return default_profile(
            identity, bootstrap_admin_email=self.settings.bootstrap_admin_email
        )

    async def resolve_profile(self, identity: Identity) -> ProfileOut:
        """Stored profile for ``identity``, or a fallback that is always returned.

        Lookup failures are absorbed. When no row exists the fallback is
        persisted on a best-effort basis.
        """
        try:
            profile = await self.directory.get_profile(identity.id)
        except Exception as exc:
            logger.warning(f"profile_lookup_failed: user_id={identity.id} error={exc}")
            return self._fallback_profile(identity)
        if profile is not None:
            return profile

        fallback = self._fallback_profile(identity)
        logger.info(
            f"profile_fallback: user_id={identity.id} role={fallback.role.value}"
        )
        try:
            return await self.directory.insert_profile(fallback)
        except Exception as exc:
            logger.warning(f"profile_persist_failed: user_id={identity.id} error={exc}")
            return fallback

    # auth operations

    async def sign_in(self, email: str, password: str) -> SessionState:
        await self.directory.sign_in(email, password)
        return await self.settled()

    async def sign_up(self, email: str, password: str, name: str) -> SignUpResult:
        return await self.directory.sign_up(email, password, name)

    async def confirm_email(self, token: str) -> Identity:
        return await self.directory.confirm_email(token)

    async def refresh(self) -> SessionState:
        await self.directory.refresh_session()
        return await self.settled()

    async def sign_out(self) -> None:
        self._generation += 1
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None
        user_id = self._user.id if self._user else None
        try:
            await asyncio.wait_for(
                self.directory.sign_out(), self.settings.sign_out_timeout_secs
            )
        except Exception:
            logger.exception(f"remote_sign_out_failed: user_id={user_id}")
        finally:
            self._user = None
            self._profile = None
            self._loading = False
            self._clear_persisted_tokens()
            self._notify()

    def _clear_persisted_tokens(self) -> None:
        prefix = self.settings.session_key_prefix
        for key in [k for k in self.storage if k.startswith(prefix)]:
            self.storage.pop(key, None)

    # profile of the signed-in user

    async def update_own_profile(self, name: str) -> ProfileOut:
        if self._user is None:
            raise DataError.permission_denied("Not signed in")
        profile = await self.directory.update_profile(
            self._user.id, {"name": name, "updated_at": datetime.utcnow()}
        )
        self._profile = profile
        self._notify()
        return profile

    async def change_password(self, current_password: str, new_password: str) -> None:
        await self.directory.update_password(current_password, new_password)

    # user administration

    async def list_users(self, *, include_inactive: bool = False) -> list[ProfileOut]:
        return await self.directory.list_profiles(exclude_inactive=not include_inactive)

    async def create_user(
        self, email: str, password: str, name: str, role: Role
    ) -> ProfileOut:
        identity = await self.directory.create_user(email, password, name, role)
        return await self._confirm_profile(identity, name, role)

    async def _confirm_profile(
        self, identity: Identity, name: str, role: Role
    ) -> ProfileOut:
        fields = {"name": name.strip(), "role": role}
        attempts = max(1, self.settings.profile_retry_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await self.directory.update_profile(
                    identity.id, {**fields, "updated_at": datetime.utcnow()}
                )
            except DataError as exc:
                if exc.kind != DataErrorKind.not_found:
                    raise
                logger.info(
                    f"profile_not_ready: user_id={identity.id} attempt={attempt}/{attempts}"
                )
                if attempt < attempts:
                    await asyncio.sleep(self.settings.profile_retry_delay_secs)
        now = datetime.utcnow()
        return await self.directory.insert_profile(
            ProfileOut(
                id=identity.id,
                name=fields["name"],
                email=identity.email,
                role=role,
                created_at=now,
                updated_at=now,
            )
        )

    async def update_user(self, user_id: str, name: str, role: Role) -> ProfileOut:
        profile = await self.directory.update_profile(
            user_id, {"name": name, "role": role, "updated_at": datetime.utcnow()}
        )
        if self._user is not None and self._user.id == user_id:
            self._profile = profile
            self._notify()
        return profile

    async def deactivate_user(self, user_id: str) -> None:
        await self.directory.deactivate_user(user_id)
