from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import defaultdict, deque
from datetime import datetime
from typing import Callable, MutableMapping, Optional, Protocol

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from config import Settings, get_settings
from database import session_scope
from errors import AuthError, AuthErrorReason, DataError
from models import AuthEvent, AuthIdentity, Profile, Role, UserStatus
from schemas import Identity, ProfileOut, SignUpResult
from security import (
    hash_password,
    issue_access_token,
    issue_confirmation_token,
    read_access_token,
    read_confirmation_token,
    verify_password,
)

logger = logging.getLogger(__name__)

IdentityCallback = Callable[[AuthEvent, Optional[Identity]], None]
Unsubscribe = Callable[[], None]

PROFILE_FIELDS = frozenset({"name", "role", "status"})


class DirectoryAdapter(Protocol):
    async def sign_in(self, email: str, password: str) -> Identity: ...

    async def sign_up(self, email: str, password: str, name: str) -> SignUpResult: ...

    async def confirm_email(self, token: str) -> Identity: ...

    async def sign_out(self) -> None: ...

    async def get_current_identity(self) -> Optional[Identity]: ...

    async def refresh_session(self) -> Optional[Identity]: ...

    def on_identity_change(self, callback: IdentityCallback) -> Unsubscribe: ...

    async def create_user(
        self, email: str, password: str, name: str, role: Role
    ) -> Identity: ...

    async def get_profile(self, user_id: str) -> Optional[ProfileOut]: ...

    async def insert_profile(self, profile: ProfileOut) -> ProfileOut: ...

    async def update_profile(self, user_id: str, fields: dict[str, object]) -> ProfileOut: ...

    async def update_password(self, current_password: str, new_password: str) -> None: ...

    async def deactivate_user(self, user_id: str) -> None: ...

    async def list_profiles(self, *, exclude_inactive: bool = True) -> list[ProfileOut]: ...


def default_profile(identity: Identity, *, bootstrap_admin_email: str) -> ProfileOut:
    """Profile for an identity that has no stored row yet."""
    email = identity.email.strip().lower()
    name = (identity.name or "").strip() or email.split("@", 1)[0]
    role = Role.admin if email == bootstrap_admin_email.strip().lower() else Role.employee
    now = datetime.utcnow()
    return ProfileOut(
        id=identity.id,
        name=name,
        email=email,
        role=role,
        status=UserStatus.active,
        created_at=now,
        updated_at=now,
    )


class SignInThrottle:
    def __init__(
        self,
        max_failures: int,
        window_secs: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_failures = max_failures
        self.window_secs = window_secs
        self.clock = clock
        self._failures: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def _prune(self, email: str) -> deque[float]:
        attempts = self._failures[email]
        cutoff = self.clock() - self.window_secs
        while attempts and attempts[0] < cutoff:
            attempts.popleft()
        return attempts

    def check(self, email: str) -> None:
        with self._lock:
            limited = len(self._prune(email)) >= self.max_failures
        if limited:
            raise AuthError(AuthErrorReason.rate_limited)

    def record_failure(self, email: str) -> None:
        with self._lock:
            self._prune(email).append(self.clock())

    def reset(self, email: str) -> None:
        with self._lock:
            self._failures.pop(email, None)


class SqlDirectory:
    """Directory client backed by the application database.

    One instance per client: it remembers the signed-in identity, persists
    its access token in ``storage`` and notifies identity-change listeners.
    Writes follow the rules the hosted store would apply to the signed-in
    identity (admins manage everyone, users only edit their own name).
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        storage: MutableMapping[str, str],
        settings: Optional[Settings] = None,
        throttle: Optional[SignInThrottle] = None,
    ) -> None:
        self.session_factory = session_factory
        self.storage = storage
        self.settings = settings or get_settings()
        self.throttle = throttle or SignInThrottle(
            self.settings.max_failed_sign_ins, self.settings.sign_in_window_secs
        )
        self._identity: Optional[Identity] = None
        self._listeners: list[IdentityCallback] = []

    @property
    def token_key(self) -> str:
        return f"{self.settings.session_key_prefix}-auth-token"

    def on_identity_change(self, callback: IdentityCallback) -> Unsubscribe:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, event: AuthEvent, identity: Optional[Identity]) -> None:
        for callback in list(self._listeners):
            try:
                callback(event, identity)
            except Exception:
                logger.exception(f"identity_listener_failed: event={event.value}")

    def _start_session(self, identity: Identity, event: AuthEvent) -> None:
        self._identity = identity
        self.storage[self.token_key] = issue_access_token(identity.id)
        self._emit(event, identity)

    @staticmethod
    def _find_identity(session: Session, email: str) -> Optional[AuthIdentity]:
        return session.scalar(
            select(AuthIdentity).where(func.lower(AuthIdentity.email) == email)
        )

    def _insert_identity(
        self,
        session: Session,
        email: str,
        password: str,
        name: str,
        *,
        confirmed: bool,
    ) -> AuthIdentity:
        if self._find_identity(session, email):
            raise AuthError(AuthErrorReason.email_taken)
        row = AuthIdentity(
            email=email,
            password_hash=hash_password(password),
            name=name.strip() or None,
            email_confirmed_at=datetime.utcnow() if confirmed else None,
        )
        session.add(row)
        session.flush()
        # Every identity gets its default profile row in the same transaction.
        defaults = default_profile(
            Identity.model_validate(row),
            bootstrap_admin_email=self.settings.bootstrap_admin_email,
        )
        session.add(
            Profile(
                id=row.id,
                name=defaults.name,
                email=defaults.email,
                role=defaults.role,
                status=defaults.status,
            )
        )
        session.flush()
        return row

    def _actor(self, session: Session) -> Profile:
        if self._identity is None:
            raise DataError.permission_denied("Not signed in")
        actor = session.get(Profile, self._identity.id)
        if actor is None or actor.status != UserStatus.active:
            raise DataError.permission_denied()
        return actor

    def _require_admin(self, session: Session) -> Profile:
        actor = self._actor(session)
        if actor.role != Role.admin:
            raise DataError.permission_denied("Administrator access required")
        return actor

    async def sign_in(self, email: str, password: str) -> Identity:
        email = email.strip().lower()
        self.throttle.check(email)
        identity = await asyncio.to_thread(self._verify_sign_in, email, password)
        self.throttle.reset(email)
        logger.info(f"sign_in: user_id={identity.id}")
        self._start_session(identity, AuthEvent.signed_in)
        return identity

    def _verify_sign_in(self, email: str, password: str) -> Identity:
        with session_scope(self.session_factory) as session:
            row = self._find_identity(session, email)
            if row is None or not verify_password(password, row.password_hash):
                self.throttle.record_failure(email)
                logger.info(f"sign_in_failed: email={email} reason=invalid_credentials")
                raise AuthError(AuthErrorReason.invalid_credentials)
            if row.email_confirmed_at is None:
                logger.info(f"sign_in_failed: email={email} reason=email_not_confirmed")
                raise AuthError(AuthErrorReason.email_not_confirmed)
            profile = session.get(Profile, row.id)
            if profile is not None and profile.status == UserStatus.inactive:
                logger.info(f"sign_in_failed: email={email} reason=account_disabled")
                raise AuthError(AuthErrorReason.account_disabled)
            row.last_sign_in_at = datetime.utcnow()
            return Identity.model_validate(row)

    async def sign_up(self, email: str, password: str, name: str) -> SignUpResult:
        email = email.strip().lower()
        return await asyncio.to_thread(self._register, email, password, name)

    def _register(self, email: str, password: str, name: str) -> SignUpResult:
        with session_scope(self.session_factory) as session:
            row = self._insert_identity(session, email, password, name, confirmed=False)
            token = issue_confirmation_token(row.id, row.email)
            user_id = row.id
        logger.info(f"sign_up: user_id={user_id} requires_confirmation=True")
        return SignUpResult(requires_confirmation=True, confirmation_token=token)

    async def confirm_email(self, token: str) -> Identity:
        data = read_confirmation_token(token)
        if not data:
            raise AuthError(AuthErrorReason.invalid_token)
        identity = await asyncio.to_thread(self._confirm, data)
        logger.info(f"email_confirmed: user_id={identity.id}")
        return identity

    def _confirm(self, data: dict) -> Identity:
        with session_scope(self.session_factory) as session:
            row = session.get(AuthIdentity, data.get("sub"))
            if row is None or row.email != data.get("email"):
                raise AuthError(AuthErrorReason.invalid_token)
            if row.email_confirmed_at is None:
                row.email_confirmed_at = datetime.utcnow()
            return Identity.model_validate(row)

    async def sign_out(self) -> None:
        user_id = self._identity.id if self._identity else None
        self._identity = None
        self.storage.pop(self.token_key, None)
        logger.info(f"sign_out: user_id={user_id}")
        self._emit(AuthEvent.signed_out, None)

    async def get_current_identity(self) -> Optional[Identity]:
        if self._identity is not None:
            return self._identity
        token = self.storage.get(self.token_key)
        if not token:
            return None
        user_id = read_access_token(token, self.settings.access_token_ttl_secs)
        if user_id is not None:
            self._identity = await asyncio.to_thread(self._load_identity, user_id)
        if self._identity is None:
            self.storage.pop(self.token_key, None)
        return self._identity

    def _load_identity(self, user_id: str) -> Optional[Identity]:
        with session_scope(self.session_factory) as session:
            row = session.get(AuthIdentity, user_id)
            profile = session.get(Profile, user_id)
            if row is None or (profile is not None and profile.status == UserStatus.inactive):
                return None
            return Identity.model_validate(row)

    async def refresh_session(self) -> Optional[Identity]:
        identity = await self.get_current_identity()
        if identity is None:
            return None
        self._start_session(identity, AuthEvent.token_refreshed)
        return identity

    async def create_user(
        self, email: str, password: str, name: str, role: Role
    ) -> Identity:
        email = email.strip().lower()
        identity = await asyncio.to_thread(self._create_confirmed, email, password, name)
        logger.info(f"user_created: user_id={identity.id} requested_role={role.value}")
        return identity

    def _create_confirmed(self, email: str, password: str, name: str) -> Identity:
        with session_scope(self.session_factory) as session:
            self._require_admin(session)
            row = self._insert_identity(session, email, password, name, confirmed=True)
            return Identity.model_validate(row)

    async def get_profile(self, user_id: str) -> Optional[ProfileOut]:
        return await asyncio.to_thread(self._get_profile, user_id)

    def _get_profile(self, user_id: str) -> Optional[ProfileOut]:
        with session_scope(self.session_factory) as session:
            row = session.get(Profile, user_id)
            return ProfileOut.model_validate(row) if row else None

    async def insert_profile(self, profile: ProfileOut) -> ProfileOut:
        return await asyncio.to_thread(self._insert_profile, profile)

    def _insert_profile(self, profile: ProfileOut) -> ProfileOut:
        with session_scope(self.session_factory) as session:
            if self._identity is None or self._identity.id != profile.id:
                self._require_admin(session)
            if session.get(Profile, profile.id) is not None:
                raise DataError.constraint("Profile already exists")
            row = Profile(
                id=profile.id,
                name=profile.name,
                email=profile.email,
                role=profile.role,
                status=profile.status,
            )
            session.add(row)
            session.flush()
            return ProfileOut.model_validate(row)

    async def update_profile(self, user_id: str, fields: dict[str, object]) -> ProfileOut:
        unknown = set(fields) - PROFILE_FIELDS - {"updated_at"}
        if unknown:
            raise ValueError(f"Unknown profile fields: {', '.join(sorted(unknown))}")
        return await asyncio.to_thread(self._update_profile, user_id, fields)

    def _update_profile(self, user_id: str, fields: dict[str, object]) -> ProfileOut:
        with session_scope(self.session_factory) as session:
            actor = self._actor(session)
            privileged = "role" in fields or "status" in fields
            if actor.role != Role.admin and (actor.id != user_id or privileged):
                raise DataError.permission_denied()
            row = session.get(Profile, user_id)
            if row is None:
                raise DataError.not_found("Profile")
            if "name" in fields:
                row.name = str(fields["name"]).strip()
            if "role" in fields:
                row.role = Role(fields["role"])
            if "status" in fields:
                row.status = UserStatus(fields["status"])
            updated_at = fields.get("updated_at")
            if not isinstance(updated_at, datetime):
                updated_at = datetime.utcnow()
            row.updated_at = updated_at
            session.flush()
            return ProfileOut.model_validate(row)

    async def update_password(self, current_password: str, new_password: str) -> None:
        if self._identity is None:
            raise AuthError(AuthErrorReason.invalid_credentials)
        identity = await asyncio.to_thread(
            self._replace_password, self._identity.id, current_password, new_password
        )
        logger.info(f"password_changed: user_id={identity.id}")
        self._identity = identity
        self._emit(AuthEvent.user_updated, identity)

    def _replace_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> Identity:
        with session_scope(self.session_factory) as session:
            row = session.get(AuthIdentity, user_id)
            if row is None or not verify_password(current_password, row.password_hash):
                raise AuthError(AuthErrorReason.invalid_credentials)
            row.password_hash = hash_password(new_password)
            return Identity.model_validate(row)

    async def deactivate_user(self, user_id: str) -> None:
        await asyncio.to_thread(self._deactivate, user_id)
        logger.info(f"user_deactivated: user_id={user_id}")

    def _deactivate(self, user_id: str) -> None:
        with session_scope(self.session_factory) as session:
            self._require_admin(session)
            row = session.get(Profile, user_id)
            if row is None:
                raise DataError.not_found("Profile")
            row.status = UserStatus.inactive
            row.updated_at = datetime.utcnow()

    async def list_profiles(self, *, exclude_inactive: bool = True) -> list[ProfileOut]:
        return await asyncio.to_thread(self._list_profiles, exclude_inactive)

    def _list_profiles(self, exclude_inactive: bool) -> list[ProfileOut]:
        with session_scope(self.session_factory) as session:
            self._actor(session)
            stmt = select(Profile).order_by(Profile.created_at.desc(), Profile.name)
            if exclude_inactive:
                stmt = stmt.where(Profile.status == UserStatus.active)
            return [ProfileOut.model_validate(row) for row in session.scalars(stmt)]
