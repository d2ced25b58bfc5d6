"""
Session reconciliation.

SessionManager follows one AuthClient's identity stream and pairs every
identity with its employee profile. Only an active profile yields an ACTIVE
session; inactive, missing or unreadable profiles get the identity signed
out again and the session rests in UNAUTHENTICATED with ``error`` telling
why.

Two tasks write the single state cell: the identity listener and the
explicit operations (signup, logout, update_user). Each profile lookup is
tagged with the uid it was started for and dropped if a newer identity has
been observed by the time it resolves.
"""

import logging
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel

from data import DataAccess
from errors import AuthError, AuthErrorCode, NotSignedIn, ProviderError, map_provider_code
from identity import AuthClient, Identity
from schemas import Employee, EmployeeCreate, ProfileUpdate
from storage import BlobStorage

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    LOADING = "loading"
    UNAUTHENTICATED = "unauthenticated"
    ACTIVE = "active"
    PENDING = "pending"  # signed up, waiting for an administrator


class SessionState(BaseModel):
    status: SessionStatus = SessionStatus.LOADING
    identity: Optional[Identity] = None
    profile: Optional[Employee] = None
    error: Optional[AuthErrorCode] = None

    @property
    def is_loading(self) -> bool:
        return self.status == SessionStatus.LOADING

    @property
    def is_allowed(self) -> bool:
        return self.profile is not None and self.profile.active and self.status == SessionStatus.ACTIVE

    @property
    def is_admin(self) -> bool:
        return self.is_allowed and self.profile.is_admin


class SessionManager:
    def __init__(self, auth: AuthClient, data: DataAccess, storage: Optional[BlobStorage] = None):
        self.auth = auth
        self.data = data
        self.storage = storage
        self.state = SessionState()
        self._latest_uid: Optional[str] = None
        self._signing_up = False
        self._unsubscribe: Optional[Callable[[], None]] = None

    async def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = await self.auth.on_identity_changed(self._on_identity)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _set(self, status: SessionStatus, identity: Optional[Identity] = None,
             profile: Optional[Employee] = None, error: Optional[AuthErrorCode] = None) -> None:
        if status == SessionStatus.ACTIVE and not (profile and profile.active):
            raise ValueError("an active session needs an active profile")
        self.state = SessionState(status=status, identity=identity, profile=profile, error=error)

    def _holds(self, uid: str) -> bool:
        return (self.state.status in (SessionStatus.ACTIVE, SessionStatus.PENDING)
                and self.state.identity is not None and self.state.identity.uid == uid)

    # ----------------------------
    # Identity stream
    # ----------------------------
    async def _on_identity(self, identity: Optional[Identity]) -> None:
        if identity is None:
            self._latest_uid = None
            self._set(SessionStatus.UNAUTHENTICATED)
            return

        uid = identity.uid
        self._latest_uid = uid
        if self._signing_up or self._holds(uid):
            # signup writes the profile itself; the callback only confirms
            return
        await self._reconcile(identity)

    async def _reconcile(self, identity: Identity) -> None:
        uid = identity.uid
        self._set(SessionStatus.LOADING, identity=identity)
        try:
            profile = await self.data.load_employee(uid)
        except Exception:
            logger.exception("Error fetching profile for %s", uid)
            if self._latest_uid == uid:
                await self._reject(uid, AuthErrorCode.UNKNOWN)
            return

        if self._latest_uid != uid:
            logger.debug("Discarding stale profile lookup for %s", uid)
            return
        if profile is None:
            await self._reject(uid, AuthErrorCode.INVALID_CREDENTIALS)
        elif not profile.active:
            await self._reject(uid, AuthErrorCode.ACCOUNT_NOT_ACTIVE)
        else:
            self._set(SessionStatus.ACTIVE, identity=identity, profile=profile)

    async def _reject(self, uid: str, code: AuthErrorCode) -> None:
        logger.info("Rejecting session for %s: %s", uid, code.value)
        await self.auth.sign_out()
        # only record the reason if nobody signed in meanwhile
        if self._latest_uid is None:
            self._set(SessionStatus.UNAUTHENTICATED, error=code)

    # ----------------------------
    # Operations
    # ----------------------------
    async def login(self, email: str, password: str) -> Employee:
        try:
            identity = await self.auth.sign_in_with_password(email, password)
        except ProviderError as exc:
            raise AuthError(map_provider_code(exc.code))

        state = self.state
        if state.identity is not None and state.identity.uid == identity.uid:
            if state.is_allowed:
                return state.profile
            if state.status == SessionStatus.PENDING:
                # the identity did not change, so the listener never ran the check
                await self._reject(identity.uid, AuthErrorCode.ACCOUNT_NOT_ACTIVE)
                raise AuthError(AuthErrorCode.ACCOUNT_NOT_ACTIVE)
        raise AuthError(state.error or AuthErrorCode.UNKNOWN)

    async def signup(self, name: str, email: str, password: str) -> Employee:
        self._signing_up = True
        try:
            try:
                identity = await self.auth.create_user_with_password(email, password)
            except ProviderError as exc:
                raise AuthError(map_provider_code(exc.code))

            try:
                profile = await self.data.create_employee(
                    EmployeeCreate(name=name, email=identity.email), employee_id=identity.uid
                )
            except Exception:
                logger.exception("Could not write profile for new account %s", identity.uid)
                await self.auth.sign_out()
                raise
        finally:
            self._signing_up = False

        if self._latest_uid == identity.uid:
            self._set(SessionStatus.PENDING, identity=identity, profile=profile)
        return profile

    async def logout(self) -> None:
        self._latest_uid = None
        self._set(SessionStatus.UNAUTHENTICATED)
        await self.auth.sign_out()

    async def revalidate(self) -> SessionState:
        """Re-check the signed-in profile, e.g. after an administrator changed it."""
        identity = self.auth.current_identity
        if identity is None:
            self._set(SessionStatus.UNAUTHENTICATED)
        else:
            self._latest_uid = identity.uid
            await self._reconcile(identity)
        return self.state

    async def update_user(self, changes: ProfileUpdate, avatar: Optional[str] = None) -> Employee:
        if not self.state.is_allowed:
            raise NotSignedIn()
        identity, profile = self.state.identity, self.state.profile

        updates = changes.model_dump(exclude_unset=True, exclude_none=True)
        if avatar:
            if self.storage is None:
                raise RuntimeError("no blob storage configured for avatars")
            updates["avatar_url"] = await self.storage.upload_data_url(f"avatars/{profile.id}", avatar)

        await self.data.update_employee(profile.id, updates)
        if self._holds(identity.uid):
            profile = profile.model_copy(update=updates)
            self._set(SessionStatus.ACTIVE, identity=identity, profile=profile)
        return profile
