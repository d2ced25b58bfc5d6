"""
Password identity provider.

IdentityService plays the hosted authentication service: it owns the
``credentials`` collection and answers with provider error codes
("auth/invalid-credential", "auth/too-many-requests", ...). AuthClient is one
client's connection to it: it remembers who is signed in and tells its
listeners whenever that changes.
"""

import hashlib
import hmac
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, EmailStr, TypeAdapter, ValidationError

from database import DocumentStore, new_id
from errors import ProviderError

logger = logging.getLogger(__name__)

CREDENTIALS = "credentials"
PASSWORD_SALT = os.getenv("PASSWORD_SALT", "assetmgr_salt_v1")
MIN_PASSWORD_LENGTH = 6
MAX_FAILED_LOGINS = int(os.getenv("MAX_FAILED_LOGINS", 5))
LOCKOUT_WINDOW = timedelta(minutes=int(os.getenv("LOCKOUT_MINUTES", 15)))

_email_adapter = TypeAdapter(EmailStr)


class Identity(BaseModel):
    uid: str
    email: EmailStr


IdentityListener = Callable[[Optional[Identity]], Awaitable[None]]


def hash_password(password: str, salt: str = PASSWORD_SALT) -> str:
    return hashlib.sha256((salt + password).encode()).hexdigest()


def normalize_email(email: str) -> str:
    try:
        return _email_adapter.validate_python(email.strip()).lower()
    except ValidationError:
        raise ProviderError("auth/invalid-email")


class IdentityService:
    def __init__(self, store: DocumentStore, salt: str = PASSWORD_SALT,
                 max_failed_logins: int = MAX_FAILED_LOGINS, lockout_window: timedelta = LOCKOUT_WINDOW):
        self.store = store
        self.salt = salt
        self.max_failed_logins = max_failed_logins
        self.lockout_window = lockout_window
        self._failures: Dict[str, List[datetime]] = {}

    def _recent_failures(self, email: str) -> List[datetime]:
        cutoff = datetime.now(timezone.utc) - self.lockout_window
        for key in list(self._failures):
            recent = [t for t in self._failures[key] if t > cutoff]
            if recent:
                self._failures[key] = recent
            else:
                del self._failures[key]
        return self._failures.get(email, [])

    async def _find(self, email: str) -> Optional[dict]:
        matches = await self.store.find(CREDENTIALS, {"email": email})
        return matches[0] if matches else None

    async def verify_password(self, email: str, password: str) -> Identity:
        email = normalize_email(email)
        if len(self._recent_failures(email)) >= self.max_failed_logins:
            raise ProviderError("auth/too-many-requests")

        record = await self._find(email)
        if not record or not hmac.compare_digest(record["password_hash"], hash_password(password, self.salt)):
            self._failures.setdefault(email, []).append(datetime.now(timezone.utc))
            logger.info("Failed sign-in for %s", email)
            raise ProviderError("auth/invalid-credential")

        self._failures.pop(email, None)
        return Identity(uid=record["id"], email=email)

    async def create_account(self, email: str, password: str) -> Identity:
        email = normalize_email(email)
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ProviderError("auth/weak-password")
        if await self._find(email):
            raise ProviderError("auth/email-already-in-use")

        uid = new_id()
        await self.store.set(CREDENTIALS, uid, {
            "email": email,
            "password_hash": hash_password(password, self.salt),
            "created_at": datetime.now(timezone.utc).isoformat(),
        })
        logger.info("Created account %s for %s", uid, email)
        return Identity(uid=uid, email=email)


class AuthClient:
    def __init__(self, service: IdentityService):
        self.service = service
        self.current_identity: Optional[Identity] = None
        self._listeners: List[IdentityListener] = []

    async def on_identity_changed(self, listener: IdentityListener) -> Callable[[], None]:
        """Register ``listener`` and report the current identity to it right away."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        await listener(self.current_identity)
        return unsubscribe

    async def _set_identity(self, identity: Optional[Identity]) -> None:
        before = self.current_identity.uid if self.current_identity else None
        after = identity.uid if identity else None
        self.current_identity = identity
        if before == after:
            return
        for listener in list(self._listeners):
            await listener(identity)

    async def sign_in_with_password(self, email: str, password: str) -> Identity:
        identity = await self.service.verify_password(email, password)
        await self._set_identity(identity)
        return identity

    async def create_user_with_password(self, email: str, password: str) -> Identity:
        # a new account is signed in straight away
        identity = await self.service.create_account(email, password)
        await self._set_identity(identity)
        return identity

    async def sign_out(self) -> None:
        await self._set_identity(None)
