from __future__ import annotations

import contextlib
import hashlib
import secrets
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from pmoguard.config import Settings
from pmoguard.logging import get_logger, hash_identifier
from pmoguard.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from pmoguard.storage.errors import ConstraintViolation
from pmoguard.storage.models import GlobalRole, User
from pmoguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8

# Same message for unknown email, wrong password and deactivated account
INVALID_CREDENTIALS = "Invalid email or password"


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: GlobalRole | str = GlobalRole.USER,
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: GlobalRole | str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


class AuthService:
    """Credential checks and the password-reset flow.

    Login does the same amount of work whether or not the email exists: when
    there is no stored hash the password is verified against a dummy argon2
    hash computed once at construction.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(32))
        self._state_lock = threading.Lock()
        # token digest -> (user_id, expires_at); used when Redis is unavailable
        self._password_reset_tokens: dict[str, tuple[str, datetime]] = {}
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @contextlib.contextmanager
    def _with_state_lock(self):
        with self._state_lock:
            yield

    # -- users ------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        role: GlobalRole = GlobalRole.USER,
    ) -> User:
        self._check_password_policy(password)
        try:
            user = self.store.create_user(email, name, role=role)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.save_password(user.id, password)
        self.logger.info("user_created", user_id=user.id, role=user.role.value)
        return user

    def set_user_role(self, actor: User, user_id: str, role: GlobalRole) -> User:
        """Change a global role; granting or revoking SUPER_ADMIN needs a SUPER_ADMIN."""
        target = self.store.get_user(user_id)
        if target is None:
            raise NotFoundError("user not found")
        touches_super = GlobalRole.SUPER_ADMIN in (role, target.role)
        if touches_super and actor.role != GlobalRole.SUPER_ADMIN:
            raise ForbiddenError("only a super admin can change super admin roles")
        updated = self.store.update_user_role(user_id, role)
        self.logger.info(
            "user_role_updated", actor_id=actor.id, user_id=user_id, role=role.value
        )
        return updated

    # -- credentials ------------------------------------------------------

    def authenticate_credentials(self, email: str, password: str) -> User:
        """Return the user for valid credentials or raise AuthenticationError."""
        user = self.store.get_user_by_email(email) if email else None
        record = self.store.get_password_record(user.id) if user else None
        stored_hash = record[0] if record and record[1] == PASSWORD_ALGO else None
        verified = self._verify_hash(stored_hash or self._dummy_hash, password or "")
        if not (user and stored_hash and verified and user.is_active):
            self.logger.info(
                "login_failed",
                email_hash=hash_identifier(email),
                reason="credentials",
            )
            raise AuthenticationError(INVALID_CREDENTIALS)
        self.logger.info("login_succeeded", user_id=user.id)
        return user

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        return self._verify_hash(stored_hash, password)

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    @staticmethod
    def _check_password_policy(password: str) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )

    # -- password reset ---------------------------------------------------

    @staticmethod
    def _digest(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    async def initiate_password_reset(self, email: str) -> Optional[str]:
        """Create a single-use reset token for ``email``.

        Returns the raw token for delivery, or ``None`` when no active account
        matches. Callers must answer both cases identically.
        """
        token = secrets.token_urlsafe(32)
        digest = self._digest(token)
        user = self.store.get_user_by_email(email) if email else None
        if user is None or not user.is_active:
            self.logger.info("password_reset_unknown_email", email_hash=hash_identifier(email))
            return None
        ttl_seconds = self.settings.password_reset_token_ttl_minutes * 60
        if self.cache:
            await self.cache.store_reset_token(digest, user.id, ttl_seconds)
        else:
            with self._with_state_lock():
                self._purge_expired_reset_tokens()
                self._password_reset_tokens[digest] = (
                    user.id,
                    self._now() + timedelta(seconds=ttl_seconds),
                )
        self.logger.info("password_reset_requested", user_id=user.id)
        return token

    async def verify_reset_token(self, token: str) -> bool:
        if not token:
            return False
        digest = self._digest(token)
        if self.cache:
            return bool(await self.cache.peek_reset_token(digest))
        with self._with_state_lock():
            stored = self._password_reset_tokens.get(digest)
            return bool(stored and stored[1] > self._now())

    async def complete_password_reset(self, token: str, new_password: str) -> bool:
        self._check_password_policy(new_password)
        if not token:
            return False
        digest = self._digest(token)
        user_id: Optional[str] = None
        if self.cache:
            user_id = await self.cache.consume_reset_token(digest)
        else:
            with self._with_state_lock():
                stored = self._password_reset_tokens.pop(digest, None)
            if stored and stored[1] > self._now():
                user_id = stored[0]
        if not user_id:
            self.logger.warning("password_reset_invalid_token")
            return False
        user = self.store.get_user(user_id)
        if user is None or not user.is_active:
            self.logger.warning("password_reset_user_missing", user_id=user_id)
            return False
        self.save_password(user.id, new_password)
        self.logger.info("password_reset_completed", user_id=user.id)
        return True

    def _purge_expired_reset_tokens(self) -> None:
        now = self._now()
        expired = [d for d, (_, expires_at) in self._password_reset_tokens.items() if expires_at <= now]
        for digest in expired:
            self._password_reset_tokens.pop(digest, None)
