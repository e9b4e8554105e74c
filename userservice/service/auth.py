from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from userservice.config import Settings
from userservice.logging import get_logger, hash_identifier
from userservice.service import lockout
from userservice.service.ephemeral import (
    EphemeralTokenStore,
    TokenKind,
    TokenNotFoundOrExpired,
)
from userservice.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    AlreadyExistsError,
    AuthenticationError,
    BadRequestError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    NotFoundError,
    RefreshTokenInvalidError,
)
from userservice.service.refresh_tokens import RefreshTokenStore, new_refresh_token_value
from userservice.service.tokens import TokenCodec, TokenError
from userservice.storage.errors import ConstraintViolation
from userservice.storage.models import Role, User, UserStatus, UserSummary
from userservice.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.USER,
        status: UserStatus = UserStatus.ACTIVE,
        email_verified: bool = False,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def email_exists(self, email: str) -> bool: ...

    def username_exists(self, username: str) -> bool: ...

    def save_user(self, user: User) -> User: ...

    def update_user_locked(
        self, user_id: int, mutate: Callable[[User], User]
    ) -> Optional[User]: ...

    def update_password(self, user_id: int, password_hash: str) -> Optional[User]: ...

    def mark_email_verified(self, user_id: int) -> Optional[User]: ...

    def delete_user(self, user_id: int) -> bool: ...


class AuthStore(CredentialStore, RefreshTokenStore, Protocol):
    """Everything ``AuthService`` needs from a storage backend."""


class Notifier(Protocol):
    def notify_password_changed(self, email: str, username: str) -> bool: ...

    def notify_verification(self, email: str, username: str, token: str) -> bool: ...

    def notify_password_reset(self, email: str, username: str, token: str) -> bool: ...


@dataclass
class AuthContext:
    email: str
    roles: tuple[str, ...]
    expires_at: datetime

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN.value in self.roles


@dataclass
class AuthBundle:
    access_token: str
    refresh_token: str
    expires_in: int
    user: UserSummary
    token_type: str = "Bearer"


class AuthService:
    """Registration, password login with lockout, and token lifecycle.

    Access tokens are stateless HS256 JWTs; refresh tokens are opaque values
    kept in the store and rotated on every login; verification and reset
    tokens are single-use entries in the ephemeral store.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache | SyncRedisCache],
        settings: Settings,
        *,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.notifier = notifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.codec = TokenCodec(
            settings.jwt_secret, issuer=settings.jwt_issuer, clock=self._clock
        )
        self.ephemeral = EphemeralTokenStore(cache, clock=self._clock)
        self.lockout_policy = lockout.LockoutPolicy.from_settings(settings)
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)
        self.verification_ttl = timedelta(hours=settings.verification_token_ttl_hours)
        self.reset_ttl = timedelta(minutes=settings.reset_token_ttl_minutes)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _normalize_email(email: str) -> str:
        return (email or "").strip().lower()

    # passwords
    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, password_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _burn_password_check(self, password: str) -> None:
        # Unknown emails still pay for one argon2 verify so timing does not reveal them
        if self._dummy_hash is None:
            self._dummy_hash = self._hash_password("not-a-real-password")
        self._verify_password(self._dummy_hash, password)

    def _maybe_rehash(self, user: User, password: str) -> None:
        try:
            stale = self._pwd_hasher.check_needs_rehash(user.password_hash)
        except InvalidHash:
            return
        if stale:
            self.store.update_password(user.id, self._hash_password(password))
            self.logger.info("password_rehashed", user_id=user.id)

    # tokens
    def _issue_access_token(self, user: User) -> str:
        return self.codec.issue(user.email, [Role(user.role).value], self.access_ttl)

    def _bundle(self, user: User, refresh_token: str) -> AuthBundle:
        return AuthBundle(
            access_token=self._issue_access_token(user),
            refresh_token=refresh_token,
            expires_in=int(self.access_ttl.total_seconds()),
            user=UserSummary.from_user(user),
        )

    def _rotate_refresh_token(self, user: User) -> str:
        token = new_refresh_token_value()
        self.store.rotate_refresh_token(user.id, token, self._now() + self.refresh_ttl)
        return token

    async def _notify(self, method: str, *args) -> None:
        """Call the notifier off the event loop; delivery failures are only logged."""
        if self.notifier is None:
            return
        try:
            sent = await asyncio.to_thread(getattr(self.notifier, method), *args)
        except Exception as exc:
            self.logger.warning(
                "notification_failed",
                notification=method,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if sent is False:
            self.logger.warning("notification_not_delivered", notification=method)

    def _locked_error(self, user: User, now: datetime) -> AccountLockedError:
        remaining = lockout.lock_remaining(user, now)
        return AccountLockedError(
            user.account_locked_until,
            retry_after_seconds=max(1, int(remaining.total_seconds())),
        )

    # registration & login
    async def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> AuthBundle:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        email = self._normalize_email(email)
        username = (username or "").strip()
        if self.store.email_exists(email):
            raise AlreadyExistsError("Email already registered", detail={"field": "email"})
        if self.store.username_exists(username):
            raise AlreadyExistsError("Username already taken", detail={"field": "username"})
        try:
            user = self.store.create_user(
                username,
                email,
                self._hash_password(password),
                first_name=first_name,
                last_name=last_name,
                phone=phone,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration for the same identity
            field_name = exc.field or "email"
            raise AlreadyExistsError(
                f"{field_name.capitalize()} already registered", detail={"field": field_name}
            ) from exc
        refresh_token = new_refresh_token_value()
        self.store.save_refresh_token(user.id, refresh_token, self._now() + self.refresh_ttl)
        self.logger.info("user_registered", user_id=user.id)
        await self._send_verification(user)
        return self._bundle(user, refresh_token)

    async def login(self, email: str, password: str) -> AuthBundle:
        email = self._normalize_email(email)
        now = self._now()
        user = self.store.get_user_by_email(email)
        if user is None:
            self._burn_password_check(password)
            self.logger.warning(
                "login_failed", reason="unknown_user", email_hash=hash_identifier(email)
            )
            raise InvalidCredentialsError()

        if lockout.is_locked(user, now):
            self.logger.warning(
                "login_rejected_locked",
                user_id=user.id,
                locked_until=user.account_locked_until.isoformat(),
            )
            raise self._locked_error(user, now)

        if not self._verify_password(user.password_hash, password):
            updated = self.store.update_user_locked(
                user.id, lockout.record_failure(self.lockout_policy, now)
            )
            if updated is None:
                raise InvalidCredentialsError()
            if lockout.is_locked(updated, now):
                self.logger.warning(
                    "account_locked",
                    user_id=user.id,
                    failed_attempts=updated.failed_login_attempts,
                    locked_until=updated.account_locked_until.isoformat(),
                )
                raise self._locked_error(updated, now)
            self.logger.warning(
                "login_failed",
                reason="bad_password",
                user_id=user.id,
                failed_attempts=updated.failed_login_attempts,
            )
            raise InvalidCredentialsError()

        if not user.is_active:
            self.logger.warning(
                "login_rejected_inactive", user_id=user.id, status=UserStatus(user.status).value
            )
            raise AccountDisabledError("Account is not active")

        def _mark_success(current: User) -> User:
            # A concurrent failure may have locked the account since the check above
            if lockout.is_locked(current, now):
                return current
            return replace(lockout.on_success(current), last_login_at=now)

        user = self.store.update_user_locked(user.id, _mark_success)
        if user is None:
            raise InvalidCredentialsError()
        if lockout.is_locked(user, now):
            raise self._locked_error(user, now)
        self._maybe_rehash(user, password)
        refresh_token = self._rotate_refresh_token(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return self._bundle(user, refresh_token)

    async def refresh(self, refresh_token: str) -> AuthBundle:
        """Issue a new access token; the refresh token itself is returned unchanged."""
        record = self.store.find_refresh_token(refresh_token) if refresh_token else None
        if record is None or not record.is_usable(self._now()):
            self.logger.warning("refresh_rejected", found=record is not None)
            raise RefreshTokenInvalidError()
        user = self.store.get_user(record.user_id)
        if user is None or not user.is_active:
            self.logger.warning("refresh_rejected_user", user_id=record.user_id)
            raise RefreshTokenInvalidError()
        return self._bundle(user, record.token)

    async def logout(self, email: str) -> int:
        email = self._normalize_email(email)
        user = self.store.get_user_by_email(email)
        if user is None:
            raise NotFoundError("User not found")
        revoked = self.store.revoke_all_refresh_tokens(user.id)
        self.logger.info("logout", user_id=user.id, revoked=revoked)
        return revoked

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    def authenticate(
        self, authorization: Optional[str], *, required_role: Optional[Role] = None
    ) -> AuthContext:
        """Validate a Bearer access token; never touches storage."""
        token = self._extract_bearer(authorization)
        if token is None:
            raise AuthenticationError("Missing bearer token")
        try:
            claims = self.codec.verify(token)
        except TokenError as exc:
            self.logger.info("access_token_rejected", reason=type(exc).__name__)
            raise InvalidOrExpiredTokenError() from exc
        if claims.token_type != "access":
            raise InvalidOrExpiredTokenError()
        ctx = AuthContext(email=claims.subject, roles=claims.roles, expires_at=claims.expires_at)
        if required_role is not None:
            allowed = Role(required_role).value in ctx.roles or ctx.is_admin
            if not allowed:
                raise ForbiddenError("Insufficient role")
        return ctx

    def get_user(self, email: str) -> User:
        user = self.store.get_user_by_email(self._normalize_email(email))
        if user is None:
            raise NotFoundError("User not found")
        return user

    # email verification
    async def _send_verification(self, user: User) -> str:
        token = await self.ephemeral.issue(
            TokenKind.VERIFICATION, user.email, self.verification_ttl
        )
        await self._notify("notify_verification", user.email, user.username, token)
        self.logger.info("email_verification_requested", user_id=user.id)
        return token

    async def request_email_verification(self, email: str) -> Optional[str]:
        """Issue a verification token, or do nothing if the email is already verified."""
        self.ephemeral.maybe_cleanup()
        user = self.get_user(email)
        if user.email_verified:
            return None
        return await self._send_verification(user)

    async def resend_verification(self, email: str) -> str:
        self.ephemeral.maybe_cleanup()
        user = self.get_user(email)
        if user.email_verified:
            raise BadRequestError("Email already verified")
        return await self._send_verification(user)

    async def verify_email(self, token: str) -> User:
        try:
            email = await self.ephemeral.consume(TokenKind.VERIFICATION, token)
        except TokenNotFoundOrExpired as exc:
            self.logger.warning("email_verification_invalid_token")
            raise InvalidOrExpiredTokenError() from exc
        user = self.store.get_user_by_email(email)
        if user is None:
            self.logger.warning("email_verification_missing_user", email_hash=hash_identifier(email))
            raise InvalidOrExpiredTokenError()
        if not user.email_verified:
            user = self.store.mark_email_verified(user.id) or user
            self.logger.info("email_verified", user_id=user.id)
        return user

    # password reset
    async def request_password_reset(self, email: str) -> Optional[str]:
        """Send a reset link; unknown emails are ignored so callers cannot probe accounts."""
        self.ephemeral.maybe_cleanup()
        email = self._normalize_email(email)
        user = self.store.get_user_by_email(email)
        if user is None:
            self.logger.info("password_reset_unknown_email", email_hash=hash_identifier(email))
            return None
        token = await self.ephemeral.issue(TokenKind.PASSWORD_RESET, user.email, self.reset_ttl)
        await self._notify("notify_password_reset", user.email, user.username, token)
        self.logger.info("password_reset_requested", user_id=user.id)
        return token

    async def verify_reset_token(self, token: str) -> str:
        try:
            return await self.ephemeral.peek(TokenKind.PASSWORD_RESET, token)
        except TokenNotFoundOrExpired as exc:
            raise InvalidOrExpiredTokenError() from exc

    async def reset_password(self, token: str, new_password: str) -> None:
        """Set a new password from a reset token.

        The token is validated with ``peek`` and only invalidated once the new
        hash is stored, so a storage failure leaves it usable for a retry. Two
        concurrent resets with the same token can therefore both succeed; the
        last write wins.
        """
        email = await self.verify_reset_token(token)
        user = self.store.get_user_by_email(email)
        if user is None:
            await self.ephemeral.invalidate(TokenKind.PASSWORD_RESET, token)
            raise InvalidOrExpiredTokenError()
        self.store.update_password(user.id, self._hash_password(new_password))
        await self.ephemeral.invalidate(TokenKind.PASSWORD_RESET, token)
        revoked = self.store.revoke_all_refresh_tokens(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, revoked=revoked)
        await self._notify("notify_password_changed", user.email, user.username)

    async def change_password(
        self, email: str, current_password: str, new_password: str
    ) -> None:
        user = self.get_user(email)
        if not self._verify_password(user.password_hash, current_password):
            self.logger.warning("password_change_rejected", user_id=user.id)
            raise InvalidCredentialsError("Current password is incorrect")
        self.store.update_password(user.id, self._hash_password(new_password))
        revoked = self.store.revoke_all_refresh_tokens(user.id)
        self.logger.info("password_changed", user_id=user.id, revoked=revoked)
        await self._notify("notify_password_changed", user.email, user.username)

    # admin / maintenance
    async def create_admin(self, username: str, email: str, password: str) -> User:
        """Create an ADMIN account, or promote and re-password an existing one."""
        email = self._normalize_email(email)
        existing = self.store.get_user_by_email(email)
        password_hash = self._hash_password(password)
        if existing is not None:
            # Lockout fields are taken from the row as locked, not from ``existing``
            user = self.store.update_user_locked(
                existing.id,
                lambda current: replace(
                    current,
                    role=Role.ADMIN,
                    status=UserStatus.ACTIVE,
                    password_hash=password_hash,
                    email_verified=True,
                ),
            )
            if user is None:
                raise NotFoundError("User not found")
            self.logger.info("admin_promoted", user_id=user.id)
            return user
        try:
            user = self.store.create_user(
                username, email, password_hash, role=Role.ADMIN, email_verified=True
            )
        except ConstraintViolation as exc:
            raise AlreadyExistsError(exc.message, detail=exc.detail) from exc
        self.logger.info("admin_created", user_id=user.id)
        return user

    def sweep_refresh_tokens(self) -> int:
        return self.store.delete_expired_and_revoked_refresh_tokens(self._now())
