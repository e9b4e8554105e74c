"""Unit tests for the authentication orchestrator.

Covers:
- Registration and duplicate detection
- Password login with brute-force lockout
- Refresh token rotation, refresh, and logout
- Stateless access token validation
- Email verification and password reset tokens
- Password change
"""

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from userservice.config import Settings
from userservice.service.auth import AuthService
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
from userservice.storage.memory import MemoryStore
from userservice.storage.models import Role, UserStatus

PASSWORD = "CorrectHorse1!"


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        max_login_attempts=5,
        lockout_duration_minutes=15,
        verification_token_ttl_hours=24,
        reset_token_ttl_minutes=60,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def auth(memory_store, settings, notifier, clock):
    return AuthService(memory_store, None, settings, notifier=notifier, clock=clock)


@pytest.fixture
def alice(auth):
    return asyncio.run(auth.register("alice", "a@x.com", PASSWORD)).user


class TestRegistration:
    async def test_register_returns_bundle(self, auth, memory_store):
        bundle = await auth.register("alice", "A@X.com", PASSWORD, first_name="Alice")

        assert bundle.token_type == "Bearer"
        assert bundle.expires_in == 15 * 60
        assert bundle.user.email == "a@x.com"
        assert bundle.user.role == "USER"
        assert bundle.user.first_name == "Alice"
        assert not bundle.user.email_verified
        assert auth.authenticate(f"Bearer {bundle.access_token}").email == "a@x.com"
        stored = memory_store.find_refresh_token(bundle.refresh_token)
        assert stored is not None and stored.user_id == bundle.user.id

    async def test_password_is_hashed_with_argon2id(self, auth, memory_store):
        await auth.register("alice", "a@x.com", PASSWORD)
        stored = memory_store.get_user_by_email("a@x.com")
        assert stored.password_hash.startswith("$argon2id$")
        assert PASSWORD not in stored.password_hash

    async def test_minimal_register_then_duplicate(self, auth):
        await auth.register("a", "a@x.com", "a")
        with pytest.raises(AlreadyExistsError):
            await auth.register("b", "a@x.com", "a")

    async def test_duplicate_email_rejected(self, auth):
        await auth.register("alice", "a@x.com", PASSWORD)
        with pytest.raises(AlreadyExistsError) as excinfo:
            await auth.register("alice2", "a@x.com", PASSWORD)
        assert excinfo.value.detail == {"field": "email"}

    async def test_duplicate_username_rejected(self, auth):
        await auth.register("alice", "a@x.com", PASSWORD)
        with pytest.raises(AlreadyExistsError) as excinfo:
            await auth.register("alice", "b@x.com", PASSWORD)
        assert excinfo.value.detail == {"field": "username"}

    async def test_register_sends_verification(self, auth, notifier):
        await auth.register("alice", "a@x.com", PASSWORD)
        kind, email, token = notifier.last("verification")
        assert email == "a@x.com"
        assert token

    async def test_signup_disabled(self, memory_store, settings, clock):
        closed = AuthService(
            memory_store, None, settings.model_copy(update={"allow_signup": False}), clock=clock
        )
        with pytest.raises(ForbiddenError):
            await closed.register("alice", "a@x.com", PASSWORD)

    async def test_notifier_failure_does_not_fail_registration(self, memory_store, settings, clock):
        class BrokenNotifier:
            def notify_verification(self, *args):
                raise OSError("smtp down")

        service = AuthService(memory_store, None, settings, notifier=BrokenNotifier(), clock=clock)
        bundle = await service.register("alice", "a@x.com", PASSWORD)
        assert bundle.user.id


class TestLogin:
    async def test_login_success(self, auth, alice, clock):
        bundle = await auth.login("a@x.com", PASSWORD)

        assert bundle.user.id == alice.id
        assert bundle.user.last_login_at == clock()

    async def test_login_is_case_insensitive_on_email(self, auth, alice):
        bundle = await auth.login("  A@X.COM ", PASSWORD)
        assert bundle.user.id == alice.id

    async def test_unknown_email_and_wrong_password_look_the_same(self, auth, alice):
        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth.login("nobody@x.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await auth.login("a@x.com", "wrong-password")
        assert unknown.value.message == wrong.value.message
        assert unknown.value.status_code == wrong.value.status_code == 401

    async def test_five_failures_lock_the_account(self, auth, alice, memory_store):
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await auth.login("a@x.com", "wrong-password")
        with pytest.raises(AccountLockedError) as locked:
            await auth.login("a@x.com", "wrong-password")
        assert locked.value.error_code == "account_locked"
        assert locked.value.retry_after_seconds == 15 * 60

        # Correct password is refused while locked, and the counter is untouched
        with pytest.raises(AccountLockedError):
            await auth.login("a@x.com", PASSWORD)
        assert memory_store.get_user(alice.id).failed_login_attempts == 5

    async def test_lock_expires_after_duration(self, auth, alice, clock, memory_store):
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await auth.login("a@x.com", "wrong-password")
        with pytest.raises(AccountLockedError):
            await auth.login("a@x.com", "wrong-password")

        clock.advance(minutes=14, seconds=59)
        with pytest.raises(AccountLockedError):
            await auth.login("a@x.com", PASSWORD)

        clock.advance(seconds=1)
        await auth.login("a@x.com", PASSWORD)
        user = memory_store.get_user(alice.id)
        assert user.failed_login_attempts == 0
        assert user.account_locked_until is None

    async def test_failure_after_lock_expiry_relocks(self, auth, alice, clock):
        for _ in range(5):
            with pytest.raises((InvalidCredentialsError, AccountLockedError)):
                await auth.login("a@x.com", "wrong-password")
        clock.advance(minutes=16)

        with pytest.raises(AccountLockedError):
            await auth.login("a@x.com", "wrong-password")

    async def test_success_resets_counter(self, auth, alice, memory_store):
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await auth.login("a@x.com", "wrong-password")
        await auth.login("a@x.com", PASSWORD)
        assert memory_store.get_user(alice.id).failed_login_attempts == 0

    @pytest.mark.parametrize("status", [UserStatus.INACTIVE, UserStatus.SUSPENDED, UserStatus.DELETED])
    async def test_inactive_account_rejected(self, auth, alice, memory_store, status):
        memory_store.save_user(replace(memory_store.get_user(alice.id), status=status))
        with pytest.raises(AccountDisabledError):
            await auth.login("a@x.com", PASSWORD)

    async def test_login_leaves_exactly_one_refresh_token(self, auth, alice, memory_store):
        first = await auth.login("a@x.com", PASSWORD)
        second = await auth.login("a@x.com", PASSWORD)

        tokens = memory_store.list_refresh_tokens(alice.id)
        assert [t.token for t in tokens] == [second.refresh_token]
        with pytest.raises(RefreshTokenInvalidError):
            await auth.refresh(first.refresh_token)


class TestRefreshAndLogout:
    async def test_refresh_issues_new_access_token(self, auth, alice, clock):
        bundle = await auth.login("a@x.com", PASSWORD)
        clock.advance(minutes=20)

        with pytest.raises(InvalidOrExpiredTokenError):
            auth.authenticate(f"Bearer {bundle.access_token}")
        refreshed = await auth.refresh(bundle.refresh_token)

        assert refreshed.refresh_token == bundle.refresh_token
        assert auth.authenticate(f"Bearer {refreshed.access_token}").email == "a@x.com"

    async def test_expired_refresh_token_rejected(self, auth, alice, clock):
        bundle = await auth.login("a@x.com", PASSWORD)
        clock.advance(days=1)
        with pytest.raises(RefreshTokenInvalidError):
            await auth.refresh(bundle.refresh_token)

    async def test_unknown_refresh_token_rejected(self, auth):
        with pytest.raises(RefreshTokenInvalidError):
            await auth.refresh("not-a-token")
        with pytest.raises(RefreshTokenInvalidError):
            await auth.refresh("")

    async def test_refresh_rejected_for_suspended_user(self, auth, alice, memory_store):
        bundle = await auth.login("a@x.com", PASSWORD)
        memory_store.save_user(
            replace(memory_store.get_user(alice.id), status=UserStatus.SUSPENDED)
        )
        with pytest.raises(RefreshTokenInvalidError):
            await auth.refresh(bundle.refresh_token)

    async def test_logout_revokes_refresh_tokens(self, auth, alice):
        bundle = await auth.login("a@x.com", PASSWORD)

        assert await auth.logout("a@x.com") == 1
        with pytest.raises(RefreshTokenInvalidError):
            await auth.refresh(bundle.refresh_token)

    async def test_logout_unknown_user(self, auth):
        with pytest.raises(NotFoundError):
            await auth.logout("ghost@x.com")


class TestAuthenticate:
    async def test_missing_or_malformed_header(self, auth):
        with pytest.raises(AuthenticationError):
            auth.authenticate(None)
        with pytest.raises(AuthenticationError):
            auth.authenticate("Basic dXNlcjpwYXNz")
        with pytest.raises(InvalidOrExpiredTokenError):
            auth.authenticate("Bearer garbage")

    async def test_required_role(self, auth, alice, memory_store):
        bundle = await auth.login("a@x.com", PASSWORD)
        with pytest.raises(ForbiddenError):
            auth.authenticate(f"Bearer {bundle.access_token}", required_role=Role.ADMIN)

        admin = await auth.create_admin("root", "root@x.com", "Adm1n-Password!")
        admin_bundle = await auth.login(admin.email, "Adm1n-Password!")
        ctx = auth.authenticate(f"Bearer {admin_bundle.access_token}", required_role=Role.ADMIN)
        assert ctx.is_admin
        assert ctx.roles == ("ADMIN",)

    async def test_validation_does_not_touch_storage(self, auth, alice, memory_store):
        bundle = await auth.login("a@x.com", PASSWORD)
        memory_store.delete_user(alice.id)
        assert auth.authenticate(f"Bearer {bundle.access_token}").email == "a@x.com"


class TestEmailVerification:
    async def test_verify_marks_user_verified(self, auth, alice, notifier, memory_store):
        _, _, token = notifier.last("verification")

        user = await auth.verify_email(token)

        assert user.email_verified
        assert memory_store.get_user(alice.id).email_verified

    async def test_token_is_single_use(self, auth, alice, notifier):
        _, _, token = notifier.last("verification")
        await auth.verify_email(token)
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth.verify_email(token)

    async def test_verification_token_expires(self, auth, alice, notifier, clock):
        _, _, token = notifier.last("verification")
        clock.advance(hours=25)
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth.verify_email(token)

    async def test_resend_refused_once_verified(self, auth, alice, notifier):
        _, _, token = notifier.last("verification")
        await auth.verify_email(token)
        with pytest.raises(BadRequestError):
            await auth.resend_verification("a@x.com")
        assert await auth.request_email_verification("a@x.com") is None

    async def test_resend_issues_fresh_token(self, auth, alice, notifier):
        token = await auth.resend_verification("a@x.com")
        assert notifier.last("verification")[2] == token
        assert (await auth.verify_email(token)).email_verified

    async def test_resend_unknown_email(self, auth):
        with pytest.raises(NotFoundError):
            await auth.resend_verification("ghost@x.com")


class TestPasswordReset:
    async def test_reset_flow(self, auth, alice, notifier, memory_store):
        bundle = await auth.login("a@x.com", PASSWORD)
        token = await auth.request_password_reset("a@x.com")
        assert notifier.last("password_reset") == ("password_reset", "a@x.com", token)
        assert await auth.verify_reset_token(token) == "a@x.com"

        await auth.reset_password(token, "BrandNewPass9")

        with pytest.raises(RefreshTokenInvalidError):
            await auth.refresh(bundle.refresh_token)
        with pytest.raises(InvalidCredentialsError):
            await auth.login("a@x.com", PASSWORD)
        await auth.login("a@x.com", "BrandNewPass9")
        assert notifier.last("password_changed") is not None

    async def test_reset_token_single_use(self, auth, alice):
        token = await auth.request_password_reset("a@x.com")
        await auth.reset_password(token, "BrandNewPass9")
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth.reset_password(token, "AnotherPass9")

    async def test_reset_token_expires_after_ttl(self, auth, alice, clock):
        token = await auth.request_password_reset("a@x.com")
        clock.advance(minutes=61)
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth.reset_password(token, "BrandNewPass9")

    async def test_unknown_email_is_silent(self, auth, notifier):
        assert await auth.request_password_reset("ghost@x.com") is None
        assert notifier.last("password_reset") is None

    async def test_verification_token_cannot_reset_password(self, auth, alice, notifier):
        _, _, token = notifier.last("verification")
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth.reset_password(token, "BrandNewPass9")


class TestChangePassword:
    async def test_wrong_current_password(self, auth, alice):
        with pytest.raises(InvalidCredentialsError):
            await auth.change_password("a@x.com", "nope", "BrandNewPass9")

    async def test_change_revokes_refresh_tokens(self, auth, alice, notifier):
        bundle = await auth.login("a@x.com", PASSWORD)

        await auth.change_password("a@x.com", PASSWORD, "BrandNewPass9")

        with pytest.raises(RefreshTokenInvalidError):
            await auth.refresh(bundle.refresh_token)
        await auth.login("a@x.com", "BrandNewPass9")
        assert notifier.last("password_changed")[1] == "a@x.com"


class TestAdmin:
    async def test_create_admin_promotes_existing_user(self, auth, alice, memory_store):
        admin = await auth.create_admin("ignored", "a@x.com", "Adm1n-Password!")

        assert admin.id == alice.id
        assert admin.role == Role.ADMIN
        assert admin.email_verified
        await auth.login("a@x.com", "Adm1n-Password!")

    async def test_promotion_keeps_concurrent_lockout_state(
        self, auth, alice, clock, memory_store, monkeypatch
    ):
        stale = memory_store.get_user_by_email("a@x.com")
        for _ in range(5):
            with pytest.raises((InvalidCredentialsError, AccountLockedError)):
                await auth.login("a@x.com", "wrong-password")
        monkeypatch.setattr(memory_store, "get_user_by_email", lambda email: stale)

        admin = await auth.create_admin("ignored", "a@x.com", "Adm1n-Password!")

        assert admin.role == Role.ADMIN
        assert admin.failed_login_attempts == 5
        assert admin.account_locked_until == clock() + timedelta(minutes=15)

    async def test_sweep_refresh_tokens(self, auth, alice, clock, memory_store):
        await auth.login("a@x.com", PASSWORD)
        clock.advance(days=2)
        assert auth.sweep_refresh_tokens() == 1
        assert memory_store.list_refresh_tokens(alice.id) == []
