import pytest

from murmur.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InfrastructureError,
    NotFoundError,
    ValidationError,
)

PASSWORD = "CorrectHorse42!"


async def _signup(runtime, username="alice", password=PASSWORD):
    result = await runtime.auth.signup(
        name=username.title(),
        username=username,
        email=f"{username}@example.com",
        password=password,
    )
    return result.user


class TestSignup:
    @pytest.mark.asyncio
    async def test_signup_stores_digest_not_password(self, runtime, store, email):
        user = await _signup(runtime)
        digest, algo = store.get_password_record(user.id)
        assert algo == "argon2id"
        assert PASSWORD not in digest
        assert user.role == "user"
        assert not user.is_email_verified
        assert email.last("verify_email")["to"] == "alice@example.com"

    @pytest.mark.asyncio
    async def test_duplicate_email_and_username(self, runtime):
        await _signup(runtime)
        with pytest.raises(ConflictError) as by_username:
            await runtime.auth.signup(
                name="Other", username="alice", email="other@example.com", password=PASSWORD
            )
        assert by_username.value.status_code == 400
        assert by_username.value.detail == {"field": "username"}
        with pytest.raises(ConflictError) as by_email:
            await runtime.auth.signup(
                name="Other", username="other", email="alice@example.com", password=PASSWORD
            )
        assert by_email.value.detail == {"field": "email"}

    @pytest.mark.asyncio
    async def test_email_failure_keeps_account_without_pending_token(
        self, runtime, store, email
    ):
        email.fail = True
        result = await runtime.auth.signup(
            name="Alice", username="alice", email="alice@example.com", password=PASSWORD
        )
        assert result.verification_email_sent is False
        stored = store.get_user(result.user.id)
        assert stored.email_verification_hash is None
        assert stored.email_verification_expires is None

    @pytest.mark.asyncio
    async def test_request_email_verification(self, runtime, store, email):
        user = await _signup(runtime)
        await runtime.auth.request_email_verification(user)
        token = email.last("verify_email")["secret"]
        verified = await runtime.auth.verify_email(token)
        assert verified.is_email_verified
        with pytest.raises(ValidationError):
            await runtime.auth.request_email_verification(verified)

    @pytest.mark.asyncio
    async def test_request_email_verification_send_failure(self, runtime, email):
        user = await _signup(runtime)
        email.fail = True
        with pytest.raises(InfrastructureError):
            await runtime.auth.request_email_verification(user)


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_issues_session(self, runtime, cache):
        user = await _signup(runtime)
        result = await runtime.auth.login(email="alice@example.com", password=PASSWORD)
        assert not result.two_factor_required
        assert await cache.get_refresh_token(user.id) == result.tokens.refresh_token

    @pytest.mark.asyncio
    async def test_wrong_password_and_missing_user(self, runtime):
        await _signup(runtime)
        with pytest.raises(ValidationError):
            await runtime.auth.login(email="alice@example.com", password="wrong-password")
        with pytest.raises(NotFoundError):
            await runtime.auth.login(email="nobody@example.com", password=PASSWORD)

    @pytest.mark.asyncio
    async def test_two_factor_login(self, runtime, cache, email):
        user = await _signup(runtime)
        await runtime.auth.enable_two_factor(user.id)

        challenge = await runtime.auth.login(email="alice@example.com", password=PASSWORD)
        assert challenge.two_factor_required
        assert await cache.get_refresh_token(user.id) is None

        code = email.last("two_factor_code")["secret"]
        result = await runtime.auth.verify_two_factor(user_id=user.id, code=code)
        assert result.tokens is not None
        with pytest.raises(AuthenticationError):
            await runtime.auth.verify_two_factor(user_id=user.id, code=code)

    @pytest.mark.asyncio
    async def test_two_factor_send_failure_clears_code(self, runtime, store, email):
        user = await _signup(runtime)
        await runtime.auth.enable_two_factor(user.id)
        email.fail = True
        with pytest.raises(InfrastructureError):
            await runtime.auth.login(email="alice@example.com", password=PASSWORD)
        assert store.get_user(user.id).two_factor_code_hash is None

    @pytest.mark.asyncio
    async def test_repeated_wrong_codes_burn_the_pending_code(self, runtime, store, email, settings):
        user = await _signup(runtime)
        await runtime.auth.enable_two_factor(user.id)
        await runtime.auth.login(email="alice@example.com", password=PASSWORD)
        code = email.last("two_factor_code")["secret"]
        wrong = "100000" if code != "100000" else "100001"

        for _ in range(settings.two_factor_max_attempts):
            with pytest.raises(AuthenticationError):
                await runtime.auth.verify_two_factor(user_id=user.id, code=wrong)

        assert store.get_user(user.id).two_factor_code_hash is None
        with pytest.raises(AuthenticationError):
            await runtime.auth.verify_two_factor(user_id=user.id, code=code)

    @pytest.mark.asyncio
    async def test_disable_two_factor_checks_password(self, runtime):
        user = await _signup(runtime)
        enabled = await runtime.auth.enable_two_factor(user.id)
        with pytest.raises(ValidationError):
            await runtime.auth.disable_two_factor(enabled, "wrong-password")
        disabled = await runtime.auth.disable_two_factor(enabled, PASSWORD)
        assert not disabled.is_two_factor_enabled

    @pytest.mark.asyncio
    async def test_enable_two_factor_unknown_user(self, runtime):
        with pytest.raises(NotFoundError):
            await runtime.auth.enable_two_factor("missing")


class TestSessions:
    @pytest.mark.asyncio
    async def test_authenticate(self, runtime):
        user = await _signup(runtime)
        access = runtime.tokens.issue_access_token(user.id)
        ctx = await runtime.auth.authenticate(access)
        assert ctx.user_id == user.id
        assert ctx.role == "user"
        assert ctx.is_email_verified is False

    @pytest.mark.asyncio
    async def test_authenticate_missing_token_and_user(self, runtime):
        with pytest.raises(AuthenticationError):
            await runtime.auth.authenticate(None)
        with pytest.raises(NotFoundError):
            await runtime.auth.authenticate(runtime.tokens.issue_access_token("ghost"))

    @pytest.mark.asyncio
    async def test_logout_revokes_refresh_token(self, runtime, cache):
        user = await _signup(runtime)
        result = await runtime.auth.login(email="alice@example.com", password=PASSWORD)
        await runtime.auth.logout(result.tokens.refresh_token)
        assert await cache.get_refresh_token(user.id) is None
        with pytest.raises(ForbiddenError):
            await runtime.auth.refresh(result.tokens.refresh_token)

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, runtime):
        with pytest.raises(ValidationError):
            await runtime.auth.refresh(None)
        with pytest.raises(ValidationError):
            await runtime.auth.logout("")

    @pytest.mark.asyncio
    async def test_change_password_rotates_session(self, runtime, store):
        user = await _signup(runtime)
        first = await runtime.auth.login(email="alice@example.com", password=PASSWORD)
        tokens = await runtime.auth.change_password(
            user, current_password=PASSWORD, new_password="BrandNewPass99"
        )
        with pytest.raises(ForbiddenError):
            await runtime.auth.refresh(first.tokens.refresh_token)
        assert await runtime.auth.refresh(tokens.refresh_token)
        with pytest.raises(ValidationError):
            await runtime.auth.login(email="alice@example.com", password=PASSWORD)
        relogin = await runtime.auth.login(email="alice@example.com", password="BrandNewPass99")
        assert relogin.user.id == user.id

    @pytest.mark.asyncio
    async def test_change_password_rejects_wrong_current(self, runtime):
        user = await _signup(runtime)
        with pytest.raises(ValidationError):
            await runtime.auth.change_password(
                user, current_password="wrong-password", new_password="BrandNewPass99"
            )


class TestProfileAndRoles:
    @pytest.mark.asyncio
    async def test_update_profile_username_conflict(self, runtime):
        alice = await _signup(runtime, "alice")
        await _signup(runtime, "bob")
        with pytest.raises(ConflictError) as excinfo:
            await runtime.auth.update_profile(alice, username="bob")
        assert excinfo.value.status_code == 400

    @pytest.mark.asyncio
    async def test_update_profile_does_not_touch_password(self, runtime, store):
        alice = await _signup(runtime)
        before = store.get_password_record(alice.id)
        updated = await runtime.auth.update_profile(alice, bio="hello")
        assert updated.bio == "hello"
        assert store.get_password_record(alice.id) == before

    @pytest.mark.asyncio
    async def test_set_user_role(self, runtime):
        alice = await _signup(runtime)
        promoted = await runtime.auth.set_user_role(alice.id, "admin")
        assert promoted.role == "admin"
        with pytest.raises(ValidationError):
            await runtime.auth.set_user_role(alice.id, "root")
        with pytest.raises(NotFoundError):
            await runtime.auth.set_user_role("missing", "user")

    def test_role_allows(self, runtime):
        assert runtime.auth.role_allows("admin", "user")
        assert runtime.auth.role_allows("admin", "admin")
        assert runtime.auth.role_allows("user", "user")
        assert not runtime.auth.role_allows("user", "admin")

    def test_extract_bearer(self, runtime):
        assert runtime.auth.extract_bearer("Bearer abc") == "abc"
        assert runtime.auth.extract_bearer("bearer abc") == "abc"
        assert runtime.auth.extract_bearer("Basic abc") is None
        assert runtime.auth.extract_bearer(None) is None
