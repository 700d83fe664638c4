"""Signup/login reconciliation between the identity provider and local stores."""

import pytest

from shared.schemas.state import UserRecord

from healthtrack.core.event_bus import IdentityEventType
from healthtrack.services import auth_service as messages
from healthtrack.services.auth_service import AuthService
from healthtrack.services.identity_provider import MemoryIdentityProvider
from healthtrack.services.session_manager import SessionContext

from .conftest import FailingKeyValueStore, FailingUserRecordStore, RecordingRestoreService


class SpyProvider(MemoryIdentityProvider):
    """Counts the provider calls the engine makes."""

    def __init__(self):
        super().__init__()
        self.create_calls = 0
        self.sign_in_calls = 0

    async def create_account(self, email, password):
        self.create_calls += 1
        return await super().create_account(email, password)

    async def sign_in(self, email, password):
        self.sign_in_calls += 1
        return await super().sign_in(email, password)


class BrokenSignOutProvider(MemoryIdentityProvider):
    async def sign_out(self):
        raise RuntimeError("network down")


class GarbledReauthProvider(MemoryIdentityProvider):
    """Reauthentication fails outside the provider error taxonomy."""

    async def reauthenticate(self, email, password):
        raise ValueError("Expecting value: line 1 column 1 (char 0)")


async def _signup_alice(auth: AuthService, email="alice@example.com", username="Alice"):
    result = await auth.sign_up(email, "secret123", username, full_name="Alice Smith")
    assert result.success, result.message
    return result.user


# ---- Sign up ----

@pytest.mark.asyncio
async def test_sign_up_creates_record_and_session(auth_service, storage, session_context, event_bus, events, clock):
    result = await auth_service.sign_up("  Alice@Example.COM ", "secret123", "Alice", full_name="Alice Smith")

    assert result.success
    assert result.message == "Account created successfully"
    assert result.user.email == "alice@example.com"
    assert result.user.username == "Alice"
    assert result.user.created_at == clock.now
    assert result.user.notification_preferences == {
        "hydration": True, "workout": True, "meal": True, "period": True,
    }

    stored = await storage.users.get(result.user.id)
    assert stored == result.user

    flags = await session_context.get()
    assert flags.is_logged_in
    assert flags.current_user_id == result.user.id

    await event_bus.drain()
    assert [e.event_type for e in events] == [IdentityEventType.SIGNED_UP]


@pytest.mark.asyncio
async def test_sign_up_existing_email_writes_nothing_locally(auth_service, provider, storage, session_context):
    await provider.create_account("alice@example.com", "secret123")
    await provider.sign_out()

    result = await auth_service.sign_up("alice@example.com", "another1", "alice2")

    assert not result.success
    assert result.message == "An account with this email already exists"
    assert await storage.users.get_all() == []
    assert not (await session_context.get()).is_logged_in


@pytest.mark.asyncio
async def test_sign_up_weak_password(auth_service, storage):
    result = await auth_service.sign_up("bob@example.com", "123", "bob")

    assert not result.success
    assert result.message == "Password is too weak"
    assert await storage.users.get_all() == []


@pytest.mark.asyncio
async def test_sign_up_other_provider_error_is_generic(auth_service):
    result = await auth_service.sign_up("not-an-email", "secret123", "bob")

    assert not result.success
    assert result.message == "Failed to create account"


@pytest.mark.asyncio
async def test_sign_up_taken_username_skips_provider(storage, session_context):
    provider = SpyProvider()
    auth = AuthService(provider, storage.users, session_context)
    await storage.users.put(UserRecord(id="u1", email="alice@example.com", username="Alice"))

    result = await auth.sign_up("someone@example.com", "secret123", "ALICE")

    assert not result.success
    assert result.message == messages.MSG_USERNAME_TAKEN
    assert provider.create_calls == 0


@pytest.mark.asyncio
async def test_sign_up_local_failure_still_succeeds(provider, event_bus, events):
    auth = AuthService(
        provider,
        FailingUserRecordStore(),
        SessionContext(FailingKeyValueStore()),
        event_bus=event_bus,
    )

    result = await auth.sign_up("alice@example.com", "secret123", "Alice")

    assert result.success
    await event_bus.drain()
    failures = [e for e in events if e.event_type == IdentityEventType.LOCAL_PERSISTENCE_FAILED]
    assert [e.payload["operation"] for e in failures] == ["save_user", "set_session"]


# ---- Login ----

@pytest.mark.asyncio
async def test_unknown_username_fails_fast_without_provider_call(storage, session_context):
    provider = SpyProvider()
    auth = AuthService(provider, storage.users, session_context)

    result = await auth.login("alice", "secret123")

    assert not result.success
    assert result.message == "Invalid email/username or password"
    assert provider.sign_in_calls == 0


@pytest.mark.asyncio
async def test_login_email_is_case_insensitive(auth_service, session_context):
    alice = await _signup_alice(auth_service)
    await auth_service.logout()

    result = await auth_service.login("ALICE@Example.com", "secret123")

    assert result.success
    assert result.message == "Login successful"
    assert result.user.id == alice.id
    assert result.user.username == "Alice"
    assert (await session_context.get()).current_user_id == alice.id


@pytest.mark.asyncio
async def test_login_by_username_is_case_insensitive(auth_service):
    alice = await _signup_alice(auth_service)
    await auth_service.logout()

    result = await auth_service.login("  aLiCe ", "secret123")

    assert result.success
    assert result.user.id == alice.id


@pytest.mark.asyncio
async def test_login_wrong_password(auth_service, session_context):
    await _signup_alice(auth_service)
    await auth_service.logout()

    result = await auth_service.login("alice@example.com", "wrong-password")

    assert not result.success
    assert result.message == "Invalid email/username or password"
    assert not (await session_context.get()).is_logged_in


@pytest.mark.asyncio
async def test_login_without_local_record_creates_fallback(auth_service, provider, storage, clock):
    identity = await provider.create_account("bob.jones@example.com", "secret123")
    await provider.sign_out()

    result = await auth_service.login("Bob.Jones@example.com", "secret123")

    assert result.success
    assert result.user.id == identity.user_id
    assert result.user.username == "bob.jones"
    assert result.user.created_at == clock.now
    assert await storage.users.get(identity.user_id) is not None


@pytest.mark.asyncio
async def test_fallback_username_gets_suffix_when_taken(auth_service, provider, storage):
    alice = await _signup_alice(auth_service, email="alice@one.com", username="Alice")
    await auth_service.logout()
    identity = await provider.create_account("ALICE@two.com", "secret123")
    await provider.sign_out()

    result = await auth_service.login("alice@two.com", "secret123")

    assert result.success
    assert result.user.id == identity.user_id
    assert result.user.username == "alice2"
    assert (await storage.users.get(alice.id)).username == "Alice"
    usernames = [u.username.lower() for u in await storage.users.get_all()]
    assert sorted(usernames) == ["alice", "alice2"]


@pytest.mark.asyncio
async def test_login_rekeys_stale_local_record(auth_service, provider, storage):
    await storage.users.put(UserRecord(id="stale-id", email="carol@example.com", username="Carol"))
    identity = await provider.create_account("carol@example.com", "secret123")
    await provider.sign_out()

    result = await auth_service.login("Carol", "secret123")

    assert result.success
    assert result.user.id == identity.user_id
    assert result.user.username == "Carol"
    assert await storage.users.get("stale-id") is None


@pytest.mark.asyncio
async def test_login_triggers_restore(auth_service, restore):
    alice = await _signup_alice(auth_service)
    await auth_service.logout()

    await auth_service.login("alice@example.com", "secret123")

    assert restore.calls == [alice.id]


@pytest.mark.asyncio
async def test_restore_failure_does_not_block_login(provider, storage, session_context, event_bus, events):
    auth = AuthService(
        provider, storage.users, session_context,
        restore=RecordingRestoreService(fail=True), event_bus=event_bus,
    )
    await _signup_alice(auth)
    await auth.logout()

    result = await auth.login("alice@example.com", "secret123")

    assert result.success
    await event_bus.drain()
    assert IdentityEventType.DATA_RESTORE_FAILED in [e.event_type for e in events]


# ---- Logout ----

@pytest.mark.asyncio
async def test_logout_clears_flags_even_when_sign_out_raises(storage, session_context):
    auth = AuthService(BrokenSignOutProvider(), storage.users, session_context)
    await _signup_alice(auth)
    assert (await session_context.get()).is_logged_in

    await auth.logout()

    flags = await session_context.get()
    assert flags.is_logged_in is False
    assert flags.current_user_id is None


# ---- Multi-factor sign-in ----

@pytest.mark.asyncio
async def test_mfa_login_flow(auth_service, session_context, event_bus, events):
    alice = await _signup_alice(auth_service)
    session_info = await auth_service.start_mfa_enrollment(alice.id, "+15551234567")
    factor = await auth_service.complete_mfa_enrollment(alice.id, session_info, "123456", "Phone")
    assert factor.phone_hint == "***4567"
    await auth_service.logout()

    challenge = await auth_service.login("alice@example.com", "secret123")
    assert not challenge.success
    assert challenge.mfa_required
    assert challenge.mfa_hint == "***4567"
    assert not (await session_context.get()).is_logged_in

    retry = await auth_service.complete_mfa_sign_in(challenge.mfa_pending_id, "000000")
    assert not retry.success
    assert retry.mfa_required
    assert retry.message == messages.MSG_INVALID_CODE

    result = await auth_service.complete_mfa_sign_in(challenge.mfa_pending_id, "123456")
    assert result.success
    assert result.user.id == alice.id
    assert (await session_context.get()).current_user_id == alice.id

    await event_bus.drain()
    assert IdentityEventType.MFA_CHALLENGE_ISSUED in [e.event_type for e in events]


@pytest.mark.asyncio
async def test_mfa_unknown_challenge(auth_service):
    result = await auth_service.complete_mfa_sign_in("nope", "123456")
    assert not result.success
    assert not result.mfa_required


@pytest.mark.asyncio
async def test_disable_factor_requires_password(auth_service):
    alice = await _signup_alice(auth_service)
    session_info = await auth_service.start_mfa_enrollment(alice.id, "+15551234567")
    factor = await auth_service.complete_mfa_enrollment(alice.id, session_info, "123456")

    assert not await auth_service.disable_mfa_factor(alice.id, "wrong-password", factor.enrollment_id)
    assert len(await auth_service.get_enrolled_factors(alice.id)) == 1

    assert await auth_service.disable_mfa_factor(alice.id, "secret123", factor.enrollment_id)
    assert await auth_service.get_enrolled_factors(alice.id) == []


@pytest.mark.asyncio
async def test_factors_for_other_user_are_empty(auth_service):
    await _signup_alice(auth_service)
    assert await auth_service.get_enrolled_factors("someone-else") == []


# ---- Password & account ----

@pytest.mark.asyncio
async def test_update_password(auth_service):
    alice = await _signup_alice(auth_service)

    wrong = await auth_service.update_password(alice.id, "nope", "newsecret1")
    assert not wrong.success
    assert wrong.message == "Password is incorrect"

    result = await auth_service.update_password(alice.id, "secret123", "newsecret1")
    assert result.success
    assert result.message == "Password updated successfully"

    await auth_service.logout()
    assert (await auth_service.login("alice@example.com", "newsecret1")).success


@pytest.mark.asyncio
async def test_update_password_weak_surfaces_provider_message(auth_service):
    alice = await _signup_alice(auth_service)

    result = await auth_service.update_password(alice.id, "secret123", "123")

    assert not result.success
    assert result.message.startswith("Failed to update password: ")


@pytest.mark.asyncio
async def test_update_password_for_other_user_is_rejected(auth_service):
    await _signup_alice(auth_service)

    result = await auth_service.update_password("someone-else", "secret123", "newsecret1")

    assert not result.success
    assert result.message == "Not authenticated"


@pytest.mark.asyncio
async def test_delete_account(auth_service, storage, session_context, event_bus, events):
    alice = await _signup_alice(auth_service)

    result = await auth_service.delete_account(alice.id, "secret123")

    assert result.success
    assert result.message == "Account deleted successfully"
    assert await storage.users.get(alice.id) is None
    flags = await session_context.get()
    assert not flags.is_logged_in
    assert flags.current_user_id is None
    assert not (await auth_service.login("alice@example.com", "secret123")).success

    await event_bus.drain()
    assert events[-1].event_type == IdentityEventType.ACCOUNT_DELETED


@pytest.mark.asyncio
async def test_delete_account_wrong_password_keeps_everything(auth_service, storage):
    alice = await _signup_alice(auth_service)

    result = await auth_service.delete_account(alice.id, "wrong-password")

    assert not result.success
    assert await storage.users.get(alice.id) is not None


@pytest.mark.asyncio
async def test_reset_password_answer_does_not_leak_accounts(auth_service, provider):
    await _signup_alice(auth_service)

    known = await auth_service.reset_password("Alice@example.com")
    unknown = await auth_service.reset_password("ghost@example.com")

    assert known.success and unknown.success
    assert known.message == unknown.message == (
        "Password reset email sent if an account exists for this address"
    )
    assert provider.password_reset_requests == ["alice@example.com"]


@pytest.mark.asyncio
async def test_unexpected_reauthentication_errors_become_failures(storage, session_context):
    auth = AuthService(GarbledReauthProvider(), storage.users, session_context)
    alice = await _signup_alice(auth)
    session_info = await auth.start_mfa_enrollment(alice.id, "+15551234567")
    factor = await auth.complete_mfa_enrollment(alice.id, session_info, "123456")

    updated = await auth.update_password(alice.id, "secret123", "newsecret1")
    assert not updated.success
    assert updated.message.startswith("Failed to update password: ")

    deleted = await auth.delete_account(alice.id, "secret123")
    assert not deleted.success
    assert deleted.message.startswith("Failed to delete account: ")
    assert await storage.users.get(alice.id) is not None

    assert not await auth.disable_mfa_factor(alice.id, "secret123", factor.enrollment_id)
    assert len(await auth.get_enrolled_factors(alice.id)) == 1
