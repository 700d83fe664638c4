"""In-memory identity provider behaviour."""

import pytest

from healthtrack.services.identity_provider import (
    IdentityProviderError,
    MemoryIdentityProvider,
    MultiFactorRequired,
    ProviderErrorCode,
)


@pytest.mark.asyncio
async def test_create_account_signs_in(provider):
    identity = await provider.create_account(" Dana@Example.com", "secret123")

    assert identity.email == "dana@example.com"
    assert await provider.current_identity() == identity


@pytest.mark.asyncio
async def test_duplicate_email(provider):
    await provider.create_account("dana@example.com", "secret123")

    with pytest.raises(IdentityProviderError) as exc:
        await provider.create_account("DANA@example.com", "secret456")
    assert exc.value.code is ProviderErrorCode.ALREADY_IN_USE


@pytest.mark.asyncio
async def test_bad_credentials(provider):
    await provider.create_account("dana@example.com", "secret123")

    with pytest.raises(IdentityProviderError) as exc:
        await provider.sign_in("dana@example.com", "nope")
    assert exc.value.code is ProviderErrorCode.INVALID_CREDENTIALS


@pytest.mark.asyncio
async def test_enrolled_factor_triggers_challenge():
    provider = MemoryIdentityProvider(verification_code="999999")
    await provider.create_account("dana@example.com", "secret123")
    session_info = await provider.start_mfa_enrollment("+15550009999")
    await provider.complete_mfa_enrollment(session_info, "999999")
    await provider.sign_out()

    with pytest.raises(MultiFactorRequired) as exc:
        await provider.sign_in("dana@example.com", "secret123")
    assert exc.value.hint == "***9999"
    assert await provider.current_identity() is None

    identity = await provider.complete_mfa_sign_in(exc.value.pending_id, "999999")
    assert identity.email == "dana@example.com"


@pytest.mark.asyncio
async def test_account_operations_need_a_signed_in_user(provider):
    with pytest.raises(IdentityProviderError) as exc:
        await provider.delete_current_account()
    assert exc.value.code is ProviderErrorCode.NOT_AUTHENTICATED
