"""Role and grant tables over the key-value store."""

from datetime import datetime, timedelta, timezone

import pytest

from shared.schemas.permissions import Role
from shared.schemas.state import AccessGrant

from healthtrack.storage.keys import StoreKeys


@pytest.mark.asyncio
async def test_role_roundtrip_uses_catalogued_key(role_store, storage):
    await role_store.roles.put("u1", Role.ADMIN)

    assert await role_store.roles.get("u1") == "admin"
    assert await storage.kv.get(StoreKeys.USER_ROLE.format(user_id="u1")) == "admin"


@pytest.mark.asyncio
async def test_missing_role_is_none(role_store):
    assert await role_store.roles.get("nobody") is None


@pytest.mark.asyncio
async def test_missing_grant_is_inactive(role_store):
    grant = await role_store.grants.get("owner", "viewer")
    assert grant.active is False
    assert grant.expires_at is None


@pytest.mark.asyncio
async def test_grant_expiry_stored_as_iso_string(role_store, storage):
    expires = datetime(2024, 5, 1, tzinfo=timezone.utc)
    await role_store.grants.put(AccessGrant(owner_id="o", viewer_id="v", active=True, expires_at=expires))

    raw = await storage.kv.get(StoreKeys.GRANT_EXPIRY.format(owner_id="o", viewer_id="v"))
    assert raw == expires.isoformat()

    grant = await role_store.grants.get("o", "v")
    assert grant.active is True
    assert grant.expires_at == expires


@pytest.mark.asyncio
async def test_regrant_without_expiry_clears_old_expiry(role_store):
    expires = datetime(2024, 5, 1, tzinfo=timezone.utc)
    await role_store.grants.put(AccessGrant(owner_id="o", viewer_id="v", active=True, expires_at=expires))
    await role_store.grants.put(AccessGrant(owner_id="o", viewer_id="v", active=True))

    assert (await role_store.grants.get("o", "v")).expires_at is None


@pytest.mark.asyncio
async def test_naive_expiry_read_as_utc(role_store, storage):
    await storage.kv.set(StoreKeys.GRANT_ACTIVE.format(owner_id="o", viewer_id="v"), True)
    await storage.kv.set(StoreKeys.GRANT_EXPIRY.format(owner_id="o", viewer_id="v"), "2024-05-01T00:00:00")

    grant = await role_store.grants.get("o", "v")
    assert grant.expires_at == datetime(2024, 5, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_corrupt_expiry_raises(role_store, storage):
    await storage.kv.set(StoreKeys.GRANT_ACTIVE.format(owner_id="o", viewer_id="v"), True)
    await storage.kv.set(StoreKeys.GRANT_EXPIRY.format(owner_id="o", viewer_id="v"), "next tuesday")

    with pytest.raises(ValueError):
        await role_store.grants.get("o", "v")


@pytest.mark.asyncio
async def test_non_boolean_active_flag_is_inactive(role_store, storage):
    await storage.kv.set(StoreKeys.GRANT_ACTIVE.format(owner_id="o", viewer_id="v"), "true")
    assert (await role_store.grants.get("o", "v")).active is False


@pytest.mark.asyncio
async def test_delete_removes_both_keys_and_is_idempotent(role_store, storage):
    await role_store.grants.put(
        AccessGrant(owner_id="o", viewer_id="v", active=True,
                    expires_at=datetime.now(timezone.utc) + timedelta(days=1))
    )
    await role_store.grants.delete("o", "v")
    await role_store.grants.delete("o", "v")

    assert storage.kv.keys() == []


@pytest.mark.asyncio
async def test_colons_in_ids_do_not_collide(role_store):
    await role_store.grants.put(AccessGrant(owner_id="a:b", viewer_id="c", active=True))

    assert (await role_store.grants.get("a:b", "c")).active is True
    assert (await role_store.grants.get("a", "b:c")).active is False

    await role_store.grants.delete("a", "b:c")
    assert (await role_store.grants.get("a:b", "c")).active is True
