"""Tests for the in-memory store, the memory ledger and the Redis ledger wrapper."""

import pytest
from redis.exceptions import ResponseError

from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.memory import MemoryCache
from tenantauth.storage.models import BackupCode, MfaMethod, MfaType, PasswordResetToken
from tenantauth.storage.redis_cache import RedisCache


class TestMemoryStore:
    def test_domain_lookups_ignore_inactive(self, store):
        domain = store.create_domain("acme", external_tenant_id="tid-1")

        assert store.find_active_by_slug("acme").id == domain.id
        assert store.find_active_by_external_tenant_id("tid-1").id == domain.id

        store.set_domain_active(domain.id, False)
        assert store.find_active_by_id(domain.id) is None
        assert store.find_active_by_slug("acme") is None
        assert store.find_active_by_external_tenant_id("tid-1") is None

    def test_duplicate_slug(self, store, domain):
        with pytest.raises(ConstraintViolation):
            store.create_domain("acme")

    def test_email_unique_per_domain_case_insensitive(self, store, domain, other_domain):
        store.create(domain.id, email="Jane@Example.com")

        assert store.find_by_email(domain.id, "jane@example.com") is not None
        assert store.find_by_email(other_domain.id, "jane@example.com") is None
        with pytest.raises(ConstraintViolation):
            store.create(domain.id, email="JANE@example.com")
        store.create(other_domain.id, email="jane@example.com")

    def test_find_by_id_is_domain_scoped(self, store, domain, other_domain):
        user = store.create(domain.id, email="jane@example.com")

        assert store.find_by_id(domain.id, user.id) is not None
        assert store.find_by_id(other_domain.id, user.id) is None

    def test_user_updates(self, store, domain):
        user = store.create(domain.id, email="jane@example.com")

        store.update_password_hash(domain.id, user.id, "hash")
        store.update_last_login(domain.id, user.id)
        store.set_verified(domain.id, user.id, True)

        stored = store.find_by_id(domain.id, user.id)
        assert stored.password_hash == "hash"
        assert stored.last_login_at is not None
        assert stored.is_verified

    def test_backup_code_claim_is_single_use(self, store, domain):
        user = store.create(domain.id, email="jane@example.com")
        method = store.save_method(
            MfaMethod.new(
                user.id,
                MfaType.TOTP,
                secret="sealed",
                backup_codes=[BackupCode("h1", "c1"), BackupCode("h2", "c2")],
            )
        )

        assert store.consume_backup_code(method.id, "h1") is True
        assert store.consume_backup_code(method.id, "h1") is False
        assert [c.code_hash for c in store.list_methods(user.id)[0].backup_codes] == ["h2"]
        assert store.consume_backup_code("missing", "h2") is False

    def test_promote_and_delete_methods(self, store, domain):
        user = store.create(domain.id, email="jane@example.com")
        first = store.save_method(MfaMethod.new(user.id, MfaType.TOTP, secret="a", backup_codes=[]))
        second = store.save_method(MfaMethod.new(user.id, MfaType.TOTP, secret="b", backup_codes=[]))

        assert store.get_pending_method(user.id, MfaType.TOTP).id == second.id
        store.promote_method(domain.id, user.id, first.id)

        assert store.get_primary_method(user.id).id == first.id
        assert store.find_by_id(domain.id, user.id).mfa_enabled
        assert store.delete_methods(domain.id, user.id) == 2
        assert not store.find_by_id(domain.id, user.id).mfa_enabled

    def test_reset_token_marked_used_once(self, store, domain):
        user = store.create(domain.id, email="jane@example.com")
        record = store.save_reset_token(PasswordResetToken.new("tok", user.id, domain.id, 60))

        assert store.mark_reset_token_used(record.id) is True
        assert store.mark_reset_token_used(record.id) is False
        assert store.get_reset_token("tok").used_at is not None


class TestMemoryCache:
    async def test_ttl_expiry(self):
        now = [100.0]
        cache = MemoryCache(clock=lambda: now[0])
        await cache.set_with_ttl("k", "v", 10)

        assert await cache.get("k") == "v"
        now[0] += 10
        assert await cache.get("k") is None

    async def test_pop_returns_value_once(self, cache):
        await cache.set_with_ttl("k", "v", 10)

        assert await cache.pop("k") == "v"
        assert await cache.pop("k") is None

    async def test_delete_counts(self, cache):
        await cache.set_with_ttl("a", "1", 10)
        await cache.set_with_ttl("b", "1", 10)

        assert await cache.delete("a") == 1
        assert await cache.delete("a") == 0
        assert await cache.delete_many(["a", "b", "c"]) == 1

    async def test_scan_by_prefix(self, cache):
        await cache.set_with_ttl("refresh_token:d1:u1:a", "u1", 10)
        await cache.set_with_ttl("refresh_token:d1:u2:b", "u2", 10)

        assert await cache.scan_by_prefix("refresh_token:d1:u1:") == ["refresh_token:d1:u1:a"]

    async def test_incr_keeps_original_window(self):
        now = [0.0]
        cache = MemoryCache(clock=lambda: now[0])

        assert await cache.incr_with_ttl("rl", 10) == 1
        now[0] += 5
        assert await cache.incr_with_ttl("rl", 10) == 2
        now[0] += 6
        assert await cache.incr_with_ttl("rl", 10) == 1


class _FakeRedisClient:
    def __init__(self, *, getdel_supported=True):
        self.getdel_supported = getdel_supported
        self.data = {}
        self.eval_calls = []

    async def getdel(self, key):
        if not self.getdel_supported:
            raise ResponseError("unknown command 'GETDEL'")
        return self.data.pop(key, None)

    async def eval(self, script, numkeys, key):
        self.eval_calls.append(key)
        return self.data.pop(key, None)


class TestRedisCache:
    async def test_pop_uses_getdel(self):
        cache = RedisCache("redis://localhost:6379/0")
        cache.client = _FakeRedisClient()
        cache.client.data["k"] = "v"

        assert await cache.pop("k") == "v"
        assert await cache.pop("k") is None

    async def test_pop_falls_back_to_script(self):
        cache = RedisCache("redis://localhost:6379/0")
        cache.client = _FakeRedisClient(getdel_supported=False)
        cache.client.data["k"] = "v"

        assert await cache.pop("k") == "v"
        assert cache.client.eval_calls == ["k"]

    async def test_delete_many_with_no_keys(self):
        cache = RedisCache("redis://localhost:6379/0")

        assert await cache.delete_many([]) == 0
