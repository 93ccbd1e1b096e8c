import pytest

from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.local_cache import LocalCache
from authkernel.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


class TestMemoryStore:
    def test_create_and_lookup(self, store):
        user = store.create_user(
            email="Person@Example.com", username="person", mobile="5551234567", country_code="+1"
        )
        assert user.email == "person@example.com"
        assert store.get_user_by_email("PERSON@example.com").id == user.id
        assert store.get_user_by_username("person").id == user.id
        assert store.get_user_by_mobile("5551234567", "+1").id == user.id
        assert store.find_by_identifier("+15551234567").id == user.id
        assert store.find_by_identifier("person@example.com").id == user.id

    def test_unique_email(self, store):
        store.create_user(email="dup@example.com")
        with pytest.raises(ConstraintViolation):
            store.create_user(email="DUP@example.com")

    def test_find_duplicate(self, store):
        store.create_user(email="a@example.com", mobile="5551234567", country_code="+1")
        assert store.find_duplicate("a@example.com", None)
        assert store.find_duplicate(None, "5551234567", "+1")
        assert store.find_duplicate(None, "5551234567", "+44") is None
        assert store.find_duplicate("b@example.com", None) is None

    def test_invalid_role_and_status(self, store):
        with pytest.raises(ValueError):
            store.create_user(email="x@example.com", role="anonymous")
        with pytest.raises(ValueError):
            store.create_user(email="x@example.com", status="archived")

    def test_state_survives_reload(self, tmp_path, store):
        user = store.create_user(email="keep@example.com", role="creator")
        store.save_password(user.id, "hash", "argon2id")
        store.link_user_auth_provider(user.id, "google", "sub-1")
        store.update_status(user.id, "suspended")

        reloaded = MemoryStore(fs_root=str(tmp_path))
        again = reloaded.get_user(user.id)
        assert again.role == "creator"
        assert again.status == "suspended"
        assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
        assert reloaded.get_user_by_provider("google", "sub-1").id == user.id

    def test_provider_link_idempotent(self, store):
        user = store.create_user(email="p@example.com")
        store.link_user_auth_provider(user.id, "apple", "sub-9")
        store.link_user_auth_provider(user.id, "apple", "sub-9")
        assert len(store.providers) == 1


class TestLocalCache:
    async def test_put_if_absent_once(self):
        cache = LocalCache()
        assert await cache.put_if_absent("k", "v", 60)
        assert not await cache.put_if_absent("k", "other", 60)
        assert await cache.get("k") == "v"

    async def test_take_is_single_use(self):
        cache = LocalCache()
        await cache.put("k", "v", 60)
        assert await cache.take("k") == "v"
        assert await cache.take("k") is None

    async def test_records_expire(self):
        now = [0.0]
        cache = LocalCache(clock=lambda: now[0])
        await cache.put("k", "v", 10)
        now[0] = 9.5
        assert await cache.get("k") == "v"
        now[0] = 10.0
        assert await cache.get("k") is None

    async def test_close_clears_records(self):
        cache = LocalCache()
        await cache.put("k", "v", 60)
        await cache.close()
        assert await cache.get("k") is None
