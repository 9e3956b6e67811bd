"""Tests for storage tiers and the persistence gateway."""

import json
import re

import httpx
import pytest

from layer_vton.config import SupabaseConfig
from layer_vton.errors import CacheQuotaExceededError, StorageError
from layer_vton.models.image_ref import InlineData, LocalHandle
from layer_vton.models.layers import effective_outfit
from layer_vton.models.session import SessionState, SessionStatus
from layer_vton.services.persistence import SESSION_ID_KEY, PersistenceGateway, get_session_id
from layer_vton.services.storage import FileCache, SupabaseStore

from fakes import FakeRemoteStore, MemoryCache, make_jpeg


@pytest.fixture
def state(handles, jpeg_bytes):
    state = SessionState(status=SessionStatus.DONE, base_image=handles.create(jpeg_bytes, "image/jpeg"))
    state.baseline_outfit.set("outer", 1, InlineData.from_bytes(make_jpeg("navy"), "image/jpeg"))
    state.user_slots.set("inner", 1, handles.create(make_jpeg("white"), "image/jpeg"))
    state.composed_image = handles.create(make_jpeg("yellow"), "image/jpeg")
    state.free_text_prompt = "roll up the sleeves"
    return state


class TestFileCache:
    """Tests for the file-backed local cache."""

    def test_set_and_get(self, file_cache):
        file_cache.set("a", "hello")

        assert file_cache.get("a") == "hello"
        assert file_cache.get("missing") is None

    def test_keys_are_sanitized(self, file_cache, tmp_path):
        file_cache.set("../escape/key", "x")

        assert file_cache.get("../escape/key") == "x"
        assert all(p.parent == tmp_path / "cache" for p in (tmp_path / "cache").iterdir())

    def test_quota_is_enforced(self, tmp_path):
        cache = FileCache(tmp_path / "small", quota_bytes=10)
        cache.set("a", "12345")

        with pytest.raises(CacheQuotaExceededError):
            cache.set("b", "123456")

    def test_overwriting_a_key_does_not_count_twice(self, tmp_path):
        cache = FileCache(tmp_path / "small", quota_bytes=10)
        cache.set("a", "12345678")
        cache.set("a", "87654321")

        assert cache.get("a") == "87654321"

    def test_delete_removes_key(self, file_cache):
        file_cache.set("a", "hello")

        file_cache.delete("a")
        file_cache.delete("a")

        assert file_cache.get("a") is None


class TestSessionId:

    def test_created_once_and_reused(self):
        cache = MemoryCache()

        first = get_session_id(cache)
        second = get_session_id(cache)

        assert first == second
        assert cache.items[SESSION_ID_KEY] == first
        assert re.fullmatch(r"session_\d+_[0-9a-f]{9}", first)

    def test_unwritable_cache_still_gives_an_id(self):
        assert get_session_id(MemoryCache(fail=True)).startswith("session_")


class TestPersistenceGateway:
    """Tests for save/load across tiers."""

    @pytest.mark.asyncio
    async def test_round_trip_preserves_effective_outfit(self, codec, file_cache, state):
        gateway = PersistenceGateway(codec, file_cache)

        await gateway.save("s1", state)
        restored = await gateway.load("s1")

        before = effective_outfit(state.user_slots, state.baseline_outfit)
        after = effective_outfit(restored.user_slots, restored.baseline_outfit)
        for category, index, ref in before.filled():
            original, _ = await codec.read_bytes(ref)
            loaded = await codec.read_bytes(after.get(category, index))
            assert loaded is not None
            # Local handles are recompressed on the way out, inline data is stored verbatim
            if isinstance(ref, LocalHandle):
                assert loaded[1] == "image/jpeg"
            else:
                assert loaded[0] == original
        assert [(c, i) for c, i, _ in after.filled()] == [(c, i) for c, i, _ in before.filled()]
        assert restored.free_text_prompt == "roll up the sleeves"
        assert isinstance(restored.base_image, LocalHandle)

    @pytest.mark.asyncio
    async def test_nothing_saved_is_none(self, codec, file_cache):
        gateway = PersistenceGateway(codec, file_cache, FakeRemoteStore())

        assert await gateway.load("nobody") is None

    @pytest.mark.asyncio
    async def test_cache_ceiling_skips_local_tier(self, codec, file_cache, state):
        remote = FakeRemoteStore()
        gateway = PersistenceGateway(codec, file_cache, remote, cache_max_bytes=100)

        result = await gateway.save("s1", state)

        assert result.cached is False
        assert result.remote is True
        assert file_cache.get(gateway.cache_key("s1")) is None

    @pytest.mark.asyncio
    async def test_oversized_save_replaces_older_cached_snapshot(self, codec, state):
        """A snapshot too big for the cache must not leave the previous one to be loaded."""
        cache = MemoryCache()
        gateway = PersistenceGateway(codec, cache, FakeRemoteStore(), cache_max_bytes=1000)
        await gateway.save("s1", SessionState(free_text_prompt="first"))
        assert gateway.cache_key("s1") in cache.items

        result = await gateway.save("s1", state)
        restored = await gateway.load("s1")

        assert result.cached is False
        assert gateway.cache_key("s1") not in cache.items
        assert restored.free_text_prompt == "roll up the sleeves"
        assert restored.base_image is not None

    @pytest.mark.asyncio
    async def test_failed_cache_write_replaces_older_cached_snapshot(self, codec):
        cache = MemoryCache()
        gateway = PersistenceGateway(codec, cache, FakeRemoteStore())
        await gateway.save("s1", SessionState(free_text_prompt="first"))

        cache.fail = True
        await gateway.save("s1", SessionState(free_text_prompt="second"))
        restored = await gateway.load("s1")

        assert restored.free_text_prompt == "second"

    @pytest.mark.asyncio
    async def test_cache_failure_does_not_block_remote(self, codec, state):
        remote = FakeRemoteStore()
        gateway = PersistenceGateway(codec, MemoryCache(fail=True), remote)

        result = await gateway.save("s1", state)

        assert result.remote is True
        assert remote.upserts == 1

    @pytest.mark.asyncio
    async def test_remote_failure_does_not_block_cache(self, codec, file_cache, state):
        gateway = PersistenceGateway(codec, file_cache, FakeRemoteStore(fail_upsert=True))

        result = await gateway.save("s1", state)

        assert result.cached is True
        assert result.remote is False

    @pytest.mark.asyncio
    async def test_both_tiers_failing_never_raises(self, codec, state):
        gateway = PersistenceGateway(codec, MemoryCache(fail=True), FakeRemoteStore(fail_upsert=True))

        result = await gateway.save("s1", state)

        assert not result.cached and not result.remote

    @pytest.mark.asyncio
    async def test_falls_back_to_remote_when_cache_is_empty(self, codec, state):
        remote = FakeRemoteStore()
        await PersistenceGateway(codec, MemoryCache(), remote).save("s1", state)

        restored = await PersistenceGateway(codec, MemoryCache(), remote).load("s1")

        assert restored is not None
        assert restored.free_text_prompt == state.free_text_prompt

    @pytest.mark.asyncio
    async def test_unparseable_cache_falls_back_to_remote(self, codec, state):
        cache = MemoryCache()
        remote = FakeRemoteStore()
        gateway = PersistenceGateway(codec, cache, remote)
        await gateway.save("s1", state)
        cache.items[gateway.cache_key("s1")] = "{not json"

        restored = await gateway.load("s1")

        assert restored is not None
        assert restored.base_image is not None

    @pytest.mark.asyncio
    async def test_remote_load_error_is_treated_as_absent(self, codec):
        gateway = PersistenceGateway(codec, MemoryCache(), FakeRemoteStore(fail_get=True))

        assert await gateway.load("s1") is None


class TestSupabaseStore:
    """Tests for the PostgREST remote store."""

    def _store(self, handler) -> SupabaseStore:
        store = SupabaseStore(SupabaseConfig(url="https://db.example.supabase.co", anon_key="anon"))
        store._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return store

    @pytest.mark.asyncio
    async def test_upsert_request_shape(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["request"] = request
            return httpx.Response(201)

        await self._store(handler).upsert("s1", {"version": 1})

        request = seen["request"]
        assert request.method == "POST"
        assert request.url.path == "/rest/v1/fashion_ai_states"
        assert request.url.params["on_conflict"] == "session_id"
        assert request.headers["Prefer"] == "resolution=merge-duplicates"
        assert request.headers["apikey"] == "anon"
        assert request.headers["Authorization"] == "Bearer anon"
        assert json.loads(request.content) == {"session_id": "s1", "state_data": {"version": 1}}

    @pytest.mark.asyncio
    async def test_get_returns_state_data(self):
        def handler(request: httpx.Request):
            assert request.url.params["session_id"] == "eq.s1"
            assert request.url.params["select"] == "state_data"
            return httpx.Response(200, json=[{"state_data": {"version": 1}}])

        assert await self._store(handler).get("s1") == {"version": 1}

    @pytest.mark.asyncio
    async def test_get_missing_row(self):
        assert await self._store(lambda request: httpx.Response(200, json=[])).get("s1") is None

    @pytest.mark.asyncio
    async def test_errors_raise_storage_error(self):
        store = self._store(lambda request: httpx.Response(500, text="boom"))

        with pytest.raises(StorageError):
            await store.upsert("s1", {})
        with pytest.raises(StorageError):
            await store.get("s1")
