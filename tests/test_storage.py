"""
Tests for the two-tier token store.
"""
import asyncio
import json

import pytest

from dope_auth.bus import SessionBus
from dope_auth.models import ChainAddress, UserProfile
from dope_auth.storage import FileBackend, MemoryBackend, TokenStore

from tests.fakes import FailingBackend


class TestTokenStore:
    @pytest.mark.asyncio
    async def test_save_writes_both_and_broadcasts(self, store, bus):
        await store.save("tok")

        assert store.durable.data["dope.app_jwt"] == "tok"
        assert store.cache.data["dope.app_jwt"] == "tok"
        assert await store.get() == "tok"
        assert bus.published == 1

    @pytest.mark.asyncio
    async def test_read_prefers_durable(self, store):
        store.durable.data["dope.app_jwt"] = "durable"
        store.cache.data["dope.app_jwt"] = "cache"
        assert await store.get() == "durable"

    @pytest.mark.asyncio
    async def test_read_falls_back_to_cache(self, store):
        store.cache.data["dope.app_jwt"] = "cache"
        assert await store.get() == "cache"

    @pytest.mark.asyncio
    async def test_durable_unavailable(self):
        bus = SessionBus()
        store = TokenStore(FailingBackend(), MemoryBackend(), bus=bus)

        await store.save("tok")
        assert await store.get() == "tok"

        await store.clear()
        assert await store.get() is None
        assert bus.published == 2

    @pytest.mark.asyncio
    async def test_cache_unavailable(self):
        store = TokenStore(MemoryBackend(), FailingBackend())
        await store.save("tok")
        assert await store.get() == "tok"
        assert await store.has_cached_token() is False

    @pytest.mark.asyncio
    async def test_clear_never_raises(self):
        bus = SessionBus()
        store = TokenStore(FailingBackend(), FailingBackend(), bus=bus)
        await store.clear()
        await store.clear_all()
        assert bus.published == 2

    @pytest.mark.asyncio
    async def test_hydrate_copies_durable_into_cache(self, store, bus):
        store.durable.data["dope.app_jwt"] = "tok"

        assert await store.has_cached_token() is False
        assert await store.hydrate() is True
        assert await store.has_cached_token() is True
        assert bus.published == 1

        # nothing left to copy
        assert await store.hydrate() is False
        assert bus.published == 1

    @pytest.mark.asyncio
    async def test_hydrate_without_durable_token(self, store, bus):
        assert await store.hydrate() is False
        assert bus.published == 0

    @pytest.mark.asyncio
    async def test_namespace(self):
        store = TokenStore(MemoryBackend(), MemoryBackend(), namespace="other")
        await store.save("tok")
        assert "other.app_jwt" in store.cache.data


class TestSnapshots:
    @pytest.mark.asyncio
    async def test_profile_round_trip(self, store):
        profile = UserProfile(evmAddress="0xabc", referralCount=2)
        await store.save_profile(profile)

        loaded = await store.get_profile()
        assert loaded.evm_address == "0xabc"
        assert loaded.referral_count == 2
        assert json.loads(store.cache.data["dope.user_me"]) == {"evmAddress": "0xabc", "referralCount": 2}

    @pytest.mark.asyncio
    async def test_unreadable_profile_is_dropped(self, store):
        store.durable.data["dope.user_me"] = "{not json"
        assert await store.get_profile() is None

    @pytest.mark.asyncio
    async def test_wallets(self, store):
        await store.save_wallets([ChainAddress(chain="evm", address="0x1")])
        wallets = await store.get_wallets()
        assert [(w.chain, w.address) for w in wallets] == [("evm", "0x1")]

    @pytest.mark.asyncio
    async def test_verified_mark(self, store):
        assert await store.last_verified() is None
        await store.mark_verified("tok", at=123.0)

        mark = await store.last_verified()
        assert mark.verified_at == 123.0
        assert await store.was_verified("tok")
        assert not await store.was_verified("other")

    @pytest.mark.asyncio
    async def test_clear_all_drops_everything_and_broadcasts_once(self, store, bus):
        await store.save("tok")
        await store.save_profile(UserProfile(evmAddress="0xabc"))
        await store.mark_verified("tok")
        published = bus.published

        await store.clear_all()

        assert store.durable.data == {}
        assert store.cache.data == {}
        assert bus.published == published + 1


class TestFileBackend:
    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "prefs" / "preferences.json"
        await FileBackend(path).set("k", "v")

        assert await FileBackend(path).get("k") == "v"
        assert json.loads(path.read_text()) == {"k": "v"}

    @pytest.mark.asyncio
    async def test_remove(self, tmp_path):
        backend = FileBackend(tmp_path / "p.json")
        await backend.set("a", "1")
        await backend.set("b", "2")
        await backend.remove("a")
        await backend.remove("missing")
        assert await backend.get("a") is None
        assert await backend.get("b") == "2"

    @pytest.mark.asyncio
    async def test_missing_file_reads_empty(self, tmp_path):
        assert await FileBackend(tmp_path / "absent.json").get("k") is None

    @pytest.mark.asyncio
    async def test_overlapping_writes_keep_file_valid(self, tmp_path):
        path = tmp_path / "prefs.json"
        backend = FileBackend(path)
        await backend.set("dope.app_jwt", "tok")

        for i in range(50):
            await asyncio.gather(
                backend.remove("dope.app_jwt"),
                backend.set("dope.user_me", "{}"),
                backend.set("dope.app_jwt", f"tok-{i}"),
            )

        data = json.loads(path.read_text())
        assert data == {"dope.app_jwt": "tok-49", "dope.user_me": "{}"}
        assert [p.name for p in tmp_path.iterdir()] == ["prefs.json"]

    @pytest.mark.asyncio
    async def test_torn_file_recovers(self, tmp_path):
        path = tmp_path / "prefs.json"
        path.write_text('{"a": "1"}}')
        backend = FileBackend(path)

        assert await backend.get("a") is None

        await backend.set("a", "2")
        assert await backend.get("a") == "2"
        assert json.loads(path.read_text()) == {"a": "2"}

    @pytest.mark.asyncio
    async def test_store_survives_concurrent_logout(self, tmp_path):
        store = TokenStore(FileBackend(tmp_path / "prefs.json"), MemoryBackend())
        await store.save("tok")

        await asyncio.gather(
            store.clear_all(),
            store.save_profile(UserProfile(evmAddress="0xabc")),
            store.mark_verified("tok"),
        )

        await store.save("next")
        assert await store.durable.get("dope.app_jwt") == "next"
