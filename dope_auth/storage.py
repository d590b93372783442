# dope_auth/storage.py
#
# Token store: the single shared mutable resource of the session bridge.
#
# Policy (the whole contract, in one place):
#   - Two pluggable backends share one async key/value interface:
#       durable -> survives restarts (native preferences role)
#       cache   -> fast, volatile  (web localStorage role)
#   - Writes go durable first, then cache. Each write is best effort and
#     independent: a failure in one is logged and never aborts the other.
#   - Reads prefer durable, falling back to cache when durable raises or is
#     empty. Either backend may lag the other for a moment.
#   - clear() removes from both and never raises.
#   - Every mutation of the token is followed by a bus broadcast when a bus is
#     attached.
#
# Besides the token the store keeps best-effort snapshots (profile, wallet
# addresses, last-verified record). All of it is safe to lose: re-running
# verification re-derives it.

import asyncio
import hashlib
import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .bus import SessionBus
from .config import Settings, settings as default_settings
from .models import ChainAddress, UserProfile

logger = logging.getLogger(__name__)

TOKEN_KEY = "app_jwt"
USER_ME_KEY = "user_me"
USER_WALLETS_KEY = "user_wallets"
VERIFIED_AT_KEY = "app_jwt_verified_at"


# -----------------------------------------------------------------------------
# Backends
# -----------------------------------------------------------------------------
class MemoryBackend:
    """Fast volatile cache."""

    def __init__(self):
        self.data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def remove(self, key: str) -> None:
        self.data.pop(key, None)


class FileBackend:
    """
    Durable JSON-file backend.

    The whole file is one flat {key: value} object, rewritten atomically
    (unique temp file + rename). Blocking I/O runs in a worker thread;
    read-modify-write cycles are serialized by a lock so overlapping
    writers never lose each other's keys.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except ValueError as e:
            # a torn file must not take the durable tier down for good
            logger.warning("unreadable preferences file %s, starting empty: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _dump(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name + ".", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, sort_keys=True)
            os.replace(tmp, self.path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _set_sync(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._dump(data)

    def _remove_sync(self, key: str) -> None:
        data = self._load()
        if data.pop(key, None) is not None:
            self._dump(data)

    async def get(self, key: str) -> Optional[str]:
        data = await asyncio.to_thread(self._load)
        return data.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._set_sync, key, value)

    async def remove(self, key: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._remove_sync, key)


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------
@dataclass
class VerifiedMark:
    token_sha256: str
    verified_at: float


def _sha256(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenStore:
    def __init__(self, durable: Any, cache: Any, namespace: str = "dope", bus: Optional[SessionBus] = None):
        self.durable = durable
        self.cache = cache
        self.namespace = namespace
        self.bus = bus

    def _k(self, key: str) -> str:
        return f"{self.namespace}.{key}"

    def _broadcast(self) -> None:
        if self.bus is not None:
            self.bus.publish()

    # -- best-effort primitives ----------------------------------------------
    async def _write(self, backend: Any, name: str, key: str, value: str) -> bool:
        try:
            await backend.set(self._k(key), value)
            return True
        except Exception as e:
            logger.warning("%s write failed for %s: %s", name, key, e)
            return False

    async def _read(self, backend: Any, name: str, key: str) -> Optional[str]:
        try:
            return await backend.get(self._k(key))
        except Exception as e:
            logger.warning("%s read failed for %s: %s", name, key, e)
            return None

    async def _delete(self, backend: Any, name: str, key: str) -> None:
        try:
            await backend.remove(self._k(key))
        except Exception as e:
            logger.warning("%s remove failed for %s: %s", name, key, e)

    async def _set_both(self, key: str, value: str) -> bool:
        durable_ok = await self._write(self.durable, "durable", key, value)
        cache_ok = await self._write(self.cache, "cache", key, value)
        return durable_ok or cache_ok

    async def _get_either(self, key: str) -> Optional[str]:
        value = await self._read(self.durable, "durable", key)
        if value:
            return value
        return await self._read(self.cache, "cache", key)

    async def _remove_both(self, key: str) -> None:
        await self._delete(self.durable, "durable", key)
        await self._delete(self.cache, "cache", key)

    # -- token -----------------------------------------------------------------
    async def save(self, token: str) -> None:
        await self._set_both(TOKEN_KEY, token)
        self._broadcast()

    async def get(self) -> Optional[str]:
        return await self._get_either(TOKEN_KEY)

    async def has_cached_token(self) -> bool:
        """Fast-path presence check that only consults the cache."""
        return bool(await self._read(self.cache, "cache", TOKEN_KEY))

    async def clear(self) -> None:
        await self._remove_both(TOKEN_KEY)
        self._broadcast()

    async def hydrate(self) -> bool:
        """
        Copy a durable token into the cache when the cache has none.

        Used on cold start, when only the durable store survived. Broadcasts
        if it copied something so listeners pick up the token.
        """
        if await self.has_cached_token():
            return False
        value = await self._read(self.durable, "durable", TOKEN_KEY)
        if not value:
            return False
        if not await self._write(self.cache, "cache", TOKEN_KEY, value):
            return False
        self._broadcast()
        return True

    # -- cached profile ----------------------------------------------------------
    async def save_profile(self, profile: UserProfile) -> None:
        await self._set_both(USER_ME_KEY, profile.model_dump_json(by_alias=True, exclude_none=True))

    async def get_profile(self) -> Optional[UserProfile]:
        raw = await self._get_either(USER_ME_KEY)
        if not raw:
            return None
        try:
            return UserProfile.model_validate_json(raw)
        except ValueError:
            logger.warning("discarding unreadable cached profile")
            return None

    async def save_wallets(self, addresses: List[ChainAddress]) -> None:
        payload = json.dumps([a.model_dump() for a in addresses])
        await self._set_both(USER_WALLETS_KEY, payload)

    async def get_wallets(self) -> List[ChainAddress]:
        raw = await self._get_either(USER_WALLETS_KEY)
        if not raw:
            return []
        try:
            return [ChainAddress.model_validate(x) for x in json.loads(raw)]
        except (ValueError, TypeError):
            logger.warning("discarding unreadable cached wallets")
            return []

    # -- verification bookkeeping ------------------------------------------------
    async def mark_verified(self, token: str, at: Optional[float] = None) -> None:
        mark = {"token_sha256": _sha256(token), "verified_at": at if at is not None else time.time()}
        await self._set_both(VERIFIED_AT_KEY, json.dumps(mark))

    async def last_verified(self) -> Optional[VerifiedMark]:
        raw = await self._get_either(VERIFIED_AT_KEY)
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return VerifiedMark(str(data["token_sha256"]), float(data["verified_at"]))
        except (ValueError, KeyError, TypeError):
            return None

    async def was_verified(self, token: str) -> bool:
        mark = await self.last_verified()
        return mark is not None and mark.token_sha256 == _sha256(token)

    async def clear_all(self) -> None:
        """Drop token and every snapshot; broadcasts once."""
        for key in (USER_ME_KEY, USER_WALLETS_KEY, VERIFIED_AT_KEY):
            await self._remove_both(key)
        await self.clear()


def default_store(bus: Optional[SessionBus] = None, s: Optional[Settings] = None) -> TokenStore:
    s = s or default_settings
    return TokenStore(FileBackend(s.STORAGE_PATH), MemoryBackend(), namespace=s.STORAGE_NAMESPACE, bus=bus)
