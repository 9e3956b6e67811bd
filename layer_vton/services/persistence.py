"""Save and load session snapshots across the local and remote tiers."""

import logging
import secrets
import time
from dataclasses import dataclass

from pydantic import ValidationError

from ..errors import StorageError
from ..models.session import SessionState
from ..utils.image_codec import ImageCodec, StoredSession
from .storage import LocalCache, RemoteStore

logger = logging.getLogger(__name__)

SESSION_ID_KEY = "layer_vton_session_id"
STATE_KEY_PREFIX = "layer_vton_state_"


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


def get_session_id(cache: LocalCache) -> str:
    """Stable per-client session id, created on first use."""
    existing = cache.get(SESSION_ID_KEY)
    if existing and existing.strip():
        return existing.strip()

    session_id = new_session_id()
    try:
        cache.set(SESSION_ID_KEY, session_id)
    except StorageError as e:
        logger.warning(f"Could not remember session id, it will change next run: {e}")
    return session_id


@dataclass
class SaveResult:
    """Which tiers accepted a save."""
    cached: bool = False
    remote: bool = False


class PersistenceGateway:
    """Two independent storage tiers behind one save/load interface.

    A failure in one tier never affects the other, and ``save`` never raises.
    """

    def __init__(
        self,
        codec: ImageCodec,
        cache: LocalCache,
        remote: RemoteStore | None = None,
        cache_max_bytes: int = 5 * 1024 * 1024,
    ):
        self.codec = codec
        self.cache = cache
        self.remote = remote
        self.cache_max_bytes = cache_max_bytes

    @staticmethod
    def cache_key(session_key: str) -> str:
        return f"{STATE_KEY_PREFIX}{session_key}"

    async def save(self, session_key: str, state: SessionState) -> SaveResult:
        result = SaveResult()
        stored = await self.codec.encode_state(state)
        serialized = stored.model_dump_json()

        # Local tier
        size = len(serialized.encode("utf-8"))
        if size > self.cache_max_bytes:
            logger.warning(
                f"Snapshot is {size / 1024 / 1024:.1f} MB, over the "
                f"{self.cache_max_bytes / 1024 / 1024:.1f} MB cache ceiling; skipping local cache"
            )
        else:
            try:
                self.cache.set(self.cache_key(session_key), serialized)
                result.cached = True
            except StorageError as e:
                logger.warning(f"Local cache save failed: {e}")
        if not result.cached:
            # An older cached snapshot would otherwise shadow this one on load
            self._drop_local(session_key)

        # Remote tier
        if self.remote is not None:
            try:
                await self.remote.upsert(session_key, stored.model_dump(mode="json"))
                result.remote = True
            except StorageError as e:
                logger.warning(f"Remote save failed: {e}")

        if not (result.cached or result.remote):
            logger.error(f"Session {session_key} was not persisted to any tier")
        return result

    def _drop_local(self, session_key: str) -> None:
        try:
            self.cache.delete(self.cache_key(session_key))
        except StorageError as e:
            logger.warning(f"Could not drop stale cached session: {e}")

    def _load_local(self, session_key: str) -> StoredSession | None:
        raw = self.cache.get(self.cache_key(session_key))
        if not raw:
            return None
        try:
            return StoredSession.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring unreadable cached session: {e.error_count()} errors")
            return None

    async def _load_remote(self, session_key: str) -> StoredSession | None:
        if self.remote is None:
            return None
        try:
            blob = await self.remote.get(session_key)
        except StorageError as e:
            logger.warning(f"Remote load failed, treating as absent: {e}")
            return None
        if not blob:
            return None
        try:
            return StoredSession.model_validate(blob)
        except ValidationError as e:
            logger.warning(f"Ignoring unreadable remote session: {e.error_count()} errors")
            return None

    async def load(self, session_key: str) -> SessionState | None:
        """Saved session, or None if there is nothing usable in either tier."""
        stored = self._load_local(session_key)
        if stored is None:
            stored = await self._load_remote(session_key)
        if stored is None:
            logger.info(f"No saved state for {session_key}")
            return None
        return self.codec.decode_state(stored)

    async def close(self):
        await self.codec.close()
        if self.remote is not None:
            await self.remote.close()
