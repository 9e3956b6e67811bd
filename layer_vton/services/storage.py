"""Storage tiers: a small local cache and an optional remote key-value store."""

import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import httpx

from ..config import SupabaseConfig
from ..errors import CacheQuotaExceededError, StorageError

logger = logging.getLogger(__name__)


class LocalCache(ABC):
    """Synchronous string key-value cache with a size quota."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a value. Raises CacheQuotaExceededError or StorageError."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Drop a key if present. Raises StorageError."""


class FileCache(LocalCache):
    """One UTF-8 file per key under a directory, with a total byte quota."""

    def __init__(self, directory: Path, quota_bytes: int = 5 * 1024 * 1024):
        self.directory = Path(directory)
        self.quota_bytes = quota_bytes

    def _path(self, key: str) -> Path:
        safe = re.sub(r'[^A-Za-z0-9_.-]', '_', key)
        return self.directory / f"{safe}.json"

    def _used_bytes(self, excluding: Path) -> int:
        if not self.directory.exists():
            return 0
        return sum(
            p.stat().st_size for p in self.directory.glob("*.json")
            if p.is_file() and p != excluding
        )

    def get(self, key: str) -> str | None:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        size = len(value.encode("utf-8"))
        if self._used_bytes(excluding=path) + size > self.quota_bytes:
            raise CacheQuotaExceededError(
                f"Writing {key} ({size} bytes) would exceed the {self.quota_bytes} byte cache quota"
            )
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            path.write_text(value, encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Cache write failed for {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Cache delete failed for {key}: {e}") from e


class RemoteStore(ABC):
    """Durable per-session JSON storage."""

    @abstractmethod
    async def upsert(self, session_key: str, blob: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def get(self, session_key: str) -> dict[str, Any] | None:
        ...

    async def close(self):
        """Release any held resources."""


class SupabaseStore(RemoteStore):
    """PostgREST table with columns session_id, state_data and updated_at."""

    def __init__(self, config: SupabaseConfig, timeout: float = 30.0):
        self.config = config
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    @property
    def endpoint(self) -> str:
        return f"{(self.config.url or '').rstrip('/')}/rest/v1/{self.config.table}"

    def _headers(self, **extra: str) -> dict[str, str]:
        return {
            "apikey": self.config.anon_key or "",
            "Authorization": f"Bearer {self.config.anon_key or ''}",
            "Content-Type": "application/json",
            **extra,
        }

    async def upsert(self, session_key: str, blob: dict[str, Any]) -> None:
        row = {"session_id": session_key, "state_data": blob}
        try:
            response = await self.client.post(
                self.endpoint,
                params={"on_conflict": "session_id"},
                headers=self._headers(Prefer="resolution=merge-duplicates"),
                json=row,
            )
        except httpx.HTTPError as e:
            raise StorageError(f"Remote save failed: {e}") from e
        if response.status_code >= 400:
            raise StorageError(f"Remote save failed ({response.status_code}): {response.text[:300]}")

    async def get(self, session_key: str) -> dict[str, Any] | None:
        try:
            response = await self.client.get(
                self.endpoint,
                params={"session_id": f"eq.{session_key}", "select": "state_data"},
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            raise StorageError(f"Remote load failed: {e}") from e
        if response.status_code >= 400:
            raise StorageError(f"Remote load failed ({response.status_code}): {response.text[:300]}")

        try:
            rows = response.json()
        except ValueError as e:
            raise StorageError("Remote load returned invalid JSON") from e
        if not rows:
            return None
        return rows[0].get("state_data")

    async def close(self):
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
