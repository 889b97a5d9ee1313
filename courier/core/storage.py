"""
Durable Storage Backends - Memory, JSON File and Redis.

Holds the queue snapshot record that lets pending deliveries survive a
restart. The queue only needs a tiny key/value surface, so backends expose
get / set / delete and nothing else.

Backends report failures by logging and returning a neutral value; losing a
snapshot write must never break delivery.
"""

import asyncio
import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import cast

import aiofiles
import aiofiles.os
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .config import Settings

logger = logging.getLogger(__name__)

# =============================================================================
# ABSTRACT STORAGE INTERFACE
# =============================================================================

class StorageBackend(ABC):
    """Abstract storage backend interface."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Get value by key."""
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> bool:
        """Set value."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if backend is available."""
        pass

    async def close(self) -> None:
        """Close connections and release resources. Override in subclasses."""
        return None

# =============================================================================
# IN-MEMORY BACKEND
# =============================================================================

class InMemoryBackend(StorageBackend):
    """Process-local storage. Survives manager restarts, not process restarts."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> bool:
        self._data[key] = value
        return True

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def is_available(self) -> bool:
        return True

# =============================================================================
# FILE BACKEND
# =============================================================================

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]")

class FileBackend(StorageBackend):
    """One JSON file per key under ``directory``; writes are atomic renames."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self._lock = asyncio.Lock()

    def _path(self, key: str) -> Path:
        return self.directory / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.json"

    async def get(self, key: str) -> str | None:
        path = self._path(key)
        try:
            async with aiofiles.open(path, encoding="utf-8") as fh:
                return cast(str, await fh.read())
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error("[FileBackend] GET %s failed: %s", path, e)
            return None

    async def set(self, key: str, value: str) -> bool:
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        async with self._lock:
            try:
                await aiofiles.os.makedirs(self.directory, exist_ok=True)
                async with aiofiles.open(tmp, "w", encoding="utf-8") as fh:
                    await fh.write(value)
                os.replace(tmp, path)
                return True
            except OSError as e:
                logger.error("[FileBackend] SET %s failed: %s", path, e)
                return False

    async def delete(self, key: str) -> bool:
        path = self._path(key)
        try:
            await aiofiles.os.remove(path)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error("[FileBackend] DELETE %s failed: %s", path, e)
            return False

    def is_available(self) -> bool:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        return os.access(self.directory, os.W_OK)

# =============================================================================
# REDIS BACKEND
# =============================================================================

class RedisBackend(StorageBackend):
    """Redis storage backend using redis.asyncio."""

    def __init__(self, url: str):
        self.url = url
        self._client = None
        self._available: bool | None = None
        self._lock = asyncio.Lock()

    async def _get_client(self):
        """Get or create Redis client."""
        if self._client is not None:
            return self._client

        async with self._lock:
            if self._client is not None:
                return self._client

            try:
                client = aioredis.from_url(
                    self.url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                )
                await client.ping()
            except (RedisError, OSError) as e:
                self._available = False
                logger.warning("[RedisBackend] Failed to connect to Redis: %s", e)
                return None

            self._client = client
            self._available = True
            logger.info(
                "[RedisBackend] Connected to Redis at %s", self.url.split("@")[-1]
            )
            return self._client

    def is_available(self) -> bool:
        """Availability as observed by the last connection attempt."""
        return self._available is not False

    async def get(self, key: str) -> str | None:
        client = await self._get_client()
        if not client:
            return None
        try:
            return cast("str | None", await client.get(key))
        except (RedisError, OSError) as e:
            logger.error("[Redis] GET failed: %s", e)
            return None

    async def set(self, key: str, value: str) -> bool:
        client = await self._get_client()
        if not client:
            return False
        try:
            await client.set(key, value)
            return True
        except (RedisError, OSError) as e:
            logger.error("[Redis] SET failed: %s", e)
            return False

    async def delete(self, key: str) -> bool:
        client = await self._get_client()
        if not client:
            return False
        try:
            return cast(int, await client.delete(key)) > 0
        except (RedisError, OSError) as e:
            logger.error("[Redis] DELETE failed: %s", e)
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

# =============================================================================
# FACTORY
# =============================================================================

def create_storage_backend(settings: Settings) -> StorageBackend:
    """Build the backend selected by ``STORAGE_BACKEND``."""
    if settings.STORAGE_BACKEND == "redis":
        return RedisBackend(settings.REDIS_URL)
    if settings.STORAGE_BACKEND == "file":
        return FileBackend(settings.STORAGE_DIR)
    return InMemoryBackend()
