"""Unit tests for snapshot storage backends."""

import pytest

from courier.core.config import Settings
from courier.core.storage import (
    FileBackend,
    InMemoryBackend,
    RedisBackend,
    create_storage_backend,
)


class TestInMemoryBackend:
    def setup_method(self):
        self.backend = InMemoryBackend()

    @pytest.mark.asyncio
    async def test_set_get_delete(self):
        assert await self.backend.get("queue") is None
        assert await self.backend.set("queue", '{"version": 1}') is True
        assert await self.backend.get("queue") == '{"version": 1}'
        assert await self.backend.delete("queue") is True
        assert await self.backend.delete("queue") is False
        assert self.backend.is_available() is True


class TestFileBackend:
    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path):
        backend = FileBackend(tmp_path / "snapshots")
        assert await backend.get("courier_request_queue") is None
        assert await backend.set("courier_request_queue", "payload") is True
        assert (tmp_path / "snapshots" / "courier_request_queue.json").read_text() == "payload"
        assert await backend.get("courier_request_queue") == "payload"
        assert await backend.delete("courier_request_queue") is True
        assert await backend.delete("courier_request_queue") is False

    @pytest.mark.asyncio
    async def test_overwrite_leaves_no_temp_file(self, tmp_path):
        backend = FileBackend(tmp_path)
        await backend.set("key", "one")
        await backend.set("key", "two")
        assert await backend.get("key") == "two"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["key.json"]

    @pytest.mark.asyncio
    async def test_unsafe_key_characters(self, tmp_path):
        backend = FileBackend(tmp_path)
        await backend.set("../escape/key", "x")
        assert await backend.get("../escape/key") == "x"
        assert all(p.parent == tmp_path for p in tmp_path.iterdir())

    def test_available(self, tmp_path):
        assert FileBackend(tmp_path / "new").is_available() is True


class TestRedisBackend:
    @pytest.mark.asyncio
    async def test_unreachable_server_degrades(self):
        backend = RedisBackend("redis://127.0.0.1:1/0")
        assert await backend.get("key") is None
        assert await backend.set("key", "value") is False
        assert backend.is_available() is False
        await backend.close()


def test_factory_selects_backend(tmp_path):
    assert isinstance(create_storage_backend(Settings(_env_file=None)), InMemoryBackend)
    file_backend = create_storage_backend(
        Settings(_env_file=None, STORAGE_BACKEND="file", STORAGE_DIR=tmp_path)
    )
    assert isinstance(file_backend, FileBackend)
    assert isinstance(
        create_storage_backend(Settings(_env_file=None, STORAGE_BACKEND="redis")), RedisBackend
    )
