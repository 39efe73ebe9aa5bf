"""
Context Persistence

Durable copies of conversation contexts. The in-memory store is the source
of truth while the process runs; these backends only let contexts survive a
restart. Writes go through WriteBehindPersister so a turn never waits on disk
or network.

Durability is at-most-once: a crash between a state change and its queued
write loses that write.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError

from ..config.settings import Settings, settings as default_settings
from ..exceptions import CorruptRecordError
from ..models import ConversationContext

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def encode_record(context: ConversationContext) -> str:
    return json.dumps({"updated_at": context.updated_at, "context": context.model_dump(mode="json")})


def decode_record(session_id: str, raw: str) -> ConversationContext:
    try:
        record = json.loads(raw)
        return ConversationContext.model_validate(record["context"])
    except (ValueError, KeyError, TypeError, ValidationError) as e:
        raise CorruptRecordError(f"Corrupt context record: {e}", session_id=session_id) from e


class ContextPersistence:
    """Interface for durable context storage"""

    name = "base"

    async def save(self, context: ConversationContext) -> None:
        raise NotImplementedError

    async def load(self, session_id: str) -> Optional[ConversationContext]:
        """Return the stored context, None when absent. Raises CorruptRecordError."""
        raise NotImplementedError

    async def delete(self, session_id: str) -> None:
        raise NotImplementedError

    async def list_ids(self) -> List[str]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryContextPersistence(ContextPersistence):
    """Keeps serialized records in a dict; used when no durable backend is configured"""

    name = "memory"

    def __init__(self):
        self.records: Dict[str, str] = {}

    async def save(self, context: ConversationContext) -> None:
        self.records[context.id] = encode_record(context)

    async def load(self, session_id: str) -> Optional[ConversationContext]:
        raw = self.records.get(session_id)
        if raw is None:
            return None
        return decode_record(session_id, raw)

    async def delete(self, session_id: str) -> None:
        self.records.pop(session_id, None)

    async def list_ids(self) -> List[str]:
        return list(self.records.keys())


class FileContextPersistence(ContextPersistence):
    """One JSON file per session under a cache directory"""

    name = "file"

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def path_for(self, session_id: str) -> Path:
        return self.directory / f"{_UNSAFE_CHARS.sub('_', session_id)}.json"

    def _write(self, session_id: str, payload: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(session_id)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        os.replace(tmp_path, path)

    def _read(self, session_id: str) -> Optional[str]:
        path = self.path_for(session_id)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def _remove(self, session_id: str) -> None:
        path = self.path_for(session_id)
        if path.exists():
            path.unlink()

    def _list(self) -> List[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))

    async def save(self, context: ConversationContext) -> None:
        await asyncio.to_thread(self._write, context.id, encode_record(context))

    async def load(self, session_id: str) -> Optional[ConversationContext]:
        raw = await asyncio.to_thread(self._read, session_id)
        if raw is None:
            return None
        return decode_record(session_id, raw)

    async def delete(self, session_id: str) -> None:
        await asyncio.to_thread(self._remove, session_id)

    async def list_ids(self) -> List[str]:
        return await asyncio.to_thread(self._list)


class RedisContextPersistence(ContextPersistence):
    """Contexts stored as JSON strings with a TTL matching the context TTL"""

    name = "redis"

    # ctx:sid:{sid} -> JSON context record, expires with the session TTL
    def __init__(self, redis_url: str, ttl_seconds: float, key_prefix: str = "ctx:sid:", client=None):
        if client is None:
            import redis.asyncio as redis_asyncio

            client = redis_asyncio.from_url(redis_url, decode_responses=True)
        self.redis = client
        self.ttl_seconds = max(1, int(ttl_seconds))
        self.key_prefix = key_prefix

    def key_for(self, session_id: str) -> str:
        return f"{self.key_prefix}{session_id}"

    async def save(self, context: ConversationContext) -> None:
        await self.redis.set(name=self.key_for(context.id), value=encode_record(context), ex=self.ttl_seconds)

    async def load(self, session_id: str) -> Optional[ConversationContext]:
        raw = await self.redis.get(self.key_for(session_id))
        if not raw:
            return None
        return decode_record(session_id, raw)

    async def delete(self, session_id: str) -> None:
        await self.redis.delete(self.key_for(session_id))

    async def list_ids(self) -> List[str]:
        ids = []
        async for key in self.redis.scan_iter(match=f"{self.key_prefix}*"):
            ids.append(key[len(self.key_prefix):])
        return ids

    async def close(self) -> None:
        await self.redis.aclose()


def build_persistence(settings: Optional[Settings] = None) -> ContextPersistence:
    settings = settings or default_settings
    backend = settings.CONTEXT_BACKEND.lower()
    if backend == "file":
        return FileContextPersistence(settings.CONTEXT_STORAGE_DIR)
    if backend == "redis":
        return RedisContextPersistence(settings.REDIS_URL, settings.CONTEXT_TTL_SECONDS, settings.REDIS_KEY_PREFIX)
    if backend == "memory":
        return MemoryContextPersistence()
    raise ValueError(f"Unknown context backend: {settings.CONTEXT_BACKEND}")


class WriteBehindPersister:
    """
    Applies persistence operations in submission order on a single worker task.

    Writes for one session can never overtake each other because one consumer
    drains one FIFO queue. Backend failures are logged and dropped.
    """

    def __init__(self, backend: ContextPersistence):
        self.backend = backend
        self._queue: "asyncio.Queue[Tuple[str, str, Optional[ConversationContext]]]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self.failures = 0
        self.completed = 0

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    def submit_save(self, context: ConversationContext) -> None:
        # snapshot now so later in-memory changes are not written early
        self._queue.put_nowait(("save", context.id, context.model_copy(deep=True)))
        self._ensure_worker()

    def submit_delete(self, session_id: str) -> None:
        self._queue.put_nowait(("delete", session_id, None))
        self._ensure_worker()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _run(self) -> None:
        while True:
            op, session_id, context = await self._queue.get()
            try:
                if op == "save":
                    await self.backend.save(context)
                else:
                    await self.backend.delete(session_id)
                self.completed += 1
            except Exception as e:
                self.failures += 1
                logger.warning(f"⚠️ Context {op} failed for {session_id} on {self.backend.name} backend: {e}")
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Wait until everything submitted so far has been applied"""
        if self._worker is None or self._worker.done():
            if self._queue.empty():
                return
            self._ensure_worker()
        await self._queue.join()

    async def close(self) -> None:
        await self.flush()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        await self.backend.close()
