import asyncio
import logging
import time
from collections import defaultdict
from typing import Any, Callable, Dict, Optional, Union

from pydantic import ValidationError

from ..config.settings import Settings, settings as default_settings
from ..exceptions import CorruptRecordError, InvalidTurnError
from ..models import (
    ContextSummary,
    ContextUpdate,
    ConversationContext,
    QueryResultSnapshot,
    SafetyLevel,
)
from .context_persistence import ContextPersistence, WriteBehindPersister

logger = logging.getLogger(__name__)


class ConversationContextStore:
    """
    Per-session conversation state with expiry and write-behind persistence.

    Every operation on a session id runs under that session's lock. Callers
    get copies; the underlying map is never handed out.
    """

    def __init__(self, settings: Optional[Settings] = None,
                 persistence: Optional[ContextPersistence] = None,
                 clock: Callable[[], float] = time.time):
        self.settings = settings or default_settings
        self.clock = clock
        self.persistence = persistence
        self.persister = WriteBehindPersister(persistence) if persistence is not None else None

        self.ttl_seconds = self.settings.CONTEXT_TTL_SECONDS
        self.query_result_ttl_seconds = self.settings.QUERY_RESULT_TTL_SECONDS
        self.max_history_items = self.settings.MAX_HISTORY_ITEMS
        self.summary_interactions = self.settings.SUMMARY_INTERACTIONS
        self.location_confidence_threshold = self.settings.LOCATION_CONFIDENCE_THRESHOLD

        self._contexts: Dict[str, ConversationContext] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._cleanup_task: Optional[asyncio.Task] = None

    @staticmethod
    def _check_session_id(session_id: str) -> None:
        if not isinstance(session_id, str) or not session_id.strip():
            raise InvalidTurnError("Session id is required")

    def is_expired(self, context: ConversationContext, now: Optional[float] = None) -> bool:
        now = self.clock() if now is None else now
        return now - context.updated_at >= self.ttl_seconds

    def _drop(self, session_id: str) -> None:
        self._contexts.pop(session_id, None)
        if self.persister is not None:
            self.persister.submit_delete(session_id)

    def _get_fresh(self, session_id: str) -> Optional[ConversationContext]:
        context = self._contexts.get(session_id)
        if context is None:
            return None
        if self.is_expired(context):
            logger.info(f"⌛ Context expired for {session_id}")
            self._drop(session_id)
            return None
        return context

    async def get(self, session_id: str) -> Optional[ConversationContext]:
        """Current context, or None when missing or expired"""
        self._check_session_id(session_id)
        async with self._locks[session_id]:
            context = self._get_fresh(session_id)
            return context.model_copy(deep=True) if context is not None else None

    async def update(self, session_id: str,
                     update: Union[ContextUpdate, Dict[str, Any]]) -> ConversationContext:
        """Merge the supplied, non-null fields into the session's context"""
        self._check_session_id(session_id)
        if not isinstance(update, ContextUpdate):
            try:
                update = ContextUpdate.model_validate(update)
            except ValidationError as e:
                raise InvalidTurnError(f"Invalid context update: {e}", session_id=session_id) from e

        async with self._locks[session_id]:
            now = self.clock()
            context = self._get_fresh(session_id)
            if context is None:
                context = ConversationContext(id=session_id, created_at=now, updated_at=now)
                logger.info(f"🆕 Context created for {session_id}")

            changes: Dict[str, Any] = {}
            for name in update.model_fields_set - {"interaction"}:
                value = getattr(update, name)
                if value is None:
                    continue
                if name == "clear_pending_location":
                    if value and update.pending_location_intent is None:
                        changes["pending_location_intent"] = None
                    continue
                if name == "location" and value.confidence < self.location_confidence_threshold:
                    logger.warning(
                        f"⚠️ Ignoring location '{value.raw}' for {session_id}: "
                        f"confidence {value.confidence:.2f} below {self.location_confidence_threshold}"
                    )
                    continue
                changes[name] = value

            history = list(context.history)
            if update.interaction is not None:
                history.append(update.interaction)
            changes["history"] = history[-self.max_history_items:] if self.max_history_items > 0 else []
            changes["updated_at"] = now

            merged = context.model_copy(update=changes)
            self._contexts[session_id] = merged
            if self.persister is not None:
                self.persister.submit_save(merged)

            logger.info(f"📝 Context updated for {session_id}: {sorted(k for k in changes if k != 'updated_at')}")
            return merged.model_copy(deep=True)

    async def clear(self, session_id: str) -> None:
        self._check_session_id(session_id)
        async with self._locks[session_id]:
            self._drop(session_id)
        logger.info(f"🗑️ Context cleared for {session_id}")

    async def fresh_query_result(self, session_id: str) -> Optional[QueryResultSnapshot]:
        """The last query result, only while it is younger than its own TTL"""
        context = await self.get(session_id)
        if context is None or context.last_query_result is None:
            return None
        age = self.clock() - context.last_query_result.captured_at
        if age >= self.query_result_ttl_seconds:
            logger.debug(f"Last query result for {session_id} is stale ({age:.0f}s)")
            return None
        return context.last_query_result

    async def build_summary(self, session_id: str) -> ContextSummary:
        """Reduced view of the context: flags plus the most recent interactions"""
        context = await self.get(session_id)
        if context is None:
            return ContextSummary(session_id=session_id)

        recent = context.history[-self.summary_interactions:] if self.summary_interactions > 0 else []
        location = context.location.describe() if context.location else None
        parts = [
            location,
            context.family_concerns,
            context.emotional_tone,
            context.language,
            context.safety_level != SafetyLevel.UNKNOWN,
            context.emergency_detected,
            context.last_intent,
            recent,
        ]
        return ContextSummary(
            session_id=session_id,
            has_context=True,
            location=location,
            family_concerns=context.family_concerns,
            emotional_tone=context.emotional_tone,
            language=context.language,
            safety_level=context.safety_level,
            emergency_detected=context.emergency_detected,
            last_intent=context.last_intent,
            recent_interactions=recent,
            context_parts=sum(1 for part in parts if part),
        )

    async def restore(self) -> int:
        """Load persisted contexts at startup, discarding expired and corrupt records"""
        if self.persistence is None:
            return 0
        try:
            session_ids = await self.persistence.list_ids()
        except Exception as e:
            logger.warning(f"⚠️ Could not list persisted contexts: {e}")
            return 0

        restored = 0
        for session_id in session_ids:
            try:
                context = await self.persistence.load(session_id)
            except CorruptRecordError as e:
                logger.warning(f"⚠️ Discarding corrupt context record {session_id}: {e.message}")
                await self._delete_persisted(session_id)
                continue
            except Exception as e:
                logger.warning(f"⚠️ Could not load context {session_id}: {e}")
                continue
            if context is None:
                continue
            if self.is_expired(context):
                await self._delete_persisted(session_id)
                continue
            async with self._locks[context.id]:
                self._contexts.setdefault(context.id, context)
            restored += 1

        logger.info(f"📂 Restored {restored} persisted contexts")
        return restored

    async def _delete_persisted(self, session_id: str) -> None:
        try:
            await self.persistence.delete(session_id)
        except Exception as e:
            logger.warning(f"⚠️ Could not delete persisted context {session_id}: {e}")

    async def cleanup_expired(self) -> int:
        """Remove expired contexts from memory and durable storage"""
        removed = 0
        for session_id in list(self._contexts.keys()):
            async with self._locks[session_id]:
                context = self._contexts.get(session_id)
                if context is not None and self.is_expired(context):
                    self._drop(session_id)
                    removed += 1
        for session_id in list(self._locks.keys()):
            lock = self._locks[session_id]
            if session_id not in self._contexts and not lock.locked():
                del self._locks[session_id]
        if removed:
            logger.info(f"🧹 Cleaned up {removed} expired contexts")
        return removed

    async def _cleanup_loop(self) -> None:
        interval = self.settings.CONTEXT_CLEANUP_INTERVAL_SECONDS
        while True:
            await asyncio.sleep(interval)
            try:
                await self.cleanup_expired()
            except Exception as e:
                logger.error(f"Context cleanup pass failed: {e}")

    def start_cleanup(self) -> None:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def stop_cleanup(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def flush(self) -> None:
        if self.persister is not None:
            await self.persister.flush()

    async def close(self) -> None:
        await self.stop_cleanup()
        if self.persister is not None:
            await self.persister.close()

    def stats(self) -> Dict[str, Any]:
        now = self.clock()
        contexts = list(self._contexts.values())
        active = [c for c in contexts if not self.is_expired(c, now)]
        return {
            "total_contexts": len(contexts),
            "active_contexts": len(active),
            "expired_contexts": len(contexts) - len(active),
            "with_location": sum(1 for c in active if c.location is not None),
            "emergencies": sum(1 for c in active if c.emergency_detected),
            "average_history": round(sum(len(c.history) for c in active) / len(active), 2) if active else 0.0,
            "ttl_seconds": self.ttl_seconds,
            "max_history_items": self.max_history_items,
            "backend": self.persistence.name if self.persistence is not None else None,
            "pending_writes": self.persister.pending if self.persister is not None else 0,
        }
