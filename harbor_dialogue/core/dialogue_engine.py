"""
Dialogue Engine

Runs one caller turn end to end: correct the transcription, classify the
intent against the session context, fill the location slot or resolve a
follow-up when the intent needs it, then merge the outcome back into the
context store.

Turns for the same session are serialized. Ending a session stops new turns
from being accepted but lets a turn already in progress finish and write its
results.
"""

import asyncio
import logging
import re
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from ..adapters.context_persistence import build_persistence
from ..adapters.conversation_store import ConversationContextStore
from ..adapters.geocoding import GeocodingValidator
from ..adapters.intent_classifier import IntentClassifier
from ..adapters.location_pipeline import (
    LocationResolutionPipeline,
    extract_location_candidate,
    mentions_current_location,
)
from ..adapters.transcription_corrector import TranscriptionCorrector
from ..config.languages import LocalizationProvider, localization as default_localization
from ..config.settings import Settings, settings as default_settings
from ..exceptions import InvalidTurnError, SessionClosedError
from ..models import (
    ContextUpdate,
    ConversationContext,
    IntentCategory,
    IntentClassification,
    Interaction,
    QueryResultSnapshot,
    ResultItem,
    SafetyLevel,
    TurnResult,
)
from .follow_up import FollowUpResolver

logger = logging.getLogger(__name__)

FAMILY_CONCERNS = {
    "children": ("child", "children", "kid", "kids", "son", "daughter", "baby"),
    "pets": ("pet", "pets", "dog", "cat"),
    "elders": ("elder", "elderly", "senior", "grandmother", "grandfather"),
}

EMOTIONAL_TONES = {
    "urgent": ("urgent", "immediately", "right now", "emergency"),
    "fearful": ("scared", "afraid", "fear", "terrified"),
    "uncertain": ("confused", "unsure", "don't know", "not sure"),
}

SAFETY_RANK = {
    SafetyLevel.UNKNOWN: 0,
    SafetyLevel.LOW: 1,
    SafetyLevel.ELEVATED: 2,
    SafetyLevel.EMERGENCY: 3,
}


def _detect(text: str, table: Dict[str, tuple]) -> List[str]:
    lowered = text.lower()
    return [
        label for label, words in table.items()
        if any(re.search(rf"\b{re.escape(word)}\b", lowered) for word in words)
    ]


def _merge_labels(existing: Optional[str], found: List[str]) -> Optional[str]:
    labels = [label.strip() for label in (existing or "").split(",") if label.strip()]
    for label in found:
        if label not in labels:
            labels.append(label)
    return ", ".join(labels) if labels else None


class DialogueEngine:
    """Processes caller turns against per-session conversation state"""

    def __init__(self, store: ConversationContextStore, pipeline: LocationResolutionPipeline,
                 corrector: Optional[TranscriptionCorrector] = None,
                 classifier: Optional[IntentClassifier] = None,
                 follow_up: Optional[FollowUpResolver] = None,
                 localization: Optional[LocalizationProvider] = None,
                 settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.store = store
        self.pipeline = pipeline
        self.localization = localization or default_localization
        self.corrector = corrector or TranscriptionCorrector(settings=self.settings)
        self.classifier = classifier or IntentClassifier(localization=self.localization)
        self.follow_up = follow_up or FollowUpResolver()
        self.location_intents = {IntentCategory(value) for value in self.settings.LOCATION_DEPENDENT_INTENTS}

        self._turn_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        # session id -> turns holding or waiting on that session's lock
        self._lock_users: Dict[str, int] = defaultdict(int)
        # session id -> time the session was ended
        self._closed: Dict[str, float] = {}

    def is_closed(self, session_id: str) -> bool:
        return session_id in self._closed

    @asynccontextmanager
    async def _session_turn(self, session_id: str):
        """Hold the session's turn lock, dropping it once no turn needs it"""
        self._lock_users[session_id] += 1
        try:
            async with self._turn_locks[session_id]:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if self._lock_users[session_id] <= 0:
                del self._lock_users[session_id]
                self._turn_locks.pop(session_id, None)

    async def process_turn(self, session_id: str, raw_text: str, confidence: Optional[float] = None,
                           language: Optional[str] = None) -> TurnResult:
        if not isinstance(session_id, str) or not session_id.strip():
            raise InvalidTurnError("Session id is required")
        if not isinstance(raw_text, str) or not raw_text.strip():
            raise InvalidTurnError("Utterance text is required", session_id=session_id)
        if self.is_closed(session_id):
            raise SessionClosedError(f"Session {session_id} has ended", session_id=session_id)

        async with self._session_turn(session_id):
            # the session may have ended while this turn waited
            if self.is_closed(session_id):
                raise SessionClosedError(f"Session {session_id} has ended", session_id=session_id)
            return await self._run_turn(session_id, raw_text, confidence, language)

    async def _run_turn(self, session_id: str, raw_text: str, confidence: Optional[float],
                        language: Optional[str]) -> TurnResult:
        transcription = self.corrector.validate(raw_text, confidence)
        context = await self.store.get(session_id)
        active_language = language or (context.language if context else None) or self.settings.DEFAULT_LANGUAGE

        if transcription.should_reprompt:
            reprompt_key = self.corrector.reprompt_key(transcription)
            logger.info(
                f"🔁 Low confidence ({transcription.confidence}) for {session_id}, asking caller to repeat"
            )
            return TurnResult(
                session_id=session_id,
                transcription=transcription,
                reprompt_key=reprompt_key,
                reprompt_text=self.localization.get_prompt(active_language, reprompt_key),
                context_summary=await self.store.build_summary(session_id),
            )

        text = transcription.corrected
        classification = self.classifier.classify(text, context, active_language)
        pending = context.pending_location_intent if context else None
        if pending is not None and self._answers_location_prompt(text, classification.category):
            logger.info(f"📍 Resuming {pending.value} for {session_id} with the caller's location answer")
            classification = IntentClassification(
                category=pending,
                confidence=context.last_intent_confidence or classification.confidence,
                reasoning_tags=classification.reasoning_tags + [f"pending_location:{pending.value}"],
            )
        category = classification.category
        logger.info(f"🎯 Turn for {session_id} classified as {category.value} ({classification.confidence:.2f})")

        location_result = None
        follow_up = None
        if category in self.location_intents:
            location_result = await self.pipeline.resolve_location(text, session_id, active_language)
        elif category == IntentCategory.FOLLOW_UP:
            snapshot = await self.store.fresh_query_result(session_id)
            follow_up = self.follow_up.resolve(text, snapshot)

        update = self._build_update(context, text, classification.category, classification.confidence, language)
        if location_result is not None and not location_result.resolved:
            update.pending_location_intent = category
        elif pending is not None:
            update.clear_pending_location = True
        await self.store.update(session_id, update)

        return TurnResult(
            session_id=session_id,
            transcription=transcription,
            intent_classification=classification,
            location_result=location_result,
            follow_up=follow_up,
            context_summary=await self.store.build_summary(session_id),
        )

    def _answers_location_prompt(self, text: str, category: IntentCategory) -> bool:
        """Whether a turn after a location prompt should be read as the answer to it"""
        if category in self.location_intents or category == IntentCategory.EMERGENCY:
            return False
        if category in (IntentCategory.FOLLOW_UP, IntentCategory.UNKNOWN):
            return True
        return extract_location_candidate(text) is not None or mentions_current_location(text)

    def _build_update(self, context: Optional[ConversationContext], text: str, category: IntentCategory,
                      confidence: float, language: Optional[str]) -> ContextUpdate:
        fields = {
            "interaction": Interaction(query=text, intent=category, timestamp=self.store.clock()),
            "last_intent": category,
            "last_intent_confidence": confidence,
            "last_query": text,
        }
        if language:
            fields["language"] = self.localization.resolve(language).code

        current_level = context.safety_level if context else SafetyLevel.UNKNOWN
        if category == IntentCategory.EMERGENCY:
            fields["safety_level"] = SafetyLevel.EMERGENCY
            fields["emergency_detected"] = True
        elif category == IntentCategory.SAFETY_PLANNING and SAFETY_RANK[current_level] < SAFETY_RANK[SafetyLevel.ELEVATED]:
            fields["safety_level"] = SafetyLevel.ELEVATED
        elif current_level == SafetyLevel.UNKNOWN and category != IntentCategory.UNKNOWN:
            fields["safety_level"] = SafetyLevel.LOW

        concerns = _detect(text, FAMILY_CONCERNS)
        if concerns:
            fields["family_concerns"] = _merge_labels(context.family_concerns if context else None, concerns)
        tones = _detect(text, EMOTIONAL_TONES)
        if tones:
            fields["emotional_tone"] = ", ".join(tones)

        return ContextUpdate(**fields)

    async def record_query_result(self, session_id: str, intent: IntentCategory, result_items: List[ResultItem],
                                  location: Optional[str] = None, raw_voice_text: Optional[str] = None,
                                  raw_display_text: Optional[str] = None) -> QueryResultSnapshot:
        """Keep the results just given to the caller so follow-ups can refer to them"""
        snapshot = QueryResultSnapshot(
            intent=intent,
            location=location,
            result_items=result_items[:3],
            raw_voice_text=raw_voice_text,
            raw_display_text=raw_display_text,
            captured_at=self.store.clock(),
        )
        await self.store.update(session_id, ContextUpdate(last_query_result=snapshot, clear_pending_location=True))
        logger.info(f"💾 Stored {len(snapshot.result_items)} results for follow-ups on {session_id}")
        return snapshot

    async def end_session(self, session_id: str) -> None:
        """Stop accepting turns for a session. Safe to call more than once."""
        if not session_id:
            return
        first_close = session_id not in self._closed
        if first_close:
            self._closed[session_id] = self.store.clock()

        # let an in-flight turn finish writing its results
        async with self._session_turn(session_id):
            pass

        if first_close:
            if self.settings.CLEAR_CONTEXT_ON_HANGUP:
                await self.store.clear(session_id)
            logger.info(f"📴 Session ended for {session_id}")
        self.prune_closed_sessions()

    def prune_closed_sessions(self) -> int:
        """Forget ended sessions once their context could no longer be alive"""
        cutoff = self.store.clock() - self.settings.CONTEXT_TTL_SECONDS
        stale = [sid for sid, closed_at in self._closed.items() if closed_at <= cutoff]
        for sid in stale:
            del self._closed[sid]
        return len(stale)

    async def start(self) -> None:
        await self.store.restore()
        self.store.start_cleanup()

    async def shutdown(self) -> None:
        await self.store.close()
        await self.pipeline.geocoder.aclose()

    def stats(self) -> Dict[str, object]:
        return {
            "contexts": self.store.stats(),
            "geocoding_cache": self.pipeline.geocoder.cache_stats(),
            "closed_sessions": len(self._closed),
            "active_turn_locks": len(self._turn_locks),
        }


def build_engine(settings: Optional[Settings] = None) -> DialogueEngine:
    """Wire the engine and its collaborators from configuration"""
    settings = settings or default_settings
    localization = LocalizationProvider(default_language=settings.DEFAULT_LANGUAGE)
    persistence = None if settings.CONTEXT_BACKEND.lower() == "none" else build_persistence(settings)
    store = ConversationContextStore(settings=settings, persistence=persistence)
    geocoder = GeocodingValidator(settings=settings)
    pipeline = LocationResolutionPipeline(store, geocoder, localization=localization, settings=settings)
    return DialogueEngine(store, pipeline, localization=localization, settings=settings)
