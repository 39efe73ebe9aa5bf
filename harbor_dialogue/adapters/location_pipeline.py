"""
Location Resolution Pipeline

Fills the location slot for intents that need one. A location already on
the session context is tried first; otherwise a candidate is pulled out of
the current utterance. Every candidate is checked with the geocoder and only
accepted when the hit is complete and confident enough. When nothing
validates, the caller gets a localized prompt asking for city, state and
country, and the stored location is left untouched.

States recorded in LocationResult.trace:
    NO_CANDIDATE -> CONTEXT_CANDIDATE -> VALIDATING -> RESOLVED
                 -> UTTERANCE_CANDIDATE -> VALIDATING -> RESOLVED | PROMPT_NEEDED
"""

import asyncio
import logging
import re
from typing import List, Optional

from ..config.languages import LocalizationProvider, localization as default_localization
from ..config.settings import Settings, settings as default_settings
from ..models import (
    ContextUpdate,
    LocationResult,
    LocationSource,
    LocationStatus,
    ResolvedLocation,
)
from .conversation_store import ConversationContextStore
from .geocoding import GeocodingValidator

logger = logging.getLogger(__name__)

NO_CANDIDATE = "NO_CANDIDATE"
CONTEXT_CANDIDATE = "CONTEXT_CANDIDATE"
UTTERANCE_CANDIDATE = "UTTERANCE_CANDIDATE"
VALIDATING = "VALIDATING"
RESOLVED = "RESOLVED"
PROMPT_NEEDED = "PROMPT_NEEDED"

_CAP = r"[A-Z][a-z]+(?:[\s-]+[A-Z][a-z]+)*"
_REGION = r"[A-Z]{2,3}\b"

LOCATION_PATTERNS = (
    re.compile(rf"\b(?:[Ii]n|[Aa]t|[Nn]ear|[Aa]round)\s+({_CAP}(?:,\s*(?:{_CAP}|{_REGION}))*)"),
    re.compile(rf"\b(?:[Cc]ity|[Tt]own)\s+of\s+({_CAP}(?:,\s*(?:{_CAP}|{_REGION}))*)"),
    re.compile(rf"\b({_CAP},\s*[A-Z]{{2}})\b"),
)

CURRENT_LOCATION_PHRASES = (
    "near me", "my location", "around me", "close to me", "current location",
    "nearby", "here", "where i am",
)

NON_PLACE_WORDS = frozenset({
    "home", "here", "there", "work", "school", "night", "least", "first", "once",
    "the", "this", "that", "my", "me",
})


def mentions_current_location(text: str) -> bool:
    lowered = text.lower()
    return any(re.search(rf"\b{re.escape(phrase)}\b", lowered) for phrase in CURRENT_LOCATION_PHRASES)


def extract_location_candidate(text: str) -> Optional[str]:
    """First location-looking phrase in the utterance, or None"""
    if not text:
        return None
    for pattern in LOCATION_PATTERNS:
        for match in pattern.finditer(text):
            candidate = match.group(1).strip(" ,")
            if candidate.lower() in NON_PLACE_WORDS or candidate.lower() in CURRENT_LOCATION_PHRASES:
                continue
            return candidate
    return None


class LocationResolutionPipeline:
    """Resolves the caller's location from context or speech, validated by geocoding"""

    def __init__(self, store: ConversationContextStore, geocoder: GeocodingValidator,
                 localization: Optional[LocalizationProvider] = None,
                 settings: Optional[Settings] = None):
        self.store = store
        self.geocoder = geocoder
        self.localization = localization or default_localization
        self.settings = settings or default_settings
        self.confidence_threshold = self.settings.LOCATION_CONFIDENCE_THRESHOLD
        self.revalidation_seconds = self.settings.LOCATION_REVALIDATION_SECONDS
        self.geocoding_timeout = self.settings.GEOCODING_TIMEOUT_SECONDS

    def is_fresh(self, location: ResolvedLocation) -> bool:
        """Validated recently enough to reuse without another geocoding call"""
        if location.validated_at is None:
            return False
        return self.store.clock() - location.validated_at < self.revalidation_seconds

    async def validate_candidate(self, candidate: str, source: LocationSource,
                                 session_id: str) -> Optional[ResolvedLocation]:
        try:
            result = await asyncio.wait_for(self.geocoder.geocode(candidate), timeout=self.geocoding_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ Geocoding '{candidate}' timed out for {session_id}")
            return None
        except Exception as e:
            logger.error(f"Geocoding '{candidate}' failed for {session_id}: {e}")
            return None

        if not result.success or result.data is None:
            logger.info(f"📍 Location '{candidate}' not found for {session_id}: {result.error}")
            return None
        data = result.data
        if not data.is_complete:
            logger.info(f"📍 Location '{candidate}' has no city, state or country for {session_id}")
            return None
        if data.confidence < self.confidence_threshold:
            logger.info(
                f"📍 Location '{candidate}' confidence {data.confidence:.2f} below "
                f"{self.confidence_threshold} for {session_id}"
            )
            return None

        return ResolvedLocation(
            raw=candidate,
            city=data.city,
            state=data.state,
            country=data.country,
            latitude=data.latitude,
            longitude=data.longitude,
            confidence=data.confidence,
            source=source,
            validated_at=self.store.clock(),
        )

    async def resolve_location(self, utterance_text: str, session_id: str,
                               language: Optional[str] = None) -> LocationResult:
        trace: List[str] = [NO_CANDIDATE]
        context = await self.store.get(session_id)

        if context is not None and context.location is not None:
            trace.append(CONTEXT_CANDIDATE)
            stored = context.location
            if self.is_fresh(stored):
                trace.append(RESOLVED)
                logger.info(f"📍 Reusing validated location '{stored.raw}' for {session_id}")
                return LocationResult(
                    status=LocationStatus.RESOLVED,
                    location=stored.model_copy(update={"source": LocationSource.CONTEXT}),
                    candidate=stored.raw,
                    trace=trace,
                )

            trace.append(VALIDATING)
            revalidated = await self.validate_candidate(stored.raw, LocationSource.CONTEXT, session_id)
            if revalidated is not None:
                await self.store.update(session_id, ContextUpdate(location=revalidated))
                trace.append(RESOLVED)
                logger.info(f"📍 Revalidated stored location '{stored.raw}' for {session_id}")
                return LocationResult(
                    status=LocationStatus.RESOLVED, location=revalidated, candidate=stored.raw, trace=trace,
                )

        trace.append(UTTERANCE_CANDIDATE)
        candidate = extract_location_candidate(utterance_text)
        if candidate is not None:
            trace.append(VALIDATING)
            resolved = await self.validate_candidate(candidate, LocationSource.UTTERANCE, session_id)
            if resolved is not None:
                await self.store.update(session_id, ContextUpdate(location=resolved))
                trace.append(RESOLVED)
                logger.info(f"📍 Location resolved from utterance for {session_id}: {resolved.describe()}")
                return LocationResult(
                    status=LocationStatus.RESOLVED, location=resolved, candidate=candidate, trace=trace,
                )

        trace.append(PROMPT_NEEDED)
        if candidate is not None:
            prompt_key = "moreSpecificLocation"
        elif mentions_current_location(utterance_text or ""):
            prompt_key = "currentLocation"
        else:
            prompt_key = "locationPrompt"
        logger.info(f"❓ Location needed for {session_id}, prompting with {prompt_key}")
        return LocationResult(
            status=LocationStatus.PROMPT_NEEDED,
            prompt_key=prompt_key,
            prompt_text=self.localization.get_prompt(language, prompt_key),
            candidate=candidate,
            trace=trace,
        )
