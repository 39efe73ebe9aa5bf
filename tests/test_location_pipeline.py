import asyncio

import pytest

from harbor_dialogue.adapters.conversation_store import ConversationContextStore
from harbor_dialogue.adapters.geocoding import GeocodeData, GeocodeResult
from harbor_dialogue.adapters.location_pipeline import (
    CONTEXT_CANDIDATE,
    NO_CANDIDATE,
    PROMPT_NEEDED,
    RESOLVED,
    UTTERANCE_CANDIDATE,
    VALIDATING,
    LocationResolutionPipeline,
    extract_location_candidate,
    mentions_current_location,
)
from harbor_dialogue.config.languages import SPANISH, LocalizationProvider
from harbor_dialogue.models import (
    ContextUpdate,
    LocationSource,
    LocationStatus,
    ResolvedLocation,
)

AUSTIN = GeocodeData(city="Austin", state="Texas", country="United States", country_code="US",
                     latitude=30.27, longitude=-97.74, display_name="Austin, Texas", confidence=0.82)
DALLAS = GeocodeData(city="Dallas", state="Texas", country="United States", country_code="US",
                     latitude=32.78, longitude=-96.8, display_name="Dallas, Texas", confidence=0.79)


class FakeGeocoder:
    """Answers from a dict of candidate -> GeocodeData and records every call"""

    def __init__(self, answers=None, delay=0.0, error=None):
        self.answers = answers or {}
        self.delay = delay
        self.error = error
        self.calls = []

    async def geocode(self, location_text):
        self.calls.append(location_text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        data = self.answers.get(location_text)
        if data is None:
            return GeocodeResult(success=False, error="no results")
        return GeocodeResult(success=True, data=data)


def stored_location(raw="Austin, Texas", validated_at=None):
    return ResolvedLocation(raw=raw, city="Austin", state="Texas", country="United States",
                            confidence=0.82, source=LocationSource.UTTERANCE, validated_at=validated_at)


class TestLocationResolutionPipeline:
    """Unit tests for LocationResolutionPipeline module"""

    @pytest.fixture
    def store(self, test_settings, clock):
        return ConversationContextStore(settings=test_settings, clock=clock)

    def make_pipeline(self, store, geocoder, settings):
        return LocationResolutionPipeline(store, geocoder, LocalizationProvider(), settings)

    @pytest.mark.asyncio
    async def test_fresh_context_location_skips_geocoder(self, store, test_settings, clock):
        """Test a recently validated stored location is used without geocoding"""
        await store.update("CA1", ContextUpdate(location=stored_location(validated_at=clock.now)))
        geocoder = FakeGeocoder()
        pipeline = self.make_pipeline(store, geocoder, test_settings)

        result = await pipeline.resolve_location("I need shelter in Dallas, Texas", "CA1")

        assert result.status == LocationStatus.RESOLVED
        assert result.location.city == "Austin"
        assert result.location.source == LocationSource.CONTEXT
        assert result.trace == [NO_CANDIDATE, CONTEXT_CANDIDATE, RESOLVED]
        assert geocoder.calls == []

    @pytest.mark.asyncio
    async def test_utterance_location_resolved_and_stored(self, store, test_settings, clock):
        """Test a validated utterance location is written to the context"""
        geocoder = FakeGeocoder({"Austin, Texas": AUSTIN})
        pipeline = self.make_pipeline(store, geocoder, test_settings)

        result = await pipeline.resolve_location("I need shelter in Austin, Texas", "CA1")

        assert result.resolved is True
        assert result.location.source == LocationSource.UTTERANCE
        assert result.location.validated_at == clock.now
        assert result.trace == [NO_CANDIDATE, UTTERANCE_CANDIDATE, VALIDATING, RESOLVED]
        context = await store.get("CA1")
        assert context.location.city == "Austin"
        assert context.location.confidence == pytest.approx(0.82)

    @pytest.mark.asyncio
    async def test_low_confidence_candidate_prompts(self, store, test_settings):
        """Test a weak geocoding hit asks for more detail and stores nothing"""
        weak = AUSTIN.model_copy(update={"confidence": 0.3})
        pipeline = self.make_pipeline(store, FakeGeocoder({"Springfield": weak}), test_settings)

        result = await pipeline.resolve_location("I need shelter in Springfield", "CA1")

        assert result.status == LocationStatus.PROMPT_NEEDED
        assert result.prompt_key == "moreSpecificLocation"
        assert result.candidate == "Springfield"
        assert result.trace[-1] == PROMPT_NEEDED
        assert result.location is None
        assert await store.get("CA1") is None

    @pytest.mark.asyncio
    async def test_failed_lookup_leaves_stored_location(self, store, test_settings, clock):
        """Test a failed revalidation never erases the stored location"""
        await store.update("CA1", ContextUpdate(location=stored_location(validated_at=clock.now)))
        clock.advance(test_settings.LOCATION_REVALIDATION_SECONDS)
        geocoder = FakeGeocoder()
        pipeline = self.make_pipeline(store, geocoder, test_settings)

        result = await pipeline.resolve_location("I need a shelter", "CA1")

        assert result.status == LocationStatus.PROMPT_NEEDED
        assert result.prompt_key == "locationPrompt"
        assert geocoder.calls == ["Austin, Texas"]
        assert (await store.get("CA1")).location.city == "Austin"

    @pytest.mark.asyncio
    async def test_stale_location_revalidated(self, store, test_settings, clock):
        """Test a stale stored location is geocoded again and refreshed"""
        await store.update("CA1", ContextUpdate(location=stored_location(validated_at=clock.now)))
        clock.advance(test_settings.LOCATION_REVALIDATION_SECONDS + 1)
        pipeline = self.make_pipeline(store, FakeGeocoder({"Austin, Texas": AUSTIN}), test_settings)

        result = await pipeline.resolve_location("I need a shelter", "CA1")

        assert result.status == LocationStatus.RESOLVED
        assert result.location.source == LocationSource.CONTEXT
        assert result.trace == [NO_CANDIDATE, CONTEXT_CANDIDATE, VALIDATING, RESOLVED]
        assert (await store.get("CA1")).location.validated_at == clock.now

    @pytest.mark.asyncio
    async def test_stale_location_falls_back_to_utterance(self, store, test_settings, clock):
        """Test the utterance is tried when the stored location no longer validates"""
        await store.update("CA1", ContextUpdate(location=stored_location(validated_at=clock.now)))
        clock.advance(test_settings.LOCATION_REVALIDATION_SECONDS)
        geocoder = FakeGeocoder({"Dallas, Texas": DALLAS})
        pipeline = self.make_pipeline(store, geocoder, test_settings)

        result = await pipeline.resolve_location("what about in Dallas, Texas", "CA1")

        assert result.location.city == "Dallas"
        assert geocoder.calls == ["Austin, Texas", "Dallas, Texas"]
        assert (await store.get("CA1")).location.city == "Dallas"

    @pytest.mark.asyncio
    async def test_near_me_prompts_for_current_location(self, store, test_settings):
        """Test 'near me' without a place asks where the caller is"""
        geocoder = FakeGeocoder()
        pipeline = self.make_pipeline(store, geocoder, test_settings)

        result = await pipeline.resolve_location("find a shelter near me", "CA1")

        assert result.prompt_key == "currentLocation"
        assert "city" in result.prompt_text
        assert geocoder.calls == []

    @pytest.mark.asyncio
    async def test_no_location_anywhere_prompts(self, store, test_settings):
        """Test an utterance with no place and no stored location asks for one"""
        geocoder = FakeGeocoder({"Austin, Texas": AUSTIN})
        pipeline = self.make_pipeline(store, geocoder, test_settings)

        result = await pipeline.resolve_location("Can you help me", "CA1")

        assert result.status == LocationStatus.PROMPT_NEEDED
        assert result.prompt_key == "locationPrompt"
        assert result.candidate is None
        assert result.trace == [NO_CANDIDATE, UTTERANCE_CANDIDATE, PROMPT_NEEDED]
        assert geocoder.calls == []
        assert await store.get("CA1") is None

    @pytest.mark.asyncio
    async def test_incomplete_result_rejected(self, store, test_settings):
        """Test hits without city, state or country are not accepted"""
        vague = GeocodeData(display_name="somewhere", confidence=0.9)
        pipeline = self.make_pipeline(store, FakeGeocoder({"Nowhere": vague}), test_settings)
        result = await pipeline.resolve_location("I am in Nowhere", "CA1")
        assert result.status == LocationStatus.PROMPT_NEEDED

    @pytest.mark.asyncio
    async def test_geocoder_timeout(self, store, test_settings):
        """Test a slow geocoder is treated as a failed lookup"""
        settings = test_settings.model_copy(update={"GEOCODING_TIMEOUT_SECONDS": 0.05})
        geocoder = FakeGeocoder({"Austin, Texas": AUSTIN}, delay=1.0)
        pipeline = self.make_pipeline(store, geocoder, settings)

        result = await pipeline.resolve_location("shelter in Austin, Texas", "CA1")

        assert result.status == LocationStatus.PROMPT_NEEDED
        assert result.prompt_key == "moreSpecificLocation"

    @pytest.mark.asyncio
    async def test_geocoder_exception(self, store, test_settings):
        """Test unexpected geocoder errors do not escape"""
        pipeline = self.make_pipeline(store, FakeGeocoder(error=RuntimeError("boom")), test_settings)
        result = await pipeline.resolve_location("shelter in Austin, Texas", "CA1")
        assert result.status == LocationStatus.PROMPT_NEEDED

    @pytest.mark.asyncio
    async def test_prompt_is_localized(self, store, test_settings):
        """Test the prompt text follows the caller's language"""
        pipeline = self.make_pipeline(store, FakeGeocoder(), test_settings)
        result = await pipeline.resolve_location("necesito un refugio", "CA1", language="es-ES")
        assert result.prompt_text == SPANISH.prompts["locationPrompt"]

    @pytest.mark.parametrize("text,expected", [
        ("I need shelter in Austin, Texas", "Austin, Texas"),
        ("I'm in San Francisco, California, USA", "San Francisco, California, USA"),
        ("I'm at Union Station", "Union Station"),
        ("the city of Springfield, IL", "Springfield, IL"),
        ("Portland, OR please", "Portland, OR"),
        ("I'm at home", None),
        ("I need help", None),
        ("", None),
    ])
    def test_extract_location_candidate(self, text, expected):
        """Test candidate extraction from utterances"""
        assert extract_location_candidate(text) == expected

    @pytest.mark.parametrize("text,expected", [
        ("shelters near me", True),
        ("what's nearby", True),
        ("I'm in Austin", False),
    ])
    def test_mentions_current_location(self, text, expected):
        """Test current-location phrases"""
        assert mentions_current_location(text) is expected
