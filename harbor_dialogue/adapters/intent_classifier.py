import logging
import re
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

from ..config.languages import LanguageProfile, LocalizationProvider, localization as default_localization
from ..models import ConversationContext, IntentCategory, IntentClassification

logger = logging.getLogger(__name__)

BASE_KEYWORDS: Dict[IntentCategory, Tuple[str, ...]] = {
    IntentCategory.EMERGENCY: (
        'emergency', '911', 'help now', 'danger', 'immediate', 'urgent',
        'call police', 'police', 'ambulance', 'fire', 'hurt', 'injured',
        'attack', 'violence', 'abuse', 'threat', 'scared', 'fear',
    ),
    IntentCategory.FIND_SHELTER: (
        'shelter', 'safe place', 'refuge', 'housing', 'place to stay',
        'homeless', 'nowhere to go', 'need place', 'stay safe',
        'domestic violence shelter', 'women shelter', 'family shelter',
    ),
    IntentCategory.LEGAL_HELP: (
        'legal', 'lawyer', 'attorney', 'court', 'law', 'restraining order',
        'divorce', 'custody', 'visitation', 'child support', 'alimony',
        'legal aid', 'legal help', 'rights', 'legal advice',
    ),
    IntentCategory.COUNSELING: (
        'counseling', 'therapy', 'therapist', 'counselor', 'psychologist',
        'mental health', 'support group', 'talk to someone', 'help me',
        'depression', 'anxiety', 'stress', 'trauma', 'ptsd',
    ),
    IntentCategory.SAFETY_PLANNING: (
        'safety plan', 'safety planning', 'escape plan', 'leave safely',
        'how to leave', 'when to leave', 'safe exit', 'emergency plan',
        'protect myself', 'protect children', 'stay safe',
    ),
    IntentCategory.GENERAL_HELP: (
        'help', 'need help', 'assistance', 'support', 'resources',
        'information', 'what can i do', 'options', 'services',
    ),
    IntentCategory.OFF_TOPIC: (
        'weather', 'sports', 'politics', 'entertainment', 'shopping',
        'food', 'travel', 'technology', 'business', 'finance',
        'joke', 'funny', 'story', 'personal', 'unrelated',
    ),
}

FOLLOW_UP_PHRASES = (
    'what about', 'how about', 'also', 'too', 'as well',
    'in addition', 'more', 'other', 'different', 'else',
    'what else', 'anything else', 'more options',
)
FOLLOW_UP_MAX_TOKENS = 5

SPECIFIC_CATEGORIES = frozenset({
    IntentCategory.EMERGENCY, IntentCategory.FIND_SHELTER, IntentCategory.LEGAL_HELP,
})
CLEAR_REQUEST_WORDS = ('help', 'need', 'want', 'looking for', 'find')
HEDGE_WORDS = ('maybe', 'might', 'possibly', 'not sure')

BASE_CONFIDENCE = 0.5

# Matchers return the evidence that fired, or None
Predicate = Callable[[str, Optional[ConversationContext], LanguageProfile], Optional[str]]


class IntentMatcher(NamedTuple):
    category: IntentCategory
    predicate: Predicate


def keyword_predicate(category: IntentCategory) -> Predicate:
    """Case-insensitive substring match over base plus language keywords"""

    def predicate(text: str, context: Optional[ConversationContext], profile: LanguageProfile) -> Optional[str]:
        for keyword in BASE_KEYWORDS.get(category, ()) + profile.extra_keywords(category.value):
            if keyword.lower() in text:
                return f"keyword:{keyword}"
        return None

    return predicate


def _has_phrase(text: str, phrase: str) -> bool:
    return re.search(rf"\b{re.escape(phrase)}\b", text) is not None


def follow_up_predicate(text: str, context: Optional[ConversationContext], profile: LanguageProfile) -> Optional[str]:
    if context is None or context.last_intent in (None, IntentCategory.UNKNOWN):
        return None
    for phrase in FOLLOW_UP_PHRASES:
        if _has_phrase(text, phrase):
            return f"follow_up_phrase:{phrase}"
    if len(text.split()) <= FOLLOW_UP_MAX_TOKENS:
        return "follow_up_short_utterance"
    return None


MATCHERS: Tuple[IntentMatcher, ...] = (
    IntentMatcher(IntentCategory.EMERGENCY, keyword_predicate(IntentCategory.EMERGENCY)),
    IntentMatcher(IntentCategory.FIND_SHELTER, keyword_predicate(IntentCategory.FIND_SHELTER)),
    IntentMatcher(IntentCategory.LEGAL_HELP, keyword_predicate(IntentCategory.LEGAL_HELP)),
    IntentMatcher(IntentCategory.COUNSELING, keyword_predicate(IntentCategory.COUNSELING)),
    IntentMatcher(IntentCategory.SAFETY_PLANNING, keyword_predicate(IntentCategory.SAFETY_PLANNING)),
    IntentMatcher(IntentCategory.GENERAL_HELP, keyword_predicate(IntentCategory.GENERAL_HELP)),
    IntentMatcher(IntentCategory.FOLLOW_UP, follow_up_predicate),
    IntentMatcher(IntentCategory.OFF_TOPIC, keyword_predicate(IntentCategory.OFF_TOPIC)),
)


class IntentClassifier:
    """Classifies caller utterances into support intents"""

    def __init__(self, matchers: Tuple[IntentMatcher, ...] = MATCHERS,
                 localization: Optional[LocalizationProvider] = None):
        self.matchers = tuple(matchers)
        self.localization = localization or default_localization

    def classify(self, text: str, context: Optional[ConversationContext] = None,
                 language: Optional[str] = None) -> IntentClassification:
        """Return the first matching category in priority order with a heuristic confidence"""
        if not text or not text.strip():
            return IntentClassification(category=IntentCategory.UNKNOWN, confidence=0.0, reasoning_tags=["empty_text"])

        profile = self.localization.resolve(language or (context.language if context else None))
        lowered = text.lower()

        category = IntentCategory.UNKNOWN
        tags: List[str] = [f"lang:{profile.code}"]
        for matcher in self.matchers:
            evidence = matcher.predicate(lowered, context, profile)
            if evidence:
                category = matcher.category
                tags.append(evidence)
                break
        else:
            tags.append("no_match")

        confidence, adjustments = self.score(lowered, category, context)
        tags.extend(adjustments)

        logger.debug(f"🎯 Intent classified as {category.value} ({confidence:.2f}) for '{text}'")
        return IntentClassification(category=category, confidence=confidence, reasoning_tags=tags)

    def score(self, text: str, category: IntentCategory,
              context: Optional[ConversationContext] = None) -> Tuple[float, List[str]]:
        """Additive confidence score and the adjustments that produced it"""
        if len(text.strip()) < 3:
            return 0.0, ["too_short"]

        confidence = BASE_CONFIDENCE
        adjustments: List[str] = []

        word_count = len(text.split())
        if word_count >= 5:
            confidence += 0.2
            adjustments.append("length:long")
        elif word_count >= 3:
            confidence += 0.1
            adjustments.append("length:medium")

        if category in SPECIFIC_CATEGORIES:
            confidence += 0.2
            adjustments.append("specific_category")

        if context is not None and context.last_intent == category:
            confidence += 0.1
            adjustments.append("context_continuity")

        lowered = text.lower()
        if any(word in lowered for word in CLEAR_REQUEST_WORDS):
            confidence += 0.1
            adjustments.append("clear_request")

        if any(_has_phrase(lowered, word) for word in HEDGE_WORDS):
            confidence -= 0.1
            adjustments.append("hedging")

        return round(max(0.0, min(1.0, confidence)), 4), adjustments

    def suggest(self, text: str, context: Optional[ConversationContext] = None,
                language: Optional[str] = None, min_confidence: float = 0.3) -> List[IntentClassification]:
        """Every category whose matcher fires, highest confidence first"""
        if not text or not text.strip():
            return []
        profile = self.localization.resolve(language or (context.language if context else None))
        lowered = text.lower()
        suggestions = []
        for matcher in self.matchers:
            evidence = matcher.predicate(lowered, context, profile)
            if not evidence:
                continue
            confidence, adjustments = self.score(lowered, matcher.category, context)
            if confidence >= min_confidence:
                suggestions.append(IntentClassification(
                    category=matcher.category,
                    confidence=confidence,
                    reasoning_tags=[f"lang:{profile.code}", evidence] + adjustments,
                ))
        # stable sort keeps priority order on ties
        suggestions.sort(key=lambda s: s.confidence, reverse=True)
        return suggestions
