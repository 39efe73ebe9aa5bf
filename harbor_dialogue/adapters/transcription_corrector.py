"""
Transcription Corrector

Cleans up speech-to-text output before intent classification: applies an
ordered table of regex correction rules, flags phrasing that looks like a
recognition artifact, and buckets the recognizer's confidence score.
"""

import logging
import re
from typing import NamedTuple, Optional, Pattern, Tuple

from ..config.settings import Settings, settings as default_settings
from ..models import (
    ConfidenceLevel,
    CorrectionRecord,
    TranscriptionValidationResult,
)

logger = logging.getLogger(__name__)

PLACE_NOUNS = (
    "Station|Street|Avenue|Road|Drive|Lane|Place|Boulevard|Highway|Freeway|Interstate|"
    "Center|Plaza|Mall|Building|Complex|District|Neighborhood|Park|Area|Region|County|"
    "City|Town|State|Province|Country"
)

# Capitalized words that follow a bare "I" in normal speech
_PRONOUN_VERBS = (
    "Am|Need|Want|Have|Had|Live|Lived|Was|Will|Can|Could|Would|Should|Think|Do|Did|Don|"
    "Just|Also|Really|Got|Feel|Know|Hope|Mean|Said|Went|Heard|Moved|Left|Stay|Called"
)

_CAP_RUN = r"(?:[A-Z][a-z]+\s+)*"

PREPOSITIONS = frozenset({
    "in", "at", "near", "around", "on", "by", "from", "to", "of", "the",
    "toward", "towards", "outside", "behind", "past", "into",
})

_WHITESPACE = re.compile(r"\s+")


class CorrectionRule(NamedTuple):
    rule_id: str
    group: str
    pattern: Pattern
    replacement: str


CORRECTION_RULES: Tuple[CorrectionRule, ...] = (
    CorrectionRule(
        "location.pronoun_number",
        "location",
        re.compile(rf"\bI\s+(?!(?:{_PRONOUN_VERBS})\b)({_CAP_RUN}[A-Z][a-z]*\s+\d+)\b"),
        r"I'm at \1",
    ),
    CorrectionRule(
        "location.pronoun_place",
        "location",
        re.compile(rf"\bI\s+(?!(?:{_PRONOUN_VERBS})\b)({_CAP_RUN}[A-Z][a-z]+\s+(?:{PLACE_NOUNS}))\b"),
        r"I'm at \1",
    ),
    CorrectionRule(
        "general.help_finding",
        "general",
        re.compile(r"\b(I\s+need\s+help\s+)find\b", re.IGNORECASE),
        r"\1finding",
    ),
    CorrectionRule(
        "general.am_at",
        "general",
        re.compile(r"\b[Ii]\s+am\s+at\s+(?=[A-Z])"),
        "I'm at ",
    ),
    CorrectionRule(
        "general.am_near",
        "general",
        re.compile(r"\b[Ii](?:\s+am|'m)\s+near\s+(?=[A-Z])"),
        "I'm near ",
    ),
    CorrectionRule(
        "general.fillers",
        "general",
        re.compile(r"\b(?:u+m+|u+h+|uhm|erm)\b,?\s*", re.IGNORECASE),
        "",
    ),
    CorrectionRule(
        "general.repeated_word",
        "general",
        # lowercase only, so place names like "Walla Walla" survive
        re.compile(r"\b([a-z]+|I)(?:\s+\1\b)+"),
        r"\1",
    ),
    CorrectionRule(
        "general.shelter_mishearing",
        "general",
        re.compile(r"\b(?:shelder|shelther|shelta|sheltar)\b", re.IGNORECASE),
        "shelter",
    ),
)

SUSPICIOUS_PRONOUN_DIGIT = re.compile(rf"\bI\s+{_CAP_RUN}[A-Z][a-z]*\s+\d+\b")
SUSPICIOUS_PLACE_PHRASE = re.compile(rf"((?:\b[A-Z][a-z]+\s+)+)(?:{PLACE_NOUNS})\b")


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


class TranscriptionCorrector:
    """Applies the correction rule table and classifies recognizer confidence"""

    def __init__(self, rules: Tuple[CorrectionRule, ...] = CORRECTION_RULES,
                 settings: Optional[Settings] = None):
        self.rules = tuple(rules)
        self.settings = settings or default_settings
        # Enough passes for every rule to react to every other rule's output
        self.max_passes = len(self.rules) + 1

    def confidence_level(self, confidence: Optional[float]) -> ConfidenceLevel:
        """Bucket a recognizer confidence score"""
        if confidence is None:
            return ConfidenceLevel.UNKNOWN
        if confidence >= self.settings.CONFIDENCE_HIGH:
            return ConfidenceLevel.HIGH
        if confidence >= self.settings.CONFIDENCE_MEDIUM:
            return ConfidenceLevel.MEDIUM
        if confidence >= self.settings.CONFIDENCE_LOW:
            return ConfidenceLevel.LOW
        return ConfidenceLevel.VERY_LOW

    def is_valid_confidence(self, confidence: Optional[float]) -> bool:
        return confidence is None or confidence >= self.settings.CONFIDENCE_LOW

    def should_reprompt(self, confidence: Optional[float]) -> bool:
        return confidence is not None and confidence < self.settings.CONFIDENCE_VERY_LOW

    def apply_rules(self, text: str):
        """Run the rule table to a fixed point, returning the text and the rules that changed it"""
        corrected = text
        corrections = []
        for _ in range(self.max_passes):
            changed = False
            for rule in self.rules:
                after = normalize_whitespace(rule.pattern.sub(rule.replacement, corrected))
                if after == corrected:
                    continue
                corrections.append(CorrectionRecord(rule_id=rule.rule_id, before=corrected, after=after))
                corrected = after
                changed = True
            if not changed:
                break
        return corrected, corrections

    def has_suspicious_pattern(self, text: str) -> bool:
        """Look for phrasing that usually comes from a misrecognized location"""
        if SUSPICIOUS_PRONOUN_DIGIT.search(text):
            return True
        for match in SUSPICIOUS_PLACE_PHRASE.finditer(text):
            preceding = text[:match.start()].split()
            if not preceding or preceding[-1].lower().strip(",.") not in PREPOSITIONS:
                return True
        return False

    def validate(self, text, confidence: Optional[float] = None) -> TranscriptionValidationResult:
        """Correct a transcription and report how far it can be trusted"""
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float, type(None))):
            logger.debug(f"Ignoring non-numeric transcription confidence {confidence!r}")
            confidence = None
        if confidence is not None:
            confidence = float(confidence)

        if not isinstance(text, str) or not text.strip():
            return TranscriptionValidationResult(
                original=text if isinstance(text, str) else "",
                corrected="",
                confidence=confidence,
                confidence_level=ConfidenceLevel.UNKNOWN,
                is_valid=False,
                should_reprompt=False,
            )

        original = normalize_whitespace(text)
        corrected, corrections = self.apply_rules(original)

        suspicious = False
        if not corrections:
            suspicious = self.has_suspicious_pattern(corrected)
            if suspicious:
                logger.warning(f"🔍 Suspicious location phrasing in transcription: '{corrected}'")

        for record in corrections:
            logger.info(f"🔍 Transcription corrected by {record.rule_id}: '{record.before}' -> '{record.after}'")

        return TranscriptionValidationResult(
            original=original,
            corrected=corrected,
            confidence=confidence,
            confidence_level=self.confidence_level(confidence),
            corrections=corrections,
            suspicious_pattern_detected=suspicious,
            is_valid=self.is_valid_confidence(confidence),
            should_reprompt=self.should_reprompt(confidence),
        )

    def reprompt_key(self, result: TranscriptionValidationResult) -> str:
        """Prompt key asking the caller to repeat themselves"""
        if result.confidence_level == ConfidenceLevel.VERY_LOW:
            return "repeatUnclear"
        if result.confidence_level == ConfidenceLevel.LOW or result.suspicious_pattern_detected:
            return "repeatLocation"
        return "repeatGeneric"
