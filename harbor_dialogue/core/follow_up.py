import logging
import re
from typing import List, Optional, Tuple

from ..models import FollowUpResolution, IntentCategory, QueryResultSnapshot, ResultItem

logger = logging.getLogger(__name__)

ORDINALS = {
    "first": 0, "1st": 0, "one": 0,
    "second": 1, "2nd": 1, "two": 1,
    "third": 2, "3rd": 2, "three": 2,
    "fourth": 3, "4th": 3, "four": 3,
    "fifth": 4, "5th": 4, "five": 4,
}
ORDINAL_PATTERN = re.compile(r"\b(first|second|third|fourth|fifth|1st|2nd|3rd|4th|5th)\b", re.IGNORECASE)
CARDINAL_PATTERN = re.compile(r"\b(?:number|option|result)\s+(one|two|three|four|five)\b", re.IGNORECASE)
DEMONSTRATIVE_PATTERN = re.compile(r"\b(?:that|this|the one|that one|this one|it)\b", re.IGNORECASE)
CAPITALIZED_PATTERN = re.compile(r"\b([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)\b")
PHONE_PATTERN = re.compile(r"(?:\+?1[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}")

SPECIFIC_REFERENCE = "specific_reference"

# Words that start sentences rather than name a result
_SENTENCE_STARTERS = frozenset({
    "Can", "Could", "What", "Where", "Tell", "Send", "Please", "How", "Is", "Does", "Do", "I", "Yes", "No", "And",
})

MATCH_THRESHOLD = 0.3
TITLE_WEIGHT, CONTENT_WEIGHT, URL_WEIGHT = 0.6, 0.3, 0.1


def similarity(needle: str, haystack: str) -> float:
    """Substring containment scores 0.9, otherwise word overlap capped at 0.8"""
    if not needle or not haystack:
        return 0.0
    if needle in haystack or haystack in needle:
        return 0.9
    words1 = needle.split()
    words2 = haystack.split()
    matches = 0
    for word1 in words1:
        if len(word1) < 3:
            continue
        if any(word1 in word2 or word2 in word1 for word2 in words2 if word2):
            matches += 1
    if matches == 0:
        return 0.0
    return min(matches / max(len(words1), len(words2)), 0.8)


def extract_phone(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = PHONE_PATTERN.search(text)
    return match.group(0).strip() if match else None


class FollowUpResolver:
    """Works out what a follow-up question refers to in the last set of results"""

    def focus_target(self, text: str, snapshot: QueryResultSnapshot) -> Optional[str]:
        lowered = text.lower()
        if snapshot.location and snapshot.location.lower() in lowered:
            return snapshot.location

        match = ORDINAL_PATTERN.search(text) or CARDINAL_PATTERN.search(text)
        if match:
            return match.group(1).lower()

        if DEMONSTRATIVE_PATTERN.search(text):
            return SPECIFIC_REFERENCE

        for candidate in CAPITALIZED_PATTERN.findall(text):
            words = [w for w in candidate.split() if w not in _SENTENCE_STARTERS]
            if words:
                return " ".join(words)
        return None

    def best_match(self, target: Optional[str], items: List[ResultItem]) -> Tuple[Optional[int], float]:
        """Index and score of the result the target refers to"""
        if not target or not items:
            return None, 0.0

        if target in ORDINALS:
            index = ORDINALS[target]
            return (index, 1.0) if index < len(items) else (None, 0.0)

        if target == SPECIFIC_REFERENCE:
            return (0, 1.0) if len(items) == 1 else (None, 0.0)

        needle = target.lower()
        best_index, best_score = None, 0.0
        for index, item in enumerate(items):
            score = (
                similarity(needle, item.title.lower()) * TITLE_WEIGHT
                + similarity(needle, item.content.lower()) * CONTENT_WEIGHT
                + similarity(needle, item.url.lower()) * URL_WEIGHT
            )
            if score > best_score and score > MATCH_THRESHOLD:
                best_index, best_score = index, score
        return best_index, round(best_score, 4)

    def resolve(self, text: str, snapshot: Optional[QueryResultSnapshot]) -> FollowUpResolution:
        if snapshot is None:
            return FollowUpResolution(type="no_context")
        if snapshot.intent == IntentCategory.OFF_TOPIC:
            return FollowUpResolution(type="off_topic", intent=snapshot.intent, location=snapshot.location)
        if not snapshot.result_items:
            return FollowUpResolution(type="no_context", intent=snapshot.intent, location=snapshot.location)

        target = self.focus_target(text, snapshot)
        index, score = self.best_match(target, snapshot.result_items)
        item = snapshot.result_items[index] if index is not None else None
        lowered = text.lower()

        if any(word in lowered for word in ("send", "text", "email")):
            kind = "send_details"
        elif any(word in lowered for word in ("where", "address", "location")):
            kind = "location_info"
        elif any(word in lowered for word in ("number", "phone", "call")):
            kind = "phone_info"
        elif item is not None:
            kind = "specific_result"
        elif any(word in lowered for word in ("more", "information", "about", "details")):
            kind = "detailed_info"
        else:
            kind = "general_follow_up"

        phone = None
        if kind == "phone_info" and item is not None:
            phone = item.phone or extract_phone(item.content)

        logger.info(f"🔁 Follow-up resolved as {kind} (target={target}, match={index}, score={score})")
        return FollowUpResolution(
            type=kind,
            focus_target=target,
            matched_item=item,
            matched_index=index,
            score=score,
            intent=snapshot.intent,
            location=snapshot.location,
            phone=phone,
        )
