from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ConfidenceLevel(str, Enum):
    UNKNOWN = "unknown"
    VERY_LOW = "very_low"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class IntentCategory(str, Enum):
    EMERGENCY = "emergency"
    FIND_SHELTER = "find_shelter"
    LEGAL_HELP = "legal_help"
    COUNSELING = "counseling"
    SAFETY_PLANNING = "safety_planning"
    GENERAL_HELP = "general_help"
    FOLLOW_UP = "follow_up"
    OFF_TOPIC = "off_topic"
    UNKNOWN = "unknown"


class SafetyLevel(str, Enum):
    UNKNOWN = "unknown"
    LOW = "low"
    ELEVATED = "elevated"
    EMERGENCY = "emergency"


class LocationSource(str, Enum):
    CONTEXT = "context"
    UTTERANCE = "utterance"


class LocationStatus(str, Enum):
    RESOLVED = "RESOLVED"
    PROMPT_NEEDED = "PROMPT_NEEDED"


class Interaction(BaseModel):
    query: str
    intent: IntentCategory = IntentCategory.UNKNOWN
    timestamp: float
    response_summary: Optional[str] = None


class ResolvedLocation(BaseModel):
    raw: str
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    confidence: float = Field(ge=0.0, le=1.0)
    source: LocationSource
    validated_at: Optional[float] = None

    def describe(self) -> str:
        parts = [p for p in (self.city, self.state, self.country) if p]
        return ", ".join(parts) if parts else self.raw


class ResultItem(BaseModel):
    title: str = ""
    url: str = ""
    content: str = ""
    phone: Optional[str] = None


class QueryResultSnapshot(BaseModel):
    intent: IntentCategory
    location: Optional[str] = None
    result_items: List[ResultItem] = Field(default_factory=list)
    raw_voice_text: Optional[str] = None
    raw_display_text: Optional[str] = None
    captured_at: float


class ConversationContext(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(frozen=True, min_length=1)
    created_at: float
    updated_at: float
    history: List[Interaction] = Field(default_factory=list)
    location: Optional[ResolvedLocation] = None
    family_concerns: Optional[str] = None
    emotional_tone: Optional[str] = None
    language: Optional[str] = None
    last_intent: Optional[IntentCategory] = None
    last_intent_confidence: Optional[float] = None
    last_query: Optional[str] = None
    last_query_result: Optional[QueryResultSnapshot] = None
    safety_level: SafetyLevel = SafetyLevel.UNKNOWN
    emergency_detected: bool = False
    # intent still waiting on a location answer from the caller
    pending_location_intent: Optional[IntentCategory] = None


class ContextUpdate(BaseModel):
    """
    Partial update for a context. Only fields that are set and non-null are merged.
    clear_pending_location is the one way to remove a pending location intent.
    """

    model_config = ConfigDict(extra="forbid")

    location: Optional[ResolvedLocation] = None
    family_concerns: Optional[str] = None
    emotional_tone: Optional[str] = None
    language: Optional[str] = None
    last_intent: Optional[IntentCategory] = None
    last_intent_confidence: Optional[float] = None
    last_query: Optional[str] = None
    last_query_result: Optional[QueryResultSnapshot] = None
    safety_level: Optional[SafetyLevel] = None
    emergency_detected: Optional[bool] = None
    pending_location_intent: Optional[IntentCategory] = None
    clear_pending_location: Optional[bool] = None
    interaction: Optional[Interaction] = None

    @field_validator("last_intent_confidence")
    @classmethod
    def validate_confidence(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and not 0.0 <= v <= 1.0:
            raise ValueError("confidence must be between 0 and 1")
        return v


class CorrectionRecord(BaseModel):
    rule_id: str
    before: str
    after: str


class TranscriptionValidationResult(BaseModel):
    original: str = ""
    corrected: str = ""
    confidence: Optional[float] = None
    confidence_level: ConfidenceLevel = ConfidenceLevel.UNKNOWN
    corrections: List[CorrectionRecord] = Field(default_factory=list)
    suspicious_pattern_detected: bool = False
    is_valid: bool = False
    should_reprompt: bool = False

    @property
    def has_corrections(self) -> bool:
        return bool(self.corrections)


class IntentClassification(BaseModel):
    category: IntentCategory
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning_tags: List[str] = Field(default_factory=list)


class ContextSummary(BaseModel):
    session_id: str
    has_context: bool = False
    location: Optional[str] = None
    family_concerns: Optional[str] = None
    emotional_tone: Optional[str] = None
    language: Optional[str] = None
    safety_level: SafetyLevel = SafetyLevel.UNKNOWN
    emergency_detected: bool = False
    last_intent: Optional[IntentCategory] = None
    recent_interactions: List[Interaction] = Field(default_factory=list)
    context_parts: int = 0


class LocationResult(BaseModel):
    status: LocationStatus
    location: Optional[ResolvedLocation] = None
    prompt_key: Optional[str] = None
    prompt_text: Optional[str] = None
    candidate: Optional[str] = None
    trace: List[str] = Field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return self.status == LocationStatus.RESOLVED


class FollowUpResolution(BaseModel):
    type: str
    focus_target: Optional[str] = None
    matched_item: Optional[ResultItem] = None
    matched_index: Optional[int] = None
    score: float = 0.0
    intent: Optional[IntentCategory] = None
    location: Optional[str] = None
    phone: Optional[str] = None


class TurnResult(BaseModel):
    session_id: str
    transcription: TranscriptionValidationResult
    intent_classification: Optional[IntentClassification] = None
    location_result: Optional[LocationResult] = None
    follow_up: Optional[FollowUpResolution] = None
    reprompt_key: Optional[str] = None
    reprompt_text: Optional[str] = None
    context_summary: ContextSummary
