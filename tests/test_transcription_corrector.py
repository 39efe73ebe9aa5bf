import pytest

from harbor_dialogue.adapters.transcription_corrector import (
    CORRECTION_RULES,
    TranscriptionCorrector,
)
from harbor_dialogue.models import ConfidenceLevel


class TestTranscriptionCorrector:
    """Unit tests for TranscriptionCorrector module"""

    @pytest.fixture
    def corrector(self, test_settings):
        """Create TranscriptionCorrector instance for testing"""
        return TranscriptionCorrector(settings=test_settings)

    def test_rule_table_is_ordered_tuple(self):
        """Test rule table is immutable with location rules first"""
        assert isinstance(CORRECTION_RULES, tuple)
        groups = [rule.group for rule in CORRECTION_RULES]
        assert groups == sorted(groups, key=lambda g: 0 if g == "location" else 1)
        assert len({rule.rule_id for rule in CORRECTION_RULES}) == len(CORRECTION_RULES)

    def test_pronoun_with_number_becomes_location(self, corrector):
        """Test 'I Station 2' is read as a location"""
        result = corrector.validate("I Station 2")
        assert result.corrected == "I'm at Station 2"
        assert [c.rule_id for c in result.corrections] == ["location.pronoun_number"]
        assert result.corrections[0].before == "I Station 2"
        assert result.corrections[0].after == "I'm at Station 2"

    def test_pronoun_with_place_noun_becomes_location(self, corrector):
        """Test 'I Union Station' is read as a location"""
        result = corrector.validate("I Union Station right now")
        assert result.corrected == "I'm at Union Station right now"
        assert result.corrections[0].rule_id == "location.pronoun_place"

    def test_pronoun_verbs_are_not_rewritten(self, corrector):
        """Test capitalized verbs after 'I' never trigger location rules"""
        result = corrector.validate("I Need Help Center")
        assert not any(c.rule_id.startswith("location.") for c in result.corrections)

    def test_help_find_disfluency(self, corrector):
        """Test 'I need help find' correction"""
        result = corrector.validate("I need help find a shelter")
        assert result.corrected == "I need help finding a shelter"
        assert [c.rule_id for c in result.corrections] == ["general.help_finding"]

    def test_am_at_contraction(self, corrector):
        """Test 'I am at' is contracted before a place name"""
        result = corrector.validate("I am at Central Park")
        assert result.corrected == "I'm at Central Park"
        assert [c.rule_id for c in result.corrections] == ["general.am_at"]

    def test_identity_rule_is_not_recorded(self, corrector):
        """Test a rule that matches without changing text is not recorded"""
        result = corrector.validate("I'm near Austin")
        assert result.corrected == "I'm near Austin"
        assert result.corrections == []

    def test_fillers_and_mishearing(self, corrector):
        """Test filler removal and shelter mis-hearing in application order"""
        result = corrector.validate("Um, I need a shelder")
        assert result.corrected == "I need a shelter"
        assert [c.rule_id for c in result.corrections] == [
            "general.fillers",
            "general.shelter_mishearing",
        ]

    def test_repeated_words_collapse(self, corrector):
        """Test stuttered words collapse but repeated place names survive"""
        assert corrector.validate("I I need the the shelter").corrected == "I need the shelter"
        assert corrector.validate("I'm in Walla Walla").corrected == "I'm in Walla Walla"

    def test_whitespace_normalized(self, corrector):
        """Test surrounding and repeated whitespace is collapsed"""
        result = corrector.validate("   I need    shelter  ")
        assert result.original == "I need shelter"
        assert result.corrected == "I need shelter"

    @pytest.mark.parametrize("text", [
        "I Station 2",
        "I Union Station",
        "I need help find a lawyer",
        "Um, I am at Main Street",
        "I I Station 2",
        "uh I need a shelta in Austin",
    ])
    def test_validate_is_idempotent(self, corrector, text):
        """Test correcting corrected text changes nothing"""
        once = corrector.validate(text).corrected
        twice = corrector.validate(once)
        assert twice.corrected == once
        assert twice.corrections == []

    def test_suspicious_pronoun_digit(self, corrector):
        """Test bare pronoun plus capitalized token and digit is flagged"""
        result = corrector.validate("I Need 5 beds")
        assert result.corrections == []
        assert result.suspicious_pattern_detected is True
        assert result.corrected == "I Need 5 beds"

    def test_suspicious_place_phrase_without_preposition(self, corrector):
        """Test a place phrase with no preposition is flagged"""
        assert corrector.validate("Union Station is where I am").suspicious_pattern_detected is True
        assert corrector.validate("I'm at Union Station").suspicious_pattern_detected is False

    def test_not_suspicious_when_rule_fired(self, corrector):
        """Test suspicious flag is skipped once a correction applied"""
        result = corrector.validate("I Station 2")
        assert result.corrections
        assert result.suspicious_pattern_detected is False

    @pytest.mark.parametrize("confidence,level", [
        (None, ConfidenceLevel.UNKNOWN),
        (0.95, ConfidenceLevel.HIGH),
        (0.8, ConfidenceLevel.HIGH),
        (0.6, ConfidenceLevel.MEDIUM),
        (0.45, ConfidenceLevel.LOW),
        (0.3, ConfidenceLevel.VERY_LOW),
    ])
    def test_confidence_levels(self, corrector, confidence, level):
        """Test confidence ladder"""
        assert corrector.validate("I need shelter", confidence).confidence_level == level

    @pytest.mark.parametrize("confidence,is_valid,should_reprompt", [
        (None, True, False),
        (0.4, True, False),
        (0.39, False, False),
        (0.2, False, False),
        (0.19, False, True),
        (0.0, False, True),
    ])
    def test_validity_and_reprompt(self, corrector, confidence, is_valid, should_reprompt):
        """Test is_valid and should_reprompt thresholds"""
        result = corrector.validate("I need shelter", confidence)
        assert result.is_valid is is_valid
        assert result.should_reprompt is should_reprompt

    @pytest.mark.parametrize("value", [None, 123, "", "   ", ["I need help"]])
    def test_non_string_or_empty_input(self, corrector, value):
        """Test bad input returns an invalid, empty result without raising"""
        result = corrector.validate(value, 0.9)
        assert result.is_valid is False
        assert result.should_reprompt is False
        assert result.corrected == ""
        assert result.corrections == []
        assert result.confidence_level == ConfidenceLevel.UNKNOWN

    def test_reprompt_key(self, corrector):
        """Test reprompt prompt selection"""
        assert corrector.reprompt_key(corrector.validate("mumble", 0.1)) == "repeatUnclear"
        assert corrector.reprompt_key(corrector.validate("mumble", 0.3)) == "repeatUnclear"
        assert corrector.reprompt_key(corrector.validate("mumble", 0.45)) == "repeatLocation"
        assert corrector.reprompt_key(corrector.validate("I Need 5 beds", 0.9)) == "repeatLocation"
        assert corrector.reprompt_key(corrector.validate("I need shelter", 0.9)) == "repeatGeneric"

    def test_thresholds_come_from_settings(self, test_settings):
        """Test confidence thresholds are configurable"""
        strict = TranscriptionCorrector(settings=test_settings.model_copy(update={"CONFIDENCE_VERY_LOW": 0.5}))
        assert strict.validate("I need shelter", 0.3).should_reprompt is True
