import pytest

from harbor_dialogue.core.follow_up import (
    SPECIFIC_REFERENCE,
    FollowUpResolver,
    extract_phone,
    similarity,
)
from harbor_dialogue.models import IntentCategory, QueryResultSnapshot, ResultItem

ITEMS = [
    ResultItem(title="Safe Haven Shelter", url="https://safehaven.example.org",
               content="Emergency shelter for women and children. Call 512-555-0101."),
    ResultItem(title="Hope House", url="https://hopehouse.example.org",
               content="Transitional housing with counseling services.", phone="512-555-0199"),
    ResultItem(title="Austin Legal Aid", url="https://legalaid.example.org",
               content="Free legal help with protective orders."),
]


def make_snapshot(items=ITEMS, intent=IntentCategory.FIND_SHELTER, location="Austin, Texas"):
    return QueryResultSnapshot(intent=intent, location=location, result_items=list(items), captured_at=0.0)


class TestFollowUpResolver:
    """Unit tests for FollowUpResolver module"""

    @pytest.fixture
    def resolver(self):
        return FollowUpResolver()

    def test_ordinal_reference(self, resolver):
        """Test 'the second one' picks the second result"""
        resolution = resolver.resolve("tell me about the second one", make_snapshot())
        assert resolution.matched_index == 1
        assert resolution.matched_item.title == "Hope House"
        assert resolution.focus_target == "second"
        assert resolution.type == "specific_result"

    def test_cardinal_reference(self, resolver):
        """Test 'option three' picks the third result"""
        resolution = resolver.resolve("option three sounds good", make_snapshot())
        assert resolution.matched_index == 2

    def test_ordinal_out_of_range(self, resolver):
        """Test ordinals past the end match nothing"""
        resolution = resolver.resolve("the fifth one", make_snapshot())
        assert resolution.matched_item is None
        assert resolution.type == "general_follow_up"

    def test_phone_request_uses_item_phone(self, resolver):
        """Test phone follow-ups return the matched item's number"""
        resolution = resolver.resolve("what is the phone number for the second one", make_snapshot())
        assert resolution.type == "phone_info"
        assert resolution.phone == "512-555-0199"

    def test_phone_extracted_from_content(self, resolver):
        """Test a phone number is pulled from content when the item has none"""
        resolution = resolver.resolve("can I call the first one", make_snapshot())
        assert resolution.type == "phone_info"
        assert resolution.phone == "512-555-0101"

    def test_send_details(self, resolver):
        """Test send requests take priority"""
        resolution = resolver.resolve("can you text me the number for the first one", make_snapshot())
        assert resolution.type == "send_details"
        assert resolution.phone is None

    def test_location_info_by_name(self, resolver):
        """Test a named result is matched by title"""
        resolution = resolver.resolve("where is Hope House", make_snapshot())
        assert resolution.type == "location_info"
        assert resolution.focus_target == "Hope House"
        assert resolution.matched_index == 1

    def test_demonstrative_with_single_result(self, resolver):
        """Test 'that one' resolves only when there is a single result"""
        single = resolver.resolve("tell me more about that one", make_snapshot(ITEMS[:1]))
        assert single.focus_target == SPECIFIC_REFERENCE
        assert single.matched_index == 0

        several = resolver.resolve("tell me more about that one", make_snapshot())
        assert several.matched_item is None
        assert several.type == "detailed_info"

    def test_location_as_focus(self, resolver):
        """Test mentioning the searched location focuses on it"""
        resolution = resolver.resolve("anything else in Austin, Texas", make_snapshot())
        assert resolution.focus_target == "Austin, Texas"
        assert resolution.location == "Austin, Texas"

    def test_no_snapshot(self, resolver):
        """Test follow-ups without prior results"""
        assert resolver.resolve("the first one", None).type == "no_context"
        assert resolver.resolve("the first one", make_snapshot(items=[])).type == "no_context"

    def test_off_topic_snapshot(self, resolver):
        """Test off-topic results are not followed up"""
        resolution = resolver.resolve("the first one", make_snapshot(intent=IntentCategory.OFF_TOPIC))
        assert resolution.type == "off_topic"
        assert resolution.matched_item is None

    @pytest.mark.parametrize("needle,haystack,expected", [
        ("hope house", "hope house", 0.9),
        ("hope", "hope house", 0.9),
        ("safe shelter", "safe haven shelter", 0.6667),
        ("banana", "hope house", 0.0),
        ("", "hope house", 0.0),
    ])
    def test_similarity(self, needle, haystack, expected):
        """Test the similarity score"""
        assert similarity(needle, haystack) == pytest.approx(expected, abs=1e-4)

    def test_extract_phone(self):
        """Test phone extraction"""
        assert extract_phone("Call (512) 555-0101 today") == "(512) 555-0101"
        assert extract_phone("no digits here") is None
        assert extract_phone(None) is None
