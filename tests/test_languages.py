import pytest

from harbor_dialogue.config.languages import (
    ENGLISH,
    FRENCH,
    GERMAN,
    SPANISH,
    LanguageProfile,
    LocalizationProvider,
)


class TestLocalizationProvider:
    """Unit tests for LocalizationProvider module"""

    @pytest.fixture
    def provider(self):
        return LocalizationProvider()

    @pytest.mark.parametrize("language,code", [
        ("es-ES", "es-ES"),
        ("ES_es", "es-ES"),
        ("es-MX", "es-ES"),
        ("fr", "fr-FR"),
        ("de-AT", "de-DE"),
        ("ja-JP", "en-US"),
        (None, "en-US"),
        ("", "en-US"),
    ])
    def test_resolve(self, provider, language, code):
        """Test exact code, then base language, then default"""
        assert provider.resolve(language).code == code

    def test_get_prompt(self, provider):
        """Test prompts come from the caller's language"""
        assert provider.get_prompt("es-ES", "locationPrompt") == SPANISH.prompts["locationPrompt"]
        assert provider.get_prompt(None, "locationPrompt") == ENGLISH.prompts["locationPrompt"]

    def test_missing_key_falls_back(self, provider):
        """Test a key a profile lacks comes from its fallback"""
        assert "repeatLocation" not in GERMAN.prompts
        assert provider.get_prompt("de-DE", "repeatLocation") == ENGLISH.prompts["repeatLocation"]

    def test_prompt_parameters(self, provider):
        """Test templates are filled with parameters"""
        text = provider.get_prompt("fr-FR", "confirmLocation", {"location": "Lyon"})
        assert "Lyon" in text
        assert text.startswith(FRENCH.prompts["confirmLocation"].split("{")[0])

    def test_missing_parameter_returns_template(self, provider):
        """Test a missing parameter does not raise"""
        assert provider.get_prompt("en-US", "confirmLocation") == ENGLISH.prompts["confirmLocation"]

    def test_unknown_key(self, provider):
        """Test unknown prompt keys render as empty text"""
        assert provider.get_prompt("en-US", "noSuchPrompt") == ""

    def test_fallback_chain(self, provider):
        """Test the chain ends with the default language"""
        assert [p.code for p in provider.fallback_chain("es-MX")] == ["es-ES", "en-US"]
        assert [p.code for p in provider.fallback_chain("en-GB")] == ["en-US"]

    def test_custom_profiles(self):
        """Test a provider can be built from its own profiles"""
        italian = LanguageProfile(code="it-IT", name="Italiano", prompts={"welcome": "Ciao"})
        provider = LocalizationProvider({"it-IT": italian}, default_language="it-IT")
        assert provider.get_prompt("en-US", "welcome") == "Ciao"
        assert provider.supported_languages() == ["it-IT"]
        assert provider.is_supported("en-US") is False

    def test_default_language_must_exist(self):
        """Test the default language needs a profile"""
        with pytest.raises(ValueError):
            LocalizationProvider(default_language="xx-XX")

    def test_extra_keywords(self):
        """Test language keyword extensions by category"""
        assert "refugio" in SPANISH.extra_keywords("find_shelter")
        assert ENGLISH.extra_keywords("find_shelter") == ()
