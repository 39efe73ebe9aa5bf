from .settings import Settings, settings
from .languages import LanguageProfile, LocalizationProvider, localization

__all__ = ["Settings", "settings", "LanguageProfile", "LocalizationProvider", "localization"]
