"""
Runtime configuration for the dialogue core.

Every threshold, TTL and window the components use is read from here so
deployments can tune them through the environment or a .env file.
"""

from typing import List

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Conversation context
    CONTEXT_TTL_SECONDS: float = 900.0
    QUERY_RESULT_TTL_SECONDS: float = 300.0
    MAX_HISTORY_ITEMS: int = 10
    SUMMARY_INTERACTIONS: int = 3
    CONTEXT_CLEANUP_INTERVAL_SECONDS: float = 60.0
    CLEAR_CONTEXT_ON_HANGUP: bool = False

    # Persistence: "file", "redis", "memory" or "none"
    CONTEXT_BACKEND: str = "file"
    CONTEXT_STORAGE_DIR: str = "./cache/contexts"
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_KEY_PREFIX: str = "ctx:sid:"

    # Transcription confidence ladder
    CONFIDENCE_HIGH: float = 0.8
    CONFIDENCE_MEDIUM: float = 0.6
    CONFIDENCE_LOW: float = 0.4
    CONFIDENCE_VERY_LOW: float = 0.2

    # Location resolution
    LOCATION_CONFIDENCE_THRESHOLD: float = 0.5
    LOCATION_REVALIDATION_SECONDS: float = 600.0
    LOCATION_DEPENDENT_INTENTS: List[str] = ["find_shelter", "legal_help", "counseling"]

    # Geocoding
    GEOCODING_PROVIDER: str = "nominatim"
    GEOCODING_BASE_URL: str = "https://nominatim.openstreetmap.org/search"
    GEOCODING_TIMEOUT_SECONDS: float = 10.0
    GEOCODING_CACHE_TTL_SECONDS: float = 86400.0
    GEOCODING_MAX_CACHE_SIZE: int = 1000
    GEOCODING_RESULT_LIMIT: int = 3
    GEOCODING_USER_AGENT: str = "HarborDialogue/1.0"

    # Localization
    DEFAULT_LANGUAGE: str = "en-US"

    # Telephony surface
    TWILIO_AUTH_TOKEN: str = ""
    PUBLIC_BASE_URL: str = ""
    VALIDATE_TWILIO_SIGNATURE: bool = False
    TURN_ENDPOINT: str = "/voice/turn"
    STATUS_ENDPOINT: str = "/voice/status"
    RELAY_ENDPOINT: str = "/relay"
    RELAY_IDLE_TIMEOUT_SECONDS: float = 120.0

    # Other
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True


settings = Settings()
