import pytest

from harbor_dialogue.config.settings import Settings


class FakeClock:
    """Deterministic replacement for time.time"""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    """Settings isolated from any local .env file"""
    return Settings(_env_file=None, CONTEXT_BACKEND="none", LOG_JSON=False)
