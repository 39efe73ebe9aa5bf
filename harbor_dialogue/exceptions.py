"""
Dialogue Exceptions

Custom exception classes for the dialogue core. Only input errors are
raised to callers; the rest are used internally and degrade to reprompts
or logged warnings.
"""

from typing import Optional


class DialogueError(Exception):
    """Base exception for dialogue core errors"""

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.session_id = session_id


class InvalidTurnError(DialogueError, ValueError):
    """Exception for a turn with a missing session id or utterance"""
    pass


class SessionClosedError(InvalidTurnError):
    """Exception for a turn submitted after the session was ended"""
    pass


class CorruptRecordError(DialogueError):
    """Exception for a persisted context that cannot be decoded"""
    pass


class GeocodingError(DialogueError):
    """Exception for geocoding provider failures"""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 provider: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider
