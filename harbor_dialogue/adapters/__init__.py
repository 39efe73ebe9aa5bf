"""
Adapter modules for the dialogue core.

This module contains adapters for:
- Transcription correction and intent classification
- Location resolution backed by geocoding
- Conversation context storage and persistence
"""
