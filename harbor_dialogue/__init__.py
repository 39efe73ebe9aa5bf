"""
Harbor Dialogue - dialogue management core for a voice support line.

Corrects noisy transcriptions, classifies caller intent, resolves the
caller's location over several turns and keeps per-call conversation
context with expiry and persistence.
"""

__version__ = "1.0.0"
