from .dialogue_engine import DialogueEngine, build_engine
from .follow_up import FollowUpResolver

__all__ = ["DialogueEngine", "build_engine", "FollowUpResolver"]
