"""Core components of portbot."""

from .change_control import ChangeControlOrchestrator, ChangeState
from .dispatcher import CommandDispatcher
from .message_router import EnvelopeRouter
from .tags import TagBinding, TagResolver

__all__ = [
    "ChangeControlOrchestrator",
    "ChangeState",
    "CommandDispatcher",
    "EnvelopeRouter",
    "TagBinding",
    "TagResolver",
]
