"""Slack Socket Mode session and envelope parsing."""

from .envelopes import CommandEvent, CommandInvocation, InteractiveEvent, PassiveEvent, parse_envelope
from .socket_mode import SocketModeSession

__all__ = [
    "CommandEvent",
    "CommandInvocation",
    "InteractiveEvent",
    "PassiveEvent",
    "SocketModeSession",
    "parse_envelope",
]
