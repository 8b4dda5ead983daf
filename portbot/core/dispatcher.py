"""Slash-command handlers for wall-jack lookups and port changes."""

from dataclasses import dataclass
from typing import Any, Callable, Coroutine

from ..channels.envelopes import CommandInvocation, InteractiveEvent
from ..errors import AuthError, SerializationError, UpstreamError
from ..utils.logging import get_logger
from .change_control import ChangeControlOrchestrator, ChangeRecord
from .tags import TagBinding, TagResolver

logger = get_logger(__name__)

NOT_FOUND_REPLY = "Wall jack number was not found"
NOT_IMPLEMENTED_REPLY = "portassign is not implemented yet"

CommandHandler = Callable[[str], Coroutine[Any, Any, str]]


@dataclass(frozen=True)
class PortChange:
    """A mutating command: which action to run and how to describe it."""

    action_name: str
    verb: str  # "shut down" / "enable"
    done: str  # "shut down" / "enabled"


class CommandDispatcher:
    """
    Maps a command keyword to its handler and returns the reply text.

    Tag resolution always finishes before any change control is built, and a
    jack that does not resolve never reaches the orchestrator. Replies are
    produced only after the whole pipeline has returned.
    """

    def __init__(
        self,
        resolver: TagResolver,
        orchestrator: ChangeControlOrchestrator,
        tag_label: str,
        shutdown_action: str,
        enable_action: str,
        stage_label: str = "portbot",
    ) -> None:
        self._resolver = resolver
        self._orchestrator = orchestrator
        self._tag_label = tag_label
        self._stage_label = stage_label
        self._shutdown = PortChange(action_name=shutdown_action, verb="shut down", done="shut down")
        self._enable = PortChange(action_name=enable_action, verb="enable", done="enabled")

        self._handlers: dict[str, CommandHandler] = {
            "portcheck": self._port_check,
            "portdown": lambda jack: self._port_change(jack, self._shutdown),
            "portup": lambda jack: self._port_change(jack, self._enable),
            "portassign": self._port_assign,
        }

    async def dispatch(self, invocation: CommandInvocation) -> str:
        command = invocation.command.lower()
        handler = self._handlers.get(command)
        if handler is None:
            logger.info("Unknown command", command=invocation.command, user=invocation.user_id)
            return f"Unknown command: {invocation.command}"

        jack = invocation.argument.split()[0] if invocation.argument.split() else ""
        if not jack:
            return f"Usage: /{command} <jack-id>"

        logger.info("Dispatching command", command=command, jack=jack, user=invocation.user_id)
        return await handler(jack)

    async def handle_interactive(self, event: InteractiveEvent) -> str:
        logger.info("Interactive selection", action_id=event.action_id, user=event.user_id)
        return f"You selected: {event.selected_text}"

    async def _resolve(self, jack: str) -> TagBinding | str:
        """Resolve a jack, turning lookup failures into a reply string."""
        try:
            return await self._resolver.resolve(self._tag_label, jack)
        except (UpstreamError, AuthError, SerializationError) as e:
            logger.error("Tag lookup failed", jack=jack, error=str(e))
            return f"Could not look up wall jack {jack}: {e}"

    async def _port_check(self, jack: str) -> str:
        binding = await self._resolve(jack)
        if isinstance(binding, str):
            return binding
        if not binding.found:
            return NOT_FOUND_REPLY
        return f"Wall jack: {jack} is connected to port {binding.interface_id} on switch {binding.device_id}"

    async def _port_change(self, jack: str, change: PortChange) -> str:
        binding = await self._resolve(jack)
        if isinstance(binding, str):
            return binding
        if not binding.found:
            return NOT_FOUND_REPLY

        record = await self._orchestrator.run(
            change.action_name,
            self._stage_label,
            {"DeviceID": binding.device_id or "", "interface": binding.interface_id or ""},
        )
        if record.succeeded:
            return (
                f"Wall jack: {jack} (port {binding.interface_id} on switch {binding.device_id}) "
                f"has been {change.done}"
            )
        return _failure_reply(jack, change, record)

    async def _port_assign(self, jack: str) -> str:
        return NOT_IMPLEMENTED_REPLY


def _failure_reply(jack: str, change: PortChange, record: ChangeRecord) -> str:
    reply = (
        f"Failed to {change.verb} wall jack {jack}: {record.failed_step} failed ({record.error}). "
        f"Change control {record.workflow_id} is {record.state.value}."
    )
    if record.orphaned:
        reply += " It was submitted but not started and needs manual cleanup in CloudVision."
    return reply
