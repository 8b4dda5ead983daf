"""Classify Socket Mode frames into envelope variants."""

import json
from dataclasses import dataclass
from typing import Any, Union

from ..errors import ParseError


@dataclass(frozen=True)
class HelloEvent:
    """Handshake frame sent once after the websocket opens."""

    num_connections: int = 0
    app_id: str = ""


@dataclass(frozen=True)
class DisconnectEvent:
    """The platform is about to close this connection."""

    reason: str = ""


@dataclass(frozen=True)
class CommandEvent:
    """A slash command with free text."""

    envelope_id: str
    command: str
    text: str = ""
    user_id: str = ""
    channel_id: str = ""
    response_url: str | None = None
    accepts_response_payload: bool = False


@dataclass(frozen=True)
class InteractiveEvent:
    """A user selection from a previously sent UI element."""

    envelope_id: str
    selected_text: str
    action_id: str = ""
    user_id: str = ""
    response_url: str | None = None
    accepts_response_payload: bool = False


@dataclass(frozen=True)
class PassiveEvent:
    """An Events API notification that needs no reply."""

    envelope_id: str
    event_type: str = ""
    text: str = ""
    user_id: str = ""
    accepts_response_payload: bool = False


Envelope = Union[HelloEvent, DisconnectEvent, CommandEvent, InteractiveEvent, PassiveEvent]


@dataclass(frozen=True)
class ResponseTarget:
    """Where a reply goes: the callback URL when there is one, otherwise the session ack."""

    envelope_id: str
    response_url: str | None = None

    @property
    def on_session(self) -> bool:
        return self.response_url is None


@dataclass(frozen=True)
class CommandInvocation:
    command: str
    argument: str
    target: ResponseTarget
    user_id: str = ""

    @classmethod
    def from_event(cls, event: CommandEvent) -> "CommandInvocation":
        return cls(
            command=event.command,
            argument=event.text.strip(),
            target=ResponseTarget(envelope_id=event.envelope_id, response_url=event.response_url or None),
            user_id=event.user_id,
        )


def parse_envelope(raw: str | bytes) -> Envelope:
    """
    Parse one raw frame.

    Raises ParseError for invalid JSON, a missing or unknown ``type``, or a
    known variant that lacks its envelope id or payload.
    """
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ParseError(f"Frame is not valid JSON: {e}", raw) from e
    if not isinstance(frame, dict):
        raise ParseError("Frame is not a JSON object", raw)

    frame_type = frame.get("type")
    if frame_type == "hello":
        return HelloEvent(
            num_connections=int(frame.get("num_connections") or 0),
            app_id=(frame.get("connection_info") or {}).get("app_id", ""),
        )
    if frame_type == "disconnect":
        return DisconnectEvent(reason=str(frame.get("reason", "")))

    parser = _PAYLOAD_PARSERS.get(frame_type)  # type: ignore[arg-type]
    if parser is None:
        raise ParseError(f"Unrecognized frame type: {frame_type!r}", raw)

    envelope_id = frame.get("envelope_id")
    payload = frame.get("payload")
    if not isinstance(envelope_id, str) or not envelope_id:
        raise ParseError(f"{frame_type} frame has no envelope_id", raw)
    if not isinstance(payload, dict):
        raise ParseError(f"{frame_type} frame has no payload", raw)

    try:
        return parser(envelope_id, payload, bool(frame.get("accepts_response_payload", False)))
    except (KeyError, IndexError, TypeError, AttributeError) as e:
        raise ParseError(f"Malformed {frame_type} payload: {e}", raw) from e


def _parse_command(envelope_id: str, payload: dict[str, Any], accepts: bool) -> CommandEvent:
    command = payload["command"]
    if not isinstance(command, str) or not command.strip("/"):
        raise ParseError("Slash command payload has no command")
    return CommandEvent(
        envelope_id=envelope_id,
        command=command.lstrip("/"),
        text=payload.get("text") or "",
        user_id=payload.get("user_id", ""),
        channel_id=payload.get("channel_id", ""),
        response_url=payload.get("response_url") or None,
        accepts_response_payload=accepts,
    )


def _parse_interactive(envelope_id: str, payload: dict[str, Any], accepts: bool) -> InteractiveEvent:
    action = payload["actions"][0]
    selected = action.get("selected_option")
    if selected:
        text = selected["text"]["text"]
    elif action.get("text"):
        text = action["text"]["text"]
    else:
        text = action["value"]
    return InteractiveEvent(
        envelope_id=envelope_id,
        selected_text=text,
        action_id=action.get("action_id", ""),
        user_id=(payload.get("user") or {}).get("id", ""),
        response_url=payload.get("response_url") or None,
        accepts_response_payload=accepts,
    )


def _parse_events_api(envelope_id: str, payload: dict[str, Any], accepts: bool) -> PassiveEvent:
    event = payload.get("event") or {}
    return PassiveEvent(
        envelope_id=envelope_id,
        event_type=event.get("type", ""),
        text=event.get("text", ""),
        user_id=event.get("user", ""),
        accepts_response_payload=accepts,
    )


_PAYLOAD_PARSERS = {
    "slash_commands": _parse_command,
    "interactive": _parse_interactive,
    "events_api": _parse_events_api,
}


def build_blocks(text: str) -> dict[str, Any]:
    """Wrap plain reply text in a single mrkdwn section block."""
    return {
        "text": text,
        "blocks": [{"type": "section", "text": {"type": "mrkdwn", "text": text}}],
    }


def build_ack(envelope_id: str, payload: dict[str, Any] | None = None) -> str:
    """Acknowledgment frame for an envelope, optionally carrying a response payload."""
    frame: dict[str, Any] = {"envelope_id": envelope_id}
    if payload is not None:
        frame["payload"] = payload
    return json.dumps(frame)
