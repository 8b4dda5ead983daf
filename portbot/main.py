"""
portbot - wall-jack lookups and port changes from Slack
Main Entry Point

Wires the Socket Mode session, the envelope worker pool, the command
dispatcher and the CloudVision client, then keeps a session open until
shutdown.
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Any, Callable

from dotenv import load_dotenv

# Load .env BEFORE any other imports that read os.environ or settings
load_dotenv(dotenv_path=Path(".") / ".env", override=True)

import structlog

from portbot.channels.envelopes import (
    CommandEvent,
    CommandInvocation,
    HelloEvent,
    InteractiveEvent,
    PassiveEvent,
    ResponseTarget,
    build_blocks,
    parse_envelope,
)
from portbot.channels.socket_mode import SocketModeSession
from portbot.core.change_control import ChangeControlOrchestrator
from portbot.core.dispatcher import CommandDispatcher
from portbot.core.message_router import EnvelopeRouter
from portbot.core.tags import TagResolver
from portbot.cvp.client import ControlPlaneClient
from portbot.errors import AuthError, ConnectionClosed, ParseError, SessionConnectionError, UpstreamError
from portbot.utils.config import Settings, get_settings, set_config_path
from portbot.utils.logging import get_audit_logger, setup_logging

logger = structlog.get_logger()

SessionFactory = Callable[[], SocketModeSession]


class PortBotApplication:
    """Owns every component and the session reconnect loop."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: ControlPlaneClient | None = None,
        session_factory: SessionFactory | None = None,
        audit_logger: Any = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.client = client or ControlPlaneClient.from_settings(self.settings)
        self.resolver = TagResolver(self.client, workspace_id=self.settings.cvp.workspace_id)
        self.orchestrator = ChangeControlOrchestrator(
            self.client,
            audit_logger=audit_logger if audit_logger is not None else get_audit_logger(),
            name_prefix=self.settings.change_control.name_prefix,
        )
        self.dispatcher = CommandDispatcher(
            self.resolver,
            self.orchestrator,
            tag_label=self.settings.cvp.tag_label,
            shutdown_action=self.settings.change_control.shutdown_action,
            enable_action=self.settings.change_control.enable_action,
            stage_label=self.settings.change_control.stage_label,
        )
        self.router = EnvelopeRouter(
            self._process,
            max_workers=self.settings.router.max_workers,
            max_queue_size=self.settings.router.max_queue_size,
        )
        self._session_factory = session_factory or self._default_session
        self.session: SocketModeSession | None = None
        self.shutdown_event = asyncio.Event()

    def _default_session(self) -> SocketModeSession:
        return SocketModeSession(
            app_token=self.settings.slack_token,
            api_base_url=self.settings.slack.api_base_url,
            open_timeout=self.settings.slack.open_timeout,
        )

    # -- Receive side --

    async def handle_frame(self, session: SocketModeSession, raw: str) -> None:
        """Classify one frame, acknowledge it, and hand it to the worker pool."""
        try:
            envelope = parse_envelope(raw)
        except ParseError as e:
            logger.warning("Dropping unparseable frame", error=str(e), frame=str(raw)[:200])
            return

        if isinstance(envelope, HelloEvent):
            logger.debug("Ignoring extra hello frame")
            return

        envelope_id = getattr(envelope, "envelope_id", None)
        if envelope_id is None:
            return

        if session.is_duplicate(envelope_id):
            # Redelivery: the earlier ack was lost; ack again but do not dispatch twice
            logger.info("Duplicate envelope re-acknowledged", envelope_id=envelope_id)
            await session.acknowledge(envelope_id)
            return

        if isinstance(envelope, PassiveEvent):
            await session.acknowledge(envelope_id)
            logger.info("Passive event", event_type=envelope.event_type, user=envelope.user_id)
            return

        # Commands without a callback URL are acked later, with the reply as payload
        if not (isinstance(envelope, CommandEvent) and envelope.response_url is None):
            await session.acknowledge(envelope_id)

        await self.router.enqueue(envelope_id, (session, envelope))

    # -- Worker side --

    async def _process(self, item: tuple[SocketModeSession, Any]) -> None:
        session, envelope = item
        if isinstance(envelope, CommandEvent):
            invocation = CommandInvocation.from_event(envelope)
            reply = await self.dispatcher.dispatch(invocation)
            await self.deliver(session, invocation.target, reply)
        elif isinstance(envelope, InteractiveEvent):
            reply = await self.dispatcher.handle_interactive(envelope)
            if envelope.response_url:
                await self.deliver(session, ResponseTarget(envelope.envelope_id, envelope.response_url), reply)
            else:
                logger.warning("Interactive event has no response_url; reply dropped", envelope_id=envelope.envelope_id)

    async def deliver(self, session: SocketModeSession, target: ResponseTarget, reply: str) -> None:
        """Send a finished reply to wherever the invocation asked for it."""
        if target.on_session:
            if not session.is_open:
                logger.warning("Session closed before reply could be sent", envelope_id=target.envelope_id)
                return
            try:
                await session.acknowledge(target.envelope_id, build_blocks(reply))
            except ConnectionClosed as e:
                logger.warning("Reply lost, session closed", envelope_id=target.envelope_id, error=str(e))
            return

        try:
            await session.post_response(target.response_url or "", reply)
        except UpstreamError as e:
            logger.error("Failed to post reply", envelope_id=target.envelope_id, error=str(e))

    # -- Session loop --

    async def ensure_token(self) -> None:
        """Make sure the control-plane client holds a token before any session opens."""
        if self.client.token:
            return
        token_file = self.settings.cvp.token_file
        if token_file and Path(token_file).expanduser().is_file():
            self.client.load_token_file(token_file)
            return
        username = self.settings.cvp_username or self.settings.cvp.username
        password = self.settings.cvp_password or self.settings.cvp.password
        if username and password:
            if token_file:
                logger.info("CVP token file not found, using credentials", token_file=token_file)
            await self.client.authenticate(username, password)
            return
        if token_file:
            raise AuthError(f"CVP token file {token_file} not found and no CVP credentials set")
        raise AuthError("No CVP token: set CVP_TOKEN, cvp.token_file, or CVP credentials")

    async def run_session(self) -> None:
        """Open one session and read frames until it closes."""
        session = self._session_factory()
        await session.open()
        self.session = session
        try:
            while not self.shutdown_event.is_set():
                raw = await session.receive()
                await self.handle_frame(session, raw)
        except ConnectionClosed as e:
            logger.info("Session closed", reason=e.reason)
        finally:
            self.session = None
            await session.close()

    async def run(self) -> None:
        """
        Keep a session open until shutdown.

        A session that closes, or fails to open, is replaced after
        ``reconnect_delay``. Consecutive open failures stop the loop once
        ``max_reconnect_attempts`` is reached. AuthError is never retried.
        In-flight pipelines keep running across reconnects.
        """
        failures = 0
        try:
            await self.ensure_token()
            await self.router.start()
            while not self.shutdown_event.is_set():
                try:
                    await self.run_session()
                    failures = 0
                except SessionConnectionError as e:
                    failures += 1
                    logger.error(
                        "Could not open session",
                        error=str(e),
                        attempt=failures,
                        max_attempts=self.settings.session.max_reconnect_attempts,
                    )
                    if failures >= self.settings.session.max_reconnect_attempts:
                        raise
                if self.shutdown_event.is_set():
                    break
                try:
                    await asyncio.wait_for(
                        self.shutdown_event.wait(),
                        timeout=self.settings.session.reconnect_delay,
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.router.stop()
            await self.client.close()
            logger.info("portbot stopped")

    async def shutdown(self) -> None:
        logger.info("Shutting down")
        self.shutdown_event.set()
        if self.session is not None:
            await self.session.close()


async def main(args: argparse.Namespace) -> int:
    """Main entry point."""
    setup_logging(level=args.log_level)

    settings = get_settings()
    if args.token_file:
        settings.cvp.token_file = args.token_file
        settings.cvp.token = ""
        settings.cvp_token = ""

    loop = asyncio.get_running_loop()

    try:
        app = PortBotApplication(settings)

        def signal_handler() -> None:
            asyncio.create_task(app.shutdown())

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        await app.run()
    except AuthError as e:
        logger.error("Authentication failed", error=str(e))
        return 2
    except SessionConnectionError as e:
        logger.error("Giving up on Slack connection", error=str(e))
        return 1
    except UpstreamError as e:
        logger.error("CVP login failed", error=str(e))
        return 1
    return 0


def run() -> None:
    """Synchronous entry point with CLI argument parsing."""
    parser = argparse.ArgumentParser(
        prog="portbot",
        description="portbot - wall-jack lookups and port changes from Slack",
    )
    parser.add_argument(
        "--config",
        default=None,
        metavar="PATH",
        help="Path to settings YAML (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        metavar="LEVEL",
        help="Override logging.level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "--token-file",
        default=None,
        metavar="PATH",
        help="Read the CVP bearer token from this file",
    )
    args = parser.parse_args()

    if args.config:
        set_config_path(args.config)

    try:
        get_settings()
    except ValueError as e:
        print(f"portbot: {e}", file=sys.stderr)
        sys.exit(2)

    sys.exit(asyncio.run(main(args)))


if __name__ == "__main__":
    run()
