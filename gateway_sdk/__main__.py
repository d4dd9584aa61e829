#!/usr/bin/env python3
"""Console client for the chat gateway.

Connects with the layered client configuration (see
``gateway_sdk.client.config``), prints notices and streamed replies, and
sends what you type.

Usage:
    # Interactive session
    python -m gateway_sdk --url ws://127.0.0.1:18789 --token $TOKEN

    # Send one message, print the reply, exit
    python -m gateway_sdk --message "Hello, world!"

Type ``/stop`` (or ``stop`` / ``abort``) to stop the current reply and
``quit`` to exit.
"""

import argparse
import asyncio
import dataclasses
import logging
import sys
from pathlib import Path
from typing import List, Optional

from gateway_sdk.client import ConnectionState, GatewayClient, load_client_config
from gateway_sdk.client.chat import ChatRunState, ChatRunStateMachine
from gateway_sdk.client.config import ClientConfig
from gateway_sdk.client.connection import TransportFactory
from gateway_sdk.errors import ConfigurationError
from gateway_sdk.messages import ChatMessage, Role


# ANSI color codes
class Colors:
    RESET = "\033[0m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"


def colorize(text: str, color: str) -> str:
    """Apply ANSI color to text."""
    return f"{color}{text}{Colors.RESET}"


class ConsoleView:
    """Prints engine output and signals when a reply has landed.

    A reply is the assistant message of the transcript refetched after the
    run of the message we sent has finalized.  Transcripts that arrive
    earlier (the history loaded on connect, the echo of our own message)
    are not replies.
    """

    def __init__(self):
        self.connected = asyncio.Event()
        self.reply_done = asyncio.Event()
        self.reply_failed = False
        self.chat: Optional[ChatRunStateMachine] = None
        self._awaiting_reply = False
        self._run_started = False
        self._run_finalized = False
        self._streamed = False
        self._last_stream_len = 0

    def expect_reply(self) -> None:
        self._awaiting_reply = True
        self._run_started = False
        self._run_finalized = False
        self._streamed = False
        self._last_stream_len = 0
        self.reply_failed = False
        self.reply_done.clear()

    def on_notice(self, text: str) -> None:
        print(colorize(f"ℹ {text}", Colors.YELLOW))

    def on_status(self, status) -> None:
        if status.state == ConnectionState.CONNECTED:
            self.connected.set()
        else:
            self.connected.clear()
        if status.state == ConnectionState.RECONNECTING and status.next_retry_in:
            print(colorize(f"Reconnecting in {status.next_retry_in:.0f}s...", Colors.DIM))

    def on_stream(self, text: Optional[str]) -> None:
        if text is None:
            if self._last_stream_len:
                print()
            self._last_stream_len = 0
            if self._awaiting_reply and self._run_started:
                self._run_ended()
            return
        if self._awaiting_reply:
            self._run_started = True
        # Stream buffers only grow; print the new tail.
        if len(text) > self._last_stream_len:
            sys.stdout.write(colorize(text[self._last_stream_len:], Colors.CYAN))
            sys.stdout.flush()
            self._last_stream_len = len(text)
            self._streamed = True

    def on_transcript(self, messages: List[ChatMessage]) -> None:
        if not self._run_finalized or not messages:
            return
        last = messages[-1]
        if last.role == Role.ASSISTANT:
            if not self._streamed:
                print(colorize(last.text, Colors.CYAN))
            self._finish(failed=False)

    def _run_ended(self) -> None:
        if self.chat is not None and self.chat.state == ChatRunState.FINALIZED:
            # The reply arrives with the history refetch
            self._run_finalized = True
        else:
            # Errored, aborted, or dropped by a reconnect
            self._finish(failed=True)

    def _finish(self, failed: bool) -> None:
        self._awaiting_reply = False
        self._run_started = False
        self._run_finalized = False
        self.reply_failed = failed
        self.reply_done.set()


def build_config(args: argparse.Namespace) -> ClientConfig:
    """Layer command-line overrides over the loaded configuration."""
    config = load_client_config(workspace_path=Path.cwd(), env_file=args.env_file)
    overrides = {}
    if args.url:
        overrides["url"] = args.url
    if args.token:
        overrides["token"] = args.token
    if args.session:
        overrides["session_key"] = args.session
    if overrides:
        config.gateway = dataclasses.replace(config.gateway, **overrides)
    return config


async def send_messages(client: GatewayClient, view: ConsoleView) -> None:
    """Read user input and send messages to the gateway."""
    print(colorize("\nType a message and press Enter. Type 'quit' to exit.\n", Colors.DIM))

    loop = asyncio.get_running_loop()

    while True:
        try:
            # Read input in executor to not block
            user_input = await loop.run_in_executor(None, lambda: input(colorize("> ", Colors.GREEN)))
        except EOFError:
            break

        if user_input.lower() in ("quit", "exit", "q"):
            break
        if not user_input.strip():
            continue

        view.expect_reply()
        await client.send_message(user_input)


async def run_client(
    config: ClientConfig,
    message: Optional[str] = None,
    wait_timeout: float = 30.0,
    transport_factory: Optional[TransportFactory] = None,
) -> int:
    """Run the console client.

    Returns:
        Process exit code.
    """
    view = ConsoleView()
    client = GatewayClient(
        config,
        on_notice=view.on_notice,
        on_status_change=view.on_status,
        on_stream=view.on_stream,
        on_transcript=view.on_transcript,
        transport_factory=transport_factory,
    )
    view.chat = client.chat

    print(colorize(f"Connecting to {config.gateway.url}...", Colors.DIM))
    try:
        await client.connect()
        await asyncio.wait_for(view.connected.wait(), timeout=wait_timeout)

        if message:
            view.expect_reply()
            if not await client.send_message(message):
                return 1
            await asyncio.wait_for(view.reply_done.wait(), timeout=config.gateway.request_timeout)
            return 1 if view.reply_failed else 0

        await send_messages(client, view)
        return 0

    except ConfigurationError as e:
        print(colorize(f"Error: {e}", Colors.RED))
        return 2
    except asyncio.TimeoutError:
        print(colorize("Error: timed out waiting for the gateway", Colors.RED))
        return 1
    finally:
        await client.shutdown()


def main():
    parser = argparse.ArgumentParser(
        description="Console client for the chat gateway",
        epilog=(
            "Raw frames, message text included, are appended to a trace file "
            "(default: gateway_sdk_trace.log in the temp directory; only the "
            "auth token is masked). Set GATEWAY_TRACE_LOG to another path, or "
            "to an empty value to turn tracing off."
        ),
    )
    parser.add_argument("--url", help="Gateway websocket address (overrides config)")
    parser.add_argument("--token", help="Gateway auth token (overrides config)")
    parser.add_argument("--session", help="Session key (overrides config)")
    parser.add_argument(
        "--message", "-m",
        type=str,
        help="Send a single message, print the reply and exit",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to .env file (default: .env)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        sys.exit(asyncio.run(run_client(build_config(args), message=args.message)))
    except KeyboardInterrupt:
        print(colorize("\nInterrupted", Colors.DIM))


if __name__ == "__main__":
    main()
