"""
QUIC echo CLI entry point.

Usage::

    python -m quic_echo chat                      # server + client + console in one process
    python -m quic_echo serve --port 4433         # standalone echo server
    python -m quic_echo send --insecure hello     # one-shot client

Commands:
    chat    Start an echo server and a client connected to it, then read
            messages from standard input. Each line is sent over QUIC and
            both the request and the echoed reply are printed.
    serve   Run only the echo server until interrupted.
    send    Connect to a server, send each message argument on its own
            stream, print the replies, and close.

Exit status is 0 on a clean shutdown and 1 when startup fails (the socket
cannot be bound, no certificate is available, or the server is unreachable).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Sequence
from pathlib import Path

from .app import ChatApplication
from .client.session import open_session
from .config import (
    CONNECT_TIMEOUT_SECS,
    DEFAULT_HOST,
    DEFAULT_PORT,
    DEFAULT_SERVER_NAME,
    MAX_MESSAGE_SIZE,
    ClientConfig,
    ServerConfig,
)
from .exceptions import BindError, CertificateError, ConnectError, StreamError
from .server.service import EchoServer, wait_for_shutdown
from .shell import ConsoleShell
from .transport.endpoint import ClientEndpoint

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1


class RoleFormatter(logging.Formatter):
    """
    Log formatter that tags each record with the role that emitted it.

    In chat mode the server and the client log to the same stderr from their
    own threads. Role threads are named after their role; anything else
    (the console, a one-shot command) is tagged ``main``.
    """

    TIME_COLOR = "\x1b[38;5;244m"
    NAME_COLOR = "\x1b[38;5;39m"
    RESET = "\x1b[0m"

    LEVEL_COLORS = {
        logging.DEBUG: "\x1b[38;5;244m",
        logging.INFO: "\x1b[38;5;40m",
        logging.WARNING: "\x1b[38;5;220m",
        logging.ERROR: "\x1b[38;5;196m",
        logging.CRITICAL: "\x1b[38;5;196;1m",
    }

    ROLE_COLORS = {
        "server": "\x1b[38;5;213m",
        "client": "\x1b[38;5;51m",
        "main": "\x1b[38;5;250m",
    }

    def __init__(self, color: bool = True) -> None:
        """Create a formatter, with ANSI colors unless `color` is False."""
        super().__init__(datefmt="%H:%M:%S")
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        """Format a record as `time LEVEL [role] name: message`."""
        role = record.threadName if record.threadName in ("server", "client") else "main"

        fields = [
            self._paint(self.formatTime(record, self.datefmt), self.TIME_COLOR),
            self._paint(f"{record.levelname:8}", self.LEVEL_COLORS.get(record.levelno)),
            self._paint(f"[{role}]", self.ROLE_COLORS[role]),
            self._paint(f"{record.name}:", self.NAME_COLOR),
            record.getMessage(),
        ]
        line = " ".join(fields)

        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line

    def _paint(self, text: str, code: str | None) -> str:
        if not self.color or code is None:
            return text
        return f"{code}{text}{self.RESET}"


def setup_logging(verbose: bool = False, no_color: bool = False) -> None:
    """
    Send log records to stderr.

    Colors are used only when stderr is a terminal and `no_color` is not set.
    The aioquic loggers are capped at WARNING unless `verbose` is set; at INFO
    they narrate every packet exchange.
    """
    level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(RoleFormatter(color=not no_color and sys.stderr.isatty()))

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)

    logging.getLogger("quic").setLevel(logging.DEBUG if verbose else logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for every command."""
    parser = argparse.ArgumentParser(
        prog="quic-echo",
        description="QUIC echo server and client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--no-color", action="store_true", help="Disable colored logging output")

    commands = parser.add_subparsers(dest="command", required=True)

    chat = commands.add_parser("chat", help="Run server, client and console together")
    _add_server_arguments(chat)
    chat.add_argument(
        "--insecure",
        action="store_true",
        help="Skip certificate verification instead of pinning the generated certificate",
    )
    chat.add_argument(
        "--peer",
        metavar="HOST:PORT",
        default=None,
        help="Dial another chat process instead of this process's own server",
    )

    serve = commands.add_parser("serve", help="Run a standalone echo server")
    _add_server_arguments(serve)
    serve.add_argument("--cert", type=Path, default=None, help="PEM certificate chain to serve")
    serve.add_argument("--key", type=Path, default=None, help="PEM private key for --cert")

    send = commands.add_parser("send", help="Send messages to a server and print the replies")
    send.add_argument("messages", nargs="+", metavar="MESSAGE", help="Message to send")
    send.add_argument(
        "--host", default=DEFAULT_HOST, help=f"Server address (default: {DEFAULT_HOST})"
    )
    send.add_argument(
        "--port", type=int, default=DEFAULT_PORT, help=f"Server UDP port (default: {DEFAULT_PORT})"
    )
    send.add_argument(
        "--server-name",
        default=DEFAULT_SERVER_NAME,
        help=f"Expected certificate host name (default: {DEFAULT_SERVER_NAME})",
    )
    send.add_argument("--cafile", type=Path, default=None, help="PEM certificates to trust")
    send.add_argument("--insecure", action="store_true", help="Skip certificate verification")
    send.add_argument(
        "--connect-timeout",
        type=float,
        default=CONNECT_TIMEOUT_SECS,
        help=f"Handshake deadline in seconds (default: {CONNECT_TIMEOUT_SECS})",
    )
    send.add_argument(
        "--max-message-size",
        type=int,
        default=MAX_MESSAGE_SIZE,
        help=f"Largest accepted reply in bytes (default: {MAX_MESSAGE_SIZE})",
    )

    return parser


def _add_server_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--host", default=DEFAULT_HOST, help=f"Address to bind (default: {DEFAULT_HOST})"
    )
    parser.add_argument(
        "--port", type=int, default=DEFAULT_PORT, help=f"UDP port to bind (default: {DEFAULT_PORT})"
    )
    parser.add_argument(
        "--server-name",
        default=DEFAULT_SERVER_NAME,
        help=f"Host name for the certificate (default: {DEFAULT_SERVER_NAME})",
    )
    parser.add_argument(
        "--max-message-size",
        type=int,
        default=MAX_MESSAGE_SIZE,
        help=f"Largest accepted message in bytes (default: {MAX_MESSAGE_SIZE})",
    )


def parse_peer(value: str) -> tuple[str, int]:
    """
    Split a HOST:PORT string.

    Raises:
        ValueError: If the port is missing or not a number.
    """
    host, sep, port = value.rpartition(":")
    if not sep or not host:
        raise ValueError(f"Expected HOST:PORT, got {value!r}")
    return host.strip("[]"), int(port)


def run_chat(args: argparse.Namespace) -> int:
    """Run the chat application until the console input ends."""
    server_config = ServerConfig(
        host=args.host,
        port=args.port,
        server_name=args.server_name,
        max_message_size=args.max_message_size,
    )
    client_config = ClientConfig(
        server_name=args.server_name,
        max_message_size=args.max_message_size,
        insecure=args.insecure,
        connect_attempts=3,
    )
    connect_to_self = args.peer is None
    if not connect_to_self:
        peer_host, peer_port = parse_peer(args.peer)
        client_config = client_config.model_copy(
            update={"server_host": peer_host, "server_port": peer_port}
        )

    app = ChatApplication(server_config, client_config, connect_to_self=connect_to_self)
    app.start()
    logger.info(
        "Listening on %s, type messages and press enter (/quit to exit)", app.server_address
    )

    try:
        ConsoleShell(app).run()
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        app.stop()

    return EXIT_STARTUP_FAILURE if isinstance(app.client_error, ConnectError) else EXIT_OK


async def serve(config: ServerConfig) -> None:
    """Run an echo server until SIGINT or SIGTERM."""
    server = EchoServer(config)
    await server.start()

    stop = asyncio.Event()
    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
    except (ValueError, RuntimeError, NotImplementedError):
        # Not on the main thread, or the platform has no signal support.
        pass

    waiter = asyncio.create_task(wait_for_shutdown(server, stop))
    try:
        await server.serve()
    finally:
        waiter.cancel()


def run_serve(args: argparse.Namespace) -> int:
    """Run the standalone server."""
    config = ServerConfig(
        host=args.host,
        port=args.port,
        server_name=args.server_name,
        max_message_size=args.max_message_size,
        certificate_file=args.cert,
        private_key_file=args.key,
    )
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    return EXIT_OK


async def send_messages(config: ClientConfig, messages: Sequence[str]) -> list[str]:
    """
    Send each message on its own stream and return the replies in order.

    A message whose exchange fails is logged and skipped.

    Raises:
        BindError: If the local socket cannot be bound.
        ConnectError: If the server cannot be reached.
    """
    endpoint = await ClientEndpoint.bind(config)
    replies: list[str] = []
    try:
        session = await open_session(endpoint)
        for message in messages:
            try:
                replies.append(await session.send(message))
            except StreamError as e:
                logger.error("Error sending message %r: %s", message, e)
        await session.close()
    finally:
        await endpoint.close()
    return replies


def run_send(args: argparse.Namespace) -> int:
    """Run the one-shot client and print the replies to stdout."""
    config = ClientConfig(
        server_host=args.host,
        server_port=args.port,
        server_name=args.server_name,
        cafile=args.cafile,
        insecure=args.insecure,
        connect_timeout_secs=args.connect_timeout,
        max_message_size=args.max_message_size,
    )
    for reply in asyncio.run(send_messages(config, args.messages)):
        print(reply)
    return EXIT_OK


COMMANDS = {
    "chat": run_chat,
    "serve": run_serve,
    "send": run_send,
}


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point. Returns the process exit status."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose, args.no_color)

    try:
        return COMMANDS[args.command](args)
    except (BindError, CertificateError, ConnectError) as e:
        logger.error("Startup failed: %s", e)
        return EXIT_STARTUP_FAILURE
    except ValueError as e:
        logger.error("Invalid arguments: %s", e)
        return EXIT_STARTUP_FAILURE


if __name__ == "__main__":
    sys.exit(main())
