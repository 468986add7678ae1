"""Tests for the command line interface."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from quic_echo.__main__ import (
    EXIT_OK,
    EXIT_STARTUP_FAILURE,
    RoleFormatter,
    build_parser,
    main,
    parse_peer,
    setup_logging,
)
from quic_echo.app import RoleThread
from quic_echo.config import DEFAULT_PORT, ServerConfig
from quic_echo.server.service import EchoServer
from tests.quic_echo.helpers import silent_udp_port


@pytest.fixture
def server_port() -> Iterator[int]:
    """Echo server running on its own thread."""
    server = EchoServer(ServerConfig(port=0))
    thread = RoleThread("server", server)
    thread.start()
    assert server.bound.wait(5.0)
    assert server.endpoint is not None

    yield server.endpoint.local_address[1]

    thread.stop()
    thread.join(5.0)


class TestParser:
    """Tests for argument parsing."""

    def test_command_required(self) -> None:
        """Running without a command is a usage error."""
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_serve_defaults(self) -> None:
        """The standalone server listens on the default port."""
        args = build_parser().parse_args(["serve"])

        assert args.port == DEFAULT_PORT
        assert args.cert is None

    def test_serve_certificate_files(self) -> None:
        """Certificate paths are parsed as paths."""
        args = build_parser().parse_args(["serve", "--cert", "c.pem", "--key", "k.pem"])

        assert args.cert == Path("c.pem")
        assert args.key == Path("k.pem")

    def test_chat_is_verified_by_default(self) -> None:
        """Disabling verification has to be asked for."""
        assert build_parser().parse_args(["chat"]).insecure is False
        assert build_parser().parse_args(["chat", "--insecure"]).insecure is True

    def test_send_messages(self) -> None:
        """Every positional argument is a message."""
        args = build_parser().parse_args(["-v", "send", "a", "b"])

        assert args.messages == ["a", "b"]
        assert args.verbose


class TestParsePeer:
    """Tests for HOST:PORT parsing."""

    def test_ipv4(self) -> None:
        """Host and port are split on the last colon."""
        assert parse_peer("10.0.0.1:4433") == ("10.0.0.1", 4433)

    def test_ipv6(self) -> None:
        """Bracketed IPv6 hosts lose their brackets."""
        assert parse_peer("[::1]:4433") == ("::1", 4433)

    @pytest.mark.parametrize("value", ["localhost", ":4433", "host:port"])
    def test_invalid(self, value: str) -> None:
        """Anything without a numeric port is rejected."""
        with pytest.raises(ValueError):
            parse_peer(value)


def _record(thread_name: str) -> logging.LogRecord:
    record = logging.LogRecord(
        "quic_echo.test", logging.WARNING, __file__, 1, "hi %s", ("x",), None
    )
    record.threadName = thread_name
    return record


class TestRoleFormatter:
    """Tests for the log formatter."""

    @pytest.mark.parametrize(
        ("thread_name", "role"),
        [("server", "server"), ("client", "client"), ("MainThread", "main"), ("render", "main")],
    )
    def test_role_tag(self, thread_name: str, role: str) -> None:
        """Records are tagged with the role thread that emitted them."""
        line = RoleFormatter(color=False).format(_record(thread_name))

        assert f"WARNING  [{role}] quic_echo.test: hi x" in line

    def test_plain_has_no_escape_codes(self) -> None:
        """Without color the line is plain text."""
        assert "\x1b[" not in RoleFormatter(color=False).format(_record("server"))

    def test_colored_keeps_message(self) -> None:
        """Colors wrap the fields but leave the message untouched."""
        line = RoleFormatter().format(_record("client"))

        assert "\x1b[" in line
        assert "[client]" in line
        assert line.endswith(" hi x")

    @pytest.mark.usefixtures("restore_logging")
    def test_no_color_when_not_a_terminal(self) -> None:
        """Captured stderr is not a terminal, so colors are off."""
        setup_logging()

        formatter = logging.getLogger().handlers[-1].formatter
        assert isinstance(formatter, RoleFormatter)
        assert not formatter.color


@pytest.mark.usefixtures("restore_logging")
class TestMain:
    """Tests for running commands end to end."""

    def test_send(self, server_port: int, capsys: pytest.CaptureFixture[str]) -> None:
        """send prints one reply per message, in order."""
        code = main(
            ["--no-color", "send", "--port", str(server_port), "--insecure", "hello", "world"]
        )

        assert code == EXIT_OK
        assert capsys.readouterr().out.splitlines() == ["Echo: hello", "Echo: world"]

    def test_send_unreachable(self) -> None:
        """An unreachable server is a startup failure."""
        with silent_udp_port() as port:
            code = main(
                [
                    "--no-color",
                    "send",
                    "--port",
                    str(port),
                    "--insecure",
                    "--connect-timeout",
                    "0.3",
                    "hello",
                ]
            )

        assert code == EXIT_STARTUP_FAILURE

    def test_serve_bind_failure(self, server_port: int) -> None:
        """A port that is already taken is a startup failure."""
        assert main(["--no-color", "serve", "--port", str(server_port)]) == EXIT_STARTUP_FAILURE

    def test_invalid_option_value(self) -> None:
        """Out-of-range values are reported instead of crashing."""
        assert main(["--no-color", "serve", "--port", "70000"]) == EXIT_STARTUP_FAILURE

    def test_certificate_without_key(self) -> None:
        """--cert without --key is rejected before anything is bound."""
        code = main(["--no-color", "serve", "--port", "0", "--cert", "c.pem"])

        assert code == EXIT_STARTUP_FAILURE

    def test_quic_logger_is_quieted(self) -> None:
        """aioquic's chatty loggers stay at WARNING without --verbose."""
        with silent_udp_port() as port:
            main(["--no-color", "send", "--port", str(port), "--connect-timeout", "0.1", "x"])

        assert logging.getLogger("quic").level == logging.WARNING
