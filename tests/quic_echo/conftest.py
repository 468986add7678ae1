"""
Shared fixtures for the QUIC echo tests.

Servers bind an ephemeral loopback port so tests can run in parallel. Clients
skip certificate verification: these fixtures exercise the transport, not the
trust policies, which have their own tests.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterator

import pytest

from quic_echo.bridge import MessageLog
from quic_echo.client.session import ClientSession, open_session
from quic_echo.config import ClientConfig, ServerConfig
from quic_echo.server.service import EchoServer
from quic_echo.transport.endpoint import ClientEndpoint


@pytest.fixture
def server_config() -> ServerConfig:
    """Loopback server with short deadlines."""
    return ServerConfig(port=0, stream_timeout_secs=2.0, handshake_timeout_secs=2.0)


@pytest.fixture
def message_log() -> MessageLog:
    """Log shared by the server under test."""
    return MessageLog()


@pytest.fixture
async def echo_server(
    server_config: ServerConfig, message_log: MessageLog
) -> AsyncIterator[EchoServer]:
    """Running echo server, stopped after the test."""
    server = EchoServer(server_config, log=message_log)
    await server.start()
    serving = asyncio.create_task(server.serve())

    yield server

    server.stop()
    await asyncio.wait_for(serving, timeout=5.0)


@pytest.fixture
def client_config(echo_server: EchoServer) -> ClientConfig:
    """Client configuration pointing at the running server."""
    assert echo_server.endpoint is not None
    return ClientConfig(
        server_port=echo_server.endpoint.local_address[1],
        insecure=True,
        connect_timeout_secs=2.0,
        stream_timeout_secs=2.0,
    )


@pytest.fixture
async def client_endpoint(client_config: ClientConfig) -> AsyncIterator[ClientEndpoint]:
    """Bound client endpoint, closed after the test."""
    endpoint = await ClientEndpoint.bind(client_config)
    yield endpoint
    await endpoint.close()


@pytest.fixture
async def session(client_endpoint: ClientEndpoint) -> ClientSession:
    """Session connected to the running server."""
    return await open_session(client_endpoint)


@pytest.fixture
def restore_logging() -> Iterator[None]:
    """Undo handlers installed by the CLI's logging setup."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    quic_level = logging.getLogger("quic").level

    yield

    root.handlers[:] = handlers
    root.setLevel(level)
    logging.getLogger("quic").setLevel(quic_level)
