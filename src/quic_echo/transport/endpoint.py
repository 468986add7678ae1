"""
Server and client QUIC endpoints.

An endpoint owns one bound UDP socket and the aioquic configuration used for
every connection on it.

Server:
    bind() installs the server identity and the ALPN identifier. accept()
    yields inbound attempts; each must complete its handshake via establish()
    before it is a usable connection. A failed handshake only affects that
    attempt.

Client:
    bind() claims a local socket and fixes the trust policy. connect() dials
    the server and waits for the handshake under a deadline. A client
    endpoint drives one live connection at a time.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from aioquic.asyncio.server import QuicServer
from aioquic.quic.connection import QuicConnection as QuicEngine
from typing_extensions import Self

from ..config import ClientConfig, ServerConfig
from ..exceptions import BindError, ConnectError, HandshakeError
from ..tls import (
    SelfSignedIdentity,
    TrustPolicy,
    client_quic_configuration,
    generate_self_signed_identity,
    server_quic_configuration,
    trust_policy_for,
)
from .connection import Address, EchoQuicProtocol, QuicConnection

logger = logging.getLogger(__name__)


class Role(Enum):
    """Which side of the exchange an endpoint plays."""

    SERVER = "server"
    CLIENT = "client"


@dataclass(slots=True)
class IncomingConnection:
    """
    An inbound connection attempt that has not finished its handshake.

    Created when the first datagram of a new connection arrives.
    """

    _protocol: EchoQuicProtocol

    @property
    def remote_address(self) -> Address | None:
        """Address the attempt came from."""
        return self._protocol.connection.remote_address

    async def establish(self, timeout: float | None = None) -> QuicConnection:
        """
        Wait for the handshake to complete.

        Args:
            timeout: Deadline in seconds. None waits forever.

        Returns:
            The usable connection.

        Raises:
            HandshakeError: If the handshake failed or timed out.
        """
        connection = self._protocol.connection
        try:
            await asyncio.wait_for(connection.wait_established(), timeout=timeout)
        except asyncio.TimeoutError as e:
            connection.abort(reason="handshake timeout")
            raise HandshakeError(f"Handshake did not complete within {timeout}s") from e
        return connection


@dataclass(slots=True)
class ServerEndpoint:
    """
    Listening endpoint.

    Usage:
        endpoint = await ServerEndpoint.bind(ServerConfig(port=4433))
        while (incoming := await endpoint.accept()) is not None:
            connection = await incoming.establish(timeout=5.0)
    """

    config: ServerConfig
    _transport: asyncio.DatagramTransport
    _incoming: asyncio.Queue[IncomingConnection | None]
    _protocols: weakref.WeakSet[EchoQuicProtocol]
    identity: SelfSignedIdentity | None = None
    _closed: bool = False

    role = Role.SERVER

    @classmethod
    async def bind(
        cls,
        config: ServerConfig,
        identity: SelfSignedIdentity | None = None,
    ) -> Self:
        """
        Bind the server socket and install the identity.

        Without an explicit identity or certificate files, a self-signed
        identity for `config.server_name` is generated.

        Raises:
            CertificateError: If the identity cannot be generated or loaded.
            BindError: If the socket cannot be bound.
        """
        if identity is None and config.certificate_file is None:
            identity = generate_self_signed_identity([config.server_name])

        quic_config = server_quic_configuration(config, identity)

        incoming: asyncio.Queue[IncomingConnection | None] = asyncio.Queue()
        protocols: weakref.WeakSet[EchoQuicProtocol] = weakref.WeakSet()

        # aioquic creates one protocol per new connection, before its handshake.
        def create_protocol(*args: Any, **kwargs: Any) -> EchoQuicProtocol:
            protocol = EchoQuicProtocol(*args, **kwargs)
            protocols.add(protocol)
            incoming.put_nowait(IncomingConnection(protocol))
            return protocol

        loop = asyncio.get_running_loop()
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: QuicServer(configuration=quic_config, create_protocol=create_protocol),
                local_addr=(config.host, config.port),
            )
        except OSError as e:
            raise BindError(f"Cannot bind server to {config.host}:{config.port}: {e}") from e

        endpoint = cls(
            config=config,
            _transport=transport,
            _incoming=incoming,
            _protocols=protocols,
            identity=identity,
        )
        logger.info("QUIC server listening on %s", endpoint.local_address)
        return endpoint

    @property
    def local_address(self) -> Address:
        """Address the socket is bound to."""
        return self._transport.get_extra_info("sockname")

    @property
    def is_closed(self) -> bool:
        """True once close() was called."""
        return self._closed

    async def accept(self) -> IncomingConnection | None:
        """
        Wait for the next inbound connection attempt.

        Returns:
            The attempt, or None once the endpoint is closed.
        """
        if self._closed:
            return None

        incoming = await self._incoming.get()
        if incoming is None:
            self._incoming.put_nowait(None)
        return incoming

    def close(self) -> None:
        """
        Close every live connection and release the socket.

        Pending accept() calls return None.
        """
        if self._closed:
            return
        self._closed = True

        # Abort rather than close: the socket goes away next, so there is no
        # draining period to wait for. Peers see the close frame sent here.
        for protocol in list(self._protocols):
            protocol.connection.abort(reason="server shutting down")

        self._transport.close()
        self._incoming.put_nowait(None)
        logger.info("QUIC server stopped")


def _bind_udp_socket(host: str, port: int) -> socket.socket:
    """
    Create a UDP socket bound to the given local address.

    Raises:
        BindError: If the address cannot be resolved or bound.
    """
    try:
        family = socket.AF_INET6 if ipaddress.ip_address(host).version == 6 else socket.AF_INET
    except ValueError:
        family = socket.AF_INET

    sock = socket.socket(family, socket.SOCK_DGRAM)
    try:
        sock.bind((host, port))
    except OSError as e:
        sock.close()
        raise BindError(f"Cannot bind client to {host}:{port}: {e}") from e
    return sock


@dataclass(slots=True)
class ClientEndpoint:
    """
    Connecting endpoint.

    Usage:
        endpoint = await ClientEndpoint.bind(ClientConfig(insecure=True))
        connection = await endpoint.connect()
    """

    config: ClientConfig
    _sock: socket.socket | None = None
    _local_address: Address | None = None
    _active: QuicConnection | None = field(default=None, repr=False)
    _closed: bool = False

    role = Role.CLIENT

    @classmethod
    async def bind(cls, config: ClientConfig) -> Self:
        """
        Bind the local socket and install the trust policy.

        Raises:
            BindError: If the socket cannot be bound.
        """
        sock = _bind_udp_socket(config.bind_host, config.bind_port)
        endpoint = cls(config=config, _sock=sock, _local_address=sock.getsockname())

        if endpoint.trust_policy is TrustPolicy.INSECURE:
            logger.warning(
                "Server certificate verification is DISABLED; "
                "the connection is encrypted but the server is not authenticated"
            )
        logger.info("QUIC client initialized on %s", endpoint.local_address)
        return endpoint

    @property
    def local_address(self) -> Address | None:
        """Address the current socket is bound to."""
        return self._local_address

    @property
    def trust_policy(self) -> TrustPolicy:
        """How the server certificate is checked."""
        return trust_policy_for(self.config)

    async def connect(
        self,
        host: str | None = None,
        port: int | None = None,
        server_name: str | None = None,
    ) -> QuicConnection:
        """
        Connect to a server and complete the handshake.

        Arguments default to the configured server address and name.

        Returns:
            Established connection.

        Raises:
            ConnectError: If the server is unreachable, the handshake fails or
                does not complete within `connect_timeout_secs`.
        """
        if self._closed:
            raise ConnectError("Client endpoint is closed")
        if self._active is not None and not self._active.is_closed:
            raise ConnectError("Client endpoint already has a live connection")

        host = host or self.config.server_host
        port = port or self.config.server_port
        server_name = server_name or self.config.server_name
        timeout = self.config.connect_timeout_secs

        logger.info("Connecting to %s:%d (%s)", host, port, server_name)

        # The previous connection's transport closed its socket.
        sock = self._sock or _bind_udp_socket(self.config.bind_host, self.config.bind_port)
        self._sock = None
        self._local_address = sock.getsockname()

        # The handshake is sent to a resolved address. Resolve with the socket's
        # family so an IPv4 socket never gets an IPv6 peer.
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(host, port, family=sock.family, type=socket.SOCK_DGRAM)
        except OSError as e:
            sock.close()
            raise ConnectError(f"Cannot resolve {host}:{port}: {e}") from e
        addr = infos[0][4]

        # One aioquic engine per connection. Its protocol wraps the already bound
        # socket, and the transport closes that socket when the connection ends.
        engine = QuicEngine(configuration=client_quic_configuration(self.config, server_name))
        transport, protocol = await loop.create_datagram_endpoint(
            lambda: EchoQuicProtocol(engine),
            sock=sock,
        )
        assert isinstance(protocol, EchoQuicProtocol)
        connection = protocol.connection
        connection._remote_address = addr
        connection._owned_transport = transport

        # Sends the Initial packet. Nothing answers from an unreachable host,
        # so the deadline is what turns silence into a ConnectError.
        protocol.connect(addr)

        try:
            await asyncio.wait_for(connection.wait_established(), timeout=timeout)
        except asyncio.TimeoutError as e:
            connection.abort(reason="connect timeout")
            raise ConnectError(
                f"Handshake with {host}:{port} did not complete within {timeout}s"
            ) from e
        except HandshakeError as e:
            transport.close()
            raise ConnectError(f"Connection to {host}:{port} failed: {e.message}") from e

        connection.start_keepalive(self.config.keep_alive_interval_secs)
        self._active = connection

        logger.info("Connected to server: %s", connection.remote_address)
        return connection

    async def close(self) -> None:
        """Close the live connection, if any, and release the socket."""
        if self._closed:
            return
        self._closed = True

        if self._active is not None:
            await self._active.close()
            self._active = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None
