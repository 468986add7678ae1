"""
Echo server: the accept loop and its supervised connection handlers.

For each inbound attempt the accept loop spawns a task that completes the
handshake and then runs a ConnectionHandler. The loop never waits on those
tasks, so a slow or failing peer cannot stall other connections. All tasks
are held by a supervisor and cancelled when the server stops.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field

from ..bridge import MessageLog
from ..config import ServerConfig
from ..exceptions import HandshakeError
from ..supervisor import TaskSupervisor
from ..tls import SelfSignedIdentity
from ..transport.endpoint import IncomingConnection, ServerEndpoint
from .handler import ConnectionHandler

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EchoServer:
    """
    The server role.

    Usage:
        server = EchoServer(ServerConfig())
        await server.run()          # until stop() is called

    `bound` is a thread-safe flag for callers on other threads that need to
    wait until the socket is listening.
    """

    config: ServerConfig
    log: MessageLog | None = None
    """Shared log to record inbound messages in, if attached to a UI."""

    identity: SelfSignedIdentity | None = None
    """Identity to serve. Generated at bind time when absent."""

    bound: threading.Event = field(default_factory=threading.Event)
    _endpoint: ServerEndpoint | None = None
    _handlers: TaskSupervisor = field(default_factory=lambda: TaskSupervisor(name="connections"))
    _stop_requested: bool = False

    @property
    def endpoint(self) -> ServerEndpoint | None:
        """The bound endpoint, once started."""
        return self._endpoint

    @property
    def connection_count(self) -> int:
        """Connections currently being handshaken or served."""
        return len(self._handlers)

    async def start(self) -> ServerEndpoint:
        """
        Bind the endpoint.

        Raises:
            CertificateError: If the server identity cannot be produced.
            BindError: If the socket cannot be bound.
        """
        self._endpoint = await ServerEndpoint.bind(self.config, self.identity)
        self.identity = self._endpoint.identity
        self.bound.set()
        if self._stop_requested:
            self._endpoint.close()
        return self._endpoint

    async def serve(self) -> None:
        """Accept connections until the endpoint is closed."""
        endpoint = self._endpoint
        assert endpoint is not None, "start() must be called first"

        logger.info("Server is ready to accept connections")
        try:
            while (incoming := await endpoint.accept()) is not None:
                self._handlers.spawn(
                    self._handle_incoming(incoming),
                    name=f"conn-{incoming.remote_address}",
                )
        finally:
            endpoint.close()
            await self._handlers.shutdown()

    async def run(self) -> None:
        """Bind, then serve until stopped."""
        await self.start()
        await self.serve()

    def stop(self) -> None:
        """
        Stop accepting and close every connection.

        Must be called on the server's event loop.
        """
        self._stop_requested = True
        if self._endpoint is not None:
            self._endpoint.close()

    async def _handle_incoming(self, incoming: IncomingConnection) -> None:
        try:
            connection = await incoming.establish(timeout=self.config.handshake_timeout_secs)
        except HandshakeError as e:
            logger.warning("Handshake from %s failed: %s", incoming.remote_address, e)
            return

        logger.info("Connection accepted from: %s", connection.remote_address)
        connection.start_keepalive(self.config.keep_alive_interval_secs)

        await ConnectionHandler(connection=connection, config=self.config, log=self.log).run()
        await connection.wait_closed()


async def wait_for_shutdown(server: EchoServer, stop: asyncio.Event) -> None:
    """Stop the server once `stop` is set. Used by the standalone entry point."""
    await stop.wait()
    server.stop()
