"""
Thread-per-role runtime for the chat application.

    main thread (UI)         server thread              client thread
    ----------------         -------------              -------------
    submit(text) ----------> OutboundChannel ---------> ClientDriver
          ^                                                  |
          |                  EchoServer <----- QUIC ---------+
          |                      |                           |
          +------ MessageLog <---+---------------------------+

Each role runs its own asyncio event loop on a dedicated thread, so a blocked
UI never stalls the network and vice versa. The only cross-thread state is
the message log and the outbound channel.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Protocol

from .bridge import MessageBridge, MessageLog, MessageRecord
from .client.driver import ClientDriver
from .config import ClientConfig, ServerConfig
from .exceptions import QuicEchoError
from .server.service import EchoServer
from .tls import generate_self_signed_identity

logger = logging.getLogger(__name__)


class Service(Protocol):
    """A role that runs on an event loop until told to stop."""

    async def run(self) -> None:
        """Run until finished or stopped."""
        ...

    def stop(self) -> None:
        """Request shutdown. Called on the service's own event loop."""
        ...


class RoleThread(threading.Thread):
    """
    Runs one service on a private event loop in a dedicated thread.

    A service failing with a QuicEchoError is recorded in `error` rather than
    raised, so the thread that started it can report it.
    """

    def __init__(self, name: str, service: Service) -> None:
        """Prepare the thread; call start() to run the service."""
        super().__init__(name=name, daemon=True)
        self.service = service
        self.error: QuicEchoError | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.Lock()
        self._stop_requested = False

    def run(self) -> None:
        """Thread body."""
        with asyncio.Runner() as runner:
            with self._lock:
                self._loop = runner.get_loop()
                stop_early = self._stop_requested
            if stop_early:
                self.service.stop()
            try:
                runner.run(self.service.run())
            except QuicEchoError as e:
                self.error = e
                logger.error("%s failed: %s", self.name, e)
            finally:
                with self._lock:
                    self._loop = None

    def stop(self) -> None:
        """Ask the service to stop. Safe to call from any thread, any number of times."""
        with self._lock:
            self._stop_requested = True
            loop = self._loop
            if loop is None:
                return
            try:
                loop.call_soon_threadsafe(self.service.stop)
            except RuntimeError:
                # Loop already closed: the service has finished.
                pass


@dataclass(slots=True)
class ChatApplication:
    """
    Server and client roles wired to one message bridge.

    By default the client dials this process's own server and pins the
    certificate generated for it, so no verification has to be disabled.
    Set `connect_to_self=False` to dial the server named in the client
    configuration instead.
    """

    server_config: ServerConfig
    client_config: ClientConfig
    connect_to_self: bool = True
    startup_timeout: float = 10.0
    bridge: MessageBridge = field(default_factory=MessageBridge)
    _server_thread: RoleThread | None = field(default=None, repr=False)
    _client_thread: RoleThread | None = field(default=None, repr=False)

    @property
    def log(self) -> MessageLog:
        """The conversation log."""
        return self.bridge.log

    @property
    def server_address(self) -> tuple[str, int] | None:
        """Address the server role is listening on, once started."""
        if self._server_thread is None:
            return None
        server = self._server_thread.service
        assert isinstance(server, EchoServer)
        if server.endpoint is None:
            return None
        host, port = server.endpoint.local_address[:2]
        return host, port

    @property
    def client_error(self) -> QuicEchoError | None:
        """Why the client role stopped, if it failed."""
        return self._client_thread.error if self._client_thread is not None else None

    @property
    def client_running(self) -> bool:
        """True while the client role's thread is alive."""
        return self._client_thread is not None and self._client_thread.is_alive()

    def start(self) -> None:
        """
        Start the server role, wait until it listens, then start the client role.

        Raises:
            CertificateError: If the server identity cannot be generated.
            BindError: If the server socket cannot be bound.
            TimeoutError: If the server did not come up in time.
        """
        identity = None
        if self.server_config.certificate_file is None:
            identity = generate_self_signed_identity([self.server_config.server_name])

        server = EchoServer(self.server_config, log=self.bridge.log, identity=identity)
        self._server_thread = RoleThread("server", server)
        self._server_thread.start()
        self._wait_until_bound(server, self._server_thread)

        client_config = self.client_config
        if self.connect_to_self:
            address = self.server_address
            assert address is not None
            update: dict[str, object] = {
                "server_host": address[0],
                "server_port": address[1],
                "server_name": self.server_config.server_name,
            }
            if identity is not None and not client_config.insecure:
                update["cadata"] = identity.certificate_pem
            client_config = client_config.model_copy(update=update)

        driver = ClientDriver(client_config, channel=self.bridge.channel, log=self.bridge.log)
        self._client_thread = RoleThread("client", driver)
        self._client_thread.start()

    def submit(self, text: str) -> MessageRecord:
        """
        Queue a message from the UI.

        Raises:
            ChannelClosed: If the client role has stopped.
        """
        return self.bridge.submit(text)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop both roles and wait for their threads."""
        self.bridge.close()
        for thread in (self._client_thread, self._server_thread):
            if thread is None:
                continue
            thread.stop()
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("%s thread did not stop within %.1fs", thread.name, timeout)

    def _wait_until_bound(self, server: EchoServer, thread: RoleThread) -> None:
        deadline = self.startup_timeout
        step = 0.05
        waited = 0.0
        while not server.bound.wait(step):
            if not thread.is_alive():
                if thread.error is not None:
                    raise thread.error
                raise RuntimeError("Server thread exited before binding")
            waited += step
            if waited >= deadline:
                thread.stop()
                raise TimeoutError(f"Server did not start within {deadline}s")
