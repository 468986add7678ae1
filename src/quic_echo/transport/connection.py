"""
QUIC connection wrapper over aioquic.

aioquic is sans-I/O: its protocol object turns datagrams into events. This
module routes those events to per-stream buffers and exposes an awaitable
connection API:

    open_stream()    -> new locally initiated bidirectional stream
    accept_stream()  -> next peer initiated bidirectional stream
    close()          -> application close with code and reason

Connection lifecycle:

    CONNECTING --handshake completed--> OPEN --terminated--> CLOSED
    CONNECTING --terminated-------------------------------> CLOSED

Once CLOSED, every live stream is failed with the connection's outcome, so
no stream outlives its connection. The outcome distinguishes an orderly
close (ConnectionClosed) from an abnormal one (ConnectionLost).

References:
    - aioquic documentation: https://aioquic.readthedocs.io/
    - RFC 9000 Section 10: https://www.rfc-editor.org/rfc/rfc9000#section-10
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Final

from aioquic.asyncio import QuicConnectionProtocol
from aioquic.quic.events import (
    ConnectionTerminated,
    HandshakeCompleted,
    QuicEvent,
    StopSendingReceived,
    StreamDataReceived,
    StreamReset,
)
from aioquic.quic.packet import QuicErrorCode

from ..exceptions import ConnectionClosed, ConnectionLost, HandshakeError, QuicConnectionError
from ..supervisor import TaskSupervisor
from .stream import QuicStream

logger = logging.getLogger(__name__)

IDLE_TIMEOUT_REASON: Final = "Idle timeout"
"""Reason phrase aioquic attaches to idle timeout terminations."""

CLOSE_WAIT_SECS: Final = 2.0
"""How long close() waits for the draining period to end."""

Address = tuple[Any, ...]
"""Socket address as reported by the socket layer."""


class ConnectionState(Enum):
    """Lifecycle state of a connection."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class TerminationKind(Enum):
    """Why a connection ended."""

    LOCAL_CLOSE = "local_close"
    """We closed it."""

    PEER_CLOSE = "peer_close"
    """The peer closed it with an application close."""

    IDLE_TIMEOUT = "idle_timeout"
    """No traffic within the idle timeout."""

    TRANSPORT_ERROR = "transport_error"
    """The peer or the stack reported a protocol or transport error."""

    @property
    def is_orderly(self) -> bool:
        """True for closes that are the expected end of a connection."""
        return self in (TerminationKind.LOCAL_CLOSE, TerminationKind.PEER_CLOSE)


@dataclass(frozen=True, slots=True)
class Termination:
    """Outcome of a closed connection."""

    kind: TerminationKind
    error_code: int
    reason: str

    def to_error(self) -> QuicConnectionError:
        """Exception raised by operations on the closed connection."""
        message = f"Connection {self.kind.value} (code {self.error_code}): {self.reason or '-'}"
        if self.kind.is_orderly:
            return ConnectionClosed(message)
        return ConnectionLost(message)


def classify_termination(event: ConnectionTerminated, closed_locally: bool) -> Termination:
    """
    Map an aioquic termination event to a termination outcome.

    An application close carries no frame type. A transport close with
    NO_ERROR is a graceful shutdown from the peer's stack. Everything else is
    abnormal.
    """
    if closed_locally:
        kind = TerminationKind.LOCAL_CLOSE
    elif event.reason_phrase == IDLE_TIMEOUT_REASON:
        kind = TerminationKind.IDLE_TIMEOUT
    elif event.frame_type is None or event.error_code == QuicErrorCode.NO_ERROR:
        kind = TerminationKind.PEER_CLOSE
    else:
        kind = TerminationKind.TRANSPORT_ERROR

    return Termination(kind=kind, error_code=event.error_code, reason=event.reason_phrase)


def is_peer_bidi_stream(stream_id: int, is_client: bool) -> bool:
    """
    Check whether a stream ID denotes a bidirectional stream the peer opened.

    Bit 0 of a stream ID is the initiator (0 = client), bit 1 the
    directionality (0 = bidirectional).
    """
    initiated_by_server = bool(stream_id & 0x1)
    unidirectional = bool(stream_id & 0x2)
    return not unidirectional and initiated_by_server == is_client


@dataclass(slots=True)
class QuicConnection:
    """
    A QUIC connection to a peer.

    Owned by the endpoint that accepted or initiated it. Created together with
    its protocol, so events that arrive alongside the handshake are never lost.
    """

    _protocol: QuicConnectionProtocol
    _is_client: bool
    _remote_address: Address | None = None
    _streams: dict[int, QuicStream] = field(default_factory=dict)
    _next_peer_stream_id: int | None = None
    _skipped_peer_streams: set[int] = field(default_factory=set)
    _incoming_streams: asyncio.Queue[QuicStream | None] = field(default_factory=asyncio.Queue)
    _state: ConnectionState = ConnectionState.CONNECTING
    _termination: Termination | None = None
    _handshake_completed: bool = False
    _closed_locally: bool = False
    _state_changed: asyncio.Event = field(default_factory=asyncio.Event)
    _terminated: asyncio.Event = field(default_factory=asyncio.Event)
    _keepalive_task: asyncio.Task[None] | None = None
    _background: TaskSupervisor = field(default_factory=lambda: TaskSupervisor(name="connection"))
    _owned_transport: asyncio.BaseTransport | None = None

    @property
    def remote_address(self) -> Address | None:
        """Address of the peer, once known."""
        if self._remote_address is None:
            # aioquic learns the peer address from the first datagram.
            paths = getattr(self._protocol._quic, "_network_paths", None)
            if paths:
                self._remote_address = paths[0].addr
        return self._remote_address

    @property
    def state(self) -> ConnectionState:
        """Current lifecycle state."""
        return self._state

    @property
    def termination(self) -> Termination | None:
        """Why the connection ended, or None while it is alive."""
        return self._termination

    @property
    def is_closed(self) -> bool:
        """True once the connection has terminated or close() was called."""
        return self._state is ConnectionState.CLOSED or self._closed_locally

    @property
    def open_stream_count(self) -> int:
        """Streams with at least one half still open."""
        return len(self._streams)

    async def wait_established(self) -> None:
        """
        Wait until the handshake completes.

        Raises:
            HandshakeError: If the connection terminated before completing it.
        """
        while self._state is ConnectionState.CONNECTING:
            self._state_changed.clear()
            await self._state_changed.wait()

        if not self._handshake_completed:
            termination = self._termination
            reason = termination.reason if termination is not None else "unknown"
            code = termination.error_code if termination is not None else -1
            raise HandshakeError(f"Handshake failed (code {code}): {reason}")

    async def open_stream(self) -> QuicStream:
        """
        Open a new bidirectional stream.

        QUIC streams are lightweight: no handshake, the peer learns about the
        stream with its first frame.

        Raises:
            ConnectionClosed: If the connection was closed in an orderly way.
            ConnectionLost: If the connection terminated abnormally.
        """
        self._ensure_usable()

        quic = self._protocol._quic
        stream_id = quic.get_next_available_stream_id(is_unidirectional=False)

        # aioquic hands out the same ID until the stream exists on its side.
        # Registering an empty write claims it so concurrent opens differ.
        quic.send_stream_data(stream_id, b"")

        return self._register_stream(stream_id)

    async def accept_stream(self) -> QuicStream:
        """
        Accept the next bidirectional stream opened by the peer.

        Blocks until the peer opens one or the connection ends.

        Raises:
            ConnectionClosed: If the connection was closed in an orderly way.
            ConnectionLost: If the connection terminated abnormally.
        """
        self._ensure_usable()

        stream = await self._incoming_streams.get()
        if stream is None:
            # Keep the marker for any other waiter.
            self._incoming_streams.put_nowait(None)
            raise self._failure()
        return stream

    async def close(self, error_code: int = 0, reason: str = "") -> None:
        """
        Close the connection with an application close.

        Waits briefly for the close to be flushed, then for the keep-alive
        task to exit. Closing an already closed connection sends nothing.
        """
        if not self.is_closed:
            self._closed_locally = True
            self._protocol._quic.close(error_code=error_code, reason_phrase=reason)
            self._protocol.transmit()

            # aioquic reports ConnectionTerminated when its closing period ends.
            try:
                await asyncio.wait_for(self._terminated.wait(), timeout=CLOSE_WAIT_SECS)
            except asyncio.TimeoutError:
                logger.debug("Close of %s did not drain in time", self.remote_address)
                self._terminate(Termination(TerminationKind.LOCAL_CLOSE, error_code, reason))

        await self._background.shutdown()

    def abort(self, error_code: int = 0, reason: str = "") -> None:
        """
        Close without waiting for the draining period.

        Streams fail immediately with ConnectionClosed. Used when the owning
        endpoint is shutting down.
        """
        if self._state is ConnectionState.CLOSED:
            return

        if not self._closed_locally:
            self._closed_locally = True
            self._protocol._quic.close(error_code=error_code, reason_phrase=reason)
            self._protocol.transmit()
        self._terminate(Termination(TerminationKind.LOCAL_CLOSE, error_code, reason))

    async def wait_closed(self) -> Termination:
        """Wait until the connection has terminated and return the outcome."""
        await self._terminated.wait()
        await self._background.shutdown()
        assert self._termination is not None
        return self._termination

    def start_keepalive(self, interval: float) -> None:
        """Ping the peer every `interval` seconds until the connection ends."""
        if self._keepalive_task is None and not self.is_closed:
            self._keepalive_task = self._background.spawn(
                self._keepalive_loop(interval), name="keepalive"
            )

    async def _keepalive_loop(self, interval: float) -> None:
        """Background keep-alive so idle connections do not time out."""
        while not self.is_closed:
            try:
                await asyncio.sleep(interval)
                await asyncio.wait_for(self._protocol.ping(), timeout=interval)
            except asyncio.CancelledError:
                break
            except asyncio.TimeoutError:
                logger.debug("Keep-alive to %s not acknowledged", self.remote_address)
            except ConnectionError:
                break

    def _ensure_usable(self) -> None:
        if self._state is ConnectionState.CLOSED or self._closed_locally:
            raise self._failure()

    def _failure(self) -> QuicConnectionError:
        if self._termination is not None:
            return self._termination.to_error()
        return ConnectionClosed("Connection is closing")

    def _register_stream(self, stream_id: int) -> QuicStream:
        stream = QuicStream(
            _protocol=self._protocol,
            _stream_id=stream_id,
            _on_complete=self._retire_stream,
        )
        self._streams[stream_id] = stream
        return stream

    def _retire_stream(self, stream_id: int) -> None:
        self._streams.pop(stream_id, None)

    def _claim_peer_stream(self, stream_id: int) -> bool:
        """
        Record the first frame of a peer stream. False if the stream was seen before.

        Peer streams of one type are numbered 4 apart and opened in order, but
        their first frames may arrive out of order. IDs jumped over are kept
        until their own first frame arrives, so only gaps are remembered.
        """
        expected = self._next_peer_stream_id
        if expected is None:
            # Client-initiated bidirectional streams start at 0, server-initiated at 1.
            expected = 1 if self._is_client else 0

        if stream_id >= expected:
            self._skipped_peer_streams.update(range(expected, stream_id, 4))
            self._next_peer_stream_id = stream_id + 4
            return True
        if stream_id in self._skipped_peer_streams:
            self._skipped_peer_streams.discard(stream_id)
            return True
        return False

    def _handle_event(self, event: QuicEvent) -> None:
        """Internal: handle QUIC events from aioquic."""
        if isinstance(event, StreamDataReceived):
            stream = self._streams.get(event.stream_id)

            if stream is None:
                if self._state is ConnectionState.CLOSED:
                    return
                if not is_peer_bidi_stream(event.stream_id, self._is_client):
                    logger.debug("Ignoring data on stream %d", event.stream_id)
                    return
                if not self._claim_peer_stream(event.stream_id):
                    # Late frame for a stream that was already retired.
                    return
                # New incoming stream.
                stream = self._register_stream(event.stream_id)
                self._incoming_streams.put_nowait(stream)

            stream._receive_data(event.data)
            if event.end_stream:
                stream._receive_end()

        elif isinstance(event, StreamReset):
            stream = self._streams.get(event.stream_id)
            if stream is not None:
                stream._receive_reset(event.error_code)

        elif isinstance(event, StopSendingReceived):
            stream = self._streams.get(event.stream_id)
            if stream is not None:
                stream._send_stopped(event.error_code)

        elif isinstance(event, HandshakeCompleted):
            logger.debug("Handshake completed (alpn=%s)", event.alpn_protocol)
            self._handshake_completed = True
            if self._state is ConnectionState.CONNECTING:
                self._state = ConnectionState.OPEN
                self._state_changed.set()

        elif isinstance(event, ConnectionTerminated):
            self._terminate(classify_termination(event, self._closed_locally))

    def _terminate(self, termination: Termination) -> None:
        """Internal: move to CLOSED and fail every live stream."""
        if self._state is ConnectionState.CLOSED:
            return

        self._state = ConnectionState.CLOSED
        self._termination = termination
        logger.debug(
            "Connection to %s terminated: %s (code %d) %s",
            self.remote_address,
            termination.kind.value,
            termination.error_code,
            termination.reason,
        )

        failure = termination.to_error()
        for stream in self._streams.values():
            stream._terminate(failure)
        self._streams.clear()

        # Wake every accept_stream() waiter.
        self._incoming_streams.put_nowait(None)

        # Awaited by close() and wait_closed().
        self._background.cancel()
        self._keepalive_task = None

        if self._owned_transport is not None:
            self._owned_transport.close()
            self._owned_transport = None

        self._state_changed.set()
        self._terminated.set()


class EchoQuicProtocol(QuicConnectionProtocol):
    """
    aioquic protocol that routes events to a QuicConnection.

    One instance exists per QUIC connection, on both sides. The wrapper is
    created here, before the first datagram is processed.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        """Initialize the protocol and its connection wrapper."""
        super().__init__(*args, **kwargs)
        self.connection = QuicConnection(
            _protocol=self,
            _is_client=self._quic.configuration.is_client,
        )

    def quic_event_received(self, event: QuicEvent) -> None:
        """Handle QUIC events."""
        self.connection._handle_event(event)
