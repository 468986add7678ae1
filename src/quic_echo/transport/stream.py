"""
Bidirectional QUIC stream wrapper.

A QUIC stream has two independently closable halves:

    send half:     OPEN --finish()--> FINISHED
                   OPEN --reset()---> RESET     (or peer STOP_SENDING)
    receive half:  OPEN --peer FIN--> FINISHED
                   OPEN --stop()----> RESET     (or peer RESET_STREAM / connection end)

A stream is complete once neither half is open. aioquic delivers data as a
series of events; this wrapper turns them into awaitable whole-message reads
bounded by size and time.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from ..exceptions import (
    PayloadTooLarge,
    QuicConnectionError,
    StreamError,
    StreamResetError,
    StreamTimeout,
)

if TYPE_CHECKING:
    from aioquic.asyncio import QuicConnectionProtocol

logger = logging.getLogger(__name__)


class HalfState(Enum):
    """Lifecycle of one direction of a stream."""

    OPEN = "open"
    FINISHED = "finished"
    RESET = "reset"


@dataclass(slots=True)
class QuicStream:
    """
    One bidirectional stream within a connection.

    Streams are created by their connection, either when we open one or
    when the peer sends the first frame of a new one.
    """

    _protocol: QuicConnectionProtocol
    _stream_id: int
    _on_complete: Callable[[int], None] | None = None
    _read_buffer: asyncio.Queue[bytes] = field(default_factory=asyncio.Queue)
    _send_state: HalfState = HalfState.OPEN
    _recv_state: HalfState = HalfState.OPEN
    _reset_code: int | None = None
    _failure: QuicConnectionError | None = None
    _end_consumed: bool = False
    _discard: bool = False

    @property
    def stream_id(self) -> int:
        """Stream identifier."""
        return self._stream_id

    @property
    def send_state(self) -> HalfState:
        """State of our sending half."""
        return self._send_state

    @property
    def recv_state(self) -> HalfState:
        """State of our receiving half."""
        return self._recv_state

    @property
    def is_complete(self) -> bool:
        """True once both halves are finished or reset."""
        return self._send_state is not HalfState.OPEN and self._recv_state is not HalfState.OPEN

    async def read_to_end(self, max_bytes: int, timeout: float | None = None) -> bytes:
        """
        Read the receive half until the peer finishes it.

        Args:
            max_bytes: Largest payload accepted.
            timeout: Deadline in seconds for the whole read. None waits forever.

        Returns:
            Every byte the peer sent on this stream.

        Raises:
            PayloadTooLarge: If the peer sent more than `max_bytes`.
            StreamResetError: If the peer reset its sending half.
            StreamTimeout: If the deadline expired first.
            ConnectionClosed: If the connection was closed in an orderly way.
            ConnectionLost: If the connection terminated abnormally.
        """
        try:
            return await asyncio.wait_for(self._read_all(max_bytes), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise StreamTimeout(
                f"Stream {self._stream_id} read did not complete within {timeout}s"
            ) from e

    async def _read_all(self, max_bytes: int) -> bytes:
        chunks: list[bytes] = []
        total = 0

        # aioquic delivers a message as any number of chunks in order.
        # The empty marker queued on FIN, reset or connection end stops the loop.
        # It is consumed once; later reads go straight to the outcome checks.
        while not self._end_consumed:
            data = await self._read_buffer.get()
            if not data:
                self._end_consumed = True
                break

            total += len(data)
            if total > max_bytes:
                # Drop whatever else the peer sends on this stream.
                self._discard = True
                raise PayloadTooLarge(max_bytes)
            chunks.append(data)

        # A message finished by the peer is whole even if the connection ended since.
        if self._recv_state is HalfState.FINISHED:
            return b"".join(chunks)
        if self._failure is not None:
            raise self._failure
        raise StreamResetError(self._stream_id, self._reset_code or 0)

    async def write_all(self, data: bytes) -> None:
        """
        Queue the whole payload on the send half and transmit.

        Raises:
            StreamError: If the send half is no longer open or aioquic rejects the write.
            ConnectionClosed: If the connection was closed in an orderly way.
            ConnectionLost: If the connection terminated abnormally.
        """
        self._ensure_sendable()

        # aioquic only queues the data and applies flow control.
        # transmit() builds the packets and hands them to the socket.
        try:
            self._protocol._quic.send_stream_data(self._stream_id, data)
            self._protocol.transmit()
        except Exception as e:
            raise StreamError(f"Write failed on stream {self._stream_id}: {e}") from e

    async def finish(self) -> None:
        """
        Signal end of data on the send half (half-close).

        The receive half stays open so the response can still be read.
        Finishing an already finished stream does nothing.
        """
        if self._send_state is HalfState.FINISHED:
            return
        self._ensure_sendable()

        self._protocol._quic.send_stream_data(self._stream_id, b"", end_stream=True)
        self._protocol.transmit()
        self._set_send_state(HalfState.FINISHED)

    def reset(self, error_code: int) -> None:
        """
        Abort the send half with an application error code.

        Used to fail a single exchange without touching the connection.
        Does nothing if the send half is already closed or the connection is gone.
        """
        if self._send_state is not HalfState.OPEN or self._failure is not None:
            return

        self._protocol._quic.reset_stream(self._stream_id, error_code)
        self._protocol.transmit()
        self._set_send_state(HalfState.RESET)

    def stop(self, error_code: int) -> None:
        """
        Give up on the receive half and ask the peer to stop sending.

        Sends STOP_SENDING; the peer answers with a reset that is ignored.
        Anything still in flight is dropped. Does nothing if the receive half
        is already closed or the connection is gone.
        """
        if self._recv_state is not HalfState.OPEN or self._failure is not None:
            return

        self._discard = True
        try:
            self._protocol._quic.stop_stream(self._stream_id, error_code)
        except ValueError:
            # aioquic already discarded the stream's state; nothing to stop.
            logger.debug("Stream %d unknown to the QUIC engine", self._stream_id)
        else:
            self._protocol.transmit()

        # Wake a reader, if any, with the stop code.
        self._reset_code = error_code
        self._read_buffer.put_nowait(b"")
        self._set_recv_state(HalfState.RESET)

    def _ensure_sendable(self) -> None:
        if self._failure is not None:
            raise self._failure
        if self._send_state is not HalfState.OPEN:
            raise StreamError(
                f"Stream {self._stream_id} send half is {self._send_state.value}"
            )

    def _set_send_state(self, state: HalfState) -> None:
        self._send_state = state
        self._check_complete()

    def _set_recv_state(self, state: HalfState) -> None:
        self._recv_state = state
        self._check_complete()

    def _check_complete(self) -> None:
        if self.is_complete and self._on_complete is not None:
            callback, self._on_complete = self._on_complete, None
            callback(self._stream_id)

    def _receive_data(self, data: bytes) -> None:
        """Internal: called when data arrives for this stream."""
        # An empty chunk is the end-of-data marker, never real data.
        if data and not self._discard and self._recv_state is HalfState.OPEN:
            self._read_buffer.put_nowait(data)

    def _receive_end(self) -> None:
        """Internal: called when the peer finishes its send half."""
        if self._recv_state is not HalfState.OPEN:
            return
        self._read_buffer.put_nowait(b"")
        self._set_recv_state(HalfState.FINISHED)

    def _receive_reset(self, error_code: int) -> None:
        """Internal: called when the peer resets its send half."""
        if self._recv_state is not HalfState.OPEN:
            return
        self._reset_code = error_code
        self._read_buffer.put_nowait(b"")
        self._set_recv_state(HalfState.RESET)

    def _send_stopped(self, error_code: int) -> None:
        """Internal: called when the peer asks us to stop sending."""
        logger.debug("Peer stopped stream %d (code %d)", self._stream_id, error_code)
        if self._send_state is HalfState.OPEN:
            self._set_send_state(HalfState.RESET)

    def _terminate(self, failure: QuicConnectionError) -> None:
        """Internal: called when the owning connection ends."""
        self._failure = failure
        if self._recv_state is HalfState.OPEN:
            self._read_buffer.put_nowait(b"")
            self._recv_state = HalfState.RESET
        if self._send_state is HalfState.OPEN:
            self._send_state = HalfState.RESET
        self._on_complete = None
