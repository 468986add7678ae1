"""Test doubles for the aioquic protocol layer."""

from __future__ import annotations

import socket
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field


@dataclass
class FakeQuic:
    """Records the calls a stream or connection makes on the QUIC engine."""

    sent: list[tuple[int, bytes, bool]] = field(default_factory=list)
    resets: list[tuple[int, int]] = field(default_factory=list)
    stops: list[tuple[int, int]] = field(default_factory=list)
    closes: list[tuple[int, str]] = field(default_factory=list)
    next_stream_id: int = 0

    def send_stream_data(self, stream_id: int, data: bytes, end_stream: bool = False) -> None:
        """Record stream data."""
        self.sent.append((stream_id, data, end_stream))
        if stream_id >= self.next_stream_id:
            self.next_stream_id = stream_id + 4

    def reset_stream(self, stream_id: int, error_code: int) -> None:
        """Record a stream reset."""
        self.resets.append((stream_id, error_code))

    def stop_stream(self, stream_id: int, error_code: int) -> None:
        """Record a STOP_SENDING request."""
        self.stops.append((stream_id, error_code))

    def get_next_available_stream_id(self, is_unidirectional: bool = False) -> int:
        """Return the lowest unused client-initiated bidirectional stream ID."""
        return self.next_stream_id

    def close(self, error_code: int = 0, reason_phrase: str = "") -> None:
        """Record a connection close."""
        self.closes.append((error_code, reason_phrase))


@dataclass
class FakeProtocol:
    """Stands in for QuicConnectionProtocol."""

    _quic: FakeQuic = field(default_factory=FakeQuic)
    transmits: int = 0

    def transmit(self) -> None:
        """Count transmissions."""
        self.transmits += 1


@contextmanager
def silent_udp_port() -> Iterator[int]:
    """A bound UDP port that never answers, standing in for an unreachable server."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    try:
        yield sock.getsockname()[1]
    finally:
        sock.close()
