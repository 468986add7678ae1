"""
Exception hierarchy for the QUIC echo service.

Errors are grouped by the scope they are fatal to:

- Process: certificate generation and socket binding.
- Connection attempt: handshake and connect failures.
- Stream: oversized payloads, bad encoding, resets and deadlines.
- Connection: orderly close versus abnormal loss.
- Bridge: the outbound channel was closed.

Only process-scoped errors are allowed to abort startup. Everything else is
contained by the task that owns the failing stream or connection.
"""

from __future__ import annotations


class QuicEchoError(Exception):
    """
    Base exception for all echo service errors.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


class CertificateError(QuicEchoError):
    """Raised when the server identity cannot be generated or loaded."""


class BindError(QuicEchoError):
    """Raised when an endpoint cannot bind its local socket."""


class HandshakeError(QuicEchoError):
    """Raised when a QUIC handshake fails or does not complete in time."""


class ConnectError(HandshakeError):
    """
    Raised when an outbound connection cannot be established.

    Covers unreachable peers, handshake timeouts and peers that reject the
    application protocol identifier or our trust policy.
    """


class StreamError(QuicEchoError):
    """Base class for failures confined to a single stream."""


class PayloadTooLarge(StreamError):
    """
    Raised when a stream carries more than the configured maximum.

    Attributes:
        limit: The maximum number of bytes allowed.
    """

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Payload exceeds maximum message size of {limit} bytes")


class InvalidEncoding(StreamError):
    """Raised when a stream payload is not valid UTF-8."""


class StreamResetError(StreamError):
    """
    Raised when the peer aborts a stream half.

    Attributes:
        error_code: Application error code carried by the reset.
    """

    def __init__(self, stream_id: int, error_code: int) -> None:
        self.stream_id = stream_id
        self.error_code = error_code
        super().__init__(f"Stream {stream_id} reset by peer (code {error_code})")


class StreamTimeout(StreamError, TimeoutError):
    """Raised when a stream operation exceeds its deadline."""


class QuicConnectionError(QuicEchoError):
    """Base class for connection-level terminations."""


class ConnectionClosed(QuicConnectionError):
    """
    Raised when using a connection that was closed in an orderly way.

    Either side closing with an application close ends up here. This is the
    expected end of every connection and is not reported as a failure.
    """


class ConnectionLost(QuicConnectionError):
    """
    Raised when a connection terminated abnormally.

    Transport errors, idle timeouts and protocol violations land here.
    """


class ChannelClosed(QuicEchoError):
    """Raised by the outbound channel once it is closed and drained."""
