"""
The echo application protocol.

Wire format:
    - Both peers advertise the ALPN identifier ``quic-echo`` during the TLS
      handshake. A peer offering anything else is rejected before any stream
      is opened.
    - One message is the entire payload of one bidirectional stream, UTF-8
      encoded, with no length prefix. The FIN on a stream half delimits the
      message.
    - The response to a message is the literal prefix ``"Echo: "`` followed by
      the original text, sent on the same stream.

Every entry point (chat shell, standalone server, one-shot client) speaks this
protocol through the helpers below.
"""

from __future__ import annotations

from typing import Final

from .exceptions import InvalidEncoding, PayloadTooLarge, StreamError, StreamTimeout

ALPN_PROTOCOL: Final = "quic-echo"
"""Application protocol identifier negotiated during the handshake."""

ECHO_PREFIX: Final = "Echo: "
"""Marker prepended to every echoed message."""

PEER_PREFIX: Final = "Peer: "
"""Marker used when the server records an inbound message in the shared log."""

CLOSE_CODE_DONE: Final = 0
"""Application error code sent when a client finishes its session."""

CLOSE_REASON_DONE: Final = "done"
"""Reason phrase sent with `CLOSE_CODE_DONE`."""

RESET_CODE_TOO_LARGE: Final = 0x1
"""Stream reset code used when a request exceeds the size limit."""

RESET_CODE_BAD_ENCODING: Final = 0x2
"""Stream reset code used when a request is not valid UTF-8."""

RESET_CODE_TIMEOUT: Final = 0x3
"""Stream reset code used when a request did not arrive in time."""

RESET_CODE_CANCELLED: Final = 0x4
"""Stream reset code used when an exchange is abandoned for any other reason."""


def reset_code_for(error: StreamError) -> int:
    """Pick the reset code that tells the peer why an exchange was abandoned."""
    if isinstance(error, PayloadTooLarge):
        return RESET_CODE_TOO_LARGE
    if isinstance(error, InvalidEncoding):
        return RESET_CODE_BAD_ENCODING
    if isinstance(error, StreamTimeout):
        return RESET_CODE_TIMEOUT
    return RESET_CODE_CANCELLED


def encode_message(text: str) -> bytes:
    """Encode a message for the wire."""
    return text.encode("utf-8")


def decode_message(data: bytes) -> str:
    """
    Decode a message received on a stream.

    Raises:
        InvalidEncoding: If the payload is not valid UTF-8.
    """
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidEncoding(f"Payload is not valid UTF-8: {e}") from e


def make_response(text: str) -> str:
    """Build the echo response for a decoded message."""
    return ECHO_PREFIX + text
