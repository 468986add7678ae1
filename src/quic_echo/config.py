"""
Runtime configuration for the echo endpoints.

Defaults mirror a single-host demo: the server listens on loopback port 4433
and the client binds an ephemeral loopback port and dials it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Final

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing_extensions import Self

DEFAULT_HOST: Final = "127.0.0.1"
"""Loopback address used by both roles unless overridden."""

DEFAULT_PORT: Final = 4433
"""UDP port the server listens on."""

DEFAULT_SERVER_NAME: Final = "localhost"
"""Host name bound into the server certificate and expected by the client."""

MAX_CONCURRENT_STREAMS: Final = 100
"""Echo workers allowed to run at once on a single connection."""

KEEP_ALIVE_INTERVAL_SECS: Final = 5.0
"""Interval between keep-alive PINGs on an idle connection."""

IDLE_TIMEOUT_SECS: Final = 30.0
"""QUIC idle timeout. Must exceed the keep-alive interval."""

MAX_MESSAGE_SIZE: Final = 64 * 1024
"""
Largest payload accepted on a single stream, in bytes.

Applies to requests read by the server and to responses read by the client.
A stream that exceeds it fails on its own; its connection stays usable.
"""

STREAM_TIMEOUT_SECS: Final = 10.0
"""Deadline for reading one full message from a stream."""

CONNECT_TIMEOUT_SECS: Final = 5.0
"""Deadline for an outbound connection to complete its handshake."""

HANDSHAKE_TIMEOUT_SECS: Final = 5.0
"""Deadline for an inbound connection attempt to complete its handshake."""


class StrictBaseModel(BaseModel):
    """A strict, immutable pydantic base model."""

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        strict=True,
        validate_default=True,
        arbitrary_types_allowed=True,
    )


class ServerConfig(StrictBaseModel):
    """Configuration of the listening endpoint."""

    host: str = DEFAULT_HOST
    """Local address to bind."""

    port: int = Field(default=DEFAULT_PORT, ge=0, le=65535)
    """Local UDP port to bind. Zero picks an ephemeral port."""

    server_name: str = DEFAULT_SERVER_NAME
    """Host name placed in the generated certificate."""

    max_concurrent_streams: int = Field(default=MAX_CONCURRENT_STREAMS, gt=0)
    """Maximum echo workers running at once per connection."""

    keep_alive_interval_secs: float = Field(default=KEEP_ALIVE_INTERVAL_SECS, gt=0)
    """Interval between keep-alive PINGs."""

    idle_timeout_secs: float = Field(default=IDLE_TIMEOUT_SECS, gt=0)
    """QUIC idle timeout."""

    max_message_size: int = Field(default=MAX_MESSAGE_SIZE, gt=0)
    """Largest request payload accepted on a stream."""

    stream_timeout_secs: float = Field(default=STREAM_TIMEOUT_SECS, gt=0)
    """Deadline for reading one request."""

    handshake_timeout_secs: float = Field(default=HANDSHAKE_TIMEOUT_SECS, gt=0)
    """Deadline for an inbound handshake."""

    certificate_file: Path | None = None
    """
    PEM certificate chain to serve instead of a generated identity.

    Must be given together with `private_key_file`.
    """

    private_key_file: Path | None = None
    """PEM private key matching `certificate_file`."""

    @model_validator(mode="after")
    def require_certificate_pair(self) -> Self:
        """Reject a certificate without its key, or a key without its certificate."""
        if (self.certificate_file is None) != (self.private_key_file is None):
            raise ValueError("certificate_file and private_key_file must be given together")
        return self


class ClientConfig(StrictBaseModel):
    """Configuration of the connecting endpoint."""

    bind_host: str = DEFAULT_HOST
    """Local address to bind."""

    bind_port: int = Field(default=0, ge=0, le=65535)
    """Local UDP port to bind. Zero picks an ephemeral port."""

    server_host: str = DEFAULT_HOST
    """Address of the server to dial."""

    server_port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    """UDP port of the server to dial."""

    server_name: str = DEFAULT_SERVER_NAME
    """Host name the server certificate must be issued for."""

    keep_alive_interval_secs: float = Field(default=KEEP_ALIVE_INTERVAL_SECS, gt=0)
    """Interval between keep-alive PINGs."""

    idle_timeout_secs: float = Field(default=IDLE_TIMEOUT_SECS, gt=0)
    """QUIC idle timeout."""

    max_message_size: int = Field(default=MAX_MESSAGE_SIZE, gt=0)
    """Largest response payload accepted on a stream."""

    stream_timeout_secs: float = Field(default=STREAM_TIMEOUT_SECS, gt=0)
    """Deadline for reading one response."""

    connect_timeout_secs: float = Field(default=CONNECT_TIMEOUT_SECS, gt=0)
    """Deadline for the handshake of an outbound connection."""

    connect_attempts: int = Field(default=1, gt=0)
    """Connection attempts before giving up. Useful when the server starts concurrently."""

    connect_retry_delay_secs: float = Field(default=1.0, ge=0)
    """Pause between connection attempts."""

    insecure: bool = False
    """
    Skip server certificate verification entirely.

    Encryption still happens but the server is not authenticated. Only for
    demos against a self-signed server whose certificate cannot be pinned.
    """

    cadata: bytes | None = None
    """PEM certificates to trust, e.g. a pinned self-signed server certificate."""

    cafile: Path | None = None
    """File with PEM certificates to trust."""
