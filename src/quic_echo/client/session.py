"""
Client side of the echo exchange.

One message is one stream:

    open_stream -> write_all(message) -> finish -> read_to_end -> decode

Streams are independent, so several send() calls may run at once on the same
connection; QUIC multiplexes them. The chat driver still sends one at a time
so replies appear in submission order.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from typing_extensions import Self

from ..config import MAX_MESSAGE_SIZE, STREAM_TIMEOUT_SECS, ClientConfig
from ..exceptions import ConnectError, ConnectionClosed, StreamError
from ..protocol import (
    CLOSE_CODE_DONE,
    CLOSE_REASON_DONE,
    decode_message,
    encode_message,
    reset_code_for,
)
from ..transport.connection import QuicConnection
from ..transport.endpoint import ClientEndpoint

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ClientSession:
    """An established connection used for request/response exchanges."""

    connection: QuicConnection
    max_message_size: int = MAX_MESSAGE_SIZE
    timeout: float | None = STREAM_TIMEOUT_SECS
    _closed: bool = False

    @classmethod
    def from_config(cls, connection: QuicConnection, config: ClientConfig) -> Self:
        """Wrap a connection using the limits of a client configuration."""
        return cls(
            connection=connection,
            max_message_size=config.max_message_size,
            timeout=config.stream_timeout_secs,
        )

    @property
    def is_closed(self) -> bool:
        """True once close() was called or the connection ended."""
        return self._closed or self.connection.is_closed

    async def send(self, message: str) -> str:
        """
        Send one message and return the server's response.

        Raises:
            StreamError: If this exchange failed (reset, too large, bad
                encoding, deadline). The session stays usable.
            ConnectionClosed: If the session or connection was closed.
            ConnectionLost: If the connection terminated abnormally.
        """
        if self._closed:
            raise ConnectionClosed("Session is closed")

        logger.info("Sending message: %s", message)

        stream = await self.connection.open_stream()
        try:
            await stream.write_all(encode_message(message))
            await stream.finish()

            data = await stream.read_to_end(self.max_message_size, timeout=self.timeout)
            response = decode_message(data)
        except StreamError as e:
            # Close whatever is still open on both halves so the stream is
            # retired here and the server stops working on it.
            code = reset_code_for(e)
            stream.reset(code)
            stream.stop(code)
            raise

        logger.info("Received response: %s", response)
        return response

    async def close(self) -> None:
        """
        Close the connection with the "done" reason.

        Raises:
            ConnectionClosed: If the session was already closed.
        """
        if self._closed:
            raise ConnectionClosed("Session already closed")
        self._closed = True

        await self.connection.close(CLOSE_CODE_DONE, CLOSE_REASON_DONE)
        logger.info("Connection closed")


async def open_session(endpoint: ClientEndpoint) -> ClientSession:
    """
    Connect to the configured server, retrying as configured.

    Retries cover the case where the server role starts concurrently with the
    client, as in the chat application.

    Raises:
        ConnectError: If every attempt failed.
    """
    config = endpoint.config
    attempts = config.connect_attempts

    for attempt in range(1, attempts + 1):
        try:
            connection = await endpoint.connect()
        except ConnectError as e:
            if attempt == attempts:
                raise
            logger.info("Connect attempt %d/%d failed: %s", attempt, attempts, e)
            await asyncio.sleep(config.connect_retry_delay_secs)
        else:
            return ClientSession.from_config(connection, config)

    raise ConnectError("No connect attempts configured")
