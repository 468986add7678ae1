"""
Inbound connection and stream handling.

    ConnectionHandler:  Open -> AcceptingStreams* -> Closed

        Accepts bidirectional streams one after another and hands each to an
        EchoStreamWorker without waiting for it. An orderly close by the peer
        ends the loop quietly; any other termination is logged. Either way only
        this connection is affected.

    EchoStreamWorker:   read to end -> decode -> record -> respond -> finish

        Exactly one exchange per stream. A bad request (too large, not UTF-8,
        too slow) fails this stream alone: its send half is reset so the peer
        sees the failure, and the connection carries on.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from ..bridge import Direction, MessageLog
from ..config import ServerConfig
from ..exceptions import (
    ConnectionClosed,
    ConnectionLost,
    InvalidEncoding,
    PayloadTooLarge,
    QuicConnectionError,
    StreamError,
    StreamResetError,
    StreamTimeout,
)
from ..protocol import (
    PEER_PREFIX,
    RESET_CODE_BAD_ENCODING,
    RESET_CODE_TIMEOUT,
    RESET_CODE_TOO_LARGE,
    decode_message,
    encode_message,
    make_response,
)
from ..supervisor import TaskSupervisor
from ..transport.connection import QuicConnection
from ..transport.stream import QuicStream

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EchoStreamWorker:
    """Serves a single request/response exchange on one stream."""

    stream: QuicStream
    max_message_size: int
    timeout: float | None = None
    log: MessageLog | None = None
    """Shared log to record inbound messages in, if attached to a UI."""

    async def run(self) -> str | None:
        """
        Serve the exchange.

        Returns:
            The response sent, or None if the exchange failed.
        """
        stream = self.stream

        try:
            data = await stream.read_to_end(self.max_message_size, timeout=self.timeout)
            text = decode_message(data)
        except PayloadTooLarge as e:
            logger.warning("Rejecting stream %d: %s", stream.stream_id, e)
            stream.reset(RESET_CODE_TOO_LARGE)
            stream.stop(RESET_CODE_TOO_LARGE)
            return None
        except InvalidEncoding as e:
            logger.warning("Rejecting stream %d: %s", stream.stream_id, e)
            stream.reset(RESET_CODE_BAD_ENCODING)
            return None
        except StreamTimeout as e:
            logger.warning("Abandoning stream %d: %s", stream.stream_id, e)
            stream.reset(RESET_CODE_TIMEOUT)
            stream.stop(RESET_CODE_TIMEOUT)
            return None
        except StreamResetError as e:
            logger.info("%s", e)
            stream.reset(e.error_code)
            return None
        except QuicConnectionError as e:
            # The connection handler reports the termination.
            logger.debug("Stream %d ended with its connection: %s", stream.stream_id, e)
            return None

        logger.info("Received message: %s", text)
        if self.log is not None:
            self.log.append(PEER_PREFIX + text, Direction.RECEIVED)

        response = make_response(text)
        try:
            await stream.write_all(encode_message(response))
            await stream.finish()
        except (StreamError, QuicConnectionError) as e:
            logger.warning("Failed to respond on stream %d: %s", stream.stream_id, e)
            return None

        logger.debug("Sent response: %s", response)
        return response


@dataclass(slots=True)
class ConnectionHandler:
    """Accepts and serves every stream of one inbound connection."""

    connection: QuicConnection
    config: ServerConfig
    log: MessageLog | None = None
    _workers: TaskSupervisor = field(init=False)
    _slots: asyncio.Semaphore = field(init=False)

    def __post_init__(self) -> None:
        """Create the worker supervisor and the concurrency bound."""
        self._workers = TaskSupervisor(name=f"streams-{self.connection.remote_address}")
        self._slots = asyncio.Semaphore(self.config.max_concurrent_streams)

    async def run(self) -> None:
        """
        Serve streams until the connection ends.

        Never raises for connection terminations; they are logged instead.
        """
        remote = self.connection.remote_address
        logger.info("Handling connection from: %s", remote)

        try:
            while True:
                # Stop accepting while max_concurrent_streams workers run.
                await self._slots.acquire()
                try:
                    stream = await self.connection.accept_stream()
                except BaseException:
                    self._slots.release()
                    raise

                logger.debug("Accepted bidirectional stream %d", stream.stream_id)
                worker = EchoStreamWorker(
                    stream=stream,
                    max_message_size=self.config.max_message_size,
                    timeout=self.config.stream_timeout_secs,
                    log=self.log,
                )
                self._workers.spawn(self._run_worker(worker), name=f"stream-{stream.stream_id}")
        except ConnectionClosed:
            logger.info("Connection from %s closed", remote)
        except ConnectionLost as e:
            logger.warning("Connection from %s lost: %s", remote, e)
        finally:
            await self._workers.shutdown()

    async def _run_worker(self, worker: EchoStreamWorker) -> None:
        try:
            await worker.run()
        finally:
            self._slots.release()
