"""
Client driver: feeds the outbound channel into a session.

Runs on the client role's event loop. Messages are sent strictly one after
another: request N's response is recorded before request N+1 is issued.
Failed exchanges are reported to the operator log only; the conversation log
shows nothing but successful round trips.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..bridge import Direction, MessageLog, OutboundChannel
from ..config import ClientConfig
from ..exceptions import ChannelClosed, ConnectionClosed, QuicConnectionError, StreamError
from ..transport.endpoint import ClientEndpoint
from .session import ClientSession, open_session

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ClientDriver:
    """The client role."""

    config: ClientConfig
    channel: OutboundChannel
    log: MessageLog
    _endpoint: ClientEndpoint | None = field(default=None, repr=False)
    _session: ClientSession | None = field(default=None, repr=False)

    @property
    def session(self) -> ClientSession | None:
        """The live session, once connected."""
        return self._session

    async def run(self) -> None:
        """
        Connect, then relay messages until the channel or connection closes.

        Raises:
            BindError: If the local socket cannot be bound.
            ConnectError: If the server cannot be reached.
        """
        self._endpoint = await ClientEndpoint.bind(self.config)
        try:
            self._session = await open_session(self._endpoint)
            logger.info("Client connected to server")
            await self.relay(self._session)
        finally:
            self.channel.close()
            await self._endpoint.close()

    async def relay(self, session: ClientSession) -> None:
        """Send each channel message over `session` and record the responses."""
        while True:
            try:
                message = await self.channel.recv()
            except ChannelClosed:
                logger.info("Outbound channel closed, stopping client")
                break

            try:
                response = await session.send(message)
            except StreamError as e:
                logger.error("Error sending message: %s", e)
                continue
            except QuicConnectionError as e:
                logger.error("Connection to server ended: %s", e)
                self.channel.close()
                return

            self.log.append(response, Direction.RECEIVED)

        try:
            await session.close()
        except ConnectionClosed:
            logger.debug("Session was already closed")

    def stop(self) -> None:
        """Close the channel; the driver exits once queued messages are sent."""
        self.channel.close()
