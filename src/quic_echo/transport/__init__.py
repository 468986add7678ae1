"""
QUIC endpoints, connections and streams on top of aioquic.

aioquic is sans-I/O plus a thin asyncio protocol. This package turns its event
stream into awaitable objects:

    ServerEndpoint.accept()   -> IncomingConnection -> establish() -> QuicConnection
    ClientEndpoint.connect()  -> QuicConnection
    QuicConnection.open_stream() / accept_stream() -> QuicStream
"""

from .connection import QuicConnection, Termination, TerminationKind
from .endpoint import ClientEndpoint, IncomingConnection, ServerEndpoint
from .stream import QuicStream

__all__ = [
    "ClientEndpoint",
    "IncomingConnection",
    "QuicConnection",
    "QuicStream",
    "ServerEndpoint",
    "Termination",
    "TerminationKind",
]
