"""Echo server role: accept loop, per-connection handlers and per-stream workers."""

from .handler import ConnectionHandler, EchoStreamWorker
from .service import EchoServer

__all__ = [
    "ConnectionHandler",
    "EchoServer",
    "EchoStreamWorker",
]
