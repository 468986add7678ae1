"""Echo client role: request/response sessions and the chat driver."""

from .driver import ClientDriver
from .session import ClientSession, open_session

__all__ = [
    "ClientDriver",
    "ClientSession",
    "open_session",
]
