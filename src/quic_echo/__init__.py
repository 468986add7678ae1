"""
Echo over QUIC: a server role, a client role and a console chat that joins them.

Architecture:
    ChatApplication -> RoleThread(EchoServer)  -> ServerEndpoint -> ConnectionHandler
                                                                  -> EchoStreamWorker
                    -> RoleThread(ClientDriver) -> ClientEndpoint -> ClientSession
                    -> MessageBridge (MessageLog + OutboundChannel) shared with the UI
"""

from .app import ChatApplication, RoleThread
from .bridge import Direction, MessageBridge, MessageLog, MessageRecord, OutboundChannel
from .client import ClientDriver, ClientSession, open_session
from .config import ClientConfig, ServerConfig
from .server import EchoServer
from .tls import SelfSignedIdentity, generate_self_signed_identity

__all__ = [
    "ChatApplication",
    "ClientConfig",
    "ClientDriver",
    "ClientSession",
    "Direction",
    "EchoServer",
    "MessageBridge",
    "MessageLog",
    "MessageRecord",
    "OutboundChannel",
    "RoleThread",
    "SelfSignedIdentity",
    "ServerConfig",
    "generate_self_signed_identity",
    "open_session",
]
