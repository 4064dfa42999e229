"""
Error taxonomy for the binkp engine.

Every failure raised inside a session carries an ErrorKind so that the
Client / Server boundary can turn it into a plain SessionResult without
inspecting exception classes.

    TRANSPORT  connect refused, read timeout, truncated frame, EOF
    PROTOCOL   unexpected command, oversized frame, M_ERR / M_BSY from peer
    AUTH       password mismatch, insecure session refused
    DATA       malformed packet header, unsafe file name
    DELIVERY   crashmail unreachable or unconfirmed
    CONFIG     missing uplink, malformed configuration
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    AUTH = "auth"
    DATA = "data"
    DELIVERY = "delivery"
    CONFIG = "config"


class BinkpError(Exception):
    kind: ErrorKind = ErrorKind.PROTOCOL

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail)
        self.detail = detail


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class TransportError(BinkpError):
    kind = ErrorKind.TRANSPORT


class ConnectError(TransportError):
    pass


class ConnectionClosed(TransportError):
    pass


class ReadTimeout(TransportError):
    pass


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class ProtocolError(BinkpError):
    kind = ErrorKind.PROTOCOL


class FrameTooLarge(ProtocolError):
    pass


class RemoteError(ProtocolError):
    """Peer sent M_ERR."""


class RemoteBusy(ProtocolError):
    """Peer sent M_BSY."""


class AuthError(BinkpError):
    kind = ErrorKind.AUTH


# ---------------------------------------------------------------------------
# Data / delivery / config
# ---------------------------------------------------------------------------

class PacketHeaderError(BinkpError):
    kind = ErrorKind.DATA


class DeliveryError(BinkpError):
    kind = ErrorKind.DELIVERY


class ConfigError(BinkpError):
    kind = ErrorKind.CONFIG
