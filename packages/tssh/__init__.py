"""tssh - trusted SSH connection client.

Key discovery, trust-on-first-use host verification, post-quantum aware
algorithm selection, and audited connection setup.
"""

from .config import CLIENT_VERSION as __version__
from .connection import ConnectionOrchestrator, EstablishedSession, HandshakeConfig, establish_trusted_connection
from .context import TsshContext
from .exceptions import (
    AuthenticationFailure,
    ConnectionFailure,
    FailureKind,
    HostKeyFailure,
    NegotiationFailure,
    TransportFailure,
)
from .models import ConnectionRequest

__all__ = [
    "__version__",
    "AuthenticationFailure",
    "ConnectionFailure",
    "ConnectionOrchestrator",
    "ConnectionRequest",
    "EstablishedSession",
    "FailureKind",
    "HandshakeConfig",
    "HostKeyFailure",
    "NegotiationFailure",
    "TransportFailure",
    "TsshContext",
    "establish_trusted_connection",
]
