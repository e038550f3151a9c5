"""Custom exceptions for tssh."""

from enum import Enum


class TsshError(Exception):
    """Base exception for tssh."""
    pass


class ConfigurationError(TsshError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, missing_key: str = ""):
        super().__init__(message)
        self.missing_key = missing_key


class HostKeyStoreUnavailable(TsshError):
    """Raised when the known_hosts store cannot be made usable.

    Callers degrade to a non-persistent verifier instead of failing.
    """

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path


class HostKeyRejectedError(TsshError):
    """Raised to the handshake when a host key was not accepted."""

    def __init__(self, message: str, host: str = "", result=None):
        super().__init__(message)
        self.host = host
        self.result = result


class FailureKind(str, Enum):
    """Why establishing a connection failed."""
    AUTHENTICATION = "authentication"
    HOST_KEY = "host_key"
    NEGOTIATION = "negotiation"
    TRANSPORT = "transport"


class HandshakeError(TsshError):
    """Raised by handshake implementations to report a tagged failure."""

    def __init__(self, message: str, kind: FailureKind):
        super().__init__(message)
        self.kind = kind


class ConnectionFailure(TsshError):
    """Raised when a trusted connection could not be established."""

    kind: FailureKind = FailureKind.TRANSPORT

    def __init__(self, message: str, host: str = "", port: int = 0):
        super().__init__(message)
        self.host = host
        self.port = port


class AuthenticationFailure(ConnectionFailure):
    """No credential was accepted by the peer."""
    kind = FailureKind.AUTHENTICATION


class HostKeyFailure(ConnectionFailure):
    """The peer's host key was rejected (changed, revoked or declined)."""
    kind = FailureKind.HOST_KEY

    def __init__(self, message: str, host: str = "", port: int = 0, result=None):
        super().__init__(message, host=host, port=port)
        self.result = result


class NegotiationFailure(ConnectionFailure):
    """No acceptable algorithm could be negotiated."""
    kind = FailureKind.NEGOTIATION

    def __init__(self, message: str, host: str = "", port: int = 0, strict: bool = False):
        super().__init__(message, host=host, port=port)
        self.strict = strict


class TransportFailure(ConnectionFailure):
    """Dialing failed, timed out, or the stream broke during the handshake."""
    kind = FailureKind.TRANSPORT


FAILURE_TYPES = {
    FailureKind.AUTHENTICATION: AuthenticationFailure,
    FailureKind.HOST_KEY: HostKeyFailure,
    FailureKind.NEGOTIATION: NegotiationFailure,
    FailureKind.TRANSPORT: TransportFailure,
}
