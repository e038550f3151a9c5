"""Trusted connection establishment.

The orchestrator prepares credentials, a host key verifier and algorithm
preferences, then hands a dialed stream to an external handshake. The
handshake calls back into :class:`HandshakeConfig` to verify the host key,
negotiate algorithms and report authentication attempts. Every failure
surfaces as one of the :class:`~tssh.exceptions.ConnectionFailure` kinds.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from tssh_shared.algorithms import (
    AlgorithmNegotiator,
    ConnectionStatus,
    NegotiationError,
    NegotiationFailureReason,
)
from tssh_shared.hostkeys import HostKey

from .audit import SecurityAuditLogger
from .auth import PasswordAuth, PublicKeyAuth, build_auth_methods
from .context import TsshContext
from .exceptions import (
    FAILURE_TYPES,
    AuthenticationFailure,
    ConnectionFailure,
    HandshakeError,
    HostKeyFailure,
    HostKeyRejectedError,
    NegotiationFailure,
    TransportFailure,
)
from .keys import KeyDiscovery
from .known_hosts import (
    VerificationResult,
    build_host_key_verifier,
    build_insecure_verifier,
    canonical_address,
)
from .models import ConnectionRequest
from .transport import tcp_dial

logger = logging.getLogger(__name__)

Dial = Callable[[str, int, float], Awaitable[Any]]
Handshake = Callable[[Any, "HandshakeConfig"], Awaitable[Any]]


@dataclass
class NegotiatedAlgorithms:
    key_exchange: str
    host_key_algorithm: str
    status: ConnectionStatus


class HandshakeConfig:
    """What a handshake implementation gets to work with.

    ``key_exchanges`` and ``host_key_algorithms`` are empty unless algorithm
    agility is on, in which case they hold our preference order.
    """

    def __init__(self, user: str, host: str, port: int, auth_methods: list, verifier,
                 negotiator: Optional[AlgorithmNegotiator] = None,
                 audit: Optional[SecurityAuditLogger] = None):
        self.user = user
        self.host = host
        self.port = port
        self.address = canonical_address(host, port)
        self.auth_methods = auth_methods
        self.verifier = verifier
        self.negotiator = negotiator
        self.audit = audit or SecurityAuditLogger.disabled()

        self.key_exchanges: list[str] = []
        self.host_key_algorithms: list[str] = []
        self.known_key_types: list[str] = []

        # Filled in as the handshake progresses; used to classify failures
        self.host_key_result: Optional[VerificationResult] = None
        self.negotiation_error: Optional[NegotiationError] = None
        self.negotiated: Optional[NegotiatedAlgorithms] = None
        self.auth_attempts: list[tuple[str, bool]] = []

    async def check_host_key(self, key: Union[HostKey, str],
                             remote_address: Optional[str] = None) -> VerificationResult:
        """Verify the server's host key; may prompt the user.

        Raises:
            HostKeyRejectedError: If the key is not trusted
        """
        if isinstance(key, str):
            key = HostKey.from_openssh(key)

        result = await asyncio.to_thread(self.verifier.verify, self.address, key, remote_address, self.user)
        self.host_key_result = result
        if not result.accepted:
            raise HostKeyRejectedError(
                f"Host key verification failed for {self.address}: {result.reason}",
                host=self.address,
                result=result,
            )
        return result

    def negotiate(self, server_key_exchanges: Sequence[str],
                  server_host_key_algorithms: Sequence[str]) -> NegotiatedAlgorithms:
        """Pick key exchange and host key algorithms from the server's lists.

        Raises:
            NegotiationError: If the policy leaves nothing acceptable
        """
        if self.negotiator is None:
            if not server_key_exchanges or not server_host_key_algorithms:
                raise NegotiationError(
                    "no common algorithm",
                    NegotiationFailureReason.NO_COMMON_ALGORITHM,
                    offered=server_key_exchanges,
                )
            kex = server_key_exchanges[0]
            self.negotiated = NegotiatedAlgorithms(
                kex, server_host_key_algorithms[0], ConnectionStatus.for_key_exchange(kex, enabled=False)
            )
            return self.negotiated

        try:
            kex = self.negotiator.select_key_exchange(server_key_exchanges)
            host_key_algorithm = self.negotiator.select_host_key_algorithm(
                server_host_key_algorithms, self.known_key_types
            )
        except NegotiationError as e:
            self.negotiation_error = e
            raise

        self.negotiated = NegotiatedAlgorithms(kex, host_key_algorithm, self.negotiator.status)
        return self.negotiated

    def report_auth_attempt(self, method, success: bool) -> None:
        """Record the outcome of one authentication method."""
        name = getattr(method, "name", str(method))
        self.auth_attempts.append((name, success))

        if isinstance(method, PublicKeyAuth):
            credential = method.credential
            self.audit.log_key_authentication(
                self.host, self.user, str(credential.path), credential.kind.value, success
            )
        elif isinstance(method, PasswordAuth):
            self.audit.log_password_authentication(self.host, self.user, success)

        if success:
            logger.info(f"Authenticated to {self.address} as {self.user} using {name}")
        else:
            logger.debug(f"Authentication method {name} rejected by {self.address}")

    @property
    def auth_exhausted(self) -> bool:
        """True once every offered method has been tried and none succeeded."""
        if not self.auth_attempts or any(ok for _, ok in self.auth_attempts):
            return False
        tried = {name for name, _ in self.auth_attempts}
        return all(getattr(m, "name", str(m)) in tried for m in self.auth_methods)


@dataclass
class EstablishedSession:
    """A connected, authenticated session."""
    session: Any
    stream: Any
    host: str
    port: int
    user: str
    host_key: Optional[VerificationResult] = None
    algorithms: Optional[NegotiatedAlgorithms] = None
    auth_attempts: list[tuple[str, bool]] = field(default_factory=list)

    def close(self) -> None:
        for obj in (self.session, self.stream):
            close = getattr(obj, "close", None)
            if callable(close):
                close()


def classify_failure(error: BaseException, host: str, port: int,
                     config: Optional[HandshakeConfig] = None) -> ConnectionFailure:
    """Map any handshake error onto a ConnectionFailure subtype."""
    if isinstance(error, ConnectionFailure):
        return error

    host_key_result = config.host_key_result if config is not None else None
    if isinstance(error, HostKeyRejectedError) or (host_key_result is not None and not host_key_result.accepted):
        result = error.result if isinstance(error, HostKeyRejectedError) else host_key_result
        return HostKeyFailure(f"Host key verification failed for {host}: {error}", host, port, result=result)

    negotiation_error = error if isinstance(error, NegotiationError) else (
        config.negotiation_error if config is not None else None
    )
    if negotiation_error is not None:
        return NegotiationFailure(
            f"Algorithm negotiation with {host} failed: {negotiation_error}", host, port,
            strict=negotiation_error.strict,
        )

    if isinstance(error, HandshakeError):
        failure_type = FAILURE_TYPES.get(error.kind, TransportFailure)
        return failure_type(f"Handshake with {host}:{port} failed: {error}", host, port)

    if config is not None and config.auth_exhausted:
        return AuthenticationFailure(
            f"All authentication methods for {config.user}@{host} were rejected: {error}", host, port
        )

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return TransportFailure(f"Handshake with {host}:{port} timed out", host, port)

    return TransportFailure(f"Connection to {host}:{port} failed: {error}", host, port)


def _close_stream(stream) -> None:
    close = getattr(stream, "close", None)
    if not callable(close):
        return
    try:
        close()
    except OSError as e:
        logger.debug(f"Error closing stream: {e}")


class ConnectionOrchestrator:
    """Establishes trusted connections for one client context.

    Args:
        context: Shared collaborators (config, audit, monitor, prompter)
        dial: ``dial(host, port, timeout)`` coroutine returning a stream
        handshake: ``handshake(stream, config)`` coroutine returning a session
        discovery: Key discovery; built from the context when omitted
    """

    def __init__(self, context: TsshContext, dial: Dial = tcp_dial,
                 handshake: Optional[Handshake] = None, discovery: Optional[KeyDiscovery] = None):
        if handshake is None:
            raise ValueError("a handshake implementation is required")
        self.context = context
        self.dial = dial
        self.handshake = handshake
        self.discovery = discovery or KeyDiscovery(
            prompter=context.prompter, unlock_policy=context.config.key_unlock_policy
        )

    async def prepare(self, request: ConnectionRequest) -> HandshakeConfig:
        """Build auth methods, host key verifier and algorithm preferences."""
        ctx = self.context
        address = canonical_address(request.host, request.port)

        auth_methods = await asyncio.to_thread(
            build_auth_methods,
            request.user,
            request.host,
            self.discovery,
            request.key_path,
            request.home_dir or ctx.config.home_dir,
            ctx.prompter,
        )

        if request.insecure_host_key:
            verifier = build_insecure_verifier(address, request.user, ctx.audit, ctx.stream)
        else:
            path = ctx.config.known_hosts_path
            verifier = await asyncio.to_thread(
                build_host_key_verifier, path, ctx.files, ctx.prompter, ctx.audit, ctx.stream,
                ctx.trust_locks.for_path(path),
            )

        config = HandshakeConfig(request.user, request.host, request.port, auth_methods, verifier, audit=ctx.audit)

        if request.algorithm_agility:
            negotiator = AlgorithmNegotiator(ctx.config.pqc, ctx.monitor)
            config.known_key_types = await asyncio.to_thread(verifier.known_key_types, address)
            negotiator.apply_to(config, config.known_key_types)
            config.negotiator = negotiator

        return config

    async def establish(self, request: ConnectionRequest, deadline: Optional[float] = None) -> EstablishedSession:
        """Connect, verify and authenticate.

        Args:
            request: Validated connection parameters
            deadline: Optional overall budget in seconds for dial plus handshake

        Raises:
            ConnectionFailure: One of its four subtypes
        """
        config = await self.prepare(request)
        connect = self._connect(request, config)
        try:
            if deadline is not None:
                return await asyncio.wait_for(connect, timeout=deadline)
            return await connect
        except asyncio.TimeoutError:
            raise TransportFailure(
                f"Connection to {request.host}:{request.port} exceeded deadline of {deadline}s",
                request.host, request.port,
            )

    async def _connect(self, request: ConnectionRequest, config: HandshakeConfig) -> EstablishedSession:
        host, port = request.host, request.port
        timeout = request.connect_timeout
        if timeout is None:
            timeout = self.context.config.connect_timeout

        try:
            stream = await asyncio.wait_for(self.dial(host, port, timeout), timeout=timeout)
        except asyncio.TimeoutError:
            raise TransportFailure(f"Connection to {host}:{port} timed out after {timeout}s", host, port)
        except Exception as e:
            raise TransportFailure(f"Failed to connect to {host}:{port}: {e}", host, port) from e

        try:
            handshake = self.handshake(stream, config)
            if request.handshake_timeout is not None:
                session = await asyncio.wait_for(handshake, timeout=request.handshake_timeout)
            else:
                session = await handshake
        except asyncio.CancelledError:
            _close_stream(stream)
            raise
        except Exception as e:
            _close_stream(stream)
            failure = classify_failure(e, host, port, config)
            logger.error(f"{failure.kind.value} failure connecting to {config.address}: {failure}")
            if failure is e:
                raise
            raise failure from e

        if config.negotiated is not None and self.context.monitor is not None:
            self.context.monitor.log_connection_security(config.address, config.negotiated.status)
        logger.info(f"Connected to {config.address} as {request.user}")

        return EstablishedSession(
            session=session,
            stream=stream,
            host=host,
            port=port,
            user=request.user,
            host_key=config.host_key_result,
            algorithms=config.negotiated,
            auth_attempts=list(config.auth_attempts),
        )


async def establish_trusted_connection(request: Union[ConnectionRequest, dict], dial: Dial,
                                       handshake: Handshake, context: Optional[TsshContext] = None,
                                       deadline: Optional[float] = None) -> EstablishedSession:
    """One-shot helper: validate ``request`` and establish the connection.

    A context created here is closed again before returning.
    """
    if not isinstance(request, ConnectionRequest):
        request = ConnectionRequest(**request)

    owned = context is None
    if owned:
        context = TsshContext.from_config()
    try:
        orchestrator = ConnectionOrchestrator(context, dial=dial, handshake=handshake)
        return await orchestrator.establish(request, deadline=deadline)
    finally:
        if owned:
            context.close()
