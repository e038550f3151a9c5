"""Algorithm agility for the post-quantum migration.

Selects key exchange and host key algorithms out of what the server offers,
following a quantum resistance policy:

- STRICT: quantum-safe key exchanges only
- HYBRID: quantum-safe first, classical afterwards if fallback is allowed
- NONE: classical algorithms only

Algorithm names are opaque protocol identifiers; nothing here knows the wire
syntax around them.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Iterable, Optional, Sequence

logger = logging.getLogger(__name__)


class QuantumResistance(IntEnum):
    """Level of quantum resistance required for a connection."""
    NONE = 0      # Classical algorithms only
    HYBRID = 1    # Classical + PQC
    STRICT = 2    # PQC only

    @classmethod
    def parse(cls, value: str) -> "QuantumResistance":
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown quantum resistance level: {value!r} (expected none, hybrid or strict)")


SNTRUP761 = "sntrup761x25519-sha512@openssh.com"
MLKEM768 = "mlkem768x25519-sha256"
KYBER768 = "x25519-kyber768"

# Supported PQC key exchange algorithms
SUPPORTED_PQC_KEY_EXCHANGES = (
    SNTRUP761,   # NTRU Prime + X25519 hybrid (OpenSSH 9.0+)
    MLKEM768,    # ML-KEM + X25519 hybrid
    KYBER768,    # Kyber + X25519 hybrid
)

CLASSICAL_KEY_EXCHANGES = (
    "curve25519-sha256",
    "curve25519-sha256@libssh.org",
    "ecdh-sha2-nistp256",
    "ecdh-sha2-nistp384",
    "ecdh-sha2-nistp521",
)

# Signature algorithms with some quantum resistance
QUANTUM_RESISTANT_SIGNATURES = (
    "ssh-ed25519",
    "ssh-ed25519-cert-v01@openssh.com",
    "rsa-sha2-512",
    "rsa-sha2-256",
)

CLASSICAL_SIGNATURES = (
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
)

# Host key algorithm names that map to a different known_hosts key type
_HOST_KEY_TYPE_ALIASES = {
    "rsa-sha2-512": "ssh-rsa",
    "rsa-sha2-256": "ssh-rsa",
    "ssh-ed25519-cert-v01@openssh.com": "ssh-ed25519",
}


def is_pqc_key_exchange(name: str) -> bool:
    return name in SUPPORTED_PQC_KEY_EXCHANGES


def is_quantum_resistant_signature(name: str) -> bool:
    return name in QUANTUM_RESISTANT_SIGNATURES


def host_key_type_for(algorithm: str) -> str:
    """known_hosts key type used by a host key algorithm."""
    return _HOST_KEY_TYPE_ALIASES.get(algorithm, algorithm)


def is_hybrid_key_exchange(name: str) -> bool:
    return is_pqc_key_exchange(name) and "x25519" in name and any(
        marker in name for marker in ("sntrup", "mlkem", "kyber")
    )


@dataclass
class PQCConfig:
    """Post-quantum cryptography configuration."""
    enable_pqc: bool = True
    quantum_resistance: QuantumResistance = QuantumResistance.HYBRID
    preferred_pqc_algos: list[str] = field(default_factory=lambda: list(SUPPORTED_PQC_KEY_EXCHANGES))
    allow_classical_fallback: bool = True
    log_pqc_usage: bool = True


@dataclass(frozen=True)
class Algorithm:
    """Catalog entry for a transport algorithm."""
    name: str
    kind: str                  # "kex" or "hostkey"
    quantum_safe: bool
    quantum_resistant: bool    # partially resistant, e.g. larger keys
    security_bits: int         # classical
    quantum_bits: int          # post-quantum


ALGORITHMS: dict[str, Algorithm] = {
    a.name: a for a in (
        Algorithm(SNTRUP761, "kex", True, True, 128, 128),
        Algorithm(MLKEM768, "kex", True, True, 128, 128),
        Algorithm(KYBER768, "kex", True, True, 128, 128),
        Algorithm("curve25519-sha256", "kex", False, False, 128, 0),
        Algorithm("curve25519-sha256@libssh.org", "kex", False, False, 128, 0),
        Algorithm("ecdh-sha2-nistp256", "kex", False, False, 128, 0),
        Algorithm("ecdh-sha2-nistp384", "kex", False, False, 192, 0),
        Algorithm("ecdh-sha2-nistp521", "kex", False, False, 256, 0),
        Algorithm("ssh-ed25519", "hostkey", True, True, 128, 128),
        Algorithm("rsa-sha2-512", "hostkey", False, True, 128, 64),
        Algorithm("rsa-sha2-256", "hostkey", False, True, 128, 64),
        Algorithm("ecdsa-sha2-nistp256", "hostkey", False, False, 128, 0),
    )
}


@dataclass(frozen=True)
class PreferenceEntry:
    name: str
    quantum_safe: bool


@dataclass(frozen=True)
class AlgorithmPreference:
    """Ordered algorithm lists offered to the peer for one connection."""
    key_exchanges: tuple[PreferenceEntry, ...]
    host_key_algorithms: tuple[PreferenceEntry, ...]

    @property
    def key_exchange_names(self) -> list[str]:
        return [entry.name for entry in self.key_exchanges]

    @property
    def host_key_names(self) -> list[str]:
        return [entry.name for entry in self.host_key_algorithms]


@dataclass
class ConnectionStatus:
    """PQC status of a single connection."""
    enabled: bool = False
    key_exchange: str = ""
    is_quantum_safe: bool = False
    is_hybrid: bool = False

    @property
    def security_level(self) -> str:
        if self.is_quantum_safe:
            return "Quantum-Safe (Hybrid)" if self.is_hybrid else "Quantum-Safe"
        return "Classical Only"

    @classmethod
    def for_key_exchange(cls, name: str, enabled: bool = True) -> "ConnectionStatus":
        algo = ALGORITHMS.get(name)
        quantum_safe = algo.quantum_safe if algo else is_pqc_key_exchange(name)
        return cls(
            enabled=enabled,
            key_exchange=name,
            is_quantum_safe=quantum_safe,
            is_hybrid=quantum_safe and is_hybrid_key_exchange(name),
        )


class NegotiationFailureReason(str, Enum):
    NO_QUANTUM_SAFE = "no_quantum_safe"
    NO_COMMON_ALGORITHM = "no_common_algorithm"


class NegotiationError(Exception):
    """No acceptable algorithm is shared with the server."""

    def __init__(self, message: str, reason: NegotiationFailureReason,
                 strict: bool = False, offered: Sequence[str] = ()):
        super().__init__(message)
        self.reason = reason
        self.strict = strict
        self.offered = list(offered)


class AlgorithmNegotiator:
    """Picks transport algorithms for one connection under a PQC policy.

    Args:
        config: PQC policy
        monitor: Optional shared metrics monitor; every completed key exchange
            selection is recorded there
    """

    def __init__(self, config: Optional[PQCConfig] = None, monitor=None):
        self.config = config or PQCConfig()
        self.monitor = monitor
        self.status = ConnectionStatus(enabled=self.config.enable_pqc)

    def key_exchange_preferences(self) -> list[str]:
        """Ordered key exchange identifiers for the configured policy."""
        if not self.config.enable_pqc:
            return list(CLASSICAL_KEY_EXCHANGES)

        level = self.config.quantum_resistance
        if level == QuantumResistance.STRICT:
            return [a for a in self.config.preferred_pqc_algos if is_pqc_key_exchange(a)]
        if level == QuantumResistance.HYBRID:
            preferences = list(self.config.preferred_pqc_algos)
            if self.config.allow_classical_fallback:
                preferences.extend(CLASSICAL_KEY_EXCHANGES)
            return preferences
        return list(CLASSICAL_KEY_EXCHANGES)

    def host_key_preferences(self, known_types: Iterable[str] = ()) -> list[str]:
        """Ordered host key algorithms.

        Algorithms whose key type is already trusted for the host go first so
        the server presents a key we can actually verify.
        """
        preferences = list(QUANTUM_RESISTANT_SIGNATURES)
        if self.config.allow_classical_fallback:
            preferences.extend(CLASSICAL_SIGNATURES)

        known = set(known_types)
        if known:
            preferences.sort(key=lambda name: host_key_type_for(name) not in known)
        return preferences

    def preferences(self, known_types: Iterable[str] = ()) -> AlgorithmPreference:
        return AlgorithmPreference(
            key_exchanges=tuple(
                PreferenceEntry(name, is_pqc_key_exchange(name)) for name in self.key_exchange_preferences()
            ),
            host_key_algorithms=tuple(
                PreferenceEntry(name, _is_quantum_safe(name)) for name in self.host_key_preferences(known_types)
            ),
        )

    def apply_to(self, transport_config, known_types: Iterable[str] = ()) -> AlgorithmPreference:
        """Set ``key_exchanges`` and ``host_key_algorithms`` on a transport config."""
        preference = self.preferences(known_types)
        transport_config.key_exchanges = preference.key_exchange_names
        transport_config.host_key_algorithms = preference.host_key_names
        if self.config.enable_pqc:
            logger.info(f"PQC: Post-quantum cryptography enabled (level: {self.config.quantum_resistance.name.lower()})")
        return preference

    def select_key_exchange(self, server_offered: Sequence[str]) -> str:
        """Select the best key exchange supported by the server.

        Raises:
            NegotiationError: If nothing in our preference list is offered
        """
        logger.debug(f"PQC: Selecting key exchange from server algorithms: {list(server_offered)}")
        preferences = self.key_exchange_preferences()
        offered = set(server_offered)

        for name in preferences:
            if name in offered:
                self._update_status(name)
                return name

        strict = self.config.enable_pqc and self.config.quantum_resistance == QuantumResistance.STRICT
        pqc_only = bool(preferences) and all(is_pqc_key_exchange(name) for name in preferences)
        if self.monitor is not None and self.config.enable_pqc and \
                self.config.quantum_resistance >= QuantumResistance.HYBRID:
            self.monitor.record_failed_attempt()

        if strict or pqc_only:
            raise NegotiationError(
                "no quantum-safe algorithm available",
                NegotiationFailureReason.NO_QUANTUM_SAFE,
                strict=strict,
                offered=server_offered,
            )
        raise NegotiationError(
            "no common algorithm",
            NegotiationFailureReason.NO_COMMON_ALGORITHM,
            strict=False,
            offered=server_offered,
        )

    def select_host_key_algorithm(self, server_offered: Sequence[str], known_types: Iterable[str] = ()) -> str:
        """Select the best host key algorithm supported by the server."""
        logger.debug(f"PQC: Selecting host key algorithm from: {list(server_offered)}")
        offered = set(server_offered)
        for name in self.host_key_preferences(known_types):
            if name in offered:
                return name
        raise NegotiationError(
            "no common algorithm",
            NegotiationFailureReason.NO_COMMON_ALGORITHM,
            strict=False,
            offered=server_offered,
        )

    def _update_status(self, key_exchange: str) -> None:
        self.status = ConnectionStatus.for_key_exchange(key_exchange, enabled=self.config.enable_pqc)

        if self.config.log_pqc_usage:
            self._log_status()
        if self.monitor is not None:
            self.monitor.record_connection(self.status)

    def _log_status(self) -> None:
        status = self.status
        if status.is_quantum_safe:
            logger.info(f"PQC: Quantum-safe connection established using {status.key_exchange}")
            if status.is_hybrid:
                logger.info("PQC: Hybrid mode active (classical + post-quantum security)")
        else:
            logger.warning(f"PQC: Classical-only connection using {status.key_exchange}")
            if self.config.enable_pqc and self.config.quantum_resistance >= QuantumResistance.HYBRID:
                logger.warning("PQC: Server does not support quantum-safe algorithms")

    def algorithm_info(self, name: str) -> Optional[Algorithm]:
        return ALGORITHMS.get(name)

    def assess_security_level(self) -> str:
        """Human-readable assessment of the negotiated key exchange."""
        if not self.status.enabled:
            return "Post-quantum cryptography is disabled"

        algo = ALGORITHMS.get(self.status.key_exchange)
        if algo is None:
            return f"Unknown algorithm: {self.status.key_exchange}"

        if algo.quantum_safe:
            verdict = "Quantum-Safe"
        elif algo.quantum_resistant:
            verdict = "Partially Quantum-Resistant"
        else:
            verdict = "Not Quantum-Safe"

        return (
            f"Algorithm: {algo.name}\n"
            f"Type: {algo.kind}\n"
            f"Classical Security: {algo.security_bits} bits\n"
            f"Quantum Security: {algo.quantum_bits} bits\n"
            f"Status: {verdict}\n"
        )


def _is_quantum_safe(name: str) -> bool:
    algo = ALGORITHMS.get(name)
    return bool(algo and algo.quantum_safe)
