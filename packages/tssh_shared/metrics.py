"""PQC usage metrics shared across concurrent connections."""

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .algorithms import ConnectionStatus, PQCConfig, is_pqc_key_exchange

logger = logging.getLogger(__name__)


@dataclass
class ConnectionMetrics:
    """Aggregate connection counts. Instances handed out are snapshots."""
    total_connections: int = 0
    quantum_safe_connections: int = 0
    hybrid_connections: int = 0
    classical_connections: int = 0
    failed_pqc_attempts: int = 0
    algorithm_usage: dict[str, int] = field(default_factory=dict)
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def ratio(self, count: int) -> float:
        if self.total_connections == 0:
            return 0.0
        return count / self.total_connections


class PQCMonitor:
    """Thread-safe PQC metrics aggregate with reporting.

    Mutations take the lock; every read path works on a deep copy taken
    under the same lock.
    """

    def __init__(self, config: Optional[PQCConfig] = None):
        self.config = config or PQCConfig()
        self._lock = threading.Lock()
        self._metrics = ConnectionMetrics()

    def record_connection(self, status: ConnectionStatus) -> None:
        with self._lock:
            m = self._metrics
            m.total_connections += 1
            m.last_updated = datetime.now(timezone.utc)
            if status.is_quantum_safe:
                m.quantum_safe_connections += 1
                if status.is_hybrid:
                    m.hybrid_connections += 1
            else:
                m.classical_connections += 1
            if status.key_exchange:
                m.algorithm_usage[status.key_exchange] = m.algorithm_usage.get(status.key_exchange, 0) + 1

    def record_failed_attempt(self) -> None:
        with self._lock:
            self._metrics.failed_pqc_attempts += 1
            self._metrics.last_updated = datetime.now(timezone.utc)

    def snapshot(self) -> ConnectionMetrics:
        with self._lock:
            return copy.deepcopy(self._metrics)

    def log_connection_security(self, host: str, status: ConnectionStatus) -> None:
        """Log the PQC level of a connection to ``host``."""
        if not self.config.log_pqc_usage:
            return
        level = "Quantum-Safe" if status.is_quantum_safe else "Classical"
        logger.info(f"PQC Connection to {host}: {level} ({status.key_exchange})")

    def generate_report(self) -> str:
        """Human-readable PQC usage report."""
        m = self.snapshot()
        if m.total_connections == 0:
            return "No connections recorded yet"

        lines = [
            "=== Post-Quantum Cryptography Report ===",
            f"Generated: {datetime.now(timezone.utc).isoformat(timespec='seconds')}",
            "",
            f"Total Connections: {m.total_connections}",
            f"Quantum-Safe: {m.quantum_safe_connections} ({m.ratio(m.quantum_safe_connections) * 100:.1f}%)",
            f"  - Hybrid Mode: {m.hybrid_connections} ({m.ratio(m.hybrid_connections) * 100:.1f}%)",
            f"Classical Only: {m.classical_connections} ({m.ratio(m.classical_connections) * 100:.1f}%)",
        ]

        if m.failed_pqc_attempts:
            lines += ["", f"Failed PQC Attempts: {m.failed_pqc_attempts}"]

        if m.algorithm_usage:
            lines += ["", "Algorithm Usage:"]
            for algo, count in sorted(m.algorithm_usage.items(), key=lambda kv: (-kv[1], kv[0])):
                tag = " [Quantum-Safe]" if is_pqc_key_exchange(algo) else ""
                lines.append(f"  {algo}: {count} ({m.ratio(count) * 100:.1f}%){tag}")

        lines += ["", f"Last Updated: {m.last_updated.isoformat(timespec='seconds')}"]
        return "\n".join(lines) + "\n"

    def check_quantum_readiness(self) -> tuple[bool, str]:
        m = self.snapshot()
        if m.total_connections == 0:
            return False, "No connections to assess"

        ratio = m.ratio(m.quantum_safe_connections)
        if ratio >= 0.9:
            return True, f"Excellent: {ratio * 100:.1f}% of connections are quantum-safe"
        if ratio >= 0.5:
            return True, f"Good: {ratio * 100:.1f}% of connections are quantum-safe"
        if ratio > 0:
            return False, f"Needs improvement: Only {ratio * 100:.1f}% of connections are quantum-safe"
        return False, "Not quantum-ready: No quantum-safe connections established"

    def recommend_upgrade(self) -> list[str]:
        m = self.snapshot()
        recommendations = []

        classical_ratio = m.ratio(m.classical_connections)
        if classical_ratio > 0.5:
            recommendations.append(
                f"{classical_ratio * 100:.1f}% of connections use classical algorithms. "
                "Consider upgrading SSH servers to support PQC."
            )

        if m.failed_pqc_attempts:
            recommendations.append(
                f"{m.failed_pqc_attempts} PQC connection attempts failed. "
                "Check server compatibility with sntrup761x25519-sha512@openssh.com"
            )

        for algo, count in sorted(m.algorithm_usage.items()):
            share = m.ratio(count) * 100
            if not is_pqc_key_exchange(algo) and share > 20:
                recommendations.append(f"{share:.1f}% of connections use {algo}. This algorithm is not quantum-safe.")

        if not recommendations:
            recommendations.append("System is well-configured for post-quantum security")
        return recommendations
