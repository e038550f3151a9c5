"""Configuration for the tssh client."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from tssh_shared.algorithms import PQCConfig, QuantumResistance

from .exceptions import ConfigurationError

CLIENT_NAME = "tssh"
CLIENT_VERSION = "0.4.0"

DEFAULT_SSH_PORT = 22
SSH_DIR_NAME = ".ssh"
KNOWN_HOSTS_FILE_NAME = "known_hosts"
AUDIT_LOG_FILE_NAME = ".tssh-security.log"

DEFAULT_CONNECT_TIMEOUT = 15.0

# Private key files in order of preference
KEY_PRIORITY = (
    "id_ed25519",  # Ed25519 - fastest, most secure, smallest
    "id_ecdsa",    # ECDSA - good performance, secure elliptic curve
    "id_rsa",      # RSA - legacy support
)

UNLOCK_POLICY_STOP = "stop"
UNLOCK_POLICY_CONTINUE = "continue"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass
class TsshConfig:
    """Configuration for the tssh client."""
    home_dir: Path
    known_hosts_path: Path

    # Audit logging
    audit_enabled: bool = False
    audit_log_path: Optional[Path] = None

    # Algorithm agility
    pqc: PQCConfig = field(default_factory=PQCConfig)

    # Timeouts
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT

    # What to do when a higher-priority key cannot be unlocked
    key_unlock_policy: str = UNLOCK_POLICY_STOP

    @property
    def ssh_dir(self) -> Path:
        return self.home_dir / SSH_DIR_NAME

    @classmethod
    def for_home(cls, home_dir, **overrides) -> "TsshConfig":
        """Configuration rooted at ``home_dir`` with built-in defaults."""
        home = Path(home_dir)
        values = {
            "home_dir": home,
            "known_hosts_path": home / SSH_DIR_NAME / KNOWN_HOSTS_FILE_NAME,
            "audit_log_path": home / AUDIT_LOG_FILE_NAME,
        }
        values.update(overrides)
        return cls(**values)


def _parse_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be a boolean (got {raw!r})", missing_key=name)


def _parse_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number of seconds (got {raw!r})", missing_key=name)
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive (got {raw!r})", missing_key=name)
    return value


def get_config() -> TsshConfig:
    """Load configuration from environment.

    Optional environment variables:
        TSSH_HOME: Home directory for key discovery (default: user home)
        TSSH_KNOWN_HOSTS: known_hosts file (default: ~/.ssh/known_hosts)
        TSSH_SECURITY_AUDIT: Enable security audit logging (default: false)
        TSSH_AUDIT_LOG: Audit log path (default: ~/.tssh-security.log)
        TSSH_ENABLE_PQC: Enable post-quantum algorithm agility (default: true)
        TSSH_QUANTUM_RESISTANCE: none, hybrid or strict (default: hybrid)
        TSSH_ALLOW_CLASSICAL_FALLBACK: Allow classical algorithms (default: true)
        TSSH_LOG_PQC_USAGE: Log negotiated PQC status (default: true)
        TSSH_CONNECT_TIMEOUT: Dial timeout in seconds (default: 15)
        TSSH_KEY_UNLOCK_POLICY: stop or continue (default: stop)

    Returns:
        TsshConfig with loaded values

    Raises:
        ConfigurationError: If a variable has an invalid value
    """
    # Load .env file if it exists
    env_file = Path(__file__).parent / ".env"
    if env_file.exists():
        load_dotenv(env_file)

    # Also try parent directory .env
    parent_env = Path(__file__).parent.parent / ".env"
    if parent_env.exists():
        load_dotenv(parent_env)

    home = os.getenv("TSSH_HOME")
    home_dir = Path(home).expanduser() if home else Path.home()

    known_hosts = os.getenv("TSSH_KNOWN_HOSTS")
    audit_log = os.getenv("TSSH_AUDIT_LOG")

    try:
        resistance = QuantumResistance.parse(os.getenv("TSSH_QUANTUM_RESISTANCE", "hybrid"))
    except ValueError as e:
        raise ConfigurationError(str(e), missing_key="TSSH_QUANTUM_RESISTANCE")

    unlock_policy = os.getenv("TSSH_KEY_UNLOCK_POLICY", UNLOCK_POLICY_STOP).strip().lower()
    if unlock_policy not in (UNLOCK_POLICY_STOP, UNLOCK_POLICY_CONTINUE):
        raise ConfigurationError(
            f"TSSH_KEY_UNLOCK_POLICY must be 'stop' or 'continue' (got {unlock_policy!r})",
            missing_key="TSSH_KEY_UNLOCK_POLICY",
        )

    pqc = PQCConfig(
        enable_pqc=_parse_bool("TSSH_ENABLE_PQC", True),
        quantum_resistance=resistance,
        allow_classical_fallback=_parse_bool("TSSH_ALLOW_CLASSICAL_FALLBACK", True),
        log_pqc_usage=_parse_bool("TSSH_LOG_PQC_USAGE", True),
    )

    return TsshConfig(
        home_dir=home_dir,
        known_hosts_path=Path(known_hosts).expanduser() if known_hosts
        else home_dir / SSH_DIR_NAME / KNOWN_HOSTS_FILE_NAME,
        audit_enabled=_parse_bool("TSSH_SECURITY_AUDIT", False),
        audit_log_path=Path(audit_log).expanduser() if audit_log else home_dir / AUDIT_LOG_FILE_NAME,
        pqc=pqc,
        connect_timeout=_parse_float("TSSH_CONNECT_TIMEOUT", DEFAULT_CONNECT_TIMEOUT),
        key_unlock_policy=unlock_policy,
    )
