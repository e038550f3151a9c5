"""Per-client collaborators, built once and passed explicitly."""

import logging
import sys
from dataclasses import dataclass, field
from typing import Optional, TextIO

from tssh_shared.metrics import PQCMonitor
from tssh_shared.secure_files import ReplacementRegistry, SecureFileManager
from tssh_shared.terminal import Prompter, SecureTerminal

from .audit import SecurityAuditLogger
from .config import TsshConfig, get_config
from .known_hosts import TrustLockTable

logger = logging.getLogger(__name__)


@dataclass
class TsshContext:
    """Everything a connection needs besides the request itself."""
    config: TsshConfig
    monitor: PQCMonitor
    audit: SecurityAuditLogger = field(default_factory=SecurityAuditLogger.disabled)
    files: SecureFileManager = field(default_factory=SecureFileManager)
    prompter: Optional[Prompter] = None
    stream: TextIO = field(default_factory=lambda: sys.stderr)
    trust_locks: TrustLockTable = field(default_factory=TrustLockTable)

    @classmethod
    def from_config(cls, config: Optional[TsshConfig] = None, prompter: Optional[Prompter] = None,
                    stream: Optional[TextIO] = None) -> "TsshContext":
        """Build a context, opening the audit log if auditing is enabled."""
        config = config or get_config()
        stream = stream or sys.stderr
        files = SecureFileManager(ReplacementRegistry())

        if config.audit_enabled and config.audit_log_path is not None:
            audit = SecurityAuditLogger.open(config.audit_log_path, files)
            if audit.enabled:
                logger.info(f"Security audit logging enabled: {config.audit_log_path}")
        else:
            audit = SecurityAuditLogger.disabled()

        return cls(
            config=config,
            monitor=PQCMonitor(config.pqc),
            audit=audit,
            files=files,
            prompter=prompter if prompter is not None else SecureTerminal(output=stream),
            stream=stream,
        )

    def close(self) -> None:
        self.audit.close()

    def __enter__(self) -> "TsshContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
