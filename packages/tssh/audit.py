"""Security audit logging.

When enabled, security-relevant events are appended as JSON lines to an
owner-only log file. Writing an audit record is best effort: a failure is
reported through the regular logger and never interrupts the operation
being audited.
"""

import logging
import threading
from pathlib import Path
from typing import Optional

from tssh_shared.secure_files import SECURE_FILE_MODE, SecureFileHandle, SecureFileManager

from .models import SecurityEvent

logger = logging.getLogger(__name__)

SEVERITY_INFO = "INFO"
SEVERITY_WARNING = "WARNING"
SEVERITY_HIGH = "HIGH"

_HOST_KEY_ACTION_DETAILS = {
    "known_host": "verified against known_hosts",
    "new_host_accepted": "new host key accepted by user",
    "new_host_rejected": "new host key rejected by user",
    "verification_failed": "verification failed",
    "insecure_skip": "verification skipped (insecure mode)",
}


class SecurityAuditLogger:
    """Writes SecurityEvent records to the audit log.

    A disabled logger accepts every call and writes nothing.
    """

    def __init__(self, handle: Optional[SecureFileHandle] = None, path: Optional[Path] = None):
        self._handle = handle
        self.path = path
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._handle is not None

    @classmethod
    def disabled(cls) -> "SecurityAuditLogger":
        return cls()

    @classmethod
    def open(cls, path, file_manager: Optional[SecureFileManager] = None) -> "SecurityAuditLogger":
        """Open (or create, mode 0600) the audit log at ``path``.

        If the log cannot be opened, auditing is disabled with a warning.
        """
        path = Path(path)
        file_manager = file_manager or SecureFileManager()
        try:
            handle = file_manager.create_for_append(path, SECURE_FILE_MODE)
        except OSError as e:
            logger.warning(f"Failed to open security audit log {path}: {e}. Audit logging disabled.")
            return cls.disabled()

        audit = cls(handle=handle, path=path)
        audit.log_event(SecurityEvent(
            event_type="AUDIT_INIT",
            action="security_audit_logging_initialized",
            details=f"Security audit logging enabled, log file: {path}",
        ))
        return audit

    def close(self) -> None:
        if not self.enabled:
            return
        self.log_event(SecurityEvent(
            event_type="AUDIT_CLOSE",
            action="security_audit_logging_closed",
            details="Security audit logging session ended",
        ))
        with self._lock:
            try:
                self._handle.close()
            except OSError as e:
                logger.warning(f"Failed to close security audit log: {e}")
            self._handle = None

    def log_event(self, event: SecurityEvent) -> None:
        """Append one event. Never raises."""
        if not self.enabled:
            return
        try:
            line = event.model_dump_json(exclude_none=True) + "\n"
            with self._lock:
                if self._handle is None:
                    return
                self._handle.write(line.encode("utf-8"))
                self._handle.flush()
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to write security audit record {event.event_type}: {e}")

    def log_insecure_mode(self, host: str, user: str, forced: bool = True, confirmed: bool = True) -> None:
        details = f"Host key verification disabled for connection to {host}"
        if forced:
            details += " (forced by caller)"
        elif confirmed:
            details += " (user confirmed after warning)"
        else:
            details += " (user declined after warning)"

        self.log_event(SecurityEvent(
            event_type="HOST_KEY_BYPASS",
            severity=SEVERITY_HIGH if forced else SEVERITY_WARNING,
            user=user,
            host=host,
            action="insecure_mode_used",
            details=details,
            success=confirmed,
        ))

    def log_key_authentication(self, host: str, user: str, key_path: str, key_type: str, success: bool) -> None:
        details = f"SSH key authentication using {key_type} ({key_path})"
        if not success:
            details += " - failed"
        self.log_event(SecurityEvent(
            event_type="SSH_AUTH",
            severity=SEVERITY_INFO if success else SEVERITY_WARNING,
            user=user,
            host=host,
            action="ssh_key_authentication",
            details=details,
            success=success,
        ))

    def log_password_authentication(self, host: str, user: str, success: bool) -> None:
        details = "SSH password authentication attempt"
        if not success:
            details += " - failed"
        self.log_event(SecurityEvent(
            event_type="SSH_AUTH",
            severity=SEVERITY_INFO if success else SEVERITY_WARNING,
            user=user,
            host=host,
            action="password_authentication",
            details=details,
            success=success,
        ))

    def log_host_key_verification(self, host: str, user: str, action: str, success: bool,
                                  fingerprint: str = "") -> None:
        details = f"Host key verification for {host}"
        if action in _HOST_KEY_ACTION_DETAILS:
            details += f" - {_HOST_KEY_ACTION_DETAILS[action]}"
        if fingerprint:
            details += f" ({fingerprint})"
        self.log_event(SecurityEvent(
            event_type="HOST_KEY_VERIFICATION",
            severity=SEVERITY_INFO if success else SEVERITY_HIGH,
            user=user,
            host=host,
            action=action,
            details=details,
            success=success,
        ))

    def log_file_operation(self, operation: str, file_path: str, success: bool, details: str = "") -> None:
        self.log_event(SecurityEvent(
            event_type="FILE_OPERATION",
            severity=SEVERITY_INFO if success else SEVERITY_WARNING,
            action=operation,
            details=f"File operation: {operation} on {file_path} - {details}",
            success=success,
        ))
