"""Host key trust store backed by an OpenSSH known_hosts file.

Unknown hosts are trusted on first use after an interactive confirmation.
A host whose key differs from the recorded one, or whose key is marked
``@revoked``, is always rejected; there is no interactive override.
"""

import base64
import binascii
import fnmatch
import hashlib
import hmac
import logging
import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, TextIO, Union

from tssh_shared.hostkeys import HostKey
from tssh_shared.secure_files import (
    SECURE_DIR_MODE,
    SECURE_FILE_MODE,
    SecureFileManager,
    ensure_secure_directory,
)
from tssh_shared.terminal import Prompter

from .audit import SecurityAuditLogger
from .config import DEFAULT_SSH_PORT
from .exceptions import HostKeyStoreUnavailable
from .notices import host_key_changed_warning, insecure_mode_warning, print_notice, unknown_host_notice

logger = logging.getLogger(__name__)

KNOWN_HOSTS_HEADER = "# SSH Known Hosts managed by tssh"
HASHED_HOST_PREFIX = "|1|"

MARKER_REVOKED = "revoked"
MARKER_CERT_AUTHORITY = "cert-authority"

CONFIRM_PROMPT = "Are you sure you want to continue connecting (yes/no/[fingerprint])? "


# --- Address canonicalization ---

def canonical_address(host: str, port: int = DEFAULT_SSH_PORT) -> str:
    """known_hosts form of a host and port: ``host`` or ``[host]:port``."""
    host = host.strip().lower()
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    if port == DEFAULT_SSH_PORT:
        return host
    return f"[{host}]:{port}"


def normalize_address(address: str) -> str:
    """Canonicalize ``host``, ``host:port``, ``[host]`` or ``[host]:port``.

    Anything that does not parse as one of those forms is only lower-cased,
    so wildcard patterns pass through unchanged.
    """
    address = address.strip().lower()

    if address.startswith("["):
        end = address.find("]")
        if end == -1:
            return address
        host, rest = address[1:end], address[end + 1:]
        if not rest:
            return canonical_address(host)
        if rest.startswith(":") and rest[1:].isdigit():
            return canonical_address(host, int(rest[1:]))
        return address

    # A single colon is host:port; more than one is a bare IPv6 literal
    if address.count(":") == 1:
        host, _, port_text = address.partition(":")
        if port_text.isdigit():
            return canonical_address(host, int(port_text))
    return address


def hash_hostname(address: str, salt: bytes) -> str:
    """OpenSSH ``|1|salt|hmac`` form of an address."""
    digest = hmac.new(salt, address.encode("utf-8"), hashlib.sha1).digest()
    return f"{HASHED_HOST_PREFIX}{base64.b64encode(salt).decode()}|{base64.b64encode(digest).decode()}"


def _hashed_pattern_matches(pattern: str, address: str) -> bool:
    parts = pattern[len(HASHED_HOST_PREFIX):].split("|")
    if len(parts) != 2:
        return False
    try:
        salt = base64.b64decode(parts[0], validate=True)
        expected = base64.b64decode(parts[1], validate=True)
    except (binascii.Error, ValueError):
        return False
    actual = hmac.new(salt, address.encode("utf-8"), hashlib.sha1).digest()
    return hmac.compare_digest(actual, expected)


def _pattern_matches(pattern: str, address: str) -> bool:
    if pattern.startswith(HASHED_HOST_PREFIX):
        return _hashed_pattern_matches(pattern, address)
    pattern = normalize_address(pattern)
    if "*" in pattern or "?" in pattern:
        return fnmatch.fnmatchcase(address, pattern)
    return pattern == address


# --- Records and decisions ---

class KnownHostsFormatError(ValueError):
    """A known_hosts line could not be parsed."""

    def __init__(self, message: str, line_number: int = 0):
        super().__init__(message)
        self.line_number = line_number


@dataclass(frozen=True)
class TrustRecord:
    """One known_hosts entry."""
    patterns: tuple[str, ...]
    key: HostKey
    line_number: int = 0
    marker: Optional[str] = None
    source: Optional[Path] = None

    @property
    def key_type(self) -> str:
        return self.key.key_type

    @property
    def location(self) -> str:
        return f"{self.source}:{self.line_number}"

    def matches(self, address: str) -> bool:
        """OpenSSH pattern-list semantics: any negated match wins."""
        matched = False
        for pattern in self.patterns:
            if pattern.startswith("!"):
                if _pattern_matches(pattern[1:], address):
                    return False
            elif _pattern_matches(pattern, address):
                matched = True
        return matched


def parse_line(line: str, line_number: int = 0, source: Optional[Path] = None) -> Optional[TrustRecord]:
    """Parse one known_hosts line. Blank lines and comments give None.

    Raises:
        KnownHostsFormatError: If the line is malformed
    """
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None

    fields = stripped.split()
    marker = None
    if fields[0].startswith("@"):
        marker = fields[0][1:]
        if marker not in (MARKER_REVOKED, MARKER_CERT_AUTHORITY):
            raise KnownHostsFormatError(f"unknown marker @{marker}", line_number)
        fields = fields[1:]

    if len(fields) < 3:
        raise KnownHostsFormatError("expected 'patterns key-type base64'", line_number)

    patterns = tuple(p for p in fields[0].split(",") if p)
    if not patterns:
        raise KnownHostsFormatError("empty host pattern list", line_number)

    try:
        key = HostKey.from_base64(fields[1], fields[2])
    except ValueError as e:
        raise KnownHostsFormatError(f"invalid key: {e}", line_number)

    return TrustRecord(patterns=patterns, key=key, line_number=line_number, marker=marker, source=source)


class TrustState(str, Enum):
    MATCH = "match"
    UNKNOWN = "unknown"
    CHANGED = "changed"
    REVOKED = "revoked"


@dataclass
class TrustDecision:
    """Outcome of looking a presented key up in known_hosts."""
    state: TrustState
    host: str
    presented: HostKey
    known: list[TrustRecord] = field(default_factory=list)

    @property
    def known_fingerprints(self) -> list[str]:
        return [record.key.fingerprint() for record in self.known]

    @property
    def locations(self) -> list[str]:
        return [record.location for record in self.known]


class VerificationState(str, Enum):
    CHECKING = "checking"
    PENDING_DECISION = "pending_decision"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass
class VerificationResult:
    state: VerificationState
    decision: Optional[TrustDecision] = None
    persisted: bool = False
    reason: str = ""

    @property
    def accepted(self) -> bool:
        return self.state == VerificationState.ACCEPTED


class KnownHostsFile:
    """Read access to a known_hosts file. Every lookup reads the file afresh."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def records(self) -> list[TrustRecord]:
        try:
            text = self.path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return []

        records = []
        for line_number, line in enumerate(text.splitlines(), start=1):
            try:
                record = parse_line(line, line_number, self.path)
            except KnownHostsFormatError as e:
                logger.warning(f"Skipping malformed known_hosts line {self.path}:{line_number}: {e}")
                continue
            if record is not None:
                records.append(record)
        return records

    def lookup(self, host: str, key: HostKey) -> TrustDecision:
        address = normalize_address(host)
        matching = [r for r in self.records() if r.matches(address)]

        for record in matching:
            if record.marker == MARKER_REVOKED and record.key.same_key(key):
                return TrustDecision(TrustState.REVOKED, address, key, [record])

        plain = [r for r in matching if r.marker is None]
        for record in plain:
            if record.key.same_key(key):
                return TrustDecision(TrustState.MATCH, address, key, [record])

        if plain:
            # Same-type records first so the warning shows the key being replaced
            plain.sort(key=lambda r: r.key_type != key.key_type)
            return TrustDecision(TrustState.CHANGED, address, key, plain)
        return TrustDecision(TrustState.UNKNOWN, address, key)

    def known_key_types(self, host: str) -> list[str]:
        address = normalize_address(host)
        types: list[str] = []
        for record in self.records():
            if record.marker is None and record.key_type not in types and record.matches(address):
                types.append(record.key_type)
        return types


# --- Verifiers ---

@dataclass
class TrustLocks:
    """Locks serializing confirmation and appends for one known_hosts file."""
    prompt: threading.Lock = field(default_factory=threading.Lock)
    write: threading.Lock = field(default_factory=threading.Lock)


class TrustLockTable:
    """One TrustLocks per resolved known_hosts path.

    Verifiers are built per connection; sharing a table makes concurrent
    connections to the same file confirm and append one at a time.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[Path, TrustLocks] = {}

    def for_path(self, path: Union[str, Path]) -> TrustLocks:
        key = Path(path).expanduser().resolve()
        with self._guard:
            locks = self._locks.get(key)
            if locks is None:
                locks = self._locks[key] = TrustLocks()
            return locks

class _InteractiveVerifier:
    """Shared prompting for verifiers that ask before trusting a new key."""

    persistent = False

    def __init__(self, prompter: Optional[Prompter] = None, audit: Optional[SecurityAuditLogger] = None,
                 stream: Optional[TextIO] = None,
                 locks: Optional[TrustLocks] = None):
        self.prompter = prompter
        self.audit = audit or SecurityAuditLogger.disabled()
        self.stream = stream
        self.locks = locks or TrustLocks()
        self._prompt_lock = self.locks.prompt

    def _confirm(self, address: str, key: HostKey, remote_address: Optional[str]) -> tuple[bool, str]:
        """Ask the user whether to trust ``key``. Returns (accepted, reason)."""
        if self.prompter is None:
            return False, "no terminal available to confirm host key"

        print_notice(unknown_host_notice(address, remote_address, key.key_type, key.fingerprint()), self.stream)
        while True:
            try:
                answer = self.prompter.prompt(CONFIRM_PROMPT)
            except (OSError, EOFError) as e:
                logger.warning(f"Failed to read host key confirmation: {e}")
                return False, f"failed to read confirmation: {e}"

            answer = answer.strip().lower()
            if answer == "yes":
                return True, "accepted by user"
            if answer == "fingerprint":
                print_notice(
                    f"{key.key_type} key fingerprint is {key.fingerprint()}\n"
                    f"MD5 fingerprint: {key.fingerprint_md5()}",
                    self.stream,
                )
                continue
            return False, "rejected by user"

    def _audit_decision(self, address: str, user: str, accepted: bool, key: HostKey) -> None:
        action = "new_host_accepted" if accepted else "new_host_rejected"
        self.audit.log_host_key_verification(address, user, action, accepted, key.fingerprint())

    def known_key_types(self, host: str) -> list[str]:
        return []


class HostTrustStore(_InteractiveVerifier):
    """Persistent trust-on-first-use verifier."""

    persistent = True

    def __init__(self, path: Union[str, Path], file_manager: Optional[SecureFileManager] = None,
                 prompter: Optional[Prompter] = None, audit: Optional[SecurityAuditLogger] = None,
                 stream: Optional[TextIO] = None, locks: Optional[TrustLocks] = None):
        super().__init__(prompter, audit, stream, locks)
        self.path = Path(path)
        self.file = KnownHostsFile(self.path)
        self.file_manager = file_manager or SecureFileManager()
        self._write_lock = self.locks.write

    @classmethod
    def open(cls, path: Union[str, Path], file_manager: Optional[SecureFileManager] = None,
             prompter: Optional[Prompter] = None, audit: Optional[SecurityAuditLogger] = None,
             stream: Optional[TextIO] = None, locks: Optional[TrustLocks] = None) -> "HostTrustStore":
        """Make sure the store exists with owner-only permissions.

        Raises:
            HostKeyStoreUnavailable: If the directory or file cannot be prepared
        """
        path = Path(path)
        file_manager = file_manager or SecureFileManager()
        locks = locks or TrustLocks()
        try:
            with locks.write:
                ensure_secure_directory(path.parent, SECURE_DIR_MODE)
                if not path.exists():
                    try:
                        with file_manager.create(path, SECURE_FILE_MODE) as handle:
                            handle.write(f"{KNOWN_HOSTS_HEADER}\n".encode("utf-8"))
                        logger.info(f"Created known_hosts file: {path}")
                    except FileExistsError:
                        # Created by another process since the check
                        pass
                file_manager.verify_permissions(path, SECURE_FILE_MODE)
        except OSError as e:
            raise HostKeyStoreUnavailable(f"Cannot prepare known_hosts file {path}: {e}", str(path))

        return cls(path, file_manager=file_manager, prompter=prompter, audit=audit, stream=stream, locks=locks)

    def lookup(self, host: str, key: HostKey) -> TrustDecision:
        return self.file.lookup(host, key)

    def known_key_types(self, host: str) -> list[str]:
        try:
            return self.file.known_key_types(host)
        except OSError as e:
            logger.warning(f"Failed to read known_hosts {self.path}: {e}")
            return []

    def verify(self, host: str, key: HostKey, remote_address: Optional[str] = None,
               user: str = "") -> VerificationResult:
        """Decide whether to trust ``key`` for ``host``.

        Known keys are accepted silently. Unknown keys require a "yes" from
        the user and are then recorded. Changed or revoked keys are rejected.
        """
        address = normalize_address(host)
        settled = self._check(address, key, user)
        if settled is not None:
            return settled

        # Concurrent verifications for the same new host prompt one at a time;
        # later ones see the record written by the first.
        with self._prompt_lock:
            settled = self._check(address, key, user)
            if settled is not None:
                return settled

            decision = TrustDecision(TrustState.UNKNOWN, address, key)
            accepted, reason = self._confirm(address, key, remote_address)
            self._audit_decision(address, user, accepted, key)
            if not accepted:
                logger.info(f"Host key for {address} not accepted: {reason}")
                return VerificationResult(VerificationState.REJECTED, decision, reason=reason)

            persisted = self._persist(address, key)
        return VerificationResult(VerificationState.ACCEPTED, decision, persisted=persisted, reason=reason)

    def _check(self, address: str, key: HostKey, user: str) -> Optional[VerificationResult]:
        """Result for anything but an unknown host, which needs the user."""
        try:
            decision = self.lookup(address, key)
        except OSError as e:
            logger.error(f"Failed to read known_hosts {self.path}: {e}")
            self.audit.log_host_key_verification(address, user, "verification_failed", False, key.fingerprint())
            return VerificationResult(VerificationState.REJECTED, reason=f"known_hosts unreadable: {e}")

        if decision.state == TrustState.MATCH:
            logger.debug(f"Host key for {address} matches {decision.locations[0]}")
            self.audit.log_host_key_verification(address, user, "known_host", True, key.fingerprint())
            return VerificationResult(VerificationState.ACCEPTED, decision)
        if decision.state in (TrustState.CHANGED, TrustState.REVOKED):
            return self._reject_mismatch(decision, user)
        return None

    def _reject_mismatch(self, decision: TrustDecision, user: str) -> VerificationResult:
        revoked = decision.state == TrustState.REVOKED
        key = decision.presented
        print_notice(
            host_key_changed_warning(
                decision.host, key.key_type, key.fingerprint(),
                decision.known_fingerprints if not revoked else [],
                decision.locations, revoked=revoked,
            ),
            self.stream,
        )
        logger.error(f"Host key verification failed for {decision.host}: key {decision.state.value}")
        self.audit.log_host_key_verification(decision.host, user, "verification_failed", False, key.fingerprint())
        return VerificationResult(VerificationState.REJECTED, decision, reason=f"host key {decision.state.value}")

    def _persist(self, address: str, key: HostKey) -> bool:
        """Append ``address key`` unless an identical record already exists."""
        with self._write_lock:
            try:
                current = self.lookup(address, key)
                if current.state == TrustState.MATCH:
                    return True
                if current.state != TrustState.UNKNOWN:
                    logger.warning(f"known_hosts changed for {address} while confirming; not recording key")
                    return False

                line = f"{address} {key.to_openssh()}\n"
                if not self._ends_with_newline():
                    line = "\n" + line
                with self.file_manager.create_for_append(self.path, SECURE_FILE_MODE) as handle:
                    handle.write(line.encode("utf-8"))
            except OSError as e:
                logger.warning(f"Failed to add host key for {address} to {self.path}: {e}")
                self.audit.log_file_operation("known_hosts_append", str(self.path), False, str(e))
                return False

        print_notice(f"Warning: Permanently added '{address}' ({key.key_type}) to the list of known hosts.",
                     self.stream)
        self.audit.log_file_operation("known_hosts_append", str(self.path), True, f"added {address}")
        return True

    def _ends_with_newline(self) -> bool:
        try:
            with open(self.path, "rb") as f:
                f.seek(0, os.SEEK_END)
                if f.tell() == 0:
                    return True
                f.seek(-1, os.SEEK_END)
                return f.read(1) == b"\n"
        except FileNotFoundError:
            return True


class EphemeralTrustVerifier(_InteractiveVerifier):
    """Used when known_hosts is unusable: asks every time, remembers nothing."""

    def verify(self, host: str, key: HostKey, remote_address: Optional[str] = None,
               user: str = "") -> VerificationResult:
        address = normalize_address(host)
        decision = TrustDecision(TrustState.UNKNOWN, address, key)
        with self._prompt_lock:
            accepted, reason = self._confirm(address, key, remote_address)
        self._audit_decision(address, user, accepted, key)
        state = VerificationState.ACCEPTED if accepted else VerificationState.REJECTED
        return VerificationResult(state, decision, persisted=False, reason=reason)


class InsecureHostKeyVerifier:
    """Accepts any host key. Only built when explicitly requested."""

    persistent = False

    def __init__(self, audit: Optional[SecurityAuditLogger] = None):
        self.audit = audit or SecurityAuditLogger.disabled()

    def known_key_types(self, host: str) -> list[str]:
        return []

    def verify(self, host: str, key: HostKey, remote_address: Optional[str] = None,
               user: str = "") -> VerificationResult:
        address = normalize_address(host)
        self.audit.log_host_key_verification(address, user, "insecure_skip", True, key.fingerprint())
        return VerificationResult(
            VerificationState.ACCEPTED,
            TrustDecision(TrustState.UNKNOWN, address, key),
            reason="host key verification disabled",
        )


def build_host_key_verifier(path: Union[str, Path], file_manager: Optional[SecureFileManager] = None,
                            prompter: Optional[Prompter] = None,
                            audit: Optional[SecurityAuditLogger] = None,
                            stream: Optional[TextIO] = None,
                            locks: Optional[TrustLocks] = None):
    """Open the persistent store, degrading to an ephemeral verifier.

    Pass the same ``locks`` for every verifier built on one file so that
    concurrent connections prompt and append one at a time.
    """
    try:
        return HostTrustStore.open(
            path, file_manager=file_manager, prompter=prompter, audit=audit, stream=stream, locks=locks
        )
    except HostKeyStoreUnavailable as e:
        logger.warning(f"{e}. Host keys will be confirmed every time and not saved.")
        return EphemeralTrustVerifier(prompter=prompter, audit=audit, stream=stream, locks=locks)


def build_insecure_verifier(host: str, user: str, audit: Optional[SecurityAuditLogger] = None,
                            stream: Optional[TextIO] = None) -> InsecureHostKeyVerifier:
    """Verifier for an explicitly requested insecure connection. Always audited."""
    logger.warning(f"Host key verification disabled for {host}")
    print_notice(insecure_mode_warning(host), stream)
    audit = audit or SecurityAuditLogger.disabled()
    audit.log_insecure_mode(host, user, forced=True, confirmed=True)
    return InsecureHostKeyVerifier(audit)
