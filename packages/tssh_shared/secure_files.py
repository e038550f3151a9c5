"""Race-free creation and atomic replacement of sensitive files.

Every file created here is opened with O_EXCL and an explicit mode, then the
mode that actually landed on disk is checked. Replacement of an existing file
goes through a staging file in the same directory followed by a single
rename, so readers of the final path never see partial content.
"""

import logging
import os
import stat
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Union

import nacl.utils
from nacl.exceptions import CryptoError

logger = logging.getLogger(__name__)

SECURE_FILE_MODE = 0o600
SECURE_DIR_MODE = 0o700

# Number of random bytes in a staging-file suffix
SUFFIX_BYTES = 8

PathLike = Union[str, Path]


class FileSecurityViolation(OSError):
    """A permission or atomicity invariant did not hold for a file."""

    def __init__(self, message: str, path: PathLike = ""):
        super().__init__(message)
        self.path = str(path)


class Lifecycle(str, Enum):
    """How a handle reaches its final state."""
    DIRECT = "direct"    # created once, closed once
    STAGED = "staged"    # temp file, then atomic rename


@dataclass(eq=False)
class SecureFileHandle:
    """An open, securely created file.

    For STAGED handles ``path`` is the final destination and
    ``staging_path`` the temporary file actually being written.
    """
    file: BinaryIO
    path: Path
    mode: int
    lifecycle: Lifecycle = Lifecycle.DIRECT
    staging_path: Optional[Path] = None

    def write(self, data: bytes) -> int:
        return self.file.write(data)

    def flush(self) -> None:
        self.file.flush()

    def fileno(self) -> int:
        return self.file.fileno()

    @property
    def closed(self) -> bool:
        return self.file.closed

    def close(self) -> None:
        if not self.file.closed:
            self.file.close()

    def __enter__(self) -> "SecureFileHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


@dataclass
class _PendingReplacement:
    staging_path: Path
    final_path: Path


@dataclass
class ReplacementRegistry:
    """Bookkeeping of staged replacements that have not completed yet.

    Shared between concurrent callers (several simultaneous downloads), so all
    access goes through the lock. Entries are keyed by handle identity.
    """
    _pending: dict = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def register(self, handle: SecureFileHandle, staging_path: Path, final_path: Path) -> None:
        with self._lock:
            self._pending[handle] = _PendingReplacement(staging_path, final_path)

    def pop(self, handle: SecureFileHandle) -> Optional[_PendingReplacement]:
        with self._lock:
            return self._pending.pop(handle, None)

    def __contains__(self, handle: SecureFileHandle) -> bool:
        with self._lock:
            return handle in self._pending

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


def random_suffix() -> str:
    """Random hex suffix for staging files.

    Falls back to the process id when the random source fails. The pid is
    unique per process only, so concurrent staging in one process relies on
    O_EXCL to surface a clash.
    """
    try:
        return nacl.utils.random(SUFFIX_BYTES).hex()
    except (CryptoError, OSError) as e:
        logger.warning(f"Secure random source unavailable ({e}); using pid-based suffix")
        return str(os.getpid())


def _permission_bits(st: os.stat_result) -> int:
    return stat.S_IMODE(st.st_mode)


class SecureFileManager:
    """Creates sensitive files with verified permissions."""

    def __init__(self, registry: Optional[ReplacementRegistry] = None):
        self.registry = registry if registry is not None else ReplacementRegistry()

    def create(self, path: PathLike, mode: int = SECURE_FILE_MODE) -> SecureFileHandle:
        """Create a new file exclusively with the given mode.

        Args:
            path: Path of the file to create; must not exist
            mode: Permission bits the file must end up with

        Returns:
            Handle opened for binary writing

        Raises:
            FileExistsError: If the path already exists
            FileSecurityViolation: If the OS did not apply the requested mode
        """
        path = Path(path)
        flags = os.O_CREAT | os.O_EXCL | os.O_WRONLY | getattr(os, "O_NOFOLLOW", 0) | getattr(os, "O_CLOEXEC", 0)
        fd = os.open(path, flags, mode)

        try:
            actual = _permission_bits(os.fstat(fd))
        except OSError as e:
            os.close(fd)
            _remove_quietly(path)
            raise FileSecurityViolation(f"Failed to verify permissions of {path}: {e}", path)

        if actual != mode:
            os.close(fd)
            _remove_quietly(path)
            raise FileSecurityViolation(
                f"File permissions not set correctly on {path}: expected {mode:o}, got {actual:o}",
                path,
            )

        return SecureFileHandle(file=os.fdopen(fd, "wb"), path=path, mode=mode)

    def create_for_append(self, path: PathLike, mode: int = SECURE_FILE_MODE) -> SecureFileHandle:
        """Open an existing file for appending, or create it securely.

        Permissions of an existing file are repaired to ``mode`` before it
        is opened.
        """
        path = Path(path)
        try:
            st = os.lstat(path)
        except FileNotFoundError:
            return self.create(path, mode)

        if not stat.S_ISREG(st.st_mode):
            raise FileSecurityViolation(f"Refusing to append to non-regular file {path}", path)

        self.verify_permissions(path, mode)
        flags = os.O_WRONLY | os.O_APPEND | getattr(os, "O_NOFOLLOW", 0) | getattr(os, "O_CLOEXEC", 0)
        fd = os.open(path, flags)
        return SecureFileHandle(file=os.fdopen(fd, "ab"), path=path, mode=mode)

    def verify_permissions(self, path: PathLike, mode: int) -> None:
        """Make sure ``path`` has exactly ``mode``, tightening it if needed."""
        path = Path(path)
        actual = _permission_bits(os.stat(path))
        if actual != mode:
            logger.warning(f"Repairing permissions on {path}: {actual:o} -> {mode:o}")
            os.chmod(path, mode)

    def create_staged_replace(self, final_path: PathLike, mode: int = SECURE_FILE_MODE) -> SecureFileHandle:
        """Start writing a file that will atomically replace ``final_path``.

        The staging file lives in the same directory so the final rename
        never crosses filesystems.
        """
        final_path = Path(final_path)
        staging_path = final_path.with_name(f"{final_path.name}.tmp.{random_suffix()}")

        try:
            staged = self.create(staging_path, mode)
        except FileSecurityViolation:
            raise
        except OSError as e:
            raise FileSecurityViolation(f"Failed to create staging file for {final_path}: {e}", final_path)

        handle = SecureFileHandle(
            file=staged.file,
            path=final_path,
            mode=mode,
            lifecycle=Lifecycle.STAGED,
            staging_path=staging_path,
        )
        self.registry.register(handle, staging_path, final_path)
        return handle

    def complete_replace(self, handle: SecureFileHandle) -> None:
        """Close a staged handle and rename it over its final path.

        A handle that was never staged is simply closed.
        """
        pending = self.registry.pop(handle)
        if pending is None:
            handle.close()
            return

        try:
            if not handle.closed:
                handle.flush()
                os.fsync(handle.fileno())
            handle.close()
        except OSError as e:
            _remove_quietly(pending.staging_path)
            raise FileSecurityViolation(
                f"Failed to close staging file before rename: {e}", pending.final_path
            )

        try:
            os.replace(pending.staging_path, pending.final_path)
        except OSError as e:
            _remove_quietly(pending.staging_path)
            raise FileSecurityViolation(
                f"Failed to atomically replace {pending.final_path}: {e}", pending.final_path
            )

    def abort_replace(self, handle: SecureFileHandle) -> None:
        """Discard a staged handle without touching its final path."""
        pending = self.registry.pop(handle)
        handle.close()
        if pending is not None:
            _remove_quietly(pending.staging_path)

    @contextmanager
    def staged_replace(self, final_path: PathLike, mode: int = SECURE_FILE_MODE) -> Iterator[SecureFileHandle]:
        """Context manager around create_staged_replace/complete_replace."""
        handle = self.create_staged_replace(final_path, mode)
        try:
            yield handle
        except BaseException:
            self.abort_replace(handle)
            raise
        self.complete_replace(handle)


def ensure_secure_directory(path: PathLike, mode: int = SECURE_DIR_MODE) -> Path:
    """Create ``path`` (and parents) owner-only, tightening an existing one."""
    path = Path(path)
    path.mkdir(mode=mode, parents=True, exist_ok=True)

    if not path.is_dir():
        raise FileSecurityViolation(f"{path} exists and is not a directory", path)

    actual = _permission_bits(os.stat(path))
    if actual & 0o077:
        logger.warning(f"Directory {path} allows group/other access ({actual:o}); restricting to {mode:o}")
        os.chmod(path, mode)
    return path


def _remove_quietly(path: Path) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove {path}: {e}")
