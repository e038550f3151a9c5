"""Interactive prompts over a validated controlling terminal.

Yes/no confirmations and passphrases are read from the controlling TTY
rather than stdin so that redirected input cannot answer a trust prompt.
Reads block until a line arrives or the terminal closes; there is no
timeout.
"""

import getpass
import logging
import os
import stat
import sys
from typing import Optional, Protocol, TextIO

logger = logging.getLogger(__name__)

DEFAULT_TTY = "/dev/tty"


class TerminalUnavailableError(OSError):
    """No trustworthy terminal is available for prompting."""
    pass


class Prompter(Protocol):
    """Source of interactive answers."""

    def prompt(self, text: str) -> str:
        """Show ``text`` and return one line of input (without newline)."""
        ...

    def read_secret(self, text: str) -> str:
        """Show ``text`` and read a line with echo disabled."""
        ...


def tty_path() -> str:
    """TTY to prompt on: ``$TTY`` if set and valid, else /dev/tty."""
    candidate = os.environ.get("TTY") or DEFAULT_TTY
    validate_tty_path(candidate)
    return candidate


def validate_tty_path(path: str) -> os.stat_result:
    """Check that ``path`` is a character device we may safely read from."""
    try:
        st = os.stat(path)
    except OSError as e:
        raise TerminalUnavailableError(f"TTY path {path} does not exist: {e}")

    if not stat.S_ISCHR(st.st_mode):
        raise TerminalUnavailableError(f"TTY path {path} is not a character device")

    uid, gid = os.getuid(), os.getgid()
    if st.st_uid not in (uid, 0) and st.st_gid != gid:
        raise TerminalUnavailableError(
            f"TTY {path} not owned by current user, root, or current group "
            f"(owned by UID {st.st_uid}, GID {st.st_gid})"
        )

    # /dev/tty only ever reaches the process's own controlling terminal
    if path == DEFAULT_TTY:
        return st

    mode = stat.S_IMODE(st.st_mode)
    if st.st_uid == 0:
        if mode & 0o022:
            raise TerminalUnavailableError(f"TTY {path} has unsafe permissions {mode:o} (group/world-writable)")
    elif mode & 0o077:
        raise TerminalUnavailableError(f"TTY {path} has unsafe permissions {mode:o} (group/other access)")
    return st


class SecureTerminal:
    """Prompter backed by the controlling terminal.

    Args:
        output: Stream prompts are written to (stderr by default)
        allow_stdin_fallback: Read plain prompts from stdin when no TTY can
            be validated. Secrets never fall back to a non-terminal stdin.
    """

    def __init__(self, output: Optional[TextIO] = None, allow_stdin_fallback: bool = True):
        self.output = output or sys.stderr
        self.allow_stdin_fallback = allow_stdin_fallback

    def prompt(self, text: str) -> str:
        try:
            path = tty_path()
        except TerminalUnavailableError as e:
            if not self.allow_stdin_fallback:
                raise
            logger.warning(f"Could not use secure TTY for prompt: {e}. Falling back to stdin.")
            self.output.write(text + "(secure TTY unavailable, reading from stdin): ")
            self.output.flush()
            line = sys.stdin.readline()
            if not line:
                raise EOFError("stdin closed while waiting for an answer")
            return line.rstrip("\r\n")

        with open(path, "r", encoding="utf-8", errors="replace") as tty:
            self.output.write(text)
            self.output.flush()
            line = tty.readline()
        if not line:
            raise EOFError("terminal closed while waiting for an answer")
        return line.rstrip("\r\n")

    def read_secret(self, text: str) -> str:
        try:
            tty_path()
        except TerminalUnavailableError as e:
            if not sys.stdin.isatty():
                raise TerminalUnavailableError(f"Cannot access secure TTY and stdin is not a terminal: {e}")
            logger.warning(f"Could not validate TTY ({e}); reading secret from stdin terminal")
        # getpass opens /dev/tty itself and restores echo even on error
        return getpass.getpass(text, stream=self.output)
