"""Shared fixtures for tssh tests."""

import io
import os
import time
from pathlib import Path
from typing import Optional

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

from tssh_shared.hostkeys import HostKey
from tssh_shared.metrics import PQCMonitor
from tssh_shared.secure_files import SecureFileManager

from tssh.audit import SecurityAuditLogger
from tssh.config import TsshConfig
from tssh.context import TsshContext


class ScriptedPrompter:
    """Prompter that replays canned answers and records what was asked."""

    def __init__(self, answers=(), secrets=(), delay: float = 0.0):
        self.answers = list(answers)
        self.secrets = list(secrets)
        self.delay = delay
        self.prompts: list[str] = []
        self.secret_prompts: list[str] = []

    def prompt(self, text: str) -> str:
        self.prompts.append(text)
        if self.delay:
            time.sleep(self.delay)
        if not self.answers:
            raise EOFError("no more scripted answers")
        answer = self.answers.pop(0)
        if isinstance(answer, BaseException):
            raise answer
        return answer

    def read_secret(self, text: str) -> str:
        self.secret_prompts.append(text)
        if not self.secrets:
            raise EOFError("no more scripted secrets")
        return self.secrets.pop(0)


def generate_key(kind: str):
    if kind == "ed25519":
        return ed25519.Ed25519PrivateKey.generate()
    if kind == "ecdsa":
        return ec.generate_private_key(ec.SECP256R1())
    if kind == "rsa":
        return rsa.generate_private_key(public_exponent=65537, key_size=2048)
    raise ValueError(kind)


def write_private_key(path: Path, private_key, fmt: str = "openssh",
                      passphrase: Optional[str] = None, mode: int = 0o600) -> Path:
    """Serialize ``private_key`` to ``path`` with the given mode."""
    formats = {
        "openssh": serialization.PrivateFormat.OpenSSH,
        "pkcs8": serialization.PrivateFormat.PKCS8,
        "traditional": serialization.PrivateFormat.TraditionalOpenSSL,
    }
    encryption = (
        serialization.BestAvailableEncryption(passphrase.encode())
        if passphrase else serialization.NoEncryption()
    )
    data = private_key.private_bytes(serialization.Encoding.PEM, formats[fmt], encryption)
    path.write_bytes(data)
    os.chmod(path, mode)
    return path


def make_host_key(kind: str = "ed25519") -> HostKey:
    return HostKey.from_public_key(generate_key(kind).public_key())


@pytest.fixture
def home(tmp_path) -> Path:
    """Home directory with an owner-only ~/.ssh."""
    ssh_dir = tmp_path / ".ssh"
    ssh_dir.mkdir(mode=0o700)
    return tmp_path


@pytest.fixture
def ssh_dir(home) -> Path:
    return home / ".ssh"


@pytest.fixture
def host_key() -> HostKey:
    return make_host_key()


@pytest.fixture
def stream():
    return io.StringIO()


@pytest.fixture
def make_context(home, stream):
    """Factory for a context rooted at the test home directory."""
    def factory(prompter=None, audit: Optional[SecurityAuditLogger] = None, **overrides) -> TsshContext:
        config = TsshConfig.for_home(home, **overrides)
        return TsshContext(
            config=config,
            monitor=PQCMonitor(config.pqc),
            audit=audit or SecurityAuditLogger.disabled(),
            files=SecureFileManager(),
            prompter=prompter,
            stream=stream,
        )
    return factory
