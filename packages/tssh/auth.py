"""Authentication methods offered to the handshake."""

import logging
from pathlib import Path
from typing import Optional, Union

from tssh_shared.hostkeys import HostKey
from tssh_shared.terminal import Prompter

from .keys import Credential, KeyDiscovery

logger = logging.getLogger(__name__)


class PublicKeyAuth:
    """Public key authentication with a loaded credential."""
    name = "publickey"

    def __init__(self, credential: Credential):
        self.credential = credential

    @property
    def algorithm(self) -> str:
        return self.credential.signature_algorithm

    def public_key(self) -> HostKey:
        return self.credential.public_key()

    def sign(self, data: bytes) -> bytes:
        return self.credential.sign(data)

    def describe(self) -> str:
        return f"{self.name} ({self.credential.kind.value}, {self.credential.path})"


class PasswordAuth:
    """Password authentication. The password is read only when asked for."""
    name = "password"

    def __init__(self, user: str, host: str, prompter: Optional[Prompter]):
        self.user = user
        self.host = host
        self.prompter = prompter

    def password(self) -> str:
        """Read the password from the terminal.

        Raises:
            OSError: If no terminal is available
        """
        if self.prompter is None:
            raise OSError("No terminal available for password prompt")
        return self.prompter.read_secret(f"{self.user}@{self.host}'s password: ")

    def describe(self) -> str:
        return self.name


def build_auth_methods(user: str, host: str, discovery: KeyDiscovery,
                       explicit_key: Union[str, Path, None] = None,
                       home_dir: Union[str, Path, None] = None,
                       prompter: Optional[Prompter] = None) -> list:
    """Build the ordered method list: best key (if any), then password.

    A missing or broken key narrows the list but never fails setup.
    """
    methods: list = []

    credential = discovery.resolve(explicit_key, home_dir)
    if credential is not None:
        methods.append(PublicKeyAuth(credential))
    else:
        logger.info("No SSH key available; using password authentication only")

    methods.append(PasswordAuth(user, host, prompter))

    logger.info(f"Created {len(methods)} authentication methods")
    return methods
