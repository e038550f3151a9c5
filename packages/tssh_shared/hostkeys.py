"""SSH public host keys in wire format.

Host keys are carried around as the raw SSH wire blob plus its algorithm
name, which is exactly what a known_hosts line stores.
"""

import base64
import binascii
import hashlib
import hmac
import struct
from dataclasses import dataclass

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa


class HostKeyFormatError(ValueError):
    """A host key could not be decoded."""
    pass


def _read_ssh_string(blob: bytes, offset: int = 0) -> tuple[bytes, int]:
    """Read one length-prefixed SSH string starting at ``offset``."""
    if len(blob) < offset + 4:
        raise HostKeyFormatError("Truncated SSH string length")
    (length,) = struct.unpack(">I", blob[offset:offset + 4])
    start = offset + 4
    end = start + length
    if len(blob) < end:
        raise HostKeyFormatError("Truncated SSH string")
    return blob[start:end], end


@dataclass(frozen=True)
class HostKey:
    """A public host key: algorithm name plus SSH wire-format blob."""
    key_type: str
    blob: bytes

    def __post_init__(self):
        embedded, _ = _read_ssh_string(self.blob)
        if embedded.decode("ascii", errors="replace") != self.key_type:
            raise HostKeyFormatError(
                f"Key type {self.key_type!r} does not match encoded type {embedded!r}"
            )

    @classmethod
    def from_openssh(cls, text: str) -> "HostKey":
        """Parse ``"<type> <base64> [comment]"``."""
        parts = text.strip().split()
        if len(parts) < 2:
            raise HostKeyFormatError(f"Expected '<type> <base64>', got {text!r}")
        return cls.from_base64(parts[0], parts[1])

    @classmethod
    def from_base64(cls, key_type: str, material: str) -> "HostKey":
        try:
            blob = base64.b64decode(material, validate=True)
        except (binascii.Error, ValueError) as e:
            raise HostKeyFormatError(f"Invalid base64 key material: {e}")
        return cls(key_type=key_type, blob=blob)

    @classmethod
    def from_public_key(cls, public_key) -> "HostKey":
        """Build from a ``cryptography`` public key object."""
        if not isinstance(public_key, (ed25519.Ed25519PublicKey, ec.EllipticCurvePublicKey, rsa.RSAPublicKey)):
            raise HostKeyFormatError(f"Unsupported public key type: {type(public_key).__name__}")
        line = public_key.public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH,
        ).decode("ascii")
        return cls.from_openssh(line)

    @property
    def material(self) -> str:
        """Base64 of the wire blob, as stored in known_hosts."""
        return base64.b64encode(self.blob).decode("ascii")

    def to_openssh(self) -> str:
        return f"{self.key_type} {self.material}"

    def fingerprint(self) -> str:
        """OpenSSH SHA256 fingerprint, e.g. ``SHA256:abc...``."""
        digest = hashlib.sha256(self.blob).digest()
        return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")

    def fingerprint_md5(self) -> str:
        digest = hashlib.md5(self.blob, usedforsecurity=False).hexdigest()
        return "MD5:" + ":".join(digest[i:i + 2] for i in range(0, len(digest), 2))

    def same_key(self, other: "HostKey") -> bool:
        """Constant-time comparison of two host keys."""
        return self.key_type == other.key_type and hmac.compare_digest(self.blob, other.blob)

    def __str__(self) -> str:
        return f"{self.key_type} {self.fingerprint()}"
