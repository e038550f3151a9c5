"""Pydantic models for connection requests and audit records."""

import ipaddress
import re
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import CLIENT_NAME, CLIENT_VERSION, DEFAULT_SSH_PORT

MAX_HOSTNAME_LENGTH = 253  # RFC 1035 limit
MAX_SSH_USER_LENGTH = 32

_DANGEROUS_CHARS = set(";|&`$(){}[]<>\\\"'!*?")
_HOST_CHARS = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9.-]*[a-zA-Z0-9]$|^[a-zA-Z0-9]$")
_USER_CHARS = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_\-]*$")


def validate_hostname(hostname: str) -> str:
    """Validate a hostname or IP literal, returning it unchanged.

    Raises:
        ValueError: If the hostname is malformed or contains shell metacharacters
    """
    if not hostname:
        raise ValueError("hostname cannot be empty")
    if len(hostname) > MAX_HOSTNAME_LENGTH:
        raise ValueError(f"hostname too long: {len(hostname)} characters (max {MAX_HOSTNAME_LENGTH})")

    try:
        ipaddress.ip_address(hostname.split("%", 1)[0])
        return hostname
    except ValueError:
        pass

    if any(c in _DANGEROUS_CHARS for c in hostname):
        raise ValueError("hostname contains invalid characters")
    if "--" in hostname:
        raise ValueError("hostname cannot contain consecutive hyphens")
    if not _HOST_CHARS.match(hostname):
        raise ValueError("hostname format invalid (must comply with RFC 1123)")

    for label in hostname.split("."):
        if not label:
            raise ValueError("hostname contains empty label")
        if len(label) > 63:
            raise ValueError(f"hostname label too long: {label} (max 63 characters)")
        if label.startswith("-") or label.endswith("-"):
            raise ValueError(f"hostname label cannot start or end with hyphen: {label}")
    return hostname


class ConnectionRequest(BaseModel):
    """Parameters for establishing one trusted connection."""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
        extra='forbid'
    )

    host: str = Field(
        ...,
        description="Target hostname or IP address",
        min_length=1,
        max_length=MAX_HOSTNAME_LENGTH,
        examples=["build-box", "10.0.0.7", "fd7a:115c:a1e0::1"]
    )
    port: int = Field(default=DEFAULT_SSH_PORT, ge=1, le=65535, description="Target SSH port")
    user: str = Field(
        ...,
        description="Remote user name",
        min_length=1,
        max_length=MAX_SSH_USER_LENGTH,
    )
    key_path: Optional[str] = Field(
        default=None,
        description="Explicit private key to try before automatic discovery"
    )
    home_dir: Optional[str] = Field(
        default=None,
        description="Home directory used for key discovery (defaults to configured home)"
    )
    insecure_host_key: bool = Field(
        default=False,
        description="Skip host key verification. Always audited."
    )
    algorithm_agility: bool = Field(
        default=True,
        description="Apply post-quantum algorithm preferences to the handshake"
    )
    connect_timeout: Optional[float] = Field(
        default=None,
        gt=0,
        le=600,
        description="Dial timeout in seconds (defaults to the configured connect timeout)"
    )
    handshake_timeout: Optional[float] = Field(
        default=None,
        gt=0,
        description="Bound for the handshake step; interactive prompts count against it"
    )

    @field_validator("host")
    @classmethod
    def _check_host(cls, value: str) -> str:
        if value.startswith("[") and value.endswith("]"):
            value = value[1:-1]
        return validate_hostname(value)

    @field_validator("user")
    @classmethod
    def _check_user(cls, value: str) -> str:
        if not _USER_CHARS.match(value):
            raise ValueError(
                "SSH username may only contain letters, digits, hyphen and underscore, "
                "and cannot start with a hyphen or digit"
            )
        return value


class SecurityEvent(BaseModel):
    """Structured security audit record."""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    event_type: str
    severity: str = "INFO"
    user: str = ""
    host: str = ""
    action: str
    details: str = ""
    user_agent: str = f"{CLIENT_NAME}/{CLIENT_VERSION}"
    success: bool = True
    ip_address: Optional[str] = None
    session_id: Optional[str] = None
