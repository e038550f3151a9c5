"""Shared primitives for tssh.

Secure file creation, SSH host key encoding, algorithm agility for the
post-quantum migration, PQC usage metrics and secure terminal prompts.
"""

__version__ = "0.4.0"
