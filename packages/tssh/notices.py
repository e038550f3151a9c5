"""User-facing security notices.

These go straight to the terminal (stderr) and are kept separate from
regular log output so they cannot be filtered away by log configuration.
"""

import sys
from typing import Iterable, Optional, TextIO

BANNER_RULE = "@" * 59


def print_notice(text: str, stream: Optional[TextIO] = None) -> None:
    stream = stream or sys.stderr
    stream.write(text if text.endswith("\n") else text + "\n")
    stream.flush()


def host_key_changed_warning(host: str, key_type: str, new_fingerprint: str,
                             old_fingerprints: Iterable[str], locations: Iterable[str],
                             revoked: bool = False) -> str:
    """Warning shown when a host presents a key different from the stored one."""
    title = "WARNING: REVOKED HOST KEY DETECTED!" if revoked else "WARNING: REMOTE HOST IDENTIFICATION HAS CHANGED!"
    lines = [
        "",
        BANNER_RULE,
        f"@    {title:<51}@",
        BANNER_RULE,
        "IT IS POSSIBLE THAT SOMEONE IS DOING SOMETHING NASTY!",
        "Someone could be eavesdropping on you right now (man-in-the-middle attack)!",
    ]
    if revoked:
        lines.append(f"The {key_type} key presented by {host} is marked as revoked.")
    else:
        lines.append("It is also possible that a host key has just been changed.")
    lines.append(f"The fingerprint for the {key_type} key sent by the remote host {host} is:")
    lines.append(new_fingerprint)
    for fingerprint in old_fingerprints:
        lines.append(f"Previously trusted key fingerprint: {fingerprint}")
    for location in locations:
        lines.append(f"Offending key in {location}")
    lines.append("Please contact your system administrator.")
    lines.append("Host key verification failed. This cannot be overridden interactively;")
    lines.append("remove the offending line only after confirming the new key out of band.")
    return "\n".join(lines) + "\n"


def unknown_host_notice(host: str, address: Optional[str], key_type: str, fingerprint: str) -> str:
    shown = f"{host} ({address})" if address and address != host else host
    return (
        f"The authenticity of host '{shown}' can't be established.\n"
        f"{key_type} key fingerprint is {fingerprint}.\n"
    )


def insecure_mode_warning(host: str) -> str:
    return "\n".join([
        "",
        BANNER_RULE,
        f"@    {'WARNING: HOST KEY VERIFICATION IS DISABLED!':<51}@",
        BANNER_RULE,
        f"The identity of {host} will NOT be checked for this connection.",
        "Anyone able to intercept the connection can impersonate the server.",
        "",
    ])
