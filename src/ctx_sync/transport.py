"""Remote URL validation.

Only encrypted or local transports are accepted for the sync remote. The check
runs before any network call is made.
"""

import re

from .errors import InsecureTransportError
from .redact import redact

SCP_LIKE = re.compile(r"^[a-zA-Z0-9._-]+@[a-zA-Z0-9._-]+:.+$")
SECURE_SCHEMES = ("https://", "ssh://", "file://")

_REJECTED = {
    "http://": "HTTP transmits data in plain text.",
    "git://": "The git protocol is unauthenticated and unencrypted.",
    "ftp://": "FTP transmits data in plain text.",
}


def validate_remote_url(url: str) -> str:
    """Checks that `url` uses an allowed transport.

    Allowed: scp-style SSH (`git@host:user/repo.git`), `ssh://`, `https://`,
    `file://` and absolute local paths.

    Args:
        url (str): The remote URL.

    Returns:
        str: The stripped URL.

    Raises:
        InsecureTransportError: For an empty URL or any other transport.
    """
    url = (url or "").strip()
    if not url:
        raise InsecureTransportError("Remote URL must not be empty.")

    if SCP_LIKE.match(url) or url.startswith("/"):
        return url

    lowered = url.lower()
    if lowered.startswith(SECURE_SCHEMES):
        return url

    for prefix, reason in _REJECTED.items():
        if lowered.startswith(prefix):
            raise InsecureTransportError(
                f"Insecure Git remote URL rejected: {redact(url)}\n{reason}"
            )

    raise InsecureTransportError(f"Unsupported Git remote URL: {redact(url)}")


def is_secure_remote(url: str) -> bool:
    try:
        validate_remote_url(url)
        return True
    except InsecureTransportError:
        return False
