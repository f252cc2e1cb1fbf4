"""age encryption primitives.

Key generation, multi-recipient encryption and decryption on top of `pyrage`.
All operations are in memory; no plaintext ever touches a temporary file.
"""

import hashlib
import logging

import pyrage

from .constants import APP_NAME, PUBLIC_KEY_PREFIX, SECRET_KEY_PREFIX
from .errors import DecryptionError, RecipientError

logger = logging.getLogger(APP_NAME)


class Identity:
    """An age X25519 key pair owned by this device.

    The private half is only reachable through `secret()`, which exists for
    persisting the key. `repr()` and `str()` show the public key only.

    Attributes:
        public_key (str): The derived `age1...` recipient string.
    """

    def __init__(self, inner: pyrage.x25519.Identity):
        self._inner = inner
        self.public_key = str(inner.to_public())

    @classmethod
    def from_secret(cls, secret: str) -> "Identity":
        """Parses an `AGE-SECRET-KEY-...` string.

        Raises:
            ValueError: If the string is not a valid age private key. The
                message never echoes the input.
        """
        secret = secret.strip()
        if not secret.startswith(SECRET_KEY_PREFIX):
            raise ValueError(
                f"Invalid key format. Expected an age private key starting "
                f"with {SECRET_KEY_PREFIX}"
            )
        try:
            return cls(pyrage.x25519.Identity.from_str(secret))
        except pyrage.IdentityError:
            raise ValueError("Invalid age private key.") from None

    def secret(self) -> str:
        """Returns the private key string. Only the key store should call this."""
        return str(self._inner)

    def __repr__(self) -> str:
        return f"Identity(public_key={self.public_key!r})"

    __str__ = __repr__

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Identity):
            return NotImplemented
        return self.public_key == other.public_key

    def __hash__(self) -> int:
        return hash(self.public_key)


def generate_identity() -> Identity:
    """Generates a fresh age X25519 identity."""
    return Identity(pyrage.x25519.Identity.generate())


def public_key_of(identity: Identity) -> str:
    """Derives the public key of an identity without exposing the private key."""
    return identity.public_key


def fingerprint(public_key: str) -> str:
    """Computes a short, human-verifiable fingerprint of a public key.

    The fingerprint is the first 16 bytes of the SHA-256 of the key string,
    formatted as upper-case colon-separated hex pairs (e.g. `A3:F2:9C:...`).
    """
    digest = hashlib.sha256(public_key.encode("utf-8")).hexdigest()[:32]
    return ":".join(digest[i : i + 2] for i in range(0, 32, 2)).upper()


def validate_public_key(public_key: str) -> pyrage.x25519.Recipient:
    """Checks a public key string and parses it into an age recipient.

    Raises:
        RecipientError: If the key lacks the `age1` prefix or does not parse.
    """
    if not public_key or not public_key.startswith(PUBLIC_KEY_PREFIX):
        raise RecipientError(
            f"Invalid age public key format. Expected key starting with "
            f'"{PUBLIC_KEY_PREFIX}", got: {public_key[:10]}...'
        )
    try:
        return pyrage.x25519.Recipient.from_str(public_key)
    except pyrage.RecipientError:
        raise RecipientError(f"Invalid age public key: {public_key}") from None


def encrypt(plaintext: bytes, recipients: list[str] | tuple[str, ...]) -> bytes:
    """Encrypts `plaintext` so any one of `recipients` can decrypt it.

    Args:
        plaintext (bytes): The payload.
        recipients (list[str]): age public keys; at least one.

    Returns:
        bytes: The binary age ciphertext.

    Raises:
        RecipientError: If `recipients` is empty or a key is invalid.
    """
    if not recipients:
        raise RecipientError("At least one recipient public key is required.")
    parsed = [validate_public_key(key) for key in recipients]
    return pyrage.encrypt(plaintext, parsed)


def decrypt(ciphertext: bytes, identities: list[Identity]) -> bytes:
    """Decrypts an age ciphertext with any of the given identities.

    Raises:
        DecryptionError: On a non-matching identity or a malformed, truncated
            or tampered ciphertext. The two cases are reported
            identically.
    """
    try:
        return pyrage.decrypt(ciphertext, [i._inner for i in identities])
    except (pyrage.DecryptError, ValueError):
        logger.debug("Decryption failed.")
        raise DecryptionError() from None
