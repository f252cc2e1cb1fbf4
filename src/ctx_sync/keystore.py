"""Persistence of the device's private key.

The key lives in the local config directory, which must be owner-only (0700),
in a file that must be owner-only (0600). Both are checked before the key is
read; a violation is a hard error, never a warning.
"""

import contextlib
import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path

from .constants import (
    APP_NAME,
    CONFIG_DIR_PERMS,
    GROUP_OTHER_MASK,
    KEY_FILE_NAME,
    KEY_FILE_PERMS,
    PENDING_KEY_FILE_NAME,
)
from .crypto import Identity
from .errors import (
    ConfigError,
    KeyNotFoundError,
    KeyPermissionError,
    RotationIncompleteError,
)

logger = logging.getLogger(APP_NAME)


def _mode(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


def ensure_private_dir(path: Path) -> None:
    """Creates `path` if needed and forces owner-only permissions on it."""
    path.mkdir(parents=True, exist_ok=True, mode=CONFIG_DIR_PERMS)
    os.chmod(path, CONFIG_DIR_PERMS)


def check_private_path(path: Path, kind: str) -> None:
    """Raises if `path` grants any permission to group or others.

    Args:
        path (Path): The file or directory to check.
        kind (str): Human-readable name used in the error message.

    Raises:
        KeyPermissionError: If group or other bits are set.
    """
    mode = _mode(path)
    if mode & GROUP_OTHER_MASK:
        expected = "700" if path.is_dir() else "600"
        raise KeyPermissionError(
            f"{kind} has insecure permissions ({mode:o}). Expected {expected}.",
            f"chmod {expected} {path}",
        )


def write_private_file(path: Path, content: str) -> None:
    """Atomically writes `content` to `path` with mode 0600.

    The temporary file is created with 0600 from the start, so the content is
    never readable by others, even briefly.
    """
    tmp_file = path.with_name(path.name + ".tmp")
    fd = os.open(tmp_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, KEY_FILE_PERMS)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_file, KEY_FILE_PERMS)
        os.replace(tmp_file, path)
    except OSError:
        with contextlib.suppress(OSError):
            tmp_file.unlink()
        raise


@dataclass
class PermissionReport:
    """Result of a permission audit of the local config.

    Attributes:
        valid (bool): True if no issues were found.
        key_file_exists (bool): Whether the key file is present.
        key_file_perms (int | None): The key file mode, if it exists.
        config_dir_perms (int | None): The config directory mode, if it exists.
        issues (list[str]): Human-readable problems with suggested fixes.
    """

    valid: bool = True
    key_file_exists: bool = False
    key_file_perms: int | None = None
    config_dir_perms: int | None = None
    issues: list[str] = field(default_factory=list)


class KeyStore:
    """Reads and writes the private key in a config directory.

    Attributes:
        config_dir (Path): The owner-only config directory.
        key_path (Path): The active key file.
        pending_path (Path): The staged key written during a rotation.
    """

    def __init__(self, config_dir: Path):
        self.config_dir = config_dir
        self.key_path = config_dir / KEY_FILE_NAME
        self.pending_path = config_dir / PENDING_KEY_FILE_NAME

    def exists(self) -> bool:
        return self.key_path.exists()

    def has_pending(self) -> bool:
        """True if a rotation staged a new key but did not complete."""
        return self.pending_path.exists()

    def save(self, identity: Identity) -> None:
        """Persists `identity` as the active key (0600 in a 0700 directory)."""
        ensure_private_dir(self.config_dir)
        write_private_file(self.key_path, identity.secret() + "\n")
        logger.info(f"Saved key for {identity.public_key}")

    def load(self) -> Identity:
        """Loads the active key after verifying permissions.

        Raises:
            RotationIncompleteError: If a pending rotation key is present.
            KeyNotFoundError: If no key file exists.
            KeyPermissionError: If the key file or config dir is not owner-only.
            ConfigError: If the key file does not hold a valid age key.
        """
        if self.has_pending():
            raise RotationIncompleteError(
                "A previous key rotation did not complete."
            )
        return self._read(self.key_path)

    def stage_pending(self, identity: Identity) -> None:
        """Writes `identity` as the pending key, marking a rotation in progress."""
        ensure_private_dir(self.config_dir)
        write_private_file(self.pending_path, identity.secret() + "\n")

    def load_pending(self) -> Identity:
        """Loads the pending rotation key after verifying permissions."""
        return self._read(self.pending_path)

    def load_previous(self) -> Identity:
        """Loads the active key while ignoring a pending rotation."""
        return self._read(self.key_path)

    def promote_pending(self) -> None:
        """Makes the pending key the active key in one atomic rename."""
        os.replace(self.pending_path, self.key_path)
        logger.info("Promoted rotated key to active key.")

    def discard_pending(self) -> None:
        with contextlib.suppress(FileNotFoundError):
            self.pending_path.unlink()

    def _read(self, path: Path) -> Identity:
        if not path.exists():
            raise KeyNotFoundError(f"Key file not found: {path}")

        check_private_path(self.config_dir, "Config directory")
        check_private_path(path, "Key file")

        try:
            return Identity.from_secret(path.read_text())
        except ValueError as e:
            raise ConfigError(f"Key file {path} is invalid: {e}") from None

    def verify_permissions(self) -> PermissionReport:
        """Audits the config directory and key file without raising."""
        report = PermissionReport()

        if self.config_dir.exists():
            report.config_dir_perms = _mode(self.config_dir)
            if report.config_dir_perms & GROUP_OTHER_MASK:
                report.issues.append(
                    f"Config directory has permissions "
                    f"{report.config_dir_perms:o}, expected 700. "
                    f"Fix with: chmod 700 {self.config_dir}"
                )
        else:
            report.issues.append(f"Config directory does not exist: {self.config_dir}")

        if self.key_path.exists():
            report.key_file_exists = True
            report.key_file_perms = _mode(self.key_path)
            if report.key_file_perms & GROUP_OTHER_MASK:
                report.issues.append(
                    f"Key file has permissions {report.key_file_perms:o}, "
                    f"expected 600. Fix with: chmod 600 {self.key_path}"
                )
        else:
            report.issues.append(f"Key file not found: {self.key_path}")

        if self.has_pending():
            report.issues.append(
                "A key rotation is in progress. "
                "Run `ctx-sync key rotate --resume` to finish it."
            )

        report.valid = not report.issues
        return report
