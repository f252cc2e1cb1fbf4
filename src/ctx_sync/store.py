"""The encrypted state store.

Every state bucket is a JSON document stored as `<name>.age`, a binary age
ciphertext encrypted for the whole recipient set. Next to the buckets sits
`manifest.json`, the only plaintext file in the sync directory, which records
when each bucket last changed and when the last sync happened.

Writes are atomic: temporary file, fsync, rename, then an fsync of the parent
directory. The bucket is always replaced before its manifest entry is updated.
"""

import contextlib
import datetime
import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from . import crypto
from .constants import (
    APP_NAME,
    BUCKET_NAME_PATTERN,
    BUCKET_SUFFIX,
    MANIFEST_FILE,
    SCHEMA_VERSION,
)
from .crypto import Identity
from .errors import DecryptionError, StorageCorruptionError

logger = logging.getLogger(APP_NAME)

_BUCKET_RE = re.compile(BUCKET_NAME_PATTERN)

# Buckets holding lists rather than maps.
_LIST_BUCKETS = {"directories"}


def utc_now() -> str:
    """Returns the current UTC time as an ISO-8601 string."""
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def default_document(name: str) -> Any:
    """Returns the fresh, empty document for a bucket."""
    return [] if name in _LIST_BUCKETS else {}


def validate_bucket_name(name: str) -> str:
    """Ensures `name` is a slug that maps to a safe `<name>.age` filename.

    Raises:
        ValueError: If the name is not a lowercase slug.
    """
    if not _BUCKET_RE.match(name):
        raise ValueError(
            f"Invalid bucket name '{name}'. Use lowercase letters, digits and '-'."
        )
    return name


def _fsync_dir(path: Path) -> None:
    # Windows cannot open a directory for fsync.
    if os.name == "nt":
        return
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _atomic_write(path: Path, data: bytes) -> None:
    tmp_file = path.with_name(path.name + ".tmp")
    try:
        with open(tmp_file, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_file, path)
    except OSError:
        with contextlib.suppress(OSError):
            tmp_file.unlink()
        raise
    _fsync_dir(path.parent)


@dataclass
class Keyring:
    """The key material a state operation runs with.

    Passed explicitly to every operation that touches ciphertext instead of
    being read from a global.

    Attributes:
        identity (Identity): The identity used to decrypt.
        recipients (tuple[str, ...]): Public keys every write is encrypted for.
    """

    identity: Identity
    recipients: tuple[str, ...]


@dataclass
class Manifest:
    """Plaintext metadata about the bucket set.

    Attributes:
        version (str): Manifest schema version.
        last_sync (str): ISO-8601 time of the last sync.
        files (dict[str, dict[str, str]]): Bucket filename to
            `{"lastModified": <ISO-8601>}`.
    """

    version: str = SCHEMA_VERSION
    last_sync: str = field(default_factory=utc_now)
    files: dict[str, dict[str, str]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "lastSync": self.last_sync,
            "files": self.files,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Manifest":
        return cls(
            version=data.get("version", SCHEMA_VERSION),
            last_sync=data.get("lastSync", utc_now()),
            files=dict(data.get("files", {})),
        )


class StateStore:
    """Reads and writes encrypted buckets in the sync directory.

    Attributes:
        sync_dir (Path): The working tree holding the buckets.
    """

    def __init__(self, sync_dir: Path):
        self.sync_dir = sync_dir

    @property
    def manifest_path(self) -> Path:
        return self.sync_dir / MANIFEST_FILE

    def bucket_path(self, name: str) -> Path:
        return self.sync_dir / f"{validate_bucket_name(name)}{BUCKET_SUFFIX}"

    def bucket_exists(self, name: str) -> bool:
        return self.bucket_path(name).exists()

    def list_buckets(self) -> list[str]:
        """Returns the names of every bucket file present, sorted."""
        if not self.sync_dir.exists():
            return []
        names = []
        for path in self.sync_dir.glob(f"*{BUCKET_SUFFIX}"):
            name = path.name[: -len(BUCKET_SUFFIX)]
            if _BUCKET_RE.match(name):
                names.append(name)
        return sorted(names)

    def read_bucket(self, name: str, identities: Identity | list[Identity]) -> Any:
        """Decrypts and parses a bucket.

        Args:
            name (str): The bucket name.
            identities (Identity | list[Identity]): Identity or identities to
                try.

        Returns:
            Any: The bucket document, or the default document if the bucket is
            absent or empty.

        Raises:
            DecryptionError: If no identity can decrypt the ciphertext, or the
                ciphertext is corrupted.
            StorageCorruptionError: If the plaintext is not valid JSON.
        """
        path = self.bucket_path(name)
        if not path.exists():
            return default_document(name)

        ciphertext = path.read_bytes()
        if not ciphertext.strip():
            return default_document(name)

        if isinstance(identities, Identity):
            identities = [identities]

        try:
            plaintext = crypto.decrypt(ciphertext, identities)
        except DecryptionError:
            raise DecryptionError(name) from None

        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise StorageCorruptionError(
                f"Bucket '{name}' decrypted but does not contain valid JSON."
            ) from None

    def write_bucket(
        self, name: str, document: Any, recipients: list[str] | tuple[str, ...]
    ) -> None:
        """Encrypts `document` for every recipient and replaces the bucket file.

        The manifest entry for the bucket is updated only after the ciphertext
        has been durably replaced.
        """
        path = self.bucket_path(name)
        plaintext = json.dumps(document, indent=2).encode("utf-8")
        ciphertext = crypto.encrypt(plaintext, recipients)

        self.sync_dir.mkdir(parents=True, exist_ok=True)
        _atomic_write(path, ciphertext)
        logger.debug(f"Wrote bucket '{name}' for {len(recipients)} recipient(s).")

        self.mark_modified(name)

    def read_manifest(self) -> Manifest:
        """Loads the manifest, or a fresh one if it is missing or empty."""
        if not self.manifest_path.exists():
            return Manifest()
        content = self.manifest_path.read_text(encoding="utf-8")
        if not content.strip():
            return Manifest()
        try:
            return Manifest.from_dict(json.loads(content))
        except (json.JSONDecodeError, AttributeError) as e:
            raise StorageCorruptionError(
                f"{MANIFEST_FILE} is not valid JSON: {e}",
                "Run `ctx-sync sync` to rebuild it from the bucket files.",
            ) from None

    def write_manifest(self, manifest: Manifest) -> None:
        self.sync_dir.mkdir(parents=True, exist_ok=True)
        data = json.dumps(manifest.to_dict(), indent=2) + "\n"
        _atomic_write(self.manifest_path, data.encode("utf-8"))

    def mark_modified(self, name: str, when: str | None = None) -> None:
        """Records that bucket `name` changed at `when` (default: now)."""
        manifest = self.read_manifest()
        manifest.files[f"{name}{BUCKET_SUFFIX}"] = {"lastModified": when or utc_now()}
        self.write_manifest(manifest)

    def touch_sync(self) -> Manifest:
        """Sets `lastSync` to now."""
        manifest = self.read_manifest()
        manifest.last_sync = utc_now()
        self.write_manifest(manifest)
        return manifest

    def reconcile_manifest(self, manifest: Manifest | None = None) -> Manifest:
        """Makes the manifest agree with the bucket files on disk.

        Entries for missing buckets are dropped. Buckets without an entry get
        one stamped with the file's modification time.
        """
        if manifest is None:
            try:
                manifest = self.read_manifest()
            except StorageCorruptionError:
                logger.warning(f"Rebuilding unreadable {MANIFEST_FILE}.")
                manifest = Manifest()

        present = {f"{name}{BUCKET_SUFFIX}" for name in self.list_buckets()}

        for fname in list(manifest.files):
            if fname not in present:
                del manifest.files[fname]

        for fname in sorted(present - set(manifest.files)):
            mtime = (self.sync_dir / fname).stat().st_mtime
            manifest.files[fname] = {
                "lastModified": datetime.datetime.fromtimestamp(
                    mtime, datetime.timezone.utc
                ).isoformat()
            }

        manifest.version = SCHEMA_VERSION
        self.write_manifest(manifest)
        return manifest

    def decrypt_all(self, identities: Identity | list[Identity]) -> dict[str, Any]:
        """Decrypts every non-empty bucket into memory.

        Raises:
            DecryptionError: Naming the first bucket that fails.
        """
        documents = {}
        for name in self.list_buckets():
            if not self.bucket_path(name).read_bytes().strip():
                continue
            documents[name] = self.read_bucket(name, identities)
        return documents

    def reencrypt_all(
        self,
        identities: Identity | list[Identity],
        recipients: list[str] | tuple[str, ...],
    ) -> list[str]:
        """Rewrites every bucket for a new recipient set.

        All buckets are decrypted before any is written, so a failure leaves
        every file untouched.

        Returns:
            list[str]: The names of the rewritten buckets.
        """
        documents = self.decrypt_all(identities)
        for name, document in documents.items():
            self.write_bucket(name, document, recipients)
        logger.info(
            f"Re-encrypted {len(documents)} bucket(s) for "
            f"{len(recipients)} recipient(s)."
        )
        return list(documents)

    def tracked_paths(self) -> list[str]:
        """Returns the repo-relative paths the sync repository should track."""
        paths = [f"{name}{BUCKET_SUFFIX}" for name in self.list_buckets()]
        if self.manifest_path.exists():
            paths.append(MANIFEST_FILE)
        return paths
