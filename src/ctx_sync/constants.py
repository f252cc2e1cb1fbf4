"""Global constants and filesystem layout for ctx-sync.

This module defines where the private key, the recipient registry and the
synchronized state repository live, the names of the state buckets, and the
permission bits the local configuration must carry.
"""

import os
from pathlib import Path

# --- Identity ---
APP_NAME = "ctx-sync"
"""str: The human-readable application name (also the logger name)."""

VERSION = "1.3.2"
"""str: The package version."""

SCHEMA_VERSION = "1.0.0"
"""str: The manifest schema version written to every manifest."""

# --- Paths ---
_HOME_OVERRIDE = os.environ.get("CTX_SYNC_HOME")
_BASE_HOME = Path(_HOME_OVERRIDE) if _HOME_OVERRIDE else Path.home()

CONFIG_DIR: Path = _BASE_HOME / ".config" / "ctx-sync"
"""Path: Local, never-synced directory holding the key and the registry."""

SYNC_DIR: Path = _BASE_HOME / ".context-sync"
"""Path: The Git working tree holding ciphertext buckets and the manifest."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The user configuration file."""

LOG_FILE: Path = CONFIG_DIR / "ctx-sync.log"
"""Path: The rotating log file."""

KEY_FILE_NAME = "key.txt"
"""str: File name of the active private key inside the config dir."""

PENDING_KEY_FILE_NAME = "key.txt.pending"
"""str: File name of a staged key while a rotation is in progress."""

RECIPIENTS_FILE_NAME = "recipients.json"
"""str: File name of the recipient registry inside the config dir."""

# --- Permissions ---
KEY_FILE_PERMS = 0o600
"""int: Mode for the private key and the recipient registry."""

CONFIG_DIR_PERMS = 0o700
"""int: Mode for the config directory."""

GROUP_OTHER_MASK = 0o077
"""int: Any of these bits set on a protected path is a permission violation."""

# --- State Buckets ---
BUCKET_SUFFIX = ".age"
"""str: Extension of every ciphertext bucket file."""

MANIFEST_FILE = "manifest.json"
"""str: The only plaintext file tracked by the sync repository."""

BUCKETS = (
    "projects",
    "secrets",
    "docker",
    "notes",
    "services",
    "directories",
)
"""tuple[str, ...]: The bucket names the tool writes out of the box."""

BUCKET_NAME_PATTERN = r"^[a-z][a-z0-9-]*$"
"""str: Bucket names are lowercase slugs so they map to safe filenames."""

# --- Git ---
DEFAULT_REMOTE = "origin"
DEFAULT_BRANCH = "main"

GIT_ATTRIBUTES = [
    f"*{BUCKET_SUFFIX} binary",
    f"{MANIFEST_FILE} binary",
]
"""
list[str]: Lines written to .git/info/attributes so git never attempts a
textual merge of ciphertext or the manifest.
"""

# --- Keys ---
PUBLIC_KEY_PREFIX = "age1"
SECRET_KEY_PREFIX = "AGE-SECRET-KEY-"
