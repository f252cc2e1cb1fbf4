"""Error taxonomy for ctx-sync.

Every failure the core can report has its own class, raised at the point the
failure is detected. Callers branch on the type, never on the message text.
Each error carries a suggested fix that the CLI shows next to the message.
"""


class CtxSyncError(Exception):
    """Base class for all ctx-sync errors.

    Attributes:
        suggestion (str): A short, user-facing hint for fixing the problem.
    """

    default_suggestion = ""

    def __init__(self, message: str, suggestion: str | None = None):
        super().__init__(message)
        self.suggestion = (
            suggestion if suggestion is not None else self.default_suggestion
        )

    def friendly(self) -> str:
        """Formats the error for terminal output, without a traceback."""
        lines = [f"Error: {self}"]
        if self.suggestion:
            lines.append("")
            lines.append(f"  Suggested fix: {self.suggestion}")
        return "\n".join(lines)


class DecryptionError(CtxSyncError):
    """A bucket could not be decrypted.

    Raised for a wrong identity and for corrupted or tampered ciphertext alike;
    the message never says which.
    """

    default_suggestion = "Check your encryption key with `ctx-sync key verify`."

    def __init__(self, bucket: str | None = None, suggestion: str | None = None):
        target = f" '{bucket}'" if bucket else ""
        super().__init__(f"Failed to decrypt state bucket{target}.", suggestion)
        self.bucket = bucket


class StorageCorruptionError(CtxSyncError):
    """A bucket decrypted but its payload is not a valid document. Fatal."""

    default_suggestion = (
        "Restore the bucket from another machine or from the sync history."
    )


class InsecureTransportError(CtxSyncError):
    """The configured remote uses a transport outside the allow-list."""

    default_suggestion = (
        "Use SSH (git@host:user/repo.git) or HTTPS (https://host/user/repo.git)."
    )


class ConflictUnresolvedError(CtxSyncError):
    """A pull left conflicting buckets and no decision was supplied."""

    default_suggestion = (
        "Choose to keep the local or accept the remote version of each file."
    )

    def __init__(self, paths: list[str], suggestion: str | None = None):
        super().__init__(
            f"Unresolved conflicts in: {', '.join(paths)}", suggestion
        )
        self.paths = list(paths)


class RotationAbortedError(CtxSyncError):
    """A bucket failed to decrypt during rotation; nothing was rewritten."""

    default_suggestion = (
        "Nothing was changed. Verify the current key can read all state, "
        "then retry the rotation."
    )

    def __init__(self, bucket: str, suggestion: str | None = None):
        super().__init__(
            f"Key rotation aborted: bucket '{bucket}' could not be decrypted "
            "with the current key.",
            suggestion,
        )
        self.bucket = bucket


class RotationIncompleteError(CtxSyncError):
    """A previous rotation was interrupted after it started rewriting state."""

    default_suggestion = "Run `ctx-sync key rotate --resume` to finish it."


class KeyPermissionError(CtxSyncError):
    """The key file, registry or config directory is readable by others."""

    default_suggestion = (
        "Key file and registry should be 600, config dir should be 700."
    )


class KeyNotFoundError(CtxSyncError):
    """No private key exists on this machine."""

    default_suggestion = (
        "Run `ctx-sync init` to generate a key, or "
        "`ctx-sync init --restore` to import an existing one."
    )


class RecipientError(CtxSyncError):
    """A recipient registry mutation was rejected."""

    default_suggestion = "Run `ctx-sync team list` to see current members."


class ConfigError(CtxSyncError):
    """Missing or invalid configuration."""

    default_suggestion = "Run `ctx-sync init` to create a fresh configuration."


class SyncError(CtxSyncError):
    """A git operation on the sync repository failed."""

    default_suggestion = (
        "Ensure git is installed and the sync repository is initialized."
    )
