"""Key rotation.

Rotation replaces the device identity and re-encrypts every bucket under it:

1. Generate a new identity.
2. Decrypt every bucket with the old identity into memory. Any failure aborts
   the rotation before a single byte is written.
3. Stage the new identity as `key.txt.pending`. Its presence marks a rotation
   in progress.
4. Re-encrypt every bucket for the new public key and the team members.
5. Point the registry at the new owner key, then promote the pending key.
6. Best effort: squash the sync history to one commit so old ciphertext is no
   longer reachable, and optionally force-push it.

If the process dies between steps 3 and 5, `resume()` finishes the job:
every bucket is decrypted with whichever identity works and step 4 is simply
run again.
"""

import logging
from dataclasses import dataclass, field

from .constants import APP_NAME, DEFAULT_BRANCH, DEFAULT_REMOTE
from .crypto import Identity, generate_identity
from .errors import (
    ConfigError,
    CtxSyncError,
    DecryptionError,
    RotationAbortedError,
    RotationIncompleteError,
)
from .git_wrapper import GitRepo
from .keystore import KeyStore
from .recipients import RecipientRegistry
from .store import StateStore
from .transport import validate_remote_url

logger = logging.getLogger(APP_NAME)

ROTATION_COMMIT_MESSAGE = "chore: rotate encryption key"


@dataclass
class RotationResult:
    """What a rotation did.

    Attributes:
        old_public_key (str): The retired public key.
        new_public_key (str): The active public key.
        buckets (list[str]): Buckets that were re-encrypted.
        history_rewritten (bool): Whether the sync history was squashed.
        pushed (bool): Whether the new history was force-pushed.
        warnings (list[str]): Non-fatal problems, e.g. a failed rewrite.
    """

    old_public_key: str
    new_public_key: str
    buckets: list[str] = field(default_factory=list)
    history_rewritten: bool = False
    pushed: bool = False
    warnings: list[str] = field(default_factory=list)


class KeyRotation:
    """Coordinates replacing the device identity.

    Attributes:
        keystore (KeyStore): Where the private key lives.
        registry (RecipientRegistry): The recipient registry to update.
        store (StateStore): The buckets to re-encrypt.
        repo (GitRepo | None): The sync repository, if history should be
            rewritten.
    """

    def __init__(
        self,
        keystore: KeyStore,
        registry: RecipientRegistry,
        store: StateStore,
        repo: GitRepo | None = None,
        remote: str = DEFAULT_REMOTE,
        branch: str = DEFAULT_BRANCH,
    ):
        self.keystore = keystore
        self.registry = registry
        self.store = store
        self.repo = repo
        self.remote = remote
        self.branch = branch

    def rotate(self, force_push: bool = False) -> RotationResult:
        """Generates a new identity and re-encrypts all state under it.

        Args:
            force_push (bool): Force-push the rewritten history to the remote.

        Returns:
            RotationResult: The outcome.

        Raises:
            RotationIncompleteError: If an earlier rotation was interrupted.
            RotationAbortedError: If any bucket cannot be decrypted with the
                current key. Nothing on disk has changed in that case.
        """
        if self.keystore.has_pending():
            raise RotationIncompleteError("A previous key rotation did not complete.")

        old = self.keystore.load()
        new = generate_identity()
        logger.info(f"Rotating key {old.public_key} -> {new.public_key}")

        documents = self._decrypt_all([old])
        self.keystore.stage_pending(new)
        return self._complete(old.public_key, new, documents, force_push)

    def resume(self, force_push: bool = False) -> RotationResult:
        """Completes an interrupted rotation.

        Raises:
            ConfigError: If no rotation is in progress.
            RotationAbortedError: If a bucket decrypts with neither key.
        """
        if not self.keystore.has_pending():
            raise ConfigError(
                "No key rotation in progress.", "Run `ctx-sync key rotate`."
            )

        old = self.keystore.load_previous()
        new = self.keystore.load_pending()
        logger.info(f"Resuming key rotation to {new.public_key}")

        documents = self._decrypt_all([new, old])
        return self._complete(old.public_key, new, documents, force_push)

    def _decrypt_all(self, identities: list[Identity]) -> dict:
        try:
            return self.store.decrypt_all(identities)
        except DecryptionError as e:
            logger.error(f"Rotation aborted: cannot decrypt bucket '{e.bucket}'.")
            raise RotationAbortedError(e.bucket or "unknown") from None

    def _complete(
        self, old_public_key: str, new: Identity, documents: dict, force_push: bool
    ) -> RotationResult:
        recipients = (new.public_key,) + tuple(
            m.public_key for m in self.registry.members
        )
        for name, document in documents.items():
            self.store.write_bucket(name, document, recipients)

        self.registry.owner_public_key = new.public_key
        self.registry.save()
        self.keystore.promote_pending()

        result = RotationResult(
            old_public_key=old_public_key,
            new_public_key=new.public_key,
            buckets=list(documents),
        )
        logger.info(f"Re-encrypted {len(documents)} bucket(s) under the new key.")

        if self.repo is not None:
            self._rewrite_history(result, force_push)
        return result

    def _rewrite_history(self, result: RotationResult, force_push: bool) -> None:
        url = self.repo.get_remote_url(self.remote)
        try:
            self.store.reconcile_manifest()
            self.repo.rewrite_history(
                self.store.tracked_paths(), ROTATION_COMMIT_MESSAGE, self.branch
            )
            if url is not None:
                self.repo.drop_remote_tracking(self.remote, self.branch)
                self.repo.mark_rewritten()
            self.repo.purge_unreachable()
            result.history_rewritten = True
        except CtxSyncError as e:
            logger.warning(f"History rewrite failed: {e}")
            result.warnings.append(
                f"Could not rewrite Git history: {e}. "
                "Old ciphertext may still be reachable in the repository."
            )
            return

        if url is None:
            if force_push:
                result.warnings.append("No remote configured; nothing was pushed.")
            return
        if not force_push:
            result.warnings.append(
                f"The remote '{self.remote}' still holds ciphertext readable with "
                "the old key. Sync will not pull until you run "
                "`ctx-sync push --force`."
            )
            return
        try:
            validate_remote_url(url)
            self.repo.push(self.remote, self.branch, force=True)
            result.pushed = True
        except CtxSyncError as e:
            logger.warning(f"Force push after rotation failed: {e}")
            result.warnings.append(
                f"Could not force-push the new history: {e}. "
                "Retry with `ctx-sync push --force`."
            )


def import_key(keystore: KeyStore, secret: str) -> Identity:
    """Installs a private key produced by a rotation on another machine.

    Args:
        keystore (KeyStore): Destination key store.
        secret (str): The `AGE-SECRET-KEY-...` string.

    Returns:
        Identity: The imported identity.

    Raises:
        ConfigError: If `secret` is not a valid age private key.
    """
    try:
        identity = Identity.from_secret(secret)
    except ValueError as e:
        raise ConfigError(
            str(e), "Copy the full key printed by `ctx-sync key rotate`."
        ) from None

    keystore.save(identity)
    keystore.discard_pending()
    return identity
