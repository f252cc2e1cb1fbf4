"""Git-backed synchronization of the encrypted state.

A sync moves through a small state machine:

    IDLE -> VALIDATING_REMOTE -> PULLING -> [CONFLICTED -> RESOLVING -> RESOLVED]
         -> COMMITTING -> PUSHING -> IDLE

and any state may end in FAILED. Conflicts are resolved whole-file: the
ciphertext of a bucket is taken entirely from one side, never merged.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from .constants import (
    APP_NAME,
    BUCKET_SUFFIX,
    DEFAULT_BRANCH,
    DEFAULT_REMOTE,
    MANIFEST_FILE,
)
from .errors import ConflictUnresolvedError, SyncError
from .git_wrapper import GitRepo
from .store import StateStore
from .transport import validate_remote_url

logger = logging.getLogger(APP_NAME)


class Resolution(Enum):
    """A whole-file decision for one conflicting path."""

    KEEP_LOCAL = "local"
    ACCEPT_REMOTE = "remote"


class SyncState(Enum):
    IDLE = "idle"
    VALIDATING_REMOTE = "validating_remote"
    PULLING = "pulling"
    CONFLICTED = "conflicted"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    COMMITTING = "committing"
    PUSHING = "pushing"
    FAILED = "failed"


Resolver = Callable[[str], Resolution | None]
"""Called once per conflicting bucket file; returning None leaves it unresolved."""


class VcsTransport(Protocol):
    """The version-control operations the sync engine depends on."""

    def remote_url(self) -> str | None: ...

    def status(self) -> list[str]:
        """Returns the state files with uncommitted changes."""
        ...

    def pull(self) -> list[str]:
        """Merges the remote; returns the paths left conflicted."""
        ...

    def resolve(self, path: str, resolution: Resolution) -> None: ...

    def abort_merge(self) -> None: ...

    def commit(self, paths: list[str], message: str) -> str | None:
        """Stages `paths` and commits; returns None if there was nothing to commit."""
        ...

    def push(self, force: bool = False) -> None: ...


def _is_state_file(path: str) -> bool:
    return path.endswith(BUCKET_SUFFIX) or path == MANIFEST_FILE


class GitTransport:
    """`VcsTransport` backed by the git command line.

    Attributes:
        repo (GitRepo): The sync repository.
        remote (str): Remote name.
        branch (str): Branch that is pulled and pushed.
    """

    def __init__(
        self, repo: GitRepo, remote: str = DEFAULT_REMOTE, branch: str = DEFAULT_BRANCH
    ):
        self.repo = repo
        self.remote = remote
        self.branch = branch

    def remote_url(self) -> str | None:
        return self.repo.get_remote_url(self.remote)

    def status(self) -> list[str]:
        paths = []
        for line in self.repo.status_porcelain():
            path = line[2:].strip().strip('"')
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            if _is_state_file(path):
                paths.append(path)
        return paths

    def pull(self) -> list[str]:
        if self.repo.is_rewritten():
            raise SyncError(
                "Local history was rewritten by a key rotation and the remote "
                "still has the old one.",
                "Run `ctx-sync push --force` to replace the remote history.",
            )
        # An empty remote has nothing to merge.
        if not self.repo.remote_branch_exists(self.remote, self.branch):
            logger.info(f"Remote branch {self.remote}/{self.branch} does not exist yet")
            return []
        return self.repo.pull(self.remote, self.branch)

    def resolve(self, path: str, resolution: Resolution) -> None:
        try:
            self.repo.checkout_side(path, ours=resolution is Resolution.KEEP_LOCAL)
            self.repo.add([path])
        except SyncError:
            # The chosen side deleted the file.
            logger.debug(f"No {resolution.value} version of {path}; removing it.")
            self.repo.remove(path)

    def abort_merge(self) -> None:
        if self.repo.merge_in_progress():
            self.repo.merge_abort()

    def commit(self, paths: list[str], message: str) -> str | None:
        self.repo.add(paths)
        if not self.repo.has_staged_changes() and not self.repo.merge_in_progress():
            return None
        return self.repo.commit(message)

    def push(self, force: bool = False) -> None:
        if not force and self.repo.is_rewritten():
            raise SyncError(
                "The remote history predates the last key rotation.",
                "Run `ctx-sync push --force` to replace it.",
            )
        self.repo.push(self.remote, self.branch, force=force)


@dataclass
class SyncResult:
    """Outcome of one `SyncEngine.sync()` run.

    Attributes:
        commits (list[str]): Commits created, in order.
        pulled (bool): Whether the remote was merged.
        conflicts (list[str]): Conflicting paths reported by the pull.
        resolutions (dict[str, Resolution]): Decision applied per path.
        pushed (bool): Whether the push succeeded.
        push_error (str | None): Why the push failed, if it did.
        states (list[SyncState]): The state trajectory of the run.
    """

    commits: list[str] = field(default_factory=list)
    pulled: bool = False
    conflicts: list[str] = field(default_factory=list)
    resolutions: dict[str, Resolution] = field(default_factory=dict)
    pushed: bool = False
    push_error: str | None = None
    states: list[SyncState] = field(default_factory=list)

    @property
    def commit(self) -> str | None:
        return self.commits[-1] if self.commits else None


class SyncEngine:
    """Pulls, resolves, commits and pushes the state store.

    Attributes:
        store (StateStore): The local state.
        transport (VcsTransport): Version control backend.
        commit_message (str): Message used for state commits.
        default_resolution (Resolution): Decision when no resolver is given.
        state (SyncState): Current position in the state machine.
    """

    def __init__(
        self,
        store: StateStore,
        transport: VcsTransport,
        commit_message: str = "chore: sync context",
        default_resolution: Resolution = Resolution.KEEP_LOCAL,
    ):
        self.store = store
        self.transport = transport
        self.commit_message = commit_message
        self.default_resolution = default_resolution
        self.state = SyncState.IDLE
        self._trajectory: list[SyncState] = []
        self._manifest_conflicted = False

    def _enter(self, state: SyncState) -> None:
        self.state = state
        self._trajectory.append(state)
        logger.debug(f"Sync state: {state.value}")

    def validate_remote(self) -> str | None:
        """Returns the validated remote URL, or None if no remote is configured.

        Raises:
            InsecureTransportError: If the remote uses a disallowed transport.
        """
        url = self.transport.remote_url()
        if url is None:
            return None
        return validate_remote_url(url)

    def commit(self, message: str | None = None) -> str | None:
        """Commits every bucket file plus the manifest.

        Returns:
            str | None: The new commit SHA, or None if nothing changed.
        """
        paths = self.store.tracked_paths()
        if not paths:
            return None
        sha = self.transport.commit(paths, message or self.commit_message)
        if sha:
            logger.info(f"Committed state as {sha[:8]}")
        return sha

    def pull(self) -> list[str]:
        """Snapshots local changes, merges the remote and reports conflicts.

        `manifest.json` is never reported: it is taken from the local side and
        rebuilt after the buckets are resolved.

        Returns:
            list[str]: Conflicting bucket files.
        """
        self.validate_remote()
        self._snapshot()
        return self._merge()

    def resolve(
        self, conflicts: list[str], resolver: Resolver | None = None
    ) -> dict[str, Resolution]:
        """Applies a whole-file decision to every conflicting path.

        Args:
            conflicts (list[str]): Paths returned by `pull()`.
            resolver (Resolver | None): Decision source. If None, the
                engine's default resolution is applied to every path.

        Returns:
            dict[str, Resolution]: The decision taken per path.

        Raises:
            ConflictUnresolvedError: If the resolver gave no decision for a
                path. The merge is aborted and local state is restored.
        """
        decisions: dict[str, Resolution] = {}
        unresolved = []
        for path in conflicts:
            decision = resolver(path) if resolver else self.default_resolution
            if decision is None:
                unresolved.append(path)
            else:
                decisions[path] = decision

        if unresolved:
            self.transport.abort_merge()
            raise ConflictUnresolvedError(unresolved)

        for path, decision in decisions.items():
            self.transport.resolve(path, decision)
            logger.info(f"Resolved {path}: {decision.value}")

        manifest = self.store.reconcile_manifest()
        for path, decision in decisions.items():
            if decision is Resolution.ACCEPT_REMOTE and path in manifest.files:
                self.store.mark_modified(path[: -len(BUCKET_SUFFIX)])
        return decisions

    def sync(
        self,
        pull: bool = True,
        push: bool = True,
        resolver: Resolver | None = None,
        force_push: bool = False,
    ) -> SyncResult:
        """Runs a full sync.

        Args:
            pull (bool): Merge the remote before committing.
            push (bool): Push after committing.
            resolver (Resolver | None): Conflict decision source.
            force_push (bool): Replace the remote branch instead of
                fast-forwarding it.

        Returns:
            SyncResult: What happened. A failed push is reported in
            `push_error`; the local commit is kept.
        """
        self._trajectory = []
        result = SyncResult(states=self._trajectory)

        try:
            self._enter(SyncState.VALIDATING_REMOTE)
            url = self.validate_remote()

            merged = False
            if pull and url:
                self._enter(SyncState.PULLING)
                snapshot = self._snapshot()
                if snapshot:
                    result.commits.append(snapshot)
                self._manifest_conflicted = False
                result.conflicts = self._merge()
                result.pulled = True
                merged = bool(result.conflicts) or self._manifest_conflicted
                if merged:
                    self._enter(SyncState.CONFLICTED)
                    self._enter(SyncState.RESOLVING)
                    result.resolutions = self.resolve(result.conflicts, resolver)
                    self._enter(SyncState.RESOLVED)

            self._enter(SyncState.COMMITTING)
            if merged or self.transport.status():
                self.store.touch_sync()
            sha = self.commit()
            if sha:
                result.commits.append(sha)

            if push and url:
                self._enter(SyncState.PUSHING)
                try:
                    self.transport.push(force=force_push)
                    result.pushed = True
                except SyncError as e:
                    result.push_error = str(e)
                    logger.error(f"Push failed, local commit kept: {e}")

            self._enter(SyncState.IDLE)
            return result
        except Exception:
            self._enter(SyncState.FAILED)
            raise

    def _snapshot(self) -> str | None:
        # Gives the merge a committed local side.
        if not self.transport.status():
            return None
        self.store.touch_sync()
        return self.commit()

    def _merge(self) -> list[str]:
        conflicts = self.transport.pull()
        self._manifest_conflicted = MANIFEST_FILE in conflicts
        if self._manifest_conflicted:
            self.transport.resolve(MANIFEST_FILE, Resolution.KEEP_LOCAL)
        return [p for p in conflicts if p != MANIFEST_FILE]
