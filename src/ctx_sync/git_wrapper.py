"""Thin subprocess wrapper around git for the sync repository.

Only the porcelain the sync engine and the key rotation need is exposed.
Every failure becomes a `SyncError` whose text has been through `redact()`.
"""

import contextlib
import logging
import subprocess
from pathlib import Path

from .constants import APP_NAME, DEFAULT_BRANCH
from .errors import SyncError
from .redact import redact

logger = logging.getLogger(APP_NAME)

# Present while a rewritten history still has to be force-pushed.
REWRITE_MARKER = "ctx-sync-rewritten"


class GitRepo:
    """The sync directory seen as a git working tree.

    Attributes:
        path (Path): Root of the working tree (the directory holding `.git`).
    """

    def __init__(self, path: Path):
        """Opens an existing sync repository.

        Raises:
            ValueError: If `path` has no `.git` directory.
        """
        self.path = path
        if not (self.path / ".git").exists():
            raise ValueError(f"Not a git repository: {self.path}")

    @classmethod
    def init(cls, path: Path, branch: str = DEFAULT_BRANCH) -> "GitRepo":
        """Creates (or reopens) a repository at `path` on branch `branch`.

        Args:
            path (Path): Directory to initialize. Created if missing.
            branch (str, optional): Initial branch name. Defaults to "main".

        Returns:
            GitRepo: The repository.
        """
        path.mkdir(parents=True, exist_ok=True)
        if not (path / ".git").exists():
            _git(["init", "--quiet"], cwd=path)
            _git(["symbolic-ref", "HEAD", f"refs/heads/{branch}"], cwd=path)
            logger.info(f"Initialized sync repository at {path}")
        return cls(path)

    def _run(self, args: list[str]) -> str:
        """Runs `git <args>` in the working tree.

        Returns:
            str: Standard output without surrounding whitespace.

        Raises:
            SyncError: If git is missing or the command exits non-zero.
        """
        return _git(args, cwd=self.path)

    def current_branch(self) -> str:
        return self._run(["branch", "--show-current"])

    def install_attributes(self, lines: list[str]) -> None:
        """Writes `lines` to `.git/info/attributes`, which git never tracks.

        Args:
            lines (list[str]): Attribute lines, e.g. `*.age binary`.
        """
        attributes = self.path / ".git" / "info" / "attributes"
        attributes.parent.mkdir(parents=True, exist_ok=True)
        existing = (
            attributes.read_text().splitlines() if attributes.exists() else []
        )
        missing = [line for line in lines if line not in existing]
        if missing:
            attributes.write_text("\n".join(existing + missing) + "\n")

    def get_remote_url(self, name: str) -> str | None:
        """Returns the URL of remote `name`, or None if it is not configured."""
        try:
            return self._run(["remote", "get-url", name]) or None
        except SyncError:
            return None

    def set_remote(self, name: str, url: str) -> None:
        """Adds remote `name`, or points it at `url` if it already exists."""
        if self.get_remote_url(name) is None:
            self._run(["remote", "add", name, url])
        else:
            self._run(["remote", "set-url", name, url])

    def status_porcelain(self, path: str | None = None) -> list[str]:
        """Lists `git status --porcelain` lines, optionally limited to `path`."""
        cmd = ["status", "--porcelain"]
        if path:
            cmd.extend(["--", path])
        output = self._run(cmd)
        return output.splitlines() if output else []

    def add(self, paths: list[str]) -> None:
        """Stages exactly `paths` (additions, modifications and deletions)."""
        if paths:
            self._run(["add", "--all", "--", *paths])

    def has_staged_changes(self) -> bool:
        output = self._run(["diff", "--cached", "--name-only"])
        return bool(output)

    def merge_in_progress(self) -> bool:
        return (self.path / ".git" / "MERGE_HEAD").exists()

    def merge_abort(self) -> None:
        self._run(["merge", "--abort"])

    def commit(self, message: str, no_verify: bool = True) -> str:
        """Commits the index.

        Args:
            message (str): Commit message.
            no_verify (bool, optional): Skip commit hooks. Defaults to True.

        Returns:
            str: The new HEAD commit id.
        """
        cmd = ["commit", "--quiet", "-m", message]
        if no_verify:
            cmd.append("--no-verify")
        self._run(cmd)
        return self._run(["rev-parse", "HEAD"])

    def rev_parse(self, rev: str) -> str | None:
        """Returns the commit id `rev` points to, or None if it does not exist."""
        try:
            return self._run(["rev-parse", "--verify", "--quiet", rev])
        except SyncError as e:
            logger.debug(f"rev-parse failed for '{rev}': {e}")
            return None

    def remote_branch_exists(self, remote: str, branch: str) -> bool:
        """Asks the remote whether `branch` exists (a network call)."""
        output = self._run(["ls-remote", "--heads", remote, branch])
        return bool(output)

    def conflicted_files(self) -> list[str]:
        """Lists paths with unresolved merge conflicts."""
        output = self._run(["diff", "--name-only", "--diff-filter=U"])
        return output.splitlines() if output else []

    def pull(self, remote: str, branch: str) -> list[str]:
        """Merges `remote/branch` into the current branch.

        Returns:
            list[str]: Paths left conflicted by the merge; empty on a clean merge.

        Raises:
            SyncError: If the pull failed for any reason other than conflicts.
        """
        try:
            self._run(
                [
                    "pull",
                    "--no-rebase",
                    "--no-edit",
                    "--allow-unrelated-histories",
                    remote,
                    branch,
                ]
            )
        except SyncError:
            conflicts = self.conflicted_files()
            if conflicts:
                return conflicts
            raise
        return []

    def checkout_side(self, path: str, ours: bool) -> None:
        """Takes the whole file from one side of an in-progress merge."""
        side = "--ours" if ours else "--theirs"
        self._run(["checkout", side, "--", path])

    def remove(self, path: str) -> None:
        self._run(["rm", "--quiet", "-f", "--", path])

    def push(self, remote: str, branch: str, force: bool = False) -> None:
        """Pushes `branch`. A successful force push clears the rewrite marker."""
        cmd = ["push", "--quiet", "--set-upstream"]
        if force:
            cmd.append("--force")
        cmd.extend([remote, branch])
        self._run(cmd)
        if force:
            self.clear_rewritten()

    def rewrite_history(self, paths: list[str], message: str, branch: str) -> str:
        """Replaces the whole history of `branch` with a single root commit.

        The new commit holds only `paths` as they are in the working tree, and
        `branch` stays checked out. Old commits become unreachable;
        `purge_unreachable` deletes them. On failure the branch and the index
        are left as they were.

        Returns:
            str: The id of the new root commit.

        Raises:
            SyncError: If `branch` is not checked out or a git step fails.
        """
        current = self.current_branch()
        if current != branch:
            raise SyncError(
                f"Cannot rewrite '{branch}' while '{current or 'a detached HEAD'}' "
                "is checked out."
            )

        try:
            self._run(["read-tree", "--empty"])
            self.add(paths)
            tree = self._run(["write-tree"])
            sha = self._run(["commit-tree", tree, "-m", message])
            self._run(["update-ref", f"refs/heads/{branch}", sha])
        except SyncError:
            if self.rev_parse("HEAD"):
                with contextlib.suppress(SyncError):
                    self._run(["reset", "--quiet"])
            raise
        logger.info(f"Rewrote '{branch}' as the single commit {sha[:8]}")
        return sha

    def drop_remote_tracking(self, remote: str, branch: str) -> None:
        """Forgets the local copy of `remote/branch` so its objects can be pruned."""
        ref = f"refs/remotes/{remote}/{branch}"
        if self.rev_parse(ref):
            self._run(["update-ref", "-d", ref])

    def purge_unreachable(self) -> None:
        """Expires every reflog and prunes objects no ref points to.

        ORIG_HEAD and FETCH_HEAD are removed first; both can still name
        commits of a replaced history.
        """
        for name in ("ORIG_HEAD", "FETCH_HEAD"):
            with contextlib.suppress(FileNotFoundError):
                (self.path / ".git" / name).unlink()
        self._run(["reflog", "expire", "--expire=now", "--all"])
        self._run(["gc", "--prune=now", "--quiet"])

    @property
    def _rewrite_marker(self) -> Path:
        return self.path / ".git" / REWRITE_MARKER

    def mark_rewritten(self) -> None:
        """Records that local history was rewritten but not force-pushed yet."""
        self._rewrite_marker.write_text("pending force push\n")

    def clear_rewritten(self) -> None:
        with contextlib.suppress(FileNotFoundError):
            self._rewrite_marker.unlink()

    def is_rewritten(self) -> bool:
        return self._rewrite_marker.exists()

    def tracked_files(self) -> list[str]:
        output = self._run(["ls-files"])
        return output.splitlines() if output else []

    def history_patches(self) -> str:
        """Returns every patch reachable from any ref, or "" with no commits."""
        if self.rev_parse("HEAD") is None:
            return ""
        return self._run(["log", "-p", "--all", "--full-history"])


def _git(args: list[str], cwd: Path) -> str:
    try:
        res = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return res.stdout.strip()
    except FileNotFoundError:
        raise SyncError("Git is not installed or not on PATH.") from None
    except subprocess.CalledProcessError as e:
        detail = redact((e.stderr or e.stdout or str(e)).strip())
        raise SyncError(f"Git error ({args[0]}): {detail}") from None
