import shutil
import subprocess
from pathlib import Path
from typing import Any

import pytest

from ctx_sync.crypto import Identity, generate_identity
from ctx_sync.errors import SyncError
from ctx_sync.keystore import KeyStore
from ctx_sync.recipients import RecipientRegistry
from ctx_sync.store import StateStore
from ctx_sync.sync import Resolution

requires_git = pytest.mark.skipif(
    shutil.which("git") is None, reason="git binary not available"
)


@pytest.fixture
def owner() -> Identity:
    return generate_identity()


@pytest.fixture
def bob() -> Identity:
    return generate_identity()


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    return tmp_path / "config"


@pytest.fixture
def sync_dir(tmp_path: Path) -> Path:
    path = tmp_path / "sync"
    path.mkdir()
    return path


@pytest.fixture
def keystore(config_dir: Path, owner: Identity) -> KeyStore:
    """A key store holding the owner identity."""
    ks = KeyStore(config_dir)
    ks.save(owner)
    return ks


@pytest.fixture
def registry(keystore: KeyStore, owner: Identity) -> RecipientRegistry:
    return RecipientRegistry.initialize(keystore.config_dir, owner.public_key)


@pytest.fixture
def store(sync_dir: Path) -> StateStore:
    return StateStore(sync_dir)


@pytest.fixture
def git_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Isolates git from the user's configuration and gives it an author."""
    global_config = tmp_path / "gitconfig"
    global_config.write_text("[init]\n\tdefaultBranch = main\n")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(global_config))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test Author")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "author@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test Author")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "author@example.com")


@pytest.fixture
def bare_remote(tmp_path: Path, git_env: None) -> Path:
    """An empty bare repository acting as the shared remote."""
    remote = tmp_path / "remote.git"
    subprocess.run(
        ["git", "init", "--bare", "--quiet", str(remote)],
        check=True,
        capture_output=True,
    )
    return remote


class FakeTransport:
    """In-memory `VcsTransport` that records what the engine asks of it."""

    def __init__(self, url: str | None = "git@github.com:me/context.git"):
        self.url = url
        self.changed: list[str] = []
        self.incoming_conflicts: list[str] = []
        self.resolved: dict[str, Resolution] = {}
        self.commits: list[tuple[list[str], str]] = []
        self.pushes: list[bool] = []
        self.push_error: str | None = None
        self.pull_calls = 0
        self.merging = False
        self.aborted = False

    def remote_url(self) -> str | None:
        return self.url

    def status(self) -> list[str]:
        return list(self.changed)

    def pull(self) -> list[str]:
        self.pull_calls += 1
        conflicts, self.incoming_conflicts = self.incoming_conflicts, []
        self.merging = bool(conflicts)
        return conflicts

    def resolve(self, path: str, resolution: Resolution) -> None:
        self.resolved[path] = resolution

    def abort_merge(self) -> None:
        self.aborted = True
        self.merging = False

    def commit(self, paths: list[str], message: str) -> str | None:
        if not self.changed and not self.merging:
            return None
        self.commits.append((list(paths), message))
        self.changed = []
        self.merging = False
        return f"{len(self.commits):040x}"

    def push(self, force: bool = False) -> None:
        if self.push_error:
            raise SyncError(self.push_error)
        self.pushes.append(force)


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


def read_all(store: StateStore, identity: Identity) -> dict[str, Any]:
    return {name: store.read_bucket(name, identity) for name in store.list_buckets()}
