"""Tests for the sync engine, against a fake transport and against real git."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest
from conftest import FakeTransport, requires_git

from ctx_sync.constants import GIT_ATTRIBUTES
from ctx_sync.crypto import Identity
from ctx_sync.errors import (
    ConflictUnresolvedError,
    InsecureTransportError,
    SyncError,
)
from ctx_sync.git_wrapper import GitRepo
from ctx_sync.store import StateStore
from ctx_sync.sync import GitTransport, Resolution, SyncEngine, SyncState

S = SyncState


# --- Fake transport ---


def test_sync_state_trajectory(
    store: StateStore, owner: Identity, fake_transport: FakeTransport
) -> None:
    store.write_bucket("secrets", {"A": "1"}, [owner.public_key])
    fake_transport.changed = ["secrets.age", "manifest.json"]
    engine = SyncEngine(store, fake_transport)

    result = engine.sync()

    assert result.states == [
        S.VALIDATING_REMOTE,
        S.PULLING,
        S.COMMITTING,
        S.PUSHING,
        S.IDLE,
    ]
    assert engine.state is S.IDLE
    assert result.pulled
    assert result.pushed
    assert len(result.commits) == 1
    assert fake_transport.commits[0][0] == ["secrets.age", "manifest.json"]


def test_local_changes_are_committed_before_pull(
    store: StateStore, owner: Identity, fake_transport: FakeTransport
) -> None:
    """Verifies the merge always has a committed local side."""
    store.write_bucket("secrets", {"A": "1"}, [owner.public_key])
    fake_transport.changed = ["secrets.age"]
    order = []
    original_pull = fake_transport.pull

    def tracking_pull() -> list[str]:
        order.append(("pull", len(fake_transport.commits)))
        return original_pull()

    fake_transport.pull = tracking_pull

    SyncEngine(store, fake_transport).sync()

    assert order == [("pull", 1)]


def test_no_op_commit(store: StateStore, fake_transport: FakeTransport) -> None:
    engine = SyncEngine(store, fake_transport)
    store.reconcile_manifest()
    fake_transport.changed = ["manifest.json"]

    assert engine.commit() is not None
    assert engine.commit() is None
    assert len(fake_transport.commits) == 1


def test_sync_without_remote_only_commits(
    store: StateStore, owner: Identity
) -> None:
    transport = FakeTransport(url=None)
    store.write_bucket("notes", {}, [owner.public_key])
    transport.changed = ["notes.age"]

    result = SyncEngine(store, transport).sync()

    assert transport.pull_calls == 0
    assert transport.pushes == []
    assert result.commit is not None
    assert S.PULLING not in result.states


def test_insecure_remote_fails_before_network(store: StateStore) -> None:
    transport = FakeTransport(url="http://example.com/ctx.git")
    engine = SyncEngine(store, transport)

    with pytest.raises(InsecureTransportError):
        engine.sync()

    assert transport.pull_calls == 0
    assert engine.state is S.FAILED
    assert transport.commits == []


def test_push_failure_keeps_commit(
    store: StateStore, owner: Identity, fake_transport: FakeTransport
) -> None:
    store.write_bucket("notes", {}, [owner.public_key])
    fake_transport.changed = ["notes.age"]
    fake_transport.push_error = "Git error (push): connection refused"

    result = SyncEngine(store, fake_transport).sync()

    assert not result.pushed
    assert "connection refused" in result.push_error
    assert result.commit is not None
    assert result.states[-1] is S.IDLE


def test_force_push_is_passed_to_transport(
    store: StateStore, fake_transport: FakeTransport
) -> None:
    engine = SyncEngine(store, fake_transport)

    engine.sync(pull=False)
    engine.sync(pull=False, force_push=True)

    assert fake_transport.pushes == [False, True]


def test_flags_skip_pull_and_push(
    store: StateStore, fake_transport: FakeTransport
) -> None:
    result = SyncEngine(store, fake_transport).sync(pull=False, push=False)

    assert fake_transport.pull_calls == 0
    assert fake_transport.pushes == []
    assert result.states == [S.VALIDATING_REMOTE, S.COMMITTING, S.IDLE]


def test_conflicts_default_to_keep_local(
    store: StateStore, fake_transport: FakeTransport
) -> None:
    fake_transport.incoming_conflicts = ["manifest.json", "secrets.age"]

    result = SyncEngine(store, fake_transport).sync()

    assert result.conflicts == ["secrets.age"]
    assert fake_transport.resolved == {
        "manifest.json": Resolution.KEEP_LOCAL,
        "secrets.age": Resolution.KEEP_LOCAL,
    }
    assert result.states[:6] == [
        S.VALIDATING_REMOTE,
        S.PULLING,
        S.CONFLICTED,
        S.RESOLVING,
        S.RESOLVED,
        S.COMMITTING,
    ]
    assert result.commit is not None


def test_resolver_decides_per_file(
    store: StateStore, fake_transport: FakeTransport
) -> None:
    fake_transport.incoming_conflicts = ["notes.age", "secrets.age"]
    decisions = {
        "notes.age": Resolution.ACCEPT_REMOTE,
        "secrets.age": Resolution.KEEP_LOCAL,
    }

    result = SyncEngine(store, fake_transport).sync(resolver=decisions.get)

    assert result.resolutions == decisions
    assert fake_transport.resolved == decisions


def test_missing_decision_raises_and_aborts(
    store: StateStore, fake_transport: FakeTransport
) -> None:
    fake_transport.incoming_conflicts = ["notes.age", "secrets.age"]
    engine = SyncEngine(store, fake_transport)

    with pytest.raises(ConflictUnresolvedError) as exc:
        engine.sync(resolver=lambda path: None)

    assert exc.value.paths == ["notes.age", "secrets.age"]
    assert fake_transport.aborted
    assert fake_transport.resolved == {}
    assert engine.state is S.FAILED


def test_manifest_only_conflict_is_rebuilt(
    store: StateStore, owner: Identity, fake_transport: FakeTransport
) -> None:
    store.write_bucket("notes", {}, [owner.public_key])
    fake_transport.incoming_conflicts = ["manifest.json"]

    result = SyncEngine(store, fake_transport).sync()

    assert result.conflicts == []
    assert S.RESOLVED in result.states
    assert set(store.read_manifest().files) == {"notes.age"}
    assert result.commit is not None


# --- Real git ---


def _device(root: Path, remote: Path) -> tuple[StateStore, SyncEngine]:
    repo = GitRepo.init(root)
    repo.install_attributes(GIT_ATTRIBUTES)
    repo.set_remote("origin", str(remote))
    store = StateStore(root)
    return store, SyncEngine(store, GitTransport(repo))


@requires_git
def test_two_devices_converge(
    tmp_path: Path, bare_remote: Path, owner: Identity
) -> None:
    store_a, engine_a = _device(tmp_path / "a", bare_remote)
    store_b, engine_b = _device(tmp_path / "b", bare_remote)

    store_a.write_bucket("secrets", {"STRIPE_KEY": "sk_live_x"}, [owner.public_key])
    result_a = engine_a.sync()
    assert result_a.pushed, result_a.push_error

    result_b = engine_b.sync()

    assert result_b.conflicts == []
    assert store_b.read_bucket("secrets", owner) == {"STRIPE_KEY": "sk_live_x"}


@requires_git
def test_repeated_sync_creates_no_commit(
    tmp_path: Path, bare_remote: Path, owner: Identity
) -> None:
    store, engine = _device(tmp_path / "a", bare_remote)
    store.write_bucket("notes", {"n": 1}, [owner.public_key])

    assert engine.sync().commit is not None
    assert engine.sync().commit is None
    assert engine.commit() is None


@requires_git
@pytest.mark.parametrize(
    "resolution", [Resolution.KEEP_LOCAL, Resolution.ACCEPT_REMOTE]
)
def test_whole_file_conflict_resolution(
    tmp_path: Path, bare_remote: Path, owner: Identity, resolution: Resolution
) -> None:
    """Verifies a conflicting bucket is taken byte-for-byte from one side."""
    store_a, engine_a = _device(tmp_path / "a", bare_remote)
    store_b, engine_b = _device(tmp_path / "b", bare_remote)
    store_a.write_bucket("secrets", {"v": "base"}, [owner.public_key])
    engine_a.sync()
    engine_b.sync()

    store_a.write_bucket("secrets", {"v": "from-a"}, [owner.public_key])
    engine_a.sync()
    remote_bytes = store_a.bucket_path("secrets").read_bytes()

    store_b.write_bucket("secrets", {"v": "from-b"}, [owner.public_key])
    local_bytes = store_b.bucket_path("secrets").read_bytes()

    result = engine_b.sync(resolver=lambda path: resolution)

    assert result.conflicts == ["secrets.age"]
    assert result.pushed, result.push_error
    expected = local_bytes if resolution is Resolution.KEEP_LOCAL else remote_bytes
    assert store_b.bucket_path("secrets").read_bytes() == expected
    assert engine_b.transport.status() == []
    assert "secrets.age" in store_b.read_manifest().files

    engine_a.sync()
    winner = "from-b" if resolution is Resolution.KEEP_LOCAL else "from-a"
    assert store_a.read_bucket("secrets", owner) == {"v": winner}


@requires_git
def test_unresolved_conflict_restores_local_state(
    tmp_path: Path, bare_remote: Path, owner: Identity
) -> None:
    store_a, engine_a = _device(tmp_path / "a", bare_remote)
    store_b, engine_b = _device(tmp_path / "b", bare_remote)
    store_a.write_bucket("notes", {"v": 0}, [owner.public_key])
    engine_a.sync()
    engine_b.sync()
    store_a.write_bucket("notes", {"v": "a"}, [owner.public_key])
    engine_a.sync()
    store_b.write_bucket("notes", {"v": "b"}, [owner.public_key])

    with pytest.raises(ConflictUnresolvedError):
        engine_b.sync(resolver=lambda path: None)

    assert not engine_b.transport.repo.merge_in_progress()
    assert store_b.read_bucket("notes", owner) == {"v": "b"}


def test_rewritten_repo_refuses_pull_and_plain_push(
    tmp_path: Path, mocker: MagicMock
) -> None:
    """Verifies a rotated repository never merges or fast-forwards old history.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        mocker (MagicMock): Pytest fixture for mocking.
    """
    (tmp_path / ".git").mkdir()
    repo = GitRepo(tmp_path)
    mock_run = mocker.patch.object(repo, "_run")
    repo.mark_rewritten()
    transport = GitTransport(repo)

    with pytest.raises(SyncError, match="rewritten") as exc:
        transport.pull()
    assert "ctx-sync push --force" in exc.value.suggestion

    with pytest.raises(SyncError, match="predates"):
        transport.push()
    mock_run.assert_not_called()

    transport.push(force=True)

    mock_run.assert_called_once_with(
        ["push", "--quiet", "--set-upstream", "--force", "origin", "main"]
    )
    assert not repo.is_rewritten()
