"""Tests for the command operations behind the CLI."""

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from conftest import requires_git

from ctx_sync import ops
from ctx_sync.config import Config, CoreConfig
from ctx_sync.constants import GIT_ATTRIBUTES
from ctx_sync.crypto import Identity, generate_identity
from ctx_sync.errors import (
    ConfigError,
    DecryptionError,
    InsecureTransportError,
    RecipientError,
    SyncError,
)
from ctx_sync.git_wrapper import GitRepo
from ctx_sync.keystore import KeyStore
from ctx_sync.recipients import RecipientRegistry
from ctx_sync.sync import Resolution, SyncResult


@pytest.fixture(autouse=True)
def quiet_console(mocker: MagicMock) -> MagicMock:
    """Silences rich output for every operation under test."""
    return mocker.patch("ctx_sync.ops.console")


@pytest.fixture
def ws(config_dir: Path, sync_dir: Path) -> ops.Workspace:
    return ops.Workspace(Config(core=CoreConfig(sync_dir=sync_dir)), config_dir)


@pytest.fixture
def ready_ws(
    ws: ops.Workspace, keystore: KeyStore, registry: RecipientRegistry
) -> ops.Workspace:
    """A workspace whose key and registry already exist."""
    return ws


def _put(ws: ops.Workspace, tmp_path: Path, bucket: str, document: object) -> None:
    source = tmp_path / f"{bucket}.json"
    source.write_text(json.dumps(document))
    ops.put_state(ws, bucket, source)


# --- init ---


@requires_git
def test_init_vault_sets_up_everything(ws: ops.Workspace, git_env: None) -> None:
    """Verifies that init creates the key, the registry and the sync repository.

    Args:
        ws (ops.Workspace): Workspace rooted in a temporary directory.
        git_env (None): Isolated git configuration.
    """
    identity = ops.init_vault(ws, "git@github.com:me/context.git")

    assert ws.keystore.load() == identity
    assert ws.registry().owner_public_key == identity.public_key
    assert ws.registry().members == []

    repo = GitRepo(ws.sync_dir)
    assert repo.get_remote_url("origin") == "git@github.com:me/context.git"
    attributes = (ws.sync_dir / ".git" / "info" / "attributes").read_text()
    assert attributes.splitlines() == GIT_ATTRIBUTES
    assert ws.store.manifest_path.exists()


@requires_git
def test_init_vault_is_idempotent(ws: ops.Workspace, git_env: None) -> None:
    first = ops.init_vault(ws)
    second = ops.init_vault(ws)

    assert first == second
    assert ws.registry().recipient_keys() == (first.public_key,)


@requires_git
def test_init_vault_restores_key(ws: ops.Workspace, git_env: None) -> None:
    existing = generate_identity()

    identity = ops.init_vault(ws, restore_secret=existing.secret())

    assert identity == existing
    assert ws.keystore.load() == existing


def test_init_vault_rejects_insecure_remote_first(ws: ops.Workspace) -> None:
    """Verifies that an insecure remote is refused before anything is written.

    Args:
        ws (ops.Workspace): Workspace rooted in a temporary directory.
    """
    with pytest.raises(InsecureTransportError):
        ops.init_vault(ws, "http://example.com/context.git")

    assert not ws.config_dir.exists()
    assert not (ws.sync_dir / ".git").exists()


# --- keys ---


def test_show_key_prints_public_key_only(
    ready_ws: ops.Workspace, owner: Identity, quiet_console: MagicMock
) -> None:
    assert ops.show_key(ready_ws) == owner.public_key

    printed = " ".join(str(c) for c in quiet_console.print.call_args_list)
    assert owner.public_key in printed
    assert owner.secret() not in printed


def test_verify_key_reports_permissions(ready_ws: ops.Workspace) -> None:
    assert ops.verify_key(ready_ws).valid

    ready_ws.keystore.key_path.chmod(0o644)

    report = ops.verify_key(ready_ws)
    assert not report.valid
    assert any("chmod 600" in issue for issue in report.issues)


def test_update_key_replaces_key_and_owner(ready_ws: ops.Workspace) -> None:
    new = generate_identity()

    identity = ops.update_key(ready_ws, new.secret())

    assert identity == new
    assert ready_ws.keystore.load() == new
    assert ready_ws.registry().owner_public_key == new.public_key


def test_update_key_rejects_garbage(ready_ws: ops.Workspace, owner: Identity) -> None:
    with pytest.raises(ConfigError):
        ops.update_key(ready_ws, "not-a-key")

    assert ready_ws.keystore.load() == owner


def test_keyring_requires_matching_registry(
    ws: ops.Workspace, keystore: KeyStore, bob: Identity
) -> None:
    """Verifies a registry owned by another key is never used for encryption.

    Args:
        ws (ops.Workspace): Workspace rooted in a temporary directory.
        keystore (KeyStore): Key store holding the owner identity.
        bob (Identity): A different identity owning the registry.
    """
    RecipientRegistry.initialize(keystore.config_dir, bob.public_key)

    with pytest.raises(ConfigError, match="does not belong"):
        ws.keyring()


# --- team ---


def test_team_add_then_revoke(
    ready_ws: ops.Workspace, tmp_path: Path, owner: Identity, bob: Identity
) -> None:
    """Verifies that membership changes re-encrypt existing state.

    Args:
        ready_ws (ops.Workspace): Initialized workspace.
        tmp_path (Path): Pytest fixture for a temporary directory.
        owner (Identity): The workspace owner.
        bob (Identity): The team member being added and revoked.
    """
    secrets = {"STRIPE_KEY": "sk_live_x"}
    _put(ready_ws, tmp_path, "secrets", secrets)
    store = ready_ws.store

    with pytest.raises(DecryptionError):
        store.read_bucket("secrets", bob)

    member = ops.add_team_member(ready_ws, "Bob", bob.public_key)

    assert member.fingerprint
    assert store.read_bucket("secrets", bob) == secrets
    assert store.read_bucket("secrets", owner) == secrets
    assert ready_ws.registry().recipient_keys() == (owner.public_key, bob.public_key)

    ops.revoke_team_member(ready_ws, bob.public_key)

    with pytest.raises(DecryptionError):
        store.read_bucket("secrets", bob)
    assert store.read_bucket("secrets", owner) == secrets
    assert ready_ws.registry().members == []


def test_team_remove_by_name(
    ready_ws: ops.Workspace, tmp_path: Path, bob: Identity
) -> None:
    _put(ready_ws, tmp_path, "notes", {"todo": "ship"})
    ops.add_team_member(ready_ws, "Bob", bob.public_key)

    ops.remove_team_member(ready_ws, "bob")

    assert ops.list_team(ready_ws) == []
    with pytest.raises(DecryptionError):
        ready_ws.store.read_bucket("notes", bob)


def test_failed_team_change_leaves_registry(
    ready_ws: ops.Workspace, owner: Identity
) -> None:
    with pytest.raises(RecipientError):
        ops.add_team_member(ready_ws, "Me", owner.public_key)

    assert RecipientRegistry.load(ready_ws.config_dir).members == []


def test_list_team(ready_ws: ops.Workspace, bob: Identity) -> None:
    ops.add_team_member(ready_ws, "Bob", bob.public_key)

    members = ops.list_team(ready_ws)

    assert [m.name for m in members] == ["Bob"]


# --- state ---


def test_put_and_get_state(
    ready_ws: ops.Workspace, tmp_path: Path, quiet_console: MagicMock
) -> None:
    document = {"api": {"path": "~/code/api", "branch": "main"}}
    _put(ready_ws, tmp_path, "projects", document)

    assert ops.get_state(ready_ws, "projects") == document
    quiet_console.print_json.assert_called_once()
    assert "projects.age" in ready_ws.store.read_manifest().files


def test_get_missing_bucket_returns_default(ready_ws: ops.Workspace) -> None:
    assert ops.get_state(ready_ws, "directories") == []
    assert ops.get_state(ready_ws, "docker") == {}


def test_put_state_rejects_invalid_json(
    ready_ws: ops.Workspace, tmp_path: Path
) -> None:
    source = tmp_path / "bad.json"
    source.write_text("{not json")

    with pytest.raises(ConfigError, match="not valid JSON"):
        ops.put_state(ready_ws, "notes", source)

    assert not ready_ws.store.bucket_exists("notes")


def test_state_on_disk_is_ciphertext(ready_ws: ops.Workspace, tmp_path: Path) -> None:
    _put(ready_ws, tmp_path, "secrets", {"STRIPE_KEY": "sk_live_x"})

    raw = ready_ws.store.bucket_path("secrets").read_bytes()
    assert b"sk_live_x" not in raw
    assert b"STRIPE_KEY" not in raw
    assert raw.startswith(b"age-encryption.org/v1")


# --- sync ---


def test_run_sync_uses_config_defaults(
    ready_ws: ops.Workspace, mocker: MagicMock
) -> None:
    """Verifies that sync pushes per config and skips prompts when asked.

    Args:
        ready_ws (ops.Workspace): Initialized workspace.
        mocker (MagicMock): Pytest fixture for mocking.
    """
    engine = mocker.patch.object(ops.Workspace, "engine").return_value
    engine.sync.return_value = SyncResult(
        commits=["a" * 40],
        pushed=True,
        resolutions={"notes.age": Resolution.KEEP_LOCAL},
    )

    result = ops.run_sync(ready_ws, interactive=False)

    engine.sync.assert_called_once_with(pull=True, push=True, resolver=None)
    assert result.pushed


def test_run_sync_reports_push_failure(
    ready_ws: ops.Workspace, mocker: MagicMock, quiet_console: MagicMock
) -> None:
    engine = mocker.patch.object(ops.Workspace, "engine").return_value
    engine.sync.return_value = SyncResult(push_error="connection refused")
    ready_ws.config.sync.push = False

    ops.run_sync(ready_ws, pull=False, interactive=False)

    engine.sync.assert_called_once_with(pull=False, push=False, resolver=None)
    printed = " ".join(str(c) for c in quiet_console.print.call_args_list)
    assert "connection refused" in printed


def test_run_pull_merges_without_pushing(
    ready_ws: ops.Workspace, mocker: MagicMock
) -> None:
    engine = mocker.patch.object(ops.Workspace, "engine").return_value
    engine.transport.remote_url.return_value = "git@github.com:me/context.git"
    engine.sync.return_value = SyncResult(pulled=True)

    ops.run_pull(ready_ws, interactive=False)

    engine.sync.assert_called_once_with(pull=True, push=False, resolver=None)


def test_run_pull_requires_remote(ready_ws: ops.Workspace, mocker: MagicMock) -> None:
    engine = mocker.patch.object(ops.Workspace, "engine").return_value
    engine.transport.remote_url.return_value = None

    with pytest.raises(SyncError, match="No remote"):
        ops.run_pull(ready_ws)

    engine.sync.assert_not_called()


@pytest.mark.parametrize("force", [False, True])
def test_run_push_skips_pull(
    ready_ws: ops.Workspace, mocker: MagicMock, force: bool
) -> None:
    engine = mocker.patch.object(ops.Workspace, "engine").return_value
    engine.transport.remote_url.return_value = "git@github.com:me/context.git"
    engine.sync.return_value = SyncResult(commits=["b" * 40], pushed=True)

    result = ops.run_push(ready_ws, force=force)

    engine.sync.assert_called_once_with(pull=False, push=True, force_push=force)
    assert result.pushed


def test_run_push_failure_raises(ready_ws: ops.Workspace, mocker: MagicMock) -> None:
    engine = mocker.patch.object(ops.Workspace, "engine").return_value
    engine.transport.remote_url.return_value = "git@github.com:me/context.git"
    engine.sync.return_value = SyncResult(push_error="non-fast-forward")

    with pytest.raises(SyncError, match="non-fast-forward") as exc:
        ops.run_push(ready_ws)

    assert "ctx-sync push --force" in exc.value.suggestion


def test_prompt_resolution(mocker: MagicMock) -> None:
    ask = mocker.patch("ctx_sync.ops.Prompt.ask")

    ask.return_value = "remote"
    assert ops.prompt_resolution("secrets.age") is Resolution.ACCEPT_REMOTE

    ask.return_value = "skip"
    assert ops.prompt_resolution("secrets.age") is None


def test_show_status_without_repository(
    ready_ws: ops.Workspace, quiet_console: MagicMock
) -> None:
    ops.show_status(ready_ws)

    printed = " ".join(str(c) for c in quiet_console.print.call_args_list)
    assert "not initialized" in printed


# --- audit ---


@requires_git
def test_run_audit_passes_on_clean_workspace(
    ready_ws: ops.Workspace, tmp_path: Path, git_env: None
) -> None:
    repo = GitRepo.init(ready_ws.sync_dir)
    repo.install_attributes(GIT_ATTRIBUTES)
    _put(ready_ws, tmp_path, "secrets", {"STRIPE_KEY": "sk_live_abc123"})
    repo.add(ready_ws.store.tracked_paths())
    repo.commit("state")

    report = ops.run_audit(ready_ws)

    assert report.passed, report.findings
    assert report.state_file_count == 1
    assert report.repo_size and report.repo_size > 0


def test_run_audit_flags_plaintext_state(
    ready_ws: ops.Workspace, quiet_console: MagicMock
) -> None:
    """Verifies a decrypted bucket left in the sync directory fails the audit.

    Args:
        ready_ws (ops.Workspace): Initialized workspace.
        quiet_console (MagicMock): The mocked rich console.
    """
    (ready_ws.sync_dir / "secrets.json").write_text('{"STRIPE_KEY": "sk_live_x"}')

    report = ops.run_audit(ready_ws)

    assert not report.passed
    printed = " ".join(str(c) for c in quiet_console.print.call_args_list)
    assert "secrets.json" in printed
    assert "Audit failed" in printed


def test_run_audit_flags_open_key_file(ready_ws: ops.Workspace) -> None:
    ready_ws.keystore.key_path.chmod(0o644)

    report = ops.run_audit(ready_ws)

    assert not report.passed
    assert any(f.check == "permissions" for f in report.findings)
