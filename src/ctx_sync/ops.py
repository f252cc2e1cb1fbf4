import json
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from . import audit
from .audit import AuditReport, Severity
from .config import Config
from .constants import APP_NAME, CONFIG_DIR, GIT_ATTRIBUTES
from .crypto import Identity, generate_identity
from .errors import ConfigError, KeyNotFoundError, SyncError
from .git_wrapper import GitRepo
from .keystore import KeyStore, PermissionReport, ensure_private_dir
from .recipients import RecipientRegistry, TeamMember
from .rotation import KeyRotation, RotationResult, import_key
from .store import Keyring, StateStore
from .sync import GitTransport, Resolution, SyncEngine, SyncResult
from .transport import validate_remote_url

console = Console()
logger = logging.getLogger(APP_NAME)


@dataclass
class Workspace:
    """Locates everything a command needs from the config and the config dir.

    Attributes:
        config (Config): Loaded configuration.
        config_dir (Path): Directory holding the key and the registry.
    """

    config: Config = field(default_factory=Config.load)
    config_dir: Path = CONFIG_DIR

    @property
    def sync_dir(self) -> Path:
        return self.config.core.sync_dir

    @property
    def keystore(self) -> KeyStore:
        return KeyStore(self.config_dir)

    @property
    def store(self) -> StateStore:
        return StateStore(self.sync_dir)

    def registry(self) -> RecipientRegistry:
        registry = RecipientRegistry.load(self.config_dir)
        if registry is None:
            raise ConfigError("No recipient registry found.")
        return registry

    def keyring(self) -> Keyring:
        """Loads the identity and the recipient set for encrypting state.

        Raises:
            ConfigError: If the registry's owner key is not this device's key.
        """
        identity = self.keystore.load()
        registry = self.registry()
        if registry.owner_public_key != identity.public_key:
            raise ConfigError(
                "The recipient registry does not belong to the current key.",
                "Run `ctx-sync key update` with the key this machine should use.",
            )
        return Keyring(identity, registry.recipient_keys())

    def repo(self) -> GitRepo:
        try:
            return GitRepo(self.sync_dir)
        except ValueError:
            raise SyncError(
                f"Sync directory is not initialized: {self.sync_dir}"
            ) from None

    def engine(self) -> SyncEngine:
        transport = GitTransport(
            self.repo(), self.config.core.remote_name, self.config.core.branch
        )
        return SyncEngine(
            self.store,
            transport,
            commit_message=self.config.sync.commit_message,
            default_resolution=Resolution(self.config.sync.default_resolution),
        )


def init_vault(
    ws: Workspace, remote_url: str | None = None, restore_secret: str | None = None
) -> Identity:
    """Sets up the key, the recipient registry and the sync repository.

    Args:
        ws (Workspace): Target locations.
        remote_url (str | None): Remote to sync with. Validated before use.
        restore_secret (str | None): An existing private key to import instead
            of generating one.

    Returns:
        Identity: The device identity.
    """
    if remote_url:
        remote_url = validate_remote_url(remote_url)

    ensure_private_dir(ws.config_dir)
    keystore = ws.keystore

    if restore_secret:
        identity = import_key(keystore, restore_secret)
        console.print("[bold green]KEY:[/bold green] Imported existing key.")
    elif keystore.exists():
        identity = keystore.load()
        console.print("[blue]INFO:[/blue] Using the existing key.")
    else:
        identity = generate_identity()
        keystore.save(identity)
        console.print("[bold green]KEY:[/bold green] Generated a new key.")

    registry = RecipientRegistry.initialize(ws.config_dir, identity.public_key)
    if registry.owner_public_key != identity.public_key:
        registry.owner_public_key = identity.public_key
        registry.save()

    repo = GitRepo.init(ws.sync_dir, ws.config.core.branch)
    repo.install_attributes(GIT_ATTRIBUTES)
    if remote_url:
        repo.set_remote(ws.config.core.remote_name, remote_url)

    ws.store.reconcile_manifest()

    if restore_secret and remote_url:
        with console.status("Fetching state from remote...", spinner="dots"):
            ws.engine().sync(push=False)

    console.print(
        Panel(
            f"Public key: [bold cyan]{identity.public_key}[/bold cyan]\n"
            f"Key file:   {keystore.key_path}\n"
            f"Sync dir:   {ws.sync_dir}",
            title="ctx-sync initialized",
            expand=False,
            border_style="green",
        )
    )
    return identity


def show_key(ws: Workspace) -> str:
    """Prints the public key. The private key is never displayed."""
    identity = ws.keystore.load()
    console.print(identity.public_key)
    return identity.public_key


def verify_key(ws: Workspace) -> PermissionReport:
    """Prints a permission audit of the local key material."""
    report = ws.keystore.verify_permissions()
    table = Table(show_header=False, box=None)
    table.add_row(
        "Key file",
        "[green]present[/green]" if report.key_file_exists else "[red]missing[/red]",
    )
    if report.key_file_perms is not None:
        table.add_row("Key file mode", f"{report.key_file_perms:o}")
    if report.config_dir_perms is not None:
        table.add_row("Config dir mode", f"{report.config_dir_perms:o}")
    console.print(table)

    if report.valid:
        console.print("[bold green]✔ Key permissions are secure.[/bold green]")
    else:
        for issue in report.issues:
            console.print(f"[bold red]✘[/bold red] {issue}")
    return report


def rotate_key(
    ws: Workspace, force_push: bool = False, resume: bool = False
) -> RotationResult:
    """Rotates the device key and re-encrypts every bucket."""
    repo = None
    try:
        repo = ws.repo()
    except SyncError as e:
        logger.warning(f"Rotation without history rewrite: {e}")

    rotation = KeyRotation(
        ws.keystore,
        ws.registry(),
        ws.store,
        repo,
        ws.config.core.remote_name,
        ws.config.core.branch,
    )
    with console.status("Rotating key...", spinner="dots"):
        result = rotation.resume(force_push) if resume else rotation.rotate(force_push)

    console.print(
        f"[bold green]✔ Key rotated.[/bold green] "
        f"Re-encrypted {len(result.buckets)} bucket(s)."
    )
    console.print(f"   New public key: [bold cyan]{result.new_public_key}[/bold cyan]")
    for warning in result.warnings:
        console.print(f"[bold yellow]WARNING:[/bold yellow] {warning}")
    console.print(
        "\n[bold yellow]ACTION REQUIRED:[/bold yellow] Your other machines can no "
        "longer decrypt new state.\n"
        f"   Copy {ws.keystore.key_path} to them over a secure channel and run "
        "[bold]ctx-sync key update[/bold]."
    )
    return result


def update_key(ws: Workspace, secret: str | None = None) -> Identity:
    """Installs a key produced by a rotation elsewhere.

    Reads the key from `secret`, from piped stdin, or from a hidden prompt.
    """
    if secret is None:
        if sys.stdin.isatty():
            secret = Prompt.ask("Paste the new private key", password=True)
        else:
            secret = sys.stdin.read()

    identity = import_key(ws.keystore, secret)

    registry = RecipientRegistry.load(ws.config_dir)
    if registry is None:
        RecipientRegistry.initialize(ws.config_dir, identity.public_key)
    elif registry.owner_public_key != identity.public_key:
        registry.owner_public_key = identity.public_key
        registry.save()

    console.print(
        f"[bold green]✔ Key updated.[/bold green] Public key: {identity.public_key}"
    )
    return identity


def add_team_member(ws: Workspace, name: str, public_key: str) -> TeamMember:
    """Adds a recipient and re-encrypts every bucket for the new set."""
    keyring = ws.keyring()
    staged = ws.registry().copy()
    member = staged.add(name, public_key)

    ws.store.reencrypt_all(keyring.identity, staged.recipient_keys())
    staged.save()

    console.print(f"[bold green]✔ Added {member.name}.[/bold green]")
    console.print(f"   Fingerprint: [bold]{member.fingerprint}[/bold]")
    console.print(
        "   [dim]Confirm this fingerprint with them over a separate channel.[/dim]"
    )
    return member


def remove_team_member(ws: Workspace, name: str) -> TeamMember:
    """Removes a recipient by name and re-encrypts every bucket without them."""
    keyring = ws.keyring()
    staged = ws.registry().copy()
    member = staged.remove(name)

    ws.store.reencrypt_all(keyring.identity, staged.recipient_keys())
    staged.save()

    console.print(f"[bold green]✔ Removed {member.name}.[/bold green]")
    return member


def revoke_team_member(ws: Workspace, public_key: str) -> TeamMember:
    """Removes a recipient by public key and re-encrypts every bucket."""
    keyring = ws.keyring()
    staged = ws.registry().copy()
    member = staged.revoke(public_key)

    ws.store.reencrypt_all(keyring.identity, staged.recipient_keys())
    staged.save()

    console.print(f"[bold green]✔ Revoked {member.name}.[/bold green]")
    console.print(
        "   [dim]They keep access to state they already pulled. "
        "Rotate secrets they could read.[/dim]"
    )
    return member


def list_team(ws: Workspace) -> list[TeamMember]:
    registry = ws.registry()
    if not registry.members:
        console.print("[dim]No team members. State is encrypted for you only.[/dim]")
        return []

    table = Table(title="Team Members")
    table.add_column("Name", style="bold")
    table.add_column("Fingerprint")
    table.add_column("Added")
    for m in registry.members:
        table.add_row(m.name, m.fingerprint, m.added_at[:10])
    console.print(table)
    return registry.members


def get_state(ws: Workspace, bucket: str) -> Any:
    """Decrypts and prints one bucket as JSON."""
    keyring = ws.keyring()
    document = ws.store.read_bucket(bucket, keyring.identity)
    console.print_json(json.dumps(document))
    return document


def put_state(ws: Workspace, bucket: str, source: Path | None = None) -> None:
    """Replaces a bucket with a JSON document read from a file or stdin."""
    raw = source.read_text() if source else sys.stdin.read()
    try:
        document = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(
            f"Input is not valid JSON: {e}", "Pass a JSON object or array."
        ) from None

    keyring = ws.keyring()
    ws.store.write_bucket(bucket, document, keyring.recipients)
    console.print(
        f"[bold green]✔ Wrote {bucket}[/bold green] "
        f"for {len(keyring.recipients)} recipient(s)."
    )


def prompt_resolution(path: str) -> Resolution | None:
    """Asks which side of a conflicting bucket to keep."""
    choice = Prompt.ask(
        f"[bold yellow]CONFLICT:[/bold yellow] {path}. Keep which version?",
        choices=["local", "remote", "skip"],
        default="local",
    )
    if choice == "skip":
        return None
    return Resolution(choice)


def _print_sync_result(result: SyncResult) -> None:
    for path, decision in result.resolutions.items():
        console.print(f"   Resolved {path}: kept {decision.value}")
    if result.commit:
        console.print(f"[bold green]✔ Committed[/bold green] {result.commit[:8]}")
    else:
        console.print("[dim]Nothing to commit.[/dim]")
    if result.pushed:
        console.print("[bold green]✔ Pushed.[/bold green]")


def _remote_engine(ws: Workspace) -> SyncEngine:
    engine = ws.engine()
    if engine.transport.remote_url() is None:
        raise SyncError(
            "No remote configured.",
            "Add one with `ctx-sync init --remote <url>`.",
        )
    return engine


def run_sync(
    ws: Workspace, pull: bool = True, push: bool | None = None, interactive: bool = True
) -> SyncResult:
    """Pulls, resolves, commits and pushes the encrypted state."""
    # Fail early if the key is unusable, before touching the repository.
    ws.keyring()

    if push is None:
        push = ws.config.sync.push
    engine = ws.engine()
    resolver = prompt_resolution if interactive and sys.stdin.isatty() else None

    result = engine.sync(pull=pull, push=push, resolver=resolver)

    _print_sync_result(result)
    if result.push_error:
        console.print(
            f"[bold yellow]WARNING:[/bold yellow] Push failed: {result.push_error}\n"
            "   Your changes are committed locally; run sync again later."
        )
    return result


def run_pull(ws: Workspace, interactive: bool = True) -> SyncResult:
    """Merges the remote into the local state without pushing anything back.

    Raises:
        SyncError: If no remote is configured.
    """
    ws.keyring()
    engine = _remote_engine(ws)
    resolver = prompt_resolution if interactive and sys.stdin.isatty() else None

    with console.status("Pulling state...", spinner="dots"):
        result = engine.sync(pull=True, push=False, resolver=resolver)

    _print_sync_result(result)
    console.print("[bold green]✔ Pulled.[/bold green]")
    return result


def run_push(ws: Workspace, force: bool = False) -> SyncResult:
    """Commits local state and pushes it without merging the remote first.

    Args:
        ws (Workspace): Target locations.
        force (bool): Replace the remote branch, e.g. after a key rotation.

    Raises:
        SyncError: If no remote is configured or the push was rejected.
    """
    ws.keyring()
    engine = _remote_engine(ws)

    with console.status("Pushing state...", spinner="dots"):
        result = engine.sync(pull=False, push=True, force_push=force)

    _print_sync_result(result)
    if result.push_error:
        raise SyncError(
            f"Push failed: {result.push_error}",
            "Run `ctx-sync pull` first, or `ctx-sync push --force` after a key "
            "rotation.",
        )
    return result


def run_audit(ws: Workspace) -> AuditReport:
    """Runs the security audit and prints its findings."""
    repo = None
    try:
        repo = ws.repo()
    except SyncError as e:
        logger.debug(f"Auditing without a repository: {e}")

    console.print("[bold]ctx-sync Security Audit[/bold]\n")
    with console.status("[bold blue]Auditing...", spinner="dots"):
        report = audit.run_audit(
            ws.keystore, ws.store, repo, ws.config.core.remote_name
        )

    styles = {
        Severity.CRITICAL: ("red", "✘"),
        Severity.WARNING: ("yellow", "⚠"),
        Severity.INFO: ("green", "✔"),
    }
    for severity in Severity:
        color, mark = styles[severity]
        for finding in report.by_severity(severity):
            text = escape(f"[{finding.check}] {finding.message}")
            console.print(f"   [{color}]{mark} {text}[/{color}]")

    console.print()
    if report.repo_size is not None:
        size = audit.format_bytes(report.repo_size)
        console.print(f"Repository size:       {size}")
    console.print(f"Encrypted state files: {report.state_file_count}")

    if report.passed:
        console.print("\n[bold green]✔ Audit passed.[/bold green] Nothing critical.")
    else:
        console.print(
            "\n[bold red]✘ Audit failed.[/bold red] Critical issues need attention."
        )
    return report


def show_status(ws: Workspace) -> None:
    """Summarizes the manifest and pending changes without decrypting anything."""
    store = ws.store
    manifest = store.read_manifest()

    table = Table(title="State Buckets")
    table.add_column("Bucket", style="bold")
    table.add_column("Last modified")
    for fname, meta in sorted(manifest.files.items()):
        table.add_row(fname, meta.get("lastModified", "?"))
    console.print(table)
    console.print(f"Last sync: {manifest.last_sync}")

    try:
        engine = ws.engine()
    except SyncError as e:
        console.print(f"[bold red]ERROR:[/bold red] {e}")
        return

    pending = engine.transport.status()
    url = engine.transport.remote_url()
    console.print(f"Remote:    {url or '[dim]none[/dim]'}")
    if pending:
        console.print(f"[yellow]{len(pending)} file(s) pending sync.[/yellow]")
    else:
        console.print("[green]Up to date locally.[/green]")

    try:
        ws.keystore.load()
    except KeyNotFoundError:
        console.print("[bold red]No key on this machine.[/bold red]")
