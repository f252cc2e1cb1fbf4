import argparse
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.prompt import Confirm

from . import ops
from .config import Config
from .constants import APP_NAME, CONFIG_DIR, LOG_FILE, VERSION
from .errors import CtxSyncError
from .keystore import ensure_private_dir
from .redact import RedactingFilter

logger = logging.getLogger(APP_NAME)
console = Console()
err_console = Console(stderr=True)


def setup_logging(config: Config, verbose: bool = False) -> None:
    """Configures the logging subsystem.

    Records go to stderr (warnings only, unless `verbose`) and to a rotating
    log file in the config directory. Every handler redacts secrets.

    Args:
        config (Config): Supplies the log size limit.
        verbose (bool, optional): Also show info and debug records on stderr.
    """
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )
    redactor = RedactingFilter()
    logger.handlers.clear()
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    stream_handler.setFormatter(formatter)
    stream_handler.addFilter(redactor)
    logger.addHandler(stream_handler)

    try:
        ensure_private_dir(LOG_FILE.parent)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=config.limits.max_log_size,
            backupCount=5,
        )
    except OSError as e:
        logger.warning(f"File logging disabled: {e}")
        return
    file_handler.setFormatter(formatter)
    file_handler.addFilter(redactor)
    logger.addHandler(file_handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ctx-sync",
        description="Encrypted, Git-backed sync of your development context.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Show debug logging"
    )

    subparsers = parser.add_subparsers(dest="command")

    # Init
    init_parser = subparsers.add_parser("init", help="Set up key and sync repository")
    init_parser.add_argument("--remote", help="Git remote URL (SSH or HTTPS)")
    init_parser.add_argument(
        "--restore",
        action="store_true",
        help="Import an existing private key instead of generating one",
    )

    # Key management
    key_parser = subparsers.add_parser("key", help="Manage the encryption key")
    key_sub = key_parser.add_subparsers(dest="key_command")
    key_sub.add_parser("show", help="Print the public key")
    key_sub.add_parser("verify", help="Check key file permissions")
    rotate_parser = key_sub.add_parser(
        "rotate", help="Generate a new key and re-encrypt all state"
    )
    rotate_parser.add_argument(
        "--force-push",
        action="store_true",
        help="Force-push the rewritten history to the remote",
    )
    rotate_parser.add_argument(
        "--resume", action="store_true", help="Finish an interrupted rotation"
    )
    rotate_parser.add_argument(
        "-y", "--yes", action="store_true", help="Skip the confirmation prompt"
    )
    key_sub.add_parser(
        "update", help="Import a rotated key (from stdin or a prompt)"
    )

    # Team management
    team_parser = subparsers.add_parser("team", help="Manage who can decrypt state")
    team_sub = team_parser.add_subparsers(dest="team_command")
    add_parser = team_sub.add_parser("add", help="Add a team member")
    add_parser.add_argument("--name", required=True, help="Member name")
    add_parser.add_argument("--key", required=True, help="Member's age public key")
    remove_parser = team_sub.add_parser("remove", help="Remove a member by name")
    remove_parser.add_argument("name")
    revoke_parser = team_sub.add_parser("revoke", help="Remove a member by key")
    revoke_parser.add_argument("key")
    team_sub.add_parser("list", help="List team members")

    # State access
    state_parser = subparsers.add_parser("state", help="Read or write a state bucket")
    state_sub = state_parser.add_subparsers(dest="state_command")
    get_parser = state_sub.add_parser("get", help="Print a bucket as JSON")
    get_parser.add_argument("bucket")
    put_parser = state_sub.add_parser("put", help="Replace a bucket from JSON")
    put_parser.add_argument("bucket")
    put_parser.add_argument(
        "file", nargs="?", type=Path, help="JSON file (default: stdin)"
    )

    # Sync
    sync_parser = subparsers.add_parser("sync", help="Pull, commit and push state")
    sync_parser.add_argument("--no-pull", action="store_true", help="Skip pulling")
    sync_parser.add_argument("--no-push", action="store_true", help="Skip pushing")
    sync_parser.add_argument(
        "--no-interactive",
        action="store_true",
        help="Resolve conflicts with the configured default",
    )

    pull_parser = subparsers.add_parser("pull", help="Merge remote state only")
    pull_parser.add_argument(
        "--no-interactive",
        action="store_true",
        help="Resolve conflicts with the configured default",
    )
    push_parser = subparsers.add_parser("push", help="Commit and push local state")
    push_parser.add_argument(
        "--force",
        action="store_true",
        help="Replace the remote history (needed after a key rotation)",
    )

    subparsers.add_parser("status", help="Show sync status")
    subparsers.add_parser("audit", help="Run a security audit")
    return parser


def run(args: argparse.Namespace, parser: argparse.ArgumentParser) -> None:
    """Dispatches a parsed command line."""
    ws = ops.Workspace(Config.load(), CONFIG_DIR)

    if args.command == "init":
        secret = None
        if args.restore:
            secret = console.input("Paste your private key: ", password=True)
        ops.init_vault(ws, args.remote, secret)
    elif args.command == "key":
        if args.key_command == "show":
            ops.show_key(ws)
        elif args.key_command == "verify":
            if not ops.verify_key(ws).valid:
                sys.exit(1)
        elif args.key_command == "rotate":
            if not (args.yes or args.resume) and not Confirm.ask(
                "Rotate the key? Other machines will need the new key.",
                default=False,
            ):
                console.print("[bold red]ABORTED.[/bold red]")
                return
            ops.rotate_key(ws, args.force_push, args.resume)
        elif args.key_command == "update":
            ops.update_key(ws)
        else:
            parser.parse_args(["key", "--help"])
    elif args.command == "team":
        if args.team_command == "add":
            ops.add_team_member(ws, args.name, args.key)
        elif args.team_command == "remove":
            ops.remove_team_member(ws, args.name)
        elif args.team_command == "revoke":
            ops.revoke_team_member(ws, args.key)
        elif args.team_command == "list":
            ops.list_team(ws)
        else:
            parser.parse_args(["team", "--help"])
    elif args.command == "state":
        if args.state_command == "get":
            ops.get_state(ws, args.bucket)
        elif args.state_command == "put":
            ops.put_state(ws, args.bucket, args.file)
        else:
            parser.parse_args(["state", "--help"])
    elif args.command == "sync":
        ops.run_sync(
            ws,
            pull=not args.no_pull,
            push=False if args.no_push else None,
            interactive=not args.no_interactive,
        )
    elif args.command == "pull":
        ops.run_pull(ws, interactive=not args.no_interactive)
    elif args.command == "push":
        ops.run_push(ws, force=args.force)
    elif args.command == "status":
        ops.show_status(ws)
    elif args.command == "audit":
        if not ops.run_audit(ws).passed:
            sys.exit(1)
    else:
        parser.print_help()


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the ctx-sync CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(Config.load(), verbose=args.verbose)

    try:
        run(args, parser)
    except CtxSyncError as e:
        logger.debug(f"{type(e).__name__}: {e}")
        err_console.print(e.friendly(), style="bold red", markup=False, highlight=False)
        sys.exit(1)
    except ValueError as e:
        err_console.print(
            f"Error: {e}", style="bold red", markup=False, highlight=False
        )
        sys.exit(1)
    except KeyboardInterrupt:
        err_console.print("[bold red]ABORTED.[/bold red]")
        sys.exit(130)


if __name__ == "__main__":
    main()
