"""Security audit of the local key material and the sync repository.

Each check appends findings to an `AuditReport`. A single critical finding
fails the audit; warnings and info lines are only reported.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .constants import APP_NAME, BUCKET_SUFFIX, DEFAULT_REMOTE, MANIFEST_FILE
from .errors import InsecureTransportError, SyncError
from .git_wrapper import GitRepo
from .keystore import KeyStore
from .redact import redact
from .store import StateStore
from .transport import validate_remote_url

logger = logging.getLogger(APP_NAME)

MANIFEST_KEYS = {"version", "lastSync", "files"}
REPO_SIZE_WARNING = 100 * 1024 * 1024

AGE_HEADERS = (b"age-encryption.org/v1", b"-----BEGIN AGE ENCRYPTED FILE-----")

HISTORY_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"sk_live_[a-zA-Z0-9]+"), "Stripe live key"),
    (re.compile(r"sk_test_[a-zA-Z0-9]+"), "Stripe test key"),
    (re.compile(r"ghp_[a-zA-Z0-9]+"), "GitHub PAT"),
    (re.compile(r"gho_[a-zA-Z0-9]+"), "GitHub OAuth token"),
    (re.compile(r"github_pat_[a-zA-Z0-9]+"), "GitHub fine-grained PAT"),
    (re.compile(r"xoxb-[0-9]+-[0-9]+-[a-zA-Z0-9]+"), "Slack bot token"),
    (re.compile(r"xoxp-[0-9]+-[0-9]+-[a-zA-Z0-9]+"), "Slack user token"),
    (re.compile(r"AKIA[A-Z0-9]{16}"), "AWS access key"),
    (re.compile(r"AGE-SECRET-KEY-[A-Z0-9]+"), "age private key"),
]


class Severity(Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


@dataclass
class AuditFinding:
    """One line of the audit.

    Attributes:
        severity (Severity): How serious the finding is.
        check (str): The check that produced it, e.g. "permissions".
        message (str): What was found.
    """

    severity: Severity
    check: str
    message: str


@dataclass
class AuditReport:
    """Everything an audit found.

    Attributes:
        findings (list[AuditFinding]): Findings in check order.
        repo_size (int | None): Bytes used by the sync directory, `.git`
            included, or None if it does not exist.
        state_file_count (int): Number of encrypted bucket files.
        has_remote (bool): Whether a sync remote is configured.
    """

    findings: list[AuditFinding] = field(default_factory=list)
    repo_size: int | None = None
    state_file_count: int = 0
    has_remote: bool = False

    @property
    def passed(self) -> bool:
        return not self.by_severity(Severity.CRITICAL)

    def by_severity(self, severity: Severity) -> list[AuditFinding]:
        return [f for f in self.findings if f.severity is severity]

    def add(self, severity: Severity, check: str, message: str) -> None:
        self.findings.append(AuditFinding(severity, check, message))


def format_bytes(size: int) -> str:
    """Formats a byte count as e.g. '0 B', '512 B' or '1.5 MB'."""
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            break
        value /= 1024
    if unit == "B":
        return f"{int(value)} B"
    return f"{value:.1f} {unit}"


def check_permissions(keystore: KeyStore, report: AuditReport) -> None:
    permissions = keystore.verify_permissions()
    if permissions.valid:
        report.add(
            Severity.INFO,
            "permissions",
            "Key file (600) and config directory (700) permissions are correct.",
        )
        return
    for issue in permissions.issues:
        report.add(Severity.CRITICAL, "permissions", issue)


def check_transport(repo: GitRepo | None, remote: str, report: AuditReport) -> None:
    if repo is None:
        report.add(
            Severity.WARNING,
            "transport",
            "No Git repository found in the sync directory.",
        )
        return

    url = repo.get_remote_url(remote)
    if url is None:
        report.add(Severity.INFO, "transport", "No remote configured (local only).")
        return

    report.has_remote = True
    try:
        validate_remote_url(url)
    except InsecureTransportError as e:
        report.add(Severity.CRITICAL, "transport", f"Insecure remote: {e}")
        return
    report.add(Severity.INFO, "transport", f"Remote URL is secure: {redact(url)}")

    if repo.is_rewritten():
        report.add(
            Severity.WARNING,
            "transport",
            "The remote still holds history from before the last key rotation. "
            "Run `ctx-sync push --force`.",
        )


def check_state_files(
    store: StateStore, repo: GitRepo | None, report: AuditReport
) -> None:
    """Checks that only ciphertext and a minimal manifest live in the sync dir."""
    sync_dir = store.sync_dir
    if not sync_dir.exists():
        report.add(Severity.WARNING, "state-files", "Sync directory does not exist.")
        return

    for path in sorted(sync_dir.iterdir()):
        if path.name.startswith(".") or not path.is_file():
            continue
        if path.suffix == ".json" and path.name != MANIFEST_FILE:
            report.add(
                Severity.CRITICAL,
                "state-files",
                f"Plaintext state file found: {path.name}. "
                "State must be stored as encrypted .age files.",
            )
        elif path.name.endswith(BUCKET_SUFFIX):
            report.state_file_count += 1
            with open(path, "rb") as f:
                head = f.read(64)
            if head and not head.startswith(AGE_HEADERS):
                report.add(
                    Severity.CRITICAL,
                    "state-files",
                    f"{path.name} is not age ciphertext.",
                )

    if repo is not None:
        for tracked in repo.tracked_files():
            if not tracked.endswith(BUCKET_SUFFIX) and tracked != MANIFEST_FILE:
                report.add(
                    Severity.CRITICAL,
                    "state-files",
                    f"Git tracks a file that is not encrypted state: {tracked}",
                )

    if report.state_file_count:
        report.add(
            Severity.INFO,
            "state-files",
            f"{report.state_file_count} encrypted state file(s) found.",
        )

    if store.manifest_path.exists():
        try:
            manifest = json.loads(store.manifest_path.read_text())
        except (json.JSONDecodeError, OSError):
            report.add(
                Severity.WARNING, "state-files", "Could not parse manifest.json."
            )
            return
        extra = sorted(set(manifest) - MANIFEST_KEYS)
        if extra:
            report.add(
                Severity.WARNING,
                "state-files",
                f"Manifest contains unexpected keys: {', '.join(extra)}",
            )
        else:
            report.add(
                Severity.INFO,
                "state-files",
                "Manifest contains only version, timestamps and file names.",
            )


def check_history(repo: GitRepo | None, report: AuditReport) -> None:
    """Scans every patch reachable in the sync repository for secret shapes."""
    if repo is None:
        return
    try:
        history = repo.history_patches()
    except SyncError as e:
        logger.warning(f"History scan failed: {e}")
        report.add(Severity.WARNING, "git-history", "Could not scan Git history.")
        return

    if not history:
        report.add(Severity.INFO, "git-history", "No Git history to scan yet.")
        return

    found = [label for pattern, label in HISTORY_PATTERNS if pattern.search(history)]
    for label in found:
        report.add(
            Severity.CRITICAL,
            "git-history",
            f"Potential {label} found in Git history. "
            "Run `ctx-sync key rotate` to re-encrypt and rewrite history.",
        )
    if not found:
        report.add(
            Severity.INFO,
            "git-history",
            "No plaintext secret patterns found in Git history.",
        )


def check_repo_size(sync_dir: Path, report: AuditReport) -> None:
    if not sync_dir.exists():
        return
    size = sum(p.stat().st_size for p in sync_dir.rglob("*") if p.is_file())
    report.repo_size = size
    if size > REPO_SIZE_WARNING:
        report.add(
            Severity.WARNING,
            "repo-size",
            f"Repository size: {format_bytes(size)} (consider cleanup)",
        )
    else:
        report.add(Severity.INFO, "repo-size", f"Repository size: {format_bytes(size)}")


def run_audit(
    keystore: KeyStore,
    store: StateStore,
    repo: GitRepo | None,
    remote: str = DEFAULT_REMOTE,
) -> AuditReport:
    """Runs every check and collects the findings.

    Args:
        keystore (KeyStore): The local key material.
        store (StateStore): The state store in the sync directory.
        repo (GitRepo | None): The sync repository, or None if the sync
            directory was never initialized.
        remote (str): Name of the sync remote.

    Returns:
        AuditReport: The findings. `passed` is False on any critical finding.
    """
    report = AuditReport()
    check_permissions(keystore, report)
    check_transport(repo, remote, report)
    check_state_files(store, repo, report)
    check_history(repo, report)
    check_repo_size(store.sync_dir, report)

    logger.info(
        f"Audit finished: {len(report.by_severity(Severity.CRITICAL))} critical, "
        f"{len(report.by_severity(Severity.WARNING))} warning(s)."
    )
    return report
