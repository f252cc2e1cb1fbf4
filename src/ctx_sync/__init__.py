"""ctx-sync: Encrypted, Git-backed synchronization of development context.

This package provides the age-encrypted state store, the identity and recipient
lifecycle (team membership, key rotation), the Git synchronization engine, and
the command-line interface on top of them.
"""

from . import (
    audit,
    cli,
    config,
    constants,
    crypto,
    errors,
    git_wrapper,
    keystore,
    ops,
    recipients,
    redact,
    rotation,
    store,
    sync,
    transport,
)

__all__ = [
    "audit",
    "cli",
    "config",
    "constants",
    "crypto",
    "errors",
    "git_wrapper",
    "keystore",
    "ops",
    "recipients",
    "redact",
    "rotation",
    "store",
    "sync",
    "transport",
]
