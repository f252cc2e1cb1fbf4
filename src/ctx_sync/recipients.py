"""The recipient registry: who state must currently be encrypted for.

The registry lists the owner's public key and every team member's public key.
It lives only in the local config directory and is never synced, because the
list of people who can decrypt is itself sensitive.

Mutations change the in-memory registry only. A caller pairs each mutation
with a full re-encryption of the state buckets and then calls `save()`, so a
removed member can never read a bucket written after their removal.
"""

import datetime
import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path

from .constants import APP_NAME, RECIPIENTS_FILE_NAME
from .crypto import fingerprint, validate_public_key
from .errors import ConfigError, RecipientError
from .keystore import check_private_path, ensure_private_dir, write_private_file

logger = logging.getLogger(APP_NAME)


@dataclass
class TeamMember:
    """A team member who can decrypt the shared state.

    Attributes:
        name (str): A human-readable, unique (case-insensitive) name.
        public_key (str): The member's `age1...` public key.
        added_at (str): ISO-8601 timestamp of when the member was added.
        fingerprint (str): Fingerprint of `public_key` for out-of-band checks.
    """

    name: str
    public_key: str
    added_at: str
    fingerprint: str


@dataclass
class RecipientRegistry:
    """The owner key plus the team members, in insertion order.

    Attributes:
        owner_public_key (str): This device owner's public key.
        members (list[TeamMember]): Team members.
        path (Path | None): Where the registry is persisted.
    """

    owner_public_key: str
    members: list[TeamMember] = field(default_factory=list)
    path: Path | None = field(default=None, compare=False, repr=False)

    @classmethod
    def path_for(cls, config_dir: Path) -> Path:
        return config_dir / RECIPIENTS_FILE_NAME

    @classmethod
    def load(cls, config_dir: Path) -> "RecipientRegistry | None":
        """Reads the registry from `config_dir`.

        Returns:
            RecipientRegistry | None: The registry, or None if it does not exist
            or is empty.

        Raises:
            KeyPermissionError: If the file or directory is not owner-only.
            ConfigError: If the file is not a valid registry.
        """
        path = cls.path_for(config_dir)
        if not path.exists():
            return None

        check_private_path(config_dir, "Config directory")
        check_private_path(path, "Recipient registry")

        content = path.read_text(encoding="utf-8")
        if not content.strip():
            return None

        try:
            data = json.loads(content)
            members = [
                TeamMember(
                    name=m["name"],
                    public_key=m["publicKey"],
                    added_at=m["addedAt"],
                    fingerprint=m["fingerprint"],
                )
                for m in data.get("members", [])
            ]
            return cls(data["ownerPublicKey"], members, path)
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise ConfigError(f"Recipient registry {path} is invalid: {e}") from None

    @classmethod
    def initialize(cls, config_dir: Path, owner_public_key: str) -> "RecipientRegistry":
        """Loads the registry, creating it with only the owner if absent."""
        existing = cls.load(config_dir)
        if existing:
            return existing

        validate_public_key(owner_public_key)
        registry = cls(owner_public_key, [], cls.path_for(config_dir))
        registry.save()
        return registry

    def save(self) -> None:
        """Persists the registry atomically with owner-only permissions."""
        if self.path is None:
            raise ConfigError("Recipient registry has no storage path.")
        ensure_private_dir(self.path.parent)
        data = {
            "ownerPublicKey": self.owner_public_key,
            "members": [
                {
                    "name": m.name,
                    "publicKey": m.public_key,
                    "addedAt": m.added_at,
                    "fingerprint": m.fingerprint,
                }
                for m in self.members
            ],
        }
        write_private_file(self.path, json.dumps(data, indent=2))

    def recipient_keys(self) -> tuple[str, ...]:
        """Returns the full recipient set: owner first, then members in order."""
        keys = [self.owner_public_key]
        keys.extend(m.public_key for m in self.members if m.public_key not in keys)
        return tuple(keys)

    def find(self, name: str) -> TeamMember | None:
        lowered = name.lower()
        return next((m for m in self.members if m.name.lower() == lowered), None)

    def add(self, name: str, public_key: str) -> TeamMember:
        """Adds a team member.

        Raises:
            RecipientError: If the key is malformed, is the owner's own key,
                or the name or key is already registered.
        """
        name = name.strip()
        public_key = public_key.strip()
        if not name:
            raise RecipientError("Team member name must not be empty.")

        validate_public_key(public_key)

        if public_key == self.owner_public_key:
            raise RecipientError("Cannot add your own key as a team member.")

        for member in self.members:
            if member.public_key == public_key:
                raise RecipientError(
                    f'Public key already registered for team member "{member.name}".'
                )

        if self.find(name):
            raise RecipientError(
                f'Team member with name "{name}" already exists. Use a unique name.'
            )

        member = TeamMember(
            name=name,
            public_key=public_key,
            added_at=datetime.datetime.now(datetime.timezone.utc).isoformat(),
            fingerprint=fingerprint(public_key),
        )
        self.members.append(member)
        logger.info(f"Added recipient '{name}' ({member.fingerprint})")
        return member

    def remove(self, name: str) -> TeamMember:
        """Removes a team member by name (case-insensitive)."""
        member = self.find(name)
        if member is None:
            raise RecipientError(f'No team member found with name "{name}".')
        self.members.remove(member)
        logger.info(f"Removed recipient '{member.name}'")
        return member

    def revoke(self, public_key: str) -> TeamMember:
        """Removes a team member by public key."""
        public_key = public_key.strip()
        member = next((m for m in self.members if m.public_key == public_key), None)
        if member is None:
            raise RecipientError(
                f'No team member found with public key "{public_key}".'
            )
        self.members.remove(member)
        logger.info(f"Revoked recipient '{member.name}' ({member.fingerprint})")
        return member

    def copy(self) -> "RecipientRegistry":
        """Returns an independent copy, used to stage a mutation."""
        return RecipientRegistry(
            self.owner_public_key,
            [TeamMember(**asdict(m)) for m in self.members],
            self.path,
        )
