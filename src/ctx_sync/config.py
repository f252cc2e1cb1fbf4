import logging
import re
import tomllib
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .constants import (
    APP_NAME,
    CONFIG_FILE,
    DEFAULT_BRANCH,
    DEFAULT_REMOTE,
    SYNC_DIR,
)

logger = logging.getLogger(APP_NAME)

RESOLUTIONS = ("local", "remote")

_SIZE_UNITS = {"k": 1024, "m": 1024**2, "g": 1024**3}


def parse_size(value: int | str) -> int:
    """Turns a size such as '512kb', '5MB' or '1.5 g' into a byte count.

    Raises:
        ValueError: If the string has no recognizable unit.
    """
    if isinstance(value, int):
        return value
    found = re.fullmatch(r"(\d+(?:\.\d+)?)\s*([kmg])b?", str(value).strip().lower())
    if not found:
        raise ValueError(f"Invalid size format '{value}'")
    return int(float(found.group(1)) * _SIZE_UNITS[found.group(2)])


def parse_resolution(value: str) -> str:
    """Normalizes a conflict resolution name ('local' or 'remote')."""
    normalized = str(value).strip().lower()
    if normalized not in RESOLUTIONS:
        raise ValueError(
            f"Invalid resolution '{value}', expected one of {', '.join(RESOLUTIONS)}"
        )
    return normalized


def parse_bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"Expected true or false, got '{value}'")
    return value


def parse_path(value: Any) -> Path:
    return Path(str(value)).expanduser()


_PARSERS: dict[str, Callable[[Any], Any]] = {
    "sync_dir": parse_path,
    "default_resolution": parse_resolution,
    "push": parse_bool,
    "max_log_size": parse_size,
}


@dataclass
class CoreConfig:
    """Where the state lives and how it reaches the remote.

    Attributes:
        sync_dir (Path): The git working tree holding the encrypted state.
        remote_name (str): The git remote to pull from and push to.
        branch (str): The branch that carries the state.
    """

    sync_dir: Path = SYNC_DIR
    remote_name: str = DEFAULT_REMOTE
    branch: str = DEFAULT_BRANCH


@dataclass
class SyncConfig:
    """Sync behavior settings.

    Attributes:
        default_resolution (str): Conflict decision used when not prompting.
        commit_message (str): Message for state commits.
        push (bool): Whether `sync` pushes by default.
    """

    default_resolution: str = "local"
    commit_message: str = "chore: sync context"
    push: bool = True


@dataclass
class LimitsConfig:
    """Log limits.

    Attributes:
        max_log_size (int): Size in bytes at which the log file is rotated.
    """

    max_log_size: int = 5 * 1024 * 1024


@dataclass
class Config:
    """The merged ctx-sync configuration.

    Attributes:
        core (CoreConfig): Locations and git settings.
        sync (SyncConfig): Sync behavior.
        limits (LimitsConfig): Log size limits.
    """

    core: CoreConfig = field(default_factory=CoreConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)

    # Parsed CONFIG_FILE, shared by every load() without an explicit path
    _global_cache: "Config | None" = None

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Loads configuration from defaults merged with a TOML file.

        Args:
            path (Path | None): An explicit config file. Defaults to the
                global config file, whose parsed result is cached.

        Returns:
            Config: The merged configuration object.
        """
        if path is not None:
            explicit = cls()
            if path.exists():
                explicit._merge_from_file(path)
            return explicit

        if cls._global_cache is None:
            cached = cls()
            if CONFIG_FILE.exists():
                cached._merge_from_file(CONFIG_FILE)
            cls._global_cache = cached

        return replace(cls._global_cache)

    def _merge_from_file(self, path: Path) -> None:
        """Reads `path` and overlays each known section onto this instance.

        Syntax and read errors are logged and leave the defaults in place.
        """
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Config syntax error in {path}: {e}")
            return
        except OSError as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            return

        sections = ("core", "sync", "limits")
        unknown = set(data) - set(sections)
        if unknown:
            logger.warning(
                f"Unknown config sections: {', '.join(sorted(unknown))}. Ignoring."
            )

        for name in sections:
            if name in data:
                current = getattr(self, name)
                setattr(self, name, self._update_dataclass(name, current, data[name]))

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Returns a copy of `instance` with the valid `updates` applied.

        Unknown keys and unparseable values are logged and skipped.
        """
        known = instance.__dataclass_fields__.keys()

        typos = sorted(set(updates) - set(known))
        if typos:
            logger.warning(
                f"Unknown config keys in [{section_name}]: "
                f"{', '.join(typos)}. Ignoring."
            )

        accepted = {}
        for key, raw in updates.items():
            if key not in known:
                continue
            try:
                accepted[key] = _PARSERS.get(key, str)(raw)
            except ValueError as e:
                logger.warning(
                    f"Config error in [{section_name}].{key}: {e}. "
                    "Keeping the default."
                )

        return replace(instance, **accepted)
