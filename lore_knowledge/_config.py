"""Configuration management for lore-knowledge.

Two kinds of per-machine configuration live in the config directory
(``$LORE_CONFIG_DIR`` or ``~/.config/lore``):

- ``config.json``: general settings (data directory, environment to bridge
  into the daemon, store and extractor options).
- ``sync-sources.json``: the directories watched by sync.

Neither file is stored in the data directory, so they are never synced
between machines.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from lore_knowledge.errors import ConfigError

logger = logging.getLogger(__name__)

SYNC_CONFIG_VERSION = 1
DEFAULT_DATA_DIR = "~/lore-data"


def get_config_dir() -> Path:
    """Per-machine config directory."""
    override = os.environ.get("LORE_CONFIG_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "lore"


def expand_path(path: str) -> Path:
    """Expand a leading ``~`` in a configured path."""
    return Path(path).expanduser()


class ConfigManager:
    """Manages general settings stored in config.json.

    This service handles loading and saving the settings file, resolving the
    data directory, and bridging configured environment variables into the
    running process.
    """

    def __init__(self, base_path: Path | None = None) -> None:
        """Initialize the configuration manager.

        Args:
            base_path: Config directory. Defaults to ``get_config_dir()``.
        """
        self.base_path = Path(base_path) if base_path else get_config_dir()
        self.config_path = self.base_path / "config.json"

    def load_config(self) -> dict[str, Any]:
        """Load configuration from config.json.

        Returns:
            Configuration dictionary.
        """
        if self.config_path.exists():
            try:
                with open(self.config_path) as f:
                    return json.load(f)
            except (json.JSONDecodeError, OSError):
                return {}
        return {}

    def save_config(self, config: dict[str, Any]) -> None:
        """Save configuration to config.json.

        Args:
            config: Configuration dictionary to save.
        """
        self.base_path.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w") as f:
            json.dump(config, f, indent=2)

    def get_data_dir(self, override: str | Path | None = None) -> Path:
        """Resolve the data directory.

        Precedence: explicit override, ``$LORE_DATA_DIR``, config.json
        ``data_dir``, then ``~/lore-data``.

        Args:
            override: Value passed on the command line, if any.

        Returns:
            Absolute data directory path.
        """
        if override:
            return Path(override).expanduser().resolve()
        env_dir = os.environ.get("LORE_DATA_DIR")
        if env_dir:
            return Path(env_dir).expanduser().resolve()
        configured = self.load_config().get("data_dir")
        return Path(configured or DEFAULT_DATA_DIR).expanduser().resolve()

    def set_data_dir(self, path: Path) -> None:
        """Save the data directory to config.

        Args:
            path: Path to the data directory.
        """
        config = self.load_config()
        config["data_dir"] = str(path)
        self.save_config(config)

    def get_section(self, name: str) -> dict[str, Any]:
        """Return a nested settings section such as ``chroma`` or ``extractor``."""
        section = self.load_config().get(name)
        return section if isinstance(section, dict) else {}

    def bridge_env(self) -> list[str]:
        """Copy configured ``env`` entries into ``os.environ``.

        Variables that are already set in the environment win.

        Returns:
            Names of the variables that were set.
        """
        bridged = []
        for name, value in self.get_section("env").items():
            if name in os.environ or value is None:
                continue
            os.environ[name] = str(value)
            bridged.append(name)
        return bridged


@dataclass
class SyncSource:
    """A configured watch root."""

    name: str
    path: str
    glob: str
    project: str
    enabled: bool = True

    @property
    def expanded_path(self) -> Path:
        """Absolute directory with ``~`` expanded."""
        return expand_path(self.path)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _validate_source(raw: Any) -> SyncSource:
    if not isinstance(raw, dict):
        raise ConfigError("Invalid source: entries must be objects")
    name = raw.get("name")
    if not name or not isinstance(name, str):
        raise ConfigError("Invalid source: missing or invalid 'name'")
    for key in ("path", "glob", "project"):
        value = raw.get(key)
        if not value or not isinstance(value, str):
            raise ConfigError(f"Invalid source \"{name}\": missing or invalid '{key}'")
    enabled = raw.get("enabled")
    return SyncSource(
        name=name,
        path=raw["path"],
        glob=raw["glob"],
        project=raw["project"],
        enabled=enabled if isinstance(enabled, bool) else True,
    )


class SyncSourceConfig:
    """CRUD over sync-sources.json, keyed by unique source name."""

    FILENAME = "sync-sources.json"

    def __init__(self, base_path: Path | None = None) -> None:
        """Initialize the sync source configuration.

        Args:
            base_path: Config directory. Defaults to ``get_config_dir()``.
        """
        self.base_path = Path(base_path) if base_path else get_config_dir()
        self.config_path = self.base_path / self.FILENAME

    @staticmethod
    def default_sources() -> list[SyncSource]:
        """Sources written by ``initialize`` on a fresh machine."""
        return [
            SyncSource(
                name="Example Source",
                path="~/Documents/notes",
                glob="**/*",
                project="notes",
                enabled=False,
            )
        ]

    def load(self) -> list[SyncSource]:
        """Load and validate the configured sources.

        Returns:
            Configured sources. Defaults when the file does not exist.

        Raises:
            ConfigError: If the file is not valid JSON or an entry is invalid.
        """
        if not self.config_path.exists():
            return self.default_sources()
        try:
            with open(self.config_path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid sync config {self.config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError("Invalid config: expected an object")
        if data.get("version") != SYNC_CONFIG_VERSION:
            logger.warning(
                "Unknown sync config version: %s, expected %d",
                data.get("version"),
                SYNC_CONFIG_VERSION,
            )
        sources = data.get("sources")
        if not isinstance(sources, list):
            raise ConfigError("Invalid config: sources must be an array")
        return [_validate_source(raw) for raw in sources]

    def save(self, sources: list[SyncSource]) -> None:
        """Write sources to disk.

        Args:
            sources: Full list of sources.
        """
        self.base_path.mkdir(parents=True, exist_ok=True)
        data = {"version": SYNC_CONFIG_VERSION, "sources": [s.to_dict() for s in sources]}
        with open(self.config_path, "w") as f:
            json.dump(data, f, indent=2)

    def initialize(self) -> list[SyncSource]:
        """Create the config file with defaults if it does not exist yet."""
        if self.config_path.exists():
            return self.load()
        sources = self.default_sources()
        self.save(sources)
        return sources

    def get(self, name: str) -> SyncSource:
        """Look up a source by name.

        Raises:
            ConfigError: If no source has that name.
        """
        for source in self.load():
            if source.name == name:
                return source
        raise ConfigError(f'Source "{name}" not found')

    def add(self, source: SyncSource) -> list[SyncSource]:
        """Add a new source.

        Raises:
            ConfigError: If a source with the same name already exists.
        """
        sources = self.load()
        if any(s.name == source.name for s in sources):
            raise ConfigError(f'Source with name "{source.name}" already exists')
        sources.append(source)
        self.save(sources)
        return sources

    def update(self, name: str, **updates: Any) -> list[SyncSource]:
        """Update fields of an existing source.

        Args:
            name: Name of the source to update.
            **updates: Field values to replace.

        Raises:
            ConfigError: If the source does not exist or a field is unknown.
        """
        sources = self.load()
        for i, source in enumerate(sources):
            if source.name == name:
                merged = {**source.to_dict(), **updates}
                unknown = set(merged) - set(source.to_dict())
                if unknown:
                    raise ConfigError(f"Unknown source fields: {sorted(unknown)}")
                sources[i] = _validate_source(merged)
                self.save(sources)
                return sources
        raise ConfigError(f'Source "{name}" not found')

    def remove(self, name: str) -> list[SyncSource]:
        """Remove a source by name.

        Raises:
            ConfigError: If the source does not exist.
        """
        sources = self.load()
        remaining = [s for s in sources if s.name != name]
        if len(remaining) == len(sources):
            raise ConfigError(f'Source "{name}" not found')
        self.save(remaining)
        return remaining

    def enabled_sources(self) -> list[SyncSource]:
        """Sources with ``enabled`` set."""
        return [s for s in self.load() if s.enabled]
