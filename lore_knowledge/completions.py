"""Shell completion helpers for the lore CLI."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from argparse import Namespace


def get_source_name_completer():
    """Return a completer function for sync source names.

    Reads sync-sources.json lazily so completion stays fast.
    """

    def completer(prefix: str, parsed_args: Namespace, **kwargs) -> list[str]:
        try:
            from lore_knowledge._config import SyncSourceConfig

            names = [source.name for source in SyncSourceConfig().load()]
            return [name for name in names if name.startswith(prefix)]
        except Exception:
            return []

    return completer


def get_data_dir_completer():
    """Return a completer offering the configured data directory."""

    def completer(prefix: str, parsed_args: Namespace, **kwargs) -> list[str]:
        try:
            from lore_knowledge._config import ConfigManager

            data_dir = str(ConfigManager().get_data_dir())
        except Exception:
            return []
        return [data_dir] if data_dir.startswith(prefix) else []

    return completer
