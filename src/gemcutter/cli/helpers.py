"""Shared CLI helpers: storage factory, console, and logging setup."""

import logging
import os
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from gemcutter.core.storage import GemcutterStorage

console = Console()

# Global storage instance (initialized lazily)
_storage: GemcutterStorage | None = None


def get_storage() -> GemcutterStorage:
    """Get or create the storage instance."""
    global _storage
    if _storage is None:
        data_dir = Path(os.environ.get("GEMCUTTER_DATA_DIR", Path.cwd() / "data"))
        state_dir = Path(os.environ.get("GEMCUTTER_STATE_DIR", Path.cwd() / ".gemcutter"))
        _storage = GemcutterStorage(data_dir, state_dir)
    return _storage


def reset_storage() -> None:
    """Drop the cached storage so the next call re-reads the environment."""
    global _storage
    _storage = None


def configure_logging(verbose: bool = False) -> None:
    """Route library log records through rich."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
