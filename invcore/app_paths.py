"""Centralised helpers for managing the application data directory."""
from __future__ import annotations

import os
from pathlib import Path


def _detect_base_directory() -> Path:
    override = os.environ.get("INVENTORY_HOME")
    if override:
        return Path(override).expanduser().resolve()
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg).expanduser().resolve() / "inventory"
    return Path.home().resolve() / ".inventory"


APP_DIR: Path = _detect_base_directory()
LOG_DIR: Path = APP_DIR / "logs"


def ensure_directory(path: Path) -> Path:
    """Ensure that ``path`` exists, returning the :class:`~pathlib.Path`."""

    path.mkdir(parents=True, exist_ok=True)
    return path


def ensure_app_structure() -> None:
    """Create the base directories required for application data."""

    for directory in (APP_DIR, LOG_DIR):
        ensure_directory(directory)


def data_path(*parts: str) -> Path:
    """Return a path rooted inside :data:`APP_DIR`, creating parent directories."""

    ensure_app_structure()
    target = APP_DIR.joinpath(*parts)
    if target.parent and not target.parent.exists():
        target.parent.mkdir(parents=True, exist_ok=True)
    return target


def default_database_url() -> str:
    """Return the SQLite URL used when ``DATABASE_URL`` is not configured."""

    return f"sqlite:///{data_path('inventory.db').as_posix()}"


__all__ = [
    "APP_DIR",
    "LOG_DIR",
    "data_path",
    "default_database_url",
    "ensure_app_structure",
    "ensure_directory",
]
