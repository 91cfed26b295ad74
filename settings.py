"""Application configuration helpers for the inventory storage layer."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from invcore import app_paths
from invcore.models import DEFAULT_ITEM_LIMIT

logger = logging.getLogger(__name__)


BACKEND_SQL = "sql"
BACKEND_SHEETS = "sheets"
BACKENDS = (BACKEND_SQL, BACKEND_SHEETS)

DEFAULT_USERS_TAB = "USERS"
DEFAULT_INVENTORY_TAB = "INVENTORY"
DEFAULT_GUESTS_TAB = "GUESTS"
DEFAULT_SETTINGS_TAB = "SETTINGS"
DEFAULT_LOG_LEVEL = "INFO"

SETTINGS_FILENAME = "settings.json"


@dataclass
class StorageSettings:
    backend: str
    database_url: str
    spreadsheet_id: str = ""
    credential_path: str = ""
    service_account_email: str = ""
    private_key: str = ""
    users_tab: str = DEFAULT_USERS_TAB
    inventory_tab: str = DEFAULT_INVENTORY_TAB
    guests_tab: str = DEFAULT_GUESTS_TAB
    settings_tab: str = DEFAULT_SETTINGS_TAB
    log_level: str = DEFAULT_LOG_LEVEL
    default_item_limit: int = DEFAULT_ITEM_LIMIT

    @property
    def uses_sheets(self) -> bool:
        return self.backend == BACKEND_SHEETS

    def to_json(self) -> Dict[str, object]:
        # The private key is never written back to disk.
        return {
            "backend": self.backend,
            "database_url": self.database_url,
            "spreadsheet_id": self.spreadsheet_id,
            "credential_path": self.credential_path,
            "service_account_email": self.service_account_email,
            "users_tab": self.users_tab,
            "inventory_tab": self.inventory_tab,
            "guests_tab": self.guests_tab,
            "settings_tab": self.settings_tab,
            "log_level": self.log_level,
            "default_item_limit": self.default_item_limit,
        }


def _env_defaults(environ: Mapping[str, str]) -> Dict[str, object]:
    return {
        "backend": environ.get("STORAGE_BACKEND", "").strip().lower(),
        "database_url": environ.get("DATABASE_URL", "").strip(),
        "spreadsheet_id": environ.get("GOOGLE_SPREADSHEET_ID", "").strip(),
        "credential_path": environ.get("GOOGLE_APPLICATION_CREDENTIALS", "").strip(),
        "service_account_email": environ.get("GOOGLE_SERVICE_ACCOUNT_EMAIL", "").strip(),
        "private_key": environ.get("GOOGLE_PRIVATE_KEY", ""),
        "users_tab": DEFAULT_USERS_TAB,
        "inventory_tab": DEFAULT_INVENTORY_TAB,
        "guests_tab": DEFAULT_GUESTS_TAB,
        "settings_tab": DEFAULT_SETTINGS_TAB,
        "log_level": environ.get("LOG_LEVEL", DEFAULT_LOG_LEVEL).strip() or DEFAULT_LOG_LEVEL,
        "default_item_limit": DEFAULT_ITEM_LIMIT,
    }


def _read_settings_file(path: str) -> Dict[str, object]:
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        logger.warning("Ignoring settings file %s: expected a JSON object", path)
        return {}
    return data


def resolve_backend(requested: str, spreadsheet_id: str) -> str:
    """Return the backend to use: explicit choice, else sheets when configured."""

    backend = (requested or "").strip().lower()
    if backend:
        if backend not in BACKENDS:
            raise ValueError(f"Unknown storage backend {requested!r}; expected one of {', '.join(BACKENDS)}")
        return backend
    return BACKEND_SHEETS if spreadsheet_id else BACKEND_SQL


def load_storage_settings(
    path: Optional[str] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> StorageSettings:
    """Build settings from environment defaults overlaid with ``path``.

    Values in the JSON file win over environment variables; empty strings in
    the file are ignored.
    """

    merged = _env_defaults(os.environ if environ is None else environ)
    if path:
        for key, value in _read_settings_file(path).items():
            if key not in merged:
                continue
            if key == "default_item_limit":
                try:
                    merged[key] = max(0, int(value))
                except (TypeError, ValueError):
                    logger.warning("Invalid default_item_limit %r in %s", value, path)
            elif isinstance(value, str) and value.strip():
                merged[key] = value.strip() if key != "private_key" else value

    spreadsheet_id = str(merged["spreadsheet_id"])
    backend = resolve_backend(str(merged["backend"]), spreadsheet_id)
    database_url = str(merged["database_url"])
    if backend == BACKEND_SQL and not database_url:
        database_url = app_paths.default_database_url()

    return StorageSettings(
        backend=backend,
        database_url=database_url,
        spreadsheet_id=spreadsheet_id,
        credential_path=str(merged["credential_path"]),
        service_account_email=str(merged["service_account_email"]),
        private_key=str(merged["private_key"]),
        users_tab=str(merged["users_tab"]),
        inventory_tab=str(merged["inventory_tab"]),
        guests_tab=str(merged["guests_tab"]),
        settings_tab=str(merged["settings_tab"]),
        log_level=str(merged["log_level"]).upper(),
        default_item_limit=int(merged["default_item_limit"]),
    )


def save_storage_settings(settings: StorageSettings, path: str) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with open(path, "w", encoding="utf-8") as handle:
        json.dump(settings.to_json(), handle, indent=2)


def default_settings_path() -> str:
    return str(app_paths.data_path(SETTINGS_FILENAME))


__all__ = [
    "BACKEND_SHEETS",
    "BACKEND_SQL",
    "BACKENDS",
    "StorageSettings",
    "default_settings_path",
    "load_storage_settings",
    "resolve_backend",
    "save_storage_settings",
]
