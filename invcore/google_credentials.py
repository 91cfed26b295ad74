"""Helpers for validating and normalising Google service account credentials."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Sequence

from google.oauth2 import service_account

__all__ = [
    "CredentialsFileInvalidError",
    "REQUIRED_FIELDS",
    "TOKEN_URI",
    "credentials_from_env",
    "load_credentials",
    "load_service_account_data",
]

TOKEN_URI = "https://oauth2.googleapis.com/token"


class CredentialsFileInvalidError(Exception):
    """Raised when service account credentials are missing required data."""


REQUIRED_FIELDS: Iterable[str] = (
    "type",
    "project_id",
    "private_key_id",
    "private_key",
    "client_email",
    "client_id",
    "token_uri",
)


def _normalise_private_key(key: str) -> str:
    # Keys pasted into environment variables usually carry literal "\n".
    key = key.replace("\r\n", "\n").replace("\r", "\n")
    key = key.replace("\\n", "\n")
    if not key.endswith("\n"):
        key += "\n"
    return key


def _load_json(path: Path) -> Mapping[str, object]:
    try:
        with path.open("r", encoding="utf-8-sig") as handle:
            raw = handle.read()
    except OSError as exc:
        raise CredentialsFileInvalidError(f"Could not read JSON file: {exc}") from exc

    payload_text = raw.lstrip("\ufeff").strip()
    if not payload_text:
        raise CredentialsFileInvalidError("Service account JSON is empty.")

    try:
        return json.loads(payload_text)
    except json.JSONDecodeError as exc:
        raise CredentialsFileInvalidError(f"JSON parse error: {exc.msg}") from exc


def _validate_payload(payload: Mapping[str, object]) -> Dict[str, object]:
    data: Dict[str, object] = dict(payload)
    missing: list[str] = []

    for field in REQUIRED_FIELDS:
        value = data.get(field)
        if not isinstance(value, str) or not value.strip():
            missing.append(field)

    if data.get("type") != "service_account":
        missing.append("type")

    if missing:
        ordered = ", ".join(sorted(dict.fromkeys(missing)))
        raise CredentialsFileInvalidError(f"JSON missing fields: {ordered}")

    data["private_key"] = _normalise_private_key(str(data["private_key"]))
    return data


def load_service_account_data(path: Path) -> Dict[str, object]:
    """Return validated service account data without modifying ``path``."""

    return _validate_payload(_load_json(path))


def credentials_from_env(
    service_account_email: str,
    private_key: str,
    *,
    scopes: Sequence[str],
) -> service_account.Credentials:
    """Build credentials from a client email and a PEM key held in settings."""

    email = (service_account_email or "").strip()
    key = (private_key or "").strip()
    if not email or not key:
        raise CredentialsFileInvalidError(
            "Both a service account email and a private key are required."
        )
    info = {
        "type": "service_account",
        "client_email": email,
        "private_key": _normalise_private_key(key),
        "token_uri": TOKEN_URI,
    }
    try:
        return service_account.Credentials.from_service_account_info(info, scopes=list(scopes))
    except ValueError as exc:
        raise CredentialsFileInvalidError(f"Invalid private key: {exc}") from exc


def load_credentials(
    credential_path: Optional[str],
    *,
    service_account_email: str = "",
    private_key: str = "",
    scopes: Sequence[str],
) -> service_account.Credentials:
    """Return service account credentials from a JSON file or inline settings.

    A configured ``credential_path`` wins over the inline email/key pair.
    """

    if credential_path:
        path = Path(credential_path).expanduser()
        if not path.exists():
            raise CredentialsFileInvalidError(f"Credentials file not found: {path}")
        data = load_service_account_data(path)
        try:
            return service_account.Credentials.from_service_account_info(data, scopes=list(scopes))
        except ValueError as exc:
            raise CredentialsFileInvalidError(f"Invalid service account data: {exc}") from exc

    return credentials_from_env(service_account_email, private_key, scopes=scopes)
