"""Storage router: one async facade over the relational and spreadsheet backends.

The backend is picked once by :func:`build_storage` and never re-evaluated.
Callers only see entity objects from :mod:`invcore.models` and the error
types from :mod:`invcore.errors`.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Mapping, Optional, Protocol, Union

from invcore.errors import InvalidArgument, NotFound
from invcore.models import (
    DEFAULT_ITEM_LIMIT,
    Adjustment,
    CascadeResult,
    Category,
    InventoryItem,
    InventoryStats,
    Role,
    User,
    resolve_new_role,
)
from invcore.row_codec import utc_now_iso
from invcore.sheets_client import build_client
from invcore.sheets_repository import SheetsRepository, SheetTabs

logger = logging.getLogger(__name__)

_NUMERIC_ITEM_FIELDS = ("quantity", "used_quantity", "price", "min_quantity")
_NON_NEGATIVE_ITEM_FIELDS = frozenset({"quantity", "price"})


class StorageBackend(Protocol):
    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def ensure_schema(self) -> Dict[str, List[str]]: ...

    async def list_users(self) -> List[User]: ...

    async def find_user_by_username(self, username: str) -> Optional[User]: ...

    async def find_user_by_email(self, email: str) -> Optional[User]: ...

    async def find_user_or_guest(self, username: str) -> Optional[User]: ...

    async def get_account(self, user_id: str) -> Optional[User]: ...

    async def create_user(self, data: Mapping[str, Any]) -> User: ...

    async def update_user(self, user_id: str, changes: Mapping[str, Any]) -> User: ...

    async def delete_user(self, user_id: str) -> CascadeResult: ...

    async def list_guests(self, owner_id: str) -> List[User]: ...

    async def list_inventory(self, owner_id: str) -> List[InventoryItem]: ...

    async def get_item(self, item_id: str) -> Optional[InventoryItem]: ...

    async def create_item(self, owner_id: str, data: Mapping[str, Any]) -> InventoryItem: ...

    async def update_item(self, item_id: str, changes: Mapping[str, Any]) -> InventoryItem: ...

    async def adjust_quantity(self, item: InventoryItem, new_quantity: float, *, notes: str = "") -> InventoryItem: ...

    async def delete_item(self, item_id: str) -> int: ...

    async def get_stats(self, owner_id: str) -> InventoryStats: ...

    async def list_categories(self, owner_id: str) -> List[Category]: ...

    async def count_items_by_owner(self) -> Dict[str, int]: ...


def _require_text(data: Mapping[str, Any], field_name: str) -> str:
    value = str(data.get(field_name) or "").strip()
    if not value:
        raise InvalidArgument(f"{field_name} is required")
    return value


def _parse_amount(value: Any, field_name: str) -> float:
    if isinstance(value, bool):
        raise InvalidArgument(f"{field_name} must be a number, got {value!r}")
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(str(value).strip().replace(",", "."))
        except ValueError:
            raise InvalidArgument(f"{field_name} must be a number, got {value!r}") from None
    if not math.isfinite(number):
        raise InvalidArgument(f"{field_name} must be a finite number")
    return number


def _normalise_amounts(payload: Dict[str, Any]) -> None:
    """Replace numeric item fields in ``payload`` by floats, refusing anything unparseable.

    Blank values are left for the backend to default to ``0``.
    """

    for field_name in _NUMERIC_ITEM_FIELDS:
        value = payload.get(field_name)
        if value is None or value == "":
            continue
        number = _parse_amount(value, field_name)
        if field_name in _NON_NEGATIVE_ITEM_FIELDS and number < 0:
            raise InvalidArgument(f"{field_name} must not be negative")
        payload[field_name] = number


class InventoryStorage:
    """Async facade dispatching entity operations to the configured backend."""

    def __init__(
        self,
        backend: StorageBackend,
        *,
        default_item_limit: int = DEFAULT_ITEM_LIMIT,
        enforce_item_limit: bool = False,
    ) -> None:
        self._backend = backend
        self._default_item_limit = default_item_limit
        self._enforce_item_limit = enforce_item_limit

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    @property
    def backend_name(self) -> str:
        return "sheets" if isinstance(self._backend, SheetsRepository) else "sql"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        await self._backend.connect()

    async def close(self) -> None:
        await self._backend.close()

    async def __aenter__(self) -> "InventoryStorage":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def ensure_schema(self) -> Dict[str, List[str]]:
        return await self._backend.ensure_schema()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    async def get_user(self, user_id: str) -> User:
        user = await self._backend.get_account(str(user_id))
        if user is None:
            raise NotFound(f"User {user_id!r} not found")
        return user

    async def find_user_by_username(self, username: str) -> Optional[User]:
        return await self._backend.find_user_by_username(username)

    async def find_user_by_email(self, email: str) -> Optional[User]:
        return await self._backend.find_user_by_email(email)

    async def find_user_or_guest(self, username: str) -> Optional[User]:
        """Look a login name up among owners first, then among guests."""

        return await self._backend.find_user_or_guest(username)

    async def list_users(self) -> List[User]:
        return await self._backend.list_users()

    async def create_user(self, data: Mapping[str, Any]) -> User:
        payload = dict(data)
        payload["username"] = _require_text(payload, "username")
        payload["email"] = _require_text(payload, "email")
        role = resolve_new_role(payload)
        if role == Role.GUEST.value:
            await self._require_owner(str(payload["owner_id"]))
        if payload.get("item_limit") in (None, ""):
            payload["item_limit"] = self._default_item_limit
        return await self._backend.create_user(payload)

    async def update_user(self, user_id: str, changes: Mapping[str, Any]) -> User:
        for field_name in ("username", "email"):
            if field_name in changes:
                _require_text(changes, field_name)
        return await self._backend.update_user(str(user_id), changes)

    async def delete_user(self, user_id: str) -> CascadeResult:
        result = await self._backend.delete_user(str(user_id))
        if not result.complete:
            logger.warning("Cascading delete of %s left %d dependents behind", user_id, len(result.failures))
        return result

    async def record_login(self, user_id: str) -> User:
        return await self._backend.update_user(str(user_id), {"last_login": utc_now_iso()})

    async def ensure_default_admin(self, username: str, email: str, password_hash: str) -> User:
        """Create the bootstrap admin account unless the username already exists.

        ``password_hash`` is stored as given; hashing belongs to the caller.
        """

        existing = await self._backend.find_user_or_guest(username)
        if existing is not None:
            logger.info("Default admin %s already present", username)
            return existing
        admin = await self.create_user(
            {
                "username": username,
                "email": email,
                "password": password_hash,
                "role": Role.ADMIN.value,
                "has_unlimited": True,
                "is_active": True,
            }
        )
        logger.info("Created default admin %s", username)
        return admin

    # ------------------------------------------------------------------
    # Guests
    # ------------------------------------------------------------------
    async def _require_owner(self, owner_id: str) -> User:
        owner = await self.get_user(owner_id)
        if owner.is_guest:
            raise InvalidArgument("A guest cannot own guests or items")
        return owner

    async def list_guests(self, owner_id: str) -> List[User]:
        return await self._backend.list_guests(str(owner_id))

    async def create_guest(self, owner_id: str, data: Mapping[str, Any]) -> User:
        payload = dict(data)
        payload["role"] = Role.GUEST.value
        payload["owner_id"] = str(owner_id)
        return await self.create_user(payload)

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------
    async def get_inventory(self, owner_id: str) -> List[InventoryItem]:
        return await self._backend.list_inventory(str(owner_id))

    async def get_item(self, item_id: str) -> InventoryItem:
        item = await self._backend.get_item(str(item_id))
        if item is None:
            raise NotFound(f"Item {item_id!r} not found")
        return item

    async def create_item(self, owner_id: str, data: Mapping[str, Any]) -> InventoryItem:
        payload = dict(data)
        payload["name"] = _require_text(payload, "name")
        _normalise_amounts(payload)

        owner = await self._require_owner(str(owner_id))
        if self._enforce_item_limit and not (owner.has_unlimited or owner.is_admin):
            current = len(await self._backend.list_inventory(owner.id))
            if current >= owner.item_limit:
                raise InvalidArgument(f"Item limit of {owner.item_limit} reached")
        return await self._backend.create_item(owner.id, payload)

    async def update_item(self, item_id: str, changes: Mapping[str, Any]) -> InventoryItem:
        payload = dict(changes)
        if "name" in payload:
            _require_text(payload, "name")
        _normalise_amounts(payload)
        return await self._backend.update_item(str(item_id), payload)

    async def delete_item(self, item_id: str) -> int:
        return await self._backend.delete_item(str(item_id))

    async def adjust_item_quantity(
        self,
        item_id: str,
        delta: Union[int, float],
        *,
        notes: str = "",
    ) -> Adjustment:
        """Add ``delta`` to the stored quantity; a negative result is refused.

        The read and the write are separate round trips, so two concurrent
        adjustments of the same item can overwrite each other.
        """

        item = await self.get_item(item_id)
        new_quantity = item.quantity + float(delta)
        if new_quantity < 0:
            raise InvalidArgument(
                f"Adjustment of {delta} would take item {item_id} below zero ({item.quantity} in stock)"
            )
        await self._backend.adjust_quantity(item, new_quantity, notes=notes)
        return Adjustment(item_id=item.id, old_quantity=item.quantity, new_quantity=new_quantity)

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------
    async def get_stats(self, owner_id: str) -> InventoryStats:
        return await self._backend.get_stats(str(owner_id))

    async def list_categories(self, owner_id: str) -> List[Category]:
        return await self._backend.list_categories(str(owner_id))

    async def count_items_by_owner(self) -> Dict[str, int]:
        return await self._backend.count_items_by_owner()

    async def refresh_inventory_counts(self) -> Dict[str, int]:
        """Store live item counts in the workbook; relational counts are always live."""

        if isinstance(self._backend, SheetsRepository):
            return await self._backend.refresh_inventory_counts()
        return {}


def build_storage(settings) -> InventoryStorage:
    """Construct the router for ``settings`` (a :class:`settings.StorageSettings`)."""

    if settings.backend == "sheets":
        if not settings.spreadsheet_id:
            raise InvalidArgument("The sheets backend needs a spreadsheet id")
        client = build_client(
            settings.spreadsheet_id,
            settings.credential_path or None,
            service_account_email=settings.service_account_email,
            private_key=settings.private_key,
        )
        tabs = SheetTabs(
            users=settings.users_tab,
            inventory=settings.inventory_tab,
            guests=settings.guests_tab,
            settings=settings.settings_tab,
        )
        backend: StorageBackend = SheetsRepository(client, tabs)
    else:
        from db import SqlDataStore

        backend = SqlDataStore(settings.database_url)

    logger.info("Using %s storage backend", settings.backend)
    return InventoryStorage(backend, default_item_limit=settings.default_item_limit)


__all__ = ["InventoryStorage", "StorageBackend", "build_storage"]
