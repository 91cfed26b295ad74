"""Entity repository backed by a Google Sheets workbook.

Three tabs hold the data: USERS (owners and admins), GUESTS (sub-accounts
attached to an owner) and INVENTORY.  Every read fetches the whole tab and
decodes it through the header row actually present, so filtering happens
client side.  Rows are addressed by their 1-based sheet row number, which is
only valid until the next structural delete on that tab; it never leaves this
module.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from invcore.errors import Conflict, InvalidArgument, NotFound, StorageError
from invcore.models import (
    DEFAULT_ITEM_LIMIT,
    DEFAULT_UNIT,
    CascadeResult,
    Category,
    InventoryItem,
    InventoryStats,
    Permission,
    Role,
    User,
    resolve_new_role,
)
from invcore.row_codec import (
    GUESTS_SCHEMA,
    GUEST_ID_PREFIX,
    INVENTORY_SCHEMA,
    ITEM_ID_PREFIX,
    USERS_SCHEMA,
    USER_ID_PREFIX,
    DecodedRow,
    SheetSchema,
    decode_row,
    encode_row,
    generate_id,
    utc_now_iso,
)
from invcore.sheets_client import GoogleSheetsClient, column_letter

logger = logging.getLogger(__name__)

# Fields callers may not change through an update.
_USER_IMMUTABLE = frozenset({"id", "created_at", "inv_used"})
_GUEST_IMMUTABLE = frozenset({"id", "created_at", "owner_id"})
_ITEM_IMMUTABLE = frozenset({"id", "user_id", "created_at", "total_value"})

# Guest rows carry no limit columns; these values are implied.
_GUEST_IMPLIED_FIELDS = frozenset({"item_limit", "has_unlimited", "inv_used"})

# Flag written when a dependent row cannot be removed during a cascade.
_ACTIVE_FIELD = {INVENTORY_SCHEMA.name: "active", GUESTS_SCHEMA.name: "is_active"}


@dataclass(frozen=True)
class SheetTabs:
    users: str = "USERS"
    inventory: str = "INVENTORY"
    guests: str = "GUESTS"
    settings: str = "SETTINGS"


@dataclass
class LocatedRow:
    """A decoded data row together with its 1-based sheet row number."""

    row_number: int
    raw: List[str]
    decoded: DecodedRow

    @property
    def values(self) -> Dict[str, Any]:
        return self.decoded.values


@dataclass
class TabSnapshot:
    tab: str
    schema: SheetSchema
    headers: List[str]
    rows: List[LocatedRow] = field(default_factory=list)
    has_header_row: bool = True

    def find(self, predicate: Callable[[Dict[str, Any]], bool]) -> Optional[LocatedRow]:
        for row in self.rows:
            if predicate(row.values):
                return row
        return None

    def select(self, predicate: Callable[[Dict[str, Any]], bool]) -> List[LocatedRow]:
        return [row for row in self.rows if predicate(row.values)]


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _row_range(row_number: int, width: int) -> str:
    return f"A{row_number}:{column_letter(max(1, width))}{row_number}"


# ----------------------------------------------------------------------
# Entity conversion
# ----------------------------------------------------------------------
def user_from_row(decoded: DecodedRow) -> User:
    values = decoded.values
    return User(
        id=_text(values.get("id")),
        username=_text(values.get("username")),
        email=_text(values.get("email")),
        password=_text(values.get("password")),
        role=_text(values.get("role")) or Role.OWNER.value,
        owner_id=_text(values.get("owner_id")) or None,
        item_limit=int(values.get("item_limit", DEFAULT_ITEM_LIMIT)),
        has_unlimited=bool(values.get("has_unlimited", False)),
        is_active=bool(values.get("is_active", True)),
        created_at=_text(values.get("created_at")),
        last_login=_text(values.get("last_login")) or None,
        inv_used=int(values.get("inv_used", 0)),
        defaulted_fields=decoded.defaulted,
    )


def guest_from_row(decoded: DecodedRow) -> User:
    values = decoded.values
    return User(
        id=_text(values.get("id")),
        username=_text(values.get("username")),
        email=_text(values.get("email")),
        password=_text(values.get("password")),
        role=Role.GUEST.value,
        owner_id=_text(values.get("owner_id")) or None,
        item_limit=DEFAULT_ITEM_LIMIT,
        has_unlimited=False,
        is_active=bool(values.get("is_active", False)),
        created_at=_text(values.get("created_at")),
        last_login=_text(values.get("last_login")) or None,
        permission=_text(values.get("permission")) or Permission.READ_ONLY.value,
        defaulted_fields=decoded.defaulted | _GUEST_IMPLIED_FIELDS,
    )


def item_from_row(decoded: DecodedRow) -> InventoryItem:
    values = decoded.values
    return InventoryItem(
        id=_text(values.get("id")),
        user_id=_text(values.get("user_id")),
        name=_text(values.get("name")),
        description=_text(values.get("description")),
        category=_text(values.get("category")),
        sku=_text(values.get("sku")),
        quantity=float(values.get("quantity", 0.0)),
        used_quantity=float(values.get("used_quantity", 0.0)),
        unit=_text(values.get("unit")) or DEFAULT_UNIT,
        price=float(values.get("price", 0.0)),
        location=_text(values.get("location")),
        min_quantity=float(values.get("min_quantity", 0.0)),
        active=bool(values.get("active", False)),
        created_at=_text(values.get("created_at")),
        updated_at=_text(values.get("updated_at")),
        defaulted_fields=decoded.defaulted | {"image_url"},
    )


class SheetsRepository:
    """Users, guests and inventory CRUD on top of the row codec and gateway."""

    def __init__(self, client: GoogleSheetsClient, tabs: Optional[SheetTabs] = None) -> None:
        self._client = client
        self._tabs = tabs or SheetTabs()

    @property
    def client(self) -> GoogleSheetsClient:
        return self._client

    @property
    def tabs(self) -> SheetTabs:
        return self._tabs

    async def connect(self) -> None:
        await self._client.connect()

    async def close(self) -> None:
        await self._client.close()

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------
    async def _snapshot(self, tab: str, schema: SheetSchema) -> TabSnapshot:
        data = await self._client.read(tab)
        if not data:
            return TabSnapshot(tab=tab, schema=schema, headers=schema.headers(), has_header_row=False)
        headers = [_text(header).strip() for header in data[0]]
        rows: List[LocatedRow] = []
        for position, raw in enumerate(data[1:], start=1):
            if not any(_text(cell).strip() for cell in raw):
                continue
            rows.append(
                LocatedRow(
                    row_number=position + 1,
                    raw=list(raw),
                    decoded=decode_row(schema, headers, raw),
                )
            )
        return TabSnapshot(tab=tab, schema=schema, headers=headers, rows=rows)

    async def _users(self) -> TabSnapshot:
        return await self._snapshot(self._tabs.users, USERS_SCHEMA)

    async def _guests(self) -> TabSnapshot:
        return await self._snapshot(self._tabs.guests, GUESTS_SCHEMA)

    async def _inventory(self) -> TabSnapshot:
        return await self._snapshot(self._tabs.inventory, INVENTORY_SCHEMA)

    async def _write_headers_if_missing(self, snapshot: TabSnapshot) -> None:
        if snapshot.has_header_row:
            return
        headers = snapshot.schema.headers()
        await self._client.write(snapshot.tab, _row_range(1, len(headers)), [headers])
        snapshot.has_header_row = True

    async def _locate_account(self, user_id: str) -> Tuple[TabSnapshot, LocatedRow]:
        users = await self._users()
        match = users.find(lambda values: values.get("id") == user_id)
        if match is not None:
            return users, match
        guests = await self._guests()
        match = guests.find(lambda values: values.get("id") == user_id)
        if match is not None:
            return guests, match
        raise NotFound(f"User or guest {user_id!r} not found")

    # ------------------------------------------------------------------
    # Users and guests
    # ------------------------------------------------------------------
    async def list_users(self) -> List[User]:
        users = await self._users()
        return [user_from_row(row.decoded) for row in users.rows]

    async def find_user_by_id(self, user_id: str) -> Optional[User]:
        users = await self._users()
        match = users.find(lambda values: values.get("id") == user_id)
        return user_from_row(match.decoded) if match else None

    async def find_user_by_username(self, username: str) -> Optional[User]:
        users = await self._users()
        match = users.find(lambda values: values.get("username") == username)
        return user_from_row(match.decoded) if match else None

    async def find_user_by_email(self, email: str) -> Optional[User]:
        users = await self._users()
        match = users.find(lambda values: values.get("email") == email)
        if match is not None:
            return user_from_row(match.decoded)
        guests = await self._guests()
        match = guests.find(lambda values: values.get("email") == email)
        return guest_from_row(match.decoded) if match else None

    async def find_guest_by_id(self, guest_id: str) -> Optional[User]:
        guests = await self._guests()
        match = guests.find(lambda values: values.get("id") == guest_id)
        return guest_from_row(match.decoded) if match else None

    async def find_guest_by_username(self, username: str) -> Optional[User]:
        guests = await self._guests()
        match = guests.find(lambda values: values.get("username") == username)
        return guest_from_row(match.decoded) if match else None

    async def find_user_or_guest(self, username: str) -> Optional[User]:
        user = await self.find_user_by_username(username)
        if user is not None:
            return user
        return await self.find_guest_by_username(username)

    async def get_account(self, user_id: str) -> Optional[User]:
        user = await self.find_user_by_id(user_id)
        if user is not None:
            return user
        return await self.find_guest_by_id(user_id)

    async def _check_unique(
        self,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> None:
        for snapshot in (await self._users(), await self._guests()):
            for row in snapshot.rows:
                values = row.values
                if exclude_id is not None and values.get("id") == exclude_id:
                    continue
                if username and values.get("username") == username:
                    raise Conflict(f"Username {username!r} is already taken")
                if email and values.get("email") == email:
                    raise Conflict(f"Email {email!r} is already registered")

    async def create_user(self, data: Mapping[str, Any]) -> User:
        """Append a user, or a guest when ``data["role"]`` is ``guest``."""

        username = _text(data.get("username")).strip()
        email = _text(data.get("email")).strip()
        role = resolve_new_role(data)

        await self._check_unique(username=username, email=email)
        timestamp = utc_now_iso()

        if role == Role.GUEST.value:
            snapshot = await self._guests()
            values: Dict[str, Any] = {
                "owner_id": _text(data.get("owner_id")).strip(),
                "id": generate_id(GUEST_ID_PREFIX),
                "username": username,
                "email": email,
                "password": _text(data.get("password")),
                "created_at": timestamp,
                "is_active": data.get("is_active", True),
                "permission": Permission.parse(data.get("permission")).value,
                "last_login": "",
            }
            converter = guest_from_row
        else:
            snapshot = await self._users()
            item_limit = data.get("item_limit")
            values = {
                "username": username,
                "password": _text(data.get("password")),
                "email": email,
                "id": generate_id(USER_ID_PREFIX),
                "inv_used": 0,
                "has_unlimited": bool(data.get("has_unlimited", False)),
                "created_at": timestamp,
                "last_login": "",
                "is_active": data.get("is_active", True),
                "role": role,
                "owner_id": _text(data.get("owner_id")),
                "item_limit": DEFAULT_ITEM_LIMIT if item_limit in (None, "") else item_limit,
            }
            converter = user_from_row

        await self._write_headers_if_missing(snapshot)
        row = encode_row(snapshot.schema, values, headers=snapshot.headers)
        await self._client.append(snapshot.tab, [row])
        created = converter(decode_row(snapshot.schema, snapshot.headers, row))
        logger.info("Created %s %s (%s)", created.role, created.id, created.username)
        return created

    async def update_user(self, user_id: str, changes: Mapping[str, Any]) -> User:
        snapshot, located = await self._locate_account(user_id)
        is_guest = snapshot.schema is GUESTS_SCHEMA
        immutable = _GUEST_IMMUTABLE if is_guest else _USER_IMMUTABLE

        values: Dict[str, Any] = {}
        for key, value in changes.items():
            if key in immutable:
                continue
            if snapshot.schema.column_for_field(key) is None:
                logger.debug("Ignoring unknown %s field %r", snapshot.schema.name, key)
                continue
            values[key] = value
        if "permission" in values:
            values["permission"] = Permission.parse(values["permission"]).value
        if "role" in values:
            # Moving an account between tabs is not supported.
            if values["role"] == Role.GUEST.value:
                raise InvalidArgument("An owner account cannot be turned into a guest")
            resolve_new_role({"role": values["role"], "owner_id": values.get("owner_id", located.values.get("owner_id"))})

        username = values.get("username")
        email = values.get("email")
        if username is not None and username != located.values.get("username"):
            await self._check_unique(username=username, exclude_id=user_id)
        if email is not None and email != located.values.get("email"):
            await self._check_unique(email=email, exclude_id=user_id)

        merged = await self._merge_write(snapshot, located, values)
        converter = guest_from_row if is_guest else user_from_row
        return converter(decode_row(snapshot.schema, snapshot.headers, merged))

    async def delete_user(self, user_id: str) -> CascadeResult:
        """Delete an account; for an owner, first its items and guests.

        Dependent rows are removed one request at a time from the bottom of
        each tab upwards.  A failing dependent is recorded and skipped; a
        failure to remove the account row itself propagates.
        """

        users = await self._users()
        located = users.find(lambda values: values.get("id") == user_id)
        if located is None:
            guests = await self._guests()
            guest = guests.find(lambda values: values.get("id") == user_id)
            if guest is None:
                return CascadeResult(changes=0)
            await self._delete_row(guests.tab, guest.row_number)
            logger.info("Deleted guest %s", user_id)
            return CascadeResult(changes=1)

        result = CascadeResult()
        inventory = await self._inventory()
        owned_items = inventory.select(lambda values: values.get("user_id") == user_id)
        result.deleted_items = await self._delete_dependents(inventory, owned_items, "item", result)

        guests = await self._guests()
        owned_guests = guests.select(lambda values: values.get("owner_id") == user_id)
        result.deleted_guests = await self._delete_dependents(guests, owned_guests, "guest", result)

        await self._delete_row(users.tab, located.row_number)
        result.changes = 1
        logger.info(
            "Deleted user %s with %d items and %d guests (%d failures)",
            user_id,
            result.deleted_items,
            result.deleted_guests,
            len(result.failures),
        )
        return result

    async def _delete_dependents(
        self,
        snapshot: TabSnapshot,
        rows: Iterable[LocatedRow],
        kind: str,
        result: CascadeResult,
    ) -> int:
        """Remove ``rows`` bottom-up; a row that cannot be removed is deactivated.

        Deleting from the bottom keeps the row numbers of the rows still
        pending valid.  A row left behind is listed in ``result.failures``
        either way; deactivating it keeps it out of the owner's listings.
        """

        flag = _ACTIVE_FIELD[snapshot.schema.name]
        deleted = 0
        sheet_id: Optional[int] = None
        for row in sorted(rows, key=lambda located: located.row_number, reverse=True):
            dependent_id = _text(row.values.get("id"))
            try:
                if sheet_id is None:
                    sheet_id = await self._client.sheet_id_for(snapshot.tab)
                await self._client.delete_rows(sheet_id, row.row_number - 1, row.row_number)
            except StorageError as exc:
                logger.warning("Failed to delete %s %s: %s", kind, dependent_id, exc)
                message = str(exc)
                try:
                    await self._merge_write(snapshot, row, {flag: False})
                except StorageError as fallback_exc:
                    logger.error("Failed to deactivate %s %s: %s", kind, dependent_id, fallback_exc)
                    message = f"{message}; deactivation failed: {fallback_exc}"
                else:
                    message = f"{message}; row deactivated"
                result.failures.append((kind, dependent_id, message))
                continue
            deleted += 1
        return deleted

    async def list_guests(self, owner_id: str) -> List[User]:
        guests = await self._guests()
        matches = guests.select(
            lambda values: values.get("owner_id") == owner_id and values.get("is_active") is True
        )
        return [guest_from_row(row.decoded) for row in matches]

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------
    async def list_inventory(self, owner_id: str) -> List[InventoryItem]:
        inventory = await self._inventory()
        matches = inventory.select(
            lambda values: values.get("user_id") == owner_id and values.get("active") is True
        )
        return [item_from_row(row.decoded) for row in matches]

    async def get_item(self, item_id: str) -> Optional[InventoryItem]:
        inventory = await self._inventory()
        match = inventory.find(lambda values: values.get("id") == item_id)
        return item_from_row(match.decoded) if match else None

    async def create_item(self, owner_id: str, data: Mapping[str, Any]) -> InventoryItem:
        snapshot = await self._inventory()
        timestamp = utc_now_iso()
        values: Dict[str, Any] = {
            "user_id": owner_id,
            "description": _text(data.get("description")),
            "name": _text(data.get("name")),
            "category": _text(data.get("category")),
            "sku": _text(data.get("sku")),
            "quantity": data.get("quantity") or 0,
            "used_quantity": data.get("used_quantity") or 0,
            "unit": _text(data.get("unit")) or DEFAULT_UNIT,
            "price": data.get("price") or 0,
            "location": _text(data.get("location")),
            "min_quantity": data.get("min_quantity") or 0,
            "id": generate_id(ITEM_ID_PREFIX),
            "created_at": timestamp,
            "updated_at": timestamp,
            "active": True,
        }
        await self._write_headers_if_missing(snapshot)
        row = encode_row(INVENTORY_SCHEMA, values, headers=snapshot.headers)
        await self._client.append(snapshot.tab, [row])
        created = item_from_row(decode_row(INVENTORY_SCHEMA, snapshot.headers, row))
        logger.info("Created item %s for %s", created.id, owner_id)
        return created

    async def update_item(self, item_id: str, changes: Mapping[str, Any]) -> InventoryItem:
        snapshot = await self._inventory()
        located = snapshot.find(lambda values: values.get("id") == item_id)
        if located is None:
            raise NotFound(f"Item {item_id!r} not found")

        values = {
            key: value
            for key, value in changes.items()
            if key not in _ITEM_IMMUTABLE and INVENTORY_SCHEMA.column_for_field(key) is not None
        }
        values.setdefault("updated_at", utc_now_iso())
        merged = await self._merge_write(snapshot, located, values)
        return item_from_row(decode_row(INVENTORY_SCHEMA, snapshot.headers, merged))

    async def adjust_quantity(self, item: InventoryItem, new_quantity: float, *, notes: str = "") -> InventoryItem:
        """Persist ``new_quantity``; the workbook keeps no transaction log."""

        logger.info("Adjusting item %s from %s to %s", item.id, item.quantity, new_quantity)
        return await self.update_item(item.id, {"quantity": new_quantity})

    async def delete_item(self, item_id: str) -> int:
        snapshot = await self._inventory()
        located = snapshot.find(lambda values: values.get("id") == item_id)
        if located is None:
            return 0
        await self._delete_row(snapshot.tab, located.row_number)
        logger.info("Deleted item %s", item_id)
        return 1

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------
    async def get_stats(self, owner_id: str) -> InventoryStats:
        return InventoryStats.from_items(await self.list_inventory(owner_id))

    async def list_categories(self, owner_id: str) -> List[Category]:
        counts = Counter(item.category for item in await self.list_inventory(owner_id) if item.category)
        return [Category(name=name, user_id=owner_id, item_count=counts[name]) for name in sorted(counts)]

    async def count_items_by_owner(self) -> Dict[str, int]:
        inventory = await self._inventory()
        counts: Counter = Counter()
        for row in inventory.rows:
            if row.values.get("active") is True:
                counts[_text(row.values.get("user_id"))] += 1
        return dict(counts)

    async def refresh_inventory_counts(self) -> Dict[str, int]:
        """Write live per-owner active item counts into ``INV_USED``.

        Returns the users whose stored count changed, with the new count.
        """

        counts = await self.count_items_by_owner()
        users = await self._users()
        position = USERS_SCHEMA.position("inv_used", users.headers)
        if position is None:
            logger.warning("Tab %s has no INV_USED column; counts not stored", users.tab)
            return {}

        letter = column_letter(position + 1)
        changed: Dict[str, int] = {}
        for row in users.rows:
            user_id = _text(row.values.get("id"))
            live = counts.get(user_id, 0)
            stored = row.raw[position] if position < len(row.raw) else ""
            if stored == str(live):
                continue
            await self._client.write(users.tab, f"{letter}{row.row_number}", [[str(live)]])
            changed[user_id] = live
        if changed:
            logger.info("Refreshed inventory counts for %d users", len(changed))
        return changed

    # ------------------------------------------------------------------
    # Schema bootstrap
    # ------------------------------------------------------------------
    async def ensure_schema(self) -> Dict[str, List[str]]:
        """Create missing tabs and header rows.

        Returns, per tab, the canonical headers missing from a tab that
        already had a header row.  Existing headers are never rewritten.
        """

        layouts = (
            (self._tabs.users, USERS_SCHEMA),
            (self._tabs.guests, GUESTS_SCHEMA),
            (self._tabs.inventory, INVENTORY_SCHEMA),
        )
        existing = {info.title for info in await self._client.get_metadata()}
        wanted = [tab for tab, _ in layouts] + [self._tabs.settings]
        missing_tabs = [tab for tab in wanted if tab not in existing]
        if missing_tabs:
            await self._client.add_tabs(missing_tabs)
            logger.info("Created tabs: %s", ", ".join(missing_tabs))

        report: Dict[str, List[str]] = {}
        for tab, schema in layouts:
            data = await self._client.read(tab, "1:1")
            headers = [_text(header).strip() for header in (data[0] if data else [])]
            if not any(headers):
                canonical = schema.headers()
                await self._client.write(tab, _row_range(1, len(canonical)), [canonical])
                continue
            absent = [header for header in schema.headers() if header not in headers]
            if absent:
                logger.warning("Tab %s is missing headers: %s", tab, ", ".join(absent))
                report[tab] = absent
        return report

    # ------------------------------------------------------------------
    # Row helpers
    # ------------------------------------------------------------------
    async def _merge_write(
        self,
        snapshot: TabSnapshot,
        located: LocatedRow,
        values: Mapping[str, Any],
    ) -> List[str]:
        width = len(snapshot.headers)
        cell_range = _row_range(located.row_number, width)
        current = await self._client.read(snapshot.tab, cell_range)
        fresh = list(current[0]) if current else []
        expected_id = _text(located.values.get("id")).strip()
        id_position = snapshot.schema.position("id", snapshot.headers)
        if id_position is not None:
            found_id = fresh[id_position] if id_position < len(fresh) else ""
            if found_id.strip() != expected_id:
                # Rows shifted since the snapshot was taken.
                raise NotFound(
                    f"Row {located.row_number} of {snapshot.tab} no longer holds {expected_id!r}"
                )
        previous = fresh or list(located.raw)
        previous.extend([""] * (width - len(previous)))
        merged = encode_row(snapshot.schema, values, headers=snapshot.headers, previous=previous)
        await self._client.write(snapshot.tab, cell_range, [merged])
        return merged

    async def _delete_row(self, tab: str, row_number: int) -> None:
        sheet_id = await self._client.sheet_id_for(tab)
        await self._client.delete_rows(sheet_id, row_number - 1, row_number)


__all__ = [
    "LocatedRow",
    "SheetTabs",
    "SheetsRepository",
    "TabSnapshot",
    "guest_from_row",
    "item_from_row",
    "user_from_row",
]
