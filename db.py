"""Relational data access layer (SQLite file or PostgreSQL) built on SQLAlchemy Core."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, TypeVar

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError

from invcore.errors import Conflict, Internal, InvalidArgument, NotFound, StorageError, Unavailable
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
from invcore.row_codec import utc_now_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------
metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password", String(255), nullable=False, default=""),
    Column("role", String(50), nullable=False, default=Role.OWNER.value),
    Column("owner_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True),
    Column("item_limit", Integer, nullable=False, default=DEFAULT_ITEM_LIMIT),
    Column("has_unlimited", Boolean, nullable=False, default=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("permission", String(50), nullable=True),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32), nullable=True),
)

inventory_items = Table(
    "inventory_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("category", String(255), nullable=False, default=""),
    Column("sku", String(255), nullable=False, default=""),
    Column("quantity", Float, nullable=False, default=0),
    Column("used_quantity", Float, nullable=False, default=0),
    Column("unit", String(50), nullable=False, default=DEFAULT_UNIT),
    Column("price", Float, nullable=False, default=0),
    Column("location", String(255), nullable=False, default=""),
    Column("min_quantity", Float, nullable=False, default=0),
    Column("image_url", Text, nullable=False, default=""),
    Column("active", Boolean, nullable=False, default=True),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Index("idx_inventory_user", "user_id"),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("color", String(7), nullable=False, default="#667eea"),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("user_id", "name", name="uq_categories_user_name"),
    Index("idx_categories_user", "user_id"),
)

inventory_transactions = Table(
    "inventory_transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("item_id", Integer, ForeignKey("inventory_items.id", ondelete="CASCADE"), nullable=False),
    Column("type", String(50), nullable=False),
    Column("quantity_change", Float),
    Column("old_quantity", Float),
    Column("new_quantity", Float),
    Column("notes", Text),
    Column("created_at", String(32), nullable=False),
    CheckConstraint("type IN ('add', 'remove', 'update', 'adjust')", name="ck_transactions_type"),
    Index("idx_transactions_user", "user_id"),
    Index("idx_transactions_item", "item_id"),
)

USER_UPDATE_FIELDS = frozenset(
    {"username", "email", "password", "role", "item_limit", "has_unlimited", "is_active", "permission", "last_login"}
)
ITEM_UPDATE_FIELDS = frozenset(
    {
        "name",
        "description",
        "category",
        "sku",
        "quantity",
        "used_quantity",
        "unit",
        "price",
        "location",
        "min_quantity",
        "image_url",
        "active",
        "updated_at",
    }
)


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------
def _parse_id(value: Any) -> Optional[int]:
    """Return ``value`` as a row id, ``None`` when it cannot be one."""

    text = str(value if value is not None else "").strip()
    if not text.isdigit():
        return None
    return int(text)


def _coerce_float(value: Any, *, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(str(value).replace(",", "."))
    except (TypeError, ValueError):
        raise InvalidArgument(f"Expected a number, got {value!r}") from None


def _coerce_int(value: Any, *, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "y", "active"}:
            return True
        if lowered in {"0", "false", "no", "n", "inactive", ""}:
            return False
    return bool(value)


def _user_from_row(row: Mapping[str, Any]) -> User:
    is_guest = row["role"] == Role.GUEST.value
    return User(
        id=str(row["id"]),
        username=row["username"],
        email=row["email"],
        password=row["password"] or "",
        role=row["role"] or Role.OWNER.value,
        owner_id=str(row["owner_id"]) if row["owner_id"] is not None else None,
        item_limit=row["item_limit"] if row["item_limit"] is not None else DEFAULT_ITEM_LIMIT,
        has_unlimited=bool(row["has_unlimited"]),
        is_active=bool(row["is_active"]),
        created_at=row["created_at"] or "",
        last_login=row["last_login"] or None,
        permission=(row["permission"] or Permission.READ_ONLY.value) if is_guest else None,
        defaulted_fields=frozenset({"inv_used"}),
    )


def _item_from_row(row: Mapping[str, Any]) -> InventoryItem:
    return InventoryItem(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        name=row["name"],
        description=row["description"] or "",
        category=row["category"] or "",
        sku=row["sku"] or "",
        quantity=float(row["quantity"] or 0),
        used_quantity=float(row["used_quantity"] or 0),
        unit=row["unit"] or DEFAULT_UNIT,
        price=float(row["price"] or 0),
        location=row["location"] or "",
        min_quantity=float(row["min_quantity"] or 0),
        image_url=row["image_url"] or "",
        active=bool(row["active"]),
        created_at=row["created_at"] or "",
        updated_at=row["updated_at"] or "",
    )


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


class SqlDataStore:
    """Entity operations against a relational database.

    Every public coroutine runs its statements in a worker thread inside a
    short transaction of its own.  Multi-step operations such as the
    cascading user delete are sequences of such transactions.
    """

    def __init__(self, database_url: str, *, echo: bool = False) -> None:
        self._database_url = database_url
        self._echo = echo
        self._engine: Optional[Engine] = None

    @property
    def database_url(self) -> str:
        return self._database_url

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        if self._engine is not None:
            return
        self._engine = await asyncio.to_thread(self._create_engine)
        await self.ensure_schema()
        logger.info("Connected to %s database", self._engine.dialect.name)

    def _create_engine(self) -> Engine:
        url = make_url(self._database_url)
        if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
            Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(url, echo=self._echo, pool_pre_ping=True)
        if engine.dialect.name == "sqlite":
            event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    async def close(self) -> None:
        engine, self._engine = self._engine, None
        if engine is not None:
            await asyncio.to_thread(engine.dispose)

    async def ensure_schema(self) -> Dict[str, List[str]]:
        """Create missing tables; relational tables never lack columns here."""

        await self._run(lambda conn: metadata.create_all(conn))
        return {}

    async def _run(self, work: Callable[[Connection], T]) -> T:
        engine = self._engine
        if engine is None:
            raise Unavailable("Database is not connected")

        def _transaction() -> T:
            with engine.begin() as conn:
                return work(conn)

        try:
            return await asyncio.to_thread(_transaction)
        except IntegrityError as exc:
            raise Conflict(f"Constraint violated: {exc.orig}") from exc
        except OperationalError as exc:
            logger.warning("Database unavailable: %s", exc)
            raise Unavailable(str(exc)) from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                raise Unavailable(str(exc)) from exc
            raise Internal(str(exc)) from exc
        except SQLAlchemyError as exc:
            raise Internal(str(exc)) from exc

    # ------------------------------------------------------------------
    # Users and guests
    # ------------------------------------------------------------------
    async def list_users(self) -> List[User]:
        rows = await self._run(
            lambda conn: conn.execute(
                select(users).where(users.c.role != Role.GUEST.value).order_by(users.c.id)
            ).mappings().all()
        )
        return [_user_from_row(row) for row in rows]

    async def _fetch_user(self, *conditions) -> Optional[User]:
        row = await self._run(
            lambda conn: conn.execute(select(users).where(*conditions).limit(1)).mappings().first()
        )
        return _user_from_row(row) if row else None

    async def find_user_by_id(self, user_id: str) -> Optional[User]:
        row_id = _parse_id(user_id)
        if row_id is None:
            return None
        return await self._fetch_user(users.c.id == row_id, users.c.role != Role.GUEST.value)

    async def find_user_by_username(self, username: str) -> Optional[User]:
        return await self._fetch_user(users.c.username == username, users.c.role != Role.GUEST.value)

    async def find_user_by_email(self, email: str) -> Optional[User]:
        return await self._fetch_user(users.c.email == email)

    async def find_guest_by_id(self, guest_id: str) -> Optional[User]:
        row_id = _parse_id(guest_id)
        if row_id is None:
            return None
        return await self._fetch_user(users.c.id == row_id, users.c.role == Role.GUEST.value)

    async def find_guest_by_username(self, username: str) -> Optional[User]:
        return await self._fetch_user(users.c.username == username, users.c.role == Role.GUEST.value)

    async def find_user_or_guest(self, username: str) -> Optional[User]:
        return await self._fetch_user(users.c.username == username)

    async def get_account(self, user_id: str) -> Optional[User]:
        row_id = _parse_id(user_id)
        if row_id is None:
            return None
        return await self._fetch_user(users.c.id == row_id)

    async def create_user(self, data: Mapping[str, Any]) -> User:
        role = resolve_new_role(data)
        owner_id: Optional[int] = None
        if data.get("owner_id") not in (None, ""):
            owner_id = _parse_id(data.get("owner_id"))
            if owner_id is None:
                raise NotFound(f"Owner {data.get('owner_id')!r} not found")
        values = {
            "username": str(data.get("username") or "").strip(),
            "email": str(data.get("email") or "").strip(),
            "password": str(data.get("password") or ""),
            "role": role,
            "owner_id": owner_id,
            "item_limit": _coerce_int(data.get("item_limit"), default=DEFAULT_ITEM_LIMIT),
            "has_unlimited": _coerce_bool(data.get("has_unlimited", False)),
            "is_active": _coerce_bool(data.get("is_active", True)),
            "permission": Permission.parse(data.get("permission")).value if role == Role.GUEST.value else None,
            "created_at": utc_now_iso(),
            "last_login": None,
        }
        new_id = await self._run(
            lambda conn: conn.execute(users.insert().values(**values)).inserted_primary_key[0]
        )
        logger.info("Created %s %s (%s)", role, new_id, values["username"])
        created = await self.get_account(str(new_id))
        if created is None:
            raise Internal(f"User {new_id} vanished after insert")
        return created

    async def update_user(self, user_id: str, changes: Mapping[str, Any]) -> User:
        current = await self.get_account(user_id)
        if current is None:
            raise NotFound(f"User or guest {user_id!r} not found")

        values: Dict[str, Any] = {}
        for key, value in changes.items():
            if key not in USER_UPDATE_FIELDS:
                continue
            if key in {"has_unlimited", "is_active"}:
                value = _coerce_bool(value)
            elif key == "item_limit":
                value = _coerce_int(value, default=DEFAULT_ITEM_LIMIT)
            elif key == "permission":
                if not current.is_guest:
                    continue
                value = Permission.parse(value).value
            values[key] = value
        if "role" in values:
            if current.is_guest or values["role"] == Role.GUEST.value:
                raise InvalidArgument("Moving an account between owner and guest is not supported")
            resolve_new_role({"role": values["role"], "owner_id": current.owner_id})
        if values:
            row_id = int(current.id)
            await self._run(lambda conn: conn.execute(users.update().where(users.c.id == row_id).values(**values)))
        updated = await self.get_account(user_id)
        if updated is None:
            raise NotFound(f"User or guest {user_id!r} not found")
        return updated

    async def delete_user(self, user_id: str) -> CascadeResult:
        """Delete an account, first removing an owner's items and guests one by one."""

        account = await self.get_account(user_id)
        if account is None:
            return CascadeResult(changes=0)
        row_id = int(account.id)
        result = CascadeResult()

        if not account.is_guest:
            item_ids = await self._run(
                lambda conn: conn.execute(
                    select(inventory_items.c.id).where(inventory_items.c.user_id == row_id)
                ).scalars().all()
            )
            for item_id in item_ids:
                try:
                    await self._delete_by_id(inventory_items, item_id)
                except StorageError as exc:
                    logger.warning("Failed to delete item %s: %s", item_id, exc)
                    result.failures.append(("item", str(item_id), str(exc)))
                    continue
                result.deleted_items += 1

            guest_ids = await self._run(
                lambda conn: conn.execute(
                    select(users.c.id).where(users.c.owner_id == row_id, users.c.role == Role.GUEST.value)
                ).scalars().all()
            )
            for guest_id in guest_ids:
                try:
                    await self._delete_by_id(users, guest_id)
                except StorageError as exc:
                    logger.warning("Failed to delete guest %s: %s", guest_id, exc)
                    result.failures.append(("guest", str(guest_id), str(exc)))
                    continue
                result.deleted_guests += 1

        result.changes = await self._delete_by_id(users, row_id)
        logger.info(
            "Deleted account %s with %d items and %d guests (%d failures)",
            user_id,
            result.deleted_items,
            result.deleted_guests,
            len(result.failures),
        )
        return result

    async def _delete_by_id(self, table: Table, row_id: int) -> int:
        return await self._run(lambda conn: conn.execute(table.delete().where(table.c.id == row_id)).rowcount)

    async def list_guests(self, owner_id: str) -> List[User]:
        row_id = _parse_id(owner_id)
        if row_id is None:
            return []
        rows = await self._run(
            lambda conn: conn.execute(
                select(users)
                .where(
                    users.c.owner_id == row_id,
                    users.c.role == Role.GUEST.value,
                    users.c.is_active.is_(True),
                )
                .order_by(users.c.id)
            ).mappings().all()
        )
        return [_user_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------
    async def list_inventory(self, owner_id: str) -> List[InventoryItem]:
        row_id = _parse_id(owner_id)
        if row_id is None:
            return []
        rows = await self._run(
            lambda conn: conn.execute(
                select(inventory_items)
                .where(inventory_items.c.user_id == row_id, inventory_items.c.active.is_(True))
                .order_by(inventory_items.c.id)
            ).mappings().all()
        )
        return [_item_from_row(row) for row in rows]

    async def get_item(self, item_id: str) -> Optional[InventoryItem]:
        row_id = _parse_id(item_id)
        if row_id is None:
            return None
        row = await self._run(
            lambda conn: conn.execute(select(inventory_items).where(inventory_items.c.id == row_id)).mappings().first()
        )
        return _item_from_row(row) if row else None

    async def create_item(self, owner_id: str, data: Mapping[str, Any]) -> InventoryItem:
        user_id = _parse_id(owner_id)
        if user_id is None:
            raise NotFound(f"Owner {owner_id!r} not found")
        timestamp = utc_now_iso()
        values = {
            "user_id": user_id,
            "name": str(data.get("name") or ""),
            "description": str(data.get("description") or ""),
            "category": str(data.get("category") or ""),
            "sku": str(data.get("sku") or ""),
            "quantity": _coerce_float(data.get("quantity")),
            "used_quantity": _coerce_float(data.get("used_quantity")),
            "unit": str(data.get("unit") or DEFAULT_UNIT),
            "price": _coerce_float(data.get("price")),
            "location": str(data.get("location") or ""),
            "min_quantity": _coerce_float(data.get("min_quantity")),
            "image_url": str(data.get("image_url") or ""),
            "active": True,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        new_id = await self._run(
            lambda conn: conn.execute(inventory_items.insert().values(**values)).inserted_primary_key[0]
        )
        await self._ensure_category(user_id, values["category"])
        logger.info("Created item %s for %s", new_id, owner_id)
        created = await self.get_item(str(new_id))
        if created is None:
            raise Internal(f"Item {new_id} vanished after insert")
        return created

    async def update_item(self, item_id: str, changes: Mapping[str, Any]) -> InventoryItem:
        current = await self.get_item(item_id)
        if current is None:
            raise NotFound(f"Item {item_id!r} not found")

        values: Dict[str, Any] = {}
        for key, value in changes.items():
            if key not in ITEM_UPDATE_FIELDS:
                continue
            if key in {"quantity", "used_quantity", "price", "min_quantity"}:
                value = _coerce_float(value)
            elif key == "active":
                value = _coerce_bool(value)
            elif value is None:
                value = ""
            values[key] = value
        values.setdefault("updated_at", utc_now_iso())

        row_id = int(current.id)
        await self._run(
            lambda conn: conn.execute(inventory_items.update().where(inventory_items.c.id == row_id).values(**values))
        )
        if values.get("category"):
            await self._ensure_category(int(current.user_id), values["category"])
        updated = await self.get_item(item_id)
        if updated is None:
            raise NotFound(f"Item {item_id!r} not found")
        return updated

    async def adjust_quantity(self, item: InventoryItem, new_quantity: float, *, notes: str = "") -> InventoryItem:
        """Persist ``new_quantity`` and log the change to ``inventory_transactions``."""

        row_id = int(item.id)
        timestamp = utc_now_iso()

        def _work(conn: Connection) -> None:
            conn.execute(
                inventory_items.update()
                .where(inventory_items.c.id == row_id)
                .values(quantity=new_quantity, updated_at=timestamp)
            )
            conn.execute(
                inventory_transactions.insert().values(
                    user_id=int(item.user_id),
                    item_id=row_id,
                    type="adjust",
                    quantity_change=new_quantity - item.quantity,
                    old_quantity=item.quantity,
                    new_quantity=new_quantity,
                    notes=notes or None,
                    created_at=timestamp,
                )
            )

        await self._run(_work)
        updated = await self.get_item(item.id)
        if updated is None:
            raise NotFound(f"Item {item.id!r} not found")
        return updated

    async def list_transactions(self, item_id: str) -> List[Dict[str, Any]]:
        row_id = _parse_id(item_id)
        if row_id is None:
            return []
        rows = await self._run(
            lambda conn: conn.execute(
                select(inventory_transactions)
                .where(inventory_transactions.c.item_id == row_id)
                .order_by(inventory_transactions.c.id)
            ).mappings().all()
        )
        return [dict(row) for row in rows]

    async def delete_item(self, item_id: str) -> int:
        row_id = _parse_id(item_id)
        if row_id is None:
            return 0
        changes = await self._delete_by_id(inventory_items, row_id)
        if changes:
            logger.info("Deleted item %s", item_id)
        return changes

    async def _ensure_category(self, user_id: int, name: str) -> None:
        name = (name or "").strip()
        if not name:
            return

        def _work(conn: Connection) -> None:
            exists = conn.execute(
                select(categories.c.id).where(categories.c.user_id == user_id, categories.c.name == name)
            ).first()
            if exists is None:
                conn.execute(categories.insert().values(user_id=user_id, name=name, created_at=utc_now_iso()))

        try:
            await self._run(_work)
        except Conflict:
            # A concurrent request created the same category.
            logger.debug("Category %r for %s already exists", name, user_id)

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------
    async def get_stats(self, owner_id: str) -> InventoryStats:
        return InventoryStats.from_items(await self.list_inventory(owner_id))

    async def list_categories(self, owner_id: str) -> List[Category]:
        row_id = _parse_id(owner_id)
        if row_id is None:
            return []

        def _work(conn: Connection):
            category_rows = conn.execute(
                select(categories).where(categories.c.user_id == row_id).order_by(categories.c.name)
            ).mappings().all()
            count_rows = conn.execute(
                select(inventory_items.c.category, func.count())
                .where(inventory_items.c.user_id == row_id, inventory_items.c.active.is_(True))
                .group_by(inventory_items.c.category)
            ).all()
            return category_rows, count_rows

        category_rows, count_rows = await self._run(_work)
        counts = Counter({name: total for name, total in count_rows if name})
        return [
            Category(
                name=row["name"],
                user_id=owner_id,
                item_count=counts.get(row["name"], 0),
                id=str(row["id"]),
                description=row["description"] or "",
                color=row["color"] or "#667eea",
            )
            for row in category_rows
        ]

    async def count_items_by_owner(self) -> Dict[str, int]:
        rows = await self._run(
            lambda conn: conn.execute(
                select(inventory_items.c.user_id, func.count())
                .where(inventory_items.c.active.is_(True))
                .group_by(inventory_items.c.user_id)
            ).all()
        )
        return {str(user_id): int(total) for user_id, total in rows}


__all__ = [
    "SqlDataStore",
    "categories",
    "inventory_items",
    "inventory_transactions",
    "metadata",
    "users",
]
