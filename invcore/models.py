"""Backend agnostic entity types returned by the storage layer."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from invcore.errors import InvalidArgument


class Role(str, Enum):
    ADMIN = "admin"
    OWNER = "owner"
    USER = "user"
    GUEST = "guest"


class Permission(str, Enum):
    READ_ONLY = "read-only"
    EDIT_INVENTORY = "edit-inv"
    FULL_ACCESS = "full-access"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Permission":
        """Return the permission for ``value``, ``READ_ONLY`` when blank or unknown."""

        text = (value or "").strip()
        for member in cls:
            if member.value == text:
                return member
        return cls.READ_ONLY


DEFAULT_ITEM_LIMIT = 20
DEFAULT_UNIT = "units"


def resolve_new_role(data: Mapping[str, Any]) -> str:
    """Return the role for an account payload, rejecting impossible combinations.

    A missing role means ``owner``.  Guests need an ``owner_id``; an account
    attached to an owner can never be an admin.
    """

    role = str(data.get("role") or "").strip() or Role.OWNER.value
    if role not in {member.value for member in Role}:
        raise InvalidArgument(f"Unknown role {role!r}")
    owner_id = str(data.get("owner_id") or "").strip()
    if role == Role.GUEST.value and not owner_id:
        raise InvalidArgument("A guest requires an owner_id")
    if role == Role.ADMIN.value and owner_id:
        raise InvalidArgument("An account attached to an owner cannot be an admin")
    return role


@dataclass
class User:
    """An account: either an owner/admin or a guest attached to an owner.

    ``permission`` is only meaningful for guests; owners always carry
    ``None``.  ``defaulted_fields`` lists the fields that were filled from a
    documented default while decoding instead of being read from storage.
    """

    id: str
    username: str
    email: str
    password: str = ""
    role: str = Role.OWNER.value
    owner_id: Optional[str] = None
    item_limit: int = DEFAULT_ITEM_LIMIT
    has_unlimited: bool = False
    is_active: bool = True
    created_at: str = ""
    last_login: Optional[str] = None
    permission: Optional[str] = None
    inv_used: int = 0
    defaulted_fields: FrozenSet[str] = field(default_factory=frozenset, compare=False, repr=False)

    @property
    def is_guest(self) -> bool:
        return self.role == Role.GUEST.value

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value

    def public_dict(self) -> Dict[str, Any]:
        """Return the user without the password hash."""

        payload = asdict(self)
        payload.pop("password", None)
        payload.pop("defaulted_fields", None)
        return payload


@dataclass
class InventoryItem:
    id: str
    user_id: str
    name: str
    description: str = ""
    category: str = ""
    sku: str = ""
    quantity: float = 0.0
    used_quantity: float = 0.0
    unit: str = DEFAULT_UNIT
    price: float = 0.0
    location: str = ""
    min_quantity: float = 0.0
    image_url: str = ""
    active: bool = True
    created_at: str = ""
    updated_at: str = ""
    defaulted_fields: FrozenSet[str] = field(default_factory=frozenset, compare=False, repr=False)

    @property
    def total_value(self) -> float:
        return round(self.quantity * self.price, 2)

    @property
    def is_low_stock(self) -> bool:
        return self.min_quantity > 0 and self.quantity <= self.min_quantity

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload.pop("defaulted_fields", None)
        payload["total_value"] = self.total_value
        return payload


@dataclass
class Category:
    name: str
    user_id: str
    item_count: int = 0
    id: Optional[str] = None
    description: str = ""
    color: str = "#667eea"


@dataclass
class InventoryStats:
    total_items: int
    total_value: float
    low_stock_items: int
    total_categories: int

    @classmethod
    def from_items(cls, items: List[InventoryItem]) -> "InventoryStats":
        """Fold ``items`` into the dashboard aggregates."""

        total_value = sum(item.quantity * item.price for item in items)
        categories = {item.category for item in items if item.category}
        return cls(
            total_items=len(items),
            total_value=round(total_value, 2),
            low_stock_items=sum(1 for item in items if item.is_low_stock),
            total_categories=len(categories),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalItems": self.total_items,
            "totalValue": f"{self.total_value:.2f}",
            "lowStockItems": self.low_stock_items,
            "totalCategories": self.total_categories,
        }


@dataclass
class Adjustment:
    item_id: str
    old_quantity: float
    new_quantity: float

    @property
    def delta(self) -> float:
        return self.new_quantity - self.old_quantity


@dataclass
class CascadeResult:
    """Aggregate outcome of a best-effort cascading delete.

    ``changes`` is 1 when the parent row was removed and 0 when it was not
    found.  Each dependent row that could not be removed is listed in
    ``failures`` as ``(kind, id, message)``.
    """

    changes: int = 0
    deleted_items: int = 0
    deleted_guests: int = 0
    failures: List[tuple] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failures


__all__ = [
    "Role",
    "Permission",
    "DEFAULT_ITEM_LIMIT",
    "DEFAULT_UNIT",
    "resolve_new_role",
    "User",
    "InventoryItem",
    "Category",
    "InventoryStats",
    "Adjustment",
    "CascadeResult",
]
