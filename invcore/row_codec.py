"""Bidirectional mapping between entity fields and positional sheet rows.

Every tab is described by a :class:`SheetSchema`: an ordered tuple of
:class:`SheetColumn` entries declaring the header, the entity field it maps
to, the cell type and an optional default.  The codec is header driven: rows
are decoded using the header row actually present in the sheet, so columns
added or reordered by hand keep working.  Headers the schema does not know
fall back to a lower-cased, underscore-free field name and are returned
verbatim in :attr:`DecodedRow.extras`.

Encoding is merge-by-column.  When a previous raw row is supplied, only the
fields present in the update payload are re-encoded; every other cell is
copied back byte for byte.  The Sheets API has no partial row update, so this
is what keeps untouched columns (SKU, location, ...) intact.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from invcore.models import DEFAULT_ITEM_LIMIT, DEFAULT_UNIT, Permission, Role


class ColumnType(Enum):
    TEXT = "TEXT"
    NUMBER = "NUMBER"
    INTEGER = "INTEGER"
    FLAG = "FLAG"
    TIMESTAMP = "TIMESTAMP"


TRUE_LITERALS: FrozenSet[str] = frozenset({"TRUE", "ACTIVE", "1"})

_NUMBER_PREFIX_RE = re.compile(r"^\s*[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?")
_INTEGER_PREFIX_RE = re.compile(r"^\s*[-+]?\d+")


@dataclass(frozen=True)
class SheetColumn:
    header: str
    field: str
    type: ColumnType = ColumnType.TEXT
    default: Any = None
    true_literal: str = "TRUE"
    false_literal: str = "FALSE"
    derived_from: Tuple[str, ...] = ()

    @property
    def has_default(self) -> bool:
        return self.default is not None


@dataclass(frozen=True)
class SheetSchema:
    name: str
    version: int
    columns: Tuple[SheetColumn, ...]
    id_field: str = "id"

    def headers(self) -> List[str]:
        return [column.header for column in self.columns]

    def column_for_header(self, header: str) -> Optional[SheetColumn]:
        for column in self.columns:
            if column.header == header:
                return column
        return None

    def column_for_field(self, field_name: str) -> Optional[SheetColumn]:
        for column in self.columns:
            if column.field == field_name:
                return column
        return None

    def header_for_field(self, field_name: str) -> Optional[str]:
        column = self.column_for_field(field_name)
        return column.header if column else None

    def position(self, field_name: str, headers: Sequence[str]) -> Optional[int]:
        """Return the 0-based index of ``field_name`` within ``headers``."""

        header = self.header_for_field(field_name)
        if header is None:
            return None
        for index, candidate in enumerate(headers):
            if (candidate or "").strip() == header:
                return index
        return None


@dataclass
class DecodedRow:
    values: Dict[str, Any]
    defaulted: FrozenSet[str] = frozenset()
    extras: Dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Declared layouts
# ---------------------------------------------------------------------------

USERS_SCHEMA = SheetSchema(
    name="users",
    version=3,
    columns=(
        SheetColumn("USER_NAME", "username"),
        SheetColumn("PASSCODE", "password"),
        SheetColumn("EMAIL", "email"),
        SheetColumn("USER_ID", "id"),
        SheetColumn("INV_USED", "inv_used", ColumnType.INTEGER, default=0),
        SheetColumn("USER_UNLIMITID", "has_unlimited", ColumnType.FLAG, default=False),
        SheetColumn("CREATED", "created_at", ColumnType.TIMESTAMP),
        SheetColumn("LAST_LOGGED_IN", "last_login", ColumnType.TIMESTAMP),
        SheetColumn(
            "STATUS",
            "is_active",
            ColumnType.FLAG,
            default=True,
            true_literal="ACTIVE",
            false_literal="INACTIVE",
        ),
        SheetColumn("ROLE", "role", default=Role.OWNER.value),
        SheetColumn("OWNER_ID", "owner_id"),
        SheetColumn("ITEM_LIMIT", "item_limit", ColumnType.INTEGER, default=DEFAULT_ITEM_LIMIT),
    ),
)

GUESTS_SCHEMA = SheetSchema(
    name="guests",
    version=2,
    columns=(
        SheetColumn("USER_ID", "owner_id"),
        SheetColumn("GUEST_ID", "id"),
        SheetColumn("GUEST_NAME", "username"),
        SheetColumn("EMAIL", "email"),
        SheetColumn("PASSCODE", "password"),
        SheetColumn("ADDED_DATE", "created_at", ColumnType.TIMESTAMP),
        SheetColumn("ACTIVE", "is_active", ColumnType.FLAG),
        SheetColumn("RANK", "permission", default=Permission.READ_ONLY.value),
        SheetColumn("LAST_LOGGED_IN", "last_login", ColumnType.TIMESTAMP),
    ),
)

INVENTORY_SCHEMA = SheetSchema(
    name="inventory",
    version=2,
    columns=(
        SheetColumn("USER_ID", "user_id"),
        SheetColumn("DESCRIPTION", "description"),
        SheetColumn("ITEM_NAME", "name"),
        SheetColumn("CATEGORY", "category"),
        SheetColumn("SKU", "sku"),
        SheetColumn("QUANTITY", "quantity", ColumnType.NUMBER),
        SheetColumn("USED_QUANTITY", "used_quantity", ColumnType.NUMBER),
        SheetColumn("UNIT", "unit", default=DEFAULT_UNIT),
        SheetColumn("PRICE", "price", ColumnType.NUMBER),
        SheetColumn("TOTAL_VALUE", "total_value", ColumnType.NUMBER, derived_from=("quantity", "price")),
        SheetColumn("LOCATION", "location"),
        SheetColumn("MINIMUM_QUANTITY", "min_quantity", ColumnType.NUMBER),
        SheetColumn("INV_NUMMER", "id"),
        SheetColumn("DATE_ADDED", "created_at", ColumnType.TIMESTAMP),
        SheetColumn("DATE_UPDATED", "updated_at", ColumnType.TIMESTAMP),
        SheetColumn("ACTIVE", "active", ColumnType.FLAG),
    ),
)


# ---------------------------------------------------------------------------
# Cell coercion
# ---------------------------------------------------------------------------

def parse_number(value: Any) -> float:
    """Parse a numeric cell, accepting ``,`` as decimal separator.

    Only the leading numeric part is used (``"12,5 kg"`` -> ``12.5``); a cell
    without one parses as ``0``.
    """

    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value or "").replace(",", ".")
    match = _NUMBER_PREFIX_RE.match(text)
    if not match:
        return 0.0
    try:
        return float(match.group(0))
    except ValueError:
        return 0.0


def parse_integer(value: Any, *, default: int = 0) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    match = _INTEGER_PREFIX_RE.match(str(value or ""))
    if not match:
        return default
    return int(match.group(0))


def parse_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    return str(value) in TRUE_LITERALS


def format_number(value: Any) -> str:
    number = parse_number(value)
    if number.is_integer():
        return str(int(number))
    return f"{number:.10f}".rstrip("0").rstrip(".")


def fallback_field_name(header: str) -> str:
    """Field name used for headers the schema does not declare."""

    return header.lower().replace("_", "")


def decode_cell(column: SheetColumn, raw: str) -> Any:
    if column.type is ColumnType.NUMBER:
        return parse_number(raw)
    if column.type is ColumnType.INTEGER:
        fallback = column.default if column.has_default else 0
        return parse_integer(raw, default=fallback)
    if column.type is ColumnType.FLAG:
        return parse_flag(raw)
    return raw


def encode_cell(column: SheetColumn, value: Any) -> str:
    if column.type is ColumnType.NUMBER:
        if column.derived_from:
            return f"{parse_number(value):.2f}"
        return format_number(value)
    if column.type is ColumnType.INTEGER:
        fallback = column.default if column.has_default else 0
        return str(parse_integer(value, default=fallback))
    if column.type is ColumnType.FLAG:
        return column.true_literal if parse_flag(value) else column.false_literal
    if value is None:
        return ""
    return str(value)


def _empty_value(column: SheetColumn) -> Any:
    if column.has_default:
        return column.default
    return decode_cell(column, "")


# ---------------------------------------------------------------------------
# Row level helpers
# ---------------------------------------------------------------------------

def decode_row(schema: SheetSchema, headers: Sequence[str], row: Sequence[Any]) -> DecodedRow:
    """Decode ``row`` using the sheet's actual ``headers``.

    Rows shorter than the header row are allowed; absent and empty cells take
    the column default when one is declared and are reported in
    :attr:`DecodedRow.defaulted`.  Schema columns missing from the header row
    entirely (legacy layouts) are filled the same way.
    """

    values: Dict[str, Any] = {}
    defaulted = set()
    extras: Dict[str, str] = {}
    seen = set()

    for index, header in enumerate(headers):
        header = str(header or "").strip()
        if not header:
            continue
        raw = "" if index >= len(row) or row[index] is None else str(row[index])
        column = schema.column_for_header(header)
        if column is None:
            extras[fallback_field_name(header)] = raw
            continue
        seen.add(column.header)
        if raw.strip() == "" and column.has_default:
            values[column.field] = column.default
            defaulted.add(column.field)
            continue
        values[column.field] = decode_cell(column, raw)
        if column.type is ColumnType.INTEGER and column.has_default:
            if not _INTEGER_PREFIX_RE.match(raw):
                defaulted.add(column.field)

    for column in schema.columns:
        if column.header in seen:
            continue
        values[column.field] = _empty_value(column)
        defaulted.add(column.field)

    return DecodedRow(values=values, defaulted=frozenset(defaulted), extras=extras)


def encode_row(
    schema: SheetSchema,
    values: Mapping[str, Any],
    *,
    headers: Optional[Sequence[str]] = None,
    previous: Optional[Sequence[Any]] = None,
) -> List[str]:
    """Encode ``values`` into a row laid out like ``headers``.

    With ``previous`` the result is a merge: cells for fields missing from
    ``values`` are copied from ``previous`` verbatim.  Without it, missing
    fields take the column default (or an empty cell).  Derived columns are
    always recomputed from the merged inputs.
    """

    layout = [str(header or "").strip() for header in (headers or schema.headers())]

    def merged(field_name: str) -> Any:
        if field_name in values:
            return values[field_name]
        position = schema.position(field_name, layout)
        if previous is not None and position is not None and position < len(previous):
            column = schema.column_for_field(field_name)
            return decode_cell(column, str(previous[position] or ""))
        column = schema.column_for_field(field_name)
        return _empty_value(column) if column else None

    row: List[str] = []
    for index, header in enumerate(layout):
        prior = None
        if previous is not None and index < len(previous):
            prior = "" if previous[index] is None else str(previous[index])
        column = schema.column_for_header(header)
        if column is None:
            row.append(prior if prior is not None else "")
        elif column.derived_from:
            product = 1.0
            for source in column.derived_from:
                product *= parse_number(merged(source))
            row.append(encode_cell(column, product))
        elif column.field in values:
            row.append(encode_cell(column, values[column.field]))
        elif prior is not None:
            row.append(prior)
        elif column.has_default:
            row.append(encode_cell(column, column.default))
        else:
            row.append("")
    return row


# ---------------------------------------------------------------------------
# Identifiers and timestamps
# ---------------------------------------------------------------------------

USER_ID_PREFIX = "U"
GUEST_ID_PREFIX = "G"
ITEM_ID_PREFIX = "INV"


def generate_id(prefix: str, *, now: Optional[float] = None) -> str:
    """Return ``prefix`` followed by the current epoch time in milliseconds.

    Two creates within the same millisecond get the same id; there is no
    central sequence to prevent it.
    """

    timestamp = time.time() if now is None else now
    return f"{prefix}{int(timestamp * 1000)}"


def utc_now_iso() -> str:
    """Return the current UTC time as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""

    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


__all__ = [
    "ColumnType",
    "SheetColumn",
    "SheetSchema",
    "DecodedRow",
    "TRUE_LITERALS",
    "USERS_SCHEMA",
    "GUESTS_SCHEMA",
    "INVENTORY_SCHEMA",
    "parse_number",
    "parse_integer",
    "parse_flag",
    "format_number",
    "fallback_field_name",
    "decode_cell",
    "encode_cell",
    "decode_row",
    "encode_row",
    "USER_ID_PREFIX",
    "GUEST_ID_PREFIX",
    "ITEM_ID_PREFIX",
    "generate_id",
    "utc_now_iso",
]
