from __future__ import annotations

import pytest

from invcore.row_codec import (
    GUESTS_SCHEMA,
    INVENTORY_SCHEMA,
    USERS_SCHEMA,
    decode_row,
    encode_row,
    fallback_field_name,
    format_number,
    generate_id,
    parse_flag,
    parse_integer,
    parse_number,
    utc_now_iso,
)


def _item_values(**overrides):
    values = {
        "user_id": "U1",
        "description": "Blue ceramic mug",
        "name": "Mug",
        "category": "Kitchen",
        "sku": "MUG-01",
        "quantity": 10.0,
        "used_quantity": 1.0,
        "unit": "pcs",
        "price": 2.5,
        "location": "Shelf A",
        "min_quantity": 3.0,
        "id": "INV1",
        "created_at": "2024-01-01T00:00:00.000Z",
        "updated_at": "2024-01-01T00:00:00.000Z",
        "active": True,
    }
    values.update(overrides)
    return values


def test_layouts_keep_documented_column_order() -> None:
    assert USERS_SCHEMA.headers() == [
        "USER_NAME",
        "PASSCODE",
        "EMAIL",
        "USER_ID",
        "INV_USED",
        "USER_UNLIMITID",
        "CREATED",
        "LAST_LOGGED_IN",
        "STATUS",
        "ROLE",
        "OWNER_ID",
        "ITEM_LIMIT",
    ]
    assert GUESTS_SCHEMA.headers() == [
        "USER_ID",
        "GUEST_ID",
        "GUEST_NAME",
        "EMAIL",
        "PASSCODE",
        "ADDED_DATE",
        "ACTIVE",
        "RANK",
        "LAST_LOGGED_IN",
    ]
    assert len(INVENTORY_SCHEMA.headers()) == 16
    assert INVENTORY_SCHEMA.headers()[9] == "TOTAL_VALUE"
    assert INVENTORY_SCHEMA.headers()[12] == "INV_NUMMER"


def test_item_round_trip_recomputes_total_value() -> None:
    values = _item_values()
    row = encode_row(INVENTORY_SCHEMA, values)

    assert row[5] == "10"
    assert row[8] == "2.5"
    assert row[9] == "25.00"
    assert row[15] == "TRUE"

    decoded = decode_row(INVENTORY_SCHEMA, INVENTORY_SCHEMA.headers(), row)
    for key, value in values.items():
        assert decoded.values[key] == value
    assert decoded.values["total_value"] == 25.0
    assert decoded.defaulted == frozenset()


def test_merge_keeps_untouched_cells_verbatim() -> None:
    headers = INVENTORY_SCHEMA.headers()
    previous = encode_row(INVENTORY_SCHEMA, _item_values())

    merged = encode_row(INVENTORY_SCHEMA, {"quantity": 4}, headers=headers, previous=previous)

    for index, header in enumerate(headers):
        if header in {"QUANTITY", "TOTAL_VALUE"}:
            continue
        assert merged[index] == previous[index], header
    assert merged[headers.index("QUANTITY")] == "4"
    assert merged[headers.index("TOTAL_VALUE")] == "10.00"


def test_merge_keeps_trailing_blank_cells_blank() -> None:
    headers = INVENTORY_SCHEMA.headers()
    previous = encode_row(INVENTORY_SCHEMA, _item_values(location="", min_quantity=0))
    previous[headers.index("LOCATION")] = ""

    merged = encode_row(INVENTORY_SCHEMA, {"name": "Cup"}, headers=headers, previous=previous)

    assert merged[headers.index("LOCATION")] == ""
    assert merged[headers.index("ITEM_NAME")] == "Cup"


def test_comma_decimals_are_accepted() -> None:
    headers = INVENTORY_SCHEMA.headers()
    row = [""] * len(headers)
    row[headers.index("QUANTITY")] = "12,5"
    row[headers.index("PRICE")] = "3,20"

    decoded = decode_row(INVENTORY_SCHEMA, headers, row)

    assert decoded.values["quantity"] == 12.5
    assert decoded.values["price"] == pytest.approx(3.2)


@pytest.mark.parametrize(
    "raw, expected",
    [("12,5 kg", 12.5), ("7", 7.0), ("-1.25", -1.25), ("", 0.0), ("abc", 0.0), (3, 3.0)],
)
def test_parse_number(raw, expected) -> None:
    assert parse_number(raw) == expected


def test_parse_integer_falls_back() -> None:
    assert parse_integer("15 items") == 15
    assert parse_integer("n/a", default=20) == 20
    assert parse_integer("0", default=20) == 0


def test_format_number_drops_trailing_zeros() -> None:
    assert format_number(10.0) == "10"
    assert format_number("2,50") == "2.5"


def test_flags_use_column_literals() -> None:
    row = encode_row(USERS_SCHEMA, {"username": "alice", "is_active": False, "has_unlimited": True})
    headers = USERS_SCHEMA.headers()

    assert row[headers.index("STATUS")] == "INACTIVE"
    assert row[headers.index("USER_UNLIMITID")] == "TRUE"
    assert parse_flag("ACTIVE") is True
    assert parse_flag("1") is True
    assert parse_flag("yes") is False
    assert parse_flag("true") is False


def test_missing_user_cells_take_documented_defaults() -> None:
    headers = USERS_SCHEMA.headers()
    decoded = decode_row(USERS_SCHEMA, headers, ["alice", "hash", "a@x.com", "U1"])

    assert decoded.values["item_limit"] == 20
    assert decoded.values["is_active"] is True
    assert decoded.values["inv_used"] == 0
    assert decoded.values["role"] == "owner"
    assert decoded.values["last_login"] == ""
    assert {"item_limit", "is_active", "inv_used", "role"} <= decoded.defaulted
    assert "username" not in decoded.defaulted


def test_item_limit_zero_is_not_a_default() -> None:
    headers = USERS_SCHEMA.headers()
    row = ["alice", "", "a@x.com", "U1", "0", "FALSE", "", "", "ACTIVE", "owner", "", "0"]
    decoded = decode_row(USERS_SCHEMA, headers, row)

    assert decoded.values["item_limit"] == 0
    assert "item_limit" not in decoded.defaulted

    row[-1] = "lots"
    decoded = decode_row(USERS_SCHEMA, headers, row)
    assert decoded.values["item_limit"] == 20
    assert "item_limit" in decoded.defaulted


def test_unknown_headers_fall_back_and_survive_merges() -> None:
    headers = GUESTS_SCHEMA.headers() + ["NOTE_TEXT"]
    row = ["U1", "G1", "bob", "b@x.com", "", "", "TRUE", "edit-inv", "", "vip"]

    decoded = decode_row(GUESTS_SCHEMA, headers, row)
    assert fallback_field_name("NOTE_TEXT") == "notetext"
    assert decoded.extras == {"notetext": "vip"}
    assert decoded.values["permission"] == "edit-inv"

    merged = encode_row(GUESTS_SCHEMA, {"permission": "full-access"}, headers=headers, previous=row)
    assert merged[-1] == "vip"
    assert merged[7] == "full-access"


def test_reordered_headers_decode_by_name() -> None:
    headers = ["EMAIL", "USER_NAME", "USER_ID"]
    decoded = decode_row(USERS_SCHEMA, headers, ["a@x.com", "alice", "U9"])

    assert decoded.values["username"] == "alice"
    assert decoded.values["email"] == "a@x.com"
    assert decoded.values["id"] == "U9"
    assert "item_limit" in decoded.defaulted


def test_generate_id_uses_milliseconds() -> None:
    assert generate_id("INV", now=1700000000.5) == "INV1700000000500"
    assert generate_id("U").startswith("U")


def test_utc_now_iso_format() -> None:
    stamp = utc_now_iso()
    assert stamp.endswith("Z")
    assert len(stamp) == len("2024-01-01T00:00:00.000Z")
