from __future__ import annotations

import pytest
import pytest_asyncio

from db import SqlDataStore
from invcore.errors import Conflict, InvalidArgument, NotFound
from invcore.sheets_client import GoogleSheetsClient
from invcore.sheets_repository import SheetsRepository
from invcore.storage import InventoryStorage, build_storage
from invcore.workbook_service import LocalWorkbookService
from settings import StorageSettings


@pytest_asyncio.fixture(params=["sheets", "sql"])
async def storage(request, tmp_path, sequential_ids) -> InventoryStorage:
    if request.param == "sheets":
        path = tmp_path / "workbook.json"
        backend = SheetsRepository(GoogleSheetsClient(str(path), service=LocalWorkbookService(path)))
    else:
        backend = SqlDataStore(f"sqlite:///{(tmp_path / 'inventory.db').as_posix()}")
    router = InventoryStorage(backend)
    await router.connect()
    await router.ensure_schema()
    yield router
    await router.close()


async def _alice(storage: InventoryStorage):
    return await storage.create_user({"username": "alice", "email": "alice@x.com", "password": "hash"})


@pytest.mark.asyncio
async def test_widget_adjustment_scenario(storage: InventoryStorage) -> None:
    alice = await _alice(storage)
    item = await storage.create_item(alice.id, {"name": "Widget", "quantity": 10, "price": 2.5})

    stats = await storage.get_stats(alice.id)
    assert stats.total_items == 1
    assert stats.to_dict()["totalValue"] == "25.00"

    with pytest.raises(InvalidArgument):
        await storage.adjust_item_quantity(item.id, -15)
    assert (await storage.get_item(item.id)).quantity == 10.0

    adjustment = await storage.adjust_item_quantity(item.id, -10)
    assert (adjustment.old_quantity, adjustment.new_quantity, adjustment.delta) == (10.0, 0.0, -10.0)
    assert (await storage.get_item(item.id)).quantity == 0.0


@pytest.mark.asyncio
async def test_guest_scenario(storage: InventoryStorage) -> None:
    alice = await _alice(storage)
    bob = await storage.create_guest(alice.id, {"username": "bob", "email": "bob@x.com", "permission": "read-only"})

    found = await storage.find_user_or_guest("bob")
    assert found is not None
    assert found.id == bob.id
    assert found.owner_id == alice.id
    assert found.permission == "read-only"

    result = await storage.delete_user(alice.id)
    assert result.changes == 1
    assert result.deleted_guests == 1
    assert await storage.find_user_or_guest("bob") is None
    with pytest.raises(NotFound):
        await storage.get_user(alice.id)


@pytest.mark.asyncio
async def test_create_guest_rules(storage: InventoryStorage) -> None:
    alice = await _alice(storage)
    bob = await storage.create_guest(alice.id, {"username": "bob", "email": "bob@x.com"})

    with pytest.raises(InvalidArgument):
        await storage.create_guest(bob.id, {"username": "carl", "email": "carl@x.com"})
    with pytest.raises(NotFound):
        await storage.create_guest("999999", {"username": "carl", "email": "carl@x.com"})
    with pytest.raises(InvalidArgument):
        await storage.create_user({"username": "carl", "email": "carl@x.com", "role": "guest"})
    with pytest.raises(InvalidArgument):
        await storage.create_guest(alice.id, {"username": "", "email": "carl@x.com"})
    with pytest.raises(Conflict):
        await storage.create_guest(alice.id, {"username": "alice", "email": "carl@x.com"})
    assert [guest.id for guest in await storage.list_guests(alice.id)] == [bob.id]


@pytest.mark.asyncio
async def test_create_item_validation(storage: InventoryStorage) -> None:
    alice = await _alice(storage)
    bob = await storage.create_guest(alice.id, {"username": "bob", "email": "bob@x.com"})

    with pytest.raises(InvalidArgument):
        await storage.create_item(alice.id, {"name": "  ", "quantity": 1})
    with pytest.raises(InvalidArgument):
        await storage.create_item(alice.id, {"name": "Widget", "quantity": -1})
    with pytest.raises(InvalidArgument):
        await storage.create_item(alice.id, {"name": "Widget", "price": "-2,5"})
    with pytest.raises(InvalidArgument):
        await storage.create_item(bob.id, {"name": "Widget"})
    with pytest.raises(NotFound):
        await storage.create_item("999999", {"name": "Widget"})
    assert await storage.get_inventory(alice.id) == []

    item = await storage.create_item(alice.id, {"name": "Widget", "quantity": "3"})
    with pytest.raises(InvalidArgument):
        await storage.update_item(item.id, {"price": -1})
    with pytest.raises(InvalidArgument):
        await storage.update_item(item.id, {"name": ""})
    assert (await storage.update_item(item.id, {"price": 4})).total_value == 12.0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "field_name, value",
    [("quantity", "abc"), ("price", "12 kg"), ("min_quantity", "n/a"), ("used_quantity", "nan"), ("quantity", True)],
)
async def test_unparseable_amounts_are_refused(storage: InventoryStorage, field_name, value) -> None:
    alice = await _alice(storage)

    with pytest.raises(InvalidArgument):
        await storage.create_item(alice.id, {"name": "Widget", field_name: value})
    assert await storage.get_inventory(alice.id) == []

    item = await storage.create_item(alice.id, {"name": "Widget", "quantity": 2})
    with pytest.raises(InvalidArgument):
        await storage.update_item(item.id, {field_name: value})
    assert (await storage.get_item(item.id)).quantity == 2.0


@pytest.mark.asyncio
async def test_amount_strings_are_normalised(storage: InventoryStorage) -> None:
    alice = await _alice(storage)

    item = await storage.create_item(
        alice.id,
        {"name": "Widget", "quantity": " 12,5 ", "price": "2", "min_quantity": "3", "used_quantity": ""},
    )

    assert (item.quantity, item.price, item.min_quantity, item.used_quantity) == (12.5, 2.0, 3.0, 0.0)
    assert item.total_value == 25.0


@pytest.mark.asyncio
async def test_missing_records(storage: InventoryStorage) -> None:
    with pytest.raises(NotFound):
        await storage.get_item("999999")
    with pytest.raises(NotFound):
        await storage.adjust_item_quantity("999999", 1)
    with pytest.raises(NotFound):
        await storage.update_user("999999", {"email": "x@x.com"})
    assert await storage.delete_item("999999") == 0
    assert await storage.find_user_by_email("nobody@x.com") is None


@pytest.mark.asyncio
async def test_record_login_and_default_admin(storage: InventoryStorage) -> None:
    admin = await storage.ensure_default_admin("root", "root@x.com", "$2b$10$hash")
    assert admin.is_admin
    assert admin.has_unlimited
    assert admin.last_login is None

    again = await storage.ensure_default_admin("root", "other@x.com", "ignored")
    assert again.id == admin.id

    logged_in = await storage.record_login(admin.id)
    assert logged_in.last_login

    assert [user.username for user in await storage.list_users()] == ["root"]


@pytest.mark.asyncio
async def test_default_item_limit_applies_to_new_users(tmp_path) -> None:
    router = InventoryStorage(SqlDataStore(f"sqlite:///{(tmp_path / 'db.sqlite').as_posix()}"), default_item_limit=5)
    async with router:
        user = await router.create_user({"username": "alice", "email": "alice@x.com"})
        explicit = await router.create_user({"username": "carol", "email": "carol@x.com", "item_limit": 0})

    assert user.item_limit == 5
    assert explicit.item_limit == 0


@pytest.mark.asyncio
async def test_item_limit_enforcement_is_optional(tmp_path) -> None:
    router = InventoryStorage(
        SqlDataStore(f"sqlite:///{(tmp_path / 'db.sqlite').as_posix()}"),
        enforce_item_limit=True,
    )
    async with router:
        alice = await router.create_user({"username": "alice", "email": "alice@x.com", "item_limit": 1})
        vip = await router.create_user(
            {"username": "vip", "email": "vip@x.com", "item_limit": 0, "has_unlimited": True}
        )
        await router.create_item(alice.id, {"name": "First"})
        with pytest.raises(InvalidArgument):
            await router.create_item(alice.id, {"name": "Second"})
        await router.create_item(vip.id, {"name": "Anything"})

        assert await router.count_items_by_owner() == {alice.id: 1, vip.id: 1}


def test_build_storage_selects_backend(tmp_path) -> None:
    sql = build_storage(StorageSettings(backend="sql", database_url=f"sqlite:///{tmp_path / 'x.db'}"))
    sheets = build_storage(
        StorageSettings(
            backend="sheets",
            database_url="",
            spreadsheet_id=str(tmp_path / "book.json"),
            users_tab="Users",
        )
    )

    assert isinstance(sql.backend, SqlDataStore)
    assert sql.backend_name == "sql"
    assert isinstance(sheets.backend, SheetsRepository)
    assert sheets.backend.tabs.users == "Users"
    assert sheets.backend_name == "sheets"

    with pytest.raises(InvalidArgument):
        build_storage(StorageSettings(backend="sheets", database_url=""))


@pytest.mark.asyncio
async def test_refresh_counts_only_touches_sheets(storage: InventoryStorage) -> None:
    alice = await _alice(storage)
    await storage.create_item(alice.id, {"name": "Widget"})

    changed = await storage.refresh_inventory_counts()

    if storage.backend_name == "sheets":
        assert changed == {alice.id: 1}
    else:
        assert changed == {}
    assert await storage.count_items_by_owner() == {alice.id: 1}
