from __future__ import annotations

import itertools
import sys
from pathlib import Path

import pytest
import pytest_asyncio

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from invcore import sheets_repository
from invcore.sheets_client import GoogleSheetsClient
from invcore.sheets_repository import SheetsRepository
from invcore.workbook_service import LocalWorkbookService


@pytest.fixture
def sequential_ids(monkeypatch):
    """Make spreadsheet ids unique even when rows are created in the same millisecond."""

    counter = itertools.count(1)
    monkeypatch.setattr(
        sheets_repository,
        "generate_id",
        lambda prefix, now=None: f"{prefix}{1700000000000 + next(counter)}",
    )


@pytest.fixture
def workbook_path(tmp_path: Path) -> Path:
    return tmp_path / "workbook.json"


@pytest.fixture
def workbook_client(workbook_path: Path) -> GoogleSheetsClient:
    return GoogleSheetsClient(str(workbook_path), service=LocalWorkbookService(workbook_path))


@pytest_asyncio.fixture
async def repository(workbook_client: GoogleSheetsClient, sequential_ids) -> SheetsRepository:
    repo = SheetsRepository(workbook_client)
    await repo.connect()
    await repo.ensure_schema()
    yield repo
    await repo.close()


@pytest_asyncio.fixture
async def sql_store(tmp_path: Path):
    from db import SqlDataStore

    store = SqlDataStore(f"sqlite:///{(tmp_path / 'inventory.db').as_posix()}")
    await store.connect()
    yield store
    await store.close()
