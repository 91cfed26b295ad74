from __future__ import annotations

import json

import pytest
from googleapiclient.errors import HttpError

from invcore.workbook_service import LocalWorkbookService, WorkbookRangeError, parse_range


def _values(service: LocalWorkbookService):
    return service.spreadsheets().values()


def test_parse_range_variants() -> None:
    title, start, end = parse_range("'Bob''s tab'!B2:D5")
    assert title == "Bob's tab"
    assert (start.column, start.row, end.column, end.row) == (2, 2, 4, 5)

    title, start, end = parse_range("'USERS'!1:1")
    assert title == "USERS"
    assert (start.column, start.row, end.row) == (None, 1, 1)

    title, start, end = parse_range("INVENTORY")
    assert title == "INVENTORY"
    assert start.row is None and start.column is None

    with pytest.raises(WorkbookRangeError):
        parse_range("'USERS'!A1:$$")


def test_workbook_persists_to_json(tmp_path) -> None:
    path = tmp_path / "book.json"
    service = LocalWorkbookService(path)
    service.spreadsheets().batchUpdate(
        spreadsheetId="x", body={"requests": [{"addSheet": {"properties": {"title": "USERS"}}}]}
    ).execute()
    _values(service).update(
        spreadsheetId="x", range="'USERS'!A1:C1", valueInputOption="USER_ENTERED", body={"values": [["a", "b", 3]]}
    ).execute()

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["sheets"]["USERS"] == [["a", "b", "3"]]
    assert payload["sheet_ids"]["USERS"] == 0

    reopened = LocalWorkbookService(path)
    response = _values(reopened).get(spreadsheetId="x", range="'USERS'").execute()
    assert response["values"] == [["a", "b", "3"]]


def test_append_skips_trailing_blank_rows(tmp_path) -> None:
    service = LocalWorkbookService(tmp_path / "book.json")
    service.spreadsheets().batchUpdate(
        spreadsheetId="x", body={"requests": [{"addSheet": {"properties": {"title": "T"}}}]}
    ).execute()
    _values(service).update(spreadsheetId="x", range="'T'!A1:A3", body={"values": [["h"], ["1"], [""]]}).execute()

    result = _values(service).append(spreadsheetId="x", range="'T'", body={"values": [["2"]]}).execute()

    assert result["updates"]["startRow"] == 3
    assert _values(service).get(spreadsheetId="x", range="'T'").execute()["values"] == [["h"], ["1"], ["2"]]


def test_clear_range_blanks_cells(tmp_path) -> None:
    service = LocalWorkbookService(tmp_path / "book.json")
    service.spreadsheets().batchUpdate(
        spreadsheetId="x", body={"requests": [{"addSheet": {"properties": {"title": "T"}}}]}
    ).execute()
    _values(service).update(spreadsheetId="x", range="'T'!A1:B2", body={"values": [["a", "b"], ["c", "d"]]}).execute()

    _values(service).clear(spreadsheetId="x", range="'T'!B1:B2", body={}).execute()
    assert _values(service).get(spreadsheetId="x", range="'T'").execute()["values"] == [["a"], ["c"]]

    _values(service).clear(spreadsheetId="x", range="'T'", body={}).execute()
    assert _values(service).get(spreadsheetId="x", range="'T'").execute()["values"] == []


def test_metadata_and_errors(tmp_path) -> None:
    service = LocalWorkbookService(tmp_path / "book.json")
    add = {"requests": [{"addSheet": {"properties": {"title": "USERS"}}}, {"addSheet": {"properties": {"title": "GUESTS"}}}]}
    service.spreadsheets().batchUpdate(spreadsheetId="x", body=add).execute()

    metadata = service.spreadsheets().get(spreadsheetId="x", includeGridData=False).execute()
    assert [sheet["properties"] for sheet in metadata["sheets"]] == [
        {"title": "USERS", "sheetId": 0},
        {"title": "GUESTS", "sheetId": 1},
    ]

    with pytest.raises(HttpError):
        service.spreadsheets().batchUpdate(
            spreadsheetId="x", body={"requests": [{"addSheet": {"properties": {"title": "USERS"}}}]}
        ).execute()

    bad_delete = {
        "requests": [
            {"deleteDimension": {"range": {"sheetId": 99, "dimension": "ROWS", "startIndex": 0, "endIndex": 1}}}
        ]
    }
    with pytest.raises(HttpError):
        service.spreadsheets().batchUpdate(spreadsheetId="x", body=bad_delete).execute()
