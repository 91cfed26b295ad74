"""Local Sheets API drop-in that stores worksheets in a JSON workbook.

The workbook file has the shape ``{"sheets": {title: rows}, "sheet_ids":
{title: id}}``.  Only the request surface used by
:class:`invcore.sheets_client.GoogleSheetsClient` is emulated: value
``get``/``update``/``append``/``clear``, ``spreadsheets.get`` for tab
metadata and ``batchUpdate`` with ``addSheet`` and ``deleteDimension``.
"""

from __future__ import annotations

import json
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import httplib2
from googleapiclient.errors import HttpError


@dataclass(frozen=True)
class _CellRef:
    row: Optional[int]
    column: Optional[int]


@dataclass
class _Workbook:
    sheets: Dict[str, List[List[str]]]
    sheet_ids: Dict[str, int]

    def ensure_tab(self, title: str) -> List[List[str]]:
        if title not in self.sheets:
            self.sheets[title] = []
        if title not in self.sheet_ids:
            self.sheet_ids[title] = max(self.sheet_ids.values(), default=-1) + 1
        return self.sheets[title]

    def require_tab(self, title: str) -> List[List[str]]:
        if title not in self.sheets:
            raise WorkbookRangeError(f"Unable to parse range: {title}")
        return self.ensure_tab(title)


class WorkbookRangeError(ValueError):
    """Raised for ranges naming tabs or cells the workbook does not have."""


class _WorkbookRequest:
    def __init__(self, callback: Callable[[], Mapping[str, Any]]) -> None:
        self._callback = callback

    def execute(self) -> Mapping[str, Any]:
        try:
            return self._callback()
        except WorkbookRangeError as exc:
            # Surface workbook failures the way the remote API does.
            content = json.dumps({"error": {"code": 400, "message": str(exc)}}).encode("utf-8")
            raise HttpError(httplib2.Response({"status": 400}), content) from exc


class _WorkbookStore:
    """File persistence guarded by a lock shared across worker threads."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.RLock()

    def run(self, operation: Callable[[_Workbook], Any], *, write: bool) -> Any:
        with self._lock:
            workbook = self._load()
            result = operation(workbook)
            if write:
                self._save(workbook)
            return result

    def _load(self) -> _Workbook:
        if not self.path.exists():
            return _Workbook(sheets={}, sheet_ids={})
        with open(self.path, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
        sheets = {
            str(title): [["" if cell is None else str(cell) for cell in row] for row in rows]
            for title, rows in (payload.get("sheets") or {}).items()
        }
        sheet_ids = {str(title): int(value) for title, value in (payload.get("sheet_ids") or {}).items()}
        workbook = _Workbook(sheets=sheets, sheet_ids=sheet_ids)
        for title in list(sheets):
            workbook.ensure_tab(title)
        return workbook

    def _save(self, workbook: _Workbook) -> None:
        if self.path.parent:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "sheets": {title: [list(row) for row in rows] for title, rows in workbook.sheets.items()},
            "sheet_ids": dict(workbook.sheet_ids),
        }
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        tmp_path.replace(self.path)


class WorkbookValuesApi:
    def __init__(self, store: _WorkbookStore) -> None:
        self._store = store

    def get(self, spreadsheetId: str, range: str) -> _WorkbookRequest:  # noqa: N803 - API compatibility
        def _handle(workbook: _Workbook) -> Mapping[str, Any]:
            title, start, end = parse_range(range)
            rows = workbook.require_tab(title)
            return {"range": range, "values": _slice_rows(rows, start, end)}

        return _WorkbookRequest(lambda: self._store.run(_handle, write=False))

    def update(  # noqa: D401 - API compatibility
        self,
        spreadsheetId: str,  # noqa: N803
        range: str,
        valueInputOption: str = "RAW",  # noqa: N803
        body: Optional[Mapping[str, Any]] = None,
    ) -> _WorkbookRequest:
        def _handle(workbook: _Workbook) -> Mapping[str, Any]:
            title, start, _ = parse_range(range)
            rows = workbook.require_tab(title)
            values = (body or {}).get("values", [])
            _write_block(rows, start.row or 1, start.column or 1, values)
            return {"updatedRange": range, "updatedRows": len(values)}

        return _WorkbookRequest(lambda: self._store.run(_handle, write=True))

    def append(
        self,
        spreadsheetId: str,  # noqa: N803
        range: str,
        valueInputOption: str = "RAW",  # noqa: N803
        insertDataOption: str = "INSERT_ROWS",  # noqa: N803
        body: Optional[Mapping[str, Any]] = None,
    ) -> _WorkbookRequest:
        def _handle(workbook: _Workbook) -> Mapping[str, Any]:
            title, _, _ = parse_range(range)
            rows = workbook.require_tab(title)
            while rows and not any(cell != "" for cell in rows[-1]):
                rows.pop()
            values = (body or {}).get("values", [])
            first_row = len(rows) + 1
            _write_block(rows, first_row, 1, values)
            return {"updates": {"updatedRows": len(values), "startRow": first_row}}

        return _WorkbookRequest(lambda: self._store.run(_handle, write=True))

    def clear(
        self,
        spreadsheetId: str,  # noqa: N803
        range: str,
        body: Optional[Mapping[str, Any]] = None,
    ) -> _WorkbookRequest:
        def _handle(workbook: _Workbook) -> Mapping[str, Any]:
            title, start, end = parse_range(range)
            rows = workbook.require_tab(title)
            if start.row is None and start.column is None:
                rows.clear()
                return {"clearedRange": range}
            _clear_block(rows, start, end)
            return {"clearedRange": range}

        return _WorkbookRequest(lambda: self._store.run(_handle, write=True))


class WorkbookSpreadsheetsApi:
    def __init__(self, store: _WorkbookStore) -> None:
        self._store = store

    def values(self) -> WorkbookValuesApi:  # noqa: D401 - compatibility proxy
        return WorkbookValuesApi(self._store)

    def get(
        self,
        spreadsheetId: str,  # noqa: N803
        includeGridData: bool = False,  # noqa: N803
        fields: Optional[str] = None,
        ranges: Optional[Sequence[str]] = None,
    ) -> _WorkbookRequest:
        def _handle(workbook: _Workbook) -> Mapping[str, Any]:
            sheets_payload = [
                {"properties": {"title": title, "sheetId": workbook.sheet_ids[title]}}
                for title in workbook.sheets
            ]
            return {"spreadsheetId": str(self._store.path), "sheets": sheets_payload}

        return _WorkbookRequest(lambda: self._store.run(_handle, write=False))

    def batchUpdate(  # noqa: N802 - API compatibility
        self,
        spreadsheetId: str,  # noqa: N803
        body: Mapping[str, Any],
    ) -> _WorkbookRequest:
        return _WorkbookRequest(lambda: self._store.run(lambda wb: _apply_requests(wb, body), write=True))


class LocalWorkbookService:
    """Minimal Sheets API drop-in that stores worksheets in one JSON file."""

    def __init__(self, workbook_path: Path) -> None:
        self._store = _WorkbookStore(Path(workbook_path))

    @property
    def path(self) -> Path:
        return self._store.path

    def spreadsheets(self) -> WorkbookSpreadsheetsApi:  # noqa: D401 - compatibility proxy
        return WorkbookSpreadsheetsApi(self._store)


# ----------------------------------------------------------------------
# batchUpdate requests
# ----------------------------------------------------------------------
def _apply_requests(workbook: _Workbook, body: Mapping[str, Any]) -> Mapping[str, Any]:
    replies: List[Mapping[str, Any]] = []
    for request in body.get("requests", []) or []:
        if not isinstance(request, Mapping):
            continue
        add_sheet = request.get("addSheet")
        if isinstance(add_sheet, Mapping):
            title = (add_sheet.get("properties") or {}).get("title")
            if not isinstance(title, str) or not title:
                raise WorkbookRangeError("addSheet requires a title")
            if title in workbook.sheets:
                raise WorkbookRangeError(f"A sheet with the name {title!r} already exists")
            workbook.ensure_tab(title)
            replies.append({"addSheet": {"properties": {"title": title, "sheetId": workbook.sheet_ids[title]}}})
            continue
        delete_dimension = request.get("deleteDimension")
        if isinstance(delete_dimension, Mapping):
            _delete_dimension(workbook, delete_dimension.get("range") or {})
            replies.append({})
    return {"replies": replies}


def _delete_dimension(workbook: _Workbook, grid_range: Mapping[str, Any]) -> None:
    if grid_range.get("dimension") != "ROWS":
        raise WorkbookRangeError("Only ROWS deletion is supported")
    sheet_id = int(grid_range.get("sheetId", -1))
    titles = [title for title, value in workbook.sheet_ids.items() if value == sheet_id]
    if not titles:
        raise WorkbookRangeError(f"No grid with id: {sheet_id}")
    rows = workbook.sheets[titles[0]]
    start = int(grid_range.get("startIndex", 0))
    end = int(grid_range.get("endIndex", start + 1))
    del rows[start:end]


# ----------------------------------------------------------------------
# Range helpers
# ----------------------------------------------------------------------
_CELL_RE = re.compile(r"^(?P<col>[A-Z]*)(?P<row>\d*)$")


def parse_range(range_spec: str) -> Tuple[str, _CellRef, _CellRef]:
    """Split ``'Title'!A1:B2`` into the tab title and its corner cells."""

    text = range_spec.strip()
    if "!" in text:
        title_text, _, cells = text.rpartition("!")
    else:
        title_text, cells = text, ""
    title_text = title_text.strip()
    if len(title_text) >= 2 and title_text[0] == title_text[-1] == "'":
        title_text = title_text[1:-1].replace("''", "'")
    if not title_text:
        raise WorkbookRangeError(f"Invalid range specification: {range_spec!r}")
    if not cells:
        empty = _CellRef(row=None, column=None)
        return title_text, empty, empty
    if ":" in cells:
        start_text, end_text = cells.split(":", 1)
    else:
        start_text = end_text = cells
    return title_text, _parse_cell(start_text), _parse_cell(end_text)


def _parse_cell(value: str) -> _CellRef:
    value = value.strip().upper()
    match = _CELL_RE.match(value)
    if not value or not match:
        raise WorkbookRangeError(f"Invalid cell reference: {value!r}")
    column_label = match.group("col")
    row_text = match.group("row")
    column = _column_index(column_label) if column_label else None
    row = int(row_text) if row_text else None
    return _CellRef(row=row, column=column)


def _column_index(label: str) -> int:
    index = 0
    for char in label:
        index = index * 26 + (ord(char) - ord("A") + 1)
    return max(1, index)


def _slice_rows(rows: Sequence[Sequence[str]], start: _CellRef, end: _CellRef) -> List[List[str]]:
    if not rows:
        return []
    min_row = max(1, start.row or 1)
    min_col = max(1, start.column or 1)
    max_row = end.row or len(rows)
    max_col = end.column or max(len(row) for row in rows)
    sliced: List[List[str]] = []
    for row_index in range(min_row - 1, min(max_row, len(rows))):
        row = rows[row_index]
        current = [str(row[col_index]) for col_index in range(min_col - 1, min(max_col, len(row)))]
        while current and current[-1] == "":
            current.pop()
        sliced.append(current)
    while sliced and not sliced[-1]:
        sliced.pop()
    return sliced


def _clear_block(rows: List[List[str]], start: _CellRef, end: _CellRef) -> None:
    last_row = end.row or len(rows)
    for row_index in range(max(1, start.row or 1), min(last_row, len(rows)) + 1):
        row = rows[row_index - 1]
        last_column = end.column or len(row)
        for col_index in range(max(1, start.column or 1), min(last_column, len(row)) + 1):
            row[col_index - 1] = ""


def _write_block(rows: List[List[str]], first_row: int, first_col: int, values: Sequence[Sequence[Any]]) -> None:
    for row_offset, row_values in enumerate(values):
        row_index = first_row - 1 + row_offset
        while len(rows) <= row_index:
            rows.append([])
        target = rows[row_index]
        for col_offset, cell in enumerate(row_values):
            col_index = first_col - 1 + col_offset
            while len(target) <= col_index:
                target.append("")
            target[col_index] = "" if cell is None else str(cell)


__all__ = ["LocalWorkbookService", "WorkbookRangeError", "parse_range"]
