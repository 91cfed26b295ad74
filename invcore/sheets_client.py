"""Google Sheets gateway with robust A1 range handling.

This module is the only place that talks to the spreadsheet service.  It
exposes a small set of coroutines mirroring the primitives the repository
layer needs:

``read`` / ``write`` / ``append`` / ``clear``
    Value operations addressed by tab title and an optional A1 cell range.

``get_metadata``
    The tab list together with the numeric ``sheetId`` of every tab.  The
    structural ``deleteDimension`` request addresses tabs by that id, not by
    title.

``delete_rows`` / ``add_tabs``
    Structural edits issued through ``spreadsheets.batchUpdate``.

Each call runs the blocking ``googleapiclient`` request in a worker thread,
so every call is a suspension point for the event loop.  Failures are
re-raised as :class:`SheetsApiResponseError`; there is no retry here, the
caller owns any retry policy.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, MutableSequence, Optional, Sequence

from google.auth.exceptions import GoogleAuthError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from invcore.errors import Internal, StorageError, Unavailable
from invcore.google_credentials import CredentialsFileInvalidError, load_credentials
from invcore.workbook_service import LocalWorkbookService

logger = logging.getLogger(__name__)

SCOPES: Sequence[str] = ("https://www.googleapis.com/auth/spreadsheets",)
VALUE_INPUT_OPTION = "USER_ENTERED"


@dataclass(frozen=True)
class SheetInfo:
    """Title and numeric identifier of a worksheet tab."""

    title: str
    sheet_id: int


class SheetsClientError(StorageError):
    """Base error raised for Sheets gateway failures."""


class SheetsCredentialsError(SheetsClientError, Unavailable):
    """Raised when the configured credentials are invalid or missing."""


class SheetsApiResponseError(SheetsClientError, Unavailable):
    """Raised when the Google API returns an error or cannot be reached."""


class SheetsNotConnectedError(SheetsClientError, Unavailable):
    """Raised when a request is issued before :meth:`GoogleSheetsClient.connect`."""


class SheetsLayoutError(SheetsClientError, Internal):
    """Raised for a missing tab, a blank tab title or an invalid row range."""


def _normalise_title(title: str) -> str:
    """Return a worksheet title quoted according to A1 notation rules."""

    safe = (title or "").strip()
    if not safe:
        raise SheetsLayoutError("Worksheet title must not be empty.")
    if len(safe) >= 2 and safe[0] == safe[-1] and safe[0] in {"'", '"'}:
        safe = safe[1:-1]
    safe = safe.replace("'", "''")
    return f"'{safe}'"


def column_letter(index: int) -> str:
    if index < 1:
        raise ValueError("Column index must be >= 1")
    letters: MutableSequence[str] = []
    while index:
        index, remainder = divmod(index - 1, 26)
        letters.append(chr(65 + remainder))
    return "".join(reversed(letters))


def a1_range(title: str, cell_range: Optional[str] = None) -> str:
    """Return ``'title'!cell_range`` or just the quoted title for whole tabs."""

    quoted = _normalise_title(title)
    if not cell_range:
        return quoted
    return f"{quoted}!{cell_range}"


def is_local_workbook(spreadsheet_id: str) -> bool:
    """Return ``True`` when ``spreadsheet_id`` points at a local JSON workbook."""

    path = Path(spreadsheet_id)
    if path.suffix.lower() == ".json":
        return True
    return path.exists() and path.is_file()


def _build_service(
    credential_path: Optional[str],
    *,
    service_account_email: str = "",
    private_key: str = "",
):
    try:
        credentials = load_credentials(
            credential_path,
            service_account_email=service_account_email,
            private_key=private_key,
            scopes=SCOPES,
        )
    except CredentialsFileInvalidError as exc:
        raise SheetsCredentialsError(str(exc)) from exc

    try:
        return build("sheets", "v4", credentials=credentials, cache_discovery=False)
    except (HttpError, GoogleAuthError, OSError) as exc:
        raise SheetsApiResponseError(str(exc)) from exc


class GoogleSheetsClient:
    """Concrete gateway that speaks to Google Sheets using the REST API.

    ``service`` may be injected (tests, :class:`LocalWorkbookService`); when
    it is omitted :meth:`connect` builds one from the credential settings.
    """

    def __init__(
        self,
        spreadsheet_id: str,
        *,
        credential_path: Optional[str] = None,
        service_account_email: str = "",
        private_key: str = "",
        service=None,
    ) -> None:
        self._spreadsheet_id = spreadsheet_id
        self._credential_path = credential_path
        self._service_account_email = service_account_email
        self._private_key = private_key
        self._injected_service = service
        self._service = service

    @property
    def spreadsheet_id(self) -> str:
        return self._spreadsheet_id

    @property
    def connected(self) -> bool:
        return self._service is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        if self._service is not None:
            return
        if self._injected_service is not None:
            self._service = self._injected_service
            return
        self._service = await asyncio.to_thread(
            _build_service,
            self._credential_path,
            service_account_email=self._service_account_email,
            private_key=self._private_key,
        )
        logger.info("Connected to spreadsheet %s", self._spreadsheet_id)

    async def close(self) -> None:
        service, self._service = self._service, None
        closer = getattr(service, "close", None)
        if callable(closer):
            await asyncio.to_thread(closer)

    # ------------------------------------------------------------------
    # Value operations
    # ------------------------------------------------------------------
    async def read(self, tab: str, cell_range: Optional[str] = None) -> List[List[str]]:
        """Return the values of ``tab`` (or ``cell_range`` within it).

        An empty range yields ``[]``.
        """

        range_spec = a1_range(tab, cell_range)
        response = await self._execute(
            lambda service: service.spreadsheets()
            .values()
            .get(spreadsheetId=self._spreadsheet_id, range=range_spec),
            action=f"read {range_spec}",
        )
        values = response.get("values", []) if isinstance(response, Mapping) else []
        return [["" if cell is None else str(cell) for cell in row] for row in values]

    async def write(self, tab: str, cell_range: str, rows: Sequence[Sequence[Any]]) -> None:
        range_spec = a1_range(tab, cell_range)
        body = {"values": [list(row) for row in rows]}
        await self._execute(
            lambda service: service.spreadsheets()
            .values()
            .update(
                spreadsheetId=self._spreadsheet_id,
                range=range_spec,
                valueInputOption=VALUE_INPUT_OPTION,
                body=body,
            ),
            action=f"write {range_spec}",
        )

    async def append(self, tab: str, rows: Sequence[Sequence[Any]]) -> None:
        if not rows:
            return
        range_spec = a1_range(tab)
        body = {"values": [list(row) for row in rows]}
        await self._execute(
            lambda service: service.spreadsheets()
            .values()
            .append(
                spreadsheetId=self._spreadsheet_id,
                range=range_spec,
                valueInputOption=VALUE_INPUT_OPTION,
                insertDataOption="INSERT_ROWS",
                body=body,
            ),
            action=f"append {range_spec}",
        )

    async def clear(self, tab: str, cell_range: Optional[str] = None) -> None:
        range_spec = a1_range(tab, cell_range)
        await self._execute(
            lambda service: service.spreadsheets()
            .values()
            .clear(spreadsheetId=self._spreadsheet_id, range=range_spec, body={}),
            action=f"clear {range_spec}",
        )

    # ------------------------------------------------------------------
    # Metadata and structural edits
    # ------------------------------------------------------------------
    async def get_metadata(self) -> List[SheetInfo]:
        response = await self._execute(
            lambda service: service.spreadsheets().get(
                spreadsheetId=self._spreadsheet_id,
                includeGridData=False,
                fields="sheets.properties(sheetId,title)",
            ),
            action="metadata",
        )
        tabs: List[SheetInfo] = []
        for sheet in response.get("sheets", []) if isinstance(response, Mapping) else []:
            properties = sheet.get("properties", {}) or {}
            title = properties.get("title")
            if title is None:
                continue
            tabs.append(SheetInfo(title=str(title), sheet_id=int(properties.get("sheetId", 0))))
        return tabs

    async def sheet_id_for(self, tab: str) -> int:
        for info in await self.get_metadata():
            if info.title == tab:
                return info.sheet_id
        raise SheetsLayoutError(f"Worksheet {tab!r} not found in spreadsheet")

    async def delete_rows(self, sheet_id: int, start_index: int, end_index: int) -> None:
        """Remove rows ``[start_index, end_index)`` (0-based) from the tab."""

        if start_index < 0 or end_index <= start_index:
            raise SheetsLayoutError(f"Invalid row range {start_index}:{end_index} for deletion")
        body = {
            "requests": [
                {
                    "deleteDimension": {
                        "range": {
                            "sheetId": sheet_id,
                            "dimension": "ROWS",
                            "startIndex": start_index,
                            "endIndex": end_index,
                        }
                    }
                }
            ]
        }
        await self._batch_update(body, action=f"delete rows {start_index}:{end_index} of {sheet_id}")

    async def add_tabs(self, titles: Sequence[str]) -> None:
        if not titles:
            return
        body = {"requests": [{"addSheet": {"properties": {"title": title}}} for title in titles]}
        await self._batch_update(body, action=f"add tabs {', '.join(titles)}")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _batch_update(self, body: Dict[str, Any], *, action: str) -> None:
        await self._execute(
            lambda service: service.spreadsheets().batchUpdate(
                spreadsheetId=self._spreadsheet_id, body=body
            ),
            action=action,
        )

    async def _execute(self, make_request: Callable[[Any], Any], *, action: str) -> Any:
        service = self._service
        if service is None:
            raise SheetsNotConnectedError("Sheets client is not connected")

        def _run() -> Any:
            return make_request(service).execute()

        try:
            return await asyncio.to_thread(_run)
        except HttpError as exc:
            logger.warning("Sheets API error during %s: %s", action, exc)
            raise SheetsApiResponseError(str(exc)) from exc
        except (GoogleAuthError, OSError) as exc:
            logger.warning("Sheets transport failure during %s: %s", action, exc)
            raise SheetsApiResponseError(str(exc)) from exc


def build_client(
    spreadsheet_id: str,
    credential_path: Optional[str] = None,
    *,
    service_account_email: str = "",
    private_key: str = "",
) -> GoogleSheetsClient:
    """Factory used by the storage builder to construct a gateway.

    A spreadsheet id that names a local ``.json`` file is served by
    :class:`LocalWorkbookService` instead of the remote API.
    """

    if is_local_workbook(spreadsheet_id):
        path = Path(spreadsheet_id).expanduser().resolve()
        return GoogleSheetsClient(str(path), service=LocalWorkbookService(path))

    return GoogleSheetsClient(
        spreadsheet_id,
        credential_path=credential_path,
        service_account_email=service_account_email,
        private_key=private_key,
    )


__all__ = [
    "GoogleSheetsClient",
    "SheetInfo",
    "SheetsApiResponseError",
    "SheetsClientError",
    "SheetsCredentialsError",
    "SheetsLayoutError",
    "SheetsNotConnectedError",
    "a1_range",
    "build_client",
    "column_letter",
    "is_local_workbook",
]
