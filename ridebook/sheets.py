"""
Spreadsheet access for the transfer ledger.

``GoogleSheetsClient`` talks to the Sheets REST API with a service-account
token, ``InMemorySheetsClient`` is a test/dev double that understands the
same value ranges and structural requests, and ``Workbook`` layers the
request-scoped sheet metadata cache on top of either.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence
from urllib.parse import quote

import httpx
from google.auth import crypt, jwt

from ridebook.cache import RequestCache
from ridebook.errors import ExternalServiceError, InvalidInputError, NotFoundError

logger = logging.getLogger(__name__)

SHEETS_API_BASE = "https://sheets.googleapis.com/v4/spreadsheets"
SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"

# Refresh the access token when it has less than this many seconds left.
TOKEN_EXPIRY_MARGIN = 60

TOKEN_CACHE_KEY = ("sheets", "token")
SHEETS_META_CACHE_KEY = ("sheets", "meta")
ARG_SEP_CACHE_KEY = ("sheets", "arg_sep")

# Spreadsheet locales whose formulas separate arguments with ";".
SEMICOLON_LOCALES = re.compile(
    r"de|at|fr|it|es|nl|pl|pt|tr|ru|cz|cs|sk|hu|ro|bg|hr|sr|sl|el|gr|da|no|sv|fi|uk|ua|ar"
)

SheetValue = Any
Rows = List[List[SheetValue]]


def col_letter(idx1: int) -> str:
    """1-based column index to its A1 letter (1 -> A, 27 -> AA)."""
    letters = ""
    n = idx1
    while n > 0:
        n, rem = divmod(n - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


def col_index(letters: str) -> int:
    """A1 column letters to a 1-based column index."""
    idx = 0
    for ch in letters:
        idx = idx * 26 + (ord(ch) - 64)
    return idx


@dataclass(frozen=True)
class A1Range:
    title: str
    start_col: int
    start_row: int
    end_col: Optional[int]
    end_row: Optional[int]


_CELL_RE = re.compile(r"^([A-Z]*)(\d*)$")


def parse_a1(range_a1: str) -> A1Range:
    title, _, cells = range_a1.rpartition("!")
    title = title.strip("'")
    start, _, end = cells.partition(":")
    start_match = _CELL_RE.match(start)
    if not title or not start_match:
        raise InvalidInputError(f"Unsupported A1 range: {range_a1}")
    start_letters, start_digits = start_match.groups()
    start_col = col_index(start_letters) if start_letters else 1
    start_row = int(start_digits) if start_digits else 1
    if not end:
        return A1Range(title, start_col, start_row, start_col, start_row)
    end_match = _CELL_RE.match(end)
    if not end_match:
        raise InvalidInputError(f"Unsupported A1 range: {range_a1}")
    end_letters, end_digits = end_match.groups()
    return A1Range(
        title,
        start_col,
        start_row,
        col_index(end_letters) if end_letters else None,
        int(end_digits) if end_digits else None,
    )


class SheetsClient(Protocol):
    """Range-scoped value access and structural edits on one spreadsheet."""

    async def values_get(self, range_a1: str) -> Rows:
        ...

    async def values_update(
        self, range_a1: str, rows: Rows, input_mode: str = "USER_ENTERED"
    ) -> None:
        ...

    async def values_append(
        self, range_a1: str, rows: Rows, input_mode: str = "USER_ENTERED"
    ) -> None:
        ...

    async def values_batch_update(
        self, data: Sequence[dict], input_mode: str = "USER_ENTERED"
    ) -> None:
        ...

    async def batch_update(self, requests: Sequence[dict]) -> None:
        ...

    async def get_spreadsheet(self, fields: str) -> dict:
        ...


@dataclass
class ServiceAccountCredentials:
    """Signs JWT assertions and exchanges them for OAuth access tokens."""

    client_email: str
    private_key: str
    scope: str = SHEETS_SCOPE
    token_uri: str = GOOGLE_TOKEN_URI

    def signed_assertion(self, now: int) -> str:
        signer = crypt.RSASigner.from_service_account_info(
            {"client_email": self.client_email, "private_key": self.private_key}
        )
        claims = {
            "iss": self.client_email,
            "scope": self.scope,
            "aud": self.token_uri,
            "iat": now,
            "exp": now + 3600,
        }
        return jwt.encode(signer, claims).decode("utf-8")

    async def access_token(self, http: httpx.AsyncClient, cache: RequestCache) -> str:
        now = int(time.time())
        cached = cache.get(TOKEN_CACHE_KEY)
        if cached and cached[1] > now + TOKEN_EXPIRY_MARGIN:
            return cached[0]

        response = await http.post(
            self.token_uri,
            data={"grant_type": JWT_BEARER_GRANT, "assertion": self.signed_assertion(now)},
        )
        if response.is_error:
            raise ExternalServiceError("oauth", response.status_code, response.text)
        payload = response.json()
        expires_in = payload.get("expires_in")
        exp = now + (expires_in if isinstance(expires_in, int) else 3600)
        cache.set(TOKEN_CACHE_KEY, (payload["access_token"], exp))
        return payload["access_token"]


class GoogleSheetsClient:
    """
    Sheets v4 REST client. One instance per request: the access token lives in
    the request cache, the HTTP connection pool is shared.
    """

    def __init__(
        self,
        spreadsheet_id: str,
        credentials: ServiceAccountCredentials,
        http: httpx.AsyncClient,
        cache: RequestCache,
    ):
        if not spreadsheet_id:
            raise InvalidInputError("Missing GOOGLE_SHEETS_SPREADSHEET_ID")
        self.spreadsheet_id = spreadsheet_id
        self.credentials = credentials
        self.http = http
        self.cache = cache

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
    ) -> dict:
        token = await self.credentials.access_token(self.http, self.cache)
        url = f"{SHEETS_API_BASE}/{self.spreadsheet_id}{path}"
        response = await self.http.request(
            method,
            url,
            params=params,
            json=json,
            headers={"Authorization": f"Bearer {token}"},
        )
        if response.is_error:
            raise ExternalServiceError(
                "sheets", response.status_code, f"{method} {path}: {response.text}"
            )
        return response.json() if response.content else {}

    @staticmethod
    def _values_path(range_a1: str) -> str:
        return f"/values/{quote(range_a1, safe='')}"

    async def values_get(self, range_a1: str) -> Rows:
        payload = await self._request("GET", self._values_path(range_a1))
        return payload.get("values") or []

    async def values_update(
        self, range_a1: str, rows: Rows, input_mode: str = "USER_ENTERED"
    ) -> None:
        await self._request(
            "PUT",
            self._values_path(range_a1),
            params={"valueInputOption": input_mode},
            json={"range": range_a1, "values": rows, "majorDimension": "ROWS"},
        )

    async def values_append(
        self, range_a1: str, rows: Rows, input_mode: str = "USER_ENTERED"
    ) -> None:
        await self._request(
            "POST",
            f"{self._values_path(range_a1)}:append",
            params={"insertDataOption": "INSERT_ROWS", "valueInputOption": input_mode},
            json={"values": rows, "majorDimension": "ROWS"},
        )

    async def values_batch_update(
        self, data: Sequence[dict], input_mode: str = "USER_ENTERED"
    ) -> None:
        if not data:
            return
        await self._request(
            "POST",
            "/values:batchUpdate",
            json={
                "valueInputOption": input_mode,
                "data": [
                    {
                        "range": item["range"],
                        "values": item["values"],
                        "majorDimension": item.get("majorDimension", "ROWS"),
                    }
                    for item in data
                ],
            },
        )

    async def batch_update(self, requests: Sequence[dict]) -> None:
        if not requests:
            return
        await self._request("POST", ":batchUpdate", json={"requests": list(requests)})

    async def get_spreadsheet(self, fields: str) -> dict:
        return await self._request("GET", "", params={"fields": fields})


def _is_blank(value: SheetValue) -> bool:
    return value is None or value == ""


def _sort_key(value: SheetValue):
    if _is_blank(value):
        return (2, "")
    if isinstance(value, bool):
        return (1, str(value))
    if isinstance(value, (int, float)):
        return (0, value)
    return (1, str(value))


@dataclass
class _Sheet:
    sheet_id: int
    title: str
    index: int
    grid: List[List[SheetValue]] = field(default_factory=list)

    def cell(self, row: int, col: int) -> SheetValue:
        if row - 1 < len(self.grid) and col - 1 < len(self.grid[row - 1]):
            return self.grid[row - 1][col - 1]
        return ""

    def write(self, row: int, col: int, value: SheetValue) -> None:
        while len(self.grid) < row:
            self.grid.append([])
        line = self.grid[row - 1]
        while len(line) < col:
            line.append("")
        line[col - 1] = value

    def last_row(self) -> int:
        for idx in range(len(self.grid), 0, -1):
            if any(not _is_blank(v) for v in self.grid[idx - 1]):
                return idx
        return 0

    def last_col(self) -> int:
        return max((len(line) for line in self.grid), default=0)


class InMemorySheetsClient:
    """
    Spreadsheet double for tests and local development.

    Values are stored as written (formulas stay formula strings), reads trim
    trailing blank cells and rows like the real API does, and every
    ``batch_update`` request is recorded in ``requests`` for inspection.
    """

    def __init__(self, locale: str = "en_US"):
        self.locale = locale
        self.sheets: Dict[str, _Sheet] = {}
        self.requests: List[dict] = []
        self._next_sheet_id = 0

    def add_sheet(self, title: str) -> int:
        if title in self.sheets:
            raise ExternalServiceError(
                "sheets", 400, f'A sheet with the name "{title}" already exists.'
            )
        sheet = _Sheet(self._next_sheet_id, title, len(self.sheets))
        self.sheets[title] = sheet
        self._next_sheet_id += 1
        return sheet.sheet_id

    def sheet_values(self, title: str) -> Rows:
        """Snapshot of a sheet's grid with trailing blanks trimmed."""
        sheet = self._sheet(title)
        return self._read(sheet, 1, 1, None, None)

    def _sheet(self, title: str) -> _Sheet:
        sheet = self.sheets.get(title)
        if sheet is None:
            raise ExternalServiceError("sheets", 400, f"Unable to parse range: {title}")
        return sheet

    def _sheet_by_id(self, sheet_id: int) -> _Sheet:
        for sheet in self.sheets.values():
            if sheet.sheet_id == sheet_id:
                return sheet
        raise ExternalServiceError("sheets", 400, f"No grid with id: {sheet_id}")

    @staticmethod
    def _read(
        sheet: _Sheet,
        start_row: int,
        start_col: int,
        end_row: Optional[int],
        end_col: Optional[int],
    ) -> Rows:
        last_row = end_row if end_row is not None else sheet.last_row()
        last_col = end_col if end_col is not None else sheet.last_col()
        rows: Rows = []
        for r in range(start_row, last_row + 1):
            line = [sheet.cell(r, c) for c in range(start_col, last_col + 1)]
            while line and _is_blank(line[-1]):
                line.pop()
            rows.append(["" if v is None else v for v in line])
        while rows and not rows[-1]:
            rows.pop()
        return rows

    async def values_get(self, range_a1: str) -> Rows:
        rng = parse_a1(range_a1)
        sheet = self._sheet(rng.title)
        return self._read(sheet, rng.start_row, rng.start_col, rng.end_row, rng.end_col)

    def _write_rows(self, sheet: _Sheet, row: int, col: int, rows: Rows) -> None:
        for r_off, line in enumerate(rows):
            for c_off, value in enumerate(line):
                sheet.write(row + r_off, col + c_off, value)

    async def values_update(
        self, range_a1: str, rows: Rows, input_mode: str = "USER_ENTERED"
    ) -> None:
        rng = parse_a1(range_a1)
        self._write_rows(self._sheet(rng.title), rng.start_row, rng.start_col, rows)

    async def values_append(
        self, range_a1: str, rows: Rows, input_mode: str = "USER_ENTERED"
    ) -> None:
        rng = parse_a1(range_a1)
        sheet = self._sheet(rng.title)
        self._write_rows(sheet, sheet.last_row() + 1, rng.start_col, rows)

    async def values_batch_update(
        self, data: Sequence[dict], input_mode: str = "USER_ENTERED"
    ) -> None:
        for item in data:
            await self.values_update(item["range"], item["values"], input_mode)

    async def batch_update(self, requests: Sequence[dict]) -> None:
        for request in requests:
            self.requests.append(request)
            if "addSheet" in request:
                self.add_sheet(request["addSheet"]["properties"]["title"])
            elif "insertDimension" in request:
                self._insert_dimension(request["insertDimension"]["range"])
            elif "updateCells" in request:
                self._clear_values(request["updateCells"])
            elif "sortRange" in request:
                self._sort_range(request["sortRange"])

    def _insert_dimension(self, rng: dict) -> None:
        sheet = self._sheet_by_id(rng["sheetId"])
        start, end = rng["startIndex"], rng["endIndex"]
        count = end - start
        if rng["dimension"] == "ROWS":
            while len(sheet.grid) < start:
                sheet.grid.append([])
            sheet.grid[start:start] = [[] for _ in range(count)]
        else:
            for line in sheet.grid:
                if len(line) > start:
                    line[start:start] = [""] * count

    def _clear_values(self, update: dict) -> None:
        if "userEnteredValue" not in update.get("fields", ""):
            return
        rng = update["range"]
        sheet = self._sheet_by_id(rng["sheetId"])
        row_lo = rng.get("startRowIndex", 0)
        row_hi = rng.get("endRowIndex", len(sheet.grid))
        col_lo = rng.get("startColumnIndex", 0)
        for r in range(row_lo, min(row_hi, len(sheet.grid))):
            line = sheet.grid[r]
            col_hi = rng.get("endColumnIndex", len(line))
            for c in range(col_lo, min(col_hi, len(line))):
                line[c] = ""

    def _sort_range(self, spec: dict) -> None:
        rng = spec["range"]
        sheet = self._sheet_by_id(rng["sheetId"])
        row_lo, row_hi = rng["startRowIndex"], rng["endRowIndex"]
        col_lo, col_hi = rng["startColumnIndex"], rng["endColumnIndex"]
        block = [
            [sheet.cell(r + 1, c + 1) for c in range(col_lo, col_hi)]
            for r in range(row_lo, row_hi)
        ]
        for sort_spec in reversed(spec.get("sortSpecs", [])):
            offset = sort_spec["dimensionIndex"] - col_lo
            block.sort(
                key=lambda line: _sort_key(line[offset]),
                reverse=sort_spec.get("sortOrder") == "DESCENDING",
            )
        for r_off, line in enumerate(block):
            for c_off, value in enumerate(line):
                sheet.write(row_lo + r_off + 1, col_lo + c_off + 1, value)

    async def get_spreadsheet(self, fields: str) -> dict:
        return {
            "properties": {"locale": self.locale},
            "sheets": [
                {
                    "properties": {
                        "sheetId": sheet.sheet_id,
                        "title": sheet.title,
                        "index": sheet.index,
                    }
                }
                for sheet in self.sheets.values()
            ],
        }


class Workbook:
    """
    Request-scoped view of the spreadsheet: value operations pass straight
    through to the client, tab metadata and the formula locale are cached for
    the lifetime of the request.
    """

    def __init__(self, client: SheetsClient, cache: RequestCache):
        self.client = client
        self.cache = cache

    async def values_get(self, range_a1: str) -> Rows:
        return await self.client.values_get(range_a1)

    async def values_update(
        self, range_a1: str, rows: Rows, input_mode: str = "USER_ENTERED"
    ) -> None:
        await self.client.values_update(range_a1, rows, input_mode)

    async def values_append(
        self, range_a1: str, rows: Rows, input_mode: str = "USER_ENTERED"
    ) -> None:
        await self.client.values_append(range_a1, rows, input_mode)

    async def values_batch_update(
        self, data: Sequence[dict], input_mode: str = "USER_ENTERED"
    ) -> None:
        await self.client.values_batch_update(data, input_mode)

    async def batch_update(self, requests: Sequence[dict]) -> None:
        await self.client.batch_update(requests)

    async def sheets(self, force: bool = False) -> List[dict]:
        if force:
            self.cache.invalidate(SHEETS_META_CACHE_KEY)

        async def load() -> List[dict]:
            meta = await self.client.get_spreadsheet("sheets.properties")
            return [s["properties"] for s in meta.get("sheets") or []]

        return await self.cache.get_or_load(SHEETS_META_CACHE_KEY, load)

    async def has_sheet(self, title: str) -> bool:
        return any(p.get("title") == title for p in await self.sheets())

    async def ensure_sheet(self, title: str) -> bool:
        """Create the tab if missing. Returns True when a tab was added."""
        if await self.has_sheet(title):
            return False
        await self.client.batch_update([{"addSheet": {"properties": {"title": title}}}])
        await self.sheets(force=True)
        logger.info("Added sheet %s", title)
        return True

    async def sheet_id(self, title: str) -> int:
        for props in await self.sheets():
            if props.get("title") == title:
                return props["sheetId"]
        raise NotFoundError(f"Sheet not found: {title}")

    async def formula_arg_sep(self) -> str:
        async def load() -> str:
            meta = await self.client.get_spreadsheet("properties.locale")
            locale = ((meta.get("properties") or {}).get("locale") or "en_US").lower()
            return ";" if SEMICOLON_LOCALES.search(locale) else ","

        return await self.cache.get_or_load(ARG_SEP_CACHE_KEY, load)
