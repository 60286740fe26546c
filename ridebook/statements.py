"""
Monthly statement sheets: one derived tab per customer and month.

A statement has a three-row header, one formula row per completed transfer
(joined back to the master ledger through the hidden key column J) and a
totals block below the data. Sorting, renumbering, totals and borders are
either delegated to the post-processing hook or computed here.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Protocol

import httpx

from ridebook.errors import InvalidInputError
from ridebook.formulas import (
    COLOR,
    KEY_COL,
    MONTH_HEADERS_VISIBLE,
    MONTH_TOTAL_COLUMNS,
    monthly_row_formulas,
    round2,
)
from ridebook.ledger import VOUCHER_PAYMENT, MasterLedger, Transfer, TransferState
from ridebook.sheets import Workbook

logger = logging.getLogger(__name__)

GERMAN_MONTHS = [
    "JÄNNER",
    "FEBRUAR",
    "MÄRZ",
    "APRIL",
    "MAI",
    "JUNI",
    "JULI",
    "AUGUST",
    "SEPTEMBER",
    "OKTOBER",
    "NOVEMBER",
    "DEZEMBER",
]

HEADER_ROWS = 3
FIRST_DATA_ROW = HEADER_ROWS + 1
VAT_PERCENT = 10
DISCOUNT_PERCENT = 4
TOTALS_BLOCK_ROWS = 6
COLUMN_WIDTHS = [40, 100, 70, 220, 220, 180, 110, 110, 130]

DATE_FORMAT = {"type": "DATE", "pattern": "dd.MM.yyyy"}
TIME_FORMAT = {"type": "TIME", "pattern": "hh:mm"}
CURRENCY_FORMAT = {"type": "CURRENCY", "pattern": "#,##0.00€"}

CUSTOMER_NUMBER_LABEL = "Kundennummer:"
SUM_LABEL = "Gesamtsumme:"
VOUCHER_LABEL = "LIMOSEN KG 100% Rabatt Gutscheine:"
NET_LABEL = "Rechnungsbetrag nach Abzug Gutscheine:"
VAT_LABEL = f"Gesamt Rechnungsbetrag inkl. {VAT_PERCENT}% MwSt:"
DISCOUNT_LABEL = (
    f"Gesamt Rechnungsbetrag inkl. {VAT_PERCENT}% MwSt mit {DISCOUNT_PERCENT}% Rabatt:"
)

_MONTH_KEY_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


class DisplayNames(Protocol):
    async def display_name(self, user_id: str) -> Optional[str]:
        ...


def validate_month_key(yyyymm: str) -> str:
    if not _MONTH_KEY_RE.match(yyyymm or ""):
        raise InvalidInputError("Invalid month, expected YYYY-MM")
    return yyyymm


def german_month_label(yyyymm: str) -> str:
    year, month = yyyymm.split("-")
    return f"{GERMAN_MONTHS[int(month) - 1]} {int(year)}"


def statement_title(customer_id: str, yyyymm: str) -> str:
    return f"USR_{customer_id}_{yyyymm}"


def _grid(
    sheet_id: int,
    row_lo: Optional[int],
    row_hi: Optional[int],
    col_lo: int,
    col_hi: int,
) -> dict:
    rng = {"sheetId": sheet_id, "startColumnIndex": col_lo, "endColumnIndex": col_hi}
    if row_lo is not None:
        rng["startRowIndex"] = row_lo
    if row_hi is not None:
        rng["endRowIndex"] = row_hi
    return rng


def _repeat_cell(rng: dict, fmt: dict, fields: str) -> dict:
    return {
        "repeatCell": {
            "range": rng,
            "cell": {"userEnteredFormat": fmt},
            "fields": fields,
        }
    }


class PostProcessHook:
    """
    Optional web hook that sorts, totals and styles a statement sheet.

    Calls are best effort: the body is always drained, failures are logged
    and never raised.
    """

    def __init__(self, url: Optional[str], http: httpx.AsyncClient):
        self.url = url
        self.http = http

    @property
    def configured(self) -> bool:
        return bool(self.url)

    async def refresh(self, sheet_title: str) -> None:
        if not self.url:
            logger.warning("SHEETS_WEBAPP_URL is not set, skipping hook refresh")
            return
        try:
            response = await self.http.get(self.url, params={"sheet": sheet_title})
            await response.aread()
            if response.is_error:
                logger.warning(
                    "Hook refresh for %s answered HTTP %s", sheet_title, response.status_code
                )
        except httpx.HTTPError as exc:
            logger.error("Hook refresh for %s failed: %s", sheet_title, exc)


class MonthlyStatementBuilder:
    def __init__(
        self,
        workbook: Workbook,
        ledger: MasterLedger,
        hook: PostProcessHook,
        names: DisplayNames,
    ):
        self.workbook = workbook
        self.ledger = ledger
        self.hook = hook
        self.names = names

    # ---------- sheet bootstrap ----------

    async def ensure_sheet(self, customer_id: str, yyyymm: str, *, wipe: bool = False) -> str:
        title = statement_title(customer_id, yyyymm)
        await self.workbook.ensure_sheet(title)

        if wipe:
            sheet_id = await self.workbook.sheet_id(title)
            await self.workbook.batch_update(
                [{"updateCells": {"range": {"sheetId": sheet_id}, "fields": "userEnteredValue"}}]
            )

        display_name = await self.names.display_name(customer_id)
        existing = await self.workbook.values_get(f"{title}!A1:{KEY_COL}3")
        has_column_headers = (
            len(existing) >= HEADER_ROWS and len(existing[2]) >= MONTH_TOTAL_COLUMNS
        )

        data = [
            {"range": f"{title}!A1", "values": [[f"ABRECHNUNG: {german_month_label(yyyymm)}"]]},
            {
                "range": f"{title}!A2:I2",
                "values": [
                    [display_name or "", "", "", "", "", "", CUSTOMER_NUMBER_LABEL, customer_id, ""]
                ],
            },
        ]
        if not has_column_headers:
            data.append({"range": f"{title}!A3:I3", "values": [MONTH_HEADERS_VISIBLE]})
        await self.workbook.values_batch_update(data)

        await self.style_base(title)
        return title

    async def style_base(self, title: str) -> None:
        sheet_id = await self.workbook.sheet_id(title)
        data_rows = HEADER_ROWS
        requests: List[dict] = [
            {
                "updateSheetProperties": {
                    "properties": {
                        "sheetId": sheet_id,
                        "gridProperties": {"frozenRowCount": HEADER_ROWS},
                    },
                    "fields": "gridProperties.frozenRowCount",
                }
            },
            _repeat_cell(
                _grid(sheet_id, 0, 1, 0, MONTH_TOTAL_COLUMNS),
                {"textFormat": {"bold": True, "fontSize": 14}, "backgroundColor": COLOR["white"]},
                "userEnteredFormat(textFormat,backgroundColor)",
            ),
            _repeat_cell(
                _grid(sheet_id, 1, 2, 0, MONTH_TOTAL_COLUMNS),
                {"backgroundColor": COLOR["white"], "textFormat": {"bold": True}},
                "userEnteredFormat(backgroundColor,textFormat)",
            ),
            # G2 holds the customer-number label
            _repeat_cell(
                _grid(sheet_id, 1, 2, 6, 7),
                {"horizontalAlignment": "RIGHT"},
                "userEnteredFormat.horizontalAlignment",
            ),
            _repeat_cell(
                _grid(sheet_id, 2, 3, 0, MONTH_TOTAL_COLUMNS),
                {
                    "backgroundColor": COLOR["headerGray"],
                    "horizontalAlignment": "CENTER",
                    "textFormat": {"bold": True},
                },
                "userEnteredFormat(backgroundColor,horizontalAlignment,textFormat)",
            ),
        ]
        for idx, px in enumerate(COLUMN_WIDTHS):
            requests.append(
                {
                    "updateDimensionProperties": {
                        "range": {
                            "sheetId": sheet_id,
                            "dimension": "COLUMNS",
                            "startIndex": idx,
                            "endIndex": idx + 1,
                        },
                        "properties": {"pixelSize": px},
                        "fields": "pixelSize",
                    }
                }
            )
        requests.extend(
            [
                {
                    "updateDimensionProperties": {
                        "range": {
                            "sheetId": sheet_id,
                            "dimension": "COLUMNS",
                            "startIndex": MONTH_TOTAL_COLUMNS,
                            "endIndex": MONTH_TOTAL_COLUMNS + 1,
                        },
                        "properties": {"hiddenByUser": True},
                        "fields": "hiddenByUser",
                    }
                },
                _repeat_cell(
                    _grid(sheet_id, data_rows, None, 0, 3),
                    {"horizontalAlignment": "CENTER"},
                    "userEnteredFormat.horizontalAlignment",
                ),
                _repeat_cell(
                    _grid(sheet_id, data_rows, None, 1, 2),
                    {"numberFormat": DATE_FORMAT},
                    "userEnteredFormat.numberFormat",
                ),
                _repeat_cell(
                    _grid(sheet_id, data_rows, None, 2, 3),
                    {"numberFormat": TIME_FORMAT},
                    "userEnteredFormat.numberFormat",
                ),
                _repeat_cell(
                    _grid(sheet_id, data_rows, None, 7, 8),
                    {"numberFormat": CURRENCY_FORMAT, "horizontalAlignment": "RIGHT"},
                    "userEnteredFormat(numberFormat,horizontalAlignment)",
                ),
            ]
        )
        await self.workbook.batch_update(requests)

    # ---------- key column ----------

    async def statement_ids(self, title: str) -> List[str]:
        values = await self.workbook.values_get(f"{title}!{KEY_COL}{FIRST_DATA_ROW}:{KEY_COL}")
        return [str(line[0]) for line in values if line and str(line[0]) != ""]

    async def find_row(self, title: str, transfer_id: str) -> Optional[int]:
        values = await self.workbook.values_get(f"{title}!{KEY_COL}{FIRST_DATA_ROW}:{KEY_COL}")
        for offset, line in enumerate(values):
            if line and str(line[0]) == transfer_id:
                return FIRST_DATA_ROW + offset
        return None

    # ---------- incremental path ----------

    async def append_transfer(self, transfer: Transfer) -> str:
        """Add a statement row for a freshly completed transfer."""
        yyyymm = transfer.month_key
        title = await self.ensure_sheet(transfer.customer_id, yyyymm)

        if await self.find_row(title, transfer.transfer_id) is not None:
            logger.info("[%s] Statement row already present in %s", transfer.transfer_id, title)
            await self.refresh(title)
            return title

        current = len(await self.statement_ids(title))
        number = current + 1
        insert_at = HEADER_ROWS + number
        sheet_id = await self.workbook.sheet_id(title)
        await self.workbook.batch_update(
            [
                {
                    "insertDimension": {
                        "range": {
                            "sheetId": sheet_id,
                            "dimension": "ROWS",
                            "startIndex": insert_at - 1,
                            "endIndex": insert_at,
                        },
                        "inheritFromBefore": True,
                    }
                }
            ]
        )

        sep = await self.workbook.formula_arg_sep()
        row = monthly_row_formulas(transfer.transfer_id, sep, self.ledger.title, number)
        await self.workbook.values_update(f"{title}!A{insert_at}:{KEY_COL}{insert_at}", [row])
        logger.info("[%s] Added statement row %d to %s", transfer.transfer_id, insert_at, title)

        await self.refresh(title)
        return title

    # ---------- full resync ----------

    async def sync(self, customer_id: str, yyyymm: str) -> int:
        """Wipe and rebuild a statement from the master ledger."""
        validate_month_key(yyyymm)
        title = await self.ensure_sheet(customer_id, yyyymm, wipe=True)

        rows = [
            t
            for t in await self.ledger.all()
            if t.customer_id == customer_id
            and t.state == TransferState.COMPLETE
            and t.month_key == yyyymm
        ]

        if rows:
            sep = await self.workbook.formula_arg_sep()
            payload = [
                monthly_row_formulas(t.transfer_id, sep, self.ledger.title, idx + 1)
                for idx, t in enumerate(rows)
            ]
            end_row = HEADER_ROWS + len(payload)
            await self.workbook.values_update(
                f"{title}!A{FIRST_DATA_ROW}:{KEY_COL}{end_row}", payload
            )

        logger.info("Synced %s with %d rows", title, len(rows))
        await self.refresh(title, rows)
        return len(rows)

    # ---------- sorting, totals, borders ----------

    async def refresh(self, title: str, transfers: Optional[Iterable[Transfer]] = None) -> None:
        if self.hook.configured:
            await self.hook.refresh(title)
            return

        if transfers is None:
            ids = await self.statement_ids(title)
            data_count = len(ids)
            wanted = set(ids)
            transfers = [t for t in await self.ledger.all() if t.transfer_id in wanted]
        else:
            transfers = list(transfers)
            data_count = len(transfers)
        # Statement cells hold formulas, so vouchers are detected on the ledger rows.
        voucher_exists = any(t.is_voucher for t in transfers)

        await self.enforce_number_formats(title, FIRST_DATA_ROW, HEADER_ROWS + data_count)
        await self.sort_chronologically(title, data_count)
        await self.refresh_totals(title, data_count, voucher_exists)

    async def enforce_number_formats(self, title: str, row_start: int, row_end: int) -> None:
        if row_end < row_start:
            return
        sheet_id = await self.workbook.sheet_id(title)
        await self.workbook.batch_update(
            [
                _repeat_cell(
                    _grid(sheet_id, row_start - 1, row_end, 1, 2),
                    {"numberFormat": DATE_FORMAT, "horizontalAlignment": "CENTER"},
                    "userEnteredFormat(numberFormat,horizontalAlignment)",
                ),
                _repeat_cell(
                    _grid(sheet_id, row_start - 1, row_end, 2, 3),
                    {"numberFormat": TIME_FORMAT, "horizontalAlignment": "CENTER"},
                    "userEnteredFormat(numberFormat,horizontalAlignment)",
                ),
                _repeat_cell(
                    _grid(sheet_id, row_start - 1, row_end, 7, 8),
                    {"numberFormat": CURRENCY_FORMAT, "horizontalAlignment": "RIGHT"},
                    "userEnteredFormat(numberFormat,horizontalAlignment)",
                ),
            ]
        )

    async def sort_chronologically(self, title: str, data_count: int) -> None:
        """Sort data rows by date then time and renumber column A."""
        if data_count <= 0:
            return
        if data_count > 1:
            sheet_id = await self.workbook.sheet_id(title)
            await self.workbook.batch_update(
                [
                    {
                        "sortRange": {
                            "range": _grid(
                                sheet_id,
                                HEADER_ROWS,
                                HEADER_ROWS + data_count,
                                0,
                                MONTH_TOTAL_COLUMNS + 1,
                            ),
                            "sortSpecs": [
                                {"dimensionIndex": 1, "sortOrder": "ASCENDING"},
                                {"dimensionIndex": 2, "sortOrder": "ASCENDING"},
                            ],
                        }
                    }
                ]
            )
        await self.workbook.values_update(
            f"{title}!A{FIRST_DATA_ROW}:A{HEADER_ROWS + data_count}",
            [[idx + 1] for idx in range(data_count)],
        )

    async def refresh_totals(self, title: str, data_count: int, voucher_exists: bool) -> None:
        sep = await self.workbook.formula_arg_sep()
        last_data_row = HEADER_ROWS + data_count
        spacer_row = last_data_row + 1
        cursor = spacer_row + 1
        sum_row = cursor
        cursor += 1
        voucher_row = None
        if voucher_exists:
            voucher_row = cursor
            cursor += 1
        net_row = cursor
        vat_row = net_row + 1
        discounted_row = net_row + 2

        amounts = f"H{FIRST_DATA_ROW}:H{last_data_row}"
        payments = f"I{FIRST_DATA_ROW}:I{last_data_row}"
        sum_inner = f"SUM({amounts})" if data_count > 0 else "0"
        voucher_inner = (
            f'SUMIF({payments}{sep}"{VOUCHER_PAYMENT}"{sep}{amounts})' if data_count > 0 else "0"
        )
        net_inner = f"H{sum_row}-{f'H{voucher_row}' if voucher_row else '0'}"
        vat_inner = f"H{net_row}*(1+{VAT_PERCENT}/100)"
        discounted_inner = f"H{net_row}*(1-{DISCOUNT_PERCENT}/100)*(1+{VAT_PERCENT}/100)"

        data = [
            {
                "range": f"{title}!F{last_data_row + 1}:H{last_data_row + TOTALS_BLOCK_ROWS}",
                "values": [["", "", ""] for _ in range(TOTALS_BLOCK_ROWS)],
            },
            {
                "range": f"{title}!A{spacer_row}:I{spacer_row}",
                "values": [[""] * MONTH_TOTAL_COLUMNS],
            },
            {
                "range": f"{title}!F{sum_row}:H{sum_row}",
                "values": [[SUM_LABEL, "", f"={round2(sum_inner, sep)}"]],
            },
        ]
        if voucher_row:
            data.append(
                {
                    "range": f"{title}!F{voucher_row}:H{voucher_row}",
                    "values": [[VOUCHER_LABEL, "", f"={round2(voucher_inner, sep)}"]],
                }
            )
        data.extend(
            [
                {
                    "range": f"{title}!F{net_row}:H{net_row}",
                    "values": [[NET_LABEL, "", f"={round2(net_inner, sep)}"]],
                },
                {
                    "range": f"{title}!F{vat_row}:H{vat_row}",
                    "values": [[VAT_LABEL, "", f"={round2(vat_inner, sep)}"]],
                },
                {
                    "range": f"{title}!F{discounted_row}:H{discounted_row}",
                    "values": [[DISCOUNT_LABEL, "", f"={round2(discounted_inner, sep)}"]],
                },
            ]
        )
        await self.workbook.values_batch_update(data)

        sheet_id = await self.workbook.sheet_id(title)
        solid = {"style": "SOLID", "color": COLOR["black"]}
        requests: List[dict] = []
        if data_count > 0:
            requests.append(
                {
                    "updateBorders": {
                        "range": _grid(sheet_id, HEADER_ROWS, last_data_row, 0, MONTH_TOTAL_COLUMNS),
                        "top": solid,
                        "bottom": solid,
                        "left": solid,
                        "right": solid,
                        "innerHorizontal": solid,
                        "innerVertical": solid,
                    }
                }
            )
        requests.extend(
            [
                _repeat_cell(
                    _grid(sheet_id, sum_row - 1, discounted_row, 5, 8),
                    {"textFormat": {"bold": True}},
                    "userEnteredFormat.textFormat.bold",
                ),
                _repeat_cell(
                    _grid(sheet_id, sum_row - 1, discounted_row, 7, 8),
                    {"numberFormat": CURRENCY_FORMAT, "horizontalAlignment": "RIGHT"},
                    "userEnteredFormat(numberFormat,horizontalAlignment)",
                ),
                _repeat_cell(
                    _grid(sheet_id, discounted_row - 1, discounted_row, 5, 6),
                    {"backgroundColor": COLOR["white"]},
                    "userEnteredFormat.backgroundColor",
                ),
                _repeat_cell(
                    _grid(sheet_id, sum_row - 1, sum_row, 6, 8),
                    {"backgroundColor": COLOR["white"]},
                    "userEnteredFormat.backgroundColor",
                ),
                _repeat_cell(
                    _grid(sheet_id, net_row - 1, net_row, 7, 8),
                    {"backgroundColor": COLOR["white"]},
                    "userEnteredFormat.backgroundColor",
                ),
                {
                    "updateBorders": {
                        "range": _grid(sheet_id, discounted_row - 1, discounted_row, 7, 8),
                        "bottom": {"style": "DOUBLE", "color": COLOR["black"]},
                    }
                },
            ]
        )
        await self.workbook.batch_update(requests)
