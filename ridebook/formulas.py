"""
Cell formulas and styling constants for the monthly statement sheets.

Statement rows never hold copied values: every visible cell looks the
transfer up in the master ledger by the id stored in the hidden column J, so
edits to the master show up without rewriting the statement.
"""

from __future__ import annotations

from typing import List

from ridebook.ledger import MASTER_HEADERS
from ridebook.sheets import SheetValue, col_letter

MONTH_HEADERS_VISIBLE = [
    "Nr.",
    "Datum",
    "Uhrzeit",
    "Abholort",
    "Zielort",
    "Zimmer/Name",
    "Wagen",
    "Betrag",
    "Bezahlung",
]  # A..I

MONTH_TOTAL_COLUMNS = len(MONTH_HEADERS_VISIBLE)
KEY_COL = col_letter(MONTH_TOTAL_COLUMNS + 1)  # J, hidden

COLOR = {
    "black": {"red": 0, "green": 0, "blue": 0},
    "white": {"red": 1, "green": 1, "blue": 1},
    "headerGray": {"red": 0.953, "green": 0.957, "blue": 0.965},
}


def _master_col(name: str) -> str:
    return col_letter(MASTER_HEADERS.index(name) + 1)


def _call(name: str, sep: str, *args: str) -> str:
    return f"{name}({sep.join(args)})"


def _key(sep: str) -> str:
    return _call("INDEX", sep, f"${KEY_COL}:${KEY_COL}", "ROW()")


def xlookup_expr(return_col: str, sep: str, master_title: str) -> str:
    return _call(
        "XLOOKUP",
        sep,
        _key(sep),
        f"{master_title}!A:A",
        f"{master_title}!{return_col}:{return_col}",
    )


def _guarded(inner: str, sep: str) -> str:
    """Blank when the row has no key, blank when the lookup fails."""
    return "=" + _call(
        "IF", sep, f'{_key(sep)}=""', '""', _call("IFERROR", sep, inner, '""')
    )


def text_cell(master_col: str, sep: str, master_title: str) -> str:
    return _guarded(xlookup_expr(master_col, sep, master_title), sep)


def number_cell(master_col: str, sep: str, master_title: str) -> str:
    x = xlookup_expr(master_col, sep, master_title)
    return _guarded(_call("ROUND", sep, f"N({x})", "2"), sep)


def date_cell(master_col: str, sep: str, master_title: str) -> str:
    x = xlookup_expr(master_col, sep, master_title)
    from_text = _call(
        "DATE",
        sep,
        f"VALUE({_call('LEFT', sep, x, '4')})",
        f"VALUE({_call('MID', sep, x, '6', '2')})",
        f"VALUE({_call('RIGHT', sep, x, '2')})",
    )
    return _guarded(_call("IF", sep, f"ISNUMBER({x})", x, from_text), sep)


def time_cell(master_col: str, sep: str, master_title: str) -> str:
    x = xlookup_expr(master_col, sep, master_title)
    from_text = _call(
        "TIME",
        sep,
        f"VALUE({_call('LEFT', sep, x, '2')})",
        f"VALUE({_call('MID', sep, x, '4', '2')})",
        "0",
    )
    return _guarded(_call("IF", sep, f"ISNUMBER({x})", x, from_text), sep)


def round2(expr: str, sep: str) -> str:
    return _call("ROUND", sep, expr, "2")


def monthly_row_formulas(
    transfer_id: str, sep: str, master_title: str, number: SheetValue = ""
) -> List[SheetValue]:
    """Cells A..J of one statement row."""
    return [
        number,
        date_cell(_master_col("rideDateISO"), sep, master_title),
        time_cell(_master_col("rideTime"), sep, master_title),
        text_cell(_master_col("pickup"), sep, master_title),
        text_cell(_master_col("dropoff"), sep, master_title),
        text_cell(_master_col("roomOrName"), sep, master_title),
        text_cell(_master_col("vehicle"), sep, master_title),
        number_cell(_master_col("amountEUR"), sep, master_title),
        text_cell(_master_col("payment"), sep, master_title),
        transfer_id,
    ]
