"""
The master ledger sheet: its header schema, the row codec for ``Transfer``
records, and the read/write helpers every lifecycle operation goes through.
"""

from __future__ import annotations

import enum
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from ridebook.sheets import Rows, SheetValue, Workbook, col_letter

logger = logging.getLogger(__name__)

MASTER_TITLE = "AllRequests"

# Canonical layout, columns A..O.
MASTER_HEADERS = [
    "transferId",
    "customerId",
    "customerName",
    "rideDateISO",
    "rideTime",
    "pickup",
    "dropoff",
    "roomOrName",
    "vehicle",
    "amountEUR",
    "payment",
    "driverId",
    "driverName",
    "state",
    "requestedAtISO",
]

LAST_MASTER_COL = col_letter(len(MASTER_HEADERS))
STATE_COL = col_letter(MASTER_HEADERS.index("state") + 1)
DRIVER_ID_COL = col_letter(MASTER_HEADERS.index("driverId") + 1)
DRIVER_NAME_COL = col_letter(MASTER_HEADERS.index("driverName") + 1)

VOUCHER_PAYMENT = "Gutschein"


class TransferState(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETE = "complete"
    CANCELED = "canceled"
    TERMINATED = "terminated"


@dataclass
class Transfer:
    transfer_id: str
    customer_id: str
    ride_date_iso: str
    ride_time: str
    pickup: str
    dropoff: str
    state: TransferState
    requested_at_iso: str
    customer_name: Optional[str] = None
    room_or_name: Optional[str] = None
    vehicle: Optional[str] = None
    amount_eur: Optional[float] = None
    payment: Optional[str] = None
    driver_id: Optional[str] = None
    driver_name: Optional[str] = None

    @property
    def month_key(self) -> str:
        return self.ride_date_iso[:7]

    @property
    def is_voucher(self) -> bool:
        return self.payment == VOUCHER_PAYMENT

    def as_dict(self) -> dict:
        return {
            "transferId": self.transfer_id,
            "customerId": self.customer_id,
            "customerName": self.customer_name,
            "rideDateISO": self.ride_date_iso,
            "rideTime": self.ride_time,
            "pickup": self.pickup,
            "dropoff": self.dropoff,
            "roomOrName": self.room_or_name,
            "vehicle": self.vehicle,
            "amountEUR": self.amount_eur,
            "payment": self.payment,
            "driverId": self.driver_id,
            "driverName": self.driver_name,
            "state": self.state.value,
            "requestedAtISO": self.requested_at_iso,
        }


def new_transfer_id(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"tr_{now.strftime('%Y%m%d%H%M%S')}_{secrets.token_hex(3)}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _text(value: SheetValue) -> str:
    if value is None:
        return ""
    return str(value)


def _optional(value: SheetValue) -> Optional[str]:
    text = _text(value)
    return text or None


def _amount(value: SheetValue) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        # Formatted reads from comma-decimal locales come back as "48,5".
        return float(str(value).replace(",", "."))
    except ValueError:
        return None


def row_to_transfer(row: Optional[Sequence[SheetValue]]) -> Optional[Transfer]:
    """Decode one master row; short or missing rows decode to None."""
    if not row or len(row) < len(MASTER_HEADERS):
        return None
    (
        transfer_id,
        customer_id,
        customer_name,
        ride_date_iso,
        ride_time,
        pickup,
        dropoff,
        room_or_name,
        vehicle,
        amount_eur,
        payment,
        driver_id,
        driver_name,
        state,
        requested_at_iso,
    ) = row[: len(MASTER_HEADERS)]
    try:
        parsed_state = TransferState(_text(state))
    except ValueError:
        logger.warning("Transfer %s has unknown state %r", transfer_id, state)
        return None
    return Transfer(
        transfer_id=_text(transfer_id),
        customer_id=_text(customer_id),
        customer_name=_optional(customer_name),
        ride_date_iso=_text(ride_date_iso),
        ride_time=_text(ride_time),
        pickup=_text(pickup),
        dropoff=_text(dropoff),
        room_or_name=_optional(room_or_name),
        vehicle=_optional(vehicle),
        amount_eur=_amount(amount_eur),
        payment=_optional(payment),
        driver_id=_optional(driver_id),
        driver_name=_optional(driver_name),
        state=parsed_state,
        requested_at_iso=_text(requested_at_iso),
    )


def transfer_to_row(transfer: Transfer) -> List[SheetValue]:
    return [
        transfer.transfer_id,
        transfer.customer_id,
        transfer.customer_name or "",
        transfer.ride_date_iso,
        transfer.ride_time,
        transfer.pickup,
        transfer.dropoff,
        transfer.room_or_name or "",
        transfer.vehicle or "",
        transfer.amount_eur if transfer.amount_eur is not None else "",
        transfer.payment or "",
        transfer.driver_id or "",
        transfer.driver_name or "",
        transfer.state.value,
        transfer.requested_at_iso,
    ]


class MasterLedger:
    """Reads and writes the ``AllRequests`` sheet through a ``Workbook``."""

    def __init__(self, workbook: Workbook, title: str = MASTER_TITLE):
        self.workbook = workbook
        self.title = title

    @property
    def header_range(self) -> str:
        return f"{self.title}!A1:{LAST_MASTER_COL}1"

    def row_range(self, row_idx: int) -> str:
        return f"{self.title}!A{row_idx}:{LAST_MASTER_COL}{row_idx}"

    async def ensure(self) -> None:
        """Create the sheet and its header row, or migrate a legacy header."""
        await self.workbook.ensure_sheet(self.title)
        existing = await self.workbook.values_get(self.header_range)
        if not existing or not any(_text(v) for v in existing[0]):
            await self.workbook.values_update(self.header_range, [MASTER_HEADERS])
        else:
            await self.migrate_if_needed()

    async def migrate_if_needed(self) -> bool:
        """
        Bring a legacy header in line with ``MASTER_HEADERS``.

        The old layout named column B ``userId`` and column L ``driver`` and had
        no ``driverName`` column, so ``state`` sat in M. Renames happen in
        place and a column is inserted at M. Returns True if anything changed.
        """
        rows = await self.workbook.values_get(f"{self.title}!A1:Z1")
        header = [_text(v) for v in (rows[0] if rows else [])]

        def cell(idx: int) -> str:
            return header[idx] if idx < len(header) else ""

        changed = False
        if cell(1) == "userId":
            await self.workbook.values_update(f"{self.title}!B1", [["customerId"]])
            changed = True
        if cell(11) == "driver":
            await self.workbook.values_update(f"{self.title}!L1", [["driverId"]])
            changed = True
        if cell(12) in ("state", ""):
            sheet_id = await self.workbook.sheet_id(self.title)
            await self.workbook.batch_update(
                [
                    {
                        "insertDimension": {
                            "range": {
                                "sheetId": sheet_id,
                                "dimension": "COLUMNS",
                                "startIndex": 12,
                                "endIndex": 13,
                            }
                        }
                    }
                ]
            )
            await self.workbook.values_update(
                f"{self.title}!M1:O1", [["driverName", "state", "requestedAtISO"]]
            )
            changed = True

        if header[: len(MASTER_HEADERS)] != MASTER_HEADERS or changed:
            await self.workbook.values_update(self.header_range, [MASTER_HEADERS])
            changed = True
        if changed:
            logger.info("Migrated %s header to the canonical layout", self.title)
        return changed

    async def find_row_index(self, transfer_id: str) -> Optional[int]:
        ids = await self.workbook.values_get(f"{self.title}!A2:A")
        for offset, line in enumerate(ids):
            if line and _text(line[0]) == transfer_id:
                return offset + 2
        return None

    async def get_with_index(
        self, transfer_id: str
    ) -> Tuple[Optional[int], Optional[Transfer]]:
        row_idx = await self.find_row_index(transfer_id)
        if row_idx is None:
            return None, None
        rows = await self.workbook.values_get(self.row_range(row_idx))
        return row_idx, row_to_transfer(rows[0] if rows else None)

    async def get(self, transfer_id: str) -> Optional[Transfer]:
        _, transfer = await self.get_with_index(transfer_id)
        return transfer

    async def all(self) -> List[Transfer]:
        rows: Rows = await self.workbook.values_get(f"{self.title}!A2:{LAST_MASTER_COL}")
        return [t for t in (row_to_transfer(r) for r in rows) if t is not None]

    async def append(self, transfer: Transfer) -> None:
        await self.workbook.values_append(f"{self.title}!A:A", [transfer_to_row(transfer)])

    async def set_state(self, row_idx: int, state: TransferState) -> None:
        await self.workbook.values_update(
            f"{self.title}!{STATE_COL}{row_idx}:{STATE_COL}{row_idx}", [[state.value]]
        )

    async def set_driver(self, row_idx: int, driver_id: str, driver_name: str) -> None:
        await self.workbook.values_update(
            f"{self.title}!{DRIVER_ID_COL}{row_idx}:{DRIVER_NAME_COL}{row_idx}",
            [[driver_id, driver_name]],
        )
