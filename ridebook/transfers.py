"""
Transfer lifecycle: creation, driver assignment, state transitions, reads and
the monthly statement resync.

The master ledger is the source of truth. Every mutation re-reads the row it
touched and upserts it into the relational mirror on a best-effort basis.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import replace
from datetime import datetime
from typing import List, Optional

from ridebook.db import MirrorClient, TransferQuery
from ridebook.errors import ConflictError, ForbiddenError, InvalidInputError, NotFoundError
from ridebook.identity import IdentityClient
from ridebook.lazy import Lazy
from ridebook.ledger import (
    MasterLedger,
    Transfer,
    TransferState,
    new_transfer_id,
    utc_now_iso,
)
from ridebook.statements import MonthlyStatementBuilder, validate_month_key

logger = logging.getLogger(__name__)

COMPLETE_OR_CONFIRMED = "completeOrConfirmed"

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def validate_ride_date(ride_date_iso: str) -> str:
    try:
        datetime.strptime(ride_date_iso or "", "%Y-%m-%d")
    except ValueError:
        raise InvalidInputError("Invalid rideDateISO")
    return ride_date_iso


def validate_ride_time(ride_time: str) -> str:
    if not _TIME_RE.match(ride_time or ""):
        raise InvalidInputError("Invalid rideTime")
    return ride_time


def _parse_state(state: Optional[str]) -> Optional[TransferState]:
    if not state:
        return None
    try:
        return TransferState(state)
    except ValueError:
        raise InvalidInputError(f"Unknown transfer state: {state}")


class TransferService:
    def __init__(
        self,
        ledger: MasterLedger,
        statements: MonthlyStatementBuilder,
        identity: IdentityClient,
        mirror: MirrorClient,
        caller_id: Optional[str] = None,
    ):
        self.ledger = ledger
        self.statements = statements
        self.identity = identity
        self.mirror = mirror
        self.caller_id = caller_id

    def _require_caller(self) -> str:
        if not self.caller_id:
            raise InvalidInputError("Anonymous")
        return self.caller_id

    async def _load(self, transfer_id: str):
        await self.ledger.ensure()
        row_idx, transfer = await self.ledger.get_with_index(transfer_id)
        if row_idx is None or transfer is None:
            raise NotFoundError("transferId not found")
        return row_idx, transfer

    async def _mirror(self, transfer_id: str) -> Optional[Transfer]:
        """Re-read the ledger row and copy it into the relational mirror."""
        transfer = await self.ledger.get(transfer_id)
        if transfer is None:
            return None
        try:
            await asyncio.to_thread(self.mirror.upsert_transfer, transfer)
        except Exception as exc:
            logger.error("[%s] Mirror upsert failed: %s", transfer_id, exc)
        return transfer

    # ---------- creation ----------

    async def create_transfer(
        self,
        customer_id: str,
        ride_date_iso: str,
        ride_time: str,
        pickup: str,
        dropoff: str,
        room_or_name: Optional[str] = None,
        vehicle: Optional[str] = None,
        amount_eur: Optional[float] = None,
        payment: Optional[str] = None,
    ) -> Transfer:
        validate_ride_date(ride_date_iso)
        validate_ride_time(ride_time)
        if not customer_id:
            raise InvalidInputError("customerId required")
        if not (pickup or "").strip():
            raise InvalidInputError("pickup required")
        if not (dropoff or "").strip():
            raise InvalidInputError("dropoff required")

        customer_name = await self.identity.display_name(customer_id)
        await self.ledger.ensure()

        transfer = Transfer(
            transfer_id=new_transfer_id(),
            customer_id=customer_id,
            customer_name=customer_name,
            ride_date_iso=ride_date_iso,
            ride_time=ride_time,
            pickup=pickup,
            dropoff=dropoff,
            room_or_name=room_or_name,
            vehicle=vehicle,
            amount_eur=amount_eur,
            payment=payment,
            state=TransferState.PENDING,
            requested_at_iso=utc_now_iso(),
        )
        await self.ledger.append(transfer)
        logger.info("[%s] Created transfer for customer %s", transfer.transfer_id, customer_id)
        return await self._mirror(transfer.transfer_id) or transfer

    async def book_transfer(
        self,
        ride_date_iso: str,
        ride_time: str,
        pickup: str,
        dropoff: str,
        room_or_name: Optional[str] = None,
        vehicle: Optional[str] = None,
        amount_eur: Optional[float] = None,
        payment: Optional[str] = None,
    ) -> Transfer:
        customer_id = self._require_caller()
        return await self.create_transfer(
            customer_id,
            ride_date_iso,
            ride_time,
            pickup,
            dropoff,
            room_or_name,
            vehicle,
            amount_eur,
            payment,
        )

    # ---------- lifecycle ----------

    async def assign_driver(self, transfer_id: str, driver_user_id: str) -> Transfer:
        if not driver_user_id:
            raise InvalidInputError("driverUserId required")
        try:
            await self.identity.get_user(driver_user_id)
        except NotFoundError:
            raise NotFoundError("Driver user not found")
        driver_name = await self.identity.display_name(driver_user_id) or ""

        row_idx, _ = await self._load(transfer_id)
        await self.ledger.set_driver(row_idx, driver_user_id, driver_name)
        logger.info("[%s] Assigned driver %s", transfer_id, driver_user_id)
        return await self._mirror(transfer_id)

    async def mark_confirmed(self, transfer_id: str) -> Transfer:
        row_idx, transfer = await self._load(transfer_id)
        if transfer.state != TransferState.PENDING:
            raise ConflictError("Only pending transfers can be confirmed")
        await self.ledger.set_state(row_idx, TransferState.CONFIRMED)
        logger.info("[%s] Confirmed", transfer_id)
        return await self._mirror(transfer_id)

    async def cancel_transfer(self, transfer_id: str) -> Transfer:
        caller = self._require_caller()
        row_idx, transfer = await self._load(transfer_id)
        if transfer.customer_id != caller:
            raise ForbiddenError("Forbidden")
        if transfer.state != TransferState.PENDING:
            raise ConflictError("Only pending transfers can be canceled")
        await self.ledger.set_state(row_idx, TransferState.CANCELED)
        logger.info("[%s] Canceled by customer", transfer_id)
        return await self._mirror(transfer_id)

    async def terminate_transfer(self, transfer_id: str) -> Transfer:
        row_idx, transfer = await self._load(transfer_id)
        if transfer.state == TransferState.COMPLETE:
            raise ConflictError("Cannot terminate a completed transfer")
        await self.ledger.set_state(row_idx, TransferState.TERMINATED)
        logger.info("[%s] Terminated", transfer_id)
        return await self._mirror(transfer_id)

    async def mark_completed(self, transfer_id: str) -> Transfer:
        row_idx, transfer = await self._load(transfer_id)
        if transfer.state not in (TransferState.PENDING, TransferState.CONFIRMED):
            raise ConflictError("Only pending or confirmed transfers can be completed")
        await self.ledger.set_state(row_idx, TransferState.COMPLETE)
        logger.info("[%s] Completed", transfer_id)

        # No rollback: a failed statement update is repaired by sync_monthly_sheet.
        await self.statements.append_transfer(replace(transfer, state=TransferState.COMPLETE))
        return await self._mirror(transfer_id)

    # ---------- reads ----------

    async def get_transfer(self, transfer_id: str) -> Optional[Transfer]:
        return await self.ledger.get(transfer_id)

    async def list_transfers(
        self,
        customer_id: Optional[str] = None,
        driver_id: Optional[str] = None,
        state: Optional[str] = None,
        from_date_iso: Optional[str] = None,
        to_date_iso: Optional[str] = None,
    ) -> List[Transfer]:
        query = TransferQuery(
            state=_parse_state(state),
            customer_id=customer_id,
            driver_id=driver_id,
            from_date_iso=from_date_iso,
            to_date_iso=to_date_iso,
        )
        return [t for t in await self.ledger.all() if query.matches(t)]

    async def customer_bookings(self) -> List[Transfer]:
        return await self.list_transfers(customer_id=self._require_caller())

    async def driver_transfers(
        self,
        driver_user_id: str,
        state: Optional[str] = None,
        from_date_iso: Optional[str] = None,
        to_date_iso: Optional[str] = None,
    ) -> List[Transfer]:
        return await self.list_transfers(
            driver_id=driver_user_id,
            state=state,
            from_date_iso=from_date_iso,
            to_date_iso=to_date_iso,
        )

    def driver_revenue(
        self,
        driver_user_id: str,
        state: Optional[str] = None,
        from_date_iso: Optional[str] = None,
        to_date_iso: Optional[str] = None,
        include_vouchers: bool = False,
    ) -> dict:
        """
        Revenue summary for a driver. ``total`` and ``count`` are lazy and
        share one pass over the ledger.
        """
        state_filter = state or TransferState.COMPLETE.value
        if state_filter == COMPLETE_OR_CONFIRMED:
            wanted = {TransferState.COMPLETE, TransferState.CONFIRMED}
        else:
            wanted = {_parse_state(state_filter)}

        async def compute() -> dict:
            rows = await self.list_transfers(
                driver_id=driver_user_id,
                from_date_iso=from_date_iso,
                to_date_iso=to_date_iso,
            )
            eligible = [
                t
                for t in rows
                if t.state in wanted
                and (include_vouchers or not t.is_voucher)
                and t.amount_eur is not None
            ]
            return {"total": sum(t.amount_eur for t in eligible), "count": len(eligible)}

        summary = Lazy(compute)

        async def total() -> float:
            return (await summary.get())["total"]

        async def count() -> int:
            return (await summary.get())["count"]

        return {
            "driverUserId": driver_user_id,
            "currency": "EUR",
            "total": Lazy(total),
            "count": Lazy(count),
        }

    # ---------- maintenance ----------

    async def sync_monthly_sheet(self, user_id: str, yyyymm: str) -> int:
        if not user_id:
            raise InvalidInputError("userId required")
        validate_month_key(yyyymm)
        await self.ledger.ensure()
        return await self.statements.sync(user_id, yyyymm)

    # ---------- relational mirror ----------

    async def get_mirrored_transfer(self, transfer_id: str) -> Optional[Transfer]:
        return await asyncio.to_thread(self.mirror.get_transfer, transfer_id)

    async def list_mirrored_transfers(
        self,
        state: Optional[str] = None,
        customer_id: Optional[str] = None,
        driver_id: Optional[str] = None,
        from_date_iso: Optional[str] = None,
        to_date_iso: Optional[str] = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
    ) -> List[Transfer]:
        if (take is not None and take < 0) or (skip is not None and skip < 0):
            raise InvalidInputError("take and skip must not be negative")
        query = TransferQuery(
            state=_parse_state(state),
            customer_id=customer_id,
            driver_id=driver_id,
            from_date_iso=from_date_iso,
            to_date_iso=to_date_iso,
            take=take,
            skip=skip,
        )
        return await asyncio.to_thread(self.mirror.list_transfers, query)

    async def create_mirrored_transfer(self, data: dict) -> Transfer:
        transfer = Transfer(
            transfer_id=data.get("transferId") or "",
            customer_id=data.get("customerId") or "",
            customer_name=data.get("customerName"),
            ride_date_iso=data.get("rideDateISO") or "",
            ride_time=data.get("rideTime") or "",
            pickup=data.get("pickup") or "",
            dropoff=data.get("dropoff") or "",
            room_or_name=data.get("roomOrName"),
            vehicle=data.get("vehicle"),
            amount_eur=data.get("amountEUR"),
            payment=data.get("payment"),
            driver_id=data.get("driverId"),
            driver_name=data.get("driverName"),
            state=_parse_state(data.get("state")) or TransferState.PENDING,
            requested_at_iso=data.get("requestedAtISO") or utc_now_iso(),
        )
        created = await asyncio.to_thread(self.mirror.create_transfer, transfer)
        logger.info("[%s] Created mirrored transfer", created.transfer_id)
        return created
