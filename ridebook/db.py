"""
Relational mirror of the transfer ledger: an SQLAlchemy implementation and an
in-memory test implementation.

The spreadsheet stays the source of truth. The mirror is upserted after
ledger writes so list queries with filters and paging don't have to scan the
sheet.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Protocol

from sqlalchemy import Column, Float, String, create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from ridebook.errors import ConflictError, InvalidInputError
from ridebook.ledger import Transfer, TransferState, utc_now_iso


@dataclass
class TransferQuery:
    state: Optional[TransferState] = None
    customer_id: Optional[str] = None
    driver_id: Optional[str] = None
    from_date_iso: Optional[str] = None
    to_date_iso: Optional[str] = None
    take: Optional[int] = None
    skip: Optional[int] = None

    def matches(self, transfer: Transfer) -> bool:
        if self.state and transfer.state != self.state:
            return False
        if self.customer_id and transfer.customer_id != self.customer_id:
            return False
        if self.driver_id and transfer.driver_id != self.driver_id:
            return False
        if self.from_date_iso and transfer.ride_date_iso < self.from_date_iso:
            return False
        if self.to_date_iso and transfer.ride_date_iso > self.to_date_iso:
            return False
        return True


class MirrorClient(Protocol):
    """Interface for the relational transfer mirror."""

    def get_transfer(self, transfer_id: str) -> Optional[Transfer]:
        ...

    def list_transfers(self, query: Optional[TransferQuery] = None) -> List[Transfer]:
        ...

    def create_transfer(self, transfer: Transfer) -> Transfer:
        ...

    def upsert_transfer(self, transfer: Transfer) -> Transfer:
        ...


def _require(value: Optional[str], label: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(f"{label} is required")


def _validate_for_create(transfer: Transfer) -> None:
    _require(transfer.ride_date_iso, "rideDateISO")
    _require(transfer.ride_time, "rideTime")
    _require(transfer.pickup, "pickup")
    _require(transfer.dropoff, "dropoff")
    _require(transfer.customer_id, "customerId")
    _require(transfer.transfer_id, "transferId")


def _sort_key(transfer: Transfer):
    return (transfer.ride_date_iso, transfer.ride_time)


class InMemoryMirrorClient:
    """Simple in-memory mirror for development and tests."""

    def __init__(self):
        self.transfers: Dict[str, Transfer] = {}

    def reset(self) -> None:
        self.transfers.clear()

    def get_transfer(self, transfer_id: str) -> Optional[Transfer]:
        _require(transfer_id, "transferId")
        return self.transfers.get(transfer_id)

    def list_transfers(self, query: Optional[TransferQuery] = None) -> List[Transfer]:
        query = query or TransferQuery()
        rows = sorted(
            (t for t in self.transfers.values() if query.matches(t)), key=_sort_key
        )
        start = query.skip or 0
        end = start + query.take if query.take is not None else None
        return rows[start:end]

    def create_transfer(self, transfer: Transfer) -> Transfer:
        _validate_for_create(transfer)
        if transfer.transfer_id in self.transfers:
            raise ConflictError(f"Transfer {transfer.transfer_id} already exists")
        self.transfers[transfer.transfer_id] = replace(transfer)
        return transfer

    def upsert_transfer(self, transfer: Transfer) -> Transfer:
        _require(transfer.transfer_id, "transferId")
        self.transfers[transfer.transfer_id] = replace(transfer)
        return transfer


class SqlMirrorClient:
    """
    SQLAlchemy-backed mirror. Accepts any SQLAlchemy URL (e.g., Postgres,
    Cloudflare D1 via a driver, or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlMirrorClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @staticmethod
    def _to_transfer(row: "TransferRow") -> Transfer:
        return Transfer(
            transfer_id=row.transfer_id,
            customer_id=row.customer_id,
            customer_name=row.customer_name,
            ride_date_iso=row.ride_date_iso,
            ride_time=row.ride_time,
            pickup=row.pickup,
            dropoff=row.dropoff,
            room_or_name=row.room_or_name,
            vehicle=row.vehicle,
            amount_eur=row.amount_eur,
            payment=row.payment,
            driver_id=row.driver_id,
            driver_name=row.driver_name,
            state=TransferState(row.state),
            requested_at_iso=row.requested_at_iso,
        )

    @staticmethod
    def _apply(row: "TransferRow", transfer: Transfer) -> None:
        row.customer_id = transfer.customer_id
        row.customer_name = transfer.customer_name
        row.ride_date_iso = transfer.ride_date_iso
        row.ride_time = transfer.ride_time
        row.pickup = transfer.pickup
        row.dropoff = transfer.dropoff
        row.room_or_name = transfer.room_or_name
        row.vehicle = transfer.vehicle
        row.amount_eur = transfer.amount_eur
        row.payment = transfer.payment
        row.driver_id = transfer.driver_id
        row.driver_name = transfer.driver_name
        row.state = transfer.state.value
        row.requested_at_iso = (
            transfer.requested_at_iso or row.requested_at_iso or utc_now_iso()
        )
        row.updated_at_iso = utc_now_iso()

    def get_transfer(self, transfer_id: str) -> Optional[Transfer]:
        _require(transfer_id, "transferId")
        with self.Session() as session:
            row = session.get(TransferRow, transfer_id)
            return self._to_transfer(row) if row else None

    def list_transfers(self, query: Optional[TransferQuery] = None) -> List[Transfer]:
        query = query or TransferQuery()
        stmt = select(TransferRow)
        if query.state:
            stmt = stmt.where(TransferRow.state == query.state.value)
        if query.customer_id:
            stmt = stmt.where(TransferRow.customer_id == query.customer_id)
        if query.driver_id:
            stmt = stmt.where(TransferRow.driver_id == query.driver_id)
        if query.from_date_iso:
            stmt = stmt.where(TransferRow.ride_date_iso >= query.from_date_iso)
        if query.to_date_iso:
            stmt = stmt.where(TransferRow.ride_date_iso <= query.to_date_iso)
        stmt = stmt.order_by(TransferRow.ride_date_iso.asc(), TransferRow.ride_time.asc())
        if query.skip:
            stmt = stmt.offset(query.skip)
        if query.take is not None:
            stmt = stmt.limit(query.take)
        with self.Session() as session:
            return [self._to_transfer(row) for row in session.execute(stmt).scalars()]

    def create_transfer(self, transfer: Transfer) -> Transfer:
        _validate_for_create(transfer)
        with self.Session() as session:
            if session.get(TransferRow, transfer.transfer_id) is not None:
                raise ConflictError(f"Transfer {transfer.transfer_id} already exists")
            row = TransferRow(transfer_id=transfer.transfer_id)
            self._apply(row, transfer)
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise ConflictError(f"Transfer {transfer.transfer_id} already exists")
            return self._to_transfer(row)

    def upsert_transfer(self, transfer: Transfer) -> Transfer:
        _require(transfer.transfer_id, "transferId")
        with self.Session() as session:
            row = session.get(TransferRow, transfer.transfer_id)
            if row is None:
                row = TransferRow(transfer_id=transfer.transfer_id)
                session.add(row)
            self._apply(row, transfer)
            session.commit()
            return self._to_transfer(row)


Base = declarative_base()


class TransferRow(Base):
    __tablename__ = "Transfer"

    transfer_id = Column("transferId", String, primary_key=True)
    ride_date_iso = Column("rideDateISO", String, nullable=False, index=True)
    ride_time = Column("rideTime", String, nullable=False)
    pickup = Column(String, nullable=False)
    dropoff = Column(String, nullable=False)
    room_or_name = Column("roomOrName", String, nullable=True)
    vehicle = Column(String, nullable=True)
    amount_eur = Column("amountEUR", Float, nullable=True)
    payment = Column(String, nullable=True)
    customer_id = Column("customerId", String, nullable=False, index=True)
    customer_name = Column("customerName", String, nullable=True)
    driver_id = Column("driverId", String, nullable=True, index=True)
    driver_name = Column("driverName", String, nullable=True)
    state = Column(String, nullable=False, default="pending", index=True)
    requested_at_iso = Column("requestedAtISO", String, nullable=False)
    updated_at_iso = Column("updatedAtISO", String, nullable=False)
