import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session

from ridebook.db import InMemoryMirrorClient, SqlMirrorClient, TransferQuery
from ridebook.errors import ConflictError, InvalidInputError
from ridebook.ledger import Transfer, TransferState


def make_transfer(transfer_id: str, **overrides) -> Transfer:
    values = dict(
        transfer_id=transfer_id,
        customer_id="u1",
        ride_date_iso="2025-03-10",
        ride_time="14:30",
        pickup="Hotel X",
        dropoff="Airport",
        state=TransferState.PENDING,
        requested_at_iso="2025-03-01T09:00:00.000Z",
    )
    values.update(overrides)
    return Transfer(**values)


MIGRATED_TRANSFER_TABLE = """
CREATE TABLE "Transfer" (
    "transferId" TEXT NOT NULL PRIMARY KEY,
    "rideDateISO" TEXT NOT NULL,
    "rideTime" TEXT NOT NULL,
    "pickup" TEXT NOT NULL,
    "dropoff" TEXT NOT NULL,
    "roomOrName" TEXT,
    "vehicle" TEXT,
    "amountEUR" REAL,
    "payment" TEXT,
    "customerId" TEXT NOT NULL,
    "customerName" TEXT,
    "driverId" TEXT,
    "driverName" TEXT,
    "state" TEXT NOT NULL DEFAULT 'pending',
    "requestedAtISO" DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "updatedAtISO" DATETIME NOT NULL
)
"""


class MirrorContract:
    """Behaviour shared by every mirror backend."""

    def make_client(self):
        raise NotImplementedError

    def setUp(self):
        self.db = self.make_client()

    def test_create_and_get(self):
        created = self.db.create_transfer(make_transfer("tr_1", amount_eur=42.5, payment="Bar"))
        self.assertEqual(created.transfer_id, "tr_1")
        fetched = self.db.get_transfer("tr_1")
        self.assertIsNotNone(fetched)
        self.assertEqual(fetched.amount_eur, 42.5)
        self.assertEqual(fetched.state, TransferState.PENDING)
        self.assertIsNone(self.db.get_transfer("tr_missing"))

    def test_duplicate_create_conflicts(self):
        self.db.create_transfer(make_transfer("tr_1"))
        with self.assertRaises(ConflictError):
            self.db.create_transfer(make_transfer("tr_1"))

    def test_create_requires_fields(self):
        with self.assertRaises(InvalidInputError):
            self.db.create_transfer(make_transfer("tr_1", pickup=""))
        with self.assertRaises(InvalidInputError):
            self.db.get_transfer("")

    def test_upsert_inserts_then_replaces(self):
        self.db.upsert_transfer(make_transfer("tr_1"))
        self.db.upsert_transfer(
            make_transfer("tr_1", state=TransferState.CONFIRMED, driver_id="d1", driver_name="Max")
        )
        fetched = self.db.get_transfer("tr_1")
        self.assertEqual(fetched.state, TransferState.CONFIRMED)
        self.assertEqual(fetched.driver_name, "Max")
        self.assertEqual(len(self.db.list_transfers()), 1)

    def test_list_filters_orders_and_pages(self):
        self.db.create_transfer(make_transfer("tr_a", ride_date_iso="2025-03-12"))
        self.db.create_transfer(make_transfer("tr_b", ride_date_iso="2025-03-10", ride_time="18:00"))
        self.db.create_transfer(make_transfer("tr_c", ride_date_iso="2025-03-10", ride_time="07:00"))
        self.db.create_transfer(
            make_transfer("tr_d", customer_id="u2", driver_id="d1", state=TransferState.COMPLETE)
        )

        ordered = [t.transfer_id for t in self.db.list_transfers(TransferQuery(customer_id="u1"))]
        self.assertEqual(ordered, ["tr_c", "tr_b", "tr_a"])

        paged = self.db.list_transfers(TransferQuery(customer_id="u1", take=1, skip=1))
        self.assertEqual([t.transfer_id for t in paged], ["tr_b"])

        ranged = self.db.list_transfers(
            TransferQuery(from_date_iso="2025-03-11", to_date_iso="2025-03-31")
        )
        self.assertEqual([t.transfer_id for t in ranged], ["tr_a"])

        by_state = self.db.list_transfers(TransferQuery(state=TransferState.COMPLETE))
        self.assertEqual([t.transfer_id for t in by_state], ["tr_d"])
        by_driver = self.db.list_transfers(TransferQuery(driver_id="d1"))
        self.assertEqual([t.transfer_id for t in by_driver], ["tr_d"])


class SqlMirrorClientTests(MirrorContract, unittest.TestCase):
    """
    Uses SQLite via SQLAlchemy URL for fast/local testing of the SQL mirror.
    """

    def make_client(self):
        client = SqlMirrorClient("sqlite+pysqlite:///:memory:")
        self.addCleanup(client.dispose)
        return client

    def test_requires_database_url(self):
        with self.assertRaises(ValueError):
            SqlMirrorClient("")

    def test_racing_create_reports_conflict(self):
        self.db.create_transfer(make_transfer("tr_1"))
        # Both creates pass the existence check before either commits.
        with patch.object(Session, "get", return_value=None):
            with self.assertRaises(ConflictError):
                self.db.create_transfer(make_transfer("tr_1"))
        self.assertEqual(len(self.db.list_transfers()), 1)

    def test_writes_into_existing_migrated_table(self):
        with tempfile.TemporaryDirectory() as tmp:
            url = f"sqlite+pysqlite:///{Path(tmp) / 'mirror.db'}"
            engine = create_engine(url, future=True)
            with engine.begin() as conn:
                conn.execute(text(MIGRATED_TRANSFER_TABLE))
            engine.dispose()

            client = SqlMirrorClient(url)
            try:
                client.upsert_transfer(make_transfer("tr_1"))
                client.upsert_transfer(make_transfer("tr_1", state=TransferState.CONFIRMED))
                self.assertEqual(client.get_transfer("tr_1").state, TransferState.CONFIRMED)
                with client.engine.connect() as conn:
                    updated = conn.execute(
                        text('SELECT "updatedAtISO" FROM "Transfer" WHERE "transferId" = :id'),
                        {"id": "tr_1"},
                    ).scalar_one()
                self.assertRegex(updated, r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$")
            finally:
                client.dispose()


class InMemoryMirrorClientTests(MirrorContract, unittest.TestCase):
    def make_client(self):
        return InMemoryMirrorClient()

    def test_reset(self):
        self.db.create_transfer(make_transfer("tr_1"))
        self.db.reset()
        self.assertEqual(self.db.list_transfers(), [])


if __name__ == "__main__":
    unittest.main()
