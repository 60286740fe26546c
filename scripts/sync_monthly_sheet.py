"""
Rebuild monthly statement sheets from the master ledger.

Used for backfills and to repair statements after a failed incremental
update. Optionally copies every ledger row into the relational mirror.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ridebook.config import get_settings
from ridebook.dependencies import RequestContext, Services
from ridebook.errors import InvalidInputError
from ridebook.ledger import TransferState
from ridebook.statements import validate_month_key

logger = logging.getLogger(__name__)


async def customers_with_completed(context: RequestContext, yyyymm: str) -> List[str]:
    customers = {
        t.customer_id
        for t in await context.ledger.all()
        if t.state == TransferState.COMPLETE and t.month_key == yyyymm
    }
    return sorted(customers)


async def mirror_ledger(context: RequestContext, *, dry_run: bool) -> int:
    transfers = await context.ledger.all()
    if dry_run:
        return len(transfers)
    for transfer in transfers:
        await asyncio.to_thread(context.services.mirror.upsert_transfer, transfer)
    return len(transfers)


async def run(
    *,
    month: str,
    customer_id: Optional[str],
    all_customers: bool,
    mirror: bool,
    dry_run: bool,
) -> int:
    services = Services.build(get_settings())
    try:
        context = RequestContext(services)
        await context.ledger.ensure()

        if all_customers:
            customers = await customers_with_completed(context, month)
        else:
            customers = [customer_id]

        total_rows = 0
        for customer in customers:
            if dry_run:
                logger.info("Would sync %s for %s", month, customer)
                continue
            rows = await context.transfers.sync_monthly_sheet(customer, month)
            logger.info("Synced %s for %s (%d rows)", month, customer, rows)
            total_rows += rows

        if mirror:
            mirrored = await mirror_ledger(context, dry_run=dry_run)
            logger.info("Mirrored %d ledger rows", mirrored)
    finally:
        await services.aclose()

    logger.info("Processed %d statements, %d rows", len(customers), total_rows)
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Rebuild monthly statement sheets from the master ledger"
    )
    parser.add_argument("month", help="Statement month as YYYY-MM")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--customer", help="Customer user id to rebuild")
    target.add_argument(
        "--all-customers",
        action="store_true",
        help="Rebuild every customer with completed transfers in the month",
    )
    parser.add_argument(
        "--mirror",
        action="store_true",
        help="Also upsert every ledger row into the relational mirror",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would be rebuilt without writing",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(message)s")
    try:
        validate_month_key(args.month)
    except InvalidInputError as exc:
        parser.error(str(exc))
    return asyncio.run(
        run(
            month=args.month,
            customer_id=args.customer,
            all_customers=args.all_customers,
            mirror=args.mirror,
            dry_run=args.dry_run,
        )
    )


if __name__ == "__main__":
    raise SystemExit(main())
