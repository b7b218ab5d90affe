"""Scheduled task that expires unpaid holds and retries missing invoices.

Holds carry an `expires_at` deadline; queries already treat an expired hold
as free, and this job physically removes them and fails their pending
payments. It also regenerates invoices for completed payments whose
invoice failed at confirmation time.

Usage:
    # Run directly
    python -m casedesk.tasks.hold_reaper

    # Or via cron (every minute keeps the calendar tidy)
    * * * * * cd /path/to/project && python -m casedesk.tasks.hold_reaper

    # Environment variables:
    DATABASE_URL - PostgreSQL connection string
"""

import asyncio
import logging
import sys
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from casedesk.core.config import settings
from casedesk.core.logging import setup_logging
from casedesk.models.payment import Payment, PaymentStatus
from casedesk.services.invoices import InvoiceService
from casedesk.services.slot_ledger import SlotLedger
from casedesk.services.storage import get_storage_backend
from casedesk.utils.time import utc_now

logger = logging.getLogger(__name__)


async def reap_expired_holds(session: AsyncSession, now: datetime | None = None) -> int:
    """Release every expired hold and commit."""
    released = await SlotLedger(session).release_expired_holds(now=now or utc_now())
    await session.commit()
    return released


async def retry_missing_invoices(
    session: AsyncSession,
    invoices: InvoiceService,
    limit: int = 50,
) -> dict:
    """Issue invoices for completed payments that have none.

    Returns:
        Counts of issued and failed invoices
    """
    result = await session.execute(
        select(Payment.id)
        .where(
            Payment.status == PaymentStatus.COMPLETED,
            Payment.invoice_url.is_(None),
        )
        .order_by(Payment.completed_at.asc())
        .limit(limit)
    )
    payment_ids = result.scalars().all()

    issued = 0
    failed = 0
    for payment_id in payment_ids:
        try:
            await invoices.issue(session, payment_id)
            issued += 1
        except Exception:
            logger.exception(f"Invoice retry failed for payment {payment_id}")
            await session.rollback()
            failed += 1

    return {"issued": issued, "failed": failed}


async def run_hold_reaper_task(
    database_url: str | None = None,
    retry_invoices: bool = True,
) -> dict:
    """Run the hold reaper job.

    Args:
        database_url: Database connection string. Defaults to settings.database_url.
        retry_invoices: Also regenerate missing invoices

    Returns:
        Job results summary
    """
    db_url = database_url or settings.database_url

    # Convert sync URL to async if needed
    if db_url.startswith("postgresql://"):
        db_url = db_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    logger.info(f"Starting hold reaper task at {utc_now().isoformat()}")

    engine = create_async_engine(db_url, echo=False)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    try:
        async with session_factory() as session:
            results: dict = {"released_holds": await reap_expired_holds(session)}

            if retry_invoices:
                invoices = InvoiceService(get_storage_backend())
                results["invoices"] = await retry_missing_invoices(session, invoices)

            logger.info(f"Hold reaper complete: {results}")
            return results
    finally:
        await engine.dispose()


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Expire unpaid holds and retry missing invoices")
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database URL (overrides DATABASE_URL env var)",
    )
    parser.add_argument(
        "--skip-invoices",
        action="store_true",
        help="Only release expired holds",
    )
    args = parser.parse_args()

    setup_logging()

    try:
        results = asyncio.run(
            run_hold_reaper_task(
                database_url=args.database_url,
                retry_invoices=not args.skip_invoices,
            )
        )
        print(f"Job completed successfully: {results}")
        sys.exit(0)
    except Exception as e:
        logger.exception(f"Job failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
