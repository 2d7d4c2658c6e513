#!/usr/bin/env python3
"""
Marks pending payments that never got a provider session as failed.

A pending payment without a provider reference cannot be settled by any
webhook. Run periodically (cron) or by hand.

Usage:
    python scripts/expire_stale_payments.py --dry-run
    python scripts/expire_stale_payments.py --older-than 30
"""

import asyncio
import sys
from datetime import timedelta
from pathlib import Path

# Add project root to PYTHONPATH
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from sqlalchemy import select

from src.core.config import settings
from src.core.database.session import async_session
from src.core.logging import configure_logging
from src.modules.payments.models import Payment, PaymentStatus
from src.modules.payments.service import PaymentService
from src.shared.utils.time import as_utc, utcnow


async def list_candidates(older_than_minutes: int) -> list[Payment]:
    cutoff = utcnow() - timedelta(minutes=older_than_minutes)
    async with async_session() as session:
        result = await session.execute(
            select(Payment)
            .where(
                Payment.status == PaymentStatus.PENDING.value,
                Payment.external_provider_session_id.is_(None),
            )
            .order_by(Payment.created_at)
        )
        return [p for p in result.scalars().all() if as_utc(p.created_at) < cutoff]


async def main():
    import argparse

    parser = argparse.ArgumentParser(description="Expire stale reference-less pending payments")
    parser.add_argument("--dry-run", action="store_true", help="List what would be expired without changes")
    parser.add_argument(
        "--older-than",
        type=int,
        default=settings.stale_pending_payment_minutes,
        help="Age threshold in minutes (default: %(default)s)",
    )
    args = parser.parse_args()

    configure_logging()

    if args.dry_run:
        candidates = await list_candidates(args.older_than)
        print(f"{len(candidates)} pending payments older than {args.older_than} min without provider session:")
        for payment in candidates:
            print(f"  #{payment.id} family={payment.family_id} total={payment.total.format()} created={payment.created_at}")
        return

    async with async_session() as session:
        expired = await PaymentService(session).expire_stale_pending(args.older_than)
    print(f"Expired {len(expired)} payments: {expired}")


if __name__ == "__main__":
    asyncio.run(main())
