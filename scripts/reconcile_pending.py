from __future__ import annotations

import argparse
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from dulu.config import Settings
from dulu.db import SessionLocal, init_db
from dulu.errors import PaymentError
from dulu.logger import setup_logging
from dulu.models import Payment
from dulu.services.pawapay import DepositStatus, PawaPayClient
from dulu.services.poller import PaymentStatusPoller, PollOutcome
from dulu.services.reconciler import sync_deposit

logger = logging.getLogger(__name__)


def _stale_deposit_ids(cutoff: datetime) -> list[str]:
    with SessionLocal() as db:
        rows = (
            db.query(Payment.transaction_id)
            .filter(Payment.status.in_(("pending", "processing")))
            .filter(Payment.created_at <= cutoff)
            .order_by(Payment.created_at.asc())
            .all()
        )
        return [row[0] for row in rows]


async def sweep(client: PawaPayClient, cfg: Settings, older_than: timedelta) -> dict[str, int]:
    """Reconcile every non-terminal payment older than ``older_than``."""
    cutoff = datetime.now(timezone.utc) - older_than
    deposit_ids = await asyncio.to_thread(_stale_deposit_ids, cutoff)
    stats = {"checked": 0, "updated": 0, "errors": 0}
    for deposit_id in deposit_ids:
        stats["checked"] += 1
        try:
            _deposit, _payment, result = await sync_deposit(client, deposit_id, cfg=cfg)
        except PaymentError as exc:
            stats["errors"] += 1
            logger.error("reconcile %s failed: %s", deposit_id, exc.message)
            continue
        if result and result.applied:
            stats["updated"] += 1
    return stats


async def poll_one(client: PawaPayClient, cfg: Settings, deposit_id: str) -> PollOutcome:
    async def _check(value: str) -> DepositStatus:
        deposit, _payment, _result = await sync_deposit(client, value, cfg=cfg)
        return deposit

    poller = PaymentStatusPoller.from_settings(_check, cfg)
    return await poller.run(deposit_id)


async def main() -> None:
    parser = argparse.ArgumentParser(
        description="Reconcile pending PawaPay deposits with local payments."
    )
    parser.add_argument("--deposit-id", help="Poll a single deposit until it settles")
    parser.add_argument(
        "--older-than-minutes",
        type=int,
        default=None,
        help="Only sweep payments created before this many minutes ago",
    )
    args = parser.parse_args()

    setup_logging()
    cfg = Settings()
    init_db(cfg)
    client = PawaPayClient.from_settings(cfg)

    if args.deposit_id:
        outcome = await poll_one(client, cfg, args.deposit_id)
        print(f"{args.deposit_id}: {outcome.state} after {outcome.attempts} attempts - {outcome.message}")
        return

    minutes = (
        args.older_than_minutes
        if args.older_than_minutes is not None
        else cfg.pending_sweep_minutes
    )
    stats = await sweep(client, cfg, timedelta(minutes=minutes))
    print(
        f"checked={stats['checked']} updated={stats['updated']} errors={stats['errors']}"
    )


if __name__ == "__main__":
    asyncio.run(main())
