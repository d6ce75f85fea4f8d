"""
Subscription maintenance scheduler
"""

import logging
from datetime import timezone

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from certlab.worker.tasks import run_reconciliation

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def main() -> None:
    scheduler = BlockingScheduler(timezone=timezone.utc)
    scheduler.add_job(
        run_reconciliation,
        IntervalTrigger(hours=1),
        id="reconcile_stale_subscriptions",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info("Scheduler started. Stale subscription reconciliation runs hourly.")
    scheduler.start()


if __name__ == "__main__":
    main()
