"""
Scheduled subscription maintenance
"""
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlmodel import Session, col, select

from certlab import crud
from certlab.api.errors import LockContention, NotFound, ProviderError, ProviderUnavailable
from certlab.core.config import settings
from certlab.core.db import engine
from certlab.enums import LIVE_STATUSES
from certlab.integrations.polar import BillingProvider, create_polar_client
from certlab.models import Subscription, utc_now
from certlab.services.reconciliation import ReconciliationEngine, is_live
from certlab.services.subscription_lock import BaseLockManager, create_lock_manager

logger = logging.getLogger(__name__)

RECONCILE_LOCK_KEY = "worker:reconcile-stale"
RECONCILE_LOCK_TIMEOUT_MS = 30 * 60 * 1000
DEFAULT_BATCH_SIZE = 200


def reconcile_stale_subscriptions(
    *,
    session: Session,
    provider: BillingProvider,
    clock: Callable[[], datetime] = utc_now,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> dict[str, int]:
    """
    Refresh live records older than the freshness window.

    Records the provider no longer reports as live are closed and their users
    drop to free (this is where a missed cancellation webhook is caught up
    for users who do not open the app). Provider failures leave records as
    they are.

    Returns:
        counters: refreshed / closed / unchanged / failed
    """
    now = clock()
    cutoff = now - timedelta(seconds=settings.SUBSCRIPTION_FRESHNESS_SECONDS)
    stale = session.exec(
        select(Subscription)
        .where(col(Subscription.status).in_([s.value for s in LIVE_STATUSES]))
        .where(col(Subscription.updated_at) < cutoff)
        .order_by(col(Subscription.updated_at))
        .limit(batch_size)
    ).all()

    reconciler = ReconciliationEngine(session, provider, clock=clock)
    counters = {"refreshed": 0, "closed": 0, "unchanged": 0, "failed": 0}
    for record in stale:
        user = crud.get_user(session=session, user_id=record.user_id)
        if user is None or not user.email:
            counters["unchanged"] += 1
            continue
        try:
            reconciler.refresh(user)
        except NotFound:
            session.rollback()
            counters["unchanged"] += 1
            continue
        except (ProviderUnavailable, ProviderError) as e:
            session.rollback()
            counters["failed"] += 1
            logger.warning("Reconciliation failed for user %s: %s", record.user_id, e.message)
            continue
        if is_live(record):
            counters["refreshed"] += 1
        else:
            counters["closed"] += 1
            logger.info("Subscription %s for user %s closed as %s", record.id, record.user_id, record.status)

    logger.info("Stale subscription reconciliation done: %s", counters)
    return counters


def run_reconciliation(lock_manager: BaseLockManager | None = None) -> None:
    """
    Scheduler entry point; skips the run when another worker holds the lock.
    """
    lock_manager = lock_manager or create_lock_manager(max_wait_ms=0)
    try:
        release = lock_manager.acquire(RECONCILE_LOCK_KEY, "reconcile-stale", RECONCILE_LOCK_TIMEOUT_MS)
    except LockContention:
        logger.info("Reconciliation already running, skip this run.")
        return

    try:
        provider = create_polar_client()
        if not provider.configured:
            logger.info("Billing provider not configured, nothing to reconcile.")
            return
        with Session(engine) as session:
            reconcile_stale_subscriptions(session=session, provider=provider)
    finally:
        release()
