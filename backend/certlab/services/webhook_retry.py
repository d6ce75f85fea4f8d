"""
Webhook retry queue

Events whose processing raised unexpectedly (database outage, deadlock, ...)
are parked here and retried with exponential backoff plus jitter. After the
last attempt an event is marked failed and kept for manual retry.

The queue lives in the API process memory and is drained by an APScheduler
``BackgroundScheduler`` job every WEBHOOK_RETRY_INTERVAL_SECONDS; a second
job drops failed events older than WEBHOOK_RETRY_FAILED_TTL_HOURS every hour.
Users can list and re-queue their own events through the API.
"""
from __future__ import annotations

import logging
import random
import threading
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from certlab.core.config import settings
from certlab.models import utc_now

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
FAILED = "failed"


@dataclass
class QueuedWebhookEvent:
    id: str
    event_type: str
    payload: dict[str, Any]
    created_at: datetime
    user_id: str | None = None
    attempts: int = 0
    status: str = PENDING
    last_attempt_at: datetime | None = None
    next_retry_at: datetime | None = None
    error: str | None = None
    history: list[str] = field(default_factory=list)


class WebhookRetryQueue:
    """
    In-memory retry queue.

    Args:
        process: applies one event payload; raising means "try again later"
        max_attempts / base_delay_ms / max_delay_ms / jitter_factor /
        interval_seconds: default to the WEBHOOK_RETRY_* settings
        clock, rng: injectable for tests
    """

    def __init__(
        self,
        process: Callable[[dict[str, Any]], Any],
        *,
        max_attempts: int | None = None,
        base_delay_ms: int | None = None,
        max_delay_ms: int | None = None,
        jitter_factor: float | None = None,
        interval_seconds: int | None = None,
        clock: Callable[[], datetime] = utc_now,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._process = process
        self.max_attempts = max_attempts or settings.WEBHOOK_RETRY_MAX_ATTEMPTS
        self.base_delay_ms = base_delay_ms or settings.WEBHOOK_RETRY_BASE_DELAY_MS
        self.max_delay_ms = max_delay_ms or settings.WEBHOOK_RETRY_MAX_DELAY_MS
        self.jitter_factor = (
            jitter_factor if jitter_factor is not None else settings.WEBHOOK_RETRY_JITTER_FACTOR
        )
        self.interval_seconds = interval_seconds or settings.WEBHOOK_RETRY_INTERVAL_SECONDS
        self._clock = clock
        self._rng = rng
        self._events: dict[str, QueuedWebhookEvent] = {}
        self._lock = threading.Lock()
        self._scheduler: BackgroundScheduler | None = None

    # ------------------------------------------------------------------
    # scheduling
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._scheduler is not None:
            return
        self._scheduler = BackgroundScheduler(timezone=timezone.utc)
        self._scheduler.add_job(
            self.process_due,
            IntervalTrigger(seconds=self.interval_seconds),
            id="webhook_retry",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self.clear_old_failed,
            IntervalTrigger(hours=1),
            id="webhook_retry_cleanup",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("Webhook retry queue started, checking every %ss", self.interval_seconds)

    def stop(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Webhook retry queue stopped")

    # ------------------------------------------------------------------
    # queue operations
    # ------------------------------------------------------------------

    def add_event(
        self, event: Mapping[str, Any], *, user_id: str | None = None, error: str | None = None
    ) -> str:
        """
        Queue an event for retry; it becomes due on the next tick.

        Returns:
            the queue id
        """
        event_type = str(event.get("type") or "unknown")
        event_id = f"webhook_{user_id or 'unknown'}_{event_type}_{uuid.uuid4().hex[:12]}"
        queued = QueuedWebhookEvent(
            id=event_id,
            event_type=event_type,
            payload=dict(event),
            created_at=self._clock(),
            user_id=user_id,
            error=error,
        )
        with self._lock:
            self._events[event_id] = queued
        logger.warning("Webhook event queued for retry: %s (%s)", event_id, error)
        return event_id

    def retry_delay_ms(self, attempts: int) -> int:
        """
        Backoff before the next attempt: ``base * 2**attempts`` capped at the
        max delay, plus up to ``jitter_factor`` of that as random jitter.
        """
        exponential = min(self.base_delay_ms * (2**attempts), self.max_delay_ms)
        jitter = exponential * self.jitter_factor * self._rng()
        return int(exponential + jitter)

    def _claim_due(self) -> QueuedWebhookEvent | None:
        now = self._clock()
        with self._lock:
            for queued in self._events.values():
                if queued.status != PENDING:
                    continue
                if queued.next_retry_at is not None and queued.next_retry_at > now:
                    continue
                queued.status = PROCESSING
                queued.attempts += 1
                queued.last_attempt_at = now
                return queued
        return None

    def process_due(self) -> int:
        """
        Process every event that is due now.

        Returns:
            number of events attempted
        """
        attempted = 0
        while (queued := self._claim_due()) is not None:
            attempted += 1
            self._attempt(queued)
        return attempted

    def _attempt(self, queued: QueuedWebhookEvent) -> None:
        logger.info("Processing webhook event %s (attempt %s)", queued.id, queued.attempts)
        try:
            self._process(queued.payload)
        except Exception as e:
            logger.exception("Failed to process webhook event %s", queued.id)
            with self._lock:
                queued.error = str(e) or e.__class__.__name__
                queued.history.append(queued.error)
                if queued.attempts >= self.max_attempts:
                    queued.status = FAILED
                    logger.error(
                        "Webhook event %s failed after %s attempts", queued.id, queued.attempts
                    )
                else:
                    delay = self.retry_delay_ms(queued.attempts)
                    queued.next_retry_at = self._clock() + timedelta(milliseconds=delay)
                    queued.status = PENDING
                    logger.info(
                        "Webhook event %s scheduled for retry in %sms (attempt %s/%s)",
                        queued.id,
                        delay,
                        queued.attempts + 1,
                        self.max_attempts,
                    )
            return

        with self._lock:
            self._events.pop(queued.id, None)
        logger.info("Webhook event %s processed successfully", queued.id)

    def retry_event(self, event_id: str) -> bool:
        """
        Make a pending or failed event due immediately with one extra attempt.

        Returns:
            False when the event is unknown or currently processing
        """
        with self._lock:
            queued = self._events.get(event_id)
            if queued is None or queued.status == PROCESSING:
                return False
            queued.status = PENDING
            queued.next_retry_at = None
            queued.attempts = max(0, queued.attempts - 1)
        logger.info("Manually retrying webhook event %s", event_id)
        return True

    def queue_status(self) -> dict[str, int]:
        with self._lock:
            statuses = [queued.status for queued in self._events.values()]
        return {
            "pending": statuses.count(PENDING),
            "processing": statuses.count(PROCESSING),
            "failed": statuses.count(FAILED),
            "total": len(statuses),
        }

    def user_events(self, user_id: str) -> list[QueuedWebhookEvent]:
        """Copies of a user's queued events, newest first."""
        with self._lock:
            events = [replace(q) for q in self._events.values() if q.user_id == user_id]
        return sorted(events, key=lambda q: q.created_at, reverse=True)

    def clear_old_failed(self, hours: int | None = None) -> int:
        """
        Drop failed events created more than ``hours`` ago
        (WEBHOOK_RETRY_FAILED_TTL_HOURS by default). Runs hourly while the
        queue is started.

        Returns:
            number of events removed
        """
        cutoff = self._clock() - timedelta(hours=hours or settings.WEBHOOK_RETRY_FAILED_TTL_HOURS)
        with self._lock:
            stale = [
                event_id
                for event_id, queued in self._events.items()
                if queued.status == FAILED and queued.created_at < cutoff
            ]
            for event_id in stale:
                del self._events[event_id]
        if stale:
            logger.info("Cleared %s old failed webhook events", len(stale))
        return len(stale)
