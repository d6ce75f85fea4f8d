from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from sqlmodel import Session

from certlab.api.deps import CurrentUser, LockManagerDep, ProviderDep, RetryQueueDep, SessionDep
from certlab.api.errors import InvalidTransition, NotFound
from certlab.api.schemas import (
    ApiEnvelope,
    CancelData,
    CancelRequest,
    CheckoutData,
    CheckoutRequest,
    ConfirmData,
    CurrentSubscriptionData,
    PlanData,
    ResumeData,
    SubscriptionData,
    SubscriptionStatusData,
    SwitchData,
    SwitchRequest,
    SyncEventData,
    WebhookAck,
)
from certlab.core.config import settings
from certlab.integrations.polar import BillingProvider
from certlab.models import Subscription
from certlab.services.orchestrator import PlanTransitionOrchestrator
from certlab.services.plans import list_public_plans, normalize_plan_name
from certlab.services.reconciliation import ReconciliationEngine
from certlab.services.subscription_lock import BaseLockManager
from certlab.services.webhook_handler import WebhookHandler
from certlab.services.webhook_retry import QueuedWebhookEvent, WebhookRetryQueue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscription", tags=["subscription"])


def _subscription_data(record: Subscription | None) -> SubscriptionData | None:
    if record is None:
        return None
    data = SubscriptionData.model_validate(record)
    scheduled = (record.meta or {}).get("scheduled_plan")
    if scheduled:
        data.scheduled_plan = normalize_plan_name(scheduled)
    return data


def _orchestrator(
    session: Session, provider: BillingProvider, lock_manager: BaseLockManager
) -> PlanTransitionOrchestrator:
    return PlanTransitionOrchestrator(session, provider, lock_manager)


@router.get("/status", response_model=ApiEnvelope)
def status(session: SessionDep, current_user: CurrentUser, provider: ProviderDep) -> ApiEnvelope:
    data = ReconciliationEngine(session, provider).get_status(current_user.id)
    return ApiEnvelope(data=SubscriptionStatusData(**data))


@router.get("/current", response_model=ApiEnvelope)
def current(session: SessionDep, current_user: CurrentUser, provider: ProviderDep) -> ApiEnvelope:
    state = ReconciliationEngine(session, provider).get_authoritative_state(current_user.id)
    return ApiEnvelope(
        data=CurrentSubscriptionData(
            subscription=_subscription_data(state.record),
            from_cache=state.from_cache,
            warning=state.warning,
        )
    )


@router.get("/plans", response_model=ApiEnvelope)
def plans() -> ApiEnvelope:
    return ApiEnvelope(data=[PlanData(**plan) for plan in list_public_plans()])


@router.post("/checkout", response_model=ApiEnvelope)
def checkout(
    session: SessionDep,
    current_user: CurrentUser,
    provider: ProviderDep,
    lock_manager: LockManagerDep,
    payload: CheckoutRequest,
) -> ApiEnvelope:
    result = _orchestrator(session, provider, lock_manager).start_checkout(
        current_user.id, payload.plan, payload.billing_interval
    )
    return ApiEnvelope(
        data=CheckoutData(
            plan=result.plan,
            upgraded=result.upgraded,
            checkout_url=result.checkout_url,
            session_id=result.session_id,
            message=result.message,
            subscription=_subscription_data(result.subscription),
        )
    )


@router.get("/confirm", response_model=ApiEnvelope)
def confirm(
    session: SessionDep,
    current_user: CurrentUser,
    provider: ProviderDep,
    lock_manager: LockManagerDep,
    session_id: str = Query(min_length=1),
) -> ApiEnvelope:
    result = _orchestrator(session, provider, lock_manager).confirm_checkout(
        current_user.id, session_id
    )
    return ApiEnvelope(
        data=ConfirmData(
            plan=result.plan,
            billing_interval=result.billing_interval,
            activated=result.activated,
            subscription=_subscription_data(result.subscription),
        )
    )


@router.post("/cancel", response_model=ApiEnvelope)
def cancel(
    session: SessionDep,
    current_user: CurrentUser,
    provider: ProviderDep,
    lock_manager: LockManagerDep,
    payload: CancelRequest | None = None,
) -> ApiEnvelope:
    immediate = payload.immediate if payload is not None else False
    result = _orchestrator(session, provider, lock_manager).cancel(current_user.id, immediate)
    return ApiEnvelope(
        data=CancelData(
            immediate=result.immediate,
            access_until=result.access_until,
            message=result.message,
            subscription=_subscription_data(result.subscription),
        )
    )


@router.post("/resume", response_model=ApiEnvelope)
def resume(
    session: SessionDep,
    current_user: CurrentUser,
    provider: ProviderDep,
    lock_manager: LockManagerDep,
) -> ApiEnvelope:
    result = _orchestrator(session, provider, lock_manager).resume(current_user.id)
    return ApiEnvelope(
        data=ResumeData(message=result.message, subscription=_subscription_data(result.subscription))
    )


@router.post("/switch", response_model=ApiEnvelope)
def switch(
    session: SessionDep,
    current_user: CurrentUser,
    provider: ProviderDep,
    lock_manager: LockManagerDep,
    payload: SwitchRequest,
) -> ApiEnvelope:
    result = _orchestrator(session, provider, lock_manager).switch_plan(
        current_user.id, payload.new_plan, payload.effective, payload.billing_interval
    )
    return ApiEnvelope(
        data=SwitchData(
            plan=result.plan,
            billing_interval=result.billing_interval.value,
            effective=result.effective,
            effective_date=result.effective_date,
            message=result.message,
            subscription=_subscription_data(result.subscription),
        )
    )


def _ingest_webhook(
    session: Session,
    provider: BillingProvider,
    retry_queue: WebhookRetryQueue | None,
    raw: bytes,
    signature: str | None,
) -> WebhookAck:
    # Every outcome is acknowledged with 200 so the provider does not
    # redeliver; unverified events are dropped, not rejected.
    if settings.POLAR_WEBHOOK_SECRET:
        if not signature:
            logger.error("[Webhook] Missing webhook signature")
            return WebhookAck(error="Missing webhook signature")
        if not provider.verify_webhook_signature(raw, signature):
            logger.error("[Webhook] Invalid webhook signature")
            return WebhookAck(error="Invalid webhook signature")

    try:
        event: Any = json.loads(raw)
    except ValueError:
        event = None
    if not isinstance(event, dict):
        logger.error("[Webhook] Invalid webhook payload")
        return WebhookAck(error="Invalid webhook payload")

    logger.info("[Webhook] Received Polar event: %s", event.get("type"))
    handler = WebhookHandler(session)
    try:
        outcome = handler.handle(event)
    except Exception as e:
        logger.exception("[Webhook] Critical error processing %s", event.get("type"))
        session.rollback()
        if retry_queue is not None:
            retry_queue.add_event(event, user_id=handler.owner_id(event), error=str(e))
        return WebhookAck(error="Internal processing error - logged for investigation")
    return WebhookAck(applied=outcome.applied)


@router.post("/webhook", response_model=ApiEnvelope)
async def webhook(
    request: Request,
    session: SessionDep,
    provider: ProviderDep,
    retry_queue: RetryQueueDep,
    polar_webhook_signature: str | None = Header(default=None),
) -> ApiEnvelope:
    raw = await request.body()
    ack = await run_in_threadpool(
        _ingest_webhook, session, provider, retry_queue, raw, polar_webhook_signature
    )
    return ApiEnvelope(data=ack)


def _sync_event_data(queued: QueuedWebhookEvent) -> SyncEventData:
    return SyncEventData(
        id=queued.id,
        event_type=queued.event_type,
        status=queued.status,
        attempts=queued.attempts,
        created_at=queued.created_at,
        next_retry_at=queued.next_retry_at,
        error=queued.error,
    )


@router.get("/sync-events", response_model=ApiEnvelope)
def sync_events(current_user: CurrentUser, retry_queue: RetryQueueDep) -> ApiEnvelope:
    """
    Billing updates for the current user that could not be applied yet.
    """
    if retry_queue is None:
        return ApiEnvelope(data=[])
    return ApiEnvelope(data=[_sync_event_data(q) for q in retry_queue.user_events(current_user.id)])


@router.post("/sync-events/{event_id}/retry", response_model=ApiEnvelope)
def retry_sync_event(event_id: str, current_user: CurrentUser, retry_queue: RetryQueueDep) -> ApiEnvelope:
    """
    Make one of the current user's queued events due now, with one extra
    attempt when it had already failed.
    """
    if retry_queue is None or not any(
        q.id == event_id for q in retry_queue.user_events(current_user.id)
    ):
        raise NotFound("Sync event not found", code=404304)
    if not retry_queue.retry_event(event_id):
        raise InvalidTransition("Sync event is already being processed", code=400303)
    return ApiEnvelope(data={"retried": True})
