"""
assetgate/features/billing/service.py

Webhook reconciler.

Handles:
- Signature verification (through the BillingProvider)
- Event-level idempotency via billing_events
- Per-event subscription state changes, each in one transaction
- Customer <-> user linking

Every handler writes absolute state taken from the event, so replaying an
event converges on the provider's view. A `created` event for a subscription
that is already stored carries state no newer than the row and is skipped.
Terminal subscriptions are never reopened.
"""
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from assetgate.core.database import (
    billing_customers,
    billing_events,
    ensure_utc,
    get_db_session,
    insert_ignore,
    users as app_users,
    utc_now,
)
from assetgate.core.errors import StorageUnavailableError
from assetgate.features.billing.provider import (
    INVOICE_PAYMENT_FAILED,
    INVOICE_PAYMENT_SUCCEEDED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_TRIAL_WILL_END,
    SUBSCRIPTION_UPDATED,
    BillingEvent,
    BillingProvider,
    InvoiceSnapshot,
    SubscriptionSnapshot,
)
from assetgate.features.notifications.service import Notification, NotificationKind
from assetgate.features.plans.service import get_plan_by_price_id
from assetgate.features.subscriptions import store
from assetgate.models.subscription import ProviderStatus, SubscriptionStatus


logger = logging.getLogger("assetgate")

APPLIED = "applied"
SKIPPED = "skipped"
IGNORED = "ignored"
DUPLICATE = "duplicate"

# An unfinished claim older than this is taken over by the next delivery
CLAIM_LEASE = timedelta(minutes=5)


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    outcome: str
    detail: Optional[str] = None
    notifications: Tuple[Notification, ...] = ()


@dataclass(frozen=True)
class _HandlerResult:
    outcome: str
    detail: Optional[str] = None
    notifications: Tuple[Notification, ...] = ()


def _skip(event: BillingEvent, detail: str, **fields) -> _HandlerResult:
    logger.warning(
        "billing.webhook.skipped",
        extra={"event_id": event.event_id, "event_type": event.event_type, "detail": detail, **fields},
    )
    return _HandlerResult(SKIPPED, detail)


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------

def get_user_id_for_customer(session: Session, provider_customer_id: Optional[str]) -> Optional[str]:
    if not provider_customer_id:
        return None
    return session.execute(
        select(billing_customers.c.user_id).where(
            billing_customers.c.provider_customer_id == provider_customer_id
        )
    ).scalar_one_or_none()


def link_customer(session: Session, user_id: str, provider_customer_id: str) -> None:
    """Record (or move) the user's Stripe customer id."""
    current = session.execute(
        select(billing_customers.c.provider_customer_id).where(billing_customers.c.user_id == user_id)
    ).scalar_one_or_none()
    if current is None:
        insert_ignore(
            session,
            billing_customers,
            {"user_id": user_id, "provider_customer_id": provider_customer_id, "created_at": utc_now()},
            ["user_id"],
        )
    elif current != provider_customer_id:
        session.execute(
            update(billing_customers)
            .where(billing_customers.c.user_id == user_id)
            .values(provider_customer_id=provider_customer_id)
        )


def _resolve_user(session: Session, snapshot: SubscriptionSnapshot) -> Optional[str]:
    """Customer link first, then metadata.user_id of an existing user (which gets linked)."""
    user_id = get_user_id_for_customer(session, snapshot.customer_id)
    if user_id:
        return user_id

    candidate = snapshot.metadata.get("user_id")
    if not candidate:
        return None
    exists = session.execute(
        select(app_users.c.user_id).where(app_users.c.user_id == candidate)
    ).scalar_one_or_none()
    if exists is None:
        return None
    if snapshot.customer_id:
        link_customer(session, candidate, snapshot.customer_id)
    return candidate


def _provider_status(value: str) -> Optional[ProviderStatus]:
    try:
        return ProviderStatus(value)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

def _handle_created(session: Session, event: BillingEvent, now: datetime) -> _HandlerResult:
    snapshot = event.subscription
    if snapshot is None:
        return _skip(event, "event carries no subscription")

    status = _provider_status(snapshot.status)
    if status is None:
        return _skip(event, "unsupported subscription status", status=snapshot.status)

    if store.get_by_provider_id(session, snapshot.subscription_id) is not None:
        # Stripe may deliver created after later updates
        logger.info(
            "billing.webhook.already_recorded",
            extra={"event_id": event.event_id, "subscription_id": snapshot.subscription_id},
        )
        return _HandlerResult(SKIPPED, "subscription already recorded")

    user_id = _resolve_user(session, snapshot)
    if user_id is None:
        return _skip(event, "unknown customer", customer_id=snapshot.customer_id)

    plan = get_plan_by_price_id(session, snapshot.price_id)
    if plan is None:
        return _skip(event, "unknown price", price_id=snapshot.price_id)

    store.deactivate_all_active_for_user(session, user_id, now=now)
    subscription = store.upsert_from_provider(
        session,
        snapshot.subscription_id,
        store.ProviderSubscriptionFields(
            user_id=user_id,
            plan_id=plan.plan_id,
            status=status,
            provider_customer_id=snapshot.customer_id,
            current_period_start=snapshot.current_period_start,
            current_period_end=snapshot.current_period_end,
            cancel_at_period_end=snapshot.cancel_at_period_end,
        ),
        now=now,
    )

    notifications: Tuple[Notification, ...] = ()
    if subscription.is_active:
        notifications = (
            Notification(NotificationKind.SUBSCRIPTION_STARTED, user_id, {"plan_name": plan.name}),
        )
    return _HandlerResult(APPLIED, notifications=notifications)


def _handle_updated(session: Session, event: BillingEvent, now: datetime) -> _HandlerResult:
    snapshot = event.subscription
    if snapshot is None:
        return _skip(event, "event carries no subscription")

    existing = store.get_by_provider_id(session, snapshot.subscription_id)
    if existing is None:
        return _handle_created(session, event, now)
    if existing.status.is_terminal:
        return _skip(event, "subscription is terminal", subscription_id=snapshot.subscription_id)

    status = _provider_status(snapshot.status)
    if status is None:
        return _skip(event, "unsupported subscription status", status=snapshot.status)

    plan_id = existing.plan_id
    plan = get_plan_by_price_id(session, snapshot.price_id)
    if plan is not None:
        plan_id = plan.plan_id
    elif snapshot.price_id:
        logger.warning(
            "billing.webhook.unknown_price",
            extra={"event_id": event.event_id, "price_id": snapshot.price_id, "kept_plan_id": plan_id},
        )

    subscription = store.upsert_from_provider(
        session,
        snapshot.subscription_id,
        store.ProviderSubscriptionFields(
            user_id=existing.user_id,
            plan_id=plan_id,
            status=status,
            provider_customer_id=snapshot.customer_id or existing.provider_customer_id,
            current_period_start=snapshot.current_period_start,
            current_period_end=snapshot.current_period_end,
            cancel_at_period_end=snapshot.cancel_at_period_end,
        ),
        now=now,
    )

    notifications: Tuple[Notification, ...] = ()
    if subscription.status.is_terminal:
        notifications = (Notification(NotificationKind.SUBSCRIPTION_CANCELED, existing.user_id),)
    return _HandlerResult(APPLIED, notifications=notifications)


def _handle_deleted(session: Session, event: BillingEvent, now: datetime) -> _HandlerResult:
    snapshot = event.subscription
    if snapshot is None:
        return _skip(event, "event carries no subscription")

    subscription = store.mark_canceled(session, snapshot.subscription_id, now=now)
    if subscription is None:
        return _skip(event, "unknown subscription", subscription_id=snapshot.subscription_id)
    return _HandlerResult(
        APPLIED,
        notifications=(Notification(NotificationKind.SUBSCRIPTION_CANCELED, subscription.user_id),),
    )


def _linked_subscription(session: Session, event: BillingEvent):
    invoice: Optional[InvoiceSnapshot] = event.invoice
    if invoice is None or not invoice.subscription_id:
        return None, _skip(event, "invoice not linked to a subscription")
    existing = store.get_by_provider_id(session, invoice.subscription_id)
    if existing is None:
        return None, _skip(event, "unknown subscription", subscription_id=invoice.subscription_id)
    if existing.status.is_terminal:
        return None, _skip(event, "subscription is terminal", subscription_id=invoice.subscription_id)
    return existing, None


def _handle_payment_succeeded(session: Session, event: BillingEvent, now: datetime) -> _HandlerResult:
    existing, skipped = _linked_subscription(session, event)
    if skipped:
        return skipped

    invoice = event.invoice
    period_start = invoice.period_start or existing.current_period_start
    period_end = invoice.period_end or existing.current_period_end
    changes = {
        "is_active": True,
        "current_period_start": period_start,
        "current_period_end": period_end,
    }
    if period_end is not None:
        changes["end_date"] = period_end
    store.update_subscription(
        session,
        existing.id,
        status=SubscriptionStatus.managed(ProviderStatus.ACTIVE),
        now=now,
        **changes,
    )
    return _HandlerResult(APPLIED)


def _handle_payment_failed(session: Session, event: BillingEvent, now: datetime) -> _HandlerResult:
    existing, skipped = _linked_subscription(session, event)
    if skipped:
        return skipped

    store.update_subscription(
        session,
        existing.id,
        status=SubscriptionStatus.managed(ProviderStatus.PAST_DUE),
        now=now,
    )
    return _HandlerResult(
        APPLIED,
        notifications=(Notification(NotificationKind.PAYMENT_FAILED, existing.user_id),),
    )


def _handle_trial_will_end(session: Session, event: BillingEvent, now: datetime) -> _HandlerResult:
    snapshot = event.subscription
    if snapshot is None:
        return _skip(event, "event carries no subscription")

    existing = store.get_by_provider_id(session, snapshot.subscription_id)
    user_id = existing.user_id if existing else get_user_id_for_customer(session, snapshot.customer_id)
    if user_id is None:
        return _skip(event, "unknown subscription", subscription_id=snapshot.subscription_id)

    data = {"trial_end": snapshot.trial_end.isoformat()} if snapshot.trial_end else {}
    return _HandlerResult(
        APPLIED,
        notifications=(Notification(NotificationKind.TRIAL_ENDING, user_id, data),),
    )


HANDLERS: Dict[str, Callable[[Session, BillingEvent, datetime], _HandlerResult]] = {
    SUBSCRIPTION_CREATED: _handle_created,
    SUBSCRIPTION_UPDATED: _handle_updated,
    SUBSCRIPTION_DELETED: _handle_deleted,
    INVOICE_PAYMENT_SUCCEEDED: _handle_payment_succeeded,
    INVOICE_PAYMENT_FAILED: _handle_payment_failed,
    SUBSCRIPTION_TRIAL_WILL_END: _handle_trial_will_end,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _claim_event(event: BillingEvent, payload_hash: str, now: datetime) -> bool:
    """
    Take the processing claim on an event; False when it is done or held.

    The first delivery inserts the row already claimed. A later delivery
    only takes over an unprocessed row whose claim was released after a
    failure or has outlived CLAIM_LEASE, so concurrent copies of one event
    apply it once.
    """
    with get_db_session() as session:
        inserted = insert_ignore(
            session,
            billing_events,
            {
                "provider_event_id": event.event_id,
                "event_type": event.event_type,
                "payload_hash": payload_hash,
                "processed": False,
                "claimed_at": now,
                "received_at": now,
            },
            ["provider_event_id"],
        )
        if inserted:
            return True
        result = session.execute(
            update(billing_events)
            .where(billing_events.c.provider_event_id == event.event_id)
            .where(billing_events.c.processed.is_(False))
            .where(or_(billing_events.c.claimed_at.is_(None), billing_events.c.claimed_at < now - CLAIM_LEASE))
            .values(claimed_at=now)
        )
        return result.rowcount == 1


def _record_failure(event: BillingEvent, exc: Exception) -> None:
    try:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.provider_event_id == event.event_id)
                .values(processed=False, claimed_at=None, error=str(exc)[:2000])
            )
    except (SQLAlchemyError, StorageUnavailableError) as record_exc:
        logger.error(
            "billing.webhook.failure_not_recorded",
            extra={"event_id": event.event_id, "error_message": str(record_exc)},
        )


def process_webhook_event(
    headers: Dict[str, str],
    body: bytes,
    provider: BillingProvider,
    now: Optional[datetime] = None,
) -> WebhookOutcome:
    """
    Process billing webhook event (idempotent).

    1. Verify signature (WebhookVerificationError, nothing written)
    2. Claim the event (already processed -> duplicate)
    3. Apply the handler and mark processed in one transaction
    4. On failure keep processed=false with the error and re-raise

    Returns:
        WebhookOutcome with the notifications to deliver after acknowledging
    """
    event = provider.construct_event(headers, body)
    now = ensure_utc(now) or utc_now()

    if not _claim_event(event, hashlib.sha256(body).hexdigest(), now):
        logger.info("billing.webhook.duplicate", extra={"event_id": event.event_id, "event_type": event.event_type})
        return WebhookOutcome(event.event_id, event.event_type, DUPLICATE)

    handler = HANDLERS.get(event.event_type)
    try:
        with get_db_session() as session:
            if handler is None:
                result = _HandlerResult(IGNORED)
            else:
                result = handler(session, event, now)
            session.execute(
                update(billing_events)
                .where(billing_events.c.provider_event_id == event.event_id)
                .values(processed=True, processed_at=now, outcome=result.outcome, error=result.detail)
            )
    except Exception as exc:
        logger.error(
            "billing.webhook.failed",
            extra={"event_id": event.event_id, "event_type": event.event_type, "error_message": str(exc)},
        )
        _record_failure(event, exc)
        raise

    logger.info(
        "billing.webhook.processed",
        extra={"event_id": event.event_id, "event_type": event.event_type, "outcome": result.outcome},
    )
    return WebhookOutcome(
        event_id=event.event_id,
        event_type=event.event_type,
        outcome=result.outcome,
        detail=result.detail,
        notifications=result.notifications,
    )
