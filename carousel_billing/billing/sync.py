"""
Billing event synchronizer: applies verified Stripe events to the subscription mirror.

Every event is claimed, applied and flagged processed in one transaction, so a
redelivered id is a no-op and a failed attempt can simply be retried. Handlers
write absolute values with keyed UPDATEs (the failure counter is a SQL-side
increment), never read-modify-write. Notifications go out only after commit.
"""
import json
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from flask import current_app
from sqlalchemy import func, update

from carousel_billing.billing.plans import PlanCatalog, TIER_FREE
from carousel_billing.models import BillingEvent, Subscription, User
from carousel_billing.models.subscription import STATUS_ACTIVE, STATUS_CANCELLED, STATUS_PAST_DUE
from carousel_billing.services.billing import first_price, period_bounds
from carousel_billing.services.persistence import insert_if_absent, upsert
from carousel_billing.utils.helpers import as_utc, from_timestamp, utcnow
from carousel_billing.utils.validators import normalize_email

FINAL_WARNING_THRESHOLD = 3

VIEW_PLANS_LABELS = {"pt": "Ver planos", "en": "View plans"}
UPDATE_PAYMENT_LABELS = {"pt": "Atualizar pagamento", "en": "Update payment"}

# Stripe subscription.status -> mirror status
_STATUS_MAP = {
    "active": STATUS_ACTIVE,
    "trialing": STATUS_ACTIVE,
    "past_due": STATUS_PAST_DUE,
    "unpaid": STATUS_PAST_DUE,
    "incomplete": STATUS_PAST_DUE,
    "paused": STATUS_PAST_DUE,
    "canceled": STATUS_CANCELLED,
    "incomplete_expired": STATUS_CANCELLED,
}


def map_status(provider_status: Optional[str]) -> str:
    return _STATUS_MAP.get((provider_status or "").lower(), STATUS_PAST_DUE)


def _object_id(value: Any) -> Optional[str]:
    # expandable Stripe fields arrive either as an id or as the expanded object
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    sub_id = _object_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    # API versions from 2025 nest it under parent.subscription_details
    parent = invoice.get("parent") or {}
    return _object_id((parent.get("subscription_details") or {}).get("subscription"))


@dataclass
class PendingNotification:
    user_id: int
    type: str
    titles: Dict[str, str]
    messages: Dict[str, str]
    action_labels: Optional[Dict[str, str]] = None


@dataclass
class SyncOutcome:
    event_id: str
    event_type: str
    duplicate: bool = False
    handled: bool = False
    notifications: List[PendingNotification] = field(default_factory=list)


class BillingEventSynchronizer:
    def __init__(
        self,
        session,
        catalog: PlanCatalog,
        gateway,
        sink,
        clock: Callable[[], datetime] = utcnow,
        final_warning_threshold: int = FINAL_WARNING_THRESHOLD,
        action_url: str = "/dashboard",
    ):
        self._session = session
        self._catalog = catalog
        self._gateway = gateway
        self._sink = sink
        self._clock = clock
        self._final_threshold = final_warning_threshold
        self._action_url = action_url
        self._handlers = {
            "checkout.session.completed": self._on_checkout_completed,
            "customer.subscription.updated": self._on_subscription_updated,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "invoice.payment_failed": self._on_payment_failed,
            "invoice.payment_succeeded": self._on_payment_succeeded,
            "invoice.paid": self._on_payment_succeeded,
        }

    def ingest(self, event: Dict[str, Any]) -> SyncOutcome:
        ev_id = event["id"]
        ev_type = event["type"]
        outcome = SyncOutcome(event_id=ev_id, event_type=ev_type)
        obj = (event.get("data") or {}).get("object") or {}

        try:
            if not self._claim(ev_id, ev_type, event):
                self._session.rollback()
                outcome.duplicate = True
                return outcome

            handler = self._handlers.get(ev_type)
            if handler is not None:
                handler(obj, outcome)
                outcome.handled = True

            self._session.execute(
                update(BillingEvent)
                .where(BillingEvent.external_event_id == ev_id)
                .values(processed=True, processed_at=self._clock(), notes=None)
            )
            self._session.commit()
        except Exception as exc:
            self._session.rollback()
            self._record_failure(ev_id, ev_type, event, exc)
            raise

        for note in outcome.notifications:
            self._dispatch(note)

        current_app.logger.info(json.dumps({
            "event": "billing_event_processed",
            "event_id": ev_id,
            "type": ev_type,
            "handled": outcome.handled,
            "notifications": len(outcome.notifications),
        }))
        return outcome

    # --- idempotency ---

    def _claim(self, ev_id: str, ev_type: str, event: Dict[str, Any]) -> bool:
        """True when this delivery owns the event; False for an already-processed id."""
        inserted = insert_if_absent(
            self._session,
            BillingEvent,
            {
                "external_event_id": ev_id,
                "event_type": ev_type,
                "payload": event,
                "signature_valid": True,
                "processed": False,
                "retries": 0,
            },
            conflict_cols=("external_event_id",),
        )
        if inserted:
            return True
        # a previous attempt failed; take the row only if nobody finished it meanwhile
        result = self._session.execute(
            update(BillingEvent)
            .where(BillingEvent.external_event_id == ev_id, BillingEvent.processed.is_(False))
            .values(notes=None)
        )
        return (result.rowcount or 0) > 0

    def _record_failure(self, ev_id: str, ev_type: str, event: Dict[str, Any], exc: Exception) -> None:
        note = f"handler_error:{type(exc).__name__}"
        try:
            upsert(
                self._session,
                BillingEvent,
                {
                    "external_event_id": ev_id,
                    "event_type": ev_type,
                    "payload": event,
                    "signature_valid": True,
                    "processed": False,
                    "retries": 1,
                    "notes": note,
                },
                conflict_cols=("external_event_id",),
                update_values={"retries": BillingEvent.retries + 1, "notes": note},
            )
            self._session.commit()
        except Exception:
            self._session.rollback()
            current_app.logger.exception("billing_event_failure_not_recorded", extra={"event_id": ev_id})

    def _dispatch(self, note: PendingNotification) -> None:
        try:
            self._sink.create_notification(
                note.user_id,
                note.type,
                note.titles,
                note.messages,
                self._action_url,
                action_labels=note.action_labels,
            )
        except Exception:
            # the state transition is already committed; notifying is best effort
            current_app.logger.exception(
                "billing_notification_failed",
                extra={"user_id": note.user_id, "type": note.type},
            )

    # --- handlers ---

    def _update_by_subscription_id(self, sub_id: str, **values) -> int:
        values.setdefault("updated_at", func.now())
        result = self._session.execute(
            update(Subscription)
            .where(Subscription.external_subscription_id == sub_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def _mirror_row(self, sub_id: str):
        return (
            self._session.query(Subscription.user_id, Subscription.failed_payment_count)
            .filter(Subscription.external_subscription_id == sub_id)
            .one_or_none()
        )

    def _skip(self, ev_type: str, reason: str, **details) -> None:
        current_app.logger.info(json.dumps({
            "event": "billing_event_skipped",
            "type": ev_type,
            "reason": reason,
            **details,
        }))

    def _on_checkout_completed(self, session_obj: Dict[str, Any], outcome: SyncOutcome) -> None:
        email = normalize_email(
            session_obj.get("customer_email")
            or (session_obj.get("customer_details") or {}).get("email")
        )
        sub_id = _object_id(session_obj.get("subscription"))
        if not email:
            return self._skip(outcome.event_type, "no_customer_email", session_id=session_obj.get("id"))
        if not sub_id:
            return self._skip(outcome.event_type, "no_subscription_id", session_id=session_obj.get("id"))

        user = self._session.query(User).filter(func.lower(User.email) == email).one_or_none()
        if user is None:
            return self._skip(outcome.event_type, "user_not_found", session_id=session_obj.get("id"))

        sub_obj = self._gateway.retrieve_subscription(sub_id)
        price_id = first_price(sub_obj).get("id")
        plan = self._catalog.resolve_plan(price_id=price_id)
        start, end = period_bounds(sub_obj)
        cancel_at_period_end = bool(sub_obj.get("cancel_at_period_end"))

        values = {
            "user_id": user.id,
            "tier": plan.tier,
            "external_subscription_id": sub_id,
            "external_customer_id": _object_id(session_obj.get("customer")) or _object_id(sub_obj.get("customer")),
            "external_price_id": price_id,
            "status": STATUS_ACTIVE,
            "current_period_start": from_timestamp(start),
            "current_period_end": from_timestamp(end),
            "cancel_at_period_end": cancel_at_period_end,
            "cancelled_at": self._clock() if cancel_at_period_end else None,
            "scheduled_downgrade_tier": TIER_FREE if cancel_at_period_end else None,
        }
        update_values = {k: v for k, v in values.items() if k != "user_id"}
        update_values["updated_at"] = func.now()
        upsert(self._session, Subscription, values, conflict_cols=("user_id",), update_values=update_values)

        current_app.logger.info(json.dumps({
            "event": "subscription_activated",
            "user_id": user.id,
            "subscription_id": sub_id,
            "tier": plan.tier,
        }))

    def _on_subscription_updated(self, sub_obj: Dict[str, Any], outcome: SyncOutcome) -> None:
        sub_id = sub_obj.get("id")
        if not sub_id:
            return self._skip(outcome.event_type, "no_subscription_id")

        price_id = first_price(sub_obj).get("id")
        plan = self._catalog.resolve_plan(price_id=price_id)
        start, end = period_bounds(sub_obj)
        cancel_at_period_end = bool(sub_obj.get("cancel_at_period_end"))
        now = self._clock()

        just_cancelled = cancel_at_period_end and self._flip_cancel_flag(sub_id, now)

        values = {
            "status": map_status(sub_obj.get("status")),
            "tier": plan.tier,
            "external_price_id": price_id,
            "current_period_start": from_timestamp(start),
            "current_period_end": from_timestamp(end),
            "cancel_at_period_end": cancel_at_period_end,
            "scheduled_downgrade_tier": TIER_FREE if cancel_at_period_end else None,
        }
        if not cancel_at_period_end:
            values["cancelled_at"] = None
        if not self._update_by_subscription_id(sub_id, **values):
            return self._skip(outcome.event_type, "subscription_not_found", subscription_id=sub_id)

        if just_cancelled:
            row = self._mirror_row(sub_id)
            period_end = from_timestamp(end)
            days_remaining = 0
            if period_end is not None:
                days_remaining = max(math.ceil((period_end - now).total_seconds() / 86400), 0)
            outcome.notifications.append(self._cancellation_notice(row.user_id, plan.tier, days_remaining, period_end))

    def _flip_cancel_flag(self, sub_id: str, now: datetime) -> bool:
        """Compare-and-set: True only for the delivery that turns cancel_at_period_end on."""
        result = self._session.execute(
            update(Subscription)
            .where(
                Subscription.external_subscription_id == sub_id,
                Subscription.cancel_at_period_end.is_(False),
            )
            .values(cancel_at_period_end=True, cancelled_at=now)
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) > 0

    def _on_subscription_deleted(self, sub_obj: Dict[str, Any], outcome: SyncOutcome) -> None:
        sub_id = sub_obj.get("id")
        free = self._catalog.free_plan()
        updated = self._update_by_subscription_id(
            sub_id,
            tier=free.tier,
            status=STATUS_CANCELLED,
            external_price_id=None,
            cancel_at_period_end=False,
            scheduled_downgrade_tier=None,
        ) if sub_id else 0
        if not updated:
            return self._skip(outcome.event_type, "subscription_not_found", subscription_id=sub_id)
        current_app.logger.info(json.dumps({
            "event": "subscription_downgraded",
            "subscription_id": sub_id,
            "tier": free.tier,
        }))

    def _on_payment_failed(self, invoice: Dict[str, Any], outcome: SyncOutcome) -> None:
        sub_id = invoice_subscription_id(invoice)
        if not sub_id:
            return self._skip(outcome.event_type, "no_subscription_id", invoice_id=invoice.get("id"))

        updated = self._update_by_subscription_id(
            sub_id,
            status=STATUS_PAST_DUE,
            failed_payment_count=Subscription.failed_payment_count + 1,
            last_payment_failure_at=self._clock(),
        )
        if not updated:
            return self._skip(outcome.event_type, "subscription_not_found", subscription_id=sub_id)

        row = self._mirror_row(sub_id)
        count = row.failed_payment_count
        current_app.logger.info(json.dumps({
            "event": "subscription_past_due",
            "subscription_id": sub_id,
            "failed_payment_count": count,
        }))
        outcome.notifications.append(self._payment_failed_notice(row.user_id, count))

    def _on_payment_succeeded(self, invoice: Dict[str, Any], outcome: SyncOutcome) -> None:
        sub_id = invoice_subscription_id(invoice)
        if not sub_id:
            return self._skip(outcome.event_type, "no_subscription_id", invoice_id=invoice.get("id"))
        updated = self._update_by_subscription_id(
            sub_id,
            status=STATUS_ACTIVE,
            failed_payment_count=0,
            last_payment_failure_at=None,
            scheduled_downgrade_tier=None,
        )
        if not updated:
            return self._skip(outcome.event_type, "subscription_not_found", subscription_id=sub_id)

    # --- notification copy ---

    def _cancellation_notice(self, user_id: int, tier: str, days: int, period_end) -> PendingNotification:
        end = as_utc(period_end)
        end_pt = end.strftime("%d/%m/%Y") if end else "-"
        end_en = end.strftime("%m/%d/%Y") if end else "-"
        return PendingNotification(
            user_id=user_id,
            type="subscription_cancelled",
            titles={"pt": "Assinatura cancelada", "en": "Subscription cancelled"},
            messages={
                "pt": (
                    f"Sua assinatura foi cancelada. Você ainda pode usar os recursos do plano {tier} "
                    f"por mais {days} dias até {end_pt}."
                ),
                "en": (
                    f"Your subscription has been cancelled. You can still use {tier} plan features "
                    f"for {days} more days until {end_en}."
                ),
            },
            action_labels=VIEW_PLANS_LABELS,
        )

    def _payment_failed_notice(self, user_id: int, count: int) -> PendingNotification:
        if count >= self._final_threshold:
            return PendingNotification(
                user_id=user_id,
                type="payment_failed_final",
                titles={"pt": "Última tentativa de pagamento falhou", "en": "Final payment attempt failed"},
                messages={
                    "pt": "Sua conta será rebaixada para o plano gratuito em 24 horas se o pagamento não for regularizado.",
                    "en": "Your account will be downgraded to free plan in 24 hours if payment is not resolved.",
                },
                action_labels=UPDATE_PAYMENT_LABELS,
            )
        attempts_left = self._final_threshold - count
        return PendingNotification(
            user_id=user_id,
            type="payment_failed",
            titles={"pt": "Falha no pagamento", "en": "Payment failed"},
            messages={
                "pt": f"Não conseguimos processar seu pagamento. Restam {attempts_left} tentativas antes da suspensão.",
                "en": f"We couldn't process your payment. {attempts_left} attempts remaining before suspension.",
            },
            action_labels=UPDATE_PAYMENT_LABELS,
        )


def build_synchronizer(clock: Callable[[], datetime] = utcnow) -> BillingEventSynchronizer:
    from carousel_billing.extensions import db
    from carousel_billing.billing.plans import SqlPlanCatalog
    from carousel_billing.services.billing import get_gateway
    from carousel_billing.services.notifications import DatabaseNotificationSink

    cfg = current_app.config
    sink = current_app.extensions.get("notification_sink") or DatabaseNotificationSink()
    return BillingEventSynchronizer(
        session=db.session,
        catalog=SqlPlanCatalog(db.session),
        gateway=get_gateway(),
        sink=sink,
        clock=clock,
        final_warning_threshold=cfg.get("FAILED_PAYMENT_FINAL_THRESHOLD", FINAL_WARNING_THRESHOLD),
        action_url=cfg.get("NOTIFICATION_ACTION_URL", "/dashboard"),
    )
