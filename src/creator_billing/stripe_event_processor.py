import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from creator_billing import idempotency_ledger
from creator_billing.errors import GatewayRequestError
from creator_billing.locks import KeyedLocks, subscription_key
from creator_billing.models.base import dialect_insert, new_id, utcnow
from creator_billing.models.payment import (
    ALLOWED_PAYMENT_TRANSITIONS,
    PaymentRecord,
    PaymentStatus,
    PaymentType,
)
from creator_billing.stripe_event_router import (
    ChargeRefunded,
    Dropped,
    Ignored,
    InvoicePaid,
    InvoicePaymentFailed,
    OneOffPaymentSucceeded,
    RoutedEvent,
    SubscriptionDeleted,
    SubscriptionUpdated,
    Unrecognized,
    enrich_invoice_paid,
    require_correlation,
    route_event,
)
from creator_billing.stripe_integration import StripeGateway
from creator_billing.subscription_state_machine import (
    AppliedTransition,
    Origin,
    Transition,
    TransitionKind,
    apply_transition,
)

APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"
DROPPED = "dropped"


@dataclass
class ProcessingResult:
    status: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    subscription_id: Optional[str] = None
    detail: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "subscription_id": self.subscription_id,
            "detail": self.detail,
        }


def _webhook_transition(kind: TransitionKind, routed: Any, **extra: Any) -> Transition:
    return Transition(
        kind=kind,
        origin=Origin.WEBHOOK,
        stripe_subscription_id=routed.stripe_subscription_id,
        fan_id=routed.fan_id,
        creator_id=routed.creator_id,
        **extra,
    )


def append_payment(db: Session, *, user_id: str, creator_id: Optional[str], amount: Decimal, payment_type: str,
                   currency: Optional[str], related_id: Optional[str], external_payment_ref: Optional[str],
                   metadata: Dict[str, Any]) -> bool:
    """
    Append a SUCCESS payment record. A second record for the same external
    payment reference is silently skipped.

    :return: True if a record was written.
    """
    values = dict(
        id=new_id(),
        user_id=user_id,
        creator_id=creator_id,
        amount=amount,
        currency=(currency or "eur").lower(),
        type=payment_type,
        status=PaymentStatus.SUCCESS.value,
        related_id=related_id,
        external_payment_ref=external_payment_ref,
        payment_metadata=metadata,
        created_at=utcnow(),
    )
    if external_payment_ref is None:
        db.add(PaymentRecord(**values))
        db.flush()
        return True

    statement = (
        dialect_insert(db)(PaymentRecord.__table__)
        .values(**values)
        .on_conflict_do_nothing(index_elements=['external_payment_ref'])
    )
    written = db.execute(statement).rowcount == 1
    if not written:
        logging.info(f"Payment {external_payment_ref} already recorded, skipping.")
    return written


def transition_payment(record: PaymentRecord, new_status: str) -> None:
    if (record.status, new_status) not in ALLOWED_PAYMENT_TRANSITIONS:
        raise ValueError(f"Payment {record.id} cannot move from {record.status} to {new_status}")
    record.status = new_status


def _apply_invoice_paid(db: Session, paid: InvoicePaid) -> AppliedTransition:
    applied = apply_transition(db, _webhook_transition(
        TransitionKind.INVOICE_PAID,
        paid,
        tier_id=paid.tier_id,
        price=paid.price,
        period_start=paid.period_start,
        period_end=paid.period_end,
        cancel_at_period_end=paid.cancel_at_period_end,
    ))
    if paid.amount_paid > 0:
        append_payment(
            db,
            user_id=paid.fan_id,
            creator_id=paid.creator_id,
            amount=paid.amount_paid,
            payment_type=PaymentType.SUBSCRIPTION.value,
            currency=paid.currency,
            related_id=applied.subscription.id if applied.subscription is not None else None,
            external_payment_ref=paid.invoice_id,
            metadata={
                'from_webhook': True,
                'stripe_sub_id': paid.stripe_subscription_id,
                'stripe_invoice_id': paid.invoice_id,
                'stripe_payment_intent_id': paid.payment_intent_id,
                'event_id': paid.event_id,
            },
        )
    return applied


def _apply_subscription_updated(db: Session, updated: SubscriptionUpdated) -> AppliedTransition:
    return apply_transition(db, _webhook_transition(
        TransitionKind.SUBSCRIPTION_UPDATED,
        updated,
        tier_id=updated.tier_id,
        external_status=updated.external_status,
        price=updated.price,
        period_start=updated.period_start,
        period_end=updated.period_end,
        cancel_at_period_end=updated.cancel_at_period_end,
    ))


def _apply_subscription_deleted(db: Session, deleted: SubscriptionDeleted) -> AppliedTransition:
    return apply_transition(db, _webhook_transition(
        TransitionKind.SUBSCRIPTION_DELETED, deleted, tier_id=deleted.tier_id,
    ))


def _apply_payment_failed(db: Session, failed: InvoicePaymentFailed) -> AppliedTransition:
    return apply_transition(db, _webhook_transition(TransitionKind.PAYMENT_FAILED, failed))


def _apply_one_off_payment(db: Session, payment: OneOffPaymentSucceeded) -> None:
    append_payment(
        db,
        user_id=payment.user_id,
        creator_id=payment.creator_id,
        amount=payment.amount,
        payment_type=payment.payment_type,
        currency=payment.currency,
        related_id=payment.related_id,
        external_payment_ref=payment.payment_intent_id,
        metadata=payment.metadata,
    )


def _apply_charge_refunded(db: Session, refund: ChargeRefunded) -> None:
    record = None
    for ref in (refund.payment_intent_id, refund.invoice_id):
        if ref:
            record = db.query(PaymentRecord).filter(PaymentRecord.external_payment_ref == ref).with_for_update().first()
            if record is not None:
                break
    if record is None:
        logging.warning(f"Event {refund.event_id}: no payment found for refunded charge {refund.charge_id}")
        return
    if record.status == PaymentStatus.REFUNDED.value:
        return
    transition_payment(record, PaymentStatus.REFUNDED.value)
    db.add(record)
    db.flush()
    logging.info(f"Payment {record.id} marked REFUNDED by event {refund.event_id}")


_APPLIERS = {
    InvoicePaid: _apply_invoice_paid,
    SubscriptionUpdated: _apply_subscription_updated,
    SubscriptionDeleted: _apply_subscription_deleted,
    InvoicePaymentFailed: _apply_payment_failed,
    OneOffPaymentSucceeded: _apply_one_off_payment,
    ChargeRefunded: _apply_charge_refunded,
}


def _lock_key(routed: RoutedEvent) -> str:
    stripe_subscription_id = getattr(routed, 'stripe_subscription_id', None)
    if stripe_subscription_id:
        return subscription_key(stripe_subscription_id)
    return f"payment:{getattr(routed, 'payment_intent_id', None) or routed.event_id}"


def _enrich(routed: RoutedEvent, gateway: Optional[StripeGateway]) -> RoutedEvent:
    if not isinstance(routed, InvoicePaid) or gateway is None or not routed.needs_subscription_details:
        return routed
    try:
        subscription = gateway.retrieve_subscription(routed.stripe_subscription_id)
    except GatewayRequestError as e:
        logging.warning(f"Event {routed.event_id}: could not load subscription {routed.stripe_subscription_id}: {e}")
        return routed
    return enrich_invoice_paid(routed, subscription)


def process_event(event: Dict[str, Any], db: Session, locks: KeyedLocks,
                  gateway: Optional[StripeGateway] = None) -> ProcessingResult:
    """
    Apply a verified Stripe event to the local store exactly once.

    :param event: Dictionary representing the verified Stripe event payload.
    :param db: SQLAlchemy Session instance.
    :param locks: Per-subscription lock registry shared with the command side.
    :param gateway: Used to load the subscription when an invoice lacks details.
    :return: What happened to the event.
    :raises Exception: on any storage failure, after rolling back, so the
        delivery is retried by Stripe.
    """
    event_type = event.get('type')
    if not event_type:
        error_msg = "Missing 'type' in event payload"
        logging.error(error_msg)
        raise ValueError(error_msg)
    if not event.get('id'):
        error_msg = "Missing 'id' in event payload"
        logging.error(error_msg)
        raise ValueError(error_msg)

    routed = require_correlation(_enrich(route_event(event), gateway))
    result = ProcessingResult(status=APPLIED, event_id=routed.event_id, event_type=routed.event_type)

    if isinstance(routed, Unrecognized):
        logging.info(f"Unhandled event type: {event_type} for event {routed.event_id}. No action taken.")
        result.status = IGNORED
        return result
    if isinstance(routed, Ignored):
        logging.info(f"Event {routed.event_id} ({event_type}) ignored: {routed.reason}")
        result.status, result.detail = IGNORED, routed.reason
        return result
    if isinstance(routed, Dropped):
        logging.warning(f"Event {routed.event_id} ({event_type}) dropped: {routed.reason}")
        result.status, result.detail = DROPPED, routed.reason
        return result

    with locks.hold(_lock_key(routed)):
        try:
            if not idempotency_ledger.claim_event(db, routed.event_id, routed.event_type):
                db.rollback()
                result.status = DUPLICATE
                return result

            applied = _APPLIERS[type(routed)](db, routed)
            db.commit()
        except Exception as e:
            db.rollback()
            logging.error(e, exc_info=True)
            raise

    if isinstance(applied, AppliedTransition) and applied.subscription is not None:
        result.subscription_id = applied.subscription.id
        if not applied.changed:
            result.detail = applied.decision.reason
    logging.info(f"Event {routed.event_id} at {routed.created}: {event_type} processed successfully.")
    return result
