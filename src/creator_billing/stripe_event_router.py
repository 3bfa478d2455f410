"""
Classification of verified Stripe events into a closed set of variants.

Every inbound event maps to exactly one dataclass below; nothing downstream
looks at the raw payload. Correlating ids are read from the event-level
metadata first and from the invoice line items second.
"""
import dataclasses
import datetime
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Optional

from creator_billing.models.payment import PaymentType

CENT = Decimal("0.01")

ONE_OFF_PAYMENT_TYPES = {PaymentType.TIP.value, PaymentType.PAY_PER_VIEW.value, PaymentType.PRODUCT.value}


@dataclass(frozen=True, kw_only=True)
class RoutedEvent:
    event_id: str
    event_type: str
    created: Optional[int] = None


@dataclass(frozen=True, kw_only=True)
class InvoicePaid(RoutedEvent):
    invoice_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    fan_id: Optional[str] = None
    creator_id: Optional[str] = None
    tier_id: Optional[str] = None
    amount_paid: Decimal = Decimal("0.00")
    currency: Optional[str] = None
    price: Optional[Decimal] = None
    period_start: Optional[datetime.datetime] = None
    period_end: Optional[datetime.datetime] = None
    cancel_at_period_end: Optional[bool] = None
    payment_intent_id: Optional[str] = None

    @property
    def needs_subscription_details(self) -> bool:
        return not (self.fan_id and self.creator_id) or self.price is None or self.period_end is None \
            or self.cancel_at_period_end is None


@dataclass(frozen=True, kw_only=True)
class SubscriptionUpdated(RoutedEvent):
    stripe_subscription_id: str
    external_status: Optional[str] = None
    fan_id: Optional[str] = None
    creator_id: Optional[str] = None
    tier_id: Optional[str] = None
    price: Optional[Decimal] = None
    period_start: Optional[datetime.datetime] = None
    period_end: Optional[datetime.datetime] = None
    cancel_at_period_end: Optional[bool] = None


@dataclass(frozen=True, kw_only=True)
class SubscriptionDeleted(RoutedEvent):
    stripe_subscription_id: str
    fan_id: Optional[str] = None
    creator_id: Optional[str] = None
    tier_id: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class InvoicePaymentFailed(RoutedEvent):
    stripe_subscription_id: str
    invoice_id: Optional[str] = None
    fan_id: Optional[str] = None
    creator_id: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class OneOffPaymentSucceeded(RoutedEvent):
    payment_intent_id: str
    user_id: str
    payment_type: str
    amount: Decimal
    currency: Optional[str] = None
    creator_id: Optional[str] = None
    related_id: Optional[str] = None
    metadata: Dict[str, Any] = dataclasses.field(default_factory=dict)


@dataclass(frozen=True, kw_only=True)
class ChargeRefunded(RoutedEvent):
    charge_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    invoice_id: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class Ignored(RoutedEvent):
    """A known event type that needs no local change."""
    reason: str


@dataclass(frozen=True, kw_only=True)
class Dropped(RoutedEvent):
    """A known event type that cannot be correlated. Retrying will not help."""
    reason: str


@dataclass(frozen=True, kw_only=True)
class Unrecognized(RoutedEvent):
    pass


def minor_to_decimal(amount: Any) -> Optional[Decimal]:
    """Convert an amount in minor units (cents) to a two-place Decimal."""
    if amount is None:
        return None
    return (Decimal(str(amount)) / 100).quantize(CENT, rounding=ROUND_HALF_UP)


def from_timestamp(value: Any) -> Optional[datetime.datetime]:
    if not value:
        return None
    return datetime.datetime.fromtimestamp(int(value), tz=datetime.timezone.utc)


def _ref(value: Any) -> Optional[str]:
    """Stripe fields are either an id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get('id')
    return None


def _lines(invoice: Dict[str, Any]) -> Iterable[Dict[str, Any]]:
    return (invoice.get('lines') or {}).get('data') or []


def _first_with_fan(candidates: Iterable[Optional[Dict[str, Any]]]) -> Dict[str, Any]:
    for metadata in candidates:
        if metadata and metadata.get('fan_id'):
            return metadata
    return {}


def _item_price(subscription: Dict[str, Any]) -> Optional[Decimal]:
    items = (subscription.get('items') or {}).get('data') or []
    if not items:
        return None
    price = items[0].get('price') or {}
    if price.get('unit_amount') is not None:
        return minor_to_decimal(price['unit_amount'])
    if price.get('unit_amount_decimal') is not None:
        return minor_to_decimal(price['unit_amount_decimal'])
    return None


def subscription_period(subscription: Dict[str, Any]):
    """
    (period start, period end) of a Stripe subscription object.

    Newer API versions only report the period on the subscription items.
    """
    start, end = subscription.get('current_period_start'), subscription.get('current_period_end')
    items = (subscription.get('items') or {}).get('data') or []
    if items:
        start = start or items[0].get('current_period_start')
        end = end or items[0].get('current_period_end')
    return from_timestamp(start), from_timestamp(end)


def invoice_subscription_ref(invoice: Dict[str, Any]) -> Optional[str]:
    ref = _ref(invoice.get('subscription'))
    if ref:
        return ref
    parent_details = ((invoice.get('parent') or {}).get('subscription_details') or {})
    ref = _ref(parent_details.get('subscription'))
    if ref:
        return ref
    for line in _lines(invoice):
        ref = _ref(line.get('subscription'))
        if ref:
            return ref
        item_details = ((line.get('parent') or {}).get('subscription_item_details') or {})
        ref = _ref(item_details.get('subscription'))
        if ref:
            return ref
    return None


def invoice_metadata(invoice: Dict[str, Any]) -> Dict[str, Any]:
    expanded_subscription = invoice.get('subscription')
    candidates = [
        expanded_subscription.get('metadata') if isinstance(expanded_subscription, dict) else None,
        (invoice.get('subscription_details') or {}).get('metadata'),
        ((invoice.get('parent') or {}).get('subscription_details') or {}).get('metadata'),
        invoice.get('metadata'),
    ]
    candidates.extend(line.get('metadata') for line in _lines(invoice))
    return _first_with_fan(candidates)


def _invoice_plan_line(invoice: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    lines = list(_lines(invoice))
    for line in lines:
        if not line.get('proration') and (line.get('price') or {}).get('unit_amount') is not None:
            return line
    return lines[0] if lines else None


def _route_invoice_paid(base: Dict[str, Any], invoice: Dict[str, Any]) -> RoutedEvent:
    subscription_id = invoice_subscription_ref(invoice)
    if not subscription_id:
        return Ignored(**base, reason="invoice is not for a subscription")

    metadata = invoice_metadata(invoice)
    plan_line = _invoice_plan_line(invoice) or {}
    period = plan_line.get('period') or {}
    price = (plan_line.get('price') or {}).get('unit_amount')

    return InvoicePaid(
        **base,
        invoice_id=invoice.get('id'),
        stripe_subscription_id=subscription_id,
        fan_id=metadata.get('fan_id'),
        creator_id=metadata.get('creator_id'),
        tier_id=metadata.get('tier_id'),
        amount_paid=minor_to_decimal(invoice.get('amount_paid') or 0),
        currency=invoice.get('currency'),
        price=minor_to_decimal(price),
        period_start=from_timestamp(period.get('start')),
        period_end=from_timestamp(period.get('end')),
        payment_intent_id=_ref(invoice.get('payment_intent')),
    )


def _route_subscription_updated(base: Dict[str, Any], subscription: Dict[str, Any]) -> RoutedEvent:
    if not subscription.get('id'):
        return Dropped(**base, reason="subscription object has no id")
    metadata = subscription.get('metadata') or {}
    period_start, period_end = subscription_period(subscription)
    cancel_flag = subscription.get('cancel_at_period_end')
    return SubscriptionUpdated(
        **base,
        stripe_subscription_id=subscription['id'],
        external_status=subscription.get('status'),
        fan_id=metadata.get('fan_id'),
        creator_id=metadata.get('creator_id'),
        tier_id=metadata.get('tier_id'),
        price=_item_price(subscription),
        period_start=period_start,
        period_end=period_end,
        cancel_at_period_end=bool(cancel_flag) if cancel_flag is not None else None,
    )


def _route_subscription_deleted(base: Dict[str, Any], subscription: Dict[str, Any]) -> RoutedEvent:
    if not subscription.get('id'):
        return Dropped(**base, reason="subscription object has no id")
    metadata = subscription.get('metadata') or {}
    return SubscriptionDeleted(
        **base,
        stripe_subscription_id=subscription['id'],
        fan_id=metadata.get('fan_id'),
        creator_id=metadata.get('creator_id'),
        tier_id=metadata.get('tier_id'),
    )


def _route_payment_failed(base: Dict[str, Any], invoice: Dict[str, Any]) -> RoutedEvent:
    subscription_id = invoice_subscription_ref(invoice)
    if not subscription_id:
        return Ignored(**base, reason="failed invoice is not for a subscription")
    metadata = invoice_metadata(invoice)
    return InvoicePaymentFailed(
        **base,
        stripe_subscription_id=subscription_id,
        invoice_id=invoice.get('id'),
        fan_id=metadata.get('fan_id'),
        creator_id=metadata.get('creator_id'),
    )


def _route_payment_intent(base: Dict[str, Any], intent: Dict[str, Any]) -> RoutedEvent:
    metadata = dict(intent.get('metadata') or {})
    user_id = metadata.get('userId')
    payment_type = metadata.get('type')

    if not payment_type or payment_type == PaymentType.SUBSCRIPTION.value:
        return Ignored(**base, reason="subscription payments are recorded from invoices")
    if payment_type not in ONE_OFF_PAYMENT_TYPES:
        return Dropped(**base, reason=f"unknown payment type {payment_type}")
    if not user_id:
        return Dropped(**base, reason="payment intent has no userId metadata")

    return OneOffPaymentSucceeded(
        **base,
        payment_intent_id=intent.get('id'),
        user_id=user_id,
        payment_type=payment_type,
        amount=minor_to_decimal(intent.get('amount_received') or intent.get('amount') or 0),
        currency=intent.get('currency'),
        creator_id=metadata.get('creatorId'),
        related_id=metadata.get('postId') or metadata.get('productId'),
        metadata=metadata,
    )


def _route_charge_refunded(base: Dict[str, Any], charge: Dict[str, Any]) -> RoutedEvent:
    fully_refunded = charge.get('refunded') or (
        charge.get('amount') is not None and charge.get('amount_refunded') == charge.get('amount')
    )
    if not fully_refunded:
        return Ignored(**base, reason="partial refund")
    return ChargeRefunded(
        **base,
        charge_id=charge.get('id'),
        payment_intent_id=_ref(charge.get('payment_intent')),
        invoice_id=_ref(charge.get('invoice')),
    )


_ROUTES = {
    'invoice.paid': _route_invoice_paid,
    'invoice.payment_succeeded': _route_invoice_paid,
    'customer.subscription.created': _route_subscription_updated,
    'customer.subscription.updated': _route_subscription_updated,
    'customer.subscription.deleted': _route_subscription_deleted,
    'invoice.payment_failed': _route_payment_failed,
    'payment_intent.succeeded': _route_payment_intent,
    'charge.refunded': _route_charge_refunded,
}


def route_event(event: Dict[str, Any]) -> RoutedEvent:
    """
    Classify a verified Stripe event.

    :param event: The parsed event envelope.
    :return: One of the ``RoutedEvent`` variants. Unknown types map to
        ``Unrecognized`` instead of raising.
    """
    base = {
        'event_id': event.get('id'),
        'event_type': event.get('type'),
        'created': event.get('created'),
    }
    route = _ROUTES.get(base['event_type'])
    if route is None:
        return Unrecognized(**base)

    data_object = (event.get('data') or {}).get('object') or {}
    return route(base, data_object)


def enrich_invoice_paid(paid: InvoicePaid, subscription: Dict[str, Any]) -> InvoicePaid:
    """
    Fill the gaps of an ``InvoicePaid`` from the Stripe subscription object.

    Correlating ids already read from the invoice win. The plan price, period
    and cancel flag come from the subscription, which is authoritative for
    them.
    """
    metadata = subscription.get('metadata') or {}
    period_start, period_end = subscription_period(subscription)
    cancel_flag = subscription.get('cancel_at_period_end')
    plan_price = _item_price(subscription)
    return dataclasses.replace(
        paid,
        fan_id=paid.fan_id or metadata.get('fan_id'),
        creator_id=paid.creator_id or metadata.get('creator_id'),
        tier_id=paid.tier_id or metadata.get('tier_id'),
        price=plan_price if plan_price is not None else paid.price,
        period_start=period_start or paid.period_start,
        period_end=period_end or paid.period_end,
        cancel_at_period_end=bool(cancel_flag) if cancel_flag is not None else paid.cancel_at_period_end,
    )


def require_correlation(routed: RoutedEvent) -> RoutedEvent:
    """
    Turn payment-bearing events that cannot be tied to a fan and creator into
    ``Dropped``. Subscription changes keyed by an existing Stripe reference
    do not need them.
    """
    if isinstance(routed, InvoicePaid) and not (routed.fan_id and routed.creator_id):
        logging.warning(
            f"Event {routed.event_id}: invoice {routed.invoice_id} for {routed.stripe_subscription_id} "
            f"carries no fan_id/creator_id"
        )
        return Dropped(
            event_id=routed.event_id,
            event_type=routed.event_type,
            created=routed.created,
            reason="missing fan_id/creator_id",
        )
    return routed
