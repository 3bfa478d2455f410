"""
Subscription lifecycle.

``decide`` is a pure function from (current row snapshot, requested
transition) to a ``Decision`` describing which columns to write.
``apply_transition`` is the single entry point that loads the row, runs the
existence and ownership checks, and persists the decision. Whether a missing
row may be created depends on where the transition came from and is looked
up in ``CREATE_MISSING_POLICY``.

    NONE -> ACTIVE -> {CANCELED, EXPIRED}
    CANCELED -> ACTIVE      (explicit resume / resubscribe only)
    ACTIVE -> ACTIVE        (tier or price change)
    EXPIRED                 terminal
"""
import datetime
import enum
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from creator_billing import subscription_store
from creator_billing.errors import AuthorizationError, ConsistencyError, InvalidTransitionError
from creator_billing.models.base import utcnow
from creator_billing.models.subscription import Subscription, SubscriptionStatus, TERMINAL_STATUSES

ACTIVE = SubscriptionStatus.ACTIVE.value
CANCELED = SubscriptionStatus.CANCELED.value
EXPIRED = SubscriptionStatus.EXPIRED.value

# Stripe statuses of a subscription whose first invoice was never paid.
UNPAID_EXTERNAL_STATUSES = ('incomplete', 'incomplete_expired')


class Origin(str, enum.Enum):
    WEBHOOK = "webhook"
    COMMAND = "command"


class TransitionKind(str, enum.Enum):
    INVOICE_PAID = "invoice_paid"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    PAYMENT_FAILED = "payment_failed"
    CREATE = "create"
    CHANGE_TIER = "change_tier"
    RESUBSCRIBE = "resubscribe"
    CANCEL = "cancel"
    RESUME = "resume"


class Action(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    NOOP = "noop"


# (origin, kind) -> may a missing local row be created?
# Stripe is authoritative for existence, so webhooks upsert; commands other
# than create must target a row the caller already owns.
CREATE_MISSING_POLICY: Dict[Tuple[Origin, TransitionKind], bool] = {
    (Origin.WEBHOOK, TransitionKind.INVOICE_PAID): True,
    (Origin.WEBHOOK, TransitionKind.SUBSCRIPTION_UPDATED): True,
    (Origin.WEBHOOK, TransitionKind.SUBSCRIPTION_DELETED): True,
    (Origin.WEBHOOK, TransitionKind.PAYMENT_FAILED): True,
    (Origin.COMMAND, TransitionKind.CREATE): True,
    (Origin.COMMAND, TransitionKind.CHANGE_TIER): False,
    (Origin.COMMAND, TransitionKind.RESUBSCRIBE): False,
    (Origin.COMMAND, TransitionKind.SUBSCRIPTION_DELETED): False,
    (Origin.COMMAND, TransitionKind.CANCEL): False,
    (Origin.COMMAND, TransitionKind.RESUME): False,
}


@dataclass(frozen=True)
class Transition:
    kind: TransitionKind
    origin: Origin
    stripe_subscription_id: Optional[str] = None
    subscription_id: Optional[str] = None
    actor_id: Optional[str] = None
    fan_id: Optional[str] = None
    creator_id: Optional[str] = None
    tier_id: Optional[str] = None
    external_status: Optional[str] = None
    price: Optional[Decimal] = None
    period_start: Optional[datetime.datetime] = None
    period_end: Optional[datetime.datetime] = None
    cancel_at_period_end: Optional[bool] = None


@dataclass(frozen=True)
class SubscriptionSnapshot:
    status: str
    price: Optional[Decimal] = None
    end_date: Optional[datetime.datetime] = None
    auto_renew: bool = True
    tier_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Subscription) -> "SubscriptionSnapshot":
        return cls(
            status=row.status,
            price=row.price,
            end_date=row.end_date,
            auto_renew=row.auto_renew,
            tier_id=row.tier_id,
            stripe_subscription_id=row.stripe_subscription_id,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class Decision:
    action: Action
    changes: Dict[str, Any] = field(default_factory=dict)
    reason: str = ""
    # Columns explicitly reset to NULL; None in ``changes`` means "leave alone".
    clears: Tuple[str, ...] = ()


@dataclass
class AppliedTransition:
    decision: Decision
    subscription: Optional[Subscription] = None

    @property
    def changed(self) -> bool:
        return self.decision.action is not Action.NOOP


def map_external_status(external_status: Optional[str]) -> str:
    if external_status == 'canceled':
        return CANCELED
    if external_status in ('unpaid', 'past_due', 'incomplete_expired'):
        return EXPIRED
    return ACTIVE


def as_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


def clean_tier_id(tier_id: Optional[str]) -> Optional[str]:
    if not tier_id or tier_id in ('null', 'base'):
        return None
    return tier_id


def _next_end_date(current: SubscriptionSnapshot, incoming: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """
    Period end to write, or None to leave the stored value alone.

    A missing value never clobbers, and while the row is ACTIVE an older
    boundary (an out-of-order event) never replaces a newer one.
    """
    if incoming is None:
        return None
    stored = as_utc(current.end_date)
    if current.status == ACTIVE and stored is not None and as_utc(incoming) < stored:
        logging.info(f"Ignoring period end {incoming.isoformat()} older than stored {stored.isoformat()}")
        return None
    return incoming


def _auto_renew(t: Transition) -> Optional[bool]:
    if t.cancel_at_period_end is None:
        return None
    return not t.cancel_at_period_end


def _creation_changes(t: Transition) -> Dict[str, Any]:
    if t.kind is TransitionKind.SUBSCRIPTION_DELETED:
        status, auto_renew = CANCELED, False
    elif t.kind is TransitionKind.PAYMENT_FAILED:
        status, auto_renew = EXPIRED, False
    elif t.kind is TransitionKind.SUBSCRIPTION_UPDATED:
        status, auto_renew = map_external_status(t.external_status), _auto_renew(t)
    else:
        status, auto_renew = ACTIVE, _auto_renew(t)

    return {
        'status': status,
        'price': t.price if t.price is not None else Decimal("0.00"),
        'start_date': t.period_start or utcnow(),
        'end_date': t.period_end,
        'auto_renew': True if auto_renew is None else auto_renew,
        'tier_id': clean_tier_id(t.tier_id),
        'stripe_subscription_id': t.stripe_subscription_id,
    }


def _on_invoice_paid(current: SubscriptionSnapshot, t: Transition) -> Decision:
    if current.is_terminal:
        return Decision(Action.NOOP, reason=f"subscription is {current.status}, invoice does not resurrect it")
    return Decision(Action.UPDATE, {
        'status': ACTIVE,
        'price': t.price,
        'end_date': _next_end_date(current, t.period_end),
        'auto_renew': _auto_renew(t),
        'tier_id': clean_tier_id(t.tier_id),
    })


def _on_updated(current: SubscriptionSnapshot, t: Transition) -> Decision:
    if current.is_terminal:
        return Decision(Action.NOOP, reason=f"subscription is {current.status}, update does not resurrect it")
    status = map_external_status(t.external_status) if t.external_status else None
    end_date = _next_end_date(current, t.period_end) if status in (None, ACTIVE) else t.period_end
    return Decision(Action.UPDATE, {
        'status': status,
        'price': t.price,
        'end_date': end_date,
        'auto_renew': _auto_renew(t),
        'tier_id': clean_tier_id(t.tier_id),
    })


def _on_deleted(current: SubscriptionSnapshot, t: Transition) -> Decision:
    return Decision(Action.UPDATE, {'status': CANCELED, 'auto_renew': False})


def _on_payment_failed(current: SubscriptionSnapshot, t: Transition) -> Decision:
    return Decision(Action.UPDATE, {'status': EXPIRED, 'auto_renew': False})


def _tier_clears(t: Transition) -> Tuple[str, ...]:
    return ('tier_id',) if clean_tier_id(t.tier_id) is None else ()


def _on_create(current: SubscriptionSnapshot, t: Transition) -> Decision:
    # The row for this reference was already written, typically by a webhook
    # that raced the command. Converge on it instead of inserting a second.
    if current.is_terminal:
        return Decision(Action.NOOP, reason=f"subscription is {current.status}, already settled by Stripe")
    return Decision(Action.UPDATE, {
        'status': ACTIVE,
        'price': t.price,
        'tier_id': clean_tier_id(t.tier_id),
        'end_date': _next_end_date(current, t.period_end),
        'auto_renew': _auto_renew(t),
    }, clears=_tier_clears(t))


def _price_update(current: SubscriptionSnapshot, t: Transition) -> Decision:
    return Decision(Action.UPDATE, {
        'status': ACTIVE,
        'price': t.price,
        'tier_id': clean_tier_id(t.tier_id),
        'end_date': _next_end_date(current, t.period_end),
        'auto_renew': _auto_renew(t),
        'stripe_subscription_id': t.stripe_subscription_id,
    }, clears=_tier_clears(t))


def _on_change_tier(current: SubscriptionSnapshot, t: Transition) -> Decision:
    if current.status != ACTIVE:
        raise InvalidTransitionError(f"Cannot change the tier of a subscription that is {current.status}, "
                                     f"subscribe again instead")
    return _price_update(current, t)


def _on_resubscribe(current: SubscriptionSnapshot, t: Transition) -> Decision:
    # CANCELED comes back to ACTIVE only here and through resume.
    if current.status == EXPIRED:
        raise InvalidTransitionError("Expired subscriptions cannot be reactivated, subscribe again instead")
    return _price_update(current, t)


def _on_cancel(current: SubscriptionSnapshot, t: Transition) -> Decision:
    if current.status != ACTIVE:
        raise InvalidTransitionError(f"Cannot cancel a subscription that is {current.status}")
    # Status stays ACTIVE until Stripe reports the subscription deleted.
    return Decision(Action.UPDATE, {'auto_renew': False})


def _on_resume(current: SubscriptionSnapshot, t: Transition) -> Decision:
    if current.status == EXPIRED:
        raise InvalidTransitionError("Expired subscriptions cannot be resumed")
    if t.period_end is None:
        raise ConsistencyError("Stripe did not report a period end for the resumed subscription")
    return Decision(Action.UPDATE, {
        'status': ACTIVE,
        'auto_renew': True,
        'end_date': t.period_end,
    })


_HANDLERS: Dict[TransitionKind, Callable[[SubscriptionSnapshot, Transition], Decision]] = {
    TransitionKind.INVOICE_PAID: _on_invoice_paid,
    TransitionKind.SUBSCRIPTION_UPDATED: _on_updated,
    TransitionKind.SUBSCRIPTION_DELETED: _on_deleted,
    TransitionKind.PAYMENT_FAILED: _on_payment_failed,
    TransitionKind.CREATE: _on_create,
    TransitionKind.CHANGE_TIER: _on_change_tier,
    TransitionKind.RESUBSCRIBE: _on_resubscribe,
    TransitionKind.CANCEL: _on_cancel,
    TransitionKind.RESUME: _on_resume,
}


def decide(current: Optional[SubscriptionSnapshot], transition: Transition) -> Decision:
    """
    Compute the next state for ``transition`` given the stored ``current``
    snapshot (None when no local row exists).

    :raises AuthorizationError: a command targets a row that does not exist.
    :raises InvalidTransitionError: a command asks for an illegal transition.
    """
    if current is None:
        if not CREATE_MISSING_POLICY.get((transition.origin, transition.kind), False):
            if transition.origin is Origin.COMMAND:
                raise AuthorizationError("Subscription not found")
            return Decision(Action.NOOP, reason="no local subscription")
        if not (transition.fan_id and transition.creator_id and transition.stripe_subscription_id):
            return Decision(Action.NOOP, reason="cannot create a subscription without fan, creator and Stripe ids")
        if transition.kind is TransitionKind.SUBSCRIPTION_UPDATED \
                and transition.external_status in UNPAID_EXTERNAL_STATUSES:
            # Nothing has been paid yet; the first invoice.paid creates the row.
            return Decision(Action.NOOP, reason=f"subscription is {transition.external_status}, "
                                                f"waiting for its first paid invoice")
        return Decision(Action.CREATE, _creation_changes(transition))

    return _HANDLERS[transition.kind](current, transition)


def _load(db: Session, transition: Transition) -> Optional[Subscription]:
    if transition.subscription_id:
        return subscription_store.get(db, transition.subscription_id, for_update=True)
    if transition.stripe_subscription_id:
        return subscription_store.get_by_external_ref(db, transition.stripe_subscription_id, for_update=True)
    return None


def apply_transition(db: Session, transition: Transition) -> AppliedTransition:
    """
    Load, check, decide and persist one transition inside the caller's
    transaction. Nothing is committed here.
    """
    row = _load(db, transition)
    if transition.origin is Origin.COMMAND and row is not None and row.fan_id != transition.actor_id:
        raise AuthorizationError("Subscription does not belong to the caller")

    decision = decide(SubscriptionSnapshot.from_row(row) if row is not None else None, transition)

    if decision.action is Action.NOOP:
        ref = transition.stripe_subscription_id or transition.subscription_id
        if row is None:
            logging.warning(f"{transition.kind.value} for {ref}: {decision.reason}")
        else:
            logging.info(f"{transition.kind.value} for {ref}: {decision.reason}")
        return AppliedTransition(decision, row)

    if decision.action is Action.CREATE:
        row = subscription_store.upsert_by_external_ref(
            db, transition.stripe_subscription_id, transition.fan_id, transition.creator_id, decision.changes,
        )
    else:
        row = subscription_store.update(db, row, decision.changes, clear=decision.clears)

    logging.info(
        f"{transition.origin.value} {transition.kind.value}: subscription {row.id} "
        f"({row.stripe_subscription_id}) is {row.status}, auto_renew={row.auto_renew}"
    )
    return AppliedTransition(decision, row)
