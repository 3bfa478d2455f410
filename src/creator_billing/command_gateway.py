"""
Caller-initiated subscription and payment commands.

Every command follows the same shape: authorize the caller, resolve the
price, call Stripe, classify the three-way outcome and, only on success,
apply the change locally through the state machine. The lock for the
subscription is held across the Stripe call and the local apply so a
webhook for the same subscription cannot interleave. A failed or pending
payment writes nothing locally; the webhook that eventually settles it
does.
"""
import logging
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from creator_billing import subscription_store
from creator_billing.errors import (
    AuthorizationError,
    ConsistencyError,
    GatewayActionRequiredError,
    GatewayDeclinedError,
    GatewayError,
    GatewayRequestError,
    GatewayTimeoutError,
    InvalidTransitionError,
)
from creator_billing.locks import KeyedLocks, subscription_key
from creator_billing.models.account import Account
from creator_billing.models.subscription import Subscription, SubscriptionStatus
from creator_billing.payment_methods import ensure_customer
from creator_billing.price_resolver import PriceResolver, ResolvedPrice, to_minor_units
from creator_billing.stripe_event_router import subscription_period
from creator_billing.stripe_integration import GatewayOutcome, GatewayResult, StripeGateway, classify_subscription
from creator_billing.subscription_state_machine import (
    AppliedTransition,
    Origin,
    Transition,
    TransitionKind,
    apply_transition,
    clean_tier_id,
)

SUCCEEDED = "succeeded"
REQUIRES_ACTION = "requires_action"
DECLINED = "declined"
RETRY = "retry"

# Stripe subscription statuses after which the object can no longer be revived.
ENDED_EXTERNAL_STATUSES = ('canceled', 'incomplete_expired')

_OUTCOME_STATUS = {
    GatewayOutcome.SUCCEEDED: SUCCEEDED,
    GatewayOutcome.REQUIRES_ACTION: REQUIRES_ACTION,
    GatewayOutcome.DECLINED: DECLINED,
}


@dataclass
class CommandResult:
    status: str
    requires_action: bool = False
    action_token: Optional[str] = None
    error_message: Optional[str] = None
    subscription_id: Optional[str] = None
    external_status: Optional[str] = None
    local_status: Optional[str] = None
    external_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == SUCCEEDED

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status,
            "requires_action": self.requires_action,
            "action_token": self.action_token,
            "error_message": self.error_message,
            "subscription_id": self.subscription_id,
            "external_status": self.external_status,
        }

    @classmethod
    def from_gateway(cls, result: GatewayResult, **extra: Any) -> "CommandResult":
        return cls(
            status=_OUTCOME_STATUS[result.outcome],
            requires_action=result.outcome is GatewayOutcome.REQUIRES_ACTION,
            action_token=result.action_token,
            error_message=result.error_message,
            **extra,
        )

    @classmethod
    def from_gateway_error(cls, error: GatewayError) -> "CommandResult":
        if isinstance(error, GatewayActionRequiredError):
            return cls(status=REQUIRES_ACTION, requires_action=True, action_token=error.client_secret,
                       error_message=error.message)
        if isinstance(error, (GatewayDeclinedError, GatewayRequestError)):
            return cls(status=DECLINED, error_message=error.message)
        if isinstance(error, GatewayTimeoutError):
            return cls(status=RETRY, error_message="The payment provider did not answer in time, "
                                                   "check the subscription before trying again.")
        return cls(status=RETRY, error_message=error.message)


def _metadata(fan_id: str, creator_id: str, tier_id: Optional[str]) -> Dict[str, str]:
    return {'fan_id': fan_id, 'creator_id': creator_id, 'tier_id': tier_id or 'null'}


def _intent_metadata(fan_id: str, metadata: Optional[Dict[str, Any]]) -> Dict[str, str]:
    # The payment_intent.succeeded webhook books the payment from these keys.
    intent_metadata = {key: str(value) for key, value in (metadata or {}).items() if value is not None}
    intent_metadata['userId'] = fan_id
    return intent_metadata


class CommandGateway:

    def __init__(self, gateway: StripeGateway, locks: KeyedLocks, price_resolver: Optional[PriceResolver] = None,
                 apply_attempts: int = 3, retry_delay: float = 0.2) -> None:
        self.gateway = gateway
        self.locks = locks
        self.price_resolver = price_resolver or PriceResolver(gateway)
        self.apply_attempts = apply_attempts
        self.retry_delay = retry_delay

    # Commands

    def subscribe(self, db: Session, fan_id: str, creator_id: str, tier_id: Optional[str] = None,
                  payment_method_id: Optional[str] = None) -> CommandResult:
        """
        Subscribe ``fan_id`` to ``creator_id``, at the tier price when
        ``tier_id`` is given and the creator's base price otherwise.

        A still running Stripe subscription for the same pair is switched
        to the new price in place, keeping its billing cycle.
        """
        if fan_id == creator_id:
            raise AuthorizationError("Cannot subscribe to yourself")
        tier_id = clean_tier_id(tier_id)

        with self.locks.hold(subscription_key(None, fan_id, creator_id)):
            try:
                price = self.price_resolver.resolve(db, creator_id, tier_id)
                customer_id = ensure_customer(db, self.gateway, fan_id)
                metadata = _metadata(fan_id, creator_id, tier_id)

                existing = subscription_store.find_open_for_pair(db, fan_id, creator_id)
                if existing is not None and existing.stripe_subscription_id:
                    with self.locks.hold(subscription_key(existing.stripe_subscription_id)):
                        remote = self.gateway.retrieve_subscription(existing.stripe_subscription_id)
                        if remote.get('status') not in ENDED_EXTERNAL_STATUSES:
                            return self._update_in_place(db, fan_id, existing, price, metadata, remote=remote,
                                                         kind=TransitionKind.RESUBSCRIBE,
                                                         payment_method_id=payment_method_id)
                        if existing.status == SubscriptionStatus.ACTIVE.value:
                            self._mark_ended(db, fan_id, existing)

                created = self.gateway.create_subscription(
                    customer_id,
                    price.price_id,
                    metadata,
                    payment_method_id=payment_method_id,
                    idempotency_key=f"subscribe-{fan_id}-{creator_id}-{uuid.uuid4()}",
                )
            except GatewayError as e:
                return self._failed("subscribe", e)

            outcome = classify_subscription(created)
            if not outcome.succeeded:
                logging.info(f"Subscription {created.get('id')} for fan {fan_id} is {outcome.outcome.value}, "
                             f"leaving local state to the webhook")
                return CommandResult.from_gateway(outcome, external_status=created.get('status'),
                                                  external_id=created.get('id'))

            period_start, period_end = subscription_period(created)
            with self.locks.hold(subscription_key(created['id'])):
                applied = self._apply(db, Transition(
                    kind=TransitionKind.CREATE,
                    origin=Origin.COMMAND,
                    stripe_subscription_id=created['id'],
                    actor_id=fan_id,
                    fan_id=fan_id,
                    creator_id=creator_id,
                    tier_id=tier_id,
                    price=price.amount,
                    period_start=period_start,
                    period_end=period_end,
                    cancel_at_period_end=created.get('cancel_at_period_end'),
                ))
            return self._result(outcome, applied, created)

    def change_tier(self, db: Session, fan_id: str, subscription_id: str,
                    new_tier_id: Optional[str]) -> CommandResult:
        """Move an existing subscription to another tier of the same creator, prorated."""
        row = self._owned(db, fan_id, subscription_id)
        tier_id = clean_tier_id(new_tier_id)

        with self.locks.hold(subscription_key(row.stripe_subscription_id)):
            db.refresh(row)
            if row.status != SubscriptionStatus.ACTIVE.value:
                raise InvalidTransitionError(f"Cannot change the tier of a subscription that is {row.status}, "
                                             f"subscribe again instead")
            try:
                price = self.price_resolver.resolve(db, row.creator_id, tier_id)
                remote = self.gateway.retrieve_subscription(row.stripe_subscription_id)
                if remote.get('status') in ENDED_EXTERNAL_STATUSES:
                    raise InvalidTransitionError("The subscription has ended at the payment provider, "
                                                 "subscribe again instead")
                return self._update_in_place(db, fan_id, row, price, _metadata(fan_id, row.creator_id, tier_id),
                                             remote=remote, kind=TransitionKind.CHANGE_TIER)
            except GatewayError as e:
                return self._failed("tier change", e)

    def cancel(self, db: Session, fan_id: str, subscription_id: str) -> CommandResult:
        """Stop renewal at the end of the current period. Access lasts until then."""
        row = self._owned(db, fan_id, subscription_id)

        with self.locks.hold(subscription_key(row.stripe_subscription_id)):
            db.refresh(row)
            if row.status != SubscriptionStatus.ACTIVE.value:
                raise InvalidTransitionError(f"Cannot cancel a subscription that is {row.status}")
            try:
                updated = self.gateway.update_subscription(
                    row.stripe_subscription_id,
                    {'cancel_at_period_end': True},
                    idempotency_key=f"cancel-{row.id}-{uuid.uuid4()}",
                )
            except GatewayError as e:
                return self._failed("cancel", e)

            applied = self._apply(db, Transition(
                kind=TransitionKind.CANCEL,
                origin=Origin.COMMAND,
                subscription_id=row.id,
                stripe_subscription_id=row.stripe_subscription_id,
                actor_id=fan_id,
                cancel_at_period_end=True,
            ))
            return self._result(GatewayResult(GatewayOutcome.SUCCEEDED, updated), applied, updated)

    def resume(self, db: Session, fan_id: str, subscription_id: str) -> CommandResult:
        """Undo a pending cancellation while Stripe still has the subscription running."""
        row = self._owned(db, fan_id, subscription_id)

        with self.locks.hold(subscription_key(row.stripe_subscription_id)):
            db.refresh(row)
            if row.status == SubscriptionStatus.EXPIRED.value:
                raise InvalidTransitionError("Expired subscriptions cannot be resumed")
            try:
                remote = self.gateway.retrieve_subscription(row.stripe_subscription_id)
                if remote.get('status') in ENDED_EXTERNAL_STATUSES:
                    raise InvalidTransitionError("The subscription has ended at the payment provider, "
                                                 "subscribe again instead")
                updated = self.gateway.update_subscription(
                    row.stripe_subscription_id,
                    {'cancel_at_period_end': False},
                    idempotency_key=f"resume-{row.id}-{uuid.uuid4()}",
                )
            except GatewayError as e:
                return self._failed("resume", e)

            _, period_end = subscription_period(updated)
            applied = self._apply(db, Transition(
                kind=TransitionKind.RESUME,
                origin=Origin.COMMAND,
                subscription_id=row.id,
                stripe_subscription_id=row.stripe_subscription_id,
                actor_id=fan_id,
                period_end=period_end,
                cancel_at_period_end=False,
            ))
            return self._result(GatewayResult(GatewayOutcome.SUCCEEDED, updated), applied, updated)

    def charge_saved_method(self, db: Session, fan_id: str, amount: Decimal, payment_method_id: str,
                            metadata: Optional[Dict[str, Any]] = None,
                            return_url: Optional[str] = None) -> CommandResult:
        """
        One-off charge (tip, pay-per-view, product) against a saved method.

        The payment record is written by the ``payment_intent.succeeded``
        webhook, which reads the metadata sent here.
        """
        amount = Decimal(amount)
        if amount <= 0:
            raise ValueError("Amount must be positive")
        account = db.get(Account, fan_id)
        if account is None or not account.stripe_customer_id:
            raise ValueError("No saved payment methods for this user")

        intent_metadata = _intent_metadata(fan_id, metadata)
        try:
            result = self.gateway.charge_payment_method(
                account.stripe_customer_id,
                payment_method_id,
                to_minor_units(amount),
                intent_metadata,
                return_url=return_url,
                idempotency_key=f"charge-{fan_id}-{uuid.uuid4()}",
            )
        except GatewayError as e:
            return self._failed("charge", e)

        intent_id = result.obj.get('id') if result.obj is not None else None
        logging.info(f"Charge of {amount} for user {fan_id} is {result.outcome.value} ({intent_id})")
        return CommandResult.from_gateway(result, external_id=intent_id,
                                          external_status=result.obj.get('status') if result.obj else None)

    def create_payment_intent(self, db: Session, fan_id: str, amount: Decimal,
                              metadata: Optional[Dict[str, Any]] = None,
                              save_payment_method: bool = False) -> CommandResult:
        """
        Start an on-session payment (tip, pay-per-view) that the client
        confirms with the returned ``action_token``, optionally saving the
        card for later off-session charges.

        Like ``charge_saved_method``, nothing is written locally here.
        """
        amount = Decimal(amount)
        if amount <= 0:
            raise ValueError("Amount must be positive")
        try:
            customer_id = ensure_customer(db, self.gateway, fan_id)
            intent = self.gateway.create_payment_intent(
                customer_id,
                to_minor_units(amount),
                _intent_metadata(fan_id, metadata),
                save_payment_method=save_payment_method,
                idempotency_key=f"intent-{fan_id}-{uuid.uuid4()}",
            )
        except GatewayError as e:
            return self._failed("payment intent", e)

        logging.info(f"Payment intent {intent.get('id')} of {amount} created for user {fan_id}")
        return CommandResult(status=REQUIRES_ACTION, requires_action=True, action_token=intent.get('client_secret'),
                             external_id=intent.get('id'), external_status=intent.get('status'))

    # Helpers

    def _owned(self, db: Session, fan_id: str, subscription_id: str) -> Subscription:
        row = subscription_store.get(db, subscription_id)
        if row is None or row.fan_id != fan_id:
            raise AuthorizationError("Subscription not found")
        if not row.stripe_subscription_id:
            raise ConsistencyError(f"Subscription {row.id} has no payment provider reference")
        return row

    def _update_in_place(self, db: Session, fan_id: str, row: Subscription, price: ResolvedPrice,
                         metadata: Dict[str, str], remote: Dict[str, Any], kind: TransitionKind,
                         payment_method_id: Optional[str] = None) -> CommandResult:
        items = (remote.get('items') or {}).get('data') or []
        if not items:
            raise ConsistencyError(f"Stripe subscription {row.stripe_subscription_id} has no items")
        item = items[0]
        # Tiers with the same amount live under different prices; only the amount decides proration.
        amount_changed = (item.get('price') or {}).get('unit_amount') != price.unit_amount

        update_data: Dict[str, Any] = {
            'items': [{'id': item['id'], 'price': price.price_id}],
            'proration_behavior': 'always_invoice' if amount_changed else 'none',
            'payment_behavior': 'allow_incomplete',
            'metadata': metadata,
            'expand': ['latest_invoice.payment_intent'],
        }
        if kind is TransitionKind.RESUBSCRIBE:
            update_data['cancel_at_period_end'] = False
        if payment_method_id:
            update_data['default_payment_method'] = payment_method_id

        updated = self.gateway.update_subscription(
            row.stripe_subscription_id, update_data, idempotency_key=f"update-{row.id}-{uuid.uuid4()}",
        )
        outcome = classify_subscription(updated)
        if not outcome.succeeded:
            logging.info(f"Update of {row.stripe_subscription_id} is {outcome.outcome.value}, "
                         f"leaving local state to the webhook")
            return CommandResult.from_gateway(outcome, subscription_id=row.id, external_status=updated.get('status'),
                                              external_id=row.stripe_subscription_id)

        _, period_end = subscription_period(updated)
        applied = self._apply(db, Transition(
            kind=kind,
            origin=Origin.COMMAND,
            subscription_id=row.id,
            stripe_subscription_id=row.stripe_subscription_id,
            actor_id=fan_id,
            tier_id=price.tier_id,
            price=price.amount,
            period_end=period_end,
            cancel_at_period_end=updated.get('cancel_at_period_end'),
        ))
        return self._result(outcome, applied, updated)

    def _mark_ended(self, db: Session, fan_id: str, row: Subscription) -> None:
        logging.info(f"Stripe subscription {row.stripe_subscription_id} has ended, closing local row {row.id}")
        self._apply(db, Transition(
            kind=TransitionKind.SUBSCRIPTION_DELETED,
            origin=Origin.COMMAND,
            subscription_id=row.id,
            stripe_subscription_id=row.stripe_subscription_id,
            actor_id=fan_id,
        ))

    def _apply(self, db: Session, transition: Transition) -> AppliedTransition:
        """
        Apply and commit a transition that follows an external mutation.
        Transient database errors are retried, since Stripe already changed.

        :raises ConsistencyError: when the write cannot be completed.
        """
        for attempt in range(1, self.apply_attempts + 1):
            try:
                applied = apply_transition(db, transition)
                db.commit()
                return applied
            except OperationalError as e:
                db.rollback()
                logging.warning(f"Attempt {attempt} to apply {transition.kind.value} failed: {e}")
                time.sleep(self.retry_delay)
            except IntegrityError as e:
                db.rollback()
                logging.error(e, exc_info=True)
                raise ConsistencyError(f"Could not store {transition.kind.value}, retry the command") from e
            except Exception:
                db.rollback()
                raise
        logging.error(f"Giving up on {transition.kind.value} for {transition.stripe_subscription_id} "
                      f"after {self.apply_attempts} attempts")
        raise ConsistencyError(f"Could not store {transition.kind.value}, retry the command")

    @staticmethod
    def _result(outcome: GatewayResult, applied: AppliedTransition, remote: Dict[str, Any]) -> CommandResult:
        subscription = applied.subscription
        return CommandResult.from_gateway(
            outcome,
            subscription_id=subscription.id if subscription is not None else None,
            local_status=subscription.status if subscription is not None else None,
            external_status=remote.get('status'),
            external_id=remote.get('id'),
        )

    @staticmethod
    def _failed(command: str, error: GatewayError) -> CommandResult:
        logging.warning(f"{command} failed at the payment provider: {error.message}")
        return CommandResult.from_gateway_error(error)
