import logging
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from creator_billing.errors import ConsistencyError
from creator_billing.models.base import dialect_insert, new_id, utcnow
from creator_billing.models.subscription import Subscription, SubscriptionStatus

# Columns a state transition is allowed to write.
MUTABLE_COLUMNS = frozenset({
    'status', 'price', 'start_date', 'end_date', 'auto_renew', 'tier_id', 'stripe_subscription_id',
})


def get(db: Session, subscription_id: str, for_update: bool = False) -> Optional[Subscription]:
    query = db.query(Subscription).filter(Subscription.id == subscription_id)
    if for_update:
        query = query.with_for_update().populate_existing()
    return query.first()


def get_by_external_ref(db: Session, stripe_subscription_id: str, for_update: bool = False) -> Optional[Subscription]:
    query = db.query(Subscription).filter(Subscription.stripe_subscription_id == stripe_subscription_id)
    if for_update:
        query = query.with_for_update().populate_existing()
    return query.first()


def find_open_for_pair(db: Session, fan_id: str, creator_id: str, for_update: bool = False) -> Optional[Subscription]:
    """Latest subscription between fan and creator that has not expired."""
    query = (
        db.query(Subscription)
        .filter(
            Subscription.fan_id == fan_id,
            Subscription.creator_id == creator_id,
            Subscription.status != SubscriptionStatus.EXPIRED.value,
        )
        .order_by(Subscription.created_at.desc())
    )
    if for_update:
        query = query.with_for_update()
    return query.first()


def _present(changes: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(changes) - MUTABLE_COLUMNS
    if unknown:
        raise ValueError(f"Cannot write subscription columns: {sorted(unknown)}")
    # A value absent from the payload never clobbers a stored one.
    return {key: value for key, value in changes.items() if value is not None}


def update(db: Session, subscription: Subscription, changes: Dict[str, Any],
           clear: Iterable[str] = ()) -> Subscription:
    """
    Write only the columns present (and not None) in ``changes``, and reset
    the columns named in ``clear`` to NULL.

    :raises ConsistencyError: if the change would replace an already set
        Stripe subscription reference.
    """
    values = _present(changes)
    new_ref = values.get('stripe_subscription_id')
    if new_ref and subscription.stripe_subscription_id and new_ref != subscription.stripe_subscription_id:
        raise ConsistencyError(
            f"Subscription {subscription.id} is bound to {subscription.stripe_subscription_id}, "
            f"refusing to rebind it to {new_ref}"
        )
    for key, value in values.items():
        setattr(subscription, key, value)
    for key in _present(dict.fromkeys(clear, False)):
        if key not in values:
            setattr(subscription, key, None)
    subscription.updated_at = utcnow()
    db.add(subscription)
    db.flush()
    return subscription


def upsert_by_external_ref(db: Session, stripe_subscription_id: str, fan_id: str, creator_id: str,
                           changes: Dict[str, Any]) -> Subscription:
    """
    Insert a row for ``stripe_subscription_id`` or, if one appeared in the
    meantime, update it. Conflicts are resolved on the unique Stripe
    reference so concurrent writers converge on a single row.
    """
    values = _present(changes)
    values.pop('stripe_subscription_id', None)
    now = utcnow()

    insert_stmt = dialect_insert(db)(Subscription.__table__).values(
        id=new_id(),
        fan_id=fan_id,
        creator_id=creator_id,
        stripe_subscription_id=stripe_subscription_id,
        created_at=now,
        updated_at=now,
        **values,
    )
    statement = insert_stmt.on_conflict_do_update(
        index_elements=['stripe_subscription_id'],
        set_={**values, 'updated_at': now},
    )
    db.execute(statement)
    subscription = (
        db.query(Subscription)
        .populate_existing()
        .filter(Subscription.stripe_subscription_id == stripe_subscription_id)
        .one()
    )
    logging.info(f"Stored subscription {subscription.id} ({stripe_subscription_id}) for fan {fan_id} -> creator {creator_id}")
    return subscription
