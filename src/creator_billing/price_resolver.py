import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy.orm import Session

from creator_billing.errors import AuthorizationError, GatewayRequestError
from creator_billing.models.account import Account, SubscriptionTier
from creator_billing.stripe_integration import StripeGateway


@dataclass(frozen=True)
class ResolvedPrice:
    amount: Decimal
    price_id: str
    lookup_key: str
    tier_id: Optional[str] = None

    @property
    def unit_amount(self) -> int:
        return to_minor_units(self.amount)


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def lookup_key(scope_id: str, amount: Decimal) -> str:
    """Deterministic Stripe lookup key for a scope and amount, e.g. ``tier_42_999``."""
    return f"{scope_id}_{to_minor_units(amount)}"


class PriceResolver:
    """
    Maps a (creator, tier) pair to its canonical amount and Stripe price.

    The Stripe price is found by its lookup key and created on first use, so
    repeated resolution is idempotent without any local cache.
    """

    def __init__(self, gateway: StripeGateway) -> None:
        self.gateway = gateway

    def resolve(self, db: Session, creator_id: str, tier_id: Optional[str] = None) -> ResolvedPrice:
        if tier_id:
            tier = db.get(SubscriptionTier, tier_id)
            if tier is None or tier.creator_id != creator_id:
                raise AuthorizationError(f"Tier {tier_id} not found for creator {creator_id}")
            amount = Decimal(tier.price)
            scope_id = f"tier_{tier_id}"
            product_name = f"{tier.name} - Subscription"
        else:
            creator = db.get(Account, creator_id)
            if creator is None or creator.subscription_price is None:
                raise AuthorizationError(f"Creator {creator_id} not found or has no subscription price")
            amount = Decimal(creator.subscription_price)
            scope_id = f"creator_{creator_id}"
            product_name = f"Subscription to {creator.display_name or creator_id}"

        if amount <= 0:
            raise ValueError(f"Subscription price for {scope_id} must be positive")

        key = lookup_key(scope_id, amount)
        price = self.gateway.find_price(key)
        if price is None:
            price = self._create(key, amount, product_name, creator_id, tier_id)

        return ResolvedPrice(amount=amount.quantize(Decimal("0.01")), price_id=price['id'], lookup_key=key,
                             tier_id=tier_id)

    def _create(self, key: str, amount: Decimal, product_name: str, creator_id: str, tier_id: Optional[str]):
        metadata = {'creator_id': creator_id, 'tier_id': tier_id or 'base'}
        try:
            price = self.gateway.create_price(key, to_minor_units(amount), product_name, metadata)
        except GatewayRequestError:
            # Another worker created the same lookup key first.
            price = self.gateway.find_price(key)
            if price is None:
                raise
        logging.info(f"Resolved Stripe price {price['id']} for lookup key {key}")
        return price
