from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String

from creator_billing.models.base import Base, new_id, utcnow


class Account(Base):
    """
    Billing view of a platform user. Fans carry a Stripe customer, creators
    carry a subscription base price and a connected payee account.
    """
    __tablename__ = 'accounts'

    id = Column(String(64), primary_key=True)
    email = Column(String(255), nullable=True)
    display_name = Column(String(255), nullable=True)
    subscription_price = Column(Numeric(10, 2), nullable=True)
    stripe_customer_id = Column(String(255), unique=True, nullable=True)
    stripe_account_id = Column(String(255), unique=True, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, customer={self.stripe_customer_id}, connect={self.stripe_account_id})>"


class SubscriptionTier(Base):
    __tablename__ = 'subscription_tiers'

    id = Column(String(64), primary_key=True, default=new_id)
    creator_id = Column(String(64), ForeignKey('accounts.id'), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)

    def __repr__(self) -> str:
        return f"<SubscriptionTier(id={self.id}, creator={self.creator_id}, price={self.price})>"
