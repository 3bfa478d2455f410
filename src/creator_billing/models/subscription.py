import enum

from sqlalchemy import Boolean, Column, DateTime, Index, Numeric, String, text

from creator_billing.models.base import Base, new_id, utcnow


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"


TERMINAL_STATUSES = (SubscriptionStatus.CANCELED.value, SubscriptionStatus.EXPIRED.value)


class Subscription(Base):
    """
    One fan-to-creator recurring relationship, mirrored from a Stripe subscription.
    """
    __tablename__ = 'subscriptions'
    __table_args__ = (
        Index(
            'uq_subscriptions_open_pair',
            'fan_id',
            'creator_id',
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    fan_id = Column(String(64), nullable=False, index=True)
    creator_id = Column(String(64), nullable=False, index=True)
    tier_id = Column(String(64), nullable=True)
    status = Column(String(16), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    price = Column(Numeric(10, 2), nullable=False)
    start_date = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    end_date = Column(DateTime(timezone=True), nullable=True)
    auto_renew = Column(Boolean, nullable=False, default=True)
    stripe_subscription_id = Column(String(255), unique=True, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, stripe_id={self.stripe_subscription_id}, "
            f"status={self.status}, price={self.price})>"
        )
