import enum

from sqlalchemy import Column, DateTime, Numeric, String

from creator_billing.models.base import Base, new_id, utcnow


class PayoutStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Payout(Base):
    __tablename__ = 'payouts'

    id = Column(String(36), primary_key=True, default=new_id)
    creator_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(16), nullable=False, default=PayoutStatus.PENDING.value)
    payout_method = Column(String(32), nullable=True)
    stripe_transfer_id = Column(String(255), unique=True, nullable=True)
    requested_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Payout(id={self.id}, creator={self.creator_id}, amount={self.amount}, status={self.status})>"
