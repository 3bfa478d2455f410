import enum

from sqlalchemy import JSON, Column, DateTime, Numeric, String

from creator_billing.models.base import Base, new_id, utcnow


class PaymentType(str, enum.Enum):
    SUBSCRIPTION = "SUBSCRIPTION"
    TIP = "TIP"
    PAY_PER_VIEW = "PAY_PER_VIEW"
    PRODUCT = "PRODUCT"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


# The only mutations an append-only payment record allows.
ALLOWED_PAYMENT_TRANSITIONS = {
    (PaymentStatus.PENDING.value, PaymentStatus.SUCCESS.value),
    (PaymentStatus.PENDING.value, PaymentStatus.FAILED.value),
    (PaymentStatus.SUCCESS.value, PaymentStatus.REFUNDED.value),
}


class PaymentRecord(Base):
    __tablename__ = 'payments'

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    creator_id = Column(String(64), nullable=True, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="eur")
    type = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default=PaymentStatus.SUCCESS.value)
    related_id = Column(String(64), nullable=True)
    external_payment_ref = Column(String(255), unique=True, nullable=True)
    # "metadata" is reserved on declarative classes
    payment_metadata = Column("metadata", JSON, key="payment_metadata", nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<PaymentRecord(id={self.id}, type={self.type}, amount={self.amount}, status={self.status})>"
