from sqlalchemy import Column, DateTime, String

from creator_billing.models.base import Base, utcnow


class ProcessedEvent(Base):
    """Stripe webhook events that have already been applied."""
    __tablename__ = 'processed_events'

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<ProcessedEvent(id={self.event_id}, type={self.event_type})>"
