from creator_billing.models.base import Base
from creator_billing.models.account import Account, SubscriptionTier
from creator_billing.models.payment import PaymentRecord
from creator_billing.models.payout import Payout
from creator_billing.models.processed_event import ProcessedEvent
from creator_billing.models.subscription import Subscription

__all__ = [
    "Base",
    "Account",
    "SubscriptionTier",
    "PaymentRecord",
    "Payout",
    "ProcessedEvent",
    "Subscription",
]
