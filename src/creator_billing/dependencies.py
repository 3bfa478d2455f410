from typing import Optional

from fastapi import Header, HTTPException, Request, status

from creator_billing.command_gateway import CommandGateway
from creator_billing.locks import KeyedLocks
from creator_billing.payment_methods import PaymentMethods
from creator_billing.payout_ledger import PayoutLedger
from creator_billing.stripe_integration import StripeGateway
from creator_billing.webhook_receiver import WebhookReceiver


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity, set by the authenticating proxy in front of the service."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return x_user_id


def get_gateway(request: Request) -> StripeGateway:
    return request.app.state.gateway


def get_locks(request: Request) -> KeyedLocks:
    return request.app.state.locks


def get_webhook_receiver(request: Request) -> WebhookReceiver:
    return request.app.state.webhook_receiver


def get_command_gateway(request: Request) -> CommandGateway:
    return request.app.state.command_gateway


def get_payout_ledger(request: Request) -> PayoutLedger:
    return request.app.state.payout_ledger


def get_payment_methods(request: Request) -> PaymentMethods:
    return request.app.state.payment_methods
