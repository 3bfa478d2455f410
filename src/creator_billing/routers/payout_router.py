import logging
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from creator_billing.dependencies import get_current_user_id, get_payout_ledger
from creator_billing.errors import (
    AuthorizationError,
    GatewayError,
    GatewayRetryableError,
    InsufficientBalanceError,
    PayoutReconciliationError,
)
from creator_billing.models.base import get_db
from creator_billing.payout_ledger import PayoutLedger

router = APIRouter()


class PayoutRequest(BaseModel):
    amount: Decimal


class OnboardingLinkRequest(BaseModel):
    refresh_url: str
    return_url: str


class BalanceResponse(BaseModel):
    earned: Decimal
    paid_out: Decimal
    available: Decimal


class PayoutResponse(BaseModel):
    success: bool
    payout_id: str
    transfer_id: str
    amount: Decimal


@router.get("/balance", response_model=BalanceResponse)
def get_balance(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db),
                ledger: PayoutLedger = Depends(get_payout_ledger)):
    summary = ledger.summary(db, user_id)
    return BalanceResponse(earned=summary.earned, paid_out=summary.paid_out, available=summary.available)


@router.post("", response_model=PayoutResponse)
def request_payout(request: PayoutRequest, user_id: str = Depends(get_current_user_id),
                   db: Session = Depends(get_db), ledger: PayoutLedger = Depends(get_payout_ledger)):
    try:
        payout = ledger.authorize(db, user_id, request.amount)
    except (InsufficientBalanceError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except AuthorizationError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except GatewayRetryableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    except GatewayError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except PayoutReconciliationError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": str(e), "transfer_id": e.transfer_id, "idempotency_key": e.idempotency_key},
        )
    return PayoutResponse(success=True, payout_id=payout.id, transfer_id=payout.stripe_transfer_id,
                          amount=payout.amount)


@router.post("/onboarding-link")
def onboarding_link(request: OnboardingLinkRequest, user_id: str = Depends(get_current_user_id),
                    db: Session = Depends(get_db), ledger: PayoutLedger = Depends(get_payout_ledger)):
    try:
        url = ledger.onboarding_link(db, user_id, request.refresh_url, request.return_url)
    except GatewayError as e:
        logging.error(e, exc_info=True)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)
    return {"url": url}
