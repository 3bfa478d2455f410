import logging
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from creator_billing.command_gateway import DECLINED, RETRY, CommandGateway, CommandResult
from creator_billing.dependencies import get_command_gateway, get_current_user_id
from creator_billing.errors import AuthorizationError, ConsistencyError
from creator_billing.models.base import get_db

router = APIRouter()

_RESULT_STATUS_CODES = {
    DECLINED: status.HTTP_402_PAYMENT_REQUIRED,
    RETRY: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class SubscribeRequest(BaseModel):
    creator_id: str
    tier_id: Optional[str] = None
    payment_method_id: Optional[str] = None


class ChangeTierRequest(BaseModel):
    # None (or "null"/"base") moves the subscription to the creator's base price.
    tier_id: Optional[str] = None


class ChargeRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    payment_method_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    return_url: Optional[str] = None


class PaymentIntentRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    save_payment_method: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CommandResponse(BaseModel):
    success: bool
    status: str
    requires_action: bool = False
    action_token: Optional[str] = None
    error_message: Optional[str] = None
    subscription_id: Optional[str] = None
    external_status: Optional[str] = None


def _run(command: Callable[[], CommandResult]) -> JSONResponse:
    try:
        result = command()
    except AuthorizationError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except ConsistencyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValueError as ve:
        logging.error(ve, exc_info=True)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(ve))
    except Exception as e:
        logging.error(e, exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    body = CommandResponse(**result.as_dict())
    return JSONResponse(status_code=_RESULT_STATUS_CODES.get(result.status, status.HTTP_200_OK),
                        content=body.model_dump())


@router.post("/subscriptions", response_model=CommandResponse)
def subscribe(request: SubscribeRequest, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db),
              commands: CommandGateway = Depends(get_command_gateway)):
    return _run(lambda: commands.subscribe(
        db, user_id, request.creator_id, tier_id=request.tier_id, payment_method_id=request.payment_method_id,
    ))


@router.post("/subscriptions/{subscription_id}/tier", response_model=CommandResponse)
def change_tier(subscription_id: str, request: ChangeTierRequest, user_id: str = Depends(get_current_user_id),
                db: Session = Depends(get_db), commands: CommandGateway = Depends(get_command_gateway)):
    return _run(lambda: commands.change_tier(db, user_id, subscription_id, request.tier_id))


@router.post("/subscriptions/{subscription_id}/cancel", response_model=CommandResponse)
def cancel_subscription(subscription_id: str, user_id: str = Depends(get_current_user_id),
                        db: Session = Depends(get_db), commands: CommandGateway = Depends(get_command_gateway)):
    return _run(lambda: commands.cancel(db, user_id, subscription_id))


@router.post("/subscriptions/{subscription_id}/resume", response_model=CommandResponse)
def resume_subscription(subscription_id: str, user_id: str = Depends(get_current_user_id),
                        db: Session = Depends(get_db), commands: CommandGateway = Depends(get_command_gateway)):
    return _run(lambda: commands.resume(db, user_id, subscription_id))


@router.post("/payments/charge", response_model=CommandResponse)
def charge_saved_method(request: ChargeRequest, user_id: str = Depends(get_current_user_id),
                        db: Session = Depends(get_db), commands: CommandGateway = Depends(get_command_gateway)):
    return _run(lambda: commands.charge_saved_method(
        db, user_id, request.amount, request.payment_method_id, request.metadata, request.return_url,
    ))


@router.post("/payments/intent", response_model=CommandResponse)
def create_payment_intent(request: PaymentIntentRequest, user_id: str = Depends(get_current_user_id),
                          db: Session = Depends(get_db), commands: CommandGateway = Depends(get_command_gateway)):
    return _run(lambda: commands.create_payment_intent(
        db, user_id, request.amount, request.metadata, save_payment_method=request.save_payment_method,
    ))
