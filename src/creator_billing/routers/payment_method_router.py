import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from creator_billing.dependencies import get_current_user_id, get_payment_methods
from creator_billing.errors import AuthorizationError, GatewayError, GatewayRequestError
from creator_billing.models.base import get_db
from creator_billing.payment_methods import PaymentMethods

router = APIRouter()


class PaymentMethodSummary(BaseModel):
    id: str
    type: str
    label: str
    sub_label: str


class PaymentMethodList(BaseModel):
    methods: List[PaymentMethodSummary]


@router.post("/setup-intent")
def create_setup_intent(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db),
                        methods: PaymentMethods = Depends(get_payment_methods)):
    try:
        client_secret = methods.setup_intent(db, user_id)
    except GatewayError as e:
        logging.error(e, exc_info=True)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)
    return {"client_secret": client_secret}


@router.get("", response_model=PaymentMethodList)
def list_payment_methods(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db),
                         methods: PaymentMethods = Depends(get_payment_methods)):
    try:
        return PaymentMethodList(methods=methods.list_methods(db, user_id))
    except GatewayError as e:
        logging.error(e, exc_info=True)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)


@router.delete("/{payment_method_id}")
def detach_payment_method(payment_method_id: str, user_id: str = Depends(get_current_user_id),
                          db: Session = Depends(get_db), methods: PaymentMethods = Depends(get_payment_methods)):
    try:
        methods.detach(db, user_id, payment_method_id)
    except AuthorizationError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except GatewayRequestError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except GatewayError as e:
        logging.error(e, exc_info=True)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)
    return {"success": True}
