import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from fastapi.concurrency import run_in_threadpool

from creator_billing.dependencies import get_gateway, get_locks, get_webhook_receiver
from creator_billing.errors import WebhookVerificationError
from creator_billing.locks import KeyedLocks
from creator_billing.models.base import get_db
from creator_billing.stripe_event_processor import process_event
from creator_billing.stripe_integration import StripeGateway
from creator_billing.webhook_receiver import WebhookReceiver

router = APIRouter()


@router.post("/webhook", status_code=200)
async def process_webhook(request: Request, db: Session = Depends(get_db),
                          receiver: WebhookReceiver = Depends(get_webhook_receiver),
                          locks: KeyedLocks = Depends(get_locks),
                          gateway: StripeGateway = Depends(get_gateway)):
    payload = await request.body()
    try:
        verified = receiver.verify(payload, request.headers.get("Stripe-Signature"))
    except WebhookVerificationError as e:
        logging.error(f"Rejected webhook: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        # Locks and Stripe calls block, keep them off the event loop.
        result = await run_in_threadpool(process_event, verified.payload, db, locks, gateway)
    except Exception as e:
        logging.error(e, exc_info=True)
        # A 5xx makes Stripe deliver the event again later.
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Error processing webhook event")

    return {"success": True, "received": True, **result.as_dict()}
