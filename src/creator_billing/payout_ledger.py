import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from creator_billing.errors import (
    AuthorizationError,
    GatewayError,
    GatewayTimeoutError,
    InsufficientBalanceError,
    PayoutOutcomeUnknownError,
    PayoutReconciliationError,
)
from creator_billing.locks import KeyedLocks, payout_key
from creator_billing.models.account import Account
from creator_billing.models.base import new_id, utcnow
from creator_billing.models.payment import PaymentRecord, PaymentStatus
from creator_billing.models.payout import Payout, PayoutStatus
from creator_billing.price_resolver import to_minor_units
from creator_billing.stripe_integration import StripeGateway

CENT = Decimal("0.01")
PAYOUT_METHOD = "STRIPE_CONNECT"


@dataclass(frozen=True)
class BalanceSummary:
    earned: Decimal
    paid_out: Decimal

    @property
    def available(self) -> Decimal:
        return self.earned - self.paid_out


class PayoutLedger:
    """
    Creator earnings and payouts through Stripe Connect.

    The available balance is always recomputed from the payment and payout
    tables; nothing caches it. ``authorize`` holds a per-creator lock and a
    row lock on the creator's account for the whole check, transfer and
    insert, so two concurrent requests can never both spend the same money.
    """

    def __init__(self, gateway: StripeGateway, locks: KeyedLocks) -> None:
        self.gateway = gateway
        self.locks = locks

    def summary(self, db: Session, creator_id: str) -> BalanceSummary:
        earned = (
            db.query(func.coalesce(func.sum(PaymentRecord.amount), 0))
            .filter(PaymentRecord.creator_id == creator_id,
                    PaymentRecord.status == PaymentStatus.SUCCESS.value)
            .scalar()
        )
        paid_out = (
            db.query(func.coalesce(func.sum(Payout.amount), 0))
            .filter(Payout.creator_id == creator_id,
                    Payout.status == PayoutStatus.COMPLETED.value)
            .scalar()
        )
        return BalanceSummary(earned=Decimal(earned).quantize(CENT), paid_out=Decimal(paid_out).quantize(CENT))

    def authorize(self, db: Session, creator_id: str, amount: Decimal) -> Payout:
        """
        Transfer ``amount`` to the creator's connected account and record it.

        :raises ValueError: if the amount is not positive.
        :raises InsufficientBalanceError: if the amount exceeds the balance.
        :raises AuthorizationError: if the creator has no payee account.
        :raises PayoutReconciliationError: if the transfer succeeded but the
            payout record could not be stored.
        :raises PayoutOutcomeUnknownError: if the transfer call timed out.
        """
        amount = Decimal(amount).quantize(CENT)
        if amount <= 0:
            raise ValueError("Payout amount must be positive")

        with self.locks.hold(payout_key(creator_id)):
            try:
                account = db.get(Account, creator_id, with_for_update=True, populate_existing=True)
                balance = self.summary(db, creator_id)
                if amount > balance.available:
                    raise InsufficientBalanceError(requested=amount, available=balance.available)
                if account is None or not account.stripe_account_id:
                    raise AuthorizationError("No payout account connected")
            except Exception:
                db.rollback()
                raise

            payout_id = new_id()
            idempotency_key = f"payout-{payout_id}"
            try:
                transfer = self.gateway.create_transfer(
                    to_minor_units(amount),
                    account.stripe_account_id,
                    description=f"Creator payout {payout_id}",
                    idempotency_key=idempotency_key,
                )
            except GatewayTimeoutError as e:
                db.rollback()
                logging.critical(
                    f"Transfer of {amount} to creator {creator_id} timed out, outcome unknown "
                    f"(idempotency key {idempotency_key})"
                )
                raise PayoutOutcomeUnknownError(creator_id, idempotency_key, amount) from e
            except GatewayError:
                db.rollback()
                raise

            try:
                payout = Payout(
                    id=payout_id,
                    creator_id=creator_id,
                    amount=amount,
                    status=PayoutStatus.COMPLETED.value,
                    payout_method=PAYOUT_METHOD,
                    stripe_transfer_id=transfer['id'],
                    completed_at=utcnow(),
                )
                db.add(payout)
                db.commit()
            except Exception as e:
                db.rollback()
                logging.critical(
                    f"Transfer {transfer['id']} of {amount} to creator {creator_id} succeeded but the payout "
                    f"could not be recorded: {e}",
                    exc_info=True,
                )
                raise PayoutReconciliationError(creator_id, transfer['id'], amount) from e

        logging.info(f"Payout {payout.id} of {amount} to creator {creator_id} completed ({transfer['id']})")
        return payout

    def onboarding_link(self, db: Session, creator_id: str, refresh_url: str, return_url: str) -> str:
        """
        Dashboard login link for a creator with a connected account, or a
        new express account plus its onboarding link otherwise.
        """
        account = db.get(Account, creator_id)
        if account is not None and account.stripe_account_id:
            return self.gateway.create_login_link(account.stripe_account_id)

        if account is None:
            account = Account(id=creator_id)
        connected = self.gateway.create_connected_account(creator_id, account.email)
        account.stripe_account_id = connected['id']
        db.add(account)
        db.commit()
        logging.info(f"Created connected account {connected['id']} for creator {creator_id}")
        return self.gateway.create_onboarding_link(connected['id'], refresh_url, return_url)
