import logging
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from creator_billing.errors import AuthorizationError
from creator_billing.models.account import Account
from creator_billing.stripe_integration import StripeGateway


def _ref(value: Any) -> Any:
    return value.get('id') if isinstance(value, dict) else value


def ensure_customer(db: Session, gateway: StripeGateway, fan_id: str) -> str:
    """
    Stripe customer id of ``fan_id``, creating the customer (and the local
    account row) on first use. Commits when anything was written.
    """
    account = db.get(Account, fan_id, with_for_update=True)
    if account is not None and account.stripe_customer_id:
        return account.stripe_customer_id

    if account is None:
        account = Account(id=fan_id)
    customer = gateway.create_customer(fan_id, account.email)
    account.stripe_customer_id = customer['id']
    db.add(account)
    db.commit()
    logging.info(f"Created Stripe customer {customer['id']} for user {fan_id}")
    return account.stripe_customer_id


def _title(value: str) -> str:
    return value.replace('_', ' ').title()


def describe_payment_method(method: Dict[str, Any]) -> Dict[str, str]:
    """Display-ready summary of a Stripe payment method."""
    method_type = method.get('type') or 'unknown'
    details = method.get(method_type) or {}
    if method_type == 'card':
        wallet = details.get('wallet')
        if wallet:
            label = f"{_title(wallet.get('type', 'wallet'))} •••• {details.get('last4')}"
        else:
            label = f"•••• {details.get('last4')}"
        sub_label = f"Exp: {details.get('exp_month')}/{details.get('exp_year')}"
    elif method_type == 'paypal':
        label = details.get('payer_email') or 'PayPal'
        sub_label = 'Linked account'
    elif method_type == 'sepa_debit':
        label = f"•••• {details.get('last4')}"
        sub_label = f"IBAN ({details.get('country') or 'EU'})"
    else:
        label, sub_label = _title(method_type), ''
    return {'id': method['id'], 'type': method_type, 'label': label, 'sub_label': sub_label}


class PaymentMethods:
    """Saved payment methods of a fan, stored at Stripe on the fan's customer."""

    def __init__(self, gateway: StripeGateway) -> None:
        self.gateway = gateway

    def setup_intent(self, db: Session, fan_id: str) -> str:
        customer_id = ensure_customer(db, self.gateway, fan_id)
        intent = self.gateway.create_setup_intent(customer_id)
        return intent['client_secret']

    def list_methods(self, db: Session, fan_id: str) -> List[Dict[str, str]]:
        account = db.get(Account, fan_id)
        if account is None or not account.stripe_customer_id:
            return []
        seen = set()
        methods = []
        for method in self.gateway.list_payment_methods(account.stripe_customer_id):
            if method['id'] in seen:
                continue
            seen.add(method['id'])
            methods.append(describe_payment_method(method))
        return methods

    def detach(self, db: Session, fan_id: str, payment_method_id: str) -> None:
        """
        :raises AuthorizationError: if the method is not attached to the
            fan's customer.
        """
        account = db.get(Account, fan_id)
        method = self.gateway.retrieve_payment_method(payment_method_id)
        if account is None or not account.stripe_customer_id or _ref(method.get('customer')) != account.stripe_customer_id:
            raise AuthorizationError("Payment method does not belong to the caller")
        self.gateway.detach_payment_method(payment_method_id)
        logging.info(f"Detached payment method {payment_method_id} from customer {account.stripe_customer_id}")
