import copy
import hashlib
import hmac
import itertools
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from creator_billing.app import create_app
from creator_billing.config import Settings
from creator_billing.errors import GatewayRequestError
from creator_billing.locks import KeyedLocks
from creator_billing.models import Account, Base, SubscriptionTier
from creator_billing.models.base import make_engine, make_session_factory
from creator_billing.stripe_integration import GatewayOutcome, GatewayResult

WEBHOOK_SECRET = "whsec_test"
PERIOD_START = 1_700_000_000
PERIOD_END = PERIOD_START + 30 * 24 * 3600
NEXT_PERIOD_END = PERIOD_END + 30 * 24 * 3600


def stripe_signature(body, timestamp, secret=WEBHOOK_SECRET):
    """``Stripe-Signature`` header value for ``body``, signed the way Stripe signs deliveries."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    signed_payload = f"{timestamp}.".encode("utf-8") + body
    signature = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


class FakeGateway:
    """
    In-memory stand-in for ``StripeGateway``.

    Subscriptions, prices and transfers are kept in dicts so tests can
    inspect what would have been sent to Stripe. ``fail_with`` maps a method
    name to an exception raised on the next call of that method, and
    ``next_subscription_status`` / ``next_intent`` shape the next created or
    updated subscription.
    """

    def __init__(self):
        self._ids = itertools.count(1)
        self.calls = []
        self.subscriptions = {}
        self.prices = {}
        self.transfers = []
        self.payment_methods = {}
        self.connected_accounts = []
        self.fail_with = {}
        self.next_subscription_status = 'active'
        self.next_intent = {'status': 'succeeded'}
        self.charge_result = None
        self.closed = False

    def _record(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        error = self.fail_with.pop(name, None)
        if error is not None:
            raise error

    def _next(self, prefix):
        return f"{prefix}_{next(self._ids)}"

    def calls_to(self, name):
        return [call for call in self.calls if call[0] == name]

    def close(self):
        self.closed = True

    # Subscriptions

    def _latest_invoice(self):
        intent = copy.deepcopy(self.next_intent)
        return {'id': self._next('in'), 'payment_intent': intent}

    def create_subscription(self, customer_id, price_id, metadata, payment_method_id=None, idempotency_key=None):
        self._record('create_subscription', customer_id, price_id, metadata, payment_method_id=payment_method_id)
        subscription = {
            'id': self._next('sub'),
            'object': 'subscription',
            'status': self.next_subscription_status,
            'customer': customer_id,
            'metadata': dict(metadata),
            'cancel_at_period_end': False,
            'current_period_start': PERIOD_START,
            'current_period_end': PERIOD_END,
            'items': {'data': [{'id': self._next('si'), 'price': self._price_by_id(price_id)}]},
            'latest_invoice': self._latest_invoice(),
        }
        self.subscriptions[subscription['id']] = subscription
        return copy.deepcopy(subscription)

    def retrieve_subscription(self, subscription_id):
        self._record('retrieve_subscription', subscription_id)
        if subscription_id not in self.subscriptions:
            raise GatewayRequestError(f"No such subscription: '{subscription_id}'", code='resource_missing')
        return copy.deepcopy(self.subscriptions[subscription_id])

    def update_subscription(self, subscription_id, update_data, idempotency_key=None):
        self._record('update_subscription', subscription_id, update_data)
        subscription = self.subscriptions[subscription_id]
        for key, value in update_data.items():
            if key == 'items':
                subscription['items'] = {'data': [
                    {'id': item['id'], 'price': self._price_by_id(item['price'])} for item in value
                ]}
            elif key in ('metadata', 'cancel_at_period_end'):
                subscription[key] = value
        subscription['status'] = self.next_subscription_status
        subscription['latest_invoice'] = self._latest_invoice()
        return copy.deepcopy(subscription)

    # Prices

    def _price_by_id(self, price_id):
        for price in self.prices.values():
            if price['id'] == price_id:
                return dict(price)
        return {'id': price_id}

    def find_price(self, lookup_key):
        self._record('find_price', lookup_key)
        return self.prices.get(lookup_key)

    def create_price(self, lookup_key, unit_amount, product_name, product_metadata):
        self._record('create_price', lookup_key, unit_amount, product_name, product_metadata)
        price = {'id': self._next('price'), 'unit_amount': unit_amount, 'lookup_key': lookup_key}
        self.prices[lookup_key] = price
        return price

    # Customers and payments

    def create_customer(self, user_id, email=None):
        self._record('create_customer', user_id, email)
        return {'id': f"cus_{user_id}"}

    def create_payment_intent(self, customer_id, amount_cents, metadata, save_payment_method=False,
                              idempotency_key=None):
        self._record('create_payment_intent', customer_id, amount_cents, metadata,
                     save_payment_method=save_payment_method)
        intent_id = self._next('pi')
        return {'id': intent_id, 'status': 'requires_payment_method', 'client_secret': f"{intent_id}_secret"}

    def charge_payment_method(self, customer_id, payment_method_id, amount_cents, metadata, return_url=None,
                              idempotency_key=None):
        self._record('charge_payment_method', customer_id, payment_method_id, amount_cents, metadata,
                     return_url=return_url)
        if self.charge_result is not None:
            return self.charge_result
        return GatewayResult(GatewayOutcome.SUCCEEDED, {'id': self._next('pi'), 'status': 'succeeded'})

    def create_setup_intent(self, customer_id):
        self._record('create_setup_intent', customer_id)
        return {'id': self._next('seti'), 'client_secret': 'seti_secret'}

    def list_payment_methods(self, customer_id):
        self._record('list_payment_methods', customer_id)
        return [pm for pm in self.payment_methods.values() if pm.get('customer') == customer_id]

    def retrieve_payment_method(self, payment_method_id):
        self._record('retrieve_payment_method', payment_method_id)
        return dict(self.payment_methods[payment_method_id])

    def detach_payment_method(self, payment_method_id):
        self._record('detach_payment_method', payment_method_id)
        method = self.payment_methods[payment_method_id]
        method['customer'] = None
        return dict(method)

    # Payouts

    def create_transfer(self, amount_cents, destination, description, idempotency_key):
        self._record('create_transfer', amount_cents, destination, description, idempotency_key)
        transfer = {'id': self._next('tr'), 'amount': amount_cents, 'destination': destination}
        self.transfers.append(transfer)
        return transfer

    def create_connected_account(self, user_id, email=None):
        self._record('create_connected_account', user_id, email)
        account = {'id': self._next('acct')}
        self.connected_accounts.append(account)
        return account

    def create_onboarding_link(self, account_id, refresh_url, return_url):
        self._record('create_onboarding_link', account_id, refresh_url, return_url)
        return f"https://connect.stripe.test/onboarding/{account_id}"

    def create_login_link(self, account_id):
        self._record('create_login_link', account_id)
        return f"https://connect.stripe.test/login/{account_id}"


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def locks():
    return KeyedLocks()


@pytest.fixture
def settings():
    return Settings(stripe_api_key="sk_test_dummy", stripe_webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def app(settings, gateway, session_factory):
    return create_app(settings, gateway=gateway, session_factory=session_factory)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def creator(db_session):
    account = Account(id="creator_1", display_name="Creator One", subscription_price=Decimal("9.99"))
    db_session.add(account)
    db_session.add(SubscriptionTier(id="tier_gold", creator_id="creator_1", name="Gold", price=Decimal("19.99")))
    db_session.commit()
    return account
