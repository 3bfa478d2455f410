import enum
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests
import stripe

from creator_billing.config import Settings
from creator_billing.errors import (
    GatewayActionRequiredError,
    GatewayDeclinedError,
    GatewayError,
    GatewayRequestError,
    GatewayRetryableError,
    GatewayTimeoutError,
)

ACTION_REQUIRED_INTENT_STATUSES = ('requires_action', 'requires_source_action', 'requires_confirmation')
DECLINED_INTENT_STATUSES = ('requires_payment_method', 'canceled')
SETTLED_SUBSCRIPTION_STATUSES = ('active', 'trialing')


class GatewayOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    DECLINED = "declined"
    REQUIRES_ACTION = "requires_action"


@dataclass
class GatewayResult:
    """Three-way result of a processor call that may move money."""
    outcome: GatewayOutcome
    obj: Any = None
    action_token: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is GatewayOutcome.SUCCEEDED


def _intent_error_message(intent: Dict[str, Any]) -> Optional[str]:
    error = intent.get('last_payment_error') or {}
    return error.get('message')


def classify_payment_intent(intent: Optional[Dict[str, Any]], obj: Any = None) -> GatewayResult:
    """
    Map a payment intent to the three-way outcome.

    ``requires_payment_method`` is a decline wearing an "incomplete" status,
    not an authentication step, so it maps to DECLINED.
    """
    obj = obj if obj is not None else intent
    status = intent.get('status') if intent else None
    if status in ACTION_REQUIRED_INTENT_STATUSES:
        return GatewayResult(GatewayOutcome.REQUIRES_ACTION, obj, action_token=intent.get('client_secret'))
    if status in DECLINED_INTENT_STATUSES:
        return GatewayResult(
            GatewayOutcome.DECLINED,
            obj,
            error_message=_intent_error_message(intent) or "The payment was declined.",
        )
    return GatewayResult(GatewayOutcome.SUCCEEDED, obj)


def classify_subscription(subscription: Dict[str, Any]) -> GatewayResult:
    """
    Outcome of a subscription create or update, judged by the payment intent
    of its latest invoice first and by the subscription status when there is
    nothing to pay.
    """
    status = subscription.get('status')
    if status == 'incomplete_expired':
        return GatewayResult(GatewayOutcome.DECLINED, subscription, error_message="The subscription payment expired.")
    latest_invoice = subscription.get('latest_invoice')
    intent = latest_invoice.get('payment_intent') if isinstance(latest_invoice, dict) else None
    if isinstance(intent, dict) and intent.get('status') not in ('succeeded', 'processing'):
        return classify_payment_intent(intent, obj=subscription)
    if intent is None and status not in SETTLED_SUBSCRIPTION_STATUSES:
        return GatewayResult(
            GatewayOutcome.DECLINED, subscription, error_message="The subscription could not be activated.",
        )
    return GatewayResult(GatewayOutcome.SUCCEEDED, subscription)


def _timed_out(error: "stripe.APIConnectionError") -> bool:
    # The request reached Stripe but no answer came back within the timeout.
    cause = error.__cause__ or error.__context__
    return isinstance(cause, requests.ReadTimeout)


class StripeGateway:
    """
    The payment processor as seen by the engine.

    Every call goes through this instance's own ``stripe.StripeClient``, so
    no global ``stripe`` state is touched. Its HTTP client bounds each
    request by ``timeout`` seconds; a request that times out after it was
    sent has an unknown outcome and raises ``GatewayTimeoutError`` without
    being retried. Connection failures and rate limiting are retried up to
    ``max_retries`` times. Mutating calls are sent with an idempotency key
    so a retry never creates a second object.
    """

    def __init__(self, api_key: str, api_version: Optional[str] = None, timeout: float = 10.0,
                 max_retries: int = 3, retry_delay: float = 1.0, currency: str = "eur",
                 interval: str = "month", connect_country: str = "DE", client: Any = None) -> None:
        self.api_key = api_key
        self.api_version = api_version
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.currency = currency
        self.interval = interval
        self.connect_country = connect_country
        self._http_client = None
        if client is None:
            self._http_client = stripe.RequestsClient(timeout=timeout)
            client = stripe.StripeClient(
                api_key,
                stripe_version=api_version,
                http_client=self._http_client,
                max_network_retries=0,
            )
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeGateway":
        return cls(
            api_key=settings.stripe_api_key,
            api_version=settings.stripe_api_version,
            timeout=settings.gateway_timeout_seconds,
            max_retries=settings.gateway_max_retries,
            retry_delay=settings.gateway_retry_delay,
            currency=settings.currency,
            interval=settings.billing_interval,
            connect_country=settings.connect_country,
        )

    def close(self) -> None:
        if self._http_client is not None:
            self._http_client.close()

    @staticmethod
    def _options(idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        return {'idempotency_key': idempotency_key} if idempotency_key else {}

    def _call(self, description: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn(*args, **kwargs)
            except (stripe.APIConnectionError, stripe.RateLimitError) as e:
                if isinstance(e, stripe.APIConnectionError) and _timed_out(e):
                    logging.error(f"Stripe call '{description}' timed out after {self.timeout}s; outcome unknown")
                    raise GatewayTimeoutError(f"{description} timed out")
                logging.error(f"Error during {description} (attempt {attempt}): {e}", exc_info=True)
                if attempt >= self.max_retries:
                    raise GatewayRetryableError(
                        f"{description} failed after {attempt} attempts, please try again",
                        code=getattr(e, 'code', None),
                    )
                time.sleep(self.retry_delay)
            except stripe.CardError as e:
                raise self._card_error(e)
            except stripe.InvalidRequestError as e:
                logging.error(f"Stripe rejected {description}: {e}", exc_info=True)
                raise GatewayRequestError(e.user_message or str(e), code=getattr(e, 'code', None))
            except stripe.StripeError as e:
                logging.error(f"General Stripe error during {description}: {e}", exc_info=True)
                raise GatewayError(e.user_message or str(e), code=getattr(e, 'code', None))

    @staticmethod
    def _card_error(e: "stripe.CardError") -> GatewayError:
        intent = getattr(getattr(e, 'error', None), 'payment_intent', None)
        if intent and intent.get('status') in ACTION_REQUIRED_INTENT_STATUSES:
            # Off-session charges that need 3-D Secure surface as card errors.
            return GatewayActionRequiredError(
                e.user_message or str(e),
                client_secret=intent.get('client_secret'),
                code=getattr(e, 'code', None),
            )
        return GatewayDeclinedError(e.user_message or str(e), code=getattr(e, 'code', None))

    # Subscriptions

    def create_subscription(self, customer_id: str, price_id: str, metadata: Dict[str, str],
                            payment_method_id: Optional[str] = None,
                            idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            'customer': customer_id,
            'items': [{'price': price_id}],
            'payment_behavior': 'allow_incomplete',
            'payment_settings': {'save_default_payment_method': 'on_subscription'},
            'expand': ['latest_invoice.payment_intent'],
            'metadata': metadata,
        }
        if payment_method_id:
            params['default_payment_method'] = payment_method_id
        return self._call(
            "subscription creation",
            self.client.subscriptions.create,
            params=params,
            options=self._options(idempotency_key or str(uuid.uuid4())),
        )

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        if not subscription_id or not subscription_id.strip():
            raise ValueError("subscription_id cannot be empty")
        return self._call("subscription retrieval", self.client.subscriptions.retrieve, subscription_id)

    def update_subscription(self, subscription_id: str, update_data: Dict[str, Any],
                            idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        return self._call(
            "subscription update",
            self.client.subscriptions.update,
            subscription_id,
            params=update_data,
            options=self._options(idempotency_key or str(uuid.uuid4())),
        )

    # Prices and products

    def find_price(self, lookup_key: str) -> Optional[Dict[str, Any]]:
        prices = self._call(
            "price lookup",
            self.client.prices.list,
            params={'lookup_keys': [lookup_key], 'active': True, 'limit': 1},
        )
        data = prices.get('data') or []
        return data[0] if data else None

    def create_price(self, lookup_key: str, unit_amount: int, product_name: str,
                     product_metadata: Dict[str, str]) -> Dict[str, Any]:
        product = self._call(
            "product creation",
            self.client.products.create,
            params={'name': product_name, 'metadata': product_metadata},
            options=self._options(f"product-{lookup_key}"),
        )
        return self._call(
            "price creation",
            self.client.prices.create,
            params={
                'unit_amount': unit_amount,
                'currency': self.currency,
                'recurring': {'interval': self.interval},
                'product': product['id'],
                'lookup_key': lookup_key,
            },
            options=self._options(f"price-{lookup_key}"),
        )

    # Customers and one-off payments

    def create_customer(self, user_id: str, email: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {'metadata': {'app_user_id': user_id}}
        if email:
            params['email'] = email
        return self._call(
            "customer creation",
            self.client.customers.create,
            params=params,
            options=self._options(f"customer-{user_id}"),
        )

    def create_payment_intent(self, customer_id: str, amount_cents: int, metadata: Dict[str, str],
                              save_payment_method: bool = False,
                              idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        """On-session intent the client confirms itself, e.g. a first tip with a new card."""
        params: Dict[str, Any] = {
            'amount': amount_cents,
            'currency': self.currency,
            'customer': customer_id,
            'automatic_payment_methods': {'enabled': True},
            'metadata': metadata,
        }
        if save_payment_method:
            params['setup_future_usage'] = 'off_session'
        return self._call(
            "payment intent creation",
            self.client.payment_intents.create,
            params=params,
            options=self._options(idempotency_key or str(uuid.uuid4())),
        )

    def charge_payment_method(self, customer_id: str, payment_method_id: str, amount_cents: int,
                              metadata: Dict[str, str], return_url: Optional[str] = None,
                              idempotency_key: Optional[str] = None) -> GatewayResult:
        params: Dict[str, Any] = {
            'amount': amount_cents,
            'currency': self.currency,
            'customer': customer_id,
            'payment_method': payment_method_id,
            'confirm': True,
            'off_session': True,
            'metadata': metadata,
        }
        if return_url:
            params['return_url'] = return_url
        try:
            intent = self._call(
                "payment intent creation",
                self.client.payment_intents.create,
                params=params,
                options=self._options(idempotency_key or str(uuid.uuid4())),
            )
        except GatewayActionRequiredError as e:
            return GatewayResult(GatewayOutcome.REQUIRES_ACTION, action_token=e.client_secret, error_message=e.message)
        except GatewayDeclinedError as e:
            return GatewayResult(GatewayOutcome.DECLINED, error_message=e.message)
        return classify_payment_intent(intent)

    def create_setup_intent(self, customer_id: str) -> Dict[str, Any]:
        return self._call(
            "setup intent creation",
            self.client.setup_intents.create,
            params={'customer': customer_id, 'automatic_payment_methods': {'enabled': True}},
            options=self._options(str(uuid.uuid4())),
        )

    def list_payment_methods(self, customer_id: str) -> List[Dict[str, Any]]:
        methods = self._call(
            "payment method listing",
            self.client.payment_methods.list,
            params={'customer': customer_id, 'limit': 100},
        )
        return list(methods.get('data') or [])

    def retrieve_payment_method(self, payment_method_id: str) -> Dict[str, Any]:
        return self._call("payment method retrieval", self.client.payment_methods.retrieve, payment_method_id)

    def detach_payment_method(self, payment_method_id: str) -> Dict[str, Any]:
        return self._call("payment method detach", self.client.payment_methods.detach, payment_method_id)

    # Payouts

    def create_transfer(self, amount_cents: int, destination: str, description: str,
                        idempotency_key: str) -> Dict[str, Any]:
        return self._call(
            "transfer creation",
            self.client.transfers.create,
            params={
                'amount': amount_cents,
                'currency': self.currency,
                'destination': destination,
                'description': description,
            },
            options=self._options(idempotency_key),
        )

    def create_connected_account(self, user_id: str, email: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            'type': 'express',
            'country': self.connect_country,
            'capabilities': {'card_payments': {'requested': True}, 'transfers': {'requested': True}},
            'metadata': {'app_user_id': user_id},
        }
        if email:
            params['email'] = email
        return self._call(
            "connected account creation",
            self.client.accounts.create,
            params=params,
            options=self._options(f"account-{user_id}"),
        )

    def create_onboarding_link(self, account_id: str, refresh_url: str, return_url: str) -> str:
        link = self._call(
            "account link creation",
            self.client.account_links.create,
            params={
                'account': account_id,
                'refresh_url': refresh_url,
                'return_url': return_url,
                'type': 'account_onboarding',
            },
        )
        return link['url']

    def create_login_link(self, account_id: str) -> str:
        link = self._call("login link creation", self.client.accounts.login_links.create, account_id)
        return link['url']
