import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from sqlalchemy.orm import sessionmaker

from creator_billing.command_gateway import CommandGateway
from creator_billing.config import Settings
from creator_billing.locks import KeyedLocks
from creator_billing.models import Base
from creator_billing.models.base import make_engine, make_session_factory
from creator_billing.payment_methods import PaymentMethods
from creator_billing.payout_ledger import PayoutLedger
from creator_billing.price_resolver import PriceResolver
from creator_billing.routers import payment_method_router, payout_router, stripe_router, subscription_router
from creator_billing.stripe_integration import StripeGateway
from creator_billing.webhook_receiver import WebhookReceiver


def create_app(settings: Optional[Settings] = None, gateway: Optional[StripeGateway] = None,
               session_factory: Optional[sessionmaker] = None) -> FastAPI:
    """
    Build the billing service. Run with ``uvicorn --factory creator_billing.app:create_app``.

    :param settings: Defaults to ``Settings.from_env()``.
    :param gateway: Defaults to a ``StripeGateway`` built from ``settings``.
    :param session_factory: Defaults to one bound to ``settings.database_url``.
    """
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if session_factory is None:
        engine = make_engine(settings.database_url)
        Base.metadata.create_all(engine)
        session_factory = make_session_factory(engine)
    gateway = gateway or StripeGateway.from_settings(settings)
    # One registry for webhooks and commands so they serialize on the same keys.
    locks = KeyedLocks()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        gateway.close()

    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.gateway = gateway
    app.state.locks = locks
    app.state.webhook_receiver = WebhookReceiver(settings.stripe_webhook_secret, settings.webhook_tolerance_seconds)
    app.state.command_gateway = CommandGateway(gateway, locks, PriceResolver(gateway))
    app.state.payout_ledger = PayoutLedger(gateway, locks)
    app.state.payment_methods = PaymentMethods(gateway)

    app.include_router(stripe_router.router, prefix="/api/stripe")
    app.include_router(subscription_router.router, prefix="/api")
    app.include_router(payout_router.router, prefix="/api/payouts")
    app.include_router(payment_method_router.router, prefix="/api/payment-methods")

    return app
