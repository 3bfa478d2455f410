import datetime
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from creator_billing import command_gateway as command_gateway_module
from creator_billing import stripe_event_processor
from creator_billing.command_gateway import CommandGateway
from creator_billing.errors import (
    AuthorizationError,
    ConsistencyError,
    GatewayActionRequiredError,
    GatewayDeclinedError,
    GatewayTimeoutError,
    InvalidTransitionError,
)
from creator_billing.models import Account, PaymentRecord, Subscription, SubscriptionTier
from creator_billing.stripe_integration import GatewayOutcome, GatewayResult
from conftest import NEXT_PERIOD_END, PERIOD_END

FAN = "fan_1"
CREATOR = "creator_1"


def utc(timestamp):
    return datetime.datetime.fromtimestamp(timestamp, tz=datetime.timezone.utc)


def stored_end(row):
    value = row.end_date
    return value if value.tzinfo else value.replace(tzinfo=datetime.timezone.utc)


@pytest.fixture
def commands(gateway, locks):
    return CommandGateway(gateway, locks, retry_delay=0)


def subscriptions(db):
    return db.query(Subscription).order_by(Subscription.created_at).all()


def test_subscribe_creates_active_subscription(db_session, creator, gateway, commands):
    result = commands.subscribe(db_session, FAN, CREATOR)

    assert result.success
    assert result.status == "succeeded"
    row = db_session.get(Subscription, result.subscription_id)
    assert row.status == "ACTIVE"
    assert row.price == Decimal("9.99")
    assert row.auto_renew is True
    assert row.tier_id is None
    assert stored_end(row) == utc(PERIOD_END)
    assert row.stripe_subscription_id == result.external_id

    (_, args, _), = gateway.calls_to('create_subscription')
    customer_id, price_id, metadata = args
    assert customer_id == "cus_fan_1"
    assert gateway.prices["creator_creator_1_999"]["id"] == price_id
    assert metadata == {'fan_id': FAN, 'creator_id': CREATOR, 'tier_id': 'null'}
    assert db_session.get(Account, FAN).stripe_customer_id == "cus_fan_1"


def test_subscribe_to_tier_uses_tier_price(db_session, creator, gateway, commands):
    result = commands.subscribe(db_session, FAN, CREATOR, tier_id="tier_gold")

    row = db_session.get(Subscription, result.subscription_id)
    assert row.price == Decimal("19.99")
    assert row.tier_id == "tier_gold"
    assert "tier_tier_gold_1999" in gateway.prices


def test_subscribe_to_yourself_is_rejected(db_session, creator, gateway, commands):
    with pytest.raises(AuthorizationError):
        commands.subscribe(db_session, CREATOR, CREATOR)
    assert gateway.calls == []


def test_subscribe_to_foreign_tier_is_rejected(db_session, creator, gateway, commands):
    db_session.add(Account(id="creator_2", subscription_price=Decimal("5.00")))
    db_session.commit()

    with pytest.raises(AuthorizationError):
        commands.subscribe(db_session, FAN, "creator_2", tier_id="tier_gold")
    assert gateway.calls_to('create_subscription') == []


def test_declined_subscription_writes_nothing(db_session, creator, gateway, commands):
    gateway.next_subscription_status = 'incomplete'
    gateway.next_intent = {
        'status': 'requires_payment_method',
        'last_payment_error': {'message': 'Your card was declined.'},
    }

    result = commands.subscribe(db_session, FAN, CREATOR)

    assert result.status == "declined"
    assert result.success is False
    assert result.error_message == "Your card was declined."
    assert result.subscription_id is None
    assert subscriptions(db_session) == []


def test_subscription_requiring_authentication_returns_action_token(db_session, creator, gateway, commands):
    gateway.next_subscription_status = 'incomplete'
    gateway.next_intent = {'status': 'requires_action', 'client_secret': 'pi_secret_123'}

    result = commands.subscribe(db_session, FAN, CREATOR)

    assert result.status == "requires_action"
    assert result.requires_action is True
    assert result.action_token == 'pi_secret_123'
    assert subscriptions(db_session) == []


def test_gateway_timeout_asks_caller_to_retry(db_session, creator, gateway, commands):
    gateway.fail_with['create_subscription'] = GatewayTimeoutError("subscription creation timed out")

    result = commands.subscribe(db_session, FAN, CREATOR)

    assert result.status == "retry"
    assert result.success is False
    assert subscriptions(db_session) == []


def test_card_error_maps_to_declined(db_session, creator, gateway, commands):
    gateway.fail_with['create_subscription'] = GatewayDeclinedError("Insufficient funds.", code="card_declined")

    result = commands.subscribe(db_session, FAN, CREATOR)

    assert result.status == "declined"
    assert result.error_message == "Insufficient funds."


def test_upgrade_prorates_and_keeps_billing_cycle(db_session, creator, gateway, commands):
    subscribed = commands.subscribe(db_session, FAN, CREATOR)

    result = commands.change_tier(db_session, FAN, subscribed.subscription_id, "tier_gold")

    assert result.success
    row = db_session.get(Subscription, subscribed.subscription_id)
    assert row.price == Decimal("19.99")
    assert row.tier_id == "tier_gold"
    assert stored_end(row) == utc(PERIOD_END)
    (_, (ref, update_data), _), = gateway.calls_to('update_subscription')
    assert ref == row.stripe_subscription_id
    assert update_data['proration_behavior'] == 'always_invoice'
    assert update_data['items'][0]['price'] == gateway.prices["tier_tier_gold_1999"]["id"]
    assert 'cancel_at_period_end' not in update_data


def test_downgrade_to_base_price_clears_tier(db_session, creator, gateway, commands):
    subscribed = commands.subscribe(db_session, FAN, CREATOR, tier_id="tier_gold")

    result = commands.change_tier(db_session, FAN, subscribed.subscription_id, "null")

    assert result.success
    row = db_session.get(Subscription, subscribed.subscription_id)
    assert row.tier_id is None
    assert row.price == Decimal("9.99")


def test_upgrade_needing_authentication_leaves_row_untouched(db_session, creator, gateway, commands):
    subscribed = commands.subscribe(db_session, FAN, CREATOR)
    gateway.next_intent = {'status': 'requires_action', 'client_secret': 'pi_secret_upgrade'}

    result = commands.change_tier(db_session, FAN, subscribed.subscription_id, "tier_gold")

    assert result.requires_action is True
    assert result.action_token == 'pi_secret_upgrade'
    row = db_session.get(Subscription, subscribed.subscription_id)
    assert row.price == Decimal("9.99")
    assert row.tier_id is None


def test_tier_change_without_amount_difference_is_not_prorated(db_session, creator, gateway, commands):
    db_session.add(SubscriptionTier(id="tier_silver", creator_id=CREATOR, name="Silver", price=Decimal("9.99")))
    db_session.commit()
    subscribed = commands.subscribe(db_session, FAN, CREATOR)

    result = commands.change_tier(db_session, FAN, subscribed.subscription_id, "tier_silver")

    assert result.success
    (_, (_, update_data), _), = gateway.calls_to('update_subscription')
    assert update_data['proration_behavior'] == 'none'
    assert update_data['items'][0]['price'] == gateway.prices["tier_tier_silver_999"]["id"]
    row = db_session.get(Subscription, subscribed.subscription_id)
    assert row.tier_id == "tier_silver"
    assert row.price == Decimal("9.99")


def test_change_tier_of_canceled_subscription_is_rejected(db_session, creator, gateway, commands):
    subscribed = commands.subscribe(db_session, FAN, CREATOR)
    row = db_session.get(Subscription, subscribed.subscription_id)
    row.status = "CANCELED"
    db_session.commit()

    with pytest.raises(InvalidTransitionError):
        commands.change_tier(db_session, FAN, subscribed.subscription_id, "tier_gold")
    assert gateway.calls_to('update_subscription') == []
    db_session.refresh(row)
    assert row.status == "CANCELED"


def test_change_tier_of_foreign_subscription_is_rejected(db_session, creator, gateway, commands):
    subscribed = commands.subscribe(db_session, FAN, CREATOR)
    calls_before = len(gateway.calls)

    with pytest.raises(AuthorizationError):
        commands.change_tier(db_session, "intruder", subscribed.subscription_id, "tier_gold")
    assert len(gateway.calls) == calls_before


def test_cancel_keeps_access_until_subscription_deleted(db_session, creator, gateway, commands, locks):
    subscribed = commands.subscribe(db_session, FAN, CREATOR)

    result = commands.cancel(db_session, FAN, subscribed.subscription_id)

    assert result.success
    row = db_session.get(Subscription, subscribed.subscription_id)
    assert row.status == "ACTIVE"
    assert row.auto_renew is False
    (_, (_, update_data), _), = gateway.calls_to('update_subscription')
    assert update_data == {'cancel_at_period_end': True}

    stripe_event_processor.process_event({
        "id": "evt_deleted",
        "type": "customer.subscription.deleted",
        "created": PERIOD_END,
        "data": {"object": {"id": row.stripe_subscription_id, "status": "canceled",
                            "metadata": {"fan_id": FAN, "creator_id": CREATOR, "tier_id": "null"}}},
    }, db_session, locks)

    db_session.refresh(row)
    assert row.status == "CANCELED"
    assert row.auto_renew is False


def test_cancel_twice_is_an_invalid_transition(db_session, creator, commands, locks):
    subscribed = commands.subscribe(db_session, FAN, CREATOR)
    row = db_session.get(Subscription, subscribed.subscription_id)
    row.status = "CANCELED"
    db_session.commit()

    with pytest.raises(InvalidTransitionError):
        commands.cancel(db_session, FAN, subscribed.subscription_id)


def test_cancel_checks_status_committed_by_another_session(db_session, session_factory, creator, gateway, commands):
    subscribed = commands.subscribe(db_session, FAN, CREATOR)
    assert db_session.get(Subscription, subscribed.subscription_id).status == "ACTIVE"
    other = session_factory()
    try:
        other.get(Subscription, subscribed.subscription_id).status = "CANCELED"
        other.commit()
    finally:
        other.close()

    with pytest.raises(InvalidTransitionError):
        commands.cancel(db_session, FAN, subscribed.subscription_id)
    assert gateway.calls_to('update_subscription') == []


def test_resume_takes_period_end_from_processor(db_session, creator, gateway, commands):
    subscribed = commands.subscribe(db_session, FAN, CREATOR)
    commands.cancel(db_session, FAN, subscribed.subscription_id)
    row = db_session.get(Subscription, subscribed.subscription_id)
    gateway.subscriptions[row.stripe_subscription_id]['current_period_end'] = NEXT_PERIOD_END

    result = commands.resume(db_session, FAN, subscribed.subscription_id)

    assert result.success
    db_session.refresh(row)
    assert row.status == "ACTIVE"
    assert row.auto_renew is True
    assert stored_end(row) == utc(NEXT_PERIOD_END)


def test_resume_after_processor_cancellation_is_rejected(db_session, creator, gateway, commands):
    subscribed = commands.subscribe(db_session, FAN, CREATOR)
    row = db_session.get(Subscription, subscribed.subscription_id)
    gateway.subscriptions[row.stripe_subscription_id]['status'] = 'canceled'

    with pytest.raises(InvalidTransitionError):
        commands.resume(db_session, FAN, subscribed.subscription_id)
    assert gateway.calls_to('update_subscription') == []


def test_resubscribe_reactivates_running_subscription_in_place(db_session, creator, gateway, commands):
    subscribed = commands.subscribe(db_session, FAN, CREATOR)
    row = db_session.get(Subscription, subscribed.subscription_id)
    row.status, row.auto_renew = "CANCELED", False
    db_session.commit()

    result = commands.subscribe(db_session, FAN, CREATOR)

    assert result.success
    assert result.subscription_id == subscribed.subscription_id
    assert len(gateway.calls_to('create_subscription')) == 1
    (_, (_, update_data), _), = gateway.calls_to('update_subscription')
    assert update_data['cancel_at_period_end'] is False
    assert update_data['proration_behavior'] == 'none'
    db_session.refresh(row)
    assert row.status == "ACTIVE"
    assert row.auto_renew is True


def test_resubscribe_in_place_charges_the_chosen_payment_method(db_session, creator, gateway, commands):
    subscribed = commands.subscribe(db_session, FAN, CREATOR)
    row = db_session.get(Subscription, subscribed.subscription_id)
    row.status, row.auto_renew = "CANCELED", False
    db_session.commit()

    result = commands.subscribe(db_session, FAN, CREATOR, tier_id="tier_gold", payment_method_id="pm_new")

    assert result.success
    (_, (_, update_data), _), = gateway.calls_to('update_subscription')
    assert update_data['default_payment_method'] == "pm_new"
    assert update_data['payment_behavior'] == 'allow_incomplete'
    assert update_data['proration_behavior'] == 'always_invoice'
    db_session.refresh(row)
    assert row.status == "ACTIVE"
    assert row.tier_id == "tier_gold"


def test_resubscribe_after_processor_cancellation_creates_new_subscription(db_session, creator, gateway, commands):
    first = commands.subscribe(db_session, FAN, CREATOR)
    old_row = db_session.get(Subscription, first.subscription_id)
    gateway.subscriptions[old_row.stripe_subscription_id]['status'] = 'canceled'

    second = commands.subscribe(db_session, FAN, CREATOR)

    assert second.success
    assert second.subscription_id != first.subscription_id
    db_session.refresh(old_row)
    assert old_row.status == "CANCELED"
    assert [row.status for row in subscriptions(db_session)] == ["CANCELED", "ACTIVE"]


def test_subscribe_converges_with_webhook_that_arrived_first(db_session, creator, gateway, locks, commands):
    create = gateway.create_subscription

    def create_and_deliver_webhook(*args, **kwargs):
        subscription = create(*args, **kwargs)
        stripe_event_processor.process_event({
            "id": "evt_created_early",
            "type": "customer.subscription.created",
            "created": PERIOD_END,
            "data": {"object": {**subscription, "latest_invoice": None}},
        }, db_session, locks)
        return subscription

    gateway.create_subscription = create_and_deliver_webhook

    result = commands.subscribe(db_session, FAN, CREATOR)

    assert result.success
    rows = subscriptions(db_session)
    assert len(rows) == 1
    assert rows[0].id == result.subscription_id
    assert rows[0].price == Decimal("9.99")


def test_local_apply_is_retried_on_operational_error(db_session, creator, gateway, commands, monkeypatch):
    real_apply = command_gateway_module.apply_transition
    attempts = []

    def flaky_apply(db, transition):
        attempts.append(transition.kind)
        if len(attempts) == 1:
            raise OperationalError("UPDATE subscriptions", {}, Exception("database is locked"))
        return real_apply(db, transition)

    monkeypatch.setattr(command_gateway_module, "apply_transition", flaky_apply)

    result = commands.subscribe(db_session, FAN, CREATOR)

    assert result.success
    assert len(attempts) == 2
    assert len(subscriptions(db_session)) == 1


def test_local_apply_gives_up_with_consistency_error(db_session, creator, commands, monkeypatch):
    def broken_apply(db, transition):
        raise OperationalError("UPDATE subscriptions", {}, Exception("database is locked"))

    monkeypatch.setattr(command_gateway_module, "apply_transition", broken_apply)

    with pytest.raises(ConsistencyError):
        commands.subscribe(db_session, FAN, CREATOR)


def test_charge_saved_method_tags_intent_with_user(db_session, creator, gateway, commands):
    db_session.add(Account(id=FAN, stripe_customer_id="cus_fan_1"))
    db_session.commit()

    result = commands.charge_saved_method(db_session, FAN, Decimal("5.50"), "pm_card",
                                          metadata={"type": "TIP", "creatorId": CREATOR})

    assert result.success
    assert result.external_id.startswith("pi_")
    (_, (customer_id, pm_id, amount_cents, metadata), _), = gateway.calls_to('charge_payment_method')
    assert (customer_id, pm_id, amount_cents) == ("cus_fan_1", "pm_card", 550)
    assert metadata == {"type": "TIP", "creatorId": CREATOR, "userId": FAN}


def test_charge_requiring_authentication(db_session, gateway, commands):
    db_session.add(Account(id=FAN, stripe_customer_id="cus_fan_1"))
    db_session.commit()
    gateway.charge_result = GatewayResult(GatewayOutcome.REQUIRES_ACTION, action_token="pi_secret_tip")

    result = commands.charge_saved_method(db_session, FAN, Decimal("5.00"), "pm_card")

    assert result.status == "requires_action"
    assert result.action_token == "pi_secret_tip"


def test_charge_without_customer_is_rejected(db_session, gateway, commands):
    with pytest.raises(ValueError):
        commands.charge_saved_method(db_session, FAN, Decimal("5.00"), "pm_card")
    assert gateway.calls_to('charge_payment_method') == []


def test_payment_intent_creates_customer_and_returns_client_secret(db_session, gateway, commands, locks):
    result = commands.create_payment_intent(db_session, FAN, Decimal("7.50"),
                                            metadata={"type": "TIP", "creatorId": CREATOR, "postId": None},
                                            save_payment_method=True)

    assert result.status == "requires_action"
    assert result.action_token == f"{result.external_id}_secret"
    assert db_session.get(Account, FAN).stripe_customer_id == "cus_fan_1"
    (_, (customer_id, amount_cents, metadata), kwargs), = gateway.calls_to('create_payment_intent')
    assert (customer_id, amount_cents) == ("cus_fan_1", 750)
    assert metadata == {"type": "TIP", "creatorId": CREATOR, "userId": FAN}
    assert kwargs == {"save_payment_method": True}

    stripe_event_processor.process_event({
        "id": "evt_intent",
        "type": "payment_intent.succeeded",
        "created": PERIOD_END,
        "data": {"object": {"id": result.external_id, "amount_received": amount_cents, "currency": "eur",
                            "metadata": metadata}},
    }, db_session, locks)

    payment = db_session.query(PaymentRecord).one()
    assert payment.amount == Decimal("7.50")
    assert payment.creator_id == CREATOR


def test_payment_intent_gateway_error_writes_nothing(db_session, gateway, commands):
    gateway.fail_with['create_payment_intent'] = GatewayTimeoutError("intent creation timed out")

    result = commands.create_payment_intent(db_session, FAN, Decimal("7.50"))

    assert result.status == "retry"
    assert db_session.query(PaymentRecord).count() == 0


def test_payment_intent_rejects_non_positive_amount(db_session, gateway, commands):
    with pytest.raises(ValueError):
        commands.create_payment_intent(db_session, FAN, Decimal("0"))
    assert gateway.calls_to('create_payment_intent') == []


def test_action_required_gateway_error_maps_to_requires_action(db_session, creator, gateway, commands):
    gateway.fail_with['create_subscription'] = GatewayActionRequiredError(
        "Authentication required", client_secret="pi_secret_sca",
    )

    result = commands.subscribe(db_session, FAN, CREATOR)

    assert result.requires_action is True
    assert result.action_token == "pi_secret_sca"
