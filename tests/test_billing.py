"""Tests for Stripe checkout and the Stripe webhook processor."""

import hashlib
import hmac
import json
import threading
import time
from unittest.mock import MagicMock, patch

import pytest
import stripe
from fastapi import HTTPException

from conftest import seed_customer
from epo_portal.billing import StripeWebhookProcessor, create_checkout, create_portal_session, plan_for
from epo_portal.config import Settings
from epo_portal.models import AuthUser


def sign(payload: str, secret: str = "whsec_test_secret", timestamp=None) -> str:
    timestamp = timestamp or int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def event(event_id: str, event_type: str, obj: dict) -> str:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}})


class Recorder:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def __call__(self, customer_id, subscription_data):
        self.calls.append((customer_id, subscription_data))
        if self.error:
            raise self.error
        return {"success": True}


@pytest.fixture
def provision():
    return Recorder()


@pytest.fixture
def processor(store, settings, provision):
    return StripeWebhookProcessor(store, settings, provision)


CHECKOUT = {
    "customer": "cus_123",
    "subscription": "sub_123",
    "customer_details": {"email": "new@globex.test", "name": "Globex Inc"},
    "metadata": {"plan_type": "enterprise"},
}


def test_plan_for_defaults_to_starter():
    assert plan_for("enterprise").max_endpoints == -1
    assert plan_for("unknown").name == "Starter Plan"
    assert plan_for(None).price_cents == 1500


def test_invalid_signature_rejected(processor):
    payload = event("evt_1", "checkout.session.completed", CHECKOUT)
    with pytest.raises(HTTPException) as excinfo:
        processor.process(payload.encode(), sign(payload, secret="whsec_other"))
    assert excinfo.value.status_code == 400


def test_missing_signature_rejected(processor):
    with pytest.raises(HTTPException) as excinfo:
        processor.process(b"{}", None)
    assert excinfo.value.status_code == 400


def test_missing_secret(store, provision):
    processor = StripeWebhookProcessor(store, Settings(), provision)
    with pytest.raises(HTTPException) as excinfo:
        processor.process(b"{}", "t=1,v1=abc")
    assert excinfo.value.status_code == 503


def test_checkout_completed_creates_customer_and_provisions(store, processor, provision):
    payload = event("evt_1", "checkout.session.completed", CHECKOUT)
    result = processor.process(payload.encode(), sign(payload))
    assert result == {"received": True, "processed": True, "message": "Checkout processed and provisioning triggered"}

    customer = store.select_one("customers", filters={"contact_email": "new@globex.test"})
    assert customer["company_name"] == "Globex Inc"
    assert customer["ou_group_name"] == "Globex-Inc-OU"
    assert customer["stripe_customer_id"] == "cus_123"

    subscription = store.select_one("customer_subscriptions", filters={"customer_id": customer["id"]})
    assert subscription["plan_type"] == "enterprise"
    assert subscription["stripe_subscription_id"] == "sub_123"
    assert subscription["status"] == "active"

    assert provision.calls == [(customer["id"], {"stripe_subscription_id": "sub_123", "stripe_customer_id": "cus_123"})]

    logged = store.select_one("webhook_events", filters={"stripe_event_id": "evt_1"})
    assert logged["processed"] is True
    assert logged["processing_error"] is None


def test_checkout_reuses_existing_customer(store, processor):
    existing = seed_customer(store, email="new@globex.test")
    payload = event("evt_1", "checkout.session.completed", CHECKOUT)
    processor.process(payload.encode(), sign(payload))

    assert store.count("customers") == 1
    assert store.select_one("customers")["stripe_customer_id"] == "cus_123"
    # one subscription per customer
    assert store.count("customer_subscriptions", filters={"customer_id": existing["id"]}) == 1


def test_duplicate_event_is_acknowledged_once(processor, provision):
    payload = event("evt_1", "checkout.session.completed", CHECKOUT)
    processor.process(payload.encode(), sign(payload))
    again = processor.process(payload.encode(), sign(payload))
    assert again == {"received": True, "status": "already_processed"}
    assert len(provision.calls) == 1


def test_concurrent_redelivery_is_processed_once(store, processor, provision):
    payload = event("evt_race", "checkout.session.completed", CHECKOUT)
    signature = sign(payload)
    barrier = threading.Barrier(8)
    results = []

    def deliver():
        barrier.wait()
        results.append(processor.process(payload.encode(), signature))

    threads = [threading.Thread(target=deliver) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(provision.calls) == 1
    assert store.count("webhook_events") == 1
    assert sum(1 for r in results if r.get("status") == "already_processed") == 7


def test_non_utf8_payload_rejected(processor):
    payload = b"\xff\xfe{}"
    with pytest.raises(HTTPException) as excinfo:
        processor.process(payload, "t=1,v1=abc")
    assert excinfo.value.status_code == 400
    assert excinfo.value.detail == "Invalid payload encoding"


def test_provisioning_failure_is_recorded(store, settings):
    processor = StripeWebhookProcessor(store, settings, Recorder(error=RuntimeError("ePO down")))
    payload = event("evt_2", "checkout.session.completed", CHECKOUT)
    result = processor.process(payload.encode(), sign(payload))
    assert result["processed"] is False
    assert result["message"] == "Provisioning failed: ePO down"
    logged = store.select_one("webhook_events", filters={"stripe_event_id": "evt_2"})
    assert logged["processing_error"] == "Provisioning failed: ePO down"


def test_subscription_deleted(store, processor):
    customer = seed_customer(store)
    sub_id = store.select_one("customer_subscriptions")["stripe_subscription_id"]
    payload = event("evt_3", "customer.subscription.deleted", {"id": sub_id, "status": "canceled"})
    result = processor.process(payload.encode(), sign(payload))
    assert result["processed"] is True
    assert store.select_one("customer_subscriptions", filters={"customer_id": customer["id"]})["status"] == "canceled"


def test_payment_failed_notifies_primary_user(store, processor):
    seed_customer(store)
    sub_id = store.select_one("customer_subscriptions")["stripe_subscription_id"]
    payload = event("evt_4", "invoice.payment_failed", {"subscription": sub_id})
    processor.process(payload.encode(), sign(payload))

    notification = store.select_one("notifications", filters={"user_id": "user-1"})
    assert notification["type"] == "billing_alert"
    assert notification["title"] == "Payment Failed"


def test_unhandled_event_type(processor):
    payload = event("evt_5", "charge.refunded", {})
    result = processor.process(payload.encode(), sign(payload))
    assert result["processed"] is True
    assert "Unhandled event type" in result["message"]


def test_create_checkout_creates_stripe_customer(settings):
    user = AuthUser(id="user-1", email="owner@acme.test")
    session = MagicMock(id="cs_1", url="https://checkout.stripe.test/cs_1")
    with patch("stripe.Customer.list", return_value=MagicMock(data=[])), patch(
        "stripe.Customer.create", return_value=MagicMock(id="cus_9")
    ) as create_customer, patch("stripe.checkout.Session.create", return_value=session) as create_session:
        result = create_checkout(settings, user, "pro", customer_id="c-1")

    assert result == {"url": "https://checkout.stripe.test/cs_1", "session_id": "cs_1"}
    assert create_customer.call_args.kwargs["email"] == "owner@acme.test"
    kwargs = create_session.call_args.kwargs
    assert kwargs["customer"] == "cus_9"
    assert kwargs["mode"] == "subscription"
    assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 2500
    assert kwargs["success_url"] == "https://portal.example.com/portal?success=true"
    assert kwargs["metadata"] == {"plan_type": "pro", "customer_id": "c-1", "user_id": "user-1"}


def test_create_checkout_reuses_stripe_customer(settings):
    user = AuthUser(id="user-1", email="owner@acme.test")
    existing = MagicMock(data=[MagicMock(id="cus_existing")])
    with patch("stripe.Customer.list", return_value=existing), patch("stripe.Customer.create") as create_customer, patch(
        "stripe.checkout.Session.create", return_value=MagicMock(id="cs_2", url="u")
    ) as create_session:
        create_checkout(settings, user, "starter", price_amount=999, origin="https://app.test")

    create_customer.assert_not_called()
    kwargs = create_session.call_args.kwargs
    assert kwargs["customer"] == "cus_existing"
    assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 999
    assert kwargs["cancel_url"] == "https://app.test/portal?canceled=true"


def test_create_checkout_maps_stripe_errors(settings):
    user = AuthUser(id="user-1", email="owner@acme.test")
    with patch("stripe.Customer.list", side_effect=stripe.StripeError("card declined")):
        with pytest.raises(HTTPException) as excinfo:
            create_checkout(settings, user, "pro")
    assert excinfo.value.status_code == 502


def test_checkout_requires_stripe_key():
    with pytest.raises(HTTPException) as excinfo:
        create_checkout(Settings(), AuthUser(id="u", email="a@b.test"), "pro")
    assert excinfo.value.status_code == 503


def test_portal_session(settings):
    with patch("stripe.billing_portal.Session.create", return_value=MagicMock(url="https://billing.stripe.test/p")) as create:
        result = create_portal_session(settings, "cus_1")
    assert result == {"url": "https://billing.stripe.test/p"}
    assert create.call_args.kwargs["return_url"] == "https://portal.example.com/portal"

    with pytest.raises(HTTPException) as excinfo:
        create_portal_session(settings, None)
    assert excinfo.value.status_code == 400
