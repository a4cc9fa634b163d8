"""Stripe checkout, customer portal sessions and the Stripe webhook.

Checkout sessions are created per plan with inline ``price_data`` so no
Stripe dashboard configuration is needed. The webhook is idempotent on
the Stripe event id: every event is stored in ``webhook_events`` before
it is acted on, and a redelivered event is acknowledged without being
processed again.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

import stripe
from fastapi import HTTPException

from . import notifications
from .config import Settings
from .customers import (
    CUSTOMERS_TABLE,
    PLANS_TABLE,
    SUBSCRIPTIONS_TABLE,
    ou_group_name_for,
    primary_user_id,
)
from .models import AuthUser, PlanDetails, ProcessingResult
from .storage import Store, utcnow, utcnow_iso

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS_TABLE = "webhook_events"
SIGNATURE_TOLERANCE_SECONDS = 300
SUBSCRIPTION_PERIOD = timedelta(days=30)

PLANS: Dict[str, PlanDetails] = {
    "starter": PlanDetails(
        name="Starter Plan",
        description="Up to 50 endpoints",
        price_cents=1500,
        max_endpoints=50,
        features=["Basic ENS protection", "Standard TIE feeds", "Email support", "Monthly reporting"],
    ),
    "pro": PlanDetails(
        name="Pro Plan",
        description="Up to 500 endpoints",
        price_cents=2500,
        max_endpoints=500,
        features=["Advanced ENS", "Enhanced TIE", "Priority support", "Weekly reporting", "API access"],
    ),
    "enterprise": PlanDetails(
        name="Enterprise Plan",
        description="Unlimited endpoints",
        price_cents=4000,
        max_endpoints=-1,
        features=["Full ENS feature set", "Premium TIE", "Dedicated support", "Real-time reporting", "Full API access"],
    ),
}


def plan_for(plan_type: Optional[str]) -> PlanDetails:
    """Look up the catalogue entry for a plan type.

    Unknown or missing plan types fall back to the starter plan, which
    is also what a checkout without plan metadata is billed as.
    """
    return PLANS.get(plan_type or "", PLANS["starter"])


def _require_stripe(settings: Settings) -> str:
    if not settings.stripe_enabled:
        raise HTTPException(status_code=503, detail="STRIPE_SECRET_KEY is not set")
    return settings.stripe_secret_key


def create_checkout(
    settings: Settings,
    user: AuthUser,
    plan_type: Optional[str],
    customer_id: Optional[str] = None,
    price_amount: Optional[int] = None,
    origin: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a monthly subscription checkout session for ``user``."""
    api_key = _require_stripe(settings)
    if not user.email:
        raise HTTPException(status_code=400, detail="User not authenticated or email not available")

    origin = origin or settings.frontend_url
    plan = plan_for(plan_type)
    try:
        existing = stripe.Customer.list(email=user.email, limit=1, api_key=api_key)
        if existing.data:
            stripe_customer_id = existing.data[0].id
            logger.info("Found existing Stripe customer %s", stripe_customer_id)
        else:
            created = stripe.Customer.create(
                email=user.email,
                name=user.display_name,
                metadata={"supabase_user_id": user.id, "customer_id": customer_id or ""},
                api_key=api_key,
            )
            stripe_customer_id = created.id
            logger.info("Created Stripe customer %s", stripe_customer_id)

        session = stripe.checkout.Session.create(
            customer=stripe_customer_id,
            line_items=[
                {
                    "price_data": {
                        "currency": "usd",
                        "product_data": {"name": plan.name, "description": plan.description},
                        "unit_amount": price_amount or plan.price_cents,
                        "recurring": {"interval": "month"},
                    },
                    "quantity": 1,
                }
            ],
            mode="subscription",
            success_url=f"{origin}/portal?success=true",
            cancel_url=f"{origin}/portal?canceled=true",
            metadata={
                "plan_type": plan_type or "starter",
                "customer_id": customer_id or "",
                "user_id": user.id,
            },
            api_key=api_key,
        )
    except stripe.StripeError as exc:
        logger.error("Stripe error creating checkout: %s", exc)
        raise HTTPException(status_code=502, detail=f"Stripe error: {exc}") from exc

    logger.info("Checkout session %s created", session.id)
    return {"url": session.url, "session_id": session.id}


def create_portal_session(settings: Settings, stripe_customer_id: Optional[str], return_url: Optional[str] = None) -> Dict[str, Any]:
    api_key = _require_stripe(settings)
    if not stripe_customer_id:
        raise HTTPException(status_code=400, detail="Customer has no Stripe account")
    try:
        session = stripe.billing_portal.Session.create(
            customer=stripe_customer_id,
            return_url=return_url or f"{settings.frontend_url}/portal",
            api_key=api_key,
        )
    except stripe.StripeError as exc:
        logger.error("Stripe error creating portal session: %s", exc)
        raise HTTPException(status_code=502, detail=f"Stripe error: {exc}") from exc
    return {"url": session.url}


# ---------------------------------------------------------------------------
# Webhook


class StripeWebhookProcessor:
    """Verifies, records and dispatches Stripe webhook events.

    ``provision`` is called with ``(customer_id, subscription_data)`` after
    a completed checkout. It is injected so billing does not import the
    provisioning workflow directly.
    """

    def __init__(
        self,
        store: Store,
        settings: Settings,
        provision: Callable[[str, Dict[str, Any]], Any],
    ) -> None:
        self.store = store
        self.settings = settings
        self.provision = provision

    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not self.settings.stripe_webhook_secret:
            raise HTTPException(status_code=503, detail="STRIPE_WEBHOOK_SECRET not configured")
        if not signature:
            raise HTTPException(status_code=400, detail="No Stripe signature found")
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise HTTPException(status_code=400, detail="Invalid payload encoding") from exc
        try:
            stripe.WebhookSignature.verify_header(
                text, signature, self.settings.stripe_webhook_secret, SIGNATURE_TOLERANCE_SECONDS
            )
        except stripe.SignatureVerificationError as exc:
            raise HTTPException(status_code=400, detail="Invalid signature") from exc
        try:
            return json.loads(text)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid payload") from exc

    def process(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        event = self.verify(payload, signature)
        event_id = event.get("id")
        event_type = event.get("type", "unknown")
        logger.info("Stripe event %s (%s) received", event_id, event_type)

        recorded = self.store.insert_unique(
            WEBHOOK_EVENTS_TABLE,
            {"stripe_event_id": event_id, "event_type": event_type, "data": event, "processed": False},
            unique_on=("stripe_event_id",),
        )
        if recorded is None:
            logger.info("Stripe event %s already processed", event_id)
            return {"received": True, "status": "already_processed"}

        handlers = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.updated": self._subscription_changed,
            "customer.subscription.deleted": self._subscription_changed,
            "invoice.payment_failed": self._payment_failed,
        }
        handler = handlers.get(event_type)
        if handler is None:
            logger.info("Unhandled Stripe event type %s", event_type)
            result = ProcessingResult(message=f"Unhandled event type: {event_type}")
        else:
            try:
                result = handler(event)
            except Exception as exc:
                logger.exception("Stripe handler for %s failed", event_type)
                result = ProcessingResult(success=False, message=str(exc))

        self.store.update(
            WEBHOOK_EVENTS_TABLE,
            {
                "processed": True,
                "processed_at": utcnow_iso(),
                "processing_error": None if result.success else result.message,
            },
            {"stripe_event_id": event_id},
        )
        return {"received": True, "processed": result.success, "message": result.message}

    def _checkout_completed(self, event: Dict[str, Any]) -> ProcessingResult:
        session = event["data"]["object"]
        details = session.get("customer_details") or {}
        email = details.get("email")
        if not email:
            return ProcessingResult(success=False, message="No customer email in checkout session")
        stripe_customer_id = session.get("customer")
        subscription_id = session.get("subscription")
        metadata = session.get("metadata") or {}
        plan_type = metadata.get("plan_type") or "starter"

        customer = self.store.select_one(CUSTOMERS_TABLE, filters={"contact_email": email})
        if not customer:
            company = details.get("name") or "New Company"
            customer = self.store.insert(
                CUSTOMERS_TABLE,
                {
                    "contact_email": email,
                    "company_name": company,
                    "ou_group_name": ou_group_name_for(company),
                    "contact_name": details.get("name") or "New Customer",
                    "stripe_customer_id": stripe_customer_id,
                    "status": "active",
                },
            )[0]
            logger.info("Created customer %s from checkout", customer["id"])
        elif not customer.get("stripe_customer_id"):
            self.store.update(CUSTOMERS_TABLE, {"stripe_customer_id": stripe_customer_id}, {"id": customer["id"]})

        plan_row = self.store.select_one(PLANS_TABLE, filters={"plan_name": plan_type})
        now = utcnow()
        self.store.upsert(
            SUBSCRIPTIONS_TABLE,
            {
                "customer_id": customer["id"],
                "stripe_subscription_id": subscription_id,
                "plan_type": plan_type,
                "plan_id": plan_row["id"] if plan_row else None,
                "status": "active",
                "current_period_start": now.isoformat(),
                "current_period_end": (now + SUBSCRIPTION_PERIOD).isoformat(),
            },
            on_conflict=("customer_id",),
        )

        try:
            self.provision(
                customer["id"],
                {"stripe_subscription_id": subscription_id, "stripe_customer_id": stripe_customer_id},
            )
        except Exception as exc:
            logger.error("Provisioning after checkout failed for customer %s: %s", customer["id"], exc)
            return ProcessingResult(success=False, message=f"Provisioning failed: {exc}")
        return ProcessingResult(message="Checkout processed and provisioning triggered")

    def _subscription_changed(self, event: Dict[str, Any]) -> ProcessingResult:
        subscription = event["data"]["object"]
        status = subscription.get("status")
        updated = self.store.update(
            SUBSCRIPTIONS_TABLE,
            {"status": status},
            {"stripe_subscription_id": subscription.get("id")},
        )
        if not updated:
            return ProcessingResult(success=False, message=f"Unknown subscription {subscription.get('id')}")
        logger.info("Subscription %s is now %s", subscription.get("id"), status)
        return ProcessingResult(message=f"Subscription status updated to {status}")

    def _payment_failed(self, event: Dict[str, Any]) -> ProcessingResult:
        invoice = event["data"]["object"]
        subscription = self.store.select_one(
            SUBSCRIPTIONS_TABLE, filters={"stripe_subscription_id": invoice.get("subscription")}
        )
        if subscription:
            user_id = primary_user_id(self.store, subscription["customer_id"]) or subscription["customer_id"]
            notifications.notify(
                self.store,
                user_id,
                "Payment Failed",
                "Your payment could not be processed. Please update your payment method.",
                type="billing_alert",
            )
        return ProcessingResult(message="Payment failure processed")
