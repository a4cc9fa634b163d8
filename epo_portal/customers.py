"""Customer lookups shared by provisioning, billing, the portal and usage."""

from __future__ import annotations

import re
from typing import Any, Dict, Optional

from fastapi import HTTPException

from .models import AuthUser
from .storage import Store

CUSTOMERS_TABLE = "customers"
CUSTOMER_USERS_TABLE = "customer_users"
SUBSCRIPTIONS_TABLE = "customer_subscriptions"
PLANS_TABLE = "subscription_plans"


def ou_group_name_for(company_name: str) -> str:
    """``"Acme Corp."`` -> ``"Acme-Corp--OU"``; every non-alphanumeric becomes ``-``."""
    return re.sub(r"[^a-zA-Z0-9]", "-", company_name) + "-OU"


def get_customer(store: Store, customer_id: str) -> Dict[str, Any]:
    """Fetch a customer row or fail the request with a 404.

    Most workflows start from a customer id supplied by a caller or
    stored on a job, so a missing row is reported as ``Customer not
    found`` rather than returned as ``None``.

    Parameters
    ----------
    store : Store
        The backing store.
    customer_id : str
        Primary key of the ``customers`` row.
    """
    customer = store.select_one(CUSTOMERS_TABLE, filters={"id": customer_id})
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")
    return customer


def primary_user_id(store: Store, customer_id: str) -> Optional[str]:
    """Return the user to notify for a customer, preferring the primary contact."""
    links = store.select(CUSTOMER_USERS_TABLE, filters={"customer_id": customer_id})
    if not links:
        return None
    primary = next((link for link in links if link.get("is_primary")), links[0])
    return primary["user_id"]


def customer_for_user(store: Store, user: AuthUser) -> Dict[str, Any]:
    """Resolve the customer a portal user belongs to, with their role attached."""
    link = store.select_one(CUSTOMER_USERS_TABLE, filters={"user_id": user.id})
    if not link:
        raise HTTPException(status_code=404, detail="Customer not found for user")
    customer = get_customer(store, link["customer_id"])
    customer["role"] = link.get("role")
    return customer


def subscription_with_plan(store: Store, customer_id: str, status: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Newest subscription for a customer, with its plan row under ``plan``."""
    filters: Dict[str, Any] = {"customer_id": customer_id}
    if status:
        filters["status"] = status
    subscription = store.select_one(SUBSCRIPTIONS_TABLE, filters=filters, order_by="created_at", desc=True)
    if not subscription:
        return None
    plan = None
    if subscription.get("plan_id"):
        plan = store.select_one(PLANS_TABLE, filters={"id": subscription["plan_id"]})
    subscription["plan"] = plan
    return subscription
