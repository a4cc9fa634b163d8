"""Read-only views for the customer portal."""

from __future__ import annotations

import math
from typing import Any, Dict

from fastapi import HTTPException

from .customers import customer_for_user, subscription_with_plan
from .models import AuthUser
from .provisioning import INSTALLERS_TABLE, JOBS_TABLE
from .storage import Store
from .usage import ENDPOINTS_TABLE, USAGE_TABLE

RECENT_ENDPOINTS = 10
RECENT_JOBS = 20
USAGE_HISTORY = 12


def dashboard(store: Store, user: AuthUser) -> Dict[str, Any]:
    customer = customer_for_user(store, user)
    customer_id = customer["id"]
    return {
        "customer": customer,
        "subscription": subscription_with_plan(store, customer_id, status="active"),
        "endpoints": {
            "count": store.count(ENDPOINTS_TABLE, filters={"customer_id": customer_id}),
            "recent": store.select(
                ENDPOINTS_TABLE,
                filters={"customer_id": customer_id},
                order_by="created_at",
                desc=True,
                limit=RECENT_ENDPOINTS,
            ),
        },
        "installers": store.select(INSTALLERS_TABLE, filters={"customer_id": customer_id}, order_by="created_at", desc=True),
        "recent_activity": store.select(
            JOBS_TABLE, filters={"customer_id": customer_id}, order_by="created_at", desc=True, limit=RECENT_JOBS
        ),
    }


def endpoints(store: Store, user: AuthUser, page: int = 1, limit: int = 25) -> Dict[str, Any]:
    if page < 1 or limit < 1:
        raise HTTPException(status_code=400, detail="page and limit must be positive")
    customer = customer_for_user(store, user)
    filters = {"customer_id": customer["id"]}
    total = store.count(ENDPOINTS_TABLE, filters=filters)
    rows = store.select(
        ENDPOINTS_TABLE,
        filters=filters,
        order_by="last_seen",
        desc=True,
        limit=limit,
        offset=(page - 1) * limit,
    )
    return {
        "endpoints": rows,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit),
        },
    }


def billing(store: Store, user: AuthUser) -> Dict[str, Any]:
    customer = customer_for_user(store, user)
    return {
        "subscription": subscription_with_plan(store, customer["id"], status="active"),
        "usage_history": store.select(
            USAGE_TABLE,
            filters={"customer_id": customer["id"]},
            order_by="record_date",
            desc=True,
            limit=USAGE_HISTORY,
        ),
    }


def installers(store: Store, user: AuthUser) -> Dict[str, Any]:
    customer = customer_for_user(store, user)
    return {
        "installers": store.select(
            INSTALLERS_TABLE, filters={"customer_id": customer["id"]}, order_by="created_at", desc=True
        )
    }
