"""Daily endpoint usage reconciliation.

For each customer with an active subscription the endpoints in the
customer's OU are counted in ePO and compared with the plan's endpoint
allowance. The resulting ``usage_records`` row is what billing reads.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from . import notifications
from .billing import plan_for
from .customers import (
    CUSTOMERS_TABLE,
    SUBSCRIPTIONS_TABLE,
    PLANS_TABLE,
    primary_user_id,
)
from .epo_client import EpoClient, EpoError
from .storage import Store

logger = logging.getLogger(__name__)

USAGE_TABLE = "usage_records"
ENDPOINTS_TABLE = "customer_endpoints"
UNLIMITED = -1


def billable_split(endpoint_count: int, max_endpoints: int):
    """Return ``(billable, overage)`` for a count against a plan limit."""
    if max_endpoints == UNLIMITED:
        return endpoint_count, 0
    return min(endpoint_count, max_endpoints), max(0, endpoint_count - max_endpoints)


def _plan_limit(store: Store, subscription: Dict[str, Any]) -> int:
    if subscription.get("plan_id"):
        plan = store.select_one(PLANS_TABLE, filters={"id": subscription["plan_id"]})
        if plan and plan.get("max_endpoints") is not None:
            return int(plan["max_endpoints"])
    return plan_for(subscription.get("plan_type")).max_endpoints


def sync_endpoints(store: Store, epo: EpoClient, customer: Dict[str, Any]) -> int:
    """Mirror the systems in a customer's OU into ``customer_endpoints``."""
    group_id = customer.get("epo_ou_id")
    if group_id is None:
        raise EpoError("Customer OU has not been provisioned")
    systems = epo.find_systems(group_id)
    if not isinstance(systems, list):
        raise EpoError(f"Unexpected findSystems result for group {group_id}: {systems!r}")
    for system in systems:
        hostname = system.get("EPOComputerProperties.ComputerName") or system.get("hostname")
        if not hostname:
            continue
        store.upsert(
            ENDPOINTS_TABLE,
            {
                "customer_id": customer["id"],
                "hostname": hostname,
                "status": "active",
                "last_seen": system.get("EPOLeafNode.LastUpdate"),
                "agent_version": system.get("EPOLeafNode.AgentVersion"),
            },
            on_conflict=("customer_id", "hostname"),
        )
    return len(systems)


def reconcile_customer(store: Store, epo: EpoClient, customer: Dict[str, Any], subscription: Dict[str, Any], record_date: str) -> Dict[str, Any]:
    """Count one customer's endpoints and write the day's usage record.

    The record is keyed on ``(customer_id, record_date)`` so a rerun on
    the same day replaces the earlier figures. When the count exceeds
    the plan limit the primary user gets a ``billing_alert``.

    Parameters
    ----------
    epo : EpoClient
        An open service-account client.
    subscription : Dict
        The active subscription; its ``plan_id`` row overrides the
        catalogue limit for ``plan_type``.
    record_date : str
        ISO date the usage is recorded against.
    """
    endpoint_count = sync_endpoints(store, epo, customer)
    max_endpoints = _plan_limit(store, subscription)
    billable, overage = billable_split(endpoint_count, max_endpoints)

    store.upsert(
        USAGE_TABLE,
        {
            "customer_id": customer["id"],
            "subscription_id": subscription["id"],
            "record_date": record_date,
            "endpoint_count": endpoint_count,
            "billable_endpoints": billable,
            "overage_endpoints": overage,
            "sync_source": "daily_reconciliation",
        },
        on_conflict=("customer_id", "record_date"),
    )

    if overage > 0:
        user_id = primary_user_id(store, customer["id"])
        if user_id:
            notifications.notify(
                store,
                user_id,
                "Endpoint Limit Exceeded",
                f"You have {endpoint_count} endpoints but your plan allows {max_endpoints}. Consider upgrading your plan.",
                type="billing_alert",
                data={"actual_count": endpoint_count, "plan_limit": max_endpoints, "overage": overage},
            )

    return {
        "customer_id": customer["id"],
        "success": True,
        "endpoint_count": endpoint_count,
        "billable_endpoints": billable,
        "overage_endpoints": overage,
        "plan_limit": max_endpoints,
    }


def reconcile_usage(store: Store, epo_factory: Callable[[], EpoClient], record_date: Optional[str] = None) -> Dict[str, Any]:
    """Reconcile every active subscription; per-customer failures are reported, not raised."""
    record_date = record_date or date.today().isoformat()
    subscriptions = store.select(SUBSCRIPTIONS_TABLE, filters={"status": "active"})
    logger.info("Reconciling usage for %s across %d subscriptions", record_date, len(subscriptions))

    results: List[Dict[str, Any]] = []
    for subscription in subscriptions:
        customer_id = subscription["customer_id"]
        customer = store.select_one(CUSTOMERS_TABLE, filters={"id": customer_id})
        if not customer:
            results.append({"customer_id": customer_id, "success": False, "error": "Customer not found"})
            continue
        try:
            with epo_factory() as epo:
                results.append(reconcile_customer(store, epo, customer, subscription, record_date))
        except EpoError as exc:
            logger.warning("Usage reconciliation failed for customer %s: %s", customer_id, exc.message)
            results.append({"customer_id": customer_id, "success": False, "error": exc.message})
        except Exception as exc:
            logger.exception("Usage reconciliation failed for customer %s", customer_id)
            results.append({"customer_id": customer_id, "success": False, "error": str(exc) or exc.__class__.__name__})

    successful = [r for r in results if r["success"]]
    summary = {
        "total_customers": len(results),
        "successful": len(successful),
        "failed": len(results) - len(successful),
        "total_endpoints": sum(r.get("endpoint_count", 0) for r in successful),
    }
    logger.info("Usage reconciliation completed: %s", summary)
    return {"success": True, "date": record_date, "summary": summary, "results": results}
