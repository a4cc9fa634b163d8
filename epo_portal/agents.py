"""Agent package entitlements for portal users."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import HTTPException

from .customers import CUSTOMER_USERS_TABLE, SUBSCRIPTIONS_TABLE
from .models import AuthUser
from .storage import Store

logger = logging.getLogger(__name__)

PACKAGES_TABLE = "agent_packages"
DOWNLOADS_TABLE = "agent_downloads"


def _has_active_subscription(store: Store, user_id: str) -> bool:
    link = store.select_one(CUSTOMER_USERS_TABLE, filters={"user_id": user_id})
    if not link:
        return False
    return store.count(SUBSCRIPTIONS_TABLE, filters={"customer_id": link["customer_id"], "status": "active"}) > 0


def grant_latest_agent(store: Store, user: AuthUser) -> Dict[str, Any]:
    """Make the newest active agent package downloadable for ``user``.

    Granting the same package twice returns the existing assignment.
    """
    if not _has_active_subscription(store, user.id):
        raise HTTPException(status_code=403, detail="No active subscription found. Please subscribe to download agents.")

    package = store.select_one(PACKAGES_TABLE, filters={"is_active": True}, order_by="created_at", desc=True)
    if not package:
        raise HTTPException(status_code=404, detail="No active agents available for download.")

    existing = store.select_one(
        DOWNLOADS_TABLE,
        filters={"user_id": user.id, "agent_name": package["name"], "agent_version": package["version"]},
    )
    if existing:
        return {
            "success": True,
            "message": "Latest agent is already available for download.",
            "agent": {"name": package["name"], "version": package["version"], "status": existing["status"]},
        }

    store.insert(
        DOWNLOADS_TABLE,
        {
            "user_id": user.id,
            "agent_name": package["name"],
            "agent_version": package["version"],
            "file_name": package.get("file_name"),
            "platform": package.get("platform"),
            "file_size": package.get("file_size"),
            "status": "available",
        },
    )
    logger.info("Granted agent %s %s to user %s", package["name"], package["version"], user.id)
    return {
        "success": True,
        "message": "Latest agent has been granted and is now available for download.",
        "agent": {
            "name": package["name"],
            "version": package["version"],
            "file_name": package.get("file_name"),
            "platform": package.get("platform"),
            "status": "available",
        },
    }


def download_status(store: Store, user_ids: List[str]) -> List[Dict[str, Any]]:
    """Summarise available agent downloads per user, in request order."""
    if not user_ids:
        raise HTTPException(status_code=400, detail="user_ids must be a non-empty array")
    status: Dict[str, Dict[str, Any]] = {uid: {"available": False, "total_available": 0} for uid in user_ids}
    for row in store.select(DOWNLOADS_TABLE, filters={"user_id": list(user_ids)}):
        entry = status.setdefault(row["user_id"], {"available": False, "total_available": 0})
        if row.get("status") == "available":
            entry["available"] = True
            entry["total_available"] += 1
    return [{"user_id": uid, **values} for uid, values in status.items()]


def grant_latest_agent_bulk(store: Store, admin: AuthUser) -> Dict[str, Any]:
    """Grant the newest active package to every user of a subscribed customer.

    Users who already hold the package are counted as processed but not
    assigned. A failure for one user is collected in ``errors`` and the
    run carries on with the next.
    """
    package = store.select_one(PACKAGES_TABLE, filters={"is_active": True}, order_by="created_at", desc=True)
    if not package:
        raise HTTPException(status_code=404, detail="No active agents available for assignment.")

    customer_ids = sorted({s["customer_id"] for s in store.select(SUBSCRIPTIONS_TABLE, filters={"status": "active"})})
    user_ids: List[str] = []
    if customer_ids:
        for link in store.select(CUSTOMER_USERS_TABLE, filters={"customer_id": customer_ids}):
            if link["user_id"] not in user_ids:
                user_ids.append(link["user_id"])
    if not user_ids:
        logger.info("Bulk agent grant found no subscribed users")
        return {"success": True, "message": "No users with active subscriptions found.", "processed": 0, "assigned": 0}

    processed = assigned = 0
    errors: List[str] = []
    for user_id in user_ids:
        processed += 1
        try:
            existing = store.select_one(
                DOWNLOADS_TABLE,
                filters={"user_id": user_id, "agent_name": package["name"], "agent_version": package["version"]},
            )
            if existing:
                continue
            store.insert(
                DOWNLOADS_TABLE,
                {
                    "user_id": user_id,
                    "agent_name": package["name"],
                    "agent_version": package["version"],
                    "file_name": package.get("file_name"),
                    "platform": package.get("platform"),
                    "file_size": package.get("file_size"),
                    "status": "available",
                    "assigned_by_admin": admin.id,
                },
            )
            assigned += 1
        except Exception as exc:
            logger.warning("Failed to grant agent to user %s: %s", user_id, exc)
            errors.append(f"User {user_id}: {exc}")

    logger.info("Bulk agent grant by %s: processed %d, assigned %d", admin.id, processed, assigned)
    result: Dict[str, Any] = {
        "success": True,
        "message": f"Bulk assignment completed. Processed {processed} users, assigned to {assigned} users.",
        "processed": processed,
        "assigned": assigned,
        "agent": {"name": package["name"], "version": package["version"], "platform": package.get("platform")},
    }
    if errors:
        result["errors"] = errors
    return result
