"""In-app notifications plus queued e-mail/SMS messages.

In-app notifications are rows in ``notifications`` which the portal UI
reads through Supabase Realtime. E-mail and SMS are only queued in
``outbound_messages``; a delivery worker for a specific provider picks
them up from there.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import HTTPException

from .storage import Store, utcnow_iso

logger = logging.getLogger(__name__)

NOTIFICATIONS_TABLE = "notifications"
OUTBOUND_TABLE = "outbound_messages"


def notify(
    store: Store,
    user_id: str,
    title: str,
    message: str,
    type: str = "info",
    data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Insert a single notification row and return it."""
    row = store.insert(
        NOTIFICATIONS_TABLE,
        {
            "user_id": user_id,
            "title": title,
            "message": message,
            "type": type,
            "data": data,
            "read": False,
        },
    )[0]
    logger.info("Notification %s (%s) created for user %s", row["id"], type, user_id)
    return row


def send_notification(
    store: Store,
    user_id: Optional[str],
    title: Optional[str],
    message: Optional[str],
    type: str = "info",
    data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    if not user_id or not title or not message:
        raise HTTPException(status_code=400, detail="Missing required fields: user_id, title, message")
    row = notify(store, user_id, title, message, type=type, data=data)
    return {"success": True, "notification_id": row["id"], "message": "Notification sent successfully"}


def send_bulk_notifications(
    store: Store,
    user_ids: Optional[List[str]],
    title: Optional[str],
    message: Optional[str],
    type: str = "info",
    data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    if not user_ids or not title or not message:
        raise HTTPException(
            status_code=400, detail="Missing required fields: user_ids (array), title, message"
        )
    rows = store.insert(
        NOTIFICATIONS_TABLE,
        [
            {"user_id": uid, "title": title, "message": message, "type": type, "data": data, "read": False}
            for uid in user_ids
        ],
    )
    logger.info("Created %d bulk notifications", len(rows))
    return {
        "success": True,
        "notifications_created": len(rows),
        "message": "Bulk notifications sent successfully",
    }


def _queue(store: Store, channel: str, recipient: Optional[str], body: Dict[str, Any]) -> Dict[str, Any]:
    if not recipient:
        raise HTTPException(status_code=400, detail="Missing required field: to")
    row = store.insert(
        OUTBOUND_TABLE,
        {"channel": channel, "recipient": recipient, "body": body, "status": "queued"},
    )[0]
    logger.info("Queued %s message %s", channel, row["id"])
    return row


def send_email(store: Store, to: Optional[str], subject: Optional[str], body: Optional[str]) -> Dict[str, Any]:
    if not subject:
        raise HTTPException(status_code=400, detail="Missing required field: subject")
    row = _queue(store, "email", to, {"subject": subject, "body": body or ""})
    return {"success": True, "message_id": row["id"], "status": "queued", "email_requested": True}


def send_sms(store: Store, to: Optional[str], message: Optional[str]) -> Dict[str, Any]:
    if not message:
        raise HTTPException(status_code=400, detail="Missing required field: message")
    row = _queue(store, "sms", to, {"message": message})
    return {"success": True, "message_id": row["id"], "status": "queued", "sms_requested": True}


def list_for_user(store: Store, user_id: str, unread_only: bool = False, limit: int = 50) -> List[Dict[str, Any]]:
    filters: Dict[str, Any] = {"user_id": user_id}
    if unread_only:
        filters["read"] = False
    return store.select(NOTIFICATIONS_TABLE, filters=filters, order_by="created_at", desc=True, limit=limit)


def mark_read(store: Store, user_id: str, notification_id: str) -> Dict[str, Any]:
    updated = store.update(
        NOTIFICATIONS_TABLE,
        {"read": True, "read_at": utcnow_iso()},
        {"id": notification_id, "user_id": user_id},
    )
    if not updated:
        raise HTTPException(status_code=404, detail="Notification not found")
    return updated[0]
