"""Events pushed by the ePO server (agent installs, policy changes, threats)."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict

from . import notifications
from .customers import primary_user_id
from .models import ProcessingResult
from .storage import Store, utcnow_iso

logger = logging.getLogger(__name__)

EVENTS_TABLE = "epo_events"
DOWNLOADS_TABLE = "agent_downloads"
HEALTH_LOGS_TABLE = "health_logs"


def _recipient(store: Store, customer_id: str) -> str:
    # events without a linked user are addressed to the customer id
    return primary_user_id(store, customer_id) or customer_id


def handle_agent_installation(store: Store, payload: Dict[str, Any]) -> ProcessingResult:
    """Mark a user's downloaded agents as installed.

    ePO reports the endpoint that finished installing. Only downloads in
    the ``downloaded`` state move to ``installed``; available but never
    fetched packages are left alone.
    """
    user_id = payload.get("user_id")
    if payload.get("endpoint_id") and user_id:
        updated = store.update(
            DOWNLOADS_TABLE,
            {"status": "installed", "installed_at": utcnow_iso()},
            {"user_id": user_id, "status": "downloaded"},
        )
        logger.info("Marked %d agent download(s) installed for user %s", len(updated), user_id)
    return ProcessingResult(message="Agent installation processed")


def handle_policy_update(store: Store, payload: Dict[str, Any]) -> ProcessingResult:
    """Tell the customer's primary user that a policy changed."""
    customer_id = payload.get("customer_id")
    if customer_id:
        notifications.notify(
            store,
            _recipient(store, customer_id),
            "Policy Update",
            f"Security policy has been updated: {payload.get('policy_name') or 'Unknown'}",
            type="policy_update",
        )
    return ProcessingResult(message="Policy update processed")


def handle_threat_detection(store: Store, payload: Dict[str, Any]) -> ProcessingResult:
    """Raise a ``security_alert`` notification for a detected threat.

    Parameters
    ----------
    store : Store
        The backing store.
    payload : Dict
        The raw event. ``threat_data`` is attached to the notification
        as-is so the portal can show detection details.
    """
    customer_id = payload.get("customer_id")
    threat = payload.get("threat_data")
    if customer_id and threat:
        notifications.notify(
            store,
            _recipient(store, customer_id),
            "Threat Detected",
            f"Security threat detected: {threat.get('name') or 'Unknown threat'}",
            type="security_alert",
            data=threat,
        )
    return ProcessingResult(message="Threat detection processed")


def handle_system_status(store: Store, payload: Dict[str, Any]) -> ProcessingResult:
    """Record a status report from ePO in ``health_logs``."""
    store.insert(
        HEALTH_LOGS_TABLE,
        {
            "overall_status": payload.get("status") or "unknown",
            "service_status": {"epo_server": payload},
            "details": {"source": "epo_webhook", "payload": payload},
        },
    )
    return ProcessingResult(message="System status processed")


HANDLERS = {
    "agent_installation": handle_agent_installation,
    "policy_update": handle_policy_update,
    "threat_detection": handle_threat_detection,
    "system_status": handle_system_status,
}


def process_epo_event(store: Store, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Store an ePO event, run its handler and record the outcome on the row."""
    event_type = payload.get("event_type") or "unknown"
    event = store.insert(
        EVENTS_TABLE,
        {
            "event_id": payload.get("event_id") or str(uuid.uuid4()),
            "customer_id": payload.get("customer_id"),
            "source": payload.get("source") or "epo",
            "event_type": event_type,
            "payload": payload,
            "processed": False,
        },
    )[0]
    logger.info("ePO event %s (%s) stored", event["id"], event_type)

    handler = HANDLERS.get(event_type)
    if handler is None:
        logger.info("Unhandled ePO event type %s", event_type)
        result = ProcessingResult(message=f"Stored unhandled event type: {event_type}")
    else:
        try:
            result = handler(store, payload)
        except Exception as exc:
            logger.exception("ePO event handler for %s failed", event_type)
            result = ProcessingResult(success=False, message=str(exc))

    store.update(
        EVENTS_TABLE,
        {"processed": True, "processing_error": None if result.success else result.message},
        {"id": event["id"]},
    )
    return {
        "received": True,
        "processed": result.success,
        "message": result.message,
        "event_id": event["id"],
    }
