"""Operations reserved for portal administrators.

Callers are gated on the ``admin`` row in ``user_roles`` before any of
these run. User creation goes through the configured authenticator, so
with Supabase it creates a real Auth user and locally it only records a
profile.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx
from fastapi import HTTPException

from .auth import PROFILES_TABLE, ROLES_TABLE, Authenticator
from .storage import Store, utcnow_iso

logger = logging.getLogger(__name__)

PING_LOGS_TABLE = "network_ping_logs"
SECURITY_UPDATES_TABLE = "security_updates"
AUDIT_TABLE = "audit_logs"

PROFILE_FIELDS = ("id", "name", "email", "department", "is_online")
PING_METHODS = ("http", "https", "tcp")
PING_USER_AGENT = "Trellix-ePO-Admin-Ping/1.0"
PING_TIMEOUT_SECONDS = 10.0
TCP_TIMEOUT_SECONDS = 3.0
PING_INTERVAL_SECONDS = 0.1
MAX_PING_ATTEMPTS = 10
UPDATES_BASE_URL = "https://updates.trellix.com/packages"

_IPV4_RE = re.compile(r"^\d+\.\d+\.\d+\.\d+$")


def create_user(
    store: Store,
    authenticator: Authenticator,
    email: Optional[str],
    name: Optional[str],
    password: Optional[str],
    role: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a portal user on behalf of an administrator.

    Parameters
    ----------
    email, name, password:
        All three are required.
    role:
        ``"admin"`` also grants the new user the admin role. Any other
        value creates a regular user.
    """
    if not email or not name or not password:
        raise HTTPException(status_code=400, detail="Email, name, and password are required")

    user = authenticator.create_user(email, password, name)
    logger.info("Created user %s (%s)", user.id, email)
    if role == "admin":
        store.upsert(ROLES_TABLE, {"user_id": user.id, "role": "admin"}, on_conflict=("user_id", "role"))
        logger.info("Admin role assigned to %s", user.id)

    return {"success": True, "user_id": user.id, "email": user.email, "message": "User created successfully"}


def list_profiles(store: Store) -> List[Dict[str, Any]]:
    rows = store.select(PROFILES_TABLE, order_by="name")
    return [{field: row.get(field) for field in PROFILE_FIELDS} for row in rows]


def _ping_target(target: str, method: str, port: Optional[int]):
    """Split a bare host or a full URL into ``(host, method, port)``."""
    if target.startswith(("http://", "https://")):
        url = urlparse(target)
        method = url.scheme
        port = url.port or (443 if method == "https" else 80)
        return url.hostname or target, method, port
    return target, method, port


def _ping_once(client: httpx.Client, host: str, method: str, port: Optional[int]) -> Dict[str, Any]:
    started = time.monotonic()
    status, error_message = "error", None
    try:
        if method == "tcp":
            try:
                client.head(f"http://{host}:{port or 80}", timeout=TCP_TIMEOUT_SECONDS)
                status = "success"
            except httpx.HTTPError:
                status, error_message = "timeout", "Connection timeout or refused"
        else:
            default_port = 443 if method == "https" else 80
            suffix = f":{port}" if port and port != default_port else ""
            response = client.head(f"{method}://{host}{suffix}")
            status = "success" if response.is_success else "unreachable"
    except httpx.TimeoutException:
        status, error_message = "timeout", "Request timeout"
    except httpx.HTTPError as exc:
        status, error_message = "error", str(exc) or exc.__class__.__name__
    latency_ms = int((time.monotonic() - started) * 1000)
    return {"status": status, "latency_ms": latency_ms, "error_message": error_message}


def admin_ping(
    store: Store,
    user_id: str,
    target: Optional[str],
    method: str = "http",
    port: Optional[int] = None,
    attempts: int = 1,
    transport: Optional[httpx.BaseTransport] = None,
) -> Dict[str, Any]:
    """Check whether a host answers, from the portal's point of view.

    Each attempt sends a ``HEAD`` request and is written to
    ``network_ping_logs``. ``tcp`` only checks that something accepts a
    connection on ``port``, so any reply counts as success.

    Parameters
    ----------
    target:
        A host name, an IP address or a full ``http(s)://`` URL. A URL
        overrides ``method`` and ``port``.
    attempts:
        Clamped to ``1..MAX_PING_ATTEMPTS``.
    transport:
        Optional httpx transport, used by tests.
    """
    if not target:
        raise HTTPException(status_code=400, detail="Target is required")
    host, method, port = _ping_target(target, method, port)
    if method not in PING_METHODS:
        raise HTTPException(status_code=400, detail=f"Unsupported ping method: {method}")
    attempts = max(1, min(int(attempts), MAX_PING_ATTEMPTS))
    resolved_ip = host if _IPV4_RE.match(host) else None
    logger.info("Admin ping by %s: %s via %s, %d attempt(s)", user_id, host, method, attempts)

    results = []
    with httpx.Client(
        timeout=PING_TIMEOUT_SECONDS,
        headers={"User-Agent": PING_USER_AGENT},
        transport=transport,
    ) as client:
        for index in range(1, attempts + 1):
            outcome = _ping_once(client, host, method, port)
            store.insert(
                PING_LOGS_TABLE,
                {
                    "user_id": user_id,
                    "target": host,
                    "resolved_ip": resolved_ip,
                    "method": method,
                    "port": port,
                    "attempts": attempts,
                    "attempt_index": index,
                    **outcome,
                },
            )
            results.append({"attempt": index, **outcome, "timestamp": utcnow_iso()})
            if index < attempts:
                time.sleep(PING_INTERVAL_SECONDS)

    return {
        "success": True,
        "target": host,
        "method": method,
        "port": port,
        "total_attempts": attempts,
        "results": results,
    }


def security_update_download(store: Store, update_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    """Build the package link for a security update and audit the download."""
    update = store.select_one(SECURITY_UPDATES_TABLE, filters={"id": update_id})
    if not update:
        raise HTTPException(status_code=404, detail="Security update not found")

    slug = re.sub(r"\s+", "_", update["name"])
    download_url = f"{UPDATES_BASE_URL}/{update.get('type')}/{update.get('version')}/{slug}.zip"
    store.insert(
        AUDIT_TABLE,
        {
            "user_id": user_id,
            "action": "security_update_download",
            "resource_type": "security_update",
            "resource_id": update_id,
            "details": {
                "update_name": update["name"],
                "update_type": update.get("type"),
                "version": update.get("version"),
                "file_size": update.get("file_size"),
            },
        },
    )
    return {
        "downloadUrl": download_url,
        "filename": f"{slug}_v{update.get('version')}.zip",
        "fileSize": update.get("file_size"),
        "updateInfo": {"name": update["name"], "type": update.get("type"), "version": update.get("version")},
    }
