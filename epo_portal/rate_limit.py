"""Fixed-window request limiter persisted in ``api_rate_limits``."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .storage import Store, utcnow

logger = logging.getLogger(__name__)

RATE_LIMITS_TABLE = "api_rate_limits"
DEFAULT_LIMIT = 60
DEFAULT_WINDOW_SECONDS = 60


def check_rate_limit(
    store: Store,
    identifier: str,
    limit: int = DEFAULT_LIMIT,
    window_seconds: int = DEFAULT_WINDOW_SECONDS,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Count one request against ``identifier`` and report whether it is allowed.

    The newest window that started within ``window_seconds`` is reused;
    otherwise a fresh window opens at ``now``. A blocked request does
    not increment the counter.
    """
    now = now or utcnow()
    window_floor = (now - timedelta(seconds=window_seconds)).isoformat()
    window = store.select_one(
        RATE_LIMITS_TABLE,
        filters={"identifier": identifier},
        gte={"window_start": window_floor},
        order_by="window_start",
        desc=True,
    )

    if window:
        count = window.get("request_count") or 0
        if count >= limit:
            started = datetime.fromisoformat(window["window_start"])
            reset_ms = int((started + timedelta(seconds=window_seconds)).timestamp() * 1000)
            logger.warning("Rate limit exceeded for %s (%d/%d)", identifier, count, limit)
            return {
                "allowed": False,
                "blocked": True,
                "current_count": count,
                "limit": limit,
                "window_seconds": window_seconds,
                "reset_time": reset_ms,
                "message": "Rate limit exceeded",
            }
        count += 1
        store.update(RATE_LIMITS_TABLE, {"request_count": count}, {"id": window["id"]})
    else:
        count = 1
        store.insert(
            RATE_LIMITS_TABLE,
            {
                "identifier": identifier,
                "window_start": now.isoformat(),
                "window_seconds": window_seconds,
                "request_count": count,
            },
        )

    return {
        "allowed": True,
        "blocked": False,
        "current_count": count,
        "limit": limit,
        "window_seconds": window_seconds,
        "remaining": max(0, limit - count),
        "message": "Request allowed",
    }
