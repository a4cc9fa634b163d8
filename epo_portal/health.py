"""Service health: database, ePO server and recent provisioning failures."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Callable, Dict

from .epo_client import EpoClient, EpoError
from .provisioning import JOBS_TABLE
from .storage import Store, utcnow, utcnow_iso

logger = logging.getLogger(__name__)

HEALTH_LOGS_TABLE = "health_logs"
FAILED_JOB_LOOKBACK = timedelta(hours=24)


def run_health_check(store: Store, epo_factory: Callable[[], EpoClient]) -> Dict[str, Any]:
    services = {"database": False, "epo_server": False, "provisioning": False}

    try:
        services["database"] = store.ping()
    except Exception as exc:
        logger.warning("Database health check failed: %s", exc)

    try:
        with epo_factory() as epo:
            epo.list_agent_handlers()
        services["epo_server"] = True
    except EpoError as exc:
        logger.warning("ePO health check failed: %s", exc.message)

    if services["database"]:
        since = (utcnow() - FAILED_JOB_LOOKBACK).isoformat()
        failed = store.count(JOBS_TABLE, filters={"status": "failed"}, gte={"created_at": since})
        services["provisioning"] = failed == 0
        logger.info("%d failed provisioning job(s) in the last 24h", failed)

    overall = "healthy" if all(services.values()) else "degraded"
    result = {"timestamp": utcnow_iso(), "services": services, "overall_status": overall}

    if services["database"]:
        store.insert(
            HEALTH_LOGS_TABLE,
            {"overall_status": overall, "service_status": services, "details": {"source": "health_check"}},
        )
    logger.info("Health check completed: %s", overall)
    return result
