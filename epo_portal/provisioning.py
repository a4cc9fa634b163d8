"""Customer provisioning workflow.

A paid signup runs five steps against ePO and the portal database:

1. ``create_ou`` - a System Tree group for the customer
2. ``generate_site_key`` - the per-customer key baked into installers
3. ``apply_tier_policies`` - the policy bundle for the subscribed tier
4. ``create_installer`` - an agent deployment URL
5. ``send_welcome_notification`` - tells the customer they can deploy

Progress is written to ``provisioning_jobs`` before every step so the
portal can show where a job is. Steps run one after another in the
request that started them. A failing step marks the job ``failed`` and
nothing is rolled back; :meth:`ProvisioningOrchestrator.retry` resumes
the newest failed job at the step that failed.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from fastapi import HTTPException

from . import notifications
from .config import Settings
from .customers import (
    CUSTOMERS_TABLE,
    get_customer,
    primary_user_id,
    subscription_with_plan,
)
from .epo_client import EpoClient, EpoError
from .models import ProvisioningJob
from .storage import Store, utcnow, utcnow_iso

logger = logging.getLogger(__name__)

JOBS_TABLE = "provisioning_jobs"
INSTALLERS_TABLE = "agent_installers"

STEPS: List[str] = [
    "create_ou",
    "generate_site_key",
    "apply_tier_policies",
    "create_installer",
    "send_welcome_notification",
]

INSTALLER_LIFETIME_DAYS = 30

WELCOME_TITLE = "Welcome to Trellix ePO SaaS!"
WELCOME_MESSAGE = "Your endpoint protection is now set up. Download your agent installer from the portal."


class ProvisioningError(Exception):
    """A provisioning step failed; the job row has been marked ``failed``."""

    def __init__(self, message: str, job_id: str, step: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.job_id = job_id
        self.step = step


def determine_tier(plan_name: Optional[str], price_monthly: Optional[float]) -> str:
    """Map a subscription plan to a policy tier.

    Name keywords win over price; price thresholds catch renamed plans.
    """
    name = (plan_name or "").lower()
    price = price_monthly or 0
    if "enterprise" in name or price >= 39.99:
        return "enterprise"
    if "professional" in name or "pro" in name or price >= 19.99:
        return "professional"
    return "starter"


class ProvisioningOrchestrator:
    def __init__(self, store: Store, epo_factory: Callable[[], EpoClient], settings: Settings) -> None:
        self.store = store
        self.epo_factory = epo_factory
        self.settings = settings
        self._handlers: Dict[str, Callable[[EpoClient, Dict[str, Any]], None]] = {
            "create_ou": self._create_ou,
            "generate_site_key": self._generate_site_key,
            "apply_tier_policies": self._apply_tier_policies,
            "create_installer": self._create_installer,
            "send_welcome_notification": self._send_welcome_notification,
        }

    # -- public operations -----------------------------------------------

    def start_onboarding(self, customer_id: str, subscription_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not customer_id:
            raise HTTPException(status_code=400, detail="customer_id is required")
        get_customer(self.store, customer_id)
        job = self.store.insert(
            JOBS_TABLE,
            {
                "customer_id": customer_id,
                "job_type": "customer_onboarding",
                "status": "in_progress",
                "current_step": STEPS[0],
                "total_steps": len(STEPS),
                "completed_steps": 0,
                "retry_count": 0,
                "step_details": {"subscription_data": subscription_data or {}, "steps": list(STEPS)},
            },
        )[0]
        logger.info("Provisioning job %s created for customer %s", job["id"], customer_id)
        self._run(job, start_index=0)
        return {"success": True, "job_id": job["id"], "message": "Customer onboarding initiated successfully"}

    def retry(self, customer_id: str) -> Dict[str, Any]:
        job = self.store.select_one(
            JOBS_TABLE,
            filters={"customer_id": customer_id, "status": "failed"},
            order_by="created_at",
            desc=True,
        )
        if not job:
            raise HTTPException(status_code=404, detail="No failed provisioning job found for retry")

        steps = job.get("step_details", {}).get("steps") or list(STEPS)
        failed_step = job.get("current_step")
        start_index = steps.index(failed_step) if failed_step in steps else 0
        retry_count = (job.get("retry_count") or 0) + 1
        logger.info("Retrying provisioning job %s from step %s (attempt %d)", job["id"], steps[start_index], retry_count)

        job = self.store.update(
            JOBS_TABLE,
            {"status": "in_progress", "error_message": None, "retry_count": retry_count},
            {"id": job["id"]},
        )[0]
        self._run(job, start_index=start_index)
        return {"success": True, "job_id": job["id"], "message": "Provisioning job retried successfully"}

    def get_job(self, job_id: str) -> ProvisioningJob:
        row = self.store.select_one(JOBS_TABLE, filters={"id": job_id})
        if not row:
            raise HTTPException(status_code=404, detail="Provisioning job not found")
        return ProvisioningJob(**row)

    def list_jobs(self, customer_id: str) -> List[ProvisioningJob]:
        rows = self.store.select(JOBS_TABLE, filters={"customer_id": customer_id}, order_by="created_at", desc=True)
        return [ProvisioningJob(**row) for row in rows]

    # -- execution -------------------------------------------------------

    def _run(self, job: Dict[str, Any], start_index: int) -> None:
        steps = job.get("step_details", {}).get("steps") or list(STEPS)
        step = steps[start_index] if start_index < len(steps) else None
        try:
            with self.epo_factory() as epo:
                for index in range(start_index, len(steps)):
                    step = steps[index]
                    logger.info("Executing step %s for job %s", step, job["id"])
                    self.store.update(JOBS_TABLE, {"current_step": step, "completed_steps": index}, {"id": job["id"]})
                    handler = self._handlers.get(step)
                    if handler is None:
                        raise ProvisioningError(f"Unknown step: {step}", job["id"], step)
                    handler(epo, job)
                    logger.info("Step %s completed for job %s", step, job["id"])
        except Exception as exc:
            message = getattr(exc, "message", None) or getattr(exc, "detail", None) or str(exc) or exc.__class__.__name__
            if isinstance(exc, (EpoError, ProvisioningError, HTTPException)):
                logger.error("Provisioning job %s failed at step %s: %s", job["id"], step, message)
            else:
                logger.exception("Provisioning job %s failed at step %s", job["id"], step)
            self.store.update(JOBS_TABLE, {"status": "failed", "error_message": message}, {"id": job["id"]})
            raise ProvisioningError(message, job["id"], step) from exc

        now = utcnow_iso()
        self.store.update(
            JOBS_TABLE,
            {"status": "completed", "completed_steps": len(steps), "completed_at": now},
            {"id": job["id"]},
        )
        logger.info("All provisioning steps completed for job %s", job["id"])

    # -- steps -----------------------------------------------------------

    def _create_ou(self, epo: EpoClient, job: Dict[str, Any]) -> None:
        customer = get_customer(self.store, job["customer_id"])
        name = customer.get("ou_group_name")
        if not name:
            raise ProvisioningError("Customer has no OU group name", job["id"], "create_ou")

        # a retried job may already have created the group
        existing = self._find_own_group(epo, name)
        if existing:
            group_id = int(existing["groupId"])
            group_path = existing["groupPath"]
        else:
            group_id = epo.create_group(name, self.settings.epo_parent_group_id)
            created = self._find_own_group(epo, name, group_id)
            group_path = created["groupPath"] if created else name

        self.store.update(
            CUSTOMERS_TABLE,
            {"epo_ou_id": group_id, "epo_ou_path": group_path},
            {"id": customer["id"]},
        )
        logger.info("ePO OU %s ready for customer %s", group_path, customer["id"])

    @staticmethod
    def _find_own_group(epo: EpoClient, name: str, group_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """Return the group whose last path segment is exactly ``name``.

        ``system.findGroups`` matches substrings, so ``Acme-OU`` also
        finds ``Big-Acme-OU``; only an exact leaf name belongs to this
        customer. ``group_id`` narrows the match to a group just created.
        """
        for group in epo.find_groups(name):
            leaf = str(group.get("groupPath", "")).rsplit("\\", 1)[-1]
            if leaf != name:
                continue
            if group_id is not None and int(group.get("groupId", -1)) != group_id:
                continue
            return group
        return None

    def _generate_site_key(self, epo: EpoClient, job: Dict[str, Any]) -> None:
        customer = get_customer(self.store, job["customer_id"])
        if customer.get("epo_site_key"):
            return
        self.store.update(
            CUSTOMERS_TABLE,
            {"epo_site_key": secrets.token_urlsafe(32)},
            {"id": customer["id"]},
        )
        logger.info("Site key generated for customer %s", customer["id"])

    def _apply_tier_policies(self, epo: EpoClient, job: Dict[str, Any]) -> None:
        customer = get_customer(self.store, job["customer_id"])
        subscription = subscription_with_plan(self.store, customer["id"])
        if not subscription:
            raise ProvisioningError("Customer subscription not found", job["id"], "apply_tier_policies")

        plan = subscription.get("plan") or {}
        tier = determine_tier(
            plan.get("plan_name") or subscription.get("plan_type"),
            plan.get("price_monthly"),
        )
        logger.info("Customer %s is on tier %s", customer["id"], tier)

        group_id = customer.get("epo_ou_id")
        if group_id is None:
            raise ProvisioningError("Customer OU has not been created", job["id"], "apply_tier_policies")

        applied = []
        for policy_name in self.settings.epo_tier_policies.get(tier, []):
            matches = [p for p in epo.find_policies(policy_name) if p.get("objectName") == policy_name]
            if not matches:
                raise ProvisioningError(f"Policy not found in ePO: {policy_name}", job["id"], "apply_tier_policies")
            policy = matches[0]
            epo.assign_policy_to_group(group_id, policy["productId"], policy["typeId"], policy["objectId"])
            applied.append(policy_name)

        details = dict(job.get("step_details") or {})
        details.update({"tier": tier, "applied_policies": applied})
        job["step_details"] = details
        self.store.update(JOBS_TABLE, {"step_details": details}, {"id": job["id"]})

    def _create_installer(self, epo: EpoClient, job: Dict[str, Any]) -> None:
        customer = get_customer(self.store, job["customer_id"])
        group_id = customer.get("epo_ou_id")
        if group_id is None:
            raise ProvisioningError("Customer OU has not been created", job["id"], "create_installer")
        name = f"{customer.get('ou_group_name')}-installer"
        url = epo.create_installer_url(group_id, name, expiry_days=INSTALLER_LIFETIME_DAYS)
        self.store.insert(
            INSTALLERS_TABLE,
            {
                "customer_id": customer["id"],
                "installer_name": name,
                "platform": "windows",
                "download_url": url,
                "download_count": 0,
                "expires_at": (utcnow() + timedelta(days=INSTALLER_LIFETIME_DAYS)).isoformat(),
            },
        )
        logger.info("Agent installer created for customer %s", customer["id"])

    def _send_welcome_notification(self, epo: EpoClient, job: Dict[str, Any]) -> None:
        user_id = primary_user_id(self.store, job["customer_id"])
        if not user_id:
            logger.info("Customer %s has no portal user yet, skipping welcome", job["customer_id"])
            return
        notifications.notify(
            self.store,
            user_id,
            WELCOME_TITLE,
            WELCOME_MESSAGE,
            type="welcome",
            data={"provisioning_completed": True, "customer_id": job["customer_id"]},
        )
