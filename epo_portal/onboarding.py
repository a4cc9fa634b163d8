"""Self-service customer sign-up for an authenticated portal user."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException

from .config import Settings
from .customers import CUSTOMERS_TABLE, CUSTOMER_USERS_TABLE, ou_group_name_for
from .models import AuthUser
from .storage import Store

logger = logging.getLogger(__name__)

ORGANIZATIONS_TABLE = "user_organizations"


def onboard_customer(
    store: Store,
    settings: Settings,
    user: AuthUser,
    company: str,
    ou_group_name: Optional[str] = None,
    phone: Optional[str] = None,
    industry: Optional[str] = None,
    organization_size: Optional[str] = None,
) -> Dict[str, Any]:
    """Create the customer record and link ``user`` to it as primary admin.

    The user organisation row is informational; failing to write it does
    not undo the customer.
    """
    if user.email and user.email.lower() == settings.admin_email.lower():
        logger.info("Admin account %s skips customer onboarding", user.email)
        return {"success": True, "message": "Admin account - no customer onboarding needed"}

    if not company:
        raise HTTPException(status_code=400, detail="company is required")
    if store.select_one(CUSTOMER_USERS_TABLE, filters={"user_id": user.id}):
        raise HTTPException(status_code=400, detail="User is already linked to a customer")

    ou_group_name = ou_group_name or ou_group_name_for(company)
    customer = store.insert(
        CUSTOMERS_TABLE,
        {
            "company_name": company,
            "ou_group_name": ou_group_name,
            "contact_email": user.email,
            "contact_name": user.display_name,
            "phone": phone,
            "status": "active",
        },
    )[0]
    logger.info("Customer %s created for user %s", customer["id"], user.id)

    store.insert(
        CUSTOMER_USERS_TABLE,
        {"user_id": user.id, "customer_id": customer["id"], "role": "admin", "is_primary": True},
    )

    try:
        store.insert(
            ORGANIZATIONS_TABLE,
            {
                "user_id": user.id,
                "organization_name": company,
                "group_name": ou_group_name,
                "industry": industry,
                "organization_size": organization_size,
                "primary_contact_phone": phone,
            },
        )
    except Exception:
        logger.warning("Failed to create organization record for user %s", user.id, exc_info=True)

    return {
        "success": True,
        "customer": {
            "id": customer["id"],
            "company_name": customer["company_name"],
            "ou_group_name": customer["ou_group_name"],
        },
        "message": "Customer onboarding completed successfully",
    }
