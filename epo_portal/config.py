"""Runtime configuration for the portal API.

All settings come from environment variables so the same code runs
locally (in-memory store, no Stripe, no ePO) and in a deployed
environment where Supabase, Stripe and the ePO server are reachable.
"""

from __future__ import annotations

import json
import os
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


DEFAULT_TIER_POLICIES: Dict[str, List[str]] = {
    "starter": ["ENS Threat Prevention Starter"],
    "professional": [
        "ENS Threat Prevention Professional",
        "ENS Firewall Professional",
    ],
    "enterprise": [
        "ENS Threat Prevention Enterprise",
        "ENS Firewall Enterprise",
        "ENS Web Control Enterprise",
    ],
}


class Settings(BaseModel):
    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    epo_server_url: Optional[str] = None
    epo_username: Optional[str] = None
    epo_password: Optional[str] = None
    epo_port: int = 8443
    epo_verify_tls: bool = True
    # "My Organization" is group 2 on a stock ePO install
    epo_parent_group_id: int = 2
    epo_tier_policies: Dict[str, List[str]] = Field(
        default_factory=lambda: dict(DEFAULT_TIER_POLICIES)
    )
    frontend_url: str = "http://localhost:5173"
    admin_email: str = "admin@trellix.com"
    log_level: str = "INFO"

    @property
    def supabase_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)

    @property
    def stripe_enabled(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def epo_configured(self) -> bool:
        return bool(self.epo_server_url and self.epo_username and self.epo_password)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    """Build a :class:`Settings` object from the process environment.

    ``EPO_TIER_POLICIES`` may hold a JSON object mapping tier names to
    lists of ePO policy names. Anything that fails to parse falls back to
    the built-in defaults so a typo never blocks startup.
    """
    tier_policies = dict(DEFAULT_TIER_POLICIES)
    raw_policies = os.getenv("EPO_TIER_POLICIES")
    if raw_policies:
        try:
            parsed = json.loads(raw_policies)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            tier_policies.update(
                {str(k): [str(p) for p in v] for k, v in parsed.items() if isinstance(v, list)}
            )

    return Settings(
        supabase_url=os.getenv("SUPABASE_URL"),
        supabase_service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY"),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
        epo_server_url=os.getenv("EPO_SERVER_URL"),
        epo_username=os.getenv("EPO_API_USERNAME"),
        epo_password=os.getenv("EPO_API_PASSWORD"),
        epo_port=int(os.getenv("EPO_PORT", "8443")),
        epo_verify_tls=_env_bool("EPO_VERIFY_TLS", True),
        epo_parent_group_id=int(os.getenv("EPO_PARENT_GROUP_ID", "2")),
        epo_tier_policies=tier_policies,
        frontend_url=os.getenv("FRONTEND_URL", "http://localhost:5173"),
        admin_email=os.getenv("ADMIN_EMAIL", "admin@trellix.com"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
