"""Shared data models.

Rows coming out of the store are plain dictionaries; these models cover
the values that move between modules and the few records whose shape
the API guarantees to callers.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class AuthUser(BaseModel):
    """The caller behind a bearer token."""

    id: str
    email: Optional[str] = None
    name: Optional[str] = None

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.email:
            return self.email.split("@")[0]
        return self.id


class ProcessingResult(BaseModel):
    """Outcome of a webhook side effect.

    Handlers return one of these instead of raising so that the stored
    event row can always be marked as processed.
    """

    success: bool = True
    message: str = "Event stored"


class PlanDetails(BaseModel):
    name: str
    description: str
    price_cents: int
    max_endpoints: int  # -1 means unlimited
    features: List[str] = Field(default_factory=list)


class ProvisioningJob(BaseModel):
    """A row of the ``provisioning_jobs`` table.

    ``completed_steps`` counts the steps that finished before
    ``current_step`` started; when ``status`` is ``completed`` it equals
    ``total_steps``.
    """

    id: str
    customer_id: str
    job_type: str = "customer_onboarding"
    status: str
    current_step: Optional[str] = None
    total_steps: int = 5
    completed_steps: int = 0
    retry_count: int = 0
    step_details: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
