"""Entry point for the Trellix ePO SaaS portal backend.

This file exposes the HTTP API behind the customer portal and the
admin console. It covers:

* Customer onboarding and the five step provisioning workflow that
  creates the customer's ePO organisational unit, site key, policies
  and agent installer.
* Stripe checkout, billing portal sessions and the Stripe webhook.
* Webhooks pushed by the ePO server itself.
* Per-user ePO connections (test, login, logout, health, proxy).
* Notifications, usage reconciliation, rate limiting and health.
* Admin tools: creating users, listing profiles, bulk agent grants,
  network pings and security update downloads. These require the
  ``admin`` role in ``user_roles``.

To run this service locally:

```sh
pip install -e .
python main.py
```

This starts a development server on http://0.0.0.0:8000. Without any
environment variables the API runs against an in-memory store, so all
state resets when the process restarts. Set ``SUPABASE_URL`` and
``SUPABASE_SERVICE_ROLE_KEY`` to persist to Supabase, ``STRIPE_*`` to
enable billing and ``EPO_*`` to reach a real ePO server.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from epo_portal import admin, agents, billing, epo_sessions, notifications, onboarding, portal
from epo_portal.auth import bearer_token, build_authenticator, has_role
from epo_portal.config import Settings, load_settings
from epo_portal.customers import customer_for_user
from epo_portal.epo_client import DEFAULT_PORT, EpoClient, EpoError
from epo_portal.epo_events import process_epo_event
from epo_portal.health import run_health_check
from epo_portal.models import AuthUser, ProvisioningJob
from epo_portal.provisioning import ProvisioningError, ProvisioningOrchestrator
from epo_portal.rate_limit import DEFAULT_LIMIT, DEFAULT_WINDOW_SECONDS, check_rate_limit
from epo_portal.storage import Store, build_store
from epo_portal.usage import reconcile_usage

# ---------------------------------------------------------------------------
# Configuration and shared state
#
# Settings are read once at import. The store is either Supabase or the
# in-memory fallback; every handler receives it through ``get_store`` so
# tests can swap in their own with ``app.dependency_overrides``.

SETTINGS = load_settings()
logging.basicConfig(level=SETTINGS.log_level)
logger = logging.getLogger(__name__)

STORE: Store = build_store(SETTINGS)


def get_settings() -> Settings:
    return SETTINGS


def get_store() -> Store:
    return STORE


def get_epo_factory(settings: Settings = Depends(get_settings)) -> Callable[[], EpoClient]:
    """Factory for the service account client used by provisioning and usage."""
    return lambda: EpoClient.from_settings(settings)


def get_client_factory() -> epo_sessions.ClientFactory:
    """Factory for clients pointed at user-supplied ePO servers."""
    return epo_sessions.default_client_factory()


def get_ping_transport() -> Optional[httpx.BaseTransport]:
    """Transport for admin pings; ``None`` means the real network."""
    return None


def get_current_user(
    authorization: Optional[str] = Header(None),
    store: Store = Depends(get_store),
) -> AuthUser:
    return build_authenticator(store).get_user(bearer_token(authorization))


def get_admin_user(user: AuthUser = Depends(get_current_user), store: Store = Depends(get_store)) -> AuthUser:
    """Like ``get_current_user`` but only for holders of the ``admin`` role."""
    if not has_role(store, user.id, "admin"):
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def require_self_or_admin(user: AuthUser, store: Store, user_id: str) -> None:
    if user.id != user_id and not has_role(store, user.id, "admin"):
        raise HTTPException(status_code=403, detail="Not allowed to act on behalf of another user")


def get_orchestrator(
    store: Store = Depends(get_store),
    epo_factory: Callable[[], EpoClient] = Depends(get_epo_factory),
    settings: Settings = Depends(get_settings),
) -> ProvisioningOrchestrator:
    return ProvisioningOrchestrator(store, epo_factory, settings)


# ---------------------------------------------------------------------------
# FastAPI app

app = FastAPI(title="Trellix ePO SaaS Portal API")

# The portal front-end is served from a different origin (Netlify), so
# CORS stays permissive. Restrict ``allow_origins`` per deployment.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EpoError)
def epo_error_handler(request: Request, exc: EpoError) -> JSONResponse:
    status = exc.status_code if exc.status_code and 400 <= exc.status_code < 500 else 502
    return JSONResponse(status_code=status, content=exc.to_dict())


@app.exception_handler(ProvisioningError)
def provisioning_error_handler(request: Request, exc: ProvisioningError) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": exc.message, "job_id": exc.job_id, "step": exc.step},
    )


@app.get("/", response_class=HTMLResponse, include_in_schema=False)
def root():
    """Serve a small landing page pointing at the API docs."""
    return """
    <!DOCTYPE html>
    <html lang="en">
      <head>
        <meta charset="utf-8" />
        <title>Trellix ePO SaaS Portal API</title>
        <style>
          body { font-family: sans-serif; margin: 2rem; line-height: 1.6; }
          h1 { color: #333; }
          a { color: #0055a5; text-decoration: none; }
          a:hover { text-decoration: underline; }
        </style>
      </head>
      <body>
        <h1>Trellix ePO SaaS Portal API</h1>
        <p>
          This service provisions and bills managed endpoint protection
          tenants on Trellix ePolicy Orchestrator.
        </p>
        <p>
          To explore the available endpoints and try them out interactively,
          visit the <a href="/docs">API documentation</a>.
        </p>
      </body>
    </html>
    """


# ---------------------------------------------------------------------------
# Request models


class OnboardingRequest(BaseModel):
    company: str
    ou_group_name: Optional[str] = None
    phone: Optional[str] = None
    industry: Optional[str] = None
    organization_size: Optional[str] = None


class StartProvisioningRequest(BaseModel):
    """Optional subscription context recorded on the provisioning job."""

    subscription_data: Dict[str, Any] = Field(default_factory=dict)


class EpoConnectionRequest(BaseModel):
    """Connection details for a user-supplied ePO server.

    ``ca_certificate`` may hold one or more PEM certificates for servers
    signed by a private CA.
    """

    server_url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    port: int = DEFAULT_PORT
    ca_certificate: Optional[str] = None
    pin_certificate: bool = False


class EpoLoginRequest(BaseModel):
    server_url: str
    username: str
    password: str
    connection_id: str
    port: int = DEFAULT_PORT


class EpoLogoutRequest(BaseModel):
    connection_id: str


class EpoCallRequest(BaseModel):
    server_url: str
    port: int = DEFAULT_PORT
    use_session: bool = False
    connection_id: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None


class EpoProxyRequest(EpoCallRequest):
    endpoint: str
    output_type: str = "json"
    parameters: Dict[str, Any] = Field(default_factory=dict)


class CheckoutRequest(BaseModel):
    plan_type: str = "starter"
    customer_id: Optional[str] = None
    price_amount: Optional[int] = None


class NotificationRequest(BaseModel):
    user_id: Optional[str] = None
    title: Optional[str] = None
    message: Optional[str] = None
    type: str = "info"
    data: Optional[Dict[str, Any]] = None


class BulkNotificationRequest(BaseModel):
    user_ids: List[str] = Field(default_factory=list)
    title: Optional[str] = None
    message: Optional[str] = None
    type: str = "info"
    data: Optional[Dict[str, Any]] = None


class EmailRequest(BaseModel):
    to: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None


class SmsRequest(BaseModel):
    to: Optional[str] = None
    message: Optional[str] = None


class RateLimitRequest(BaseModel):
    identifier: str
    limit: int = DEFAULT_LIMIT
    window_seconds: int = DEFAULT_WINDOW_SECONDS


class ReconcileRequest(BaseModel):
    date: Optional[str] = None


class DownloadStatusRequest(BaseModel):
    user_ids: List[str] = Field(default_factory=list)


class CreateUserRequest(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None


class PingRequest(BaseModel):
    target: Optional[str] = None
    method: str = "http"
    port: Optional[int] = None
    attempts: int = 1


# ---------------------------------------------------------------------------
# Health


@app.get("/health", summary="Health check endpoint")
def health(
    store: Store = Depends(get_store),
    epo_factory: Callable[[], EpoClient] = Depends(get_epo_factory),
):
    """Report database, ePO and provisioning health.

    Responds 200 when every service is healthy and 503 otherwise so
    load balancers and uptime monitors can use it directly.
    """
    result = run_health_check(store, epo_factory)
    status = 200 if result["overall_status"] == "healthy" else 503
    return JSONResponse(status_code=status, content=result)


# ---------------------------------------------------------------------------
# Onboarding and provisioning


@app.post("/onboarding", summary="Create a customer for the signed-in user")
def onboard(
    req: OnboardingRequest,
    user: AuthUser = Depends(get_current_user),
    store: Store = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    return onboarding.onboard_customer(
        store,
        settings,
        user,
        company=req.company,
        ou_group_name=req.ou_group_name,
        phone=req.phone,
        industry=req.industry,
        organization_size=req.organization_size,
    )


@app.post("/customers/{customer_id}/provisioning", summary="Start provisioning a customer")
def start_provisioning(
    customer_id: str,
    req: StartProvisioningRequest,
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.start_onboarding(customer_id, req.subscription_data)


@app.post("/customers/{customer_id}/provisioning/retry", summary="Retry the latest failed provisioning job")
def retry_provisioning(
    customer_id: str,
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    """Resume the newest failed job at the step where it stopped."""
    return orchestrator.retry(customer_id)


@app.get(
    "/customers/{customer_id}/provisioning",
    summary="List provisioning jobs for a customer",
    response_model=List[ProvisioningJob],
)
def list_provisioning_jobs(customer_id: str, orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator)):
    return orchestrator.list_jobs(customer_id)


@app.get("/provisioning/jobs/{job_id}", summary="Get a provisioning job", response_model=ProvisioningJob)
def get_provisioning_job(job_id: str, orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_job(job_id)


# ---------------------------------------------------------------------------
# ePO connections


@app.post("/epo/test-connection", summary="Test connectivity to an ePO server")
def epo_test_connection(
    req: EpoConnectionRequest,
    settings: Settings = Depends(get_settings),
    factory: epo_sessions.ClientFactory = Depends(get_client_factory),
):
    """Check that an ePO server answers. Missing fields fall back to the service account."""
    return epo_sessions.test_connection(
        factory,
        server_url=req.server_url or settings.epo_server_url,
        username=req.username or settings.epo_username,
        password=req.password or settings.epo_password,
        port=req.port,
        ca_certificate=req.ca_certificate,
        pin_certificate=req.pin_certificate,
    )


@app.post("/epo/login", summary="Open an ePO session for the signed-in user")
def epo_login(
    req: EpoLoginRequest,
    user: AuthUser = Depends(get_current_user),
    store: Store = Depends(get_store),
    factory: epo_sessions.ClientFactory = Depends(get_client_factory),
):
    return epo_sessions.login(
        store,
        factory,
        user_id=user.id,
        connection_id=req.connection_id,
        server_url=req.server_url,
        username=req.username,
        password=req.password,
        port=req.port,
    )


@app.post("/epo/logout", summary="Close an ePO session")
def epo_logout(
    req: EpoLogoutRequest,
    user: AuthUser = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    return epo_sessions.logout(store, user.id, req.connection_id)


@app.post("/epo/health-check", summary="Check an ePO server with session or basic auth")
def epo_health_check(
    req: EpoCallRequest,
    user: AuthUser = Depends(get_current_user),
    store: Store = Depends(get_store),
    factory: epo_sessions.ClientFactory = Depends(get_client_factory),
):
    return epo_sessions.health_check(
        store,
        factory,
        server_url=req.server_url,
        port=req.port,
        use_session=req.use_session,
        user_id=user.id,
        connection_id=req.connection_id,
        username=req.username,
        password=req.password,
    )


@app.post("/epo/proxy", summary="Run an ePO remote command")
def epo_proxy(
    req: EpoProxyRequest,
    user: AuthUser = Depends(get_current_user),
    store: Store = Depends(get_store),
    factory: epo_sessions.ClientFactory = Depends(get_client_factory),
):
    return epo_sessions.proxy(
        store,
        factory,
        server_url=req.server_url,
        endpoint=req.endpoint,
        port=req.port,
        output_type=req.output_type,
        parameters=req.parameters,
        use_session=req.use_session,
        user_id=user.id,
        connection_id=req.connection_id,
        username=req.username,
        password=req.password,
    )


# ---------------------------------------------------------------------------
# Webhooks


@app.post("/webhooks/epo", summary="Receive an event from the ePO server")
def epo_webhook(payload: Dict[str, Any], store: Store = Depends(get_store)):
    return process_epo_event(store, payload)


@app.post("/webhooks/stripe", summary="Receive a Stripe event")
async def stripe_webhook(
    request: Request,
    store: Store = Depends(get_store),
    settings: Settings = Depends(get_settings),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    """Verify and process a Stripe webhook.

    The raw body is needed for signature verification, so this handler
    reads it directly and hands the blocking work to a thread.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    processor = billing.StripeWebhookProcessor(store, settings, orchestrator.start_onboarding)
    return await run_in_threadpool(processor.process, payload, signature)


# ---------------------------------------------------------------------------
# Billing


@app.post("/billing/checkout", summary="Create a Stripe checkout session")
def create_checkout(
    req: CheckoutRequest,
    request: Request,
    user: AuthUser = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
):
    return billing.create_checkout(
        settings,
        user,
        plan_type=req.plan_type,
        customer_id=req.customer_id,
        price_amount=req.price_amount,
        origin=request.headers.get("origin"),
    )


@app.post("/billing/portal-session", summary="Open the Stripe billing portal")
def create_portal_session(
    user: AuthUser = Depends(get_current_user),
    store: Store = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    customer = customer_for_user(store, user)
    return billing.create_portal_session(settings, customer.get("stripe_customer_id"))


# ---------------------------------------------------------------------------
# Notifications


@app.post("/notifications", summary="Send a notification to one user")
def send_notification(
    req: NotificationRequest,
    admin_user: AuthUser = Depends(get_admin_user),
    store: Store = Depends(get_store),
):
    return notifications.send_notification(store, req.user_id, req.title, req.message, type=req.type, data=req.data)


@app.post("/notifications/bulk", summary="Send the same notification to many users")
def send_bulk_notifications(
    req: BulkNotificationRequest,
    admin_user: AuthUser = Depends(get_admin_user),
    store: Store = Depends(get_store),
):
    return notifications.send_bulk_notifications(
        store, req.user_ids, req.title, req.message, type=req.type, data=req.data
    )


@app.post("/notifications/email", summary="Queue an e-mail")
def send_email(req: EmailRequest, admin_user: AuthUser = Depends(get_admin_user), store: Store = Depends(get_store)):
    return notifications.send_email(store, req.to, req.subject, req.body)


@app.post("/notifications/sms", summary="Queue an SMS")
def send_sms(req: SmsRequest, admin_user: AuthUser = Depends(get_admin_user), store: Store = Depends(get_store)):
    return notifications.send_sms(store, req.to, req.message)


@app.get("/users/{user_id}/notifications", summary="List notifications for a user")
def list_notifications(
    user_id: str,
    unread_only: bool = False,
    user: AuthUser = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    """List a user's notifications, newest first.

    Users may read their own; admins may read anyone's.
    """
    require_self_or_admin(user, store, user_id)
    return notifications.list_for_user(store, user_id, unread_only=unread_only)


@app.post("/users/{user_id}/notifications/{notification_id}/read", summary="Mark a notification read")
def mark_notification_read(
    user_id: str,
    notification_id: str,
    user: AuthUser = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    require_self_or_admin(user, store, user_id)
    return notifications.mark_read(store, user_id, notification_id)


# ---------------------------------------------------------------------------
# Rate limiting and usage


@app.post("/rate-limit/check", summary="Count a request against a rate limit")
def rate_limit_check(req: RateLimitRequest, store: Store = Depends(get_store)):
    result = check_rate_limit(store, req.identifier, limit=req.limit, window_seconds=req.window_seconds)
    return JSONResponse(status_code=200 if result["allowed"] else 429, content=result)


@app.post("/usage/reconcile", summary="Reconcile endpoint usage for all active customers")
def usage_reconcile(
    req: ReconcileRequest,
    store: Store = Depends(get_store),
    epo_factory: Callable[[], EpoClient] = Depends(get_epo_factory),
):
    return reconcile_usage(store, epo_factory, req.date)


# ---------------------------------------------------------------------------
# Customer portal


@app.get("/portal/dashboard", summary="Dashboard for the signed-in customer")
def portal_dashboard(user: AuthUser = Depends(get_current_user), store: Store = Depends(get_store)):
    return portal.dashboard(store, user)


@app.get("/portal/endpoints", summary="Paginated endpoints for the signed-in customer")
def portal_endpoints(
    page: int = 1,
    limit: int = 25,
    user: AuthUser = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    return portal.endpoints(store, user, page=page, limit=limit)


@app.get("/portal/billing", summary="Subscription and usage history")
def portal_billing(user: AuthUser = Depends(get_current_user), store: Store = Depends(get_store)):
    return portal.billing(store, user)


@app.get("/portal/installers", summary="Agent installers for the signed-in customer")
def portal_installers(user: AuthUser = Depends(get_current_user), store: Store = Depends(get_store)):
    return portal.installers(store, user)


# ---------------------------------------------------------------------------
# Agent packages


@app.post("/agents/grant-latest", summary="Grant the newest agent package to the signed-in user")
def grant_latest_agent(user: AuthUser = Depends(get_current_user), store: Store = Depends(get_store)):
    return agents.grant_latest_agent(store, user)


@app.post("/agents/grant-latest/bulk", summary="Grant the newest agent package to every subscribed user")
def grant_latest_agent_bulk(admin_user: AuthUser = Depends(get_admin_user), store: Store = Depends(get_store)):
    return agents.grant_latest_agent_bulk(store, admin_user)


@app.post("/agents/download-status", summary="Agent availability per user")
def agent_download_status(
    req: DownloadStatusRequest,
    user: AuthUser = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    """Report agent availability for ``user_ids``.

    A regular user may only ask about themselves; admins may ask about
    any list of users.
    """
    for user_id in req.user_ids:
        require_self_or_admin(user, store, user_id)
    return agents.download_status(store, req.user_ids)


# ---------------------------------------------------------------------------
# Administration


@app.post("/admin/users", summary="Create a portal user")
def admin_create_user(
    req: CreateUserRequest,
    admin_user: AuthUser = Depends(get_admin_user),
    store: Store = Depends(get_store),
):
    """Create a user directly, skipping e-mail confirmation.

    With ``role`` set to ``admin`` the new user is also an administrator.
    """
    return admin.create_user(store, build_authenticator(store), req.email, req.name, req.password, role=req.role)


@app.get("/admin/profiles", summary="List all user profiles")
def admin_list_profiles(admin_user: AuthUser = Depends(get_admin_user), store: Store = Depends(get_store)):
    return admin.list_profiles(store)


@app.post("/admin/ping", summary="Check that a host answers from the portal")
def admin_ping(
    req: PingRequest,
    admin_user: AuthUser = Depends(get_admin_user),
    store: Store = Depends(get_store),
    transport: Optional[httpx.BaseTransport] = Depends(get_ping_transport),
):
    return admin.admin_ping(
        store,
        admin_user.id,
        req.target,
        method=req.method,
        port=req.port,
        attempts=req.attempts,
        transport=transport,
    )


@app.post("/security-updates/{update_id}/download", summary="Get the download link for a security update")
def security_update_download(
    update_id: str,
    user: AuthUser = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    return admin.security_update_download(store, update_id, user_id=user.id)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
