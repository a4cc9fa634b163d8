"""Per-user ePO connections: session login/logout, health checks and proxying.

Portal users may point the UI at their own ePO servers. A successful
login stores the ``JSESSIONID`` for ``(user_id, connection_id)`` so later
calls can reuse it instead of sending credentials each time.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

import httpx
from fastapi import HTTPException

from .epo_client import DEFAULT_PORT, EpoClient, EpoError, build_ssl_context
from .storage import Store, utcnow_iso

logger = logging.getLogger(__name__)

SESSIONS_TABLE = "epo_sessions"

ClientFactory = Callable[..., EpoClient]


def default_client_factory(transport: Optional[httpx.BaseTransport] = None) -> ClientFactory:
    def factory(**kwargs: Any) -> EpoClient:
        return EpoClient(transport=transport, **kwargs)

    return factory


def get_active_session(store: Store, user_id: str, connection_id: str) -> Dict[str, Any]:
    session = store.select_one(
        SESSIONS_TABLE,
        filters={"user_id": user_id, "connection_id": connection_id},
        gte={"expires_at": utcnow_iso()},
    )
    if not session:
        raise HTTPException(status_code=401, detail="No valid session found. Please authenticate first.")
    return session


def test_connection(
    factory: ClientFactory,
    server_url: str,
    username: Optional[str],
    password: Optional[str],
    port: int = DEFAULT_PORT,
    ca_certificate: Optional[str] = None,
    pin_certificate: bool = False,
) -> Dict[str, Any]:
    """Check that an ePO server answers, returning a diagnostic payload.

    Connection errors are reported in the body rather than raised so the
    UI can show the suggestions next to the form.
    """
    analysis = None
    verify: Any = True
    if ca_certificate:
        verify, analysis = build_ssl_context(ca_certificate)
        logger.info("Using %d custom CA certificate(s) for connection test", analysis["ca_certs"])

    try:
        with factory(server_url=server_url, username=username, password=password, port=port, verify=verify) as client:
            result = client.test_connection()
    except EpoError as exc:
        body = exc.to_dict()
        body["server_url"] = server_url
        return body
    result["certificate_analysis"] = analysis
    if "connection_details" in result:
        result["connection_details"]["custom_ca_used"] = bool(ca_certificate)
        result["connection_details"]["certificate_pinning"] = bool(pin_certificate)
    return result


def login(
    store: Store,
    factory: ClientFactory,
    user_id: str,
    connection_id: str,
    server_url: str,
    username: str,
    password: str,
    port: int = DEFAULT_PORT,
) -> Dict[str, Any]:
    with factory(server_url=server_url, username=username, password=password, port=port) as client:
        token, expires_at = client.login()
    store.upsert(
        SESSIONS_TABLE,
        {
            "user_id": user_id,
            "connection_id": connection_id,
            "session_token": token,
            "expires_at": expires_at,
        },
        on_conflict=("user_id", "connection_id"),
    )
    logger.info("Stored ePO session for user %s connection %s", user_id, connection_id)
    return {"success": True, "message": "Authentication successful", "expires_at": expires_at}


def logout(store: Store, user_id: str, connection_id: str) -> Dict[str, Any]:
    store.delete(SESSIONS_TABLE, {"user_id": user_id, "connection_id": connection_id})
    return {"success": True, "message": "Logged out successfully"}


def _client_for(
    store: Store,
    factory: ClientFactory,
    server_url: str,
    port: int,
    use_session: bool,
    user_id: Optional[str],
    connection_id: Optional[str],
    username: Optional[str],
    password: Optional[str],
) -> EpoClient:
    if use_session and user_id and connection_id:
        session = get_active_session(store, user_id, connection_id)
        return factory(server_url=server_url, port=port, session_token=session["session_token"])
    if not username or not password:
        raise HTTPException(status_code=400, detail="Missing credentials for basic authentication")
    return factory(server_url=server_url, port=port, username=username, password=password)


def health_check(
    store: Store,
    factory: ClientFactory,
    server_url: str,
    port: int = DEFAULT_PORT,
    use_session: bool = False,
    user_id: Optional[str] = None,
    connection_id: Optional[str] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
) -> Dict[str, Any]:
    with _client_for(store, factory, server_url, port, use_session, user_id, connection_id, username, password) as client:
        data = client.list_agent_handlers()
    return {"success": True, "status": "healthy", "data": data}


def proxy(
    store: Store,
    factory: ClientFactory,
    server_url: str,
    endpoint: str,
    port: int = DEFAULT_PORT,
    output_type: str = "json",
    parameters: Optional[Dict[str, Any]] = None,
    use_session: bool = False,
    user_id: Optional[str] = None,
    connection_id: Optional[str] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
) -> Dict[str, Any]:
    """Forward an arbitrary remote command and return its output."""
    if not endpoint:
        raise HTTPException(status_code=400, detail="endpoint is required")
    with _client_for(store, factory, server_url, port, use_session, user_id, connection_id, username, password) as client:
        if output_type == "json":
            data = client.command(endpoint, **(parameters or {}))
        else:
            data = client.command_raw(endpoint, output=output_type, **(parameters or {}))
    return {"success": True, "data": data, "endpoint": endpoint, "output_type": output_type}
