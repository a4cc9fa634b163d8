"""Tests for per-user ePO sessions, health checks and the command proxy."""

from datetime import timedelta

import httpx
import pytest
from fastapi import HTTPException

from epo_portal import epo_sessions
from epo_portal.epo_client import EpoError
from epo_portal.storage import utcnow

SERVER = "https://epo.example.com"


@pytest.fixture
def factory(epo_transport):
    return epo_sessions.default_client_factory(epo_transport)


def test_test_connection_reports_details(factory):
    result = epo_sessions.test_connection(factory, SERVER, "admin", "pw", pin_certificate=True)
    assert result["success"] is True
    assert result["certificate_analysis"] is None
    assert result["connection_details"]["custom_ca_used"] is False
    assert result["connection_details"]["certificate_pinning"] is True


def test_test_connection_returns_errors_in_body():
    def refuse(request):
        raise httpx.ConnectTimeout("timed out")

    factory = epo_sessions.default_client_factory(httpx.MockTransport(refuse))
    result = epo_sessions.test_connection(factory, SERVER, "admin", "pw")
    assert result["success"] is False
    assert result["error"] == "Connection timeout - server not reachable"
    assert result["server_url"] == SERVER
    assert result["suggestions"]


def test_test_connection_rejects_bad_ca_bundle(factory):
    with pytest.raises(EpoError) as excinfo:
        epo_sessions.test_connection(factory, SERVER, "admin", "pw", ca_certificate="not a certificate")
    assert excinfo.value.status_code == 400


def test_login_stores_one_session_per_connection(store, factory):
    first = epo_sessions.login(store, factory, "user-1", "conn-1", SERVER, "admin", "pw")
    epo_sessions.login(store, factory, "user-1", "conn-1", SERVER, "admin", "pw")
    assert first["success"] is True
    assert store.count("epo_sessions") == 1
    session = epo_sessions.get_active_session(store, "user-1", "conn-1")
    assert session["session_token"] == "sess-123"


def test_expired_session_is_rejected(store):
    store.insert(
        "epo_sessions",
        {
            "user_id": "user-1",
            "connection_id": "conn-1",
            "session_token": "old",
            "expires_at": (utcnow() - timedelta(hours=1)).isoformat(),
        },
    )
    with pytest.raises(HTTPException) as excinfo:
        epo_sessions.get_active_session(store, "user-1", "conn-1")
    assert excinfo.value.status_code == 401


def test_logout(store, factory):
    epo_sessions.login(store, factory, "user-1", "conn-1", SERVER, "admin", "pw")
    assert epo_sessions.logout(store, "user-1", "conn-1")["success"] is True
    assert store.count("epo_sessions") == 0


def test_health_check_with_session(store, factory, fake_epo):
    epo_sessions.login(store, factory, "user-1", "conn-1", SERVER, "admin", "pw")
    result = epo_sessions.health_check(
        store, factory, SERVER, use_session=True, user_id="user-1", connection_id="conn-1"
    )
    assert result == {"success": True, "status": "healthy", "data": [{"handlerName": "main"}]}
    call = fake_epo.commands("agentmgmt.listAgentHandlers")[0]
    assert call["headers"]["cookie"] == "JSESSIONID=sess-123"


def test_health_check_requires_credentials(store, factory):
    with pytest.raises(HTTPException) as excinfo:
        epo_sessions.health_check(store, factory, SERVER)
    assert excinfo.value.status_code == 400


def test_proxy_forwards_parameters(store, factory, fake_epo):
    fake_epo.groups["Acme-Corp-OU"] = 7
    result = epo_sessions.proxy(
        store,
        factory,
        SERVER,
        "system.findGroups",
        parameters={"searchText": "Acme"},
        username="admin",
        password="pw",
    )
    assert result["success"] is True
    assert result["data"][0]["groupId"] == 7
    assert result["endpoint"] == "system.findGroups"


def test_proxy_raw_output(store, factory, fake_epo):
    result = epo_sessions.proxy(
        store, factory, SERVER, "core.help", output_type="xml", username="admin", password="pw"
    )
    assert result["data"].startswith("OK:")
    assert fake_epo.commands("core.help")[0]["params"][":output"] == "xml"


def test_proxy_requires_endpoint(store, factory):
    with pytest.raises(HTTPException):
        epo_sessions.proxy(store, factory, SERVER, "", username="admin", password="pw")
