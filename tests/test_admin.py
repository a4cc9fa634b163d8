"""Tests for admin-only operations and the admin role gate."""

import httpx
import pytest
from fastapi import HTTPException

from conftest import admin_headers, auth_headers, seed_customer
from epo_portal import admin
from epo_portal.agents import grant_latest_agent_bulk
from epo_portal.auth import TokenTableAuth, has_role
from epo_portal.models import AuthUser

ADMIN = AuthUser(id="admin-1", email="ops@portal.test")


def add_package(store, version="5.8.1", **extra):
    return store.insert(
        "agent_packages",
        {"name": "Trellix Agent", "version": version, "is_active": True, "platform": "windows", **extra},
    )[0]


def test_has_role(store):
    store.insert("user_roles", {"user_id": "u-1", "role": "admin"})
    assert has_role(store, "u-1", "admin")
    assert not has_role(store, "u-2", "admin")
    assert not has_role(store, "u-1", "auditor")


def test_create_user_with_admin_role(store):
    result = admin.create_user(store, TokenTableAuth(store), "new@portal.test", "New Admin", "pw", role="admin")
    assert result["success"] is True
    assert result["message"] == "User created successfully"
    assert result["email"] == "new@portal.test"
    assert store.select_one("profiles", filters={"id": result["user_id"]})["name"] == "New Admin"
    assert has_role(store, result["user_id"], "admin")


def test_create_user_validation(store):
    auth = TokenTableAuth(store)
    with pytest.raises(HTTPException) as excinfo:
        admin.create_user(store, auth, "new@portal.test", None, "pw")
    assert excinfo.value.detail == "Email, name, and password are required"

    plain = admin.create_user(store, auth, "new@portal.test", "New", "pw")
    assert not has_role(store, plain["user_id"], "admin")
    with pytest.raises(HTTPException) as excinfo:
        admin.create_user(store, auth, "new@portal.test", "Again", "pw")
    assert excinfo.value.status_code == 400


def test_list_profiles_sorted_and_projected(store):
    store.insert("profiles", [
        {"id": "p-2", "name": "Zoe", "email": "z@x.test", "department": "IT", "is_online": True, "secret": "x"},
        {"id": "p-1", "name": "Adam", "email": "a@x.test"},
    ])
    profiles = admin.list_profiles(store)
    assert [p["name"] for p in profiles] == ["Adam", "Zoe"]
    assert profiles[1] == {"id": "p-2", "name": "Zoe", "email": "z@x.test", "department": "IT", "is_online": True}


def test_bulk_grant(store):
    seed_customer(store)
    seed_customer(store, company="Globex", user_id="user-2", email="x@globex.test")
    seed_customer(store, company="Lapsed", plan_type=None, user_id="user-3", email="x@lapsed.test")
    add_package(store)
    store.insert(
        "agent_downloads",
        {"user_id": "user-2", "agent_name": "Trellix Agent", "agent_version": "5.8.1", "status": "available"},
    )

    result = grant_latest_agent_bulk(store, ADMIN)

    assert result["processed"] == 2
    assert result["assigned"] == 1
    assert "errors" not in result
    granted = store.select_one("agent_downloads", filters={"user_id": "user-1"})
    assert granted["assigned_by_admin"] == "admin-1"
    assert granted["status"] == "available"
    assert store.count("agent_downloads", filters={"user_id": "user-3"}) == 0


def test_bulk_grant_without_package_or_subscribers(store):
    with pytest.raises(HTTPException) as excinfo:
        grant_latest_agent_bulk(store, ADMIN)
    assert excinfo.value.status_code == 404

    add_package(store)
    result = grant_latest_agent_bulk(store, ADMIN)
    assert result == {"success": True, "message": "No users with active subscriptions found.", "processed": 0, "assigned": 0}


def test_bulk_grant_collects_errors(store, monkeypatch):
    seed_customer(store)
    seed_customer(store, company="Globex", user_id="user-2", email="x@globex.test")
    add_package(store)
    original = store.insert

    def insert(table, rows):
        if table == "agent_downloads" and rows["user_id"] == "user-1":
            raise RuntimeError("duplicate key")
        return original(table, rows)

    monkeypatch.setattr(store, "insert", insert)
    result = grant_latest_agent_bulk(store, ADMIN)
    assert result["processed"] == 2
    assert result["assigned"] == 1
    assert result["errors"] == ["User user-1: duplicate key"]


def ping_transport(status=200, error=None):
    seen = []

    def handler(request):
        seen.append(request)
        if error:
            raise error
        return httpx.Response(status)

    return httpx.MockTransport(handler), seen


def test_ping_success_logs_each_attempt(store, monkeypatch):
    monkeypatch.setattr(admin, "PING_INTERVAL_SECONDS", 0)
    transport, seen = ping_transport()

    result = admin.admin_ping(store, "admin-1", "10.0.0.5", method="https", port=8443, attempts=2, transport=transport)

    assert result["target"] == "10.0.0.5"
    assert result["total_attempts"] == 2
    assert [r["status"] for r in result["results"]] == ["success", "success"]
    assert (seen[0].url.scheme, seen[0].url.host, seen[0].url.port) == ("https", "10.0.0.5", 8443)
    assert seen[0].method == "HEAD"
    assert seen[0].headers["user-agent"] == "Trellix-ePO-Admin-Ping/1.0"
    logs = store.select("network_ping_logs", order_by="attempt_index")
    assert [log["attempt_index"] for log in logs] == [1, 2]
    assert logs[0]["resolved_ip"] == "10.0.0.5"


def test_ping_url_target_overrides_method(store):
    transport, seen = ping_transport(status=503)
    result = admin.admin_ping(store, "admin-1", "https://epo.example.com:8443/remote", transport=transport)
    assert (result["target"], result["method"], result["port"]) == ("epo.example.com", "https", 8443)
    assert result["results"][0]["status"] == "unreachable"
    assert store.select_one("network_ping_logs")["resolved_ip"] is None


@pytest.mark.parametrize(
    "method, error, status",
    [
        ("http", httpx.ReadTimeout("slow"), "timeout"),
        ("http", httpx.ConnectError("refused"), "error"),
        ("tcp", httpx.ConnectError("refused"), "timeout"),
    ],
)
def test_ping_failures(store, method, error, status):
    transport, _ = ping_transport(error=error)
    result = admin.admin_ping(store, "admin-1", "host.internal", method=method, port=22, transport=transport)
    assert result["results"][0]["status"] == status
    assert result["results"][0]["error_message"]


def test_ping_validation(store):
    for target, method in ((None, "http"), ("host", "icmp")):
        with pytest.raises(HTTPException) as excinfo:
            admin.admin_ping(store, "admin-1", target, method=method)
        assert excinfo.value.status_code == 400


def test_security_update_download(store):
    update = store.insert(
        "security_updates",
        {"name": "ENS  Content Update", "type": "dat", "version": "4521", "file_size": 1024},
    )[0]

    result = admin.security_update_download(store, update["id"], user_id="user-1")

    assert result["downloadUrl"] == "https://updates.trellix.com/packages/dat/4521/ENS_Content_Update.zip"
    assert result["filename"] == "ENS_Content_Update_v4521.zip"
    assert result["fileSize"] == 1024
    audit = store.select_one("audit_logs")
    assert audit["action"] == "security_update_download"
    assert audit["resource_id"] == update["id"]
    assert audit["details"]["update_type"] == "dat"

    with pytest.raises(HTTPException) as excinfo:
        admin.security_update_download(store, "missing")
    assert excinfo.value.status_code == 404


def test_admin_routes_are_gated(client, store):
    user = auth_headers(store)
    for method, path in (
        ("post", "/admin/users"),
        ("get", "/admin/profiles"),
        ("post", "/admin/ping"),
        ("post", "/agents/grant-latest/bulk"),
    ):
        kwargs = {"json": {}} if method == "post" else {}
        assert getattr(client, method)(path, **kwargs).status_code == 401
        response = getattr(client, method)(path, headers=user, **kwargs)
        assert response.status_code == 403
        assert response.json()["detail"] == "Admin access required"


def test_admin_routes(client, store):
    import main

    headers = admin_headers(store)
    created = client.post(
        "/admin/users", json={"email": "new@portal.test", "name": "Newbie", "password": "pw"}, headers=headers
    )
    assert created.status_code == 200
    assert [p["email"] for p in client.get("/admin/profiles", headers=headers).json()] == ["new@portal.test"]

    transport, _ = ping_transport()
    main.app.dependency_overrides[main.get_ping_transport] = lambda: transport
    ping = client.post("/admin/ping", json={"target": "epo.example.com"}, headers=headers)
    assert ping.json()["results"][0]["status"] == "success"

    seed_customer(store)
    add_package(store)
    bulk = client.post("/agents/grant-latest/bulk", headers=headers).json()
    assert bulk["assigned"] == 1

    update = store.insert("security_updates", {"name": "DAT", "type": "dat", "version": "1"})[0]
    download = client.post(f"/security-updates/{update['id']}/download", headers=auth_headers(store))
    assert download.json()["filename"] == "DAT_v1.zip"
