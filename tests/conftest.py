"""Shared fixtures: an in-memory store, a fake ePO server and an API client."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl

import httpx
import pytest

from epo_portal.config import Settings
from epo_portal.epo_client import EpoClient
from epo_portal.storage import MemoryStore


def epo_ok(data: Any) -> str:
    return "OK:\n" + json.dumps(data)


class FakeEpo:
    """Minimal stand-in for the ePO ``/remote`` command API."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.groups: Dict[str, int] = {}
        self.next_group_id = 100
        self.systems: Dict[int, List[Dict[str, Any]]] = {}
        self.fail_commands: Dict[str, str] = {}
        self.raw_replies: Dict[str, str] = {}
        self.group_root = "My Organization"
        self.policies = [
            {"objectId": 11, "objectName": "ENS Threat Prevention Starter", "productId": "ENDP_AM_1000", "typeId": 1},
            {"objectId": 21, "objectName": "ENS Threat Prevention Professional", "productId": "ENDP_AM_1000", "typeId": 1},
            {"objectId": 22, "objectName": "ENS Firewall Professional", "productId": "ENDP_FW_1000", "typeId": 2},
            {"objectId": 31, "objectName": "ENS Threat Prevention Enterprise", "productId": "ENDP_AM_1000", "typeId": 1},
            {"objectId": 32, "objectName": "ENS Firewall Enterprise", "productId": "ENDP_FW_1000", "typeId": 2},
            {"objectId": 33, "objectName": "ENS Web Control Enterprise", "productId": "ENDP_WP_1000", "typeId": 3},
        ]

    def commands(self, name: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["command"] == name]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        command = request.url.path.rsplit("/", 1)[-1]
        params = dict(parse_qsl(request.content.decode())) if request.content else {}
        self.calls.append({"command": command, "params": params, "headers": dict(request.headers), "method": request.method})

        if command in self.fail_commands:
            return httpx.Response(200, text=f"Error 1:\n{self.fail_commands[command]}")
        if command in self.raw_replies:
            return httpx.Response(200, text=self.raw_replies[command])

        if command == "core.help":
            if request.method == "POST":
                return httpx.Response(200, text=epo_ok([]), headers={"set-cookie": "JSESSIONID=sess-123; Path=/; Secure"})
            return httpx.Response(200, text=epo_ok([]))
        if command == "agentmgmt.listAgentHandlers":
            return httpx.Response(200, text=epo_ok([{"handlerName": "main"}]))
        if command == "system.findGroups":
            text = params.get("searchText", "")
            found = [
                {"groupId": gid, "groupPath": f"{self.group_root}\\{name}"}
                for name, gid in self.groups.items()
                if text in name
            ]
            return httpx.Response(200, text=epo_ok(found))
        if command == "system.createGroup":
            gid = self.next_group_id
            self.next_group_id += 1
            self.groups[params["groupName"]] = gid
            return httpx.Response(200, text=epo_ok(gid))
        if command == "policy.find":
            text = params.get("searchText", "")
            return httpx.Response(200, text=epo_ok([p for p in self.policies if text in p["objectName"]]))
        if command == "policy.assignToGroup":
            return httpx.Response(200, text=epo_ok(True))
        if command == "agentmgmt.createAgentDeploymentUrlCmd":
            return httpx.Response(200, text=epo_ok(f"https://epo.example.com:8443/deploy/{params['urlName']}"))
        if command == "epogroup.findSystems":
            return httpx.Response(200, text=epo_ok(self.systems.get(int(params["groupId"]), [])))
        return httpx.Response(200, text="Error 1:\nUnknown command")


@pytest.fixture
def settings() -> Settings:
    return Settings(
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test_secret",
        epo_server_url="https://epo.example.com",
        epo_username="svc-portal",
        epo_password="s3cret",
        frontend_url="https://portal.example.com",
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def fake_epo() -> FakeEpo:
    return FakeEpo()


@pytest.fixture
def epo_transport(fake_epo) -> httpx.MockTransport:
    return httpx.MockTransport(fake_epo)


@pytest.fixture
def epo_factory(settings, epo_transport):
    return lambda: EpoClient.from_settings(settings, transport=epo_transport)


def seed_customer(
    store: MemoryStore,
    company: str = "Acme Corp",
    plan_type: Optional[str] = "pro",
    user_id: Optional[str] = "user-1",
    email: str = "owner@acme.test",
    **extra: Any,
) -> Dict[str, Any]:
    """Insert a customer, optionally with an active subscription and a linked user."""
    customer = store.insert(
        "customers",
        {
            "company_name": company,
            "ou_group_name": company.replace(" ", "-") + "-OU",
            "contact_email": email,
            "status": "active",
            **extra,
        },
    )[0]
    if plan_type:
        store.insert(
            "customer_subscriptions",
            {
                "customer_id": customer["id"],
                "stripe_subscription_id": f"sub_{customer['id'][:8]}",
                "plan_type": plan_type,
                "status": "active",
            },
        )
    if user_id:
        store.insert(
            "customer_users",
            {"user_id": user_id, "customer_id": customer["id"], "role": "admin", "is_primary": True},
        )
    return customer


def auth_headers(store: MemoryStore, user_id: str = "user-1", email: str = "owner@acme.test") -> Dict[str, str]:
    token = f"token-{user_id}"
    if not store.select_one("api_tokens", filters={"token": token}):
        store.insert("api_tokens", {"token": token, "user_id": user_id, "email": email})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(store, settings, epo_transport, epo_factory):
    from fastapi.testclient import TestClient

    import main
    from epo_portal.epo_sessions import default_client_factory

    main.app.dependency_overrides[main.get_store] = lambda: store
    main.app.dependency_overrides[main.get_settings] = lambda: settings
    main.app.dependency_overrides[main.get_epo_factory] = lambda: epo_factory
    main.app.dependency_overrides[main.get_client_factory] = lambda: default_client_factory(epo_transport)
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


def admin_headers(store: MemoryStore, user_id: str = "admin-1", email: str = "ops@portal.test") -> Dict[str, str]:
    if not store.select_one("user_roles", filters={"user_id": user_id, "role": "admin"}):
        store.insert("user_roles", {"user_id": user_id, "role": "admin"})
    return auth_headers(store, user_id, email)
