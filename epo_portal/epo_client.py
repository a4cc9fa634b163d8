"""Client for the Trellix ePO remote-command API.

ePO exposes every operation as ``/remote/<command>``. Parameters are
form-encoded, ``:output=json`` selects JSON output, and the body of a
reply starts with a status line::

    OK:
    [{"groupId": 7, "groupPath": "My Organization\\Acme-OU"}]

or::

    Error 1:
    Unknown command

The helpers below hide that framing, the two authentication modes
(HTTP Basic or a ``JSESSIONID`` session cookie) and the TLS set-up for
servers signed by a private CA.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import ssl
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx

from .config import Settings
from .storage import utcnow

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8443
SESSION_LIFETIME = timedelta(hours=24)
USER_AGENT = "Trellix-EPO-Integration/1.0"

_BEGIN = "-----BEGIN CERTIFICATE-----"
_END = "-----END CERTIFICATE-----"
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")
_STATUS_RE = re.compile(r"^(OK|Error\s*(-?\d+))\s*:\s*", re.IGNORECASE)


class EpoError(Exception):
    """An ePO call failed, either in transport or as a command error."""

    def __init__(
        self,
        message: str,
        suggestions: Optional[List[str]] = None,
        status_code: Optional[int] = None,
        original: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.suggestions = suggestions or []
        self.status_code = status_code
        self.original = original

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.message}
        if self.suggestions:
            body["suggestions"] = self.suggestions
        if self.original and self.original != self.message:
            body["original_error"] = self.original
        return body


def normalize_base_url(url: Optional[str]) -> Optional[str]:
    """Return ``url`` as ``scheme://host[:port]`` without any ``/remote`` path."""
    if not url:
        return url
    normalized = url.strip().rstrip("/")
    normalized = re.sub(r"/remote.*$", "", normalized)
    if not normalized.startswith(("http://", "https://")):
        normalized = f"https://{normalized}"
    return normalized


def parse_pem_certificates(pem_data: Optional[str]) -> Tuple[List[str], Dict[str, Any]]:
    """Split a bundle of PEM certificates and keep the well-formed ones."""
    analysis: Dict[str, Any] = {
        "total_certs": 0,
        "ca_certs": 0,
        "invalid_certs": 0,
        "details": [],
    }
    if not pem_data or not pem_data.strip():
        return [], analysis

    blocks = [block.strip() + _END for block in pem_data.split(_END)]
    blocks = [b for b in blocks if _BEGIN in b and len(b) > 50]
    analysis["total_certs"] = len(blocks)

    certs: List[str] = []
    for block in blocks:
        body = block[block.index(_BEGIN):]
        data = re.sub(r"\s", "", body.replace(_BEGIN, "").replace(_END, ""))
        try:
            if not _BASE64_RE.match(data):
                raise ValueError("certificate body is not base64")
            base64.b64decode(data, validate=True)
        except (ValueError, binascii.Error) as exc:
            analysis["invalid_certs"] += 1
            analysis["details"].append(
                {"index": len(analysis["details"]) + 1, "type": "invalid", "error": str(exc), "format": "invalid_pem"}
            )
            continue
        certs.append(body)
        analysis["ca_certs"] += 1
        analysis["details"].append(
            {"index": len(certs), "type": "ca", "size": len(data), "format": "valid_pem"}
        )
    return certs, analysis


def map_connection_error(error: str) -> Tuple[str, List[str]]:
    """Translate a low-level connection error into something an operator can act on."""
    lowered = error.lower()
    if "handshakefailure" in lowered or "handshake" in lowered or "tls" in lowered or "ssl" in lowered:
        return "TLS handshake failed - certificate or encryption issue", [
            "Ensure EPO server uses valid TLS certificate from trusted CA",
            "Check if server supports TLS 1.2 or higher",
            "Use hostname instead of IP address in server URL",
            "Verify firewall allows HTTPS traffic on specified port",
        ]
    if "certificate" in lowered or "cert" in lowered:
        return "SSL certificate validation failed", [
            "Use hostname that matches certificate CN/SAN",
            "Ensure certificate is from trusted CA",
            "Check certificate expiration date",
        ]
    if "timeout" in lowered or "timed out" in lowered or "connect" in lowered:
        return "Connection timeout - server not reachable", [
            "Check server URL and port",
            "Verify EPO server is running and accessible",
            "Check firewall and network connectivity",
        ]
    return error, ["Check server configuration and connectivity"]


def parse_command_output(text: str) -> Any:
    """Strip ePO's ``OK:``/``Error N:`` framing and decode JSON payloads."""
    match = _STATUS_RE.match(text or "")
    if not match:
        payload = text
    elif match.group(1).upper() == "OK":
        payload = text[match.end():]
    else:
        message = text[match.end():].strip() or "ePO command failed"
        raise EpoError(f"ePO error {match.group(2)}: {message}")
    payload = (payload or "").strip()
    if not payload:
        return None
    try:
        return json.loads(payload)
    except ValueError:
        return payload


def build_ssl_context(ca_certificates: str) -> Tuple[ssl.SSLContext, Dict[str, Any]]:
    certs, analysis = parse_pem_certificates(ca_certificates)
    if not certs:
        raise EpoError(
            "No valid certificates found in provided PEM data",
            suggestions=[
                "Ensure certificates are in PEM format",
                "Check for proper BEGIN/END certificate markers",
                "Verify base64 encoding is valid",
            ],
            status_code=400,
        )
    try:
        context = ssl.create_default_context(cadata="\n".join(certs))
    except ssl.SSLError as exc:
        raise EpoError(
            f"Certificate processing failed: {exc}",
            suggestions=[
                "Verify PEM format is correct",
                "Check for certificate corruption",
                "Ensure proper line endings in certificate data",
            ],
            status_code=400,
        ) from exc
    return context, analysis


class EpoClient:
    """Thin synchronous wrapper around ``/remote/<command>`` calls."""

    def __init__(
        self,
        server_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        port: int = DEFAULT_PORT,
        verify: Union[bool, ssl.SSLContext] = True,
        session_token: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        if not server_url:
            raise EpoError("ePO server URL not configured")
        self.base_url = normalize_base_url(server_url)
        url = httpx.URL(self.base_url)
        self.port = url.port or port
        self.hostname = url.host
        self.username = username
        self.password = password
        self.session_token = session_token
        self._http = httpx.Client(
            base_url=f"{url.scheme}://{url.host}:{self.port}",
            verify=verify,
            transport=transport,
            timeout=timeout,
            headers={"User-Agent": USER_AGENT},
        )

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.BaseTransport] = None) -> "EpoClient":
        if not settings.epo_configured:
            raise EpoError("ePO credentials not configured")
        return cls(
            settings.epo_server_url,
            settings.epo_username,
            settings.epo_password,
            port=settings.epo_port,
            verify=settings.epo_verify_tls,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "EpoClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -- low level --------------------------------------------------------

    def _auth(self) -> Tuple[Dict[str, str], Optional[httpx.BasicAuth]]:
        """Headers and httpx auth for the next call; a session cookie wins over Basic."""
        if self.session_token:
            return {"Cookie": f"JSESSIONID={self.session_token}"}, None
        if not self.username or not self.password:
            raise EpoError("Missing credentials for basic authentication")
        return {}, httpx.BasicAuth(self.username, self.password)

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        auth_headers, auth = self._auth()
        headers = {**auth_headers, **kwargs.pop("headers", {})}
        try:
            return self._http.request(method, path, headers=headers, auth=auth, **kwargs)
        except httpx.HTTPError as exc:
            message, suggestions = map_connection_error(str(exc) or exc.__class__.__name__)
            logger.warning("ePO request %s %s failed: %s", method, path, exc)
            raise EpoError(message, suggestions=suggestions, original=str(exc)) from exc

    def command_raw(self, name: str, output: str = "json", **params: Any) -> str:
        data = {":output": output}
        data.update({k: str(v) for k, v in params.items() if v is not None})
        response = self._request("POST", f"/remote/{name}", data=data)
        if response.status_code >= 400:
            raise EpoError(
                f"API request failed: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
                original=response.text,
            )
        return response.text

    def command(self, name: str, **params: Any) -> Any:
        """Run an ePO command and return its decoded JSON result."""
        logger.debug("ePO command %s", name)
        return parse_command_output(self.command_raw(name, **params))

    # -- connection management -------------------------------------------

    def test_connection(self) -> Dict[str, Any]:
        """Call ``core.help``. A 401 still proves the server is there."""
        response = self._request("GET", "/remote/core.help", headers={"Accept": "application/json"})
        if response.is_success or response.status_code == 401:
            return {
                "success": True,
                "message": "Successfully connected to EPO server",
                "server_url": self.base_url,
                "status_code": response.status_code,
                "connection_details": {
                    "protocol": "HTTPS" if self.base_url.startswith("https") else "HTTP",
                    "port": self.port,
                    "hostname": self.hostname,
                },
            }
        return {
            "success": False,
            "error": f"EPO server returned {response.status_code}: {response.text}",
            "server_url": self.base_url,
        }

    def login(self) -> Tuple[str, str]:
        """Authenticate with Basic auth and return ``(session_token, expires_at)``."""
        saved, self.session_token = self.session_token, None
        try:
            response = self._request("POST", "/remote/core.help", data={":output": "json"})
        finally:
            self.session_token = saved
        if not response.is_success:
            raise EpoError(
                f"Authentication failed: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
        token = response.cookies.get("JSESSIONID")
        if not token:
            raise EpoError("No session cookie received from ePO server")
        self.session_token = token
        expires_at = (utcnow() + SESSION_LIFETIME).isoformat()
        return self.session_token, expires_at

    def list_agent_handlers(self) -> Any:
        return self.command("agentmgmt.listAgentHandlers")

    # -- provisioning helpers --------------------------------------------

    def find_groups(self, search_text: str) -> List[Dict[str, Any]]:
        return self.command("system.findGroups", searchText=search_text) or []

    def create_group(self, name: str, parent_group_id: int) -> int:
        result = self.command("system.createGroup", groupName=name, parentGroupId=parent_group_id)
        return int(result)

    def find_policies(self, search_text: str) -> List[Dict[str, Any]]:
        return self.command("policy.find", searchText=search_text) or []

    def assign_policy_to_group(self, group_id: int, product_id: str, type_id: int, object_id: int) -> Any:
        return self.command(
            "policy.assignToGroup",
            groupId=group_id,
            productId=product_id,
            typeId=type_id,
            objectId=object_id,
            resetInheritance="true",
        )

    def create_installer_url(self, group_id: int, url_name: str, expiry_days: int = 30) -> str:
        result = self.command(
            "agentmgmt.createAgentDeploymentUrlCmd",
            groupId=group_id,
            urlName=url_name,
            expiryTime=expiry_days,
        )
        return str(result)

    def find_systems(self, group_id: int) -> List[Dict[str, Any]]:
        return self.command("epogroup.findSystems", groupId=group_id, searchSubgroups="true") or []
