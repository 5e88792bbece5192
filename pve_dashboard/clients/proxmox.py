import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from pve_dashboard.clients.http import secure_base_url, send_request, unwrap_data
from pve_dashboard.config import get_settings
from pve_dashboard.errors import (
    AuthError,
    HypervisorError,
    TaskError,
    TimeoutExceeded,
)
from pve_dashboard.services.hosts import HostConfig


logger = logging.getLogger(__name__)

API_PREFIX = "/api2/json"
TASK_SUCCESS = "OK"
POWER_ACTIONS = {"start", "stop", "shutdown", "reboot"}


@dataclass
class AuthContext:
    method: str
    headers: dict[str, str] = field(repr=False)
    csrf_token: str | None = field(default=None, repr=False)

    def headers_for(self, http_method: str) -> dict[str, str]:
        headers = dict(self.headers)
        if self.csrf_token and http_method.upper() != "GET":
            headers["CSRFPreventionToken"] = self.csrf_token
        return headers


def _node_path(node: str) -> str:
    return f"{API_PREFIX}/nodes/{quote(node, safe='')}"


def _encode_form(form: dict[str, Any]) -> dict[str, str]:
    encoded: dict[str, str] = {}
    for key, value in form.items():
        if value is None:
            continue
        if isinstance(value, bool):
            encoded[key] = "1" if value else "0"
        else:
            encoded[key] = str(value)
    return encoded


class ProxmoxClient:
    """Async client for one Proxmox VE endpoint described by a HostConfig."""

    def __init__(
        self,
        host: HostConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        light_timeout: float | None = None,
        mutating_timeout: float | None = None,
        poll_interval: float | None = None,
    ):
        settings = get_settings()
        self.host = host
        self.api_base = secure_base_url(host.host_url)
        self.light_timeout = light_timeout or settings.http_light_timeout_sec
        self.mutating_timeout = mutating_timeout or settings.http_mutating_timeout_sec
        self.poll_interval = (
            settings.task_poll_interval_sec if poll_interval is None else poll_interval
        )
        self.client = httpx.AsyncClient(
            base_url=self.api_base,
            verify=not host.allow_insecure_tls,
            follow_redirects=True,
            transport=transport,
        )

    async def __aenter__(self) -> "ProxmoxClient":
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def authenticate(self) -> AuthContext:
        attempts: list[tuple[str, Callable[[], Awaitable[AuthContext]]]] = []
        if self.host.has_token:
            attempts.append(("token", self._token_auth))
        if self.host.has_password:
            attempts.append(("password", self._password_auth))
        if not attempts:
            raise AuthError(f"Missing Proxmox credentials for host {self.host.id}")

        failures: list[str] = []
        for name, attempt in attempts:
            try:
                auth = await attempt()
            except HypervisorError as exc:
                logger.warning(
                    "proxmox auth attempt failed host_id=%s method=%s error=%s",
                    self.host.id,
                    name,
                    exc,
                )
                failures.append(f"{name}: {exc}")
                continue
            logger.debug("proxmox auth ok host_id=%s method=%s", self.host.id, name)
            return auth
        raise AuthError(
            f"Proxmox authentication failed for host {self.host.id} ({'; '.join(failures)})"
        )

    async def _token_auth(self) -> AuthContext:
        auth = AuthContext(
            method="token",
            headers={
                "Authorization": f"PVEAPIToken={self.host.token_id}={self.host.token_secret}"
            },
        )
        await self.get_json("/nodes", auth)
        return auth

    async def _password_auth(self) -> AuthContext:
        response = await send_request(
            self.client,
            "POST",
            f"{API_PREFIX}/access/ticket",
            timeout=self.light_timeout,
            data={"username": self.host.username, "password": self.host.password},
        )
        data = unwrap_data(response) or {}
        ticket = data.get("ticket") if isinstance(data, dict) else None
        csrf = data.get("CSRFPreventionToken") if isinstance(data, dict) else None
        if not ticket:
            raise AuthError("Missing PVE ticket in response")
        if not csrf:
            raise AuthError("Missing CSRFPreventionToken in response")
        return AuthContext(
            method="password",
            headers={"Cookie": f"PVEAuthCookie={ticket}"},
            csrf_token=csrf,
        )

    async def get_json(
        self, path: str, auth: AuthContext, timeout: float | None = None
    ) -> Any:
        response = await send_request(
            self.client,
            "GET",
            self._api_path(path),
            timeout=timeout or self.light_timeout,
            headers=auth.headers_for("GET"),
        )
        return unwrap_data(response)

    async def post_form(
        self,
        path: str,
        form: dict[str, Any],
        auth: AuthContext,
        timeout: float | None = None,
    ) -> Any:
        response = await send_request(
            self.client,
            "POST",
            self._api_path(path),
            timeout=timeout or self.mutating_timeout,
            headers=auth.headers_for("POST"),
            data=_encode_form(form),
        )
        return unwrap_data(response)

    async def wait_for_task(
        self, node: str, upid: str, auth: AuthContext, timeout_sec: float
    ) -> None:
        path = f"{_node_path(node)}/tasks/{quote(upid, safe='')}/status"
        deadline = time.monotonic() + timeout_sec
        while time.monotonic() < deadline:
            status = await self.get_json(path, auth)
            if isinstance(status, dict) and status.get("status") == "stopped":
                exit_status = str(status.get("exitstatus") or "")
                if exit_status:
                    if exit_status.upper() == TASK_SUCCESS:
                        return
                    raise TaskError(upid, exit_status)
            await asyncio.sleep(self.poll_interval)
        raise TimeoutExceeded(f"task {upid} did not finish within {timeout_sec:g}s")

    async def next_vmid(self, auth: AuthContext) -> int:
        data = await self.get_json(f"{API_PREFIX}/cluster/nextid", auth)
        try:
            return int(data)
        except (TypeError, ValueError) as exc:
            raise HypervisorError(f"unexpected nextid response: {data!r}") from exc

    async def list_guests(self, node: str, auth: AuthContext) -> list[dict[str, Any]]:
        data = await self.get_json(f"{_node_path(node)}/qemu", auth)
        return [guest for guest in data or [] if isinstance(guest, dict)]

    async def clone_guest(
        self,
        node: str,
        template_vmid: int,
        *,
        newid: int,
        name: str,
        storage: str,
        auth: AuthContext,
    ) -> str:
        upid = await self.post_form(
            f"{_node_path(node)}/qemu/{template_vmid}/clone",
            {
                "newid": newid,
                "name": name,
                "full": 1,
                "target": node,
                "storage": storage,
            },
            auth,
        )
        if not upid:
            raise HypervisorError("clone did not return task id")
        return str(upid)

    async def configure_guest(
        self, node: str, vmid: int, form: dict[str, Any], auth: AuthContext
    ) -> Any:
        return await self.post_form(f"{_node_path(node)}/qemu/{vmid}/config", form, auth)

    async def resize_disk(
        self, node: str, vmid: int, *, disk: str, size: str, auth: AuthContext
    ) -> Any:
        return await self.post_form(
            f"{_node_path(node)}/qemu/{vmid}/resize",
            {"disk": disk, "size": size},
            auth,
        )

    async def power_action(
        self,
        node: str,
        vmid: int,
        action: str,
        auth: AuthContext,
        form: dict[str, Any] | None = None,
    ) -> str | None:
        if action not in POWER_ACTIONS:
            raise ValueError(f"unsupported power action {action}")
        upid = await self.post_form(
            f"{_node_path(node)}/qemu/{vmid}/status/{action}", form or {}, auth
        )
        return str(upid) if upid else None

    async def current_status(
        self, node: str, vmid: int, auth: AuthContext
    ) -> dict[str, Any]:
        data = await self.get_json(f"{_node_path(node)}/qemu/{vmid}/status/current", auth)
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _api_path(path: str) -> str:
        if path.startswith(API_PREFIX):
            return path
        return f"{API_PREFIX}{path if path.startswith('/') else '/' + path}"


def proxmox_client_factory(host: HostConfig) -> ProxmoxClient:
    return ProxmoxClient(host)
