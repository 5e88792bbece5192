import logging
import re
from typing import Any, Protocol

from pve_dashboard.clients.proxmox import AuthContext
from pve_dashboard.db import SessionLocal
from pve_dashboard.errors import ConfigurationError
from pve_dashboard.repositories import list_templates
from pve_dashboard.services.hosts import HostConfig


logger = logging.getLogger(__name__)

DEFAULT_OS_HINT = ("ubuntu", "24")
_OS_HINT_RE = re.compile(r"([a-z]+)[^0-9a-z]*(\d+)")


class GuestLister(Protocol):
    async def list_guests(
        self, node: str, auth: AuthContext
    ) -> list[dict[str, Any]]: ...


def os_hint(os_label: str) -> tuple[str, str]:
    """Derive a (distribution, major version) pair from an OS label.

    ``"Ubuntu 24.04 LTS"`` and ``"ubuntu-24"`` both give ``("ubuntu", "24")``.
    """
    match = _OS_HINT_RE.search(os_label.lower())
    if not match:
        return DEFAULT_OS_HINT
    return match.group(1), match.group(2)


def _positive_int(value: Any) -> int | None:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def match_guest_name(guests: list[dict[str, Any]], os_label: str) -> int | None:
    distro, major = os_hint(os_label)
    for guest in guests:
        name = str(guest.get("name") or "").lower()
        if distro in name and major in name:
            vmid = _positive_int(guest.get("vmid"))
            if vmid:
                return vmid
    return None


async def resolve_template(
    host: HostConfig, os_label: str, client: GuestLister, auth: AuthContext
) -> int:
    async with SessionLocal() as session:
        templates = await list_templates(session, host.id)

    wanted = os_label.strip().lower()
    for template in templates:
        if not template.is_active or template.name.strip().lower() != wanted:
            continue
        vmid = _positive_int(template.vmid)
        if vmid:
            logger.debug(
                "template resolved from table host_id=%s os=%s vmid=%s",
                host.id,
                os_label,
                vmid,
            )
            return vmid

    vmid = _positive_int(host.template_vmid)
    if vmid:
        return vmid

    if host.node:
        guests = await client.list_guests(host.node, auth)
        vmid = match_guest_name(guests, os_label)
        if vmid:
            logger.warning(
                "template guessed from guest names host_id=%s os=%s vmid=%s",
                host.id,
                os_label,
                vmid,
            )
            return vmid

    raise ConfigurationError(
        f"No usable template for OS '{os_label}' on host {host.id}; "
        "add a template entry or set the host default template VMID"
    )
