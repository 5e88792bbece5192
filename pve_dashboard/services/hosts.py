import logging
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from pve_dashboard.config import Settings, get_settings
from pve_dashboard.errors import NotFoundError
from pve_dashboard.models import HostProfile
from pve_dashboard.repositories import get_host_profile


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HostConfig:
    id: str
    name: str
    host_url: str
    node: str | None
    storage: str = "local"
    bridge: str = "vmbr0"
    gateway_ip: str | None = None
    dns_primary: str = "8.8.8.8"
    dns_secondary: str | None = "1.1.1.1"
    template_vmid: int | None = None
    allow_insecure_tls: bool = False
    is_active: bool = True
    legacy: bool = False
    token_id: str | None = field(default=None, repr=False)
    token_secret: str | None = field(default=None, repr=False)
    username: str | None = field(default=None, repr=False)
    password: str | None = field(default=None, repr=False)

    @property
    def has_token(self) -> bool:
        return bool(self.token_id and self.token_secret)

    @property
    def has_password(self) -> bool:
        return bool(self.username and self.password)

    @property
    def nameservers(self) -> str:
        return " ".join(ns for ns in (self.dns_primary, self.dns_secondary) if ns)


def host_config_from_profile(profile: HostProfile) -> HostConfig:
    return HostConfig(
        id=profile.id,
        name=profile.name,
        host_url=profile.host_url,
        node=profile.node,
        storage=profile.storage or "local",
        bridge=profile.bridge or "vmbr0",
        gateway_ip=profile.gateway_ip,
        dns_primary=profile.dns_primary or "8.8.8.8",
        dns_secondary=profile.dns_secondary,
        template_vmid=profile.template_vmid,
        allow_insecure_tls=profile.allow_insecure_tls,
        is_active=profile.is_active,
        token_id=profile.token_id,
        token_secret=profile.token_secret,
        username=profile.username,
        password=profile.password,
    )


def legacy_host_config(settings: Settings) -> HostConfig | None:
    if not settings.proxmox_host:
        return None
    return HostConfig(
        id=settings.legacy_host_id,
        name="Dev Host",
        host_url=settings.proxmox_host,
        node=settings.proxmox_node,
        storage=settings.proxmox_storage,
        bridge=settings.proxmox_bridge,
        gateway_ip=settings.gateway_ip,
        dns_primary=settings.dns_primary,
        dns_secondary=settings.dns_secondary,
        template_vmid=settings.proxmox_template_vmid,
        allow_insecure_tls=settings.proxmox_allow_insecure_tls,
        legacy=True,
        token_id=settings.proxmox_token_id,
        token_secret=settings.proxmox_token_secret,
        username=settings.proxmox_username,
        password=settings.proxmox_password,
    )


async def get_host(
    session: AsyncSession, host_id: str | None, *, require_active: bool = True
) -> HostConfig:
    """Resolve a host id to its connection profile.

    Datastore profiles win; the environment-configured host answers for an
    empty id or the configured legacy id. Inactive profiles are only
    returned when ``require_active`` is false (power control of existing
    guests).
    """
    settings = get_settings()
    if host_id:
        profile = await get_host_profile(session, host_id)
        if profile is not None:
            if require_active and not profile.is_active:
                logger.info("host profile inactive host_id=%s", host_id)
                raise NotFoundError(f"Host {host_id} is not active")
            return host_config_from_profile(profile)

    if not host_id or host_id == settings.legacy_host_id:
        legacy = legacy_host_config(settings)
        if legacy is not None:
            return legacy

    raise NotFoundError(f"Host {host_id or '<default>'} not found")
