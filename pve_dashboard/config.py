from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = Field(default="sqlite+aiosqlite:///./pve_dashboard.db")
    log_level: str = Field(default="INFO")

    http_light_timeout_sec: float = Field(default=10.0, gt=0)
    http_mutating_timeout_sec: float = Field(default=60.0, gt=0)
    task_poll_interval_sec: float = Field(default=1.5, ge=0)
    clone_timeout_sec: float = Field(default=180.0, gt=0)
    start_timeout_sec: float = Field(default=60.0, gt=0)
    power_wait_sec: float = Field(default=8.0, gt=0)

    identity_url: str | None = Field(default=None)
    identity_api_key: str | None = Field(default=None)
    admin_emails: str = Field(default="")

    # Single-host mode: a host profile and IP pool supplied via environment.
    legacy_host_id: str = Field(default="dev-1")
    proxmox_host: str | None = Field(default=None)
    proxmox_allow_insecure_tls: bool = Field(default=False)
    proxmox_token_id: str | None = Field(default=None)
    proxmox_token_secret: str | None = Field(default=None)
    proxmox_username: str | None = Field(default=None)
    proxmox_password: str | None = Field(default=None)
    proxmox_node: str | None = Field(default=None)
    proxmox_storage: str = Field(default="local")
    proxmox_bridge: str = Field(default="vmbr0")
    proxmox_template_vmid: int | None = Field(default=None)
    gateway_ip: str | None = Field(default=None)
    dns_primary: str = Field(default="8.8.8.8")
    dns_secondary: str = Field(default="1.1.1.1")
    legacy_ip_pool: str = Field(default="")
    legacy_mac: str | None = Field(default=None)

    def legacy_pool_entries(self) -> list[tuple[str, str | None]]:
        """Parse ``LEGACY_IP_POOL`` (``ip=mac,ip=mac``) preserving order."""
        entries: list[tuple[str, str | None]] = []
        for item in self.legacy_ip_pool.split(","):
            item = item.strip()
            if not item:
                continue
            ip, _, mac = item.partition("=")
            entries.append((ip.strip(), mac.strip() or self.legacy_mac))
        return entries

    def admin_email_list(self) -> list[str]:
        return [
            email.strip().lower()
            for email in self.admin_emails.split(",")
            if email.strip()
        ]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
