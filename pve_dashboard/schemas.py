from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ProvisionRequest(CamelModel):
    host_id: str | None = Field(default=None, alias="hostId")
    hostname: str | None = None
    os: str = "ubuntu-24"
    cpu_cores: int = Field(default=2, ge=1, alias="cpuCores")
    memory_mb: int = Field(default=2048, ge=16, alias="memoryMB")
    disk_gb: int | None = Field(default=None, alias="diskGB")
    ssh_password: str | None = Field(default=None, alias="sshPassword")
    ip_primary: str | None = Field(default=None, alias="ipPrimary")
    mac: str | None = None
    owner_id: str | None = Field(default=None, alias="ownerId")
    owner_email: str | None = Field(default=None, alias="ownerEmail")


class PowerRequest(CamelModel):
    server_id: int = Field(alias="serverId")
    action: str


class ServerRead(CamelModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: int
    vmid: int
    node: str
    name: str
    ip: str
    os: str
    location: str
    cpu_cores: int = Field(serialization_alias="cpuCores")
    memory_mb: int = Field(serialization_alias="memoryMB")
    disk_gb: int | None = Field(default=None, serialization_alias="diskGB")
    status: str
    details: dict[str, Any] | None = None
    last_error: str | None = Field(default=None, serialization_alias="lastError")
    owner_id: str | None = Field(default=None, serialization_alias="ownerId")
    owner_email: str | None = Field(default=None, serialization_alias="ownerEmail")
    created_at: datetime = Field(serialization_alias="createdAt")


class HostCreate(CamelModel):
    id: str = Field(min_length=1, max_length=64)
    name: str
    host_url: str = Field(alias="hostUrl")
    allow_insecure_tls: bool = Field(default=False, alias="allowInsecureTls")
    token_id: str | None = Field(default=None, alias="tokenId")
    token_secret: str | None = Field(default=None, alias="tokenSecret")
    username: str | None = None
    password: str | None = None
    node: str
    storage: str = "local"
    bridge: str = "vmbr0"
    gateway_ip: str = Field(alias="gatewayIp")
    dns_primary: str = Field(default="8.8.8.8", alias="dnsPrimary")
    dns_secondary: str | None = Field(default="1.1.1.1", alias="dnsSecondary")
    template_vmid: int | None = Field(default=None, alias="templateVmid")


class HostRead(CamelModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: str
    name: str
    host_url: str = Field(serialization_alias="hostUrl")
    node: str | None
    storage: str
    bridge: str
    gateway_ip: str | None = Field(serialization_alias="gatewayIp")
    template_vmid: int | None = Field(serialization_alias="templateVmid")
    is_active: bool = Field(serialization_alias="isActive")


class TemplateCreate(CamelModel):
    name: str = Field(min_length=1)
    vmid: int = Field(ge=1)


class PoolEntryCreate(CamelModel):
    ip: str
    mac: str | None = None
    pool: str = "public"
