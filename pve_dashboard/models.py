from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from pve_dashboard.db import Base


def now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class ServerStatus(str, Enum):
    PROVISIONING = "provisioning"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


class HostProfile(Base):
    __tablename__ = "proxmox_hosts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    host_url: Mapped[str] = mapped_column(String(256), nullable=False)
    allow_insecure_tls: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    token_id: Mapped[str | None] = mapped_column(String(256))
    token_secret: Mapped[str | None] = mapped_column(String(256))
    username: Mapped[str | None] = mapped_column(String(128))
    password: Mapped[str | None] = mapped_column(String(256))
    node: Mapped[str | None] = mapped_column(String(128))
    storage: Mapped[str] = mapped_column(String(128), default="local", nullable=False)
    bridge: Mapped[str] = mapped_column(String(64), default="vmbr0", nullable=False)
    gateway_ip: Mapped[str | None] = mapped_column(String(64))
    dns_primary: Mapped[str] = mapped_column(
        String(64), default="8.8.8.8", nullable=False
    )
    dns_secondary: Mapped[str | None] = mapped_column(String(64), default="1.1.1.1")
    template_vmid: Mapped[int | None] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=now_utc, nullable=False
    )


class HostTemplate(Base):
    __tablename__ = "proxmox_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    host_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("proxmox_hosts.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    vmid: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class IpPoolEntry(Base):
    __tablename__ = "ip_pool"
    __table_args__ = (UniqueConstraint("host_id", "ip", name="uq_ip_pool_host_ip"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    host_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("proxmox_hosts.id")
    )
    pool: Mapped[str] = mapped_column(String(64), default="public", nullable=False)
    ip: Mapped[str] = mapped_column(String(64), nullable=False)
    mac: Mapped[str | None] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=now_utc, nullable=False
    )


class ServerRecord(Base):
    __tablename__ = "servers"
    __table_args__ = (UniqueConstraint("ip", name="uq_servers_ip"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vmid: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    node: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    ip: Mapped[str] = mapped_column(String(64), nullable=False)
    mac: Mapped[str | None] = mapped_column(String(32))
    os: Mapped[str] = mapped_column(String(128), nullable=False)
    location: Mapped[str] = mapped_column(String(64), nullable=False)
    cpu_cores: Mapped[int] = mapped_column(Integer, nullable=False)
    memory_mb: Mapped[int] = mapped_column(Integer, nullable=False)
    disk_gb: Mapped[int | None] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(
        String(32), default=ServerStatus.PROVISIONING.value, nullable=False
    )
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    last_error: Mapped[str | None] = mapped_column(Text)
    owner_id: Mapped[str | None] = mapped_column(String(128))
    owner_email: Mapped[str | None] = mapped_column(String(256))
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=now_utc, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=now_utc, nullable=False
    )


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime, default=now_utc, nullable=False
    )
    server_id: Mapped[int | None] = mapped_column(Integer)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
