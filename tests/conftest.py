import os
import tempfile
from pathlib import Path

import pytest


_DB_DIR = Path(tempfile.mkdtemp(prefix="pve-dashboard-tests-"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR / 'test.db'}"
os.environ["TASK_POLL_INTERVAL_SEC"] = "0"
os.environ["IDENTITY_URL"] = ""
os.environ["ADMIN_EMAILS"] = ""
os.environ["PROXMOX_HOST"] = ""

from pve_dashboard.config import get_settings  # noqa: E402

get_settings.cache_clear()

from pve_dashboard.db import Base, engine  # noqa: E402
from pve_dashboard import models  # noqa: E402,F401


@pytest.fixture(autouse=True)
async def reset_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield


@pytest.fixture
def settings_env(monkeypatch):
    """Set environment-backed settings for one test."""

    def apply(**values: str) -> None:
        for key, value in values.items():
            monkeypatch.setenv(key.upper(), value)
        get_settings.cache_clear()

    yield apply
    monkeypatch.undo()
    get_settings.cache_clear()


@pytest.fixture
def seed_host():
    """Insert a host profile with an IP pool; returns the host id."""
    from pve_dashboard.db import session_scope
    from pve_dashboard.models import HostProfile, HostTemplate, IpPoolEntry

    async def seed(
        host_id: str = "pve-1",
        *,
        pool: list[tuple[str, str | None]] | None = None,
        templates: list[tuple[str, int]] | None = None,
        template_vmid: int | None = 9000,
        is_active: bool = True,
    ) -> str:
        if pool is None:
            pool = [
                ("203.0.113.10", "02:00:00:00:00:10"),
                ("203.0.113.11", "02:00:00:00:00:11"),
            ]
        async with session_scope() as session:
            session.add(
                HostProfile(
                    id=host_id,
                    name=f"Host {host_id}",
                    host_url="https://pve.example.test:8006",
                    token_id="root@pam!dash",
                    token_secret="secret",
                    node="pve",
                    storage="local-lvm",
                    bridge="vmbr0",
                    gateway_ip="203.0.113.1",
                    template_vmid=template_vmid,
                    is_active=is_active,
                )
            )
            await session.flush()
            for ip, mac in pool:
                session.add(IpPoolEntry(host_id=host_id, ip=ip, mac=mac))
            for name, vmid in templates or []:
                session.add(HostTemplate(host_id=host_id, name=name, vmid=vmid))
        return host_id

    return seed
