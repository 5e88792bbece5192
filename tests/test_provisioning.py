import asyncio

import pytest
from sqlalchemy import select

from pve_dashboard.db import SessionLocal
from pve_dashboard.errors import (
    AuthError,
    ConfigurationError,
    ConflictError,
    HttpError,
    NotFoundError,
    ProvisioningFailed,
    TaskError,
    ValidationError,
)
from pve_dashboard.metrics import metrics
from pve_dashboard.models import Event, ServerRecord, ServerStatus
from pve_dashboard.schemas import ProvisionRequest
from pve_dashboard.services import provisioning
from pve_dashboard.services.hosts import HostConfig
from pve_dashboard.services.ip_allocator import Reservation
from pve_dashboard.services.provisioning import build_guest_config, provision_vm

from tests.fakes import FakeProxmox, factory_for


def make_request(**overrides) -> ProvisionRequest:
    values = {
        "hostId": "h1",
        "hostname": "vm-test",
        "os": "Ubuntu 24.04 LTS",
        "cpuCores": 2,
        "memoryMB": 2048,
        "sshPassword": "p@ssW0rd",
    }
    values.update(overrides)
    return ProvisionRequest(**values)


async def servers() -> list[ServerRecord]:
    async with SessionLocal() as session:
        return list(await session.scalars(select(ServerRecord).order_by(ServerRecord.id)))


async def event_types() -> list[str]:
    async with SessionLocal() as session:
        return list(await session.scalars(select(Event.event_type).order_by(Event.id)))


@pytest.fixture
async def single_address_host(seed_host):
    return await seed_host("h1", pool=[("10.0.0.5", "aa:bb:cc:dd:ee:ff")])


async def test_happy_path_provisions_and_saves(single_address_host):
    fake = FakeProxmox(next_id=131, status={"status": "running", "uptime": 3})

    result = await provision_vm(make_request(), client_factory=factory_for(fake))

    payload = result.to_payload()
    assert payload["ok"] is True
    assert payload["ip"] == "10.0.0.5"
    assert payload["vmid"] == 131
    assert payload["status"] == "running"
    assert payload["db"] == {"saved": True, "id": result.server_id, "error": None}
    assert payload["ssh"] == {"username": "ubuntu", "port": 22}
    assert payload["specs"] == {"cpuCores": 2, "memoryMB": 2048, "diskGB": None}

    [record] = await servers()
    assert record.status == "running"
    assert record.vmid == 131
    assert record.details == {"status": "running", "uptime": 3}
    assert await event_types() == ["server.reserved", "server.provisioned"]
    assert fake.closed

    [(node, template, newid, name, storage)] = fake.called("clone_guest")
    assert (node, template, newid, name) == ("pve", 9000, 131, "vm-test")
    assert fake.called("resize_disk") == []
    assert fake.called("power_action") == [("pve", 131, "start")]


async def test_guest_config_carries_cloud_init_and_routed_network(single_address_host):
    fake = FakeProxmox()
    await provision_vm(make_request(), client_factory=factory_for(fake))

    [(_node, _vmid, form)] = fake.called("configure_guest")
    assert form["ciuser"] == "ubuntu"
    assert form["cipassword"] == "p@ssW0rd"
    assert form["net0"] == "virtio=aa:bb:cc:dd:ee:ff,bridge=vmbr0"
    assert form["ipconfig0"] == "ip=10.0.0.5/32,gw=203.0.113.1"
    assert form["ide2"] == "local-lvm:cloudinit"
    assert form["nameserver"] == "8.8.8.8 1.1.1.1"
    assert form["onboot"] == 1


def test_build_guest_config_skips_missing_secondary_dns():
    host = HostConfig(
        id="h",
        name="h",
        host_url="https://h",
        node="pve",
        gateway_ip="10.0.0.1",
        dns_secondary=None,
    )
    form = build_guest_config(
        host,
        make_request(),
        Reservation(server_id=1, ip="10.0.0.5", mac="aa:bb:cc:dd:ee:ff"),
    )
    assert form["nameserver"] == "8.8.8.8"
    assert form["ipconfig0"] == "ip=10.0.0.5/32,gw=10.0.0.1"


async def test_missing_ssh_password_is_rejected_before_reservation(single_address_host):
    with pytest.raises(ValidationError):
        await provision_vm(make_request(sshPassword=None), client_factory=factory_for(FakeProxmox()))
    assert await servers() == []


async def test_unknown_or_inactive_host_is_not_found(seed_host):
    await seed_host("h2", is_active=False)
    fake = FakeProxmox()
    with pytest.raises(NotFoundError):
        await provision_vm(make_request(hostId="nope"), client_factory=factory_for(fake))
    with pytest.raises(NotFoundError):
        await provision_vm(make_request(hostId="h2"), client_factory=factory_for(fake))
    assert fake.calls == []


async def test_exhausted_pool_touches_no_hypervisor(single_address_host):
    await provision_vm(make_request(), client_factory=factory_for(FakeProxmox()))
    second = FakeProxmox()

    with pytest.raises(ConflictError):
        await provision_vm(make_request(hostname="vm-2"), client_factory=factory_for(second))
    assert second.calls == []


@pytest.mark.parametrize(
    ("method", "error", "stage"),
    [
        ("authenticate", AuthError("bad credentials"), "authenticating"),
        ("list_guests", HttpError(method="GET", path="/q", status_code=500, body="x"), "resolving_template"),
        ("clone_guest", HttpError(method="POST", path="/c", status_code=500, body="locked"), "cloning"),
        ("configure_guest", HttpError(method="POST", path="/cfg", status_code=400, body="bad net0"), "configuring"),
    ],
)
async def test_failure_before_start_rolls_reservation_to_failed(
    seed_host, method, error, stage
):
    await seed_host("h1", pool=[("10.0.0.5", "aa:bb:cc:dd:ee:ff")], template_vmid=None)
    fake = FakeProxmox(
        fail={method: error}, guests=[{"vmid": 9001, "name": "ubuntu-24-tpl"}]
    )
    before = metrics.get("provision_failed_total", stage=stage)

    with pytest.raises(ProvisioningFailed) as excinfo:
        await provision_vm(make_request(), client_factory=factory_for(fake))

    assert excinfo.value.stage == stage
    assert excinfo.value.cause is error
    assert excinfo.value.rollback_error is None
    [record] = await servers()
    assert record.status == ServerStatus.FAILED.value
    assert record.last_error.startswith(f"{stage}: ")
    assert record.ip == "10.0.0.5"
    assert await event_types() == ["server.reserved", "server.failed"]
    assert metrics.get("provision_failed_total", stage=stage) == before + 1
    assert fake.closed


async def test_missing_template_fails_with_configuration_error(seed_host):
    await seed_host("h1", pool=[("10.0.0.5", "aa:bb:cc:dd:ee:ff")], template_vmid=None)
    fake = FakeProxmox(guests=[])

    with pytest.raises(ProvisioningFailed) as excinfo:
        await provision_vm(make_request(), client_factory=factory_for(fake))

    assert isinstance(excinfo.value.cause, ConfigurationError)
    assert excinfo.value.status_code == 400
    assert "template" in str(excinfo.value)
    [record] = await servers()
    assert record.status == ServerStatus.FAILED.value
    assert fake.called("clone_guest") == []


async def test_clone_task_failure_records_exit_status(single_address_host):
    fake = FakeProxmox(
        fail={"wait_for_task": TaskError("UPID:pve:clone:120", "ERROR: no space")}
    )

    with pytest.raises(ProvisioningFailed) as excinfo:
        await provision_vm(make_request(), client_factory=factory_for(fake))

    assert excinfo.value.status_code == 500
    assert excinfo.value.stage == "cloning"
    [record] = await servers()
    assert record.status == ServerStatus.FAILED.value
    assert "ERROR: no space" in record.last_error
    assert record.vmid == 120


async def test_cancelled_provision_marks_record_failed(single_address_host):
    fake = FakeProxmox(fail={"clone_guest": asyncio.CancelledError()})

    with pytest.raises(asyncio.CancelledError):
        await provision_vm(make_request(), client_factory=factory_for(fake))

    [record] = await servers()
    assert record.status == ServerStatus.FAILED.value
    assert record.last_error == "cloning: provisioning cancelled"
    assert fake.closed


async def test_failed_address_stays_reserved(single_address_host):
    fake = FakeProxmox(fail={"authenticate": AuthError("nope")})
    with pytest.raises(ProvisioningFailed):
        await provision_vm(make_request(), client_factory=factory_for(fake))

    with pytest.raises(ConflictError):
        await provision_vm(make_request(hostname="vm-2"), client_factory=factory_for(FakeProxmox()))


async def test_resize_failure_is_absorbed(single_address_host):
    fake = FakeProxmox(
        fail={"resize_disk": HttpError(method="POST", path="/r", status_code=500, body="no")}
    )
    before = metrics.get("resize_failures_total")

    result = await provision_vm(make_request(diskGB=20), client_factory=factory_for(fake))

    assert result.saved
    assert fake.called("resize_disk") == [("pve", 120, "scsi0", "+20G")]
    assert metrics.get("resize_failures_total") == before + 1


async def test_start_wait_failure_is_absorbed(single_address_host):
    fake = FakeProxmox(
        fail={"wait_start": TimeoutError("start did not finish")},
        status={"status": "stopped"},
    )

    result = await provision_vm(make_request(), client_factory=factory_for(fake))

    assert result.status == "stopped"
    [record] = await servers()
    assert record.status == "stopped"


async def test_status_read_failure_reports_starting(single_address_host):
    fake = FakeProxmox(
        fail={"current_status": HttpError(method="GET", path="/s", status_code=500, body="")}
    )

    result = await provision_vm(make_request(), client_factory=factory_for(fake))

    assert result.status == ServerStatus.STARTING.value
    assert result.details is None


async def test_finalize_failure_still_reports_success(single_address_host, monkeypatch):
    async def broken_update(*_args, **_kwargs):
        raise RuntimeError("disk I/O error")

    fake = FakeProxmox()
    monkeypatch.setattr(provisioning, "update_server", broken_update)

    result = await provision_vm(make_request(), client_factory=factory_for(fake))

    payload = result.to_payload()
    assert payload["ok"] is True
    assert payload["db"]["saved"] is False
    assert "disk I/O error" in payload["db"]["error"]


async def test_rollback_write_failure_is_reported(single_address_host, monkeypatch):
    async def broken_update(*_args, **_kwargs):
        raise RuntimeError("database is locked")

    fake = FakeProxmox(fail={"authenticate": AuthError("nope")})
    monkeypatch.setattr(provisioning, "update_server", broken_update)

    with pytest.raises(ProvisioningFailed) as excinfo:
        await provision_vm(make_request(), client_factory=factory_for(fake))

    assert excinfo.value.rollback_error == "database is locked"


async def test_concurrent_requests_get_distinct_addresses(seed_host):
    await seed_host(
        "h1",
        pool=[
            ("10.0.0.5", "aa:bb:cc:dd:ee:05"),
            ("10.0.0.6", "aa:bb:cc:dd:ee:06"),
            ("10.0.0.7", "aa:bb:cc:dd:ee:07"),
        ],
    )

    results = await asyncio.gather(
        *(
            provision_vm(
                make_request(hostname=f"vm-{i}"),
                client_factory=factory_for(FakeProxmox(next_id=200 + i)),
            )
            for i in range(5)
        ),
        return_exceptions=True,
    )

    ok = [r for r in results if not isinstance(r, Exception)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert all(isinstance(exc, ConflictError) for exc in errors)
    ips = [r.ip for r in ok]
    assert len(ips) == len(set(ips))
    stored = [record.ip for record in await servers()]
    assert len(stored) == len(set(stored)) == len(ok)
