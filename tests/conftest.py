"""
Shared fixtures for the provisioner tests.

The fakes stand in for EC2 and the Automation Platform at the same seams the
Provisioner uses in production (the ec2_utils module functions and AAPClient
methods), and append to a shared timeline so tests can assert on ordering.
"""

import itertools

import pytest

from aap_provisioner.aap.client import AAPClient
from aap_provisioner.core.errors import AAPLookupError
from aap_provisioner.models.resources import (
    ComputeInstance,
    DispatchConfig,
    EventStreamSpec,
    Host,
    InstanceSpec,
    Inventory,
    JobTemplateSpec,
    LifecycleEvent,
    ProvisionPlan,
    SecurityGroupRule,
    SecurityGroupSpec,
)
from aap_provisioner.state.store import StateStore
from aap_provisioner.workers.provisioner import Provisioner


class FakeEC2:
    def __init__(self, timeline: list):
        self.timeline = timeline
        self.security_groups: dict[str, str] = {}
        self.instances: dict[str, ComputeInstance] = {}
        self.deleted_groups: list[str] = []
        self._ids = itertools.count(1)
        self._ips = itertools.count(10)

    async def ensure_security_group(self, spec: SecurityGroupSpec, region_name: str) -> str:
        if spec.name not in self.security_groups:
            self.security_groups[spec.name] = f"sg-{next(self._ids):04d}"
            self.timeline.append(("create_security_group", spec.name))
        return self.security_groups[spec.name]

    async def find_instances(self, spec: InstanceSpec, region_name: str) -> dict:
        found = {}
        for instance in self.instances.values():
            if instance.state == "terminated" or instance.index >= spec.count:
                continue
            current = found.get(instance.index)
            if current is None or (instance.is_usable and not current.is_usable):
                found[instance.index] = instance
        return found

    async def describe_instance(self, instance_id: str, region_name: str):
        return self.instances.get(instance_id)

    async def run_instance(
        self, spec: InstanceSpec, index: int, security_group_id: str, region_name: str
    ) -> ComputeInstance:
        assert security_group_id in self.security_groups.values()
        instance = ComputeInstance(
            index=index,
            instance_id=f"i-{next(self._ids):08d}",
            name=spec.instance_name(index),
            state="pending",
            security_group_ids=[security_group_id],
        )
        self.instances[instance.instance_id] = instance
        self.timeline.append(("run_instance", instance.name))
        return instance

    async def wait_for_public_ip(self, instance_id: str, region_name: str, timeout: float = 0):
        instance = self.instances[instance_id]
        if instance.public_ip is None:
            instance.public_ip = f"203.0.113.{next(self._ips)}"
        instance.state = "running"
        self.timeline.append(("public_ip", instance.name, instance.public_ip))
        return instance

    async def terminate_instances(self, instance_ids: list[str], region_name: str) -> None:
        for instance_id in instance_ids:
            self.instances[instance_id].state = "terminated"
            self.timeline.append(("terminate", instance_id))

    async def delete_security_group(self, group_id: str, region_name: str) -> None:
        self.deleted_groups.append(group_id)
        self.timeline.append(("delete_security_group", group_id))


class FakeAAP:
    def __init__(self, timeline: list):
        self.timeline = timeline
        self.inventories: dict[int, Inventory] = {}
        self.hosts: dict[int, dict] = {}
        self.groups: dict[tuple[int, str], int] = {}
        self.host_groups: list[tuple[int, int]] = []
        self.launches: list = []
        self.event_streams = {"provisioning": "https://aap.example.com/eda-event-streams/api/eda/v1/external_event_stream/abc/post/"}
        self.job_status = "successful"
        self._ids = itertools.count(100)

    async def get_organization_id(self, name: str) -> int:
        if name != "Default":
            raise AAPLookupError(f"Organization '{name}' not found")
        return 1

    async def ensure_inventory(self, name: str, organization_id: int):
        for inventory in self.inventories.values():
            if inventory.name == name:
                return inventory, False
        inventory = Inventory(id=next(self._ids), name=name, organization_id=organization_id)
        self.inventories[inventory.id] = inventory
        self.timeline.append(("create_inventory", name))
        return inventory, True

    async def get_inventory(self, inventory_id: int):
        return self.inventories.get(inventory_id)

    async def delete_inventory(self, inventory_id: int) -> None:
        self.inventories.pop(inventory_id, None)
        self.timeline.append(("delete_inventory", inventory_id))

    async def ensure_group(self, inventory_id: int, name: str) -> int:
        return self.groups.setdefault((inventory_id, name), next(self._ids))

    async def find_host(self, inventory_id: int, name: str):
        for host in self.hosts.values():
            if host["inventory"] == inventory_id and host["name"] == name:
                return host
        return None

    async def get_host(self, host_id: int):
        return self.hosts.get(host_id)

    async def create_host(self, host: Host) -> Host:
        host_id = next(self._ids)
        self.hosts[host_id] = {
            "id": host_id,
            "name": host.name,
            "inventory": host.inventory_id,
            "address": host.address,
            "variables": AAPClient._host_body(host)["variables"],
            "enabled": True,
        }
        self.timeline.append(("create_host", host.name, host.address))
        return host.model_copy(update={"id": host_id})

    async def update_host(self, host: Host) -> Host:
        self.hosts[host.id]["address"] = host.address
        self.hosts[host.id]["variables"] = AAPClient._host_body(host)["variables"]
        self.timeline.append(("update_host", host.name, host.address))
        return host

    async def delete_host(self, host_id: int) -> None:
        self.hosts.pop(host_id, None)
        self.timeline.append(("delete_host", host_id))

    async def associate_host_group(self, host_id: int, group_id: int) -> None:
        if (host_id, group_id) not in self.host_groups:
            self.host_groups.append((host_id, group_id))

    async def disassociate_host_group(self, host_id: int, group_id: int) -> None:
        self.host_groups.remove((host_id, group_id))
        self.timeline.append(("disassociate", host_id, group_id))

    async def lookup_template(self, template_type, name=None, template_id=None) -> dict:
        return {"id": template_id, "name": name or "Configure hosts"}

    async def launch(self, launch) -> int:
        self.launches.append(launch)
        job_id = next(self._ids)
        self.timeline.append(("launch", launch.template_id, launch.inventory_id))
        return job_id

    async def wait_for_job(self, job_id, template_type, interval: float = 5.0) -> str:
        self.timeline.append(("wait_for_job", job_id))
        return self.job_status

    async def get_event_stream_url(self, name: str) -> str:
        if name not in self.event_streams:
            raise AAPLookupError(f"Event stream '{name}' not found")
        return self.event_streams[name]


class FakeReadinessGate:
    def __init__(self, timeline: list):
        self.timeline = timeline
        self.waited: list[str] = []

    async def wait(self, address: str) -> float:
        self.waited.append(address)
        self.timeline.append(("ready", address))
        return 0.0


class DispatchRecorder:
    """Replaces send_post_request in the dispatcher module"""

    def __init__(self, timeline: list):
        self.timeline = timeline
        self.calls: list[dict] = []
        self.status = 200

    async def __call__(self, url, data, timeout=30, headers=None, auth=None, verify_ssl=True):
        self.calls.append(
            {"url": url, "data": data, "auth": auth, "verify_ssl": verify_ssl}
        )
        self.timeline.append(("dispatch", data["job_template_name"], data["limit"]))
        success = 200 <= self.status < 300
        return success, self.status, "" if success else "stream rejected the event"


@pytest.fixture
def timeline() -> list:
    return []


@pytest.fixture
def fake_ec2(timeline) -> FakeEC2:
    return FakeEC2(timeline)


@pytest.fixture
def fake_aap(timeline) -> FakeAAP:
    return FakeAAP(timeline)


@pytest.fixture
def fake_gate(timeline) -> FakeReadinessGate:
    return FakeReadinessGate(timeline)


@pytest.fixture
def dispatch_recorder(timeline, monkeypatch) -> DispatchRecorder:
    recorder = DispatchRecorder(timeline)
    monkeypatch.setattr("aap_provisioner.workers.dispatcher.send_post_request", recorder)
    return recorder


def make_plan(count: int = 2, **overrides) -> ProvisionPlan:
    values = dict(
        security_group=SecurityGroupSpec(
            name="aap-managed-sg",
            ingress=[SecurityGroupRule(port=22, description="SSH")],
            egress=[SecurityGroupRule(port=-1, protocol="-1")],
        ),
        instances=InstanceSpec(
            name_prefix="web",
            count=count,
            ami_id="ami-0123456789abcdef0",
            key_name="deploy-key",
        ),
        inventory_name="provisioned",
        organization_name="Default",
        host_groups=["webservers"],
        ansible_user="ec2-user",
        job_template=JobTemplateSpec(template_id=7),
        event_stream=EventStreamSpec(
            name="provisioning", username="eda-user", password="eda-secret"
        ),
        dispatches=[
            DispatchConfig(
                event=LifecycleEvent.AFTER_CREATE,
                job_template_name="Configure new host",
                organization_name="Default",
            ),
            DispatchConfig(
                event=LifecycleEvent.AFTER_UPDATE,
                job_template_name="Reconfigure host",
                organization_name="Default",
            ),
        ],
    )
    values.update(overrides)
    return ProvisionPlan(**values)


@pytest.fixture
def plan() -> ProvisionPlan:
    return make_plan()


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "state.json"


@pytest.fixture
def outputs_path(tmp_path):
    return tmp_path / "outputs.json"


@pytest.fixture
def make_provisioner(fake_ec2, fake_aap, fake_gate, state_path, outputs_path):
    def _make(plan: ProvisionPlan) -> Provisioner:
        return Provisioner(
            plan,
            fake_aap,
            StateStore(state_path),
            outputs_file=str(outputs_path),
            ec2=fake_ec2,
            readiness_gate=fake_gate,
            job_poll_interval=0,
        )

    return _make


@pytest.fixture
def plan_factory():
    return make_plan
