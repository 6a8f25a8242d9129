"""End-to-end behaviour of Provisioner.apply/destroy against fake EC2 and AAP."""

import json

import pytest

from aap_provisioner.core.errors import (
    AAPLookupError,
    HostRegistrationError,
    ReadinessTimeoutError,
)
from aap_provisioner.models.resources import (
    ComputeInstance,
    EventStreamSpec,
    JobTemplateSpec,
    LifecycleState,
)
from aap_provisioner.state.store import StateStore

pytestmark = pytest.mark.asyncio


def _positions(timeline, kind):
    return [i for i, entry in enumerate(timeline) if entry[0] == kind]


async def test_apply_creates_one_host_per_instance(
    make_provisioner, plan_factory, fake_ec2, fake_aap, dispatch_recorder
):
    result = await make_provisioner(plan_factory(count=3)).apply()

    assert len(fake_ec2.instances) == 3
    assert len(fake_aap.hosts) == 3
    assert sorted(result.created_hosts) == ["web-0", "web-1", "web-2"]

    ips_by_name = {i.name: i.public_ip for i in fake_ec2.instances.values()}
    for host in fake_aap.hosts.values():
        assert host["address"] == ips_by_name[host["name"]]


async def test_host_registration_waits_for_address_and_readiness(
    make_provisioner, plan, timeline, dispatch_recorder
):
    await make_provisioner(plan).apply()

    for name in ("web-0", "web-1"):
        run = next(i for i, e in enumerate(timeline) if e[:2] == ("run_instance", name))
        address_at = next(i for i, e in enumerate(timeline) if e[:2] == ("public_ip", name))
        address = timeline[address_at][2]
        ready = timeline.index(("ready", address))
        registered = timeline.index(("create_host", name, address))
        assert run < address_at < ready < registered


async def test_security_group_precedes_instances_and_job_follows_hosts(
    make_provisioner, plan, timeline, dispatch_recorder
):
    await make_provisioner(plan).apply()

    assert timeline[0] == ("create_security_group", "aap-managed-sg")
    launches = _positions(timeline, "launch")
    assert len(launches) == 1
    assert max(_positions(timeline, "create_host")) < launches[0]


async def test_job_launched_against_inventory(make_provisioner, plan, fake_aap, dispatch_recorder):
    result = await make_provisioner(plan).apply()

    [launch] = fake_aap.launches
    [inventory] = fake_aap.inventories.values()
    assert launch.template_id == 7
    assert launch.inventory_id == inventory.id
    assert result.job_id is not None


async def test_wait_for_completion_polls_the_job(
    make_provisioner, plan_factory, timeline, dispatch_recorder
):
    plan = plan_factory(job_template=JobTemplateSpec(template_id=7, wait_for_completion=True))
    result = await make_provisioner(plan).apply()

    assert ("wait_for_job", result.job_id) in timeline


async def test_create_event_dispatched_once_per_host(make_provisioner, plan, dispatch_recorder):
    result = await make_provisioner(plan).apply()

    assert len(dispatch_recorder.calls) == 2
    limits = sorted(call["data"]["limit"] for call in dispatch_recorder.calls)
    assert limits == ["web-0", "web-1"]
    for call in dispatch_recorder.calls:
        assert call["data"]["job_template_name"] == "Configure new host"
        assert call["data"]["template_type"] == "job"
        assert call["data"]["organization_name"] == "Default"
        assert call["url"].endswith("/abc/post/")
        assert call["auth"] == ("eda-user", "eda-secret")
        assert call["verify_ssl"] is True
    assert len(result.dispatched) == 2
    assert result.outputs.event_stream_url.endswith("/abc/post/")


async def test_reapply_without_changes_is_a_no_op(
    make_provisioner, plan, timeline, fake_ec2, fake_aap, dispatch_recorder
):
    await make_provisioner(plan).apply()
    entries_after_first = len(timeline)
    dispatches_after_first = len(dispatch_recorder.calls)

    result = await make_provisioner(plan).apply()

    assert len(timeline) == entries_after_first
    assert len(dispatch_recorder.calls) == dispatches_after_first
    assert len(fake_ec2.instances) == 2
    assert len(fake_aap.launches) == 1
    assert not result.changed


async def test_replaced_instance_fires_update_event(
    make_provisioner, plan, state_path, fake_ec2, fake_aap, dispatch_recorder
):
    await make_provisioner(plan).apply()
    state = json.loads(state_path.read_text())
    old_id = state["instances"]["0"]["instance_id"]
    fake_ec2.instances[old_id].state = "terminated"
    dispatch_recorder.calls.clear()

    result = await make_provisioner(plan).apply()

    assert len(result.created_instances) == 1
    assert result.updated_hosts == ["web-0"]
    assert result.created_hosts == []
    [call] = dispatch_recorder.calls
    assert call["data"]["job_template_name"] == "Reconfigure host"
    assert call["data"]["limit"] == "web-0"
    assert len(fake_aap.launches) == 2

    new_ip = next(
        i.public_ip for i in fake_ec2.instances.values()
        if i.name == "web-0" and i.state == "running"
    )
    host = next(h for h in fake_aap.hosts.values() if h["name"] == "web-0")
    assert host["address"] == new_ip

    store = StateStore(state_path)
    await store.load()
    assert store.state.instances[0].lifecycle == LifecycleState.UPDATED
    assert store.state.instances[1].lifecycle == LifecycleState.CREATED


async def test_dispatch_failure_is_reported_not_retried(make_provisioner, plan, dispatch_recorder):
    dispatch_recorder.status = 503

    result = await make_provisioner(plan).apply()

    assert len(dispatch_recorder.calls) == 2
    assert len(result.dispatch_errors) == 2
    assert result.dispatched == []
    assert len(result.created_hosts) == 2


async def test_missing_event_stream_stops_before_any_resource(
    make_provisioner, plan_factory, timeline, dispatch_recorder
):
    plan = plan_factory(
        event_stream=EventStreamSpec(name="missing", username="u", password="p")
    )

    with pytest.raises(AAPLookupError):
        await make_provisioner(plan).apply()

    assert timeline == []


async def test_plan_without_event_stream_dispatches_nothing(
    make_provisioner, plan_factory, dispatch_recorder
):
    plan = plan_factory(event_stream=None, dispatches=[])

    result = await make_provisioner(plan).apply()

    assert dispatch_recorder.calls == []
    assert result.outputs.event_stream_url is None


async def test_failed_branch_keeps_partial_state_for_the_next_apply(
    make_provisioner, plan, fake_ec2, fake_aap, fake_gate, timeline, dispatch_recorder
):
    original_wait = fake_gate.wait
    calls = {"n": 0}

    async def flaky_wait(address):
        calls["n"] += 1
        if calls["n"] == 1:
            raise ReadinessTimeoutError(address, 22, 600)
        return await original_wait(address)

    fake_gate.wait = flaky_wait

    with pytest.raises(ReadinessTimeoutError):
        await make_provisioner(plan).apply()

    assert len(fake_ec2.instances) == 2
    assert len(fake_aap.hosts) == 1
    assert fake_aap.launches == []

    result = await make_provisioner(plan).apply()

    assert len(fake_ec2.instances) == 2
    assert len(fake_aap.hosts) == 2
    assert len(result.created_hosts) == 1
    assert len(fake_aap.launches) == 1
    assert len(dispatch_recorder.calls) == 2


async def test_scaling_down_removes_surplus_hosts_and_instances(
    make_provisioner, plan_factory, fake_ec2, fake_aap, dispatch_recorder
):
    await make_provisioner(plan_factory(count=3)).apply()

    result = await make_provisioner(plan_factory(count=1)).apply()

    assert sorted(result.removed_hosts) == ["web-1", "web-2"]
    assert [h["name"] for h in fake_aap.hosts.values()] == ["web-0"]
    running = [i for i in fake_ec2.instances.values() if i.state == "running"]
    assert [i.name for i in running] == ["web-0"]


async def test_outputs_file_lists_public_ips(
    make_provisioner, plan, outputs_path, fake_ec2, dispatch_recorder
):
    result = await make_provisioner(plan).apply()

    outputs = json.loads(outputs_path.read_text())
    assert outputs["instance_public_ips"]["value"] == result.outputs.instance_public_ips
    assert len(outputs["instance_public_ips"]["value"]) == 2
    assert outputs["event_stream_url"]["value"].endswith("/abc/post/")
    assert [i["name"] for i in outputs["instances"]["value"]] == ["web-0", "web-1"]


async def test_hosts_join_configured_groups(make_provisioner, plan, fake_aap, dispatch_recorder):
    await make_provisioner(plan).apply()

    [group_id] = fake_aap.groups.values()
    assert sorted(fake_aap.host_groups) == sorted(
        (host_id, group_id) for host_id in fake_aap.hosts
    )


async def test_register_host_requires_public_address(make_provisioner, plan, fake_aap):
    provisioner = make_provisioner(plan)
    await provisioner.store.load()
    inventory, _ = await fake_aap.ensure_inventory("provisioned", 1)
    record = provisioner.state.record_for(0, "web-0")
    instance = ComputeInstance(index=0, instance_id="i-1", name="web-0", state="running")

    with pytest.raises(HostRegistrationError):
        await provisioner._register_host(record, instance, inventory, {})

    assert fake_aap.hosts == {}


async def test_destroy_removes_everything(
    make_provisioner, plan, state_path, outputs_path, fake_ec2, fake_aap, dispatch_recorder
):
    await make_provisioner(plan).apply()

    await make_provisioner(plan).destroy()

    assert fake_aap.hosts == {}
    assert fake_aap.inventories == {}
    assert all(i.state == "terminated" for i in fake_ec2.instances.values())
    assert fake_ec2.deleted_groups == ["sg-0001"]
    assert not state_path.exists()
    assert not outputs_path.exists()


async def test_destroy_keeps_inventory_it_did_not_create(
    make_provisioner, plan, fake_aap, dispatch_recorder
):
    await fake_aap.ensure_inventory("provisioned", 1)
    await make_provisioner(plan).apply()

    await make_provisioner(plan).destroy()

    assert len(fake_aap.inventories) == 1
    assert fake_aap.hosts == {}


async def test_inventory_deleted_between_applies_recreates_every_host(
    make_provisioner, plan, state_path, fake_aap, dispatch_recorder
):
    await make_provisioner(plan).apply()
    fake_aap.inventories.clear()
    fake_aap.hosts.clear()
    fake_aap.host_groups.clear()
    dispatch_recorder.calls.clear()

    result = await make_provisioner(plan).apply()

    [inventory] = fake_aap.inventories.values()
    assert sorted(result.created_hosts) == ["web-0", "web-1"]
    assert sorted(h["name"] for h in fake_aap.hosts.values()) == ["web-0", "web-1"]
    assert all(h["inventory"] == inventory.id for h in fake_aap.hosts.values())
    assert len(dispatch_recorder.calls) == 2
    assert all(
        call["data"]["job_template_name"] == "Configure new host"
        for call in dispatch_recorder.calls
    )
    assert fake_aap.launches[-1].inventory_id == inventory.id

    store = StateStore(state_path)
    await store.load()
    assert store.state.inventory_id == inventory.id
    assert all(r.lifecycle == LifecycleState.CREATED for r in store.state.instances.values())


async def test_lost_state_adopts_existing_instances_and_hosts(
    make_provisioner, plan, state_path, timeline, fake_ec2, fake_aap, dispatch_recorder
):
    await make_provisioner(plan).apply()
    host_ids = sorted(fake_aap.hosts)
    state_path.unlink()
    dispatch_recorder.calls.clear()
    entries_after_first = len(timeline)

    result = await make_provisioner(plan).apply()

    later = timeline[entries_after_first:]
    assert not [e for e in later if e[0] in ("run_instance", "create_host", "update_host")]
    assert len(fake_ec2.instances) == 2
    assert sorted(fake_aap.hosts) == host_ids
    assert dispatch_recorder.calls == []
    assert result.created_instances == []
    assert result.created_hosts == []
    assert result.updated_hosts == []

    store = StateStore(state_path)
    await store.load()
    assert sorted(r.host_id for r in store.state.instances.values()) == host_ids
    assert all(r.lifecycle == LifecycleState.CREATED for r in store.state.instances.values())


async def test_host_deleted_in_aap_is_registered_again(
    make_provisioner, plan, state_path, fake_aap, dispatch_recorder
):
    await make_provisioner(plan).apply()
    [old_id] = [i for i, h in fake_aap.hosts.items() if h["name"] == "web-1"]
    del fake_aap.hosts[old_id]
    dispatch_recorder.calls.clear()

    result = await make_provisioner(plan).apply()

    assert result.created_hosts == ["web-1"]
    [call] = dispatch_recorder.calls
    assert call["data"]["job_template_name"] == "Configure new host"
    assert call["data"]["limit"] == "web-1"
    assert sorted(h["name"] for h in fake_aap.hosts.values()) == ["web-0", "web-1"]

    store = StateStore(state_path)
    await store.load()
    assert store.state.instances[1].host_id != old_id
    assert store.state.instances[1].lifecycle == LifecycleState.CREATED


async def test_stopped_instance_is_terminated_and_replaced(
    make_provisioner, plan, state_path, timeline, fake_ec2, fake_aap, dispatch_recorder
):
    await make_provisioner(plan).apply()
    old_id = json.loads(state_path.read_text())["instances"]["0"]["instance_id"]
    fake_ec2.instances[old_id].state = "stopped"
    dispatch_recorder.calls.clear()

    result = await make_provisioner(plan).apply()

    assert ("terminate", old_id) in timeline
    assert fake_ec2.instances[old_id].state == "terminated"
    assert len(result.created_instances) == 1
    assert result.updated_hosts == ["web-0"]
    [call] = dispatch_recorder.calls
    assert call["data"]["job_template_name"] == "Reconfigure host"

    live = [i for i in fake_ec2.instances.values() if i.state != "terminated"]
    assert sorted(i.name for i in live) == ["web-0", "web-1"]


async def test_stopped_instance_found_after_state_loss_is_replaced(
    make_provisioner, plan, state_path, timeline, fake_ec2, fake_aap, dispatch_recorder
):
    await make_provisioner(plan).apply()
    old_id = json.loads(state_path.read_text())["instances"]["0"]["instance_id"]
    state_path.unlink()
    fake_ec2.instances[old_id].state = "stopped"
    dispatch_recorder.calls.clear()

    result = await make_provisioner(plan).apply()

    assert ("terminate", old_id) in timeline
    assert len(result.created_instances) == 1
    assert result.updated_hosts == ["web-0"]
    assert result.created_hosts == []
    [call] = dispatch_recorder.calls
    assert call["data"]["job_template_name"] == "Reconfigure host"
    assert call["data"]["limit"] == "web-0"

    live = [i for i in fake_ec2.instances.values() if i.state != "terminated"]
    assert sorted(i.name for i in live) == ["web-0", "web-1"]
    host = next(h for h in fake_aap.hosts.values() if h["name"] == "web-0")
    new_ip = next(i.public_ip for i in live if i.name == "web-0")
    assert host["address"] == new_ip

    store = StateStore(state_path)
    await store.load()
    assert store.state.instances[0].lifecycle == LifecycleState.UPDATED


async def test_dropped_group_is_removed_from_every_host(
    make_provisioner, plan_factory, state_path, timeline, fake_aap, dispatch_recorder
):
    await make_provisioner(plan_factory(host_groups=["webservers", "canary"])).apply()
    inventory_id = next(iter(fake_aap.inventories))
    canary_id = fake_aap.groups[(inventory_id, "canary")]
    webservers_id = fake_aap.groups[(inventory_id, "webservers")]

    await make_provisioner(plan_factory(host_groups=["webservers"])).apply()

    assert sorted(fake_aap.host_groups) == sorted(
        (host_id, webservers_id) for host_id in fake_aap.hosts
    )
    assert sorted(e[1] for e in timeline if e[0] == "disassociate") == sorted(fake_aap.hosts)

    store = StateStore(state_path)
    await store.load()
    assert store.state.group_ids == {"webservers": webservers_id}
