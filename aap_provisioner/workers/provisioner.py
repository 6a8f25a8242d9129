import asyncio
import hashlib
import json
import os
from dataclasses import dataclass
from types import ModuleType

from pydantic import ValidationError

from ..aap.client import AAPClient
from ..core.errors import ConfigurationError, HostRegistrationError, ProvisionerError
from ..models.resources import (
    ApplyResult,
    ComputeInstance,
    DispatchedEvent,
    EventStreamConfig,
    Host,
    InstanceOutput,
    Inventory,
    JobLaunch,
    LifecycleEvent,
    LifecycleState,
    ProvisionOutputs,
    ProvisionPlan,
)
from ..models.state import InstanceRecord
from ..state.store import StateStore, write_outputs
from ..utils import ec2_utils
from ..utils.logger import get_logger
from .dispatcher import EventDispatcher, transition
from .readiness import ReadinessGate

logger = get_logger(__name__)


@dataclass
class HostChange:
    index: int
    host_name: str
    instance_id: str
    instance_created: bool
    event: LifecycleEvent | None
    dispatched: DispatchedEvent | None = None
    dispatch_error: str | None = None


def host_digest(host: Host) -> str:
    """Fingerprint of everything a host registration sends to AAP"""
    payload = host.model_dump(mode="json", exclude={"id"})
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()


def job_trigger_digest(plan: ProvisionPlan, inventory_id: int, records: list[InstanceRecord]) -> str:
    """Changes whenever the job should run again: new hosts, new addresses or a new template"""
    payload = {
        "inventory_id": inventory_id,
        "template": plan.job_template.model_dump(mode="json") if plan.job_template else None,
        "hosts": sorted((r.name, r.host_id, r.public_ip) for r in records),
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()


class Provisioner:
    """
    Brings AWS and AAP to the state described by a ProvisionPlan.

    Ordering per instance is security group -> instance -> public address ->
    readiness gate -> host registration -> lifecycle event dispatch. Once
    every branch is done the job or workflow is launched against the
    inventory. Branches for different instances run concurrently up to
    plan.max_parallelism.
    """

    def __init__(
        self,
        plan: ProvisionPlan,
        aap: AAPClient,
        state_store: StateStore,
        region_name: str = "us-east-1",
        outputs_file: str | None = None,
        ec2: ModuleType = ec2_utils,
        readiness_gate: ReadinessGate | None = None,
        job_poll_interval: float = 5.0,
    ):
        self.plan = plan
        self.aap = aap
        self.store = state_store
        self.region_name = region_name
        self.outputs_file = outputs_file
        self.ec2 = ec2
        self.readiness_gate = readiness_gate or ReadinessGate(
            port=plan.readiness_port,
            interval_seconds=plan.readiness_interval_seconds,
            timeout_seconds=plan.readiness_timeout_seconds,
        )
        self.job_poll_interval = job_poll_interval
        self.dispatcher: EventDispatcher | None = None

    @property
    def state(self):
        return self.store.state

    async def _resolve_event_stream(self) -> EventStreamConfig | None:
        spec = self.plan.event_stream
        if spec is None:
            return None

        url = spec.url
        if not url:
            url = await self.aap.get_event_stream_url(spec.name)
            logger.info(f"Event stream resolved | Name: {spec.name} | URL: {url}")

        try:
            return spec.resolve(url)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid event stream configuration: {e}") from e

    async def _ensure_inventory(self) -> Inventory:
        if self.state.inventory_id is not None:
            inventory = await self.aap.get_inventory(self.state.inventory_id)
            if inventory is not None:
                return inventory
            logger.warning(
                f"Inventory {self.state.inventory_id} from state is gone, looking it up again"
            )

        organization_id = await self.aap.get_organization_id(self.plan.organization_name)
        inventory, created = await self.aap.ensure_inventory(
            self.plan.inventory_name, organization_id
        )
        if inventory.id != self.state.inventory_id:
            # Hosts recorded against another inventory have to be created again
            for record in self.state.instances.values():
                record.host_id = None
                record.host_digest = None
                record.lifecycle = LifecycleState.PENDING
            self.state.group_ids = {}
        self.state.inventory_id = inventory.id
        self.state.inventory_created = self.state.inventory_created or created
        await self.store.save()
        return inventory

    async def _ensure_groups(self, inventory: Inventory) -> dict[str, int]:
        for name in self.plan.host_groups:
            if name not in self.state.group_ids:
                self.state.group_ids[name] = await self.aap.ensure_group(inventory.id, name)
        await self.store.save()
        return {name: self.state.group_ids[name] for name in self.plan.host_groups}

    async def _retire_instance(self, instance: ComputeInstance) -> None:
        """Terminate an instance that is being replaced so its tags stop matching"""
        if instance.state in ("shutting-down", "terminated"):
            return
        await self.ec2.terminate_instances([instance.instance_id], self.region_name)

    async def _ensure_instance(
        self,
        record: InstanceRecord,
        security_group_id: str,
        discovered: dict[int, ComputeInstance],
    ) -> tuple[ComputeInstance, bool]:
        instance = None
        if record.instance_id:
            instance = await self.ec2.describe_instance(record.instance_id, self.region_name)
        elif record.index in discovered:
            instance = discovered[record.index]
            logger.info(f"Found existing instance {instance.instance_id} for {record.name}")

        if instance is None and record.instance_id:
            logger.warning(f"Instance {record.instance_id} for {record.name} is gone, replacing it")
        elif instance is not None and not instance.is_usable:
            logger.warning(
                f"Instance {instance.instance_id} for {record.name} is {instance.state}, "
                f"replacing it"
            )
            await self._retire_instance(instance)
            instance = None

        created = False
        if instance is None:
            instance = await self.ec2.run_instance(
                self.plan.instances, record.index, security_group_id, self.region_name
            )
            created = True
            record.ready = False
            record.public_ip = None

        record.instance_id = instance.instance_id
        await self.store.save()
        return instance, created

    async def _register_host(
        self,
        record: InstanceRecord,
        instance: ComputeInstance,
        inventory: Inventory,
        group_ids: dict[str, int],
    ) -> LifecycleEvent | None:
        if not instance.public_ip:
            raise HostRegistrationError(
                f"Instance {instance.instance_id} has no public address, "
                f"cannot register host {record.name}"
            )

        host = Host(
            id=record.host_id,
            name=record.name,
            inventory_id=inventory.id,
            address=instance.public_ip,
            variables=self.plan.host_variables(),
            groups=list(group_ids),
        )
        digest = host_digest(host)

        if host.id is not None:
            remote = await self.aap.get_host(host.id)
            if remote is None or remote.get("inventory") != inventory.id:
                logger.warning(f"Host {host.id} ({record.name}) no longer exists in AAP")
                host.id = None
                record.host_id = None
                record.lifecycle = LifecycleState.PENDING

        adopted_unchanged = False
        if host.id is None:
            existing = await self.aap.find_host(inventory.id, record.name)
            if existing is not None:
                # Registered by an apply whose state was lost
                host.id = existing["id"]
                record.host_id = existing["id"]
                if record.lifecycle == LifecycleState.PENDING:
                    record.lifecycle = LifecycleState.CREATED
                record.host_digest = None
                adopted_unchanged = AAPClient.host_matches(existing, host)

        if host.id is None:
            host = await self.aap.create_host(host)
            event = LifecycleEvent.AFTER_CREATE
        elif adopted_unchanged:
            logger.info(f"Host {record.name} already registered as {host.id}, adopting it")
            event = None
        elif record.host_digest != digest:
            host = await self.aap.update_host(host)
            event = LifecycleEvent.AFTER_UPDATE
        else:
            logger.debug(f"Host {record.name} is up to date")
            return None

        await self._sync_groups(host.id, group_ids)

        record.host_id = host.id
        record.host_digest = digest
        if event is not None:
            record.lifecycle = transition(record.lifecycle, event)
        await self.store.save()
        return event

    async def _sync_groups(self, host_id: int, group_ids: dict[str, int]) -> None:
        for group_id in group_ids.values():
            await self.aap.associate_host_group(host_id, group_id)
        # Groups this tool manages that are no longer declared
        for name, group_id in self.state.group_ids.items():
            if name not in group_ids:
                await self.aap.disassociate_host_group(host_id, group_id)

    async def _provision_index(
        self,
        index: int,
        security_group_id: str,
        inventory: Inventory,
        group_ids: dict[str, int],
        discovered: dict[int, ComputeInstance],
        semaphore: asyncio.Semaphore,
    ) -> HostChange:
        async with semaphore:
            record = self.state.record_for(index, self.plan.instances.instance_name(index))
            instance, created = await self._ensure_instance(
                record, security_group_id, discovered
            )

            if instance.state != "running" or not instance.public_ip:
                instance = await self.ec2.wait_for_public_ip(
                    instance.instance_id,
                    self.region_name,
                    timeout=self.plan.public_ip_timeout_seconds,
                )
            if record.public_ip != instance.public_ip:
                record.public_ip = instance.public_ip
                record.ready = False
                await self.store.save()

            if not record.ready:
                await self.readiness_gate.wait(instance.public_ip)
                record.ready = True
                await self.store.save()

            event = await self._register_host(record, instance, inventory, group_ids)
            change = HostChange(
                index=index,
                host_name=record.name,
                instance_id=instance.instance_id,
                instance_created=created,
                event=event,
            )
            await self._dispatch(change)
            return change

    async def _remove_surplus(self, result: ApplyResult) -> None:
        """Tear down indexes beyond the declared count"""
        surplus = sorted(i for i in self.state.instances if i >= self.plan.instances.count)
        if not surplus:
            return

        instance_ids = []
        for index in surplus:
            record = self.state.instances[index]
            if record.host_id is not None:
                await self.aap.delete_host(record.host_id)
                result.removed_hosts.append(record.name)
            if record.instance_id:
                instance_ids.append(record.instance_id)

        await self.ec2.terminate_instances(instance_ids, self.region_name)
        for index in surplus:
            del self.state.instances[index]
        await self.store.save()
        logger.info(f"Removed {len(surplus)} surplus instance(s)")

    async def _launch_job(self, inventory: Inventory, result: ApplyResult) -> None:
        template = self.plan.job_template
        if template is None:
            return

        records = [self.state.instances[i] for i in range(self.plan.instances.count)]
        digest = job_trigger_digest(self.plan, inventory.id, records)
        if digest == self.state.job_trigger_digest:
            logger.info("Hosts unchanged since the last launch, not launching the job again")
            return

        await self.aap.lookup_template(template.template_type, template_id=template.template_id)
        job_id = await self.aap.launch(
            JobLaunch(
                template_type=template.template_type,
                template_id=template.template_id,
                inventory_id=inventory.id,
                extra_vars=template.extra_vars,
                wait_for_completion=template.wait_for_completion,
            )
        )
        result.job_id = job_id
        self.state.last_job_id = job_id
        self.state.job_trigger_digest = digest
        await self.store.save()

        if template.wait_for_completion:
            await self.aap.wait_for_job(
                job_id, template.template_type, interval=self.job_poll_interval
            )

    async def _dispatch(self, change: HostChange) -> None:
        if self.dispatcher is None or change.event is None:
            return
        try:
            change.dispatched = await self.dispatcher.dispatch(change.event, change.host_name)
        except ProvisionerError as e:
            # Not retried: the lifecycle transition is already recorded
            logger.error(f"Event dispatch failed | Host: {change.host_name} | Error: {e}")
            change.dispatch_error = str(e)

    def _build_outputs(self, event_stream: EventStreamConfig | None) -> ProvisionOutputs:
        records = [self.state.instances[i] for i in sorted(self.state.instances)]
        return ProvisionOutputs(
            instance_public_ips=[r.public_ip for r in records if r.public_ip],
            event_stream_url=event_stream.url if event_stream else None,
            instances=[
                InstanceOutput(
                    index=r.index,
                    name=r.name,
                    instance_id=r.instance_id,
                    public_ip=r.public_ip,
                    host_id=r.host_id,
                )
                for r in records
                if r.instance_id
            ],
        )

    async def apply(self) -> ApplyResult:
        """Converge AWS and AAP on the plan; safe to run repeatedly"""
        await self.store.load()
        result = ApplyResult()

        # Event stream problems must surface before anything is created
        event_stream = await self._resolve_event_stream()
        if event_stream is not None:
            self.dispatcher = EventDispatcher(
                event_stream, self.plan.dispatches, timeout=self.plan.event_dispatch_timeout
            )
            self.state.event_stream_url = event_stream.url

        security_group_id = await self.ec2.ensure_security_group(
            self.plan.security_group, self.region_name
        )
        self.state.security_group_id = security_group_id
        await self.store.save()

        inventory = await self._ensure_inventory()
        group_ids = await self._ensure_groups(inventory)

        await self._remove_surplus(result)

        discovered = await self.ec2.find_instances(self.plan.instances, self.region_name)
        semaphore = asyncio.Semaphore(self.plan.max_parallelism)
        outcomes = await asyncio.gather(
            *[
                self._provision_index(
                    index, security_group_id, inventory, group_ids, discovered, semaphore
                )
                for index in range(self.plan.instances.count)
            ],
            return_exceptions=True,
        )

        changes: list[HostChange] = []
        failures: list[BaseException] = []
        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    f"Provisioning failed | Index: {index} | "
                    f"Error: {type(outcome).__name__}: {outcome}"
                )
                failures.append(outcome)
            else:
                changes.append(outcome)
        await self.store.save()

        if failures:
            # State already records what succeeded; the next apply picks up from there
            raise failures[0]

        # Every host has left the groups that are no longer declared
        self.state.group_ids = dict(group_ids)
        await self.store.save()

        for change in changes:
            if change.instance_created:
                result.created_instances.append(change.instance_id)
            if change.event == LifecycleEvent.AFTER_CREATE:
                result.created_hosts.append(change.host_name)
            elif change.event == LifecycleEvent.AFTER_UPDATE:
                result.updated_hosts.append(change.host_name)
            if change.dispatched is not None:
                result.dispatched.append(change.dispatched)
            if change.dispatch_error:
                result.dispatch_errors.append(change.dispatch_error)

        await self._launch_job(inventory, result)

        result.outputs = self._build_outputs(event_stream)
        if self.outputs_file:
            await write_outputs(self.outputs_file, result.outputs.as_terraform_outputs())

        logger.info(
            f"Apply complete | Instances created: {len(result.created_instances)} | "
            f"Hosts created: {len(result.created_hosts)} | "
            f"Hosts updated: {len(result.updated_hosts)} | "
            f"Job: {result.job_id} | Events dispatched: {len(result.dispatched)} | "
            f"Dispatch failures: {len(result.dispatch_errors)}"
        )
        return result

    async def destroy(self) -> None:
        """Remove everything recorded in state, in reverse dependency order"""
        await self.store.load()
        records = list(self.state.instances.values())

        for record in records:
            if record.host_id is not None:
                await self.aap.delete_host(record.host_id)
                record.host_id = None
        await self.store.save()

        instance_ids = [r.instance_id for r in records if r.instance_id]
        await self.ec2.terminate_instances(instance_ids, self.region_name)
        for record in records:
            record.instance_id = None
        await self.store.save()

        if self.state.security_group_id:
            await self.ec2.delete_security_group(
                self.state.security_group_id, self.region_name
            )

        if self.state.inventory_created and self.state.inventory_id is not None:
            await self.aap.delete_inventory(self.state.inventory_id)

        await self.store.clear()
        if self.outputs_file and os.path.exists(self.outputs_file):
            await asyncio.to_thread(os.remove, self.outputs_file)
        logger.info("Destroy complete")
