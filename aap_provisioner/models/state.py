from datetime import UTC, datetime

from pydantic import BaseModel, Field

from .resources import LifecycleState


class InstanceRecord(BaseModel):
    """What a previous apply did for one index of the instance count"""

    index: int
    name: str
    instance_id: str | None = None
    public_ip: str | None = None
    ready: bool = False
    host_id: int | None = None
    host_digest: str | None = None
    lifecycle: LifecycleState = LifecycleState.PENDING


class ProvisionState(BaseModel):
    version: int = 1
    security_group_id: str | None = None
    inventory_id: int | None = None
    inventory_created: bool = False
    group_ids: dict[str, int] = Field(default_factory=dict)
    event_stream_url: str | None = None
    instances: dict[int, InstanceRecord] = Field(default_factory=dict)
    job_trigger_digest: str | None = None
    last_job_id: int | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def record_for(self, index: int, name: str) -> InstanceRecord:
        record = self.instances.get(index)
        if record is None:
            record = InstanceRecord(index=index, name=name)
            self.instances[index] = record
        return record
