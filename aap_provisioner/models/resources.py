from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class LifecycleState(str, Enum):
    PENDING = "pending"
    CREATED = "created"
    UPDATED = "updated"


class LifecycleEvent(str, Enum):
    AFTER_CREATE = "after_create"
    AFTER_UPDATE = "after_update"


class TemplateType(str, Enum):
    JOB = "job"
    WORKFLOW_JOB = "workflow_job"


class SecurityGroupRule(BaseModel):
    port: int = Field(ge=-1, le=65535)
    to_port: int | None = Field(default=None, ge=-1, le=65535)
    protocol: str = "tcp"
    cidr: str = "0.0.0.0/0"
    description: str = ""

    @model_validator(mode="after")
    def _default_to_port(self) -> "SecurityGroupRule":
        if self.to_port is None:
            self.to_port = self.port
        return self

    def to_ip_permission(self) -> dict[str, Any]:
        """Render the rule in the shape expected by authorize_security_group_*"""
        permission: dict[str, Any] = {
            "IpProtocol": self.protocol,
            "IpRanges": [{"CidrIp": self.cidr, "Description": self.description}],
        }
        if self.protocol != "-1":
            permission["FromPort"] = self.port
            permission["ToPort"] = self.to_port
        return permission

    def key(self) -> tuple[str, int | None, int | None, str]:
        if self.protocol == "-1":
            return ("-1", None, None, self.cidr)
        return (self.protocol, self.port, self.to_port, self.cidr)


class SecurityGroupSpec(BaseModel):
    name: str
    description: str = "Managed by aap-provisioner"
    vpc_id: str | None = None
    ingress: list[SecurityGroupRule] = Field(default_factory=list)
    egress: list[SecurityGroupRule] = Field(default_factory=list)


class InstanceSpec(BaseModel):
    name_prefix: str
    count: int = Field(default=1, ge=0)
    ami_id: str
    instance_type: str = "t2.micro"
    key_name: str
    subnet_id: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)

    def instance_name(self, index: int) -> str:
        return f"{self.name_prefix}-{index}"


class ComputeInstance(BaseModel):
    index: int
    instance_id: str
    name: str
    state: str = "pending"
    public_ip: str | None = None
    private_ip: str | None = None
    security_group_ids: list[str] = Field(default_factory=list)

    @property
    def is_usable(self) -> bool:
        return self.state in ("pending", "running")


class Inventory(BaseModel):
    id: int
    name: str
    organization_id: int


class Host(BaseModel):
    id: int | None = None
    name: str
    inventory_id: int
    address: str
    variables: dict[str, Any] = Field(default_factory=dict)
    groups: list[str] = Field(default_factory=list)


class EventStreamConfig(BaseModel):
    url: str
    username: str
    password: str
    insecure_skip_verify: bool = False

    @field_validator("url")
    @classmethod
    def _url_must_be_http(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"event stream URL must be http(s), got {value!r}")
        return value

    @field_validator("username", "password")
    @classmethod
    def _credentials_required(cls, value: str) -> str:
        if not value:
            raise ValueError("event stream credentials must not be empty")
        return value


class EventStreamSpec(BaseModel):
    """Event stream as configured; the URL may still have to be looked up by name"""

    name: str | None = None
    url: str | None = None
    username: str
    password: str
    insecure_skip_verify: bool = False

    @field_validator("username", "password")
    @classmethod
    def _credentials_required(cls, value: str) -> str:
        if not value:
            raise ValueError("event stream credentials must not be empty")
        return value

    @model_validator(mode="after")
    def _name_or_url(self) -> "EventStreamSpec":
        if not self.name and not self.url:
            raise ValueError("an event stream needs a name to look up or an explicit URL")
        return self

    def resolve(self, url: str) -> EventStreamConfig:
        return EventStreamConfig(
            url=url,
            username=self.username,
            password=self.password,
            insecure_skip_verify=self.insecure_skip_verify,
        )


class DispatchConfig(BaseModel):
    event: LifecycleEvent
    job_template_name: str = Field(min_length=1)
    organization_name: str = Field(min_length=1)
    template_type: TemplateType = TemplateType.JOB
    # None targets the host that triggered the event
    limit: str | None = None


class DispatchedEvent(BaseModel):
    limit: str
    template_type: TemplateType
    job_template_name: str
    organization_name: str
    event_stream_config: EventStreamConfig

    def request_body(self) -> dict[str, Any]:
        """JSON body POSTed to the event stream; credentials travel as basic auth"""
        # event_stream_config is where the POST goes and how it authenticates. Like the
        # event_stream_config block of the aap provider, it never appears in the body
        # the rulebook receives.
        return self.model_dump(mode="json", exclude={"event_stream_config"})


class JobLaunch(BaseModel):
    template_type: TemplateType = TemplateType.JOB
    template_id: int
    inventory_id: int | None = None
    limit: str | None = None
    extra_vars: dict[str, Any] = Field(default_factory=dict)
    wait_for_completion: bool = False


class JobTemplateSpec(BaseModel):
    template_type: TemplateType = TemplateType.JOB
    template_id: int
    extra_vars: dict[str, Any] = Field(default_factory=dict)
    wait_for_completion: bool = False


class ProvisionPlan(BaseModel):
    security_group: SecurityGroupSpec
    instances: InstanceSpec
    inventory_name: str
    organization_name: str
    host_groups: list[str] = Field(default_factory=list)
    ansible_user: str = "ec2-user"
    job_template: JobTemplateSpec | None = None
    event_stream: EventStreamSpec | None = None
    dispatches: list[DispatchConfig] = Field(default_factory=list)
    event_dispatch_timeout: int = 30
    readiness_port: int = 22
    readiness_interval_seconds: float = 5.0
    readiness_timeout_seconds: float = 600.0
    public_ip_timeout_seconds: float = 300.0
    max_parallelism: int = Field(default=10, ge=1)

    @model_validator(mode="after")
    def _check_dispatches(self) -> "ProvisionPlan":
        events = [dispatch.event for dispatch in self.dispatches]
        if len(events) != len(set(events)):
            raise ValueError("only one dispatch config may be declared per lifecycle event")
        if self.dispatches and self.event_stream is None:
            raise ValueError("dispatch configs require an event stream")
        return self

    def host_variables(self) -> dict[str, Any]:
        return {"ansible_user": self.ansible_user}


class InstanceOutput(BaseModel):
    index: int
    name: str
    instance_id: str
    public_ip: str | None = None
    host_id: int | None = None


class ProvisionOutputs(BaseModel):
    instance_public_ips: list[str] = Field(default_factory=list)
    event_stream_url: str | None = None
    instances: list[InstanceOutput] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def as_terraform_outputs(self) -> dict[str, dict[str, Any]]:
        """Outputs keyed like `terraform output -json` so existing tooling can read them"""
        data = self.model_dump(mode="json")
        return {key: {"value": value} for key, value in data.items()}


class ApplyResult(BaseModel):
    created_instances: list[str] = Field(default_factory=list)
    created_hosts: list[str] = Field(default_factory=list)
    updated_hosts: list[str] = Field(default_factory=list)
    removed_hosts: list[str] = Field(default_factory=list)
    job_id: int | None = None
    dispatched: list[DispatchedEvent] = Field(default_factory=list)
    dispatch_errors: list[str] = Field(default_factory=list)
    outputs: ProvisionOutputs = Field(default_factory=ProvisionOutputs)

    @property
    def changed(self) -> bool:
        return bool(
            self.created_instances
            or self.created_hosts
            or self.updated_hosts
            or self.removed_hosts
            or self.job_id
            or self.dispatched
        )
