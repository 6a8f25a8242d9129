"""Turns flat Settings into the validated ProvisionPlan the provisioner executes."""

import json
from typing import Any

from pydantic import ValidationError

from ..models.resources import (
    DispatchConfig,
    EventStreamSpec,
    InstanceSpec,
    JobTemplateSpec,
    LifecycleEvent,
    ProvisionPlan,
    SecurityGroupRule,
    SecurityGroupSpec,
)
from .config import Settings
from .errors import ConfigurationError

REQUIRED_SETTINGS = {
    "ami_id": "AMI_ID",
    "ssh_key_name": "SSH_KEY_NAME",
    "aap_host": "AAP_HOST",
    "aap_username": "AAP_USERNAME",
    "aap_password": "AAP_PASSWORD",
}


def _ingress_rules(settings: Settings) -> list[SecurityGroupRule]:
    rules = [
        SecurityGroupRule(
            port=settings.readiness_port,
            cidr=settings.ssh_ingress_cidr,
            description="SSH",
        )
    ]
    for port in settings.extra_ingress_ports:
        try:
            rules.append(
                SecurityGroupRule(port=int(port), cidr=settings.ssh_ingress_cidr)
            )
        except ValueError as e:
            raise ConfigurationError(f"EXTRA_INGRESS_PORTS has an invalid port {port!r}") from e
    return rules


def _extra_vars(raw: str) -> dict[str, Any]:
    if not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"JOB_EXTRA_VARS is not valid JSON: {e}") from e
    if not isinstance(value, dict):
        raise ConfigurationError(
            f"JOB_EXTRA_VARS must be a JSON object, got {type(value).__name__}"
        )
    return value


def _dispatch_configs(settings: Settings) -> list[DispatchConfig]:
    configs = []
    for event, template_name in (
        (LifecycleEvent.AFTER_CREATE, settings.dispatch_create_template_name),
        (LifecycleEvent.AFTER_UPDATE, settings.dispatch_update_template_name),
    ):
        if template_name:
            configs.append(
                DispatchConfig(
                    event=event,
                    job_template_name=template_name,
                    organization_name=settings.dispatch_organization_name,
                    template_type=settings.dispatch_template_type,
                    limit=settings.dispatch_limit,
                )
            )
    return configs


def build_plan(settings: Settings) -> ProvisionPlan:
    """
    Build the desired state from settings.

    Raises:
        ConfigurationError: a required setting is missing or a value is invalid
    """
    missing = [env for attr, env in REQUIRED_SETTINGS.items() if not getattr(settings, attr)]
    if missing:
        raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")

    try:
        event_stream = None
        if settings.event_stream_name or settings.event_stream_url:
            event_stream = EventStreamSpec(
                name=settings.event_stream_name or None,
                url=settings.event_stream_url or None,
                username=settings.event_stream_username,
                password=settings.event_stream_password,
                insecure_skip_verify=settings.event_stream_insecure_skip_verify,
            )

        extra_vars = _extra_vars(settings.job_extra_vars)
        job_template = None
        if settings.job_template_id is not None:
            job_template = JobTemplateSpec(
                template_type=settings.job_template_type,
                template_id=settings.job_template_id,
                extra_vars=extra_vars,
                wait_for_completion=settings.job_wait_for_completion,
            )

        return ProvisionPlan(
            security_group=SecurityGroupSpec(
                name=settings.security_group_name,
                vpc_id=settings.vpc_id,
                ingress=_ingress_rules(settings),
                egress=[SecurityGroupRule(port=-1, protocol="-1", cidr="0.0.0.0/0")],
            ),
            instances=InstanceSpec(
                name_prefix=settings.instance_name_prefix,
                count=settings.instance_count,
                ami_id=settings.ami_id,
                instance_type=settings.instance_type,
                key_name=settings.ssh_key_name,
                subnet_id=settings.subnet_id,
            ),
            inventory_name=settings.aap_inventory_name,
            organization_name=settings.aap_organization_name,
            host_groups=settings.aap_host_groups,
            ansible_user=settings.ansible_user,
            job_template=job_template,
            event_stream=event_stream,
            dispatches=_dispatch_configs(settings),
            event_dispatch_timeout=settings.event_dispatch_timeout,
            readiness_port=settings.readiness_port,
            readiness_interval_seconds=settings.readiness_interval_seconds,
            readiness_timeout_seconds=settings.readiness_timeout_seconds,
            public_ip_timeout_seconds=settings.public_ip_timeout_seconds,
            max_parallelism=settings.max_parallelism,
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
