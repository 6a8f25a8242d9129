import asyncio
import time
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError, EndpointConnectionError, WaiterError

from ..core.config import settings
from ..core.errors import CloudProviderError
from ..models.resources import ComputeInstance, InstanceSpec, SecurityGroupSpec
from ..utils.logger import get_logger

logger = get_logger(__name__)

MANAGED_BY_TAG = "ManagedBy"
MANAGED_BY_VALUE = "aap-provisioner"
INDEX_TAG = "aap-provisioner/index"


class EC2ClientManager:
    """One cached EC2 client per region; a client that lost its endpoint is rebuilt"""

    def __init__(self):
        self._clients = {}
        self._lock = asyncio.Lock()

    def _create_client(self, region_name: str):
        credentials = {}
        if settings.aws_access_key_id and settings.aws_secret_access_key:
            credentials = {
                "aws_access_key_id": settings.aws_access_key_id,
                "aws_secret_access_key": settings.aws_secret_access_key,
            }
        # adaptive mode backs off on RequestLimitExceeded
        config = Config(
            connect_timeout=10,
            read_timeout=60,
            retries={"max_attempts": 4, "mode": "adaptive"},
        )
        return boto3.client("ec2", region_name=region_name, config=config, **credentials)

    async def get_client(self, region_name: str):
        async with self._lock:
            if region_name not in self._clients:
                logger.info(f"Creating EC2 client for region {region_name}")
                self._clients[region_name] = self._create_client(region_name)
            return self._clients[region_name]

    async def discard(self, region_name: str):
        async with self._lock:
            if self._clients.pop(region_name, None) is not None:
                logger.warning(f"Dropped EC2 client for {region_name}, next call reconnects")


_ec2_manager = EC2ClientManager()


async def _call(region_name: str, operation: str, **kwargs) -> dict[str, Any]:
    """Run a blocking EC2 API call in a thread"""
    ec2_client = await _ec2_manager.get_client(region_name)
    try:
        return await asyncio.to_thread(getattr(ec2_client, operation), **kwargs)
    except EndpointConnectionError as e:
        await _ec2_manager.discard(region_name)
        raise CloudProviderError(f"EC2 endpoint unreachable in {region_name}: {e}") from e


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def _tag_value(raw: dict[str, Any], key: str) -> str | None:
    return next((t["Value"] for t in raw.get("Tags", []) if t["Key"] == key), None)


def to_compute_instance(raw: dict[str, Any], index: int | None = None) -> ComputeInstance:
    """Convert a describe_instances entry into a ComputeInstance"""
    if index is None:
        index = int(_tag_value(raw, INDEX_TAG) or 0)
    return ComputeInstance(
        index=index,
        instance_id=raw["InstanceId"],
        name=_tag_value(raw, "Name") or raw["InstanceId"],
        state=raw.get("State", {}).get("Name", "pending"),
        public_ip=raw.get("PublicIpAddress"),
        private_ip=raw.get("PrivateIpAddress"),
        security_group_ids=[g["GroupId"] for g in raw.get("SecurityGroups", [])],
    )


def _existing_rule_keys(permissions: list[dict[str, Any]]) -> set[tuple]:
    keys = set()
    for permission in permissions:
        protocol = permission.get("IpProtocol", "-1")
        for ip_range in permission.get("IpRanges", []):
            if protocol == "-1":
                keys.add(("-1", None, None, ip_range.get("CidrIp")))
            else:
                keys.add(
                    (
                        protocol,
                        permission.get("FromPort"),
                        permission.get("ToPort"),
                        ip_range.get("CidrIp"),
                    )
                )
    return keys


async def _authorize_missing(
    region_name: str,
    operation: str,
    group_id: str,
    rules: list,
    existing_permissions: list[dict[str, Any]],
) -> int:
    existing = _existing_rule_keys(existing_permissions)
    missing = [r for r in rules if r.key() not in existing]
    if not missing:
        return 0
    try:
        await _call(
            region_name,
            operation,
            GroupId=group_id,
            IpPermissions=[r.to_ip_permission() for r in missing],
        )
    except ClientError as e:
        if _error_code(e) != "InvalidPermission.Duplicate":
            raise
        logger.warning(f"Security group rule already present on {group_id}: {e}")
        return 0
    return len(missing)


async def ensure_security_group(
    spec: SecurityGroupSpec, region_name: str = "us-east-1"
) -> str:
    """
    Find or create the security group and authorize any missing rules.

    Args:
        spec: Desired security group
        region_name: AWS region

    Returns:
        The security group id
    """
    filters = [{"Name": "group-name", "Values": [spec.name]}]
    if spec.vpc_id:
        filters.append({"Name": "vpc-id", "Values": [spec.vpc_id]})

    try:
        response = await _call(region_name, "describe_security_groups", Filters=filters)
        groups = response.get("SecurityGroups", [])

        if groups:
            group = groups[0]
            group_id = group["GroupId"]
            logger.info(f"Security group exists | Name: {spec.name} | Id: {group_id}")
        else:
            create_args: dict[str, Any] = {
                "GroupName": spec.name,
                "Description": spec.description,
                "TagSpecifications": [
                    {
                        "ResourceType": "security-group",
                        "Tags": [
                            {"Key": "Name", "Value": spec.name},
                            {"Key": MANAGED_BY_TAG, "Value": MANAGED_BY_VALUE},
                        ],
                    }
                ],
            }
            if spec.vpc_id:
                create_args["VpcId"] = spec.vpc_id
            created = await _call(region_name, "create_security_group", **create_args)
            group_id = created["GroupId"]
            logger.info(f"Security group created | Name: {spec.name} | Id: {group_id}")
            # New groups come with the allow-all egress rule
            group = {
                "IpPermissions": [],
                "IpPermissionsEgress": [
                    {"IpProtocol": "-1", "IpRanges": [{"CidrIp": "0.0.0.0/0"}]}
                ],
            }

        added = await _authorize_missing(
            region_name,
            "authorize_security_group_ingress",
            group_id,
            spec.ingress,
            group.get("IpPermissions", []),
        )
        if added:
            logger.info(f"Authorized {added} ingress rule(s) on {group_id}")

        added = await _authorize_missing(
            region_name,
            "authorize_security_group_egress",
            group_id,
            spec.egress,
            group.get("IpPermissionsEgress", []),
        )
        if added:
            logger.info(f"Authorized {added} egress rule(s) on {group_id}")

        return group_id

    except ClientError as e:
        raise CloudProviderError(
            f"Failed to ensure security group {spec.name}: {_error_code(e)} - {e}"
        ) from e


async def find_instances(
    spec: InstanceSpec, region_name: str = "us-east-1"
) -> dict[int, ComputeInstance]:
    """Return live instances previously launched for this spec, keyed by index"""
    names = [spec.instance_name(i) for i in range(spec.count)]
    if not names:
        return {}

    try:
        response = await _call(
            region_name,
            "describe_instances",
            Filters=[
                {"Name": f"tag:{MANAGED_BY_TAG}", "Values": [MANAGED_BY_VALUE]},
                {"Name": "tag:Name", "Values": names},
                {
                    "Name": "instance-state-name",
                    "Values": ["pending", "running", "stopping", "stopped"],
                },
            ],
        )
    except ClientError as e:
        raise CloudProviderError(f"Failed to describe instances: {e}") from e

    found: dict[int, ComputeInstance] = {}
    for reservation in response.get("Reservations", []):
        for raw in reservation.get("Instances", []):
            instance = to_compute_instance(raw)
            current = found.get(instance.index)
            # A running instance wins over a stopped one left behind for the same index
            if current is None or (instance.is_usable and not current.is_usable):
                found[instance.index] = instance
    return found


async def describe_instance(
    instance_id: str, region_name: str = "us-east-1"
) -> ComputeInstance | None:
    """Describe one instance; None when AWS no longer knows about it"""
    try:
        response = await _call(region_name, "describe_instances", InstanceIds=[instance_id])
    except ClientError as e:
        if _error_code(e) == "InvalidInstanceID.NotFound":
            return None
        raise CloudProviderError(f"Failed to describe instance {instance_id}: {e}") from e

    for reservation in response.get("Reservations", []):
        for raw in reservation.get("Instances", []):
            return to_compute_instance(raw)
    return None


async def run_instance(
    spec: InstanceSpec,
    index: int,
    security_group_id: str,
    region_name: str = "us-east-1",
) -> ComputeInstance:
    """Launch the instance for one index of the count"""
    name = spec.instance_name(index)
    tags = {
        **spec.tags,
        "Name": name,
        MANAGED_BY_TAG: MANAGED_BY_VALUE,
        INDEX_TAG: str(index),
    }
    run_args: dict[str, Any] = {
        "ImageId": spec.ami_id,
        "InstanceType": spec.instance_type,
        "KeyName": spec.key_name,
        "MinCount": 1,
        "MaxCount": 1,
        "TagSpecifications": [
            {
                "ResourceType": "instance",
                "Tags": [{"Key": k, "Value": v} for k, v in tags.items()],
            }
        ],
    }
    if spec.subnet_id:
        run_args["NetworkInterfaces"] = [
            {
                "DeviceIndex": 0,
                "SubnetId": spec.subnet_id,
                "Groups": [security_group_id],
                "AssociatePublicIpAddress": True,
            }
        ]
    else:
        run_args["SecurityGroupIds"] = [security_group_id]

    try:
        response = await _call(region_name, "run_instances", **run_args)
    except ClientError as e:
        raise CloudProviderError(
            f"Failed to launch instance {name}: {_error_code(e)} - {e}"
        ) from e

    instance = to_compute_instance(response["Instances"][0], index=index)
    logger.info(f"Instance launched | Name: {name} | Id: {instance.instance_id}")
    return instance


async def wait_for_public_ip(
    instance_id: str,
    region_name: str = "us-east-1",
    timeout: float = 300,
    interval: float = 5,
) -> ComputeInstance:
    """
    Poll the instance until it is running with a public IP.

    Raises:
        CloudProviderError: the instance vanished, left the running path or
            no address was assigned within timeout
    """
    started = time.monotonic()
    while True:
        instance = await describe_instance(instance_id, region_name)
        if instance is None:
            raise CloudProviderError(f"Instance {instance_id} disappeared")
        if not instance.is_usable:
            raise CloudProviderError(
                f"Instance {instance_id} is {instance.state}, expected running"
            )
        if instance.state == "running" and instance.public_ip:
            logger.info(
                f"Instance running | Id: {instance_id} | Public IP: {instance.public_ip}"
            )
            return instance

        if timeout and time.monotonic() - started >= timeout:
            raise CloudProviderError(
                f"Instance {instance_id} has no public IP after {timeout:.0f}s"
            )
        logger.debug(f"Waiting for public IP on {instance_id} (state: {instance.state})")
        await asyncio.sleep(interval)


async def terminate_instances(
    instance_ids: list[str], region_name: str = "us-east-1", wait: bool = True
) -> None:
    if not instance_ids:
        return
    try:
        await _call(region_name, "terminate_instances", InstanceIds=instance_ids)
        logger.info(f"Terminating instances: {', '.join(instance_ids)}")
        if wait:
            ec2_client = await _ec2_manager.get_client(region_name)
            waiter = ec2_client.get_waiter("instance_terminated")
            await asyncio.to_thread(waiter.wait, InstanceIds=instance_ids)
            logger.info(f"Instances terminated: {', '.join(instance_ids)}")
    except ClientError as e:
        if _error_code(e) == "InvalidInstanceID.NotFound":
            logger.warning(f"Some instances were already gone: {e}")
            return
        raise CloudProviderError(f"Failed to terminate instances: {e}") from e
    except WaiterError as e:
        raise CloudProviderError(f"Instances did not terminate: {e}") from e


async def delete_security_group(group_id: str, region_name: str = "us-east-1") -> None:
    try:
        await _call(region_name, "delete_security_group", GroupId=group_id)
        logger.info(f"Security group deleted: {group_id}")
    except ClientError as e:
        if _error_code(e) == "InvalidGroup.NotFound":
            logger.warning(f"Security group {group_id} already deleted")
            return
        raise CloudProviderError(f"Failed to delete security group {group_id}: {e}") from e
