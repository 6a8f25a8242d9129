import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root (parent of the aap_provisioner package)
env_path = Path(__file__).parent.parent.parent / ".env"
load_dotenv(dotenv_path=env_path, override=True)


def _get_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def _get_list(name: str, default: str = "") -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class Settings:
    environment: str = os.getenv("ENV", "local")  # local, staging, production

    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_file: str | None = os.getenv("LOG_FILE") or None

    # AWS
    aws_region: str = os.getenv("AWS_REGION", "us-east-1")
    aws_access_key_id: str | None = os.getenv("AWS_ACCESS_KEY_ID")
    aws_secret_access_key: str | None = os.getenv("AWS_SECRET_ACCESS_KEY")

    ami_id: str = os.getenv("AMI_ID", "")
    instance_type: str = os.getenv("INSTANCE_TYPE", "t2.micro")
    ssh_key_name: str = os.getenv("SSH_KEY_NAME", "")
    instance_count: int = int(os.getenv("INSTANCE_COUNT", "1"))
    instance_name_prefix: str = os.getenv("INSTANCE_NAME_PREFIX", "aap-managed")
    subnet_id: str | None = os.getenv("SUBNET_ID") or None

    security_group_name: str = os.getenv("SECURITY_GROUP_NAME", "aap-managed-sg")
    vpc_id: str | None = os.getenv("VPC_ID") or None
    ssh_ingress_cidr: str = os.getenv("SSH_INGRESS_CIDR", "0.0.0.0/0")
    extra_ingress_ports: list[str] = _get_list("EXTRA_INGRESS_PORTS")

    # Readiness gate
    readiness_port: int = int(os.getenv("READINESS_PORT", "22"))
    readiness_interval_seconds: float = float(
        os.getenv("READINESS_INTERVAL_SECONDS", "5")
    )
    # 0 waits forever
    readiness_timeout_seconds: float = float(
        os.getenv("READINESS_TIMEOUT_SECONDS", "600")
    )
    public_ip_timeout_seconds: float = float(
        os.getenv("PUBLIC_IP_TIMEOUT_SECONDS", "300")
    )

    # Automation platform
    aap_host: str = os.getenv("AAP_HOST", "")
    aap_username: str = os.getenv("AAP_USERNAME", "")
    aap_password: str = os.getenv("AAP_PASSWORD", "")
    aap_insecure_skip_verify: bool = _get_bool("AAP_INSECURE_SKIP_VERIFY")
    aap_timeout: int = int(os.getenv("AAP_TIMEOUT", "30"))
    # Older controllers without the platform gateway serve /api/v2
    aap_controller_path: str = os.getenv("AAP_CONTROLLER_PATH", "/api/controller/v2")
    aap_eda_path: str = os.getenv("AAP_EDA_PATH", "/api/eda/v1")
    aap_organization_name: str = os.getenv("AAP_ORGANIZATION_NAME", "Default")
    aap_inventory_name: str = os.getenv("AAP_INVENTORY_NAME", "aap-provisioner")
    aap_host_groups: list[str] = _get_list("AAP_HOST_GROUPS")
    ansible_user: str = os.getenv("ANSIBLE_USER", "ec2-user")

    job_template_id: int | None = (
        int(os.getenv("JOB_TEMPLATE_ID")) if os.getenv("JOB_TEMPLATE_ID") else None
    )
    job_template_type: str = os.getenv("JOB_TEMPLATE_TYPE", "job")  # job, workflow_job
    job_wait_for_completion: bool = _get_bool("JOB_WAIT_FOR_COMPLETION")
    # JSON object, parsed and validated by build_plan
    job_extra_vars: str = os.getenv("JOB_EXTRA_VARS", "")
    job_poll_interval_seconds: float = float(
        os.getenv("JOB_POLL_INTERVAL_SECONDS", "5")
    )

    # Event stream and dispatch
    event_stream_name: str = os.getenv("EVENT_STREAM_NAME", "")
    event_stream_url: str = os.getenv("EVENT_STREAM_URL", "")
    event_stream_username: str = os.getenv("EVENT_STREAM_USERNAME", "")
    event_stream_password: str = os.getenv("EVENT_STREAM_PASSWORD", "")
    event_stream_insecure_skip_verify: bool = _get_bool(
        "EVENT_STREAM_INSECURE_SKIP_VERIFY"
    )
    event_dispatch_timeout: int = int(os.getenv("EVENT_DISPATCH_TIMEOUT", "30"))

    dispatch_limit: str | None = os.getenv("DISPATCH_LIMIT") or None
    dispatch_template_type: str = os.getenv("DISPATCH_TEMPLATE_TYPE", "job")
    dispatch_organization_name: str = os.getenv(
        "DISPATCH_ORGANIZATION_NAME", os.getenv("AAP_ORGANIZATION_NAME", "Default")
    )
    dispatch_create_template_name: str = os.getenv("DISPATCH_CREATE_TEMPLATE_NAME", "")
    dispatch_update_template_name: str = os.getenv("DISPATCH_UPDATE_TEMPLATE_NAME", "")

    # Local state
    state_file: str = os.getenv("STATE_FILE", ".provisioner/state.json")
    outputs_file: str = os.getenv("OUTPUTS_FILE", ".provisioner/outputs.json")
    max_parallelism: int = int(os.getenv("MAX_PARALLELISM", "10"))


settings = Settings()
