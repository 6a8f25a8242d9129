import argparse
import asyncio
import json
import signal
import sys

from aap_provisioner.aap.client import AAPClient
from aap_provisioner.core.config import Settings, settings
from aap_provisioner.core.errors import ProvisionerError
from aap_provisioner.core.plan import build_plan
from aap_provisioner.state.store import StateStore, read_outputs
from aap_provisioner.utils.logger import get_logger, setup_root_logger
from aap_provisioner.workers.provisioner import Provisioner

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_DISPATCH_FAILED = 2


def build_provisioner(config: Settings) -> Provisioner:
    plan = build_plan(config)
    aap = AAPClient(
        config.aap_host,
        config.aap_username,
        config.aap_password,
        verify_ssl=not config.aap_insecure_skip_verify,
        timeout=config.aap_timeout,
        controller_path=config.aap_controller_path,
        eda_path=config.aap_eda_path,
    )
    return Provisioner(
        plan,
        aap,
        StateStore(config.state_file),
        region_name=config.aws_region,
        outputs_file=config.outputs_file,
        job_poll_interval=config.job_poll_interval_seconds,
    )


async def run_apply(config: Settings) -> int:
    provisioner = build_provisioner(config)
    logger.info(
        f"Apply started | Environment: {config.environment.upper()} | "
        f"Instances: {provisioner.plan.instances.count} | Region: {config.aws_region}"
    )
    result = await provisioner.apply()

    if not result.changed:
        logger.info("No changes. Infrastructure matches the configuration.")

    for ip in result.outputs.instance_public_ips:
        logger.info(f"Instance public IP: {ip}")
    if result.outputs.event_stream_url:
        logger.info(f"Event stream URL: {result.outputs.event_stream_url}")

    if result.dispatch_errors:
        logger.error(
            f"{len(result.dispatch_errors)} event dispatch(es) failed and were not retried"
        )
        return EXIT_DISPATCH_FAILED
    return EXIT_OK


async def run_destroy(config: Settings) -> int:
    provisioner = build_provisioner(config)
    logger.info(f"Destroy started | Environment: {config.environment.upper()}")
    await provisioner.destroy()
    return EXIT_OK


async def run_output(config: Settings) -> int:
    outputs = await read_outputs(config.outputs_file)
    if outputs is None:
        logger.error(f"No outputs at {config.outputs_file}, run apply first")
        return EXIT_ERROR
    print(json.dumps(outputs, indent=2))
    return EXIT_OK


COMMANDS = {
    "apply": run_apply,
    "destroy": run_destroy,
    "output": run_output,
}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="aap-provisioner",
        description="Provision EC2 instances, register them in AAP and dispatch lifecycle events.",
    )
    parser.add_argument("command", choices=sorted(COMMANDS))
    parser.add_argument("--state-file", help="Override STATE_FILE", default=None)
    parser.add_argument("--outputs-file", help="Override OUTPUTS_FILE", default=None)
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    """Main entry point"""
    args = parse_args(argv)
    if args.state_file:
        settings.state_file = args.state_file
    if args.outputs_file:
        settings.outputs_file = args.outputs_file

    loop = asyncio.get_running_loop()
    task = asyncio.current_task()

    def signal_handler(sig, _frame):
        logger.info(f"Received signal {sig}, cancelling. State written so far is kept.")
        loop.call_soon_threadsafe(task.cancel)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        return await COMMANDS[args.command](settings)
    except asyncio.CancelledError:
        logger.warning(f"{args.command} interrupted, re-run apply to reconcile")
        return EXIT_ERROR
    except ProvisionerError as e:
        logger.error(f"{args.command} failed: {e}")
        return EXIT_ERROR


def cli() -> None:
    setup_root_logger(
        level=settings.log_level,
        log_file=settings.log_file,
        secrets=[settings.aap_password, settings.event_stream_password],
    )
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Application interrupted")
        sys.exit(EXIT_ERROR)
    except Exception as e:
        logger.error(f"Application error: {e}", exc_info=True)
        sys.exit(EXIT_ERROR)


if __name__ == "__main__":
    cli()
