"""Async client for the parts of the Automation Platform API the provisioner uses."""

import asyncio
import json
from typing import Any

from ..core.errors import AAPApiError, AAPLookupError, JobLaunchError
from ..models.resources import Host, Inventory, JobLaunch, TemplateType
from ..utils.http_client import send_request
from ..utils.logger import get_logger

logger = get_logger(__name__)

TEMPLATE_ENDPOINTS = {
    TemplateType.JOB: ("job_templates", "jobs"),
    TemplateType.WORKFLOW_JOB: ("workflow_job_templates", "workflow_jobs"),
}
FINISHED_JOB_STATUSES = {"successful", "failed", "error", "canceled"}


class AAPClient:
    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        verify_ssl: bool = True,
        timeout: int = 30,
        controller_path: str = "/api/controller/v2",
        eda_path: str = "/api/eda/v1",
    ):
        self.host = host.rstrip("/")
        self.auth = (username, password)
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.controller_path = "/" + controller_path.strip("/")
        self.eda_path = "/" + eda_path.strip("/")

    def _url(self, path: str, eda: bool = False) -> str:
        prefix = self.eda_path if eda else self.controller_path
        return f"{self.host}{prefix}/{path.strip('/')}/"

    async def _request(
        self,
        method: str,
        path: str,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        eda: bool = False,
        allow_missing: bool = False,
    ) -> dict[str, Any] | None:
        url = self._url(path, eda=eda)
        success, status, text = await send_request(
            method,
            url,
            data=data,
            timeout=self.timeout,
            auth=self.auth,
            verify_ssl=self.verify_ssl,
            params=params,
            headers={"Accept": "application/json"},
        )
        if not success:
            if allow_missing and status == 404:
                return None
            raise AAPApiError(method, url, status, text)
        if not text:
            return {}
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise AAPApiError(method, url, status, f"Invalid JSON response: {e}") from e

    async def _find_one(
        self, path: str, params: dict[str, Any], eda: bool = False
    ) -> dict[str, Any] | None:
        response = await self._request("GET", path, params=params, eda=eda)
        results = response.get("results", [])
        return results[0] if results else None

    async def get_organization_id(self, name: str) -> int:
        organization = await self._find_one("organizations", {"name": name})
        if organization is None:
            raise AAPLookupError(f"Organization '{name}' not found")
        return organization["id"]

    async def ensure_inventory(self, name: str, organization_id: int) -> tuple[Inventory, bool]:
        """Return the named inventory, creating it when missing; the flag is True on create"""
        existing = await self._find_one(
            "inventories", {"name": name, "organization": organization_id}
        )
        if existing:
            logger.info(f"Inventory exists | Name: {name} | Id: {existing['id']}")
            return Inventory(id=existing["id"], name=name, organization_id=organization_id), False

        created = await self._request(
            "POST",
            "inventories",
            data={"name": name, "organization": organization_id},
        )
        logger.info(f"Inventory created | Name: {name} | Id: {created['id']}")
        return Inventory(id=created["id"], name=name, organization_id=organization_id), True

    async def get_inventory(self, inventory_id: int) -> Inventory | None:
        found = await self._request("GET", f"inventories/{inventory_id}", allow_missing=True)
        if found is None:
            return None
        return Inventory(
            id=found["id"], name=found["name"], organization_id=found["organization"]
        )

    async def delete_inventory(self, inventory_id: int) -> None:
        await self._request("DELETE", f"inventories/{inventory_id}", allow_missing=True)
        logger.info(f"Inventory deleted: {inventory_id}")

    async def ensure_group(self, inventory_id: int, name: str) -> int:
        existing = await self._find_one("groups", {"name": name, "inventory": inventory_id})
        if existing:
            return existing["id"]
        created = await self._request(
            "POST", "groups", data={"name": name, "inventory": inventory_id}
        )
        logger.info(f"Group created | Name: {name} | Inventory: {inventory_id}")
        return created["id"]

    async def find_host(self, inventory_id: int, name: str) -> dict[str, Any] | None:
        return await self._find_one("hosts", {"name": name, "inventory": inventory_id})

    async def get_host(self, host_id: int) -> dict[str, Any] | None:
        return await self._request("GET", f"hosts/{host_id}", allow_missing=True)

    @staticmethod
    def _host_variables(host: Host) -> dict[str, Any]:
        return {"ansible_host": host.address, **host.variables}

    @staticmethod
    def _host_body(host: Host) -> dict[str, Any]:
        return {
            "name": host.name,
            "inventory": host.inventory_id,
            "variables": json.dumps(AAPClient._host_variables(host), sort_keys=True),
            "enabled": True,
        }

    @staticmethod
    def host_matches(remote: dict[str, Any], host: Host) -> bool:
        """True when a host returned by the API already carries what host would send"""
        try:
            remote_variables = json.loads(remote.get("variables") or "{}")
        except json.JSONDecodeError:
            # YAML variables set by hand in the UI
            return False
        return (
            remote.get("enabled", True) is True
            and remote_variables == AAPClient._host_variables(host)
        )

    async def create_host(self, host: Host) -> Host:
        created = await self._request("POST", "hosts", data=self._host_body(host))
        logger.info(f"Host created | Name: {host.name} | Id: {created['id']}")
        return host.model_copy(update={"id": created["id"]})

    async def update_host(self, host: Host) -> Host:
        await self._request("PATCH", f"hosts/{host.id}", data=self._host_body(host))
        logger.info(f"Host updated | Name: {host.name} | Id: {host.id}")
        return host

    async def delete_host(self, host_id: int) -> None:
        await self._request("DELETE", f"hosts/{host_id}", allow_missing=True)
        logger.info(f"Host deleted: {host_id}")

    async def associate_host_group(self, host_id: int, group_id: int) -> None:
        await self._request("POST", f"hosts/{host_id}/groups", data={"id": group_id})

    async def disassociate_host_group(self, host_id: int, group_id: int) -> None:
        await self._request(
            "POST",
            f"hosts/{host_id}/groups",
            data={"id": group_id, "disassociate": True},
        )
        logger.info(f"Host {host_id} removed from group {group_id}")

    async def lookup_template(
        self,
        template_type: TemplateType,
        name: str | None = None,
        template_id: int | None = None,
    ) -> dict[str, Any]:
        """Find a job or workflow job template by id or by name"""
        endpoint, _ = TEMPLATE_ENDPOINTS[template_type]
        if template_id is not None:
            template = await self._request(
                "GET", f"{endpoint}/{template_id}", allow_missing=True
            )
        elif name:
            template = await self._find_one(endpoint, {"name": name})
        else:
            raise AAPLookupError("A template name or id is required")

        if template is None:
            raise AAPLookupError(
                f"{template_type.value} template {template_id or name!r} not found"
            )
        return template

    async def launch(self, launch: JobLaunch) -> int:
        """Launch a job or workflow job and return its id"""
        endpoint, _ = TEMPLATE_ENDPOINTS[launch.template_type]
        body: dict[str, Any] = {}
        if launch.inventory_id is not None:
            body["inventory"] = launch.inventory_id
        if launch.limit:
            body["limit"] = launch.limit
        if launch.extra_vars:
            body["extra_vars"] = launch.extra_vars

        try:
            response = await self._request(
                "POST", f"{endpoint}/{launch.template_id}/launch", data=body
            )
        except AAPApiError as e:
            raise JobLaunchError(
                f"Could not launch {launch.template_type.value} template "
                f"{launch.template_id}: {e}"
            ) from e

        job_id = response.get("id") or response.get(launch.template_type.value)
        if not job_id:
            raise JobLaunchError(f"Launch response carried no job id: {response}")
        logger.info(
            f"Launched {launch.template_type.value} | Template: {launch.template_id} | "
            f"Job: {job_id} | Inventory: {launch.inventory_id}"
        )
        return job_id

    async def get_job_status(self, job_id: int, template_type: TemplateType) -> str:
        _, endpoint = TEMPLATE_ENDPOINTS[template_type]
        job = await self._request("GET", f"{endpoint}/{job_id}")
        return job.get("status", "unknown")

    async def wait_for_job(
        self,
        job_id: int,
        template_type: TemplateType = TemplateType.JOB,
        interval: float = 5.0,
    ) -> str:
        """Poll a job until it finishes; raise JobLaunchError unless it succeeded"""
        while True:
            status = await self.get_job_status(job_id, template_type)
            if status in FINISHED_JOB_STATUSES:
                break
            logger.debug(f"Job {job_id} status: {status}")
            await asyncio.sleep(interval)

        if status != "successful":
            raise JobLaunchError(f"{template_type.value} {job_id} finished with status {status}")
        logger.info(f"{template_type.value} {job_id} finished successfully")
        return status

    async def get_event_stream_url(self, name: str) -> str:
        event_stream = await self._find_one("event-streams", {"name": name}, eda=True)
        if event_stream is None or not event_stream.get("url"):
            raise AAPLookupError(f"Event stream '{name}' not found")
        return event_stream["url"]
