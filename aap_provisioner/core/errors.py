"""Exceptions raised while provisioning, registering and dispatching."""


class ProvisionerError(Exception):
    """Base class for every error the provisioner reports to the operator."""


class ConfigurationError(ProvisionerError):
    """Settings are missing or invalid."""


class CloudProviderError(ProvisionerError):
    """An EC2 call failed or the instance ended up in an unusable state."""


class ReadinessTimeoutError(ProvisionerError):
    def __init__(self, address: str, port: int, waited_seconds: float):
        self.address = address
        self.port = port
        self.waited_seconds = waited_seconds
        super().__init__(
            f"{address}:{port} did not accept connections after {waited_seconds:.0f}s"
        )


class HostRegistrationError(ProvisionerError):
    """A host could not be registered, e.g. its instance has no public address."""


class AAPApiError(ProvisionerError):
    def __init__(self, method: str, url: str, status: int | None, body: str):
        self.method = method
        self.url = url
        self.status = status
        self.body = body
        super().__init__(f"{method} {url} failed | Status: {status} | Response: {body[:200]}")


class AAPLookupError(ProvisionerError):
    """A named object (organization, template, event stream) does not exist."""


class JobLaunchError(ProvisionerError):
    """The launched job or workflow could not be started or did not succeed."""


class DispatchError(ProvisionerError):
    def __init__(self, event: str, host_name: str, status: int | None, detail: str):
        self.event = event
        self.host_name = host_name
        self.status = status
        self.detail = detail
        super().__init__(
            f"Event dispatch {event} for {host_name} failed | Status: {status} | {detail[:200]}"
        )
