from ..core.errors import DispatchError
from ..models.resources import (
    DispatchConfig,
    DispatchedEvent,
    EventStreamConfig,
    LifecycleEvent,
    LifecycleState,
)
from ..utils.http_client import send_post_request
from ..utils.logger import get_logger

logger = get_logger(__name__)

# pending --after_create--> created --after_update--> updated --after_update--> updated
TRANSITIONS: dict[tuple[LifecycleState, LifecycleEvent], LifecycleState] = {
    (LifecycleState.PENDING, LifecycleEvent.AFTER_CREATE): LifecycleState.CREATED,
    (LifecycleState.CREATED, LifecycleEvent.AFTER_UPDATE): LifecycleState.UPDATED,
    (LifecycleState.UPDATED, LifecycleEvent.AFTER_UPDATE): LifecycleState.UPDATED,
}


def transition(state: LifecycleState, event: LifecycleEvent) -> LifecycleState:
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise ValueError(f"{event.value} is not valid from state {state.value}") from None


class EventDispatcher:
    """Posts one event to the event stream for each host lifecycle transition"""

    def __init__(
        self,
        event_stream: EventStreamConfig,
        configs: list[DispatchConfig],
        timeout: int = 30,
    ):
        self.event_stream = event_stream
        self.configs = {config.event: config for config in configs}
        self.timeout = timeout

    def build_event(self, event: LifecycleEvent, host_name: str) -> DispatchedEvent | None:
        config = self.configs.get(event)
        if config is None:
            return None
        return DispatchedEvent(
            limit=config.limit or host_name,
            template_type=config.template_type,
            job_template_name=config.job_template_name,
            organization_name=config.organization_name,
            event_stream_config=self.event_stream,
        )

    async def dispatch(
        self, event: LifecycleEvent, host_name: str
    ) -> DispatchedEvent | None:
        """
        Send the dispatch config matching event for host_name.

        Returns:
            The dispatched event, or None when no config is declared for event

        Raises:
            DispatchError: the event stream rejected or never answered the POST
        """
        dispatched = self.build_event(event, host_name)
        if dispatched is None:
            logger.debug(f"No dispatch config for {event.value}, nothing sent for {host_name}")
            return None

        stream = dispatched.event_stream_config
        success, status, response_text = await send_post_request(
            stream.url,
            dispatched.request_body(),
            timeout=self.timeout,
            auth=(stream.username, stream.password),
            verify_ssl=not stream.insecure_skip_verify,
        )
        if not success:
            raise DispatchError(event.value, host_name, status, response_text)

        logger.info(
            f"Event dispatched | Event: {event.value} | Host: {host_name} | "
            f"Template: {dispatched.job_template_name} ({dispatched.template_type.value}) | "
            f"Status: {status}"
        )
        return dispatched
