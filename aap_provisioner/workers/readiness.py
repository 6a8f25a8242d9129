import asyncio
import time

from ..core.errors import ReadinessTimeoutError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ReadinessGate:
    """Blocks one instance's branch until its management port accepts connections"""

    def __init__(
        self,
        port: int = 22,
        interval_seconds: float = 5.0,
        timeout_seconds: float = 600.0,
        connect_timeout: float = 3.0,
    ):
        self.port = port
        self.interval_seconds = interval_seconds
        # 0 keeps polling until the port opens
        self.timeout_seconds = timeout_seconds
        self.connect_timeout = connect_timeout

    async def try_connect(self, address: str) -> bool:
        """Try a single TCP connection to address:port"""
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(address, self.port),
                timeout=self.connect_timeout,
            )
        except (asyncio.TimeoutError, OSError) as e:
            logger.debug(f"Connection failed | Address: {address}:{self.port} | Error: {e}")
            return False

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def wait(self, address: str) -> float:
        """
        Poll address until the port is reachable.

        Args:
            address: Public IP or hostname of the instance

        Returns:
            Seconds spent waiting

        Raises:
            ReadinessTimeoutError: timeout_seconds elapsed without a successful connection
        """
        started = time.monotonic()
        attempts = 0
        logger.info(f"Waiting for {address}:{self.port} to accept connections")

        while True:
            attempts += 1
            if await self.try_connect(address):
                waited = time.monotonic() - started
                logger.info(
                    f"Instance reachable | Address: {address}:{self.port} | "
                    f"Attempts: {attempts} | Waited: {waited:.1f}s"
                )
                return waited

            waited = time.monotonic() - started
            if self.timeout_seconds and waited >= self.timeout_seconds:
                logger.error(
                    f"Instance never became reachable | Address: {address}:{self.port} | "
                    f"Attempts: {attempts}"
                )
                raise ReadinessTimeoutError(address, self.port, waited)

            if attempts % 10 == 0:
                logger.info(
                    f"Still waiting for {address}:{self.port} | Attempts: {attempts} | "
                    f"Waited: {waited:.0f}s"
                )
            delay = self.interval_seconds
            if self.timeout_seconds:
                delay = min(delay, self.timeout_seconds - waited)
            await asyncio.sleep(delay)
