"""JSON state file that makes repeated applies converge instead of duplicating resources."""

import asyncio
import json
import os
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from ..core.errors import ConfigurationError
from ..models.state import ProvisionState
from ..utils.logger import get_logger

logger = get_logger(__name__)


def _read_json_file(path: Path) -> dict | None:
    if not path.exists():
        return None
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _write_json_file(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    # Readers never see a half-written file
    os.replace(tmp_path, path)


class StateStore:
    """Loads and persists ProvisionState; saves are serialized across branches"""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.state = ProvisionState()
        self._lock = asyncio.Lock()

    async def load(self) -> ProvisionState:
        try:
            data = await asyncio.to_thread(_read_json_file, self.path)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"State file {self.path} is not valid JSON: {e}") from e

        if data is None:
            logger.info(f"No state file at {self.path}, starting from empty state")
            self.state = ProvisionState()
            return self.state

        try:
            self.state = ProvisionState.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"State file {self.path} is invalid: {e}") from e

        logger.info(
            f"Loaded state | File: {self.path} | Instances: {len(self.state.instances)}"
        )
        return self.state

    async def save(self) -> None:
        async with self._lock:
            self.state.updated_at = datetime.now(UTC)
            data = self.state.model_dump(mode="json")
            await asyncio.to_thread(_write_json_file, self.path, data)
            logger.debug(f"State saved to {self.path}")

    async def clear(self) -> None:
        async with self._lock:
            self.state = ProvisionState()
            if self.path.exists():
                await asyncio.to_thread(os.remove, self.path)
            logger.info(f"State file {self.path} removed")


async def write_outputs(path: str | Path, outputs: dict) -> None:
    await asyncio.to_thread(_write_json_file, Path(path), outputs)
    logger.info(f"Outputs written to {path}")


async def read_outputs(path: str | Path) -> dict | None:
    return await asyncio.to_thread(_read_json_file, Path(path))
