"""StateStore writing one JSON file per user, using aiofiles for async I/O.

Writes go to a temporary file first and are moved into place with
`os.replace`, so a crash mid-write never leaves a truncated state file.
"""

import hashlib
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Dict, Optional, Union

import aiofiles

from quotasync.domain.interfaces.state_store import StateStore
from quotasync.domain.models.common import UserId
from quotasync.domain.models.errors import CorruptState

logger = logging.getLogger(__name__)

class JsonFileStateStore(StateStore):
    """File-based state store (`state.backend: json`)."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized JSON state store at: {self.directory}")

    def path_for(self, user_id: UserId) -> Path:
        """Generates a safe file name for a user id."""
        hashed = hashlib.sha256(str(user_id).encode("utf-8")).hexdigest()[:32]
        return self.directory / f"state-{hashed}.json"

    async def load(self, user_id: UserId) -> Optional[Any]:
        path = self.path_for(user_id)
        try:
            async with aiofiles.open(path, mode="r", encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise CorruptState(f"State file {path} is not valid JSON: {e}") from e

    async def save(self, user_id: UserId, blob: Dict[str, Any]) -> None:
        path = self.path_for(user_id)
        temp_path = path.with_suffix(f".{uuid.uuid4().hex}.tmp")
        content = json.dumps(blob, sort_keys=True)
        try:
            async with aiofiles.open(temp_path, mode="w", encoding="utf-8") as f:
                await f.write(content)
            os.replace(temp_path, path)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise
        logger.debug(f"Wrote state file {path} ({len(content)} bytes)")

    async def delete(self, user_id: UserId) -> None:
        path = self.path_for(user_id)
        if path.exists():
            path.unlink()
            logger.info(f"Deleted state file {path}")
