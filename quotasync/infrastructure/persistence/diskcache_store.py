"""StateStore backed by a `diskcache.Cache` directory (the default backend)."""

import asyncio
import logging
import pickle
from pathlib import Path
from typing import Any, Dict, Optional, Union

import diskcache as dc

from quotasync.domain.interfaces.state_store import StateStore
from quotasync.domain.models.common import UserId
from quotasync.domain.models.errors import CorruptState

logger = logging.getLogger(__name__)

KEY_PREFIX = "quota-state"

class DiskCacheStateStore(StateStore):
    """Persists one state blob per user id in a diskcache directory."""

    def __init__(self, directory: Union[str, Path], timeout: float = 1.0):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        # No expiry: pending actions must survive until acknowledged
        self.disk_cache = dc.Cache(str(self.directory), timeout=timeout)
        logger.info(f"Initialized diskcache state store at: {self.disk_cache.directory}")

    @staticmethod
    def _key(user_id: UserId) -> str:
        return f"{KEY_PREFIX}:{user_id}"

    async def load(self, user_id: UserId) -> Optional[Any]:
        try:
            blob = await asyncio.to_thread(self.disk_cache.get, self._key(user_id))
        except (pickle.UnpicklingError, EOFError, AttributeError, ValueError) as e:
            raise CorruptState(f"Stored state for '{user_id}' could not be decoded: {e}") from e
        logger.debug(f"diskcache {'hit' if blob is not None else 'miss'} for '{user_id}'")
        return blob

    async def save(self, user_id: UserId, blob: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.disk_cache.set, self._key(user_id), blob)

    async def delete(self, user_id: UserId) -> None:
        deleted = await asyncio.to_thread(self.disk_cache.delete, self._key(user_id))
        if deleted:
            logger.info(f"Deleted persisted state for '{user_id}'.")

    def close(self) -> None:
        self.disk_cache.close()
