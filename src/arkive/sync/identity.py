"""Device identity for echo suppression.

Every remote write is stamped with the writing device's identity so the
listener can recognize its own writes when they come back. The identity
is generated once, persisted in the state store and reused for the
lifetime of the installation; only a full wipe removes it.
"""

import asyncio
import logging
from uuid import uuid4

from ..api.exceptions import IdentityError
from .domain.ports import IStateStore

logger = logging.getLogger(__name__)

DEVICE_ID_KEY = "arkive-device-id"


class DeviceIdentityProvider:
    """Loads or creates the device identity.

    Example:
        identity = DeviceIdentityProvider(state_store)
        device_id = await identity.get_device_id()  # 'device_3f2a...'
    """

    def __init__(self, state_store: IStateStore):
        self.state_store = state_store
        self._device_id: str | None = None
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> str | None:
        """The identity if it has already been loaded, without I/O."""
        return self._device_id

    async def get_device_id(self) -> str:
        """Return the device identity, creating and persisting it on first use.

        Raises:
            IdentityError: The state store could not be read or written
        """
        if self._device_id:
            return self._device_id

        async with self._lock:
            if self._device_id:
                return self._device_id

            try:
                stored = await self.state_store.get(DEVICE_ID_KEY)
                if isinstance(stored, str) and stored:
                    self._device_id = stored
                    return stored

                device_id = f"device_{uuid4().hex}"
                await self.state_store.set(DEVICE_ID_KEY, device_id)
            except Exception as e:
                raise IdentityError(
                    f"Could not load or persist device identity: {e}",
                    cause=e,
                ) from e

            logger.info(f"Generated new device identity {device_id}")
            self._device_id = device_id
            return device_id

    async def reset(self) -> None:
        """Forget the identity; the next request generates a new one."""
        async with self._lock:
            try:
                await self.state_store.remove(DEVICE_ID_KEY)
            except Exception as e:
                raise IdentityError(f"Could not remove device identity: {e}", cause=e) from e
            self._device_id = None
