"""
Contact Lock Service
Serializes engine invocations per contact address.
"""
import asyncio
import weakref
from contextlib import asynccontextmanager

from utils.log_utils import LogUtil


class ContactLockService:
    """
    One asyncio.Lock per contact address. Locks live only while some
    invocation holds or waits on them.
    """

    def __init__(self, log_util: LogUtil):
        self.log_util = log_util
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _get_lock(self, contact_address: str) -> asyncio.Lock:
        lock = self._locks.get(contact_address)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[contact_address] = lock
        return lock

    @asynccontextmanager
    async def hold(self, contact_address: str):
        lock = self._get_lock(contact_address)
        if lock.locked():
            self.log_util.debug(
                service_name="ContactLockService",
                message=f"[LOCK] Waiting for contact {contact_address}"
            )
        async with lock:
            yield
