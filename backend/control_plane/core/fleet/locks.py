"""Per-entity asyncio locks."""

import asyncio
from collections import defaultdict
from typing import Any


class EntityLocks:
    """
    Serializes mutations on the same entity id.

    Different ids never contend; the same id is processed one coroutine at
    a time.
    """

    def __init__(self):
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __call__(self, entity_id: Any) -> asyncio.Lock:
        return self._locks[str(entity_id)]

    def discard(self, entity_id: Any) -> None:
        lock = self._locks.get(str(entity_id))
        if lock is not None and not lock.locked():
            del self._locks[str(entity_id)]


order_locks = EntityLocks()
route_locks = EntityLocks()
deployment_locks = EntityLocks()
capability_locks = EntityLocks()
