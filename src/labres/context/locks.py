from __future__ import annotations

import threading

from contextlib import contextmanager

from labres.context.core import StoppableService


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Hashable
    from collections.abc import Iterator


class ResourceLocks(StoppableService):
    """ Hands out one re-entrant lock per resource.

    Reading the approved reservations of a resource and writing a new
    approval has to happen without another thread doing the same for the
    same resource in between. Different resources never wait on each other.

    The locks only serialize threads within this process. Across processes
    the resource row is locked by the database (see
    :meth:`labres.db.scheduler.Scheduler.serialized`).

    """

    def __init__(self) -> None:
        self.thread_lock = threading.Lock()
        self.locks: dict[Hashable, threading.RLock] = {}

    def get(self, key: Hashable) -> threading.RLock:
        with self.thread_lock:
            if key not in self.locks:
                self.locks[key] = threading.RLock()

            return self.locks[key]

    @contextmanager
    def lock(self, key: Hashable) -> Iterator[None]:
        with self.get(key):
            yield

    def stop_service(self) -> None:
        with self.thread_lock:
            self.locks.clear()
