import threading
import weakref
from contextlib import contextmanager
from typing import Iterator


class OrganizationLocks:
    """
    Per-organization mutexes for the check-then-act paths.

    Quota consumption, webhook application and the sweeper all take the
    organization's lock before opening their transaction, so writes to one
    SubscriptionRecord are serialized inside the process while different
    organizations never contend. Cross-process safety comes from the row lock
    and the conditional UPDATE statements issued inside the transaction.

    The registry holds locks weakly: an entry lives as long as some caller is
    holding or waiting on it, so idle organizations cost nothing.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, organization_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(organization_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[organization_id] = lock
            return lock

    @contextmanager
    def hold(self, organization_id: str) -> Iterator[None]:
        # The local reference keeps the entry alive until release
        lock = self._lock_for(organization_id)
        with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)
