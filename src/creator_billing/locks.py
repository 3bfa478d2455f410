import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional


class KeyedLocks:
    """
    In-process mutual exclusion keyed by an arbitrary string.

    Used to serialize read-modify-write cycles on one subscription (keyed by
    its Stripe reference, or by fan and creator before one exists) and payout
    authorization per creator. Entries are reference counted and dropped once
    nobody holds or waits on them, so the registry does not grow with the
    number of subscriptions ever seen.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._refcounts: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._refcounts[key] = self._refcounts.get(key, 0) + 1

        acquired = lock.acquire(timeout=-1 if timeout is None else timeout)
        try:
            if not acquired:
                raise TimeoutError(f"Timed out waiting for lock {key}")
            yield
        finally:
            if acquired:
                lock.release()
            with self._guard:
                self._refcounts[key] -= 1
                if self._refcounts[key] == 0:
                    del self._refcounts[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def subscription_key(stripe_subscription_id: Optional[str], fan_id: Optional[str] = None,
                     creator_id: Optional[str] = None) -> str:
    if stripe_subscription_id:
        return f"sub:{stripe_subscription_id}"
    if fan_id and creator_id:
        return f"pair:{fan_id}:{creator_id}"
    raise ValueError("A subscription lock needs a Stripe reference or a fan/creator pair")


def payout_key(creator_id: str) -> str:
    return f"payout:{creator_id}"
