"""
Exclusive Lease Manager

Per-entity pessimistic locking for units of work. A lease names a resource
and a key (for example ``("checks", check_id)`` or
``("checkbook_ranges", bank_account_id)``) and is held by one owner until the
owner releases everything it holds at commit or rollback.
"""

import threading
import time
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import LockTimeout
from .logging_config import get_logger


LeaseKey = Tuple[str, str]


class LockManager:
    """Grants re-entrant exclusive leases with a bounded wait"""

    def __init__(self, default_timeout: float = 5.0):
        self.default_timeout = default_timeout
        self._condition = threading.Condition()
        self._holders: Dict[LeaseKey, str] = {}
        self._owned: Dict[str, List[LeaseKey]] = {}
        self.logger = get_logger("treasury.locking")

    def acquire(self, owner: str, resource: str, key: str,
                timeout: Optional[float] = None) -> None:
        """
        Block until ``owner`` holds the lease on (resource, key).

        Raises:
            LockTimeout: another owner kept the lease past the timeout
        """
        lease = (resource, str(key))
        wait = self.default_timeout if timeout is None else timeout
        deadline = time.monotonic() + wait

        with self._condition:
            while True:
                holder = self._holders.get(lease)
                if holder is None:
                    self._holders[lease] = owner
                    self._owned.setdefault(owner, []).append(lease)
                    return
                if holder == owner:
                    return
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self.logger.warning(
                        f"Lease wait timed out on {resource}:{key}",
                        extra={"extra": {"resource": resource, "key": str(key), "waited": wait}},
                    )
                    raise LockTimeout(
                        message=f"Timed out waiting for {resource} {key}",
                        details={"resource": resource, "key": str(key), "timeout_seconds": wait},
                    )
                self._condition.wait(remaining)

    def acquire_many(self, owner: str, leases: Iterable[LeaseKey],
                     timeout: Optional[float] = None) -> None:
        """Acquire several leases in a stable order so two owners never deadlock"""
        for resource, key in sorted({(r, str(k)) for r, k in leases}):
            self.acquire(owner, resource, key, timeout)

    def release_all(self, owner: str) -> None:
        with self._condition:
            for lease in self._owned.pop(owner, []):
                if self._holders.get(lease) == owner:
                    del self._holders[lease]
            self._condition.notify_all()

    def holder_of(self, resource: str, key: str) -> Optional[str]:
        with self._condition:
            return self._holders.get((resource, str(key)))
