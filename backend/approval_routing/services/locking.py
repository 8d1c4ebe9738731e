"""Per-instance serialization and bounded retry for infrastructural failures.

Within one process, mutations on the same workflow instance take a keyed
lock; across processes the row lock (``SELECT ... FOR UPDATE``) and the
instance's ``version_id`` column do the same job.
"""
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from approval_routing.core.config import settings
from approval_routing.core.errors import LockTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[Exception], ...] = (LockTimeoutError, OperationalError, StaleDataError)


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0  # holders plus waiters


class InstanceLockManager:
    """Keyed locks, one per workflow instance.

    An entry exists only while some thread holds or waits for it, so the
    table stays as small as the number of instances in flight.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = settings.LOCK_TIMEOUT_SECONDS if timeout is None else timeout
        self._locks: dict[str, _LockEntry] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: str) -> _LockEntry:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _LockEntry()
            entry.users += 1
            return entry

    def _checkin(self, key: str, entry: _LockEntry) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, instance_id: uuid.UUID | str) -> Iterator[None]:
        """Hold the instance lock for the duration of the block.

        Raises:
            LockTimeoutError: if the lock is not acquired within ``timeout`` seconds.
        """
        key = str(instance_id)
        entry = self._checkout(key)
        try:
            if not entry.lock.acquire(timeout=self.timeout):
                raise LockTimeoutError(
                    f"Workflow {key} is busy; try again shortly.",
                    instance_id=key,
                )
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)


_lock_manager: InstanceLockManager | None = None
_lock_manager_guard = threading.Lock()


def get_lock_manager() -> InstanceLockManager:
    """Process-wide lock manager shared by the API and the workers."""
    global _lock_manager
    if _lock_manager is None:
        with _lock_manager_guard:
            if _lock_manager is None:
                _lock_manager = InstanceLockManager()
    return _lock_manager


# ─── Retry ───

def run_with_backoff(
    fn: Callable[[], T],
    attempts: int | None = None,
    base_delay: float | None = None,
    on_retry: Callable[[], None] | None = None,
) -> T:
    """Call ``fn`` and retry only infrastructural failures.

    Domain errors (invalid transition, not eligible, ...) propagate on the
    first raise. ``on_retry`` runs before each retry, typically a session
    rollback. Delays grow exponentially from ``base_delay`` with up to half
    a ``base_delay`` of jitter.
    """
    attempts = max(settings.TRANSIENT_RETRY_ATTEMPTS if attempts is None else attempts, 1)
    base_delay = settings.TRANSIENT_RETRY_BASE_DELAY if base_delay is None else base_delay

    def _before_sleep(state: RetryCallState) -> None:
        logger.warning(
            "Transient failure (%s), retry %d/%d in %.2fs",
            type(state.outcome.exception()).__name__, state.attempt_number, attempts - 1,
            state.next_action.sleep,
        )
        if on_retry is not None:
            on_retry()

    retrying = Retrying(
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=base_delay) + wait_random(0, base_delay / 2),
        before_sleep=_before_sleep,
        sleep=time.sleep,
        reraise=True,
    )
    return retrying(fn)
