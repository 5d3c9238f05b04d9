"""
Keyed async locks
Per-entity mutual exclusion for ledgers and orders
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, List, Optional, TypeVar

from .config import settings
from .exceptions import ConcurrencyConflict
from .logging import get_logger

logger = get_logger("locking")

T = TypeVar("T")


class KeyedLockRegistry:
    """
    Hands out one asyncio.Lock per key.

    Locks are created lazily under a registry lock and kept for the life of the
    registry; the key space (orders, shop/drug pairs) is bounded by the data itself.
    """

    def __init__(self, name: str):
        self.name = name
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._global_lock = asyncio.Lock()

    async def get_lock(self, key: Hashable) -> asyncio.Lock:
        """Get or create lock for specific key"""
        async with self._global_lock:
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
            return self._locks[key]

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


async def _acquire(lock: asyncio.Lock, label: str, timeout: float) -> None:
    try:
        await asyncio.wait_for(lock.acquire(), timeout=timeout)
    except asyncio.TimeoutError:
        raise ConcurrencyConflict(
            f"Timed out after {timeout}s waiting for lock on {label}", entity=label
        )


async def run_exclusive(
    locks: Iterable[asyncio.Lock],
    labels: Iterable[str],
    critical_section: Callable[[], Awaitable[T]],
    timeout: Optional[float] = None,
) -> T:
    """
    Acquire ``locks`` in the given order, then run ``critical_section``.

    Cancellation is honoured only while waiting for locks. Once every lock is
    held the critical section runs in its own task, which releases the locks
    when it finishes even if the awaiting caller has been cancelled.
    """
    timeout = settings.LOCK_ACQUIRE_TIMEOUT_SECONDS if timeout is None else timeout
    held: List[asyncio.Lock] = []
    try:
        for lock, label in zip(locks, labels):
            await _acquire(lock, label, timeout)
            held.append(lock)
    except BaseException:
        for lock in reversed(held):
            lock.release()
        raise

    async def _run_and_release() -> Any:
        try:
            return await critical_section()
        finally:
            for lock in reversed(held):
                lock.release()

    task = asyncio.ensure_future(_run_and_release())
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        if not task.done():
            logger.warning("Caller cancelled inside critical section; finishing it before releasing locks")
            task.add_done_callback(_log_orphaned_failure)
        raise


def _log_orphaned_failure(task: "asyncio.Future") -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Critical section finished with error after caller cancelled: {error}")
