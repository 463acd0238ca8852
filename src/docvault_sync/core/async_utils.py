"""Async helpers for running blocking network and filesystem calls.

The document-service client and the local filesystem are synchronous.  The
engine calls them through ``run_sync`` / ``run_sync_limited`` so that a
blocked transfer suspends only the pass that issued it.
"""

import asyncio
import logging
from typing import Any, Callable, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)

# Module-level semaphore capping concurrent requests to the service,
# initialized when the engine is built.
_semaphore: asyncio.Semaphore | None = None


def init_semaphore(max_parallel: int = 4) -> None:
    """Initialize the request semaphore.  Call once at startup."""
    global _semaphore
    _semaphore = asyncio.Semaphore(max_parallel)
    logger.info(
        "Request semaphore initialized: max_parallel=%d", max_parallel
    )


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a worker thread.

    Used for local filesystem work (walking trees, hashing, deleting),
    which is not subject to the network cap.

    Example:
        tree = await run_sync(planner.scan_local_tree, root, entries)
    """
    return await asyncio.to_thread(func, *args, **kwargs)


async def run_sync_limited(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous network call in a worker thread, bounded by the
    request semaphore.

    Falls back to unbounded if the semaphore was not initialized.
    """
    if _semaphore is None:
        return await asyncio.to_thread(func, *args, **kwargs)
    async with _semaphore:
        return await asyncio.to_thread(func, *args, **kwargs)
