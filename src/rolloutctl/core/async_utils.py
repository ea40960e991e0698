"""Async helpers for driving blocking collaborators from the event loop."""

import asyncio
import concurrent.futures
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")


async def call_blocking(
    func: Callable[[], T],
    timeout: float,
    settle: bool = False,
) -> T:
    """Run a blocking callable in the default executor with a timeout.

    The worker thread cannot be interrupted. On timeout its result is
    discarded; with ``settle`` the caller also waits for the thread to
    finish before the timeout is raised, so nothing else can run against
    the same resource while it is still busy.

    Args:
        func: Zero-argument callable to run
        timeout: Timeout in seconds
        settle: Wait for the worker to finish before raising on timeout

    Returns:
        Result of the callable

    Raises:
        asyncio.TimeoutError: If the call does not finish in time
    """
    loop = asyncio.get_running_loop()
    future = loop.run_in_executor(None, func)
    try:
        return await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
    except asyncio.TimeoutError:
        if settle:
            await asyncio.gather(future, return_exceptions=True)
        else:
            future.cancel()
        raise


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Exponential backoff delay for the given zero-based retry attempt."""
    if base <= 0:
        return 0.0
    return min(maximum, base * (2**attempt))


def run_sync(coro: Awaitable[T]) -> T:
    """Run an async function synchronously.

    This is useful for integrating async code with Click commands.

    Args:
        coro: Coroutine to run

    Returns:
        Result of the coroutine
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        # Already inside an event loop: run on a fresh loop in a worker thread
        with concurrent.futures.ThreadPoolExecutor() as pool:
            future = pool.submit(asyncio.run, coro)
            return future.result()
    return asyncio.run(coro)
