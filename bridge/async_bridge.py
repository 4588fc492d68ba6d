"""Sync-to-async bridge for the command-line surface.

The CLI is synchronous (one call per command); everything in ``bridge`` is
async. If a loop is already running in this thread (embedding hosts, notebook
kernels), the coroutine runs on a disposable thread with its own loop.
"""

import asyncio
import concurrent.futures


def run_async(coro, timeout=None):
    """Run an async coroutine from a sync context and return its result."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(asyncio.run, coro)
            return future.result(timeout=timeout)
    return asyncio.run(coro)
