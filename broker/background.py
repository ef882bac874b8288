"""
Fire-and-forget tasks that are never silently dropped.

asyncio only keeps weak references to tasks, so spawned work is held in a
module set until it finishes; failures land in the error sink (printed).
"""

import asyncio
from typing import Coroutine, Set

_running: Set[asyncio.Task] = set()


def spawn(coro: Coroutine, label: str) -> asyncio.Task:
    """Start coro in the background without awaiting it."""
    task = asyncio.create_task(coro, name=label)
    _running.add(task)
    task.add_done_callback(_on_done)
    return task


def _on_done(task: asyncio.Task) -> None:
    _running.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        print(f"[BG] ⚠️  Background task '{task.get_name()}' failed: {exc!r}")


def pending() -> int:
    return len(_running)


async def drain(timeout: float = 30.0) -> None:
    """Wait for in-flight background work (used on shutdown)."""
    if not _running:
        return
    done, still = await asyncio.wait(set(_running), timeout=timeout)
    if still:
        print(f"[BG] {len(still)} background task(s) still running at shutdown")
