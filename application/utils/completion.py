"""Run use-cases so that a dropped client connection cannot abort them halfway."""
from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


async def run_to_completion(awaitable: Awaitable[T]) -> T:
    """
    Await `awaitable` in its own task, shielded from cancellation of the caller.

    If the request task is cancelled (client disconnect), the payment work keeps
    running to completion; only the caller stops waiting for it.
    """
    task = asyncio.ensure_future(awaitable)
    return await asyncio.shield(task)
