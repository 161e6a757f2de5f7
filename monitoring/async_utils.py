import asyncio
from typing import Iterable, Awaitable, Optional, Callable, List


async def cancel_and_wait(tasks: Iterable[Optional[asyncio.Task]]) -> None:
    """Cancel unfinished tasks and wait for all of them, swallowing their results."""
    task_list: List[asyncio.Task] = [t for t in tasks if t is not None]
    for t in task_list:
        if not t.done():
            t.cancel()
    if task_list:
        await asyncio.gather(*task_list, return_exceptions=True)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        pass
    finally:
        await cancel_and_wait(task_list)
        if cleanup is not None:
            await cleanup()
