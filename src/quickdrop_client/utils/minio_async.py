import asyncio
from functools import partial
from typing import Any, AsyncIterator, Callable, Iterator

_EXHAUSTED = object()


async def run_io_bound(func: Callable[..., Any], *args, **kwargs):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(func, *args, **kwargs))


async def iterate_io_bound(iterator: Iterator[bytes]) -> AsyncIterator[bytes]:
    """Тянет блокирующий итератор (urllib3 stream) по одному чанку в executor'е."""
    while True:
        chunk = await run_io_bound(next, iterator, _EXHAUSTED)
        if chunk is _EXHAUSTED:
            return
        yield chunk
