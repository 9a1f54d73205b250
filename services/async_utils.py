import asyncio
import logging
from typing import Any, Callable, Iterable, List, Tuple

logger = logging.getLogger(__name__)


async def run_single_arg_settled(
    func: Callable[[Any], Any],
    items: Iterable[Any],
    max_concurrency: int = 3,
) -> List[Tuple[Any, Any, BaseException | None]]:
    """
    Run a blocking single-argument function over ``items`` in worker threads, at most
    ``max_concurrency`` at a time. Never fails as a whole: each entry is
    ``(item, result, error)`` in input order, with exactly one of result / error set.
    """
    items = list(items)
    sem = asyncio.Semaphore(max(1, max_concurrency))

    async def _run_one(item: Any) -> Tuple[Any, Any, BaseException | None]:
        async with sem:
            try:
                return item, await asyncio.to_thread(func, item), None
            except Exception as exc:
                logger.warning("[async_utils] %s failed for %r: %s", getattr(func, "__name__", func), item, exc)
                return item, None, exc

    return list(await asyncio.gather(*(_run_one(item) for item in items)))
