import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from chatsync.exceptions import StoreUnavailable


logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    retries: int = 3,
    base: float = 0.5,
    retry_on: Tuple[Type[BaseException], ...] = (StoreUnavailable,),
    label: str = "operation",
) -> T:
    """Run ``fn`` up to ``retries`` times, sleeping base, 2*base, ... between attempts."""
    for attempt in range(retries):
        try:
            return await fn()
        except retry_on as exc:
            if attempt == retries - 1:
                logger.warning(f"{label} failed after {retries} attempts: {exc}")
                raise
            delay = base * (2 ** attempt)
            logger.warning(f"{label} failed (attempt {attempt + 1}/{retries}), retrying in {delay:.2f}s: {exc}")
            await asyncio.sleep(delay)
    raise RuntimeError("retries must be >= 1")
