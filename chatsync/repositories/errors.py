import functools
import logging
from typing import Tuple, Type

from chatsync.exceptions import StoreUnavailable


logger = logging.getLogger(__name__)


def store_errors(*driver_errors: Type[BaseException]):
    """Re-raise driver I/O errors from an async store method as StoreUnavailable."""
    caught: Tuple[Type[BaseException], ...] = tuple(driver_errors)

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except caught as exc:
                logger.warning(f"{func.__qualname__} failed: {exc!r}")
                raise StoreUnavailable(f"{func.__name__}: {exc}") from exc
        return wrapper

    return decorator
