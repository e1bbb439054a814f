# timing_decorator.py
import inspect
import functools
import time
from typing import Callable, Any, Optional, TypeVar, cast

from app_logger import log_debug

F = TypeVar("F", bound=Callable[..., Any])


def timed(label: Optional[str] = None) -> Callable[[F], F]:
    """
    Decorator that measures execution time and logs it at DEBUG level.
    Works on plain functions and on coroutine functions (the awaited
    body is measured, not just coroutine creation).
    DEBUG only reaches the file handler, never the on-screen buffer.
    """
    def decorator(func: F) -> F:
        tag = label or func.__qualname__

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                start = time.perf_counter()
                try:
                    return await func(*args, **kwargs)
                finally:
                    log_debug("[%s] took %.4f s", tag, time.perf_counter() - start)
            return cast(F, async_wrapper)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                log_debug("[%s] took %.4f s", tag, time.perf_counter() - start)
        return cast(F, wrapper)
    return decorator
