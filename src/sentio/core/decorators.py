"""Error handling decorators"""

import inspect
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import ParamSpec, TypeVar, cast

from .base import ApplicationError, ErrorLevel
from .error_context import ErrorContext
from .logging import get_logger

logger = get_logger(__name__)
P = ParamSpec("P")
T = TypeVar("T")


def _report(func: Callable[..., object], error: Exception, default_level: ErrorLevel) -> None:
    level = error.level if isinstance(error, ApplicationError) else default_level
    context = ErrorContext(error, function=func.__qualname__)
    logger.log(
        level.to_logging_level(),
        f"{func.__qualname__} failed: {error!s}",
        error_context=context.to_dict(),
        # Expected outcomes (not found, rate limited) stay one line
        exc_info=level.to_logging_level() >= ErrorLevel.ERROR.to_logging_level(),
    )


def with_error_handling(
    error_level: ErrorLevel = ErrorLevel.ERROR,
    reraise: bool = True,
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Log errors leaving a store, client or sender method.

    ApplicationErrors are logged at their own level; anything else at
    ``error_level``. With ``reraise=False`` the error is swallowed and the
    call returns None, which only suits fire-and-forget housekeeping.
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        if inspect.iscoroutinefunction(func):

            @wraps(func)
            async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
                try:
                    return await cast("Callable[P, Awaitable[T]]", func)(*args, **kwargs)
                except Exception as e:
                    _report(func, e, error_level)
                    if reraise:
                        raise
                    return cast("T", None)

            return cast("Callable[P, T]", async_wrapper)

        @wraps(func)
        def sync_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                _report(func, e, error_level)
                if reraise:
                    raise
                return cast("T", None)

        return sync_wrapper

    return decorator
