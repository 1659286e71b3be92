"""
Structured logging for the fedjoin engine.

Engine modules log through structlog; records of the libraries underneath
(uvicorn, httpx, the database drivers) are routed through the same
renderer so a deployment sees one stream.
"""

import functools
import logging
import sys
import time
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import structlog
from structlog.contextvars import merge_contextvars
from structlog.processors import JSONRenderer, TimeStamper, add_log_level
from structlog.stdlib import ProcessorFormatter, add_logger_name

from fedjoin.core.config import Settings, settings

T = TypeVar("T")

QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "asyncpg", "asyncio")


def _shared_processors() -> List[Any]:
    return [merge_contextvars, add_log_level, TimeStamper(fmt="iso")]


def setup_logging(config: Settings = settings) -> None:
    """
    Configure structlog and the standard library root logger.

    Production renders JSON lines; every other environment renders for a
    console.
    """
    renderer = JSONRenderer() if config.is_production else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=_shared_processors() + [
            add_logger_name,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ProcessorFormatter(processor=renderer, foreign_pre_chain=_shared_processors()))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(config.log_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_performance(operation: str) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Time an async engine call.

    When the decorated callable is a method of an object with a
    ``datasource_id`` (the query executors), the id is added to both
    records.

    Args:
        operation: Label used in the log events
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        logger = get_logger(func.__module__)

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            fields = {}
            datasource_id = getattr(args[0], "datasource_id", None) if args else None
            if datasource_id is not None:
                fields["datasource_id"] = datasource_id

            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.warning(
                    f"{operation} failed",
                    duration_ms=round((time.perf_counter() - start) * 1000, 2),
                    error=str(e),
                    **fields,
                )
                raise
            logger.debug(
                f"{operation} completed",
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
                **fields,
            )
            return result

        return wrapper

    return decorator


setup_logging()
