"""
Bounded worker pool for CPU-bound diff and merge computation.
"""

from __future__ import annotations

import asyncio
import contextvars
import functools
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional, TypeVar

import structlog

from ..core.exceptions import OperationTimeoutError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ComputePool:
    """
    ``ThreadPoolExecutor`` wrapper that keeps heavy work off the event loop.

    Context variables (log context, correlation id) are copied into the
    worker so log lines emitted there stay attributable to the request.
    """

    def __init__(self, max_workers: int = 4, thread_name_prefix: str = "asset-vcs-compute"):
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=thread_name_prefix
        )

    async def run(
        self,
        func: Callable[..., T],
        *args: Any,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> T:
        loop = asyncio.get_running_loop()
        ctx = contextvars.copy_context()
        call = functools.partial(ctx.run, func, *args, **kwargs)
        future = loop.run_in_executor(self._executor, call)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.error("compute_timeout", function=getattr(func, "__name__", str(func)), timeout=timeout)
            raise OperationTimeoutError(
                f"Computation exceeded {timeout}s",
                details={"timeout_seconds": timeout},
            ) from e

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        logger.info("compute_pool_shutdown")
