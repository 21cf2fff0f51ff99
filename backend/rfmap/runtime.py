import asyncio
import contextvars
import functools
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import suppress
from typing import Any, Callable, List, Optional

from fastapi import Request

from .config import Settings
from .facade import SignalDataFacade, open_backend
from .logging_config import get_logger
from .notify import ChangeNotifier
from .retention import RetentionService, periodic
from .spatial import SpatialQueryEngine

logger = get_logger("runtime")


class Runtime:
    """Everything the process owns: settings, the chosen store and the worker pool.

    Built once in the FastAPI lifespan and closed at shutdown.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.notifier = ChangeNotifier()
        self.backend = open_backend(settings, self.notifier)
        self.spatial = SpatialQueryEngine(self.backend, settings)
        self.retention = RetentionService(self.backend, settings)
        self.facade = SignalDataFacade(self.backend, settings, self.spatial, self.retention)
        self.executor = ThreadPoolExecutor(max_workers=settings.worker_pool_size, thread_name_prefix="rfmap-worker")
        self._stop = threading.Event()
        self._tasks: List[asyncio.Task] = []

    async def run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run blocking store work on the bounded worker pool, keeping the caller's log context."""
        loop = asyncio.get_running_loop()
        context = contextvars.copy_context()
        return await loop.run_in_executor(self.executor, functools.partial(context.run, fn, *args, **kwargs))

    def _cleanup_cycle(self) -> None:
        self.retention.run_cleanup(stop_event=self._stop)

    def _aggregate_cycle(self) -> None:
        self.retention.run_aggregation(stop_event=self._stop)
        self.retention.cleanup_aggregated_data()

    def start_maintenance(self) -> None:
        if not self.settings.schedule_maintenance:
            logger.info("maintenance_disabled")
            return
        self._tasks = [
            asyncio.create_task(
                periodic("cleanup", self.settings.cleanup_interval_seconds, self._cleanup_cycle, self.run)
            ),
            asyncio.create_task(
                periodic("aggregate", self.settings.aggregate_interval_seconds, self._aggregate_cycle, self.run)
            ),
        ]
        logger.info(
            "maintenance_scheduled",
            cleanup_interval_seconds=self.settings.cleanup_interval_seconds,
            aggregate_interval_seconds=self.settings.aggregate_interval_seconds,
        )

    async def shutdown(self) -> None:
        self._stop.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with suppress(asyncio.CancelledError):
                await task
        self.executor.shutdown(wait=True)
        self.facade.close()
        logger.info("runtime_stopped", mode=self.backend.name)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def build_runtime(settings: Optional[Settings] = None) -> Runtime:
    settings = settings or Settings.from_env()
    runtime = Runtime(settings)
    logger.info(
        "runtime_started",
        mode=runtime.backend.name,
        grid_cell_meters=settings.grid_cell_meters,
        workers=settings.worker_pool_size,
    )
    return runtime
