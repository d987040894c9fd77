from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Generic, List, Literal, Optional, Set, TypeVar

from codex_keeper.config.models import BatchSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

ExecutionMode = Literal["parallel", "sequential"]


@dataclass
class BatchItem(Generic[T]):
    operation: Callable[[], Awaitable[T]]
    future: "asyncio.Future[T]"


class BatchProcessor(Generic[T]):
    """
    Queue async operations and run them in batches.

    A batch runs as soon as ``max_batch_size`` items are queued, or ``max_wait_seconds``
    after the first item of an unflushed batch arrived. Each operation gets up to
    ``retry_count`` attempts, ``retry_delay_seconds`` apart; its future fails only after
    the last attempt.
    """

    def __init__(
        self,
        *,
        max_batch_size: int = 100,
        max_wait_seconds: float = 0.1,
        retry_count: int = 3,
        retry_delay_seconds: float = 1.0,
        mode: ExecutionMode = "parallel",
    ) -> None:
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        if retry_count < 1:
            raise ValueError("retry_count must be at least 1")
        self._max_batch_size = max_batch_size
        self._max_wait = max_wait_seconds
        self._retry_count = retry_count
        self._retry_delay = retry_delay_seconds
        self._mode: ExecutionMode = mode

        self._queue: Deque[BatchItem[T]] = deque()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._process_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: BatchSettings) -> BatchProcessor[Any]:
        return cls(
            max_batch_size=settings.max_batch_size,
            max_wait_seconds=settings.max_wait_seconds,
            retry_count=settings.retry_count,
            retry_delay_seconds=settings.retry_delay_seconds,
            mode=settings.mode,
        )

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def is_processing(self) -> bool:
        return self._process_lock.locked()

    @property
    def mode(self) -> ExecutionMode:
        return self._mode

    def update_options(
        self,
        *,
        max_batch_size: Optional[int] = None,
        max_wait_seconds: Optional[float] = None,
        retry_count: Optional[int] = None,
        retry_delay_seconds: Optional[float] = None,
        mode: Optional[ExecutionMode] = None,
    ) -> None:
        if max_batch_size is not None:
            self._max_batch_size = max(1, max_batch_size)
        if max_wait_seconds is not None:
            self._max_wait = max_wait_seconds
        if retry_count is not None:
            self._retry_count = max(1, retry_count)
        if retry_delay_seconds is not None:
            self._retry_delay = retry_delay_seconds
        if mode is not None:
            self._mode = mode

    def submit(self, operation: Callable[[], Awaitable[T]]) -> "asyncio.Future[T]":
        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()
        self._queue.append(BatchItem(operation=operation, future=future))

        if len(self._queue) >= self._max_batch_size:
            self._cancel_timer()
            self._spawn_processing()
        elif self._timer is None:
            self._timer = loop.call_later(self._max_wait, self._on_timer)
        return future

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await self.submit(operation)

    async def flush(self) -> None:
        """Process everything queued now and wait until it has finished."""
        self._cancel_timer()
        await self._drain()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def clear(self) -> int:
        """Drop queued items that have not started. Their futures are cancelled."""
        self._cancel_timer()
        dropped = 0
        while self._queue:
            item = self._queue.popleft()
            item.future.cancel()
            dropped += 1
        if dropped:
            logger.debug("Batch queue cleared. dropped=%s", dropped)
        return dropped

    async def close(self) -> None:
        await self.flush()

    def _on_timer(self) -> None:
        self._timer = None
        self._spawn_processing()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _spawn_processing(self) -> None:
        task = asyncio.get_running_loop().create_task(self._drain())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _drain(self) -> None:
        async with self._process_lock:
            while self._queue:
                batch: List[BatchItem[T]] = []
                while self._queue and len(batch) < self._max_batch_size:
                    batch.append(self._queue.popleft())
                logger.debug("Processing batch. size=%s mode=%s", len(batch), self._mode)
                if self._mode == "parallel":
                    await asyncio.gather(*(self._run_item(item) for item in batch))
                else:
                    for item in batch:
                        await self._run_item(item)

    async def _run_item(self, item: BatchItem[T]) -> None:
        if item.future.done():
            return
        last_error: Optional[BaseException] = None
        for attempt in range(1, self._retry_count + 1):
            try:
                result = await item.operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                if attempt < self._retry_count:
                    logger.debug("Batch operation failed, retrying. attempt=%s error=%s", attempt, e)
                    await asyncio.sleep(self._retry_delay)
                continue
            if not item.future.done():
                item.future.set_result(result)
            return

        logger.warning("Batch operation failed after retries. attempts=%s error=%s", self._retry_count, last_error)
        if not item.future.done():
            assert last_error is not None
            item.future.set_exception(last_error)
