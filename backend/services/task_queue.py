"""
In-process asynchronous task queue.

Jobs are submitted fire-and-forget: ``enqueue`` only reports whether the job
was accepted. Delivery is at-least-once, a failing handler is retried with
exponential backoff until ``max_retries`` attempts have been spent, then the
record is marked failed and logged. Nothing is ever raised back to the
submitter.
"""

import asyncio
import inspect
import itertools
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from uuid import uuid4

from models import QueuePriority, TaskRecord

_logger = logging.getLogger("storyloom.tasks")

Handler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]

PRIORITY_RANK = {
    QueuePriority.HIGH: 0,
    QueuePriority.MEDIUM: 1,
    QueuePriority.LOW: 2,
}


class TaskQueue:
    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_size: int = 0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self._sleep = sleep
        self._handlers: Dict[str, Handler] = {}
        self._queue: asyncio.PriorityQueue = asyncio.PriorityQueue(maxsize=max_size)
        self._sequence = itertools.count()
        self._records: Dict[str, TaskRecord] = {}
        self._worker: Optional[asyncio.Task] = None
        self._retry_tasks: set = set()

    def register(self, job_type: str, handler: Handler) -> None:
        self._handlers[job_type] = handler

    def enqueue(
        self,
        job_type: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: QueuePriority = QueuePriority.MEDIUM,
    ) -> bool:
        if job_type not in self._handlers:
            _logger.warning("task rejected job_type=%s reason=no_handler", job_type)
            return False

        record = TaskRecord(
            id=str(uuid4()),
            job_type=job_type,
            payload=dict(payload or {}),
            priority=QueuePriority(priority),
            max_retries=self.max_retries,
        )
        try:
            self._put(record)
        except asyncio.QueueFull:
            _logger.warning("task rejected job_type=%s reason=queue_full", job_type)
            return False

        self._records[record.id] = record
        self._ensure_worker()
        _logger.info("task accepted id=%s job_type=%s priority=%s", record.id, job_type, record.priority.value)
        return True

    async def drain(self) -> None:
        """Wait until every accepted job has succeeded or exhausted its retries."""
        self._ensure_worker()
        await self._queue.join()

    async def close(self) -> None:
        for task in list(self._retry_tasks):
            task.cancel()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    def status(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        for record in self._records.values():
            counts[record.status] = counts.get(record.status, 0) + 1
        return {
            "queued": self._queue.qsize(),
            "handlers": sorted(self._handlers),
            "counts": counts,
        }

    def records(self, status: Optional[str] = None) -> List[TaskRecord]:
        return [record for record in self._records.values() if status is None or record.status == status]

    def _put(self, record: TaskRecord) -> None:
        self._queue.put_nowait((PRIORITY_RANK[record.priority], next(self._sequence), record))

    def _ensure_worker(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Started on the next enqueue/drain made from inside a loop.
            return
        self._worker = loop.create_task(self._work())

    async def _work(self) -> None:
        while True:
            _, _, record = await self._queue.get()
            await self._run(record)

    async def _run(self, record: TaskRecord) -> None:
        handler = self._handlers[record.job_type]
        record.status = "running"
        record.attempts += 1
        try:
            if inspect.iscoroutinefunction(handler):
                await handler(record.payload)
            else:
                outcome = await asyncio.to_thread(handler, record.payload)
                if inspect.isawaitable(outcome):
                    await outcome
        except Exception as exc:
            record.last_error = str(exc)
            if record.attempts < record.max_retries:
                delay = self.base_delay * (2 ** (record.attempts - 1))
                record.status = "retrying"
                _logger.warning(
                    "task retry id=%s job_type=%s attempt=%d delay=%.2fs error=%s",
                    record.id,
                    record.job_type,
                    record.attempts,
                    delay,
                    exc,
                )
                retry = asyncio.get_running_loop().create_task(self._retry_later(record, delay))
                self._retry_tasks.add(retry)
                retry.add_done_callback(self._retry_tasks.discard)
                return
            record.status = "failed"
            _logger.error(
                "task failed id=%s job_type=%s attempts=%d error=%s",
                record.id,
                record.job_type,
                record.attempts,
                exc,
            )
        else:
            record.status = "succeeded"
            record.last_error = None
            _logger.info("task done id=%s job_type=%s attempts=%d", record.id, record.job_type, record.attempts)
        self._queue.task_done()

    async def _retry_later(self, record: TaskRecord, delay: float) -> None:
        # The original slot stays open until the retry is back in the queue, so drain() keeps waiting.
        try:
            await self._sleep(delay)
            record.status = "pending"
            self._put(record)
        finally:
            self._queue.task_done()
