"""
OperationQueue: strictly serialized runner for every mutating marketplace operation.

Architecture:
    One asyncio.Queue, one worker task. Exactly one operation executes at a
    time, globally, regardless of collection. When it finishes (success,
    failure or timeout) the worker immediately takes the next one.

    enqueue() never blocks and never awaits, so a sequence enqueued with
    enqueue_many() lands contiguously even with several concurrent producers
    (poll loops, stream handler, expiry sweep).

Failure policy:
    Each operation runs under a timeout. Exceptions are caught and logged
    with the operation context; they never stop the worker.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Iterable, List, Optional

from bidsync.core import json_utils
from bidsync.core.errors import BidSyncError, TransientFetchError
from bidsync.core.models import Operation

log = logging.getLogger("bidsync")

Executor = Callable[[Operation], Awaitable[None]]


@dataclass
class OperationOutcome:
    """Result of one executed operation."""
    operation: Operation
    success: bool
    started_at: float
    finished_at: float
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def duration_ms(self) -> float:
        return (self.finished_at - self.started_at) * 1000


class OperationQueue:
    """
    Usage:
        queue = OperationQueue(timeout_sec=30.0)
        queue.bind(controller.execute)
        queue.start()

        queue.enqueue_many([cancel_op, submit_op])

        await queue.join()   # wait until idle
        await queue.stop()   # drain, then stop the worker
    """

    DEFAULT_HISTORY_SIZE = 1000

    def __init__(
        self,
        executor: Optional[Executor] = None,
        timeout_sec: Optional[float] = 30.0,
        history_size: int = DEFAULT_HISTORY_SIZE,
        metrics: Any = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._executor = executor
        self._timeout = timeout_sec
        self._metrics = metrics
        self._log = log_event or self._default_log
        self._queue: asyncio.Queue[Optional[Operation]] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._running: Optional[Operation] = None
        self._stopping = False
        self._history: Deque[OperationOutcome] = deque(maxlen=history_size)
        self._stats = {"enqueued": 0, "completed": 0, "failed": 0, "timeouts": 0}

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json_utils.dumps({"event": event, **kwargs}))

    # -------------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------------

    def bind(self, executor: Executor) -> None:
        self._executor = executor

    def enqueue(self, op: Operation) -> None:
        if self._stopping:
            raise RuntimeError("operation_queue_stopping")
        self._queue.put_nowait(op)
        self._stats["enqueued"] += 1
        self._update_depth()
        self._log("op_enqueued", level=logging.DEBUG, pending=self._queue.qsize(), **op.describe())

    def enqueue_many(self, ops: Iterable[Operation]) -> None:
        """Append ops back to back; nothing else can interleave between them."""
        for op in list(ops):
            self.enqueue(op)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> Optional[Operation]:
        return self._running

    @property
    def history(self) -> List[OperationOutcome]:
        return list(self._history)

    @property
    def stats(self) -> dict:
        return dict(self._stats)

    def is_idle(self) -> bool:
        return self._running is None and self._queue.empty()

    # -------------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if self._executor is None:
            raise RuntimeError("operation_queue_unbound")
        if self._worker is None:
            self._stopping = False
            self._worker = asyncio.create_task(self.run(), name="operation-queue")

    async def join(self) -> None:
        await self._queue.join()

    async def stop(self, drain: bool = True) -> None:
        """Stop accepting work; the operation in flight always runs to completion."""
        self._stopping = True
        if not drain:
            dropped = 0
            while not self._queue.empty():
                self._queue.get_nowait()
                self._queue.task_done()
                dropped += 1
            if dropped:
                self._log("op_queue_dropped", level=logging.WARNING, dropped=dropped)
        if self._worker is not None:
            self._queue.put_nowait(None)
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None
        self._update_depth()

    async def run(self) -> None:
        while True:
            op = await self._queue.get()
            try:
                if op is None:
                    break
                await self._execute(op)
            finally:
                self._queue.task_done()
                self._update_depth()

    async def _execute(self, op: Operation) -> None:
        self._running = op
        started = time.time()
        outcome = OperationOutcome(operation=op, success=False, started_at=started, finished_at=started)
        try:
            if self._timeout and self._timeout > 0:
                await asyncio.wait_for(self._executor(op), timeout=self._timeout)
            else:
                await self._executor(op)
            outcome.success = True
            self._stats["completed"] += 1
        except asyncio.TimeoutError:
            err = TransientFetchError(
                f"operation timed out after {self._timeout}s",
                collection=op.collection,
                marketplace=op.marketplace.value,
            )
            outcome.error, outcome.error_type = str(err), type(err).__name__
            self._stats["failed"] += 1
            self._stats["timeouts"] += 1
            self._log("op_timeout", level=logging.ERROR, timeout_sec=self._timeout, **op.describe())
        except BidSyncError as exc:
            outcome.error, outcome.error_type = str(exc), type(exc).__name__
            self._stats["failed"] += 1
            self._log("op_failed", level=logging.ERROR, **{**exc.to_log(), **op.describe()})
        except Exception as exc:
            outcome.error, outcome.error_type = str(exc), type(exc).__name__
            self._stats["failed"] += 1
            log.exception(json_utils.dumps({"event": "op_crashed", "err": str(exc), **op.describe()}))
        finally:
            outcome.finished_at = time.time()
            self._running = None
            self._history.append(outcome)
            if self._metrics is not None:
                self._metrics.operations.labels(op=op.type.value, outcome="ok" if outcome.success else "failed").inc()
            self._log(
                "op_done",
                level=logging.DEBUG,
                ok=outcome.success,
                duration_ms=round(outcome.duration_ms, 1),
                **op.describe(),
            )

    def _update_depth(self) -> None:
        if self._metrics is not None:
            self._metrics.queue_depth.set(self._queue.qsize())
