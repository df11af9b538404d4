import asyncio
import logging
from typing import Callable, Optional

from schemas import UsageRecord
from store import GovernanceStore

logger = logging.getLogger("sentinel.usage")

OVERFLOW_POLICIES = ("drop_newest", "drop_oldest", "block")


class UsageWriter:
    """
    Bounded queue drained by one background worker that appends usage records
    and bumps token usage counters.

    Overflow policy when the queue is full:
    - drop_newest: the incoming record is discarded
    - drop_oldest: the oldest queued record is discarded to make room
    - block: submit waits for room (never for the write itself)

    Every record leaves through on_settled exactly once, whether it was
    written, dropped or failed.
    """

    def __init__(
        self,
        store: GovernanceStore,
        max_size: int = 1000,
        overflow: str = "drop_newest",
        on_settled: Optional[Callable[[UsageRecord], None]] = None,
    ):
        if overflow not in OVERFLOW_POLICIES:
            raise ValueError(f"Unknown overflow policy: {overflow}")

        self._store = store
        self._queue: asyncio.Queue[UsageRecord] = asyncio.Queue(maxsize=max_size)
        self._overflow = overflow
        self._on_settled = on_settled or (lambda record: None)
        self._task: Optional[asyncio.Task] = None

        self.written = 0
        self.dropped = 0
        self.failed = 0

    # ======================================================
    # Lifecycle
    # ======================================================

    def start(self) -> None:
        """
        Must be called once the event loop is running.
        """
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._worker())
        logger.info(f"Usage writer started (overflow={self._overflow})")

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """
        Graceful shutdown: flush what is queued, then stop the worker.
        """
        if self._task is None:
            return

        try:
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Usage writer stopped with {self._queue.qsize()} records unflushed")

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Usage writer shut down")

    async def flush(self) -> None:
        await self._queue.join()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # ======================================================
    # Public API
    # ======================================================

    async def submit(self, record: UsageRecord) -> bool:
        """
        Returns False when the record was dropped.
        """
        if self._overflow == "block":
            await self._queue.put(record)
            return True

        try:
            self._queue.put_nowait(record)
            return True
        except asyncio.QueueFull:
            pass

        if self._overflow == "drop_oldest":
            oldest = self._queue.get_nowait()
            self._queue.task_done()
            self._drop(oldest)
            self._queue.put_nowait(record)
            return True

        self._drop(record)
        return False

    # ======================================================
    # Background worker
    # ======================================================

    def _drop(self, record: UsageRecord) -> None:
        self.dropped += 1
        logger.debug("Usage queue full, dropping record")
        self._on_settled(record)

    async def _worker(self) -> None:
        """
        Drains the queue forever. A failing store never stops the worker.
        """
        while True:
            record = await self._queue.get()
            settled = False
            try:
                await self._store.append_usage_record(record)
                # Visible to ledger counts from here on
                self._on_settled(record)
                settled = True
                if record.token_id:
                    await self._store.increment_usage(record.token_id, record.timestamp)
                self.written += 1
            except Exception as e:
                self.failed += 1
                logger.warning(f"Usage write failed (dropped): {type(e).__name__}")
            finally:
                if not settled:
                    self._on_settled(record)
                self._queue.task_done()
