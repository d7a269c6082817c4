"""
Audit Logger — non-blocking, retried, never-dropping audit trail.

``record()`` only stamps the event and enqueues it. A single background
worker assigns the hash chain (sequence + previous hash) and writes to the
primary store, retrying with exponential backoff. When retries are
exhausted the event goes to the fallback channel (in-memory buffer and an
optional JSON-lines file) and alert handlers are notified. Once the store
is reachable again, ``replay_fallback()`` drains the buffer.

Configuration (environment variables, see ``VaultConfig``):
    AUDIT_FALLBACK_PATH, AUDIT_MAX_ATTEMPTS, AUDIT_BACKOFF_MIN,
    AUDIT_BACKOFF_MAX, AUDIT_QUEUE_SIZE
"""
import asyncio
import logging
from collections import deque
from pathlib import PurePath, Path
from typing import Any, Callable, Optional, Protocol, Union
from datetime import datetime

import orjson
from tenacity import (
    AsyncRetrying,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from ..exceptions import AuditWriteFailure
from .context import get_correlation_id, new_correlation_id
from .events import AuditEvent, GENESIS_HASH

logger = logging.getLogger("navigator.audit")

AlertHandler = Callable[[AuditWriteFailure, AuditEvent], Any]


class AuditStore(Protocol):
    """Append-only primary store of audit events."""

    async def insert(self, event: AuditEvent) -> None:
        ...

    async def query(
        self,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        action: Any = None,
        actor_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[AuditEvent]:
        """Events in the window, ordered by sequence."""
        ...

    async def tail(self) -> Optional[AuditEvent]:
        """The event with the highest sequence, or None."""
        ...


class AuditLogger:
    """Asynchronous audit writer with retry and fallback.

    Usage::

        audit = AuditLogger(store, fallback_path="/var/log/phi-audit.jsonl")
        await audit.start()
        audit.record(AuditEvent(action=AuditAction.PHI_READ, ...))
        await audit.close()
    """

    def __init__(
        self,
        store: AuditStore,
        *,
        fallback_path: Union[str, PurePath, None] = None,
        max_attempts: int = 5,
        backoff_min: float = 0.5,
        backoff_max: float = 30.0,
        queue_size: int = 10000,
    ):
        self._store = store
        self._fallback_path = Path(fallback_path) if fallback_path else None
        self._max_attempts = max_attempts
        self._backoff_min = backoff_min
        self._backoff_max = backoff_max
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._fallback: deque[AuditEvent] = deque()
        self._handlers: list[AlertHandler] = []
        self._alert_tasks: set[asyncio.Task] = set()
        self._worker: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._sequence = 0
        self._last_hash = GENESIS_HASH
        self._degraded = False
        self.stats = {"recorded": 0, "written": 0, "fallback": 0, "retries": 0}

    @classmethod
    def from_config(cls, store: AuditStore, config) -> "AuditLogger":
        return cls(
            store,
            fallback_path=config.audit_fallback_path,
            max_attempts=config.audit_max_attempts,
            backoff_min=config.audit_backoff_min,
            backoff_max=config.audit_backoff_max,
            queue_size=config.audit_queue_size,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def degraded(self) -> bool:
        """True while the primary store is failing."""
        return self._degraded

    @property
    def fallback_events(self) -> list[AuditEvent]:
        return list(self._fallback)

    def add_alert_handler(self, handler: AlertHandler) -> None:
        """Subscribe to write failures; sync or async callables."""
        self._handlers.append(handler)

    def record(self, event: AuditEvent) -> AuditEvent:
        """Stamp and enqueue ``event``; never blocks, never raises on I/O.

        Returns:
            The event as it will be written (with its correlation ID).
        """
        if event.correlation_id is None:
            event = event.with_correlation(get_correlation_id() or new_correlation_id())
        self.stats["recorded"] += 1
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # called from a worker thread
            if self._loop is None:
                raise RuntimeError("AuditLogger.start() has not been called") from None
            self._loop.call_soon_threadsafe(self._enqueue, event)
            return event
        self._ensure_worker()
        self._enqueue(event)
        return event

    async def start(self) -> None:
        """Seed the hash chain from the store and start the worker."""
        try:
            last = await self._store.tail()
        except Exception as err:  # store down: start degraded, chain from genesis
            logger.error("Audit store unavailable at start: %s", err)
            self._degraded = True
            last = None
        if last is not None and last.sequence is not None:
            self._sequence = last.sequence
            self._last_hash = last.hash
        self._ensure_worker()

    async def flush(self) -> None:
        """Wait until every queued event was written or moved to fallback."""
        if self._worker is None:
            return
        await self._queue.join()

    async def close(self) -> None:
        await self.flush()
        if self._alert_tasks:
            await asyncio.gather(*self._alert_tasks, return_exceptions=True)
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    async def replay_fallback(self) -> int:
        """Re-insert buffered events into the primary store.

        Stops at the first failure, leaving the rest buffered.

        Returns:
            Number of events replayed.
        """
        replayed = 0
        while self._fallback:
            event = self._fallback[0]
            try:
                await self._store.insert(event)
            except Exception as err:
                logger.warning(
                    "Audit replay halted with %d event(s) buffered: %s",
                    len(self._fallback), err,
                )
                return replayed
            self._fallback.popleft()
            replayed += 1
        if replayed:
            logger.info("Replayed %d buffered audit event(s)", replayed)
        self._degraded = False
        return replayed

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._loop = asyncio.get_running_loop()
            self._worker = self._loop.create_task(self._run())

    def _enqueue(self, event: AuditEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            # Overflow still keeps the event: chain it and park it
            chained = self._link(event)
            self._to_fallback(chained, AuditWriteFailure("audit queue is full"))

    def _link(self, event: AuditEvent) -> AuditEvent:
        self._sequence += 1
        chained = event.chained(self._sequence, self._last_hash)
        self._last_hash = chained.hash
        return chained

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._write(self._link(event))
            except asyncio.CancelledError:
                raise
            except Exception as err:
                logger.exception("Unexpected audit worker error: %s", err)
            finally:
                self._queue.task_done()

    async def _write(self, event: AuditEvent) -> None:
        attempts = 1 if self._degraded else self._max_attempts
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=wait_exponential(
                    multiplier=self._backoff_min,
                    min=self._backoff_min,
                    max=self._backoff_max,
                ),
                retry=retry_if_exception_type(Exception),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        self.stats["retries"] += 1
                    await self._store.insert(event)
        except Exception as err:
            self._to_fallback(
                event,
                AuditWriteFailure(f"audit store write failed: {type(err).__name__}"),
            )
            return
        self.stats["written"] += 1
        if self._degraded:
            logger.info("Audit store recovered")
            await self.replay_fallback()

    # ------------------------------------------------------------------
    # Fallback
    # ------------------------------------------------------------------

    def _to_fallback(self, event: AuditEvent, failure: AuditWriteFailure) -> None:
        self._fallback.append(event)
        self.stats["fallback"] += 1
        if not self._degraded:
            logger.error("Audit trail degraded: %s", failure)
        self._degraded = True
        if self._fallback_path is not None:
            try:
                with self._fallback_path.open("ab") as fp:
                    fp.write(orjson.dumps(event.to_dict()) + b"\n")
            except OSError as err:
                logger.error("Cannot write audit fallback file: %s", err)
        self._alert(failure, event)

    def _alert(self, failure: AuditWriteFailure, event: AuditEvent) -> None:
        for handler in self._handlers:
            try:
                result = handler(failure, event)
                if asyncio.iscoroutine(result):
                    task = asyncio.get_running_loop().create_task(result)
                    self._alert_tasks.add(task)
                    task.add_done_callback(self._alert_done)
            except Exception as err:
                logger.error("Audit alert handler %r failed: %s", handler, err)

    def _alert_done(self, task: asyncio.Task) -> None:
        self._alert_tasks.discard(task)
        if task.cancelled():
            return
        err = task.exception()
        if err is not None:
            logger.error("Audit alert handler failed: %s", err)


def load_fallback_file(path: Union[str, PurePath]) -> list[AuditEvent]:
    """Read events written to a fallback JSON-lines file."""
    events = []
    with Path(path).open("rb") as fp:
        for line in fp:
            line = line.strip()
            if line:
                events.append(AuditEvent.from_dict(orjson.loads(line)))
    return events
