"""
Debounced autosave.

``AutosaveQueue`` is the flush policy on its own: mutations push snapshots,
later pushes replace earlier ones while the quiet period restarts, and at
most one write is handed out at a time. ``AutosaveScheduler`` drives the
queue from a single worker thread, so writes for one order never overlap.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace

from app.logging_config import get_logger
from app.services.order_draft import OrderDraft

logger = get_logger('services.autosave')

Writer = Callable[[OrderDraft], None]
Clock = Callable[[], float]


@dataclass(frozen=True)
class PendingWrite:
    snapshot: OrderDraft
    sequence: int
    due_at: float
    mutation_count: int = 1


@dataclass(frozen=True)
class WriteResult:
    sequence: int
    success: bool
    error: str | None = None


class AutosaveQueue:
    def __init__(self, *, quiet_period: float, retry_delay: float) -> None:
        if quiet_period < 0 or retry_delay < 0:
            raise ValueError('Autosave delays cannot be negative')
        self.quiet_period = quiet_period
        self.retry_delay = retry_delay
        self.pending: PendingWrite | None = None
        self.in_flight: PendingWrite | None = None
        self.last_result: WriteResult | None = None
        self._sequence = 0

    def push(self, snapshot: OrderDraft, now: float, *, immediate: bool = False) -> int:
        self._sequence += 1
        count = self.pending.mutation_count + 1 if self.pending else 1
        due_at = now if immediate else now + self.quiet_period
        self.pending = PendingWrite(snapshot=snapshot, sequence=self._sequence, due_at=due_at, mutation_count=count)
        return self._sequence

    @property
    def due_at(self) -> float | None:
        if self.in_flight is not None or self.pending is None:
            return None
        return self.pending.due_at

    def take_due(self, now: float) -> PendingWrite | None:
        if self.in_flight is not None or self.pending is None:
            return None
        if now < self.pending.due_at:
            return None
        self.in_flight, self.pending = self.pending, None
        return self.in_flight

    def complete(self, write: PendingWrite, *, success: bool, now: float, error: str | None = None) -> WriteResult:
        if self.in_flight is None or self.in_flight.sequence != write.sequence:
            raise ValueError('Write is not in flight')
        self.in_flight = None
        result = WriteResult(sequence=write.sequence, success=success, error=error)
        self.last_result = result
        if not success and self.pending is None:
            # Nothing newer queued: retry the same snapshot on the next cycle.
            self.pending = replace(write, due_at=now + self.retry_delay)
        return result

    def discard(self) -> None:
        self.pending = None

    @property
    def busy(self) -> bool:
        return self.pending is not None or self.in_flight is not None

    @property
    def sync_failed(self) -> bool:
        return self.last_result is not None and not self.last_result.success


class AutosaveScheduler:
    def __init__(
        self,
        order_id: str,
        writer: Writer,
        *,
        quiet_period: float,
        retry_delay: float,
        clock: Clock = time.monotonic,
    ) -> None:
        self.order_id = order_id
        self._writer = writer
        self._clock = clock
        self._queue = AutosaveQueue(quiet_period=quiet_period, retry_delay=retry_delay)
        self._cond = threading.Condition()
        self._stopped = False
        self._last_completed_sequence = 0
        self.write_count = 0
        self._thread = threading.Thread(target=self._run, name=f'autosave-{order_id}', daemon=True)
        self._thread.start()

    def notify(self, snapshot: OrderDraft) -> None:
        with self._cond:
            if self._stopped:
                return
            self._queue.push(snapshot, self._clock())
            self._cond.notify_all()

    def flush(self, snapshot: OrderDraft, *, timeout: float | None = None) -> bool:
        """Write ``snapshot`` now, behind any write already in flight.

        Returns True once a write at least as new as ``snapshot`` succeeded.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            if self._stopped:
                raise RuntimeError('Autosave scheduler is stopped')
            sequence = self._queue.push(snapshot, self._clock(), immediate=True)
            self._cond.notify_all()
            while self._last_completed_sequence < sequence:
                remaining = None if deadline is None else deadline - self._clock()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)
            result = self._queue.last_result
            return result is not None and result.success and result.sequence >= sequence

    def wait_idle(self, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while self._queue.busy and not self._queue.sync_failed:
                remaining = None if deadline is None else deadline - self._clock()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return not self._queue.busy

    @property
    def has_unacknowledged_writes(self) -> bool:
        with self._cond:
            return self._queue.busy

    @property
    def sync_failed(self) -> bool:
        with self._cond:
            return self._queue.sync_failed

    @property
    def last_error(self) -> str | None:
        with self._cond:
            result = self._queue.last_result
            return result.error if result is not None and not result.success else None

    def stop(self) -> None:
        """Stop the worker; queued writes that have not started are dropped."""
        with self._cond:
            self._stopped = True
            self._queue.discard()
            self._cond.notify_all()
        if threading.current_thread() is not self._thread:
            self._thread.join()

    def _run(self) -> None:
        self._cond.acquire()
        try:
            while not self._stopped:
                now = self._clock()
                write = self._queue.take_due(now)
                if write is None:
                    due_at = self._queue.due_at
                    self._cond.wait(None if due_at is None else max(due_at - now, 0))
                    continue
                self._cond.release()
                try:
                    error = self._write(write)
                finally:
                    self._cond.acquire()
                self._queue.complete(write, success=error is None, now=self._clock(), error=error)
                self._last_completed_sequence = max(self._last_completed_sequence, write.sequence)
                self._cond.notify_all()
        finally:
            self._cond.release()

    def _write(self, write: PendingWrite) -> str | None:
        extra = {'order_id': self.order_id, 'sequence': write.sequence, 'coalesced': write.mutation_count}
        logger.debug('autosave write started', extra=extra)
        try:
            self._writer(write.snapshot)
        except Exception as exc:
            # The buffer stays authoritative; the queue re-arms the snapshot.
            logger.warning('autosave write failed', extra=extra, exc_info=True)
            return str(exc) or type(exc).__name__
        self.write_count += 1
        logger.info('autosave write succeeded', extra=extra)
        return None
