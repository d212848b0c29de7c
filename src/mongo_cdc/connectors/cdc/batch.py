"""
Micro-batching of change events.

The accumulator only buffers and decides when a flush is due; the caller
owns the flush itself, so exactly one path ever drains the buffer.
"""

from typing import Callable, List
import threading
import time

from .models import Batch, ChangeEvent


class BatchAccumulator:
    """
    Buffer change events until the size or time threshold is met.

    Thread Safety: buffer access is guarded by a lock; drain() hands the
    whole buffer to exactly one caller.
    """

    def __init__(
        self,
        batch_size: int,
        flush_interval: float,
        clock: Callable[[], float] = time.monotonic
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if flush_interval <= 0:
            raise ValueError("flush_interval must be positive")

        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self._clock = clock
        self._buffer: List[ChangeEvent] = []
        self._last_flush = clock()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)

    def add(self, event: ChangeEvent) -> None:
        with self._lock:
            self._buffer.append(event)

    def should_flush(self) -> bool:
        """True when the buffer is full, or non-empty and the interval has elapsed."""
        with self._lock:
            if not self._buffer:
                return False
            if len(self._buffer) >= self.batch_size:
                return True
            return self._clock() - self._last_flush >= self.flush_interval

    def drain(self) -> Batch:
        """Take every buffered event and restart the interval timer."""
        with self._lock:
            batch = Batch(events=self._buffer)
            self._buffer = []
            self._last_flush = self._clock()
        return batch

    def discard(self) -> int:
        """Drop buffered events (they will be replayed from the checkpoint)."""
        with self._lock:
            dropped = len(self._buffer)
            self._buffer = []
            self._last_flush = self._clock()
        return dropped
