from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable


class ExponentialBackoff:
    """Per-key failure rate limiter: ``base * 2**failures``, capped at ``maximum``."""

    def __init__(self, base_seconds: float = 0.005, max_seconds: float = 300.0) -> None:
        if base_seconds <= 0:
            raise ValueError("base_seconds must be > 0")
        if max_seconds < base_seconds:
            raise ValueError("max_seconds must be >= base_seconds")
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, key: Hashable) -> float:
        """Record one more failure for *key* and return the delay before its retry."""
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        # Clamp the exponent so huge failure counts do not overflow.
        return min(self.max_seconds, self.base_seconds * (2 ** min(failures, 62)))

    def num_requeues(self, key: Hashable) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: Hashable) -> None:
        with self._lock:
            self._failures.pop(key, None)


class RateLimitingQueue:
    """Deduplicating work queue with delayed and rate-limited adds.

    A key is handed to at most one worker at a time.  Adding a key that is
    already queued is a no-op; adding a key that is being processed marks
    it dirty so it is queued again once the worker calls :meth:`done`.

    Delayed adds sit in a heap and are promoted by :meth:`get` when their
    deadline passes, so the queue needs no timer thread.  A key waits at
    most once: a later delayed add for a key that is already waiting keeps
    the earlier deadline.
    """

    def __init__(
        self,
        rate_limiter: ExponentialBackoff | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_depth_change: Callable[[int], None] | None = None,
    ) -> None:
        self.rate_limiter = rate_limiter or ExponentialBackoff()
        self._clock = clock
        self._on_depth_change = on_depth_change
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._due_at: dict[Hashable, float] = {}
        self._sequence = itertools.count()
        self._shutting_down = False

    def _report_depth(self) -> None:
        if self._on_depth_change is not None:
            self._on_depth_change(len(self._queue))

    def add(self, key: Hashable) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._report_depth()
        self._cond.notify()

    def add_after(self, key: Hashable, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            due_at = self._clock() + delay_seconds
            # One waiting entry per key, at the earliest deadline.
            current = self._due_at.get(key)
            if current is not None and current <= due_at:
                return
            self._due_at[key] = due_at
            heapq.heappush(self._waiting, (due_at, next(self._sequence), key))
            self._cond.notify()

    def add_rate_limited(self, key: Hashable) -> None:
        self.add_after(key, self.rate_limiter.when(key))

    def forget(self, key: Hashable) -> None:
        self.rate_limiter.forget(key)

    def num_requeues(self, key: Hashable) -> int:
        return self.rate_limiter.num_requeues(key)

    def _promote_due_locked(self) -> float | None:
        """Move due delayed keys into the queue; return seconds until the next one."""
        now = self._clock()
        while self._waiting:
            due_at, _, key = self._waiting[0]
            if self._due_at.get(key) != due_at:
                # Superseded by an earlier deadline for the same key.
                heapq.heappop(self._waiting)
                continue
            if due_at > now:
                break
            heapq.heappop(self._waiting)
            del self._due_at[key]
            self._add_locked(key)
        if self._waiting:
            return max(0.0, self._waiting[0][0] - now)
        return None

    def get(self, timeout: float | None = None) -> tuple[Hashable | None, bool]:
        """Block until a key is available.

        Returns ``(key, shutdown)``.  ``key`` is ``None`` when *timeout*
        elapsed or the queue is shutting down with nothing left to hand out.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    self._report_depth()
                    return key, False
                if self._shutting_down:
                    return None, True

                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None, False
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._report_depth()
                self._cond.notify()

    def shutdown(self) -> None:
        """Stop accepting work and wake every blocked :meth:`get`.

        Keys already queued are dropped; the next watch event or resync
        after a restart re-creates them.
        """
        with self._cond:
            self._shutting_down = True
            self._queue.clear()
            self._waiting.clear()
            self._due_at.clear()
            self._dirty.clear()
            self._report_depth()
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def is_processing(self, key: Hashable) -> bool:
        with self._cond:
            return key in self._processing

    def pending_delayed(self) -> int:
        with self._cond:
            return len(self._due_at)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)
