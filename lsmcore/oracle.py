"""Timestamps for transactions and detection of conflicts between them."""

from __future__ import annotations

import heapq
import threading
from dataclasses import dataclass, field

from .options import DatabaseOptions


@dataclass
class TransactionState:
    """What the oracle reads from and writes to a transaction."""

    read_ts: int = 0
    commit_ts: int = 0
    reads: list[int] = field(default_factory=list)
    conflict_keys: set[int] = field(default_factory=set)
    done_read: bool = False


class _WaterMark:
    """Tracks the highest index below which every begun index is done."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._cond = threading.Condition()
        self._pending: dict[int, int] = {}
        self._heap: list[int] = []
        self._done_until = 0
        self._closed = False

    def _mark(self, index: int, delta: int) -> None:
        with self._cond:
            if index not in self._pending:
                heapq.heappush(self._heap, index)
                self._pending[index] = 0
            self._pending[index] += delta
            until = self._done_until
            while self._heap:
                lowest = self._heap[0]
                if self._pending[lowest] > 0:
                    break
                heapq.heappop(self._heap)
                del self._pending[lowest]
                until = max(until, lowest)
            if until != self._done_until:
                self._done_until = until
                self._cond.notify_all()

    def begin(self, index: int) -> None:
        self._mark(index, 1)

    def done(self, index: int) -> None:
        self._mark(index, -1)

    def done_until(self) -> int:
        with self._cond:
            return self._done_until

    def wait_for_mark(self, index: int) -> None:
        with self._cond:
            self._cond.wait_for(lambda: self._closed or self._done_until >= index)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


@dataclass
class _CommittedTxn:
    ts: int
    conflict_keys: set[int]


class Oracle:
    """Hands out read and commit timestamps.

    When conflict detection is enabled, a commit fails if a key the
    transaction read was written by a transaction committed after it began.
    """

    def __init__(self, opts: DatabaseOptions) -> None:
        self.is_managed = opts.managed_txns
        self.detect_conflicts = opts.detect_conflicts
        self._lock = threading.Lock()
        self._next_txn_ts = 0
        self._discard_ts = 0
        self._last_cleanup_ts = 0
        self._committed: list[_CommittedTxn] = []
        # Keeps commit timestamps in the same order as writes.
        self.write_ch_lock = threading.Lock()
        self._txn_mark = _WaterMark("txn_ts")
        self._read_mark = _WaterMark("pending_reads")

    def _cleanup_committed(self) -> None:
        max_read_ts = self._discard_ts if self.is_managed else self._read_mark.done_until()
        if max_read_ts < self._last_cleanup_ts:
            raise RuntimeError(
                f"cleanup timestamp {max_read_ts} is below the last one "
                f"{self._last_cleanup_ts}"
            )
        if max_read_ts == self._last_cleanup_ts:
            return
        self._last_cleanup_ts = max_read_ts
        self._committed = [txn for txn in self._committed if txn.ts > max_read_ts]

    def _has_conflict(self, txn: TransactionState) -> bool:
        if not txn.reads:
            return False
        # Transactions committed before this one started cannot conflict.
        return any(
            any(read in committed.conflict_keys for read in txn.reads)
            for committed in self._committed
            if committed.ts > txn.read_ts
        )

    def read_ts(self) -> int:
        """A read timestamp that sees every transaction committed so far."""
        if self.is_managed:
            raise RuntimeError("read_ts should not be used in managed mode")
        with self._lock:
            if self._next_txn_ts == 0:
                raise RuntimeError("oracle timestamps are not initialised")
            read_ts = self._next_txn_ts - 1
            self._read_mark.begin(read_ts)
        self._txn_mark.wait_for_mark(read_ts)
        return read_ts

    def next_ts(self) -> int:
        with self._lock:
            return self._next_txn_ts

    def init_next_ts(self, max_ts: int) -> None:
        """Start handing out timestamps after ``max_ts``."""
        with self._lock:
            self._next_txn_ts = max_ts
        self._txn_mark.done(max_ts)
        self._read_mark.done(max_ts)
        self.increment_next_ts()

    def increment_next_ts(self) -> None:
        with self._lock:
            self._next_txn_ts += 1

    def set_discard_ts(self, discard_ts: int) -> None:
        """Versions at or below ``discard_ts`` may be dropped by compaction."""
        with self._lock:
            self._discard_ts = discard_ts
            self._cleanup_committed()

    def discard_at_or_below(self) -> int:
        if self.is_managed:
            with self._lock:
                return self._discard_ts
        return self._read_mark.done_until()

    def new_commit_ts(self, txn: TransactionState) -> tuple[int, bool]:
        """Return ``(commit_ts, conflict)``; the timestamp is 0 on conflict."""
        with self._lock:
            if self._has_conflict(txn):
                return 0, True
            if self.is_managed:
                ts = txn.commit_ts
            else:
                self.done_read(txn)
                self._cleanup_committed()
                ts = self._next_txn_ts
                self._next_txn_ts += 1
                self._txn_mark.begin(ts)
            if ts < self._last_cleanup_ts:
                raise RuntimeError(
                    f"commit timestamp {ts} is below cleanup timestamp "
                    f"{self._last_cleanup_ts}"
                )
            if self.detect_conflicts:
                self._committed.append(_CommittedTxn(ts, set(txn.conflict_keys)))
            return ts, False

    def done_read(self, txn: TransactionState) -> None:
        if not txn.done_read:
            txn.done_read = True
            self._read_mark.done(txn.read_ts)

    def done_commit(self, commit_ts: int) -> None:
        if not self.is_managed:
            self._txn_mark.done(commit_ts)

    def committed_count(self) -> int:
        """Number of committed transactions kept for conflict detection."""
        with self._lock:
            return len(self._committed)

    def stop(self) -> None:
        """Release every thread waiting for a timestamp."""
        self._txn_mark.close()
        self._read_mark.close()

    def __enter__(self) -> Oracle:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()