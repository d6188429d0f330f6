"""In-memory tables holding recent writes before they are flushed to disk."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from typing import Iterable, Iterator, Protocol

from sortedcontainers import SortedDict

from .keyformat import TS_SIZE, get_ts, user_key
from .options import DatabaseOptions

VALUE_DELETE = 1 << 0
VALUE_POINTER = 1 << 1
VALUE_DISCARD_EARLIER_VERSIONS = 1 << 2
VALUE_MERGE_ENTRY = 1 << 3
VALUE_TXN = 1 << 6
VALUE_FIN_TXN = 1 << 7


@dataclass(frozen=True)
class Value:
    """A stored value together with its metadata."""

    value: bytes
    meta: int = 0
    user_meta: int = 0
    expires_at: int = 0
    version: int = 0


class WriteAheadLog(Protocol):
    """What a memtable needs from its write-ahead log."""

    def write_entry(self, key: bytes, value: Value) -> None: ...

    def __iter__(self) -> Iterator[tuple[bytes, Value]]: ...

    def sync(self) -> None: ...

    def should_flush(self) -> bool: ...

    def close_and_save(self) -> None: ...


def _ordering(key: bytes) -> tuple[bytes, bytes]:
    return user_key(key), key[-TS_SIZE:]


def new_skiplist() -> SortedDict:
    """An ordered map of internal keys: by user key, newest version first."""
    return SortedDict(_ordering)


class MemTable:
    """A sorted in-memory table, optionally backed by a write-ahead log."""

    def __init__(
        self,
        table_id: int,
        wal: WriteAheadLog | None = None,
        opts: DatabaseOptions | None = None,
    ) -> None:
        self.skl = new_skiplist()
        self.opts = opts if opts is not None else DatabaseOptions()
        self._id = table_id
        self._wal = wal
        self._max_version = 0
        self._save_after_close = False
        self._lock = threading.Lock()

    @property
    def id(self) -> int:
        return self._id

    def _insert(self, key: bytes, value: Value) -> None:
        # An existing entry for the same internal key is kept.
        self.skl.setdefault(bytes(key), value)

    def update_skip_list(self) -> None:
        """Replay the write-ahead log into the table."""
        with self._lock:
            max_version = self._max_version
            if self._wal is not None:
                for key, entry in self._wal:
                    max_version = max(max_version, get_ts(key))
                    self._insert(
                        key,
                        Value(
                            value=bytes(entry.value),
                            meta=entry.meta,
                            user_meta=entry.user_meta,
                            expires_at=entry.expires_at,
                            version=0,
                        ),
                    )
            self._max_version = max_version

    def put(self, key: bytes, value: Value) -> None:
        """Write ``value`` under the internal ``key``."""
        key = bytes(key)
        with self._lock:
            if self._wal is not None:
                self._wal.write_entry(key, value)
            # Transaction finish markers live only in the log.
            if value.meta & VALUE_FIN_TXN:
                return
            ts = get_ts(key)
            self._insert(key, value)
            # Versions may arrive out of order in managed mode.
            self._max_version = max(self._max_version, ts)

    def get(self, key: bytes) -> Value | None:
        """Return the value stored under exactly this internal key."""
        return self.skl.get(bytes(key))

    def sync_wal(self) -> None:
        with self._lock:
            if self._wal is not None:
                self._wal.sync()

    def should_flush_wal(self) -> bool:
        with self._lock:
            return self._wal is not None and self._wal.should_flush()

    def mark_save(self) -> None:
        """Keep the write-ahead log on disk when this table is closed."""
        self._save_after_close = True

    def close(self) -> None:
        with self._lock:
            wal, self._wal = self._wal, None
        if wal is not None and self._save_after_close:
            wal.close_and_save()

    def max_version(self) -> int:
        with self._lock:
            return self._max_version

    def __enter__(self) -> MemTable:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class MemTablesView:
    """A snapshot of the skiplists of all current memtables, newest first."""

    def __init__(self, tables: Iterable[SortedDict]) -> None:
        self._tables = list(tables)

    def tables(self) -> list[SortedDict]:
        return list(self._tables)


class MemTables:
    """The mutable memtable and the queue of immutable ones awaiting flush."""

    def __init__(self, mutable: MemTable, immutable: Iterable[MemTable] = ()) -> None:
        self._mutable = mutable
        self._immutable: deque[MemTable] = deque(immutable)

    def view(self) -> MemTablesView:
        return MemTablesView(
            [self._mutable.skl, *(table.skl for table in self._immutable)]
        )

    def mut_table(self) -> MemTable:
        return self._mutable

    def imm_table(self, idx: int) -> MemTable:
        return self._immutable[idx]

    def use_new_table(self, memtable: MemTable) -> None:
        """Make ``memtable`` mutable and queue the old one for flushing."""
        old, self._mutable = self._mutable, memtable
        self._immutable.append(old)

    def nums_of_memtable(self) -> int:
        return len(self._immutable) + 1

    def pop_imm(self) -> None:
        """Drop the oldest immutable memtable."""
        if not self._immutable:
            raise IndexError("no immutable memtable to pop")
        self._immutable.popleft()

    def max_version(self) -> int:
        return max(
            [self._mutable.max_version(), *(t.max_version() for t in self._immutable)]
        )

    def close(self) -> None:
        """Close every memtable, keeping their logs."""
        while self._immutable:
            table = self._immutable.popleft()
            table.mark_save()
            table.close()
        self._mutable.mark_save()
        self._mutable.close()