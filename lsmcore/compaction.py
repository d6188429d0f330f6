"""Key ranges and the bookkeeping of compactions in progress."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol, Sequence

from .keyformat import MAX_TS, compare_keys, key_with_ts, user_key


class CompactionError(Exception):
    """A compaction cannot be scheduled or its bookkeeping is inconsistent."""


class _Kind(enum.Enum):
    RANGE = "range"
    INF = "inf"
    EMPTY = "empty"


@dataclass(frozen=True)
class KeyRange:
    """A closed range of internal keys, the infinite range, or the empty one."""

    kind: _Kind = _Kind.EMPTY
    left: bytes = b""
    right: bytes = b""

    @classmethod
    def range(cls, left: bytes, right: bytes) -> KeyRange:
        left, right = bytes(left), bytes(right)
        if compare_keys(left, right) > 0:
            raise ValueError("left end of a key range must not exceed its right end")
        return cls(_Kind.RANGE, left, right)

    @classmethod
    def inf(cls) -> KeyRange:
        return cls(_Kind.INF)

    @classmethod
    def empty(cls) -> KeyRange:
        return cls(_Kind.EMPTY)

    def extend(self, other: KeyRange) -> KeyRange:
        """The smallest range that covers both ranges."""
        if other.is_empty():
            return self
        if self.is_empty():
            return other
        if self.is_inf() or other.is_inf():
            return KeyRange.inf()
        left = other.left if compare_keys(other.left, self.left) < 0 else self.left
        right = other.right if compare_keys(other.right, self.right) > 0 else self.right
        return KeyRange(_Kind.RANGE, left, right)

    def overlaps_with(self, other: KeyRange) -> bool:
        # An empty range is overlapped by everything; it overlaps nothing else.
        if self.is_empty():
            return True
        if other.is_empty():
            return False
        if self.is_inf() or other.is_inf():
            return True
        if compare_keys(other.right, self.left) < 0:
            return False
        if compare_keys(self.right, other.left) < 0:
            return False
        return True

    def is_inf(self) -> bool:
        return self.kind is _Kind.INF

    def is_empty(self) -> bool:
        return self.kind is _Kind.EMPTY


class TableLike(Protocol):
    id: int
    smallest: bytes
    biggest: bytes


@dataclass
class LevelCompactStatus:
    ranges: list[KeyRange] = field(default_factory=list)
    del_size: int = 0

    def remove(self, dst: KeyRange) -> bool:
        """Remove every copy of ``dst``; True if any was present."""
        before = len(self.ranges)
        self.ranges = [r for r in self.ranges if r != dst]
        return before != len(self.ranges)

    def overlaps_with(self, dst: KeyRange) -> bool:
        return any(r.overlaps_with(dst) for r in self.ranges)


@dataclass
class Targets:
    base_level: int = 0
    target_size: list[int] = field(default_factory=list)
    file_size: list[int] = field(default_factory=list)


@dataclass
class CompactionPriority:
    level: int = 0
    score: float = 0.0
    adjusted: float = 0.0
    drop_prefixes: list[bytes] = field(default_factory=list)
    targets: Targets = field(default_factory=Targets)


@dataclass
class CompactDef:
    """A planned compaction from one level into the next."""

    compactor_id: int
    this_level: Any
    this_level_id: int
    next_level: Any
    next_level_id: int
    prios: CompactionPriority
    targets: Targets
    this_range: KeyRange = field(default_factory=KeyRange.empty)
    next_range: KeyRange = field(default_factory=KeyRange.empty)
    splits: list[KeyRange] = field(default_factory=list)
    top: list[Any] = field(default_factory=list)
    bot: list[Any] = field(default_factory=list)
    this_size: int = 0
    drop_prefixes: list[bytes] = field(default_factory=list)

    def all_tables(self) -> list[Any]:
        return [*self.top, *self.bot]


@dataclass
class CompactStatus:
    """Key ranges and tables taken by running compactions, per level."""

    levels: list[LevelCompactStatus] = field(default_factory=list)
    tables: set[int] = field(default_factory=set)

    def _check_level(self, level: int) -> None:
        if level >= len(self.levels) - 1:
            raise CompactionError("compaction on invalid level")

    def delete(self, compact_def: CompactDef) -> None:
        """Release what ``compact_def`` registered with ``compare_and_add``."""
        self._check_level(compact_def.this_level_id)
        this_level = self.levels[compact_def.this_level_id]
        this_level.del_size -= compact_def.this_size
        found = this_level.remove(compact_def.this_range)

        if not compact_def.next_range.is_empty():
            next_level = self.levels[compact_def.next_level_id]
            found = next_level.remove(compact_def.next_range) and found

        if not found:
            raise CompactionError(
                f"try looking for {compact_def.this_range!r} in this level and "
                f"{compact_def.next_range!r} in next level, but key range not found"
            )

        for table in compact_def.all_tables():
            if table.id not in self.tables:
                raise CompactionError(f"table {table.id} is not being compacted")
            self.tables.remove(table.id)

    def compare_and_add(self, compact_def: CompactDef) -> None:
        """Register ``compact_def`` unless it overlaps a running compaction."""
        this_id, next_id = compact_def.this_level_id, compact_def.next_level_id
        self._check_level(this_id)
        this_level, next_level = self.levels[this_id], self.levels[next_id]
        if this_level.overlaps_with(compact_def.this_range):
            raise CompactionError(
                f"{compact_def.this_range!r} overlap with this level {this_id} "
                f"{this_level.ranges!r}"
            )
        if next_level.overlaps_with(compact_def.next_range):
            raise CompactionError(
                f"{compact_def.next_range!r} overlap with next level {next_id} "
                f"{next_level.ranges!r}"
            )

        ids = [table.id for table in compact_def.all_tables()]
        taken = self.tables.intersection(ids)
        if taken or len(set(ids)) != len(ids):
            raise CompactionError(f"tables already being compacted: {sorted(taken)}")

        this_level.ranges.append(compact_def.this_range)
        next_level.ranges.append(compact_def.next_range)
        this_level.del_size += compact_def.this_size
        self.tables.update(ids)

    def overlaps_with(self, level: int, key_range: KeyRange) -> bool:
        return self.levels[level].overlaps_with(key_range)


def get_key_range(tables: Sequence[TableLike] | Iterable[TableLike]) -> KeyRange:
    """The key range covering every version of every key in ``tables``."""
    tables = list(tables)
    if not tables:
        return KeyRange.empty()
    smallest = tables[0].smallest
    biggest = tables[0].biggest
    for table in tables[1:]:
        if compare_keys(table.smallest, smallest) < 0:
            smallest = table.smallest
        if compare_keys(table.biggest, biggest) > 0:
            biggest = table.biggest
    return KeyRange.range(
        key_with_ts(user_key(smallest), MAX_TS),
        key_with_ts(user_key(biggest), 0),
    )


def get_key_range_single(table: TableLike) -> KeyRange:
    return get_key_range([table])