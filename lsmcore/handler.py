"""The tables of one level of the LSM tree."""

from __future__ import annotations

from bisect import bisect_left
from functools import cmp_to_key
from typing import Callable, Iterable, Protocol, Sequence

from .compaction import KeyRange
from .keyformat import compare_keys
from .options import DatabaseOptions

_by_key = cmp_to_key(compare_keys)


class LevelTable(Protocol):
    """What a level needs to know about a table."""

    id: int
    smallest: bytes
    biggest: bytes
    size: int

    def mark_save(self) -> None: ...


def _search(n: int, predicate: Callable[[int], bool]) -> int:
    """The smallest index in ``range(n)`` for which ``predicate`` holds, or ``n``."""
    return bisect_left(range(n), True, key=predicate)


class LevelHandler:
    """Tables of one level.

    At level 0 tables may overlap and are kept in creation order, newest last.
    At deeper levels tables do not overlap and are kept sorted by key.
    """

    def __init__(self, opts: DatabaseOptions, level: int) -> None:
        self.opts = opts
        self.level = level
        self.tables: list[LevelTable] = []
        self.total_size = 0

    def init_tables(self, tables: Iterable[LevelTable]) -> None:
        """Replace the tables of this level; used while loading."""
        self.tables = list(tables)
        self.total_size = sum(table.size for table in self.tables)
        if self.level == 0:
            self.tables.sort(key=lambda table: table.id)
        else:
            self.tables.sort(key=lambda table: _by_key(table.smallest))

    def _without(self, to_del: Sequence[LevelTable]) -> list[LevelTable]:
        doomed = {table.id for table in to_del}
        kept = []
        for table in self.tables:
            if table.id in doomed:
                self.total_size = max(0, self.total_size - table.size)
            else:
                kept.append(table)
        return kept

    def delete_tables(self, to_del: Sequence[LevelTable]) -> None:
        self.tables = self._without(to_del)

    def replace_tables(
        self, to_del: Sequence[LevelTable], to_add: Sequence[LevelTable]
    ) -> None:
        tables = self._without(to_del)
        for table in to_add:
            self.total_size += table.size
            tables.append(table)
        tables.sort(key=lambda table: _by_key(table.smallest))
        self.tables = tables

    def try_add_l0_table(self, table: LevelTable) -> bool:
        """Add a table to level 0; False if level 0 is full and writes must stall."""
        if self.level != 0:
            raise ValueError(f"level {self.level} is not level 0")
        if len(self.tables) >= self.opts.num_level_zero_tables_stall:
            return False
        self.total_size += table.size
        self.tables.append(table)
        return True

    def num_tables(self) -> int:
        return len(self.tables)

    def get_table_for_key(self, key: bytes) -> list[LevelTable]:
        """Tables that may hold ``key``; at level 0 every table, newest first."""
        if self.level == 0:
            return self.tables[::-1]
        key = bytes(key)
        idx = _search(
            len(self.tables),
            lambda i: compare_keys(self.tables[i].biggest, key) >= 0,
        )
        if idx >= len(self.tables):
            return []
        return [self.tables[idx]]

    def overlapping_tables(self, key_range: KeyRange) -> tuple[int, int]:
        """The half-open index interval of tables intersecting ``key_range``."""
        if key_range.is_empty():
            return 0, 0
        if key_range.is_inf():
            raise ValueError("an infinite key range has no overlapping interval")
        n = len(self.tables)
        left = _search(
            n, lambda i: compare_keys(key_range.left, self.tables[i].biggest) <= 0
        )
        right = _search(
            n, lambda i: compare_keys(key_range.right, self.tables[i].smallest) < 0
        )
        return left, right

    def close(self) -> None:
        """Release the tables, keeping their files."""
        tables, self.tables = self.tables, []
        for table in tables:
            table.mark_save()