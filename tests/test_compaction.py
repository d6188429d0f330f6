from dataclasses import dataclass

import pytest

from lsmcore.compaction import (
    CompactDef,
    CompactionError,
    CompactionPriority,
    CompactStatus,
    KeyRange,
    LevelCompactStatus,
    Targets,
    get_key_range,
    get_key_range_single,
)
from lsmcore.keyformat import MAX_TS, key_with_ts


@dataclass
class FakeTable:
    id: int
    smallest: bytes
    biggest: bytes


def r(left, right):
    return KeyRange.range(left, right)


def test_keyrange_non_overlap():
    k1 = r(b"000000000000", b"dddd00000000")
    k2 = r(b"eeee00000000", b"ffff00000000")
    expected = r(b"000000000000", b"ffff00000000")
    assert k1.extend(k2) == expected
    assert k2.extend(k1) == expected
    assert not k1.overlaps_with(k2)
    assert not k2.overlaps_with(k1)


def test_keyrange_overlap():
    k1 = r(b"000000000000", b"eeee00000000")
    k2 = r(b"dddd00000000", b"ffff00000000")
    expected = r(b"000000000000", b"ffff00000000")
    assert k1.extend(k2) == expected
    assert k2.extend(k1) == expected
    assert k1.overlaps_with(k2)
    assert k2.overlaps_with(k1)


def test_keyrange_inf():
    k1 = KeyRange.inf()
    k2 = r(b"dddd00000000", b"ffff00000000")
    assert k1.extend(k2) == KeyRange.inf()
    assert k2.extend(k1) == KeyRange.inf()
    assert k1.extend(KeyRange.empty()) == k1
    assert k2.extend(KeyRange.empty()) == k2
    assert not KeyRange.inf().overlaps_with(KeyRange.empty())
    assert KeyRange.empty().overlaps_with(KeyRange.inf())
    assert KeyRange.empty().overlaps_with(KeyRange.empty())


def test_keyrange_rejects_reversed_ends():
    with pytest.raises(ValueError):
        r(b"ffff00000000", b"0000ffffffff")


def test_level_status_remove():
    status = LevelCompactStatus()
    kr = r(b"aaaa00000000", b"bbbb00000000")
    status.ranges.append(kr)
    assert status.overlaps_with(r(b"bbbb00000000", b"cccc00000000"))
    assert status.remove(kr) is True
    assert status.remove(kr) is False
    assert status.ranges == []


def test_get_key_range():
    t1 = FakeTable(1, key_with_ts(b"c", 5), key_with_ts(b"f", 2))
    t2 = FakeTable(2, key_with_ts(b"a", 9), key_with_ts(b"d", 1))
    kr = get_key_range([t1, t2])
    assert kr == r(key_with_ts(b"a", MAX_TS), key_with_ts(b"f", 0))
    assert get_key_range([]).is_empty()
    single = get_key_range_single(t1)
    assert single == r(key_with_ts(b"c", MAX_TS), key_with_ts(b"f", 0))


def make_def(this_id, next_id, top, bot, this_range, next_range, size=10):
    targets = Targets()
    return CompactDef(
        compactor_id=0,
        this_level=None,
        this_level_id=this_id,
        next_level=None,
        next_level_id=next_id,
        prios=CompactionPriority(targets=targets),
        targets=targets,
        this_range=this_range,
        next_range=next_range,
        top=top,
        bot=bot,
        this_size=size,
    )


def new_status(levels=4):
    return CompactStatus(levels=[LevelCompactStatus() for _ in range(levels)])


def test_compare_and_add_then_delete():
    status = new_status()
    top = [FakeTable(1, key_with_ts(b"a", 1), key_with_ts(b"c", 1))]
    bot = [FakeTable(2, key_with_ts(b"b", 1), key_with_ts(b"d", 1))]
    cd = make_def(1, 2, top, bot, get_key_range(top), get_key_range(bot), size=42)
    assert cd.all_tables() == top + bot

    status.compare_and_add(cd)
    assert status.tables == {1, 2}
    assert status.levels[1].del_size == 42
    assert status.overlaps_with(1, get_key_range(top))
    assert status.overlaps_with(2, get_key_range(bot))

    clash = make_def(
        1, 2, [FakeTable(3, key_with_ts(b"b", 1), key_with_ts(b"b", 1))], [],
        r(key_with_ts(b"b", MAX_TS), key_with_ts(b"b", 0)), KeyRange.empty(),
    )
    with pytest.raises(CompactionError, match="overlap with this level 1"):
        status.compare_and_add(clash)

    status.delete(cd)
    assert status.tables == set()
    assert status.levels[1].del_size == 0
    assert status.levels[1].ranges == []
    assert not status.overlaps_with(1, get_key_range(top))


def test_next_level_overlap_is_rejected():
    status = new_status()
    status.levels[2].ranges.append(r(key_with_ts(b"m", 9), key_with_ts(b"p", 1)))
    cd = make_def(
        1, 2, [FakeTable(5, key_with_ts(b"a", 1), key_with_ts(b"b", 1))], [],
        r(key_with_ts(b"a", 1), key_with_ts(b"b", 1)),
        r(key_with_ts(b"n", 3), key_with_ts(b"z", 1)),
    )
    with pytest.raises(CompactionError, match="overlap with next level 2"):
        status.compare_and_add(cd)
    assert status.tables == set()


def test_invalid_level():
    status = new_status(3)
    cd = make_def(2, 3, [], [], KeyRange.empty(), KeyRange.empty())
    with pytest.raises(CompactionError, match="compaction on invalid level"):
        status.compare_and_add(cd)
    with pytest.raises(CompactionError, match="compaction on invalid level"):
        status.delete(cd)


def test_delete_missing_range():
    status = new_status()
    cd = make_def(
        0, 1, [], [], r(key_with_ts(b"a", 1), key_with_ts(b"b", 1)), KeyRange.empty(), 0
    )
    with pytest.raises(CompactionError, match="key range not found"):
        status.delete(cd)