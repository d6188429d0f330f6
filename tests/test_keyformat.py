import pytest

from lsmcore.keyformat import (
    MAX_TS,
    compare_keys,
    get_ts,
    key_with_ts,
    same_key,
    user_key,
)


def test_zero_timestamp_suffix_is_all_ones():
    assert key_with_ts(b"foo", 0) == b"foo" + b"\xff" * 8


def test_max_timestamp_suffix_is_all_zeros():
    assert key_with_ts(b"foo", MAX_TS) == b"foo" + b"\x00" * 8


@pytest.mark.parametrize("ts", [0, 1, 249, 999, 1 << 40, MAX_TS])
def test_timestamp_round_trip(ts):
    key = key_with_ts(b"user-key", ts)
    assert get_ts(key) == ts
    assert user_key(key) == b"user-key"


def test_string_keys_are_encoded():
    key = key_with_ts("250", 250)
    assert user_key(key) == b"250"
    assert get_ts(key) == 250


def test_newer_version_sorts_first():
    newer = key_with_ts(b"a", 5)
    older = key_with_ts(b"a", 3)
    assert compare_keys(newer, older) < 0
    assert compare_keys(older, newer) > 0
    assert newer < older


def test_user_key_dominates_ordering():
    assert compare_keys(key_with_ts(b"a", 1), key_with_ts(b"b", 9)) < 0
    assert compare_keys(key_with_ts(b"b", 9), key_with_ts(b"a", 1)) > 0


def test_prefix_user_key_sorts_first():
    assert compare_keys(key_with_ts(b"foo", 1), key_with_ts(b"fooz", 1)) < 0


def test_equal_keys_compare_equal():
    assert compare_keys(key_with_ts(b"k", 7), key_with_ts(b"k", 7)) == 0


def test_same_key_ignores_version():
    assert same_key(key_with_ts(b"k", 1), key_with_ts(b"k", 100))
    assert not same_key(key_with_ts(b"k", 1), key_with_ts(b"j", 1))
    assert not same_key(key_with_ts(b"k", 1), key_with_ts(b"kk", 1))


def test_short_key_rejected():
    with pytest.raises(ValueError):
        get_ts(b"short")
    with pytest.raises(ValueError):
        user_key(b"")


@pytest.mark.parametrize("ts", [-1, MAX_TS + 1])
def test_out_of_range_timestamp_rejected(ts):
    with pytest.raises(ValueError):
        key_with_ts(b"k", ts)