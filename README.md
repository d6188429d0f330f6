# lsmcore

Building blocks for a log-structured merge-tree key-value store with
multi-version concurrency control.

## Modules

- `lsmcore.keyformat` — versioned keys. A stored key is the user key followed
  by an 8-byte suffix (`TS_SIZE`) holding the timestamp: `key_with_ts`,
  `get_ts` and `user_key` build and take apart such keys. `compare_keys`
  orders them by user key and, for the same user key, newest version first;
  it returns a negative number, zero or a positive number. `same_key` tells
  whether two keys share a user key. Keys shorter than the suffix raise
  `ValueError`.
- `lsmcore.options` — `DatabaseOptions` and `TableOptions` dataclasses,
  the `ChecksumVerificationMode` enum and `build_table_options`, which derives
  table options from database options (table capacity is 95 % of
  `base_level_size`).
- `lsmcore.manifest` — the `MANIFEST` log recording which table lives on which
  level. `ManifestFile.open_or_create(opts)` replays an existing file (cutting
  off a torn last record) or creates a new one; `add_changes` appends a
  checksummed batch of `new_create_change` / `new_delete_change` records, and
  the file is rewritten atomically once deletions far outnumber live tables.
  `manifest_cloned()` returns a copy of the current `Manifest`.
  `replay_manifest(file)` reads a manifest from an open binary file.
  Corrupt or inconsistent manifests raise `ManifestError` ("bad magic text",
  "bad magic version", "bad checksum", …). With `in_memory=True` nothing is
  written.
- `lsmcore.memtable` — `Value` (a value with its meta bits, user meta, expiry
  and version), `MemTable` (a sorted in-memory table tracking its highest
  version, optionally writing through an object that follows the
  `WriteAheadLog` protocol) and `MemTables` (one mutable table plus a queue of
  immutable ones, with `view()`, `use_new_table()`, `pop_imm()` and
  `max_version()`). Meta flags such as `VALUE_DELETE` and `VALUE_FIN_TXN` are
  module constants; entries marked `VALUE_FIN_TXN` go only to the log.
- `lsmcore.compaction` — `KeyRange` (a closed range, `KeyRange.inf()` or
  `KeyRange.empty()`, with `extend` and `overlaps_with`), `LevelCompactStatus`,
  `CompactStatus` (`compare_and_add`, `delete`, `overlaps_with`), `CompactDef`,
  `Targets`, `CompactionPriority`, and `get_key_range` / `get_key_range_single`
  for the range covering a set of tables. Conflicting or inconsistent
  bookkeeping raises `CompactionError`.
- `lsmcore.handler` — `LevelHandler`, the tables of one level: loading,
  deleting and replacing tables, adding level-0 tables with a stall limit
  (`num_level_zero_tables_stall`), finding the tables that may hold a key and
  the index interval of tables overlapping a `KeyRange`. Tables are any
  objects with `id`, `smallest`, `biggest`, `size` and `mark_save()`.
- `lsmcore.oracle` — `Oracle`, which hands out read and commit timestamps,
  tracks pending reads and commits with watermarks, and (with
  `detect_conflicts`) refuses a commit whose reads were overwritten by a later
  commit. `TransactionState` carries what the oracle needs from a transaction.
  In managed mode (`managed_txns=True`) commit timestamps come from the
  transaction and old commits are forgotten via `set_discard_ts`.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
from lsmcore.keyformat import key_with_ts, get_ts, user_key
from lsmcore.memtable import MemTable, Value

table = MemTable(0)
key = key_with_ts(b"apple", 7)
table.put(key, Value(b"red"))

assert get_ts(key) == 7
assert user_key(key) == b"apple"
assert table.get(key) == Value(b"red")
assert table.max_version() == 7
```

Keeping a manifest of tables on disk:

```python
import tempfile

from lsmcore.manifest import ManifestFile, new_create_change
from lsmcore.options import DatabaseOptions

with tempfile.TemporaryDirectory() as directory:
    opts = DatabaseOptions(dir=directory)
    with ManifestFile.open_or_create(opts) as manifest_file:
        manifest_file.add_changes([new_create_change(1, 0, 0)])
        print(manifest_file.manifest_cloned().tables)
```

Handing out timestamps:

```python
from lsmcore.options import DatabaseOptions
from lsmcore.oracle import Oracle, TransactionState

with Oracle(DatabaseOptions()) as oracle:
    oracle.init_next_ts(0)
    txn = TransactionState(read_ts=oracle.read_ts(), conflict_keys={11, 22})
    commit_ts, conflict = oracle.new_commit_ts(txn)
    oracle.done_commit(commit_ts)
```

## What this package does not do

It is a set of parts, not a database. There is no on-disk sorted table format,
no write-ahead log or value log implementation, no transactions API with
get/set/commit, no iterators, and nothing that runs compactions: the
compaction and level modules only keep the bookkeeping, and the memtable and
level handler work with whatever log and table objects the caller supplies.
There is no command-line program and no server.