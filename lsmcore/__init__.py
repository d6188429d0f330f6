"""Parts of an LSM-tree key-value store: versioned keys, options, manifest log, memtables, compaction bookkeeping, level handling and a timestamp oracle."""

__version__ = "0.1.0"