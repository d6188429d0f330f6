"""Database and table options."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path


class ChecksumVerificationMode(enum.Enum):
    """When checksums of sorted tables are verified."""

    NO_VERIFICATION = "no_verification"
    ON_TABLE_READ = "on_table_read"
    ON_BLOCK_READ = "on_block_read"
    ON_TABLE_AND_BLOCK_READ = "on_table_and_block_read"

    @property
    def verifies_on_table_open(self) -> bool:
        return self in (
            ChecksumVerificationMode.ON_TABLE_READ,
            ChecksumVerificationMode.ON_TABLE_AND_BLOCK_READ,
        )

    @property
    def verifies_on_block_read(self) -> bool:
        return self in (
            ChecksumVerificationMode.ON_BLOCK_READ,
            ChecksumVerificationMode.ON_TABLE_AND_BLOCK_READ,
        )


@dataclass
class TableOptions:
    """Options for building and reading one sorted table."""

    table_size: int = 0
    table_capacity: int = 0
    block_size: int = 0
    bloom_false_positive: float = 0.0
    checksum_mode: ChecksumVerificationMode = ChecksumVerificationMode.NO_VERIFICATION


@dataclass
class DatabaseOptions:
    """Options for a whole database."""

    dir: Path = field(default_factory=Path)
    value_dir: Path = field(default_factory=Path)
    in_memory: bool = False
    read_only: bool = False
    managed_txns: bool = False
    detect_conflicts: bool = True

    base_table_size: int = 2 << 20
    base_level_size: int = 10 << 20
    block_size: int = 4 * 1024
    bloom_false_positive: float = 0.01
    checksum_mode: ChecksumVerificationMode = ChecksumVerificationMode.NO_VERIFICATION

    num_level_zero_tables_stall: int = 15
    num_versions_to_keep: int = 1
    num_compactors: int = 4

    value_threshold: int = 1 << 10
    value_log_file_size: int = (1 << 30) - 1
    max_batch_count: int = 10_000
    max_batch_size: int = 15 << 20


def build_table_options(opts: DatabaseOptions) -> TableOptions:
    """Derive the table options used for new tables from database options."""
    return TableOptions(
        table_size=opts.base_table_size,
        table_capacity=int(opts.base_level_size * 0.95),
        block_size=opts.block_size,
        bloom_false_positive=opts.bloom_false_positive,
        checksum_mode=opts.checksum_mode,
    )