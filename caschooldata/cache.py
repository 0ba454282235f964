"""
On-disk parquet cache for processed tables

One file per (dataset, variant, year), named

    {dataset}_{variant}_{year}_v{SCHEMA_VERSION}.parquet

variant is 'tidy' or 'wide' (assessment adds subject and student group, e.g.
'tidy-both-all'); year is 'current' for the yearless directory. Entries
written under another SCHEMA_VERSION, or older than the configured maximum
age, are misses.

Writes go to a temp file beside the target and are moved into place with
os.replace, so a reader sees either the previous entry or the complete new
one. Writers to the same key inside one process are serialized with a
per-key lock.

The table's attrs (data-quality warnings, unmeasured grades) are stored as
JSON in the parquet schema metadata and restored on read, so a cache hit
carries the same warnings as the fetch that built it.

Usage:
    from caschooldata.cache import CacheManager

    cache = CacheManager()
    df = cache.get("enrollment", 2024, "tidy")
    if df is None:
        df = build()
        cache.put("enrollment", 2024, "tidy", df)
"""

import json
import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from caschooldata.codes import CODE_TABLE_VERSION
from caschooldata.common import Settings, get_settings

logger = logging.getLogger(__name__)

# Layout version of the canonical tables; the code-table version is folded in
# so relabeling codes also invalidates cached output
_TABLE_LAYOUT_VERSION = 1
SCHEMA_VERSION = f"{_TABLE_LAYOUT_VERSION}.{CODE_TABLE_VERSION}"

CURRENT_YEAR_KEY = "current"

ATTRS_METADATA_KEY = b"caschooldata.attrs"

_ENTRY_NAME = re.compile(
    r'^(?P<dataset>[a-z]+)_(?P<variant>[a-z0-9\-]+)_(?P<year>\d{4}|current)'
    r'_v(?P<version>[\d.]+)\.parquet$'
)

_KEY_LOCKS: Dict[str, threading.Lock] = {}
_KEY_LOCKS_GUARD = threading.Lock()


def _year_key(year: Optional[int]) -> str:
    return CURRENT_YEAR_KEY if year is None else str(int(year))


def cache_key(dataset: str, year: Optional[int], variant: str) -> str:
    """
    Cache file stem for one entry

    Examples:
        >>> cache_key('enrollment', 2024, 'tidy')
        'enrollment_tidy_2024'
        >>> cache_key('directory', None, 'wide')
        'directory_wide_current'
    """
    return f"{dataset}_{variant.lower()}_{_year_key(year)}"


def key_lock(key: str) -> threading.Lock:
    """Lock shared by every writer of one cache key in this process."""
    with _KEY_LOCKS_GUARD:
        lock = _KEY_LOCKS.get(key)
        if lock is None:
            lock = _KEY_LOCKS[key] = threading.Lock()
        return lock


@dataclass
class CacheEntry:
    """One file found in the cache directory."""
    path: Path
    dataset: str
    variant: str
    end_year: Optional[int]
    schema_version: str
    size_bytes: int
    modified: float

    @property
    def age_days(self) -> float:
        return max(0.0, (time.time() - self.modified) / 86400)


class CacheManager:
    """Parquet cache rooted at the configured cache directory."""

    def __init__(self, cache_dir: Optional[Union[str, Path]] = None,
                 max_age_days: Optional[float] = None,
                 settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.cache_dir = Path(cache_dir) if cache_dir else settings.cache_dir
        self.max_age_days = max_age_days if max_age_days is not None else settings.cache_max_age_days

    def path_for(self, dataset: str, year: Optional[int], variant: str) -> Path:
        return self.cache_dir / f"{cache_key(dataset, year, variant)}_v{SCHEMA_VERSION}.parquet"

    def is_fresh(self, path: Path) -> bool:
        if not path.exists():
            return False
        age_days = (time.time() - path.stat().st_mtime) / 86400
        return age_days <= self.max_age_days

    def get(self, dataset: str, year: Optional[int], variant: str) -> Optional[pd.DataFrame]:
        """
        Read a cached table

        Returns:
            The table, or None on a miss (absent, expired, other schema
            version or unreadable file)
        """
        path = self.path_for(dataset, year, variant)
        if not path.exists():
            logger.debug(f"Cache miss: {path.name}")
            return None
        if not self.is_fresh(path):
            logger.info(f"Cache entry expired (> {self.max_age_days:g} days): {path.name}")
            return None

        try:
            df = pd.read_parquet(path)
            metadata = pq.read_schema(path).metadata or {}
            df.attrs = json.loads(metadata[ATTRS_METADATA_KEY]) if ATTRS_METADATA_KEY in metadata else {}
        except (OSError, ValueError, pa.ArrowException) as e:
            logger.warning(f"Unreadable cache entry {path.name} ({e}); treating as a miss")
            return None

        logger.info(f"✓ Cache hit: {path.name} ({len(df):,} rows)")
        return df

    def put(self, dataset: str, year: Optional[int], variant: str, df: pd.DataFrame) -> Path:
        """
        Write a table atomically

        Returns:
            Path of the cache file
        """
        path = self.path_for(dataset, year, variant)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f"{path.name}.tmp-{os.getpid()}-{threading.get_ident()}")

        with key_lock(cache_key(dataset, year, variant)):
            try:
                _write_parquet(df, tmp)
                os.replace(tmp, path)
            finally:
                tmp.unlink(missing_ok=True)

        size_mb = path.stat().st_size / 1024 / 1024
        logger.info(f"Cached {path.name} ({size_mb:.1f} MB)")
        return path

    def entries(self) -> List[CacheEntry]:
        """All recognizable cache files, sorted by name."""
        if not self.cache_dir.exists():
            return []

        found = []
        for path in sorted(self.cache_dir.iterdir()):
            match = _ENTRY_NAME.match(path.name)
            if not match or not path.is_file():
                continue
            stat = path.stat()
            year = match.group('year')
            found.append(CacheEntry(
                path=path,
                dataset=match.group('dataset'),
                variant=match.group('variant'),
                end_year=None if year == CURRENT_YEAR_KEY else int(year),
                schema_version=match.group('version'),
                size_bytes=stat.st_size,
                modified=stat.st_mtime,
            ))
        return found

    def status(self) -> pd.DataFrame:
        """
        Summarize cache contents

        Returns:
            DataFrame with dataset, variant, end_year, schema_version,
            size_mb, age_days, stale
        """
        rows = []
        for entry in self.entries():
            rows.append({
                'dataset': entry.dataset,
                'variant': entry.variant,
                'end_year': entry.end_year,
                'schema_version': entry.schema_version,
                'size_mb': round(entry.size_bytes / 1024 / 1024, 2),
                'age_days': round(entry.age_days, 1),
                'stale': (entry.schema_version != SCHEMA_VERSION
                          or entry.age_days > self.max_age_days),
            })

        columns = ['dataset', 'variant', 'end_year', 'schema_version', 'size_mb', 'age_days', 'stale']
        status = pd.DataFrame(rows, columns=columns)
        if not status.empty:
            status['end_year'] = status['end_year'].astype('Int64')
        return status

    def clear(self, dataset: Optional[str] = None, year: Optional[int] = None) -> int:
        """
        Remove cache entries

        Args:
            dataset: Only this dataset (default: all)
            year: Only this end year (default: all)

        Returns:
            Number of files removed
        """
        removed = 0
        for entry in self.entries():
            if dataset is not None and entry.dataset != dataset:
                continue
            if year is not None and entry.end_year != year:
                continue
            entry.path.unlink(missing_ok=True)
            removed += 1

        logger.info(f"Removed {removed} cache file(s) from {self.cache_dir}")
        return removed


def _write_parquet(df: pd.DataFrame, path: Path):
    table = pa.Table.from_pandas(df, preserve_index=False)
    metadata = dict(table.schema.metadata or {})
    metadata[ATTRS_METADATA_KEY] = json.dumps(df.attrs, default=str).encode()
    pq.write_table(table.replace_schema_metadata(metadata), path)
