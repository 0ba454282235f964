"""
Fetch orchestrator and public API

Runs one (dataset, year) through the pipeline:

    cache -> URL builder -> fetcher -> parser -> normalizer -> tidy -> cache

Multi-year requests run the single-year path once per year. A failed year
is never dropped silently: fetch_multi returns the years that succeeded
together with a manifest of the years that failed (or raises
MultiYearFetchError with strict=True).

DataQualityWarnings raised along the way are re-emitted through the
``warnings`` module and attached to the returned table as
``df.attrs["warnings"]``.

Usage:
    import caschooldata as ca

    enr = ca.fetch("enrollment", 2024)
    wide = ca.fetch("enrollment", 2024, tidy=False)
    result = ca.fetch_multi("assessment", [2019, 2020, 2021])
    result.failed_years     # {2020: UnsupportedYear(...)}
"""

import logging
import threading
import warnings
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd

from caschooldata import urls
from caschooldata.cache import CacheManager
from caschooldata.common import Settings, get_settings
from caschooldata.errors import (
    CaSchoolDataError, DataQualityWarning, MultiYearFetchError, UnsupportedYear,
)
from caschooldata.fetcher import download, extract_zip_member
from caschooldata.import_utils import validate_end_year
from caschooldata.normalize import select_era
from caschooldata.parsers import parse_caret, parse_excel, parse_tsv
from caschooldata.tidy import id_assess_aggs, tidy_assess, tidy_enr, tidy_graduation

logger = logging.getLogger(__name__)

DATA_MEMBER_PATTERN = r'^(?!.*entities).*\.txt$'
ENTITIES_MEMBER_PATTERN = r'entities.*\.txt$'


# =============================================================================
# DATASET PIPELINES
# =============================================================================

def _enrollment_wide(year: int, settings: Settings, **options) -> pd.DataFrame:
    url = urls.build_enr_url(year)
    era = select_era('enrollment', year)
    content = download(url, expected='text', min_size=era.min_size,
                       timeout=era.timeout, settings=settings)
    raw = parse_tsv(content, label=f"enrollment {year}")
    return era.normalize(raw, year)


def _assessment_wide(year: int, settings: Settings, subject: str = 'Both',
                     student_group: str = 'ALL',
                     local_data: Optional[Tuple[Union[str, Path], Union[str, Path]]] = None,
                     **options) -> pd.DataFrame:
    if local_data is not None:
        return import_local_assess(local_data[0], local_data[1], year, subject=subject)

    file_type = urls.caaspp_file_type(subject, student_group)
    url = urls.build_caaspp_url(year, file_type=file_type)
    era = select_era('assessment', year)

    archive = download(url, expected='zip', min_size=era.min_size,
                       timeout=era.timeout, settings=settings)
    raw = parse_caret(extract_zip_member(archive, DATA_MEMBER_PATTERN, url),
                      label=f"assessment {year}")

    entities = None
    entities_url = urls.build_entities_url(year)
    try:
        entities_zip = download(entities_url, expected='zip', settings=settings)
        entities = parse_caret(extract_zip_member(entities_zip, ENTITIES_MEMBER_PATTERN, entities_url),
                               label=f"assessment entities {year}")
    except CaSchoolDataError as e:
        # Names are decoration; scores are usable without them
        warnings.warn(f"assessment {year}: entity names unavailable ({e})",
                      DataQualityWarning, stacklevel=2)

    wide = era.normalize(raw, year, entities=entities)
    return _filter_subject(wide, subject)


def _graduation_wide(year: int, settings: Settings, **options) -> pd.DataFrame:
    url = urls.build_grad_url(year)
    era = select_era('graduation', year)
    content = download(url, expected='xlsx', min_size=era.min_size,
                       timeout=era.timeout, settings=settings)
    raw = parse_excel(content, label=f"graduation {year}")
    return era.normalize(raw, year)


def _directory_wide(year: Optional[int], settings: Settings, **options) -> pd.DataFrame:
    url = urls.build_directory_url()
    era = select_era('directory', None)
    content = download(url, expected='xlsx', min_size=era.min_size,
                       timeout=era.timeout, settings=settings)
    raw = parse_excel(content, label="school directory")
    return era.normalize(raw, None)


def _tidy_assessment(wide: pd.DataFrame) -> pd.DataFrame:
    return id_assess_aggs(tidy_assess(wide))


@dataclass(frozen=True)
class DatasetSpec:
    """Pipeline entry points for one dataset."""
    name: str
    build_wide: Callable[..., pd.DataFrame]
    to_tidy: Callable[[pd.DataFrame], pd.DataFrame]
    yearless: bool = False
    option_names: Tuple[str, ...] = ()


DATASETS: Dict[str, DatasetSpec] = {
    'enrollment': DatasetSpec('enrollment', _enrollment_wide, tidy_enr),
    'assessment': DatasetSpec('assessment', _assessment_wide, _tidy_assessment,
                              option_names=('subject', 'student_group', 'local_data')),
    'graduation': DatasetSpec('graduation', _graduation_wide, tidy_graduation),
    'directory': DatasetSpec('directory', _directory_wide, lambda df: df, yearless=True),
}


def _dataset(name: str) -> DatasetSpec:
    if name not in DATASETS:
        raise ValueError(f"Unknown dataset {name!r}; expected one of {sorted(DATASETS)}")
    return DATASETS[name]


def _filter_subject(wide: pd.DataFrame, subject: str) -> pd.DataFrame:
    if subject in ('ELA', 'Math'):
        return wide[wide['subject'] == subject].reset_index(drop=True)
    return wide


def _cache_variant(spec: DatasetSpec, tidy: bool, options: dict) -> str:
    variant = 'tidy' if tidy else 'wide'
    if spec.name == 'assessment':
        variant += f"-{options.get('subject', 'Both')}-{options.get('student_group', 'ALL')}"
    return variant.lower()


def _check_options(spec: DatasetSpec, options: dict):
    unexpected = set(options) - set(spec.option_names)
    if unexpected:
        raise TypeError(f"Unexpected option(s) for {spec.name}: {', '.join(sorted(unexpected))}")


# =============================================================================
# WARNING CAPTURE
# =============================================================================

class _WarningLog:
    """
    Records warnings for one fetch or fetch_multi call

    warnings.catch_warnings swaps process-wide state, so it cannot be nested
    inside worker threads. Instead one log is installed for the whole call
    and each thread also records into the list of the year it is running.
    """

    def __init__(self):
        self.records: List[warnings.WarningMessage] = []
        self._lock = threading.Lock()
        self._local = threading.local()

    def showwarning(self, message, category, filename, lineno, file=None, line=None):
        record = warnings.WarningMessage(message, category, filename, lineno, file, line)
        with self._lock:
            self.records.append(record)
        current = getattr(self._local, 'current', None)
        if current is not None:
            current.append(record)

    @contextmanager
    def scope(self):
        """Collect the warnings raised by this thread inside the block."""
        self._local.current = []
        try:
            yield self._local.current
        finally:
            self._local.current = None


@contextmanager
def _recording():
    log = _WarningLog()
    with warnings.catch_warnings():
        warnings.simplefilter('always')
        warnings.showwarning = log.showwarning
        yield log
    for record in log.records:
        warnings.warn_explicit(record.message, record.category, record.filename, record.lineno)


def _messages(records) -> List[str]:
    return [str(w.message) for w in records if issubclass(w.category, DataQualityWarning)]


# =============================================================================
# SINGLE YEAR
# =============================================================================

def _fetch_one(spec: DatasetSpec, year: Optional[int], tidy: bool, use_cache: bool,
               cache: CacheManager, settings: Settings, options: dict,
               log: _WarningLog) -> pd.DataFrame:
    """Single-year pipeline; the result carries its warnings in attrs['warnings']."""
    if spec.yearless:
        if year is not None:
            logger.warning(f"{spec.name} is a current snapshot; ignoring year {year}")
        year = None
    else:
        if year is None:
            raise UnsupportedYear(spec.name, year, f"A year is required for dataset '{spec.name}'")
        year = validate_end_year(year, spec.name)

    # Local files are never cached
    cacheable = use_cache and options.get('local_data') is None
    variant = _cache_variant(spec, tidy, options)

    with log.scope() as recorded:
        if cacheable:
            cached = cache.get(spec.name, year, variant)
            if cached is not None:
                for message in cached.attrs.get('warnings', []):
                    warnings.warn(message, DataQualityWarning, stacklevel=2)
                cached.attrs['warnings'] = _messages(recorded)
                return cached

        label = f"{spec.name} {year}" if year is not None else spec.name
        logger.info(f"Fetching {label} ({variant})")
        wide = spec.build_wide(year, settings, **options)
        result = spec.to_tidy(wide) if tidy else wide
        result.attrs['warnings'] = _messages(recorded)

    if cacheable:
        cache.put(spec.name, year, variant, result)
    logger.info(f"✓ {label}: {len(result):,} rows")
    return result


def fetch(dataset: str, year: Union[int, Iterable[int], None] = None, tidy: bool = True,
          use_cache: bool = True, **options) -> pd.DataFrame:
    """
    Fetch one dataset for one year (or several years)

    Args:
        dataset: 'enrollment', 'assessment', 'graduation' or 'directory'
        year: School year end (2024 = 2023-24), a list of years, or None
            for the directory
        tidy: Return the long format (default) instead of the canonical wide table
        use_cache: Read and write the local cache
        **options: Dataset options (assessment: subject, student_group, local_data)

    Returns:
        DataFrame; df.attrs['warnings'] lists data-quality warnings

    Raises:
        UnsupportedYear: No URL or mapping for the year
        TransportError, UpstreamRejection, ParseError, SchemaMappingGap:
            From the pipeline stage that failed
        MultiYearFetchError: When a list of years is given and any year fails

    Examples:
        >>> enr = fetch('enrollment', 2024)
        >>> wide = fetch('enrollment', 2024, tidy=False)
    """
    if year is not None and not isinstance(year, (int, str)) and hasattr(year, '__iter__'):
        result = fetch_multi(dataset, year, tidy=tidy, use_cache=use_cache, strict=True, **options)
        return result.data

    spec = _dataset(dataset)
    _check_options(spec, options)
    settings = get_settings()
    cache = CacheManager(settings=settings)

    with _recording() as log:
        return _fetch_one(spec, year, tidy, use_cache, cache, settings, options, log)


# =============================================================================
# MULTIPLE YEARS
# =============================================================================

@dataclass
class MultiYearResult:
    """Outcome of fetch_multi: the years that loaded plus a manifest of those that did not."""
    data: pd.DataFrame
    failed_years: Dict[int, Exception] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_years


def fetch_multi(dataset: str, years: Iterable[int], tidy: bool = True, use_cache: bool = True,
                strict: bool = False, max_workers: int = 1, **options) -> MultiYearResult:
    """
    Fetch several years and concatenate them

    Each year runs independently. By default a failed year is recorded in
    failed_years and the remaining years are returned; with strict=True any
    failure raises MultiYearFetchError carrying every per-year error.

    Args:
        dataset: Dataset name
        years: End years
        tidy: Long format (default) or wide
        use_cache: Read and write the local cache
        strict: Raise instead of returning partial results
        max_workers: Years fetched concurrently (1 = sequential)
        **options: Dataset options

    Returns:
        MultiYearResult
    """
    spec = _dataset(dataset)
    _check_options(spec, options)
    if spec.yearless:
        raise ValueError(f"{dataset} is a current snapshot; use fetch('{dataset}')")

    years = list(dict.fromkeys(years))
    settings = get_settings()
    cache = CacheManager(settings=settings)

    logger.info("=" * 60)
    logger.info(f"Fetching {dataset} for {len(years)} year(s): {years}")
    logger.info("=" * 60)

    frames: Dict[int, pd.DataFrame] = {}
    failures: Dict[int, Exception] = {}

    with _recording() as log:
        def run(year):
            return _fetch_one(spec, year, tidy, use_cache, cache, settings, options, log)

        if max_workers > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                futures = {year: pool.submit(run, year) for year in years}
                for year, future in futures.items():
                    try:
                        frames[year] = future.result()
                    except CaSchoolDataError as e:
                        failures[year] = e
        else:
            for year in years:
                try:
                    frames[year] = run(year)
                except CaSchoolDataError as e:
                    failures[year] = e

    for year, error in sorted(failures.items()):
        logger.error(f"✗ {dataset} {year}: {type(error).__name__}: {error}")
    logger.info(f"Completed {len(frames)}/{len(years)} year(s)")

    if failures and strict:
        raise MultiYearFetchError(dataset, failures)

    ordered = [frames[y] for y in sorted(frames)]
    data = pd.concat(ordered, ignore_index=True) if ordered else pd.DataFrame()
    messages = _messages(log.records)
    data.attrs['warnings'] = messages
    return MultiYearResult(data=data, failed_years=failures, warnings=messages)


# =============================================================================
# LOCAL FILES, CATALOG AND CACHE
# =============================================================================

def import_local_assess(test_data_path: Union[str, Path], entities_path: Union[str, Path],
                        end_year: int, subject: str = 'Both') -> pd.DataFrame:
    """
    Normalize manually downloaded CAASPP caret files

    For use when the research file portal blocks automated downloads.

    Args:
        test_data_path: Caret-delimited test data file (unzipped)
        entities_path: Caret-delimited entities file (unzipped)
        end_year: School year end the files belong to
        subject: 'Both', 'ELA' or 'Math'

    Returns:
        Canonical wide assessment table

    Raises:
        FileNotFoundError: If either file does not exist
    """
    test_data_path = Path(test_data_path)
    entities_path = Path(entities_path)
    for path in (test_data_path, entities_path):
        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}")

    logger.info(f"Importing local CAASPP files for {end_year}: {test_data_path.name}")
    raw = parse_caret(test_data_path.read_bytes(), label=str(test_data_path))
    entities = parse_caret(entities_path.read_bytes(), label=str(entities_path))
    wide = select_era('assessment', end_year).normalize(raw, end_year, entities=entities)
    return _filter_subject(wide, subject)


def available_years(dataset: str) -> List[int]:
    """Supported end years for a dataset (empty for the directory)."""
    return urls.available_years(dataset)


def clear_cache(dataset: Optional[str] = None, year: Optional[int] = None) -> int:
    """
    Remove cached tables

    Returns:
        Number of cache files removed
    """
    if dataset is not None:
        _dataset(dataset)
    return CacheManager().clear(dataset=dataset, year=year)


def cache_status() -> pd.DataFrame:
    """Cache contents: dataset, variant, end_year, schema_version, size_mb, age_days, stale."""
    return CacheManager().status()
