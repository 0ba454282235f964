"""
Suppression-aware value conversion for CDE data files

CDE replaces small cell counts (10 or fewer students) with an asterisk. The
parsers keep that marker as text; this module is the only place it is turned
into a numeric missing value. It is never turned into zero.

Usage:
    from caschooldata.import_utils import safe_numeric, check_suppression

    counts = safe_numeric(raw["GR_01"])     # '*' -> NaN, '1,204' -> 1204.0
"""

import logging
import warnings
from typing import Optional

import numpy as np
import pandas as pd

from caschooldata.errors import DataQualityWarning, UnsupportedYear

logger = logging.getLogger(__name__)

# =============================================================================
# SAFE VALUE CONVERSION
# =============================================================================

SUPPRESSION_MARKER = '*'

SUPPRESSED_VALUES = (SUPPRESSION_MARKER, '', 'N/A', 'n/a', 'NA', 'null', 'NULL', None)
_SUPPRESSED_TEXT = [v for v in SUPPRESSED_VALUES if v is not None]

# Share of suppressed cells in a column above which a warning is raised
SUPPRESSION_WARN_THRESHOLD = 0.5


def safe_numeric(series: pd.Series, column: Optional[str] = None) -> pd.Series:
    """
    Vectorized conversion of a raw text column to float

    Commas and surrounding whitespace are stripped; the suppression marker
    and blanks become NaN. Values that are neither numbers nor suppression
    markers also become NaN, with a DataQualityWarning giving the count and
    the first offending value, so they are never mistaken for suppressed
    cells. Infinite values become NaN with a DataQualityWarning.

    Args:
        series: Raw column (strings, possibly already numeric)
        column: Column name for warning messages

    Returns:
        float64 Series aligned with the input
    """
    name = column or series.name
    if series.dtype == object or pd.api.types.is_string_dtype(series):
        text = series.astype(object).map(
            lambda v: v.replace(',', '').strip() if isinstance(v, str) else v
        )
        text = text.where(~text.isin(_SUPPRESSED_TEXT), None)
        numeric = pd.to_numeric(text, errors='coerce').astype("float64")

        unparseable = numeric.isna() & text.notna()
        if unparseable.any():
            first = text[unparseable].iloc[0]
            warnings.warn(
                f"Column '{name}' has {int(unparseable.sum())} value(s) that are neither numbers "
                f"nor suppression markers (first: {first!r}); set to missing",
                DataQualityWarning,
                stacklevel=2,
            )
    else:
        numeric = pd.to_numeric(series, errors='coerce').astype("float64")

    infinite = np.isinf(numeric)
    if infinite.any():
        warnings.warn(
            f"Column '{name}' contains {int(infinite.sum())} non-finite value(s); set to missing",
            DataQualityWarning,
            stacklevel=2,
        )
        numeric = numeric.mask(infinite)

    return numeric


def suppression_rate(series: pd.Series) -> float:
    """Share of non-null cells in a raw column that carry the suppression marker."""
    present = series.dropna()
    if present.empty:
        return 0.0
    return float(present.astype(str).str.strip().eq(SUPPRESSION_MARKER).mean())


def check_suppression(df: pd.DataFrame, columns, dataset: str,
                      threshold: float = SUPPRESSION_WARN_THRESHOLD) -> None:
    """
    Warn when a raw count column is mostly suppressed

    Args:
        df: Raw (text) DataFrame
        columns: Column names to inspect
        dataset: Dataset label for the message
        threshold: Suppressed share that triggers the warning
    """
    for col in columns:
        if col not in df.columns:
            continue
        rate = suppression_rate(df[col])
        if rate > threshold:
            warnings.warn(
                f"{dataset}: {rate:.0%} of '{col}' cells are suppressed",
                DataQualityWarning,
                stacklevel=2,
            )


# =============================================================================
# COUNT VALIDATION
# =============================================================================

def check_non_negative(df: pd.DataFrame, columns, dataset: str) -> pd.DataFrame:
    """
    Replace negative counts with missing values, warning for each column hit

    Counts are never negative in source data; a negative value is a parse or
    publisher error and must not flow into aggregates.
    """
    for col in columns:
        if col not in df.columns:
            continue
        negative = df[col] < 0
        if negative.any():
            warnings.warn(
                f"{dataset}: column '{col}' had {int(negative.sum())} negative value(s); set to missing",
                DataQualityWarning,
                stacklevel=2,
            )
            df[col] = df[col].mask(negative)
    return df


def check_pct_range(df: pd.DataFrame, columns, dataset: str,
                    low: float = 0.0, high: float = 100.0) -> None:
    """Warn when a percentage column has values outside [low, high]."""
    for col in columns:
        if col not in df.columns:
            continue
        out_of_range = (df[col] < low) | (df[col] > high)
        if out_of_range.any():
            warnings.warn(
                f"{dataset}: column '{col}' has {int(out_of_range.sum())} value(s) outside {low:g}-{high:g}",
                DataQualityWarning,
                stacklevel=2,
            )


# =============================================================================
# YEAR VALIDATION
# =============================================================================

def validate_end_year(year, dataset: str) -> int:
    """
    Coerce a requested end year to int

    Accepts ints (including numpy ints) and digit strings such as '2024'.
    School-year labels like '2023-24' are rejected; pass the end year.

    Raises:
        UnsupportedYear: If the value is not a whole year

    Examples:
        >>> validate_end_year('2024', 'enrollment')
        2024
    """
    if isinstance(year, bool):
        raise UnsupportedYear(dataset, year, f"Year must be an end year like 2024, got {year!r}")
    if isinstance(year, (int, np.integer)):
        return int(year)
    if isinstance(year, str) and year.strip().isdigit():
        return int(year.strip())
    raise UnsupportedYear(dataset, year, f"Year must be an end year like 2024, got {year!r}")
