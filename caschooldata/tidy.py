"""
Tidy (long) transforms and derived columns

Enrollment:
    tidy_enr        wide -> one row per entity x subgroup x grade_level
    id_enr_aggs     aggregation flags and entity type
    add_enr_pct     share of the entity's total for the same grade
    enr_grade_aggs  grade-band sums (K8, HS, K12, ELEM, MIDDLE, HIGH)

Assessment:
    tidy_assess, id_assess_aggs, summarize_proficiency, calc_assess_trend

Percentage policy (enrollment):
    - numerator suppressed              -> pct missing
    - denominator reported as zero      -> pct 0
    - denominator row never reported    -> pct missing + DataQualityWarning
"""

import logging
import warnings
from typing import List, Optional

import numpy as np
import pandas as pd

from caschooldata.cds import identify_agg_level
from caschooldata.codes import (
    AGG_LEVEL_TYPES, GRADE_BANDS, GRADE_COLUMNS, REPORTING_CATEGORY_LABELS,
    TOTAL_CATEGORY, TOTAL_GRADE, label_codes,
)
from caschooldata.errors import DataQualityWarning
from caschooldata.normalize import (
    ASSESSMENT_METRIC_COLUMNS, ENROLLMENT_ID_COLUMNS, GRADE_VALUE_COLUMNS,
)

logger = logging.getLogger(__name__)

_LEVEL_CODES = {'state': 'T', 'county': 'C', 'district': 'D', 'school': 'S'}

ENROLLMENT_TIDY_COLUMNS = [
    'end_year', 'academic_year', 'type', 'agg_level',
    'cds_code', 'county_code', 'district_code', 'school_code',
    'county_name', 'district_name', 'school_name',
    'charter_status', 'reporting_category', 'subgroup', 'grade_level',
    'n_students', 'pct',
    'is_state', 'is_county', 'is_district', 'is_school', 'is_charter',
]

# Everything else in a tidy row identifies the entity x subgroup a band belongs to
_BAND_VALUE_COLUMNS = ('grade_level', 'n_students', 'pct')


# =============================================================================
# ENROLLMENT
# =============================================================================

def _unmeasured_grades(wide: pd.DataFrame) -> List[str]:
    """Grade columns the source did not collect this year (not suppressed)."""
    if 'unmeasured_grades' in wide.attrs:
        return list(wide.attrs['unmeasured_grades'])
    # Tables built outside the normalizers carry no attrs; an all-missing column was not collected
    return [g for g in GRADE_VALUE_COLUMNS if g in wide.columns and wide[g].isna().all()]


def tidy_enr(wide: pd.DataFrame) -> pd.DataFrame:
    """
    Pivot the canonical wide enrollment table to long format

    Emits a TOTAL row (from total_enrollment) and one row per measured grade
    for every wide row. Grades not collected in that year are left out
    entirely; suppressed cells are kept with n_students missing.

    Args:
        wide: Canonical wide enrollment table (normalize.ENROLLMENT_WIDE_COLUMNS)

    Returns:
        Tidy enrollment table (ENROLLMENT_TIDY_COLUMNS)
    """
    id_cols = [c for c in ENROLLMENT_ID_COLUMNS if c in wide.columns]
    unmeasured = set(_unmeasured_grades(wide))
    grade_cols = [g for g in GRADE_VALUE_COLUMNS if g in wide.columns and g not in unmeasured]
    if unmeasured:
        logger.debug(f"Grades not collected, omitted from tidy output: {sorted(unmeasured)}")

    totals = wide[id_cols].copy()
    totals['grade_level'] = TOTAL_GRADE
    totals['n_students'] = wide['total_enrollment'].astype('float64')
    parts = [totals]

    if grade_cols:
        grades = wide.melt(
            id_vars=id_cols,
            value_vars=grade_cols,
            var_name='grade_level',
            value_name='n_students',
        )
        grades['grade_level'] = grades['grade_level'].map(GRADE_COLUMNS)
        parts.append(grades)

    tidy = pd.concat(parts, ignore_index=True)
    tidy['n_students'] = tidy['n_students'].astype('float64')
    tidy['subgroup'] = label_codes(tidy['reporting_category'], REPORTING_CATEGORY_LABELS,
                                   field='reporting_category')

    tidy = id_enr_aggs(tidy)
    tidy = add_enr_pct(tidy)

    logger.info(f"Tidy enrollment: {len(tidy):,} rows from {len(wide):,} wide rows")
    return tidy[[c for c in ENROLLMENT_TIDY_COLUMNS if c in tidy.columns]]


def id_enr_aggs(df: pd.DataFrame) -> pd.DataFrame:
    """
    Add is_state / is_county / is_district / is_school / is_charter and type

    agg_level is used where present; rows without it fall back to the CDS
    placeholder pattern.
    """
    fallback = df['cds_code'].map(lambda c: _LEVEL_CODES[identify_agg_level(c)])
    if 'agg_level' in df.columns:
        level = df['agg_level'].fillna(fallback)
    else:
        level = fallback
    df = df.copy()
    df['agg_level'] = level
    df['is_state'] = level == 'T'
    df['is_county'] = level == 'C'
    df['is_district'] = level == 'D'
    df['is_school'] = level == 'S'
    df['is_charter'] = (df['charter_status'] == 'Y') if 'charter_status' in df.columns else False
    df['type'] = level.map(AGG_LEVEL_TYPES)
    return df


def add_enr_pct(df: pd.DataFrame) -> pd.DataFrame:
    """
    Add pct: n_students as a fraction of the entity's TA row for the same grade

    Args:
        df: Tidy enrollment rows including the TA (total) rows

    Returns:
        Copy of df with a pct column in [0, 1] or missing
    """
    keys = [k for k in ('end_year', 'cds_code', 'charter_status', 'grade_level') if k in df.columns]
    totals = (df.loc[df['reporting_category'] == TOTAL_CATEGORY, keys + ['n_students']]
              .drop_duplicates(keys)
              .rename(columns={'n_students': '_denominator'}))
    totals['_has_total'] = True

    merged = df.merge(totals, on=keys, how='left')
    numerator = merged['n_students']
    denominator = merged['_denominator']

    pct = numerator / denominator.where(denominator != 0)
    pct = pct.mask(denominator == 0, 0.0)
    pct = pct.mask(numerator.isna())
    merged['pct'] = pct.astype('float64')

    absent = merged['_has_total'].isna()
    if absent.any():
        warnings.warn(
            f"{int(absent.sum()):,} enrollment row(s) have no total row for their "
            f"entity and grade; pct left missing",
            DataQualityWarning,
            stacklevel=2,
        )

    return merged.drop(columns=['_denominator', '_has_total'])


def enr_grade_aggs(tidy: pd.DataFrame, bands: Optional[List[str]] = None) -> pd.DataFrame:
    """
    Sum individual grades into grade bands

    For each entity x subgroup the band is the sum of the non-missing
    contributing grades. partial is True when any grade the source collected
    that year is missing (suppressed or absent); a band with no reported
    contributor is missing. Grades not collected that year (TK before 2024)
    do not make a band partial.

    Args:
        tidy: Output of tidy_enr
        bands: Band names from codes.GRADE_BANDS (default: all)

    Returns:
        One row per entity x subgroup x band with grade_level set to the band
        name, n_students and partial

    Examples:
        >>> hs = enr_grade_aggs(tidy, bands=['HS'])
        >>> hs[hs['partial']]
    """
    bands = bands or list(GRADE_BANDS)
    unknown = [b for b in bands if b not in GRADE_BANDS]
    if unknown:
        raise ValueError(f"Unknown grade band(s): {unknown}; expected {list(GRADE_BANDS)}")

    group_cols = [c for c in tidy.columns if c not in _BAND_VALUE_COLUMNS]
    if 'end_year' in tidy.columns:
        collected = tidy.groupby('end_year')['grade_level'].agg(lambda s: set(s)).to_dict()
    else:
        collected = None
    all_collected = set(tidy['grade_level'])

    results = []
    for band in bands:
        grades = set(GRADE_BANDS[band])
        rows = tidy[tidy['grade_level'].isin(grades)]
        if rows.empty:
            continue

        grouped = rows.groupby(group_cols, dropna=False, sort=False)['n_students']
        summed = grouped.sum(min_count=1).rename('n_students')
        reported = grouped.count().rename('_reported')
        out = pd.concat([summed, reported], axis=1).reset_index()

        if collected is not None:
            expected = out['end_year'].map(lambda y: len(grades & collected.get(y, set())))
        else:
            expected = len(grades & all_collected)
        out['partial'] = out['_reported'] < expected
        out['grade_level'] = band
        results.append(out.drop(columns='_reported'))

    if not results:
        return pd.DataFrame(columns=group_cols + ['grade_level', 'n_students', 'partial'])

    banded = pd.concat(results, ignore_index=True)
    n_partial = int(banded['partial'].sum())
    if n_partial:
        logger.info(f"Grade bands: {n_partial:,} of {len(banded):,} rows are partial")
    return banded[group_cols + ['grade_level', 'n_students', 'partial']]


# =============================================================================
# ASSESSMENT
# =============================================================================

ASSESSMENT_TIDY_ID_COLUMNS = [
    'end_year', 'cds_code', 'county_code', 'district_code', 'school_code',
    'agg_level', 'county_name', 'district_name', 'school_name',
    'grade', 'subject', 'test_id', 'student_group_code',
]


def tidy_assess(wide: pd.DataFrame) -> pd.DataFrame:
    """
    Pivot assessment metric columns into metric_type / metric_value rows

    Missing metric values (suppressed) are kept as rows with metric_value
    missing.
    """
    id_cols = [c for c in ASSESSMENT_TIDY_ID_COLUMNS if c in wide.columns]
    metric_cols = [c for c in ASSESSMENT_METRIC_COLUMNS if c in wide.columns]

    tidy = wide.melt(
        id_vars=id_cols,
        value_vars=metric_cols,
        var_name='metric_type',
        value_name='metric_value',
    )
    tidy['metric_value'] = tidy['metric_value'].astype('float64')
    logger.info(f"Tidy assessment: {len(tidy):,} rows ({len(metric_cols)} metrics)")
    return tidy


def id_assess_aggs(df: pd.DataFrame) -> pd.DataFrame:
    """Add is_state / is_county / is_district / is_school from agg_level."""
    if 'agg_level' not in df.columns:
        raise ValueError("Data must include an 'agg_level' column")
    df = df.copy()
    df['is_state'] = df['agg_level'] == 'T'
    df['is_county'] = df['agg_level'] == 'C'
    df['is_district'] = df['agg_level'] == 'D'
    df['is_school'] = df['agg_level'] == 'S'
    return df


def summarize_proficiency(df: pd.DataFrame, metric: str = 'pct_met_and_above') -> pd.DataFrame:
    """
    Keep one metric from tidy assessment data

    Args:
        df: Tidy assessment data (has metric_type)
        metric: metric_type to keep

    Returns:
        Rows for that metric with the metric_type column dropped

    Raises:
        ValueError: If df is not in tidy format
    """
    if 'metric_type' not in df.columns:
        raise ValueError("Data must be in tidy format (use tidy_assess() first)")
    result = df[df['metric_type'] == metric].drop(columns='metric_type')
    return result.reset_index(drop=True)


def calc_assess_trend(df: pd.DataFrame, metric: str = 'pct_met_and_above') -> pd.DataFrame:
    """
    Year-over-year change in one assessment metric

    Rows are grouped by every identifying column except end_year and the
    entity names (which can be respelled between years), ordered by end_year,
    and compared with the previous available year.

    Args:
        df: Tidy assessment data spanning several years
        metric: metric_type to analyze

    Returns:
        Data with change (points) and pct_change (percent) columns; the first
        year of each group, and any change from a zero base, is missing

    Examples:
        >>> trend = calc_assess_trend(multi_year, 'pct_met_and_above')
        >>> trend[['end_year', 'metric_value', 'change', 'pct_change']]
    """
    if 'metric_type' in df.columns:
        df = df[df['metric_type'] == metric]

    skip = {'metric_value', 'end_year', 'county_name', 'district_name', 'school_name'}
    group_cols = [c for c in df.columns if c not in skip]

    df = df.sort_values('end_year', kind='mergesort').copy()
    previous = df.groupby(group_cols, dropna=False, sort=False)['metric_value'].shift(1)
    df['change'] = df['metric_value'] - previous
    df['pct_change'] = (df['metric_value'] / previous.where(previous != 0) - 1) * 100
    return df.reset_index(drop=True)


# =============================================================================
# GRADUATION
# =============================================================================

def tidy_graduation(df: pd.DataFrame) -> pd.DataFrame:
    """
    Graduation output is already one row per entity x subgroup

    Sorts into a stable order and ensures the flags are plain booleans.
    """
    df = df.copy()
    for col in ('is_state', 'is_district', 'is_school'):
        df[col] = df[col].fillna(False).astype(bool)
    order = {'State': 0, 'County': 1, 'District': 2, 'School': 3}
    df['_order'] = df['type'].map(order)
    df = df.sort_values(['end_year', '_order', 'cds_code', 'subgroup'], kind='mergesort')
    return df.drop(columns='_order').reset_index(drop=True)
