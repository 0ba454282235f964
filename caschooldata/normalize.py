"""
Normalize raw CDE/CAASPP tables to the canonical schemas

Raw layouts changed many times between 1982 and today. Each layout is an
EraSchema registered in ERA_REGISTRY with the year range it covers; the
orchestrator calls select_era(dataset, year) once and hands the raw table to
that era's normalizer. Supporting a new layout means registering a new era.

Enrollment eras:
    census_day   2024+      one row per entity x reporting category, T/C/D/S rows
    hist_2015    2015-2023  names, ENR_TYPE, numeric race codes 0-9
    hist_2008    2008-2014  names, numeric race codes 0-9
    hist_1994    1994-2007  no names, numeric race codes 1-8
    hist_1982    1982-1993  district/school names, letter race codes

Historical files are school-level only; the normalizer builds TA (total),
RE_* and GN_* categories per school and synthesizes district, county and
state aggregates.

Rules shared by all normalizers:
    - Unrecognized columns (enrollment, assessment) and unrecognized codes
      raise SchemaMappingGap instead of being dropped.
    - Suppressed cells become NaN, never 0.
    - CDS segments for aggregate rows are filled with zero placeholders
      before padding.

Usage:
    from caschooldata.normalize import select_era

    era = select_era("enrollment", 2024)
    wide = era.normalize(raw_df, 2024)
"""

import logging
import re
import warnings
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from caschooldata import cds
from caschooldata.codes import (
    AGG_LEVEL_TYPES, GENDER_CODES, GRAD_STUDENT_GROUP_LABELS, GRADE_COLUMNS,
    RACE_CODES_1982, RACE_CODES_1994, RACE_CODES_2008, REPORTING_CATEGORY_LABELS,
    TOTAL_CATEGORY, label_codes,
)
from caschooldata.common import academic_year_label
from caschooldata.errors import DataQualityWarning, ParseError, SchemaMappingGap, UnsupportedYear
from caschooldata.import_utils import (
    check_non_negative, check_pct_range, check_suppression, safe_numeric,
)
from caschooldata.urls import historical_year_label

logger = logging.getLogger(__name__)

# =============================================================================
# CANONICAL SCHEMAS
# =============================================================================

GRADE_VALUE_COLUMNS = list(GRADE_COLUMNS.keys())

ENROLLMENT_ID_COLUMNS = [
    'end_year', 'academic_year', 'agg_level',
    'cds_code', 'county_code', 'district_code', 'school_code',
    'county_name', 'district_name', 'school_name',
    'charter_status', 'reporting_category',
]
ENROLLMENT_VALUE_COLUMNS = ['total_enrollment'] + GRADE_VALUE_COLUMNS
ENROLLMENT_WIDE_COLUMNS = ENROLLMENT_ID_COLUMNS + ENROLLMENT_VALUE_COLUMNS

ASSESSMENT_ID_COLUMNS = [
    'end_year', 'cds_code', 'county_code', 'district_code', 'school_code',
    'agg_level', 'county_name', 'district_name', 'school_name',
    'grade', 'subject', 'test_id', 'student_group_code',
]
ASSESSMENT_PCT_COLUMNS = [
    'pct_exceeded', 'pct_met', 'pct_met_and_above', 'pct_nearly_met', 'pct_not_met',
]
ASSESSMENT_COUNT_COLUMNS = [
    'n_tested', 'n_exceeded', 'n_met', 'n_met_and_above', 'n_nearly_met', 'n_not_met',
]
ASSESSMENT_METRIC_COLUMNS = ['mean_scale_score'] + ASSESSMENT_PCT_COLUMNS + ASSESSMENT_COUNT_COLUMNS
ASSESSMENT_WIDE_COLUMNS = ASSESSMENT_ID_COLUMNS + ASSESSMENT_METRIC_COLUMNS

GRADUATION_COLUMNS = [
    'end_year', 'type', 'cds_code',
    'district_id', 'district_name', 'school_id', 'school_name',
    'subgroup', 'metric', 'grad_rate', 'cohort_count', 'graduate_count',
    'is_state', 'is_district', 'is_school',
]

DIRECTORY_COLUMNS = [
    'cds_code', 'county_code', 'district_code', 'school_code',
    'agg_level', 'county_name', 'district_name', 'school_name',
    'school_type', 'status', 'charter_status',
    'street', 'city', 'state', 'zip', 'phone',
    'admin_name', 'email', 'website',
    'latitude', 'longitude', 'open_date', 'closed_date',
]


def header_key(name) -> str:
    """
    Normalize a raw header for lookup: upper case, runs of non-alphanumerics to '_'

    Examples:
        >>> header_key('Aggregate Level')
        'AGGREGATE_LEVEL'
        >>> header_key(' GR.01 ')
        'GR_01'
    """
    return re.sub(r'[^A-Z0-9]+', '_', str(name).upper()).strip('_')


def _clean_text(series: pd.Series) -> pd.Series:
    """Strip whitespace; blank strings become missing."""
    stripped = series.astype(object).map(lambda v: v.strip() if isinstance(v, str) else v)
    return stripped.where(stripped.map(lambda v: isinstance(v, str) and v != ''), None)


def _rename_strict(raw: pd.DataFrame, column_map: Mapping[str, str], dataset: str,
                   ignored: Tuple[str, ...] = (), ignored_pattern: Optional[str] = None) -> pd.DataFrame:
    """
    Rename raw columns through a header_key -> canonical map

    Raises:
        SchemaMappingGap: If a raw column is neither mapped nor known-ignored
    """
    # CDE headers come as 'AcademicYear', 'Academic Year' and 'ACADEMIC_YEAR'
    compact_map = {k.replace('_', ''): v for k, v in column_map.items()}
    compact_ignored = {k.replace('_', '') for k in ignored}
    renames = {}
    unknown = []
    pattern = re.compile(ignored_pattern) if ignored_pattern else None
    for col in raw.columns:
        key = header_key(col)
        compact = key.replace('_', '')
        if compact in compact_map:
            target = compact_map[compact]
            if target in renames.values():
                raise SchemaMappingGap(
                    f"{dataset}: more than one raw column maps to '{target}'", field=target
                )
            renames[col] = target
        elif compact in compact_ignored or (pattern and pattern.match(key)):
            continue
        else:
            unknown.append(str(col))

    if unknown:
        raise SchemaMappingGap(
            f"{dataset}: unrecognized column(s): {', '.join(unknown)}",
            field='columns', values=unknown,
        )

    return raw[list(renames)].rename(columns=renames)


def _require(df: pd.DataFrame, columns: List[str], dataset: str):
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise SchemaMappingGap(
            f"{dataset}: required column(s) missing from source: {', '.join(missing)}",
            field='columns', values=missing,
        )


def _cds(build: Callable, dataset: str, end_year: Optional[int], *args):
    """
    Run a cds builder over raw code columns

    Raises:
        ParseError: If a code is malformed. ``row`` is the line in the source
            file, counting the header as line 1.
    """
    try:
        return build(*args)
    except ValueError as e:
        label = getattr(e, 'row', None)
        line = int(label) + 2 if isinstance(label, (int, np.integer)) else None
        where = f" on line {line}" if line is not None else ""
        source = f"{dataset} {end_year}" if end_year is not None else dataset
        raise ParseError(f"{source}: malformed CDS code{where}: {e}",
                         dataset=dataset, year=end_year, row=line) from e


# =============================================================================
# ERA REGISTRY
# =============================================================================

@dataclass(frozen=True)
class EraSchema:
    """One source layout and the years it covers."""
    dataset: str
    name: str
    first_year: Optional[int]
    last_year: Optional[int]
    fmt: str                        # tsv | caret | xlsx
    normalizer: Callable[..., pd.DataFrame]
    min_size: int = 0               # smallest plausible download, bytes
    timeout: float = 120            # seconds
    race_codes: Optional[Mapping[str, str]] = None
    name_columns: Mapping[str, str] = field(default_factory=dict)
    has_enr_type: bool = False

    def covers(self, year: Optional[int]) -> bool:
        if self.first_year is None:
            return year is None
        return year is not None and self.first_year <= year <= self.last_year

    def normalize(self, raw: pd.DataFrame, end_year: Optional[int], **kwargs) -> pd.DataFrame:
        logger.info(f"Normalizing {self.dataset} {end_year or ''} with era '{self.name}' "
                    f"({len(raw):,} raw rows)")
        result = self.normalizer(raw, end_year, self, **kwargs)
        logger.info(f"  Normalized {len(result):,} rows")
        return result


ERA_REGISTRY: List[EraSchema] = []


def register_era(era: EraSchema) -> EraSchema:
    """
    Add an era to the registry

    Raises:
        ValueError: If the era overlaps an existing era of the same dataset
    """
    for existing in ERA_REGISTRY:
        if existing.dataset != era.dataset:
            continue
        if era.first_year is None or existing.first_year is None:
            overlap = era.first_year is None and existing.first_year is None
        else:
            overlap = era.first_year <= existing.last_year and existing.first_year <= era.last_year
        if overlap:
            raise ValueError(f"Era '{era.name}' overlaps '{existing.name}' for {era.dataset}")
    ERA_REGISTRY.append(era)
    return era


def select_era(dataset: str, year: Optional[int]) -> EraSchema:
    """
    Find the registered era covering (dataset, year)

    Raises:
        UnsupportedYear: If no era covers the year
    """
    for era in ERA_REGISTRY:
        if era.dataset == dataset and era.covers(year):
            return era
    raise UnsupportedYear(dataset, year, f"No schema mapping for year {year}, dataset '{dataset}'")


# =============================================================================
# ENROLLMENT: CENSUS DAY (2024+)
# =============================================================================

CENSUS_DAY_COLUMN_MAP: Dict[str, str] = {
    'ACADEMIC_YEAR': 'academic_year',
    'AGGREGATE_LEVEL': 'agg_level',
    'AGG_LEVEL': 'agg_level',
    'COUNTY_CODE': 'county_code',
    'DISTRICT_CODE': 'district_code',
    'SCHOOL_CODE': 'school_code',
    'COUNTY_NAME': 'county_name',
    'DISTRICT_NAME': 'district_name',
    'SCHOOL_NAME': 'school_name',
    'CHARTER': 'charter_status',
    'CHARTER_Y_N': 'charter_status',
    'REPORTING_CATEGORY': 'reporting_category',
    'TOTAL_ENR': 'total_enrollment',
    'TOTAL_ENROLLMENT': 'total_enrollment',
    'GR_TK': 'grade_tk',
    'GR_KN': 'grade_k',
    'GR_K': 'grade_k',
}
for _n in range(1, 13):
    CENSUS_DAY_COLUMN_MAP[f'GR_{_n:02d}'] = f'grade_{_n:02d}'
    if _n < 10:
        CENSUS_DAY_COLUMN_MAP[f'GR_{_n}'] = f'grade_{_n:02d}'

CHARTER_VALUES = {'ALL': 'All', 'Y': 'Y', 'N': 'N'}


def _normalize_agg_levels(series: pd.Series, dataset: str) -> pd.Series:
    levels = _clean_text(series).map(lambda v: v.upper() if isinstance(v, str) else v)
    unknown = set(levels.dropna()) - set(AGG_LEVEL_TYPES)
    if unknown or levels.isna().any():
        raise SchemaMappingGap(
            f"{dataset}: unrecognized aggregate level(s): "
            f"{', '.join(sorted(map(str, unknown))) or 'blank'}",
            field='agg_level', values=unknown or {'<blank>'},
        )
    return levels


# Code segments an entity row must carry, by aggregation level
_REQUIRED_SEGMENTS = {
    'C': ('county_code',),
    'D': ('county_code', 'district_code'),
    'S': ('county_code', 'district_code', 'school_code'),
}


def _check_entity_segments(df: pd.DataFrame, dataset: str):
    """
    Raises:
        SchemaMappingGap: If a row lacks a segment at or above its own level
    """
    for level, columns in _REQUIRED_SEGMENTS.items():
        rows = df['agg_level'] == level
        for col in columns:
            blank = rows & df[col].isna()
            if blank.any():
                raise SchemaMappingGap(
                    f"{dataset}: {int(blank.sum())} aggregate level '{level}' row(s) have no {col}",
                    field=col, values={level},
                )


def _blank_lower_segments(df: pd.DataFrame) -> pd.DataFrame:
    """Force placeholder segments below each row's aggregation level."""
    above_school = df['agg_level'].isin(['T', 'C', 'D'])
    above_district = df['agg_level'].isin(['T', 'C'])
    state = df['agg_level'] == 'T'
    df.loc[above_school, 'school_code'] = None
    df.loc[above_district, 'district_code'] = None
    df.loc[state, 'county_code'] = None
    return df


def normalize_enr_census_day(raw: pd.DataFrame, end_year: int, era: EraSchema) -> pd.DataFrame:
    """
    Census Day files: already one row per entity x reporting category

    Args:
        raw: All-text table from the Census Day file
        end_year: School year end
        era: Era descriptor

    Returns:
        Canonical wide enrollment table
    """
    df = _rename_strict(raw, CENSUS_DAY_COLUMN_MAP, 'enrollment')
    _require(df, ['agg_level', 'county_code', 'district_code', 'school_code',
                  'reporting_category', 'total_enrollment'], 'enrollment')

    check_suppression(df, ['total_enrollment'], f"enrollment {end_year}")

    df['agg_level'] = _normalize_agg_levels(df['agg_level'], 'enrollment')
    for col in ('county_code', 'district_code', 'school_code'):
        df[col] = _clean_text(df[col])
    _check_entity_segments(df, 'enrollment')
    df = _blank_lower_segments(df)
    codes = _cds(cds.build_cds_codes, 'enrollment', end_year,
                 df['county_code'], df['district_code'], df['school_code'])

    category = _clean_text(df['reporting_category'])
    label_codes(category, REPORTING_CATEGORY_LABELS, field='reporting_category')

    if 'charter_status' in df.columns:
        charter_raw = _clean_text(df['charter_status']).fillna('ALL')
        charter = label_codes(charter_raw.str.upper(), CHARTER_VALUES, field='charter_status')
    else:
        charter = pd.Series('All', index=df.index)

    result = pd.DataFrame({
        'end_year': end_year,
        'academic_year': (_clean_text(df['academic_year']).fillna(academic_year_label(end_year))
                          if 'academic_year' in df.columns else academic_year_label(end_year)),
        'agg_level': df['agg_level'],
        'cds_code': codes['cds_code'],
        'county_code': codes['county_code'],
        'district_code': codes['district_code'],
        'school_code': codes['school_code'],
        'county_name': _clean_text(df['county_name']) if 'county_name' in df.columns else None,
        'district_name': _clean_text(df['district_name']) if 'district_name' in df.columns else None,
        'school_name': _clean_text(df['school_name']) if 'school_name' in df.columns else None,
        'charter_status': charter,
        'reporting_category': category,
    }, index=df.index)

    unmeasured = []
    for col in ENROLLMENT_VALUE_COLUMNS:
        if col in df.columns:
            result[col] = safe_numeric(df[col], column=col)
        else:
            result[col] = np.nan
            unmeasured.append(col)

    result = check_non_negative(result, ENROLLMENT_VALUE_COLUMNS, f"enrollment {end_year}")
    result = result[ENROLLMENT_WIDE_COLUMNS].reset_index(drop=True)
    result.attrs['unmeasured_grades'] = [c for c in unmeasured if c in GRADE_VALUE_COLUMNS]
    return result


# =============================================================================
# ENROLLMENT: HISTORICAL (1982-2023)
# =============================================================================

HISTORICAL_GRADE_MAP: Dict[str, str] = {'GR_KN': 'grade_k'}
HISTORICAL_GRADE_MAP.update({f'GR_{n}': f'grade_{n:02d}' for n in range(1, 13)})

HISTORICAL_BASE_COLUMNS = {
    'ACADEMIC_YEAR', 'CDS_CODE', 'RACE_ETHNICITY', 'GENDER', 'ENR_TOTAL',
    'UNGR_ELM', 'UNGR_SEC', 'ADULT', 'END_YEAR',
} | set(HISTORICAL_GRADE_MAP)

HISTORICAL_NAME_COLUMNS = ('county_name', 'district_name', 'school_name')
_HIST_VALUE_COLUMNS = ['total_enrollment'] + list(HISTORICAL_GRADE_MAP.values())


def _sum_levels(frame: pd.DataFrame, keys: List[str]) -> pd.DataFrame:
    # min_count=1: a group with no reported values stays missing, not 0
    return (frame.groupby(keys, sort=False, dropna=False)[_HIST_VALUE_COLUMNS]
            .sum(min_count=1)
            .reset_index())


def normalize_enr_historical(raw: pd.DataFrame, end_year: int, era: EraSchema) -> pd.DataFrame:
    """
    Historical school-level files: filter to the year, build categories, aggregate up

    Args:
        raw: All-text table from a multi-year historical file
        end_year: School year end
        era: Era descriptor (race code table, name columns, ENR_TYPE flag)

    Returns:
        Canonical wide enrollment table with T, C, D and S rows
    """
    keys = {header_key(c): c for c in raw.columns}
    allowed = HISTORICAL_BASE_COLUMNS | set(era.name_columns) | ({'ENR_TYPE'} if era.has_enr_type else set())
    unknown = [keys[k] for k in keys if k not in allowed]
    if unknown:
        raise SchemaMappingGap(
            f"enrollment ({era.name}): unrecognized column(s): {', '.join(map(str, unknown))}",
            field='columns', values=unknown,
        )
    df = raw.rename(columns={orig: key for key, orig in keys.items()})
    _require(df, ['ACADEMIC_YEAR', 'CDS_CODE', 'RACE_ETHNICITY', 'GENDER', 'ENR_TOTAL'],
             f"enrollment ({era.name})")

    year_label = historical_year_label(end_year)
    df = df[df['ACADEMIC_YEAR'].str.strip() == year_label]
    logger.info(f"  {len(df):,} rows for {year_label}")
    if df.empty:
        warnings.warn(
            f"enrollment {end_year}: historical file has no rows for {year_label}",
            DataQualityWarning, stacklevel=2,
        )

    if 'ENR_TYPE' in df.columns:
        # C = combined (charter + non-charter); other types would double count
        df = df[df['ENR_TYPE'].str.strip() == 'C']

    # A blank code would pad to the state placeholder
    blank_code = _clean_text(df['CDS_CODE']).isna()
    if blank_code.any():
        raise SchemaMappingGap(
            f"enrollment ({era.name}): {int(blank_code.sum())} school row(s) have no CDS_CODE",
            field='CDS_CODE',
        )
    schools = pd.DataFrame({'cds_code': _cds(cds.pad_code_series, 'enrollment', end_year,
                                             df['CDS_CODE'], cds.CDS_WIDTH)},
                           index=df.index)
    for source, target in era.name_columns.items():
        schools[target] = _clean_text(df[source]) if source in df.columns else None
    for target in HISTORICAL_NAME_COLUMNS:
        if target not in schools.columns:
            schools[target] = None

    schools['total_enrollment'] = safe_numeric(df['ENR_TOTAL'], column='ENR_TOTAL')
    for source, target in HISTORICAL_GRADE_MAP.items():
        schools[target] = safe_numeric(df[source], column=source) if source in df.columns else np.nan

    race = label_codes(_clean_text(df['RACE_ETHNICITY']), era.race_codes, field='RACE_ETHNICITY')
    gender = label_codes(_clean_text(df['GENDER']), GENDER_CODES, field='GENDER')

    by_category = pd.concat([
        schools.assign(reporting_category=TOTAL_CATEGORY),
        schools.assign(reporting_category=race).dropna(subset=['reporting_category']),
        schools.assign(reporting_category=gender).dropna(subset=['reporting_category']),
    ], ignore_index=True)

    school_names = schools.groupby('cds_code', sort=False)[list(HISTORICAL_NAME_COLUMNS)].first()

    school_rows = _sum_levels(by_category, ['cds_code', 'reporting_category'])
    school_rows = school_rows.join(school_names, on='cds_code')
    school_rows = school_rows.join(cds.split_cds_codes(school_rows['cds_code']).drop(columns='cds_code'))
    school_rows['agg_level'] = 'S'

    district_names = (school_rows.groupby(['county_code', 'district_code'], sort=False)
                      [['county_name', 'district_name']].first())
    district_rows = _sum_levels(school_rows, ['county_code', 'district_code', 'reporting_category'])
    district_rows = district_rows.join(district_names, on=['county_code', 'district_code'])
    district_rows['school_code'] = cds.SCHOOL_PLACEHOLDER
    district_rows['school_name'] = None
    district_rows['agg_level'] = 'D'

    county_names = school_rows.groupby('county_code', sort=False)[['county_name']].first()
    county_rows = _sum_levels(school_rows, ['county_code', 'reporting_category'])
    county_rows = county_rows.join(county_names, on='county_code')
    county_rows['district_code'] = cds.DISTRICT_PLACEHOLDER
    county_rows['district_name'] = None
    county_rows['school_code'] = cds.SCHOOL_PLACEHOLDER
    county_rows['school_name'] = None
    county_rows['agg_level'] = 'C'

    state_rows = _sum_levels(school_rows, ['reporting_category'])
    state_rows['county_code'] = cds.COUNTY_PLACEHOLDER
    state_rows['district_code'] = cds.DISTRICT_PLACEHOLDER
    state_rows['school_code'] = cds.SCHOOL_PLACEHOLDER
    for col in HISTORICAL_NAME_COLUMNS:
        state_rows[col] = None
    state_rows['agg_level'] = 'T'

    result = pd.concat([state_rows, county_rows, district_rows, school_rows], ignore_index=True)
    result['cds_code'] = result['county_code'] + result['district_code'] + result['school_code']
    result['end_year'] = end_year
    result['academic_year'] = academic_year_label(end_year)
    result['charter_status'] = 'All'   # no charter split before Census Day files
    result['grade_tk'] = np.nan        # TK not reported before 2024

    result = check_non_negative(result, ENROLLMENT_VALUE_COLUMNS, f"enrollment {end_year}")
    result = result[ENROLLMENT_WIDE_COLUMNS].reset_index(drop=True)
    result.attrs['unmeasured_grades'] = ['grade_tk']
    return result


# =============================================================================
# ASSESSMENT (CAASPP)
# =============================================================================

ASSESSMENT_COLUMN_MAP: Dict[str, str] = {
    'COUNTY_CODE': 'county_code',
    'DISTRICT_CODE': 'district_code',
    'SCHOOL_CODE': 'school_code',
    'TEST_ID': 'test_id',
    'SUBJECT': 'subject',
    'GRADE': 'grade',
    'STUDENT_GROUP_ID': 'student_group_code',
    'STUDENT_GROUP_CODE': 'student_group_code',
    'SUBGROUP_ID': 'student_group_code',
    'MEAN_SCALE_SCORE': 'mean_scale_score',
    'PERCENTAGE_STANDARD_EXCEEDED': 'pct_exceeded',
    'PERCENTAGE_STANDARD_MET': 'pct_met',
    'PERCENTAGE_STANDARD_MET_AND_ABOVE': 'pct_met_and_above',
    'PERCENTAGE_STANDARD_NEARLY_MET': 'pct_nearly_met',
    'PERCENTAGE_STANDARD_NOT_MET': 'pct_not_met',
    'STUDENTS_TESTED': 'n_tested',
    'NUMBER_TESTED': 'n_tested',
    'COUNT_STANDARD_EXCEEDED': 'n_exceeded',
    'NUMBER_EXCEEDED': 'n_exceeded',
    'COUNT_STANDARD_MET': 'n_met',
    'NUMBER_MET': 'n_met',
    'COUNT_STANDARD_MET_AND_ABOVE': 'n_met_and_above',
    'NUMBER_MET_AND_ABOVE': 'n_met_and_above',
    'COUNT_STANDARD_NEARLY_MET': 'n_nearly_met',
    'NUMBER_NEARLY_MET': 'n_nearly_met',
    'COUNT_STANDARD_NOT_MET': 'n_not_met',
    'NUMBER_NOT_MET': 'n_not_met',
}

# Published columns that are understood but not part of the canonical table
ASSESSMENT_IGNORED = (
    'FILLER', 'TEST_YEAR', 'TEST_TYPE', 'TYPE_ID', 'STUDENTS_ENROLLED',
    'STUDENTS_WITH_SCORES', 'CAASPP_REPORTED_ENROLLMENT', 'TOTAL_CAASPP_ENROLLMENT',
    'TOTAL_TESTED_AT_REPORTING_LEVEL', 'TOTAL_TESTED_WITH_SCORES_AT_REPORTING_LEVEL',
    'TOTAL_TESTED_AT_ENTITY_LEVEL', 'TOTAL_TESTED_AT_SUBGROUP_LEVEL',
    'TOTAL_STUDENTS_TESTED', 'TOTAL_STUDENTS_TESTED_WITH_SCORES',
)
ASSESSMENT_IGNORED_PATTERN = r'^AREA_\d+_PERCENTAGE_(ABOVE|NEAR|BELOW|AT_OR_NEAR)_STANDARD$'

TEST_ID_SUBJECTS: Mapping[str, str] = {'1': 'ELA', '2': 'Math'}

_ASSESSMENT_AGG_LEVELS = {'state': 'T', 'county': 'C', 'district': 'D', 'school': 'S'}


def _subject_from_text(value):
    if not isinstance(value, str):
        return value
    if re.search(r'ELA|English|Literacy', value, re.IGNORECASE):
        return 'ELA'
    if re.search(r'Math', value, re.IGNORECASE):
        return 'Math'
    return value


def _pad_grade(value):
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if not text.isdigit():
        raise SchemaMappingGap(f"assessment: unrecognized grade {value!r}", field='grade', values={text})
    return f"{int(text):02d}"


def normalize_assessment(raw: pd.DataFrame, end_year: int, era: EraSchema,
                         entities: Optional[pd.DataFrame] = None) -> pd.DataFrame:
    """
    CAASPP research file -> canonical wide assessment table

    Args:
        raw: All-text table from the caret-delimited research file
        end_year: School year end
        era: Era descriptor
        entities: Optional entities table used to attach names

    Returns:
        Canonical wide assessment table
    """
    df = _rename_strict(raw, ASSESSMENT_COLUMN_MAP, 'assessment',
                        ignored=ASSESSMENT_IGNORED, ignored_pattern=ASSESSMENT_IGNORED_PATTERN)
    _require(df, ['county_code', 'district_code', 'school_code', 'grade'], 'assessment')
    if 'test_id' not in df.columns and 'subject' not in df.columns:
        raise SchemaMappingGap("assessment: neither Test ID nor Subject column present",
                               field='subject')

    codes = _cds(cds.build_cds_codes, 'assessment', end_year,
                 _clean_text(df['county_code']),
                 _clean_text(df['district_code']),
                 _clean_text(df['school_code']))

    result = pd.DataFrame(index=df.index)
    result['end_year'] = end_year
    for col in ('cds_code', 'county_code', 'district_code', 'school_code'):
        result[col] = codes[col]
    result['agg_level'] = codes['cds_code'].map(lambda c: _ASSESSMENT_AGG_LEVELS[cds.identify_agg_level(c)])
    result['county_name'] = None
    result['district_name'] = None
    result['school_name'] = None
    result['grade'] = _clean_text(df['grade']).map(_pad_grade)

    test_id = _clean_text(df['test_id']) if 'test_id' in df.columns else pd.Series(None, index=df.index)
    result['test_id'] = test_id
    if 'subject' in df.columns:
        result['subject'] = _clean_text(df['subject']).map(_subject_from_text)
    else:
        result['subject'] = label_codes(test_id, TEST_ID_SUBJECTS, field='test_id')
    result['student_group_code'] = (_clean_text(df['student_group_code'])
                                    if 'student_group_code' in df.columns else '1')

    label = f"assessment {end_year}"
    check_suppression(df, [c for c in ASSESSMENT_METRIC_COLUMNS if c in df.columns], label)
    for col in ASSESSMENT_METRIC_COLUMNS:
        result[col] = safe_numeric(df[col], column=col) if col in df.columns else np.nan

    check_pct_range(result, ASSESSMENT_PCT_COLUMNS, label)
    result = check_non_negative(result, ASSESSMENT_COUNT_COLUMNS, label)

    if entities is not None and not entities.empty:
        result = attach_entity_names(result, entities)

    if not (result['agg_level'] == 'T').any():
        warnings.warn(f"{label}: no state-level summary rows found", DataQualityWarning, stacklevel=2)

    return result[ASSESSMENT_WIDE_COLUMNS].reset_index(drop=True)


def attach_entity_names(result: pd.DataFrame, entities: pd.DataFrame) -> pd.DataFrame:
    """
    Fill county/district/school names from a CAASPP entities table

    The entities file repeats each entity once per test year/type; the first
    occurrence per CDS code wins.
    """
    keys = {header_key(c): c for c in entities.columns}
    needed = ['COUNTY_CODE', 'DISTRICT_CODE', 'SCHOOL_CODE']
    if not all(k in keys for k in needed):
        logger.warning("Entities table lacks code columns; names not attached")
        return result

    codes = _cds(cds.build_cds_codes, 'assessment entities', None,
                 _clean_text(entities[keys['COUNTY_CODE']]),
                 _clean_text(entities[keys['DISTRICT_CODE']]),
                 _clean_text(entities[keys['SCHOOL_CODE']]))
    names = pd.DataFrame({'cds_code': codes['cds_code']})
    for key, target in (('COUNTY_NAME', 'county_name'), ('DISTRICT_NAME', 'district_name'),
                        ('SCHOOL_NAME', 'school_name')):
        names[target] = _clean_text(entities[keys[key]]) if key in keys else None
    names = names.drop_duplicates('cds_code').set_index('cds_code')

    merged = result.drop(columns=['county_name', 'district_name', 'school_name']).join(names, on='cds_code')
    logger.debug(f"Attached names for {merged['county_name'].notna().sum():,} rows")
    return merged


# =============================================================================
# GRADUATION
# =============================================================================

GRAD_RTYPES = {'X': 'State', 'C': 'County', 'D': 'District', 'S': 'School'}


def normalize_graduation(raw: pd.DataFrame, end_year: int, era: EraSchema) -> pd.DataFrame:
    """
    Dashboard graduation workbook -> one row per entity x student group

    The workbook carries many report columns (prior-year status, change,
    color); only the current-year numerator, denominator and rate are kept.
    """
    df = raw.copy()
    df.columns = [re.sub(r'\s+', '', str(c)).lower() for c in df.columns]
    _require(df, ['cds', 'studentgroup', 'currstatus'], 'graduation')

    codes = _cds(cds.split_cds_codes, 'graduation', end_year, _clean_text(df['cds']))
    rtype = _clean_text(df['rtype']).str.upper() if 'rtype' in df.columns else pd.Series(None, index=df.index)
    unknown = set(rtype.dropna()) - set(GRAD_RTYPES)
    if unknown:
        raise SchemaMappingGap(f"graduation: unrecognized rtype(s): {', '.join(sorted(unknown))}",
                               field='rtype', values=unknown)
    inferred = codes['cds_code'].map(
        lambda c: {'state': 'State', 'county': 'County', 'district': 'District'}.get(
            cds.identify_agg_level(c), 'School'))
    entity_type = rtype.map(GRAD_RTYPES).fillna(inferred)

    def column(name):
        return _clean_text(df[name]) if name in df.columns else pd.Series(None, index=df.index)

    is_state = entity_type == 'State'
    in_district = entity_type.isin(['District', 'School'])
    is_school = entity_type == 'School'

    result = pd.DataFrame({
        'end_year': end_year,
        'type': entity_type,
        'cds_code': codes['cds_code'],
        'district_id': (codes['county_code'] + codes['district_code']).where(in_district, None),
        'district_name': column('districtname').where(in_district, None),
        'school_id': codes['cds_code'].where(is_school, None),
        'school_name': column('schoolname').where(is_school, None),
        'subgroup': label_codes(column('studentgroup').str.upper(), GRAD_STUDENT_GROUP_LABELS,
                                field='studentgroup'),
        'metric': 'combined',       # CA reports a combined four- and five-year rate
        'grad_rate': safe_numeric(df['currstatus'], column='currstatus') / 100.0,
        'cohort_count': safe_numeric(df['currdenom'], column='currdenom') if 'currdenom' in df.columns else np.nan,
        'graduate_count': safe_numeric(df['currnumer'], column='currnumer') if 'currnumer' in df.columns else np.nan,
        'is_state': is_state,
        'is_district': entity_type == 'District',
        'is_school': is_school,
    }, index=df.index)

    label = f"graduation {end_year}"
    check_pct_range(result, ['grad_rate'], label, high=1.0)
    result = check_non_negative(result, ['cohort_count', 'graduate_count'], label)

    missing_rate = result['grad_rate'].isna()
    if missing_rate.any():
        logger.info(f"  Dropping {int(missing_rate.sum()):,} rows without a graduation rate")
    result = result[~missing_rate]

    return result[GRADUATION_COLUMNS].reset_index(drop=True)


# =============================================================================
# DIRECTORY
# =============================================================================

DIRECTORY_COLUMN_MAP: Dict[str, str] = {
    'CDSCODE': 'cds_code',
    'COUNTY': 'county_name',
    'DISTRICT': 'district_name',
    'SCHOOL': 'school_name',
    'SOC': 'school_type',
    'SOCTYPE': 'school_type',
    'STATUSTYPE': 'status',
    'CHARTER': 'charter',
    'STREET': 'street',
    'CITY': 'city',
    'STATE': 'state',
    'ZIP': 'zip',
    'PHONE': 'phone',
    'ADMFNAME': 'adm_first',
    'ADMFNAME1': 'adm_first',
    'ADMLNAME': 'adm_last',
    'ADMLNAME1': 'adm_last',
    'ADMEMAIL': 'email',
    'ADMEMAIL1': 'email',
    'WEBSITE': 'website',
    'LATITUDE': 'latitude',
    'LONGITUDE': 'longitude',
    'OPENDATE': 'open_date',
    'CLOSEDDATE': 'closed_date',
}


def normalize_directory(raw: pd.DataFrame, end_year: Optional[int], era: EraSchema) -> pd.DataFrame:
    """
    School directory workbook -> canonical directory table

    The workbook has dozens of columns (NCES ids, mailing address, grade
    spans); the mapped subset is kept and the rest are ignored.
    """
    keys = {}
    for col in raw.columns:
        target = DIRECTORY_COLUMN_MAP.get(header_key(col).replace('_', ''))
        if target and target not in keys:
            keys[target] = col
    if 'cds_code' not in keys:
        raise SchemaMappingGap("directory: CDSCode column missing", field='cds_code')

    def column(name):
        return _clean_text(raw[keys[name]]) if name in keys else pd.Series(None, index=raw.index, dtype=object)

    result = _cds(cds.split_cds_codes, 'directory', None, column('cds_code'))
    result['agg_level'] = np.where(result['school_code'] == cds.SCHOOL_PLACEHOLDER, 'D', 'S')
    for target in ('county_name', 'district_name', 'school_name', 'street', 'city', 'zip',
                   'phone', 'email', 'website', 'open_date', 'closed_date'):
        result[target] = column(target)
    result['school_type'] = column('school_type')
    result['status'] = column('status')

    charter = column('charter')
    result['charter_status'] = np.where(charter.isna() | charter.isin(['0', 'N', 'No']), 'N', 'Y')
    if 'charter' not in keys:
        result['charter_status'] = None

    result['state'] = column('state').fillna('CA')

    first, last = column('adm_first'), column('adm_last')
    admin = (first.fillna('') + ' ' + last.fillna('')).str.strip()
    result['admin_name'] = admin.where(admin != '', None)

    result['latitude'] = safe_numeric(column('latitude'), column='latitude')
    result['longitude'] = safe_numeric(column('longitude'), column='longitude')

    return result[DIRECTORY_COLUMNS].reset_index(drop=True)


# =============================================================================
# REGISTRATION
# =============================================================================

_NAMES_2008 = {'COUNTY': 'county_name', 'DISTRICT': 'district_name', 'SCHOOL': 'school_name'}
_NAMES_1982 = {'DISTRICT_NAME': 'district_name', 'SCHOOL_NAME': 'school_name'}

register_era(EraSchema(
    dataset='enrollment', name='census_day', first_year=2024, last_year=2099,
    fmt='tsv', normalizer=normalize_enr_census_day,
    min_size=100_000, timeout=300,
))
register_era(EraSchema(
    dataset='enrollment', name='hist_2015', first_year=2015, last_year=2023,
    fmt='tsv', normalizer=normalize_enr_historical,
    min_size=1_000_000, timeout=600,
    race_codes=RACE_CODES_2008, name_columns=_NAMES_2008, has_enr_type=True,
))
register_era(EraSchema(
    dataset='enrollment', name='hist_2008', first_year=2008, last_year=2014,
    fmt='tsv', normalizer=normalize_enr_historical,
    min_size=1_000_000, timeout=600,
    race_codes=RACE_CODES_2008, name_columns=_NAMES_2008,
))
register_era(EraSchema(
    dataset='enrollment', name='hist_1994', first_year=1994, last_year=2007,
    fmt='tsv', normalizer=normalize_enr_historical,
    min_size=1_000_000, timeout=600,
    race_codes=RACE_CODES_1994,
))
register_era(EraSchema(
    dataset='enrollment', name='hist_1982', first_year=1982, last_year=1993,
    fmt='tsv', normalizer=normalize_enr_historical,
    min_size=1_000_000, timeout=600,
    race_codes=RACE_CODES_1982, name_columns=_NAMES_1982,
))
register_era(EraSchema(
    dataset='assessment', name='caaspp_sb', first_year=2015, last_year=2099,
    fmt='caret', normalizer=normalize_assessment,
    min_size=1_000, timeout=600,
))
register_era(EraSchema(
    dataset='graduation', name='dashboard_grad', first_year=2017, last_year=2099,
    fmt='xlsx', normalizer=normalize_graduation,
    min_size=1_000, timeout=120,
))
register_era(EraSchema(
    dataset='directory', name='school_directory', first_year=None, last_year=None,
    fmt='xlsx', normalizer=normalize_directory,
    min_size=100_000, timeout=300,
))
