"""
Static code tables for CDE data files

All tables are read-only mappings built once at import. A label, once
published for a code, keeps its meaning; new codes get new entries. Bump
CODE_TABLE_VERSION whenever a label changes so cached outputs built with
the old labels are invalidated.

Usage:
    from caschooldata.codes import REPORTING_CATEGORY_LABELS, label_codes

    labels = label_codes(df["reporting_category"], REPORTING_CATEGORY_LABELS,
                         field="reporting_category")
"""

from types import MappingProxyType
from typing import Mapping, Tuple

import pandas as pd

from caschooldata.errors import SchemaMappingGap

CODE_TABLE_VERSION = 1

# =============================================================================
# REPORTING CATEGORIES (enrollment)
# =============================================================================

TOTAL_CATEGORY = 'TA'

REPORTING_CATEGORY_LABELS: Mapping[str, str] = MappingProxyType({
    # Total
    'TA': 'total_enrollment',

    # Race/Ethnicity
    'RE_A': 'asian',
    'RE_B': 'black',
    'RE_D': 'not_reported',
    'RE_F': 'filipino',
    'RE_H': 'hispanic',
    'RE_I': 'native_american',
    'RE_P': 'pacific_islander',
    'RE_T': 'multiracial',
    'RE_W': 'white',

    # Gender
    'GN_F': 'female',
    'GN_M': 'male',
    'GN_X': 'nonbinary',
    'GN_Z': 'gender_missing',

    # Student groups
    'SG_EL': 'lep',
    'SG_DS': 'special_ed',
    'SG_SD': 'econ_disadv',
    'SG_MG': 'migrant',
    'SG_FS': 'foster_youth',
    'SG_HM': 'homeless',

    # English Language Acquisition Status
    'ELAS_ADEL': 'adult_el',
    'ELAS_EL': 'english_learner',
    'ELAS_EO': 'english_only',
    'ELAS_IFEP': 'initial_fluent_english',
    'ELAS_MISS': 'elas_missing',
    'ELAS_RFEP': 'reclassified_fluent_english',
    'ELAS_TBD': 'elas_to_be_determined',

    # Age ranges
    'AR_03': 'age_0_3',
    'AR_0418': 'age_4_18',
    'AR_1922': 'age_19_22',
    'AR_2329': 'age_23_29',
    'AR_3039': 'age_30_39',
    'AR_4049': 'age_40_49',
    'AR_50P': 'age_50_plus',
})

# Historical race/ethnicity codes, by era, translated to current codes
RACE_CODES_2008: Mapping[str, str] = MappingProxyType({
    '0': 'RE_D',  # Not reported
    '1': 'RE_I',  # American Indian or Alaska Native
    '2': 'RE_A',  # Asian
    '3': 'RE_P',  # Pacific Islander
    '4': 'RE_F',  # Filipino
    '5': 'RE_H',  # Hispanic or Latino
    '6': 'RE_B',  # African American
    '7': 'RE_W',  # White
    '8': 'RE_T',  # Two or more races
    '9': 'RE_D',  # Not reported
})

RACE_CODES_1994: Mapping[str, str] = MappingProxyType({
    '1': 'RE_I',
    '2': 'RE_A',
    '3': 'RE_P',
    '4': 'RE_F',
    '5': 'RE_H',
    '6': 'RE_B',
    '7': 'RE_W',
    '8': 'RE_T',  # Multiple or no response
})

RACE_CODES_1982: Mapping[str, str] = MappingProxyType({
    'A': 'RE_I',  # American Indian
    'B': 'RE_B',  # Black
    'C': 'RE_A',  # Chinese
    'F': 'RE_F',  # Filipino
    'H': 'RE_H',  # Hispanic
    'I': 'RE_A',  # Indochinese
    'J': 'RE_A',  # Japanese
    'K': 'RE_A',  # Korean
    'O': 'RE_D',  # Other
    'P': 'RE_P',  # Pacific Islander
    'W': 'RE_W',  # White
})

GENDER_CODES: Mapping[str, str] = MappingProxyType({
    'M': 'GN_M',
    'F': 'GN_F',
    'X': 'GN_X',
    'Z': 'GN_Z',
})

# =============================================================================
# GRADUATION STUDENT GROUPS
# =============================================================================

GRAD_STUDENT_GROUP_LABELS: Mapping[str, str] = MappingProxyType({
    'ALL': 'all',
    'AA': 'black',
    'AI': 'native_american',
    'AS': 'asian',
    'FI': 'filipino',
    'HI': 'hispanic',
    'PI': 'pacific_islander',
    'WH': 'white',
    'MR': 'multiracial',
    'EL': 'english_learner',
    'LTEL': 'long_term_english_learner',
    'SED': 'low_income',
    'SWD': 'special_ed',
    'FOS': 'foster_care',
    'HOM': 'homeless',
})

# =============================================================================
# AGGREGATION LEVELS
# =============================================================================

AGG_LEVEL_TYPES: Mapping[str, str] = MappingProxyType({
    'T': 'State',
    'C': 'County',
    'D': 'District',
    'S': 'Campus',
})

# =============================================================================
# GRADES
# =============================================================================

# Canonical wide grade column -> tidy grade_level
GRADE_COLUMNS: Mapping[str, str] = MappingProxyType({
    'grade_tk': 'TK',
    'grade_k': 'K',
    'grade_01': '01',
    'grade_02': '02',
    'grade_03': '03',
    'grade_04': '04',
    'grade_05': '05',
    'grade_06': '06',
    'grade_07': '07',
    'grade_08': '08',
    'grade_09': '09',
    'grade_10': '10',
    'grade_11': '11',
    'grade_12': '12',
})

TOTAL_GRADE = 'TOTAL'

_TK_8: Tuple[str, ...] = ('TK', 'K', '01', '02', '03', '04', '05', '06', '07', '08')
_HS: Tuple[str, ...] = ('09', '10', '11', '12')

GRADE_BANDS: Mapping[str, Tuple[str, ...]] = MappingProxyType({
    'K8': _TK_8,
    'HS': _HS,
    'K12': _TK_8 + _HS,
    'ELEM': ('TK', 'K', '01', '02', '03', '04', '05'),
    'MIDDLE': ('06', '07', '08'),
    'HIGH': _HS,
})


def label_codes(codes: pd.Series, table: Mapping[str, str], field: str) -> pd.Series:
    """
    Map source codes to labels, failing on any code the table does not know

    Missing values stay missing. An unknown code raises rather than passing
    through, since an unlabeled subgroup silently drops out of every filter
    that keys on labels.

    Args:
        codes: Series of source codes
        table: Code-to-label mapping
        field: Field name for the error message

    Returns:
        Series of labels

    Raises:
        SchemaMappingGap: If any non-missing code is not in the table
    """
    cleaned = codes.astype(object).map(lambda v: v.strip() if isinstance(v, str) else v)
    present = cleaned.dropna()
    unknown = set(present[~present.isin(list(table.keys()))].unique())
    if unknown:
        raise SchemaMappingGap(
            f"Unrecognized {field} code(s): {', '.join(sorted(map(str, unknown)))}",
            field=field,
            values=unknown,
        )
    return cleaned.map(table)
