"""
California CDS Code Utilities

California CDS Format:
- 14 digits: CCDDDDDSSSSSSS
  - CC: County code (2 digits)
  - DDDDD: District code (5 digits)
  - SSSSSSS: School code (7 digits)

Aggregate rows use all-zero placeholders for the segments below them:
- State:    00000000000000
- County:   CC000000000000
- District: CCDDDDD0000000

A missing segment on an aggregate row is replaced with its placeholder
before any padding, so a missing value can never leak into the code as
text ("NA", "nan", "None").

Usage:
    from caschooldata.cds import parse_identifier, pad_code, build_cds_codes

    parse_identifier("01611920130229")
    # CDSCode(cds_code='01611920130229', county_code='01',
    #         district_code='61192', school_code='0130229', level='school')
"""

import logging
import re
from typing import NamedTuple, Optional

import pandas as pd

logger = logging.getLogger(__name__)

COUNTY_WIDTH = 2
DISTRICT_WIDTH = 5
SCHOOL_WIDTH = 7
CDS_WIDTH = COUNTY_WIDTH + DISTRICT_WIDTH + SCHOOL_WIDTH

COUNTY_PLACEHOLDER = '0' * COUNTY_WIDTH
DISTRICT_PLACEHOLDER = '0' * DISTRICT_WIDTH
SCHOOL_PLACEHOLDER = '0' * SCHOOL_WIDTH

_DIGITS = re.compile(r'^\d+$')
_FLOAT_INT = re.compile(r'^(\d+)\.0+$')


class CDSCode(NamedTuple):
    """Decomposed 14-digit CDS code."""
    cds_code: str
    county_code: str
    district_code: str
    school_code: str
    level: str


def _is_missing(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() in ('', 'NA', 'nan', 'None', '<NA>')
    return bool(pd.isna(value))


def pad_code(value, width: int, placeholder: Optional[str] = None) -> str:
    """
    Zero-pad one CDS segment to a fixed width

    Missing values are replaced by the placeholder (all zeros by default)
    before padding. Integers that went through a float column ("1234.0")
    are accepted.

    Args:
        value: Raw segment (str, int, float, or missing)
        width: Target width
        placeholder: Value used when the input is missing

    Returns:
        Digit string of exactly ``width`` characters

    Raises:
        ValueError: If the value contains non-digits or is too long

    Examples:
        >>> pad_code('1', 2)
        '01'
        >>> pad_code(None, 5)
        '00000'
        >>> pad_code(61192.0, 5)
        '61192'
    """
    if _is_missing(value):
        return placeholder if placeholder is not None else '0' * width

    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"CDS segment must be a whole number: {value!r}")
        text = str(int(value))
    else:
        text = str(value).strip()
        match = _FLOAT_INT.match(text)
        if match:
            text = match.group(1)

    if not _DIGITS.match(text):
        raise ValueError(f"CDS segment must contain only digits: {value!r}")
    if len(text) > width:
        raise ValueError(f"CDS segment {text!r} is longer than {width} digits")

    return text.zfill(width)


def identify_agg_level(cds_code: str) -> str:
    """
    Determine the aggregation level of a CDS code from its placeholders

    Returns:
        'state', 'county', 'district', or 'school'
    """
    code = pad_code(cds_code, CDS_WIDTH)
    county = code[:COUNTY_WIDTH]
    district = code[COUNTY_WIDTH:COUNTY_WIDTH + DISTRICT_WIDTH]
    school = code[COUNTY_WIDTH + DISTRICT_WIDTH:]

    if school != SCHOOL_PLACEHOLDER:
        return 'school'
    if district != DISTRICT_PLACEHOLDER:
        return 'district'
    if county != COUNTY_PLACEHOLDER:
        return 'county'
    return 'state'


def parse_identifier(id_string) -> CDSCode:
    """
    Split a CDS code into county, district and school segments

    Short codes are left-padded with zeros (leading zeros are often lost
    when a CDS column is read as a number).

    Args:
        id_string: CDS code, up to 14 digits

    Returns:
        CDSCode with the three segments and the aggregation level

    Raises:
        ValueError: If the code is missing, non-numeric or longer than 14 digits

    Examples:
        >>> parse_identifier('19647330000000').level
        'district'
    """
    if _is_missing(id_string):
        raise ValueError("CDS code is missing")

    code = pad_code(id_string, CDS_WIDTH)
    return CDSCode(
        cds_code=code,
        county_code=code[:COUNTY_WIDTH],
        district_code=code[COUNTY_WIDTH:COUNTY_WIDTH + DISTRICT_WIDTH],
        school_code=code[COUNTY_WIDTH + DISTRICT_WIDTH:],
        level=identify_agg_level(code),
    )


def pad_code_series(series: pd.Series, width: int) -> pd.Series:
    """
    Vectorized pad_code; missing values become the all-zero placeholder

    Raises:
        ValueError: On the first malformed value. The index label of the
            offending row is kept on the exception as ``row``.
    """
    padded = []
    for label, value in series.items():
        try:
            padded.append(pad_code(value, width))
        except ValueError as e:
            e.row = label
            raise
    return pd.Series(padded, index=series.index, dtype=object)


def build_cds_codes(county: pd.Series, district: pd.Series, school: pd.Series) -> pd.DataFrame:
    """
    Build padded segment columns and the joined 14-digit code

    Args:
        county: County codes
        district: District codes (missing on state/county rows)
        school: School codes (missing on state/county/district rows)

    Returns:
        DataFrame with county_code, district_code, school_code, cds_code
    """
    out = pd.DataFrame({
        'county_code': pad_code_series(county, COUNTY_WIDTH),
        'district_code': pad_code_series(district, DISTRICT_WIDTH),
        'school_code': pad_code_series(school, SCHOOL_WIDTH),
    }, index=county.index)
    out['cds_code'] = out['county_code'] + out['district_code'] + out['school_code']
    return out


def split_cds_codes(cds: pd.Series) -> pd.DataFrame:
    """Vectorized parse of a CDS column into padded segment columns."""
    codes = pad_code_series(cds, CDS_WIDTH)
    return pd.DataFrame({
        'cds_code': codes,
        'county_code': codes.str[:COUNTY_WIDTH],
        'district_code': codes.str[COUNTY_WIDTH:COUNTY_WIDTH + DISTRICT_WIDTH],
        'school_code': codes.str[COUNTY_WIDTH + DISTRICT_WIDTH:],
    }, index=cds.index)
