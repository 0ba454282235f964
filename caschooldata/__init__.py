"""
caschooldata: California school data from CDE and CAASPP

Enrollment (1982+), CAASPP assessment results, graduation rates and the
school directory, fetched from the publishers' download files, normalized to
stable schemas and cached locally.

    import caschooldata as ca

    enr = ca.fetch("enrollment", 2024)
    ca.available_years("graduation")
    ca.parse_identifier("01611920130229")
"""

from caschooldata.cds import CDSCode, parse_identifier
from caschooldata.errors import (
    CaSchoolDataError, DataQualityWarning, MultiYearFetchError, ParseError,
    SchemaMappingGap, TransportError, UnsupportedYear, UpstreamRejection,
)
from caschooldata.pipeline import (
    MultiYearResult, available_years, cache_status, clear_cache, fetch, fetch_multi,
    import_local_assess,
)
from caschooldata.tidy import calc_assess_trend, enr_grade_aggs, summarize_proficiency

__version__ = "0.1.0"

__all__ = [
    'fetch', 'fetch_multi', 'MultiYearResult', 'available_years',
    'clear_cache', 'cache_status', 'parse_identifier', 'CDSCode',
    'import_local_assess', 'enr_grade_aggs', 'summarize_proficiency', 'calc_assess_trend',
    'CaSchoolDataError', 'UnsupportedYear', 'TransportError', 'UpstreamRejection',
    'ParseError', 'SchemaMappingGap', 'MultiYearFetchError', 'DataQualityWarning',
]
