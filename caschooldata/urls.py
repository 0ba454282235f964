"""
Download URL catalog for CDE and CAASPP data files

Every builder either returns exactly one URL or raises UnsupportedYear. No
builder guesses a filename for a year it does not know about.

Year convention: ``end_year`` is the calendar year in which the school year
ends (2024 = the 2023-24 school year).

Usage:
    from caschooldata.urls import build_enr_url, available_years

    build_enr_url(2024)
    # 'https://www3.cde.ca.gov/demo-downloads/census/cdenroll2324-v2.txt'
    available_years("assessment")
    # [2015, 2016, 2017, 2018, 2019, 2021, 2022, 2023, 2024, 2025]
"""

import logging
from typing import Dict, List, Tuple

from caschooldata.errors import UnsupportedYear

logger = logging.getLogger(__name__)

CDE_DOWNLOAD_BASE = "https://www3.cde.ca.gov/demo-downloads"
CAASPP_BASE_URL = "https://caaspp-elpac.ets.org/caaspp/researchfiles"
GRAD_BASE_URL = "https://www3.cde.ca.gov/researchfiles/cadashboard"
DIRECTORY_URL = "https://www.cde.ca.gov/SchoolDirectory/report?rid=dl1&tp=xlsx&ict=Y"

# =============================================================================
# ENROLLMENT
# =============================================================================

ENROLLMENT_YEARS = tuple(range(1982, 2026))
FIRST_CENSUS_DAY_YEAR = 2024

# Census Day files re-released with a version suffix
CENSUS_DAY_SUFFIX: Dict[int, str] = {
    2024: "-v2",
}

CUMULATIVE_YEARS = tuple(range(2018, 2026))

# Historical school-level files; each covers a range of end years
HISTORICAL_ENR_FILES: Tuple[Tuple[int, int, str], ...] = (
    (1982, 1993, "enr198192-v2.txt"),
    (1994, 1998, "enr199397-v2.txt"),
    (1999, 2007, "enr199806-v2.txt"),
    (2008, 2014, "enr200713-v3.txt"),
    (2015, 2017, "enr201416-v2.txt"),
    (2018, 2020, "enr201719-v2.txt"),
    (2021, 2023, "enr202022-v2.txt"),
)


def _year_code(end_year: int) -> str:
    """2024 -> '2324'"""
    return f"{(end_year - 1) % 100:02d}{end_year % 100:02d}"


def build_enr_url(end_year: int) -> str:
    """
    Build the enrollment file URL for a year

    Census Day files (2024+) are one file per year. Earlier years live in
    multi-year historical files; see build_historical_enr_url.

    Args:
        end_year: School year end

    Returns:
        URL string

    Raises:
        UnsupportedYear: If the year is outside the catalog
    """
    if end_year not in ENROLLMENT_YEARS:
        raise UnsupportedYear(
            "enrollment", end_year,
            f"No known URL for year {end_year}, dataset 'enrollment' "
            f"(supported: {ENROLLMENT_YEARS[0]}-{ENROLLMENT_YEARS[-1]})"
        )
    if end_year < FIRST_CENSUS_DAY_YEAR:
        return build_historical_enr_url(end_year)

    suffix = CENSUS_DAY_SUFFIX.get(end_year, "")
    return f"{CDE_DOWNLOAD_BASE}/census/cdenroll{_year_code(end_year)}{suffix}.txt"


def build_historical_enr_url(end_year: int) -> str:
    """
    Build the URL of the multi-year historical file covering a year

    Raises:
        UnsupportedYear: If no historical file covers the year
    """
    for first, last, filename in HISTORICAL_ENR_FILES:
        if first <= end_year <= last:
            return f"{CDE_DOWNLOAD_BASE}/enrsch/{filename}"
    raise UnsupportedYear(
        "enrollment", end_year,
        f"No historical enrollment file for year {end_year} (supported: 1982-2023)"
    )


def build_cumulative_enr_url(end_year: int) -> str:
    """
    Build the cumulative enrollment file URL

    Cumulative enrollment counts every student enrolled at any point in the
    year, not just on Census Day.

    Raises:
        UnsupportedYear: If the year is outside the catalog
    """
    if end_year not in CUMULATIVE_YEARS:
        raise UnsupportedYear("cumulative_enrollment", end_year)
    return f"{CDE_DOWNLOAD_BASE}/ce/cenroll{_year_code(end_year)}.txt"


def historical_year_label(end_year: int) -> str:
    """
    ACADEMIC_YEAR value used inside the historical files

    Examples:
        >>> historical_year_label(1990)
        '8990'
        >>> historical_year_label(2020)
        '2019-20'
    """
    if end_year <= 1993:
        return f"{(end_year - 1) % 100:02d}{end_year % 100:02d}"
    return f"{end_year - 1}-{end_year % 100:02d}"


# =============================================================================
# ASSESSMENT (CAASPP)
# =============================================================================

CAASPP_VERSIONS: Dict[int, str] = {
    2015: "v3",
    2016: "v3",
    2017: "v2",
    2018: "v3",
    2019: "v4",
    2020: "v1",
    2021: "v2",
    2022: "v1",
    2023: "v1",
    2024: "v1",
    2025: "v1",
}

COVID_EXCLUDED_YEARS = frozenset({2020})
ASSESSMENT_YEARS = tuple(y for y in sorted(CAASPP_VERSIONS) if y not in COVID_EXCLUDED_YEARS)

CAASPP_FILE_TYPES = ("1", "all", "all_ela", "all_math")
CAASPP_FORMATS = ("csv", "ascii")


def _check_assessment_year(end_year: int):
    if end_year in COVID_EXCLUDED_YEARS:
        raise UnsupportedYear(
            "assessment", end_year,
            f"CAASPP data for {end_year} is not available: no statewide testing was "
            f"administered in spring {end_year} (COVID-19). Use 2019 or 2021+."
        )
    if end_year not in ASSESSMENT_YEARS:
        raise UnsupportedYear(
            "assessment", end_year,
            f"No known URL for year {end_year}, dataset 'assessment' "
            f"(supported: {', '.join(map(str, ASSESSMENT_YEARS))})"
        )


def caaspp_file_type(subject: str = "Both", student_group: str = "ALL") -> str:
    """
    Pick the research file type for a subject / student group request

    Examples:
        >>> caaspp_file_type("Both", "ALL")
        '1'
        >>> caaspp_file_type("ELA", "GROUPS")
        'all_ela'
    """
    if student_group not in ("ALL", "GROUPS"):
        raise ValueError(f"student_group must be 'ALL' or 'GROUPS', got {student_group!r}")
    if subject not in ("Both", "ELA", "Math"):
        raise ValueError(f"subject must be 'Both', 'ELA' or 'Math', got {subject!r}")

    if student_group == "ALL":
        return "1"
    return {"ELA": "all_ela", "Math": "all_math"}.get(subject, "all")


def build_caaspp_url(end_year: int, file_type: str = "1", fmt: str = "csv") -> str:
    """
    Build the CAASPP research data file URL

    Args:
        end_year: School year end
        file_type: "1" (all students), "all", "all_ela" or "all_math"
        fmt: "csv" (caret-delimited) or "ascii" (fixed-width)

    Returns:
        URL string

    Raises:
        UnsupportedYear: For 2020 and years outside the catalog
        ValueError: For an unknown file type or format
    """
    _check_assessment_year(end_year)
    if file_type not in CAASPP_FILE_TYPES:
        raise ValueError(f"file_type must be one of {CAASPP_FILE_TYPES}, got {file_type!r}")
    if fmt not in CAASPP_FORMATS:
        raise ValueError(f"fmt must be one of {CAASPP_FORMATS}, got {fmt!r}")

    version = CAASPP_VERSIONS[end_year]
    if file_type == "1":
        filename = f"sb_ca{end_year}_1_{fmt}_{version}.zip"
    elif file_type == "all":
        filename = f"sb_ca{end_year}_all_{fmt}_{version}.zip"
    elif file_type == "all_ela":
        filename = f"sb_ca{end_year}_all_{fmt}_ela_{version}.zip"
    else:
        filename = f"sb_ca{end_year}_all_{fmt}_math_{version}.zip"

    return f"{CAASPP_BASE_URL}/{filename}"


def build_entities_url(end_year: int, fmt: str = "csv") -> str:
    """Build the CAASPP entities (names) file URL."""
    _check_assessment_year(end_year)
    if fmt not in CAASPP_FORMATS:
        raise ValueError(f"fmt must be one of {CAASPP_FORMATS}, got {fmt!r}")
    return f"{CAASPP_BASE_URL}/sb_ca{end_year}entities_{fmt}.zip"


# =============================================================================
# GRADUATION
# =============================================================================

GRADUATION_YEARS = (2017, 2018, 2019, 2022, 2024, 2025)


def build_grad_url(end_year: int) -> str:
    """
    Build the Dashboard graduation rate workbook URL

    Raises:
        UnsupportedYear: If no workbook was published for the year
    """
    if end_year not in GRADUATION_YEARS:
        raise UnsupportedYear(
            "graduation", end_year,
            f"No known URL for year {end_year}, dataset 'graduation' "
            f"(supported: {', '.join(map(str, GRADUATION_YEARS))})"
        )
    return f"{GRAD_BASE_URL}/graddownload{end_year}.xlsx"


# =============================================================================
# DIRECTORY
# =============================================================================

def build_directory_url() -> str:
    """Current school directory workbook (includes administrator names)."""
    return DIRECTORY_URL


# =============================================================================
# YEAR CATALOG
# =============================================================================

YEAR_CATALOG: Dict[str, Tuple[int, ...]] = {
    "enrollment": ENROLLMENT_YEARS,
    "assessment": ASSESSMENT_YEARS,
    "graduation": GRADUATION_YEARS,
    "directory": (),
}


def available_years(dataset: str) -> List[int]:
    """
    Get the supported end years for a dataset, ascending

    The directory is a current snapshot and has no years.

    Raises:
        ValueError: If the dataset name is unknown
    """
    if dataset not in YEAR_CATALOG:
        raise ValueError(f"Unknown dataset {dataset!r}; expected one of {sorted(YEAR_CATALOG)}")
    return list(YEAR_CATALOG[dataset])
