"""
Test fixtures for pytest

Builders for small raw CDE/CAASPP files in their published layouts, an
isolated cache directory, and a mock for requests responses.

Usage:
    pytest tests/ -v
    CASCHOOLDATA_LIVE=true pytest tests/ -m integration

Environment Variables:
    CASCHOOLDATA_LIVE: Set to "true" to run tests that download real files
"""

import io
import os
import zipfile
from unittest.mock import MagicMock

import pytest

from caschooldata.common import Settings

LIVE = os.getenv('CASCHOOLDATA_LIVE', 'false').lower() == 'true'


# --- Environment ---

@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Point the cache at a temp directory and drop any user overrides."""
    for var in ('CASCHOOLDATA_CONFIG', 'CASCHOOLDATA_CACHE_MAX_AGE_DAYS', 'CASCHOOLDATA_USER_AGENT',
                'CASCHOOLDATA_TIMEOUT', 'CASCHOOLDATA_RETRIES', 'CASCHOOLDATA_LOG_LEVEL'):
        monkeypatch.delenv(var, raising=False)
    cache_dir = tmp_path / "cache"
    monkeypatch.setenv('CASCHOOLDATA_CACHE_DIR', str(cache_dir))
    return cache_dir


@pytest.fixture
def settings(tmp_path):
    """Explicit settings with one bounded retry."""
    return Settings(cache_dir=tmp_path / "cache", retries=1)


# --- HTTP ---

@pytest.fixture
def make_response():
    """
    Factory for mock requests responses.

    Usage:
        def test_download(make_response):
            response = make_response(b'data', status_code=200)
    """
    def factory(content=b'', status_code=200, content_type='text/plain'):
        response = MagicMock()
        response.status_code = status_code
        response.headers = {'content-type': content_type}
        response.iter_content.return_value = [content]
        return response
    return factory


def make_zip(members):
    """Build zip archive bytes from {name: text}."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w') as archive:
        for name, text in members.items():
            archive.writestr(name, text)
    return buffer.getvalue()


# --- Census Day enrollment (2024+) ---

GRADE_HEADERS = ['GR_TK', 'GR_KN'] + [f'GR_{n:02d}' for n in range(1, 13)]
CENSUS_HEADERS = [
    'AcademicYear', 'AggregateLevel', 'CountyCode', 'DistrictCode', 'SchoolCode',
    'CountyName', 'DistrictName', 'SchoolName', 'Charter', 'ReportingCategory', 'TOTAL_ENR',
] + GRADE_HEADERS

SCHOOL = {'AggregateLevel': 'S', 'CountyCode': '01', 'DistrictCode': '61192',
          'SchoolCode': '0130229', 'CountyName': 'Alameda',
          'DistrictName': 'Oakland Unified', 'SchoolName': 'Small Elementary'}


def make_census_day(rows, academic_year='2023-24'):
    """Tab-delimited Census Day text; unspecified grade cells are '0'."""
    lines = ['\t'.join(CENSUS_HEADERS)]
    for row in rows:
        values = {h: '' for h in CENSUS_HEADERS}
        values.update({h: '0' for h in GRADE_HEADERS})
        values.update({'AcademicYear': academic_year, 'Charter': 'All',
                       'ReportingCategory': 'TA', 'TOTAL_ENR': '0'})
        values.update(row)
        lines.append('\t'.join(values[h] for h in CENSUS_HEADERS))
    return '\n'.join(lines) + '\n'


@pytest.fixture
def census_day_rows():
    """State, county, district and one small school with a suppressed cell."""
    return [
        {'AggregateLevel': 'T', 'CountyCode': '00', 'TOTAL_ENR': '5837690',
         'GR_01': '400000', 'GR_09': '450000'},
        {'AggregateLevel': 'C', 'CountyCode': '01', 'CountyName': 'Alameda',
         'TOTAL_ENR': '200000', 'GR_01': '15000'},
        {'AggregateLevel': 'D', 'CountyCode': '01', 'DistrictCode': '61192',
         'CountyName': 'Alameda', 'DistrictName': 'Oakland Unified', 'TOTAL_ENR': '34000',
         'GR_01': '2500', 'GR_09': '2600', 'GR_10': '2500', 'GR_11': '2400', 'GR_12': '2300'},
        dict(SCHOOL, ReportingCategory='TA', TOTAL_ENR='120', GR_01='12', GR_02='0'),
        dict(SCHOOL, ReportingCategory='RE_H', TOTAL_ENR='60', GR_01='*', GR_02='0'),
        dict(SCHOOL, ReportingCategory='RE_W', TOTAL_ENR='20', GR_01='0', GR_02='0'),
    ]


@pytest.fixture
def census_day_text(census_day_rows):
    return make_census_day(census_day_rows)


# --- Historical enrollment (1982-2023) ---

HIST_GRADES = ['GR_KN'] + [f'GR_{n}' for n in range(1, 13)]

HIST_LAYOUTS = {
    'hist_2015': ['CDS_CODE', 'COUNTY', 'DISTRICT', 'SCHOOL', 'ACADEMIC_YEAR', 'ENR_TYPE',
                  'RACE_ETHNICITY', 'GENDER'],
    'hist_2008': ['CDS_CODE', 'COUNTY', 'DISTRICT', 'SCHOOL', 'ACADEMIC_YEAR',
                  'RACE_ETHNICITY', 'GENDER'],
    'hist_1994': ['CDS_CODE', 'ACADEMIC_YEAR', 'RACE_ETHNICITY', 'GENDER'],
    'hist_1982': ['CDS_CODE', 'DISTRICT_NAME', 'SCHOOL_NAME', 'ACADEMIC_YEAR',
                  'RACE_ETHNICITY', 'GENDER'],
}
HIST_TAIL = HIST_GRADES + ['UNGR_ELM', 'UNGR_SEC', 'ENR_TOTAL', 'ADULT']


def make_historical(rows, layout='hist_2015'):
    """Tab-delimited historical school file; unspecified counts are '0'."""
    headers = HIST_LAYOUTS[layout] + HIST_TAIL
    lines = ['\t'.join(headers)]
    for row in rows:
        values = {h: '0' for h in HIST_TAIL}
        values.update({'COUNTY': 'Alameda', 'DISTRICT': '', 'SCHOOL': '',
                       'DISTRICT_NAME': '', 'SCHOOL_NAME': '', 'ENR_TYPE': 'C'})
        values.update(row)
        lines.append('\t'.join(values[h] for h in headers))
    return '\n'.join(lines) + '\n'


@pytest.fixture
def historical_rows():
    """2018-19 rows for three schools in two counties, plus rows that must be filtered."""
    school_a = {'CDS_CODE': '01611920130229', 'DISTRICT': 'Oakland Unified',
                'SCHOOL': 'School A', 'ACADEMIC_YEAR': '2018-19'}
    school_b = {'CDS_CODE': '01612590106906', 'DISTRICT': 'Piedmont City',
                'SCHOOL': 'School B', 'ACADEMIC_YEAR': '2018-19'}
    school_c = {'CDS_CODE': '19647331933746', 'COUNTY': 'Los Angeles',
                'DISTRICT': 'Los Angeles Unified', 'SCHOOL': 'School C',
                'ACADEMIC_YEAR': '2018-19'}
    return [
        dict(school_a, RACE_ETHNICITY='5', GENDER='F', GR_KN='10', GR_1='5', ENR_TOTAL='15'),
        dict(school_a, RACE_ETHNICITY='5', GENDER='M', GR_KN='8', GR_1='2', ENR_TOTAL='10'),
        dict(school_a, RACE_ETHNICITY='7', GENDER='F', GR_KN='4', ENR_TOTAL='4'),
        # Non-combined enrollment type is excluded
        dict(school_a, RACE_ETHNICITY='7', GENDER='F', ENR_TYPE='P', GR_KN='100', ENR_TOTAL='100'),
        # Other school year in the same multi-year file
        dict(school_a, RACE_ETHNICITY='7', GENDER='F', ACADEMIC_YEAR='2017-18', ENR_TOTAL='999'),
        dict(school_b, RACE_ETHNICITY='6', GENDER='M', GR_1='3', ENR_TOTAL='3'),
        dict(school_c, RACE_ETHNICITY='2', GENDER='F', GR_12='7', ENR_TOTAL='7'),
    ]


@pytest.fixture
def historical_text(historical_rows):
    return make_historical(historical_rows)


# --- CAASPP assessment ---

CAASPP_HEADERS = [
    'County Code', 'District Code', 'School Code', 'Filler', 'Test Year', 'Student Group ID',
    'Test Type', 'Total Tested at Reporting Level', 'Total Tested with Scores at Reporting Level',
    'Grade', 'Test ID', 'Students Enrolled', 'Students Tested', 'Mean Scale Score',
    'Percentage Standard Exceeded', 'Percentage Standard Met', 'Percentage Standard Met and Above',
    'Percentage Standard Nearly Met', 'Percentage Standard Not Met', 'Students with Scores',
    'Area 1 Percentage Above Standard', 'Type ID',
]


def make_caaspp(rows):
    """Caret-delimited research file text."""
    lines = ['^'.join(CAASPP_HEADERS)]
    for row in rows:
        values = {h: '' for h in CAASPP_HEADERS}
        values.update({'Test Year': '2023', 'Student Group ID': '1', 'Test Type': 'B'})
        values.update(row)
        lines.append('^'.join(values[h] for h in CAASPP_HEADERS))
    return '\n'.join(lines) + '\n'


@pytest.fixture
def caaspp_text():
    return make_caaspp([
        {'County Code': '00', 'District Code': '00000', 'School Code': '0000000',
         'Grade': '11', 'Test ID': '1', 'Students Tested': '420000', 'Mean Scale Score': '2600.5',
         'Percentage Standard Exceeded': '25.10', 'Percentage Standard Met': '30.20',
         'Percentage Standard Met and Above': '55.30', 'Percentage Standard Nearly Met': '20.00',
         'Percentage Standard Not Met': '24.70', 'Type ID': '04'},
        {'County Code': '01', 'District Code': '61192', 'School Code': '0000000',
         'Grade': '3', 'Test ID': '2', 'Students Tested': '2500', 'Mean Scale Score': '2410.0',
         'Percentage Standard Exceeded': '10.00', 'Percentage Standard Met': '20.00',
         'Percentage Standard Met and Above': '30.00', 'Percentage Standard Nearly Met': '30.00',
         'Percentage Standard Not Met': '40.00', 'Type ID': '06'},
        {'County Code': '01', 'District Code': '61192', 'School Code': '0130229',
         'Grade': '3', 'Test ID': '2', 'Students Tested': '8', 'Mean Scale Score': '*',
         'Percentage Standard Exceeded': '*', 'Percentage Standard Met': '*',
         'Percentage Standard Met and Above': '*', 'Percentage Standard Nearly Met': '*',
         'Percentage Standard Not Met': '*', 'Type ID': '07'},
    ])


@pytest.fixture
def entities_text():
    headers = ['County Code', 'District Code', 'School Code', 'Filler', 'Test Year', 'Type Id',
               'County Name', 'District Name', 'School Name', 'Zip Code']
    rows = [
        ['01', '61192', '0000000', '', '2023', '06', 'Alameda', 'Oakland Unified', '', ''],
        ['01', '61192', '0130229', '', '2023', '07', 'Alameda', 'Oakland Unified', 'Small Elementary', '94601'],
    ]
    return '\n'.join('^'.join(r) for r in [headers] + rows) + '\n'
