"""
Tests for the format parsers.
"""

import io

import pandas as pd
import pytest

from caschooldata.errors import ParseError
from caschooldata.parsers import (
    parse_caret, parse_excel, parse_fixed_width, parse_tsv,
)


class TestParseTsv:
    """Tests for tab-delimited parsing."""

    def test_everything_stays_text(self):
        """Codes keep leading zeros; the suppression marker and blanks survive."""
        text = "CountyCode\tSchoolCode\tGR_01\tGR_02\n01\t0130229\t*\t\n"
        df = parse_tsv(text.encode("latin1"))
        row = df.iloc[0]
        assert row["CountyCode"] == "01"
        assert row["SchoolCode"] == "0130229"
        assert row["GR_01"] == "*"
        assert row["GR_02"] == ""

    def test_na_text_is_not_missing(self):
        """A school literally named 'NA' is not read as missing."""
        df = parse_tsv(b"SchoolName\tTOTAL_ENR\nNA\t5\n")
        assert df.iloc[0]["SchoolName"] == "NA"

    def test_latin1_names(self):
        df = parse_tsv("SchoolName\nEscuela Nu\xf1ez\n".encode("latin1"))
        assert df.iloc[0]["SchoolName"] == "Escuela Nu\xf1ez"

    def test_bare_quotes_in_names(self):
        """Unbalanced quotes in names do not swallow following rows."""
        df = parse_tsv(b'SchoolName\tTOTAL_ENR\nThe "Academy\t10\nOther\t5\n')
        assert len(df) == 2
        assert df.iloc[0]["SchoolName"] == 'The "Academy'

    def test_wrong_column_count_raises(self):
        """A row with more fields than the header raises ParseError with the line."""
        with pytest.raises(ParseError) as exc_info:
            parse_tsv(b"a\tb\n1\t2\n3\t4\t5\n")
        assert exc_info.value.row == 3

    def test_empty_file_raises(self):
        with pytest.raises(ParseError):
            parse_tsv(b"")

    def test_headers_stripped(self):
        df = parse_tsv(b" County Code \tTOTAL_ENR\n01\t5\n")
        assert list(df.columns) == ["County Code", "TOTAL_ENR"]


class TestParseCaret:
    """Tests for caret-delimited parsing."""

    def test_caret_fields(self):
        df = parse_caret(b"County Code^Mean Scale Score\n01^2410.5\n00^*\n")
        assert list(df["County Code"]) == ["01", "00"]
        assert list(df["Mean Scale Score"]) == ["2410.5", "*"]


class TestParseFixedWidth:
    """Tests for fixed-width parsing."""

    def test_layout(self):
        text = "0161192013022903\n1964733000000011\n"
        df = parse_fixed_width(text, [(0, 2), (2, 7), (7, 14), (14, 16)],
                               ["county", "district", "school", "grade"])
        assert df.iloc[0].tolist() == ["01", "61192", "0130229", "03"]
        assert df.iloc[1]["school"] == "0000000"

    def test_layout_mismatch(self):
        with pytest.raises(ParseError):
            parse_fixed_width("0161192", [(0, 2)], ["county", "district"])


class TestParseExcel:
    """Tests for workbook parsing."""

    def test_reads_cells_as_text(self):
        buffer = io.BytesIO()
        pd.DataFrame({"CDSCode": ["01611920130229"], "Charter": ["Y"]}).to_excel(
            buffer, index=False, engine="openpyxl")
        df = parse_excel(buffer.getvalue())
        assert df.iloc[0]["CDSCode"] == "01611920130229"
        assert df.iloc[0]["Charter"] == "Y"

    def test_not_a_workbook(self):
        with pytest.raises(ParseError):
            parse_excel(b"this is not a workbook")
