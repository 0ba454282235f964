"""
Tests for CDS code utilities.
"""

import numpy as np
import pandas as pd
import pytest

from caschooldata.cds import (
    build_cds_codes, identify_agg_level, pad_code, pad_code_series,
    parse_identifier, split_cds_codes,
)


class TestPadCode:
    """Tests for pad_code()."""

    def test_pads_to_width(self):
        assert pad_code("1", 2) == "01"
        assert pad_code(61192, 5) == "61192"
        assert pad_code("130229", 7) == "0130229"

    def test_float_round_trip(self):
        """Codes that went through a float column are recovered."""
        assert pad_code(1.0, 2) == "01"
        assert pad_code("61192.0", 5) == "61192"

    def test_missing_becomes_placeholder(self):
        """Missing values become zeros, never 'NA' text."""
        for missing in (None, np.nan, "", "NA", "nan", pd.NA):
            assert pad_code(missing, 7) == "0000000"

    def test_invalid_values_raise(self):
        with pytest.raises(ValueError):
            pad_code("01A", 2)
        with pytest.raises(ValueError):
            pad_code("123", 2)
        with pytest.raises(ValueError):
            pad_code(1.5, 2)


class TestParseIdentifier:
    """Tests for parse_identifier()."""

    def test_school_code(self):
        code = parse_identifier("01611920130229")
        assert code.county_code == "01"
        assert code.district_code == "61192"
        assert code.school_code == "0130229"
        assert code.level == "school"

    def test_aggregate_levels(self):
        assert parse_identifier("19647330000000").level == "district"
        assert parse_identifier("19000000000000").level == "county"
        assert parse_identifier("00000000000000").level == "state"

    def test_lost_leading_zero(self):
        """A code read as a number (leading zero lost) is repaired."""
        code = parse_identifier(1611920130229)
        assert code.cds_code == "01611920130229"

    def test_missing_raises(self):
        with pytest.raises(ValueError):
            parse_identifier(None)
        with pytest.raises(ValueError):
            parse_identifier("")

    def test_too_long_raises(self):
        with pytest.raises(ValueError):
            parse_identifier("016119201302291")

    def test_identify_agg_level(self):
        assert identify_agg_level("01611920000000") == "district"


class TestVectorized:
    """Tests for build_cds_codes() and split_cds_codes()."""

    def test_build_with_missing_segments(self):
        """Aggregate rows with missing segments get placeholders before padding."""
        codes = build_cds_codes(
            pd.Series(["00", "1", "01"]),
            pd.Series([None, None, "61192"]),
            pd.Series([None, np.nan, ""]),
        )
        assert codes["cds_code"].tolist() == [
            "00000000000000", "01000000000000", "01611920000000",
        ]
        assert not codes["cds_code"].str.contains("NA|nan|None").any()

    def test_split(self):
        parts = split_cds_codes(pd.Series(["1611920130229"]))
        assert parts.iloc[0].tolist() == ["01611920130229", "01", "61192", "0130229"]

    def test_malformed_value_reports_row(self):
        """The index label of the bad value travels on the error."""
        with pytest.raises(ValueError) as exc_info:
            pad_code_series(pd.Series(["01", "0X", "02"], index=[4, 5, 6]), 2)
        assert exc_info.value.row == 5
