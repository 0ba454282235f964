"""
Tests for tidy transforms, percentages, grade bands and assessment helpers.
"""

import numpy as np
import pandas as pd
import pytest

from caschooldata.errors import DataQualityWarning
from caschooldata.normalize import select_era
from caschooldata.parsers import parse_caret, parse_tsv
from caschooldata.tidy import (
    ENROLLMENT_TIDY_COLUMNS, calc_assess_trend, enr_grade_aggs, id_assess_aggs,
    summarize_proficiency, tidy_assess, tidy_enr, tidy_graduation,
)
from conftest import SCHOOL, make_census_day


def census_wide(text, year=2024):
    return select_era("enrollment", year).normalize(parse_tsv(text.encode("latin1")), year)


def pick(df, **criteria):
    mask = pd.Series(True, index=df.index)
    for col, value in criteria.items():
        mask &= df[col] == value
    matched = df[mask]
    assert len(matched) == 1, f"expected one row for {criteria}, got {len(matched)}"
    return matched.iloc[0]


# =============================================================================
# ENROLLMENT
# =============================================================================

class TestTidyEnr:
    """Tests for tidy_enr() and its flags."""

    def test_columns_and_flags(self, census_day_text):
        tidy = tidy_enr(census_wide(census_day_text))
        assert list(tidy.columns) == ENROLLMENT_TIDY_COLUMNS
        state = pick(tidy, agg_level="T", grade_level="TOTAL")
        assert state["is_state"] and not state["is_school"]
        assert state["type"] == "State"
        assert state["subgroup"] == "total_enrollment"
        school = pick(tidy, agg_level="S", reporting_category="RE_H", grade_level="TOTAL")
        assert school["type"] == "Campus"
        assert school["subgroup"] == "hispanic"
        assert not school["is_charter"]

    def test_total_row_plus_every_measured_grade(self, census_day_text):
        tidy = tidy_enr(census_wide(census_day_text))
        levels = tidy[tidy["agg_level"] == "T"]["grade_level"].tolist()
        assert len(levels) == 15
        assert set(levels) == {"TOTAL", "TK", "K", "01", "02", "03", "04", "05", "06",
                               "07", "08", "09", "10", "11", "12"}

    def test_suppressed_is_not_zero(self, census_day_text):
        """A suppressed count stays missing, and so does its pct."""
        tidy = tidy_enr(census_wide(census_day_text))
        suppressed = pick(tidy, agg_level="S", reporting_category="RE_H", grade_level="01")
        assert np.isnan(suppressed["n_students"])
        assert np.isnan(suppressed["pct"])
        zero = pick(tidy, agg_level="S", reporting_category="RE_W", grade_level="01")
        assert zero["n_students"] == 0
        assert zero["pct"] == 0

    def test_pct_is_fraction_of_total(self, census_day_text):
        tidy = tidy_enr(census_wide(census_day_text))
        hispanic = pick(tidy, agg_level="S", reporting_category="RE_H", grade_level="TOTAL")
        assert hispanic["pct"] == pytest.approx(0.5)
        total = pick(tidy, agg_level="S", reporting_category="TA", grade_level="TOTAL")
        assert total["pct"] == pytest.approx(1.0)
        assert tidy["pct"].dropna().between(0, 1).all()

    def test_zero_denominator_gives_zero(self, census_day_text):
        """Grade 2 has a total of 0 at the school, so every share is 0."""
        tidy = tidy_enr(census_wide(census_day_text))
        white = pick(tidy, agg_level="S", reporting_category="RE_W", grade_level="02")
        assert white["pct"] == 0

    def test_missing_total_row_warns(self):
        text = make_census_day([dict(SCHOOL, ReportingCategory="RE_H", TOTAL_ENR="10", GR_01="10")])
        with pytest.warns(DataQualityWarning, match="no total row"):
            tidy = tidy_enr(census_wide(text))
        assert tidy["pct"].isna().all()
        assert tidy["n_students"].notna().all()

    def test_historical_has_no_tk_rows(self, historical_text):
        """TK was not collected before 2024, so no TK rows are emitted."""
        wide = select_era("enrollment", 2019).normalize(parse_tsv(historical_text.encode()), 2019)
        tidy = tidy_enr(wide)
        assert "TK" not in set(tidy["grade_level"])
        assert "K" in set(tidy["grade_level"])

    def test_unmeasured_detected_without_attrs(self, historical_text):
        """Without attrs, an all-missing grade column is treated as not collected."""
        wide = select_era("enrollment", 2019).normalize(parse_tsv(historical_text.encode()), 2019)
        wide.attrs = {}
        assert "TK" not in set(tidy_enr(wide)["grade_level"])


class TestGradeBands:
    """Tests for enr_grade_aggs()."""

    @pytest.fixture
    def band_tidy(self):
        text = make_census_day([
            dict(SCHOOL, ReportingCategory="TA", TOTAL_ENR="100",
                 GR_09="20", GR_10="*", GR_11="30", GR_12="25"),
            dict(SCHOOL, ReportingCategory="RE_H", TOTAL_ENR="20",
                 GR_09="*", GR_10="*", GR_11="*", GR_12="*"),
            dict(SCHOOL, ReportingCategory="RE_W", TOTAL_ENR="40",
                 GR_09="10", GR_10="10", GR_11="10", GR_12="10"),
        ])
        return tidy_enr(census_wide(text))

    def test_partial_band(self, band_tidy):
        """A suppressed grade makes the band partial; the sum covers the reported grades."""
        hs = enr_grade_aggs(band_tidy, bands=["HS"])
        total = pick(hs, reporting_category="TA")
        assert total["grade_level"] == "HS"
        assert total["n_students"] == 75
        assert total["partial"]

    def test_complete_band(self, band_tidy):
        hs = enr_grade_aggs(band_tidy, bands=["HS"])
        white = pick(hs, reporting_category="RE_W")
        assert white["n_students"] == 40
        assert not white["partial"]

    def test_fully_suppressed_band_is_missing(self, band_tidy):
        hs = enr_grade_aggs(band_tidy, bands=["HS"])
        hispanic = pick(hs, reporting_category="RE_H")
        assert np.isnan(hispanic["n_students"])
        assert hispanic["partial"]

    def test_uncollected_tk_not_partial(self, historical_text):
        """Historical K-8 bands are complete even though TK is absent."""
        wide = select_era("enrollment", 2019).normalize(parse_tsv(historical_text.encode()), 2019)
        k8 = enr_grade_aggs(tidy_enr(wide), bands=["K8"])
        school = pick(k8, cds_code="01611920130229", reporting_category="TA")
        assert school["n_students"] == 29
        assert not school["partial"]

    def test_all_bands_by_default(self, band_tidy):
        assert set(enr_grade_aggs(band_tidy)["grade_level"]) == {"K8", "HS", "K12", "ELEM", "MIDDLE", "HIGH"}

    def test_unknown_band(self, band_tidy):
        with pytest.raises(ValueError):
            enr_grade_aggs(band_tidy, bands=["PRE_K"])


# =============================================================================
# ASSESSMENT
# =============================================================================

@pytest.fixture
def assess_wide(caaspp_text):
    return select_era("assessment", 2023).normalize(parse_caret(caaspp_text.encode()), 2023)


class TestTidyAssess:
    """Tests for tidy_assess() and summarize_proficiency()."""

    def test_one_row_per_metric(self, assess_wide):
        tidy = tidy_assess(assess_wide)
        assert len(tidy) == len(assess_wide) * 12
        assert {"metric_type", "metric_value"} <= set(tidy.columns)

    def test_suppressed_metrics_kept_as_missing(self, assess_wide):
        tidy = tidy_assess(assess_wide)
        school = tidy[(tidy["agg_level"] == "S") & (tidy["metric_type"] == "pct_met")]
        assert len(school) == 1
        assert np.isnan(school["metric_value"].iloc[0])

    def test_summarize_proficiency(self, assess_wide):
        summary = summarize_proficiency(tidy_assess(assess_wide))
        assert "metric_type" not in summary.columns
        assert len(summary) == 3
        assert pick(summary, agg_level="T")["metric_value"] == pytest.approx(55.3)

    def test_summarize_requires_tidy(self, assess_wide):
        with pytest.raises(ValueError):
            summarize_proficiency(assess_wide)

    def test_id_assess_aggs(self, assess_wide):
        flagged = id_assess_aggs(assess_wide)
        assert flagged["is_state"].sum() == 1
        assert flagged["is_district"].sum() == 1
        assert flagged["is_school"].sum() == 1
        with pytest.raises(ValueError):
            id_assess_aggs(assess_wide.drop(columns="agg_level"))


class TestCalcAssessTrend:
    """Tests for calc_assess_trend()."""

    def test_year_over_year_change(self):
        df = pd.DataFrame({
            "end_year": [2023, 2021, 2022],
            "cds_code": ["01611920000000"] * 3,
            "district_name": ["Oakland Unified", "Oakland USD", "Oakland Unified"],
            "grade": ["03"] * 3,
            "subject": ["ELA"] * 3,
            "metric_type": ["pct_met_and_above"] * 3,
            "metric_value": [45.0, 50.0, 40.0],
        })
        trend = calc_assess_trend(df)
        assert trend["end_year"].tolist() == [2021, 2022, 2023]
        assert np.isnan(trend["change"][0])
        assert trend["change"][1] == pytest.approx(-10)
        assert trend["change"][2] == pytest.approx(5)
        assert trend["pct_change"][1] == pytest.approx(-20)
        assert trend["pct_change"][2] == pytest.approx(12.5)

    def test_groups_are_independent(self):
        df = pd.DataFrame({
            "end_year": [2022, 2023, 2022, 2023],
            "cds_code": ["A", "A", "B", "B"],
            "metric_value": [10.0, 20.0, 0.0, 5.0],
        })
        trend = calc_assess_trend(df)
        a = trend[trend["cds_code"] == "A"]
        b = trend[trend["cds_code"] == "B"]
        assert a["change"].tolist()[1] == pytest.approx(10)
        assert b["change"].tolist()[1] == pytest.approx(5)
        assert np.isnan(b["pct_change"].tolist()[1])   # zero base


class TestTidyGraduation:
    """Tests for tidy_graduation()."""

    def test_sorted_by_level(self):
        df = pd.DataFrame({
            "end_year": [2024, 2024, 2024],
            "type": ["School", "State", "District"],
            "cds_code": ["01611920130229", "00000000000000", "01611920000000"],
            "subgroup": ["all", "all", "all"],
            "is_state": [False, True, None],
            "is_district": [False, False, True],
            "is_school": [True, False, False],
        })
        tidy = tidy_graduation(df)
        assert tidy["type"].tolist() == ["State", "District", "School"]
        assert tidy["is_state"].dtype == bool
