"""
Tests for the command-line interface.
"""

from unittest.mock import patch

import pandas as pd

from caschooldata.cli import build_parser, main
from caschooldata.errors import TransportError, UnsupportedYear
from caschooldata.pipeline import MultiYearResult


class TestParser:
    """Tests for argument parsing."""

    def test_fetch_arguments(self):
        args = build_parser().parse_args(
            ["fetch", "assessment", "2019", "2021", "--wide", "--subject", "ELA"])
        assert args.dataset == "assessment"
        assert args.years == [2019, 2021]
        assert args.wide
        assert args.subject == "ELA"
        assert args.student_group == "ALL"


class TestCommands:
    """Tests for main() with the pipeline patched out."""

    def test_years(self, capsys):
        assert main(["years", "graduation"]) == 0
        assert "2017 2018 2019 2022" in capsys.readouterr().out

    def test_years_directory(self, capsys):
        assert main(["years", "directory"]) == 0
        assert "current snapshot" in capsys.readouterr().out

    def test_cache_status_empty(self, capsys):
        assert main(["cache", "status"]) == 0
        assert "Cache is empty" in capsys.readouterr().out

    def test_cache_clear(self, capsys):
        with patch("caschooldata.cli.clear_cache", return_value=3) as clear:
            assert main(["cache", "clear", "--dataset", "enrollment", "--year", "2024"]) == 0
        clear.assert_called_once_with(dataset="enrollment", year=2024)
        assert "Removed 3" in capsys.readouterr().out

    def test_fetch_writes_csv(self, tmp_path):
        output = tmp_path / "out" / "enr.csv"
        data = pd.DataFrame({"end_year": [2024], "n_students": [120.0]})
        result = MultiYearResult(data=data)
        with patch("caschooldata.cli.fetch_multi", return_value=result) as fetch_multi:
            assert main(["fetch", "enrollment", "2024", "--output", str(output)]) == 0
        assert fetch_multi.call_args.kwargs["tidy"] is True
        assert pd.read_csv(output)["n_students"].tolist() == [120.0]

    def test_fetch_partial_failure_exit_code(self, tmp_path, capsys):
        data = pd.DataFrame({"end_year": [2024]})
        result = MultiYearResult(data=data, failed_years={2025: TransportError("timed out")})
        with patch("caschooldata.cli.fetch_multi", return_value=result):
            code = main(["fetch", "enrollment", "2024", "2025", "--output", str(tmp_path / "x.csv")])
        assert code == 2
        assert "2025" in capsys.readouterr().err

    def test_fetch_directory_without_years(self, capsys):
        data = pd.DataFrame({"cds_code": ["01611920130229"]})
        with patch("caschooldata.cli.fetch", return_value=data) as fetch:
            assert main(["fetch", "directory"]) == 0
        assert fetch.call_args.args[:2] == ("directory", None)
        assert "1 rows" in capsys.readouterr().out

    def test_library_error_exit_code(self):
        with patch("caschooldata.cli.fetch", side_effect=UnsupportedYear("enrollment", None)):
            assert main(["fetch", "enrollment"]) == 1
