"""Tests for the command-line entry point."""

import json

from managed_db.__main__ import main


def test_prints_rows_as_json(tmp_path, capsys):
    db_path = tmp_path / "cli.db"
    exit_code = main(["--sqlite", str(db_path), "SELECT 1 AS one, 'x' AS label"])
    assert exit_code == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert [json.loads(line) for line in lines] == [{"one": 1, "label": "x"}]


def test_read_only_transaction(tmp_path, capsys):
    exit_code = main(["--sqlite", str(tmp_path / "ro.db"), "--read-only", "SELECT 2 AS two"])
    assert exit_code == 0
    assert json.loads(capsys.readouterr().out) == {"two": 2}


def test_query_error_exits_non_zero(tmp_path, capsys):
    exit_code = main(["--sqlite", str(tmp_path / "bad.db"), "SELECT * FROM missing"])
    assert exit_code == 1
    assert capsys.readouterr().out == ""
