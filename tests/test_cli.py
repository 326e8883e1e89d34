"""Tests for the batch command line."""

import json

import pytest

from main import main


@pytest.fixture
def data_file(tmp_path):
    def _write(records, name="commits.json"):
        path = tmp_path / name
        path.write_text(json.dumps(records), encoding="utf-8")
        return path

    return _write


def _records(bad_date_at=None):
    out = []
    for i in range(3):
        out.append(
            {
                "message": f"Command line commit {i}",
                "date": "2024-13-01" if i == bad_date_at else f"2024-04-0{i + 1}",
                "time": "11:00",
            }
        )
    return out


def _config(tmp_path):
    path = tmp_path / "retime.yaml"
    path.write_text("batch:\n  commit_delay: 0\n", encoding="utf-8")
    return str(path)


class TestBatchCommand:
    def test_dry_run_prints_preview(self, git_repo, git, data_file, capsys):
        code = main(["--repo", str(git_repo), "--data", str(data_file(_records())), "--dry-run"])

        out = capsys.readouterr().out
        assert code == 0
        assert "Mode: dry run" in out
        assert "Command line commit 2" in out
        assert git(git_repo, "rev-list", "--count", "HEAD") == "1"

    def test_creates_commits(self, git_repo, git, data_file, tmp_path, capsys):
        code = main(
            [
                "--repo", str(git_repo),
                "--data", str(data_file(_records())),
                "--config", _config(tmp_path),
            ]
        )

        assert code == 0
        assert "Succeeded: 3" in capsys.readouterr().out
        assert git(git_repo, "rev-list", "--count", "HEAD") == "4"

    def test_failure_rolls_back_and_exits_2(self, git_repo, git, data_file, tmp_path, capsys):
        head = git(git_repo, "rev-parse", "HEAD")

        code = main(
            [
                "--repo", str(git_repo),
                "--data", str(data_file(_records(bad_date_at=1))),
                "--config", _config(tmp_path),
            ]
        )

        captured = capsys.readouterr()
        assert code == 2
        assert "Rolled back: yes (verified)" in captured.out
        assert captured.err.startswith("error:")
        assert git(git_repo, "rev-parse", "HEAD") == head

    def test_template_and_csv(self, git_repo, git, tmp_path, capsys):
        template = tmp_path / "template.yaml"
        template.write_text(
            "message: 'Update {{area}} documentation'\n"
            "variables:\n"
            "  - name: area\n",
            encoding="utf-8",
        )
        data = tmp_path / "areas.csv"
        data.write_text("area,date\ninstall,2024-01-10\nusage,2024-01-11\n", encoding="utf-8")

        code = main(
            [
                "--repo", str(git_repo),
                "--data", str(data),
                "--template", str(template),
                "--config", _config(tmp_path),
            ]
        )

        assert code == 0
        assert git(git_repo, "log", "-1", "--format=%s") == "Update usage documentation"

    def test_not_a_repository(self, tmp_path, data_file, capsys):
        code = main(["--repo", str(tmp_path), "--data", str(data_file(_records())), "--dry-run"])

        assert code == 2
        assert "Not a git repository" in capsys.readouterr().err

    def test_missing_data_file(self, git_repo, tmp_path, capsys):
        code = main(["--repo", str(git_repo), "--data", str(tmp_path / "absent.json")])

        assert code == 2
        assert "Failed to read" in capsys.readouterr().err

    def test_data_file_not_utf8(self, git_repo, tmp_path, capsys):
        data = tmp_path / "commits.csv"
        data.write_bytes(b"message,date\ncaf\xe9 opening commit,2024-01-10\n")

        code = main(["--repo", str(git_repo), "--data", str(data), "--dry-run"])

        err = capsys.readouterr().err
        assert code == 2
        assert err.startswith("error:")
        assert "not valid UTF-8" in err
