"""Tests for the district-unlock command line."""

import json

import pytest
from click.testing import CliRunner

from unlock_cli.cli import cli


def _ring(south, west, north, east):
    return [[west, south], [east, south], [east, north], [west, north], [west, south]]


DISTRICTS = {"success": True, "districts": [
    {
        "id": "1",
        "name": "Triana",
        "boundaries": {"type": "Polygon", "coordinates": [_ring(37.383, -6.003, 37.386, -5.998)]},
        "region_assignee": {"id": "sevilla"},
    },
    {
        "id": "2",
        "name": "Macarena",
        "boundaries": {"type": "Polygon", "coordinates": [_ring(37.400, -5.990, 37.403, -5.985)]},
        "region_assignee": {"id": "sevilla"},
    },
]}


@pytest.fixture
def districts_file(tmp_path):
    path = tmp_path / "districts.json"
    path.write_text(json.dumps(DISTRICTS))
    return path


@pytest.fixture
def track_file(tmp_path):
    path = tmp_path / "walk.csv"
    path.write_text(
        "timestamp,latitude,longitude\n"
        "1,37.384,-6.001\n"
        "2,37.42,-6.05\n"
        "3,37.4015,-5.9875\n"
    )
    return path


class TestReplay:
    def test_offline_replay(self, districts_file, track_file):
        result = CliRunner().invoke(cli, [
            "replay", str(track_file), "--districts", str(districts_file), "--user", "u1",
        ])
        assert result.exit_code == 0, result.output
        assert "Replaying 3 fixes" in result.output
        assert "UNLOCKED  Triana" in result.output
        assert "UNLOCKED  Macarena" in result.output
        assert "Fixes: 3 received, 3 evaluated, 0 jitter, 0 out of order" in result.output
        assert "Unlocks: 2 confirmed, 0 rejected, 0 failed | 2/2 districts unlocked" in result.output

    def test_needs_exactly_one_backend(self, districts_file, track_file):
        runner = CliRunner()
        neither = runner.invoke(cli, ["replay", str(track_file), "--user", "u1"])
        assert neither.exit_code == 2
        both = runner.invoke(cli, [
            "replay", str(track_file), "--user", "u1",
            "--districts", str(districts_file), "--api-url", "http://x",
        ])
        assert both.exit_code == 2

    def test_unreachable_backend(self, track_file):
        result = CliRunner().invoke(cli, [
            "replay", str(track_file), "--user", "u1", "--api-url", "http://127.0.0.1:9",
        ])
        assert result.exit_code == 1
        assert "Error:" in result.output


class TestLocate:
    def test_inside(self, districts_file):
        result = CliRunner().invoke(cli, ["locate", str(districts_file), "--point", "37.384,-6.001"])
        assert result.exit_code == 0
        assert result.output.strip() == "Triana (1) [locked]"

    def test_outside(self, districts_file):
        result = CliRunner().invoke(cli, ["locate", str(districts_file), "--point", "37.42,-6.05"])
        assert result.exit_code == 0
        assert "No district contains this point" in result.output

    def test_exact_flag(self, districts_file):
        # Near Triana's centroid but north of its boundary
        args = ["locate", str(districts_file), "--point", "37.3875,-6.0005"]
        runner = CliRunner()
        assert "Triana" in runner.invoke(cli, args).output
        assert "No district" in runner.invoke(cli, args + ["--exact"]).output

    def test_bad_point(self, districts_file):
        result = CliRunner().invoke(cli, ["locate", str(districts_file), "--point", "nowhere"])
        assert result.exit_code == 2


class TestColors:
    def test_assign(self):
        result = CliRunner().invoke(cli, ["colors", "a", "b", "--existing", "b=#2196f399"])
        assert result.exit_code == 0
        assert result.output.splitlines() == ["a\t#4cb05099", "b\t#2196f399"]

    def test_fallback_marked(self):
        users = [f"u{i}" for i in range(7)]
        result = CliRunner().invoke(cli, ["colors", *users])
        assert result.output.splitlines()[-1] == "u6\t#808080 (fallback)"

    def test_bad_existing(self):
        result = CliRunner().invoke(cli, ["colors", "a", "--existing", "a"])
        assert result.exit_code == 2

    def test_config_palette(self, tmp_path):
        config = tmp_path / "engine.json"
        config.write_text(json.dumps({"colors": {"palette": ["#111111"], "fallback": "#999999"}}))
        result = CliRunner().invoke(cli, ["--config", str(config), "colors", "a", "b"])
        assert result.exit_code == 0
        assert result.output.splitlines() == ["a\t#111111", "b\t#999999 (fallback)"]
