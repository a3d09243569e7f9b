"""
Tests for musicreader/persist.py: JSON/YAML snapshots of a Score.
"""

import json

import pytest
import yaml

from musicreader.errors import MalformedDocument
from musicreader.persist import dumps, loads, read_score, save_score


class TestDumps:
    def test_json_is_plain_data(self, small_score):
        data = json.loads(dumps(small_score))
        assert data["title"] == "Small"
        assert data["parts"][1]["notes"][0] == {
            "pitch": 36, "velocity": 90, "start": 0.0, "duration": 2.0, "channel": 1,
        }

    def test_yaml(self, small_score):
        data = yaml.safe_load(dumps(small_score, "yaml"))
        assert [p["name"] for p in data["parts"]] == ["Lead", "Bass"]

    def test_unknown_format(self, small_score):
        with pytest.raises(ValueError):
            dumps(small_score, "toml")


class TestLoads:
    @pytest.mark.parametrize("fmt", ["json", "yaml"])
    def test_round_trip(self, small_score, fmt):
        assert loads(dumps(small_score, fmt), fmt) == small_score

    def test_broken_json(self):
        with pytest.raises(MalformedDocument):
            loads("{not json")

    def test_broken_yaml(self):
        with pytest.raises(MalformedDocument):
            loads("parts: [unclosed", "yaml")

    def test_non_mapping(self):
        with pytest.raises(MalformedDocument):
            loads("[1, 2, 3]")

    def test_scalar_part_entry(self):
        with pytest.raises(MalformedDocument):
            loads("title: x\nparts:\n  - oops\n", "yaml")


class TestFiles:
    def test_suffix_picks_format(self, tmp_path, small_score):
        y = save_score(small_score, tmp_path / "out" / "score.yml")
        j = save_score(small_score, tmp_path / "score.json")
        assert yaml.safe_load(y.read_text())["title"] == "Small"
        assert json.loads(j.read_text())["title"] == "Small"
        assert read_score(y) == read_score(j) == small_score
