"""
Tests for musicreader/config.py: packaged defaults, user overrides and
logging setup.
"""

import logging

import pytest

from musicreader.config import (
    DEFAULT_CFG_PATH,
    _deep_merge,
    get_default_velocity,
    get_ticks_per_beat,
    load_config,
    setup_logging,
)


class TestLoadConfig:
    def test_packaged_defaults(self, tmp_path):
        cfg = load_config(user_path=tmp_path / "none.yaml")
        assert DEFAULT_CFG_PATH.exists()
        assert cfg["playback"]["tempo"] == 120
        assert cfg["playback"]["loop"] is False
        assert cfg["decode"]["default_velocity"] == 80
        assert cfg["export"]["ticks_per_beat"] == 960
        assert cfg["logging"]["level"] == "INFO"

    def test_user_file_overrides_single_keys(self, tmp_path):
        user = tmp_path / "config.yaml"
        user.write_text("playback:\n  tempo: 96\n  loop: true\n", encoding="utf-8")
        cfg = load_config(user_path=user)
        assert cfg["playback"]["tempo"] == 96
        assert cfg["playback"]["loop"] is True
        assert cfg["playback"]["volume"] == 0.8

    def test_broken_user_file_is_ignored(self, tmp_path, caplog):
        user = tmp_path / "config.yaml"
        user.write_text("playback: [unclosed\n", encoding="utf-8")
        with caplog.at_level(logging.WARNING):
            cfg = load_config(user_path=user)
        assert cfg["playback"]["tempo"] == 120
        assert "cannot read" in caplog.text

    def test_non_mapping_user_file_is_ignored(self, tmp_path):
        user = tmp_path / "config.yaml"
        user.write_text("- just\n- a list\n", encoding="utf-8")
        assert load_config(user_path=user)["playback"]["tempo"] == 120

    def test_minimal_defaults_without_packaged_file(self, tmp_path):
        cfg = load_config(user_path=tmp_path / "a.yaml", default_path=tmp_path / "b.yaml")
        assert cfg["playback"] == {"tempo": 120.0, "tick_interval": 0.01, "loop": False, "volume": 0.8}


class TestDeepMerge:
    def test_nested(self):
        a = {"x": {"y": 1, "z": 2}, "k": 1}
        b = {"x": {"z": 3}, "n": 4}
        assert _deep_merge(a, b) == {"x": {"y": 1, "z": 3}, "k": 1, "n": 4}
        assert a == {"x": {"y": 1, "z": 2}, "k": 1}


class TestGetters:
    @pytest.mark.parametrize("value, expected", [(100, 100), (0, 1), (400, 127), ("loud", 80)])
    def test_default_velocity(self, value, expected):
        assert get_default_velocity({"decode": {"default_velocity": value}}) == expected

    def test_ticks_per_beat(self):
        assert get_ticks_per_beat({"export": {"ticks_per_beat": 480}}) == 480
        assert get_ticks_per_beat({}) == 960


class TestSetupLogging:
    def test_verbose_forces_debug(self):
        root = logging.getLogger()
        old = root.level
        try:
            setup_logging({"logging": {"level": "WARNING"}}, verbose=True)
            assert root.level == logging.DEBUG
            setup_logging({"logging": {"level": "warning"}})
            assert root.level == logging.WARNING
        finally:
            root.setLevel(old)
