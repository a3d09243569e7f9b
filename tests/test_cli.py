"""
Tests for musicreader/cli.py: exit codes, exports and a dry playback run.
"""

import json

import mido
import pytest

from conftest import SIMPLE_XML, make_midi, sequential_notes
from musicreader import cli
from musicreader.sink import RecordingSink


@pytest.fixture
def no_user_config(tmp_path):
    return ["--config", str(tmp_path / "no-config.yaml")]


@pytest.fixture
def score_file(tmp_path):
    path = tmp_path / "tune.musicxml"
    path.write_text(SIMPLE_XML, encoding="utf-8")
    return path


class TestExitCodes:
    def test_missing_input(self, tmp_path, no_user_config, capsys):
        assert cli.main(["--in", str(tmp_path / "nope.mxl")] + no_user_config) == 1
        assert "Input not found" in capsys.readouterr().err

    def test_no_input_given(self, no_user_config):
        assert cli.main(no_user_config) == 1

    def test_decode_error(self, tmp_path, no_user_config, capsys):
        bad = tmp_path / "bad.mid"
        bad.write_bytes(b"MThd\x00\x00\x00\x06\x00\x00\x00\x01\xe7\x28")
        assert cli.main(["--in", str(bad)] + no_user_config) == 2
        assert "UnsupportedFormat" in capsys.readouterr().err

    def test_port_failure(self, score_file, no_user_config, monkeypatch):
        def refuse(name=None):
            raise OSError("no such port")

        monkeypatch.setattr(cli, "MidoPortSink", refuse)
        assert cli.main(["--in", str(score_file), "--play"] + no_user_config) == 3


class TestOutputs:
    def test_summary(self, score_file, no_user_config, capsys):
        assert cli.main(["--in", str(score_file)] + no_user_config) == 0
        out = capsys.readouterr().out
        assert "Little Tune" in out
        assert "parts=2 notes=4" in out
        assert "tempo=90" in out

    def test_tempo_override(self, score_file, no_user_config, capsys):
        cli.main(["--in", str(score_file), "--tempo", "180"] + no_user_config)
        assert "duration=1.00s tempo=180" in capsys.readouterr().out

    def test_events(self, score_file, no_user_config, capsys):
        cli.main(["--in", str(score_file), "--events"] + no_user_config)
        lines = [l for l in capsys.readouterr().out.splitlines() if "pitch=" in l]
        assert len(lines) == 8

    def test_exports(self, tmp_path, score_file, no_user_config):
        json_out = tmp_path / "out" / "tune.json"
        midi_out = tmp_path / "out" / "tune.mid"
        rc = cli.main(["--in", str(score_file), "--json-out", str(json_out), "--midi-out", str(midi_out)]
                      + no_user_config)
        assert rc == 0
        assert json.loads(json_out.read_text())["composer"] == "Jane Doe"
        assert len(mido.MidiFile(str(midi_out)).tracks) == 3


def test_play_through_sink(tmp_path, no_user_config, monkeypatch, capsys):
    path = tmp_path / "blip.mid"
    path.write_bytes(make_midi([
        [mido.MetaMessage("set_tempo", tempo=200000, time=0)] + sequential_notes(0, [60], ticks=48),
    ], type=0))
    sink = RecordingSink()
    monkeypatch.setattr(cli, "MidoPortSink", lambda name=None: sink)
    assert cli.main(["--in", str(path), "--play"] + no_user_config) == 0
    assert [c.is_note_on for c in sink.commands] == [True, False]
    assert sink.closed
