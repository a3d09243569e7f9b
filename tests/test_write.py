"""
Tests for musicreader/write.py: Score -> Standard MIDI File export, read
back with both mido and the package's own decoder.
"""

import mido
import pytest

from musicreader.model import Note, Part, Score
from musicreader.smf import decode_midi
from musicreader.write import score_to_midifile, write_score_midi


@pytest.fixture
def exported(tmp_path, small_score):
    small_score.tempo = 90.0
    small_score.time_signature = "3/4"
    small_score.key_signature = "Eb"
    path = tmp_path / "out" / "small.mid"
    write_score_midi(small_score, str(path), ticks_per_beat=480)
    return path


class TestScoreToMidifile:
    def test_layout(self, small_score):
        mid = score_to_midifile(small_score)
        assert mid.type == 1
        assert len(mid.tracks) == 1 + len(small_score.parts)
        assert mid.tracks[0][0].type == "track_name"
        assert mid.tracks[0][0].name == "Small"

    def test_note_off_before_note_on_at_equal_ticks(self):
        part = Part(name="p", instrument="p", notes=[
            Note(pitch=60, velocity=90, start=0.0, duration=1.0),
            Note(pitch=60, velocity=90, start=1.0, duration=1.0),
        ])
        mid = score_to_midifile(Score(parts=[part]), ticks_per_beat=100)
        kinds = [m.type for m in mid.tracks[1] if m.type in ("note_on", "note_off")]
        assert kinds == ["note_on", "note_off", "note_on", "note_off"]

    def test_channel_setup_messages(self, small_score):
        small_score.parts[0].program = 5
        small_score.parts[0].volume = 0.5
        small_score.parts[0].pan = 1.0
        track = score_to_midifile(small_score).tracks[1]
        prog = [m for m in track if m.type == "program_change"]
        ccs = {m.control: m.value for m in track if m.type == "control_change"}
        assert prog[0].program == 5
        assert ccs == {7: 64, 10: 127}

    def test_transpose_is_baked_in(self):
        part = Part(name="p", instrument="p", transpose=-12,
                    notes=[Note(pitch=72, velocity=90, start=0.0, duration=1.0)])
        track = score_to_midifile(Score(parts=[part])).tracks[1]
        assert [m.note for m in track if m.type == "note_on"] == [60]


class TestWriteScoreMidi:
    def test_mido_reads_it(self, exported):
        mid = mido.MidiFile(str(exported))
        metas = {m.type: m for m in mid.tracks[0] if m.is_meta}
        assert metas["set_tempo"].tempo == 666667
        assert (metas["time_signature"].numerator, metas["time_signature"].denominator) == (3, 4)
        assert metas["key_signature"].key == "Eb"

    def test_decoder_reads_it_back(self, exported, small_score):
        score = decode_midi(exported.read_bytes())
        assert score.title == "Small"
        assert score.tempo == pytest.approx(90.0, abs=1e-3)
        assert score.time_signature == "3/4"
        assert score.key_signature == "Eb"
        assert [p.name for p in score.parts] == ["Lead", "Bass"]
        got = [(n.pitch, n.velocity, n.start, n.duration) for n in score.parts[0].notes]
        want = [(n.pitch, n.velocity, n.start, n.duration) for n in small_score.parts[0].notes]
        assert got == want
