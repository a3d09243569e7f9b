from __future__ import annotations
import logging
import os
from typing import List, Tuple

import mido

from .model import MAJOR_KEYS, MINOR_KEYS, Part, Score
from .sink import CC_PAN, CC_VOLUME, pan_to_cc
from .util.time import beats_to_ticks, bpm_to_micro

log = logging.getLogger(__name__)

DEFAULT_TPB = 960
KEY_NAMES = set(MAJOR_KEYS) | set(MINOR_KEYS)

# ---------- internal helpers ----------

def _latin1(s: str) -> str:
    # text metas are written as latin-1
    return (s or "").encode("latin-1", "replace").decode("latin-1")

def _parse_timesig(ts: str) -> Tuple[int, int]:
    num, den = ts.split("/", 1)
    return int(num), int(den)

def _emit_conductor(track: mido.MidiTrack, score: Score):
    """Tempo, time and key signature at tick 0."""
    if score.time_signature:
        try:
            num, den = _parse_timesig(score.time_signature)
            track.append(mido.MetaMessage("time_signature", numerator=num, denominator=den, time=0))
        except ValueError:
            log.warning("write: ignoring time signature %r", score.time_signature)
    if score.key_signature in KEY_NAMES:
        track.append(mido.MetaMessage("key_signature", key=score.key_signature, time=0))
    track.append(mido.MetaMessage("set_tempo", tempo=bpm_to_micro(score.effective_tempo), time=0))

def _emit_part_events(mt: mido.MidiTrack, part: Part, tpb: int):
    """Note events as delta times; note-off first at equal ticks."""
    mt.append(mido.Message("program_change", channel=part.channel, program=part.program, time=0))
    mt.append(mido.Message("control_change", channel=part.channel, control=CC_VOLUME,
                           value=int(round(part.volume * 127)), time=0))
    mt.append(mido.Message("control_change", channel=part.channel, control=CC_PAN,
                           value=pan_to_cc(part.pan), time=0))
    evs: List[Tuple[int, int, str, int, int]] = []
    for n in part.notes:
        pitch = n.pitch + part.transpose
        # velocity 0 would read back as a note-off
        if not 0 <= pitch <= 127 or n.velocity == 0:
            continue
        start = beats_to_ticks(n.start, tpb)
        end = max(start + 1, beats_to_ticks(n.end, tpb))
        evs.append((start, 1, "note_on", pitch, n.velocity))
        evs.append((end, 0, "note_off", pitch, 0))
    evs.sort(key=lambda x: (x[0], x[1]))

    last = 0
    for tick, _, kind, pitch, vel in evs:
        mt.append(mido.Message(kind, note=pitch, velocity=vel, channel=part.channel, time=tick - last))
        last = tick

# ---------- public writer API ----------

def score_to_midifile(score: Score, ticks_per_beat: int = DEFAULT_TPB) -> mido.MidiFile:
    """Format 1: a conductor track followed by one track per part."""
    mid = mido.MidiFile(type=1, ticks_per_beat=ticks_per_beat)

    t_con = mido.MidiTrack()
    t_con.append(mido.MetaMessage("track_name", name=_latin1(score.title), time=0))
    _emit_conductor(t_con, score)
    mid.tracks.append(t_con)

    for part in score.parts:
        mt = mido.MidiTrack()
        mt.append(mido.MetaMessage("track_name", name=_latin1(part.name), time=0))
        _emit_part_events(mt, part, ticks_per_beat)
        mid.tracks.append(mt)
    return mid

def write_score_midi(score: Score, out_path: str, ticks_per_beat: int = DEFAULT_TPB):
    parent = os.path.dirname(os.path.abspath(out_path))
    os.makedirs(parent, exist_ok=True)
    score_to_midifile(score, ticks_per_beat).save(out_path)
