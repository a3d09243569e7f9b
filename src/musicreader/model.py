from __future__ import annotations
import math
from dataclasses import dataclass, field, asdict, fields
from typing import Any, Dict, List, Optional

from .errors import MalformedDocument, OutOfRangeValue
from .util.time import beats_to_seconds

DEFAULT_BPM = 120.0

NOTE_NAMES = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]
NAME_TO_SEMITONE = {
    "C": 0, "C#": 1, "Db": 1, "D": 2, "D#": 3, "Eb": 3,
    "E": 4, "F": 5, "F#": 6, "Gb": 6, "G": 7, "G#": 8,
    "Ab": 8, "A": 9, "A#": 10, "Bb": 10, "B": 11,
}

# Key names by number of sharps (+) / flats (-), index = fifths + 7
MAJOR_KEYS = ["Cb", "Gb", "Db", "Ab", "Eb", "Bb", "F", "C", "G", "D", "A", "E", "B", "F#", "C#"]
MINOR_KEYS = ["Abm", "Ebm", "Bbm", "Fm", "Cm", "Gm", "Dm", "Am", "Em", "Bm", "F#m", "C#m", "G#m", "D#m", "A#m"]


def pitch_to_note_name(pitch: int) -> str:
    return f"{NOTE_NAMES[pitch % 12]}{pitch // 12 - 1}"

def note_name_to_pitch(name: str) -> Optional[int]:
    """'C4' -> 60, 'Bb3' -> 58, 'C#-1' -> 1. Returns None if unparsable."""
    name = name.strip()
    for split in (2, 1):
        base, octave = name[:split], name[split:]
        if base in NAME_TO_SEMITONE:
            try:
                p = (int(octave) + 1) * 12 + NAME_TO_SEMITONE[base]
            except ValueError:
                continue
            return p if 0 <= p <= 127 else None
    return None

def key_signature_name(fifths: int, minor: bool = False) -> Optional[str]:
    if not -7 <= fifths <= 7:
        return None
    return (MINOR_KEYS if minor else MAJOR_KEYS)[fifths + 7]


def _check_int(name: str, value, lo: int, hi: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise OutOfRangeValue(name, value, lo, hi)
    if not lo <= value <= hi:
        raise OutOfRangeValue(name, value, lo, hi)
    return value

def _check_float(name: str, value, lo: float, hi: float) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise OutOfRangeValue(name, value, lo, hi) from None
    if not (math.isfinite(v) and lo <= v <= hi):
        raise OutOfRangeValue(name, value, lo, hi)
    return v


@dataclass
class Note:
    pitch: int            # MIDI note number
    velocity: int
    start: float          # beats
    duration: float       # beats
    channel: int = 0

    def __post_init__(self):
        _check_int("pitch", self.pitch, 0, 127)
        _check_int("velocity", self.velocity, 0, 127)
        _check_int("channel", self.channel, 0, 15)
        self.start = _check_float("start", self.start, 0.0, math.inf)
        self.duration = _check_float("duration", self.duration, 0.0, math.inf)
        if self.duration <= 0.0:
            raise OutOfRangeValue("duration", self.duration)
        if not math.isfinite(self.start + self.duration):
            raise OutOfRangeValue("end", self.start + self.duration)

    @property
    def end(self) -> float:
        return self.start + self.duration

    @property
    def name(self) -> str:
        return pitch_to_note_name(self.pitch)


@dataclass
class Part:
    name: str
    instrument: str
    channel: int = 0
    program: int = 0
    transpose: int = 0     # semitones
    volume: float = 1.0
    pan: float = 0.0
    muted: bool = False
    solo: bool = False
    notes: List[Note] = field(default_factory=list)

    def __post_init__(self):
        _check_int("channel", self.channel, 0, 15)
        _check_int("program", self.program, 0, 127)
        _check_int("transpose", self.transpose, -127, 127)
        self.volume = _check_float("volume", self.volume, 0.0, 1.0)
        self.pan = _check_float("pan", self.pan, -1.0, 1.0)
        self.notes = [self._adopt(n) for n in self.notes]

    def _adopt(self, note: Note) -> Note:
        if not isinstance(note, Note):
            raise TypeError(f"expected Note, got {type(note).__name__}")
        note.channel = self.channel
        return note

    def add_note(self, pitch: int, velocity: int, start: float, duration: float) -> Note:
        note = Note(pitch=pitch, velocity=velocity, start=start, duration=duration, channel=self.channel)
        self.notes.append(note)
        return note

    def append(self, note: Note) -> Note:
        self.notes.append(self._adopt(note))
        return note

    def end_beat(self) -> float:
        return max((n.end for n in self.notes), default=0.0)


@dataclass
class Score:
    title: str = "Untitled"
    composer: str = "Unknown"
    arranger: Optional[str] = None
    copyright: Optional[str] = None
    description: Optional[str] = None
    key_signature: Optional[str] = None
    time_signature: Optional[str] = None
    tempo: Optional[float] = None     # BPM
    source: Optional[str] = None
    parts: List[Part] = field(default_factory=list)

    def __post_init__(self):
        if self.tempo is not None:
            t = _check_float("tempo", self.tempo, 0.0, math.inf)
            if t <= 0.0:
                raise OutOfRangeValue("tempo", self.tempo)
            self.tempo = t

    @property
    def effective_tempo(self) -> float:
        return self.tempo if self.tempo is not None else DEFAULT_BPM

    @property
    def note_count(self) -> int:
        return sum(len(p.notes) for p in self.parts)

    def total_beats(self) -> float:
        return max((p.end_beat() for p in self.parts), default=0.0)

    def total_duration(self, tempo: Optional[float] = None) -> float:
        """Length in seconds at `tempo` (default: the score's own tempo)."""
        bpm = float(tempo) if tempo is not None else self.effective_tempo
        if bpm <= 0:
            raise OutOfRangeValue("tempo", tempo)
        return beats_to_seconds(self.total_beats(), bpm)

    # ---------- serialization ----------

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Score":
        if not isinstance(data, dict):
            raise MalformedDocument("score must be a mapping")
        try:
            parts = [_part_from_dict(p) for p in data.get("parts", [])]
        except (KeyError, TypeError) as e:
            raise MalformedDocument(f"invalid part entry: {e}") from e
        kwargs = {f.name: data[f.name] for f in fields(cls) if f.name != "parts" and f.name in data}
        return cls(parts=parts, **kwargs)


def _part_from_dict(d: Dict[str, Any]) -> Part:
    if not isinstance(d, dict):
        raise TypeError(f"part must be a mapping, got {type(d).__name__}")
    notes = []
    for n in d.get("notes", []):
        if not isinstance(n, dict):
            raise TypeError(f"note must be a mapping, got {type(n).__name__}")
        notes.append(Note(pitch=n["pitch"], velocity=n["velocity"], start=n["start"],
                          duration=n["duration"], channel=d.get("channel", 0)))
    kwargs = {f.name: d[f.name] for f in fields(Part) if f.name != "notes" and f.name in d}
    if "name" not in kwargs or "instrument" not in kwargs:
        raise KeyError("name/instrument")
    return Part(notes=notes, **kwargs)
