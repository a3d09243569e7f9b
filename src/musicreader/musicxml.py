# src/musicreader/musicxml.py
"""
Streaming MusicXML (score-partwise) decoder.

The document is fed to an ElementTree pull parser and consumed as start/end
events; each measure is cleared once handled, so memory stays bounded by the
largest measure rather than the whole document.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Union
from xml.etree import ElementTree as ET

from .errors import MalformedDocument, OutOfRangeValue, UnsupportedElement, UnsupportedFormat, MusicReaderError
from .model import Part, Score, key_signature_name
from .util.time import div_to_beats
from .util.xml import local_name

log = logging.getLogger(__name__)

STEP_TO_SEMITONE = {"C": 0, "D": 2, "E": 4, "F": 5, "G": 7, "A": 9, "B": 11}
FORTE_VELOCITY = 90          # MusicXML dynamics are a percentage of this
PERCUSSION_CHANNEL = 9
FEED_CHUNK = 64 * 1024

# measure children that change the decoder state
HANDLED_MEASURE_CHILDREN = {"note", "backup", "forward", "attributes", "direction", "sound"}


def midi_from_pitch(step: str, alter: int, octave: int) -> int:
    return (octave + 1) * 12 + STEP_TO_SEMITONE[step] + int(alter)


# ---------- builder state ----------

@dataclass
class _PartInfo:
    part_id: str
    name: str = ""
    instrument: str = ""
    channel: Optional[int] = None
    program: int = 0
    volume: float = 1.0
    pan: float = 0.0


@dataclass
class _PartCursor:
    part: Part
    divisions: int = 1
    cursor: float = 0.0         # in beats; divisions may change mid-part
    measure_start: float = 0.0
    measure_end: float = 0.0
    last_start: float = 0.0     # start of the previous non-chord note
    velocity: int = 80


@dataclass
class _NoteState:
    dynamics: Optional[float] = None
    step: Optional[str] = None
    alter: float = 0.0
    octave: Optional[int] = None
    duration: int = 0
    chord: bool = False
    rest: bool = False
    grace: bool = False
    unpitched: bool = False


@dataclass
class _KeyState:
    fifths: Optional[int] = None
    mode: str = "major"


@dataclass
class _TimeState:
    beats: Optional[str] = None
    beat_type: Optional[str] = None


class NotationDecoder:
    """MusicXML bytes -> Score. Create one instance per document."""

    def __init__(self, default_velocity: int = 80):
        self.default_velocity = int(default_velocity)
        self.warnings: List[MusicReaderError] = []

    # ---------- public ----------

    def decode(self, xml_bytes: Union[bytes, str]) -> Score:
        if isinstance(xml_bytes, str):
            xml_bytes = xml_bytes.encode("utf-8")
        self._reset()
        parser = ET.XMLPullParser(events=("start", "end"))
        try:
            for i in range(0, len(xml_bytes), FEED_CHUNK):
                parser.feed(xml_bytes[i:i + FEED_CHUNK])
                self._drain(parser)
            parser.close()
            self._drain(parser)
        except ET.ParseError as e:
            line, col = getattr(e, "position", (None, None))
            raise MalformedDocument(f"XML parse error at line {line}, column {col}: {e}") from e

        if not self._saw_root:
            raise MalformedDocument("empty document")
        if not self._saw_part_list:
            raise MalformedDocument("missing <part-list>", element="part-list")
        if not self._cursors:
            raise MalformedDocument("no <part> element", element="part")
        return self._finish()

    # ---------- event pump ----------

    def _reset(self):
        self.warnings = []
        self._warned_elements = set()
        self._path: List[str] = []
        self._saw_root = False
        self._saw_part_list = False
        self._score = Score()
        self._work_title: Optional[str] = None
        self._movement_title: Optional[str] = None
        self._infos: Dict[str, _PartInfo] = {}
        self._info: Optional[_PartInfo] = None
        self._cursors: Dict[str, _PartCursor] = {}
        self._cur: Optional[_PartCursor] = None
        self._note: Optional[_NoteState] = None
        self._key: Optional[_KeyState] = None
        self._time: Optional[_TimeState] = None
        self._transpose_octaves = 0

    def _drain(self, parser: ET.XMLPullParser):
        for event, elem in parser.read_events():
            name = local_name(elem.tag)
            if event == "start":
                self._start(name, elem)
                self._path.append(name)
            else:
                self._path.pop()
                self._end(name, elem)

    @property
    def _parent(self) -> str:
        return self._path[-1] if self._path else ""

    def _warn(self, w: MusicReaderError):
        self.warnings.append(w)
        if isinstance(w, UnsupportedElement):
            log.info("musicxml: %s", w)
        else:
            log.warning("musicxml: %s", w)

    def _warn_element(self, name: str, detail: str = ""):
        if name in self._warned_elements:
            return
        self._warned_elements.add(name)
        self._warn(UnsupportedElement(name, detail))

    # ---------- start events ----------

    def _start(self, name: str, elem: ET.Element):
        if not self._saw_root:
            self._saw_root = True
            if name == "score-timewise":
                raise UnsupportedFormat("score-timewise documents are not supported", element=name)
            if name == "museScore":
                raise UnsupportedFormat("native MuseScore (.mscx) content; export the score as MusicXML", element=name)
            if name != "score-partwise":
                raise MalformedDocument(f"unexpected root element <{name}>", element=name)
            return

        if name == "score-part":
            pid = elem.get("id") or f"P{len(self._infos) + 1}"
            self._info = _PartInfo(part_id=pid)
        elif name == "part" and self._parent == "score-partwise":
            self._begin_part(elem.get("id") or "")
        elif name == "measure" and self._cur is not None:
            self._cur.measure_start = self._cur.cursor
            self._cur.measure_end = self._cur.cursor
        elif name == "note" and self._cur is not None:
            dyn = elem.get("dynamics")
            self._note = _NoteState(dynamics=_to_float(dyn))
        elif name == "key" and self._parent == "attributes":
            self._key = _KeyState()
        elif name == "time" and self._parent == "attributes":
            self._time = _TimeState()
        elif name == "transpose":
            self._transpose_octaves = 0
        elif name not in HANDLED_MEASURE_CHILDREN and self._parent == "measure":
            self._warn_element(name)

    def _begin_part(self, pid: str):
        if not self._saw_part_list:
            raise MalformedDocument("<part> before <part-list>", element="part")
        if pid in self._cursors:
            self._cur = self._cursors[pid]
            return
        info = self._infos.get(pid)
        if info is None:
            self._warn(UnsupportedElement("part", f"id {pid!r} not declared in <part-list>"))
            info = _PartInfo(part_id=pid or f"P{len(self._infos) + 1}")
            self._infos[info.part_id] = info
        index = list(self._infos).index(info.part_id)
        self._cur = _PartCursor(part=self._make_part(info, index), velocity=self.default_velocity)
        self._cursors[info.part_id] = self._cur

    def _make_part(self, info: _PartInfo, index: int) -> Part:
        name = info.name or info.part_id
        settings = {"channel": info.channel if info.channel is not None else _auto_channel(index),
                    "program": info.program, "volume": info.volume, "pan": info.pan}
        while True:
            try:
                return Part(name=name, instrument=info.instrument or name, **settings)
            except OutOfRangeValue as e:
                # drop only the bad setting, keep the rest of the part-list entry
                self._warn(e)
                if e.field not in settings:
                    raise
                del settings[e.field]
                if e.field == "channel":
                    settings["channel"] = _auto_channel(index)

    # ---------- end events ----------

    def _end(self, name: str, elem: ET.Element):
        text = (elem.text or "").strip()
        parent = self._parent

        # --- header / identification ---
        if name == "work-title":
            self._work_title = text or None
        elif name == "movement-title":
            self._movement_title = text or None
        elif name == "creator" and parent == "identification" and text:
            kind = (elem.get("type") or "composer").lower()
            if kind == "composer":
                self._score.composer = text
            elif kind == "arranger":
                self._score.arranger = text
        elif name == "rights" and parent == "identification" and text:
            self._score.copyright = text

        # --- part-list ---
        elif name == "part-list":
            self._saw_part_list = True
        elif self._info is not None and parent in ("score-part", "score-instrument", "midi-instrument", "midi-device"):
            self._part_info_field(name, text)
        elif name == "score-part" and self._info is not None:
            self._infos[self._info.part_id] = self._info
            self._info = None

        # --- part body ---
        elif self._cur is not None:
            self._part_body(name, parent, text, elem)

    def _part_info_field(self, name: str, text: str):
        info = self._info
        if name == "part-name":
            info.name = text
        elif name == "instrument-name":
            info.instrument = text
        elif name == "midi-channel":
            ch = _to_int(text)
            if ch is not None:
                info.channel = ch - 1          # 1-based in MusicXML
        elif name == "midi-program":
            pr = _to_int(text)
            if pr is not None:
                info.program = pr - 1
        elif name == "volume":
            v = _to_float(text)
            if v is not None:
                info.volume = v / 100.0
        elif name == "pan":
            p = _to_float(text)
            if p is not None:
                info.pan = _fold_pan(p) / 90.0

    def _part_body(self, name: str, parent: str, text: str, elem: ET.Element):
        cur = self._cur
        note = self._note

        if note is not None and parent in ("note", "pitch"):
            if name == "step":
                note.step = text.upper()
            elif name == "alter":
                note.alter = _to_float(text) or 0.0
            elif name == "octave":
                note.octave = _to_int(text)
            elif name == "duration":
                note.duration = _to_int(text) or 0
            elif name == "chord":
                note.chord = True
            elif name == "rest":
                note.rest = True
            elif name == "grace":
                note.grace = True
            elif name == "unpitched":
                note.unpitched = True
            return

        if name == "note" and note is not None:
            self._finish_note(note)
            self._note = None
        elif name == "duration" and parent in ("backup", "forward"):
            d = div_to_beats(_to_int(text) or 0, cur.divisions)
            if parent == "backup":
                cur.cursor = max(cur.measure_start, cur.cursor - d)
            else:
                cur.cursor += d
                cur.measure_end = max(cur.measure_end, cur.cursor)
        elif name == "divisions" and parent == "attributes":
            dv = _to_int(text)
            if dv and dv > 0:
                cur.divisions = dv
        elif self._key is not None and parent == "key":
            if name == "fifths":
                self._key.fifths = _to_int(text)
            elif name == "mode" and text:
                self._key.mode = text.lower()
        elif name == "key" and self._key is not None:
            if self._score.key_signature is None and self._key.fifths is not None:
                self._score.key_signature = key_signature_name(self._key.fifths, self._key.mode == "minor")
            self._key = None
        elif self._time is not None and parent == "time":
            if name == "beats":
                self._time.beats = text
            elif name == "beat-type":
                self._time.beat_type = text
        elif name == "time" and self._time is not None:
            if self._score.time_signature is None and self._time.beats and self._time.beat_type:
                self._score.time_signature = f"{self._time.beats}/{self._time.beat_type}"
            self._time = None
        elif parent == "transpose":
            if name == "chromatic":
                cur.part.transpose = _to_int(text) or 0
            elif name == "octave-change":
                self._transpose_octaves = _to_int(text) or 0
        elif name == "transpose":
            cur.part.transpose += 12 * self._transpose_octaves
        elif name == "sound":
            self._sound(elem)
        elif name == "per-minute" and parent == "metronome":
            bpm = _to_float(text)
            if bpm and bpm > 0 and self._score.tempo is None:
                self._score.tempo = bpm
        elif name == "measure":
            cur.cursor = max(cur.cursor, cur.measure_end)
            elem.clear()
        elif name == "part":
            self._cur = None
            elem.clear()

    def _sound(self, elem: ET.Element):
        tempo = _to_float(elem.get("tempo"))
        if tempo and tempo > 0 and self._score.tempo is None:
            self._score.tempo = tempo
        dyn = _to_float(elem.get("dynamics"))
        if dyn is not None and dyn >= 0:
            self._cur.velocity = _velocity_from_dynamics(dyn)

    def _finish_note(self, note: _NoteState):
        cur = self._cur
        if note.grace:
            return
        duration = div_to_beats(note.duration, cur.divisions)
        if note.chord:
            start = cur.last_start
        else:
            start = cur.cursor
            cur.last_start = start
            cur.cursor += duration
            cur.measure_end = max(cur.measure_end, cur.cursor)

        if note.rest:
            return
        if note.unpitched:
            self._warn_element("unpitched", "percussion notes without pitch are not played")
            return
        if note.step not in STEP_TO_SEMITONE or note.octave is None:
            self._warn(UnsupportedElement("pitch", f"incomplete pitch in part {cur.part.name!r}"))
            return

        alter = note.alter
        if alter != int(alter):
            self._warn_element("alter", f"microtonal alter {alter} rounded to a semitone")
        pitch = midi_from_pitch(note.step, int(round(alter)), note.octave)
        velocity = cur.velocity if note.dynamics is None else _velocity_from_dynamics(note.dynamics)
        try:
            cur.part.add_note(
                pitch=pitch,
                velocity=velocity,
                start=start,
                duration=duration,
            )
        except OutOfRangeValue as e:
            self._warn(e)

    # ---------- result ----------

    def _finish(self) -> Score:
        score = self._score
        score.title = self._work_title or self._movement_title or score.title
        # part-list order; declared parts without music stay as empty parts
        for idx, (pid, info) in enumerate(self._infos.items()):
            cur = self._cursors.get(pid)
            score.parts.append(cur.part if cur is not None else self._make_part(info, idx))
        log.debug("musicxml: %d parts, %d notes", len(score.parts), score.note_count)
        return score


def decode_musicxml(xml_bytes: Union[bytes, str], default_velocity: int = 80) -> Score:
    return NotationDecoder(default_velocity=default_velocity).decode(xml_bytes)


# ---------- helpers ----------

def _auto_channel(index: int) -> int:
    channels = [c for c in range(16) if c != PERCUSSION_CHANNEL]
    return channels[index % len(channels)]

def _fold_pan(degrees: float) -> float:
    """MusicXML pan is an angle in [-180, 180]; sources behind the listener
    mirror onto the front half, so 120 sounds like 60."""
    if degrees > 90:
        degrees = 180 - degrees
    elif degrees < -90:
        degrees = -180 - degrees
    return max(-90.0, min(90.0, degrees))

def _velocity_from_dynamics(percent: float) -> int:
    return max(1, min(127, int(round(FORTE_VELOCITY * percent / 100.0))))

def _to_int(s: Optional[str]) -> Optional[int]:
    if s is None:
        return None
    try:
        return int(s.strip())
    except ValueError:
        f = _to_float(s)
        return int(round(f)) if f is not None else None

def _to_float(s: Optional[str]) -> Optional[float]:
    if s is None:
        return None
    try:
        return float(s.strip())
    except ValueError:
        return None
