"""
Shared fixtures: in-memory archives and MIDI files, MusicXML samples,
a hand-driven clock and a recording sink.
"""

import io
import zipfile

import mido
import pytest

from musicreader.model import Note, Part, Score
from musicreader.sink import RecordingSink

# ---------------------------------------------------------------------------
# MusicXML samples
# ---------------------------------------------------------------------------

SIMPLE_XML = """<?xml version="1.0" encoding="UTF-8"?>
<score-partwise version="3.1">
  <work><work-title>Little Tune</work-title></work>
  <identification>
    <creator type="composer">Jane Doe</creator>
    <creator type="arranger">John Roe</creator>
    <rights>Public Domain</rights>
  </identification>
  <part-list>
    <score-part id="P1">
      <part-name>Flute</part-name>
      <score-instrument id="P1-I1"><instrument-name>Flute</instrument-name></score-instrument>
      <midi-instrument id="P1-I1">
        <midi-channel>1</midi-channel>
        <midi-program>74</midi-program>
        <volume>80</volume>
        <pan>-45</pan>
      </midi-instrument>
    </score-part>
    <score-part id="P2">
      <part-name>Bass</part-name>
      <midi-instrument id="P2-I1"><midi-channel>2</midi-channel><midi-program>33</midi-program></midi-instrument>
    </score-part>
  </part-list>
  <part id="P1">
    <measure number="1">
      <attributes>
        <divisions>2</divisions>
        <key><fifths>-1</fifths><mode>major</mode></key>
        <time><beats>3</beats><beat-type>4</beat-type></time>
      </attributes>
      <direction placement="above">
        <direction-type><metronome><beat-unit>quarter</beat-unit><per-minute>90</per-minute></metronome></direction-type>
        <sound tempo="90"/>
      </direction>
      <note><pitch><step>C</step><octave>4</octave></pitch><duration>2</duration></note>
      <note><pitch><step>A</step><alter>1</alter><octave>4</octave></pitch><duration>1</duration></note>
      <note><rest/><duration>1</duration></note>
      <note><pitch><step>E</step><octave>5</octave></pitch><duration>2</duration></note>
    </measure>
  </part>
  <part id="P2">
    <measure number="1">
      <attributes><divisions>1</divisions></attributes>
      <note><pitch><step>C</step><octave>3</octave></pitch><duration>3</duration></note>
    </measure>
  </part>
</score-partwise>
"""

CHORD_XML = """<?xml version="1.0" encoding="UTF-8"?>
<score-partwise version="4.0">
  <part-list><score-part id="P1"><part-name>Piano</part-name></score-part></part-list>
  <part id="P1">
    <measure number="1">
      <attributes><divisions>4</divisions></attributes>
      <note><pitch><step>C</step><octave>4</octave></pitch><duration>4</duration></note>
      <note><chord/><pitch><step>E</step><octave>4</octave></pitch><duration>4</duration></note>
      <note><chord/><pitch><step>G</step><octave>4</octave></pitch><duration>4</duration></note>
      <note><pitch><step>D</step><octave>4</octave></pitch><duration>2</duration></note>
    </measure>
  </part>
</score-partwise>
"""


def partwise(measures: str, divisions: int = 1, head: str = "") -> str:
    """Single-part document around the given measure bodies."""
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<score-partwise version="3.1">
  {head}
  <part-list><score-part id="P1"><part-name>Voice</part-name></score-part></part-list>
  <part id="P1">
    <measure number="1">
      <attributes><divisions>{divisions}</divisions></attributes>
      {measures}
    </measure>
  </part>
</score-partwise>
"""


def note_xml(step: str, octave: int, duration: int, extra: str = "", attrs: str = "") -> str:
    return (f"<note{attrs}>{extra}<pitch><step>{step}</step><octave>{octave}</octave></pitch>"
            f"<duration>{duration}</duration></note>")


@pytest.fixture
def simple_xml() -> str:
    return SIMPLE_XML


@pytest.fixture
def chord_xml() -> str:
    return CHORD_XML


# ---------------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------------

CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container>
  <rootfiles>
    <rootfile full-path="{path}" media-type="application/vnd.recordare.musicxml+xml"/>
  </rootfiles>
</container>
"""


def make_archive(entries, compression=zipfile.ZIP_DEFLATED, comment=b"") -> bytes:
    """Build a ZIP archive in memory from {name: bytes|str}."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=compression) as zf:
        for name, payload in entries.items():
            if isinstance(payload, str):
                payload = payload.encode("utf-8")
            zf.writestr(name, payload)
        zf.comment = comment
    return buf.getvalue()


@pytest.fixture
def archive_factory():
    return make_archive


@pytest.fixture
def mxl_bytes() -> bytes:
    """Compressed MusicXML with a container pointing at a nested root file."""
    return make_archive({
        "mimetype": "application/vnd.recordare.musicxml",
        "META-INF/container.xml": CONTAINER_XML.format(path="score/tune.musicxml"),
        "score/tune.musicxml": SIMPLE_XML,
    })


# ---------------------------------------------------------------------------
# MIDI files
# ---------------------------------------------------------------------------


def make_midi(tracks, ticks_per_beat: int = 480, type: int = 1) -> bytes:
    """Serialize lists of mido messages (delta times) to SMF bytes."""
    mid = mido.MidiFile(type=type, ticks_per_beat=ticks_per_beat)
    for msgs in tracks:
        track = mido.MidiTrack()
        track.extend(msgs)
        mid.tracks.append(track)
    buf = io.BytesIO()
    mid.save(file=buf)
    return buf.getvalue()


def sequential_notes(channel: int, pitches, ticks: int = 480, velocity: int = 64):
    msgs = []
    for p in pitches:
        msgs.append(mido.Message("note_on", channel=channel, note=p, velocity=velocity, time=0))
        msgs.append(mido.Message("note_off", channel=channel, note=p, velocity=0, time=ticks))
    return msgs


@pytest.fixture
def midi_factory():
    return make_midi


@pytest.fixture
def two_part_midi() -> bytes:
    """120 BPM, 4/4, two tracks of four sequential quarter notes each."""
    conductor = [
        mido.MetaMessage("track_name", name="Duet", time=0),
        mido.MetaMessage("set_tempo", tempo=500000, time=0),
        mido.MetaMessage("time_signature", numerator=4, denominator=4, time=0),
    ]
    upper = [mido.MetaMessage("track_name", name="Upper", time=0),
             mido.Message("program_change", channel=0, program=40, time=0)]
    upper += sequential_notes(0, [72, 74, 76, 77])
    lower = [mido.MetaMessage("track_name", name="Lower", time=0)]
    lower += sequential_notes(1, [48, 50, 52, 53])
    return make_midi([conductor, upper, lower])


# ---------------------------------------------------------------------------
# Scheduler collaborators
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic clock moved by hand."""

    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def small_score() -> Score:
    """Notes at beats 0, 0 (other part), 0.5 and 1.0; everything ends by beat 2."""
    lead = Part(name="Lead", instrument="Piano", channel=0, notes=[
        Note(pitch=60, velocity=100, start=0.0, duration=0.5),
        Note(pitch=62, velocity=100, start=0.5, duration=0.5),
        Note(pitch=64, velocity=100, start=1.0, duration=1.0),
    ])
    bass = Part(name="Bass", instrument="Bass", channel=1, notes=[
        Note(pitch=36, velocity=90, start=0.0, duration=2.0),
    ])
    return Score(title="Small", parts=[lead, bass])
