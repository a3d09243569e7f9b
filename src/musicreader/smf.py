# src/musicreader/smf.py
"""
Standard MIDI File (SMF) decoder.

Chunk framing, variable-length quantities and running status are handled
here; complete channel messages are handed to mido for decoding.
"""
from __future__ import annotations
import logging
import struct
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Tuple

import mido

from .errors import MalformedDocument, MusicReaderError, OutOfRangeValue, UnsupportedFormat
from .model import Part, Score, key_signature_name
from .util.time import micro_to_bpm, ticks_to_beats

log = logging.getLogger(__name__)

HEADER_ID = b"MThd"
TRACK_ID = b"MTrk"
CHUNK_HEAD = struct.Struct(">4sI")
HEADER_BODY = struct.Struct(">HHH")

PERCUSSION_CHANNEL = 9

# data bytes following a channel status, by high nibble
CHANNEL_DATA_LEN = {0x80: 2, 0x90: 2, 0xA0: 2, 0xB0: 2, 0xC0: 1, 0xD0: 1, 0xE0: 2}

META_TEXT = 0x01
META_COPYRIGHT = 0x02
META_TRACK_NAME = 0x03
META_END_OF_TRACK = 0x2F
META_TEMPO = 0x51
META_TIME_SIGNATURE = 0x58
META_KEY_SIGNATURE = 0x59

GM_FAMILIES = [
    "Piano", "Chromatic Percussion", "Organ", "Guitar",
    "Bass", "Strings", "Ensemble", "Brass",
    "Reed", "Pipe", "Synth Lead", "Synth Pad",
    "Synth Effects", "Ethnic", "Percussive", "Sound Effects",
]


def instrument_label(channel: int, program: int) -> str:
    if channel == PERCUSSION_CHANNEL:
        return "Percussion"
    return GM_FAMILIES[program // 8]


@dataclass
class _Header:
    fmt: int
    ntracks: int
    tpq: int


@dataclass
class _ChannelState:
    channel: int
    program: int = 0
    name: Optional[str] = None
    notes: List[Tuple[int, int, int, int]] = field(default_factory=list)  # (start, end, pitch, vel)


class _Reader:
    """Cursor over one chunk body; every read checks the chunk bound."""

    def __init__(self, data: bytes, start: int, end: int):
        self.data = data
        self.pos = start
        self.end = end

    def _need(self, n: int):
        if self.pos + n > self.end:
            raise MalformedDocument("unexpected end of track data", offset=self.pos)

    def byte(self) -> int:
        self._need(1)
        b = self.data[self.pos]
        self.pos += 1
        return b

    def peek(self) -> int:
        self._need(1)
        return self.data[self.pos]

    def take(self, n: int) -> bytes:
        self._need(n)
        out = self.data[self.pos:self.pos + n]
        self.pos += n
        return out

    def vlq(self) -> int:
        value = 0
        for _ in range(4):
            b = self.byte()
            value = (value << 7) | (b & 0x7F)
            if not b & 0x80:
                return value
        raise MalformedDocument("variable-length quantity longer than 4 bytes", offset=self.pos)

    @property
    def done(self) -> bool:
        return self.pos >= self.end


def read_vlq(data: bytes, pos: int = 0) -> Tuple[int, int]:
    """Decode one variable-length quantity; returns (value, next position)."""
    r = _Reader(data, pos, len(data))
    value = r.vlq()
    return value, r.pos


class MidiFileDecoder:
    """SMF bytes -> Score. Create one instance per file."""

    def __init__(self):
        self.warnings: List[MusicReaderError] = []

    def decode(self, midi_bytes: bytes, title: Optional[str] = None) -> Score:
        self.warnings = []
        self._channels: Dict[int, _ChannelState] = {}
        self._meta: Dict[str, object] = {}

        data = bytes(midi_bytes)
        header, track_spans = self._chunks(data)

        for idx, (start, end) in enumerate(track_spans):
            self._track(data, start, end, idx, header)

        score = self._build(header, title)
        log.debug("smf: format %d, %d tracks, tpq %d -> %d parts, %d notes",
                  header.fmt, header.ntracks, header.tpq, len(score.parts), score.note_count)
        return score

    # ---------- chunks ----------

    def _chunks(self, data: bytes) -> Tuple[_Header, List[Tuple[int, int]]]:
        if len(data) < CHUNK_HEAD.size + HEADER_BODY.size or data[:4] != HEADER_ID:
            raise MalformedDocument("missing MThd header chunk", offset=0)
        _, hlen = CHUNK_HEAD.unpack_from(data, 0)
        if hlen < HEADER_BODY.size or CHUNK_HEAD.size + hlen > len(data):
            raise MalformedDocument(f"header chunk length {hlen} inconsistent with file size", offset=4)
        fmt, ntracks, division = HEADER_BODY.unpack_from(data, CHUNK_HEAD.size)
        if division & 0x8000:
            raise UnsupportedFormat("SMPTE time division is not supported", offset=12)
        if fmt > 2:
            raise UnsupportedFormat(f"unknown SMF format {fmt}", offset=8)
        if division == 0:
            raise MalformedDocument("ticks per quarter note is zero", offset=12)
        header = _Header(fmt=fmt, ntracks=ntracks, tpq=division)

        spans: List[Tuple[int, int]] = []
        pos = CHUNK_HEAD.size + hlen
        while pos + CHUNK_HEAD.size <= len(data) and len(spans) < ntracks:
            cid, clen = CHUNK_HEAD.unpack_from(data, pos)
            body = pos + CHUNK_HEAD.size
            if body + clen > len(data):
                raise MalformedDocument(f"chunk {cid!r} declares {clen} bytes past end of file", offset=pos)
            if cid == TRACK_ID:
                spans.append((body, body + clen))
            else:
                log.debug("smf: skipping unknown chunk %r at %d", cid, pos)
            pos = body + clen

        if len(spans) < ntracks:
            raise MalformedDocument(f"header declares {ntracks} tracks, found {len(spans)}", offset=pos)
        if fmt == 0 and ntracks != 1:
            log.warning("smf: format 0 file with %d tracks", ntracks)
        return header, spans

    # ---------- events ----------

    def _track(self, data: bytes, start: int, end: int, index: int, header: _Header):
        r = _Reader(data, start, end)
        tick = 0
        running: Optional[int] = None
        pending: Dict[Tuple[int, int], Deque[Tuple[int, int]]] = defaultdict(deque)
        track_name: Optional[str] = None
        track_channels: List[int] = []

        while not r.done:
            tick += r.vlq()
            event_pos = r.pos
            status = r.peek()

            if status == 0xFF:
                r.byte()
                mtype = r.byte()
                payload = r.take(r.vlq())
                running = None
                if mtype == META_END_OF_TRACK:
                    break
                if mtype == META_TRACK_NAME and track_name is None:
                    track_name = _text(payload)
                self._meta_event(mtype, payload, tick, index, event_pos)
                continue

            if status in (0xF0, 0xF7):
                r.byte()
                r.take(r.vlq())
                running = None
                continue

            if status & 0x80:
                r.byte()
                if status >= 0xF0:
                    raise MalformedDocument(f"system message 0x{status:02X} inside track", offset=event_pos)
                running = status
            elif running is None:
                raise MalformedDocument("data byte without running status", offset=event_pos)
            else:
                status = running

            body = r.take(CHANNEL_DATA_LEN[status & 0xF0])
            try:
                msg = mido.Message.from_bytes([status] + list(body), time=tick)
            except ValueError as e:
                raise MalformedDocument(f"invalid channel message: {e}", offset=event_pos) from e
            if msg.channel not in track_channels:
                track_channels.append(msg.channel)
            self._channel_event(msg, tick, pending)

        # close notes still sounding at the end of the track
        for (ch, pitch), starts in pending.items():
            for st, vel in starts:
                log.warning("smf: track %d: note ch=%d pitch=%d at tick %d never released", index, ch, pitch, st)
                self._state(ch).notes.append((st, tick, pitch, vel))

        if track_name:
            if len(track_channels) == 1 and self._state(track_channels[0]).name is None:
                self._state(track_channels[0]).name = track_name
            elif index == 0 and (header.fmt == 0 or not track_channels):
                self._meta.setdefault("title", track_name)

    def _state(self, channel: int) -> _ChannelState:
        st = self._channels.get(channel)
        if st is None:
            st = self._channels[channel] = _ChannelState(channel=channel)
        return st

    def _channel_event(self, msg: mido.Message, tick: int, pending):
        if msg.type == "note_on" and msg.velocity > 0:
            pending[(msg.channel, msg.note)].append((tick, msg.velocity))
        elif msg.type == "note_off" or msg.type == "note_on":
            starts = pending.get((msg.channel, msg.note))
            if not starts:
                return          # unmatched note-off
            st, vel = starts.popleft()
            self._state(msg.channel).notes.append((st, tick, msg.note, vel))
        elif msg.type == "program_change":
            self._state(msg.channel).program = msg.program

    def _meta_event(self, mtype: int, payload: bytes, tick: int, index: int, offset: int):
        if mtype == META_TEMPO:
            if len(payload) != 3:
                raise MalformedDocument("tempo meta event must carry 3 bytes", offset=offset)
            us = int.from_bytes(payload, "big")
            if us == 0:
                raise MalformedDocument("tempo of zero microseconds per quarter", offset=offset)
            if "tempo" not in self._meta:
                self._meta["tempo"] = micro_to_bpm(us)
            else:
                log.debug("smf: ignoring tempo change at tick %d", tick)
        elif mtype == META_COPYRIGHT:
            self._meta.setdefault("copyright", _text(payload))
        elif mtype == META_TIME_SIGNATURE and len(payload) >= 2:
            self._meta.setdefault("time_signature", f"{payload[0]}/{2 ** payload[1]}")
        elif mtype == META_KEY_SIGNATURE and len(payload) >= 2:
            sf = payload[0] - 256 if payload[0] > 127 else payload[0]
            name = key_signature_name(sf, payload[1] == 1)
            if name is not None:
                self._meta.setdefault("key_signature", name)

    # ---------- result ----------

    def _build(self, header: _Header, title: Optional[str]) -> Score:
        meta = self._meta
        score = Score(
            title=title or meta.get("title") or "Untitled",
            copyright=meta.get("copyright"),
            key_signature=meta.get("key_signature"),
            time_signature=meta.get("time_signature"),
            tempo=meta.get("tempo"),
        )
        for ch in sorted(self._channels):
            st = self._channels[ch]
            if not st.notes:
                continue
            part = Part(
                name=st.name or f"Channel {ch + 1}",
                instrument=instrument_label(ch, st.program),
                channel=ch,
                program=st.program,
            )
            for start, end, pitch, vel in sorted(st.notes, key=lambda n: (n[0], n[2])):
                try:
                    part.add_note(
                        pitch=pitch,
                        velocity=vel,
                        start=ticks_to_beats(start, header.tpq),
                        duration=ticks_to_beats(end - start, header.tpq),
                    )
                except OutOfRangeValue as e:
                    self.warnings.append(e)
                    log.warning("smf: dropping note ch=%d pitch=%d at tick %d: %s", ch, pitch, start, e)
            if part.notes:
                score.parts.append(part)
        return score


def decode_midi(midi_bytes: bytes, title: Optional[str] = None) -> Score:
    return MidiFileDecoder().decode(midi_bytes, title=title)


def _text(payload: bytes) -> str:
    try:
        return payload.decode("utf-8").strip()
    except UnicodeDecodeError:
        return payload.decode("latin-1").strip()
