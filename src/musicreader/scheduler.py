# src/musicreader/scheduler.py
"""
Score -> timeline of note-on/note-off commands, dispatched in real time.

State machine:  STOPPED --play--> PLAYING --pause--> PAUSED --play--> PLAYING
                any --stop/load--> STOPPED

All control calls and the periodic tick run under one lock, so a control
change never interleaves with a dispatch in progress.
"""
from __future__ import annotations
import logging
import threading
import time
from bisect import bisect_left
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .model import DEFAULT_BPM, Part, Score
from .sink import Sink
from .util.time import beats_to_seconds, seconds_to_beats, snap_beat

log = logging.getLogger(__name__)

MIN_BPM = 30.0
MAX_BPM = 300.0
DEFAULT_TICK_INTERVAL = 0.01


class PlaybackState(Enum):
    STOPPED = "stopped"
    PLAYING = "playing"
    PAUSED = "paused"


class CommandKind(Enum):
    NOTE_ON = "note_on"
    NOTE_OFF = "note_off"


@dataclass(frozen=True)
class TimedCommand:
    time: float           # seconds from the start of the score
    kind: CommandKind
    channel: int
    pitch: int
    velocity: int
    beat: float = 0.0

    @property
    def is_note_on(self) -> bool:
        return self.kind is CommandKind.NOTE_ON


def clamp_tempo(bpm: float) -> float:
    return max(MIN_BPM, min(MAX_BPM, float(bpm)))

def audible_parts(score: Score) -> List[Part]:
    soloed = [p for p in score.parts if p.solo]
    if soloed:
        return soloed
    return [p for p in score.parts if not p.muted]

def compile_timeline(score: Score, bpm: float) -> List[TimedCommand]:
    """
    Order: beat position, then note-off before note-on at the same beat,
    then (part, note) encounter order.
    """
    keyed: List[Tuple[Tuple[float, int, int], CommandKind, int, int, int]] = []
    seq = 0
    for part in audible_parts(score):
        for note in part.notes:
            pitch = note.pitch + part.transpose
            if not 0 <= pitch <= 127:
                log.warning("scheduler: %s: transposed pitch %d out of range, skipped", part.name, pitch)
                continue
            keyed.append(((snap_beat(note.start), 1, seq), CommandKind.NOTE_ON, part.channel, pitch, note.velocity))
            keyed.append(((snap_beat(note.end), 0, seq), CommandKind.NOTE_OFF, part.channel, pitch, 0))
            seq += 1
    keyed.sort(key=lambda k: k[0])
    return [
        TimedCommand(time=beats_to_seconds(key[0], bpm), kind=kind, channel=ch, pitch=p, velocity=v, beat=key[0])
        for key, kind, ch, p, v in keyed
    ]


class _Ticker:
    """Daemon thread calling `callback` every `interval` seconds while resumed."""

    def __init__(self, callback: Callable[[], None], interval: float):
        self.callback = callback
        self.interval = interval
        self._active = threading.Event()
        self._closed = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def resume(self):
        if self._closed.is_set():
            return
        if self._thread is None:
            self._thread = threading.Thread(target=self._run, name="musicreader-ticker", daemon=True)
            self._thread.start()
        self._active.set()

    def suspend(self):
        self._active.clear()

    def close(self):
        self._closed.set()
        self._active.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join()
        self._thread = None

    def _run(self):
        while True:
            self._active.wait()
            if self._closed.wait(self.interval):
                return
            if not self._active.is_set():
                continue
            try:
                self.callback()
            except Exception:
                log.exception("scheduler: tick failed")


class EventScheduler:
    def __init__(
        self,
        sink: Optional[Sink] = None,
        *,
        tempo: float = DEFAULT_BPM,
        volume: float = 1.0,
        loop: bool = False,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        threaded: bool = True,
    ):
        self.sink = sink if sink is not None else Sink()
        self.loop = bool(loop)
        self._clock = clock
        self._lock = threading.RLock()
        self._tempo = clamp_tempo(tempo)
        self._volume = max(0.0, min(1.0, float(volume)))

        self._score: Optional[Score] = None
        self._timeline: List[TimedCommand] = []
        self._times: List[float] = []
        self._duration = 0.0            # seconds, fixed per compile
        self._cursor = 0
        self._state = PlaybackState.STOPPED
        self._reference_start = 0.0
        self._offset = 0.0              # position while not playing
        self._sounding: Counter = Counter()

        self._ticker = _Ticker(self.tick, tick_interval) if threaded else None

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], sink: Optional[Sink] = None, **overrides) -> "EventScheduler":
        pb = cfg.get("playback", {}) or {}
        kwargs = dict(
            tempo=float(pb.get("tempo", DEFAULT_BPM)),
            volume=float(pb.get("volume", 1.0)),
            loop=bool(pb.get("loop", False)),
            tick_interval=float(pb.get("tick_interval", DEFAULT_TICK_INTERVAL)),
        )
        kwargs.update(overrides)
        return cls(sink, **kwargs)

    # ---------- queries ----------

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def is_playing(self) -> bool:
        return self._state is PlaybackState.PLAYING

    @property
    def score(self) -> Optional[Score]:
        return self._score

    @property
    def tempo(self) -> float:
        return self._tempo

    @property
    def timeline(self) -> Tuple[TimedCommand, ...]:
        with self._lock:
            return tuple(self._timeline)

    @property
    def total_duration(self) -> float:
        with self._lock:
            return self._duration

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._position()

    @property
    def volume(self) -> float:
        return self._volume

    @volume.setter
    def volume(self, value: float):
        with self._lock:
            self._volume = max(0.0, min(1.0, float(value)))
            self.sink.set_volume(self._volume)

    # ---------- control ----------

    def load(self, score: Score):
        with self._lock:
            self._halt()
            self._score = score
            if score.tempo is not None:
                self._tempo = clamp_tempo(score.tempo)
            self._compile()
            for part in score.parts:
                self.sink.setup_channel(part.channel, part.program, part.volume, part.pan)
            self.sink.set_volume(self._volume)
            self._suspend()
        log.info("scheduler: loaded %r, %d commands, %.2fs at %.1f BPM",
                 score.title, len(self._timeline), self.total_duration, self._tempo)

    def unload(self):
        with self._lock:
            self._halt()
            self._score = None
            self._timeline = []
            self._times = []
            self._duration = 0.0
            self._suspend()

    def play(self) -> bool:
        with self._lock:
            if self._state is PlaybackState.PLAYING:
                return True
            if not self._timeline:
                log.debug("scheduler: play() without a timeline ignored")
                return False
            if self._state is PlaybackState.STOPPED:
                self._cursor = bisect_left(self._times, self._offset)
            self._reference_start = self._clock() - self._offset
            self._state = PlaybackState.PLAYING
            if self._ticker is not None:
                self._ticker.resume()
            log.debug("scheduler: playing from %.3fs", self._offset)
            return True

    def pause(self):
        with self._lock:
            if self._state is not PlaybackState.PLAYING:
                return
            self._offset = self._elapsed()
            self._state = PlaybackState.PAUSED
            self._suspend()
            log.debug("scheduler: paused at %.3fs", self._offset)

    def stop(self):
        with self._lock:
            self._halt()
            self._suspend()

    def seek(self, target: float) -> float:
        with self._lock:
            target = min(max(float(target), 0.0), self._duration)
            self._flush()
            self._cursor = bisect_left(self._times, target)
            if self._state is PlaybackState.PLAYING:
                self._reference_start = self._clock() - target
            else:
                self._offset = target
            log.debug("scheduler: seek to %.3fs (cursor %d)", target, self._cursor)
            return target

    def set_tempo(self, bpm: float) -> float:
        with self._lock:
            new = clamp_tempo(bpm)
            if self._score is None:
                self._tempo = new
                return new
            beat = seconds_to_beats(self._position(), self._tempo)
            self._tempo = new
            # same order at any tempo, so the cursor stays valid
            self._compile()
            pos = beats_to_seconds(beat, new)
            if self._state is PlaybackState.PLAYING:
                self._reference_start = self._clock() - pos
            else:
                self._offset = pos
            log.debug("scheduler: tempo %.1f BPM, position %.3fs", new, pos)
            return new

    def tick(self):
        """Dispatch every command that is due. Driven by the ticker thread or by hand."""
        with self._lock:
            if self._state is not PlaybackState.PLAYING:
                return
            elapsed = self._elapsed()
            n = len(self._timeline)
            while self._cursor < n and self._times[self._cursor] <= elapsed:
                self._emit(self._timeline[self._cursor])
                self._cursor += 1
            if self._cursor >= n and elapsed >= self._duration:
                self._halt()
                if self.loop:
                    log.debug("scheduler: loop")
                    self._cursor = 0
                    self._reference_start = self._clock()
                    self._state = PlaybackState.PLAYING
                else:
                    log.debug("scheduler: end of timeline")
                    self._suspend()

    def close(self):
        self.stop()
        if self._ticker is not None:
            self._ticker.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # ---------- internals (lock held) ----------

    def _compile(self):
        self._timeline = compile_timeline(self._score, self._tempo)
        self._times = [c.time for c in self._timeline]
        self._duration = self._score.total_duration(self._tempo)

    def _elapsed(self) -> float:
        return self._clock() - self._reference_start

    def _position(self) -> float:
        if self._state is PlaybackState.PLAYING:
            return min(max(self._elapsed(), 0.0), self._duration)
        return self._offset

    def _emit(self, cmd: TimedCommand):
        key = (cmd.channel, cmd.pitch)
        if cmd.is_note_on:
            self._sounding[key] += 1
        else:
            # its note-on was skipped by a seek
            if self._sounding[key] <= 0:
                return
            self._sounding[key] -= 1
            if not self._sounding[key]:
                del self._sounding[key]
        self.sink.send(cmd)

    def _flush(self):
        if not self._sounding:
            return
        now = self._position()
        for ch, pitch in sorted(self._sounding):
            self.sink.send(TimedCommand(time=now, kind=CommandKind.NOTE_OFF, channel=ch, pitch=pitch, velocity=0,
                                        beat=seconds_to_beats(now, self._tempo)))
        self._sounding.clear()

    def _halt(self):
        self._flush()
        self._state = PlaybackState.STOPPED
        self._offset = 0.0
        self._cursor = 0

    def _suspend(self):
        if self._ticker is not None:
            self._ticker.suspend()
