from __future__ import annotations

# Beat positions are rounded to this many decimals before they are compared,
# so 0.1 + 0.2 lands on the same instant as 0.3.
BEAT_PRECISION = 9


def div_to_beats(div_val: float, divisions: int) -> float:
    if divisions <= 0:
        divisions = 1
    return div_val / float(divisions)

def ticks_to_beats(ticks: int, tpq: int) -> float:
    return ticks / float(tpq)

def beats_to_ticks(beats: float, tpb: int) -> int:
    return int(round(beats * tpb))

def beats_to_seconds(beats: float, bpm: float) -> float:
    return beats * 60.0 / bpm

def seconds_to_beats(seconds: float, bpm: float) -> float:
    return seconds * bpm / 60.0

def micro_to_bpm(us_per_quarter: int) -> float:
    return 60_000_000 / us_per_quarter

def bpm_to_micro(bpm: float) -> int:
    return int(round(60_000_000 / max(1e-6, float(bpm))))

def snap_beat(beat: float) -> float:
    return round(beat, BEAT_PRECISION)
