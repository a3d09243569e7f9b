from __future__ import annotations
import argparse, pathlib, sys, time
from . import loader, persist, write
from .config import get_default_velocity, get_ticks_per_beat, load_config, setup_logging
from .errors import DecodeError, MusicReaderError
from .scheduler import EventScheduler, PlaybackState
from .sink import MidoPortSink

def _print_summary(score):
    print(f"[cli] title     = {score.title}")
    print(f"[cli] composer  = {score.composer}")
    if score.key_signature or score.time_signature:
        print(f"[cli] key/time  = {score.key_signature or '-'} / {score.time_signature or '-'}")
    print(f"[cli] tempo     = {score.effective_tempo:g} BPM")
    for p in score.parts:
        flags = "".join(f for f, on in ((" muted", p.muted), (" solo", p.solo)) if on)
        print(f"[cli]   part {p.name!r}: ch={p.channel + 1} prog={p.program} notes={len(p.notes)}{flags}")

def _print_events(sched: EventScheduler):
    for cmd in sched.timeline:
        kind = "on " if cmd.is_note_on else "off"
        print(f"{cmd.time:10.4f}s  {kind} ch={cmd.channel + 1:2d} pitch={cmd.pitch:3d} vel={cmd.velocity:3d}")

def _play(sched: EventScheduler, score, tempo=None) -> int:
    sched.load(score)
    if tempo:
        sched.set_tempo(tempo)
    if not sched.play():
        print("[cli] nothing to play", file=sys.stderr)
        return 0
    print(f"[cli] playing {sched.total_duration:.1f}s{' (loop, Ctrl-C to stop)' if sched.loop else ''}")
    try:
        while sched.state is not PlaybackState.STOPPED:
            time.sleep(0.1)
    except KeyboardInterrupt:
        print("[cli] interrupted")
    finally:
        sched.close()
    return 0

def main(argv=None):
    p = argparse.ArgumentParser(description="Decode .mscz/.mxl/MusicXML/MIDI scores and play them")
    p.add_argument("--in", dest="infile", help="Input score (.mscz/.mxl/.musicxml/.xml/.mid/.midi)")
    p.add_argument("--config", dest="config", default=None, help="YAML config (defaults applied if omitted)")
    p.add_argument("--json-out", dest="json_out", default=None, help="Write the decoded score (.json or .yaml)")
    p.add_argument("--midi-out", dest="midi_out", default=None, help="Export the decoded score as a MIDI file")
    p.add_argument("--events", action="store_true", help="Print the compiled note-on/note-off timeline")
    p.add_argument("--play", action="store_true", help="Play through a MIDI output port")
    p.add_argument("--port", default=None, help="MIDI output port name (default: system default)")
    p.add_argument("--list-ports", action="store_true", help="List MIDI output ports and exit")
    p.add_argument("--tempo", type=float, default=None, help="Override tempo in BPM (30-300)")
    p.add_argument("--loop", action="store_true", help="Loop playback")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = p.parse_args(argv)

    cfg = load_config(args.config)
    setup_logging(cfg, args.verbose)

    if args.list_ports:
        for name in MidoPortSink.available_ports():
            print(name)
        return 0

    if not args.infile:
        print("[cli] ERROR: --in is required", file=sys.stderr)
        return 1
    in_path = pathlib.Path(args.infile).expanduser().resolve()
    if not in_path.exists():
        print(f"[cli] ERROR: Input not found: {in_path}", file=sys.stderr)
        return 1

    print(f"[cli] infile = {in_path}")
    try:
        score = loader.load_score(in_path, default_velocity=get_default_velocity(cfg))
    except DecodeError as e:
        print(f"[cli] ERROR: {type(e).__name__}: {e}", file=sys.stderr)
        return 2
    _print_summary(score)

    if args.json_out:
        out = persist.save_score(score, pathlib.Path(args.json_out).expanduser().resolve())
        print(f"[cli] score     -> {out}")
    if args.midi_out:
        out = pathlib.Path(args.midi_out).expanduser().resolve()
        write.write_score_midi(score, str(out), ticks_per_beat=get_ticks_per_beat(cfg))
        print(f"[cli] midi      -> {out}")

    overrides = {"loop": True} if args.loop else {}
    if args.play:
        try:
            sink = MidoPortSink(args.port)
        except (OSError, ImportError, MusicReaderError) as e:
            print(f"[cli] ERROR: cannot open MIDI output: {e}", file=sys.stderr)
            return 3
        sched = EventScheduler.from_config(cfg, sink, **overrides)
        try:
            return _play(sched, score, args.tempo)
        finally:
            sink.close()

    sched = EventScheduler.from_config(cfg, threaded=False, **overrides)
    sched.load(score)
    if args.tempo:
        sched.set_tempo(args.tempo)
    if args.events:
        _print_events(sched)
    print(f"[cli] Done. parts={len(score.parts)} notes={score.note_count} "
          f"duration={sched.total_duration:.2f}s tempo={sched.tempo:g}")
    return 0

if __name__ == "__main__":
    sys.exit(main())
