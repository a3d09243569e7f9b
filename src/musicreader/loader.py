# src/musicreader/loader.py
from __future__ import annotations
import logging
from pathlib import Path, PurePosixPath
from typing import Optional, Union
from xml.etree import ElementTree as ET

from .archive import extract_entry, list_entries
from .errors import MalformedDocument, UnsupportedFormat
from .model import Score
from .musicxml import NotationDecoder
from .smf import MidiFileDecoder
from .util.xml import find_children, namespace_map

log = logging.getLogger(__name__)

FORMAT_ARCHIVE = "archive"
FORMAT_MUSICXML = "musicxml"
FORMAT_MIDI = "midi"

ARCHIVE_SUFFIXES = {".mscz", ".mxl"}
XML_SUFFIXES = {".musicxml", ".xml", ".mscx"}
MIDI_SUFFIXES = {".mid", ".midi", ".smf", ".kar"}

CONTAINER_ENTRY = "META-INF/container.xml"


def sniff_format(data: bytes, name: Optional[str] = None) -> str:
    """Content first, then file extension."""
    if data[:4] in (b"PK\x03\x04", b"PK\x05\x06"):
        return FORMAT_ARCHIVE
    if data[:4] == b"MThd":
        return FORMAT_MIDI
    head = data[:64].lstrip(b"\xef\xbb\xbf \t\r\n")
    if head.startswith(b"<"):
        return FORMAT_MUSICXML
    suffix = Path(name).suffix.lower() if name else ""
    if suffix in ARCHIVE_SUFFIXES:
        return FORMAT_ARCHIVE
    if suffix in XML_SUFFIXES:
        return FORMAT_MUSICXML
    if suffix in MIDI_SUFFIXES:
        return FORMAT_MIDI
    raise UnsupportedFormat(f"cannot tell the format of {name or 'input'}")


def find_notation_entry(data: bytes) -> str:
    """Name of the notation document inside a score archive."""
    entries = {e.name: e for e in list_entries(data)}

    if CONTAINER_ENTRY in entries:
        try:
            root = ET.fromstring(extract_entry(data, CONTAINER_ENTRY))
        except ET.ParseError as e:
            raise MalformedDocument(f"unreadable {CONTAINER_ENTRY}: {e}", element="container") from e
        ns = namespace_map(root)
        for rf in find_children(root, "rootfiles/rootfile", ns):
            path = rf.get("full-path")
            if path in entries and not entries[path].is_dir:
                return path
            log.warning("loader: container.xml points at missing entry %r", path)

    for name, entry in entries.items():
        if entry.is_dir:
            continue
        p = PurePosixPath(name)
        if p.parts and p.parts[0] == "META-INF":
            continue
        if p.suffix.lower() in XML_SUFFIXES:
            return name
    raise MalformedDocument("archive holds no notation document", element="rootfile")


def decode_archive(data: bytes, default_velocity: int = 80) -> Score:
    entry = find_notation_entry(data)
    log.debug("loader: notation entry %r", entry)
    return NotationDecoder(default_velocity=default_velocity).decode(extract_entry(data, entry))


def decode_bytes(data: bytes, name: Optional[str] = None, default_velocity: int = 80) -> Score:
    fmt = sniff_format(data, name)
    if fmt == FORMAT_ARCHIVE:
        return decode_archive(data, default_velocity=default_velocity)
    if fmt == FORMAT_MUSICXML:
        return NotationDecoder(default_velocity=default_velocity).decode(data)
    return MidiFileDecoder().decode(data)


def load_score(path: Union[str, Path], default_velocity: int = 80) -> Score:
    path = Path(path)
    score = decode_bytes(path.read_bytes(), path.name, default_velocity=default_velocity)
    score.source = path.name
    if score.title == "Untitled":
        score.title = path.stem
    log.info("loader: %s -> %d parts, %d notes", path.name, len(score.parts), score.note_count)
    return score
