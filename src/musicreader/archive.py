# src/musicreader/archive.py
"""
Minimal ZIP-family container reader (.mscz / .mxl are plain ZIP files).

Only what score archives need: stored and deflate entries, single disk, no
ZIP64, no encryption. Everything works on an in-memory ``bytes`` buffer; the
caller decides whether an entry ends up on disk (``extract_entry_to``).
"""
from __future__ import annotations
import logging
import struct
import zlib
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import List, Union

from .errors import CorruptArchive, EntryNotFound, UnsupportedCompression, UnsupportedFormat

log = logging.getLogger(__name__)

EOCD_SIG = b"PK\x05\x06"
CDIR_SIG = b"PK\x01\x02"
LOCAL_SIG = b"PK\x03\x04"

EOCD_STRUCT = struct.Struct("<4sHHHHIIH")                  # 22 bytes
CDIR_STRUCT = struct.Struct("<4sHHHHHHIIIHHHHHII")         # 46 bytes
LOCAL_STRUCT = struct.Struct("<4sHHHHHIIIHH")              # 30 bytes

MAX_COMMENT = 0xFFFF

METHOD_STORED = 0
METHOD_DEFLATE = 8
METHOD_NAMES = {METHOD_STORED: "stored", METHOD_DEFLATE: "deflate"}

FLAG_ENCRYPTED = 0x0001
FLAG_DATA_DESCRIPTOR = 0x0008
FLAG_UTF8 = 0x0800


@dataclass(frozen=True)
class EntryDescriptor:
    name: str
    compressed_size: int
    uncompressed_size: int
    compression_method: int
    offset: int           # of the local file header
    crc32: int = 0
    flags: int = 0

    @property
    def method_name(self) -> str:
        return METHOD_NAMES.get(self.compression_method, f"method-{self.compression_method}")

    @property
    def is_dir(self) -> bool:
        return self.name.endswith("/")


# ---------- central directory ----------

def _find_eocd(data: bytes) -> int:
    """Scan backwards from EOF for the end-of-central-directory record."""
    lowest = max(0, len(data) - EOCD_STRUCT.size - MAX_COMMENT)
    pos = len(data) - EOCD_STRUCT.size
    while pos >= lowest:
        pos = data.rfind(EOCD_SIG, lowest, pos + len(EOCD_SIG))
        if pos < 0:
            break
        comment_len = struct.unpack_from("<H", data, pos + 20)[0]
        if pos + EOCD_STRUCT.size + comment_len <= len(data):
            return pos
        pos -= 1
    raise CorruptArchive("end-of-central-directory record not found", offset=len(data))

def _decode_name(raw: bytes, flags: int) -> str:
    return raw.decode("utf-8" if flags & FLAG_UTF8 else "cp437")

def list_entries(data: bytes) -> List[EntryDescriptor]:
    eocd = _find_eocd(data)
    (_sig, disk_no, cd_disk, n_disk, n_total,
     cd_size, cd_offset, _comment_len) = EOCD_STRUCT.unpack_from(data, eocd)

    if disk_no != 0 or cd_disk != 0 or n_disk != n_total:
        raise UnsupportedFormat("multi-disk archives are not supported", offset=eocd)
    if n_total == 0xFFFF or cd_size == 0xFFFFFFFF or cd_offset == 0xFFFFFFFF:
        raise UnsupportedFormat("ZIP64 archives are not supported", offset=eocd)
    if cd_offset + cd_size > eocd:
        raise CorruptArchive("central directory overlaps end record", offset=cd_offset)

    entries: List[EntryDescriptor] = []
    pos = cd_offset
    for _ in range(n_total):
        if pos + CDIR_STRUCT.size > eocd:
            raise CorruptArchive("truncated central directory", offset=pos)
        (sig, _made, _need, flags, method, _mtime, _mdate, crc, csize, usize,
         name_len, extra_len, comment_len, _disk_start, _iattr, _eattr,
         local_off) = CDIR_STRUCT.unpack_from(data, pos)
        if sig != CDIR_SIG:
            raise CorruptArchive("bad central directory signature", offset=pos)
        name_start = pos + CDIR_STRUCT.size
        raw_name = data[name_start:name_start + name_len]
        if len(raw_name) != name_len:
            raise CorruptArchive("truncated entry name", offset=name_start)
        entries.append(EntryDescriptor(
            name=_decode_name(raw_name, flags),
            compressed_size=csize,
            uncompressed_size=usize,
            compression_method=method,
            offset=local_off,
            crc32=crc,
            flags=flags,
        ))
        pos = name_start + name_len + extra_len + comment_len

    log.debug("archive: %d entries, central directory at %d", len(entries), cd_offset)
    return entries


# ---------- extraction ----------

def _lookup(data: bytes, name: str) -> EntryDescriptor:
    for e in list_entries(data):
        if e.name == name:
            return e
    raise EntryNotFound(f"no entry named {name!r} in archive", element=name)

def read_entry(data: bytes, entry: EntryDescriptor) -> bytes:
    """Decompress one entry and verify its length and CRC32."""
    if entry.flags & FLAG_ENCRYPTED:
        raise UnsupportedFormat("encrypted entries are not supported", offset=entry.offset, element=entry.name)
    if entry.compression_method not in METHOD_NAMES:
        raise UnsupportedCompression(entry.compression_method, offset=entry.offset, element=entry.name)

    pos = entry.offset
    if pos + LOCAL_STRUCT.size > len(data):
        raise CorruptArchive("local header past end of archive", offset=pos, element=entry.name)
    (sig, _ver, flags, _method, _mtime, _mdate, crc, _csize, _usize,
     name_len, extra_len) = LOCAL_STRUCT.unpack_from(data, pos)
    if sig != LOCAL_SIG:
        raise CorruptArchive("bad local header signature", offset=pos, element=entry.name)
    # with a trailing data descriptor the local CRC field is zero
    if not flags & FLAG_DATA_DESCRIPTOR and crc != entry.crc32:
        raise CorruptArchive("local header CRC disagrees with central directory", offset=pos, element=entry.name)

    start = pos + LOCAL_STRUCT.size + name_len + extra_len
    payload = data[start:start + entry.compressed_size]
    if len(payload) != entry.compressed_size:
        raise CorruptArchive("entry data truncated", offset=start, element=entry.name)

    if entry.compression_method == METHOD_STORED:
        out = payload
    else:
        inflater = zlib.decompressobj(-zlib.MAX_WBITS)
        try:
            # one byte over the declared size is enough to detect a lie
            out = inflater.decompress(payload, entry.uncompressed_size + 1)
            if len(out) <= entry.uncompressed_size:
                out += inflater.flush()
        except zlib.error as e:
            raise CorruptArchive(f"deflate stream error: {e}", offset=start, element=entry.name) from e
        if not inflater.eof and len(out) <= entry.uncompressed_size:
            raise CorruptArchive("deflate stream truncated", offset=start, element=entry.name)

    if len(out) != entry.uncompressed_size:
        raise CorruptArchive(
            f"size mismatch: expected {entry.uncompressed_size}, got {len(out)}",
            offset=start, element=entry.name,
        )
    if zlib.crc32(out) & 0xFFFFFFFF != entry.crc32:
        raise CorruptArchive("CRC32 mismatch", offset=start, element=entry.name)
    return bytes(out)

def extract_entry(data: bytes, name: str) -> bytes:
    return read_entry(data, _lookup(data, name))

def extract_entry_to(data: bytes, name: str, dest_dir: Union[str, Path]) -> Path:
    """Write one entry below dest_dir and return the written path."""
    rel = PurePosixPath(name)
    if rel.is_absolute() or ".." in rel.parts or not rel.parts:
        raise CorruptArchive(f"refusing to extract unsafe entry name {name!r}", element=name)
    payload = extract_entry(data, name)
    target = Path(dest_dir).joinpath(*rel.parts)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(payload)
    return target
