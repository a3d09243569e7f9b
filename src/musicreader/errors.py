from __future__ import annotations
from typing import Optional


class MusicReaderError(Exception):
    """Base class for everything this package raises."""


class DecodeError(MusicReaderError):
    """Fatal import error. No partial Score is returned when this is raised."""

    def __init__(self, message: str, *, offset: Optional[int] = None, element: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.offset = offset
        self.element = element

    def __str__(self) -> str:
        ctx = []
        if self.offset is not None:
            ctx.append(f"offset {self.offset}")
        if self.element is not None:
            ctx.append(f"<{self.element}>")
        return f"{self.message} ({', '.join(ctx)})" if ctx else self.message


class CorruptArchive(DecodeError):
    pass


class UnsupportedCompression(DecodeError):
    def __init__(self, method: int, *, offset: Optional[int] = None, element: Optional[str] = None):
        super().__init__(f"unsupported compression method {method}", offset=offset, element=element)
        self.method = method


class UnsupportedFormat(DecodeError):
    pass


class MalformedDocument(DecodeError):
    pass


class EntryNotFound(DecodeError, LookupError):
    pass


class OutOfRangeValue(MusicReaderError, ValueError):
    """A pitch/velocity/channel/... outside its legal bounds.

    Raised by the model constructors. Decoders catch it, drop the offending
    note or part and keep going.
    """

    def __init__(self, field: str, value, lo=None, hi=None):
        if lo is not None and hi is not None:
            msg = f"{field}={value!r} outside [{lo}, {hi}]"
        else:
            msg = f"invalid {field}={value!r}"
        super().__init__(msg)
        self.field = field
        self.value = value


class UnsupportedElement(MusicReaderError):
    """Soft warning: an element was recognised as valid input but skipped."""

    def __init__(self, element: str, detail: str = ""):
        super().__init__(f"<{element}> skipped" + (f": {detail}" if detail else ""))
        self.element = element
