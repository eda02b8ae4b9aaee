"""
ffmpeg progress parsing.

ffmpeg writes its periodic stats line to stderr, separated from the previous
one by a carriage return rather than a newline:

    frame=  250 fps= 25 q=-1.0 size=    1024kB time=00:00:10.00 bitrate= 838.9kbits/s speed=1.00x

The parser buffers arbitrary output chunks into lines and turns each stats
line into a ProgressUpdate carrying the merged snapshot of every metric seen
during the run.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

ProgressValue = Union[int, float, str]

_TOKEN_RE = re.compile(r"(?<![\w.])(frame|fps|q|Lsize|size|time|bitrate|speed)=\s*([^\s=]+)")
_LINE_SPLIT_RE = re.compile(r"[\r\n]")


def _parse_bitrate(value: str) -> float:
    return float(value.removesuffix("kbits/s"))


def _parse_speed(value: str) -> float:
    return float(value.removesuffix("x"))


# metric name, converter
_CONVERTERS: dict[str, tuple[str, Callable[[str], ProgressValue]]] = {
    "frame": ("frame", int),
    "fps": ("fps", float),
    "q": ("q", float),
    "size": ("size", str),
    "Lsize": ("size", str),
    "time": ("time", str),
    "bitrate": ("bitrate", _parse_bitrate),
    "speed": ("speed", _parse_speed),
}


@dataclass
class ProgressUpdate:
    """Metrics parsed from one stats line plus the merged run snapshot."""

    values: dict[str, ProgressValue]
    snapshot: dict[str, ProgressValue] = field(default_factory=dict)


class ProgressParser:
    """Accumulates ffmpeg stats for a single run."""

    def __init__(self):
        self._buffer = ""
        self._snapshot: dict[str, ProgressValue] = {}

    @property
    def snapshot(self) -> dict[str, ProgressValue]:
        return dict(self._snapshot)

    def feed(self, chunk: str) -> list[str]:
        """Buffer an output chunk and return the lines it completed."""
        if not chunk:
            return []
        # "\r\n" split across chunks yields an empty line, which is dropped.
        parts = _LINE_SPLIT_RE.split(self._buffer + chunk)
        self._buffer = parts[-1]
        return [line for line in parts[:-1] if line]

    def flush(self) -> list[str]:
        """Return the buffered partial line, if any."""
        rest, self._buffer = self._buffer, ""
        return [rest] if rest else []

    def consume_line(self, raw: str) -> Optional[ProgressUpdate]:
        """Parse one line. Lines without recognized metrics return None."""
        values: dict[str, ProgressValue] = {}
        for key, raw_value in _TOKEN_RE.findall(raw):
            if raw_value == "N/A":
                continue
            name, convert = _CONVERTERS[key]
            try:
                values[name] = convert(raw_value)
            except ValueError:
                continue

        if not values:
            return None

        self._snapshot.update(values)
        return ProgressUpdate(values=values, snapshot=dict(self._snapshot))
