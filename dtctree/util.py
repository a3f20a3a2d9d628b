"""Shared helpers: path joining, escape decoding, blob I/O and usage text."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Optional, Sequence

__all__ = [
    "FatalError",
    "LongOption",
    "join_path",
    "is_printable_string",
    "get_escape_char",
    "read_fdt",
    "write_fdt",
    "decode_type",
    "format_data",
    "format_usage",
    "version_string",
    "DTC_VERSION",
    "USAGE_TYPE_MSG",
    "COMMON_SHORT_OPTS",
    "COMMON_LONG_OPTS",
    "COMMON_OPTS_HELP",
]

DTC_VERSION = "DTC 1.6.1"

USAGE_TYPE_MSG = (
    "<type>\ts=string, i=int, u=unsigned, x=hex\n"
    "\tOptional modifier prefix:\n"
    "\t\thh or b=byte, h=2 byte, l=4 byte (default)"
)

_ARG_PLACEHOLDER = "<arg>"


class FatalError(Exception):
    """An unrecoverable error; the message is what would follow 'FATAL ERROR: '."""

    def __str__(self) -> str:
        return f"FATAL ERROR: {super().__str__()}"


@dataclass(frozen=True)
class LongOption:
    """A command-line option with a long name and an optional short letter."""

    name: str
    has_arg: bool = False
    short: Optional[str] = None


COMMON_SHORT_OPTS = "hV"
COMMON_LONG_OPTS = (
    LongOption("help", False, "h"),
    LongOption("version", False, "V"),
)
COMMON_OPTS_HELP = (
    "Print this help and exit",
    "Print version and exit",
)


def join_path(path: str, name: str) -> str:
    """Join a directory and a name with exactly one separating slash."""
    if path.endswith("/"):
        return path + name
    return f"{path}/{name}"


def _isprint(byte: int) -> bool:
    return 0x20 <= byte <= 0x7E


def is_printable_string(data: bytes) -> bool:
    """True if data is one or more non-empty printable NUL-terminated strings."""
    if not data or data[-1] != 0:
        return False
    return all(
        segment and all(_isprint(b) for b in segment)
        for segment in data[:-1].split(b"\0")
    )


_SIMPLE_ESCAPES = {
    "a": "\a",
    "b": "\b",
    "t": "\t",
    "n": "\n",
    "v": "\v",
    "f": "\f",
    "r": "\r",
}

_OCT_DIGITS = "01234567"
_HEX_DIGITS = "0123456789abcdefABCDEF"


def _take_digits(s: str, start: int, limit: int, digits: str) -> str:
    taken = []
    for ch in s[start:start + limit]:
        if ch not in digits:
            break
        taken.append(ch)
    return "".join(taken)


def get_escape_char(s: str, i: int) -> tuple[str, int]:
    """Decode the escape whose letter is at s[i].

    Returns the decoded character and the index just past the encoding.
    """
    c = s[i] if i < len(s) else "\0"
    if c in _SIMPLE_ESCAPES:
        return _SIMPLE_ESCAPES[c], i + 1
    if c in _OCT_DIGITS:
        digits = _take_digits(s, i, 3, _OCT_DIGITS)
        return chr(int(digits, 8) & 0xFF), i + len(digits)
    if c == "x":
        digits = _take_digits(s, i + 1, 2, _HEX_DIGITS)
        if not digits:
            raise FatalError("\\x used with no following hex digits\n")
        return chr(int(digits, 16)), i + 1 + len(digits)
    return c, i + 1


def read_fdt(filename: str) -> bytes:
    """Read a whole device tree blob from a file, or from stdin for '-'."""
    if filename == "-":
        return sys.stdin.buffer.read()
    with open(filename, "rb") as f:
        return f.read()


def _totalsize(blob: bytes) -> int:
    if len(blob) < 8:
        raise ValueError("blob too short to hold a header")
    return int.from_bytes(blob[4:8], "big")


def write_fdt(filename: str, blob: bytes) -> None:
    """Write the blob, up to the size its header records, to a file or stdout for '-'."""
    totalsize = _totalsize(blob)
    if len(blob) < totalsize:
        raise ValueError(
            f"blob holds {len(blob)} bytes but header says {totalsize}"
        )
    data = bytes(blob[:totalsize])
    if filename == "-":
        sys.stdout.buffer.write(data)
        sys.stdout.buffer.flush()
        return
    with open(filename, "wb") as f:
        f.write(data)


_QUALIFIER_SIZES = {"b": 1, "h": 2, "l": 4}


def decode_type(fmt: str) -> tuple[str, int]:
    """Decode a type string such as 'x', 'hx' or 'bu'.

    Returns (type character, size in bytes); the size is -1 for strings or
    when no size modifier was given. Raises ValueError on a bad format.
    """
    if not fmt:
        raise ValueError("empty type format")
    pos = 0
    qualifier = ""
    if fmt[pos] in "hlLb":
        qualifier = fmt[pos]
        pos += 1
        if pos < len(fmt) and fmt[pos] == qualifier:
            pos += 1
            if qualifier == "h":
                qualifier = "b"

    if pos >= len(fmt) or fmt[pos] not in "iuxs":
        raise ValueError(f"invalid type format {fmt!r}")
    kind = fmt[pos]
    pos += 1
    if pos != len(fmt):
        raise ValueError(f"invalid type format {fmt!r}")

    size = -1 if kind == "s" else _QUALIFIER_SIZES.get(qualifier, -1)
    return kind, size


def format_data(data: bytes) -> str:
    """Render property data as ' = ...', guessing strings, cells or bytes."""
    if not data:
        return ""
    if is_printable_string(data):
        strings = data[:-1].split(b"\0")
        return " = " + ", ".join(f'"{s.decode("ascii")}"' for s in strings)
    if len(data) % 4 == 0:
        cells = (
            int.from_bytes(data[k:k + 4], "big") for k in range(0, len(data), 4)
        )
        return " = <" + " ".join(f"0x{c:08x}" for c in cells) + ">"
    return " = [" + " ".join(f"{b:02x}" for b in data) + "]"


def format_usage(
    errmsg: Optional[str],
    synopsis: str,
    short_opts: str,
    long_opts: Sequence[LongOption],
    opts_help: Sequence[str],
) -> str:
    """Build the standard usage text, with an error line if errmsg is given."""
    if len(opts_help) != len(long_opts):
        raise ValueError("every long option needs a help string")

    arg_len = len(_ARG_PLACEHOLDER) + 1
    optlen = max(
        (len(o.name) + 1 + (arg_len if o.has_arg else 0) for o in long_opts),
        default=0,
    )

    lines = [f"Usage: {synopsis}\n\nOptions: -[{short_opts}]\n"]
    for opt, help_text in zip(long_opts, opts_help):
        prefix = f"  -{opt.short}, " if opt.short else "      "
        if opt.has_arg:
            pad = " " * (optlen - len(opt.name) - arg_len)
            flag = f"--{opt.name} {_ARG_PLACEHOLDER}{pad}"
        else:
            flag = f"--{opt.name.ljust(optlen)}"
        lines.append(f"{prefix}{flag}{help_text}\n")

    if errmsg:
        lines.append(f"\nError: {errmsg}\n")
    return "".join(lines)


def version_string() -> str:
    """The version line the tools print."""
    return f"Version: {DTC_VERSION}"