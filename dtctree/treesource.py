"""Writing a live device tree back out as device tree source text."""

from __future__ import annotations

import io
from typing import List, Optional, TextIO

from .livetree import DtInfo, Label, Marker, MarkerType, Node, Property
from .srcpos import SourcePosition, SourceTracker

__all__ = ["guess_value_type", "format_source", "dt_to_source"]

_CELL_SIZE = 4

_DELIM_START = {
    MarkerType.UINT8: "[",
    MarkerType.UINT16: "/bits/ 16 <",
    MarkerType.UINT32: "<",
    MarkerType.UINT64: "/bits/ 64 <",
    MarkerType.STRING: "",
}

_DELIM_END = {
    MarkerType.UINT8: "]",
    MarkerType.UINT16: ">",
    MarkerType.UINT32: ">",
    MarkerType.UINT64: ">",
    MarkerType.STRING: "",
}

_STRING_ESCAPES = {
    0x07: "\\a",
    0x08: "\\b",
    0x09: "\\t",
    0x0A: "\\n",
    0x0B: "\\v",
    0x0C: "\\f",
    0x0D: "\\r",
    0x5C: "\\\\",
    0x22: '\\"',
    0x00: "\\0",
}

_STRING_CONTROLS = b"\a\b\t\n\v\f\r"


def _isprint(byte: int) -> bool:
    return 0x20 <= byte <= 0x7E


def _isstring(byte: int) -> bool:
    return _isprint(byte) or byte == 0 or byte in _STRING_CONTROLS


def _live_labels(labels: List[Label]) -> List[str]:
    return [l.label for l in labels if not l.deleted]


def guess_value_type(prop: Property) -> MarkerType:
    """Guess how to show a value that carries no type markers."""
    val = prop.val.val
    length = len(val)
    nnotstring = sum(1 for b in val if not _isstring(b))
    nnul = val.count(0)

    labels = list(prop.val.markers_of_type(MarkerType.LABEL))
    nnotstringlbl = sum(
        1 for m in labels if m.offset > 0 and val[m.offset - 1] != 0
    )
    nnotcelllbl = sum(1 for m in labels if m.offset % _CELL_SIZE != 0)

    if (
        length
        and val[-1] == 0
        and nnotstring == 0
        and nnul <= length - nnul
        and nnotstringlbl == 0
    ):
        return MarkerType.STRING
    if length % _CELL_SIZE == 0 and nnotcelllbl == 0:
        return MarkerType.UINT32
    return MarkerType.UINT8


def _format_string(chunk: bytes) -> str:
    if not chunk:
        return ""
    if chunk[-1] != 0:
        raise ValueError("string data is not NUL-terminated")
    parts = ['"']
    for byte in chunk[:-1]:
        if byte in _STRING_ESCAPES:
            parts.append(_STRING_ESCAPES[byte])
        elif _isprint(byte):
            parts.append(chr(byte))
        else:
            parts.append(f"\\x{byte:02x}")
    parts.append('"')
    return "".join(parts)


def _format_ints(chunk: bytes, width: int) -> str:
    if len(chunk) % width != 0:
        raise ValueError(f"data length {len(chunk)} is not a multiple of {width}")
    values = (
        int.from_bytes(chunk[k:k + width], "big")
        for k in range(0, len(chunk), width)
    )
    if width == 1:
        return " ".join(f"{v:02x}" for v in values)
    return " ".join(f"0x{v:02x}" for v in values)


def _annotation(
    tracker: Optional[SourceTracker],
    pos: Optional[SourcePosition],
    annotate: int,
    first: bool,
) -> str:
    if not annotate or tracker is None:
        return ""
    text = (
        tracker.string_first(pos, annotate)
        if first
        else tracker.string_last(pos, annotate)
    )
    return f" /* {text} */" if text else ""


def _format_cells(prop: Property, marker: Marker, chunk: bytes) -> str:
    phandle = next(
        (
            m
            for m in prop.val.markers_of_type(MarkerType.REF_PHANDLE)
            if m.offset == marker.offset
        ),
        None,
    )
    if phandle is None:
        return _format_ints(chunk, 4)
    ref = phandle.ref or ""
    text = f"&{{{ref}}}" if ref.startswith("/") else f"&{ref}"
    if len(chunk) > 4:
        text += " " + _format_ints(chunk[4:], 4)
    return text


def _format_chunk(
    prop: Property, marker: Marker, emit_type: MarkerType, chunk: bytes
) -> str:
    if emit_type == MarkerType.UINT16:
        return _format_ints(chunk, 2)
    if emit_type == MarkerType.UINT32:
        return _format_cells(prop, marker, chunk)
    if emit_type == MarkerType.UINT64:
        return _format_ints(chunk, 8)
    if emit_type == MarkerType.STRING:
        return _format_string(chunk)
    return _format_ints(chunk, 1)


def _format_propval(
    prop: Property, annotate: int, tracker: Optional[SourceTracker]
) -> str:
    val = prop.val.val
    length = len(val)
    if length == 0:
        return ";" + _annotation(tracker, prop.srcpos, annotate, True) + "\n"

    out = [" ="]
    markers = list(prop.val.markers)
    if not any(m.type.is_type for m in markers):
        markers.insert(0, Marker(guess_value_type(prop), 0))

    emit_type = MarkerType.NONE
    for k, marker in enumerate(markers):
        following = markers[k + 1] if k + 1 < len(markers) else None
        chunk_len = (following.offset if following else length) - marker.offset
        next_type = next((m for m in markers[k + 1:] if m.type.is_type), None)
        data_len = (
            next_type.offset - marker.offset if next_type else 0
        ) or length - marker.offset

        if marker.type.is_type:
            emit_type = marker.type
            out.append(" " + _DELIM_START[emit_type])
        elif marker.type == MarkerType.LABEL:
            out.append(f" {marker.ref}:")

        if emit_type == MarkerType.NONE or chunk_len == 0:
            continue

        chunk = val[marker.offset:marker.offset + chunk_len]
        out.append(_format_chunk(prop, marker, emit_type, chunk))

        if chunk_len == data_len:
            end = marker.offset + chunk_len
            out.append(_DELIM_END.get(emit_type, ""))
            if end != length:
                out.append(",")
            emit_type = MarkerType.NONE

    out.append(";")
    out.append(_annotation(tracker, prop.srcpos, annotate, True))
    out.append("\n")
    return "".join(out)


def _write_node(
    out: TextIO,
    node: Node,
    level: int,
    annotate: int,
    tracker: Optional[SourceTracker],
) -> None:
    indent = "\t" * level
    out.write(indent)
    for label in _live_labels(node.labels):
        out.write(f"{label}: ")
    out.write(f"{node.name} {{" if node.name else "/ {")
    out.write(_annotation(tracker, node.srcpos, annotate, True))
    out.write("\n")

    for prop in node.properties():
        out.write("\t" * (level + 1))
        for label in _live_labels(prop.labels):
            out.write(f"{label}: ")
        out.write(prop.name)
        out.write(_format_propval(prop, annotate, tracker))

    for child in node.subnodes():
        out.write("\n")
        _write_node(out, child, level + 1, annotate, tracker)

    out.write(indent)
    out.write("};")
    out.write(_annotation(tracker, node.srcpos, annotate, False))
    out.write("\n")


def dt_to_source(
    f: TextIO,
    dti: DtInfo,
    annotate: int = 0,
    tracker: Optional[SourceTracker] = None,
) -> None:
    """Write the tree as device tree source to a text stream."""
    if annotate and tracker is None:
        tracker = SourceTracker()

    f.write("/dts-v1/;\n\n")
    for entry in dti.reservelist:
        for label in _live_labels(entry.labels):
            f.write(f"{label}: ")
        f.write(f"/memreserve/\t0x{entry.address:016x} 0x{entry.size:016x};\n")

    _write_node(f, dti.dt, 0, annotate, tracker)


def format_source(
    dti: DtInfo, annotate: int = 0, tracker: Optional[SourceTracker] = None
) -> str:
    """Return the tree as device tree source text."""
    buffer = io.StringIO()
    dt_to_source(buffer, dti, annotate, tracker)
    return buffer.getvalue()