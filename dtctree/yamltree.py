"""Writing a live device tree out as YAML."""

from __future__ import annotations

from typing import Iterator, Sequence, TextIO

import yaml

from .livetree import DtInfo, Marker, MarkerType, Node, Property
from .util import FatalError

__all__ = ["format_yaml", "dt_to_yaml"]

_STR_TAG = "tag:yaml.org,2002:str"
_INT_TAG = "tag:yaml.org,2002:int"
_BOOL_TAG = "tag:yaml.org,2002:bool"
_SEQ_TAG = "tag:yaml.org,2002:seq"
_MAP_TAG = "tag:yaml.org,2002:map"

_WIDTH_TAGS = {1: "!u8", 2: "!u16", 4: "!u32", 8: "!u64"}


def _int_events(
    markers: Sequence[Marker], data: bytes, seq_offset: int, width: int
) -> Iterator[yaml.Event]:
    tag = _WIDTH_TAGS.get(width)
    if tag is None:
        raise ValueError(f"Invalid width {width}")
    if len(data) % width != 0:
        raise ValueError(f"data length {len(data)} is not a multiple of {width}")

    yield yaml.SequenceStartEvent(None, tag, width == 4, flow_style=True)
    phandle_offsets = {
        m.offset for m in markers if m.type == MarkerType.REF_PHANDLE
    }
    for off in range(0, len(data), width):
        value = int.from_bytes(data[off:off + width], "big")
        text = f"0x{value:x}"
        if width == 4 and seq_offset + off in phandle_offsets:
            yield yaml.ScalarEvent(None, "!phandle", (False, False), text, style=None)
        else:
            yield yaml.ScalarEvent(None, _INT_TAG, (True, True), text, style=None)
    yield yaml.SequenceEndEvent()


def _string_event(data: bytes) -> yaml.Event:
    if not data or data[-1] != 0:
        raise ValueError("string data is not NUL-terminated")
    if any(b > 0x7F for b in data):
        raise ValueError("string data is not 7-bit ASCII")
    return yaml.ScalarEvent(
        None, _STR_TAG, (False, True), data[:-1].decode("ascii"), style='"'
    )


_WIDTHS = {
    MarkerType.UINT16: 2,
    MarkerType.UINT32: 4,
    MarkerType.UINT64: 8,
}


def _propval_events(prop: Property) -> Iterator[yaml.Event]:
    yield yaml.ScalarEvent(None, _STR_TAG, (True, True), prop.name, style=None)

    val = prop.val.val
    if not val:
        yield yaml.ScalarEvent(None, _BOOL_TAG, (True, False), "true", style=None)
        return

    markers = prop.val.markers
    if not markers:
        raise FatalError(f"No markers present in property '{prop.name}' value\n")

    yield yaml.SequenceStartEvent(None, _SEQ_TAG, True, flow_style=True)
    remaining = len(val)
    for marker in markers:
        if not marker.type.is_type:
            continue
        chunk_len = prop.val.type_marker_length(marker) or remaining
        if chunk_len <= 0:
            raise ValueError(f"empty data chunk in property '{prop.name}'")
        remaining -= chunk_len
        data = val[marker.offset:marker.offset + chunk_len]

        if marker.type == MarkerType.STRING:
            yield _string_event(data)
        else:
            width = _WIDTHS.get(marker.type, 1)
            yield from _int_events(markers, data, marker.offset, width)
    yield yaml.SequenceEndEvent()


def _tree_events(node: Node) -> Iterator[yaml.Event]:
    if node.deleted:
        return
    yield yaml.MappingStartEvent(None, _MAP_TAG, True, flow_style=None)
    for prop in node.properties():
        yield from _propval_events(prop)
    for child in node.subnodes():
        yield yaml.ScalarEvent(None, _STR_TAG, (True, False), child.name, style=None)
        yield from _tree_events(child)
    yield yaml.MappingEndEvent()


def _events(dti: DtInfo) -> Iterator[yaml.Event]:
    yield yaml.StreamStartEvent()
    yield yaml.DocumentStartEvent(explicit=True)
    yield yaml.SequenceStartEvent(None, _SEQ_TAG, True, flow_style=None)
    yield from _tree_events(dti.dt)
    yield yaml.SequenceEndEvent()
    yield yaml.DocumentEndEvent(explicit=True)
    yield yaml.StreamEndEvent()


def format_yaml(dti: DtInfo) -> str:
    """Return the tree as a YAML document."""
    return yaml.emit(list(_events(dti)))


def dt_to_yaml(f: TextIO, dti: DtInfo) -> None:
    """Write the tree as a YAML document to a text stream."""
    f.write(format_yaml(dti))