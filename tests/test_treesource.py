import io

import pytest

from dtctree.livetree import (
    Data,
    DtInfo,
    Label,
    MarkerType,
    Property,
    ReserveEntry,
    build_node,
    build_property,
)
from dtctree.srcpos import SourceFile, SourcePosition, SourceTracker
from dtctree.treesource import dt_to_source, format_source, guess_value_type


def _string(s):
    return Data().add_marker(MarkerType.STRING).append_data(s.encode() + b"\0")


def _cells(*values):
    d = Data().add_marker(MarkerType.UINT32)
    for v in values:
        d = d.append_cell(v)
    return d


def _tree(props, children=()):
    return DtInfo(dt=build_node(list(props), list(children), None))


def _named(name, props=(), children=()):
    node = build_node(list(props), list(children), None)
    node.name = name
    return node


def test_guess_string():
    prop = Property("p", Data(b"hello\0"))
    assert guess_value_type(prop) == MarkerType.STRING


def test_guess_cells():
    prop = Property("p", Data(b"\x01\x02\x03\x04\x05\x06\x07\x08"))
    assert guess_value_type(prop) == MarkerType.UINT32


def test_guess_bytes():
    prop = Property("p", Data(b"\x01\x02\x03"))
    assert guess_value_type(prop) == MarkerType.UINT8


def test_guess_label_not_on_cell_boundary():
    d = Data(b"\x01\x02").add_marker(MarkerType.LABEL, "mid").append_data(
        b"\x03\x04"
    )
    assert guess_value_type(Property("p", d)) == MarkerType.UINT8


def test_guess_label_inside_string():
    d = Data(b"a").add_marker(MarkerType.LABEL, "mid").append_data(b"b\0cd\0")
    assert guess_value_type(Property("p", d)) == MarkerType.UINT8


def test_full_output():
    child = _named("child")
    dti = _tree(
        [build_property("compatible", _string("foo"), None),
         build_property("reg", _cells(1, 2), None)],
        [child],
    )
    expected = (
        "/dts-v1/;\n\n/ {\n\tcompatible = \"foo\";\n\treg = <0x01 0x02>;\n"
        "\n\tchild {\n\t};\n};\n"
    )
    assert format_source(dti) == expected


def test_memreserve_with_label():
    dti = _tree([])
    dti.reservelist.append(ReserveEntry(0x1000, 0x2000, [Label("mem")]))
    out = format_source(dti)
    assert "mem: /memreserve/\t0x0000000000001000 0x0000000000002000;\n" in out


def test_multiple_chunks_separated():
    d = _string("ab").add_marker(MarkerType.UINT32).append_cell(1)
    out = format_source(_tree([build_property("x", d, None)]))
    assert 'x = "ab", <0x01>;' in out


def test_empty_property():
    out = format_source(_tree([build_property("flag", Data(), None)]))
    assert "\tflag;\n" in out


def test_phandle_reference_by_label():
    d = (
        Data()
        .add_marker(MarkerType.UINT32)
        .add_marker(MarkerType.REF_PHANDLE, "foo")
        .append_cell(0xFFFFFFFF)
    )
    out = format_source(_tree([build_property("ref", d, None)]))
    assert "ref = <&foo>;" in out


def test_phandle_reference_by_path():
    d = (
        Data()
        .add_marker(MarkerType.UINT32)
        .add_marker(MarkerType.REF_PHANDLE, "/a")
        .append_cell(0xFFFFFFFF)
    )
    out = format_source(_tree([build_property("ref", d, None)]))
    assert "<&{/a}>" in out


def test_bits16():
    d = Data().add_marker(MarkerType.UINT16).append_integer(0x1234, 16)
    out = format_source(_tree([build_property("w", d, None)]))
    assert "w = /bits/ 16 <0x1234>;" in out


def test_bits64():
    d = Data().add_marker(MarkerType.UINT64).append_integer(0x1234, 64)
    out = format_source(_tree([build_property("w", d, None)]))
    assert "/bits/ 64 <0x1234>" in out


def test_guessed_bytes_use_brackets():
    out = format_source(_tree([build_property("b", Data(b"\x01\x02\x03"), None)]))
    line = next(l for l in out.splitlines() if "b =" in l)
    assert line.strip().startswith("b = [")
    assert line.endswith("];")


def test_string_escapes():
    raw = 'a"b\\\n\x01'
    out = format_source(_tree([build_property("s", _string(raw), None)]))
    assert '\\"' in out
    assert "\\\\" in out
    assert "\\n" in out
    assert "\\x01" in out


def test_label_marker_in_data():
    d = _cells(1).add_marker(MarkerType.LABEL, "mid").append_cell(2)
    out = format_source(_tree([build_property("c", d, None)]))
    assert " mid:" in out


def test_deleted_items_omitted():
    gone_child = _named("gonechild")
    gone_child.deleted = True
    gone_prop = build_property("goneprop", _cells(1), None)
    gone_prop.deleted = True
    out = format_source(_tree([gone_prop], [gone_child]))
    assert "goneprop" not in out
    assert "gonechild" not in out


def test_node_and_property_labels():
    prop = build_property("p", _cells(1), None)
    prop.labels.append(Label("plab"))
    dti = _tree([prop])
    dti.dt.labels.extend([Label("top"), Label("old", deleted=True)])
    out = format_source(dti)
    assert "top: / {" in out
    assert "plab: p =" in out
    assert "old:" not in out


def test_unterminated_string_rejected():
    d = Data().add_marker(MarkerType.STRING).append_data(b"abc")
    with pytest.raises(ValueError):
        format_source(_tree([build_property("s", d, None)]))


def test_annotation_first_and_last_lines():
    pos = SourcePosition(3, 1, 5, 2, SourceFile(name="a.dts"))
    dti = _tree([])
    dti.dt.srcpos = pos
    out = format_source(dti, annotate=1, tracker=SourceTracker())
    assert "/ { /* a.dts:3 */" in out
    assert "}; /* a.dts:5 */" in out


def test_annotation_level_two_without_position():
    dti = _tree([build_property("p", _cells(1), None)])
    out = format_source(dti, annotate=2)
    assert "/* <no-file>:<no-line> */" in out


def test_dt_to_source_matches_format_source():
    dti = _tree([build_property("p", _string("x"), None)], [_named("c")])
    buffer = io.StringIO()
    dt_to_source(buffer, dti)
    assert buffer.getvalue() == format_source(dti)
    assert buffer.getvalue().startswith("/dts-v1/;\n\n")