import pytest

from dtctree.util import (
    FatalError,
    LongOption,
    decode_type,
    format_data,
    format_usage,
    get_escape_char,
    is_printable_string,
    join_path,
    read_fdt,
    version_string,
    write_fdt,
)


# Carried over from the utilfdt test: every size modifier with every type.
@pytest.mark.parametrize(
    "modifier, size",
    [("", -1), ("b", 1), ("hh", 1), ("h", 2), ("l", 4)],
)
@pytest.mark.parametrize("kind", ["i", "u", "x"])
def test_decode_type_sizes(modifier, size, kind):
    assert decode_type(modifier + kind) == (kind, size)


@pytest.mark.parametrize("modifier", ["", "b", "hh", "h", "l"])
def test_decode_type_string_has_no_size(modifier):
    assert decode_type(modifier + "s") == ("s", -1)


def test_decode_type_empty_fails():
    with pytest.raises(ValueError):
        decode_type("")


@pytest.mark.parametrize(
    "ch", [chr(c) for c in range(ord(" "), 127) if chr(c) not in "iuxs"]
)
def test_decode_type_other_single_chars_fail(ch):
    with pytest.raises(ValueError):
        decode_type(ch)


@pytest.mark.parametrize(
    "fmt",
    [
        "sx",
        "ihh",
        "xb",
        "He has all the virtues I dislike and none of the vices I admire.",
    ],
)
def test_decode_type_trailing_garbage_fails(fmt):
    with pytest.raises(ValueError):
        decode_type(fmt)


def test_decode_type_long_long_has_unknown_size():
    assert decode_type("Lx") == ("x", -1)
    assert decode_type("llx") == ("x", 4)


@pytest.mark.parametrize(
    "path, name, expected",
    [
        ("dir", "file", "dir/file"),
        ("dir/", "file", "dir/file"),
        ("", "file", "/file"),
        ("/", "x", "/x"),
    ],
)
def test_join_path(path, name, expected):
    assert join_path(path, name) == expected


@pytest.mark.parametrize(
    "data, expected",
    [
        (b"", False),
        (b"hello", False),
        (b"hello\0", True),
        (b"a\0bc\0", True),
        (b"a\0\0", False),
        (b"\0", False),
        (b"a\x01b\0", False),
        (b"\xde\xad\0", False),
    ],
)
def test_is_printable_string(data, expected):
    assert is_printable_string(data) is expected


@pytest.mark.parametrize(
    "s, i, expected",
    [
        ("n", 0, ("\n", 1)),
        ("\\t", 1, ("\t", 2)),
        ("a", 0, ("\a", 1)),
        ("r", 0, ("\r", 1)),
        ("101", 0, ("A", 3)),
        ("1234", 0, ("S", 3)),
        ("0", 0, ("\0", 1)),
        ("777", 0, ("\xff", 3)),
        ("x41z", 0, ("A", 3)),
        ("x4", 0, ("\x04", 2)),
        ("xff", 0, ("\xff", 3)),
        ("q", 0, ("q", 1)),
        ('"', 0, ('"', 1)),
        ("8", 0, ("8", 1)),
    ],
)
def test_get_escape_char(s, i, expected):
    assert get_escape_char(s, i) == expected


def test_get_escape_char_hex_without_digits():
    with pytest.raises(FatalError, match="no following hex digits"):
        get_escape_char("xg", 0)


def test_fatal_error_prefix():
    assert str(FatalError("boom")) == "FATAL ERROR: boom"


def test_format_data_empty():
    assert format_data(b"") == ""


def test_format_data_strings():
    assert format_data(b"hello world\0") == ' = "hello world"'
    assert format_data(b"a\0bc\0") == ' = "a", "bc"'


def test_format_data_cells():
    assert format_data(b"\xde\xad\xbe\xef\x00\x00\x00\x01") == (
        " = <0xdeadbeef 0x00000001>"
    )


def test_format_data_bytes():
    assert format_data(b"\x00\x01\x02\x03\x04") == " = [00 01 02 03 04]"


def _header(totalsize):
    return b"\xd0\x0d\xfe\xed" + totalsize.to_bytes(4, "big")


def test_write_then_read_round_trip(tmp_path):
    blob = _header(16) + b"\x01\x02\x03\x04\x05\x06\x07\x08"
    target = tmp_path / "out.dtb"
    write_fdt(str(target), blob + b"extra bytes beyond totalsize")
    assert read_fdt(str(target)) == blob


def test_write_short_blob_fails(tmp_path):
    with pytest.raises(ValueError):
        write_fdt(str(tmp_path / "x.dtb"), _header(64) + b"\0" * 4)


def test_read_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_fdt(str(tmp_path / "missing.dtb"))


def test_format_usage_layout():
    opts = [
        LongOption("type", True, "t"),
        LongOption("help", False, "h"),
        LongOption("quiet", False, None),
    ]
    helps = ["Type of data", "Print this help", "Be quiet"]
    text = format_usage(None, "prog [options] <file>", "t:h", opts, helps)
    assert text == (
        "Usage: prog [options] <file>\n"
        "\n"
        "Options: -[t:h]\n"
        "  -t, --type <arg> Type of data\n"
        "  -h, --help       Print this help\n"
        "      --quiet      Be quiet\n"
    )


def test_format_usage_with_error():
    opts = [LongOption("help", False, "h")]
    text = format_usage("unknown option", "prog", "h", opts, ["Help"])
    assert text.endswith("\nError: unknown option\n")
    assert "  -h, --help Help\n" in text


def test_format_usage_help_mismatch():
    with pytest.raises(ValueError):
        format_usage(None, "prog", "h", [LongOption("help", False, "h")], [])


def test_version_string():
    assert version_string() == "Version: DTC 1.6.1"