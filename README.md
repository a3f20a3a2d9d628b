# dtctree

Device trees in memory, from Python, and the means to write them out as
device tree source (DTS) or YAML.

## Modules

- `dtctree.livetree`: the tree itself. It has `Node`, `Property`, `Data`
  (bytes plus `Marker`s of a `MarkerType`), `Label`, `ReserveEntry`,
  `PhandleFormat` and `DtInfo`. It also has these functions:
  - `build_node`, `build_property` and `merge_nodes` build and merge nodes.
  - `get_node_by_path`, `get_node_by_label`, `get_node_by_phandle` and
    `get_node_by_ref` find nodes.
  - `get_node_phandle` allocates phandles.
  - `sort_tree` sorts a tree.
  - `generate_label_tree`, `generate_fixups_tree` and
    `generate_local_fixups_tree` build the symbol and fixup nodes that
    overlays use.
  - `add_orphan_node` wraps a node in an overlay `fragment@N`.
- `dtctree.treesource`: `format_source` returns a `DtInfo` as DTS text, and
  `dt_to_source` writes that text to a stream. Values with no type markers
  are shown by the type that `guess_value_type` picks. A non-zero `annotate`
  level adds source-position comments.
- `dtctree.yamltree`: `format_yaml` and `dt_to_yaml` produce a YAML
  document. Integer cells carry `!u8`, `!u16`, `!u32` or `!u64` tags, and
  phandle references carry `!phandle`.
- `dtctree.srcpos`: `SourceTracker` keeps an include search path and a stack
  of open source files. It records `SourcePosition` spans and formats
  annotation text. `format_error` formats a diagnostic.
- `dtctree.util`: shared helpers:
  - `join_path`, `is_printable_string` and `get_escape_char`.
  - `decode_type` reads type strings such as `"hx"`, `"bu"` or `"s"`.
  - `format_data` renders property bytes.
  - `read_fdt` and `write_fdt` read and write raw blob bytes.
  - `format_usage` and `version_string` build usage and version text.
  - `FatalError` and `LongOption`.

## Installation

```
pip install .
```

## Example: DTS output

```python
from dtctree.livetree import Data, DtInfo, MarkerType, build_node, build_property
from dtctree.treesource import format_source

val = Data().add_marker(MarkerType.STRING).append_data(b"hello\0")
root = build_node([build_property("model", val, None)], [], None)
print(format_source(DtInfo(dt=root)), end="")
```

This prints:

```
/dts-v1/;

/ {
	model = "hello";
};
```

## Example: YAML output

```python
from dtctree.yamltree import format_yaml

print(format_yaml(DtInfo(dt=root)))
```

## What it does not do

- It does not parse DTS source text into a tree. `srcpos` tracks files and
  positions, but no parser is included. Trees are built in code.
- It does not read or write flattened device tree blobs (`.dtb`) as
  structures. `read_fdt` and `write_fdt` only move the raw bytes.
- It provides no command-line tools.

## Running the tests

```
pip install .[test]
pytest
```