"""The live device tree: nodes, properties, labels, lookups and generated trees."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
from typing import Iterator, List, Optional, Tuple

from .srcpos import SourcePosition
from .util import FatalError, get_escape_char, join_path

__all__ = [
    "MarkerType",
    "Marker",
    "Data",
    "Label",
    "Property",
    "Node",
    "ReserveEntry",
    "PhandleFormat",
    "DtInfo",
    "add_label",
    "delete_labels",
    "build_property",
    "build_property_delete",
    "build_node",
    "build_node_delete",
    "merge_nodes",
    "add_orphan_node",
    "delete_property",
    "get_property_by_label",
    "get_marker_label",
    "get_node_by_path",
    "get_node_by_label",
    "get_node_by_phandle",
    "get_node_by_ref",
    "get_node_phandle",
    "guess_boot_cpuid",
    "sort_tree",
    "generate_label_tree",
    "generate_fixups_tree",
    "generate_local_fixups_tree",
]

_CELL_SIZE = 4
_PHANDLE_PLACEHOLDER = 0xFFFFFFFF


class MarkerType(IntEnum):
    """Kinds of marker attached to property data; type markers come last."""

    NONE = 0
    REF_PATH = 1
    REF_PHANDLE = 2
    LABEL = 3
    UINT8 = 4
    UINT16 = 5
    UINT32 = 6
    UINT64 = 7
    STRING = 8

    @property
    def is_type(self) -> bool:
        """True for markers that describe the type of the data that follows."""
        return self >= MarkerType.UINT8


@dataclass(frozen=True, eq=False)
class Marker:
    """A marker at a byte offset within property data."""

    type: MarkerType
    offset: int
    ref: Optional[str] = None


@dataclass(frozen=True)
class Data:
    """Property bytes together with their markers."""

    val: bytes = b""
    markers: Tuple[Marker, ...] = ()

    def __len__(self) -> int:
        return len(self.val)

    def add_marker(self, type: MarkerType, ref: Optional[str] = None) -> "Data":
        """Return a copy with a marker added at the current end of the data."""
        marker = Marker(MarkerType(type), len(self.val), ref)
        return Data(self.val, self.markers + (marker,))

    def append_data(self, data: bytes) -> "Data":
        """Return a copy with raw bytes appended."""
        return Data(self.val + bytes(data), self.markers)

    def append_integer(self, value: int, bits: int) -> "Data":
        """Return a copy with a big-endian integer of the given width appended."""
        if bits not in (8, 16, 32, 64):
            raise ValueError(f"Invalid literal size ({bits})")
        mask = (1 << bits) - 1
        return self.append_data((value & mask).to_bytes(bits // 8, "big"))

    def append_cell(self, value: int) -> "Data":
        """Return a copy with one 32-bit cell appended."""
        return self.append_integer(value, 32)

    @classmethod
    def from_escaped_string(cls, s: str) -> "Data":
        """Build string data from s, decoding backslash escapes and adding a NUL."""
        out = bytearray()
        i = 0
        while i < len(s):
            c = s[i]
            i += 1
            if c == "\\":
                c, i = get_escape_char(s, i)
                out.append(ord(c) & 0xFF)
            else:
                out += c.encode("utf-8")
        out.append(0)
        return cls().add_marker(MarkerType.STRING).append_data(bytes(out))

    def markers_of_type(self, type: MarkerType) -> Iterator[Marker]:
        """Yield the markers of one kind, in order."""
        return (m for m in self.markers if m.type == type)

    def type_marker_length(self, marker: Marker) -> int:
        """Bytes from marker to the next type marker, or 0 if there is none."""
        index = next(
            (k for k, m in enumerate(self.markers) if m is marker), None
        )
        if index is None:
            raise ValueError("marker does not belong to this data")
        following = next(
            (m for m in self.markers[index + 1:] if m.type.is_type), None
        )
        return following.offset - marker.offset if following else 0


@dataclass
class Label:
    """A label name; deleted labels are kept so they can be revived."""

    label: str
    deleted: bool = False


@dataclass(eq=False)
class Property:
    """A named property of a node."""

    name: str
    val: Data = field(default_factory=Data)
    deleted: bool = False
    labels: List[Label] = field(default_factory=list)
    srcpos: Optional[SourcePosition] = None

    def cell(self) -> int:
        """The value of a property that holds exactly one cell."""
        if len(self.val) != _CELL_SIZE:
            raise ValueError(f"property {self.name!r} is not a single cell")
        return int.from_bytes(self.val.val, "big")

    def cell_n(self, n: int) -> int:
        """The n-th cell of the property value."""
        if len(self.val) // _CELL_SIZE < n:
            raise ValueError(f"property {self.name!r} has too few cells")
        chunk = self.val.val[n * _CELL_SIZE:(n + 1) * _CELL_SIZE]
        if len(chunk) != _CELL_SIZE:
            raise ValueError(f"property {self.name!r} has too few cells")
        return int.from_bytes(chunk, "big")


@dataclass(eq=False)
class Node:
    """A node with properties and children; deleted entries stay in the lists."""

    name: Optional[str] = None
    proplist: List[Property] = field(default_factory=list)
    children: List["Node"] = field(default_factory=list)
    parent: Optional["Node"] = field(default=None, repr=False)
    deleted: bool = False
    labels: List[Label] = field(default_factory=list)
    srcpos: Optional[SourcePosition] = None
    phandle: int = 0
    omit_if_unused: bool = False
    is_referenced: bool = False
    _next_orphan_fragment: int = field(default=0, repr=False)

    @property
    def fullpath(self) -> str:
        """The absolute path of the node within its tree."""
        if self.parent is None:
            return "/"
        return join_path(self.parent.fullpath, self.name or "")

    def properties(self) -> Iterator[Property]:
        """Yield the properties that are not deleted."""
        return (p for p in self.proplist if not p.deleted)

    def subnodes(self) -> Iterator["Node"]:
        """Yield the children that are not deleted."""
        return (c for c in self.children if not c.deleted)

    def get_property(self, name: str) -> Optional[Property]:
        return next((p for p in self.properties() if p.name == name), None)

    def get_subnode(self, name: str) -> Optional["Node"]:
        return next((c for c in self.subnodes() if c.name == name), None)

    def add_property(self, prop: Property) -> None:
        self.proplist.append(prop)

    def add_child(self, child: "Node") -> None:
        child.parent = self
        self.children.append(child)

    def delete_property_by_name(self, name: str) -> None:
        prop = next((p for p in self.proplist if p.name == name), None)
        if prop is not None:
            delete_property(prop)

    def delete_node_by_name(self, name: str) -> None:
        child = next((c for c in self.children if c.name == name), None)
        if child is not None:
            child.delete()

    def delete(self) -> None:
        """Mark this node, its live children, properties and labels deleted."""
        self.deleted = True
        for child in list(self.subnodes()):
            child.delete()
        for prop in list(self.properties()):
            delete_property(prop)
        delete_labels(self.labels)

    def append_to_property(self, name: str, data: bytes, type: MarkerType) -> None:
        """Append typed data to a property, creating it if needed."""
        prop = self.get_property(name)
        if prop is not None:
            prop.val = prop.val.add_marker(type, name).append_data(data)
        else:
            val = Data().add_marker(type, name).append_data(data)
            self.add_property(build_property(name, val, None))


@dataclass
class ReserveEntry:
    """A memory reservation."""

    address: int
    size: int
    labels: List[Label] = field(default_factory=list)


class PhandleFormat(IntFlag):
    LEGACY = 0x1
    EPAPR = 0x2
    BOTH = 0x3


@dataclass
class DtInfo:
    """A whole device tree with its reserve map and boot CPU."""

    dt: Node
    reservelist: List[ReserveEntry] = field(default_factory=list)
    dtsflags: int = 0
    boot_cpuid_phys: int = 0
    phandle_format: PhandleFormat = PhandleFormat.EPAPR


def _phandle_is_valid(phandle: int) -> bool:
    return phandle != 0 and phandle != _PHANDLE_PLACEHOLDER


def add_label(labels: List[Label], label: str) -> None:
    """Add a label at the front of the list, or revive an existing one."""
    existing = next((l for l in labels if l.label == label), None)
    if existing is not None:
        existing.deleted = False
        return
    labels.insert(0, Label(label))


def delete_labels(labels: List[Label]) -> None:
    for label in labels:
        label.deleted = True


def build_property(
    name: str, val: Data, srcpos: Optional[SourcePosition]
) -> Property:
    return Property(
        name=name, val=val, srcpos=srcpos.copy() if srcpos is not None else None
    )


def build_property_delete(name: str) -> Property:
    return Property(name=name, deleted=True)


def build_node(
    proplist: Optional[List[Property]],
    children: Optional[List[Node]],
    srcpos: Optional[SourcePosition],
) -> Node:
    """Build an unnamed node owning the given properties and children."""
    node = Node(
        proplist=list(proplist or []),
        children=list(children or []),
        srcpos=srcpos.copy() if srcpos is not None else None,
    )
    for child in node.children:
        child.parent = node
    return node


def build_node_delete(srcpos: Optional[SourcePosition]) -> Node:
    return Node(
        deleted=True, srcpos=srcpos.copy() if srcpos is not None else None
    )


def merge_nodes(old_node: Node, new_node: Node) -> Node:
    """Merge new_node into old_node; new values override old ones."""
    old_node.deleted = False

    for label in new_node.labels:
        add_label(old_node.labels, label.label)

    new_props, new_node.proplist = new_node.proplist, []
    for new_prop in new_props:
        if new_prop.deleted:
            old_node.delete_property_by_name(new_prop.name)
            continue
        old_prop = next(
            (p for p in old_node.proplist if p.name == new_prop.name), None
        )
        if old_prop is not None:
            for label in new_prop.labels:
                add_label(old_prop.labels, label.label)
            old_prop.val = new_prop.val
            old_prop.deleted = False
            old_prop.srcpos = new_prop.srcpos
        else:
            old_node.add_property(new_prop)

    new_children, new_node.children = new_node.children, []
    for new_child in new_children:
        new_child.parent = None
        if new_child.deleted:
            old_node.delete_node_by_name(new_child.name)
            continue
        old_child = next(
            (c for c in old_node.children if c.name == new_child.name), None
        )
        if old_child is not None:
            merge_nodes(old_child, new_child)
        else:
            old_node.add_child(new_child)

    if old_node.srcpos is None:
        old_node.srcpos = new_node.srcpos
    else:
        old_node.srcpos.extend(new_node.srcpos)
    return old_node


def add_orphan_node(dt: Node, new_node: Node, ref: str) -> Node:
    """Wrap new_node in an overlay fragment targeting ref and add it to dt."""
    if ref.startswith("/"):
        d = Data().add_marker(MarkerType.STRING, ref)
        d = d.append_data(ref.encode("utf-8") + b"\0")
        prop = build_property("target-path", d, None)
    else:
        d = Data().add_marker(MarkerType.REF_PHANDLE, ref)
        d = d.append_integer(_PHANDLE_PLACEHOLDER, 32)
        prop = build_property("target", d, None)

    name = f"fragment@{dt._next_orphan_fragment}"
    dt._next_orphan_fragment += 1
    new_node.name = "__overlay__"
    fragment = build_node([prop], [new_node], None)
    fragment.name = name
    dt.add_child(fragment)
    return dt


def delete_property(prop: Property) -> None:
    prop.deleted = True
    delete_labels(prop.labels)


def _live_labels(labels: List[Label]) -> Iterator[Label]:
    return (l for l in labels if not l.deleted)


def get_property_by_label(tree: Node, label: str) -> Optional[Tuple[Node, Property]]:
    """Find the property carrying label; returns (node, property) or None."""
    for prop in tree.properties():
        if any(l.label == label for l in _live_labels(prop.labels)):
            return tree, prop
    for child in tree.subnodes():
        found = get_property_by_label(child, label)
        if found is not None:
            return found
    return None


def get_marker_label(
    tree: Node, label: str
) -> Optional[Tuple[Node, Property, Marker]]:
    """Find a label marker inside property data; returns (node, property, marker)."""
    for prop in tree.properties():
        marker = next(
            (m for m in prop.val.markers_of_type(MarkerType.LABEL) if m.ref == label),
            None,
        )
        if marker is not None:
            return tree, prop, marker
    for child in tree.subnodes():
        found = get_marker_label(child, label)
        if found is not None:
            return found
    return None


def get_node_by_path(tree: Node, path: Optional[str]) -> Optional[Node]:
    if not path:
        return None if tree.deleted else tree
    path = path.lstrip("/")
    head, sep, rest = path.partition("/")
    for child in tree.subnodes():
        if sep and head == child.name:
            return get_node_by_path(child, rest)
        if not sep and path == child.name:
            return child
    return None


def get_node_by_label(tree: Node, label: str) -> Optional[Node]:
    if not label:
        raise ValueError("label must not be empty")
    if any(l.label == label for l in _live_labels(tree.labels)):
        return tree
    for child in tree.subnodes():
        found = get_node_by_label(child, label)
        if found is not None:
            return found
    return None


def get_node_by_phandle(tree: Node, phandle: int) -> Optional[Node]:
    if not _phandle_is_valid(phandle):
        return None
    if tree.phandle == phandle:
        return None if tree.deleted else tree
    for child in tree.subnodes():
        found = get_node_by_phandle(child, phandle)
        if found is not None:
            return found
    return None


def get_node_by_ref(tree: Node, ref: str) -> Optional[Node]:
    if ref == "/":
        return tree
    if ref.startswith("/"):
        return get_node_by_path(tree, ref)
    return get_node_by_label(tree, ref)


def get_node_phandle(
    root: Node, node: Node, phandle_format: PhandleFormat = PhandleFormat.EPAPR
) -> int:
    """Return node's phandle, allocating an unused one and its property if needed."""
    if _phandle_is_valid(node.phandle):
        return node.phandle

    phandle = 1
    while get_node_by_phandle(root, phandle) is not None:
        phandle += 1
    node.phandle = phandle

    d = Data().add_marker(MarkerType.UINT32).append_cell(phandle)
    if node.get_property("linux,phandle") is None and (
        phandle_format & PhandleFormat.LEGACY
    ):
        node.add_property(build_property("linux,phandle", d, None))
    if node.get_property("phandle") is None and (
        phandle_format & PhandleFormat.EPAPR
    ):
        node.add_property(build_property("phandle", d, None))
    return node.phandle


def guess_boot_cpuid(tree: Node) -> int:
    """The reg of the first node under /cpus, or 0."""
    cpus = get_node_by_path(tree, "/cpus")
    if cpus is None or not cpus.children:
        return 0
    reg = cpus.children[0].get_property("reg")
    if reg is None or len(reg.val) != _CELL_SIZE:
        return 0
    return reg.cell()


def _sort_node(node: Node) -> None:
    node.proplist.sort(key=lambda p: p.name)
    node.children.sort(key=lambda c: c.name or "")
    for child in node.children:
        _sort_node(child)


def sort_tree(dti: DtInfo) -> None:
    """Sort reserve entries by address and size, and nodes and properties by name."""
    dti.reservelist.sort(key=lambda r: (r.address, r.size))
    _sort_node(dti.dt)


def _build_root_node(dt: Node, name: str) -> Node:
    node = dt.get_subnode(name)
    if node is None:
        node = _build_child(dt, name)
    return node


def _build_child(parent: Node, name: str) -> Node:
    node = build_node(None, None, None)
    node.name = name
    parent.add_child(node)
    return node


def _any_label_tree(node: Node) -> bool:
    return bool(node.labels) or any(_any_label_tree(c) for c in node.subnodes())


def _label_tree_walk(dti: DtInfo, an: Node, node: Node, allocph: bool) -> None:
    if node.labels:
        for label in _live_labels(node.labels):
            if an.get_property(label.label) is not None:
                sys.stderr.write(
                    f"WARNING: label {label.label} already exists in /{an.name}"
                )
                continue
            an.add_property(
                build_property(
                    label.label, Data.from_escaped_string(node.fullpath), None
                )
            )
        if allocph:
            get_node_phandle(dti.dt, node, dti.phandle_format)
    for child in node.subnodes():
        _label_tree_walk(dti, an, child, allocph)


def _phandle_refs(node: Node) -> Iterator[Tuple[Property, Marker]]:
    for prop in node.properties():
        for marker in prop.val.markers_of_type(MarkerType.REF_PHANDLE):
            yield prop, marker


def _any_fixup_tree(dti: DtInfo, node: Node, resolved: bool) -> bool:
    if any(
        (get_node_by_ref(dti.dt, m.ref) is not None) == resolved
        for _, m in _phandle_refs(node)
    ):
        return True
    return any(_any_fixup_tree(dti, c, resolved) for c in node.subnodes())


def _add_fixup_entry(fn: Node, node: Node, prop: Property, marker: Marker) -> None:
    fullpath = node.fullpath
    if ":" in fullpath or ":" in prop.name:
        raise FatalError("arguments should not contain ':'\n")
    entry = f"{fullpath}:{prop.name}:{marker.offset}"
    fn.append_to_property(
        marker.ref, entry.encode("utf-8") + b"\0", MarkerType.STRING
    )


def _fixups_walk(dti: DtInfo, fn: Node, node: Node) -> None:
    for prop, marker in _phandle_refs(node):
        if get_node_by_ref(dti.dt, marker.ref) is None:
            _add_fixup_entry(fn, node, prop, marker)
    for child in node.subnodes():
        _fixups_walk(dti, fn, child)


def _add_local_fixup_entry(
    lfn: Node, node: Node, prop: Property, marker: Marker
) -> None:
    names: List[Optional[str]] = []
    walk: Optional[Node] = node
    while walk is not None:
        names.append(walk.name)
        walk = walk.parent
    names.reverse()

    target = lfn
    for name in names[1:]:
        child = target.get_subnode(name)
        target = child if child is not None else _build_child(target, name)

    target.append_to_property(
        prop.name, marker.offset.to_bytes(4, "big"), MarkerType.UINT32
    )


def _local_fixups_walk(dti: DtInfo, lfn: Node, node: Node) -> None:
    for prop, marker in _phandle_refs(node):
        if get_node_by_ref(dti.dt, marker.ref) is not None:
            _add_local_fixup_entry(lfn, node, prop, marker)
    for child in node.subnodes():
        _local_fixups_walk(dti, lfn, child)


def generate_label_tree(dti: DtInfo, name: str, allocph: bool) -> None:
    """Add a node named name under the root mapping every label to its path."""
    if not _any_label_tree(dti.dt):
        return
    _label_tree_walk(dti, _build_root_node(dti.dt, name), dti.dt, allocph)


def generate_fixups_tree(dti: DtInfo, name: str) -> None:
    """Record every unresolved phandle reference under a root node named name."""
    if not _any_fixup_tree(dti, dti.dt, False):
        return
    _fixups_walk(dti, _build_root_node(dti.dt, name), dti.dt)


def generate_local_fixups_tree(dti: DtInfo, name: str) -> None:
    """Record the offsets of every resolved phandle reference under name."""
    if not _any_fixup_tree(dti, dti.dt, True):
        return
    _local_fixups_walk(dti, _build_root_node(dti.dt, name), dti.dt)