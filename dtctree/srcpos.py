"""Source file tracking: include search paths, nesting and source positions."""

from __future__ import annotations

import copy
import sys
from dataclasses import dataclass, replace
from typing import BinaryIO, List, Optional, TextIO, Tuple

from .util import FatalError, join_path

__all__ = [
    "MAX_SRCFILE_DEPTH",
    "SourceFile",
    "SourcePosition",
    "SourceTracker",
    "format_error",
]

MAX_SRCFILE_DEPTH = 200


def _dirname(path: str) -> Optional[str]:
    slash = path.rfind("/")
    return path[:slash] if slash >= 0 else None


@dataclass(eq=False)
class SourceFile:
    """State of one open source file: its name, directory and read position."""

    name: Optional[str]
    stream: Optional[BinaryIO] = None
    directory: Optional[str] = None
    lineno: int = 1
    colno: int = 1
    prev: Optional["SourceFile"] = None


@dataclass
class SourcePosition:
    """A span of source text, possibly chained to further spans."""

    first_line: int = 0
    first_column: int = 0
    last_line: int = 0
    last_column: int = 0
    file: Optional[SourceFile] = None
    next: Optional["SourcePosition"] = None

    def copy(self) -> "SourcePosition":
        """Copy this position together with a snapshot of its file state."""
        if self.next is not None:
            raise ValueError("cannot copy a chained source position")
        snapshot = copy.copy(self.file) if self.file is not None else None
        return replace(self, file=snapshot)

    def extend(self, tail: Optional["SourcePosition"]) -> "SourcePosition":
        """Append tail to the end of this chain and return the chain head."""
        last = self
        while last.next is not None:
            last = last.next
        last.next = tail
        return self

    def describe(self) -> str:
        """Render as file:line.col, file:line.col-col or file:line.col-line.col."""
        fname = "<no-file>"
        if self.file is not None and self.file.name:
            fname = self.file.name
        if self.first_line != self.last_line:
            return (
                f"{fname}:{self.first_line}.{self.first_column}"
                f"-{self.last_line}.{self.last_column}"
            )
        if self.first_column != self.last_column:
            return (
                f"{fname}:{self.first_line}.{self.first_column}"
                f"-{self.last_column}"
            )
        return f"{fname}:{self.first_line}.{self.first_column}"

    def __str__(self) -> str:
        return self.describe()


class SourceTracker:
    """Keeps the stack of open source files and the include search path."""

    def __init__(self, depfile: Optional[TextIO] = None) -> None:
        self.depfile = depfile
        self.current: Optional[SourceFile] = None
        self._search_paths: List[str] = []
        self._depth = 0
        self._initial_path: Optional[str] = None
        self._initial_pathlen = 0
        self._initial_cpp = True

    @property
    def search_paths(self) -> Tuple[str, ...]:
        return tuple(self._search_paths)

    def add_search_path(self, dirname: str) -> None:
        """Add a directory to the end of the include search path."""
        self._search_paths.append(dirname)

    def _open_any_on_path(self, fname: str) -> Tuple[BinaryIO, str]:
        cur_dir = self.current.directory if self.current is not None else None
        last_error: Optional[OSError] = None
        for dirname in [cur_dir, *self._search_paths]:
            if dirname is None or fname.startswith("/"):
                fullname = fname
            else:
                fullname = join_path(dirname, fname)
            try:
                return open(fullname, "rb"), fullname
            except OSError as exc:
                last_error = exc
        reason = last_error.strerror if last_error is not None else "not found"
        raise FatalError(f'Couldn\'t open "{fname}": {reason}\n')

    def relative_open(self, fname: str) -> Tuple[BinaryIO, str]:
        """Open a file, searching the current file's directory then the search path.

        Returns the open binary stream and the name it was found under.
        '-' means standard input.
        """
        if fname == "-":
            stream: BinaryIO = sys.stdin.buffer
            fullname = "<stdin>"
        else:
            stream, fullname = self._open_any_on_path(fname)
        if self.depfile is not None:
            self.depfile.write(f" {fullname}")
        return stream, fullname

    def _set_initial_path(self, fname: str) -> None:
        self._initial_path = fname
        self._initial_pathlen = fname.count("/")

    def _shorten_to_initial_path(self, fname: str) -> Optional[str]:
        if self._initial_path is None:
            return None
        prevslash = -1
        slashes = 0
        for index, (a, b) in enumerate(zip(fname, self._initial_path)):
            if a != b:
                break
            if a == "/":
                prevslash = index
                slashes += 1
        if prevslash < 0:
            return None
        return "../" * (self._initial_pathlen - slashes) + fname[prevslash + 1:]

    def push(self, fname: str) -> SourceFile:
        """Open a source file and make it the current one."""
        depth = self._depth
        self._depth += 1
        if depth >= MAX_SRCFILE_DEPTH:
            raise FatalError("Includes nested too deeply")

        stream, fullname = self.relative_open(fname)
        srcfile = SourceFile(
            name=fullname,
            stream=stream,
            directory=_dirname(fullname),
            prev=self.current,
        )
        self.current = srcfile
        if self._depth == 1:
            self._set_initial_path(fullname)
        return srcfile

    def pop(self) -> bool:
        """Close the current file; return True if an enclosing file remains."""
        srcfile = self.current
        if srcfile is None:
            raise RuntimeError("no source file to pop")
        self.current = srcfile.prev
        stream = srcfile.stream
        if stream is not None and stream is not sys.stdin.buffer:
            try:
                stream.close()
            except OSError as exc:
                raise FatalError(
                    f'Error closing "{srcfile.name}": {exc.strerror}\n'
                ) from exc
        return self.current is not None

    def update(self, text: str) -> SourcePosition:
        """Advance the current file's position over text and return its span."""
        srcfile = self.current
        if srcfile is None:
            raise RuntimeError("no current source file")
        pos = SourcePosition(
            first_line=srcfile.lineno,
            first_column=srcfile.colno,
            file=srcfile,
        )
        newlines = text.count("\n")
        if newlines:
            srcfile.lineno += newlines
            srcfile.colno = len(text) - text.rfind("\n")
        else:
            srcfile.colno += len(text)
        pos.last_line = srcfile.lineno
        pos.last_column = srcfile.colno
        return pos

    def set_line(self, fname: str, line: int) -> None:
        """Apply a line marker: rename the current file and set its line."""
        srcfile = self.current
        if srcfile is None:
            raise RuntimeError("no current source file")
        srcfile.name = fname
        srcfile.lineno = line
        if self._initial_cpp:
            self._initial_cpp = False
            self._set_initial_path(fname)

    def _string_comment(
        self, pos: Optional[SourcePosition], first_line: bool, level: int
    ) -> Optional[str]:
        if pos is None:
            return "<no-file>:<no-line>" if level > 1 else None

        parts = []
        current: Optional[SourcePosition] = pos
        while current is not None:
            if current.file is None:
                fname = "<no-file>"
            elif not current.file.name:
                fname = "<no-filename>"
            elif level > 1:
                fname = current.file.name
            else:
                fname = (
                    self._shorten_to_initial_path(current.file.name)
                    or current.file.name
                )
            if level > 1:
                parts.append(
                    f"{fname}:{current.first_line}:{current.first_column}"
                    f"-{current.last_line}:{current.last_column}"
                )
            else:
                line = current.first_line if first_line else current.last_line
                parts.append(f"{fname}:{line}")
            current = current.next
        return ", ".join(parts)

    def string_first(self, pos: Optional[SourcePosition], level: int) -> Optional[str]:
        """Annotation text for pos using the first line of each span."""
        return self._string_comment(pos, True, level)

    def string_last(self, pos: Optional[SourcePosition], level: int) -> Optional[str]:
        """Annotation text for pos using the last line of each span."""
        return self._string_comment(pos, False, level)


def format_error(pos: SourcePosition, prefix: str, message: str) -> str:
    """Format a diagnostic as 'prefix: position message'."""
    return f"{prefix}: {pos.describe()} {message}"