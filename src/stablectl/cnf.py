"""Read, modify and write MySQL option files (``my.cnf``).

The format is INI-like: ``[section]`` lines open a section and every other
non-comment line is an ``option = value`` (or ``option: value``) assignment.
Comment lines directly preceding a section are kept as the section header.

Two extensions/limitations compared to the server's own parser:

* Physical lines ending in a backslash are joined with the following line
  (shell-style continuation) before they are interpreted.
* ``!include``/``!includedir`` directives are rejected with
  :class:`IncludeNotSupportedError`.

Section headers are parsed but only the document-level header is written back
by :meth:`ConfigDocument.write`.
"""
from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

COMMENT_MARKERS = ";#"
ASSIGNMENT_MARKERS = ":="


class ConfigDocumentError(RuntimeError):
    """Base class for option file errors."""


class SectionPresentError(ConfigDocumentError):
    """Raised when adding a section that already exists."""


class SectionMissingError(ConfigDocumentError):
    """Raised when referring to a section that does not exist."""


class IncludeNotSupportedError(ConfigDocumentError):
    """Raised when an option file contains an inclusion directive."""


class ConfigSyntaxError(ConfigDocumentError):
    """Raised when a logical line cannot be interpreted."""

    def __init__(self, message: str, *, line_number: int) -> None:
        """Record the logical line number alongside the message."""
        super().__init__(f"line {line_number}: {message}")
        self.line_number = line_number


@dataclass
class Section:
    """Options of one section plus the comment lines preceding it."""

    header: list[str] = field(default_factory=list)
    options: dict[str, str] = field(default_factory=dict)

    def get(self, option: str) -> str:
        """Return the value of *option*, or an empty string when unset."""
        return self.options.get(option, "")

    def set(self, option: str, value: object) -> None:
        """Set *option* to the string form of *value*."""
        self.options[option] = str(value)

    def import_options(self, contents: Mapping[str, object]) -> None:
        """Set every option in *contents*, overwriting existing values."""
        for option, value in contents.items():
            self.set(option, value)


class ConfigDocument:
    """In-memory option file."""

    def __init__(self) -> None:
        """Create an empty document."""
        self.header: list[str] = []
        self.sections: dict[str, Section] = {}

    def __contains__(self, name: object) -> bool:
        return name in self.sections

    def __getitem__(self, name: str) -> Section:
        try:
            return self.sections[name]
        except KeyError:
            raise SectionMissingError(f"Section {name!r} missing") from None

    def add_section(self, name: str) -> Section:
        """Add an empty section called *name* and return it."""
        if name in self.sections:
            raise SectionPresentError(f"Section {name!r} exists")
        section = Section()
        self.sections[name] = section
        return section

    def remove_section(self, name: str) -> None:
        """Remove section *name* together with all its options."""
        if name not in self.sections:
            raise SectionMissingError(f"Section {name!r} missing")
        del self.sections[name]

    def append_header_line(self, name: str, line: str) -> None:
        """Append a comment line to the header of section *name*."""
        self[name].header.append(line)

    def import_sections(self, sections: Mapping[str, Mapping[str, object]]) -> None:
        """Merge a mapping of section name to options into the document."""
        for name, contents in sections.items():
            section = self.sections.get(name)
            if section is None:
                section = self.add_section(name)
            section.import_options(contents)

    def to_dict(self) -> dict[str, dict[str, str]]:
        """Return a plain mapping of section name to options."""
        return {name: dict(section.options) for name, section in self.sections.items()}

    @classmethod
    def from_dict(cls, sections: Mapping[str, Mapping[str, object]]) -> ConfigDocument:
        """Build a document from a mapping produced by :meth:`to_dict`."""
        document = cls()
        document.import_sections(sections)
        return document

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------
    def write(self, stream: IO[str]) -> None:
        """Write the document to *stream*.

        Section headers are not written, only the document header which is
        repeated in front of every section.
        """
        for name, section in self.sections.items():
            stream.write("\n\n")
            for line in self.header:
                stream.write(f"# {line}\n")
            stream.write(f"[{name}]\n")
            for option, value in section.options.items():
                stream.write(f"{option} = {value}\n")

    def write_path(self, path: Path) -> None:
        """Write the document to the file at *path*."""
        with path.open("w", encoding="utf-8") as handle:
            self.write(handle)

    def read(self, stream: IO[str]) -> None:
        """Replace the document contents with the option file in *stream*.

        The document is only updated once the whole stream has been parsed.
        """
        sections: dict[str, Section] = {}
        current: Section | None = None
        pending_header: list[str] = []

        for number, source in enumerate(scan_logical_lines(stream.read()), start=1):
            line, comment = trim_line(source)
            if not source.strip():
                pending_header = []
            elif not line:
                if comment is not None:
                    pending_header.append(comment)
            elif line.startswith("[") and line.endswith("]"):
                name = line[1:-1].strip()
                current = sections.setdefault(name, Section())
                current.header = pending_header
                pending_header = []
            elif line.startswith("!"):
                raise IncludeNotSupportedError(
                    f"line {number}: file inclusion is not supported: {line!r}"
                )
            else:
                if current is None:
                    raise ConfigSyntaxError(
                        f"option outside of a section: {line!r}", line_number=number
                    )
                option, value = _split_assignment(line, number)
                current.set(option, value)

        self.header = []
        self.sections = sections

    def read_path(self, path: Path) -> None:
        """Replace the document contents with the option file at *path*."""
        with path.open("r", encoding="utf-8") as handle:
            self.read(handle)


def scan_logical_lines(data: str) -> Iterator[str]:
    """Yield logical lines from *data*.

    A backslash immediately followed by a newline joins two physical lines;
    both characters are dropped. The terminating newline of a logical line is
    not included. Trailing text without a newline is yielded as a final line.
    """
    chunks: list[str] = []
    begin = 0
    end = -1
    for index, char in enumerate(data):
        if char == "\\":
            end = index
        elif char == "\n":
            if end < 0:
                end = index
            chunks.append(data[begin:end])
            if end == index:
                yield "".join(chunks)
                chunks = []
            begin, end = index + 1, -1
        else:
            end = -1
    if begin < len(data) or chunks:
        chunks.append(data[begin:])
        yield "".join(chunks)


def trim_line(line: str) -> tuple[str, str | None]:
    """Split *line* into its stripped content and trailing comment.

    The first comment marker wins: in ``"x=12;#note"`` the comment is
    ``"#note"``. The comment is ``None`` when the line has no marker.
    """
    positions = [line.find(marker) for marker in COMMENT_MARKERS if marker in line]
    if not positions:
        return line.strip(), None
    pos = min(positions)
    return line[:pos].strip(), line[pos + 1 :].strip()


def _split_assignment(line: str, number: int) -> tuple[str, str]:
    positions = [line.find(marker) for marker in ASSIGNMENT_MARKERS if marker in line]
    if not positions:
        raise ConfigSyntaxError(f"expected 'option = value', got {line!r}", line_number=number)
    pos = min(positions)
    return line[:pos].strip(), line[pos + 1 :].strip()


__all__ = [
    "ConfigDocument",
    "ConfigDocumentError",
    "ConfigSyntaxError",
    "IncludeNotSupportedError",
    "Section",
    "SectionMissingError",
    "SectionPresentError",
    "scan_logical_lines",
    "trim_line",
]
