#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
A pure-Python library for writing DragonDance "Pin Helper" coverage files.

The Pin Helper format is a text header and module table followed by a table of
fixed 12-byte binary entries. It is the format produced by the DragonDance
pintool and consumed by the DragonDance Ghidra plugin, so every field width and
offset below has to match what that reader expects.

References:
 - DragonDance: https://github.com/0ffffffffh/dragondance
 - Pin Helper format: https://github.com/0ffffffffh/dragondance/issues/1#issuecomment-493699908

Example Usage:
    modules = [
        pintool.Module("abcd", 0x1000, 0x2000),
        pintool.Module("libc.so", 0x555000, 0x556000),
    ]
    trace = pintool.Trace(modules)

    # Add coverage events from your emulator, debugger, etc.
    trace.add(0x1204, 3)
    trace.add(0x1207, 12)

    trace.save("trace.dd")
"""

import dataclasses
import io
import logging
import struct
from pathlib import Path
from typing import BinaryIO, Iterable, List, Optional, Sequence, TextIO, Tuple, Union

log = logging.getLogger(__name__)

# --- Constants ---
_MAGIC = "DDPH-PINTOOL"
_COUNTS_FORMAT = "EntryCount: {entries}, ModuleCount: {modules}"
_MODULE_TABLE_MARKER = "MODULE_TABLE"
_ENTRY_TABLE_MARKER = "ENTRY_TABLE"

# offset u32, size u16, module u16, instruction count u32.
# Native byte order with standard sizes: the reader expects the producer's order.
_ENTRY_STRUCT = struct.Struct("=IHHI")
ENTRY_SIZE = _ENTRY_STRUCT.size

MAX_ADDRESS = 0xFFFFFFFFFFFFFFFF
MAX_MODULE_SIZE = 0xFFFFFFFF
MAX_ENTRY_SIZE = 0xFFFF
MAX_MODULES = 0xFFFF

# --- Public API ---


class DragonDanceError(Exception):
    """Base exception for everything raised by ddcov."""

    pass


class InvalidModuleError(DragonDanceError, ValueError):
    """A module range that cannot be represented in a Pin Helper file."""

    pass


class UnmappedAddressError(DragonDanceError, ValueError):
    """A coverage event whose address is not inside any registered module."""

    def __init__(self, pc: int):
        shown = f"0x{pc:x}" if isinstance(pc, int) else repr(pc)
        super().__init__(f"No module found that contains PC {shown}")
        self.pc = pc


class EntrySizeError(DragonDanceError, ValueError):
    """A coverage event whose size does not fit the 16-bit size field."""

    pass


@dataclasses.dataclass(frozen=True)
class Module:
    """A named executable image loaded at [base, end)."""

    name: str
    base: int
    end: int

    def __post_init__(self):
        if not (isinstance(self.base, int) and isinstance(self.end, int)):
            raise InvalidModuleError(
                f"Module '{self.name}' addresses must be integers"
            )
        if not (0 <= self.base <= MAX_ADDRESS and 0 <= self.end <= MAX_ADDRESS):
            raise InvalidModuleError(
                f"Module '{self.name}' addresses must be 64-bit unsigned values"
            )
        if self.base >= self.end:
            raise InvalidModuleError(
                f"Module '{self.name}': base 0x{self.base:x} must be before end 0x{self.end:x}"
            )
        if self.end - self.base > MAX_MODULE_SIZE:
            raise InvalidModuleError(
                f"Module '{self.name}': sizes > 0x{MAX_MODULE_SIZE:x} are not "
                "representable in the Pin Helper format"
            )

    @property
    def size(self) -> int:
        """Returns the size of the module in memory."""
        return self.end - self.base

    def contains(self, pc: int) -> bool:
        """True if the given pc is within this module."""
        return self.base <= pc < self.end


@dataclasses.dataclass(frozen=True)
class Entry:
    """A single coverage event, usually one executed basic block."""

    offset: int  # uint32: pc minus module base
    size: int  # uint16: block or instruction length
    module: int  # uint16: 1-based index into the module table

    def pack(self) -> bytes:
        # instruction count is not used by dragondance at all, always zero
        return _ENTRY_STRUCT.pack(self.offset, self.size, self.module, 0)


class Trace:
    """
    A collection of code coverage entries over a fixed set of modules,
    exportable in the DragonDance Pin Helper format.
    """

    def __init__(self, modules: Sequence[Module]):
        modules = tuple(modules)
        if len(modules) > MAX_MODULES:
            raise InvalidModuleError(
                f"Too many modules ({len(modules)}), at most {MAX_MODULES} can be indexed"
            )
        self._modules: Tuple[Module, ...] = modules
        self._entries: List[Entry] = []
        log.debug("created trace over %d modules", len(modules))

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"Trace(modules={len(self._modules)}, entries={len(self._entries)})"

    @property
    def modules(self) -> Tuple[Module, ...]:
        return self._modules

    @property
    def entries(self) -> Tuple[Entry, ...]:
        return tuple(self._entries)

    def module_containing(self, pc: int) -> Optional[Module]:
        """
        Returns the first registered module containing pc, or None.

        Overlapping modules are not detected; the earliest registered one wins.
        """
        return next((m for m in self._modules if m.contains(pc)), None)

    def add(self, pc: int, size: int) -> None:
        """
        Adds a coverage entry to the trace.

        Args:
            pc: The program counter executed.
            size: Length in bytes of the basic block (or of the instruction
                when tracing single instructions).

        Raises:
            EntrySizeError: If size is not an integer that fits in 16 bits.
            UnmappedAddressError: If pc is not an integer or no module contains it.
        """
        if not isinstance(size, int):
            raise EntrySizeError(f"Entry size must be an integer, got {size!r}")
        if not 0 <= size <= MAX_ENTRY_SIZE:
            raise EntrySizeError(
                f"Entry size {size} is too large for the Pin Helper format, "
                f"must be <= 0x{MAX_ENTRY_SIZE:x}"
            )

        if not isinstance(pc, int):
            raise UnmappedAddressError(pc)

        for index, module in enumerate(self._modules):
            if module.contains(pc):
                self._entries.append(
                    Entry(offset=pc - module.base, size=size, module=index + 1)
                )
                return

        raise UnmappedAddressError(pc)

    def extend(self, events: Iterable[Tuple[int, int]]) -> None:
        """Adds (pc, size) pairs in order, stopping at the first invalid one."""
        for pc, size in events:
            self.add(pc, size)

    def write(self, stream: Union[BinaryIO, TextIO]) -> None:
        """
        Writes the trace in the Pin Helper format.

        Accepts a binary stream, or a text stream that exposes its binary
        buffer. Errors from the stream propagate unchanged.
        """
        _Writer.write_stream(self, stream)

    def save(self, path: Union[str, Path]) -> None:
        """Creates (or truncates) the file at path and writes the trace to it."""
        with open(path, "wb") as f:
            self.write(f)
        log.debug("saved %d entries to %s", len(self._entries), path)

    def to_bytes(self) -> bytes:
        """Returns the complete Pin Helper file as bytes."""
        buf = io.BytesIO()
        self.write(buf)
        return buf.getvalue()


# --- Writer Implementation ---


class _Writer:
    @staticmethod
    def write_stream(trace: Trace, stream: Union[BinaryIO, TextIO]):
        if isinstance(stream, io.TextIOBase):
            # Binary records cannot go through a text layer
            if not hasattr(stream, "buffer"):
                raise DragonDanceError(
                    "Cannot write binary entry table to a text stream without a buffer."
                )
            stream.flush()
            stream = stream.buffer

        # snapshot so header counts and the entry table always agree
        modules = trace.modules
        entries = trace.entries

        stream.write(_Writer._header(len(entries), len(modules)).encode("utf-8"))
        stream.write(_Writer._module_table(modules).encode("utf-8"))
        stream.write(f"{_ENTRY_TABLE_MARKER}\n".encode("utf-8"))
        if entries:
            stream.write(b"".join(entry.pack() for entry in entries))

        log.debug("wrote %d entries, %d modules", len(entries), len(modules))

    @staticmethod
    def _header(entry_count: int, module_count: int) -> str:
        counts = _COUNTS_FORMAT.format(entries=entry_count, modules=module_count)
        return f"{_MAGIC}\n{counts}\n"

    @staticmethod
    def _module_table(modules: Sequence[Module]) -> str:
        lines = [_MODULE_TABLE_MARKER]
        for number, mod in enumerate(modules, 1):
            lines.append(f"{number}, 0x{mod.base:x}, 0x{mod.end:x}, {mod.name}")
        return "\n".join(lines) + "\n"


# --- Public API Functions ---


def write(trace: Trace, filepath_or_stream: Union[str, Path, BinaryIO]):
    """
    Writes a trace to a Pin Helper file.

    Args:
        trace: The Trace to write.
        filepath_or_stream: Path to the output file or a stream opened in binary mode.

    Raises:
        OSError: If the file cannot be created or written.
    """
    if isinstance(filepath_or_stream, (str, Path)):
        trace.save(filepath_or_stream)
    else:
        trace.write(filepath_or_stream)
