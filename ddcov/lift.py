"""lift simple text traces into pin helper traces"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

from .pintool import (
    DragonDanceError,
    MAX_MODULE_SIZE,
    Module,
    Trace,
)

log = logging.getLogger(__name__)

# size given to modules defined without an end address
DEFAULT_MODULE_SIZE = 0x100000
MODULE_SLACK = 0x1000


class LiftError(DragonDanceError):
    """error during trace lifting"""

    pass


class TraceFormat:
    """enumeration of supported trace formats"""

    MODULE_OFFSET = "ModuleOffsetTrace"
    ADDRESS = "AddressTrace"
    ADDRESS_SIZE = "AddressSizeTrace"


@dataclass
class ModuleDefinition:
    """a module given on the command line, end is None until estimated"""

    name: str
    base: int
    end: Optional[int] = None


# (absolute address, block size, module name or None for plain addresses)
Event = Tuple[int, int, Optional[str]]

_MODULE_DEF_PATTERN = re.compile(
    r"^(?P<name>[^@]+)@(?P<base>(0x)?[0-9a-f]+)"
    r"(?:(?P<sep>[:+])(?P<limit>(0x)?[0-9a-f]+))?$",
    re.IGNORECASE,
)
_MODULE_OFFSET_PATTERN = re.compile(
    r"^([a-zA-Z_][a-zA-Z0-9_.\-]*)\+(?:0x)?([0-9a-fA-F]+)(?:\s+(\d+))?$", re.IGNORECASE
)
_ADDRESS_PATTERN = re.compile(r"^(?:0x)?([0-9a-fA-F]+)$", re.IGNORECASE)
_ADDRESS_SIZE_PATTERN = re.compile(r"^(?:0x)?([0-9a-fA-F]+)\s+(\d+)$", re.IGNORECASE)


def parse_hex_number(hex_str: str) -> int:
    """parse hex number with or without 0x prefix"""
    return int(hex_str, 16)


def parse_module_definitions(module_defs: List[str]) -> List[ModuleDefinition]:
    """
    parse module definitions from -M flags
    format: name@base:end, name@base+size or name@base (end estimated later)
    """
    definitions = []
    seen = set()

    for module_def in module_defs:
        match = _MODULE_DEF_PATTERN.match(module_def.strip())
        if not match:
            raise LiftError(
                f"invalid module definition '{module_def}', expected name@base[:end|+size]"
            )

        name = match.group("name")
        if name in seen:
            raise LiftError(f"duplicate module definition for '{name}'")
        seen.add(name)

        base = parse_hex_number(match.group("base"))
        end = None
        if match.group("limit") is not None:
            limit = parse_hex_number(match.group("limit"))
            end = base + limit if match.group("sep") == "+" else limit

        definitions.append(ModuleDefinition(name, base, end))

    return definitions


def detect_format(input_file: Union[str, Path]) -> str:
    """
    auto-detect the input format by examining the first few valid lines
    returns TraceFormat.MODULE_OFFSET, TraceFormat.ADDRESS_SIZE or TraceFormat.ADDRESS
    """
    with open(input_file, "r") as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue

            if _MODULE_OFFSET_PATTERN.match(line):
                return TraceFormat.MODULE_OFFSET
            elif _ADDRESS_SIZE_PATTERN.match(line):
                return TraceFormat.ADDRESS_SIZE
            elif _ADDRESS_PATTERN.match(line):
                return TraceFormat.ADDRESS

            # stop after checking first 10 lines
            if line_num >= 10:
                break

    raise LiftError("unable to detect input format - no valid entries found")


def parse_trace(
    input_file: Union[str, Path],
    trace_format: str,
    modules: List[ModuleDefinition],
    default_size: int = 1,
) -> Iterator[Event]:
    """
    parse a trace file in the given format, yielding events in file order
    lines that do not match the format raise LiftError
    """
    bases: Dict[str, int] = {m.name: m.base for m in modules}

    with open(input_file, "r") as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue

            if trace_format == TraceFormat.MODULE_OFFSET:
                match = _MODULE_OFFSET_PATTERN.match(line)
                if not match:
                    raise LiftError(f"invalid module+offset entry '{line}' at line {line_num}")
                module_name, offset_str, size_str = match.groups()
                if module_name not in bases:
                    raise LiftError(
                        f"unknown module '{module_name}' at line {line_num}, "
                        f"define it with -M {module_name}@base_addr"
                    )
                address = bases[module_name] + parse_hex_number(offset_str)
                size = int(size_str) if size_str else default_size
                yield address, size, module_name

            elif trace_format == TraceFormat.ADDRESS_SIZE:
                match = _ADDRESS_SIZE_PATTERN.match(line)
                if not match:
                    raise LiftError(f"invalid address+size entry '{line}' at line {line_num}")
                yield parse_hex_number(match.group(1)), int(match.group(2)), None

            elif trace_format == TraceFormat.ADDRESS:
                match = _ADDRESS_PATTERN.match(line)
                if not match:
                    raise LiftError(f"invalid hex address '{line}' at line {line_num}")
                yield parse_hex_number(match.group(1)), default_size, None

            else:
                raise LiftError(f"unsupported format: {trace_format}")


def _owner_of(address: int, definitions: List[ModuleDefinition]) -> Optional[str]:
    """closest module whose base is at or below address"""
    candidates = [m for m in definitions if m.base <= address]
    if not candidates:
        return None
    return max(candidates, key=lambda m: m.base).name


def resolve_modules(
    definitions: List[ModuleDefinition], events: List[Event]
) -> List[Module]:
    """
    turn definitions into modules, estimating missing end addresses
    from the furthest byte the trace reaches in each module
    """
    open_modules = [d for d in definitions if d.end is None]

    max_extents: Dict[str, int] = {}
    if open_modules:
        by_name = {d.name: d for d in definitions}
        for address, size, module_name in events:
            owner = module_name if module_name is not None else _owner_of(address, definitions)
            if owner is None or by_name[owner].end is not None:
                continue
            extent = address - by_name[owner].base + size
            if extent >= 0:
                max_extents[owner] = max(max_extents.get(owner, 0), extent)

    modules = []
    for definition in definitions:
        end = definition.end
        if end is None:
            estimated_size = max(
                DEFAULT_MODULE_SIZE, max_extents.get(definition.name, 0) + MODULE_SLACK
            )
            end = definition.base + min(estimated_size, MAX_MODULE_SIZE)
            # stop short of the next module up so ranges never run into it
            next_bases = [d.base for d in definitions if d.base > definition.base]
            if next_bases:
                end = min(end, min(next_bases))
            log.debug("estimated end of %s as 0x%x", definition.name, end)
        modules.append(Module(definition.name, definition.base, end))

    return modules


def lift_trace_file(
    input_file: Union[str, Path],
    module_defs: List[str],
    default_size: int = 1,
    skip_unmapped: bool = False,
) -> Trace:
    """
    main function to lift a simple text trace into a pin helper trace
    """
    if not Path(input_file).exists():
        raise LiftError(f"input file does not exist: {input_file}")

    if not module_defs:
        raise LiftError("at least one module must be specified with -M")

    definitions = parse_module_definitions(module_defs)
    log.debug("parsed modules: %s", definitions)

    trace_format = detect_format(input_file)
    log.debug("detected format: %s", trace_format)

    events = list(parse_trace(input_file, trace_format, definitions, default_size))
    if not events:
        raise LiftError("no valid coverage entries found in input file")

    trace = Trace(resolve_modules(definitions, events))
    modules_by_name = {m.name: m for m in trace.modules}

    skipped = 0
    for address, size, module_name in events:
        module = trace.module_containing(address)
        if module is None and skip_unmapped:
            skipped += 1
            continue
        if module is not None and module_name is not None and module.name != module_name:
            raise LiftError(
                f"{module_name}+0x{address - modules_by_name[module_name].base:x} "
                f"resolves to module '{module.name}', module ranges overlap"
            )
        trace.add(address, size)

    if skipped:
        log.warning("skipped %d events outside every module", skipped)
    log.debug("lifted %d events into %d entries", len(events), len(trace))

    return trace
