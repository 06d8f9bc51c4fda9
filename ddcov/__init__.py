"""ddcov - record code coverage in the dragondance pin helper format"""

from .pintool import (
    write,
    Module,
    Entry,
    Trace,
    DragonDanceError,
    InvalidModuleError,
    UnmappedAddressError,
    EntrySizeError,
)
from .lift import LiftError, lift_trace_file

__all__ = [
    "write",
    "Module",
    "Entry",
    "Trace",
    "DragonDanceError",
    "InvalidModuleError",
    "UnmappedAddressError",
    "EntrySizeError",
    "LiftError",
    "lift_trace_file",
]
