"""integration tests for the complete ddcov package"""

import struct

import pytest

import ddcov
from ddcov import (
    write,
    Module,
    Trace,
    DragonDanceError,
    UnmappedAddressError,
    lift_trace_file,
)


class TestFullSystemIntegration:
    """test the public api working together"""

    def create_realistic_trace(self):
        """simulate an emulator reporting blocks across several modules"""
        modules = [
            Module("/usr/bin/myapp", 0x400000, 0x480000),
            Module("/lib/x86_64-linux-gnu/libc.so.6", 0x7F8B40000000, 0x7F8B40200000),
            Module("/lib/x86_64-linux-gnu/libssl.so.1.1", 0x7F8B3E000000, 0x7F8B3E100000),
        ]
        trace = Trace(modules)

        blocks = [
            (0x401000, 64),
            (0x7F8B40025000, 32),
            (0x401100, 32),
            (0x7F8B3E015000, 128),
            (0x401000, 64),
        ]
        trace.extend(blocks)
        return trace

    def test_public_exports(self):
        for name in ddcov.__all__:
            assert hasattr(ddcov, name)

    def test_contract_errors_share_base(self):
        assert issubclass(ddcov.InvalidModuleError, DragonDanceError)
        assert issubclass(ddcov.EntrySizeError, DragonDanceError)
        assert issubclass(ddcov.LiftError, DragonDanceError)
        assert not issubclass(DragonDanceError, OSError)

    def test_save_realistic_trace(self, tmp_path):
        trace = self.create_realistic_trace()
        path = tmp_path / "trace.dd"
        write(trace, str(path))

        data = path.read_bytes()
        header, _, rest = data.partition(b"ENTRY_TABLE\n")
        lines = header.decode().splitlines()

        assert lines[0] == "DDPH-PINTOOL"
        assert lines[1] == "EntryCount: 5, ModuleCount: 3"
        assert lines[2] == "MODULE_TABLE"
        assert lines[4] == "2, 0x7f8b40000000, 0x7f8b40200000, /lib/x86_64-linux-gnu/libc.so.6"
        assert len(rest) == 5 * 12

        modules = [struct.unpack("=IHHI", rest[i : i + 12])[2] for i in range(0, 60, 12)]
        assert modules == [1, 2, 1, 3, 1]

    def test_lift_matches_manual_trace(self, tmp_path):
        """lifting a text trace gives the same file as recording it directly"""
        trace = self.create_realistic_trace()
        text = "\n".join(
            f"0x{trace.modules[e.module - 1].base + e.offset:x} {e.size}"
            for e in trace.entries
        )
        input_file = tmp_path / "trace.txt"
        input_file.write_text(text + "\n")

        lifted = lift_trace_file(
            input_file,
            [f"{m.name}@0x{m.base:x}:0x{m.end:x}" for m in trace.modules],
        )

        assert lifted.to_bytes() == trace.to_bytes()

    def test_failed_add_keeps_file_consistent(self, tmp_path):
        trace = self.create_realistic_trace()
        before = trace.to_bytes()

        with pytest.raises(UnmappedAddressError):
            trace.add(0xdead, 1)

        assert trace.to_bytes() == before
