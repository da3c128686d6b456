"""Tests for loading PE executables."""

import struct

import pytest

from binload.core.errors import (
    NotAnExecutableError,
    SectionLoadError,
    UnsupportedArchitectureError,
)
from binload.core.loader import BinaryLoader
from binload.core.models import Arch, BinaryType, SectionType
from binload.parsers.pe_parser import PEParser
from shared.config import BinloadConfig

from builders import (
    BSS_SIZE,
    IMAGE_FILE_MACHINE_ARM64,
    PE_BSS_RVA,
    PE_RDATA_OFFSET,
    PE_RDATA_RVA,
    PE_TEXT_RVA,
    TEXT_BYTES,
    build_pe,
    pe_iat_rva,
)

IMAGE_BASE_64 = 0x140000000
IMAGE_BASE_32 = 0x400000


class TestPEHeaders:
    """Tests for PE header decoding and architecture resolution."""

    def test_pe32_plus(self, loader, write_binary):
        """Test a 64-bit image."""
        binary = loader.load(write_binary(build_pe(entry_rva=0x1010), "app.exe"))
        assert binary.type is BinaryType.PE
        assert binary.arch is Arch.X86
        assert binary.bits == 64
        assert binary.type_str == "pei-x86-64"
        assert binary.arch_str == "i386:x86-64"
        assert binary.entry == IMAGE_BASE_64 + 0x1010

    def test_pe32(self, loader, write_binary):
        """Test a 32-bit image."""
        binary = loader.load(write_binary(build_pe(bits=32), "app.exe"))
        assert binary.bits == 32
        assert binary.type_str == "pei-i386"
        assert binary.arch_str == "i386"
        assert binary.entry == IMAGE_BASE_32 + 0x1000

    def test_arm64_is_rejected(self, loader, write_binary):
        """Test that a non-x86 machine is rejected with its name."""
        path = write_binary(build_pe(machine=IMAGE_FILE_MACHINE_ARM64), "arm.exe")
        with pytest.raises(UnsupportedArchitectureError) as excinfo:
            loader.load(path)
        assert excinfo.value.arch_name == "aarch64"
        assert "aarch64" in str(excinfo.value)

    def test_bad_optional_header_magic(self, loader, write_binary):
        """Test that an unknown optional header is not an executable."""
        image = bytearray(build_pe())
        struct.pack_into("<H", image, 0x80 + 24, 0x1234)
        with pytest.raises(NotAnExecutableError, match="optional header magic"):
            loader.load(write_binary(bytes(image), "bad.exe"))

    def test_parser_properties(self):
        """Test parser accessors after header decoding."""
        parser = PEParser(build_pe(bits=32))
        parser.parse_headers()
        assert not parser.is_pe32plus
        assert parser.image_base == IMAGE_BASE_32
        assert parser.machine == 0x14C


class TestPESymbols:
    """Tests for COFF, export and import symbols."""

    def test_coff_symbols(self, loader, write_binary):
        """Test that defined COFF functions are rebased on their section."""
        data = build_pe(coff_symbols=[
            ("main", 0x10, 1, True),
            ("a_rather_long_function_name", 0x20, 1, True),
            ("global_counter", 0x0, 2, False),
            ("external", 0x0, 0, True),
        ])
        binary = loader.load(write_binary(data, "app.exe"))
        assert [(s.name, s.addr) for s in binary.symbols] == [
            ("main", IMAGE_BASE_64 + PE_TEXT_RVA + 0x10),
            ("a_rather_long_function_name", IMAGE_BASE_64 + PE_TEXT_RVA + 0x20),
        ]

    def test_no_coff_symbols(self, loader, write_binary):
        """Test that an image without a COFF table has no static symbols."""
        binary = loader.load(write_binary(build_pe(), "app.exe"))
        assert binary.symbols == []

    def test_exports(self, loader, write_binary):
        """Test exported functions, data exports and forwarders."""
        data = build_pe(
            exports=[("DoWork", 0x1000), ("Helper", 0x1010), ("SomeTable", PE_BSS_RVA)],
            forwarders=[("Forwarded", "NTDLL.RtlFoo")],
        )
        binary = loader.load(write_binary(data, "test.dll"))
        assert [(s.name, s.addr) for s in binary.dynamic_symbols] == [
            ("DoWork", IMAGE_BASE_64 + 0x1000),
            ("Helper", IMAGE_BASE_64 + 0x1010),
        ]

    @pytest.mark.parametrize("bits", [32, 64])
    def test_imports(self, loader, write_binary, bits):
        """Test imports named dll!function at their IAT slot."""
        imports = {
            "KERNEL32.dll": ["ExitProcess", "GetLastError"],
            "WS2_32.dll": [23],
        }
        base = IMAGE_BASE_64 if bits == 64 else IMAGE_BASE_32
        binary = loader.load(write_binary(build_pe(bits=bits, imports=imports), "app.exe"))
        assert [(s.name, s.addr) for s in binary.dynamic_symbols] == [
            ("KERNEL32.dll!ExitProcess", base + pe_iat_rva(imports, bits, "KERNEL32.dll", 0)),
            ("KERNEL32.dll!GetLastError", base + pe_iat_rva(imports, bits, "KERNEL32.dll", 1)),
            ("WS2_32.dll!#23", base + pe_iat_rva(imports, bits, "WS2_32.dll", 0)),
        ]

    def test_export_ordinal_out_of_range(self, loader, write_binary, log_records):
        """Test that a corrupt export table only empties the dynamic symbols."""
        image = bytearray(build_pe(
            exports=[("DoWork", 0x1000)],
            coff_symbols=[("main", 0x10, 1, True)],
        ))
        ordinals_rva = struct.unpack_from("<I", image, PE_RDATA_OFFSET + 36)[0]
        struct.pack_into("<H", image, PE_RDATA_OFFSET + ordinals_rva - PE_RDATA_RVA, 7)

        binary = loader.load(write_binary(bytes(image), "test.dll"))
        assert binary.dynamic_symbols == []
        assert [(s.name, s.addr) for s in binary.symbols] == [
            ("main", IMAGE_BASE_64 + PE_TEXT_RVA + 0x10),
        ]
        warnings = [r for r in log_records if r.levelname == "WARNING"]
        assert len(warnings) == 1
        assert warnings[0].stage == "extract_dynamic_symbols"
        assert "export ordinal 7 out of range" in warnings[0].getMessage()

    def test_unmapped_import_lookup_table(self, loader, write_binary, log_records):
        """Test that an import table pointing outside every section is skipped."""
        image = bytearray(build_pe(
            imports={"KERNEL32.dll": ["Sleep"]},
            coff_symbols=[("main", 0x10, 1, True)],
        ))
        # OriginalFirstThunk of the first descriptor
        struct.pack_into("<I", image, PE_RDATA_OFFSET, 0x9000)

        binary = loader.load(write_binary(bytes(image), "app.exe"))
        assert binary.dynamic_symbols == []
        assert [s.name for s in binary.symbols] == ["main"]
        assert [s.name for s in binary.sections] == [".text", ".rdata", ".bss"]
        warnings = [r.getMessage() for r in log_records if r.levelname == "WARNING"]
        assert len(warnings) == 1
        assert "import lookup table of KERNEL32.dll" in warnings[0]
        assert "continuing without dynamic symbols" in warnings[0]

    def test_exports_precede_imports(self, loader, write_binary):
        """Test the order of the dynamic symbol sequence."""
        data = build_pe(exports=[("DoWork", 0x1000)], imports={"KERNEL32.dll": ["Sleep"]})
        binary = loader.load(write_binary(data, "test.dll"))
        assert [s.name for s in binary.dynamic_symbols] == ["DoWork", "KERNEL32.dll!Sleep"]


class TestPESections:
    """Tests for PE section loading."""

    def test_sections(self, loader, write_binary):
        """Test section classification, addresses and contents."""
        binary = loader.load(write_binary(build_pe(), "app.exe"))
        assert [s.name for s in binary.sections] == [".text", ".rdata", ".bss"]
        text, rdata, bss = binary.sections

        assert text.type is SectionType.CODE
        assert text.vma == IMAGE_BASE_64 + PE_TEXT_RVA
        assert text.size == len(TEXT_BYTES)
        assert text.flags == "R X"
        assert text.data == TEXT_BYTES

        assert rdata.type is SectionType.DATA
        assert rdata.vma == IMAGE_BASE_64 + PE_RDATA_RVA
        assert rdata.flags == "R"

        assert bss.type is SectionType.BSS
        assert bss.vma == IMAGE_BASE_64 + PE_BSS_RVA
        assert bss.size == BSS_SIZE
        assert bss.flags == "R W"
        assert bss.data == b""

    def test_entry_inside_text(self, loader, write_binary):
        """Test that the entry point lies in the code section."""
        binary = loader.load(write_binary(build_pe(), "app.exe"))
        assert binary.find_section(binary.entry) is binary.get_text_section()

    @pytest.mark.parametrize("load_bytes", [True, False])
    def test_raw_data_outside_file(self, quiet_logger, write_binary, load_bytes):
        """Test that a section whose raw data lies past the end of file is fatal."""
        image = bytearray(build_pe())
        # PointerToRawData of the second section header (.rdata)
        section_table = 0x80 + 4 + 20 + 240
        struct.pack_into("<I", image, section_table + 40 + 20, 0x100000)

        config = BinloadConfig()
        config.loader.load_section_bytes = load_bytes
        with pytest.raises(SectionLoadError) as excinfo:
            BinaryLoader(config=config, logger=quiet_logger).load(
                write_binary(bytes(image), "app.exe")
            )
        assert "section .rdata out of bounds" in str(excinfo.value)
        assert "app.exe" in str(excinfo.value)
