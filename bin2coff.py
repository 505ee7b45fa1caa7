# coding: utf-8

"""bin2coff - embed binary data in a linkable MS COFF object file.

The generated object has a single .data section laid out as

    payload | zero padding | uint32 payload size

and exports two symbols, ``label`` at the start of the payload and
``label_size`` at the size trailer. Typical access from C:

    extern uint8_t  label[];      /* binary data         */
    extern uint32_t label_size;   /* size of binary data */
"""

import argparse
import os
import struct
import sys


SIZE_LABEL_SUFFIX = '_size'

# Names up to this length are stored inline in the symbol record
IMAGE_SIZEOF_SHORT_NAME = 8

# File header
IMAGE_FILE_MACHINE_I386 = 0x014c
IMAGE_FILE_MACHINE_AMD64 = 0x8664
IMAGE_FILE_MACHINE_ARM64 = 0xaa64

IMAGE_FILE_LINE_NUMS_STRIPPED = 0x0004

# Section header
IMAGE_SCN_CNT_INITIALIZED_DATA = 0x00000040
IMAGE_SCN_ALIGN_16BYTES = 0x00500000
IMAGE_SCN_MEM_READ = 0x40000000
IMAGE_SCN_MEM_WRITE = 0x80000000

# Symbol table
IMAGE_SYM_TYPE_NULL = 0x0000
IMAGE_SYM_CLASS_EXTERNAL = 0x02

DATA_SECTION_NAME = b'.data\x00\x00\x00'
DATA_SECTION_NUMBER = 1
DATA_SECTION_CHARACTERISTICS = (IMAGE_SCN_CNT_INITIALIZED_DATA |
                                IMAGE_SCN_ALIGN_16BYTES |
                                IMAGE_SCN_MEM_READ |
                                IMAGE_SCN_MEM_WRITE)

TRAILER_FORMAT = '<I'
TRAILER_SIZE = struct.calcsize(TRAILER_FORMAT)

# Symbol values are signed 32-bit
MAX_SYMBOL_VALUE = 0x7fffffff


class Bin2CoffError(Exception):
    """Base class for errors that abort the conversion"""


class ArgumentCountError(Bin2CoffError):
    pass


class UnsupportedHostEndianness(Bin2CoffError):

    def __init__(self, byteorder):
        super().__init__(
            "This program is not compatible with {} endian architectures".format(byteorder))
        self.byteorder = byteorder


class InputReadError(Bin2CoffError):

    def __init__(self, path, cause):
        super().__init__("Couldn't open file '{}': {}".format(path, cause))
        self.path = path
        self.cause = cause


class OutputCreateError(Bin2CoffError):

    def __init__(self, path, cause):
        super().__init__("Couldn't create file '{}': {}".format(path, cause))
        self.path = path
        self.cause = cause


class InvalidLabelError(Bin2CoffError):
    pass


class PayloadTooLargeError(Bin2CoffError):
    pass


class UnrecognizedTarget(ValueError):
    """Token is not an architecture name; callers fall back to x64"""

    def __init__(self, token):
        super().__init__("Unrecognized target '{}'".format(token))
        self.token = token


# ---------------------------------------------------------------------------
# Targets
# ---------------------------------------------------------------------------

class Target:
    """Machine type and ABI parameters of an output architecture"""

    def __init__(self, name, machine, pointer_width_flag, alignment):
        self.name = name
        self.machine = machine
        # 1 on 32-bit targets, where C symbols carry a leading underscore
        self.pointer_width_flag = pointer_width_flag
        self.alignment = alignment

    @property
    def symbol_prefix(self):
        return '_' if self.pointer_width_flag else ''

    def __repr__(self):
        return 'Target({!r})'.format(self.name)


TARGET_X86 = Target('x86', IMAGE_FILE_MACHINE_I386, 1, 1)
TARGET_X64 = Target('x64', IMAGE_FILE_MACHINE_AMD64, 0, 1)
TARGET_ARM64 = Target('arm64', IMAGE_FILE_MACHINE_ARM64, 0, 4)

DEFAULT_TARGET = TARGET_X64

# Case-sensitive
TARGET_TOKENS = {
    '64bit': TARGET_X64,
    'x64': TARGET_X64,
    'arm64': TARGET_ARM64,
    'ARM64': TARGET_ARM64,
    '32bit': TARGET_X86,
    'Win32': TARGET_X86,
}


def resolve_target(token):
    """Map an architecture token to its Target.

    Raises UnrecognizedTarget for anything that is not an architecture
    name, so the command line can treat the argument as a label instead.
    """
    try:
        return TARGET_TOKENS[token]
    except KeyError:
        raise UnrecognizedTarget(token) from None


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class SymbolName:
    """The 8-byte name field of a symbol record"""

    def __init__(self, name):
        self.name = name

    def pack(self):
        raise NotImplementedError


class ShortName(SymbolName):
    """Name stored inline, NUL padded to 8 bytes"""

    def __init__(self, name):
        if len(name) > IMAGE_SIZEOF_SHORT_NAME:
            raise ValueError("Short name {!r} is longer than {} bytes".format(
                name, IMAGE_SIZEOF_SHORT_NAME))
        super().__init__(name)

    def pack(self):
        return struct.pack('<8s', self.name)

    def __repr__(self):
        return 'ShortName({!r})'.format(self.name)


class LongName(SymbolName):
    """Name stored in the string table, referenced by offset"""

    def __init__(self, name, offset):
        super().__init__(name)
        self.offset = offset

    def pack(self):
        return struct.pack('<II',
                           0,              # Zeroes
                           self.offset)    # Offset into string table

    def __repr__(self):
        return 'LongName({!r}, {})'.format(self.name, self.offset)


class FileHeader:
    """COFF file header (IMAGE_FILE_HEADER)"""

    FORMAT = '<HHIIIHH'
    SIZE = struct.calcsize(FORMAT)

    def __init__(self, machine, pointer_to_symbol_table,
                 number_of_sections=1, number_of_symbols=2,
                 characteristics=IMAGE_FILE_LINE_NUMS_STRIPPED):
        self.machine = machine
        self.number_of_sections = number_of_sections
        self.time_date_stamp = 0
        self.pointer_to_symbol_table = pointer_to_symbol_table
        self.number_of_symbols = number_of_symbols
        self.size_of_optional_header = 0
        self.characteristics = characteristics

    def pack(self):
        return struct.pack(self.FORMAT,
                           self.machine,                  # Machine
                           self.number_of_sections,       # NumberOfSections
                           self.time_date_stamp,          # TimeDateStamp
                           self.pointer_to_symbol_table,  # PointerToSymbolTable
                           self.number_of_symbols,        # NumberOfSymbols
                           self.size_of_optional_header,  # SizeOfOptionalHeader
                           self.characteristics)          # Characteristics


class SectionHeader:
    """COFF section header (IMAGE_SECTION_HEADER)"""

    FORMAT = '<8sIIIIIIHHI'
    SIZE = struct.calcsize(FORMAT)

    def __init__(self, size_of_raw_data, pointer_to_raw_data,
                 name=DATA_SECTION_NAME,
                 characteristics=DATA_SECTION_CHARACTERISTICS):
        self.name = name
        self.size_of_raw_data = size_of_raw_data
        self.pointer_to_raw_data = pointer_to_raw_data
        self.characteristics = characteristics

    def pack(self):
        return struct.pack(self.FORMAT,
                           self.name,
                           0,                          # VirtualSize
                           0,                          # VirtualAddress
                           self.size_of_raw_data,      # SizeOfRawData
                           self.pointer_to_raw_data,   # PointerToRawData
                           0,                          # PointerToRelocations
                           0,                          # PointerToLinenumbers
                           0,                          # NumberOfRelocations
                           0,                          # NumberOfLinenumbers
                           self.characteristics)       # Characteristics


class SymbolRecord:
    """COFF symbol table entry (IMAGE_SYMBOL)"""

    FORMAT = '<8sihHBB'
    SIZE = struct.calcsize(FORMAT)

    def __init__(self, name, value, section_number=DATA_SECTION_NUMBER,
                 type=IMAGE_SYM_TYPE_NULL,
                 storage_class=IMAGE_SYM_CLASS_EXTERNAL,
                 number_of_aux_symbols=0):
        self.name = name
        self.value = value
        self.section_number = section_number
        # MS linkers ignore the type, so no (DTYPE_ARRAY << 8) | TYPE_BYTE
        self.type = type
        self.storage_class = storage_class
        self.number_of_aux_symbols = number_of_aux_symbols

    def pack(self):
        return struct.pack(self.FORMAT,
                           self.name.pack(),
                           self.value,                  # Value (offset within section)
                           self.section_number,         # SectionNumber
                           self.type,                   # Type
                           self.storage_class,          # StorageClass
                           self.number_of_aux_symbols)  # NumberOfAuxSymbols


class StringTable:
    """COFF string table; the leading size field counts itself"""

    HEADER_SIZE = 4

    def __init__(self):
        self.strings = bytearray()

    @property
    def size(self):
        return self.HEADER_SIZE + len(self.strings)

    def add(self, name):
        """Append a NUL terminated name and return its offset"""
        offset = self.size
        self.strings += name + b'\x00'
        return offset

    def pack(self):
        return struct.pack('<I', self.size) + bytes(self.strings)


# ---------------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------------

class FileLayout:
    """Sizes and offsets of every part of the object file"""

    def __init__(self, payload_size, padding_size, names, string_table_size):
        self.payload_size = payload_size
        self.padding_size = padding_size
        # Data symbol name first, then the size symbol name
        self.names = names
        self.string_table_size = string_table_size

    @property
    def pointer_to_raw_data(self):
        return FileHeader.SIZE + SectionHeader.SIZE

    @property
    def size_symbol_value(self):
        return self.payload_size + self.padding_size

    @property
    def size_of_raw_data(self):
        return self.payload_size + self.padding_size + TRAILER_SIZE

    @property
    def pointer_to_symbol_table(self):
        return self.pointer_to_raw_data + self.size_of_raw_data

    @property
    def total_size(self):
        return (self.pointer_to_symbol_table +
                len(self.names) * SymbolRecord.SIZE +
                self.string_table_size)


def normalize_label(label):
    return label.replace('-', '_')


def align_padding(size, alignment):
    """Number of zero bytes needed to align size to alignment"""
    return (alignment - size % alignment) % alignment


def symbol_names(label, target):
    """Encoded names of the data symbol and the size symbol"""
    label = normalize_label(label)
    if not label:
        raise InvalidLabelError("Label must not be empty")
    try:
        name = (target.symbol_prefix + label).encode('ascii')
    except UnicodeEncodeError:
        raise InvalidLabelError(
            "Label '{}' contains non-ASCII characters".format(label)) from None
    return [name, name + SIZE_LABEL_SUFFIX.encode('ascii')]


def plan_layout(payload, label, target):
    """Compute the file layout and the name encoding of both symbols"""
    payload_size = len(payload)
    padding_size = align_padding(payload_size, target.alignment)
    if payload_size + padding_size > MAX_SYMBOL_VALUE:
        raise PayloadTooLargeError(
            "Payload of {} bytes does not fit a 32-bit COFF section".format(payload_size))

    names = []
    string_table_size = StringTable.HEADER_SIZE
    for name in symbol_names(label, target):
        # The x86 underscore prefix counts toward the inline budget
        if len(name) <= IMAGE_SIZEOF_SHORT_NAME:
            names.append(ShortName(name))
        else:
            names.append(LongName(name, string_table_size))
            string_table_size += len(name) + 1

    return FileLayout(payload_size, padding_size, names, string_table_size)


# ---------------------------------------------------------------------------
# Tables and serialization
# ---------------------------------------------------------------------------

def build_tables(layout):
    """Build the data symbol, the size symbol and the string table"""
    string_table = StringTable()
    for name in layout.names:
        if isinstance(name, LongName):
            string_table.add(name.name)

    data_name, size_name = layout.names
    data_symbol = SymbolRecord(data_name, 0)
    # The size trailer lives in the same section, right after the padding
    size_symbol = SymbolRecord(size_name, layout.size_symbol_value)
    return data_symbol, size_symbol, string_table


def serialize(file_header, section_header, payload, padding, trailer,
              symbols, string_table):
    """Write all records in file order"""
    obj_file = bytearray()
    obj_file += file_header.pack()
    obj_file += section_header.pack()
    obj_file += payload
    obj_file += padding
    obj_file += struct.pack(TRAILER_FORMAT, trailer)
    for symbol in symbols:
        obj_file += symbol.pack()
    obj_file += string_table.pack()
    return bytes(obj_file)


class COFFGenerator:
    """Generate a COFF object exposing binary data as label and label_size"""

    def __init__(self, binary_data, label, target=DEFAULT_TARGET):
        self.binary_data = binary_data
        self.label = normalize_label(label)
        self.target = target
        self.size = len(binary_data)

    def plan(self):
        return plan_layout(self.binary_data, self.label, self.target)

    def generate(self):
        """Generate the object file bytes"""
        layout = self.plan()
        data_symbol, size_symbol, string_table = build_tables(layout)

        file_header = FileHeader(
            machine=self.target.machine,
            pointer_to_symbol_table=layout.pointer_to_symbol_table)
        section_header = SectionHeader(
            size_of_raw_data=layout.size_of_raw_data,
            pointer_to_raw_data=layout.pointer_to_raw_data)

        return serialize(file_header,
                         section_header,
                         self.binary_data,
                         bytes(layout.padding_size),
                         self.size,
                         [data_symbol, size_symbol],
                         string_table)


def bin2coff(payload, label, target_token=None):
    """Convert payload to COFF object bytes.

    An unrecognized or missing target_token selects the default target.
    """
    target = TARGET_TOKENS.get(target_token, DEFAULT_TARGET)
    return COFFGenerator(payload, label, target).generate()


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

class _ArgumentParser(argparse.ArgumentParser):

    def error(self, message):
        raise ArgumentCountError(message)


def build_parser():
    parser = _ArgumentParser(
        prog='bin2coff',
        description='Convert a binary file to a linkable MS COFF object file',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Targets:
  64bit, x64      AMD64 object, no leading underscore on symbols (default)
  arm64, ARM64    ARM64 object, data aligned to 4-byte boundaries
  32bit, Win32    i386 object, symbols get a leading underscore

With your linker set properly, typical access from a C source is:

    extern uint8_t  label[];      /* binary data         */
    extern uint32_t label_size;   /* size of binary data */

Examples:
  %(prog)s data.bin data.obj
  %(prog)s image.png image.obj image_data Win32
  %(prog)s asset.bin asset.obj arm64
        """
    )

    parser.add_argument('input',
                        help='Source binary data')
    parser.add_argument('output',
                        help='Target object file, in MS COFF format')
    parser.add_argument('label', nargs='?',
                        help="Identifier for the extern data ('-' becomes '_'). "
                             "Defaults to the input file name without extension")
    parser.add_argument('target', nargs='?',
                        help='Target architecture (default: x64)')
    return parser


def default_label(input_path):
    return os.path.splitext(os.path.basename(input_path))[0]


def parse_arguments(argv=None, parser=None):
    """Return (input, output, label, target) from the command line"""
    if parser is None:
        parser = build_parser()
    if argv is None:
        argv = sys.argv[1:]
    # Positionals only, so labels may start with a hyphen
    if list(argv) not in (['-h'], ['--help']):
        argv = ['--'] + list(argv)
    args = parser.parse_args(argv)

    label = args.label
    target = DEFAULT_TARGET
    if args.target is not None:
        try:
            target = resolve_target(args.target)
        except UnrecognizedTarget as e:
            print("Warning: {}, using {}".format(e, DEFAULT_TARGET.name),
                  file=sys.stderr)
    elif label is not None:
        # A lone third argument is either a target or the label
        try:
            target = resolve_target(label)
            label = None
        except UnrecognizedTarget:
            pass

    if label is None:
        label = default_label(args.input)

    return args.input, args.output, normalize_label(label), target


def check_host_endianness():
    if sys.byteorder != 'little':
        raise UnsupportedHostEndianness(sys.byteorder)


def read_payload(path):
    try:
        with open(path, 'rb') as f:
            return f.read()
    except OSError as e:
        raise InputReadError(path, e) from e


def write_object(path, obj_data):
    try:
        f = open(path, 'wb')
    except OSError as e:
        raise OutputCreateError(path, e) from e
    with f:
        f.write(obj_data)


def main(argv=None):
    parser = build_parser()
    try:
        input_path, output_path, label, target = parse_arguments(argv, parser)
    except ArgumentCountError as e:
        parser.print_help(sys.stderr)
        print("Error: {}".format(e), file=sys.stderr)
        return 1

    try:
        check_host_endianness()
        binary_data = read_payload(input_path)
        if len(binary_data) == 0:
            print("Warning: Input file is empty", file=sys.stderr)

        generator = COFFGenerator(binary_data, label, target)
        obj_data = generator.generate()
        write_object(output_path, obj_data)
    except Bin2CoffError as e:
        print("Error: {}".format(e), file=sys.stderr)
        return 1

    print("Successfully created COFF object file '{}'".format(output_path))
    print("  Architecture: {}".format(target.name))
    print("  Data size: {} bytes".format(len(binary_data)))
    print("  Symbols generated:")
    print("    - {}".format(label))
    print("    - {}{}".format(label, SIZE_LABEL_SUFFIX))
    return 0


if __name__ == '__main__':
    sys.exit(main())
