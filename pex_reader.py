#!/usr/bin/env python3
"""
PEX Container Reader
====================

Decoder for compiled script containers (.pex). All multi-byte fields are
big-endian.

File Structure:
--------------
| Field          | Size      | Notes                                        |
|----------------|-----------|----------------------------------------------|
| Magic          | 4 bytes   | 0xFA57C0DE                                   |
| Major version  | 1 byte    | must be 3                                    |
| Minor version  | 1 byte    | 1 or 2                                       |
| Game ID        | 2 bytes   | must be 1                                    |
| Compile time   | 8 bytes   | unix timestamp                               |
| Source path    | wstring   | u16 byte length + UTF-8                      |
| Username       | wstring   |                                              |
| Machine        | wstring   |                                              |
| String table   | variable  | u16 count + wstrings                         |
| Debug info     | variable  | u8 flag; if set u64 modtime + u16 count      |
| User flags     | variable  | u16 count of (u16 name, u8 flag index)       |
| Objects        | variable  | u16 count of (u16 name, u32 size, body)      |

The object size field covers itself plus the body. It is advisory: the
decoder reads it, keeps it on the object, and only compares it against the
real encoded length when verify_sizes is requested.

Variable Data:
-------------
| Tag | Type   | Payload     |
|-----|--------|-------------|
| 0   | Null   | none        |
| 1   | Ident  | u16         |
| 2   | String | u16         |
| 3   | Int    | i32         |
| 4   | Float  | f32         |
| 5   | Bool   | u8          |

Usage:
    from pex_reader import parse
    with open('Actor.pex', 'rb') as f:
        pex = parse(f.read())
"""

import struct

from pex_errors import (
    BadMagic,
    InvalidInstructionOperand,
    InvalidStringEncoding,
    InvalidVariableDataTag,
    ObjectSizeMismatch,
    PexIOError,
    StringIndexOutOfRange,
    UnsupportedGameId,
    UnsupportedMajorVersion,
    UnsupportedMinorVersion,
)
from pex_model import (
    DataType,
    DebugFunction,
    DebugInfo,
    Function,
    Instruction,
    NamedFunction,
    ObjectVariable,
    Pex,
    PexObject,
    Property,
    PEX_MAGIC,
    State,
    SUPPORTED_GAME_ID,
    SUPPORTED_MAJOR,
    SUPPORTED_MINORS,
    UserFlag,
    VariableData,
    VariableDecl,
    check_string_indices,
)
from pex_opcodes import OperandKind, lookup_opcode


class PexReader:
    """Sequential big-endian decoder over an in-memory buffer"""

    def __init__(self, data: bytes, strict_strings: bool = False, verbose: bool = False):
        self.data = bytes(data)
        self.pos = 0
        self.strict_strings = strict_strings
        self.verbose = verbose

    # =========================================================================
    # Primitives
    # =========================================================================

    def tell(self) -> int:
        return self.pos

    @property
    def remaining(self) -> int:
        return len(self.data) - self.pos

    def read_bytes(self, count: int) -> bytes:
        """Take exactly count bytes or raise PexIOError without moving"""
        if count > self.remaining:
            raise PexIOError(self.pos, count, self.remaining)
        chunk = self.data[self.pos:self.pos + count]
        self.pos += count
        return chunk

    def _unpack(self, fmt: str, size: int):
        return struct.unpack(fmt, self.read_bytes(size))[0]

    def read_u8(self) -> int:
        return self._unpack('>B', 1)

    def read_u16(self) -> int:
        return self._unpack('>H', 2)

    def read_u32(self) -> int:
        return self._unpack('>I', 4)

    def read_u64(self) -> int:
        return self._unpack('>Q', 8)

    def read_i32(self) -> int:
        return self._unpack('>i', 4)

    def read_f32(self) -> float:
        return self._unpack('>f', 4)

    def read_wstring(self) -> str:
        """
        Read a u16-length-prefixed UTF-8 string.

        Invalid UTF-8 is replaced with U+FFFD unless strict_strings is set, in
        which case InvalidStringEncoding is raised. Replacement is lossy, so
        re-encoding such a string does not reproduce the original bytes.
        """
        start = self.pos
        length = self.read_u16()
        raw = self.read_bytes(length)
        if self.strict_strings:
            try:
                return raw.decode('utf-8')
            except UnicodeDecodeError as e:
                raise InvalidStringEncoding(start, str(e)) from None
        return raw.decode('utf-8', errors='replace')

    # =========================================================================
    # Variable Data / Instructions
    # =========================================================================

    def read_variable_data(self) -> VariableData:
        offset = self.pos
        tag = self.read_u8()

        if tag == DataType.NULL:
            return VariableData.null()
        if tag == DataType.IDENT:
            return VariableData.ident(self.read_u16())
        if tag == DataType.STRING:
            return VariableData.string(self.read_u16())
        if tag == DataType.INT:
            return VariableData.int32(self.read_i32())
        if tag == DataType.FLOAT:
            return VariableData.float_from_bits(self.read_u32())
        if tag == DataType.BOOL:
            return VariableData.boolean(self.read_u8() != 0)

        raise InvalidVariableDataTag(tag, offset)

    def read_operand(self, kind: OperandKind, opcode):
        """
        Read one instruction operand and narrow it to its expected kind.

        Args:
            kind: Operand kind from the opcode table (not VARARGS)
            opcode: Opcode being decoded, for error reporting

        Returns:
            int for IDENT/INT/UINT, bool for BOOL, VariableData for VALUE

        Raises:
            InvalidInstructionOperand: tag does not fit the kind
        """
        value = self.read_variable_data()

        if kind is OperandKind.VALUE:
            return value
        if kind is OperandKind.IDENT and value.type == DataType.IDENT:
            return value.value
        if kind is OperandKind.INT and value.type == DataType.INT:
            return value.value
        if kind is OperandKind.UINT and value.type == DataType.INT:
            return value.value & 0xFFFFFFFF
        if kind is OperandKind.BOOL:
            # Compiler sometimes emits ints where a bool is expected
            if value.type == DataType.BOOL:
                return value.value
            if value.type == DataType.INT:
                return value.value != 0

        raise InvalidInstructionOperand(opcode, kind.value, value)

    def read_varargs(self, opcode) -> list:
        """Read an Int-shaped argument count followed by that many values"""
        count = self.read_operand(OperandKind.INT, opcode)
        if count < 0:
            raise InvalidInstructionOperand(opcode, "non-negative argument count", count)
        return [self.read_variable_data() for _ in range(count)]

    def read_instruction(self) -> Instruction:
        info = lookup_opcode(self.read_u8())

        args = []
        for kind in info.operands:
            if kind is OperandKind.VARARGS:
                args.append(self.read_varargs(info.opcode))
            else:
                args.append(self.read_operand(kind, info.opcode))

        return Instruction(info.opcode, args)

    # =========================================================================
    # Structures
    # =========================================================================

    def read_variable_decl(self) -> VariableDecl:
        name_idx = self.read_u16()
        type_idx = self.read_u16()
        return VariableDecl(name_idx, type_idx)

    def read_function(self) -> Function:
        return_type_idx = self.read_u16()
        doc_string_idx = self.read_u16()
        user_flags = self.read_u32()
        flags = self.read_u8()

        params = [self.read_variable_decl() for _ in range(self.read_u16())]
        locals_ = [self.read_variable_decl() for _ in range(self.read_u16())]
        instructions = [self.read_instruction() for _ in range(self.read_u16())]

        return Function(
            return_type_idx=return_type_idx,
            doc_string_idx=doc_string_idx,
            user_flags=user_flags,
            flags=flags,
            params=params,
            locals=locals_,
            instructions=instructions,
        )

    def read_named_function(self) -> NamedFunction:
        name_idx = self.read_u16()
        return NamedFunction(name_idx, self.read_function())

    def read_property(self) -> Property:
        prop = Property(
            name_idx=self.read_u16(),
            type_idx=self.read_u16(),
            doc_string_idx=self.read_u16(),
            user_flags=self.read_u32(),
            flags=self.read_u8(),
        )

        if prop.has_auto_var:
            prop.auto_var_name_idx = self.read_u16()
        if prop.has_read_handler:
            prop.read_handler = self.read_function()
        if prop.has_write_handler:
            prop.write_handler = self.read_function()

        return prop

    def read_state(self) -> State:
        name_idx = self.read_u16()
        functions = [self.read_named_function() for _ in range(self.read_u16())]
        return State(name_idx, functions)

    def read_object_variable(self) -> ObjectVariable:
        name_idx = self.read_u16()
        type_idx = self.read_u16()
        user_flags = self.read_u32()
        data = self.read_variable_data()
        return ObjectVariable(name_idx, type_idx, user_flags, data)

    def read_object(self, verify_size: bool = False) -> PexObject:
        """
        Read one object table entry: name index, size field, object body.

        Args:
            verify_size: Raise ObjectSizeMismatch if the size field disagrees
                         with the number of bytes actually decoded
        """
        name_idx = self.read_u16()
        size_offset = self.pos
        declared_size = self.read_u32()

        obj = PexObject(
            name_idx=name_idx,
            parent_name_idx=self.read_u16(),
            doc_string_idx=self.read_u16(),
            user_flags=self.read_u32(),
            auto_state_name_idx=self.read_u16(),
            declared_size=declared_size,
        )
        obj.variables = [self.read_object_variable() for _ in range(self.read_u16())]
        obj.properties = [self.read_property() for _ in range(self.read_u16())]
        obj.states = [self.read_state() for _ in range(self.read_u16())]

        actual_size = self.pos - size_offset
        if self.verbose:
            status = "" if actual_size == declared_size else f" (actual {actual_size})"
            print(f"  Object {name_idx} at 0x{size_offset - 2:06X}: "
                  f"{declared_size} bytes{status}, {len(obj.states)} states")
        if verify_size and actual_size != declared_size:
            raise ObjectSizeMismatch(name_idx, declared_size, actual_size)

        return obj

    def read_debug_function(self) -> DebugFunction:
        object_name_idx = self.read_u16()
        state_name_idx = self.read_u16()
        function_name_idx = self.read_u16()
        function_type = self.read_u8()
        line_numbers = [self.read_u16() for _ in range(self.read_u16())]
        return DebugFunction(object_name_idx, state_name_idx, function_name_idx,
                             function_type, line_numbers)

    def read_debug_info(self):
        """Read the optional debug section; returns None when absent"""
        if self.read_u8() == 0:
            return None
        modification_time = self.read_u64()
        functions = [self.read_debug_function() for _ in range(self.read_u16())]
        return DebugInfo(modification_time, functions)

    def read_string_table(self) -> list:
        return [self.read_wstring() for _ in range(self.read_u16())]

    def read_user_flags(self) -> list:
        flags = []
        for _ in range(self.read_u16()):
            name_idx = self.read_u16()
            flag_idx = self.read_u8()
            flags.append(UserFlag(name_idx, flag_idx))
        return flags

    def read_header(self) -> dict:
        """
        Read and validate the fixed header and its three provenance strings.

        Returns:
            Dictionary with major, minor, game_id, compile_time, source,
            username and machine
        """
        magic = self.read_u32()
        if magic != PEX_MAGIC:
            raise BadMagic(magic)

        major = self.read_u8()
        if major != SUPPORTED_MAJOR:
            raise UnsupportedMajorVersion(major)

        minor = self.read_u8()
        if minor not in SUPPORTED_MINORS:
            raise UnsupportedMinorVersion(minor)

        game_id = self.read_u16()
        if game_id != SUPPORTED_GAME_ID:
            raise UnsupportedGameId(game_id)

        return {
            'major': major,
            'minor': minor,
            'game_id': game_id,
            'compile_time': self.read_u64(),
            'source': self.read_wstring(),
            'username': self.read_wstring(),
            'machine': self.read_wstring(),
        }


# =============================================================================
# Drivers
# =============================================================================

def read_header(data: bytes) -> dict:
    """Validate and return only the header of a container"""
    return PexReader(data).read_header()


def parse(data: bytes, strict_strings: bool = False, verify_sizes: bool = False,
          check_indices: bool = False, verbose: bool = False) -> Pex:
    """
    Decode a complete PEX container.

    Args:
        data: Raw file contents
        strict_strings: Fail on invalid UTF-8 instead of substituting U+FFFD
        verify_sizes: Treat object size fields as authoritative
        check_indices: Fail if any string index misses the string table
        verbose: Print a decode trace

    Returns:
        Pex document

    Raises:
        PexError: first problem encountered; no partial result is returned
    """
    reader = PexReader(data, strict_strings=strict_strings, verbose=verbose)

    header = reader.read_header()
    pex = Pex(**header)
    if verbose:
        print(f"PEX v{pex.major}.{pex.minor} (game {pex.game_id}), source: {pex.source}")

    pex.strings = reader.read_string_table()
    pex.debug_info = reader.read_debug_info()
    pex.user_flags = reader.read_user_flags()
    if verbose:
        print(f"  Strings: {len(pex.strings)}, user flags: {len(pex.user_flags)}, "
              f"debug info: {'yes' if pex.debug_info else 'no'}")

    object_count = reader.read_u16()
    pex.objects = [reader.read_object(verify_size=verify_sizes) for _ in range(object_count)]

    if check_indices:
        bad = check_string_indices(pex)
        if bad:
            where, index = bad[0]
            raise StringIndexOutOfRange(where, index, len(pex.strings))

    return pex
