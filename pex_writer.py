#!/usr/bin/env python3
"""
PEX Container Writer
====================

Encoder mirroring pex_reader: every read_* has a write_* counterpart and
assemble() is the exact inverse of parse().

Two steps need more than appending bytes:

1. Identifier re-tagging. Instructions keep identifier operands as bare
   indices; the opcode table says which positions are identifiers, and the
   writer wraps them back into Ident-tagged variable data.

2. Object size backpatch. Each object's u32 size field covers itself plus the
   body, so a placeholder is written first, the body is encoded, then the
   writer seeks back and overwrites the placeholder with the real length.

    | Object entry | Size     | Counted in size field |
    |--------------|----------|-----------------------|
    | name index   | 2 bytes  | no                    |
    | size field   | 4 bytes  | yes                   |
    | body         | variable | yes                   |

An object with no variables, properties or states is 4 + 16 = 20 bytes.

Round-trip guarantee: assemble(parse(data)) == data whenever every wstring in
data is valid UTF-8 (always true for ASCII). Otherwise only the structure is
preserved: parse(assemble(parse(data))) == parse(data).
"""

import struct
from typing import Optional

from pex_errors import FieldOverflow, InvalidInstructionOperand
from pex_model import (
    DataType,
    DebugInfo,
    F32_MAX,
    Function,
    Instruction,
    NamedFunction,
    ObjectVariable,
    Pex,
    PexObject,
    Property,
    PEX_MAGIC,
    State,
    VariableData,
    VariableDecl,
)
from pex_opcodes import OperandKind, lookup_opcode


U16_MAX = 0xFFFF


class Placeholder:
    """A u32 field reserved now and filled in once its value is known"""

    def __init__(self, writer: 'PexWriter'):
        self.position = writer.tell()
        writer.write_u32(0)

    def satisfy(self, writer: 'PexWriter', value: int):
        # Seek back temporarily to overwrite the reserved field
        current_position = writer.tell()
        writer.seek(self.position)
        writer.write_u32(value)
        writer.seek(current_position)


class PexWriter:
    """Big-endian encoder into a growable, seekable byte buffer"""

    def __init__(self):
        self.buffer = bytearray()
        self.pos = 0

    # =========================================================================
    # Sink
    # =========================================================================

    def tell(self) -> int:
        return self.pos

    def seek(self, position: int):
        if not 0 <= position <= len(self.buffer):
            raise ValueError(f"Seek outside buffer: {position}")
        self.pos = position

    def write_bytes(self, data: bytes):
        """Write at the current position, overwriting and/or extending"""
        end = self.pos + len(data)
        self.buffer[self.pos:end] = data
        self.pos = end

    def getvalue(self) -> bytes:
        return bytes(self.buffer)

    # =========================================================================
    # Primitives
    # =========================================================================

    def _pack(self, fmt: str, value, field: str, limit: int):
        try:
            self.write_bytes(struct.pack(fmt, value))
        except (struct.error, OverflowError):
            raise FieldOverflow(field, value, limit) from None

    def write_u8(self, value: int):
        self._pack('>B', value, 'u8', 0xFF)

    def write_u16(self, value: int):
        self._pack('>H', value, 'u16', U16_MAX)

    def write_u32(self, value: int):
        self._pack('>I', value, 'u32', 0xFFFFFFFF)

    def write_u64(self, value: int):
        self._pack('>Q', value, 'u64', 0xFFFFFFFFFFFFFFFF)

    def write_i32(self, value: int):
        self._pack('>i', value, 'i32', 0x7FFFFFFF)

    def write_f32(self, value: float):
        self._pack('>f', value, 'f32', F32_MAX)

    def write_count(self, items, field: str):
        """Write a u16 list length"""
        if len(items) > U16_MAX:
            raise FieldOverflow(f"{field} count", len(items), U16_MAX)
        self.write_u16(len(items))

    def write_wstring(self, value: str):
        raw = value.encode('utf-8', errors='surrogateescape')
        if len(raw) > U16_MAX:
            raise FieldOverflow("string length", len(raw), U16_MAX)
        self.write_u16(len(raw))
        self.write_bytes(raw)

    # =========================================================================
    # Variable Data / Instructions
    # =========================================================================

    def write_variable_data(self, value: VariableData):
        self.write_u8(value.type)

        if value.type == DataType.NULL:
            return
        if value.type in (DataType.IDENT, DataType.STRING):
            self.write_u16(value.value)
        elif value.type == DataType.INT:
            self.write_i32(value.value)
        elif value.type == DataType.FLOAT:
            # Raw bits keep NaN payloads intact
            self.write_u32(value.float_bits())
        elif value.type == DataType.BOOL:
            self.write_u8(1 if value.value else 0)

    def write_operand(self, kind: OperandKind, value, opcode):
        """Re-tag an in-memory operand according to its kind and write it"""
        if kind is OperandKind.VALUE:
            if not isinstance(value, VariableData):
                raise InvalidInstructionOperand(opcode, kind.value, value)
            self.write_variable_data(value)
        elif kind is OperandKind.IDENT:
            self.write_variable_data(VariableData.ident(value))
        elif kind is OperandKind.INT:
            self.write_variable_data(VariableData.int32(value))
        elif kind is OperandKind.UINT:
            # Stored unsigned, travels as the same 32 bits in an Int tag
            bits = value & 0xFFFFFFFF
            self.write_variable_data(VariableData.int32(bits - 0x100000000 if bits & 0x80000000 else bits))
        elif kind is OperandKind.BOOL:
            self.write_variable_data(VariableData.boolean(value))
        elif kind is OperandKind.VARARGS:
            self.write_variable_data(VariableData.int32(len(value)))
            for arg in value:
                self.write_variable_data(arg)

    def write_instruction(self, instruction: Instruction):
        info = lookup_opcode(instruction.opcode)
        if len(instruction.args) != info.arity:
            raise InvalidInstructionOperand(
                info.opcode, f"{info.arity} operands", len(instruction.args))

        self.write_u8(info.opcode)
        for kind, value in zip(info.operands, instruction.args):
            self.write_operand(kind, value, info.opcode)

    # =========================================================================
    # Structures
    # =========================================================================

    def write_variable_decl(self, decl: VariableDecl):
        self.write_u16(decl.name_idx)
        self.write_u16(decl.type_idx)

    def write_function(self, func: Function):
        self.write_u16(func.return_type_idx)
        self.write_u16(func.doc_string_idx)
        self.write_u32(func.user_flags)
        self.write_u8(func.flags)

        self.write_count(func.params, "params")
        for param in func.params:
            self.write_variable_decl(param)

        self.write_count(func.locals, "locals")
        for local in func.locals:
            self.write_variable_decl(local)

        self.write_count(func.instructions, "instructions")
        for instruction in func.instructions:
            self.write_instruction(instruction)

    def write_named_function(self, named: NamedFunction):
        self.write_u16(named.name_idx)
        self.write_function(named.function)

    def write_property(self, prop: Property):
        self.write_u16(prop.name_idx)
        self.write_u16(prop.type_idx)
        self.write_u16(prop.doc_string_idx)
        self.write_u32(prop.user_flags)
        self.write_u8(prop.flags)

        # Optional members go out when present; keeping them in line with
        # the flag byte is the caller's job
        if prop.auto_var_name_idx is not None:
            self.write_u16(prop.auto_var_name_idx)
        if prop.read_handler is not None:
            self.write_function(prop.read_handler)
        if prop.write_handler is not None:
            self.write_function(prop.write_handler)

    def write_state(self, state: State):
        self.write_u16(state.name_idx)
        self.write_count(state.functions, "state functions")
        for named in state.functions:
            self.write_named_function(named)

    def write_object_variable(self, var: ObjectVariable):
        self.write_u16(var.name_idx)
        self.write_u16(var.type_idx)
        self.write_u32(var.user_flags)
        self.write_variable_data(var.data)

    def write_object(self, obj: PexObject) -> int:
        """
        Write one object table entry with a backpatched size field.

        Returns:
            The size written into the size field (size field + body)
        """
        self.write_u16(obj.name_idx)

        size_field = Placeholder(self)
        self.write_u16(obj.parent_name_idx)
        self.write_u16(obj.doc_string_idx)
        self.write_u32(obj.user_flags)
        self.write_u16(obj.auto_state_name_idx)

        self.write_count(obj.variables, "variables")
        for var in obj.variables:
            self.write_object_variable(var)

        self.write_count(obj.properties, "properties")
        for prop in obj.properties:
            self.write_property(prop)

        self.write_count(obj.states, "states")
        for state in obj.states:
            self.write_state(state)

        # Size includes the size field itself
        size = self.tell() - size_field.position
        size_field.satisfy(self, size)
        return size

    def write_debug_info(self, debug_info: Optional[DebugInfo]):
        if debug_info is None:
            self.write_u8(0)
            return

        self.write_u8(1)
        self.write_u64(debug_info.modification_time)
        self.write_count(debug_info.functions, "debug functions")
        for dbg in debug_info.functions:
            self.write_u16(dbg.object_name_idx)
            self.write_u16(dbg.state_name_idx)
            self.write_u16(dbg.function_name_idx)
            self.write_u8(dbg.function_type)
            self.write_count(dbg.line_numbers, "line numbers")
            for line in dbg.line_numbers:
                self.write_u16(line)

    def write_header(self, pex: Pex):
        self.write_u32(PEX_MAGIC)
        self.write_u8(pex.major)
        self.write_u8(pex.minor)
        self.write_u16(pex.game_id)
        self.write_u64(pex.compile_time)
        self.write_wstring(pex.source)
        self.write_wstring(pex.username)
        self.write_wstring(pex.machine)


# =============================================================================
# Driver
# =============================================================================

def assemble(pex: Pex) -> bytes:
    """
    Encode a Pex document into container bytes.

    Args:
        pex: Document to encode (normally produced by parse)

    Returns:
        Complete container bytes

    Raises:
        UnsupportedOpcode: an instruction carries an undefined opcode
        FieldOverflow: a value or list length does not fit its wire field
    """
    writer = PexWriter()
    writer.write_header(pex)

    writer.write_count(pex.strings, "strings")
    for s in pex.strings:
        writer.write_wstring(s)

    writer.write_debug_info(pex.debug_info)

    writer.write_count(pex.user_flags, "user flags")
    for flag in pex.user_flags:
        writer.write_u16(flag.name_idx)
        writer.write_u8(flag.flag_idx)

    writer.write_count(pex.objects, "objects")
    for obj in pex.objects:
        writer.write_object(obj)

    return writer.getvalue()
