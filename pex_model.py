#!/usr/bin/env python3
"""
PEX Document Model
==================

In-memory representation of one compiled script container. A Pex is built
whole by pex_reader.parse() and consumed whole by pex_writer.assemble().

Every name, type and doc string is referenced by a 16-bit index into the
global string table (Pex.strings).

Document Tree:
--------------
    Pex
    +-- header (versions, game id, compile time, source/user/machine)
    +-- strings            [str]
    +-- debug_info         DebugInfo | None
    |   +-- functions      [DebugFunction]
    +-- user_flags         [UserFlag]
    +-- objects            [PexObject]
        +-- variables      [ObjectVariable]
        +-- properties     [Property]  (optional getter/setter Function)
        +-- states         [State]
            +-- functions  [NamedFunction]
                +-- Function
                    +-- params / locals  [VariableDecl]
                    +-- instructions     [Instruction]
"""

import math
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, List, Optional

from pex_errors import FieldOverflow
from pex_opcodes import Opcode, OpcodeInfo, lookup_opcode


# =============================================================================
# Format Constants
# =============================================================================

PEX_MAGIC = 0xFA57C0DE
SUPPORTED_MAJOR = 3
SUPPORTED_MINORS = (1, 2)
SUPPORTED_GAME_ID = 1

# Largest finite 32-bit float
F32_MAX = 3.4028234663852886e38

# Property flag bits
PROPERTY_FLAG_READ = 0x01
PROPERTY_FLAG_WRITE = 0x02
PROPERTY_FLAG_AUTOVAR = 0x04


class DataType(IntEnum):
    """Variable data tag byte"""
    NULL = 0
    IDENT = 1
    STRING = 2
    INT = 3
    FLOAT = 4
    BOOL = 5

    def __str__(self):
        return self.name.lower()


class FunctionType(IntEnum):
    """Role byte of a debug function record"""
    METHOD = 0
    GETTER = 1
    SETTER = 2


def float32_bits(value: float) -> int:
    """
    Encode a Python float as a 32-bit float bit pattern.

    Raises:
        FieldOverflow: value is finite but outside the 32-bit float range
    """
    try:
        return struct.unpack('>I', struct.pack('>f', value))[0]
    except (OverflowError, struct.error):
        raise FieldOverflow('f32', value, F32_MAX) from None


def bits_to_float32(bits: int) -> float:
    return struct.unpack('>f', struct.pack('>I', bits))[0]


def to_float32(value: float) -> float:
    """Round a Python float to the nearest 32-bit float"""
    return bits_to_float32(float32_bits(value))


def _same_float(a: float, b: float) -> bool:
    if math.isnan(a) or math.isnan(b):
        return math.isnan(a) and math.isnan(b)
    return a == b and math.copysign(1.0, a) == math.copysign(1.0, b)


# =============================================================================
# Values
# =============================================================================

@dataclass(eq=False)
class VariableData:
    """
    Tagged operand/initial value: Null, Ident, String, Int, Float or Bool.

    Floats decoded from a container keep their raw bit pattern in bits, so
    NaN payloads survive a round trip. Floats compare by bit pattern.
    """
    type: DataType
    value: Any = None
    bits: Optional[int] = field(default=None, repr=False)

    @classmethod
    def null(cls) -> 'VariableData':
        return cls(DataType.NULL)

    @classmethod
    def ident(cls, index: int) -> 'VariableData':
        return cls(DataType.IDENT, index)

    @classmethod
    def string(cls, index: int) -> 'VariableData':
        return cls(DataType.STRING, index)

    @classmethod
    def int32(cls, value: int) -> 'VariableData':
        return cls(DataType.INT, value)

    @classmethod
    def float32(cls, value: float) -> 'VariableData':
        return cls(DataType.FLOAT, to_float32(value))

    @classmethod
    def float_from_bits(cls, bits: int) -> 'VariableData':
        return cls(DataType.FLOAT, bits_to_float32(bits), bits)

    @classmethod
    def boolean(cls, value: bool) -> 'VariableData':
        return cls(DataType.BOOL, bool(value))

    @property
    def is_null(self) -> bool:
        return self.type == DataType.NULL

    def float_bits(self) -> int:
        """
        Bit pattern to write for a Float.

        The decoded bits are reused while value still matches them; a value
        changed after decoding is encoded afresh.
        """
        if self.bits is not None and _same_float(bits_to_float32(self.bits), self.value):
            return self.bits
        return float32_bits(self.value)

    def __eq__(self, other):
        if not isinstance(other, VariableData):
            return NotImplemented
        if self.type == DataType.FLOAT and other.type == DataType.FLOAT:
            try:
                return self.float_bits() == other.float_bits()
            except FieldOverflow:
                return self.value == other.value
        return self.type == other.type and self.value == other.value

    def __str__(self):
        if self.type == DataType.NULL:
            return "None"
        if self.type == DataType.IDENT:
            return f"ident({self.value})"
        if self.type == DataType.STRING:
            return f"string({self.value})"
        if self.type == DataType.BOOL:
            return "True" if self.value else "False"
        return repr(self.value)


@dataclass
class Instruction:
    """
    One bytecode instruction.

    args follows the opcode's operand shape (see pex_opcodes): identifier
    positions hold bare ints, value positions hold VariableData, integer
    positions hold ints and a variadic tail is a list of VariableData.
    """
    opcode: Opcode
    args: List[Any] = field(default_factory=list)

    @property
    def info(self) -> OpcodeInfo:
        return lookup_opcode(self.opcode)

    @property
    def mnemonic(self) -> str:
        return self.info.mnemonic


# =============================================================================
# Functions, States, Properties
# =============================================================================

@dataclass
class VariableDecl:
    """Typed parameter or local"""
    name_idx: int
    type_idx: int


@dataclass
class Function:
    return_type_idx: int
    doc_string_idx: int
    user_flags: int = 0
    flags: int = 0
    params: List[VariableDecl] = field(default_factory=list)
    locals: List[VariableDecl] = field(default_factory=list)
    instructions: List[Instruction] = field(default_factory=list)


@dataclass
class NamedFunction:
    name_idx: int
    function: Function


@dataclass
class State:
    """A named mode of an object with its own function table"""
    name_idx: int
    functions: List[NamedFunction] = field(default_factory=list)


@dataclass
class Property:
    name_idx: int
    type_idx: int
    doc_string_idx: int
    user_flags: int = 0
    flags: int = 0
    auto_var_name_idx: Optional[int] = None
    read_handler: Optional[Function] = None
    write_handler: Optional[Function] = None

    # Presence tests as the engine evaluates them. The read/write bits are
    # ignored when the autovar bit is set.
    @property
    def has_auto_var(self) -> bool:
        return (self.flags & PROPERTY_FLAG_AUTOVAR) != 0

    @property
    def has_read_handler(self) -> bool:
        return (self.flags & (PROPERTY_FLAG_READ | PROPERTY_FLAG_AUTOVAR)) == PROPERTY_FLAG_READ

    @property
    def has_write_handler(self) -> bool:
        return (self.flags & (PROPERTY_FLAG_WRITE | PROPERTY_FLAG_AUTOVAR)) == PROPERTY_FLAG_WRITE


@dataclass
class ObjectVariable:
    name_idx: int
    type_idx: int
    user_flags: int
    data: VariableData


@dataclass
class PexObject:
    """One compiled script"""
    name_idx: int
    parent_name_idx: int
    doc_string_idx: int
    user_flags: int = 0
    auto_state_name_idx: int = 0
    variables: List[ObjectVariable] = field(default_factory=list)
    properties: List[Property] = field(default_factory=list)
    states: List[State] = field(default_factory=list)
    # Size field as read from the wire (size field + body); 0 if built in memory
    declared_size: int = field(default=0, compare=False)


# =============================================================================
# Debug Info / Document
# =============================================================================

@dataclass
class DebugFunction:
    object_name_idx: int
    state_name_idx: int
    function_name_idx: int
    function_type: int
    line_numbers: List[int] = field(default_factory=list)


@dataclass
class DebugInfo:
    modification_time: int
    functions: List[DebugFunction] = field(default_factory=list)


@dataclass
class UserFlag:
    name_idx: int
    flag_idx: int


@dataclass
class Pex:
    """A complete PEX container"""
    major: int = SUPPORTED_MAJOR
    minor: int = SUPPORTED_MINORS[-1]
    game_id: int = SUPPORTED_GAME_ID
    compile_time: int = 0
    source: str = ""
    username: str = ""
    machine: str = ""
    strings: List[str] = field(default_factory=list)
    debug_info: Optional[DebugInfo] = None
    user_flags: List[UserFlag] = field(default_factory=list)
    objects: List[PexObject] = field(default_factory=list)

    def string(self, index: int) -> str:
        """Resolve a string index, tolerating bad indices for display"""
        if 0 <= index < len(self.strings):
            return self.strings[index]
        return f"<bad string {index}>"

    def find_object(self, name: str) -> Optional[PexObject]:
        for obj in self.objects:
            if self.string(obj.name_idx).lower() == name.lower():
                return obj
        return None


# =============================================================================
# Index Validation
# =============================================================================

def _function_indices(func: Function, where: str):
    yield f"{where}.return_type", func.return_type_idx
    yield f"{where}.doc_string", func.doc_string_idx
    for i, decl in enumerate(func.params):
        yield f"{where}.params[{i}].name", decl.name_idx
        yield f"{where}.params[{i}].type", decl.type_idx
    for i, decl in enumerate(func.locals):
        yield f"{where}.locals[{i}].name", decl.name_idx
        yield f"{where}.locals[{i}].type", decl.type_idx
    for i, instr in enumerate(func.instructions):
        for j, arg in enumerate(instr.args):
            values = arg if isinstance(arg, list) else [arg]
            for value in values:
                if isinstance(value, VariableData) and value.type == DataType.STRING:
                    yield f"{where}.instructions[{i}].args[{j}]", value.value


def _document_indices(pex: Pex):
    for i, flag in enumerate(pex.user_flags):
        yield f"user_flags[{i}].name", flag.name_idx

    if pex.debug_info is not None:
        for i, dbg in enumerate(pex.debug_info.functions):
            where = f"debug_info.functions[{i}]"
            yield f"{where}.object_name", dbg.object_name_idx
            yield f"{where}.state_name", dbg.state_name_idx
            yield f"{where}.function_name", dbg.function_name_idx

    for o, obj in enumerate(pex.objects):
        where = f"objects[{o}]"
        yield f"{where}.name", obj.name_idx
        yield f"{where}.parent_name", obj.parent_name_idx
        yield f"{where}.doc_string", obj.doc_string_idx
        yield f"{where}.auto_state_name", obj.auto_state_name_idx

        for v, var in enumerate(obj.variables):
            yield f"{where}.variables[{v}].name", var.name_idx
            yield f"{where}.variables[{v}].type", var.type_idx
            if var.data.type == DataType.STRING:
                yield f"{where}.variables[{v}].data", var.data.value

        for p, prop in enumerate(obj.properties):
            pwhere = f"{where}.properties[{p}]"
            yield f"{pwhere}.name", prop.name_idx
            yield f"{pwhere}.type", prop.type_idx
            yield f"{pwhere}.doc_string", prop.doc_string_idx
            if prop.auto_var_name_idx is not None:
                yield f"{pwhere}.auto_var_name", prop.auto_var_name_idx
            if prop.read_handler is not None:
                yield from _function_indices(prop.read_handler, f"{pwhere}.read_handler")
            if prop.write_handler is not None:
                yield from _function_indices(prop.write_handler, f"{pwhere}.write_handler")

        for s, state in enumerate(obj.states):
            swhere = f"{where}.states[{s}]"
            yield f"{swhere}.name", state.name_idx
            for f, named in enumerate(state.functions):
                yield f"{swhere}.functions[{f}].name", named.name_idx
                yield from _function_indices(named.function, f"{swhere}.functions[{f}]")


def check_string_indices(pex: Pex) -> list:
    """
    Find every string index that falls outside the string table.

    Identifier operands of instructions are not checked, they address the
    function's parameter/local space.

    Args:
        pex: Document to check

    Returns:
        List of (location, index) tuples, empty when the document is consistent
    """
    size = len(pex.strings)
    return [(where, index) for where, index in _document_indices(pex)
            if not 0 <= index < size]
