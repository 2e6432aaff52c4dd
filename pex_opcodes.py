#!/usr/bin/env python3
"""
PEX Instruction Set
===================

Single table describing all 36 opcodes of the compiled script bytecode. Both
the reader and the writer walk this table, so decode and encode always agree
on an opcode's operand shape.

Every operand is stored on the wire as tagged variable data. The operand kind
says which tag the position must carry and how the decoded value is kept in
memory:

| Kind    | Wire tag         | In memory                                   |
|---------|------------------|---------------------------------------------|
| IDENT   | Ident (1)        | bare int (identifier index)                 |
| VALUE   | any              | VariableData                                |
| INT     | Int (3)          | signed 32-bit int                           |
| UINT    | Int (3)          | unsigned 32-bit int (reinterpreted bits)    |
| BOOL    | Bool (5) or Int  | bool (Int coerced with a nonzero test)      |
| VARARGS | Int count + N    | list of VariableData                        |

Opcode Map:
-----------
| Op | Mnemonic           | Operands          |
|----|--------------------|-------------------|
|  0 | NOP                |                   |
|  1 | IADD               | I V V             |
|  2 | FADD               | I V V             |
|  3 | ISUB               | I V V             |
|  4 | FSUB               | I V V             |
|  5 | IMUL               | I V V             |
|  6 | FMUL               | I V V             |
|  7 | IDIV               | I V V             |
|  8 | FDIV               | I V V             |
|  9 | IMOD               | I V V             |
| 10 | NOT                | I V               |
| 11 | INEG               | I V               |
| 12 | FNEG               | I V               |
| 13 | ASSIGN             | I V               |
| 14 | CAST               | I V               |
| 15 | CMP_EQ             | I V V             |
| 16 | CMP_LT             | I V V             |
| 17 | CMP_LE             | I V V             |
| 18 | CMP_GT             | I V V             |
| 19 | CMP_GE             | I V V             |
| 20 | JMP                | V                 |
| 21 | JMPT               | V V               |
| 22 | JMPF               | V V               |
| 23 | CALLMETHOD         | I V I *           |
| 24 | CALLPARENT         | I I *             |
| 25 | CALLSTATIC         | I I I *           |
| 26 | RETURN             | V                 |
| 27 | STRCAT             | I V V             |
| 28 | PROPGET            | I I I             |
| 29 | PROPSET            | I I V             |
| 30 | ARRAY_CREATE       | I U               |
| 31 | ARRAY_LENGTH       | I I               |
| 32 | ARRAY_GETELEMENT   | I I V             |
| 33 | ARRAY_SETELEMENT   | I V V             |
| 34 | ARRAY_FINDELEMENT  | I I V N           |
| 35 | ARRAY_RFINDELEMENT | I I V N           |
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict, Tuple

from pex_errors import UnsupportedOpcode


class Opcode(IntEnum):
    NOP = 0
    IADD = 1
    FADD = 2
    ISUB = 3
    FSUB = 4
    IMUL = 5
    FMUL = 6
    IDIV = 7
    FDIV = 8
    IMOD = 9
    NOT = 10
    INEG = 11
    FNEG = 12
    ASSIGN = 13
    CAST = 14
    CMP_EQ = 15
    CMP_LT = 16
    CMP_LE = 17
    CMP_GT = 18
    CMP_GE = 19
    JMP = 20
    JMPT = 21
    JMPF = 22
    CALLMETHOD = 23
    CALLPARENT = 24
    CALLSTATIC = 25
    RETURN = 26
    STRCAT = 27
    PROPGET = 28
    PROPSET = 29
    ARRAY_CREATE = 30
    ARRAY_LENGTH = 31
    ARRAY_GETELEMENT = 32
    ARRAY_SETELEMENT = 33
    ARRAY_FINDELEMENT = 34
    ARRAY_RFINDELEMENT = 35

    def __str__(self):
        return self.name


class OperandKind(Enum):
    """Expected shape of one operand position"""
    IDENT = "ident"
    VALUE = "value"
    INT = "int"
    UINT = "uint"
    BOOL = "bool"
    VARARGS = "varargs"


@dataclass(frozen=True)
class OpcodeInfo:
    opcode: Opcode
    operands: Tuple[OperandKind, ...]

    @property
    def mnemonic(self) -> str:
        return self.opcode.name

    @property
    def arity(self) -> int:
        """Number of fixed operand slots (a variadic tail counts as one)"""
        return len(self.operands)

    @property
    def is_variadic(self) -> bool:
        return bool(self.operands) and self.operands[-1] is OperandKind.VARARGS


# =============================================================================
# Opcode Table
# =============================================================================

I = OperandKind.IDENT
V = OperandKind.VALUE
N = OperandKind.INT
U = OperandKind.UINT
VARARGS = OperandKind.VARARGS

_SHAPES = {
    Opcode.NOP:                (),
    Opcode.IADD:               (I, V, V),
    Opcode.FADD:               (I, V, V),
    Opcode.ISUB:               (I, V, V),
    Opcode.FSUB:               (I, V, V),
    Opcode.IMUL:               (I, V, V),
    Opcode.FMUL:               (I, V, V),
    Opcode.IDIV:               (I, V, V),
    Opcode.FDIV:               (I, V, V),
    Opcode.IMOD:               (I, V, V),
    Opcode.NOT:                (I, V),
    Opcode.INEG:               (I, V),
    Opcode.FNEG:               (I, V),
    Opcode.ASSIGN:             (I, V),
    Opcode.CAST:               (I, V),
    Opcode.CMP_EQ:             (I, V, V),
    Opcode.CMP_LT:             (I, V, V),
    Opcode.CMP_LE:             (I, V, V),
    Opcode.CMP_GT:             (I, V, V),
    Opcode.CMP_GE:             (I, V, V),
    Opcode.JMP:                (V,),
    Opcode.JMPT:               (V, V),
    Opcode.JMPF:               (V, V),
    Opcode.CALLMETHOD:         (I, V, I, VARARGS),
    Opcode.CALLPARENT:         (I, I, VARARGS),
    Opcode.CALLSTATIC:         (I, I, I, VARARGS),
    Opcode.RETURN:             (V,),
    Opcode.STRCAT:             (I, V, V),
    Opcode.PROPGET:            (I, I, I),
    Opcode.PROPSET:            (I, I, V),
    Opcode.ARRAY_CREATE:       (I, U),
    Opcode.ARRAY_LENGTH:       (I, I),
    Opcode.ARRAY_GETELEMENT:   (I, I, V),
    Opcode.ARRAY_SETELEMENT:   (I, V, V),
    Opcode.ARRAY_FINDELEMENT:  (I, I, V, N),
    Opcode.ARRAY_RFINDELEMENT: (I, I, V, N),
}

del I, V, N, U, VARARGS

OPCODE_TABLE: Dict[Opcode, OpcodeInfo] = {
    op: OpcodeInfo(op, shape) for op, shape in _SHAPES.items()
}

_BY_MNEMONIC = {info.mnemonic: info for info in OPCODE_TABLE.values()}


def lookup_opcode(value: int) -> OpcodeInfo:
    """
    Look up the table entry for an opcode byte.

    Args:
        value: Raw opcode (int or Opcode)

    Returns:
        OpcodeInfo for the opcode

    Raises:
        UnsupportedOpcode: value is not one of the 36 defined opcodes
    """
    try:
        return OPCODE_TABLE[Opcode(value)]
    except ValueError:
        raise UnsupportedOpcode(int(value)) from None


def find_opcode(mnemonic: str) -> OpcodeInfo:
    """Resolve a mnemonic such as 'CALLMETHOD' (case-insensitive)"""
    info = _BY_MNEMONIC.get(mnemonic.upper())
    if info is None:
        raise KeyError(f"Unknown mnemonic: {mnemonic}")
    return info
