#!/usr/bin/env python3
"""
PEX Error Taxonomy
==================

Every failure raised while decoding or encoding a PEX container derives from
PexError, so callers can report "this file could not be opened" with a single
except clause and still inspect the structured kind for diagnostics.

| Error                      | Raised when                                        |
|----------------------------|----------------------------------------------------|
| BadMagic                   | First 4 bytes are not 0xFA57C0DE                   |
| UnsupportedMajorVersion    | Major version is not 3                             |
| UnsupportedMinorVersion    | Minor version is not 1 or 2                        |
| UnsupportedGameId          | Game id is not 1                                   |
| InvalidVariableDataTag     | Variable data tag byte outside 0-5                 |
| InvalidInstructionOperand  | Operand tag does not match the opcode's shape      |
| UnsupportedOpcode          | Opcode byte outside 0-35                           |
| PexIOError                 | Buffer ends before a field is complete             |
| InvalidStringEncoding      | Strict mode and a wstring is not valid UTF-8       |
| ObjectSizeMismatch         | Size verification on and declared != actual        |
| StringIndexOutOfRange      | Index checking on and an index misses the table    |
| FieldOverflow              | A value does not fit its wire field on write       |
"""


class PexError(Exception):
    """Base class for all container decode/encode failures."""


class BadMagic(PexError):
    """Input is not a PEX container at all."""

    def __init__(self, value: int):
        self.value = value
        super().__init__(f"Invalid magic number: 0x{value:08X}")


class UnsupportedVersion(PexError):
    """Recognizable container that this toolkit does not support."""


class UnsupportedMajorVersion(UnsupportedVersion):
    def __init__(self, value: int):
        self.value = value
        super().__init__(f"Unsupported major version: {value}")


class UnsupportedMinorVersion(UnsupportedVersion):
    def __init__(self, value: int):
        self.value = value
        super().__init__(f"Unsupported minor version: {value}")


class UnsupportedGameId(UnsupportedVersion):
    def __init__(self, value: int):
        self.value = value
        super().__init__(f"Unsupported game ID: {value}")


class InvalidVariableDataTag(PexError):
    def __init__(self, value: int, offset: int = None):
        self.value = value
        self.offset = offset
        where = f" at 0x{offset:X}" if offset is not None else ""
        super().__init__(f"Invalid variable data type: {value}{where}")


class InvalidInstructionOperand(PexError):
    """An instruction operand decoded with the wrong variable data tag."""

    def __init__(self, opcode, expected: str, got):
        self.opcode = opcode
        self.expected = expected
        self.got = got
        super().__init__(
            f"Instruction {opcode!s} was passed incorrect argument type: "
            f"expected {expected}, got {got!r}"
        )


class UnsupportedOpcode(PexError):
    def __init__(self, value: int):
        self.value = value
        super().__init__(f"Unsupported opcode: {value}")


class PexIOError(PexError):
    """Short read: the buffer ended in the middle of a field."""

    def __init__(self, offset: int, wanted: int, available: int):
        self.offset = offset
        self.wanted = wanted
        self.available = available
        super().__init__(
            f"Unexpected end of data at 0x{offset:X}: "
            f"wanted {wanted} bytes, {available} available"
        )


class InvalidStringEncoding(PexError):
    def __init__(self, offset: int, reason: str):
        self.offset = offset
        super().__init__(f"Invalid UTF-8 string at 0x{offset:X}: {reason}")


class ObjectSizeMismatch(PexError):
    def __init__(self, name_idx: int, declared: int, actual: int):
        self.name_idx = name_idx
        self.declared = declared
        self.actual = actual
        super().__init__(
            f"Object {name_idx} declares {declared} bytes but encodes {actual}"
        )


class StringIndexOutOfRange(PexError):
    def __init__(self, location: str, index: int, table_size: int):
        self.location = location
        self.index = index
        self.table_size = table_size
        super().__init__(
            f"String index {index} at {location} is outside the string table "
            f"({table_size} entries)"
        )


class FieldOverflow(PexError):
    def __init__(self, field: str, value: int, limit: int):
        self.field = field
        self.value = value
        self.limit = limit
        super().__init__(f"{field} value {value} does not fit (max {limit})")
