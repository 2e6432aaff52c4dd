import struct
import unittest

from pex_errors import FieldOverflow, InvalidInstructionOperand, UnsupportedOpcode
from pex_model import (
    DataType,
    DebugFunction,
    DebugInfo,
    Function,
    Instruction,
    ObjectVariable,
    Pex,
    PexObject,
    Property,
    VariableData,
)
from pex_opcodes import Opcode
from pex_reader import PexReader, parse
from pex_writer import Placeholder, PexWriter, assemble

from pex_samples import header_bytes


class SinkTests(unittest.TestCase):
    def test_primitives_are_big_endian(self) -> None:
        writer = PexWriter()
        writer.write_u8(0x12)
        writer.write_u16(0x3456)
        writer.write_u32(0x789ABCDE)
        writer.write_u64(0x0102030405060708)
        writer.write_i32(-2)
        self.assertEqual(writer.getvalue(), bytes.fromhex("12 3456 789ABCDE 0102030405060708 FFFFFFFE"))

    def test_seek_and_overwrite(self) -> None:
        writer = PexWriter()
        writer.write_bytes(b"abcdef")
        writer.seek(2)
        writer.write_bytes(b"XY")
        self.assertEqual(writer.tell(), 4)
        writer.seek(6)
        writer.write_bytes(b"!")
        self.assertEqual(writer.getvalue(), b"abXYef!")

    def test_seek_outside_buffer(self) -> None:
        writer = PexWriter()
        writer.write_u8(0)
        with self.assertRaises(ValueError):
            writer.seek(2)

    def test_placeholder_backpatch(self) -> None:
        writer = PexWriter()
        writer.write_u8(0xAA)
        field = Placeholder(writer)
        writer.write_bytes(b"body")
        field.satisfy(writer, writer.tell() - field.position)
        writer.write_u8(0xBB)
        self.assertEqual(writer.getvalue(), b"\xaa" + struct.pack('>I', 8) + b"body\xbb")

    def test_wstring(self) -> None:
        writer = PexWriter()
        writer.write_wstring("Hello")
        writer.write_wstring("")
        self.assertEqual(writer.getvalue(), b"\x00\x05Hello\x00\x00")

    def test_variable_data(self) -> None:
        writer = PexWriter()
        writer.write_variable_data(VariableData.null())
        writer.write_variable_data(VariableData.ident(7))
        writer.write_variable_data(VariableData.string(3))
        writer.write_variable_data(VariableData.int32(-5))
        writer.write_variable_data(VariableData.float32(-0.25))
        writer.write_variable_data(VariableData.boolean(True))
        self.assertEqual(writer.getvalue(),
                         b"\x00" + b"\x01\x00\x07" + b"\x02\x00\x03" + b"\x03\xff\xff\xff\xfb"
                         + b"\x04" + struct.pack('>f', -0.25) + b"\x05\x01")


class OverflowTests(unittest.TestCase):
    def test_u16_overflow(self) -> None:
        with self.assertRaises(FieldOverflow) as ctx:
            PexWriter().write_u16(0x10000)
        self.assertEqual(ctx.exception.limit, 0xFFFF)

    def test_int_variable_out_of_range(self) -> None:
        pex = Pex(strings=["", "X"], objects=[
            PexObject(1, 0, 0, variables=[ObjectVariable(1, 1, 0, VariableData.int32(2 ** 31))]),
        ])
        with self.assertRaises(FieldOverflow):
            assemble(pex)

    def test_too_many_strings(self) -> None:
        with self.assertRaises(FieldOverflow) as ctx:
            assemble(Pex(strings=[""] * 0x10000))
        self.assertEqual(ctx.exception.field, "strings count")

    def test_string_too_long(self) -> None:
        with self.assertRaises(FieldOverflow):
            PexWriter().write_wstring("x" * 0x10000)

    def test_float_out_of_range(self) -> None:
        with self.assertRaises(FieldOverflow) as ctx:
            PexWriter().write_f32(1e39)
        self.assertEqual(ctx.exception.field, "f32")
        with self.assertRaises(FieldOverflow):
            VariableData.float32(-1e39)

    def test_float_variable_out_of_range(self) -> None:
        pex = Pex(strings=["", "X"], objects=[
            PexObject(1, 0, 0, variables=[ObjectVariable(1, 1, 0, VariableData(DataType.FLOAT, 1e39))]),
        ])
        with self.assertRaises(FieldOverflow):
            assemble(pex)


class InstructionWriteTests(unittest.TestCase):
    def test_identifiers_are_retagged(self) -> None:
        writer = PexWriter()
        writer.write_instruction(Instruction(Opcode.ASSIGN, [4, VariableData.int32(1)]))
        self.assertEqual(writer.getvalue(), bytes([Opcode.ASSIGN]) + b"\x01\x00\x04" + b"\x03\x00\x00\x00\x01")

    def test_varargs_written_with_int_count(self) -> None:
        writer = PexWriter()
        writer.write_instruction(Instruction(Opcode.CALLSTATIC, [1, 2, 3, [VariableData.null()]]))
        self.assertEqual(writer.getvalue(),
                         bytes([Opcode.CALLSTATIC]) + b"\x01\x00\x01\x01\x00\x02\x01\x00\x03"
                         + b"\x03\x00\x00\x00\x01" + b"\x00")

    def test_uint_written_as_int_bits(self) -> None:
        writer = PexWriter()
        writer.write_instruction(Instruction(Opcode.ARRAY_CREATE, [2, 0xFFFFFFFF]))
        self.assertEqual(writer.getvalue()[-5:], b"\x03\xff\xff\xff\xff")

    def test_wrong_arity(self) -> None:
        with self.assertRaises(InvalidInstructionOperand):
            PexWriter().write_instruction(Instruction(Opcode.IADD, [1]))

    def test_value_position_needs_variable_data(self) -> None:
        with self.assertRaises(InvalidInstructionOperand):
            PexWriter().write_instruction(Instruction(Opcode.RETURN, [5]))

    def test_undefined_opcode(self) -> None:
        with self.assertRaises(UnsupportedOpcode):
            PexWriter().write_instruction(Instruction(40, []))


class ObjectWriteTests(unittest.TestCase):
    def test_empty_object_is_twenty_bytes(self) -> None:
        writer = PexWriter()
        size = writer.write_object(PexObject(1, 0, 0))
        self.assertEqual(size, 20)
        data = writer.getvalue()
        self.assertEqual(len(data), 22)
        self.assertEqual(data[:2], b"\x00\x01")
        self.assertEqual(data[2:6], struct.pack('>I', 20))

    def test_size_covers_nested_content(self) -> None:
        prop = Property(1, 1, 0, 0, 0x01, read_handler=Function(1, 0, instructions=[
            Instruction(Opcode.RETURN, [VariableData.ident(1)]),
        ]))
        obj = PexObject(1, 0, 0, properties=[prop])
        writer = PexWriter()
        size = writer.write_object(obj)
        self.assertEqual(size, len(writer.getvalue()) - 2)

        parsed = PexReader(writer.getvalue()).read_object(verify_size=True)
        self.assertEqual(parsed, obj)
        self.assertEqual(parsed.declared_size, size)

    def test_empty_object_in_container(self) -> None:
        data = assemble(Pex(strings=["", "Empty"], objects=[PexObject(1, 0, 0)]))
        self.assertEqual(len(data), 60)
        self.assertEqual(parse(data, verify_sizes=True).objects[0].declared_size, 20)

    def test_debug_section(self) -> None:
        writer = PexWriter()
        writer.write_debug_info(None)
        self.assertEqual(writer.getvalue(), b"\x00")

        writer = PexWriter()
        writer.write_debug_info(DebugInfo(5, [DebugFunction(1, 0, 2, 1, [7, 8])]))
        self.assertEqual(writer.getvalue(),
                         b"\x01" + struct.pack('>Q', 5) + b"\x00\x01"
                         + b"\x00\x01\x00\x00\x00\x02\x01" + b"\x00\x02\x00\x07\x00\x08")

    def test_header(self) -> None:
        pex = Pex(minor=2, compile_time=1700000000, source="Actor.psc", username="user", machine="BUILD")
        writer = PexWriter()
        writer.write_header(pex)
        self.assertEqual(writer.getvalue(), header_bytes())


if __name__ == "__main__":
    unittest.main()
