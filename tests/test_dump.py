import io
import os
import tempfile
import unittest
from contextlib import redirect_stdout

import pex_dump
from pex_model import Instruction, VariableData
from pex_opcodes import Opcode
from pex_writer import assemble

from pex_samples import on_init, sample_document


class FormatTests(unittest.TestCase):
    def test_values(self) -> None:
        self.assertEqual(pex_dump.format_value(VariableData.null()), "None")
        self.assertEqual(pex_dump.format_value(VariableData.ident(4)), "$4")
        self.assertEqual(pex_dump.format_value(VariableData.int32(-3)), "-3")
        self.assertEqual(pex_dump.format_value(VariableData.float32(1.5)), "1.5")
        self.assertEqual(pex_dump.format_value(VariableData.float32(123456.7)), "123456.703")
        self.assertEqual(pex_dump.format_value(VariableData.float32(0.1)), "0.100000001")
        self.assertEqual(pex_dump.format_value(VariableData.boolean(False)), "False")
        self.assertEqual(pex_dump.format_value(VariableData.string(1)), "string(1)")
        self.assertEqual(pex_dump.format_value(VariableData.string(1), ["", "Hi"]), '"Hi"')
        self.assertEqual(pex_dump.format_value(VariableData.string(9), ["", "Hi"]), "string(9)")

    def test_instruction(self) -> None:
        instruction = Instruction(Opcode.IADD, [1, VariableData.ident(0), VariableData.int32(5)])
        self.assertEqual(pex_dump.format_instruction(instruction), "IADD".ljust(18) + " $1, $0, 5")

    def test_variadic_instruction(self) -> None:
        instruction = Instruction(Opcode.CALLMETHOD, [2, VariableData.ident(3), 4,
                                                      [VariableData.int32(1), VariableData.string(1)]])
        self.assertEqual(pex_dump.format_instruction(instruction, ["", "Hello"]),
                         "CALLMETHOD".ljust(18) + ' $2, $3, $4 (1, "Hello")')

    def test_operandless_instruction(self) -> None:
        self.assertEqual(pex_dump.format_instruction(Instruction(Opcode.NOP, [])), "NOP")

    def test_function_listing(self) -> None:
        strings = sample_document().strings
        listing = pex_dump.format_function(on_init(), strings, "OnInit").split("\n")
        self.assertEqual(listing[0], "Function OnInit(Int aiCount) -> None")
        self.assertIn("    Int ::temp0", listing)
        self.assertTrue(listing[-1].startswith("  0007  RETURN"))

    def test_timestamp(self) -> None:
        self.assertEqual(pex_dump.format_timestamp(0), "1970-01-01 00:00:00 UTC")
        self.assertEqual(pex_dump.format_timestamp(2 ** 63), str(2 ** 63))

    def test_document(self) -> None:
        text = pex_dump.format_document(sample_document(), show_strings=True)
        self.assertIn("Version:      3.2", text)
        self.assertIn("Object Actor extends Form", text)
        self.assertIn("String Table:", text)
        self.assertIn("Property Float Health [flags 0x07] auto ::Health_var", text)
        self.assertIn("Function get() -> Float", text)
        self.assertIn("Actor..OnInit (method): 8 line markers", text)

    def test_document_without_functions(self) -> None:
        text = pex_dump.format_document(sample_document(), show_functions=False)
        self.assertIn("OnInit (8 instructions)", text)
        self.assertNotIn("Function OnInit", text)


class MainTests(unittest.TestCase):
    def _run(self, argv):
        buf = io.StringIO()
        with redirect_stdout(buf):
            status = pex_dump.main(argv)
        return status, buf.getvalue()

    def test_dump_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "Actor.pex")
            with open(path, 'wb') as f:
                f.write(assemble(sample_document()))
            status, out = self._run([path, "--strings", "--verify-sizes", "--check-indices"])
        self.assertEqual(status, 0)
        self.assertIn("Object Actor extends Form", out)

    def test_bad_file_reports_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "broken.pex")
            with open(path, 'wb') as f:
                f.write(b"\x00\x00\x00\x00")
            status, out = self._run([path])
        self.assertEqual(status, 1)
        self.assertIn("could not be opened: Invalid magic number: 0x00000000", out)

    def test_missing_file(self) -> None:
        status, out = self._run([os.path.join(tempfile.gettempdir(), "no-such-file.pex")])
        self.assertEqual(status, 1)
        self.assertIn("File not found", out)


if __name__ == "__main__":
    unittest.main()
