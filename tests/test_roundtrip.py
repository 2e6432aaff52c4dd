import struct
import unittest

from pex_model import ObjectVariable, Pex, PexObject, VariableData, check_string_indices
from pex_reader import parse
from pex_writer import assemble

from pex_samples import empty_tail, header_bytes, sample_document


class RoundTripTests(unittest.TestCase):
    def test_document_survives_encode_decode(self) -> None:
        pex = sample_document()
        self.assertEqual(parse(assemble(pex)), pex)

    def test_byte_exact(self) -> None:
        for with_debug in (True, False):
            data = assemble(sample_document(with_debug=with_debug))
            self.assertEqual(assemble(parse(data)), data)

    def test_declared_sizes_match_encoding(self) -> None:
        pex = parse(assemble(sample_document()), verify_sizes=True)
        self.assertGreater(pex.objects[0].declared_size, 20)

    def test_minor_version_one(self) -> None:
        data = header_bytes(minor=1) + empty_tail()
        self.assertEqual(assemble(parse(data)), data)

    def test_invalid_utf8_round_trips_structurally(self) -> None:
        data = header_bytes(source=b"\xffbad") + empty_tail()
        first = parse(data)
        self.assertEqual(first.source, "\ufffdbad")

        rebuilt = assemble(first)
        self.assertNotEqual(rebuilt, data)
        self.assertEqual(parse(rebuilt), first)

    def test_non_ascii_utf8_is_byte_exact(self) -> None:
        data = header_bytes(machine="Maschine-Ä".encode('utf-8')) + empty_tail()
        self.assertEqual(parse(data).machine, "Maschine-Ä")
        self.assertEqual(assemble(parse(data)), data)


class IndexCheckTests(unittest.TestCase):
    def test_sample_is_consistent(self) -> None:
        self.assertEqual(check_string_indices(sample_document()), [])

    def test_reports_instruction_string_operands(self) -> None:
        pex = sample_document()
        pex.strings = pex.strings[:6]
        bad = dict(check_string_indices(pex))
        self.assertEqual(bad["objects[0].states[0].functions[0].instructions[1].args[3]"], 6)

    def test_identifier_operands_are_not_checked(self) -> None:
        pex = sample_document()
        on_init = pex.objects[0].states[0].functions[0].function
        on_init.instructions[0].args[0] = 999
        on_init.instructions[0].args[1].value = 998
        self.assertEqual(check_string_indices(pex), [])

    def test_lookup_helpers(self) -> None:
        pex = sample_document()
        self.assertEqual(pex.string(1), "Actor")
        self.assertEqual(pex.string(999), "<bad string 999>")
        self.assertIs(pex.find_object("actor"), pex.objects[0])
        self.assertIsNone(pex.find_object("Missing"))


class FloatBitsTests(unittest.TestCase):
    PATTERNS = (
        0x7F800001,  # signalling NaN
        0x7FA00000,  # signalling NaN, high payload
        0x7FC00000,  # quiet NaN
        0x7FC00001,  # quiet NaN with payload
        0xFFC00000,  # negative quiet NaN
        0x80000000,  # -0.0
        0x7F800000,  # +inf
        0x00000001,  # smallest subnormal
    )

    def _document(self, bits):
        return Pex(strings=["", "X"], objects=[
            PexObject(1, 0, 0, variables=[ObjectVariable(1, 1, 0, VariableData.float_from_bits(bits))]),
        ])

    def test_bit_patterns_are_byte_exact(self) -> None:
        for bits in self.PATTERNS:
            with self.subTest(bits=hex(bits)):
                data = assemble(self._document(bits))
                self.assertIn(b"\x04" + struct.pack('>I', bits), data)
                self.assertEqual(assemble(parse(data)), data)

    def test_nan_documents_compare_equal(self) -> None:
        for bits in self.PATTERNS:
            with self.subTest(bits=hex(bits)):
                first = parse(assemble(self._document(bits)))
                self.assertEqual(parse(assemble(first)), first)

    def test_floats_compare_by_bits(self) -> None:
        self.assertEqual(VariableData.float_from_bits(0x7FC00000), VariableData.float32(float("nan")))
        self.assertNotEqual(VariableData.float_from_bits(0x7F800001), VariableData.float_from_bits(0x7FC00001))
        self.assertNotEqual(VariableData.float32(0.0), VariableData.float32(-0.0))

    def test_edited_value_replaces_decoded_bits(self) -> None:
        value = VariableData.float_from_bits(0x7F800001)
        value.value = 2.0
        self.assertEqual(value.float_bits(), 0x40000000)
        self.assertEqual(value, VariableData.float32(2.0))


if __name__ == "__main__":
    unittest.main()
