#!/usr/bin/env python3
"""
PEX JSON Serializer
===================

Converts compiled script containers to an editable JSON document and back.
Object size fields are not stored; they are recalculated when the container
is rebuilt.

Usage:
    # Convert PEX to JSON
    python pex_json.py Actor.pex -o actor.json --pretty

    # Convert JSON back to PEX
    python pex_json.py actor.json -o Actor.pex --to-binary

    # Check that the container survives decode + re-encode byte for byte
    python pex_json.py Actor.pex -o actor.json --validate

JSON Layout:
-----------
    {
      "version": [3, 2], "game_id": 1, "compile_time": 1700000000,
      "source": "...", "username": "...", "machine": "...",
      "strings": ["", "Actor", ...],
      "debug_info": null | {"modification_time": ..., "functions": [...]},
      "user_flags": [{"name": 5, "flag": 0}],
      "objects": [{"name": 1, "parent": 0, ..., "states": [...]}]
    }

Variable data is {"type": "int", "value": 5}; instructions are
{"op": "IADD", "args": [3, {"type": "ident", "value": 1}, ...]} with identifier
operands as plain integers, following the opcode table. A NaN float also
carries its 32-bit pattern as "bits", which takes precedence over "value".
"""

import sys
import os
import json
import math
import argparse

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pex_errors import PexError
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
    State,
    UserFlag,
    VariableData,
    VariableDecl,
)
from pex_opcodes import OperandKind, find_opcode, lookup_opcode
from pex_reader import parse
from pex_writer import assemble


# =============================================================================
# PEX TO JSON
# =============================================================================

def value_to_json(value: VariableData) -> dict:
    if value.type == DataType.NULL:
        return {'type': 'null'}
    result = {'type': str(value.type), 'value': value.value}
    if value.type == DataType.FLOAT and math.isnan(value.value):
        # NaN payload bits are not representable as a JSON number
        result['bits'] = value.float_bits()
    return result


def instruction_to_json(instruction: Instruction) -> dict:
    info = lookup_opcode(instruction.opcode)
    args = []
    for kind, arg in zip(info.operands, instruction.args):
        if kind is OperandKind.VALUE:
            args.append(value_to_json(arg))
        elif kind is OperandKind.VARARGS:
            args.append([value_to_json(a) for a in arg])
        else:
            args.append(arg)
    return {'op': info.mnemonic, 'args': args}


def function_to_json(func: Function) -> dict:
    return {
        'return_type': func.return_type_idx,
        'doc': func.doc_string_idx,
        'user_flags': func.user_flags,
        'flags': func.flags,
        'params': [[p.name_idx, p.type_idx] for p in func.params],
        'locals': [[l.name_idx, l.type_idx] for l in func.locals],
        'instructions': [instruction_to_json(i) for i in func.instructions],
    }


def property_to_json(prop: Property) -> dict:
    result = {
        'name': prop.name_idx,
        'type': prop.type_idx,
        'doc': prop.doc_string_idx,
        'user_flags': prop.user_flags,
        'flags': prop.flags,
    }
    if prop.auto_var_name_idx is not None:
        result['auto_var'] = prop.auto_var_name_idx
    if prop.read_handler is not None:
        result['read_handler'] = function_to_json(prop.read_handler)
    if prop.write_handler is not None:
        result['write_handler'] = function_to_json(prop.write_handler)
    return result


def object_to_json(obj: PexObject) -> dict:
    return {
        'name': obj.name_idx,
        'parent': obj.parent_name_idx,
        'doc': obj.doc_string_idx,
        'user_flags': obj.user_flags,
        'auto_state': obj.auto_state_name_idx,
        'variables': [
            {
                'name': v.name_idx,
                'type': v.type_idx,
                'user_flags': v.user_flags,
                'data': value_to_json(v.data),
            }
            for v in obj.variables
        ],
        'properties': [property_to_json(p) for p in obj.properties],
        'states': [
            {
                'name': s.name_idx,
                'functions': [
                    dict(name=f.name_idx, **function_to_json(f.function))
                    for f in s.functions
                ],
            }
            for s in obj.states
        ],
    }


def pex_to_json(pex: Pex) -> dict:
    """
    Convert a Pex document to a JSON-serializable dictionary.

    Args:
        pex: Parsed document

    Returns:
        Dictionary suitable for json.dump
    """
    debug = None
    if pex.debug_info is not None:
        debug = {
            'modification_time': pex.debug_info.modification_time,
            'functions': [
                {
                    'object': d.object_name_idx,
                    'state': d.state_name_idx,
                    'function': d.function_name_idx,
                    'function_type': d.function_type,
                    'lines': d.line_numbers,
                }
                for d in pex.debug_info.functions
            ],
        }

    return {
        'version': [pex.major, pex.minor],
        'game_id': pex.game_id,
        'compile_time': pex.compile_time,
        'source': pex.source,
        'username': pex.username,
        'machine': pex.machine,
        'strings': list(pex.strings),
        'debug_info': debug,
        'user_flags': [{'name': f.name_idx, 'flag': f.flag_idx} for f in pex.user_flags],
        'objects': [object_to_json(o) for o in pex.objects],
    }


# =============================================================================
# JSON TO PEX
# =============================================================================

DATA_TYPES = {str(t): t for t in DataType}


def value_from_json(data: dict) -> VariableData:
    try:
        data_type = DATA_TYPES[data['type']]
        if data_type == DataType.NULL:
            return VariableData.null()
        if data_type == DataType.FLOAT:
            if 'bits' in data:
                bits = int(data['bits'])
                if not 0 <= bits <= 0xFFFFFFFF:
                    raise ValueError(bits)
                return VariableData.float_from_bits(bits)
            return VariableData.float32(float(data['value']))
        if data_type == DataType.BOOL:
            return VariableData.boolean(data['value'])
        return VariableData(data_type, int(data['value']))
    except (KeyError, TypeError, ValueError):
        raise ValueError(f"Invalid variable data: {data!r}") from None


def instruction_from_json(data: dict) -> Instruction:
    try:
        info = find_opcode(data['op'])
    except (KeyError, TypeError, AttributeError):
        raise ValueError(f"Invalid instruction: {data!r}") from None

    raw_args = data.get('args', [])
    if not isinstance(raw_args, list) or len(raw_args) != info.arity:
        raise ValueError(f"{info.mnemonic} takes {info.arity} operands, got {raw_args!r}")

    args = []
    for kind, arg in zip(info.operands, raw_args):
        if kind is OperandKind.VALUE:
            args.append(value_from_json(arg))
        elif kind is OperandKind.VARARGS:
            if not isinstance(arg, list):
                raise ValueError(f"{info.mnemonic} call arguments must be a list, got {arg!r}")
            args.append([value_from_json(a) for a in arg])
        elif kind is OperandKind.BOOL:
            args.append(bool(arg))
        else:
            try:
                args.append(int(arg))
            except (TypeError, ValueError):
                raise ValueError(f"{info.mnemonic} {kind.value} operand must be an integer, got {arg!r}") from None
    return Instruction(info.opcode, args)


def function_from_json(data: dict) -> Function:
    return Function(
        return_type_idx=data['return_type'],
        doc_string_idx=data['doc'],
        user_flags=data.get('user_flags', 0),
        flags=data.get('flags', 0),
        params=[VariableDecl(name, typ) for name, typ in data.get('params', [])],
        locals=[VariableDecl(name, typ) for name, typ in data.get('locals', [])],
        instructions=[instruction_from_json(i) for i in data.get('instructions', [])],
    )


def property_from_json(data: dict) -> Property:
    prop = Property(
        name_idx=data['name'],
        type_idx=data['type'],
        doc_string_idx=data['doc'],
        user_flags=data.get('user_flags', 0),
        flags=data.get('flags', 0),
        auto_var_name_idx=data.get('auto_var'),
    )
    if 'read_handler' in data:
        prop.read_handler = function_from_json(data['read_handler'])
    if 'write_handler' in data:
        prop.write_handler = function_from_json(data['write_handler'])
    return prop


def object_from_json(data: dict) -> PexObject:
    return PexObject(
        name_idx=data['name'],
        parent_name_idx=data['parent'],
        doc_string_idx=data['doc'],
        user_flags=data.get('user_flags', 0),
        auto_state_name_idx=data.get('auto_state', 0),
        variables=[
            ObjectVariable(v['name'], v['type'], v.get('user_flags', 0), value_from_json(v['data']))
            for v in data.get('variables', [])
        ],
        properties=[property_from_json(p) for p in data.get('properties', [])],
        states=[
            State(s['name'], [NamedFunction(f['name'], function_from_json(f))
                              for f in s.get('functions', [])])
            for s in data.get('states', [])
        ],
    )


def json_to_pex(data: dict) -> Pex:
    """
    Rebuild a Pex document from the dictionary produced by pex_to_json.

    Raises:
        ValueError: unknown instruction mnemonic, bad operand count or
                    malformed variable data
        KeyError: a required field is missing
    """
    major, minor = data['version']

    debug_info = None
    if data.get('debug_info') is not None:
        debug = data['debug_info']
        debug_info = DebugInfo(
            debug['modification_time'],
            [DebugFunction(d['object'], d['state'], d['function'], d['function_type'], list(d['lines']))
             for d in debug.get('functions', [])],
        )

    return Pex(
        major=major,
        minor=minor,
        game_id=data['game_id'],
        compile_time=data.get('compile_time', 0),
        source=data.get('source', ''),
        username=data.get('username', ''),
        machine=data.get('machine', ''),
        strings=list(data.get('strings', [])),
        debug_info=debug_info,
        user_flags=[UserFlag(f['name'], f['flag']) for f in data.get('user_flags', [])],
        objects=[object_from_json(o) for o in data.get('objects', [])],
    )


# =============================================================================
# VALIDATION
# =============================================================================

def validate_roundtrip(data: bytes) -> dict:
    """
    Decode and re-encode a container, comparing the result byte for byte.

    Returns:
        Dictionary with 'valid', sizes and the first differing offset (or None)
    """
    rebuilt = assemble(parse(data))
    first_diff = None
    if rebuilt != data:
        for i in range(min(len(rebuilt), len(data))):
            if rebuilt[i] != data[i]:
                first_diff = i
                break
        else:
            first_diff = min(len(rebuilt), len(data))

    return {
        'valid': rebuilt == data,
        'original_size': len(data),
        'rebuilt_size': len(rebuilt),
        'first_difference': first_diff,
    }


# =============================================================================
# MAIN
# =============================================================================

def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Convert compiled script containers (.pex) to/from JSON',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Convert PEX to JSON
  python pex_json.py Actor.pex -o actor.json --pretty

  # Convert JSON back to binary
  python pex_json.py actor.json --to-binary -o Actor.pex

  # Verify byte-exact re-encoding while converting
  python pex_json.py Actor.pex -o actor.json --validate
        """
    )

    parser.add_argument('input', help='Input file (PEX binary or JSON)')
    parser.add_argument('-o', '--output', required=True, help='Output file')
    parser.add_argument('--to-binary', action='store_true',
                        help='Convert JSON to binary PEX file')
    parser.add_argument('--pretty', action='store_true',
                        help='Pretty-print JSON output with indentation')
    parser.add_argument('--validate', action='store_true',
                        help='Re-encode the input container and compare bytes')
    parser.add_argument('--strict', action='store_true',
                        help='Fail on strings that are not valid UTF-8')

    args = parser.parse_args(argv)

    if not os.path.exists(args.input):
        print(f"ERROR: File not found: {args.input}")
        return 1

    if args.to_binary:
        # JSON to PEX
        print("Converting JSON to PEX binary")
        print(f"  Input: {args.input}")

        try:
            with open(args.input, 'r', encoding='utf-8') as f:
                json_data = json.load(f)
            output = assemble(json_to_pex(json_data))
        except (PexError, ValueError, KeyError) as e:
            print(f"ERROR: {e}")
            return 1

        with open(args.output, 'wb') as f:
            f.write(output)

        print(f"  Output: {args.output}")
        print(f"  Size: {len(output)} bytes")
        print("Done!")
        return 0

    # PEX to JSON
    print("Converting PEX to JSON")
    print(f"  Input: {args.input}")

    with open(args.input, 'rb') as f:
        data = f.read()

    try:
        pex = parse(data, strict_strings=args.strict)
    except PexError as e:
        print(f"ERROR: {args.input} could not be opened: {e}")
        return 1

    print(f"  Version: {pex.major}.{pex.minor}")
    print(f"  Strings: {len(pex.strings)}")
    print(f"  Objects: {len(pex.objects)}")

    json_data = pex_to_json(pex)
    with open(args.output, 'w', encoding='utf-8') as f:
        if args.pretty:
            json.dump(json_data, f, indent=2, ensure_ascii=False)
        else:
            json.dump(json_data, f, ensure_ascii=False)

    print(f"  Output: {args.output}")

    if args.validate:
        result = validate_roundtrip(data)
        print("\n" + "=" * 60)
        if result['valid']:
            print("VALIDATION PASSED: Re-encoded container matches input")
        else:
            print("VALIDATION FAILED: Re-encoded container differs")
            print(f"  Original size: {result['original_size']} bytes")
            print(f"  Rebuilt size:  {result['rebuilt_size']} bytes")
            print(f"  First difference at byte {result['first_difference']}")
        print("=" * 60)
        return 0 if result['valid'] else 1

    print("Done!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
