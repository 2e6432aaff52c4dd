#!/usr/bin/env python3
"""
PEX Inspector
=============

Human-readable dump of compiled script containers: header, string table,
objects, states and per-function instruction listings.

Listing Format:
--------------
    Function OnInit(Int aiCount) -> None
      flags: 0x00  user flags: 0x00000000
      locals:
        Int ::temp0
      0000  IADD               $1, $0, 5
      0001  CALLMETHOD         $2, $3, $4 (1, "Hello")

| Operand    | Rendered as                               |
|------------|-------------------------------------------|
| identifier | $N                                        |
| string     | "text" (or string(N) without a table)     |
| int/float  | literal                                   |
| bool       | True / False                              |
| null       | None                                      |
| varargs    | (a, b, ...)                               |

Usage:
    python pex_dump.py Actor.pex
    python pex_dump.py Actor.pex --strings --no-functions
    python pex_dump.py *.pex --verify-sizes --strict
"""

import sys
import os
import argparse
from datetime import datetime, timezone
from typing import List, Optional

from pex_errors import PexError
from pex_model import DataType, Function, FunctionType, Instruction, Pex, VariableData
from pex_opcodes import OperandKind, lookup_opcode
from pex_reader import parse


# =============================================================================
# Operand Formatting
# =============================================================================

def _lookup(strings: Optional[List[str]], index: int) -> Optional[str]:
    if strings is not None and 0 <= index < len(strings):
        return strings[index]
    return None


def format_value(value: VariableData, strings: Optional[List[str]] = None) -> str:
    """Render one variable data value"""
    if value.type == DataType.IDENT:
        return f"${value.value}"
    if value.type == DataType.STRING:
        text = _lookup(strings, value.value)
        return f"string({value.value})" if text is None else f'"{text}"'
    if value.type == DataType.FLOAT:
        return f"{value.value:.9g}"
    return str(value)


def format_operand(kind: OperandKind, arg, strings: Optional[List[str]] = None) -> str:
    if kind is OperandKind.IDENT:
        return f"${arg}"
    if kind is OperandKind.VALUE:
        return format_value(arg, strings)
    if kind is OperandKind.VARARGS:
        return "(" + ", ".join(format_value(a, strings) for a in arg) + ")"
    return str(arg)


def format_instruction(instruction: Instruction, strings: Optional[List[str]] = None) -> str:
    info = lookup_opcode(instruction.opcode)
    fixed = []
    tail = ""
    for kind, arg in zip(info.operands, instruction.args):
        if kind is OperandKind.VARARGS:
            tail = " " + format_operand(kind, arg, strings)
        else:
            fixed.append(format_operand(kind, arg, strings))
    return f"{info.mnemonic:<18} {', '.join(fixed)}{tail}".rstrip()


def format_timestamp(value: int) -> str:
    try:
        stamp = datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return str(value)
    return f"{stamp:%Y-%m-%d %H:%M:%S} UTC"


def _name(strings: Optional[List[str]], index: int) -> str:
    text = _lookup(strings, index)
    return f"#{index}" if text is None else text


def format_function(func: Function, strings: Optional[List[str]] = None,
                    name: str = "function") -> str:
    """
    Render a function as a text listing.

    Args:
        func: Function to render
        strings: Optional string table used to resolve names and literals
        name: Display name of the function

    Returns:
        Multi-line listing (no trailing newline)
    """
    params = ", ".join(f"{_name(strings, p.type_idx)} {_name(strings, p.name_idx)}"
                       for p in func.params)
    lines = [f"Function {name}({params}) -> {_name(strings, func.return_type_idx)}"]

    doc = _lookup(strings, func.doc_string_idx)
    if doc:
        lines.append(f"  doc: {doc}")
    lines.append(f"  flags: 0x{func.flags:02X}  user flags: 0x{func.user_flags:08X}")

    if func.locals:
        lines.append("  locals:")
        for local in func.locals:
            lines.append(f"    {_name(strings, local.type_idx)} {_name(strings, local.name_idx)}")

    for i, instruction in enumerate(func.instructions):
        lines.append(f"  {i:04d}  {format_instruction(instruction, strings)}")

    return "\n".join(lines)


def format_document(pex: Pex, show_strings: bool = False, show_functions: bool = True) -> str:
    """Render a whole container: header, optional string table, object tree"""
    strings = pex.strings
    debug = f"{len(pex.debug_info.functions)} functions" if pex.debug_info else "none"
    lines = [
        f"Version:      {pex.major}.{pex.minor}",
        f"Game ID:      {pex.game_id}",
        f"Compiled:     {format_timestamp(pex.compile_time)}",
        f"Source:       {pex.source}",
        f"User:         {pex.username}",
        f"Machine:      {pex.machine}",
        f"Strings:      {len(pex.strings)}",
        f"User flags:   {len(pex.user_flags)}",
        f"Debug info:   {debug}",
        f"Objects:      {len(pex.objects)}",
    ]

    if show_strings:
        lines.append("")
        lines.append("String Table:")
        lines.append("-" * 60)
        for i, s in enumerate(strings):
            lines.append(f"  {i:5d}  {s}")

    for flag in pex.user_flags:
        lines.append(f"  Flag {_name(strings, flag.name_idx)} = bit {flag.flag_idx}")

    for obj in pex.objects:
        lines.append("")
        lines.append("=" * 60)
        parent = _name(strings, obj.parent_name_idx) if obj.parent_name_idx else "(none)"
        lines.append(f"Object {_name(strings, obj.name_idx)} extends {parent}")
        lines.append("=" * 60)
        lines.append(f"  Size: {obj.declared_size} bytes  user flags: 0x{obj.user_flags:08X}")
        lines.append(f"  Auto state: {_name(strings, obj.auto_state_name_idx)}")

        for var in obj.variables:
            lines.append(f"  Variable {_name(strings, var.type_idx)} {_name(strings, var.name_idx)}"
                         f" = {format_value(var.data, strings)}")

        for prop in obj.properties:
            extras = []
            if prop.auto_var_name_idx is not None:
                extras.append(f"auto {_name(strings, prop.auto_var_name_idx)}")
            if prop.read_handler is not None:
                extras.append("get")
            if prop.write_handler is not None:
                extras.append("set")
            lines.append(f"  Property {_name(strings, prop.type_idx)} {_name(strings, prop.name_idx)}"
                         f" [flags 0x{prop.flags:02X}] {' '.join(extras)}".rstrip())
            if show_functions:
                if prop.read_handler is not None:
                    lines.append(_indent(format_function(prop.read_handler, strings, "get"), 4))
                if prop.write_handler is not None:
                    lines.append(_indent(format_function(prop.write_handler, strings, "set"), 4))

        for state in obj.states:
            state_name = _name(strings, state.name_idx) or "(default)"
            lines.append(f"  State {state_name}: {len(state.functions)} functions")
            for named in state.functions:
                if show_functions:
                    lines.append(_indent(format_function(named.function, strings,
                                                         _name(strings, named.name_idx)), 4))
                else:
                    lines.append(f"    {_name(strings, named.name_idx)}"
                                 f" ({len(named.function.instructions)} instructions)")

    if pex.debug_info and show_functions:
        lines.append("")
        lines.append("Debug Functions:")
        lines.append("-" * 60)
        for dbg in pex.debug_info.functions:
            try:
                role = FunctionType(dbg.function_type).name.lower()
            except ValueError:
                role = f"type {dbg.function_type}"
            lines.append(f"  {_name(strings, dbg.object_name_idx)}."
                         f"{_name(strings, dbg.state_name_idx)}."
                         f"{_name(strings, dbg.function_name_idx)} ({role}): "
                         f"{len(dbg.line_numbers)} line markers")

    return "\n".join(lines)


def _indent(text: str, spaces: int) -> str:
    return "\n".join(" " * spaces + line for line in text.split("\n"))


# =============================================================================
# Main
# =============================================================================

def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Inspect compiled script containers (.pex)',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python pex_dump.py Actor.pex
  python pex_dump.py Actor.pex --strings
  python pex_dump.py Actor.pex --no-functions
  python pex_dump.py *.pex --verify-sizes --strict
"""
    )

    parser.add_argument('files', nargs='+', help='PEX files to inspect')
    parser.add_argument('--strings', '-s', action='store_true',
                        help='Print the string table')
    parser.add_argument('--no-functions', action='store_true',
                        help='List function names only, without instruction listings')
    parser.add_argument('--strict', action='store_true',
                        help='Fail on strings that are not valid UTF-8')
    parser.add_argument('--verify-sizes', action='store_true',
                        help='Fail if an object size field disagrees with its contents')
    parser.add_argument('--check-indices', action='store_true',
                        help='Fail if any string index is outside the string table')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Print a decode trace')

    args = parser.parse_args(argv)

    status = 0
    for path in args.files:
        print("=" * 60)
        print(f"PEX Inspector: {path}")
        print("=" * 60)

        if not os.path.exists(path):
            print(f"ERROR: File not found: {path}")
            status = 1
            continue

        with open(path, 'rb') as f:
            data = f.read()
        print(f"Size: {len(data):,} bytes")

        try:
            pex = parse(data, strict_strings=args.strict, verify_sizes=args.verify_sizes,
                        check_indices=args.check_indices, verbose=args.verbose)
        except PexError as e:
            print(f"ERROR: {path} could not be opened: {e}")
            status = 1
            continue

        print(format_document(pex, show_strings=args.strings,
                              show_functions=not args.no_functions))
        print()

    return status


if __name__ == "__main__":
    sys.exit(main())
