"""
Binary to Record Converter
Convert a raw program binary into the loader's text record format.

Each output line is `<address>: <byte tokens>`, optionally followed by
`-- <comment>`. Tokens are hex (`3F`) or binary (`00111111`).

Usage:
  python bin_to_records.py prog.bin
  python bin_to_records.py prog.bin --expect 3F_00
  python bin_to_records.py prog.bin --format binary --per-line 4 --origin 0x0200
"""

import argparse
import sys
from pathlib import Path
from typing import Optional

FORMATS = ('hex', 'binary')


def format_token(value: int, fmt: str = 'hex') -> str:
    if fmt == 'hex':
        return f'{value:02X}'
    if fmt == 'binary':
        return f'{value:08b}'
    raise ValueError(f"Unknown record format: {fmt!r}")


def binary_to_records(data: bytes, origin: int = 0, per_line: int = 8,
                      fmt: str = 'hex', comment: Optional[str] = None) -> str:
    """
    Render bytes as record lines.

    Args:
        data: Program bytes
        origin: Address of the first byte
        per_line: Bytes per record
        fmt: 'hex' or 'binary' tokens
        comment: Optional comment appended to the first record

    Returns:
        Record text, one line per record, newline terminated
    """
    if per_line < 1:
        raise ValueError("per_line must be at least 1")
    if origin + len(data) > 0x10000:
        raise ValueError(f"Program does not fit below 0x10000 from origin 0x{origin:04X}")

    lines = []
    for offset in range(0, len(data), per_line):
        chunk = data[offset:offset + per_line]
        tokens = ' '.join(format_token(b, fmt) for b in chunk)
        line = f'{origin + offset:04X}: {tokens}'
        if comment and offset == 0:
            line += f' -- {comment}'
        lines.append(line)
    return ''.join(line + '\n' for line in lines)


def expectation_filename(stem: str, expected: str, suffix: str = '.txt') -> str:
    """
    Build a file name carrying the expected result marker.

    expectation_filename('add', '3F_00') -> 'add_expect_3F_00.txt'
    """
    if 'expect_' in stem:
        raise ValueError(f"Stem already carries an expect_ marker: {stem!r}")
    groups = expected.split('_')
    for group in groups:
        if not (1 <= len(group) <= 2) or any(c not in '0123456789abcdefABCDEF' for c in group):
            raise ValueError(f"Invalid expected byte: {group!r}")
    return f"{stem}_expect_{'_'.join(g.upper().zfill(2) for g in groups)}{suffix}"


def convert_file(input_path: str, output_path: str = None, expect: str = None,
                 origin: int = 0, per_line: int = 8, fmt: str = 'hex') -> dict:
    """Convert a binary file on disk. Returns dict with conversion info."""
    input_path = Path(input_path)
    data = input_path.read_bytes()

    if output_path is None:
        if expect:
            output_path = input_path.with_name(expectation_filename(input_path.stem, expect))
        else:
            output_path = input_path.with_suffix('.txt')

    text = binary_to_records(data, origin=origin, per_line=per_line, fmt=fmt,
                             comment=input_path.name)
    Path(output_path).write_text(text)

    return {
        'input_size': len(data),
        'output_path': str(output_path),
        'records': text.count('\n'),
    }


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Convert a binary into loader records')
    parser.add_argument('input', help='Raw program binary')
    parser.add_argument('output', nargs='?', help='Output record file')
    parser.add_argument('--expect', help='Expected result bytes, e.g. 3F_00')
    parser.add_argument('--format', default='hex', choices=FORMATS, help='Token format')
    parser.add_argument('--per-line', type=int, default=8, help='Bytes per record')
    parser.add_argument('--origin', type=lambda s: int(s, 0), default=0, help='Address of first byte')
    args = parser.parse_args()

    try:
        info = convert_file(args.input, args.output, args.expect,
                            args.origin, args.per_line, args.format)
    except FileNotFoundError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print("Conversion Successful!")
    print(f"Input:   {args.input} ({info['input_size']} bytes)")
    print(f"Output:  {info['output_path']} ({info['records']} records)")
