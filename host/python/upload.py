"""
Hex Loader - Command Line Uploader

Uploads one record file to the board and reports whether the program
produced the result encoded in its file name.

Usage:
    python upload.py add_expect_3F_00.txt
    python upload.py add_expect_3F_00.txt --port COM3 --verbose
    python upload.py shifts_expect_80.txt --format binary --strict
"""

import argparse
import logging
import sys

from hex_loader import (
    DEFAULT_BAUDRATE,
    DEFAULT_PORT,
    BYTE_DELAY,
    PARSERS,
    HexLoaderError,
    LoaderSession,
    MalformedExpectation,
    SerialChannel,
    load_program,
    parse_expected_results,
)

EXIT_OK = 0
EXIT_SETUP_FAILED = 1
EXIT_PROTOCOL_FAILED = 2
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Upload a hex record program to a serial bootloader')
    parser.add_argument('filename', help='Record file, named with an expect_XX[_XX] marker')
    parser.add_argument('--port', default=DEFAULT_PORT, help=f'Serial port (default: {DEFAULT_PORT})')
    parser.add_argument('--baud', type=int, default=DEFAULT_BAUDRATE, help='Baud rate')
    parser.add_argument('--data-bits', type=int, default=8, choices=[5, 6, 7, 8], help='Data bits')
    parser.add_argument('--stop-bits', type=float, default=1, choices=[1, 1.5, 2], help='Stop bits')
    parser.add_argument('--parity', default='N', choices=['N', 'E', 'O', 'M', 'S'], help='Parity')
    parser.add_argument('--timeout', type=float, default=2.0, help='Read timeout in seconds')
    parser.add_argument('--byte-delay', type=float, default=BYTE_DELAY,
                        help='Delay after each sent byte in seconds')
    parser.add_argument('--format', default='hex', choices=sorted(PARSERS), help='Record token format')
    parser.add_argument('--strict', action='store_true',
                        help='Abort on handshake/checksum mismatch and fail on wrong result')
    parser.add_argument('--verbose', action='store_true', help='Verbose output')
    return parser


def mark(ok):
    return "✓" if ok else "✗"


def print_summary(result):
    print(f"\n{'='*50}")
    print(f"  {mark(result.ready_ok)} READY after LOAD")
    print(f"  {mark(result.checksum_ok)} Checksum (sent {result.checksum_sent:02X}, "
          f"received {result.checksum_received:02X})")
    print(f"  {mark(result.passed)} Result {result.results[0]:02X} {result.results[1]:02X} "
          f"(expected {result.expected.hex(' ').upper()})")
    print(f"  {mark(result.final_ready_ok)} READY after RESET")
    print(f"{'='*50}")
    print("test passed" if result.passed else "test failed")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%H:%M:%S',
    )

    try:
        expected = parse_expected_results(args.filename)
    except MalformedExpectation as e:
        print(f"Error parsing expected results: {e}")
        return EXIT_SETUP_FAILED
    print(f"Expected results: {expected.hex(' ').upper()}")

    try:
        program = load_program(args.filename, args.format)
    except OSError as e:
        print(f"Error opening file {args.filename}: {e}")
        return EXIT_SETUP_FAILED
    print(f"Program is {len(program)} bytes long")

    try:
        channel = SerialChannel(args.port, args.baud, bytesize=args.data_bits,
                                stopbits=args.stop_bits, parity=args.parity,
                                timeout=args.timeout, byte_delay=args.byte_delay)
    except HexLoaderError as e:
        print(f"Error: {e}")
        return EXIT_SETUP_FAILED

    try:
        with channel:
            result = LoaderSession(channel, strict=args.strict).upload(program, expected)
    except KeyboardInterrupt:
        print("\n\nUpload interrupted by user")
        return EXIT_INTERRUPTED
    except HexLoaderError as e:
        print(f"\n[ERROR] {e}")
        print("test failed")
        return EXIT_PROTOCOL_FAILED

    print_summary(result)
    print("Data transmission complete.")

    if args.strict and not result.passed:
        return EXIT_PROTOCOL_FAILED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
