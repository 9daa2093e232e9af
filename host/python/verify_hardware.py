"""
Hardware Verification Script for Hex Loader
Uploads every test program in a directory and checks the board's result:
1. READY handshake after LOAD
2. Checksum echo
3. Program result against the expect_ marker
4. READY handshake after RESET

Usage:
    python verify_hardware.py --port /dev/ttyUSB1 --dir programs/
"""

import argparse
import logging
import sys
from pathlib import Path

from hex_loader import (
    DEFAULT_PORT,
    BYTE_DELAY,
    HexLoaderError,
    SerialChannel,
    upload_file,
)


class TestResults:
    """Track test results."""
    def __init__(self):
        self.passed = 0
        self.failed = 0
        self.errors = []

    def pass_test(self, name):
        self.passed += 1
        print(f"  ✓ {name}")

    def fail_test(self, name, reason):
        self.failed += 1
        self.errors.append((name, reason))
        print(f"  ✗ {name}: {reason}")

    def summary(self):
        total = self.passed + self.failed
        print(f"\n{'='*50}")
        print(f"Test Results: {self.passed}/{total} passed ({self.failed} failed)")
        if self.errors:
            print(f"\nFailed Tests:")
            for name, reason in self.errors:
                print(f"  - {name}: {reason}")
        print(f"{'='*50}\n")
        return self.failed == 0


def find_programs(directory):
    return sorted(p for p in Path(directory).iterdir() if p.is_file() and 'expect_' in p.name)


def verify_program(path, open_channel, results, fmt='hex'):
    """Upload one program and record its verdict."""
    print(f"\n[{path.name}]")
    try:
        with open_channel() as channel:
            result = upload_file(str(path), channel, fmt=fmt)
    except (HexLoaderError, OSError) as e:
        results.fail_test(path.name, str(e))
        return

    notes = []
    if not result.ready_ok:
        notes.append("no READY after LOAD")
    if not result.checksum_ok:
        notes.append(f"checksum {result.checksum_received:02X} != {result.checksum_sent:02X}")
    if not result.final_ready_ok:
        notes.append("no READY after RESET")

    if result.passed:
        suffix = f" ({', '.join(notes)})" if notes else ""
        results.pass_test(f"{path.name}: result {result.results[0]:02X}{suffix}")
    else:
        notes.insert(0, f"result {result.results[0]:02X}, expected {result.expected[0]:02X}")
        results.fail_test(path.name, ', '.join(notes))


def run_verification(port, directory, fmt='hex', byte_delay=BYTE_DELAY):
    print(f"--- Starting Hardware Verification on {port} ---")

    programs = find_programs(directory)
    if not programs:
        print(f"No expect_ programs found in {directory}")
        return False

    results = TestResults()
    for path in programs:
        verify_program(path, lambda: SerialChannel(port, byte_delay=byte_delay), results, fmt)

    success = results.summary()
    print("RESULT: SUCCESS" if success else "RESULT: FAILED")
    return success


def main(argv=None):
    parser = argparse.ArgumentParser(description='Hex Loader hardware verification')
    parser.add_argument('--port', default=DEFAULT_PORT, help='Serial port (e.g., COM3)')
    parser.add_argument('--dir', default='.', help='Directory holding *expect_* programs')
    parser.add_argument('--format', default='hex', choices=['hex', 'binary'], help='Record token format')
    parser.add_argument('--byte-delay', type=float, default=BYTE_DELAY, help='Delay after each sent byte')
    parser.add_argument('--verbose', action='store_true', help='Verbose output')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(levelname)s: %(message)s')

    try:
        return run_verification(args.port, args.dir, args.format, args.byte_delay)
    except KeyboardInterrupt:
        print("\n\nVerification interrupted by user")
        return False


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
