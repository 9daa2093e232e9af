"""
Hex Loader Mock Bootloader & Test Tool

Simulates the board-side bootloader one received byte at a time.
Can be handed straight to LoaderSession as a channel, served on a virtual
serial port, or run as a self-contained loopback check.

Usage:
    Windows (requires com0com or similar virtual COM port driver):
        python mock_device.py COM10

    Linux (socat -d -d pty,raw,echo=0 pty,raw,echo=0):
        python mock_device.py /dev/pts/4

    Without virtual ports (loopback test):
        python mock_device.py --loopback
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), '..', 'host', 'python'))

from hex_loader import LOAD_CMD, READY_CMD, RESET_CMD, HEADER_SIZE, XorChecksum

# Device states
WAIT_COMMAND = 'command'
WAIT_HEADER = 'header'
WAIT_PAYLOAD = 'payload'


def default_executor(program: bytes) -> bytes:
    """Pretend to run the program: report its first byte and its length."""
    first = program[0] if program else 0x00
    return bytes([first, len(program) & 0xFF])


class MockBootloader:
    """Simulates the bootloader side of the upload protocol."""

    def __init__(self, executor=None, corrupt_checksum=False, ready_token=READY_CMD):
        self.executor = executor or default_executor
        self.corrupt_checksum = corrupt_checksum
        self.ready_token = ready_token

        self.state = WAIT_COMMAND
        self.line = bytearray()
        self.header = bytearray()
        self.program = bytearray()
        self.message_length = 0
        self.start_address = 0
        self.checksum = XorChecksum()
        self.loaded = None          # last complete program
        self.received = bytearray() # every byte the host sent
        self.outbox = bytearray()
        self.is_open = True

    # --- pyserial-like surface ---

    @property
    def in_waiting(self):
        return len(self.outbox)

    def write(self, data: bytes) -> int:
        for b in data:
            self.process_byte(b)
        return len(data)

    def read(self, size: int = 1) -> bytes:
        data = bytes(self.outbox[:size])
        del self.outbox[:size]
        return data

    def close(self):
        self.is_open = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # --- Device logic ---

    def process_byte(self, b: int):
        self.received.append(b)
        if self.state == WAIT_COMMAND:
            self._on_command_byte(b)
        elif self.state == WAIT_HEADER:
            self._on_header_byte(b)
        elif self.state == WAIT_PAYLOAD:
            self._on_payload_byte(b)

    def _on_command_byte(self, b):
        self.line.append(b)
        if not self.line.endswith(b'\r\n'):
            return
        command = bytes(self.line)
        self.line.clear()

        if command == LOAD_CMD:
            print("  [RX] LOAD")
            self.header.clear()
            self.program.clear()
            self.checksum.reset()
            self.state = WAIT_HEADER
            self.outbox.extend(self.ready_token)
        elif command == RESET_CMD:
            print("  [RX] RESET")
            results = self.executor(bytes(self.loaded or b''))
            self.outbox.extend(results[:2].ljust(2, b'\x00'))
            self.outbox.extend(self.ready_token)
        else:
            print(f"  Unknown command: {command!r}")

    def _on_header_byte(self, b):
        self.checksum.update(b)
        self.header.append(b)
        if len(self.header) < HEADER_SIZE:
            return
        self.message_length = self.header[0] | (self.header[1] << 8)
        self.start_address = self.header[2] | (self.header[3] << 8)
        print(f"  [RX] Frame length={self.message_length} start=0x{self.start_address:04X}")
        if self.message_length <= HEADER_SIZE:
            self._finish_frame()
        else:
            self.state = WAIT_PAYLOAD

    def _on_payload_byte(self, b):
        self.checksum.update(b)
        self.program.append(b)
        if len(self.program) + HEADER_SIZE >= self.message_length:
            self._finish_frame()

    def _finish_frame(self):
        self.loaded = bytes(self.program)
        checksum = self.checksum.value
        if self.corrupt_checksum:
            checksum ^= 0xFF
        print(f"  [RX] Program {len(self.loaded)} bytes, checksum {checksum:02X}")
        self.outbox.append(checksum)
        self.state = WAIT_COMMAND


def run_serial_server(port, baud=115200):
    import serial

    device = MockBootloader()
    print("Mock bootloader")
    print(f"Listening on {port} at {baud} baud")

    try:
        ser = serial.Serial(port, baud, timeout=0.1)
    except serial.SerialException as e:
        print(f"Error: {e}")
        sys.exit(1)

    try:
        while True:
            data = ser.read(64)
            if data:
                device.write(data)
                if device.in_waiting:
                    ser.write(device.read(device.in_waiting))
    except KeyboardInterrupt:
        pass
    finally:
        ser.close()


def run_loopback_test():
    from hex_loader import LoaderSession, parse_program

    print("=== Loopback Upload Test ===\n")
    records = [
        "0000: 86 3F -- LDAA #$3F",
        "0002: 97 80",
    ]
    program = parse_program(records)
    device = MockBootloader(executor=lambda prog: bytes([0x3F, 0x00]))

    result = LoaderSession(device).upload(program, b'\x3F')

    def check(name, ok):
        print(f"  {'✓' if ok else '✗'} {name}")
        return ok

    print()
    ok = all([
        check("READY after LOAD", result.ready_ok),
        check(f"Checksum {result.checksum_sent:02X}", result.checksum_ok),
        check("Program received intact", device.loaded == program),
        check(f"Result {result.results.hex(' ').upper()}", result.passed),
        check("READY after RESET", result.final_ready_ok),
    ])
    print("\nTests Complete." if ok else "\nTests FAILED.")
    return ok


if __name__ == '__main__':
    if len(sys.argv) < 2 or sys.argv[1] == '--loopback':
        sys.exit(0 if run_loopback_test() else 1)
    else:
        run_serial_server(sys.argv[1])
