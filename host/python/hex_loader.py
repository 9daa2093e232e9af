"""
Hex Loader - Python Host Library
v1.0: Serial Bootloader Upload

Uploads a program written as text hex records to a bootloader-equipped board
over a serial link, then checks the result the board reports against the
expectation encoded in the file name.

Usage:
    from hex_loader import SerialChannel, LoaderSession, load_program, parse_expected_results

    expected = parse_expected_results('add_expect_3F_00.txt')
    program = load_program('add_expect_3F_00.txt')

    with SerialChannel('/dev/ttyUSB1') as channel:
        result = LoaderSession(channel).upload(program, expected)
        print("test passed" if result.passed else "test failed")

Record file format (one record per line):
    0000: 86 3F B7 -- LDAA #$3F ; STAA
    0003: 80 00
"""

import logging
import os
import re
import struct
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, List, Optional

import serial

logger = logging.getLogger(__name__)

# Protocol tokens
LOAD_CMD = b'LOAD\r\n'
RESET_CMD = b'RESET\r\n'
READY_CMD = b'READY\r\n'

# Frame layout
START_ADDRESS = 0x0000
HEADER_SIZE = 4             # length field + start address field
MAX_MESSAGE_LENGTH = 0xFFFF

# Device replies
CHECKSUM_SIZE = 1
RESULT_SIZE = 2

# Transport defaults
DEFAULT_PORT = '/dev/ttyUSB1'
DEFAULT_BAUDRATE = 115200
BYTE_DELAY = 0.1            # seconds the bootloader needs per received byte

COMMENT_MARKER = '--'
EXPECT_PATTERN = re.compile(r'expect_([0-9A-Fa-f_]+)')
HEX_BYTE = re.compile(r'[0-9A-Fa-f]{1,2}')
BINARY_BYTE = re.compile(r'[01]{1,8}')
HEX_ADDRESS = re.compile(r'[0-9A-Fa-f]+')
MAX_ADDRESS = 0xFFFF


class HexLoaderError(Exception):
    """Exception raised for loader and transport errors."""
    pass


class MalformedExpectation(HexLoaderError):
    """The file name carries no usable expect_XX[_XX...] marker."""
    pass


class ShortReadError(HexLoaderError):
    """A fixed-size read returned fewer bytes than requested (strict mode)."""
    pass


class ProtocolMismatch(HexLoaderError):
    """Handshake token or checksum did not match (strict mode)."""
    pass


# ===== Records =====

@dataclass
class HexRecord:
    """One parsed input line."""
    address: int
    payload: bytes


class RecordParser:
    """
    Base record parser.

    Subclasses decide how a single byte token is read; line structure
    (address, colon, comment marker) is shared.
    """

    name = ''
    token_pattern = HEX_BYTE
    token_base = 16

    def parse_token(self, token: str) -> Optional[int]:
        """
        Parse one byte token.

        Returns:
            Byte value, or None if the token is not valid for this format
        """
        if not self.token_pattern.fullmatch(token):
            return None
        return int(token, self.token_base)

    def parse_line(self, line: str, line_num: int = 0) -> Optional[HexRecord]:
        """
        Parse a single record line.

        Args:
            line: Raw text line
            line_num: Line number for diagnostics

        Returns:
            HexRecord, or None if the line was blank or skipped
        """
        line = line.rstrip('\r\n')
        if not line.strip():
            return None

        address_str, sep, remainder = line.partition(':')
        if not sep:
            logger.warning("Line %d: invalid line format, no colon found", line_num)
            return None

        # no surrounding whitespace; leading zeros are fine
        if not HEX_ADDRESS.fullmatch(address_str) or int(address_str, 16) > MAX_ADDRESS:
            logger.warning("Line %d: error parsing address %r", line_num, address_str)
            return None
        address = int(address_str, 16)
        logger.debug("Address: %04X", address)

        data_part = remainder.split(COMMENT_MARKER, 1)[0]

        payload = bytearray()
        for token in data_part.split():
            value = self.parse_token(token)
            if value is None:
                logger.warning("Line %d: skipping invalid %s byte %r", line_num, self.name, token)
                continue
            payload.append(value)

        return HexRecord(address, bytes(payload))

    def parse_records(self, lines: Iterable[str]) -> Iterator[HexRecord]:
        """Yield a HexRecord for every well-formed line, in file order."""
        for line_num, line in enumerate(lines, 1):
            record = self.parse_line(line, line_num)
            if record is not None:
                yield record

    def parse_program(self, lines: Iterable[str]) -> bytes:
        """Concatenate every record payload into the program image."""
        return b''.join(record.payload for record in self.parse_records(lines))


class HexTokenParser(RecordParser):
    """Tokens are 1-2 hex digits: `0000: 86 3F B7`."""
    name = 'hex'
    token_pattern = HEX_BYTE
    token_base = 16


class BinaryTokenParser(RecordParser):
    """Tokens are 1-8 binary digits: `0000: 10000110 00111111`."""
    name = 'binary'
    token_pattern = BINARY_BYTE
    token_base = 2


PARSERS = {
    HexTokenParser.name: HexTokenParser,
    BinaryTokenParser.name: BinaryTokenParser,
}


def get_parser(fmt: str = 'hex') -> RecordParser:
    """Return a record parser for the named token format ('hex' or 'binary')."""
    try:
        return PARSERS[fmt]()
    except KeyError:
        raise ValueError(f"Unknown record format: {fmt!r} (expected one of {', '.join(PARSERS)})")


def parse_records(lines: Iterable[str], fmt: str = 'hex') -> List[HexRecord]:
    return list(get_parser(fmt).parse_records(lines))


def parse_program(lines: Iterable[str], fmt: str = 'hex') -> bytes:
    return get_parser(fmt).parse_program(lines)


def load_program(path: str, fmt: str = 'hex') -> bytes:
    """
    Read a record file into a program image.

    Malformed lines and tokens are skipped; only I/O errors are raised.

    Args:
        path: Record file path
        fmt: Token format ('hex' or 'binary')

    Returns:
        Program image bytes
    """
    parser = get_parser(fmt)
    # undecodable bytes become U+FFFD and fail token parsing like any other bad token
    with open(path, 'r', encoding='utf-8', errors='replace') as f:
        program = parser.parse_program(f)
    logger.info("Loaded %d program bytes from %s", len(program), path)
    return program


def parse_expected_results(filename: str) -> bytes:
    """
    Extract expected result bytes from a file name.

    `prog_expect_3F_07.txt` -> b'\\x3F\\x07'

    Raises:
        MalformedExpectation: marker missing or a group is not a hex byte
    """
    name = os.path.basename(filename)
    match = EXPECT_PATTERN.search(name)
    if not match:
        raise MalformedExpectation(f"Expected result not found in filename: {name}")

    expected = bytearray()
    for group in match.group(1).split('_'):
        if not HEX_BYTE.fullmatch(group):
            raise MalformedExpectation(f"Invalid hex value in filename: {group!r}")
        expected.append(int(group, 16))
    return bytes(expected)


# ===== Framing =====

class XorChecksum:
    """Running single-byte XOR over transmitted frame bytes."""

    def __init__(self):
        self.value = 0

    def update(self, byte: int) -> int:
        self.value ^= byte
        return self.value

    def reset(self):
        self.value = 0


def xor_checksum(data: bytes) -> int:
    """XOR-reduce a byte string."""
    checksum = XorChecksum()
    for b in data:
        checksum.update(b)
    return checksum.value


def frame_header(program_length: int, start_address: int = START_ADDRESS) -> bytes:
    """
    Build the 4-byte frame header: length (LE) then start address (LE).

    The length counts itself and the address field.
    """
    message_length = program_length + HEADER_SIZE
    if message_length > MAX_MESSAGE_LENGTH:
        raise HexLoaderError(
            f"Program too large: {program_length} bytes (max {MAX_MESSAGE_LENGTH - HEADER_SIZE})")
    return struct.pack('<HH', message_length, start_address)


# ===== Transport =====

class SerialChannel:
    """
    Byte channel over a serial port.

    Every write is sent one byte at a time, each byte followed by the
    bootloader's pacing delay.
    """

    def __init__(self, port: str = DEFAULT_PORT, baudrate: int = DEFAULT_BAUDRATE,
                 bytesize: int = 8, stopbits: float = 1, parity: str = 'N',
                 timeout: float = 2.0, byte_delay: float = BYTE_DELAY):
        """
        Open the serial port.

        Args:
            port: Serial port (e.g., 'COM3', '/dev/ttyUSB1')
            baudrate: Serial baudrate (default: 115200)
            bytesize: Data bits (5-8)
            stopbits: Stop bits (1, 1.5 or 2)
            parity: 'N', 'E', 'O', 'M' or 'S'
            timeout: Read timeout in seconds (default: 2.0)
            byte_delay: Delay after each written byte in seconds (default: 0.1)
        """
        self.port = port
        self.byte_delay = byte_delay
        try:
            self.ser = serial.Serial(port, baudrate, bytesize=bytesize, parity=parity,
                                     stopbits=stopbits, timeout=timeout)
        except (serial.SerialException, ValueError) as e:
            raise HexLoaderError(f"Error opening serial port {port}: {e}") from e

    def close(self):
        """Close serial connection."""
        if self.ser and self.ser.is_open:
            self.ser.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def write(self, data: bytes) -> int:
        sent = 0
        for b in data:
            sent += self.ser.write(bytes([b]))
            time.sleep(self.byte_delay)
        return sent

    def read(self, size: int) -> bytes:
        # pyserial blocks until `size` bytes arrive or the timeout expires
        return self.ser.read(size)


# ===== Session =====

class SessionState(Enum):
    IDLE = 'idle'
    AWAITING_READY = 'awaiting_ready'
    FRAMING = 'framing'
    TRANSMITTING = 'transmitting'
    AWAITING_CHECKSUM = 'awaiting_checksum'
    RESETTING = 'resetting'
    AWAITING_RESULT = 'awaiting_result'
    AWAITING_FINAL_READY = 'awaiting_final_ready'
    DONE = 'done'


@dataclass
class SessionResult:
    """Comparisons recorded during one upload."""
    expected: bytes
    ready_ok: bool = False
    checksum_sent: int = 0
    checksum_received: Optional[int] = None
    checksum_ok: bool = False
    results: bytes = b''
    passed: bool = False
    final_ready_ok: bool = False
    bytes_sent: int = 0
    short_reads: List[str] = field(default_factory=list)


class LoaderSession:
    """
    Drives one upload over a byte channel.

    The channel needs `write(bytes) -> int` and `read(size) -> bytes`.
    Mismatches are logged and the session carries on to the end, unless
    `strict` is set, in which case they raise.
    """

    def __init__(self, channel, strict: bool = False):
        self.channel = channel
        self.strict = strict
        self.state = SessionState.IDLE
        self.checksum = XorChecksum()

    def upload(self, program: bytes, expected: bytes) -> SessionResult:
        """
        Run the full handshake for one program.

        Args:
            program: Program image
            expected: Expected result bytes (first byte is checked)

        Returns:
            SessionResult with every comparison made
        """
        if not expected:
            raise MalformedExpectation("At least one expected result byte is required")

        result = SessionResult(expected=bytes(expected))
        self.checksum.reset()

        # Idle
        logger.info("Sending LOAD command")
        self._send_command(LOAD_CMD)
        self.state = SessionState.AWAITING_READY

        result.ready_ok = self._expect_ready(result, "READY")
        self.state = SessionState.FRAMING

        header = frame_header(len(program))
        logger.info("messageLength: %d", len(program) + HEADER_SIZE)
        self.state = SessionState.TRANSMITTING

        result.bytes_sent = self._send_frame(header + bytes(program))
        result.checksum_sent = self.checksum.value
        logger.info("Calculated checksum: %02X", result.checksum_sent)
        self.state = SessionState.AWAITING_CHECKSUM

        received = self._read_exact(CHECKSUM_SIZE, "checksum", result)
        result.checksum_received = received[0]
        result.checksum_ok = result.checksum_received == result.checksum_sent
        if result.checksum_ok:
            logger.info("Received checksum: %02X (match)", result.checksum_received)
        else:
            self._mismatch(f"Checksum mismatch: sent {result.checksum_sent:02X}, "
                           f"received {result.checksum_received:02X}")
        self.state = SessionState.RESETTING

        logger.info("Sending RESET command")
        self._send_command(RESET_CMD)
        self.state = SessionState.AWAITING_RESULT

        result.results = self._read_exact(RESULT_SIZE, "result", result)
        logger.info("Result-1: %02X", result.results[0])
        logger.info("Result-2: %02X", result.results[1])
        result.passed = result.results[0] == result.expected[0]
        if result.passed:
            logger.info("Result matches expected %02X", result.expected[0])
        else:
            logger.warning("Result %02X does not match expected %02X",
                           result.results[0], result.expected[0])
        self.state = SessionState.AWAITING_FINAL_READY

        result.final_ready_ok = self._expect_ready(result, "final READY")
        self.state = SessionState.DONE
        return result

    def _send_command(self, command: bytes):
        # Handshake tokens never touch the checksum
        for b in command:
            logger.debug("Sending %02X", b)
            self.channel.write(bytes([b]))

    def _send_frame(self, frame: bytes) -> int:
        sent = 0
        for b in frame:
            self.checksum.update(b)
            logger.debug("Sending %02X", b)
            self.channel.write(bytes([b]))
            sent += 1
        return sent

    def _expect_ready(self, result: SessionResult, what: str) -> bool:
        response = self._read_exact(len(READY_CMD), what, result)
        if response == READY_CMD:
            logger.info("%s received", what)
            return True
        self._mismatch(f"Did not receive {what} response; received: {response!r}")
        return False

    def _read_exact(self, size: int, what: str, result: SessionResult) -> bytes:
        data = self.channel.read(size) or b''
        if len(data) < size:
            message = f"Short read waiting for {what}: got {len(data)} of {size} bytes"
            if self.strict:
                raise ShortReadError(message)
            logger.warning(message)
            result.short_reads.append(what)
            data = bytes(data) + bytes(size - len(data))
        return bytes(data[:size])

    def _mismatch(self, message: str):
        if self.strict:
            raise ProtocolMismatch(message)
        logger.warning(message)


def upload_file(path: str, channel, fmt: str = 'hex', strict: bool = False) -> SessionResult:
    """
    Parse a record file and its expectation, then upload it.

    Raises:
        MalformedExpectation: file name has no valid expect_ marker
        OSError: file cannot be read
    """
    expected = parse_expected_results(path)
    program = load_program(path, fmt)
    return LoaderSession(channel, strict=strict).upload(program, expected)
