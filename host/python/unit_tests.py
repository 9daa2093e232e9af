"""
Hex Loader - Unit Tests

Unit tests for individual components (can run without hardware).
"""

import tempfile
import unittest
from unittest.mock import Mock, patch
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(__file__))

from hex_loader import (
    LOAD_CMD, READY_CMD, RESET_CMD,
    HexLoaderError, MalformedExpectation, ShortReadError, ProtocolMismatch,
    HexRecord, HexTokenParser, BinaryTokenParser, get_parser,
    parse_records, parse_program, parse_expected_results, load_program,
    XorChecksum, xor_checksum, frame_header,
    SerialChannel, LoaderSession, SessionState,
)


class ScriptedChannel:
    """Channel that records writes and replays canned replies."""

    def __init__(self, replies=b''):
        self.replies = bytearray(replies)
        self.writes = []

    def write(self, data):
        self.writes.append(bytes(data))
        return len(data)

    def read(self, size):
        data = bytes(self.replies[:size])
        del self.replies[:size]
        return data

    @property
    def sent(self):
        return b''.join(self.writes)


def device_replies(program, result=b'\xAA\x00', checksum=None):
    if checksum is None:
        checksum = xor_checksum(frame_header(len(program)) + program)
    return READY_CMD + bytes([checksum]) + result + READY_CMD


class TestHexRecordParsing(unittest.TestCase):
    """Test hex record line parsing."""

    def test_comment_is_ignored(self):
        self.assertEqual(parse_program(["00A0: 01 02 -- comment"]), b'\x01\x02')

    def test_record_keeps_address(self):
        records = parse_records(["00A0: 01 02 -- comment", "00A2: ff"])
        self.assertEqual(records, [HexRecord(0x00A0, b'\x01\x02'), HexRecord(0x00A2, b'\xFF')])

    def test_line_without_colon_is_skipped(self):
        lines = ["0000: 10 20", "this line has no colon", "0002: 30"]
        with self.assertLogs('hex_loader', level='WARNING') as logs:
            program = parse_program(lines)
        self.assertEqual(program, b'\x10\x20\x30')
        self.assertIn("no colon", logs.output[0])

    def test_bad_address_skips_line(self):
        with self.assertLogs('hex_loader', level='WARNING'):
            self.assertEqual(parse_program(["ZZ: 01", "0001: 02"]), b'\x02')

    def test_address_must_not_have_whitespace(self):
        with self.assertLogs('hex_loader', level='WARNING'):
            self.assertEqual(parse_program([" 00A0 : 01", "00A1: 02"]), b'\x02')

    def test_zero_padded_address(self):
        records = parse_records(["00000A: 01"])
        self.assertEqual(records, [HexRecord(0x000A, b'\x01')])

    def test_address_above_16_bits_skips_line(self):
        with self.assertLogs('hex_loader', level='WARNING'):
            self.assertEqual(parse_program(["10000: 01", "0001: 02"]), b'\x02')

    def test_latin1_comment_in_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'prog_expect_86.txt')
            with open(path, 'wb') as f:
                f.write(b"0000: 86 3F -- charg\xe9\n0002: 39\n")
            self.assertEqual(load_program(path), b'\x86\x3F\x39')

    def test_undecodable_token_is_skipped(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'prog_expect_01.txt')
            with open(path, 'wb') as f:
                f.write(b"0000: 01 \xff 02\n")
            with self.assertLogs('hex_loader', level='WARNING'):
                self.assertEqual(load_program(path), b'\x01\x02')

    def test_bad_tokens_are_skipped(self):
        with self.assertLogs('hex_loader', level='WARNING') as logs:
            program = parse_program(["0000: 01 XY 100 0x1 02"])
        self.assertEqual(program, b'\x01\x02')
        self.assertEqual(len(logs.output), 3)

    def test_extra_whitespace_makes_no_empty_tokens(self):
        self.assertEqual(parse_program(["0000:   01\t\t02    03   \r\n"]), b'\x01\x02\x03')

    def test_single_digit_and_lowercase_tokens(self):
        self.assertEqual(parse_program(["0000: f a0 7"]), b'\x0F\xA0\x07')

    def test_blank_lines_and_comment_only_lines(self):
        lines = ["", "   ", "0000: -- nothing here", "0001: 42"]
        self.assertEqual(parse_program(lines), b'\x42')

    def test_only_first_comment_marker_splits(self):
        self.assertEqual(parse_program(["0000: 01 -- a -- 02"]), b'\x01')

    def test_empty_input(self):
        self.assertEqual(parse_program([]), b'')

    def test_parsing_is_repeatable(self):
        lines = ["0000: 86 3F", "0002: 97 80 -- store"]
        self.assertEqual(parse_program(lines), parse_program(lines))


class TestBinaryTokenParsing(unittest.TestCase):
    """Test the binary token format."""

    def test_binary_tokens(self):
        program = parse_program(["0000: 10000110 00111111 1 -- LDAA #$3F"], fmt='binary')
        self.assertEqual(program, b'\x86\x3F\x01')

    def test_invalid_binary_tokens_are_skipped(self):
        with self.assertLogs('hex_loader', level='WARNING'):
            program = parse_program(["0000: 00000001 2F 111111111 00000010"], fmt='binary')
        self.assertEqual(program, b'\x01\x02')

    def test_get_parser(self):
        self.assertIsInstance(get_parser('hex'), HexTokenParser)
        self.assertIsInstance(get_parser('binary'), BinaryTokenParser)
        with self.assertRaises(ValueError):
            get_parser('octal')


class TestExpectationParsing(unittest.TestCase):
    """Test expected result extraction from file names."""

    def test_two_bytes(self):
        self.assertEqual(parse_expected_results('prog_expect_3F_07.hex'), b'\x3F\x07')

    def test_single_byte(self):
        self.assertEqual(parse_expected_results('expect_aa.txt'), b'\xAA')

    def test_directory_is_not_searched(self):
        path = os.path.join('expect_11', 'prog_expect_22.txt')
        self.assertEqual(parse_expected_results(path), b'\x22')

    def test_missing_marker(self):
        with self.assertRaises(MalformedExpectation):
            parse_expected_results('prog.hex')

    def test_value_out_of_range(self):
        with self.assertRaises(MalformedExpectation):
            parse_expected_results('prog_expect_ADD.hex')

    def test_empty_group(self):
        with self.assertRaises(MalformedExpectation):
            parse_expected_results('prog_expect_3F__07.hex')

    def test_is_loader_error(self):
        self.assertTrue(issubclass(MalformedExpectation, HexLoaderError))


class TestChecksum(unittest.TestCase):
    """Test framing and checksum."""

    def test_frame_header(self):
        self.assertEqual(frame_header(2), b'\x06\x00\x00\x00')
        self.assertEqual(frame_header(0x1FF), b'\x03\x02\x00\x00')

    def test_known_vector(self):
        frame = frame_header(2) + b'\x10\x20'
        self.assertEqual(xor_checksum(frame), 0x36)

    def test_accumulator(self):
        checksum = XorChecksum()
        for b in b'\x06\x00\x00\x00\x10\x20':
            checksum.update(b)
        self.assertEqual(checksum.value, 0x36)
        checksum.reset()
        self.assertEqual(checksum.value, 0)

    def test_program_too_large(self):
        with self.assertRaises(HexLoaderError):
            frame_header(0xFFFC)


class TestSerialChannel(unittest.TestCase):
    """Test the serial transport wrapper."""

    @patch('hex_loader.time.sleep')
    @patch('serial.Serial')
    def test_write_is_paced_per_byte(self, mock_serial, mock_sleep):
        mock_port = Mock()
        mock_port.write.return_value = 1
        mock_serial.return_value = mock_port

        channel = SerialChannel('dummy', byte_delay=0.1)
        sent = channel.write(b'AB')

        self.assertEqual(sent, 2)
        self.assertEqual([c.args[0] for c in mock_port.write.call_args_list], [b'A', b'B'])
        self.assertEqual(mock_sleep.call_count, 2)
        mock_sleep.assert_called_with(0.1)

    @patch('serial.Serial')
    def test_line_settings_are_passed(self, mock_serial):
        SerialChannel('COM3', 9600, bytesize=7, stopbits=2, parity='E', timeout=0.5)
        mock_serial.assert_called_once_with('COM3', 9600, bytesize=7, parity='E',
                                            stopbits=2, timeout=0.5)

    @patch('serial.Serial')
    def test_open_failure(self, mock_serial):
        import serial
        mock_serial.side_effect = serial.SerialException("no such port")
        with self.assertRaises(HexLoaderError):
            SerialChannel('/dev/missing')

    @patch('serial.Serial')
    def test_context_manager_closes(self, mock_serial):
        mock_port = Mock()
        mock_port.is_open = True
        mock_serial.return_value = mock_port
        with SerialChannel('dummy'):
            pass
        mock_port.close.assert_called_once()


class TestLoaderSession(unittest.TestCase):
    """Test the upload handshake against a scripted channel."""

    def test_wire_order(self):
        program = b'\x10\x20'
        channel = ScriptedChannel(device_replies(program))

        result = LoaderSession(channel).upload(program, b'\xAA')

        self.assertEqual(channel.sent, LOAD_CMD + b'\x06\x00\x00\x00\x10\x20' + RESET_CMD)
        self.assertTrue(all(len(w) == 1 for w in channel.writes))
        self.assertEqual(result.checksum_sent, 0x36)
        self.assertTrue(result.checksum_ok)
        self.assertTrue(result.passed)
        self.assertEqual(result.bytes_sent, 6)

    def test_reaches_done(self):
        session = LoaderSession(ScriptedChannel(device_replies(b'\x01')))
        self.assertEqual(session.state, SessionState.IDLE)
        session.upload(b'\x01', b'\xAA')
        self.assertEqual(session.state, SessionState.DONE)

    def test_empty_program(self):
        channel = ScriptedChannel(device_replies(b''))
        result = LoaderSession(channel).upload(b'', b'\xAA')
        self.assertEqual(channel.sent, LOAD_CMD + b'\x04\x00\x00\x00' + RESET_CMD)
        self.assertEqual(result.checksum_sent, 0x04)
        self.assertTrue(result.passed)

    def test_only_first_result_byte_is_compared(self):
        channel = ScriptedChannel(device_replies(b'\x01', result=b'\xAA\x55'))
        result = LoaderSession(channel).upload(b'\x01', b'\xAA\x00')
        self.assertTrue(result.passed)
        self.assertEqual(result.results, b'\xAA\x55')

    def test_result_mismatch_is_not_fatal(self):
        channel = ScriptedChannel(device_replies(b'\x01', result=b'\x00\x00'))
        session = LoaderSession(channel)
        result = session.upload(b'\x01', b'\xAA')
        self.assertFalse(result.passed)
        self.assertTrue(result.final_ready_ok)
        self.assertEqual(session.state, SessionState.DONE)

    def test_bad_ready_and_checksum_continue(self):
        replies = b'NOTRDY\n' + b'\x99' + b'\xAA\x00' + READY_CMD
        channel = ScriptedChannel(replies)
        with self.assertLogs('hex_loader', level='WARNING'):
            result = LoaderSession(channel).upload(b'\x01', b'\xAA')
        self.assertFalse(result.ready_ok)
        self.assertFalse(result.checksum_ok)
        self.assertEqual(result.checksum_received, 0x99)
        self.assertTrue(result.passed)
        self.assertTrue(channel.sent.endswith(RESET_CMD))

    def test_short_reads_are_zero_padded(self):
        channel = ScriptedChannel(READY_CMD)
        with self.assertLogs('hex_loader', level='WARNING'):
            result = LoaderSession(channel).upload(b'\x01', b'\x00')
        self.assertEqual(result.checksum_received, 0)
        self.assertEqual(result.results, b'\x00\x00')
        self.assertEqual(result.short_reads, ['checksum', 'result', 'final READY'])
        self.assertTrue(result.passed)

    def test_strict_short_read(self):
        channel = ScriptedChannel(READY_CMD)
        with self.assertRaises(ShortReadError):
            LoaderSession(channel, strict=True).upload(b'\x01', b'\x00')

    def test_strict_checksum_mismatch(self):
        channel = ScriptedChannel(device_replies(b'\x01', checksum=0x00))
        session = LoaderSession(channel, strict=True)
        with self.assertRaises(ProtocolMismatch):
            session.upload(b'\x01', b'\xAA')
        self.assertEqual(session.state, SessionState.AWAITING_CHECKSUM)
        self.assertNotIn(RESET_CMD, channel.sent)

    def test_strict_ready_mismatch(self):
        channel = ScriptedChannel(b'BUSY\r\n\x00')
        with self.assertRaises(ProtocolMismatch):
            LoaderSession(channel, strict=True).upload(b'\x01', b'\xAA')

    def test_requires_expected_byte(self):
        with self.assertRaises(MalformedExpectation):
            LoaderSession(ScriptedChannel()).upload(b'\x01', b'')


def run_unit_tests():
    """Run all unit tests."""
    print("=" * 50)
    print("Hex Loader - Unit Tests")
    print("=" * 50)
    print()

    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(suite)

    print()
    print("=" * 50)
    if result.wasSuccessful():
        print("✓ All unit tests passed!")
    else:
        print(f"✗ {len(result.failures + result.errors)} tests failed")
    print("=" * 50)

    return result.wasSuccessful()


if __name__ == '__main__':
    success = run_unit_tests()
    sys.exit(0 if success else 1)
