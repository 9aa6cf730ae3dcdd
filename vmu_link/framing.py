"""
ASCII line framing for peripheral messages.

Line format (one message per line):
  CC DD OO WW B0 B1 ... Bn\r\n

  CC = command, DD = destination address, OO = origin address,
  WW = word count, followed by WW * 4 payload bytes.

Every token is two hex digits separated by a single space. The encoder
emits uppercase; the decoder accepts either case. Token count is derived
purely from the word count; tokens past the expected count are ignored.
"""

import logging
import re
from typing import List, Optional, Tuple

from .constants import (
    HEADER_TOKENS, LINE_TERMINATOR, MAX_LINE_LENGTH, MAX_PAYLOAD_SIZE, WORD_SIZE
)
from .message import PeripheralMessage

logger = logging.getLogger(__name__)

_HEX_TOKEN = re.compile(r'^[0-9A-Fa-f]{2}$')
_HEX_NUMBER = re.compile(r'^[0-9A-Fa-f]+$')


class FramingError(Exception):
    """Base exception for framing errors"""
    pass


class FrameSizeError(FramingError):
    """Declared payload exceeds buffer capacity"""
    pass


class TruncatedFrameError(FramingError):
    """Fewer tokens than the word count requires"""
    pass


class TokenError(FramingError):
    """Token is not a hex byte"""
    pass


class LineOverflowError(FramingError):
    """No terminator within the line length bound"""
    pass


def _parse_byte(token: str, what: str) -> int:
    if not _HEX_TOKEN.match(token):
        raise TokenError(f"{what}: invalid hex byte {token!r}")
    return int(token, 16)


class FrameCodec:
    """
    Converts PeripheralMessage values to and from wire lines.

    Stateless; one instance can be shared between threads.
    """

    def __init__(self, max_line_length: int = MAX_LINE_LENGTH):
        self.max_line_length = max_line_length

    def encode(self, msg: PeripheralMessage) -> bytes:
        """
        Encode a message as a CRLF-terminated line.

        Raises:
            FrameSizeError: If the message declares more data than the payload holds
        """
        size = msg.data_size
        if size > MAX_PAYLOAD_SIZE:
            raise FrameSizeError(f"Data size {size} exceeds max {MAX_PAYLOAD_SIZE}")

        header = (msg.command, msg.dest_address, msg.origin_address, msg.word_count)
        tokens = [f'{b:02X}' for b in header]
        tokens.extend(f'{b:02X}' for b in msg.payload[:size])
        return ' '.join(tokens).encode('ascii') + LINE_TERMINATOR

    def parse(self, line) -> PeripheralMessage:
        """
        Parse one line (terminator optional) into a message.

        Raises:
            LineOverflowError: If the line exceeds the length bound
            TokenError: If a token is not hex, or the header is incomplete
            FrameSizeError: If word count implies more than MAX_PAYLOAD_SIZE bytes
            TruncatedFrameError: If fewer data tokens than word count * 4
        """
        if isinstance(line, (bytes, bytearray)):
            if len(line) > self.max_line_length:
                raise LineOverflowError(f"Line length {len(line)} exceeds {self.max_line_length}")
            try:
                line = line.decode('ascii')
            except UnicodeDecodeError as e:
                raise TokenError(f"Non-ASCII line: {e}") from e
        elif len(line) > self.max_line_length:
            raise LineOverflowError(f"Line length {len(line)} exceeds {self.max_line_length}")

        tokens: List[str] = line.split()
        if len(tokens) < HEADER_TOKENS:
            raise TokenError(f"Header needs {HEADER_TOKENS} tokens, got {len(tokens)}")

        command = _parse_byte(tokens[0], 'command')
        dest = _parse_byte(tokens[1], 'dest_address')
        origin = _parse_byte(tokens[2], 'origin_address')

        # Capacity check happens before the byte check so an oversized
        # declaration is reported as such
        if not _HEX_NUMBER.match(tokens[3]):
            raise TokenError(f"word_count: invalid hex {tokens[3]!r}")
        word_count = int(tokens[3], 16)
        data_size = word_count * WORD_SIZE
        if data_size > MAX_PAYLOAD_SIZE:
            raise FrameSizeError(f"Word count {word_count} implies {data_size} bytes, max {MAX_PAYLOAD_SIZE}")
        word_count = _parse_byte(tokens[3], 'word_count')

        available = len(tokens) - HEADER_TOKENS
        if available < data_size:
            raise TruncatedFrameError(f"Expected {data_size} data tokens, got {available}")

        msg = PeripheralMessage(command, dest, origin, word_count)
        for i in range(data_size):
            msg.payload[i] = _parse_byte(tokens[HEADER_TOKENS + i], f'data[{i}]')
        return msg

    def decode(self, line) -> Tuple[Optional[PeripheralMessage], bool]:
        """
        Decode one line into a message.

        Returns:
            (message, True) on success, (None, False) on any framing error
        """
        try:
            return self.parse(line), True
        except FramingError as e:
            logger.warning(f"Dropping malformed frame: {e}")
            return None, False


_default_codec = FrameCodec()


def encode(msg: PeripheralMessage) -> bytes:
    """Encode with the default codec."""
    return _default_codec.encode(msg)


def decode(line) -> Tuple[Optional[PeripheralMessage], bool]:
    """Decode with the default codec."""
    return _default_codec.decode(line)
