"""
Peripheral message record exchanged with the companion process.

A message is a four-byte header (command, destination, origin, word count)
followed by word_count * 4 payload bytes. The payload buffer always holds
MAX_PAYLOAD_SIZE bytes; anything past data_size is never transmitted or
compared.
"""

import struct
from dataclasses import dataclass, field

from .constants import MAX_PAYLOAD_SIZE, MAX_WORD_COUNT, WORD_SIZE


def _check_byte(name: str, value: int):
    if not isinstance(value, int) or not 0 <= value <= 0xFF:
        raise ValueError(f"{name} must be a byte (0-255), got {value!r}")


@dataclass(eq=False)
class PeripheralMessage:
    """One maple-bus style command/response record."""

    command: int = 0
    dest_address: int = 0
    origin_address: int = 0
    word_count: int = 0
    payload: bytearray = field(default_factory=lambda: bytearray(MAX_PAYLOAD_SIZE))

    def __post_init__(self):
        _check_byte('command', self.command)
        _check_byte('dest_address', self.dest_address)
        _check_byte('origin_address', self.origin_address)
        _check_byte('word_count', self.word_count)

        if len(self.payload) > MAX_PAYLOAD_SIZE:
            raise ValueError(f"payload {len(self.payload)} exceeds capacity {MAX_PAYLOAD_SIZE}")
        # Always own a full-size buffer, never alias the caller's
        buf = bytearray(MAX_PAYLOAD_SIZE)
        buf[:len(self.payload)] = self.payload
        self.payload = buf

    @property
    def data_size(self) -> int:
        return self.word_count * WORD_SIZE

    @property
    def data(self) -> bytes:
        """Payload bytes actually in use."""
        return bytes(self.payload[:self.data_size])

    def set_data(self, data: bytes):
        """
        Replace the payload, rounding word_count up to whole words.

        Raises:
            ValueError: If data does not fit in MAX_WORD_COUNT words
        """
        if len(data) > MAX_WORD_COUNT * WORD_SIZE:
            raise ValueError(f"data {len(data)} exceeds {MAX_WORD_COUNT * WORD_SIZE} bytes")
        self.payload[:len(data)] = data
        self.word_count = (len(data) + WORD_SIZE - 1) // WORD_SIZE
        # Zero the padding of a partial last word
        self.payload[len(data):self.data_size] = bytes(self.data_size - len(data))

    def set_word(self, value: int, index: int):
        """Write a little-endian 32-bit word; out-of-range indices are ignored."""
        if index < 0 or index >= MAX_WORD_COUNT:
            return
        offset = index * WORD_SIZE
        struct.pack_into('<I', self.payload, offset, value & 0xFFFFFFFF)
        if self.word_count <= index:
            self.word_count = index + 1

    def get_word(self, index: int) -> int:
        if index < 0 or index >= self.word_count:
            raise IndexError(f"word {index} outside word_count {self.word_count}")
        return struct.unpack_from('<I', self.payload, index * WORD_SIZE)[0]

    def copy(self) -> 'PeripheralMessage':
        return PeripheralMessage(self.command, self.dest_address, self.origin_address,
                                 self.word_count, bytearray(self.payload))

    def __eq__(self, other):
        if not isinstance(other, PeripheralMessage):
            return NotImplemented
        return (self.command == other.command
                and self.dest_address == other.dest_address
                and self.origin_address == other.origin_address
                and self.word_count == other.word_count
                and self.data == other.data)

    def __repr__(self):
        return (f"PeripheralMessage(command=0x{self.command:02X}, dest=0x{self.dest_address:02X}, "
                f"origin=0x{self.origin_address:02X}, words={self.word_count}, "
                f"data={self.data.hex()})")
