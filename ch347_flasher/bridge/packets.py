"""Vendor command packets for the CH347 SPI interface.

Every packet exchanged on the bulk endpoints has the same framing::

    +--------+--------+--------+------------------+
    | opcode | len_lo | len_hi | payload (len B)  |
    +--------+--------+--------+------------------+

The length is little-endian and excludes the 3-byte header. The bridge
accepts at most 510 bytes per packet, leaving 507 bytes of payload.

The functions here only build and parse bytes; they never touch USB.
"""

from dataclasses import dataclass

from ch347_flasher.errors import InvalidResponseError
from ch347_flasher.types import SpiClock

# Framing
HEADER_SIZE = 3
PACKET_SIZE = 510
MAX_PAYLOAD = PACKET_SIZE - HEADER_SIZE

# Bridge opcodes
CMD_SPI_SET_CFG = 0xC0
CMD_SPI_CS_CTRL = 0xC1
CMD_SPI_OUT_IN = 0xC2  # reserved, not used
CMD_SPI_IN = 0xC3
CMD_SPI_OUT = 0xC4
CMD_SPI_GET_CFG = 0xCA  # reserved, not used

# Chip-select control byte
CS_ASSERT = 0x00
CS_DEASSERT = 0x40
CS_CHANGE = 0x80
CS_IGNORE = 0x00

# Configuration packet layout (offsets into the full 29-byte packet)
CONFIG_PAYLOAD_SIZE = 26
CONFIG_PACKET_SIZE = HEADER_SIZE + CONFIG_PAYLOAD_SIZE
CFG_CPOL = 9
CFG_CPHA = 11
CFG_CLOCK = 15
CFG_BIT_ORDER = 17
CFG_CS_POLARITY = 24
CFG_CLOCK_SHIFT = 3
CFG_CLOCK_MASK = 0x07

# Values the vendor driver always sends; their meaning is undocumented.
CONFIG_VENDOR_CONSTANTS = {5: 4, 6: 1, 14: 2, 19: 7}

CS_PAYLOAD_SIZE = 10
CS_PACKET_SIZE = HEADER_SIZE + CS_PAYLOAD_SIZE
CS1_OFFSET = 3
CS2_OFFSET = 8

WRITE_ACK_SIZE = 4
READ_REQUEST_SIZE = HEADER_SIZE + 4


@dataclass
class PacketHeader:
    """Header of an inbound packet."""

    opcode: int
    length: int


def encode_header(opcode: int, length: int) -> bytes:
    """Encode a 3-byte packet header.

    Raises:
        ValueError: If the payload would not fit in a single packet.
    """
    if not 0 <= length <= MAX_PAYLOAD:
        raise ValueError(f"Payload length {length} out of range 0..{MAX_PAYLOAD}")
    return bytes([opcode, length & 0xFF, (length >> 8) & 0xFF])


def encode_config(clock: SpiClock) -> bytes:
    """Build the 29-byte SPI configuration packet.

    Mode 0 (CPOL=0, CPHA=0), MSB first, active-low chip selects. The clock
    divisor occupies bits 5:3 of its byte.
    """
    packet = bytearray(CONFIG_PACKET_SIZE)
    packet[:HEADER_SIZE] = encode_header(CMD_SPI_SET_CFG, CONFIG_PAYLOAD_SIZE)
    for offset, value in CONFIG_VENDOR_CONSTANTS.items():
        packet[offset] = value
    packet[CFG_CPOL] = 0
    packet[CFG_CPHA] = 0
    packet[CFG_CLOCK] = clock.divisor << CFG_CLOCK_SHIFT
    packet[CFG_BIT_ORDER] = 0
    packet[CFG_CS_POLARITY] = 0
    return bytes(packet)


def decode_config_clock(packet: bytes) -> SpiClock:
    """Recover the clock setting from a configuration packet."""
    if len(packet) < CONFIG_PACKET_SIZE:
        raise InvalidResponseError(
            f"Configuration packet too short: {len(packet)} bytes"
        )
    divisor = (packet[CFG_CLOCK] >> CFG_CLOCK_SHIFT) & CFG_CLOCK_MASK
    return SpiClock.from_divisor(divisor)


def encode_chip_select(assert_: bool) -> bytes:
    """Build the 13-byte chip-select packet for CS1; CS2 is left alone."""
    packet = bytearray(CS_PACKET_SIZE)
    packet[:HEADER_SIZE] = encode_header(CMD_SPI_CS_CTRL, CS_PAYLOAD_SIZE)
    packet[CS1_OFFSET] = (CS_ASSERT if assert_ else CS_DEASSERT) | CS_CHANGE
    packet[CS2_OFFSET] = CS_IGNORE
    return bytes(packet)


def encode_write(chunk: bytes | bytearray | memoryview) -> bytes:
    """Wrap up to 507 bytes of MOSI data in a write packet."""
    return encode_header(CMD_SPI_OUT, len(chunk)) + bytes(chunk)


def encode_read_request(count: int) -> bytes:
    """Build the 7-byte read request carrying the total count as LE32."""
    if not 0 <= count <= 0xFFFFFFFF:
        raise ValueError(f"Read count {count} out of range")
    return encode_header(CMD_SPI_IN, 4) + count.to_bytes(4, "little")


def parse_header(packet: bytes | bytearray | memoryview, transferred: int) -> PacketHeader:
    """Parse and validate the header of an inbound packet.

    Args:
        packet: Buffer holding the received packet.
        transferred: Number of bytes the transport actually delivered.

    Returns:
        The decoded header.

    Raises:
        InvalidResponseError: If the packet is shorter than its header, or
            declares more payload than was transferred.
    """
    if transferred < HEADER_SIZE:
        raise InvalidResponseError(
            f"Short packet: {transferred} bytes, header needs {HEADER_SIZE}"
        )
    length = packet[1] | (packet[2] << 8)
    if transferred < HEADER_SIZE + length:
        raise InvalidResponseError(
            f"Packet declares {length} payload bytes but only "
            f"{transferred - HEADER_SIZE} were transferred"
        )
    return PacketHeader(opcode=packet[0], length=length)


__all__ = [
    "CMD_SPI_CS_CTRL",
    "CMD_SPI_GET_CFG",
    "CMD_SPI_IN",
    "CMD_SPI_OUT",
    "CMD_SPI_OUT_IN",
    "CMD_SPI_SET_CFG",
    "CONFIG_PACKET_SIZE",
    "CS_PACKET_SIZE",
    "HEADER_SIZE",
    "MAX_PAYLOAD",
    "PACKET_SIZE",
    "PacketHeader",
    "READ_REQUEST_SIZE",
    "WRITE_ACK_SIZE",
    "decode_config_clock",
    "encode_chip_select",
    "encode_config",
    "encode_header",
    "encode_read_request",
    "encode_write",
    "parse_header",
]
