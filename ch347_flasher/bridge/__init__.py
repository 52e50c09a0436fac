"""CH347 USB bridge access.

This module handles:
- USB discovery and interface claiming (transport)
- Vendor command packet framing (packets)
- The SPI session: configuration, chip select, chunked I/O (spi)
"""

from ch347_flasher.bridge.packets import (
    MAX_PAYLOAD,
    PACKET_SIZE,
    decode_config_clock,
    encode_chip_select,
    encode_config,
    encode_read_request,
    encode_write,
    parse_header,
)
from ch347_flasher.bridge.spi import SpiEngine
from ch347_flasher.bridge.transport import (
    CH347_VID,
    CH347F_PID,
    CH347T_PID,
    UsbTransport,
)

__all__ = [
    # Transport
    "CH347F_PID",
    "CH347T_PID",
    "CH347_VID",
    "UsbTransport",
    # Packets
    "MAX_PAYLOAD",
    "PACKET_SIZE",
    "decode_config_clock",
    "encode_chip_select",
    "encode_config",
    "encode_read_request",
    "encode_write",
    "parse_header",
    # SPI
    "SpiEngine",
]
