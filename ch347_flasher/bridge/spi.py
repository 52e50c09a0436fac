"""SPI protocol engine for the CH347 bridge.

Implements the bridge's SPI command set on top of a claimed transport:
configuration, chip-select control, chunked writes and chunked reads, and
the composite ``transfer`` used by the flash layer.

One engine exists per transport. It is not thread-safe; callers serialize
access (see ch347_flasher.flash.session).
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from ch347_flasher.bridge.packets import (
    CONFIG_PACKET_SIZE,
    HEADER_SIZE,
    MAX_PAYLOAD,
    PACKET_SIZE,
    WRITE_ACK_SIZE,
    encode_chip_select,
    encode_config,
    encode_read_request,
    encode_write,
    parse_header,
)
from ch347_flasher.errors import (
    InvalidResponseError,
    SpiNotInitializedError,
    TransportError,
)
from ch347_flasher.types import SpiClock

if TYPE_CHECKING:
    from ch347_flasher.bridge.transport import UsbTransport

logger = logging.getLogger(__name__)


class SpiEngine:
    """SPI session layered on a claimed bridge interface.

    Attributes:
        transport: The transport all packets go through.
    """

    def __init__(self, transport: "UsbTransport") -> None:
        self.transport = transport
        self._clock: SpiClock | None = None
        # Inbound scratch buffer, reused for every packet
        self._rx = bytearray(PACKET_SIZE)

    @property
    def initialized(self) -> bool:
        """Whether configure() has succeeded."""
        return self._clock is not None

    @property
    def clock(self) -> SpiClock | None:
        """Clock set by the last successful configure(), if any."""
        return self._clock

    def configure(self, clock: SpiClock = SpiClock.CLK_15MHZ) -> None:
        """Put the bridge in SPI mode 0, MSB first, at ``clock``.

        Raises:
            TransportError: The packet or its acknowledgement failed.
        """
        self._clock = None
        logger.debug("Configuring SPI at %s (divisor %d)", clock.value, clock.divisor)
        self.transport.write(encode_config(clock))
        self.transport.read_into(memoryview(self._rx)[:CONFIG_PACKET_SIZE])
        self._clock = clock
        logger.info("SPI configured at %s", clock.value)

    def chip_select(self, assert_: bool) -> None:
        """Drive CS1 low (``assert_=True``) or high. No acknowledgement."""
        self.transport.write(encode_chip_select(assert_))

    def write(self, data: bytes | bytearray | memoryview) -> None:
        """Shift ``data`` out on MOSI in packets of at most 507 bytes.

        Each packet is acknowledged by a 4-byte response which is read and
        discarded before the next packet is sent.
        """
        self._check_initialized()
        view = memoryview(data)
        ack = memoryview(self._rx)[:WRITE_ACK_SIZE]
        for offset in range(0, len(view), MAX_PAYLOAD):
            chunk = view[offset : offset + MAX_PAYLOAD]
            self.transport.write(encode_write(chunk))
            self.transport.read_into(ack)

    def read(self, buffer: bytearray | memoryview) -> None:
        """Clock ``len(buffer)`` bytes in from MISO into ``buffer``.

        One read request carries the total count; the bridge answers with
        as many data packets as needed. Each packet's declared length is
        trusted only if that many bytes were actually transferred.

        Raises:
            InvalidResponseError: A packet was short, truncated or empty.
        """
        self._check_initialized()
        out = memoryview(buffer)
        total = len(out)
        if total == 0:
            return

        self.transport.write(encode_read_request(total))

        rx = memoryview(self._rx)
        done = 0
        while done < total:
            transferred = self.transport.read_into(rx)
            header = parse_header(rx, transferred)
            if header.length == 0:
                raise InvalidResponseError("Data packet with zero payload")
            count = min(header.length, total - done)
            out[done : done + count] = rx[HEADER_SIZE : HEADER_SIZE + count]
            done += header.length

    @contextmanager
    def selected(self) -> Iterator[None]:
        """Hold CS asserted for the duration of the block.

        CS is deasserted on every exit path. If the block raises, a failure
        to deassert is logged and the original exception propagates.
        """
        self._check_initialized()
        self.chip_select(True)
        try:
            yield
        except BaseException:
            try:
                self.chip_select(False)
            except TransportError as e:
                logger.warning("Could not deassert CS after error: %s", e.message)
            raise
        self.chip_select(False)

    def transfer(
        self,
        write_data: bytes | bytearray | memoryview = b"",
        read_data: bytearray | memoryview | None = None,
    ) -> None:
        """Run one CS-framed transaction: write, then read.

        Args:
            write_data: Bytes to send first (may be empty).
            read_data: Buffer to fill afterwards (may be None or empty).
        """
        with self.selected():
            if len(write_data):
                self.write(write_data)
            if read_data is not None and len(read_data):
                self.read(read_data)

    def _check_initialized(self) -> None:
        if self._clock is None:
            raise SpiNotInitializedError()


__all__ = ["SpiEngine"]
