"""SPI NOR flash command layer.

This module implements the standard 25-series command set on top of the
SPI engine's CS-framed ``transfer``:
- JEDEC identification and chip lookup
- Status polling (write-enable latch, write-in-progress)
- Sector, block and chip erase
- Page program and page-boundary-aware writes
- Reads and chunked read-back verification

Nothing here retries on its own except ``wait_ready``. A failure part-way
through a multi-page write leaves the pages already programmed in place.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, fields

from ch347_flasher.bridge.spi import SpiEngine
from ch347_flasher.bridge.transport import UsbTransport
from ch347_flasher.config import Settings, get_settings
from ch347_flasher.errors import (
    AddressRangeError,
    ChipNotDetectedError,
    DeviceNotFoundError,
    InvalidPageSizeError,
    ReadyTimeoutError,
    WriteEnableError,
)
from ch347_flasher.flash.chips import (
    DEFAULT_PAGE_SIZE,
    ChipGeometry,
    ChipRegistry,
    build_registry,
    default_registry,
    identify_chip,
)
from ch347_flasher.types import ProgressCallback, SpiClock

logger = logging.getLogger(__name__)

# Flash opcodes
CMD_READ_JEDEC_ID = 0x9F
CMD_READ_STATUS = 0x05
CMD_WRITE_ENABLE = 0x06
CMD_PAGE_PROGRAM = 0x02
CMD_READ_DATA = 0x03
CMD_SECTOR_ERASE = 0x20  # 4 KiB
CMD_BLOCK_ERASE_64K = 0xD8
CMD_CHIP_ERASE = 0xC7

# Status register bits
STATUS_WIP = 0x01
STATUS_WEL = 0x02

# 3-byte addressing
ADDRESS_SPACE = 1 << 24

READ_CHUNK_SIZE = 256
VERIFY_CHUNK_SIZE = 4096
POLL_INTERVAL_S = 0.001

_NO_DEVICE_IDS = (b"\xff\xff\xff", b"\x00\x00\x00")


@dataclass(frozen=True)
class FlashTimeouts:
    """Ready-polling budgets in milliseconds.

    The defaults are minimums: smaller values are rejected, larger ones
    are allowed for slow parts.
    """

    page_program_ms: int = 10
    sector_erase_ms: int = 500
    block_erase_ms: int = 3000
    chip_erase_ms: int = 200000

    def __post_init__(self) -> None:
        for floor in fields(self):
            value = getattr(self, floor.name)
            if value < floor.default:
                raise ValueError(
                    f"{floor.name} must be at least {floor.default} ms, got {value}"
                )

    @classmethod
    def from_settings(cls, settings: Settings) -> "FlashTimeouts":
        """Build timeouts from application settings."""
        return cls(
            page_program_ms=settings.page_program_timeout_ms,
            sector_erase_ms=settings.sector_erase_timeout_ms,
            block_erase_ms=settings.block_erase_timeout_ms,
            chip_erase_ms=settings.chip_erase_timeout_ms,
        )


def address_bytes(address: int) -> bytes:
    """Encode a 24-bit flash address, big-endian."""
    return address.to_bytes(3, "big")


class FlashProgrammer:
    """A configured bridge plus the chip detected behind it.

    Attributes:
        spi: The configured SPI engine; owned exclusively by this object.
        chip: Geometry from the last successful detect(), or None.
    """

    def __init__(
        self,
        spi: SpiEngine,
        *,
        registry: ChipRegistry | None = None,
        timeouts: FlashTimeouts | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.spi = spi
        self.chip: ChipGeometry | None = None
        self.registry = registry if registry is not None else default_registry()
        self.timeouts = timeouts if timeouts is not None else FlashTimeouts()
        self._monotonic = monotonic
        self._sleep = sleep

    @classmethod
    def connect(
        cls,
        settings: Settings | None = None,
        clock: SpiClock | None = None,
    ) -> "FlashProgrammer":
        """Claim the first available bridge and configure SPI.

        Args:
            settings: Settings to use; loaded from the environment if None.
            clock: SPI clock overriding ``settings.spi_clock``.

        Raises:
            DeviceNotFoundError: No bridge could be claimed.
            TransportError: Configuration failed.
        """
        if settings is None:
            settings = get_settings()
        registry = build_registry(settings)

        transport = UsbTransport.open(timeout_ms=settings.usb_timeout_ms)
        try:
            spi = SpiEngine(transport)
            spi.configure(clock or settings.spi_clock)
        except BaseException:
            transport.close()
            raise

        return cls(
            spi,
            registry=registry,
            timeouts=FlashTimeouts.from_settings(settings),
        )

    def close(self) -> None:
        """Release the bridge."""
        self.spi.transport.close()

    def __enter__(self) -> "FlashProgrammer":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def page_size(self) -> int:
        """Program unit of the detected chip, or the usual 256 bytes."""
        return self.chip.page_size if self.chip else DEFAULT_PAGE_SIZE

    @property
    def address_limit(self) -> int:
        """End of the reachable range: the chip size, capped at 16 MiB.

        Only 3-byte addressing is issued, so bytes above 16 MiB on larger
        parts are out of range.
        """
        if self.chip is None:
            return ADDRESS_SPACE
        return min(self.chip.size, ADDRESS_SPACE)

    def require_chip(self) -> ChipGeometry:
        """Return the detected chip or raise ChipNotDetectedError."""
        if self.chip is None:
            raise ChipNotDetectedError()
        return self.chip

    # Identification and status

    def read_jedec_id(self) -> bytes:
        """Read the 3-byte JEDEC ID.

        Raises:
            DeviceNotFoundError: The bus reads as all 0xFF or all 0x00.
        """
        response = bytearray(3)
        self.spi.transfer(bytes([CMD_READ_JEDEC_ID]), response)
        jedec_id = bytes(response)
        if jedec_id in _NO_DEVICE_IDS:
            logger.error("No flash chip responding (JEDEC ID %s)", jedec_id.hex())
            raise DeviceNotFoundError(
                f"No flash chip detected (JEDEC ID {jedec_id.hex().upper()})"
            )
        return jedec_id

    def detect(self) -> ChipGeometry:
        """Identify the chip and remember its geometry."""
        jedec_id = self.read_jedec_id()
        chip = identify_chip(self.registry, jedec_id)
        self.chip = chip
        logger.info(
            "Detected %s %s (%s, %s)",
            chip.manufacturer,
            chip.name,
            chip.jedec_hex,
            chip.size_str,
        )
        return chip

    def read_status(self) -> int:
        """Read status register 1."""
        status = bytearray(1)
        self.spi.transfer(bytes([CMD_READ_STATUS]), status)
        return status[0]

    def write_enable(self) -> None:
        """Set the write-enable latch and confirm the chip accepted it."""
        self.spi.transfer(bytes([CMD_WRITE_ENABLE]))
        status = self.read_status()
        if not status & STATUS_WEL:
            logger.error("Write enable latch not set (status=0x%02X)", status)
            raise WriteEnableError(status)

    def wait_ready(self, timeout_ms: int) -> None:
        """Poll until the write-in-progress bit clears.

        Status is read at least once. The budget is wall-clock time since
        the first poll; exceeding it does not cancel the chip's operation.

        Raises:
            ReadyTimeoutError: WIP still set after ``timeout_ms``.
        """
        start = self._monotonic()
        while True:
            status = self.read_status()
            if not status & STATUS_WIP:
                return
            elapsed_ms = (self._monotonic() - start) * 1000
            if elapsed_ms > timeout_ms:
                logger.error(
                    "Chip still busy after %.0f ms (status=0x%02X)", elapsed_ms, status
                )
                raise ReadyTimeoutError(timeout_ms, status)
            self._sleep(POLL_INTERVAL_S)

    # Erase

    def erase_sector(self, address: int) -> None:
        """Erase the 4 KiB sector containing ``address``."""
        self._erase(CMD_SECTOR_ERASE, address, self.timeouts.sector_erase_ms)

    def erase_block(self, address: int) -> None:
        """Erase the 64 KiB block containing ``address``."""
        self._erase(CMD_BLOCK_ERASE_64K, address, self.timeouts.block_erase_ms)

    def erase_chip(self) -> None:
        """Erase the whole chip. Can take minutes on large parts."""
        self._erase(CMD_CHIP_ERASE, None, self.timeouts.chip_erase_ms)

    def _erase(self, opcode: int, address: int | None, timeout_ms: int) -> None:
        if address is None:
            command = bytes([opcode])
            logger.info("Erasing chip")
        else:
            self._check_range(address, 1)
            command = bytes([opcode]) + address_bytes(address)
            logger.debug("Erase 0x%02X at 0x%06X", opcode, address)

        self.write_enable()
        self.spi.transfer(command)
        self.wait_ready(timeout_ms)

    def erase_range(
        self,
        address: int,
        length: int,
        progress: ProgressCallback | None = None,
    ) -> int:
        """Erase every sector overlapping ``[address, address + length)``.

        Returns:
            Number of sectors erased.
        """
        chip = self.require_chip()
        self._check_range(address, length)
        if length == 0:
            return 0

        start = address - address % chip.sector_size
        end = address + length
        sectors = list(range(start, end, chip.sector_size))
        for index, sector in enumerate(sectors, start=1):
            self.erase_sector(sector)
            if progress:
                progress(index, len(sectors))
        logger.info("Erased %d sector(s) from 0x%06X", len(sectors), start)
        return len(sectors)

    # Program

    def program_page(self, address: int, data: bytes | bytearray | memoryview) -> None:
        """Program up to one page at ``address``.

        The caller keeps ``data`` within one page; a write that straddles a
        page boundary wraps inside the page on the chip.

        Raises:
            InvalidPageSizeError: ``data`` is empty or longer than a page.
        """
        if not 1 <= len(data) <= self.page_size:
            raise InvalidPageSizeError(len(data), self.page_size)
        self._check_range(address, len(data))

        self.write_enable()
        self.spi.transfer(
            bytes([CMD_PAGE_PROGRAM]) + address_bytes(address) + bytes(data)
        )
        self.wait_ready(self.timeouts.page_program_ms)

    def write(
        self,
        address: int,
        data: bytes | bytearray | memoryview,
        progress: ProgressCallback | None = None,
        skip_blank: bool = False,
    ) -> None:
        """Program ``data`` at ``address``, one page-aligned chunk at a time.

        The target range must already be erased.

        Args:
            address: Start address; need not be page aligned.
            data: Bytes to program.
            progress: Called with (bytes_done, bytes_total) after each page.
            skip_blank: Skip chunks that are entirely 0xFF.
        """
        chip = self.require_chip()
        self._check_range(address, len(data))

        view = memoryview(data)
        total = len(view)
        page_size = chip.page_size
        offset = 0
        while offset < total:
            current = address + offset
            chunk_size = min(page_size - current % page_size, total - offset)
            chunk = view[offset : offset + chunk_size]
            if skip_blank and chunk.tobytes().count(0xFF) == chunk_size:
                logger.debug("Skipping blank page at 0x%06X", current)
            else:
                self.program_page(current, chunk)
            offset += chunk_size
            if progress:
                progress(offset, total)

        logger.info("Programmed %d bytes at 0x%06X", total, address)

    # Read and verify

    def read(self, address: int, buffer: bytearray | memoryview) -> None:
        """Fill ``buffer`` with flash contents starting at ``address``."""
        out = memoryview(buffer)
        self._check_range(address, len(out))
        with self.spi.selected():
            self.spi.write(bytes([CMD_READ_DATA]) + address_bytes(address))
            for offset in range(0, len(out), READ_CHUNK_SIZE):
                self.spi.read(out[offset : offset + READ_CHUNK_SIZE])

    def read_bytes(self, address: int, length: int) -> bytes:
        """Read ``length`` bytes starting at ``address``."""
        buffer = bytearray(length)
        self.read(address, buffer)
        return bytes(buffer)

    def verify(
        self,
        address: int,
        data: bytes | bytearray | memoryview,
        progress: ProgressCallback | None = None,
    ) -> bool:
        """Compare flash contents at ``address`` against ``data``.

        Reads back in 4 KiB chunks and stops at the first chunk that differs.

        Returns:
            True if every byte matches.
        """
        expected = memoryview(data)
        total = len(expected)
        self._check_range(address, total)

        buffer = bytearray(VERIFY_CHUNK_SIZE)
        offset = 0
        while offset < total:
            chunk_size = min(VERIFY_CHUNK_SIZE, total - offset)
            actual = memoryview(buffer)[:chunk_size]
            self.read(address + offset, actual)
            if actual != expected[offset : offset + chunk_size]:
                logger.warning(
                    "Verify mismatch in chunk at 0x%06X", address + offset
                )
                return False
            offset += chunk_size
            if progress:
                progress(offset, total)
        return True

    def _check_range(self, address: int, length: int) -> None:
        limit = self.address_limit
        if address < 0 or length < 0 or address + length > limit:
            raise AddressRangeError(address, length, limit)


__all__ = [
    "ADDRESS_SPACE",
    "CMD_BLOCK_ERASE_64K",
    "CMD_CHIP_ERASE",
    "CMD_PAGE_PROGRAM",
    "CMD_READ_DATA",
    "CMD_READ_JEDEC_ID",
    "CMD_READ_STATUS",
    "CMD_SECTOR_ERASE",
    "CMD_WRITE_ENABLE",
    "FlashProgrammer",
    "FlashTimeouts",
    "STATUS_WEL",
    "STATUS_WIP",
    "address_bytes",
]
