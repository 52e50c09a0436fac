"""Session layer for host applications.

This module provides the shared-state façade a GUI or CLI talks to:
- connect / disconnect a bridge
- detect the chip and remember it for later commands
- whole-image read, write (erase + program + verify), verify and erase

Every public method holds one lock for its whole duration, so a session
can be shared between threads; commands never interleave on the bus.
A failed command leaves the session connected.
"""

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from ch347_flasher.config import Settings, get_settings
from ch347_flasher.errors import (
    AddressRangeError,
    NotConnectedError,
    VerificationError,
)
from ch347_flasher.flash.chips import ChipGeometry
from ch347_flasher.flash.programmer import FlashProgrammer
from ch347_flasher.types import (
    BridgeInfo,
    FlashOperation,
    PhaseProgressCallback,
    ProgramResult,
    ProgressCallback,
    SpiClock,
)

logger = logging.getLogger(__name__)

# Granularity of whole-chip reads, for progress reporting
DUMP_CHUNK_SIZE = 64 * 1024

Connector = Callable[[Settings, SpiClock | None], FlashProgrammer]


def _phase(
    progress: PhaseProgressCallback | None, operation: FlashOperation
) -> ProgressCallback | None:
    """Bind a phase progress callback to one operation."""
    if progress is None:
        return None

    def report(done: int, total: int) -> None:
        progress(operation, done, total)

    return report


class ProgrammerSession:
    """Mutex-guarded connection and detected-chip state.

    Args:
        settings: Settings for connecting; loaded from the environment if None.
        connector: Factory returning a connected programmer.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        connector: Connector = FlashProgrammer.connect,
    ) -> None:
        self._settings = settings if settings is not None else get_settings()
        self._connector = connector
        self._lock = threading.Lock()
        self._programmer: FlashProgrammer | None = None

    @contextmanager
    def _acquire(self) -> Iterator[FlashProgrammer]:
        with self._lock:
            if self._programmer is None:
                raise NotConnectedError()
            yield self._programmer

    @property
    def is_connected(self) -> bool:
        """Whether a bridge is claimed."""
        with self._lock:
            return self._programmer is not None

    @property
    def chip(self) -> ChipGeometry | None:
        """Chip detected on the current connection, if any."""
        with self._lock:
            return self._programmer.chip if self._programmer else None

    def connect(self, clock: SpiClock | None = None) -> BridgeInfo:
        """Claim a bridge, replacing any existing connection."""
        with self._lock:
            if self._programmer is not None:
                self._programmer.close()
                self._programmer = None
            programmer = self._connector(self._settings, clock)
            self._programmer = programmer
            info = programmer.spi.transport.get_info()
        logger.info("Connected to %s (%04x:%04x)", info.product, info.vid, info.pid)
        return info

    def disconnect(self) -> None:
        """Release the bridge and forget the detected chip."""
        with self._lock:
            if self._programmer is not None:
                self._programmer.close()
                self._programmer = None
                logger.info("Disconnected")

    def detect_chip(self) -> ChipGeometry:
        """Identify the flash chip on the bus."""
        with self._acquire() as programmer:
            return programmer.detect()

    def read_flash(
        self,
        address: int = 0,
        length: int | None = None,
        progress: PhaseProgressCallback | None = None,
    ) -> bytes:
        """Read chip contents in 64 KiB chunks.

        Args:
            address: Start address.
            length: Bytes to read; defaults to the rest of the chip.
            progress: Called with (operation, done, total).
        """
        with self._acquire() as programmer:
            chip = programmer.require_chip()
            if length is None:
                length = chip.size - address
            limit = programmer.address_limit
            if address < 0 or length < 0 or address + length > limit:
                raise AddressRangeError(address, length, limit)

            data = bytearray(length)
            view = memoryview(data)
            for offset in range(0, length, DUMP_CHUNK_SIZE):
                end = min(offset + DUMP_CHUNK_SIZE, length)
                programmer.read(address + offset, view[offset:end])
                if progress:
                    progress(FlashOperation.READ, end, length)
            logger.info("Read %d bytes at 0x%06X from %s", length, address, chip.name)
            return bytes(data)

    def write_flash(
        self,
        data: bytes,
        address: int = 0,
        *,
        erase: bool | None = None,
        verify: bool | None = None,
        progress: PhaseProgressCallback | None = None,
    ) -> ProgramResult:
        """Erase, program and verify an image.

        Args:
            data: Image bytes.
            address: Start address on the chip.
            erase: Erase covered sectors first (defaults to settings).
            verify: Read back afterwards (defaults to settings).
            progress: Called with (operation, done, total).

        Returns:
            ProgramResult describing what was done.

        Raises:
            AddressRangeError: The image does not fit on the chip.
            VerificationError: Read-back differs from ``data``.
        """
        if erase is None:
            erase = self._settings.erase_before_write
        if verify is None:
            verify = self._settings.verify_after_write

        with self._acquire() as programmer:
            chip = programmer.require_chip()
            limit = programmer.address_limit
            if address < 0 or address + len(data) > limit:
                logger.error(
                    "Image of %d bytes at 0x%06X does not fit %s (%d addressable bytes)",
                    len(data),
                    address,
                    chip.name,
                    limit,
                )
                raise AddressRangeError(address, len(data), limit)

            sectors = 0
            if erase:
                sectors = programmer.erase_range(
                    address, len(data), _phase(progress, FlashOperation.ERASE)
                )

            # 0xFF pages are a no-op on NOR flash
            programmer.write(
                address,
                data,
                _phase(progress, FlashOperation.WRITE),
                skip_blank=True,
            )

            if verify:
                matched = programmer.verify(
                    address, data, _phase(progress, FlashOperation.VERIFY)
                )
                if not matched:
                    logger.error("Verification failed after writing %d bytes", len(data))
                    raise VerificationError(address, len(data))

        logger.info(
            "Wrote %d bytes at 0x%06X (erased %d sectors, verified=%s)",
            len(data),
            address,
            sectors,
            verify,
        )
        return ProgramResult(
            address=address,
            bytes_written=len(data),
            sectors_erased=sectors,
            verified=verify,
        )

    def verify_flash(
        self,
        data: bytes,
        address: int = 0,
        progress: PhaseProgressCallback | None = None,
    ) -> bool:
        """Compare chip contents at ``address`` with ``data``."""
        with self._acquire() as programmer:
            return programmer.verify(
                address, data, _phase(progress, FlashOperation.VERIFY)
            )

    def erase_chip(self, progress: PhaseProgressCallback | None = None) -> None:
        """Erase the whole chip."""
        with self._acquire() as programmer:
            if progress:
                progress(FlashOperation.ERASE, 0, 1)
            programmer.erase_chip()
            if progress:
                progress(FlashOperation.ERASE, 1, 1)

    def erase_sector(self, address: int) -> None:
        """Erase one 4 KiB sector."""
        with self._acquire() as programmer:
            programmer.erase_sector(address)

    def erase_block(self, address: int) -> None:
        """Erase one 64 KiB block."""
        with self._acquire() as programmer:
            programmer.erase_block(address)


__all__ = ["DUMP_CHUNK_SIZE", "ProgrammerSession"]
