"""Shared type definitions for ch347_flasher.

This module contains enums, dataclasses and type aliases shared across
subpackages to avoid circular imports.
"""

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

# USB identity of the CH347 family
CH347_VID = 0x1A86
CH347T_PID = 0x55DB
CH347F_PID = 0x55DE


class SpiClock(str, Enum):
    """SPI clock settings supported by the bridge, fastest first.

    The bridge derives SCK from a 120 MHz base through a 3-bit divisor;
    each step halves the clock.
    """

    CLK_60MHZ = "60MHz"
    CLK_30MHZ = "30MHz"
    CLK_15MHZ = "15MHz"
    CLK_7_5MHZ = "7.5MHz"
    CLK_3_75MHZ = "3.75MHz"
    CLK_1_875MHZ = "1.875MHz"
    CLK_937_5KHZ = "937.5kHz"
    CLK_468_75KHZ = "468.75kHz"

    @property
    def divisor(self) -> int:
        """Divisor value carried in the configuration packet (0..7)."""
        return list(SpiClock).index(self)

    @property
    def frequency_hz(self) -> float:
        """Resulting SCK frequency in Hz."""
        return 60_000_000 / (1 << self.divisor)

    @classmethod
    def from_divisor(cls, divisor: int) -> "SpiClock":
        """Return the clock for a configuration-packet divisor."""
        members = list(cls)
        if not 0 <= divisor < len(members):
            raise ValueError(f"Invalid SPI clock divisor: {divisor}")
        return members[divisor]


class FlashOperation(str, Enum):
    """Long-running operations reported through phase progress callbacks."""

    READ = "reading"
    ERASE = "erasing"
    WRITE = "writing"
    VERIFY = "verifying"


# (bytes_or_units_done, total)
ProgressCallback = Callable[[int, int], None]

# (operation, done, total)
PhaseProgressCallback = Callable[[FlashOperation, int, int], None]


@dataclass
class BridgeInfo:
    """Identity of a claimed bridge, for display purposes."""

    vid: int
    pid: int
    manufacturer: str
    product: str
    interface: int

    @property
    def is_ch347t(self) -> bool:
        """Whether this is the CH347T variant (as opposed to CH347F)."""
        return self.pid == CH347T_PID


@dataclass
class ProgramResult:
    """Result of writing an image to the chip."""

    address: int
    bytes_written: int
    sectors_erased: int
    verified: bool


__all__ = [
    "BridgeInfo",
    "CH347F_PID",
    "CH347T_PID",
    "CH347_VID",
    "FlashOperation",
    "PhaseProgressCallback",
    "ProgramResult",
    "ProgressCallback",
    "SpiClock",
]
