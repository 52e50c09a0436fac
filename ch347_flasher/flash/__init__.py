"""SPI NOR flash programming module.

This module handles:
- Chip identification against a JEDEC ID registry
- Erase, page program, read and verify commands
- Ready polling with bounded timeouts
- A thread-safe session façade for host applications

All operations follow the same safety rules:
- No write or erase without a confirmed write-enable latch
- Page programs never cross a page boundary
- Accesses past the end of the chip are rejected before any transfer
"""

from ch347_flasher.flash.chips import (
    BUILTIN_CHIPS,
    ChipGeometry,
    ChipRegistry,
    ChipSchema,
    build_registry,
    default_registry,
    identify_chip,
    load_chip_database,
    unknown_chip,
)
from ch347_flasher.flash.programmer import FlashProgrammer, FlashTimeouts
from ch347_flasher.flash.session import ProgrammerSession

__all__ = [
    # Chips
    "BUILTIN_CHIPS",
    "ChipGeometry",
    "ChipRegistry",
    "ChipSchema",
    "build_registry",
    "default_registry",
    "identify_chip",
    "load_chip_database",
    "unknown_chip",
    # Programmer
    "FlashProgrammer",
    "FlashTimeouts",
    # Session
    "ProgrammerSession",
]
