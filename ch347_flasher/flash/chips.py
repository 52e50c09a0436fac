"""SPI NOR chip registry.

Maps 3-byte JEDEC IDs to chip geometry. The built-in table covers common
BIOS flash parts; additional records can be loaded from a YAML file::

    chips:
      - name: W25Q512JV
        manufacturer: Winbond
        jedec_id: "EF 40 20"
        size: 67108864

Unrecognized IDs get a synthesized geometry whose capacity is guessed from
the density byte (third ID byte).
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from ch347_flasher.config import Settings
from ch347_flasher.errors import ChipDatabaseError

logger = logging.getLogger(__name__)

KiB = 1024
MiB = 1024 * KiB

DEFAULT_PAGE_SIZE = 256
DEFAULT_SECTOR_SIZE = 4 * KiB
DEFAULT_BLOCK_SIZE = 64 * KiB

# Density byte -> capacity, for chips missing from the registry
DENSITY_SIZES = {
    0x14: 1 * MiB,
    0x15: 2 * MiB,
    0x16: 4 * MiB,
    0x17: 8 * MiB,
    0x18: 16 * MiB,
    0x19: 32 * MiB,
    0x1A: 64 * MiB,
    0x20: 64 * MiB,
    0x21: 128 * MiB,
}
DEFAULT_UNKNOWN_SIZE = 16 * MiB

JEDEC_HEX_PATTERN = re.compile(r"^[0-9a-fA-F]{2}( ?[0-9a-fA-F]{2}){2}$")


@dataclass(frozen=True)
class ChipGeometry:
    """Identity and addressing layout of a flash part.

    Attributes:
        name: Part name (e.g., 'W25Q64').
        manufacturer: Vendor name.
        jedec_id: Manufacturer, memory type and density bytes.
        size: Total capacity in bytes.
        page_size: Largest single program unit.
        sector_size: Smallest erase unit.
        block_size: Large erase unit.
    """

    name: str
    manufacturer: str
    jedec_id: bytes
    size: int
    page_size: int = DEFAULT_PAGE_SIZE
    sector_size: int = DEFAULT_SECTOR_SIZE
    block_size: int = DEFAULT_BLOCK_SIZE

    def __post_init__(self) -> None:
        if len(self.jedec_id) != 3:
            raise ValueError(f"JEDEC ID must be 3 bytes, got {len(self.jedec_id)}")
        for field_name in ("size", "page_size", "sector_size", "block_size"):
            if getattr(self, field_name) <= 0:
                raise ValueError(f"{field_name} must be positive")
        if self.page_size > DEFAULT_PAGE_SIZE:
            raise ValueError(
                f"page_size {self.page_size} exceeds {DEFAULT_PAGE_SIZE} bytes"
            )
        if self.size % self.sector_size:
            raise ValueError(
                f"size {self.size} is not a multiple of sector size {self.sector_size}"
            )

    @property
    def jedec_hex(self) -> str:
        """JEDEC ID as space-separated hex, e.g. 'EF 40 17'."""
        return self.jedec_id.hex(" ").upper()

    @property
    def size_str(self) -> str:
        """Human-readable capacity."""
        if self.size >= MiB:
            return f"{self.size // MiB}MB"
        if self.size >= KiB:
            return f"{self.size // KiB}KB"
        return f"{self.size}B"

    @property
    def sector_count(self) -> int:
        """Number of erase sectors on the chip."""
        return self.size // self.sector_size


def _chip(name: str, manufacturer: str, jedec: str, size: int) -> ChipGeometry:
    return ChipGeometry(
        name=name,
        manufacturer=manufacturer,
        jedec_id=bytes.fromhex(jedec),
        size=size,
    )


BUILTIN_CHIPS: tuple[ChipGeometry, ...] = (
    # Winbond
    _chip("W25Q16", "Winbond", "EF4015", 2 * MiB),
    _chip("W25Q32", "Winbond", "EF4016", 4 * MiB),
    _chip("W25Q64", "Winbond", "EF4017", 8 * MiB),
    _chip("W25Q128", "Winbond", "EF4018", 16 * MiB),
    _chip("W25Q256", "Winbond", "EF4019", 32 * MiB),
    # GigaDevice
    _chip("GD25Q16", "GigaDevice", "C84015", 2 * MiB),
    _chip("GD25Q32", "GigaDevice", "C84016", 4 * MiB),
    _chip("GD25Q64", "GigaDevice", "C84017", 8 * MiB),
    _chip("GD25Q128", "GigaDevice", "C84018", 16 * MiB),
    # Macronix
    _chip("MX25L6405", "Macronix", "C22017", 8 * MiB),
    _chip("MX25L12835F", "Macronix", "C22018", 16 * MiB),
    _chip("MX25L25635F", "Macronix", "C22019", 32 * MiB),
    # Spansion/Cypress
    _chip("S25FL128S", "Spansion", "012018", 16 * MiB),
    # ISSI
    _chip("IS25LP128", "ISSI", "9D6018", 16 * MiB),
    # XMC
    _chip("XM25QH128A", "XMC", "207018", 16 * MiB),
    # ESMT
    _chip("F25L16PA", "ESMT", "8C2115", 2 * MiB),
)


class ChipSchema(BaseModel):
    """Schema for one chip record in a YAML chip database."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, description="Part name")
    manufacturer: str = Field(min_length=1, description="Vendor name")
    jedec_id: str = Field(description="JEDEC ID as hex, e.g. 'EF 40 17'")
    size: int = Field(gt=0, description="Capacity in bytes")
    page_size: int = Field(default=DEFAULT_PAGE_SIZE, gt=0, le=DEFAULT_PAGE_SIZE)
    sector_size: int = Field(default=DEFAULT_SECTOR_SIZE, gt=0)
    block_size: int = Field(default=DEFAULT_BLOCK_SIZE, gt=0)

    @field_validator("jedec_id")
    @classmethod
    def validate_jedec_id(cls, v: str) -> str:
        """Validate the ID is three hex bytes."""
        if not JEDEC_HEX_PATTERN.match(v.strip()):
            raise ValueError(f"jedec_id must be three hex bytes, got '{v}'")
        return v.strip()

    @model_validator(mode="after")
    def validate_page_fits_sector(self) -> "ChipSchema":
        """Pages must tile sectors exactly."""
        if self.sector_size % self.page_size:
            raise ValueError(
                f"page_size {self.page_size} does not divide "
                f"sector_size {self.sector_size}"
            )
        return self

    def to_geometry(self) -> ChipGeometry:
        """Convert to an immutable ChipGeometry."""
        return ChipGeometry(
            name=self.name,
            manufacturer=self.manufacturer,
            jedec_id=bytes.fromhex(self.jedec_id.replace(" ", "")),
            size=self.size,
            page_size=self.page_size,
            sector_size=self.sector_size,
            block_size=self.block_size,
        )


class ChipRegistry:
    """Exact-match JEDEC ID lookup over a fixed list of chips."""

    def __init__(self, chips: tuple[ChipGeometry, ...] | list[ChipGeometry]) -> None:
        self._chips = tuple(chips)
        self._by_id: dict[bytes, ChipGeometry] = {}
        for chip in self._chips:
            existing = self._by_id.get(chip.jedec_id)
            if existing is not None:
                raise ChipDatabaseError(
                    f"Duplicate JEDEC ID {chip.jedec_hex}: "
                    f"{existing.name} and {chip.name}"
                )
            self._by_id[chip.jedec_id] = chip

    def __len__(self) -> int:
        return len(self._chips)

    def __iter__(self):
        return iter(self._chips)

    def lookup(self, jedec_id: bytes) -> ChipGeometry | None:
        """Return the chip with exactly this ID, or None."""
        return self._by_id.get(bytes(jedec_id))


def unknown_chip(jedec_id: bytes) -> ChipGeometry:
    """Synthesize geometry for an ID missing from the registry."""
    jedec_id = bytes(jedec_id)
    size = DENSITY_SIZES.get(jedec_id[2], DEFAULT_UNKNOWN_SIZE)
    return ChipGeometry(
        name=f"Unknown ({jedec_id.hex().upper()})",
        manufacturer="Unknown",
        jedec_id=jedec_id,
        size=size,
    )


def identify_chip(registry: ChipRegistry, jedec_id: bytes) -> ChipGeometry:
    """Look up ``jedec_id``, falling back to a synthesized geometry."""
    chip = registry.lookup(jedec_id)
    if chip is None:
        chip = unknown_chip(jedec_id)
        logger.warning(
            "JEDEC ID %s not in registry, assuming %s", chip.jedec_hex, chip.size_str
        )
    return chip


def load_chip_database(path: Path) -> list[ChipGeometry]:
    """Load and validate chip records from a YAML file.

    Args:
        path: Path to the YAML file.

    Returns:
        Chip records in file order.

    Raises:
        FileNotFoundError: If the file does not exist.
        ChipDatabaseError: If the content is not valid YAML or a record is
            invalid.
    """
    with open(path, encoding="utf-8") as f:
        try:
            data: Any = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ChipDatabaseError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return []
    if not isinstance(data, dict) or not isinstance(data.get("chips", []), list):
        raise ChipDatabaseError(f"Expected a mapping with a 'chips' list in {path}")

    chips: list[ChipGeometry] = []
    for index, entry in enumerate(data.get("chips", [])):
        try:
            chips.append(ChipSchema.model_validate(entry).to_geometry())
        except (ValidationError, ValueError) as e:
            raise ChipDatabaseError(f"Invalid chip record #{index} in {path}: {e}") from e

    logger.info("Loaded %d chip record(s) from %s", len(chips), path)
    return chips


def default_registry() -> ChipRegistry:
    """Registry of the built-in chips only."""
    return ChipRegistry(BUILTIN_CHIPS)


def build_registry(settings: Settings | None = None) -> ChipRegistry:
    """Build the registry from built-ins plus the configured YAML file."""
    chips = list(BUILTIN_CHIPS)
    if settings is not None and settings.chip_db_path is not None:
        chips.extend(load_chip_database(settings.chip_db_path))
    return ChipRegistry(chips)


__all__ = [
    "BUILTIN_CHIPS",
    "DENSITY_SIZES",
    "ChipGeometry",
    "ChipRegistry",
    "ChipSchema",
    "build_registry",
    "default_registry",
    "identify_chip",
    "load_chip_database",
    "unknown_chip",
]
