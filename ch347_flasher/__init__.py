"""CH347 Flasher - SPI NOR flash programming through a CH347 USB bridge.

This package provides the USB transport and vendor command framing for the
WCH CH347T/CH347F bridge, the SPI NOR flash command set on top of it, and a
thin command-line shell for reading, writing, erasing and verifying chips.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
