"""USB transport for the CH347 bridge.

This module owns the pyusb device handle:
- Find a CH347T or CH347F and claim its SPI interface
- Detach a bound kernel driver first (Linux/macOS, best-effort)
- Perform timed bulk OUT/IN transfers on the fixed endpoints
- Release the interface exactly once on close

All pyusb failures are converted to TransportError so that upper layers
never see usb.core.USBError.
"""

import logging
import sys
from collections.abc import Iterator
from typing import Any

import usb.core
import usb.util

from ch347_flasher.errors import DeviceBusyError, DeviceNotFoundError, TransportError
from ch347_flasher.types import CH347_VID, CH347F_PID, CH347T_PID, BridgeInfo

logger = logging.getLogger(__name__)

# SPI interface number per product ID, in probe order
BRIDGE_VARIANTS: tuple[tuple[int, int], ...] = (
    (CH347T_PID, 2),
    (CH347F_PID, 4),
)

EP_OUT = 0x06
EP_IN = 0x86

USB_TIMEOUT_MS = 1000

_DETACH_PLATFORMS = ("linux", "darwin")


def _iter_bridges() -> Iterator[Any]:
    """Yield every attached USB device with the WCH vendor ID."""
    yield from usb.core.find(find_all=True, idVendor=CH347_VID)


class UsbTransport:
    """Exclusively claimed SPI interface of one CH347 bridge.

    Instances are created with :meth:`open` and must be closed; use them
    as context managers so the interface is released on every exit path.
    """

    def __init__(
        self,
        device: Any,
        interface: int,
        timeout_ms: int = USB_TIMEOUT_MS,
    ) -> None:
        self._device = device
        self._interface = interface
        self._timeout_ms = timeout_ms
        self._claimed = True

    @classmethod
    def open(cls, timeout_ms: int = USB_TIMEOUT_MS) -> "UsbTransport":
        """Find a bridge and claim its SPI interface.

        Devices are scanned in bus order. For each CH347T/CH347F the matching
        interface is claimed; if that fails the next device is tried.

        Args:
            timeout_ms: Per-transfer timeout for bulk transfers.

        Returns:
            A transport owning the claimed interface.

        Raises:
            DeviceNotFoundError: No bridge could be claimed.
            TransportError: The USB backend is unavailable.
        """
        try:
            for device in _iter_bridges():
                for pid, interface in BRIDGE_VARIANTS:
                    if device.idProduct != pid:
                        continue
                    try:
                        return cls._claim(device, interface, timeout_ms)
                    except (DeviceBusyError, TransportError) as e:
                        logger.warning(
                            "Skipping bridge %04x:%04x: %s",
                            CH347_VID,
                            pid,
                            e.message,
                        )
                    break
        except usb.core.NoBackendError as e:
            raise TransportError(f"No USB backend available: {e}") from e

        logger.error("No CH347 bridge found")
        raise DeviceNotFoundError("No CH347 bridge found")

    @classmethod
    def _claim(cls, device: Any, interface: int, timeout_ms: int) -> "UsbTransport":
        """Detach any kernel driver and claim ``interface`` on ``device``."""
        if sys.platform.startswith(_DETACH_PLATFORMS):
            try:
                if device.is_kernel_driver_active(interface):
                    device.detach_kernel_driver(interface)
                    logger.debug("Detached kernel driver from interface %d", interface)
            except (usb.core.USBError, NotImplementedError) as e:
                logger.warning(
                    "Could not detach kernel driver from interface %d: %s",
                    interface,
                    e,
                )

        try:
            try:
                device.get_active_configuration()
            except usb.core.USBError:
                device.set_configuration()
        except usb.core.USBError as e:
            raise TransportError(f"Could not configure device: {e}") from e

        try:
            usb.util.claim_interface(device, interface)
        except usb.core.USBError as e:
            usb.util.dispose_resources(device)
            raise DeviceBusyError(interface, str(e)) from e

        logger.info(
            "Claimed interface %d of bridge %04x:%04x",
            interface,
            device.idVendor,
            device.idProduct,
        )
        return cls(device, interface, timeout_ms)

    @property
    def interface(self) -> int:
        """Claimed interface number."""
        return self._interface

    @property
    def is_open(self) -> bool:
        """Whether the interface is still claimed."""
        return self._claimed

    def write(self, data: bytes | bytearray | memoryview) -> int:
        """Send one bulk OUT transfer.

        Returns:
            Number of bytes the device accepted.

        Raises:
            TransportError: On stall, timeout, disconnect or closed handle.
        """
        self._check_open()
        try:
            written = self._device.write(EP_OUT, data, timeout=self._timeout_ms)
        except usb.core.USBError as e:
            logger.error("Bulk OUT failed: %s", e)
            raise TransportError(f"Bulk write failed: {e}") from e
        logger.debug("OUT %d bytes: %s", written, bytes(data[:16]).hex(" "))
        return written

    def read_into(self, buffer: bytearray | memoryview) -> int:
        """Receive one bulk IN transfer into ``buffer``.

        At most ``len(buffer)`` bytes are requested.

        Returns:
            Number of bytes actually transferred.

        Raises:
            TransportError: On stall, timeout, disconnect or closed handle.
        """
        self._check_open()
        try:
            data = self._device.read(EP_IN, len(buffer), timeout=self._timeout_ms)
        except usb.core.USBError as e:
            logger.error("Bulk IN failed: %s", e)
            raise TransportError(f"Bulk read failed: {e}") from e
        count = len(data)
        buffer[:count] = bytes(data)
        logger.debug("IN %d bytes: %s", count, bytes(data[:16]).hex(" "))
        return count

    def get_info(self) -> BridgeInfo:
        """Describe the claimed bridge; unreadable strings become ''."""
        return BridgeInfo(
            vid=self._device.idVendor,
            pid=self._device.idProduct,
            manufacturer=self._read_string(self._device.iManufacturer),
            product=self._read_string(self._device.iProduct),
            interface=self._interface,
        )

    def _read_string(self, index: int) -> str:
        if not index:
            return ""
        try:
            return usb.util.get_string(self._device, index) or ""
        except (usb.core.USBError, ValueError) as e:
            logger.debug("Could not read string descriptor %d: %s", index, e)
            return ""

    def _check_open(self) -> None:
        if not self._claimed:
            raise TransportError("Transport is closed")

    def close(self) -> None:
        """Release the claimed interface. Safe to call more than once."""
        if not self._claimed:
            return
        self._claimed = False
        try:
            usb.util.release_interface(self._device, self._interface)
            logger.info("Released interface %d", self._interface)
        except usb.core.USBError as e:
            logger.warning("Could not release interface %d: %s", self._interface, e)
        finally:
            usb.util.dispose_resources(self._device)

    def __enter__(self) -> "UsbTransport":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


__all__ = [
    "BRIDGE_VARIANTS",
    "CH347F_PID",
    "CH347T_PID",
    "CH347_VID",
    "EP_IN",
    "EP_OUT",
    "USB_TIMEOUT_MS",
    "UsbTransport",
]
