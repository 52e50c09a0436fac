"""Exception hierarchy shared by the bridge and flash layers.

Every error carries a human-readable message and a stable ``error_code``
string so that host layers (CLI, GUI) can react programmatically without
parsing messages.
"""


class FlasherError(Exception):
    """Base exception for all programmer errors."""

    def __init__(self, message: str, error_code: str) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class TransportError(FlasherError):
    """Underlying USB transfer failed (stall, timeout, disconnect, permission)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code="TRANSPORT_ERROR")


class DeviceNotFoundError(FlasherError):
    """No bridge found, or the flash chip did not answer the JEDEC ID query."""

    def __init__(self, message: str = "Device not found") -> None:
        super().__init__(message, error_code="DEVICE_NOT_FOUND")


class DeviceBusyError(FlasherError):
    """The bridge interface could not be claimed."""

    def __init__(self, interface: int, reason: str) -> None:
        super().__init__(
            f"Device busy or permission denied on interface {interface}: {reason}",
            error_code="DEVICE_BUSY",
        )
        self.interface = interface
        self.reason = reason


class InvalidResponseError(FlasherError):
    """The bridge sent a malformed or truncated packet."""

    def __init__(self, message: str = "Invalid response from device") -> None:
        super().__init__(message, error_code="INVALID_RESPONSE")


class SpiNotInitializedError(FlasherError):
    """An SPI transfer was attempted before the bridge was configured."""

    def __init__(self) -> None:
        super().__init__("SPI not initialized", error_code="SPI_NOT_INITIALIZED")


class TransferFailedError(FlasherError):
    """The flash device did not honour a command."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Transfer failed: {reason}", error_code="TRANSFER_FAILED")
        self.reason = reason


class WriteEnableError(TransferFailedError):
    """Write-enable latch was not set after a write-enable command."""

    def __init__(self, status: int) -> None:
        super().__init__(f"Write enable failed (status=0x{status:02X})")
        self.status = status


class ReadyTimeoutError(TransferFailedError):
    """The write-in-progress bit did not clear within the time budget."""

    def __init__(self, timeout_ms: int, status: int) -> None:
        super().__init__(
            f"Timeout waiting for ready after {timeout_ms} ms (status=0x{status:02X})"
        )
        self.timeout_ms = timeout_ms
        self.status = status


class InvalidPageSizeError(TransferFailedError):
    """Page program payload was empty or larger than one page."""

    def __init__(self, length: int, page_size: int) -> None:
        super().__init__(
            f"Invalid page size: {length} bytes (expected 1..{page_size})"
        )
        self.length = length
        self.page_size = page_size


class VerificationError(TransferFailedError):
    """Data read back from the chip differs from what was written."""

    def __init__(self, address: int, length: int) -> None:
        super().__init__(
            f"Verification failed in 0x{address:06X}..0x{address + length - 1:06X}"
        )
        self.address = address
        self.length = length


class ChipNotDetectedError(FlasherError):
    """An operation needs chip geometry but no chip has been detected."""

    def __init__(self) -> None:
        super().__init__(
            "No chip detected; run detection first", error_code="CHIP_NOT_DETECTED"
        )


class AddressRangeError(FlasherError):
    """An access would run past the end of the flash address space."""

    def __init__(self, address: int, length: int, limit: int) -> None:
        super().__init__(
            f"Access of {length} bytes at 0x{address:06X} exceeds "
            f"flash size 0x{limit:X}",
            error_code="ADDRESS_OUT_OF_RANGE",
        )
        self.address = address
        self.length = length
        self.limit = limit


class ChipDatabaseError(FlasherError):
    """A chip record is invalid or duplicates an existing JEDEC ID."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code="CHIP_DATABASE_ERROR")


class NotConnectedError(FlasherError):
    """A session operation was requested without a connected bridge."""

    def __init__(self) -> None:
        super().__init__("Not connected", error_code="NOT_CONNECTED")


__all__ = [
    "AddressRangeError",
    "ChipDatabaseError",
    "ChipNotDetectedError",
    "DeviceBusyError",
    "DeviceNotFoundError",
    "FlasherError",
    "InvalidPageSizeError",
    "InvalidResponseError",
    "NotConnectedError",
    "ReadyTimeoutError",
    "SpiNotInitializedError",
    "TransferFailedError",
    "TransportError",
    "VerificationError",
    "WriteEnableError",
]
