"""Shared fixtures: a scripted transport and a simulated CH347 + SPI NOR chip.

The simulation works at the USB packet level, so every layer above the
transport (packet framing, SPI engine, flash commands, session, CLI) runs
unmodified against it.
"""

from collections import deque

import pytest

from ch347_flasher.bridge.packets import (
    CMD_SPI_CS_CTRL,
    CMD_SPI_IN,
    CMD_SPI_OUT,
    CMD_SPI_SET_CFG,
    HEADER_SIZE,
    MAX_PAYLOAD,
)
from ch347_flasher.bridge.spi import SpiEngine
from ch347_flasher.config import Settings
from ch347_flasher.errors import TransportError
from ch347_flasher.flash.programmer import FlashProgrammer
from ch347_flasher.flash.session import ProgrammerSession
from ch347_flasher.types import BridgeInfo, SpiClock

MiB = 1024 * 1024


class FakeTransport:
    """Transport double: records OUT packets, replays scripted IN packets."""

    def __init__(self) -> None:
        self.writes: list[bytes] = []
        self.responses: deque[bytes] = deque()
        self.closed = False
        self.fail_writes_after: int | None = None

    @property
    def is_open(self) -> bool:
        return not self.closed

    @property
    def interface(self) -> int:
        return 2

    def queue(self, *packets: bytes) -> None:
        self.responses.extend(packets)

    def write(self, data) -> int:
        limit = self.fail_writes_after
        if limit is not None and len(self.writes) >= limit:
            raise TransportError("Bulk write failed: [Errno 19] No such device")
        packet = bytes(data)
        self.writes.append(packet)
        self.handle(packet)
        return len(packet)

    def handle(self, packet: bytes) -> None:
        """Hook for subclasses that generate responses."""

    def read_into(self, buffer) -> int:
        if not self.responses:
            raise TransportError("Bulk read failed: [Errno 110] Operation timed out")
        packet = self.responses.popleft()
        count = min(len(packet), len(buffer))
        buffer[:count] = packet[:count]
        return count

    def get_info(self) -> BridgeInfo:
        return BridgeInfo(
            vid=0x1A86,
            pid=0x55DB,
            manufacturer="wch.cn",
            product="USB To UART+SPI+I2C",
            interface=2,
        )

    def close(self) -> None:
        self.closed = True

    def packets(self, opcode: int) -> list[bytes]:
        """OUT packets sent with ``opcode``."""
        return [p for p in self.writes if p[0] == opcode]


class SimulatedFlash:
    """Behavioural model of a 25-series SPI NOR chip.

    Commands are collected while CS is asserted and executed on release,
    like real parts do for program and erase.
    """

    def __init__(
        self,
        jedec_id: bytes = b"\xef\x40\x15",
        size: int = 2 * MiB,
        page_size: int = 256,
        busy_polls: int = 2,
    ) -> None:
        self.jedec_id = jedec_id
        self.memory = bytearray(b"\xff" * size)
        self.page_size = page_size
        self.busy_polls = busy_polls
        self.busy = 0
        self.wel = False
        self.stuck_busy = False
        self.ignore_write_enable = False
        self.executed: list[int] = []
        self._command = bytearray()
        self._out_pos = 0

    @property
    def status(self) -> int:
        wip = 0x01 if (self.busy or self.stuck_busy) else 0
        return wip | (0x02 if self.wel else 0)

    def select(self) -> None:
        self._command = bytearray()
        self._out_pos = 0

    def mosi(self, data: bytes) -> None:
        self._command.extend(data)

    def miso(self, count: int) -> bytes:
        opcode = self._command[0] if self._command else None
        if opcode == 0x03:
            size = len(self.memory)
            start = (int.from_bytes(self._command[1:4], "big") + self._out_pos) % size
            self._out_pos += count
            data = bytes(self.memory[start : start + count])
            # reads past the end wrap to address 0, like the real part
            while len(data) < count:
                data += bytes(self.memory[: count - len(data)])
            return data
        out = bytearray()
        for _ in range(count):
            out.append(self._next_byte(opcode))
            self._out_pos += 1
        return bytes(out)

    def _next_byte(self, opcode: int | None) -> int:
        if opcode == 0x9F:
            return self.jedec_id[self._out_pos % 3]
        if opcode == 0x05:
            status = self.status
            if self.busy:
                self.busy -= 1
            return status
        return 0xFF

    def deselect(self) -> None:
        if not self._command:
            return
        opcode = self._command[0]
        self.executed.append(opcode)
        if opcode == 0x06:
            if not self.ignore_write_enable:
                self.wel = True
            return
        if opcode not in (0x02, 0x20, 0xD8, 0xC7) or not self.wel or self.busy:
            return

        address = int.from_bytes(self._command[1:4], "big")
        if opcode == 0x02:
            base = address - address % self.page_size
            for i, value in enumerate(self._command[4:]):
                index = base + (address - base + i) % self.page_size
                self.memory[index] &= value
        elif opcode == 0x20:
            self._erase(address, 4096)
        elif opcode == 0xD8:
            self._erase(address, 65536)
        else:
            self.memory[:] = b"\xff" * len(self.memory)
        self.wel = False
        self.busy = self.busy_polls

    def _erase(self, address: int, size: int) -> None:
        start = address - address % size
        self.memory[start : start + size] = b"\xff" * size


class SimulatedBridge(FakeTransport):
    """CH347 that answers vendor packets from a SimulatedFlash."""

    def __init__(self, flash: SimulatedFlash) -> None:
        super().__init__()
        self.flash = flash
        self.cs_asserted = False

    def handle(self, packet: bytes) -> None:
        opcode = packet[0]
        payload = packet[HEADER_SIZE:]
        if opcode == CMD_SPI_SET_CFG:
            self.queue(packet)
        elif opcode == CMD_SPI_CS_CTRL:
            if packet[3] == 0x80:
                self.cs_asserted = True
                self.flash.select()
            elif packet[3] == 0xC0:
                self.cs_asserted = False
                self.flash.deselect()
        elif opcode == CMD_SPI_OUT:
            if self.cs_asserted:
                self.flash.mosi(payload)
            self.queue(bytes([CMD_SPI_OUT, 1, 0, 0]))
        elif opcode == CMD_SPI_IN:
            count = int.from_bytes(payload[:4], "little")
            data = self.flash.miso(count) if self.cs_asserted else b"\xff" * count
            for offset in range(0, count, MAX_PAYLOAD):
                chunk = data[offset : offset + MAX_PAYLOAD]
                self.queue(bytes([CMD_SPI_IN, len(chunk) & 0xFF, len(chunk) >> 8]) + chunk)


@pytest.fixture
def fake_transport() -> FakeTransport:
    """Transport with nothing scripted."""
    return FakeTransport()


@pytest.fixture
def flash() -> SimulatedFlash:
    """Blank 2 MiB W25Q16."""
    return SimulatedFlash()


@pytest.fixture
def bridge(flash: SimulatedFlash) -> SimulatedBridge:
    """Simulated bridge wired to the flash fixture."""
    return SimulatedBridge(flash)


@pytest.fixture
def spi(bridge: SimulatedBridge) -> SpiEngine:
    """SPI engine configured at the default clock."""
    engine = SpiEngine(bridge)
    engine.configure(SpiClock.CLK_15MHZ)
    return engine


@pytest.fixture
def programmer(spi: SpiEngine) -> FlashProgrammer:
    """Programmer with no chip detected and a no-op sleep."""
    return FlashProgrammer(spi, sleep=lambda seconds: None)


@pytest.fixture
def detected(programmer: FlashProgrammer) -> FlashProgrammer:
    """Programmer that has already identified the chip."""
    programmer.detect()
    return programmer


@pytest.fixture
def connector(bridge: SimulatedBridge):
    """Session connector returning a fresh programmer on the simulated bridge."""

    def connect(settings: Settings, clock: SpiClock | None) -> FlashProgrammer:
        bridge.closed = False
        engine = SpiEngine(bridge)
        engine.configure(clock or settings.spi_clock)
        return FlashProgrammer(engine, sleep=lambda seconds: None)

    return connect


@pytest.fixture
def session(connector) -> ProgrammerSession:
    """Connected session with the chip detected."""
    s = ProgrammerSession(Settings(), connector=connector)
    s.connect()
    s.detect_chip()
    return s


@pytest.fixture
def large_flash() -> SimulatedFlash:
    """Blank 32 MiB W25Q256, larger than 3-byte addressing reaches."""
    return SimulatedFlash(jedec_id=b"\xef\x40\x19", size=32 * MiB)


@pytest.fixture
def large_detected(large_flash: SimulatedFlash) -> FlashProgrammer:
    """Programmer that has identified the 32 MiB part."""
    engine = SpiEngine(SimulatedBridge(large_flash))
    engine.configure(SpiClock.CLK_15MHZ)
    programmer = FlashProgrammer(engine, sleep=lambda seconds: None)
    programmer.detect()
    return programmer


@pytest.fixture
def large_session(large_flash: SimulatedFlash) -> ProgrammerSession:
    """Connected session with the 32 MiB part detected."""
    bridge = SimulatedBridge(large_flash)

    def connect(settings: Settings, clock: SpiClock | None) -> FlashProgrammer:
        engine = SpiEngine(bridge)
        engine.configure(clock or settings.spi_clock)
        return FlashProgrammer(engine, sleep=lambda seconds: None)

    s = ProgrammerSession(Settings(), connector=connect)
    s.connect()
    s.detect_chip()
    return s
