"""Tests for the CLI.

Hardware commands run against the simulated bridge from conftest.py;
ProgrammerSession is patched so the CLI never looks for a real USB device.
"""

from unittest.mock import patch

import pytest
import typer
from typer.testing import CliRunner

from ch347_flasher import __version__
from ch347_flasher.cli import app, parse_address
from ch347_flasher.errors import DeviceNotFoundError
from ch347_flasher.flash.session import ProgrammerSession

runner = CliRunner()


@pytest.fixture
def simulated(connector):
    """Route the CLI's sessions to the simulated bridge."""

    def make_session(settings):
        return ProgrammerSession(settings, connector=connector)

    with patch("ch347_flasher.cli.ProgrammerSession", side_effect=make_session):
        yield


@pytest.fixture
def no_bridge():
    """Sessions whose connect fails as if nothing were plugged in."""

    def refuse(settings, clock):
        raise DeviceNotFoundError("No CH347 bridge found")

    def make_session(settings):
        return ProgrammerSession(settings, connector=refuse)

    with patch("ch347_flasher.cli.ProgrammerSession", side_effect=make_session):
        yield


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        """CLI --help should return exit code 0."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "CH347 SPI flash programmer" in result.stdout

    def test_version_flag(self) -> None:
        """CLI --version should print version and exit 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_short_version_flag(self) -> None:
        """CLI -V should print version and exit 0."""
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_no_args_shows_help(self) -> None:
        """CLI with no args should show help."""
        result = runner.invoke(app, [])
        assert "Usage:" in result.stdout


class TestParseAddress:
    """Test address parsing."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [("0", 0), ("4096", 4096), ("0x1000", 0x1000), ("0X10", 16)],
    )
    def test_valid(self, value: str, expected: int) -> None:
        """Decimal and hex addresses are accepted."""
        assert parse_address(value) == expected

    @pytest.mark.parametrize("value", ["abc", "-1", "0x"])
    def test_invalid(self, value: str) -> None:
        """Garbage and negative addresses are rejected."""
        with pytest.raises(typer.BadParameter):
            parse_address(value)


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_command(self) -> None:
        """CLI config should show all configuration sections."""
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "Bridge:" in result.stdout
        assert "SPI clock" in result.stdout
        assert "Chip database" in result.stdout
        assert "Timeouts (ms):" in result.stdout
        assert "Chip erase" in result.stdout

    def test_config_json(self) -> None:
        """CLI config --json should output JSON."""
        result = runner.invoke(app, ["config", "--json"])
        assert result.exit_code == 0
        assert '"spi_clock"' in result.stdout
        assert '"usb_timeout_ms"' in result.stdout


class TestCLIChips:
    """Test CLI chips command."""

    def test_lists_builtin_chips(self) -> None:
        """Built-in chips are listed with their IDs."""
        result = runner.invoke(app, ["chips"])
        assert result.exit_code == 0
        assert "W25Q64" in result.stdout
        assert "EF 40 17" in result.stdout

    def test_json(self) -> None:
        """chips --json emits records."""
        result = runner.invoke(app, ["chips", "--json"])
        assert result.exit_code == 0
        assert '"jedec_id": "EF 40 17"' in result.stdout

    def test_bad_database(self, tmp_path, monkeypatch) -> None:
        """An invalid chip database is reported with exit code 1."""
        path = tmp_path / "chips.yaml"
        path.write_text("chips: [unclosed", encoding="utf-8")
        monkeypatch.setenv("CH347_CHIP_DB_PATH", str(path))

        result = runner.invoke(app, ["chips"])

        assert result.exit_code == 1
        assert "Failed to load chip database" in result.stdout


class TestCLIDetect:
    """Test CLI detect command."""

    def test_detect(self, simulated) -> None:
        """detect prints the bridge and chip."""
        result = runner.invoke(app, ["detect"])
        assert result.exit_code == 0
        assert "CH347T" in result.stdout
        assert "W25Q16" in result.stdout
        assert "EF 40 15" in result.stdout

    def test_detect_json(self, simulated) -> None:
        """detect --json reports success and geometry."""
        result = runner.invoke(app, ["detect", "--json"])
        assert result.exit_code == 0
        assert '"success": true' in result.stdout
        assert '"name": "W25Q16"' in result.stdout

    def test_detect_no_bridge(self, no_bridge) -> None:
        """A missing bridge exits 1 with the error message."""
        result = runner.invoke(app, ["detect"])
        assert result.exit_code == 1
        assert "No CH347 bridge found" in result.stdout

    def test_detect_no_bridge_json(self, no_bridge) -> None:
        """Errors in JSON mode carry the error code."""
        result = runner.invoke(app, ["detect", "--json"])
        assert result.exit_code == 1
        assert '"error_code": "DEVICE_NOT_FOUND"' in result.stdout

    def test_detect_with_clock(self, simulated, bridge) -> None:
        """--clock reaches the bridge configuration packet."""
        result = runner.invoke(app, ["--clock", "60MHz", "detect"])
        assert result.exit_code == 0
        config = bridge.packets(0xC0)[-1]
        assert config[15] == 0x00


class TestCLIRead:
    """Test CLI read command."""

    def test_read_range(self, simulated, flash, tmp_path) -> None:
        """read dumps the requested range to a file."""
        flash.memory[0x1000:0x1010] = bytes(range(16))
        output = tmp_path / "dump.bin"

        result = runner.invoke(
            app, ["read", str(output), "--offset", "0x1000", "--length", "16"]
        )

        assert result.exit_code == 0
        assert output.read_bytes() == bytes(range(16))

    def test_read_past_end(self, simulated, tmp_path) -> None:
        """An out-of-range read exits 1 and writes nothing."""
        output = tmp_path / "dump.bin"

        result = runner.invoke(
            app, ["read", str(output), "--offset", "0x200000", "--length", "1"]
        )

        assert result.exit_code == 1
        assert not output.exists()

    def test_read_bad_offset(self, simulated, tmp_path) -> None:
        """A malformed address is a usage error."""
        result = runner.invoke(
            app, ["read", str(tmp_path / "x.bin"), "--offset", "zzz"]
        )
        assert result.exit_code == 2


class TestCLIWrite:
    """Test CLI write command."""

    def test_write_force(self, simulated, flash, tmp_path) -> None:
        """write --force erases, programs and verifies the image."""
        image = tmp_path / "image.bin"
        image.write_bytes(bytes(range(256)) * 3)
        flash.memory[:0x1000] = b"\x00" * 0x1000

        result = runner.invoke(app, ["write", str(image), "--force"])

        assert result.exit_code == 0
        assert "Write succeeded" in result.stdout
        assert flash.memory[:768] == bytes(range(256)) * 3
        assert flash.memory[768:0x1000] == b"\xff" * (0x1000 - 768)

    def test_write_prompts_and_aborts(self, simulated, flash, tmp_path) -> None:
        """Declining the prompt leaves the chip untouched."""
        image = tmp_path / "image.bin"
        image.write_bytes(b"\x00" * 16)

        result = runner.invoke(app, ["write", str(image)], input="n\n")

        assert result.exit_code == 0
        assert "Aborted" in result.stdout
        assert flash.memory[:16] == b"\xff" * 16

    def test_write_prompt_accepted(self, simulated, flash, tmp_path) -> None:
        """Confirming the prompt writes the image."""
        image = tmp_path / "image.bin"
        image.write_bytes(b"\x42" * 16)

        result = runner.invoke(
            app, ["write", str(image), "--offset", "0x100"], input="y\n"
        )

        assert result.exit_code == 0
        assert flash.memory[0x100:0x110] == b"\x42" * 16

    def test_write_missing_image(self, simulated, tmp_path) -> None:
        """A missing image exits 1."""
        result = runner.invoke(app, ["write", str(tmp_path / "nope.bin"), "--force"])
        assert result.exit_code == 1
        assert "Failed to read" in result.stdout

    def test_write_too_large(self, simulated, flash, tmp_path) -> None:
        """An image that does not fit the chip exits 1."""
        image = tmp_path / "image.bin"
        image.write_bytes(b"\x00" * 32)

        result = runner.invoke(
            app, ["write", str(image), "--offset", "0x1FFFF0", "--force"]
        )

        assert result.exit_code == 1
        assert "exceeds" in result.stdout

    def test_write_no_erase_no_verify(self, simulated, flash, tmp_path) -> None:
        """--no-erase and --no-verify skip those phases."""
        image = tmp_path / "image.bin"
        image.write_bytes(b"\x0f")
        flash.memory[0] = 0xF0

        result = runner.invoke(
            app, ["write", str(image), "--no-erase", "--no-verify", "--force"]
        )

        assert result.exit_code == 0
        assert flash.memory[0] == 0x00
        assert 0x20 not in flash.executed


class TestCLIVerify:
    """Test CLI verify command."""

    def test_verify_match(self, simulated, flash, tmp_path) -> None:
        """Matching contents exit 0."""
        image = tmp_path / "image.bin"
        image.write_bytes(b"\xff" * 64)

        result = runner.invoke(app, ["verify", str(image)])

        assert result.exit_code == 0
        assert "Verified 64 bytes" in result.stdout

    def test_verify_mismatch(self, simulated, flash, tmp_path) -> None:
        """Differing contents exit 1."""
        image = tmp_path / "image.bin"
        image.write_bytes(b"\x00" * 64)

        result = runner.invoke(app, ["verify", str(image)])

        assert result.exit_code == 1
        assert "Verification failed" in result.stdout


class TestCLIErase:
    """Test CLI erase command."""

    def test_erase_sector(self, simulated, flash) -> None:
        """--sector erases one 4 KiB sector."""
        flash.memory[:0x3000] = b"\x00" * 0x3000

        result = runner.invoke(app, ["erase", "--sector", "0x1000", "--force"])

        assert result.exit_code == 0
        assert flash.memory[0x1000:0x2000] == b"\xff" * 0x1000
        assert flash.memory[0x0FFF] == 0
        assert flash.memory[0x2000] == 0

    def test_erase_block(self, simulated, flash) -> None:
        """--block erases one 64 KiB block."""
        flash.memory[:0x20000] = b"\x00" * 0x20000

        result = runner.invoke(app, ["erase", "--block", "0x10000", "--force"])

        assert result.exit_code == 0
        assert flash.memory[0x10000:0x20000] == b"\xff" * 0x10000

    def test_erase_chip(self, simulated, flash) -> None:
        """--chip erases everything."""
        flash.memory[0x1234] = 0

        result = runner.invoke(app, ["erase", "--chip", "--force"])

        assert result.exit_code == 0
        assert flash.memory[0x1234] == 0xFF

    def test_erase_needs_exactly_one_target(self, simulated) -> None:
        """Zero or several targets are refused."""
        assert runner.invoke(app, ["erase", "--force"]).exit_code == 1
        result = runner.invoke(app, ["erase", "--chip", "--sector", "0", "--force"])
        assert result.exit_code == 1

    def test_erase_prompt_declined(self, simulated, flash) -> None:
        """Declining the prompt erases nothing."""
        flash.memory[0] = 0

        result = runner.invoke(app, ["erase", "--chip"], input="n\n")

        assert result.exit_code == 0
        assert flash.memory[0] == 0
