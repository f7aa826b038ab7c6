"""Tests for the command-line interface."""

from pathlib import Path

from click.testing import CliRunner

from rfq_tracker.cli import cli


class TestValidateConfigCommand:
    """Tests for `rfq-tracker validate-config`."""

    def test_valid_config(self, config_file: Path) -> None:
        """Test that a valid file exits 0 with a summary."""
        result = CliRunner().invoke(cli, ["validate-config", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Configuration valid" in result.output

    def test_missing_config(self, tmp_path: Path) -> None:
        """Test that a missing file exits 1 with the load error."""
        result = CliRunner().invoke(cli, ["validate-config", "-c", str(tmp_path / "missing.yaml")])

        assert result.exit_code == 1
        assert "Load error" in result.output

    def test_help_lists_commands(self) -> None:
        """Test that every command is registered on the group."""
        result = CliRunner().invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in ("validate-config", "send", "monitor", "status", "recover", "abandon", "serve"):
            assert command in result.output
