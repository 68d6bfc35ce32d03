"""Tests for the command line interface."""

import pytest

from sshmon.__main__ import apply_overrides, build_parser, main
from sshmon.config import Config


class TestCli:
    def test_profiles_command(self, capsys):
        assert main(["profiles"]) == 0
        out = capsys.readouterr().out
        assert "raspberry-pi" in out
        assert "ubuntu-server" in out
        assert "generic-iot" in out

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["--version"])
        assert exc.value.code == 0
        assert "sshmon" in capsys.readouterr().out

    def test_unknown_profile_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--profile", "toaster"])

    def test_overrides(self):
        args = build_parser().parse_args(
            ["--port", "2200", "--profile", "ubuntu-server", "-l", "DEBUG", "--metrics-port", "0"]
        )
        config = apply_overrides(Config(), args)
        assert config.ssh.port == 2200
        assert config.emulation.profile == "ubuntu-server"
        assert config.logging.level == "DEBUG"
        assert config.metrics.port == 0

    def test_no_overrides_keeps_config(self):
        base = Config()
        assert apply_overrides(base, build_parser().parse_args([])) == base
