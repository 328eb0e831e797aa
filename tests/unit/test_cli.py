"""
Tests for the sops-sakura-kms command-line interface.
"""

import stat
import sys

import pytest
from click.testing import CliRunner

from sops_sakura_kms import __version__
from sops_sakura_kms.cli import cli

ENV_VARS = (
    "SAKURA_KMS_KEY_ID",
    "SAKURACLOUD_KMS_KEY_ID",
    "SAKURACLOUD_ACCESS_TOKEN",
    "SAKURACLOUD_ACCESS_TOKEN_SECRET",
    "SAKURACLOUD_KMS_ENDPOINT",
    "SSK_SERVER_ADDR",
    "SSK_SHUTDOWN_TIMEOUT",
    "SSK_LOG_LEVEL",
    "SSK_LOG_FORMAT",
    "SSK_COMMAND",
    "SSK_SERVER_ONLY",
)


@pytest.fixture
def runner():
    """Create CLI runner."""
    return CliRunner()


@pytest.fixture
def clean_env(monkeypatch):
    """Remove wrapper variables inherited from the test environment."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def wrapper_env(clean_env):
    """Environment for wrapper mode with the interpreter as the command."""
    clean_env.setenv("SAKURA_KMS_KEY_ID", "123456789012")
    clean_env.setenv("SAKURACLOUD_ACCESS_TOKEN", "token")
    clean_env.setenv("SAKURACLOUD_ACCESS_TOKEN_SECRET", "secret")
    clean_env.setenv("SSK_SERVER_ADDR", "127.0.0.1:0")
    clean_env.setenv("SSK_COMMAND", sys.executable)
    return clean_env


class TestVersion:
    """Test version output."""

    @pytest.mark.parametrize("flag", ["--version", "-version"])
    def test_version(self, runner, clean_env, tmp_path, flag):
        """Test both version spellings print the command's and our version."""
        script = tmp_path / "sops"
        script.write_text('#!/bin/sh\necho "sops 3.9.0"\n')
        script.chmod(script.stat().st_mode | stat.S_IEXEC)
        clean_env.setenv("SSK_COMMAND", str(script))

        result = runner.invoke(cli, [flag])

        assert result.exit_code == 0
        assert result.stdout == f"sops 3.9.0\nsops-sakura-kms version {__version__}\n"

    def test_version_without_key_id(self, runner, clean_env):
        """Test version needs no key id, even when the command is missing."""
        clean_env.setenv("SSK_COMMAND", "/nonexistent/sops")

        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 255
        assert f"sops-sakura-kms version {__version__}" in result.stdout


class TestWrapperMode:
    """Test running the wrapped command."""

    def test_missing_key_id(self, runner, clean_env):
        """Test a missing key id exits with the internal error code."""
        clean_env.setenv("SSK_COMMAND", sys.executable)

        result = runner.invoke(cli, ["-c", "pass"])

        assert result.exit_code == 255

    def test_invalid_configuration(self, runner, wrapper_env):
        """Test invalid variables exit with the internal error code."""
        wrapper_env.setenv("SSK_SERVER_ONLY", "maybe")

        result = runner.invoke(cli, ["-c", "pass"])

        assert result.exit_code == 255

    def test_missing_credentials(self, runner, wrapper_env):
        """Test missing KMS credentials exit with the internal error code."""
        wrapper_env.delenv("SAKURACLOUD_ACCESS_TOKEN_SECRET")

        result = runner.invoke(cli, ["-c", "pass"])

        assert result.exit_code == 255

    @pytest.mark.parametrize("code", [0, 1, 3])
    def test_exit_code_propagated(self, runner, wrapper_env, code):
        """Test the child's exit code becomes ours."""
        result = runner.invoke(cli, ["-c", f"import sys; sys.exit({code})"])

        assert result.exit_code == code

    def test_options_are_not_interpreted(self, runner, wrapper_env, tmp_path):
        """Test option-like arguments, including --help, reach the command."""
        out = tmp_path / "argv.txt"
        code = f"import sys; open({str(out)!r}, 'w').write(' '.join(sys.argv[1:]))"

        result = runner.invoke(cli, ["-c", code, "--help", "-d", "secrets.enc.yaml"])

        assert result.exit_code == 0
        assert out.read_text() == "--help -d secrets.enc.yaml"

    def test_transit_flag_rejected(self, runner, wrapper_env):
        """Test a user-supplied transit URI is refused."""
        result = runner.invoke(cli, ["--hc-vault-transit", "http://vault", "-e", "f.yaml"])

        assert result.exit_code == 255
