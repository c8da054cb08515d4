"""Tests for port_selector.context module."""

import os
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

import pytest

from port_selector.config import CONFIG_FILENAME
from port_selector.context import (
    CONFIG_DIR_ENV,
    detect_cwd,
    resolve_config_dir,
    resolve_context,
)
from port_selector.errors import ConfigError


class TestDetectCwd:
    """Tests for detect_cwd function."""

    def test_explicit_path_normalized(self):
        """Test that an explicit directory loses its trailing slash."""
        assert detect_cwd("/home/u/project/") == "/home/u/project"

    def test_leading_double_slash(self):
        """Test that a //-prefixed directory maps to the same key as its / spelling."""
        assert detect_cwd("//home/u/project") == "/home/u/project"

    def test_prefers_logical_pwd(self):
        """Test that a symlinked $PWD is kept instead of the resolved path."""
        with TemporaryDirectory() as tmpdir:
            real = Path(tmpdir) / "real"
            real.mkdir()
            link = Path(tmpdir) / "link"
            link.symlink_to(real)
            with patch.dict(os.environ, {"PWD": str(link)}):
                with patch("port_selector.context.os.getcwd", return_value=str(real)):
                    assert detect_cwd() == str(link)

    def test_stale_pwd_ignored(self):
        """Test that a $PWD pointing elsewhere falls back to getcwd."""
        with TemporaryDirectory() as tmpdir:
            with patch.dict(os.environ, {"PWD": "/nonexistent/dir"}):
                with patch("port_selector.context.os.getcwd", return_value=tmpdir):
                    assert detect_cwd() == os.path.normpath(tmpdir)


class TestResolveConfigDir:
    """Tests for resolve_config_dir function."""

    def test_explicit_wins(self):
        """Test that an explicit directory beats the environment."""
        with patch.dict(os.environ, {CONFIG_DIR_ENV: "/from/env"}):
            assert resolve_config_dir("/explicit") == Path("/explicit")

    def test_environment(self):
        """Test that PORT_SELECTOR_CONFIG_DIR is honoured."""
        with patch.dict(os.environ, {CONFIG_DIR_ENV: "/from/env"}):
            assert resolve_config_dir() == Path("/from/env")

    def test_default(self):
        """Test that the click app directory is the default."""
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop(CONFIG_DIR_ENV, None)
            with patch("port_selector.context.default_config_dir", return_value=Path("/default")):
                assert resolve_config_dir() == Path("/default")


class TestResolveContext:
    """Tests for resolve_context function."""

    def test_builds_context(self):
        """Test that config, cwd, verbosity and event log are resolved."""
        with TemporaryDirectory() as tmpdir:
            config_dir = Path(tmpdir)
            log_path = config_dir / "events.log"
            (config_dir / CONFIG_FILENAME).write_text(f"portStart: 7000\nportEnd: 7100\nlog: {log_path}\n")

            run = resolve_context(config_dir=config_dir, cwd="/work/project/", verbose=True)
            try:
                assert run.config_dir == config_dir
                assert run.config.port_start == 7000
                assert run.cwd == "/work/project"
                assert run.verbose is True
                assert run.events.enabled
                assert run.events.path == log_path
            finally:
                run.close()

    def test_no_log_configured(self):
        """Test that the event log is disabled without a log setting."""
        with TemporaryDirectory() as tmpdir:
            run = resolve_context(config_dir=tmpdir, cwd="/work")
            assert not run.events.enabled

    def test_invalid_config(self):
        """Test that an invalid config raises ConfigError."""
        with TemporaryDirectory() as tmpdir:
            (Path(tmpdir) / CONFIG_FILENAME).write_text("portStart: 9000\nportEnd: 10\n")
            with pytest.raises(ConfigError):
                resolve_context(config_dir=tmpdir, cwd="/work")
