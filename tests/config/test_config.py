"""
Unit tests for the ConfigAccessor class and the settings getters in gitclient.config.
"""

import os
import pytest
import tempfile
from pathlib import Path
from unittest.mock import patch

from gitclient.config import (
    ConfigAccessor,
    config_dir,
    get_default_implementation,
    get_default_submodule_threads,
    get_default_timeout,
    get_git_executable,
    get_lock_retry_settings,
)


@pytest.fixture
def temp_config_file():
    """Create a temporary config file for testing."""
    with tempfile.NamedTemporaryFile(mode="w+", delete=False) as f:
        f.write("""
[git]
executable = /opt/git/bin/git
implementation = dulwich
timeout = 25

[submodules]
threads = 4
        """)
        temp_path = f.name

    yield Path(temp_path)

    # Clean up the temporary file after the test
    os.unlink(temp_path)


@pytest.fixture
def empty_config_file():
    """Create an empty temporary config file for testing."""
    with tempfile.NamedTemporaryFile(mode="w+", delete=False) as f:
        temp_path = f.name

    yield Path(temp_path)

    os.unlink(temp_path)


@pytest.mark.short
def test_config_accessor_get_existing(temp_config_file):
    config = ConfigAccessor(temp_config_file)

    assert config.get("git", "executable") == "/opt/git/bin/git"
    assert config.get("submodules", "threads") == "4"


@pytest.mark.short
def test_config_accessor_get_missing(temp_config_file):
    config = ConfigAccessor(temp_config_file)

    assert config.get("git", "missing_key", default="default") == "default"
    assert config.get("missing_section", "key", default="default") == "default"
    assert config.get("missing_section", "key") is None


@pytest.mark.short
def test_config_accessor_missing_file(tmp_path):
    config = ConfigAccessor(tmp_path / "absent" / "gitclient.cfg")

    assert config.get("git", "timeout") is None
    assert not config.config_path.exists()


@pytest.mark.short
def test_default_config_path():
    config = ConfigAccessor()

    assert config.config_path == config_dir / "gitclient.cfg"


@pytest.mark.short
def test_settings_from_config_file(temp_config_file):
    config = ConfigAccessor(temp_config_file)

    with patch("gitclient.config.config", config):
        assert get_git_executable() == "/opt/git/bin/git"
        assert get_default_implementation() == "dulwich"
        assert get_default_timeout() == 25
        assert get_default_submodule_threads() == 4


@pytest.mark.short
def test_settings_defaults(empty_config_file):
    config = ConfigAccessor(empty_config_file)

    with patch("gitclient.config.config", config):
        assert get_git_executable() == "git"
        assert get_default_implementation() == "git"
        assert get_default_timeout() == 10
        assert get_default_submodule_threads() == 1
        assert get_lock_retry_settings() == (3, 1.0)


@pytest.mark.short
def test_environment_overrides_config_file(temp_config_file, monkeypatch):
    config = ConfigAccessor(temp_config_file)
    monkeypatch.setenv("GITCLIENT_IMPLEMENTATION", "git")
    monkeypatch.setenv("GITCLIENT_GIT_EXECUTABLE", "/usr/local/bin/git")

    with patch("gitclient.config.config", config):
        assert get_default_implementation() == "git"
        assert get_git_executable() == "/usr/local/bin/git"


@pytest.mark.short
def test_invalid_values_fall_back(empty_config_file):
    empty_config_file.write_text(
        "[git]\ntimeout = soon\n\n[locks]\nretries = many\n\n[submodules]\nthreads = 0\n"
    )
    config = ConfigAccessor(empty_config_file)

    with patch("gitclient.config.config", config):
        assert get_default_timeout() == 10
        assert get_lock_retry_settings() == (3, 1.0)
        assert get_default_submodule_threads() == 1
