"""User configuration for the git client (executable, backend, timeouts, lock retries)"""

import configparser
import os
import platform
from typing import Optional, Any, Tuple

from pathlib import Path

APP_NAME = "gitclient"

_home = os.path.expanduser("~")

xdg_config_home = os.environ.get("XDG_CONFIG_HOME") or os.path.join(_home, ".config")


default_cfg = {
    "git": {"executable": "git", "implementation": "git", "timeout": "10"},
    "locks": {"retries": "3", "delay": "1.0"},
    "submodules": {"threads": "1"},
}

if platform.system() == "Darwin":
    # macOS
    config_dir = Path(f"~/Library/Application Support/{APP_NAME}").expanduser()
else:
    # Linux or others
    config_dir = Path(os.path.join(xdg_config_home, APP_NAME))


def get_config_file():
    return config_dir / f"{APP_NAME}.cfg"


class ConfigAccessor:
    """
    A dict-like accessor for configuration files.

    This class provides a way to access configuration options with a dictionary-like
    interface while handling missing sections or keys gracefully.

    Usage:
        config = ConfigAccessor()
        value = config.get('section', 'key', default='default')
    """

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize a ConfigAccessor with an optional config file path.

        Args:
            config_path: Path to the configuration file. If None, uses the default path.
        """
        if config_path is None:
            self.config_path = get_config_file()
        else:
            self.config_path = config_path

        self.config = configparser.ConfigParser()
        if self.config_path.exists():
            self.config.read(self.config_path)

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """
        Get a configuration value from the specified section and key.

        Args:
            section: The configuration section
            key: The configuration key
            default: Value to return if the section or key doesn't exist

        Returns:
            The configuration value if it exists, otherwise the default value
        """
        try:
            return self.config[section][key]
        except (KeyError, configparser.NoSectionError, configparser.NoOptionError):
            return default


# Create a global config accessor instance
config = ConfigAccessor()


def _get(section: str, key: str) -> str:
    return config.get(section, key, default_cfg[section][key])


def get_git_executable() -> str:
    """
    Get the git executable used by the subprocess backend.

    GITCLIENT_GIT_EXECUTABLE overrides the configuration file.
    """
    return os.environ.get("GITCLIENT_GIT_EXECUTABLE") or _get("git", "executable")


def get_default_implementation() -> str:
    """
    Get the name of the backend used when none is requested explicitly.

    Returns:
        "git" (subprocess) or "dulwich" (embedded)
    """
    return os.environ.get("GITCLIENT_IMPLEMENTATION") or _get("git", "implementation")


def get_default_timeout() -> int:
    """
    Get the default per-command timeout in minutes.

    Invalid values fall back to the built-in default.
    """
    try:
        timeout = int(_get("git", "timeout"))
    except ValueError:
        timeout = int(default_cfg["git"]["timeout"])
    return timeout if timeout > 0 else int(default_cfg["git"]["timeout"])


def get_lock_retry_settings() -> Tuple[int, float]:
    """
    Get the bounded retry policy for lock contention.

    Returns:
        Tuple of (attempts, delay_in_seconds)
    """
    try:
        retries = int(_get("locks", "retries"))
        delay = float(_get("locks", "delay"))
    except ValueError:
        retries = int(default_cfg["locks"]["retries"])
        delay = float(default_cfg["locks"]["delay"])
    return max(retries, 1), max(delay, 0.0)


def get_default_submodule_threads() -> int:
    try:
        threads = int(_get("submodules", "threads"))
    except ValueError:
        return 1
    return max(threads, 1)
