"""Runtime settings read from the process environment."""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

import appdirs

from enva.errors import ConfigError

APP_NAME = "enva"

# Environment variables consulted by Settings.from_env
PACKAGE_MANAGER_VAR = "ENVA_PACKAGE_MANAGER"
INSTALL_DIR_VAR = "MICROMAMBA_INSTALL_DIR"
CONFIG_DIR_VAR = "ENVA_CONFIG_DIR"
DOWNLOAD_ATTEMPTS_VAR = "ENVA_DOWNLOAD_ATTEMPTS"
DOWNLOAD_BACKOFF_VAR = "ENVA_DOWNLOAD_BACKOFF"

DEFAULT_SEARCH_PATHS = (
    Path("/usr/local/bin/micromamba"),
    Path("/opt/micromamba/bin/micromamba"),
    Path("/usr/bin/micromamba"),
)


def default_install_dir(environ: Mapping[str, str]) -> Path:
    """Directory that receives a downloaded micromamba."""
    if custom := environ.get(INSTALL_DIR_VAR):
        return Path(custom)
    if data_home := environ.get("XDG_DATA_HOME"):
        return Path(data_home) / "micromamba"
    return Path(appdirs.user_data_dir("micromamba"))


def default_config_dirs(environ: Mapping[str, str]) -> tuple[Path, ...]:
    """Directories searched for ``<name>.yaml`` spec files."""
    cwd = Path.cwd()
    dirs = [cwd / "src" / "configs", cwd / "environments" / "configs"]
    if custom := environ.get(CONFIG_DIR_VAR):
        dirs.insert(0, Path(custom))
    return tuple(dirs)


def _int_setting(environ: Mapping[str, str], var: str, default: int) -> int:
    raw = environ.get(var)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{var} must be an integer, got {raw!r}") from None
    if value < 1:
        raise ConfigError(f"{var} must be at least 1, got {value}")
    return value


def _float_setting(environ: Mapping[str, str], var: str, default: float) -> float:
    raw = environ.get(var)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{var} must be a number, got {raw!r}") from None
    if value < 0:
        raise ConfigError(f"{var} must not be negative, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    """Settings shared by the resolver, manager and CLI"""
    package_manager: Optional[str] = None
    install_dir: Path = field(default_factory=lambda: default_install_dir(os.environ))
    cache_dir: Path = field(default_factory=lambda: Path(appdirs.user_cache_dir(APP_NAME)))
    download_attempts: int = 3
    backoff: float = 1.0
    max_backoff: float = 30.0
    download_timeout: float = 300.0
    search_paths: tuple[Path, ...] = DEFAULT_SEARCH_PATHS
    config_dirs: tuple[Path, ...] = ()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        environ = os.environ if environ is None else environ
        override = environ.get(PACKAGE_MANAGER_VAR) or None
        return cls(
            package_manager=override.strip().lower() if override else None,
            install_dir=default_install_dir(environ),
            download_attempts=_int_setting(environ, DOWNLOAD_ATTEMPTS_VAR, 3),
            backoff=_float_setting(environ, DOWNLOAD_BACKOFF_VAR, 1.0),
            config_dirs=default_config_dirs(environ),
        )
