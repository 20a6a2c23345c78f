"""Locate or install the package manager executable."""
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from enva.binaries.constants import MICROMAMBA_API_URL, MICROMAMBA_BINARY, MICROMAMBA_GITHUB_URL
from enva.binaries.fetcher import download_with_retry, install_payload
from enva.binaries.platforms import executable_name, get_platform_info, is_executable
from enva.config import PACKAGE_MANAGER_VAR, Settings
from enva.errors import InstallationError, NetworkError
from enva.logging import get_logger
from enva.types import PackageManager, ResolvedBinary

logger = get_logger(__name__)

# Search order when no override is configured
DETECTION_ORDER = (PackageManager.CONDA, PackageManager.MAMBA, PackageManager.MICROMAMBA)


def parse_manager(name: str) -> PackageManager:
    try:
        return PackageManager(name.strip().lower())
    except ValueError:
        choices = ", ".join(pm.value for pm in PackageManager)
        raise InstallationError(
            f"Unknown package manager {name!r} in {PACKAGE_MANAGER_VAR}, expected one of: {choices}",
            details={"package_manager": name},
        ) from None


def download_sources(platform_id: str, release_id: str) -> list[tuple[str, str]]:
    """Download sources in the order they are tried."""
    return [
        ("micro.mamba.pm", MICROMAMBA_API_URL.format(platform=platform_id)),
        ("github", MICROMAMBA_GITHUB_URL.format(platform=release_id)),
    ]


class BinaryResolver:
    """Find a usable package manager, downloading micromamba when none exists."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings.from_env()

    @property
    def install_path(self) -> Path:
        return self.settings.install_dir / executable_name(MICROMAMBA_BINARY)

    async def ensure_binary(self) -> ResolvedBinary:
        """Resolve the package manager, installing micromamba if needed."""
        found = self.find()
        if found is not None:
            return found

        logger.info("package_manager_missing", action="install", target=str(self.install_path))
        path = await self.install()
        return ResolvedBinary(manager=PackageManager.MICROMAMBA, path=path, downloaded=True)

    def find(self) -> Optional[ResolvedBinary]:
        """Resolve without downloading; None when nothing is installed."""
        if self.settings.package_manager:
            return self.resolve_override(self.settings.package_manager)
        return self.search()

    def resolve_override(self, name: str) -> ResolvedBinary:
        """Use the explicitly selected package manager without probing it."""
        manager = parse_manager(name)
        path = shutil.which(manager.value)
        if not path:
            raise InstallationError(
                f"Package manager {manager.value} selected by {PACKAGE_MANAGER_VAR} was not found in PATH",
                details={"package_manager": manager.value},
            )
        logger.info("package_manager_override", manager=manager.value, path=path)
        return ResolvedBinary(manager=manager, path=Path(path))

    def search(self) -> Optional[ResolvedBinary]:
        """Look for an existing installation in PATH and well-known locations."""
        for manager in DETECTION_ORDER:
            path = shutil.which(manager.value)
            if path:
                logger.info("package_manager_detected", manager=manager.value, path=path)
                return ResolvedBinary(manager=manager, path=Path(path))

        candidates = [*self.settings.search_paths, self.install_path]
        for candidate in candidates:
            if is_executable(candidate):
                logger.info(
                    "package_manager_detected",
                    manager=PackageManager.MICROMAMBA.value,
                    path=str(candidate),
                )
                return ResolvedBinary(manager=PackageManager.MICROMAMBA, path=candidate.resolve())

        logger.debug("package_manager_not_found", searched=[str(c) for c in candidates])
        return None

    async def install(self) -> Path:
        """Download micromamba into the install directory."""
        try:
            info = get_platform_info()
        except RuntimeError as e:
            raise InstallationError(str(e)) from e

        dest = self.install_path
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            self.settings.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise InstallationError(
                f"Failed to create installation directory {dest.parent}: {e}",
                details={"install_dir": str(dest.parent), "cache_dir": str(self.settings.cache_dir)},
            ) from e

        last_error: Optional[InstallationError] = None
        for source, url in download_sources(info.conda_platform, info.release_platform):
            logger.info("download_source", source=source, url=url)
            with tempfile.TemporaryDirectory(prefix="download-", dir=self.settings.cache_dir) as tmpdir:
                payload = Path(tmpdir) / "micromamba.download"
                try:
                    await download_with_retry(
                        url,
                        payload,
                        attempts=self.settings.download_attempts,
                        backoff=self.settings.backoff,
                        max_backoff=self.settings.max_backoff,
                        timeout=self.settings.download_timeout,
                    )
                    install_payload(payload, dest)
                except InstallationError as e:
                    logger.warning("download_source_failed", source=source, error=str(e))
                    last_error = e
                    continue

            logger.info("package_manager_installed", path=str(dest), source=source)
            return dest

        message = (
            "Failed to download micromamba from all sources. Install it manually from "
            "https://github.com/mamba-org/micromamba-releases or select an installed "
            f"package manager with {PACKAGE_MANAGER_VAR}"
        )
        if isinstance(last_error, NetworkError):
            raise NetworkError(f"{message}: {last_error}", details=last_error.details) from last_error
        raise InstallationError(f"{message}: {last_error}") from last_error
