"""Package manager download, verification and extraction."""
import asyncio
import shutil
import tarfile
from pathlib import Path
from typing import Dict, Optional

import aiohttp

from enva.binaries.constants import (
    ARCHIVE_MEMBERS,
    BZIP2_MAGIC,
    EXECUTABLE_MAGICS,
    HTML_PREFIXES,
    USER_AGENT,
)
from enva.binaries.platforms import make_executable
from enva.errors import InstallationError, NetworkError
from enva.logging import get_logger

logger = get_logger(__name__)

CHUNK_SIZE = 8192


def is_retryable(error: BaseException) -> bool:
    """Transient network failures are retried, client errors are not."""
    if isinstance(error, aiohttp.ClientResponseError):
        return error.status >= 500 or error.status == 429
    return isinstance(error, (aiohttp.ClientError, asyncio.TimeoutError))


async def download_file(
    url: str,
    dest: Path,
    timeout: float = 300.0,
    headers: Optional[Dict[str, str]] = None,
) -> int:
    """Download a file with streaming, returning the number of bytes written."""
    request_headers = {"User-Agent": USER_AGENT, **(headers or {})}
    client_timeout = aiohttp.ClientTimeout(total=timeout)

    logger.info("download_started", url=url, destination=str(dest))

    try:
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.get(url, headers=request_headers, allow_redirects=True) as response:
                if response.status != 200:
                    logger.error(
                        "download_request_failed",
                        url=url,
                        status=response.status,
                        reason=response.reason,
                    )
                    response.raise_for_status()

                downloaded = 0
                with open(dest, "wb") as f:
                    async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                        f.write(chunk)
                        downloaded += len(chunk)
    except BaseException:
        dest.unlink(missing_ok=True)
        raise

    logger.info("download_complete", url=url, size=downloaded)
    return downloaded


async def download_with_retry(
    url: str,
    dest: Path,
    attempts: int = 3,
    backoff: float = 1.0,
    max_backoff: float = 30.0,
    timeout: float = 300.0,
) -> int:
    """Download ``url`` retrying transient failures with exponential backoff.

    Raises NetworkError once ``attempts`` are used up, or immediately for
    errors that retrying cannot fix (for example HTTP 404).
    """
    for attempt in range(attempts):
        try:
            return await download_file(url, dest, timeout=timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            status = getattr(e, "status", None)
            if not is_retryable(e):
                raise NetworkError(
                    f"Failed to download {url}: {e}",
                    details={"url": url, "status": status, "attempts": attempt + 1},
                ) from e
            if attempt + 1 >= attempts:
                raise NetworkError(
                    f"Failed to download {url} after {attempts} attempts: {e}",
                    details={"url": url, "status": status, "attempts": attempts},
                ) from e

            delay = min(backoff * (2**attempt), max_backoff)
            logger.warning(
                "download_retry",
                url=url,
                attempt=attempt + 1,
                attempts=attempts,
                delay=delay,
                error=str(e),
            )
            await asyncio.sleep(delay)

    raise NetworkError(f"Failed to download {url}", details={"url": url})


def verify_payload(path: Path) -> str:
    """Check a download looks usable; returns ``"archive"`` or ``"binary"``."""
    if not path.exists() or path.stat().st_size == 0:
        raise InstallationError(
            "Download failed - file is missing or empty", details={"path": str(path)}
        )

    with open(path, "rb") as f:
        head = f.read(64)

    if head.lstrip().lower().startswith(HTML_PREFIXES):
        raise InstallationError(
            "Received HTML instead of a binary", details={"path": str(path)}
        )
    if head.startswith(BZIP2_MAGIC):
        return "archive"
    if head.startswith(EXECUTABLE_MAGICS):
        return "binary"

    raise InstallationError(
        "Downloaded file is neither an archive nor an executable",
        details={"path": str(path), "head": head[:8].hex()},
    )


def extract_binary(archive_path: Path, dest: Path) -> Path:
    """Extract the micromamba executable from a .tar.bz2 package to ``dest``."""
    logger.debug("extract_archive", archive=str(archive_path), dest=str(dest))

    try:
        with tarfile.open(archive_path, "r:bz2") as archive:
            names = archive.getnames()
            matching = [n for n in names if n.lstrip("./") in ARCHIVE_MEMBERS]
            if not matching:
                logger.error(
                    "binary_not_in_archive", archive=str(archive_path), available=names[:20]
                )
                raise InstallationError(
                    "Binary micromamba not found in archive",
                    details={"archive": str(archive_path)},
                )

            member = archive.extractfile(matching[0])
            if member is None:
                raise InstallationError(
                    f"Archive member {matching[0]} is not a regular file",
                    details={"archive": str(archive_path)},
                )
            dest.parent.mkdir(parents=True, exist_ok=True)
            with member, open(dest, "wb") as out:
                shutil.copyfileobj(member, out)
    except (tarfile.TarError, OSError) as e:
        raise InstallationError(
            f"Failed to extract from {archive_path.name}: {e}",
            details={"archive": str(archive_path)},
        ) from e

    logger.info("binary_extracted", archive=str(archive_path), extracted_to=str(dest))
    return dest


def install_payload(payload: Path, dest: Path) -> Path:
    """Place a verified download at ``dest`` and mark it executable."""
    kind = verify_payload(payload)
    if kind == "archive":
        extract_binary(payload, dest)
    else:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(payload, dest)

    try:
        make_executable(dest)
    except OSError as e:
        raise InstallationError(
            f"Failed to set execute permission on {dest}: {e}", details={"path": str(dest)}
        ) from e

    return dest
