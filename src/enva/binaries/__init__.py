"""Package manager binary management."""
from enva.binaries.fetcher import download_with_retry, install_payload, verify_payload
from enva.binaries.platforms import get_platform_info, make_executable
from enva.binaries.resolver import BinaryResolver

__all__ = [
    "BinaryResolver",
    "download_with_retry",
    "install_payload",
    "verify_payload",
    "get_platform_info",
    "make_executable",
]
