"""Package manager download sources and constants."""

USER_AGENT = "enva/0.1.0 (compatible; Mozilla/5.0)"

# Official micromamba API, serves a conda package (.tar.bz2)
MICROMAMBA_API_URL = "https://micro.mamba.pm/api/micromamba/{platform}/latest"

# GitHub release assets, serve the raw executable
MICROMAMBA_GITHUB_URL = (
    "https://github.com/mamba-org/micromamba-releases/releases/latest/download/"
    "micromamba-{platform}"
)

MICROMAMBA_BINARY = "micromamba"

# Members of the official archive that hold the executable
ARCHIVE_MEMBERS = ("bin/micromamba", "Library/bin/micromamba.exe")

# Magic numbers used to verify a download before installing it
BZIP2_MAGIC = b"BZh"
EXECUTABLE_MAGICS = (
    b"\x7fELF",  # Linux
    b"MZ",  # Windows PE
    b"\xcf\xfa\xed\xfe",  # Mach-O 64-bit
    b"\xce\xfa\xed\xfe",  # Mach-O 32-bit
    b"\xca\xfe\xba\xbe",  # Mach-O universal
)
HTML_PREFIXES = (b"<!doctype html", b"<html")
