"""Platform detection and mapping."""
import os
import platform
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import NamedTuple, Optional


@dataclass(frozen=True)
class PlatformInfo:
    """Platform information."""
    os_name: str
    arch: str
    conda_platform: str
    release_platform: str
    executable_suffix: str


class PlatformMapping(NamedTuple):
    """Platform-specific values."""
    conda: str
    release: str
    executable_suffix: str
    bin_dirs: tuple[str, ...]


# Architecture mappings
ARCH_MAPPINGS = {
    "x86_64": {"conda": "64", "release": "64"},
    "aarch64": {"conda": "aarch64", "release": "aarch64"},
}

# Platform mappings keyed by platform.system()
PLATFORM_MAPPINGS = {
    "Linux": PlatformMapping(
        conda="linux",
        release="linux",
        executable_suffix="",
        bin_dirs=("bin",),
    ),
    "Darwin": PlatformMapping(
        conda="osx",
        release="osx",
        executable_suffix="",
        bin_dirs=("bin",),
    ),
    "Windows": PlatformMapping(
        conda="win",
        release="win",
        executable_suffix=".exe",
        bin_dirs=("", "Scripts", "Library/bin"),
    ),
}


def _normalize_machine(machine: str) -> str:
    machine = machine.lower()
    if machine in ("arm64", "aarch64"):
        return "aarch64"
    if machine in ("amd64", "x86_64"):
        return "x86_64"
    return machine


def get_platform_info(system: Optional[str] = None, machine: Optional[str] = None) -> PlatformInfo:
    """Get current platform information."""
    system = system or platform.system()
    machine = _normalize_machine(machine or platform.machine())

    if system not in PLATFORM_MAPPINGS:
        raise RuntimeError(f"Unsupported operating system: {system}")

    if machine not in ARCH_MAPPINGS:
        raise RuntimeError(f"Unsupported architecture: {machine}")

    platform_map = PLATFORM_MAPPINGS[system]
    arch_map = ARCH_MAPPINGS[machine]

    # Apple Silicon is published as osx-arm64, everything else keeps aarch64
    arch = arch_map["conda"]
    if system == "Darwin" and machine == "aarch64":
        arch = "arm64"
    if system == "Windows" and machine == "aarch64":
        raise RuntimeError("Unsupported platform: Windows on aarch64")

    return PlatformInfo(
        os_name=system.lower(),
        arch=machine,
        conda_platform=f"{platform_map.conda}-{arch}",
        release_platform=f"{platform_map.release}-{arch}",
        executable_suffix=platform_map.executable_suffix,
    )


def executable_name(name: str, system: Optional[str] = None) -> str:
    """Name of an executable file on the given platform."""
    mapping = PLATFORM_MAPPINGS.get(system or platform.system())
    suffix = mapping.executable_suffix if mapping else ""
    if suffix and not name.endswith(suffix):
        return f"{name}{suffix}"
    return name


def executable_candidates(prefix: Path, name: str, system: Optional[str] = None) -> list[Path]:
    """Locations an environment may hold executable ``name`` in."""
    system = system or platform.system()
    mapping = PLATFORM_MAPPINGS.get(system, PLATFORM_MAPPINGS["Linux"])
    filename = executable_name(name, system)
    return [prefix / bin_dir / filename if bin_dir else prefix / filename for bin_dir in mapping.bin_dirs]


def supports_exec_bit() -> bool:
    return os.name != "nt"


def make_executable(path: Path) -> None:
    """Set the executable bits on ``path``; no-op where permissions don't exist."""
    if not supports_exec_bit():
        return
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def is_executable(path: Path) -> bool:
    """Check a file exists and may be executed by the current user."""
    if not path.is_file():
        return False
    if not supports_exec_bit():
        return True
    return os.access(path, os.X_OK)
