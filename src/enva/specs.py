"""Environment spec files."""
import re
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml

from enva.errors import ConfigError
from enva.logging import get_logger
from enva.types import EnvironmentSpec, PackageRequirement

logger = get_logger(__name__)

SPEC_SUFFIXES = (".yaml", ".yml")

# ``name``, ``name=1.0``, ``name>=1.0``, ``name 1.0``, ``channel::name=1.0``
_REQUIREMENT = re.compile(r"^(?P<name>[A-Za-z0-9_.\-]+(?:::[A-Za-z0-9_.\-]+)?)\s*(?P<version>.*)$")


def parse_requirement(entry: Any) -> PackageRequirement:
    """Parse one ``dependencies`` entry."""
    if isinstance(entry, dict):
        if "pip" in entry:
            raise ConfigError("pip dependencies are not supported", details={"entry": entry})
        name = entry.get("name")
        version = entry.get("version")
        if not isinstance(name, str) or (version is not None and not isinstance(version, (str, int, float))):
            raise ConfigError(f"Invalid dependency entry: {entry!r}")
        return PackageRequirement(name.strip(), str(version).strip() if version is not None else None)

    if not isinstance(entry, str):
        raise ConfigError(f"Invalid dependency entry: {entry!r}")

    match = _REQUIREMENT.match(entry.strip())
    if not match:
        raise ConfigError(f"Invalid dependency entry: {entry!r}")

    version = match.group("version").strip()
    if version.startswith("=") and not version.startswith("=="):
        version = version[1:]
    return PackageRequirement(match.group("name"), version or None)


def validate_spec(spec: EnvironmentSpec) -> EnvironmentSpec:
    """Raise ConfigError unless ``spec`` is well formed."""
    if not spec.name or not spec.name.strip():
        raise ConfigError("Environment name must not be empty")
    if not spec.channels:
        raise ConfigError(
            f"Environment {spec.name} must list at least one channel",
            details={"name": spec.name},
        )
    if any(not channel or not channel.strip() for channel in spec.channels):
        raise ConfigError(f"Environment {spec.name} has an empty channel", details={"name": spec.name})
    for dep in spec.dependencies:
        if not dep.name or not dep.name.strip():
            raise ConfigError(
                f"Environment {spec.name} has a dependency without a name",
                details={"name": spec.name},
            )
    return spec


def spec_from_dict(data: Any, source: str = "<spec>") -> EnvironmentSpec:
    if not isinstance(data, dict):
        raise ConfigError(f"{source}: expected a mapping at the top level")

    channels = data.get("channels") or []
    dependencies = data.get("dependencies") or []
    if not isinstance(channels, list) or not all(isinstance(c, str) for c in channels):
        raise ConfigError(f"{source}: channels must be a list of strings")
    if not isinstance(dependencies, list):
        raise ConfigError(f"{source}: dependencies must be a list")

    markers = data.get("markers") or []
    if not isinstance(markers, list) or not all(isinstance(m, str) for m in markers):
        raise ConfigError(f"{source}: markers must be a list of strings")

    spec = EnvironmentSpec(
        name=str(data.get("name") or "").strip(),
        channels=tuple(c.strip() for c in channels),
        dependencies=tuple(parse_requirement(d) for d in dependencies),
        markers=tuple(markers),
    )
    return validate_spec(spec)


def load_spec(path: Path) -> EnvironmentSpec:
    """Read a conda-style environment YAML file."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read spec file {path}: {e}", details={"path": str(path)}) from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}", details={"path": str(path)}) from e

    spec = spec_from_dict(data, source=str(path))
    logger.debug("spec_loaded", path=str(path), name=spec.name, dependencies=len(spec.dependencies))
    return spec


def find_spec_file(name: str, search_dirs: Iterable[Path]) -> Optional[Path]:
    """First ``<name>.yaml`` or ``<name>.yml`` found in ``search_dirs``."""
    for directory in search_dirs:
        for suffix in SPEC_SUFFIXES:
            candidate = directory / f"{name}{suffix}"
            if candidate.is_file():
                return candidate
    return None
