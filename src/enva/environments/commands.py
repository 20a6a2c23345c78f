"""Package manager invocations and output interpretation."""
import json
import os
import re
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from enva.types import EnvironmentSpec, FailureKind, PackageManager, ResolvedBinary

DEFAULT_CHANNELS = ("conda-forge", "bioconda")

# Output fragments that identify why the package manager failed, checked in order
FAILURE_SIGNATURES: Tuple[Tuple[FailureKind, Tuple[str, ...]], ...] = (
    (
        FailureKind.CONFIGURATION,
        (
            "Non-conda folder exists at prefix",
            "CondaValueError",
            "UnavailableInvalidChannel",
            "EnvironmentLocationNotFound",
            "DirectoryNotACondaEnvironmentError",
            "Permission denied",
            "Could not parse",
            "invalid channel",
        ),
    ),
    (
        FailureKind.PACKAGE_NOT_FOUND,
        (
            "PackagesNotFoundError",
            "nothing provides",
            "No match for",
            "could not be found",
            "package not found",
            "does not exist (perhaps a typo",
        ),
    ),
    (
        FailureKind.NETWORK,
        (
            "CondaHTTPError",
            "Connection failed",
            "Could not resolve host",
            "Failed to connect",
            "ConnectionError",
            "SSL",
            "timed out",
            "Network is unreachable",
        ),
    ),
)


def base_command(binary: ResolvedBinary) -> List[str]:
    return [str(binary.path)]


def build_create_command(binary: ResolvedBinary, spec: EnvironmentSpec) -> List[str]:
    """``<pm> create -n NAME -y -c CH... SPECS``"""
    args = base_command(binary) + ["create", "-n", spec.name, "-y"]
    for channel in spec.channels:
        args.extend(["-c", channel])
    args.extend(dep.match_spec() for dep in spec.dependencies)
    return args


def build_install_command(
    binary: ResolvedBinary,
    name: str,
    packages: Sequence[str],
    channels: Iterable[str] = DEFAULT_CHANNELS,
) -> List[str]:
    """``<pm> install -n NAME -y -c CH... PKGS``"""
    args = base_command(binary) + ["install", "-n", name, "-y"]
    for channel in channels:
        args.extend(["-c", channel])
    args.extend(packages)
    return args


def build_remove_command(binary: ResolvedBinary, name: str) -> List[str]:
    return base_command(binary) + ["env", "remove", "-n", name, "-y"]


def build_list_command(binary: ResolvedBinary) -> List[str]:
    return base_command(binary) + ["env", "list", "--json"]


def build_run_command(binary: ResolvedBinary, name: str, argv: Sequence[str]) -> List[str]:
    """``<pm> run -n NAME ARGV...``"""
    args = base_command(binary) + ["run"]
    if binary.manager is PackageManager.CONDA:
        # conda buffers the child's output unless told otherwise
        args.append("--no-capture-output")
    args.extend(["-n", name])
    args.extend(argv)
    return args


def _prepend(value: str, current: Optional[str]) -> str:
    return f"{value}{os.pathsep}{current}" if current else value


def build_env_vars(
    binary: ResolvedBinary,
    base: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Environment for a package manager subprocess.

    Starts from ``base`` (the current process environment by default), puts
    the package manager's directory first on PATH and its ``lib`` directory
    first on LD_LIBRARY_PATH, then applies ``overrides``.
    """
    env = dict(os.environ if base is None else base)
    bin_dir = binary.path.parent

    env["PATH"] = _prepend(str(bin_dir), env.get("PATH"))
    if os.name != "nt":
        env["LD_LIBRARY_PATH"] = _prepend(str(bin_dir / "lib"), env.get("LD_LIBRARY_PATH"))

    if overrides:
        env.update(overrides)
    return env


def decode_output(*streams: Optional[bytes]) -> str:
    return "".join(s.decode("utf-8", errors="replace") for s in streams if s)


def classify_failure(output: str, returncode: Optional[int] = None) -> Tuple[FailureKind, str]:
    """Classify package manager output into a failure kind and a one-line reason."""
    lines = [line.strip() for line in output.splitlines() if line.strip()]

    for kind, signatures in FAILURE_SIGNATURES:
        for signature in signatures:
            pattern = re.compile(re.escape(signature), re.IGNORECASE)
            for line in lines:
                if pattern.search(line):
                    return kind, line

    if lines:
        return FailureKind.UNKNOWN, lines[-1]
    return FailureKind.UNKNOWN, f"exit code {returncode}"


def parse_env_list(output: str) -> Dict[str, Path]:
    """Named environments from ``env list --json`` output.

    Only prefixes inside an ``envs`` directory are named environments; the
    root prefix is skipped.
    """
    try:
        data = json.loads(output)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON from env list: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("envs", []), list):
        raise ValueError("Unexpected env list format")

    envs: Dict[str, Path] = {}
    for entry in data.get("envs", []):
        path = Path(str(entry))
        if path.parent.name == "envs" and path.name:
            envs[path.name] = path
    return envs


def default_prefix(binary: ResolvedBinary, name: str, environ: Optional[Mapping[str, str]] = None) -> Path:
    """Where the package manager puts ``name`` when nothing reports otherwise."""
    environ = os.environ if environ is None else environ
    if root := environ.get("MAMBA_ROOT_PREFIX"):
        return Path(root) / "envs" / name
    if binary.manager is PackageManager.MICROMAMBA:
        return Path.home() / "micromamba" / "envs" / name
    # conda and mamba live in <root>/bin or <root>/condabin
    return binary.path.parent.parent / "envs" / name
