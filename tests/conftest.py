import os
import stat
from dataclasses import dataclass
from pathlib import Path

import pytest
import pytest_asyncio

from enva.config import Settings
from enva.environments.manager import Manager, reset_manager
from enva.execution.runner import CommandRunner
from enva.types import EnvironmentSpec, PackageRequirement

# Stand-in for micromamba: records every invocation and keeps environments
# as plain directories under $FAKE_MAMBA_ROOT/envs.
FAKE_MICROMAMBA = r"""#!/bin/sh
ROOT="$FAKE_MAMBA_ROOT"
echo "$*" >> "${FAKE_MAMBA_LOG:-/dev/null}"

cmd="$1"
shift

parse() {
    name=""
    pkgs=""
    while [ $# -gt 0 ]; do
        case "$1" in
            -n) name="$2"; shift 2 ;;
            -c) shift 2 ;;
            -y|--no-capture-output) shift ;;
            *) pkgs="$pkgs $1"; shift ;;
        esac
    done
}

check_pkgs() {
    for p in $pkgs; do
        case "$p" in
            does-not-exist*)
                echo "error    libmamba Could not solve for environment specs" >&2
                echo "    - nothing provides requested $p" >&2
                exit 1 ;;
            unreachable*)
                echo "error    libmamba Could not resolve host: conda.anaconda.org" >&2
                exit 1 ;;
        esac
    done
}

case "$cmd" in
    --version)
        echo "1.5.8"
        ;;
    create)
        parse "$@"
        if [ -n "$FAKE_MAMBA_DELAY" ]; then
            sleep "$FAKE_MAMBA_DELAY"
        fi
        check_pkgs
        prefix="$ROOT/envs/$name"
        if [ -d "$prefix" ] && [ ! -d "$prefix/conda-meta" ]; then
            echo "critical libmamba Non-conda folder exists at prefix" >&2
            exit 1
        fi
        mkdir -p "$prefix/bin" "$prefix/conda-meta"
        printf '#!/bin/sh\nexit 0\n' > "$prefix/bin/python"
        chmod +x "$prefix/bin/python"
        echo "Transaction finished"
        ;;
    install)
        parse "$@"
        if [ ! -d "$ROOT/envs/$name" ]; then
            echo "EnvironmentLocationNotFound: Not a conda environment: $name" >&2
            exit 1
        fi
        check_pkgs
        echo "$pkgs" >> "$ROOT/envs/$name/conda-meta/installed"
        ;;
    env)
        sub="$1"
        shift
        case "$sub" in
            list)
                printf '{"envs":["%s"' "$ROOT"
                for d in "$ROOT"/envs/*; do
                    if [ -d "$d" ]; then
                        printf ',"%s"' "$d"
                    fi
                done
                printf ']}\n'
                ;;
            remove)
                parse "$@"
                if [ -n "$FAKE_MAMBA_FAIL_REMOVE" ]; then
                    echo "error: Permission denied: $ROOT/envs/$name" >&2
                    exit 1
                fi
                rm -rf "$ROOT/envs/$name"
                ;;
        esac
        ;;
    run)
        while [ $# -gt 0 ]; do
            case "$1" in
                -n) name="$2"; shift 2; break ;;
                *) shift ;;
            esac
        done
        if [ ! -d "$ROOT/envs/$name" ]; then
            echo "The given prefix does not exist: $ROOT/envs/$name" >&2
            exit 1
        fi
        PATH="$ROOT/envs/$name/bin:$PATH"
        export PATH
        exec "$@"
        ;;
    *)
        echo "unknown command $cmd" >&2
        exit 2
        ;;
esac
"""


@dataclass
class FakeMamba:
    path: Path
    root: Path
    log: Path

    def calls(self) -> list[str]:
        if not self.log.exists():
            return []
        return self.log.read_text().splitlines()

    def count(self, prefix: str) -> int:
        return sum(1 for call in self.calls() if call.startswith(prefix))

    def prefix(self, name: str) -> Path:
        return self.root / "envs" / name


@pytest.fixture
def fake_mamba(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeMamba:
    """A fake micromamba first on PATH"""
    if os.name == "nt":
        pytest.skip("fake micromamba is a POSIX shell script")

    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    script = bin_dir / "micromamba"
    script.write_text(FAKE_MICROMAMBA)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    root = tmp_path / "root"
    (root / "envs").mkdir(parents=True)
    log = tmp_path / "calls.log"

    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    monkeypatch.setenv("FAKE_MAMBA_ROOT", str(root))
    monkeypatch.setenv("FAKE_MAMBA_LOG", str(log))
    monkeypatch.delenv("FAKE_MAMBA_DELAY", raising=False)
    monkeypatch.delenv("FAKE_MAMBA_FAIL_REMOVE", raising=False)

    return FakeMamba(path=script, root=root, log=log)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    config_dir = tmp_path / "configs"
    config_dir.mkdir()
    return Settings(
        package_manager="micromamba",
        install_dir=tmp_path / "install",
        cache_dir=tmp_path / "cache",
        download_attempts=2,
        backoff=0.0,
        search_paths=(),
        config_dirs=(config_dir,),
    )


@pytest_asyncio.fixture
async def manager(fake_mamba: FakeMamba, settings: Settings):
    """Manager wired to the fake micromamba"""
    reset_manager()
    yield Manager(settings)
    reset_manager()


@pytest_asyncio.fixture
async def runner(manager: Manager) -> CommandRunner:
    return CommandRunner(manager)


@pytest.fixture
def test_spec() -> EnvironmentSpec:
    return EnvironmentSpec(
        name="test-env",
        channels=("conda-forge",),
        dependencies=(PackageRequirement("python", "3.10"),),
    )


@pytest_asyncio.fixture
async def ready_env(manager: Manager, test_spec: EnvironmentSpec) -> EnvironmentSpec:
    """test-env created and Ready"""
    await manager.create_environment(test_spec)
    return test_spec
