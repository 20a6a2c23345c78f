"""Tests for the environment manager."""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from enva.catalog import CATALOG, CORE
from enva.config import Settings
from enva.environments.manager import Manager, get_manager, reset_manager
from enva.errors import (
    ConfigError,
    EnvironmentCreationError,
    EnvironmentRemovalError,
    InstallationError,
    NotFoundError,
    PackageInstallError,
    ValidationError,
)
from enva.types import (
    CreateOutcome,
    EnvironmentSpec,
    EnvironmentStatus,
    FailureKind,
    InstallState,
    PackageManager,
    PackageRequirement,
    ResolvedBinary,
)


@pytest.mark.asyncio
async def test_create_environment(manager, fake_mamba, test_spec):
    """Creating a spec runs the package manager once and records the prefix"""
    result = await manager.create_environment(test_spec)

    assert result.outcome is CreateOutcome.CREATED
    assert result.environment.status is EnvironmentStatus.READY
    assert result.environment.installation_path == fake_mamba.prefix("test-env")
    assert result.environment.failure_reason is None

    creates = [c for c in fake_mamba.calls() if c.startswith("create")]
    assert creates == ["create -n test-env -y -c conda-forge python=3.10"]


@pytest.mark.asyncio
async def test_create_twice_reports_existing(manager, fake_mamba, test_spec):
    """A second sequential create does not spawn the package manager"""
    first = await manager.create_environment(test_spec)
    second = await manager.create_environment(test_spec)

    assert first.outcome is CreateOutcome.CREATED
    assert second.outcome is CreateOutcome.ALREADY_EXISTS
    assert second.environment.status is EnvironmentStatus.READY
    assert fake_mamba.count("create") == 1


@pytest.mark.asyncio
async def test_concurrent_creates_share_one_subprocess(manager, fake_mamba, test_spec, monkeypatch):
    """Concurrent creates of one name run a single creation"""
    monkeypatch.setenv("FAKE_MAMBA_DELAY", "0.3")

    results = await asyncio.gather(*(manager.create_environment(test_spec) for _ in range(4)))

    assert fake_mamba.count("create") == 1
    assert all(r is results[0] for r in results)
    assert results[0].outcome is CreateOutcome.CREATED


@pytest.mark.asyncio
async def test_concurrent_failed_creates_share_error(manager, fake_mamba):
    """Concurrent callers all observe the same classified failure"""
    spec = EnvironmentSpec(
        name="broken",
        channels=("conda-forge",),
        dependencies=(PackageRequirement("does-not-exist"),),
    )

    results = await asyncio.gather(
        manager.create_environment(spec),
        manager.create_environment(spec),
        return_exceptions=True,
    )

    assert fake_mamba.count("create") == 1
    assert all(isinstance(r, EnvironmentCreationError) for r in results)
    assert results[0] is results[1]
    assert results[0].kind is FailureKind.PACKAGE_NOT_FOUND


@pytest.mark.asyncio
async def test_different_names_run_in_parallel(manager, fake_mamba, monkeypatch):
    monkeypatch.setenv("FAKE_MAMBA_DELAY", "0.2")
    specs = [
        EnvironmentSpec(name=f"env-{i}", channels=("conda-forge",), dependencies=())
        for i in range(3)
    ]

    results = await asyncio.gather(*(manager.create_environment(s) for s in specs))

    assert [r.outcome for r in results] == [CreateOutcome.CREATED] * 3
    assert fake_mamba.count("create") == 3


@pytest.mark.asyncio
async def test_create_failure_marks_failed(manager, fake_mamba):
    spec = EnvironmentSpec(
        name="broken",
        channels=("conda-forge",),
        dependencies=(PackageRequirement("does-not-exist", "1.0"),),
    )

    with pytest.raises(EnvironmentCreationError) as exc_info:
        await manager.create_environment(spec)

    assert exc_info.value.kind is FailureKind.PACKAGE_NOT_FOUND
    assert exc_info.value.exit_code == 1
    assert "nothing provides" in exc_info.value.reason

    [record] = await manager.list_environments()
    assert record.status is EnvironmentStatus.FAILED
    assert record.installation_path is None
    assert "nothing provides" in record.failure_reason


@pytest.mark.asyncio
async def test_create_network_failure(manager, fake_mamba):
    spec = EnvironmentSpec(
        name="offline",
        channels=("conda-forge",),
        dependencies=(PackageRequirement("unreachable-pkg"),),
    )

    with pytest.raises(EnvironmentCreationError) as exc_info:
        await manager.create_environment(spec)

    assert exc_info.value.kind is FailureKind.NETWORK
    assert exc_info.value.exit_code == 4


@pytest.mark.asyncio
async def test_create_configuration_failure(manager, fake_mamba, test_spec):
    """A plain directory at the prefix is a configuration problem"""
    fake_mamba.prefix("test-env").mkdir(parents=True)

    with pytest.raises(EnvironmentCreationError) as exc_info:
        await manager.create_environment(test_spec)

    assert exc_info.value.kind is FailureKind.CONFIGURATION
    assert exc_info.value.exit_code == 3


@pytest.mark.asyncio
async def test_failed_environment_can_be_recreated(manager, fake_mamba, test_spec):
    fake_mamba.prefix("test-env").mkdir(parents=True)
    with pytest.raises(EnvironmentCreationError):
        await manager.create_environment(test_spec)

    fake_mamba.prefix("test-env").rmdir()
    result = await manager.create_environment(test_spec, recreate=True)

    assert result.outcome is CreateOutcome.CREATED
    assert result.environment.status is EnvironmentStatus.READY


@pytest.mark.asyncio
async def test_recreate_removes_then_creates(manager, fake_mamba, ready_env):
    result = await manager.create_environment(ready_env, recreate=True)

    assert result.outcome is CreateOutcome.RECREATED
    assert result.environment.status is EnvironmentStatus.READY
    calls = [c.split()[0:2] for c in fake_mamba.calls() if not c.startswith("env list")]
    assert calls == [["create", "-n"], ["env", "remove"], ["create", "-n"]]


@pytest.mark.asyncio
async def test_interrupted_create_is_failed(manager, fake_mamba, test_spec, monkeypatch):
    """Cancelling a create kills the package manager and leaves the record Failed"""
    monkeypatch.setenv("FAKE_MAMBA_DELAY", "30")

    task = asyncio.create_task(manager.create_environment(test_spec))
    for _ in range(100):
        await asyncio.sleep(0.05)
        if fake_mamba.count("create"):
            break
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    [record] = await manager.list_environments()
    assert record.status is EnvironmentStatus.FAILED
    assert record.failure_reason == "interrupted"
    assert not fake_mamba.prefix("test-env").exists()


@pytest.mark.asyncio
async def test_invalid_spec_is_config_error(manager, fake_mamba):
    spec = EnvironmentSpec(name="no-channels", channels=(), dependencies=())

    with pytest.raises(ConfigError):
        await manager.create_environment(spec)

    assert await manager.list_environments() == []
    assert fake_mamba.calls() == []


@pytest.mark.asyncio
async def test_dry_run_create(manager, fake_mamba, test_spec):
    """Dry-run reports the outcome without touching the store or spawning"""
    result = await manager.create_environment(test_spec, dry_run=True)

    assert result.outcome is CreateOutcome.WOULD_CREATE
    assert result.dry_run
    assert await manager.list_environments() == []
    assert fake_mamba.calls() == []


@pytest.mark.asyncio
async def test_dry_run_create_rejects_malformed_spec(manager, fake_mamba):
    spec = EnvironmentSpec(name="", channels=("conda-forge",), dependencies=())

    with pytest.raises(ConfigError):
        await manager.create_environment(spec, dry_run=True)

    assert fake_mamba.calls() == []


@pytest.mark.asyncio
async def test_dry_run_on_existing(manager, fake_mamba, ready_env):
    calls_before = fake_mamba.calls()

    existing = await manager.create_environment(ready_env, dry_run=True)
    recreate = await manager.create_environment(ready_env, recreate=True, dry_run=True)

    assert existing.outcome is CreateOutcome.ALREADY_EXISTS
    assert recreate.outcome is CreateOutcome.WOULD_RECREATE
    assert recreate.command[1:3] == ("create", "-n")
    assert fake_mamba.calls() == calls_before


@pytest.mark.asyncio
async def test_list_environments_registration_order(manager, fake_mamba):
    await manager.register_catalog()

    names = [env.name for env in await manager.list_environments()]

    assert names == ["xdxtools-core", "xdxtools-r", "xdxtools-snakemake", "xdxtools-extra"]
    assert all(
        env.status is EnvironmentStatus.NOT_CREATED for env in await manager.list_environments()
    )


@pytest.mark.asyncio
async def test_register_catalog_once(manager, fake_mamba):
    """A removed catalog environment is not registered again"""
    await manager.register_catalog()
    await manager.create_environment(CATALOG[CORE])
    await manager.remove_environment(CORE)

    await manager.register_catalog()

    assert CORE not in [env.name for env in await manager.list_environments()]
    with pytest.raises(NotFoundError):
        await manager.validate_environment(CORE)


@pytest.mark.asyncio
async def test_list_returns_detached_copies(manager, ready_env):
    [record] = await manager.list_environments()
    record.status = EnvironmentStatus.FAILED

    [fresh] = await manager.list_environments()
    assert fresh.status is EnvironmentStatus.READY


@pytest.mark.asyncio
async def test_discover_adopts_existing(manager, fake_mamba):
    (fake_mamba.prefix("legacy") / "bin").mkdir(parents=True)
    await manager.register_catalog()

    environments = await manager.discover()

    legacy = next(env for env in environments if env.name == "legacy")
    assert legacy.status is EnvironmentStatus.READY
    assert legacy.installation_path == fake_mamba.prefix("legacy")
    # the root prefix is not an environment
    assert "root" not in [env.name for env in environments]


@pytest.mark.asyncio
async def test_discover_without_install_uses_existing_binary(manager, fake_mamba):
    (fake_mamba.prefix("legacy") / "bin").mkdir(parents=True)

    environments = await manager.discover(install=False)

    assert [env.name for env in environments] == ["legacy"]
    assert manager.state.install_state is InstallState.NOT_INSTALLED


@pytest.mark.asyncio
async def test_discover_without_install_skips_download(tmp_path, monkeypatch):
    empty = tmp_path / "empty-bin"
    empty.mkdir()
    monkeypatch.setenv("PATH", str(empty))
    manager = Manager(Settings(install_dir=tmp_path / "install", search_paths=()))
    download = AsyncMock()
    monkeypatch.setattr("enva.binaries.resolver.download_with_retry", download)

    assert await manager.discover(install=False) == []
    download.assert_not_called()


@pytest.mark.asyncio
async def test_discover_without_install_after_failed_install(settings):
    resolver = AsyncMock()
    resolver.ensure_binary.side_effect = InstallationError("no package manager")
    resolver.find = MagicMock()
    manager = Manager(settings, resolver=resolver)
    with pytest.raises(InstallationError):
        await manager.ensure_ready()

    assert await manager.discover(install=False) == []
    resolver.find.assert_not_called()


@pytest.mark.asyncio
async def test_install_packages(manager, fake_mamba, ready_env):
    result = await manager.install_packages("test-env", ["numpy"])

    assert result.packages == ("numpy",)
    [record] = await manager.list_environments()
    assert record.status is EnvironmentStatus.READY
    assert "install -n test-env -y -c conda-forge numpy" in fake_mamba.calls()


@pytest.mark.asyncio
async def test_install_uses_default_channels_for_discovered(manager, fake_mamba):
    (fake_mamba.prefix("legacy") / "conda-meta").mkdir(parents=True)
    await manager.discover()

    await manager.install_packages("legacy", ["numpy"])

    assert "install -n legacy -y -c conda-forge -c bioconda numpy" in fake_mamba.calls()


@pytest.mark.asyncio
async def test_install_failure_keeps_ready(manager, fake_mamba, ready_env):
    with pytest.raises(PackageInstallError):
        await manager.install_packages("test-env", ["does-not-exist"])

    [record] = await manager.list_environments()
    assert record.status is EnvironmentStatus.READY


@pytest.mark.asyncio
async def test_install_unknown_environment(manager, fake_mamba):
    with pytest.raises(NotFoundError):
        await manager.install_packages("missing-env", ["numpy"])
    assert fake_mamba.count("install") == 0


@pytest.mark.asyncio
async def test_install_not_ready(manager, fake_mamba, test_spec):
    await manager.register(test_spec)

    with pytest.raises(NotFoundError):
        await manager.install_packages("test-env", ["numpy"])


@pytest.mark.asyncio
async def test_validate_environment(manager, fake_mamba, ready_env):
    report = await manager.validate_environment("test-env")

    assert report.valid
    assert report.status is EnvironmentStatus.READY
    [record] = await manager.list_environments()
    assert record.last_validated_at is not None
    assert record.installation_path == fake_mamba.prefix("test-env")


@pytest.mark.asyncio
async def test_validate_missing_marker(manager, fake_mamba, ready_env):
    (fake_mamba.prefix("test-env") / "bin" / "python").unlink()

    report = await manager.validate_environment("test-env")

    assert not report.valid
    assert report.status is EnvironmentStatus.INVALID
    assert report.missing == ("python",)
    [record] = await manager.list_environments()
    assert record.status is EnvironmentStatus.INVALID
    assert "python" in record.failure_reason
    assert record.installation_path == fake_mamba.prefix("test-env")


@pytest.mark.asyncio
async def test_validate_restores_ready(manager, fake_mamba, ready_env):
    marker = fake_mamba.prefix("test-env") / "bin" / "python"
    marker.chmod(0o644)
    assert not (await manager.validate_environment("test-env")).valid

    marker.chmod(0o755)
    report = await manager.validate_environment("test-env")

    assert report.valid
    assert report.status is EnvironmentStatus.READY


@pytest.mark.asyncio
async def test_validate_missing_path(manager, fake_mamba, ready_env):
    fake_mamba.prefix("test-env").rename(fake_mamba.root / "moved")

    report = await manager.validate_environment("test-env")

    assert not report.valid
    assert "does not exist" in report.reason


@pytest.mark.asyncio
async def test_validate_unknown(manager):
    with pytest.raises(NotFoundError):
        await manager.validate_environment("missing-env")


@pytest.mark.asyncio
async def test_validate_not_created(manager, fake_mamba, test_spec):
    await manager.register(test_spec)

    report = await manager.validate_environment("test-env")

    assert not report.valid
    assert report.status is EnvironmentStatus.NOT_CREATED
    with pytest.raises(ValidationError):
        report.raise_for_status()


@pytest.mark.asyncio
async def test_remove_environment(manager, fake_mamba, ready_env):
    result = await manager.remove_environment("test-env")

    assert result.name == "test-env"
    assert await manager.list_environments() == []
    assert not fake_mamba.prefix("test-env").exists()
    with pytest.raises(NotFoundError):
        await manager.validate_environment("test-env")


@pytest.mark.asyncio
async def test_remove_failure_restores_status(manager, fake_mamba, ready_env, monkeypatch):
    monkeypatch.setenv("FAKE_MAMBA_FAIL_REMOVE", "1")

    with pytest.raises(EnvironmentRemovalError):
        await manager.remove_environment("test-env")

    [record] = await manager.list_environments()
    assert record.status is EnvironmentStatus.READY
    assert record.installation_path == fake_mamba.prefix("test-env")


@pytest.mark.asyncio
async def test_remove_unknown(manager, fake_mamba):
    with pytest.raises(NotFoundError):
        await manager.remove_environment("missing-env")
    assert fake_mamba.count("env remove") == 0


@pytest.mark.asyncio
async def test_dry_run_remove(manager, fake_mamba, ready_env):
    result = await manager.remove_environment("test-env", dry_run=True)

    assert result.dry_run
    assert fake_mamba.count("env remove") == 0
    [record] = await manager.list_environments()
    assert record.status is EnvironmentStatus.READY


@pytest.mark.asyncio
async def test_remove_waits_for_running_create(manager, fake_mamba, test_spec, monkeypatch):
    """Operations on one name are serialized"""
    monkeypatch.setenv("FAKE_MAMBA_DELAY", "0.3")

    create = asyncio.create_task(manager.create_environment(test_spec))
    for _ in range(100):
        await asyncio.sleep(0.05)
        if fake_mamba.count("create"):
            break
    remove = asyncio.create_task(manager.remove_environment("test-env"))

    created = await create
    await remove

    assert created.outcome is CreateOutcome.CREATED
    assert await manager.list_environments() == []


@pytest.mark.asyncio
async def test_install_waits_for_running_create(manager, fake_mamba, test_spec, monkeypatch):
    monkeypatch.setenv("FAKE_MAMBA_DELAY", "0.3")

    create = asyncio.create_task(manager.create_environment(test_spec))
    for _ in range(100):
        await asyncio.sleep(0.05)
        if fake_mamba.count("create"):
            break
    install = asyncio.create_task(manager.install_packages("test-env", ["numpy"]))

    created = await create
    installed = await install

    assert created.outcome is CreateOutcome.CREATED
    assert installed.packages == ("numpy",)
    assert fake_mamba.count("install") == 1


@pytest.mark.asyncio
async def test_resolve_environment(manager, ready_env):
    record = await manager.resolve_environment("test-env")
    assert record.status is EnvironmentStatus.READY

    with pytest.raises(NotFoundError):
        await manager.resolve_environment("missing-env")


@pytest.mark.asyncio
async def test_ensure_ready_runs_resolver_once(settings):
    binary = ResolvedBinary(manager=PackageManager.MICROMAMBA, path=settings.install_dir / "micromamba")
    resolver = AsyncMock()

    async def slow_resolve():
        await asyncio.sleep(0.05)
        return binary

    resolver.ensure_binary.side_effect = slow_resolve
    manager = Manager(settings, resolver=resolver)

    results = await asyncio.gather(*(manager.ensure_ready() for _ in range(5)))

    assert all(r == binary for r in results)
    assert resolver.ensure_binary.await_count == 1
    assert manager.state.install_state is InstallState.INSTALLED

    await manager.ensure_ready()
    assert resolver.ensure_binary.await_count == 1


@pytest.mark.asyncio
async def test_ensure_ready_caches_failure(settings):
    resolver = AsyncMock()
    resolver.ensure_binary.side_effect = InstallationError("no package manager")
    manager = Manager(settings, resolver=resolver)

    with pytest.raises(InstallationError):
        await manager.ensure_ready()
    with pytest.raises(InstallationError):
        await manager.ensure_ready()
    assert resolver.ensure_binary.await_count == 1
    assert manager.state.install_state is InstallState.FAILED

    with pytest.raises(InstallationError):
        await manager.ensure_ready(retry=True)
    assert resolver.ensure_binary.await_count == 2


@pytest.mark.asyncio
async def test_override_to_missing_manager_does_not_download(settings, monkeypatch, tmp_path):
    """An override naming an absent package manager fails without network access"""
    monkeypatch.setenv("PATH", str(tmp_path / "empty"))
    manager = Manager(Settings(package_manager="mamba", install_dir=tmp_path))

    download = AsyncMock()
    monkeypatch.setattr("enva.binaries.resolver.download_with_retry", download)

    with pytest.raises(InstallationError):
        await manager.ensure_ready()
    download.assert_not_called()


def test_get_manager_is_shared():
    reset_manager()
    try:
        assert get_manager() is get_manager()
    finally:
        reset_manager()
