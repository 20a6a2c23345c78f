import pytest

from enva.catalog import (
    CATALOG,
    CORE,
    DEFAULT_ENVIRONMENT,
    EXTRA,
    R,
    SNAKEMAKE,
    TOOL_ENVIRONMENT_MAP,
    ToolRegistry,
    catalog_spec,
)
from enva.specs import validate_spec


def test_catalog_entries_are_valid():
    assert set(CATALOG) == {CORE, R, SNAKEMAKE, EXTRA}
    for name, spec in CATALOG.items():
        assert spec.name == name
        assert validate_spec(spec) is spec
        assert spec.channels == ("conda-forge", "bioconda")


def test_catalog_dependencies_are_unique():
    for spec in CATALOG.values():
        names = [dep.name for dep in spec.dependencies]
        assert len(names) == len(set(names)), spec.name


def test_catalog_is_read_only():
    with pytest.raises(TypeError):
        CATALOG["new"] = CATALOG[CORE]


def test_pinned_versions():
    core = {dep.name: dep.version for dep in catalog_spec(CORE).dependencies}
    assert core["python"] == "3.10"
    assert core["numpy"] == "1.24"

    r_deps = {dep.name: dep.version for dep in catalog_spec(R).dependencies}
    assert r_deps["r-base"] == "4.4.3"
    assert catalog_spec(R).marker_executables() == ("R", "Rscript")


def test_default_environment():
    assert DEFAULT_ENVIRONMENT == CORE
    assert catalog_spec("unknown") is None


@pytest.mark.parametrize(
    "tool,environment",
    [
        ("samtools", CORE),
        ("trim-galore", CORE),
        ("Rscript", R),
        ("qualimap", R),
        ("snakemake", SNAKEMAKE),
        ("bcftools", EXTRA),
        ("jupyter", EXTRA),
    ],
)
def test_environment_for(tool, environment):
    assert ToolRegistry().environment_for(tool) == environment


def test_registry_lookup():
    registry = ToolRegistry()

    assert "samtools" in registry
    assert "unknown-tool" not in registry
    assert registry.environment_for("unknown-tool") is None
    assert registry.tools_for(R) == ["R", "Rscript", "qualimap"]
    assert dict(registry.items()) == dict(TOOL_ENVIRONMENT_MAP)


def test_registry_copies_table():
    table = {"tool": CORE}
    registry = ToolRegistry(table)
    table["tool"] = R

    assert registry.environment_for("tool") == CORE
