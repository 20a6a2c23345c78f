"""Built-in environment catalog and tool-to-environment lookup."""
from types import MappingProxyType
from typing import Mapping, Optional

from enva.types import EnvironmentSpec, PackageRequirement

CORE = "xdxtools-core"
R = "xdxtools-r"
SNAKEMAKE = "xdxtools-snakemake"
EXTRA = "xdxtools-extra"

CHANNELS = ("conda-forge", "bioconda")

DEFAULT_ENVIRONMENT = CORE


def _requirements(*entries: str) -> tuple[PackageRequirement, ...]:
    reqs = []
    for entry in entries:
        name, _, version = entry.partition("=")
        reqs.append(PackageRequirement(name, version or None))
    return tuple(reqs)


CATALOG: Mapping[str, EnvironmentSpec] = MappingProxyType(
    {
        CORE: EnvironmentSpec(
            name=CORE,
            channels=CHANNELS,
            dependencies=_requirements(
                "python=3.10",
                "numpy=1.24",
                "pandas",
                "matplotlib",
                "seaborn",
                "scipy",
                "scikit-learn",
                "biopython",
                "cutadapt",
                "fastqc",
                "multiqc",
                "trimmomatic",
                "bowtie2",
                "hisat2",
                "star",
                "subread",
                "samtools",
                "bcftools",
                "bedtools",
                "igvtools",
                "picard",
                "gatk4",
                "snakemake",
                "jupyter",
            ),
            markers=("python", "samtools", "fastqc"),
        ),
        R: EnvironmentSpec(
            name=R,
            channels=CHANNELS,
            dependencies=_requirements(
                "r-base=4.4.3",
                "qualimap",
                "r-tidyverse",
                "r-dplyr",
                "r-ggplot2",
                "r-pheatmap",
                "r-rcolorbrewer",
                "r-data.table",
                "r-readr",
                "r-stringr",
                "r-matrix",
                "r-genomicranges",
                "r-iranges",
                "r-s4vectors",
                "r-biocmanager",
            ),
            markers=("R", "Rscript"),
        ),
        SNAKEMAKE: EnvironmentSpec(
            name=SNAKEMAKE,
            channels=CHANNELS,
            dependencies=_requirements(
                "python=3.10",
                "snakemake",
                "pandas",
                "numpy",
                "matplotlib",
                "graphviz",
                "pyyaml",
                "docutils",
                "jinja2",
                "setuptools",
            ),
            markers=("python", "snakemake"),
        ),
        EXTRA: EnvironmentSpec(
            name=EXTRA,
            channels=CHANNELS,
            dependencies=_requirements(
                "python=3.10",
                "plotly",
                "dash",
                "bokeh",
                "altair",
                "streamlit",
                "dash-bootstrap-components",
                "openpyxl",
                "xlsxwriter",
                "pillow",
                "networkx",
                "python-igraph",
            ),
            markers=("python",),
        ),
    }
)

# Default environment of each known tool
TOOL_ENVIRONMENT_MAP: Mapping[str, str] = MappingProxyType(
    {
        # sequence QC, alignment and quantification
        "fastqc": CORE,
        "multiqc": CORE,
        "seqkit": CORE,
        "seqtk": CORE,
        "samtools": CORE,
        "picard": CORE,
        "bismark": CORE,
        "trim_galore": CORE,
        "trim-galore": CORE,
        "star": CORE,
        "htseq-count": CORE,
        "htseq": CORE,
        "rmats": CORE,
        "macs2": CORE,
        "bwa": CORE,
        "bowtie2": CORE,
        "phantompeakqualtools": CORE,
        "bwa-index": CORE,
        "bowtie2-build": CORE,
        # R
        "qualimap": R,
        "R": R,
        "Rscript": R,
        # workflows
        "snakemake": SNAKEMAKE,
        "jinja2": SNAKEMAKE,
        "click": SNAKEMAKE,
        "git": SNAKEMAKE,
        # variant tools, peaks and notebooks
        "bedtools": EXTRA,
        "bcftools": EXTRA,
        "vcftools": EXTRA,
        "tabix": EXTRA,
        "deepTools": EXTRA,
        "genrich": EXTRA,
        "homer": EXTRA,
        "jupyter": EXTRA,
        "jupyterlab": EXTRA,
        "flask": EXTRA,
        "dash": EXTRA,
        "streamlit": EXTRA,
        "scikit-learn": EXTRA,
        "scipy": EXTRA,
        "statsmodels": EXTRA,
    }
)


class ToolRegistry:
    """Read-only lookup from tool name to its default environment."""

    def __init__(self, table: Mapping[str, str] = TOOL_ENVIRONMENT_MAP):
        self._table = MappingProxyType(dict(table))

    def __contains__(self, tool: str) -> bool:
        return tool in self._table

    def environment_for(self, tool: str) -> Optional[str]:
        return self._table.get(tool)

    def tools_for(self, environment: str) -> list[str]:
        return sorted(tool for tool, env in self._table.items() if env == environment)

    def items(self):
        return self._table.items()


def catalog_spec(name: str) -> Optional[EnvironmentSpec]:
    return CATALOG.get(name)
