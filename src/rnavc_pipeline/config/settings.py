"""
Configuration settings for the RNA-seq variant calling pipeline.
"""

import configparser
import shutil
from pathlib import Path
from typing import Optional, List, Dict
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from ..models.references import ReferenceBundle


# Default reference file names inside the annotation directory (human GRCh38)
DEFAULT_REFERENCE_NAMES = {
    "fasta": "Homo_sapiens.GRCh38.dna.primary_assembly.fa",
    "gtf": "Homo_sapiens.GRCh38.105.gtf",
    "star_index": "STAR_hg38_humanIndex",
    "dbsnp": "human_variants/Homo_sapiens_assembly38.dbsnp138.vcf",
    "known_indels": "human_variants/Homo_sapiens_assembly38.known_indels.vcf.gz",
    "annovar_db": "humandb",
}

DEFAULT_MODULE_NAMES = {
    "fastqc": "FastQC",
    "trim": "Trim_Galore",
    "align": "STAR/2.7.9a-GCC-10.3.0",
    "index": "SAMtools",
    "mark_duplicates": "picard",
    "add_read_groups": "picard",
    "split_reads": "GATK",
    "recalibrate": "GATK",
    "call_variants": "GATK",
    "genotype": "GATK",
    "filter": "GATK",
    "annotate": "ANNOVAR",
    "multiqc": "MultiQC",
}

DEFAULT_ANNOVAR_PROTOCOL = [
    "refGene", "cosmic87_coding", "cosmic87_noncoding", "clinvar_20180603",
    "avsnp150", "1000g2015aug_all", "gnomad_genome", "dbnsfp35a", "dbscsnv11",
]

DEFAULT_ANNOVAR_OPERATION = ["g", "f", "f", "f", "f", "f", "f", "f", "f"]


class PipelineConfig(BaseSettings):
    """Configuration for the RNA-seq variant calling pipeline."""

    # Reference files; unset entries resolve inside annotation_dir
    annotation_dir: Path = Field(default=Path("../Annotation"), description="Directory holding the reference bundle")
    reference_fasta: Optional[Path] = Field(default=None, description="Reference genome FASTA file")
    reference_gtf: Optional[Path] = Field(default=None, description="Gene annotation GTF file")
    star_index: Optional[Path] = Field(default=None, description="STAR genome index directory")
    dbsnp_vcf: Optional[Path] = Field(default=None, description="dbSNP known sites VCF")
    known_indels_vcf: Optional[Path] = Field(default=None, description="Known indels VCF")
    annovar_db: Optional[Path] = Field(default=None, description="ANNOVAR database directory")

    # Resources
    threads: int = Field(default=32, description="Number of threads for STAR")
    java_memory_gb: int = Field(default=50, description="Java heap size for GATK in GB")
    star_sort_ram: int = Field(default=40000000000, description="STAR --limitBAMsortRAM in bytes")

    # Trimming
    trim_clip: int = Field(default=6, description="Bases clipped from the 5' end of each mate")
    trim_quality: int = Field(default=30, description="Trim Galore quality cutoff")
    trim_min_length: int = Field(default=30, description="Minimum read length after trimming")

    # Variant calling and filtering
    stand_call_conf: float = Field(default=20.0, description="HaplotypeCaller calling confidence")
    filter_window: int = Field(default=35, description="VariantFiltration cluster window size")
    filter_cluster: int = Field(default=3, description="VariantFiltration cluster size")
    variant_filters: Dict[str, str] = Field(
        default_factory=lambda: {"FS": "FS > 30.0", "QD": "QD < 2.0"},
        description="Hard filter names mapped to their JEXL expressions"
    )

    # Annotation
    annovar_buildver: str = Field(default="hg38", description="ANNOVAR genome build version")
    annovar_protocol: List[str] = Field(default_factory=lambda: list(DEFAULT_ANNOVAR_PROTOCOL))
    annovar_operation: List[str] = Field(default_factory=lambda: list(DEFAULT_ANNOVAR_OPERATION))

    # Tools
    picard_jar: Optional[Path] = Field(default=None, description="picard.jar path; the picard wrapper is used when unset")
    use_env_modules: bool = Field(default=False, description="Load tools with 'module load' before each stage")
    module_names: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_MODULE_NAMES))

    # Execution
    max_retries: int = Field(default=0, description="Extra attempts for a failing command")
    stage_timeout_seconds: Optional[int] = Field(default=None, description="Per-command timeout; unset waits forever")
    stage_logs: bool = Field(default=False, description="Write tool output to result/<sample>/logs/")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[Path] = Field(default=None, description="Log file path")

    @field_validator('threads', 'star_sort_ram', 'trim_min_length', 'filter_window', 'filter_cluster')
    @classmethod
    def validate_positive(cls, v):
        """Validate that counts and sizes are positive."""
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator('trim_clip', 'trim_quality', 'max_retries')
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Value must be non-negative")
        return v

    @field_validator('java_memory_gb')
    @classmethod
    def validate_memory(cls, v):
        """Validate memory usage is reasonable."""
        if v <= 0 or v > 512:
            raise ValueError("Java memory must be between 1 and 512 GB")
        return v

    @field_validator('stage_timeout_seconds')
    @classmethod
    def validate_timeout(cls, v):
        if v is not None and v <= 0:
            raise ValueError("Stage timeout must be positive")
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return v.upper()

    @model_validator(mode="after")
    def validate_annovar(self):
        """Every ANNOVAR protocol needs exactly one operation."""
        if len(self.annovar_protocol) != len(self.annovar_operation):
            raise ValueError(
                "ANNOVAR protocol and operation lists must have the same length "
                f"({len(self.annovar_protocol)} != {len(self.annovar_operation)})"
            )
        return self

    model_config = {
        "env_prefix": "RNAVC_PIPELINE_",
        "case_sensitive": False,
        "env_file": ".env",
        "extra": "ignore",
    }

    def get_reference_bundle(self) -> ReferenceBundle:
        """Resolve the reference bundle, filling unset paths from annotation_dir."""
        def resolve(value: Optional[Path], key: str) -> Path:
            return value if value is not None else self.annotation_dir / DEFAULT_REFERENCE_NAMES[key]

        return ReferenceBundle(
            fasta=resolve(self.reference_fasta, "fasta"),
            gtf=resolve(self.reference_gtf, "gtf"),
            star_index=resolve(self.star_index, "star_index"),
            dbsnp=resolve(self.dbsnp_vcf, "dbsnp"),
            known_indels=resolve(self.known_indels_vcf, "known_indels"),
            annovar_db=resolve(self.annovar_db, "annovar_db"),
        )

    def get_module_names(self, stage_name: str) -> List[str]:
        """Environment modules to load for a stage, empty when modules are disabled."""
        if not self.use_env_modules:
            return []
        module = self.module_names.get(stage_name)
        return [module] if module else []

    def required_tools(self) -> List[str]:
        """Executables that must be on PATH for a full run."""
        tools = ["fastqc", "trim_galore", "STAR", "samtools", "gatk",
                 "table_annovar.pl", "multiqc"]
        tools.append("java" if self.picard_jar else "picard")
        return tools

    def validate_setup(self) -> List[str]:
        """Validate that the pipeline is properly set up."""
        errors = []

        for path in self.get_reference_bundle().missing():
            errors.append(f"Required reference not found: {path}")

        if self.picard_jar is not None and not self.picard_jar.is_file():
            errors.append(f"Picard jar not found: {self.picard_jar}")

        # Tools come from 'module load' at run time when modules are enabled
        if not self.use_env_modules:
            for tool in self.required_tools():
                if not self._check_tool_available(tool):
                    errors.append(f"Required tool not found: {tool}")

        return errors

    def _check_tool_available(self, tool: str) -> bool:
        """Check if a tool is available in PATH."""
        return shutil.which(tool) is not None


def load_pipeline_config(config_file_path: Path) -> PipelineConfig:
    """
    Handles loading of pipeline variables from an INI configuration file.

    Sections [Paths], [Parameters] and [Execution] are read; keys are the
    field names in any case. Environment variables still apply to fields the
    file does not set.
    """
    config_elem = configparser.ConfigParser()
    config_read = config_elem.read(config_file_path)
    # Raise an error if the file was specified but not found/readable
    if not config_read:
        raise FileNotFoundError(
            f"Configuration file not found or empty: {config_file_path}"
        )

    values: Dict[str, object] = {}
    for section in ("Paths", "Parameters", "Execution"):
        if not config_elem.has_section(section):
            continue
        for key, value in config_elem[section].items():
            key = key.lower()
            if key not in PipelineConfig.model_fields:
                raise configparser.Error(
                    f"Unknown setting '{key}' in section [{section}] of {config_file_path}"
                )
            values[key] = _parse_ini_value(key, value)

    return PipelineConfig(**values)


def _parse_ini_value(key: str, value: str):
    """Turn an INI string into the shape the config field expects."""
    if key in ("annovar_protocol", "annovar_operation"):
        return [item.strip() for item in value.split(",") if item.strip()]
    if key in ("variant_filters", "module_names"):
        # name=expression pairs separated by ';'
        pairs = {}
        for item in value.split(";"):
            if not item.strip():
                continue
            name, sep, expr = item.partition("=")
            if not sep:
                raise configparser.Error(f"Expected name=value in '{key}': {item!r}")
            pairs[name.strip()] = expr.strip()
        return pairs
    return value
