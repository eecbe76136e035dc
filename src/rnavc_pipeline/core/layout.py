"""
Artifact naming for one sample under a working root.

Every path the stages read or write is built here, so a producing stage and
its consumer always agree on the file name.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import List


_SAMPLE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_sample_id(sample_id: str) -> str:
    """Reject sample identifiers that cannot be used as a file name token."""
    if not sample_id or not _SAMPLE_ID_PATTERN.match(sample_id):
        raise ValueError(
            f"Invalid sample identifier {sample_id!r}: use letters, digits, '.', '_' or '-'"
        )
    return sample_id


@dataclass(frozen=True)
class SampleLayout:
    """Paths for a (sample, working root) pair."""

    sample_id: str
    working_root: Path
    annovar_buildver: str = "hg38"

    def __post_init__(self):
        validate_sample_id(self.sample_id)
        object.__setattr__(self, "working_root", Path(self.working_root))

    # Directories

    @property
    def raw_dir(self) -> Path:
        return self.working_root / "raw_data" / self.sample_id

    @property
    def working_dir(self) -> Path:
        return self.working_root / "working_data" / self.sample_id

    @property
    def result_dir(self) -> Path:
        return self.working_root / "result" / self.sample_id

    @property
    def fastqc_dir(self) -> Path:
        return self.result_dir / "fastqc"

    @property
    def multiqc_dir(self) -> Path:
        return self.result_dir / "multiqc"

    @property
    def log_dir(self) -> Path:
        return self.result_dir / "logs"

    def _result(self, suffix: str) -> Path:
        return self.result_dir / f"{self.sample_id}{suffix}"

    # Reads

    @property
    def raw_reads(self) -> List[Path]:
        return [self.raw_dir / f"{self.sample_id}_{mate}.fq.gz" for mate in (1, 2)]

    @property
    def fastqc_reports(self) -> List[Path]:
        return [self.fastqc_dir / f"{self.sample_id}_{mate}_fastqc.zip" for mate in (1, 2)]

    @property
    def trimmed_reads(self) -> List[Path]:
        # Trim Galore's naming for paired output
        return [self.working_dir / f"{self.sample_id}_{mate}_val_{mate}.fq.gz" for mate in (1, 2)]

    # Alignment

    @property
    def star_prefix(self) -> Path:
        return self._result("_STARout")

    @property
    def star_bam(self) -> Path:
        return Path(f"{self.star_prefix}Aligned.sortedByCoord.out.bam")

    @property
    def star_bam_index(self) -> Path:
        return Path(f"{self.star_bam}.bai")

    @property
    def markdup_bam(self) -> Path:
        return self._result("_markDups.bam")

    @property
    def markdup_metrics(self) -> Path:
        return self._result("_markDups_metrics.txt")

    @property
    def read_group_bam(self) -> Path:
        return self._result("_markDups_groups.bam")

    @property
    def split_bam(self) -> Path:
        return self._result("_split.bam")

    @property
    def recal_table(self) -> Path:
        return self._result("_table.recal")

    @property
    def recal_bam(self) -> Path:
        return self._result("_recal.bam")

    # Variants

    @property
    def raw_gvcf(self) -> Path:
        return self._result("_raw_variants.g.vcf.gz")

    @property
    def genotyped_vcf(self) -> Path:
        return self._result("_genotyped.vcf")

    @property
    def filtered_vcf(self) -> Path:
        return self._result("_filtered.vcf")

    @property
    def annovar_prefix(self) -> Path:
        return self._result("_annotated")

    @property
    def annotated_vcf(self) -> Path:
        return Path(f"{self.annovar_prefix}.{self.annovar_buildver}_multianno.vcf")

    @property
    def annotated_table(self) -> Path:
        return Path(f"{self.annovar_prefix}.{self.annovar_buildver}_multianno.txt")

    # Reports

    @property
    def multiqc_name(self) -> str:
        return f"{self.sample_id}_multiqc_report"

    @property
    def multiqc_report(self) -> Path:
        return self.multiqc_dir / f"{self.multiqc_name}.html"

    @property
    def result_json(self) -> Path:
        return self._result("_pipeline_result.json")

    @property
    def summary_file(self) -> Path:
        return self._result("_summary.txt")

    def stage_log(self, stage_name: str) -> Path:
        return self.log_dir / f"{stage_name}.log"
