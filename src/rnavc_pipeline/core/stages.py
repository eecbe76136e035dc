"""
Stage catalogue for the RNA-seq variant calling pipeline.

Stages follow the GATK best practices for RNA-seq short variant discovery:
https://gatk.broadinstitute.org/hc/en-us/articles/360035531192-RNAseq-short-variant-discovery-SNPs-Indels-

Each stage is a plain declaration: the command lines it runs, the artifacts it
consumes and produces, and the references it reads. Nothing here touches the
file system.
"""

import shlex
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from ..config.settings import PipelineConfig
from ..exceptions import ArtifactHandoffError, UnknownStageError
from ..models.references import ReferenceBundle
from .layout import SampleLayout


Command = Tuple[str, ...]


@dataclass(frozen=True)
class Stage:
    """One external tool invocation step."""

    name: str
    tool: str
    description: str
    commands: Tuple[Command, ...]
    inputs: Tuple[Path, ...]
    outputs: Tuple[Path, ...]
    references: Tuple[Path, ...] = ()
    directories: Tuple[Path, ...] = ()
    modules: Tuple[str, ...] = ()

    def command_lines(self) -> List[str]:
        """Shell-quoted rendering of the commands, for logs and dry runs."""
        return [shlex.join(cmd) for cmd in self.commands]


def _cmd(*parts) -> Command:
    return tuple(str(p) for p in parts)


def _gatk(config: PipelineConfig, tool: str, *args) -> Command:
    return _cmd("gatk", "--java-options", f"-Xmx{config.java_memory_gb}g", tool, *args)


def _picard(config: PipelineConfig, tool: str, *args) -> Command:
    if config.picard_jar is not None:
        return _cmd("java", "-jar", config.picard_jar, tool, *args)
    return _cmd("picard", tool, *args)


def _fastqc(layout: SampleLayout, refs: ReferenceBundle, config: PipelineConfig) -> Stage:
    return Stage(
        name="fastqc",
        tool="FastQC",
        description="Quality report for the raw reads",
        commands=tuple(
            _cmd("fastqc", "--outdir", layout.fastqc_dir, reads)
            for reads in layout.raw_reads
        ),
        inputs=tuple(layout.raw_reads),
        outputs=tuple(layout.fastqc_reports),
        directories=(layout.fastqc_dir,),
    )


def _trim(layout: SampleLayout, refs: ReferenceBundle, config: PipelineConfig) -> Stage:
    return Stage(
        name="trim",
        tool="Trim Galore",
        description="Adapter and quality trimming of the paired reads",
        commands=(
            _cmd(
                "trim_galore", "--paired", "--phred33", "--fastqc", "--illumina",
                "--clip_R1", config.trim_clip, "--clip_R2", config.trim_clip,
                "-q", config.trim_quality, "--length", config.trim_min_length,
                "--output_dir", layout.working_dir,
                *layout.raw_reads,
            ),
        ),
        inputs=tuple(layout.raw_reads),
        outputs=tuple(layout.trimmed_reads),
        directories=(layout.working_dir,),
    )


def _align(layout: SampleLayout, refs: ReferenceBundle, config: PipelineConfig) -> Stage:
    return Stage(
        name="align",
        tool="STAR",
        description="Splice-aware alignment, coordinate sorted BAM",
        commands=(
            _cmd(
                "STAR", "--runThreadN", config.threads,
                "--genomeDir", refs.star_index,
                "--sjdbGTFfile", refs.gtf,
                "--readFilesIn", *layout.trimmed_reads,
                "--readFilesCommand", "zcat",
                "--outSAMstrandField", "intronMotif",
                "--outSAMtype", "BAM", "SortedByCoordinate",
                "--limitBAMsortRAM", config.star_sort_ram,
                "--quantMode", "GeneCounts",
                "--outFileNamePrefix", layout.star_prefix,
            ),
        ),
        inputs=tuple(layout.trimmed_reads),
        outputs=(layout.star_bam,),
        references=(refs.star_index, refs.gtf),
        directories=(layout.result_dir,),
    )


def _index(layout: SampleLayout, refs: ReferenceBundle, config: PipelineConfig) -> Stage:
    return Stage(
        name="index",
        tool="SAMtools",
        description="Index the aligned BAM",
        commands=(_cmd("samtools", "index", layout.star_bam),),
        inputs=(layout.star_bam,),
        outputs=(layout.star_bam_index,),
    )


def _mark_duplicates(layout: SampleLayout, refs: ReferenceBundle, config: PipelineConfig) -> Stage:
    return Stage(
        name="mark_duplicates",
        tool="Picard MarkDuplicates",
        description="Flag PCR and optical duplicates",
        commands=(
            _picard(
                config, "MarkDuplicates",
                "-I", layout.star_bam,
                "-O", layout.markdup_bam,
                "-M", layout.markdup_metrics,
                "--REMOVE_DUPLICATES", "false",
                "--ASSUME_SORTED", "true",
                "--PROGRAM_RECORD_ID", "null",
                "--VALIDATION_STRINGENCY", "LENIENT",
                "--CREATE_INDEX", "true",
            ),
        ),
        inputs=(layout.star_bam, layout.star_bam_index),
        outputs=(layout.markdup_bam, layout.markdup_metrics),
    )


def _add_read_groups(layout: SampleLayout, refs: ReferenceBundle, config: PipelineConfig) -> Stage:
    return Stage(
        name="add_read_groups",
        tool="Picard AddOrReplaceReadGroups",
        description="Tag reads with the sample read group",
        commands=(
            _picard(
                config, "AddOrReplaceReadGroups",
                "-I", layout.markdup_bam,
                "-O", layout.read_group_bam,
                "--RGLB", "LB",
                "--RGPL", "ILLUMINA",
                "--RGPU", "PU",
                "--RGSM", layout.sample_id,
                "--CREATE_INDEX", "true",
            ),
        ),
        inputs=(layout.markdup_bam,),
        outputs=(layout.read_group_bam,),
    )


def _split_reads(layout: SampleLayout, refs: ReferenceBundle, config: PipelineConfig) -> Stage:
    # Splits reads with N in the CIGAR into supplementary alignments and
    # hard clips overhangs so HaplotypeCaller can use RNA alignments.
    return Stage(
        name="split_reads",
        tool="GATK SplitNCigarReads",
        description="Split spliced reads at N CIGAR operators",
        commands=(
            _gatk(
                config, "SplitNCigarReads",
                "-R", refs.fasta,
                "-I", layout.read_group_bam,
                "-O", layout.split_bam,
                "--create-output-bam-index", "true",
            ),
        ),
        inputs=(layout.read_group_bam,),
        outputs=(layout.split_bam,),
        references=(refs.fasta,),
    )


def _recalibrate(layout: SampleLayout, refs: ReferenceBundle, config: PipelineConfig) -> Stage:
    return Stage(
        name="recalibrate",
        tool="GATK BaseRecalibrator/ApplyBQSR",
        description="Base quality score recalibration",
        commands=(
            _gatk(
                config, "BaseRecalibrator",
                "-R", refs.fasta,
                "-I", layout.split_bam,
                "-O", layout.recal_table,
                "--known-sites", refs.dbsnp,
                "--known-sites", refs.known_indels,
                "--verbosity", "INFO",
            ),
            _gatk(
                config, "ApplyBQSR",
                "-R", refs.fasta,
                "-I", layout.split_bam,
                "--bqsr-recal-file", layout.recal_table,
                "-O", layout.recal_bam,
                "--create-output-bam-index", "true",
            ),
        ),
        inputs=(layout.split_bam,),
        outputs=(layout.recal_table, layout.recal_bam),
        references=(refs.fasta, refs.dbsnp, refs.known_indels),
    )


def _call_variants(layout: SampleLayout, refs: ReferenceBundle, config: PipelineConfig) -> Stage:
    annotations = []
    for annotation in ("MappingQualityRankSumTest", "QualByDepth", "ReadPosRankSumTest",
                       "RMSMappingQuality", "FisherStrand", "Coverage"):
        annotations.extend(["--annotation", annotation])
    return Stage(
        name="call_variants",
        tool="GATK HaplotypeCaller",
        description="Per-sample calling in GVCF mode",
        commands=(
            _gatk(
                config, "HaplotypeCaller",
                "-R", refs.fasta,
                "-I", layout.recal_bam,
                "-O", layout.raw_gvcf,
                "--dont-use-soft-clipped-bases",
                "-stand-call-conf", config.stand_call_conf,
                "-ERC", "GVCF",
                *annotations,
                "--dbsnp", refs.dbsnp,
                "--verbosity", "INFO",
            ),
        ),
        inputs=(layout.recal_bam,),
        outputs=(layout.raw_gvcf,),
        references=(refs.fasta, refs.dbsnp),
    )


def _genotype(layout: SampleLayout, refs: ReferenceBundle, config: PipelineConfig) -> Stage:
    return Stage(
        name="genotype",
        tool="GATK GenotypeGVCFs",
        description="Genotype the sample GVCF",
        commands=(
            _gatk(
                config, "GenotypeGVCFs",
                "-R", refs.fasta,
                "--dbsnp", refs.dbsnp,
                "-V", layout.raw_gvcf,
                "-O", layout.genotyped_vcf,
            ),
        ),
        inputs=(layout.raw_gvcf,),
        outputs=(layout.genotyped_vcf,),
        references=(refs.fasta, refs.dbsnp),
    )


def _filter(layout: SampleLayout, refs: ReferenceBundle, config: PipelineConfig) -> Stage:
    # VQSR and CNNScoreVariants need truth data and do not apply to RNA
    filters = []
    for name, expression in config.variant_filters.items():
        filters.extend(["--filter-name", name, "--filter-expression", expression])
    return Stage(
        name="filter",
        tool="GATK VariantFiltration",
        description="Hard filtering of the genotyped calls",
        commands=(
            _gatk(
                config, "VariantFiltration",
                "-R", refs.fasta,
                "-V", layout.genotyped_vcf,
                "-O", layout.filtered_vcf,
                "-window", config.filter_window,
                "-cluster", config.filter_cluster,
                *filters,
            ),
        ),
        inputs=(layout.genotyped_vcf,),
        outputs=(layout.filtered_vcf,),
        references=(refs.fasta,),
    )


def _annotate(layout: SampleLayout, refs: ReferenceBundle, config: PipelineConfig) -> Stage:
    return Stage(
        name="annotate",
        tool="ANNOVAR table_annovar.pl",
        description="Functional annotation of the filtered calls",
        commands=(
            _cmd(
                "table_annovar.pl", layout.filtered_vcf, refs.annovar_db,
                "-buildver", config.annovar_buildver,
                "-out", layout.annovar_prefix,
                "-remove",
                "-protocol", ",".join(config.annovar_protocol),
                "-operation", ",".join(config.annovar_operation),
                "-nastring", ".",
                "-vcfinput",
                "-polish",
            ),
        ),
        inputs=(layout.filtered_vcf,),
        outputs=(layout.annotated_vcf, layout.annotated_table),
        references=(refs.annovar_db,),
    )


def _multiqc(layout: SampleLayout, refs: ReferenceBundle, config: PipelineConfig) -> Stage:
    return Stage(
        name="multiqc",
        tool="MultiQC",
        description="Aggregate QC report",
        commands=(
            _cmd(
                "multiqc", "--force",
                "--outdir", layout.multiqc_dir,
                "--filename", layout.multiqc_name,
                layout.result_dir, layout.working_dir,
            ),
        ),
        inputs=(layout.annotated_vcf, *layout.fastqc_reports, layout.markdup_metrics),
        outputs=(layout.multiqc_report,),
        directories=(layout.multiqc_dir,),
    )


StageBuilder = Callable[[SampleLayout, ReferenceBundle, PipelineConfig], Stage]

STAGE_BUILDERS: List[Tuple[str, StageBuilder]] = [
    ("fastqc", _fastqc),
    ("trim", _trim),
    ("align", _align),
    ("index", _index),
    ("mark_duplicates", _mark_duplicates),
    ("add_read_groups", _add_read_groups),
    ("split_reads", _split_reads),
    ("recalibrate", _recalibrate),
    ("call_variants", _call_variants),
    ("genotype", _genotype),
    ("filter", _filter),
    ("annotate", _annotate),
    ("multiqc", _multiqc),
]


def stage_names() -> List[str]:
    """Stage names in execution order."""
    return [name for name, _ in STAGE_BUILDERS]


def build_stages(
    layout: SampleLayout,
    references: ReferenceBundle,
    config: PipelineConfig
) -> List[Stage]:
    """
    Build the full, ordered stage list for one sample.

    Args:
        layout: Artifact paths for the sample
        references: Reference bundle
        config: Pipeline configuration (tool parameters and environment modules)

    Returns:
        Stages in execution order, with the hand-off chain already checked

    Raises:
        ArtifactHandoffError: If a stage does not consume its predecessor's output
    """
    stages = []
    for name, builder in STAGE_BUILDERS:
        stage = builder(layout, references, config)
        modules = tuple(config.get_module_names(name))
        if modules:
            stage = replace(stage, modules=modules)
        stages.append(stage)

    check_handoff(stages, raw_inputs=layout.raw_reads)
    return stages


def check_handoff(stages: Sequence[Stage], raw_inputs: Sequence[Path] = ()) -> None:
    """
    Check that artifacts flow from stage to stage.

    Every input must be a raw input or an output of an earlier stage, and a
    stage that consumes artifacts must consume at least one produced by the
    stage right before it.
    """
    raw = set(raw_inputs)
    produced = set()
    previous: Optional[Stage] = None

    for stage in stages:
        unknown = [p for p in stage.inputs if p not in raw and p not in produced]
        if unknown:
            raise ArtifactHandoffError(
                f"Stage '{stage.name}' consumes files no earlier stage produces: " +
                ", ".join(str(p) for p in unknown)
            )

        consumes_artifacts = any(p not in raw for p in stage.inputs)
        if previous is not None and consumes_artifacts:
            if not set(stage.inputs) & set(previous.outputs):
                raise ArtifactHandoffError(
                    f"Stage '{stage.name}' does not consume any output of '{previous.name}'"
                )

        produced.update(stage.outputs)
        previous = stage


def select_stages(
    stages: Sequence[Stage],
    from_stage: Optional[str] = None,
    to_stage: Optional[str] = None
) -> List[Stage]:
    """Return the contiguous slice of stages between two names, inclusive."""
    names = [s.name for s in stages]
    for name in (from_stage, to_stage):
        if name is not None and name not in names:
            raise UnknownStageError(
                f"Unknown stage '{name}'. Valid stages: {', '.join(names)}"
            )

    start = names.index(from_stage) if from_stage else 0
    end = names.index(to_stage) if to_stage else len(names) - 1
    if start > end:
        raise UnknownStageError(
            f"Stage '{from_stage}' comes after '{to_stage}'"
        )
    return list(stages[start:end + 1])
