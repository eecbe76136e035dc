"""
Reference bundle model for the RNA-seq variant calling pipeline.
"""

from pathlib import Path
from typing import Dict, List
from pydantic import BaseModel, Field


# Bundle entries that are directories rather than single files
DIRECTORY_FIELDS = ("star_index", "annovar_db")


class ReferenceBundle(BaseModel):
    """Read-only reference files shared by every sample."""

    fasta: Path = Field(description="Genome FASTA (with .fai and .dict alongside)")
    gtf: Path = Field(description="Gene annotation GTF used for STAR splice junctions")
    star_index: Path = Field(description="STAR genome index directory")
    dbsnp: Path = Field(description="dbSNP known sites VCF")
    known_indels: Path = Field(description="Known indels VCF")
    annovar_db: Path = Field(description="ANNOVAR humandb directory")

    model_config = {"frozen": True}

    def as_dict(self) -> Dict[str, Path]:
        """Reference paths keyed by field name."""
        return {name: getattr(self, name) for name in type(self).model_fields}

    def missing(self) -> List[Path]:
        """Return every reference path that does not exist on disk."""
        missing = []
        for name, path in self.as_dict().items():
            if name in DIRECTORY_FIELDS:
                if not path.is_dir():
                    missing.append(path)
            elif not path.is_file():
                missing.append(path)
        return missing
