"""Shared data structures and exceptions for the mhcvariants pipeline."""

from dataclasses import dataclass, asdict
from typing import Dict, List, NamedTuple, Optional

import numpy as np


class InputError(ValueError):
    """Malformed input: missing mate files, mismatched mates, bad tables."""


class DegenerateLengthError(ValueError):
    """No single sequence length dominates the variant table."""


class EmptyTableError(RuntimeError):
    """A filter stage left no variants or no samples in the table."""

    def __init__(self, stage: str, message: Optional[str] = None):
        self.stage = stage
        super().__init__(message or f"Variant table is empty after stage '{stage}'")


@dataclass
class Sample:
    """One sequenced individual and its read counts at each pipeline step.

    Counts stay None until the corresponding step has run.
    """
    name: str
    forward_path: str
    reverse_path: str
    filtered_forward_path: Optional[str] = None
    filtered_reverse_path: Optional[str] = None
    raw_reads: Optional[int] = None
    filtered_reads: Optional[int] = None
    denoised_forward: Optional[int] = None
    denoised_reverse: Optional[int] = None
    merged_reads: Optional[int] = None
    nonchimeric_reads: Optional[int] = None
    final_reads: Optional[int] = None
    failed: bool = False

    def tracking_row(self) -> Dict:
        row = asdict(self)
        for key in ('forward_path', 'reverse_path', 'filtered_forward_path', 'filtered_reverse_path'):
            row.pop(key)
        return row


class Unique(NamedTuple):
    """A dereplicated read sequence within one sample and strand."""
    sequence: str
    abundance: int
    quality: np.ndarray  # Per-position mean quality, rounded to int
    read_ids: List[str]


class DenoisedSample(NamedTuple):
    """Denoising output for one sample and strand."""
    sample_name: str
    abundances: Dict[str, int]  # centre sequence -> reads
    read_map: Dict[str, str]  # read id -> centre sequence

    @property
    def total_reads(self) -> int:
        return sum(self.abundances.values())


class MergeResult(NamedTuple):
    """Merged pairs for one sample."""
    sample_name: str
    abundances: Dict[str, int]  # merged sequence -> pair count
    total_pairs: int
    rejected_pairs: int

    @property
    def merged_pairs(self) -> int:
        return self.total_pairs - self.rejected_pairs

    @property
    def merge_yield(self) -> float:
        return self.merged_pairs / self.total_pairs if self.total_pairs > 0 else 0.0


class StageReport(NamedTuple):
    """Table state after one filter stage."""
    stage: str
    rows: int
    samples: int
    depth: int
    retained_fraction: float  # Depth after / depth before this stage
    sample_reads: Optional[Dict[str, int]] = None  # sample -> reads remaining
    prevalence: Optional[Dict[str, int]] = None  # sequence -> samples observed in
    total_abundance: Optional[Dict[str, int]] = None  # sequence -> reads
    variant_count: Optional[Dict[str, int]] = None  # sample -> nonzero variants

    def as_row(self) -> Dict:
        return {
            'stage': self.stage,
            'rows': self.rows,
            'samples': self.samples,
            'depth': self.depth,
            'retained_fraction': round(self.retained_fraction, 4),
        }
