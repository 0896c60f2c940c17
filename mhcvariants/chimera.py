"""
De novo bimera detection on a variant table.

A variant is a bimera in a sample if it can be reconstructed exactly from a
left segment of one more-abundant variant and the remaining right segment of
another, both present in that sample. Comparisons are ungapped, so only
variants of equal length are considered as parents; run this after the
length filter.
"""

import logging
from typing import Dict, Set

import numpy as np

from mhcvariants.config import FilterConfig
from mhcvariants.table import VariantTable


def encode_sequences(sequences) -> np.ndarray:
    """Equal-length sequences as an (n, length) uint8 array."""
    return np.array([np.frombuffer(seq.encode('ascii'), dtype=np.uint8) for seq in sequences])


def is_bimera(query: np.ndarray, parents: np.ndarray) -> bool:
    """Whether query is a left/right join of two of the parent rows."""
    if len(parents) < 2:
        return False
    length = query.shape[0]
    mismatch = parents != query

    has_mismatch = mismatch.any(axis=1)
    # Longest exact prefix and suffix shared with each parent
    left = np.where(has_mismatch, np.argmax(mismatch, axis=1), length)
    right = np.where(has_mismatch, np.argmax(mismatch[:, ::-1], axis=1), length)
    return int(left.max()) + int(right.max()) >= length


def flag_bimeras_in_sample(sequences: np.ndarray, abundances: np.ndarray,
                           min_fold_parent_abundance: float) -> np.ndarray:
    """Flag bimeras among equal-length sequences present in one sample."""
    flagged = np.zeros(len(abundances), dtype=bool)
    present = np.flatnonzero(abundances > 0)
    for i in present:
        parent_mask = abundances >= min_fold_parent_abundance * abundances[i]
        parent_mask[i] = False
        flagged[i] = is_bimera(sequences[i], sequences[parent_mask])
    return flagged


class BimeraDetector:
    """Flags chimeric variants in a table.

    Methods:
        consensus: test each sample independently and flag a variant when
            enough of the samples containing it agree
        pooled: test once against abundances summed over all samples
        none: flag nothing
    """

    def __init__(self, method: str = 'consensus',
                 min_fold_parent_abundance: float = 1.5,
                 min_sample_fraction: float = 0.9,
                 ignore_negatives: int = 1):
        self.method = method
        self.min_fold_parent_abundance = min_fold_parent_abundance
        self.min_sample_fraction = min_sample_fraction
        self.ignore_negatives = ignore_negatives

    @classmethod
    def from_config(cls, config: FilterConfig) -> 'BimeraDetector':
        return cls(
            method=config.chimera_method,
            min_fold_parent_abundance=config.min_fold_parent_abundance,
            min_sample_fraction=config.min_sample_fraction,
            ignore_negatives=config.ignore_negatives,
        )

    def flag(self, table: VariantTable) -> Set[str]:
        if self.method == 'none' or table.is_empty():
            return set()

        counts = table.counts
        flagged = set()
        for length, group in counts.groupby(table.lengths):
            sequences = encode_sequences(group.index)
            if self.method == 'pooled':
                hits = flag_bimeras_in_sample(sequences, group.sum(axis=1).to_numpy(),
                                              self.min_fold_parent_abundance)
                flagged.update(group.index[hits])
            else:
                flagged.update(self._consensus(group, sequences))

        logging.debug(f"Bimera detection ({self.method}): flagged {len(flagged)} of {table.n_variants} variants")
        return flagged

    def _consensus(self, group, sequences: np.ndarray) -> Set[str]:
        values = group.to_numpy()
        n_present = (values > 0).sum(axis=1)
        n_flagged = np.zeros(len(group), dtype=int)
        for col in range(values.shape[1]):
            n_flagged += flag_bimeras_in_sample(sequences, values[:, col], self.min_fold_parent_abundance)

        flagged = set()
        for seq, nflag, nsam in zip(group.index, n_flagged, n_present):
            if nsam == 0 or nflag == 0:
                continue
            if nflag >= nsam or nflag >= (nsam - self.ignore_negatives) * self.min_sample_fraction:
                flagged.add(seq)
        return flagged


def chimera_summary(table: VariantTable, flagged: Set[str]) -> Dict[str, float]:
    """Share of variants and reads flagged as chimeric."""
    totals = table.total_abundance
    flagged_reads = int(totals[list(flagged)].sum()) if flagged else 0
    depth = table.depth
    return {
        'flagged_variants': len(flagged),
        'flagged_reads': flagged_reads,
        'flagged_read_fraction': flagged_reads / depth if depth else 0.0,
    }
