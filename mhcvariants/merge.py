"""Merging of denoised forward and reverse sequences into full amplicons."""

import logging
from collections import Counter
from typing import Dict, Optional, Tuple

from Bio.Seq import reverse_complement

from mhcvariants.config import MergeConfig
from mhcvariants.types import DenoisedSample, MergeResult


def merge_sequences(forward: str, reverse: str, config: MergeConfig) -> Optional[str]:
    """Merge a forward sequence with a reverse read sequence by overlap.

    The reverse sequence is reverse-complemented and slid along the forward
    sequence. Valid placements overlap by at least config.min_overlap bases
    with at most config.max_mismatch mismatches; the placement with the
    fewest mismatches, then the longest overlap, is used. Overlapping bases
    are taken from the forward sequence.

    Returns:
        Merged sequence, or None if no valid overlap exists
    """
    rc = reverse_complement(reverse)
    best: Optional[Tuple[int, int, int]] = None  # (mismatches, -overlap, offset)

    for offset in range(len(forward)):
        overlap = min(len(forward) - offset, len(rc))
        if overlap < config.min_overlap:
            break
        mismatches = sum(1 for a, b in zip(forward[offset:offset + overlap], rc[:overlap]) if a != b)
        if mismatches > config.max_mismatch:
            continue
        key = (mismatches, -overlap, offset)
        if best is None or key < best:
            best = key

    if best is None:
        return None

    _, neg_overlap, _ = best
    overlap = -neg_overlap
    return forward + rc[overlap:]


def merge_pairs(forward: DenoisedSample, reverse: DenoisedSample,
                config: MergeConfig) -> MergeResult:
    """Merge a sample's denoised forward and reverse reads pair by pair.

    Reads are paired by identifier; each distinct combination of forward and
    reverse sequence is merged once and contributes its pair count.
    """
    pair_counts = Counter()
    for read_id, forward_seq in forward.read_map.items():
        reverse_seq = reverse.read_map.get(read_id)
        if reverse_seq is not None:
            pair_counts[(forward_seq, reverse_seq)] += 1

    abundances: Dict[str, int] = {}
    rejected = 0
    total = 0
    for (forward_seq, reverse_seq), count in pair_counts.items():
        total += count
        merged = merge_sequences(forward_seq, reverse_seq, config)
        if merged is None:
            rejected += count
            continue
        abundances[merged] = abundances.get(merged, 0) + count

    result = MergeResult(forward.sample_name, abundances, total, rejected)
    logging.debug(f"Sample {forward.sample_name}: merged {result.merged_pairs}/{total} pairs "
                  f"into {len(abundances)} sequences")
    return result
