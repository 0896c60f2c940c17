#!/usr/bin/env python3
"""
Ordered filtering of the variant table.

Each stage is a pure function from one VariantTable to the next. Stages run
in a fixed order because later thresholds depend on the table left by
earlier ones:

    1. length             keep rows of the target amplicon length
    2. chimera            remove bimeras flagged by the detector
    3. failed_samples     drop samples with too few reads
    4. prevalence         drop variants seen in too few samples
    5. cell_support       zero weakly supported cells, re-apply prevalence
    6. relative_frequency zero low-frequency cells, re-apply prevalence
"""

import logging
from collections import Counter
from typing import List, Optional, Protocol, Set, Tuple

from mhcvariants.chimera import BimeraDetector, chimera_summary
from mhcvariants.config import FilterConfig
from mhcvariants.table import VariantTable
from mhcvariants.types import DegenerateLengthError, EmptyTableError, StageReport


# Retention below this after chimera removal is unusual for amplicon data
HEALTHY_CHIMERA_RETENTION = 0.85


class ChimeraDetector(Protocol):
    def flag(self, table: VariantTable) -> Set[str]:
        ...


def length_distribution(table: VariantTable) -> Counter:
    return Counter(table.lengths.tolist())


def select_target_length(table: VariantTable, config: FilterConfig) -> int:
    """Return the configured target length, or the dominant row length.

    Raises:
        DegenerateLengthError: if the modal length does not account for more
            than config.length_dominance of the rows
    """
    if config.target_length is not None:
        return config.target_length

    distribution = length_distribution(table)
    if not distribution:
        raise EmptyTableError('length', "Cannot select a target length from an empty table")

    # Ties resolve to the shorter length so the choice is deterministic
    modal_length, modal_rows = min(distribution.items(), key=lambda item: (-item[1], item[0]))
    share = modal_rows / table.n_variants
    if share <= config.length_dominance:
        summary = ', '.join(f"{length}bp: {n}" for length, n in distribution.most_common(5))
        raise DegenerateLengthError(
            f"No dominant sequence length: modal length {modal_length}bp covers only "
            f"{share:.1%} of {table.n_variants} variants ({summary}). "
            f"Set a target length explicitly after reviewing the distribution.")

    logging.info(f"Target length {modal_length}bp covers {modal_rows}/{table.n_variants} variants ({share:.1%})")
    return modal_length


def filter_length(table: VariantTable, target_length: int) -> VariantTable:
    """Stage 1: keep only variants of the target length."""
    filtered = table.keep_rows(table.lengths == target_length)
    logging.info(f"Length filter ({target_length}bp): kept {filtered.n_variants}/{table.n_variants} variants")
    return filtered


def remove_chimeras(table: VariantTable, detector: ChimeraDetector) -> VariantTable:
    """Stage 2: remove variants flagged as chimeric."""
    flagged = detector.flag(table)
    filtered = table.keep_rows(~table.lengths.index.to_series().isin(list(flagged)))

    stats = chimera_summary(table, flagged)
    retained = filtered.depth / table.depth if table.depth else 0.0
    logging.info(f"Chimera removal: {stats['flagged_variants']} variants "
                 f"({stats['flagged_reads']} reads) flagged, "
                 f"{retained:.1%} of reads retained")
    if retained < HEALTHY_CHIMERA_RETENTION:
        logging.warning(f"Only {retained:.1%} of reads retained after chimera removal "
                        f"(expected at least {HEALTHY_CHIMERA_RETENTION:.0%})")
    return filtered


def exclude_failed_samples(table: VariantTable, min_sample_reads: int) -> VariantTable:
    """Stage 3: drop samples whose total reads fall below min_sample_reads."""
    totals = table.sample_totals
    failed = list(totals.index[totals < min_sample_reads])
    for sample in failed:
        logging.info(f"Excluding sample {sample}: {totals[sample]} reads < {min_sample_reads}")
    return table.drop_samples(failed)


def filter_prevalence(table: VariantTable, min_prevalence: int) -> VariantTable:
    """Stage 4: drop variants present in min_prevalence samples or fewer."""
    filtered = table.keep_rows(table.prevalence > min_prevalence)
    logging.info(f"Prevalence filter (> {min_prevalence} samples): "
                 f"kept {filtered.n_variants}/{table.n_variants} variants")
    return filtered


def filter_cell_support(table: VariantTable, min_cell_support: int, min_prevalence: int) -> VariantTable:
    """Stage 5: zero cells with fewer than min_cell_support reads.

    Samples left without reads are dropped, then prevalence is re-applied.
    """
    weak = table.counts < min_cell_support
    zeroed = table.zero_cells(weak)
    logging.info(f"Cell support filter (>= {min_cell_support} reads): zeroed "
                 f"{int((weak & (table.counts > 0)).to_numpy().sum())} cells")

    zeroed = _drop_emptied_samples(zeroed)
    return _drop_emptied_samples(filter_prevalence(zeroed, min_prevalence))


def filter_relative_frequency(table: VariantTable, min_relative_frequency: float,
                              min_prevalence: int) -> VariantTable:
    """Stage 6: zero cells below min_relative_frequency of their sample's reads.

    Frequencies use sample totals of the incoming table. Prevalence is
    re-applied afterwards and emptied samples are dropped.
    """
    rare = table.relative_frequency < min_relative_frequency
    zeroed = table.zero_cells(rare)
    logging.info(f"Relative frequency filter (>= {min_relative_frequency:.1%}): zeroed "
                 f"{int((rare & (table.counts > 0)).to_numpy().sum())} cells")

    zeroed = _drop_emptied_samples(zeroed)
    return _drop_emptied_samples(filter_prevalence(zeroed, min_prevalence))


def _drop_emptied_samples(table: VariantTable) -> VariantTable:
    empty = table.empty_samples()
    if empty:
        logging.info(f"Dropping {len(empty)} samples with no remaining reads: {', '.join(empty)}")
    return table.drop_samples(empty)


def stage_report(stage: str, before: VariantTable, after: VariantTable,
                 with_summary: bool = False) -> StageReport:
    retained = after.depth / before.depth if before.depth else 0.0
    report = StageReport(
        stage=stage,
        rows=after.n_variants,
        samples=after.n_samples,
        depth=after.depth,
        retained_fraction=retained,
        sample_reads={sample: int(n) for sample, n in after.sample_totals.items()},
    )
    if with_summary:
        report = report._replace(
            prevalence=after.prevalence.to_dict(),
            total_abundance=after.total_abundance.to_dict(),
            variant_count=after.variant_count.to_dict(),
        )
    return report


def run_filter_pipeline(table: VariantTable, config: FilterConfig,
                        detector: Optional[ChimeraDetector] = None) -> Tuple[VariantTable, List[StageReport]]:
    """Run all six stages in order.

    Returns:
        Tuple of (filtered table, one StageReport per stage)

    Raises:
        DegenerateLengthError: if no target length can be chosen
        EmptyTableError: if any stage leaves no variants or no samples
    """
    if detector is None:
        detector = BimeraDetector.from_config(config)

    if table.is_empty():
        raise EmptyTableError('input', "Variant table is empty before filtering")

    target_length = select_target_length(table, config)
    stages = [
        ('length', lambda t: filter_length(t, target_length), False),
        ('chimera', lambda t: remove_chimeras(t, detector), False),
        ('failed_samples', lambda t: exclude_failed_samples(t, config.min_sample_reads), True),
        ('prevalence', lambda t: filter_prevalence(t, config.min_prevalence), True),
        ('cell_support', lambda t: filter_cell_support(t, config.min_cell_support, config.min_prevalence), True),
        ('relative_frequency', lambda t: filter_relative_frequency(
            t, config.min_relative_frequency, config.min_prevalence), True),
    ]

    reports = []
    for name, stage, with_summary in stages:
        filtered = stage(table)
        if filtered.is_empty():
            raise EmptyTableError(name, f"No variants or samples remain after stage '{name}' "
                                        f"({filtered.n_variants} variants, {filtered.n_samples} samples)")
        reports.append(stage_report(name, table, filtered, with_summary))
        table = filtered

    logging.info(f"Filtering complete: {table.n_variants} variants across {table.n_samples} samples "
                 f"({table.depth} reads)")
    return table, reports
