"""
The samples-by-variants abundance table.

VariantTable wraps a pandas DataFrame holding only read counts: rows are
variant sequences, columns are samples. Derived fields (prevalence, totals,
relative frequencies) are always recomputed from the counts and never stored
alongside them, so they can never be mistaken for a sample.
"""

import logging
from typing import Iterable, List, Mapping

import numpy as np
import pandas as pd
from Bio import SeqIO
from Bio.Seq import Seq
from Bio.SeqRecord import SeqRecord

from mhcvariants.types import InputError


# Columns written next to the sample counts; never read back as samples
DERIVED_COLUMNS = ('variant_id', 'length', 'total_abundance', 'prevalence')


class VariantTable:
    """Immutable abundance table. Every narrowing operation returns a new table."""

    def __init__(self, counts: pd.DataFrame):
        if counts.index.has_duplicates:
            raise InputError("Variant table contains duplicate sequences")
        if counts.columns.has_duplicates:
            raise InputError("Variant table contains duplicate sample columns")
        if counts.isna().any().any():
            raise InputError("Variant table contains missing cells")
        if (counts < 0).any().any():
            raise InputError("Variant table contains negative counts")

        counts = counts.astype('int64', copy=True)
        counts.index = counts.index.astype(str)
        counts.index.name = 'sequence'
        counts.columns = counts.columns.astype(str)
        counts.columns.name = 'sample'
        self._counts = counts

    @property
    def counts(self) -> pd.DataFrame:
        return self._counts.copy()

    @property
    def sequences(self) -> List[str]:
        return list(self._counts.index)

    @property
    def samples(self) -> List[str]:
        return list(self._counts.columns)

    @property
    def n_variants(self) -> int:
        return self._counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self._counts.shape[1]

    @property
    def depth(self) -> int:
        return int(self._counts.to_numpy().sum())

    def is_empty(self) -> bool:
        return self.n_variants == 0 or self.n_samples == 0

    @property
    def lengths(self) -> pd.Series:
        return pd.Series([len(s) for s in self._counts.index], index=self._counts.index, name='length')

    @property
    def prevalence(self) -> pd.Series:
        """Number of samples with a nonzero count, per variant."""
        return (self._counts > 0).sum(axis=1).rename('prevalence')

    @property
    def total_abundance(self) -> pd.Series:
        return self._counts.sum(axis=1).rename('total_abundance')

    @property
    def sample_totals(self) -> pd.Series:
        return self._counts.sum(axis=0).rename('total_reads')

    @property
    def variant_count(self) -> pd.Series:
        """Number of variants observed per sample (copy-number proxy)."""
        return (self._counts > 0).sum(axis=0).rename('variant_count')

    @property
    def relative_frequency(self) -> pd.DataFrame:
        """Each cell as a fraction of its sample's total reads."""
        totals = self.sample_totals.replace(0, np.nan)
        return self._counts.div(totals, axis=1).fillna(0.0)

    def keep_rows(self, mask: pd.Series) -> 'VariantTable':
        return VariantTable(self._counts.loc[mask.reindex(self._counts.index, fill_value=False)])

    def drop_samples(self, samples: Iterable[str]) -> 'VariantTable':
        return VariantTable(self._counts.drop(columns=list(samples)))

    def zero_cells(self, mask: pd.DataFrame) -> 'VariantTable':
        return VariantTable(self._counts.mask(mask, 0))

    def empty_samples(self) -> List[str]:
        totals = self.sample_totals
        return list(totals.index[totals == 0])

    def drop_empty_samples(self) -> 'VariantTable':
        return self.drop_samples(self.empty_samples())

    def equals(self, other: 'VariantTable') -> bool:
        return self._counts.equals(other._counts)

    def __repr__(self):
        return f"VariantTable({self.n_variants} variants x {self.n_samples} samples, depth={self.depth})"


def sort_variants(counts: pd.DataFrame) -> pd.DataFrame:
    """Order rows by descending total abundance, then sequence."""
    totals = counts.sum(axis=1)
    order = sorted(counts.index, key=lambda seq: (-int(totals[seq]), seq))
    return counts.loc[order]


def build_variant_table(sample_abundances: Mapping[str, Mapping[str, int]]) -> VariantTable:
    """Assemble per-sample sequence counts into one dense table.

    Rows are the union of all sequences across samples (exact string match),
    columns follow the mapping's sample order, absent cells are zero.
    """
    samples = list(sample_abundances.keys())
    sequences = sorted(set(seq for abundances in sample_abundances.values() for seq in abundances))

    counts = pd.DataFrame(0, index=pd.Index(sequences, dtype=object), columns=samples, dtype='int64')
    for sample, abundances in sample_abundances.items():
        for sequence, count in abundances.items():
            counts.at[sequence, sample] = int(count)

    table = VariantTable(sort_variants(counts))
    logging.info(f"Built variant table: {table.n_variants} sequences across {table.n_samples} samples "
                 f"({table.depth} reads)")
    return table


def variant_ids(n: int) -> List[str]:
    width = max(3, len(str(n)))
    return [f"V{i:0{width}d}" for i in range(1, n + 1)]


def table_to_frame(table: VariantTable) -> pd.DataFrame:
    """Flatten a table with its derived fields for writing."""
    frame = table.counts.reset_index()
    frame.insert(0, 'variant_id', variant_ids(table.n_variants))
    frame.insert(2, 'length', frame['sequence'].str.len())
    frame['total_abundance'] = table.total_abundance.to_numpy()
    frame['prevalence'] = table.prevalence.to_numpy()
    return frame


def write_variant_table(table: VariantTable, path: str) -> None:
    """Write the table as CSV with its derived columns.

    Raises:
        InputError: if a sample name collides with a derived column or
            'sequence', since it could not be read back as a sample
    """
    reserved = [s for s in table.samples if s in DERIVED_COLUMNS or s == 'sequence']
    if reserved:
        raise InputError(f"Sample names clash with reserved table columns: {', '.join(reserved)}")
    table_to_frame(table).to_csv(path, index=False)
    logging.info(f"Wrote variant table ({table.n_variants} variants, {table.n_samples} samples) to {path}")


def read_variant_table(path: str) -> VariantTable:
    """Load a table written by write_variant_table; derived columns are ignored."""
    try:
        frame = pd.read_csv(path, dtype={'sequence': str})
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise InputError(f"Cannot read variant table {path}: {e}") from e

    if 'sequence' not in frame.columns:
        raise InputError(f"Variant table {path} has no 'sequence' column")

    frame = frame.drop(columns=[c for c in DERIVED_COLUMNS if c in frame.columns])
    counts = frame.set_index('sequence')
    for sample in counts.columns:
        if not pd.api.types.is_numeric_dtype(counts[sample]):
            raise InputError(f"Variant table {path}: column '{sample}' is not numeric")
        values = counts[sample].dropna()
        if not np.all(np.mod(values.to_numpy(), 1) == 0):
            raise InputError(f"Variant table {path}: column '{sample}' contains non-integer counts")

    table = VariantTable(counts)
    logging.info(f"Loaded variant table from {path}: {table.n_variants} variants, {table.n_samples} samples")
    return table


def write_variant_fasta(table: VariantTable, path: str) -> None:
    records = []
    totals = table.total_abundance
    prevalence = table.prevalence
    for variant_id, sequence in zip(variant_ids(table.n_variants), table.sequences):
        records.append(SeqRecord(
            Seq(sequence),
            id=variant_id,
            description=f"length={len(sequence)} total_abundance={totals[sequence]} "
                        f"prevalence={prevalence[sequence]}",
        ))
    with open(path, 'w') as f:
        SeqIO.write(records, f, 'fasta')
    logging.debug(f"Wrote {len(records)} variant sequences to {path}")


def write_sample_summary(table: VariantTable, path: str) -> None:
    summary = pd.DataFrame({
        'sample': table.samples,
        'total_reads': table.sample_totals.to_numpy(),
        'variant_count': table.variant_count.to_numpy(),
    })
    summary.to_csv(path, index=False)
    logging.debug(f"Wrote sample summary to {path}")

