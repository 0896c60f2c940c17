"""Tests for the variant table builder and its persistence."""

import numpy as np
import pandas as pd
import pytest
from Bio import SeqIO

from mhcvariants.table import (
    VariantTable,
    build_variant_table,
    read_variant_table,
    write_sample_summary,
    write_variant_fasta,
    write_variant_table,
)
from mhcvariants.types import InputError


def test_build_union_of_sequences_with_zero_fill():
    """Rows are the union of all sequences; absent cells are zero."""
    table = build_variant_table({
        'S1': {'AAAA': 10, 'CCCC': 5},
        'S2': {'CCCC': 7, 'GGGG': 3},
    })

    assert set(table.sequences) == {'AAAA', 'CCCC', 'GGGG'}
    assert table.samples == ['S1', 'S2']
    counts = table.counts
    assert counts.at['AAAA', 'S2'] == 0
    assert counts.at['GGGG', 'S1'] == 0
    assert counts.at['CCCC', 'S2'] == 7
    assert table.depth == 25


def test_build_orders_rows_by_total_abundance():
    table = build_variant_table({
        'S1': {'AAAA': 1, 'CCCC': 50, 'GGGG': 10},
        'S2': {'AAAA': 1, 'TTTT': 10},
    })
    assert table.sequences == ['CCCC', 'GGGG', 'TTTT', 'AAAA']


def test_build_keeps_near_identical_sequences_distinct():
    """No normalisation: case differences and off-by-one variants are separate rows."""
    table = build_variant_table({
        'S1': {'ACGT': 5, 'acgt': 3, 'ACGTA': 2},
    })
    assert table.n_variants == 3


def test_build_sample_without_sequences_is_zero_column():
    table = build_variant_table({'S1': {'AAAA': 5}, 'S2': {}})
    assert table.samples == ['S1', 'S2']
    assert table.sample_totals['S2'] == 0
    assert table.empty_samples() == ['S2']


def test_derived_fields():
    table = build_variant_table({
        'S1': {'AAAA': 30, 'CCCC': 70},
        'S2': {'AAAA': 50},
        'S3': {},
    })

    assert table.prevalence['AAAA'] == 2
    assert table.prevalence['CCCC'] == 1
    assert table.total_abundance['AAAA'] == 80
    assert table.variant_count['S1'] == 2
    assert table.variant_count['S3'] == 0

    freq = table.relative_frequency
    assert freq.at['AAAA', 'S1'] == pytest.approx(0.3)
    assert freq.at['AAAA', 'S2'] == pytest.approx(1.0)
    # Empty sample has zero frequencies rather than NaN
    assert freq['S3'].tolist() == [0.0, 0.0]


def test_derived_fields_are_idempotent():
    table = build_variant_table({'S1': {'AAAA': 3, 'CCCC': 1}, 'S2': {'AAAA': 2}})
    assert table.prevalence.equals(table.prevalence)
    assert table.total_abundance.equals(table.total_abundance)
    assert table.variant_count.equals(table.variant_count)


def test_counts_property_is_a_copy():
    table = build_variant_table({'S1': {'AAAA': 3}})
    counts = table.counts
    counts.at['AAAA', 'S1'] = 999
    assert table.counts.at['AAAA', 'S1'] == 3


def test_narrowing_returns_new_table():
    table = build_variant_table({'S1': {'AAAA': 3, 'CCCC': 4}, 'S2': {'AAAA': 1}})

    narrowed = table.drop_samples(['S2'])
    assert narrowed.samples == ['S1']
    assert table.samples == ['S1', 'S2']

    zeroed = table.zero_cells(table.counts < 2)
    assert zeroed.counts.at['AAAA', 'S2'] == 0
    assert table.counts.at['AAAA', 'S2'] == 1


def test_rejects_negative_and_missing_counts():
    with pytest.raises(InputError):
        VariantTable(pd.DataFrame({'S1': [1, -1]}, index=['AAAA', 'CCCC']))
    with pytest.raises(InputError):
        VariantTable(pd.DataFrame({'S1': [1.0, np.nan]}, index=['AAAA', 'CCCC']))
    with pytest.raises(InputError):
        VariantTable(pd.DataFrame({'S1': [1, 2]}, index=['AAAA', 'AAAA']))


def test_write_and_read_ignores_derived_columns(tmp_path):
    """Summary columns written beside the counts are never read back as samples."""
    table = build_variant_table({
        'S1': {'AAAA': 30, 'CCCC': 70},
        'S2': {'AAAA': 50},
    })
    path = tmp_path / "table.csv"
    write_variant_table(table, str(path))

    frame = pd.read_csv(path)
    assert list(frame.columns) == ['variant_id', 'sequence', 'length', 'S1', 'S2',
                                   'total_abundance', 'prevalence']
    assert frame['variant_id'].tolist() == ['V001', 'V002']
    assert frame['prevalence'].tolist() == [2, 1]

    loaded = read_variant_table(str(path))
    assert loaded.samples == ['S1', 'S2']
    assert loaded.equals(table)
    assert loaded.prevalence.to_dict() == {'CCCC': 1, 'AAAA': 2}


@pytest.mark.parametrize("sample", ['length', 'prevalence', 'total_abundance', 'variant_id', 'sequence'])
def test_write_rejects_sample_named_like_reserved_column(tmp_path, sample):
    """A sample named after a summary column would vanish on reading back."""
    table = build_variant_table({'S1': {'AAAA': 30}, sample: {'AAAA': 5}})
    path = tmp_path / "table.csv"
    with pytest.raises(InputError, match=sample):
        write_variant_table(table, str(path))
    assert not path.exists()


def test_read_rejects_missing_cells(tmp_path):
    path = tmp_path / "table.csv"
    path.write_text("sequence,S1,S2\nAAAA,1,\nCCCC,2,3\n")
    with pytest.raises(InputError):
        read_variant_table(str(path))


def test_read_rejects_non_integer_counts(tmp_path):
    path = tmp_path / "table.csv"
    path.write_text("sequence,S1\nAAAA,1.5\n")
    with pytest.raises(InputError):
        read_variant_table(str(path))


def test_read_requires_sequence_column(tmp_path):
    path = tmp_path / "table.csv"
    path.write_text("seq,S1\nAAAA,1\n")
    with pytest.raises(InputError):
        read_variant_table(str(path))


def test_write_variant_fasta(tmp_path):
    table = build_variant_table({'S1': {'AAAA': 30, 'CCCCC': 70}, 'S2': {'AAAA': 5}})
    path = tmp_path / "variants.fasta"
    write_variant_fasta(table, str(path))

    records = list(SeqIO.parse(str(path), 'fasta'))
    assert [r.id for r in records] == ['V001', 'V002']
    assert str(records[0].seq) == 'CCCCC'
    assert 'length=5' in records[0].description
    assert 'total_abundance=70' in records[0].description
    assert 'prevalence=2' in records[1].description


def test_write_sample_summary(tmp_path):
    table = build_variant_table({'S1': {'AAAA': 30, 'CCCC': 70}, 'S2': {'AAAA': 5}})
    path = tmp_path / "samples.csv"
    write_sample_summary(table, str(path))

    summary = pd.read_csv(path)
    assert summary.to_dict('records') == [
        {'sample': 'S1', 'total_reads': 100, 'variant_count': 2},
        {'sample': 'S2', 'total_reads': 5, 'variant_count': 1},
    ]
