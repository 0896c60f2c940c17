#!/usr/bin/env python3
"""
End-to-end tests of the mhcvariants pipeline on synthetic paired reads.

Each individual carries one or two of three 100bp alleles. Forward reads
cover the first 70 bases and reverse reads the last 70, so every pair
overlaps by 40 bases.
"""

import gzip
import hashlib
import json
import os
import sys
from unittest.mock import patch

import pandas as pd
import pytest
from Bio.Seq import reverse_complement

from mhcvariants import core
from mhcvariants.config import FilterConfig, PipelineConfig
from mhcvariants.core import VariantPipeline, map_samples


def generate_dna_sequence(seed: str, length: int) -> str:
    result = []
    for i in range(length):
        h = hashlib.md5(f"{seed}_{i}".encode()).hexdigest()
        result.append("ACGT"[int(h[0], 16) % 4])
    return "".join(result)


def substitute(sequence: str, positions) -> str:
    bases = list(sequence)
    for pos in positions:
        bases[pos] = 'A' if bases[pos] != 'A' else 'C'
    return "".join(bases)


ALLELE_1 = generate_dna_sequence("mhc_allele", 100)
ALLELE_2 = substitute(ALLELE_1, [10, 90])
ALLELE_3 = substitute(ALLELE_1, [50])

GENOTYPES = {
    'Ind1': {ALLELE_1: 700, ALLELE_2: 500},
    'Ind2': {ALLELE_1: 800, ALLELE_3: 600},
    'Ind3': {ALLELE_2: 650, ALLELE_3: 550},
    'Ind4': {ALLELE_1: 300, ALLELE_2: 200},  # Too few reads
}


def write_sample(directory, name, alleles):
    """Write error-free Q40 read pairs for one individual."""
    quality = 'I' * 70
    forward_path = os.path.join(directory, f"{name}_S1_L001_R1_001.fastq.gz")
    reverse_path = os.path.join(directory, f"{name}_S1_L001_R2_001.fastq.gz")
    with gzip.open(forward_path, 'wt') as f_out, gzip.open(reverse_path, 'wt') as r_out:
        read_num = 0
        for allele, count in alleles.items():
            forward = allele[:70]
            reverse = reverse_complement(allele[30:])
            for _ in range(count):
                read_num += 1
                f_out.write(f"@{name}_read{read_num} 1:N:0\n{forward}\n+\n{quality}\n")
                r_out.write(f"@{name}_read{read_num} 2:N:0\n{reverse}\n+\n{quality}\n")


@pytest.fixture
def reads_dir(tmp_path):
    directory = tmp_path / "reads"
    directory.mkdir()
    for name, alleles in GENOTYPES.items():
        write_sample(str(directory), name, alleles)
    return str(directory)


def pipeline_config(**filters):
    return PipelineConfig(filters=FilterConfig(**filters))


def test_pipeline_recovers_genotypes(tmp_path, reads_dir):
    out_dir = str(tmp_path / "out")
    pipeline = VariantPipeline(reads_dir, out_dir, pipeline_config())
    filtered, reports = pipeline.run()

    assert set(filtered.sequences) == {ALLELE_1, ALLELE_2, ALLELE_3}
    assert filtered.samples == ['Ind1', 'Ind2', 'Ind3']
    counts = filtered.counts
    assert counts.at[ALLELE_1, 'Ind1'] == 700
    assert counts.at[ALLELE_2, 'Ind1'] == 500
    assert counts.at[ALLELE_3, 'Ind3'] == 550
    assert counts.at[ALLELE_3, 'Ind1'] == 0
    assert filtered.prevalence.to_dict() == {ALLELE_1: 2, ALLELE_2: 2, ALLELE_3: 2}
    assert [r.stage for r in reports][-1] == 'relative_frequency'


def test_pipeline_writes_outputs(tmp_path, reads_dir):
    out_dir = tmp_path / "out"
    VariantPipeline(reads_dir, str(out_dir), pipeline_config()).run()

    for name in ("variant_table_unfiltered.csv", "variant_table.csv", "variants.fasta",
                 "sample_summary.csv", "read_tracking.csv", "filter_stages.csv"):
        assert (out_dir / name).exists(), name
    assert (out_dir / "filtered" / "Ind1_F_filt.fastq.gz").exists()

    unfiltered = pd.read_csv(out_dir / "variant_table_unfiltered.csv")
    assert 'Ind4' in unfiltered.columns
    assert len(unfiltered) == 3


def test_pipeline_tracks_reads_per_sample(tmp_path, reads_dir):
    out_dir = tmp_path / "out"
    pipeline = VariantPipeline(reads_dir, str(out_dir), pipeline_config())
    pipeline.run()

    samples = {s.name: s for s in pipeline.samples}
    ind1 = samples['Ind1']
    assert ind1.raw_reads == 1200
    assert ind1.filtered_reads == 1200
    assert ind1.denoised_forward == 1200
    assert ind1.merged_reads == 1200
    assert ind1.nonchimeric_reads == 1200
    assert ind1.final_reads == 1200
    assert not ind1.failed

    ind4 = samples['Ind4']
    assert ind4.failed
    assert ind4.merged_reads == 500
    assert ind4.final_reads == 0

    tracking = pd.read_csv(out_dir / "read_tracking.csv")
    assert tracking.set_index('name').loc['Ind4', 'failed']


def test_pipeline_with_threads(tmp_path, reads_dir):
    config = PipelineConfig(threads=2, filters=FilterConfig(chimera_method='none'))
    filtered, _ = VariantPipeline(reads_dir, str(tmp_path / "out"), config).run()
    assert filtered.n_variants == 3


def test_map_samples_preserves_order():
    assert map_samples(lambda x: x * 2, [1, 2, 3], 1, "test") == [2, 4, 6]
    assert map_samples(lambda x: x * 2, [1, 2, 3], 3, "test") == [2, 4, 6]


def test_main_command_line(tmp_path, reads_dir):
    out_dir = tmp_path / "cli_out"
    argv = ['mhcvariants', reads_dir, '-O', str(out_dir), '--chimera-method', 'pooled']
    with patch.object(sys, 'argv', argv):
        core.main()

    with open(out_dir / "run_metadata.json") as f:
        metadata = json.load(f)
    assert metadata['parameters']['filters']['chimera_method'] == 'pooled'
    assert metadata['parameters']['merge']['min_overlap'] == 12

    table = pd.read_csv(out_dir / "variant_table.csv")
    assert len(table) == 3


def test_main_missing_mate_exits(tmp_path, reads_dir):
    os.remove(os.path.join(reads_dir, "Ind2_S1_L001_R2_001.fastq.gz"))
    argv = ['mhcvariants', reads_dir, '-O', str(tmp_path / "out")]
    with patch.object(sys, 'argv', argv):
        with pytest.raises(SystemExit) as excinfo:
            core.main()
    assert excinfo.value.code == 1


def test_main_empty_after_filtering_exits(tmp_path, reads_dir):
    argv = ['mhcvariants', reads_dir, '-O', str(tmp_path / "out"), '--min-prevalence', '3']
    with patch.object(sys, 'argv', argv):
        with pytest.raises(SystemExit) as excinfo:
            core.main()
    assert excinfo.value.code == 1
    assert (tmp_path / "out" / "variant_table_unfiltered.csv").exists()
