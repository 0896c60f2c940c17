"""Discovery of paired FASTQ files and hard quality filtering of reads."""

import gzip
import logging
import os
from itertools import zip_longest
from typing import List, Optional, Tuple

import numpy as np
from Bio import SeqIO
from Bio.SeqRecord import SeqRecord

from mhcvariants.config import FilterTrimConfig
from mhcvariants.types import InputError, Sample


def open_fastq(path: str, mode: str = 'r'):
    """Open a FASTQ file in text mode, transparently handling gzip."""
    if path.endswith('.gz'):
        return gzip.open(path, mode + 't')
    return open(path, mode)


def sample_name_from_path(path: str) -> str:
    """Sample identifier is the file name up to the first underscore."""
    return os.path.basename(path).split('_')[0]


def find_paired_fastq(input_dir: str,
                      forward_pattern: str = '_R1_001.fastq.gz',
                      reverse_pattern: str = '_R2_001.fastq.gz') -> List[Sample]:
    """Find forward/reverse FASTQ mates in a directory.

    Files are matched by replacing the forward suffix with the reverse suffix.
    Any unmatched mate is a fatal input error.
    """
    if not os.path.isdir(input_dir):
        raise InputError(f"Input directory not found: {input_dir}")

    names = sorted(os.listdir(input_dir))
    forward_files = [n for n in names if n.endswith(forward_pattern)]
    reverse_files = set(n for n in names if n.endswith(reverse_pattern))

    samples = []
    seen = set()
    for forward in forward_files:
        reverse = forward[:-len(forward_pattern)] + reverse_pattern
        if reverse not in reverse_files:
            raise InputError(f"No reverse mate found for {forward} (expected {reverse})")
        reverse_files.discard(reverse)

        name = sample_name_from_path(forward)
        if name in seen:
            raise InputError(f"Duplicate sample identifier '{name}' from {forward}")
        seen.add(name)
        samples.append(Sample(
            name=name,
            forward_path=os.path.join(input_dir, forward),
            reverse_path=os.path.join(input_dir, reverse),
        ))

    if reverse_files:
        orphan = sorted(reverse_files)[0]
        raise InputError(f"No forward mate found for {orphan}")

    if not samples:
        raise InputError(f"No paired FASTQ files matching *{forward_pattern} found in {input_dir}")

    logging.info(f"Found {len(samples)} paired samples in {input_dir}")
    return samples


def expected_errors(qualities) -> float:
    """Sum of per-base error probabilities implied by phred scores."""
    q = np.asarray(qualities, dtype=float)
    return float(np.sum(np.power(10.0, -q / 10.0)))


def trim_read(record: SeqRecord, trim_right: int, config: FilterTrimConfig) -> Optional[SeqRecord]:
    """Apply truncation, trimming and hard filters to one read.

    Returns the trimmed record, or None if the read is discarded.
    """
    qualities = record.letter_annotations['phred_quality']

    # Truncate at the first low-quality base
    for i, q in enumerate(qualities):
        if q <= config.trunc_q:
            record = record[:i]
            break

    if trim_right > 0:
        record = record[:max(len(record) - trim_right, 0)]

    if len(record) < config.min_length:
        return None

    if str(record.seq).upper().count('N') > config.max_n:
        return None

    if expected_errors(record.letter_annotations['phred_quality']) > config.max_ee:
        return None

    return record


def filtered_paths(sample: Sample, out_dir: str) -> Tuple[str, str]:
    return (os.path.join(out_dir, f"{sample.name}_F_filt.fastq.gz"),
            os.path.join(out_dir, f"{sample.name}_R_filt.fastq.gz"))


def mate_id(record: SeqRecord) -> str:
    """Read identifier shared by both mates; strips legacy Illumina /1 and /2 suffixes."""
    read_id = record.id
    if read_id.endswith('/1') or read_id.endswith('/2'):
        read_id = read_id[:-2]
    return read_id


def filter_and_trim(sample: Sample, out_dir: str, config: FilterTrimConfig) -> Tuple[int, int]:
    """Filter both mates of a sample together, writing gzipped FASTQ output.

    A pair is kept only if both mates pass. Mismatched mate files are fatal.

    Returns:
        Tuple of (reads_in, reads_out)
    """
    os.makedirs(out_dir, exist_ok=True)
    forward_out, reverse_out = filtered_paths(sample, out_dir)

    reads_in = 0
    reads_out = 0
    with open_fastq(sample.forward_path) as f_in, open_fastq(sample.reverse_path) as r_in, \
            gzip.open(forward_out, 'wt') as f_out, gzip.open(reverse_out, 'wt') as r_out:
        forward_iter = SeqIO.parse(f_in, 'fastq')
        reverse_iter = SeqIO.parse(r_in, 'fastq')
        for forward, reverse in zip_longest(forward_iter, reverse_iter):
            if forward is None or reverse is None:
                raise InputError(f"Sample {sample.name}: forward and reverse files contain "
                                 f"different numbers of reads ({sample.forward_path}, {sample.reverse_path})")
            if mate_id(forward) != mate_id(reverse):
                raise InputError(f"Sample {sample.name}: mate identifiers do not match "
                                 f"at read {reads_in + 1} ({forward.id} vs {reverse.id})")
            reads_in += 1

            forward = trim_read(forward, config.trim_right_forward, config)
            if forward is None:
                continue
            reverse = trim_read(reverse, config.trim_right_reverse, config)
            if reverse is None:
                continue

            SeqIO.write(forward, f_out, 'fastq')
            SeqIO.write(reverse, r_out, 'fastq')
            reads_out += 1

    logging.debug(f"Sample {sample.name}: {reads_out}/{reads_in} read pairs passed filtering")
    return reads_in, reads_out
