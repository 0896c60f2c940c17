#!/usr/bin/env python3
"""
Error model learning and denoising of amplicon reads.

Reads from one sample and strand are dereplicated into unique sequences, then
partitioned divisively: a unique that is too abundant to be explained as
sequencing error of its partition centre (under the learned error model)
seeds a new partition. Each final partition centre is one inferred sequence
variant.
"""

import logging
import re
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Tuple

import edlib
import numpy as np
from Bio import SeqIO
from Bio.SeqRecord import SeqRecord
from scipy.stats import poisson
from tqdm import tqdm

from mhcvariants.config import DenoiseConfig
from mhcvariants.reads import mate_id, open_fastq
from mhcvariants.types import DenoisedSample, Unique


BASES = 'ACGT'
BASE_INDEX = {base: i for i, base in enumerate(BASES)}

MIN_ERROR_RATE = 1e-7
MAX_ERROR_RATE = 0.25
CONVERGENCE_TOLERANCE = 1e-6
MAX_REASSIGNMENTS = 10

CIGAR_PATTERN = re.compile(r'(\d+)([=XIDM])')


class ErrorModel:
    """Per-quality transition probabilities P(read base | true base, quality).

    rates has shape (4, 4, max_quality + 1) indexed by [true, read, quality].
    """

    def __init__(self, rates: np.ndarray):
        self.rates = rates

    @property
    def max_quality(self) -> int:
        return self.rates.shape[2] - 1

    @classmethod
    def from_phred(cls, max_quality: int = 41) -> 'ErrorModel':
        """Error model implied by the nominal phred scores."""
        q = np.arange(max_quality + 1, dtype=float)
        sub = np.clip(np.power(10.0, -q / 10.0) / 3.0, MIN_ERROR_RATE, MAX_ERROR_RATE)
        rates = np.empty((4, 4, max_quality + 1))
        for i in range(4):
            for j in range(4):
                rates[i, j] = sub
            rates[i, i] = 1.0 - 3.0 * sub
        return cls(rates)

    @classmethod
    def fit(cls, transitions: np.ndarray, fallback: Optional['ErrorModel'] = None) -> 'ErrorModel':
        """Fit a log-linear error rate in quality to observed transition counts.

        Transitions without at least two observed quality scores keep the
        fallback (nominal phred) rates.
        """
        max_quality = transitions.shape[2] - 1
        if fallback is None:
            fallback = cls.from_phred(max_quality)

        q = np.arange(max_quality + 1, dtype=float)
        rates = np.empty_like(fallback.rates)
        for i in range(4):
            totals = transitions[i].sum(axis=0)
            observed = totals > 0
            for j in range(4):
                if i == j:
                    continue
                if np.count_nonzero(observed) < 2:
                    rates[i, j] = fallback.rates[i, j]
                    continue
                # Half pseudocount keeps log10 finite for unobserved transitions
                observed_rate = (transitions[i, j, observed] + 0.5) / (totals[observed] + 1.0)
                slope, intercept = np.polyfit(q[observed], np.log10(observed_rate), 1,
                                              w=np.sqrt(totals[observed]))
                rates[i, j] = np.clip(np.power(10.0, intercept + slope * q),
                                      MIN_ERROR_RATE, MAX_ERROR_RATE)
            off_diagonal = [j for j in range(4) if j != i]
            rates[i, i] = 1.0 - rates[i, off_diagonal].sum(axis=0)
        return cls(rates)

    def max_difference(self, other: 'ErrorModel') -> float:
        return float(np.max(np.abs(self.rates - other.rates)))


def dereplicate_records(records: Iterable[SeqRecord]) -> List[Unique]:
    """Collapse identical reads into uniques with mean per-position quality."""
    groups = OrderedDict()
    for record in records:
        sequence = str(record.seq).upper()
        qualities = np.asarray(record.letter_annotations['phred_quality'], dtype=float)
        if sequence in groups:
            group = groups[sequence]
            group[0] += qualities
            group[1].append(mate_id(record))
        else:
            groups[sequence] = [qualities, [mate_id(record)]]

    uniques = []
    for sequence, (quality_sum, read_ids) in groups.items():
        quality = np.rint(quality_sum / len(read_ids)).astype(int)
        uniques.append(Unique(sequence, len(read_ids), quality, read_ids))

    uniques.sort(key=lambda u: (-u.abundance, u.sequence))
    return uniques


def dereplicate(path: str) -> List[Unique]:
    """Dereplicate a (possibly gzipped) FASTQ file."""
    with open_fastq(path) as handle:
        uniques = dereplicate_records(SeqIO.parse(handle, 'fastq'))
    logging.debug(f"Dereplicated {path}: {sum(u.abundance for u in uniques)} reads, "
                  f"{len(uniques)} unique sequences")
    return uniques


def align_columns(centre: str, unique: Unique, config: DenoiseConfig) -> Optional[Tuple[np.ndarray, int]]:
    """Align a unique to a centre sequence.

    Returns:
        Tuple of (columns, gap_count) where columns is an (n, 3) int array of
        (centre base, read base, quality) for aligned positions, or None if the
        edit distance exceeds the band.
    """
    result = edlib.align(unique.sequence, centre, mode="NW", task="path", k=config.band_size)
    if result["editDistance"] == -1:
        return None

    froms = []
    tos = []
    quals = []
    gaps = 0
    query_pos = 0
    target_pos = 0
    max_q = config.max_quality
    for length, op in CIGAR_PATTERN.findall(result["cigar"] or ""):
        length = int(length)
        if op in '=XM':
            for offset in range(length):
                true_base = BASE_INDEX.get(centre[target_pos + offset])
                read_base = BASE_INDEX.get(unique.sequence[query_pos + offset])
                if true_base is None or read_base is None:
                    continue
                froms.append(true_base)
                tos.append(read_base)
                quals.append(min(int(unique.quality[query_pos + offset]), max_q))
            query_pos += length
            target_pos += length
        elif op == 'I':
            gaps += length
            query_pos += length
        else:
            gaps += length
            target_pos += length

    columns = np.column_stack([
        np.asarray(froms, dtype=int),
        np.asarray(tos, dtype=int),
        np.clip(np.asarray(quals, dtype=int), 0, max_q),
    ]) if froms else np.empty((0, 3), dtype=int)
    return columns, gaps


def compute_lambda(centre: str, unique: Unique, model: ErrorModel, config: DenoiseConfig) -> float:
    """Probability that sequencing the centre produces the unique."""
    aligned = align_columns(centre, unique, config)
    if aligned is None:
        return 0.0
    columns, gaps = aligned
    with np.errstate(divide='ignore'):
        log_lambda = np.sum(np.log(model.rates[columns[:, 0], columns[:, 1], columns[:, 2]]))
        log_lambda += gaps * np.log(config.indel_probability)
    return float(np.exp(log_lambda))


def abundance_pvalues(abundances: np.ndarray, expected: np.ndarray) -> np.ndarray:
    """P(X >= a | X >= 1) for X ~ Poisson(expected).

    Uniques with zero expectation cannot be explained by error and get p = 0.
    """
    pvalues = np.zeros(len(abundances))
    explained = expected > 0
    if np.any(explained):
        a = abundances[explained]
        e = expected[explained]
        log_p = poisson.logsf(a - 1, e) - poisson.logsf(0, e)
        pvalues[explained] = np.exp(np.minimum(log_p, 0.0))
    return pvalues


def partition_uniques(uniques: List[Unique], model: ErrorModel,
                      config: DenoiseConfig) -> Tuple[List[int], np.ndarray]:
    """Divisively partition uniques around inferred true sequences.

    Uniques must be sorted by descending abundance.

    Returns:
        Tuple of (centre indices, partition assignment per unique)
    """
    n = len(uniques)
    abundances = np.array([u.abundance for u in uniques], dtype=float)
    centres = [0]
    lambda_columns = [np.array([compute_lambda(uniques[0].sequence, u, model, config) for u in uniques])]
    assignment = np.zeros(n, dtype=int)

    while True:
        lambdas = np.column_stack(lambda_columns)
        centre_index = np.arange(len(centres))
        assignment[centres] = centre_index

        for _ in range(MAX_REASSIGNMENTS):
            partition_reads = np.bincount(assignment, weights=abundances, minlength=len(centres))
            updated = np.argmax(lambdas * partition_reads, axis=1)
            updated[centres] = centre_index
            if np.array_equal(updated, assignment):
                break
            assignment = updated

        partition_reads = np.bincount(assignment, weights=abundances, minlength=len(centres))
        expected = lambdas[np.arange(n), assignment] * partition_reads[assignment]

        pvalues = abundance_pvalues(abundances, expected)
        pvalues[centres] = 1.0
        pvalues[abundances <= 1] = 1.0  # Singletons never seed partitions

        candidate = int(np.argmin(pvalues))
        if pvalues[candidate] >= config.omega_a:
            break
        if len(centres) >= config.max_partitions:
            logging.warning(f"Reached maximum of {config.max_partitions} partitions, stopping early")
            break

        logging.debug(f"New partition from unique {candidate} (abundance={uniques[candidate].abundance}, "
                      f"p={pvalues[candidate]:.3g})")
        centres.append(candidate)
        new_centre = uniques[candidate].sequence
        lambda_columns.append(np.array([compute_lambda(new_centre, u, model, config) for u in uniques]))

    return centres, assignment


def denoise(uniques: List[Unique], model: ErrorModel, config: DenoiseConfig,
            sample_name: str = "sample") -> DenoisedSample:
    """Infer the true sequences of one sample and strand."""
    if not uniques:
        return DenoisedSample(sample_name, {}, {})

    centres, assignment = partition_uniques(uniques, model, config)

    abundances: Dict[str, int] = {}
    read_map: Dict[str, str] = {}
    for unique, partition in zip(uniques, assignment):
        centre_seq = uniques[centres[partition]].sequence
        abundances[centre_seq] = abundances.get(centre_seq, 0) + unique.abundance
        for read_id in unique.read_ids:
            read_map[read_id] = centre_seq

    logging.debug(f"Sample {sample_name}: {len(abundances)} sequence variants inferred "
                  f"from {len(uniques)} unique sequences")
    return DenoisedSample(sample_name, abundances, read_map)


def count_transitions(uniques: List[Unique], centres: List[int], assignment: np.ndarray,
                      config: DenoiseConfig, transitions: np.ndarray) -> None:
    """Accumulate abundance-weighted (true, read, quality) counts in place."""
    for unique, partition in zip(uniques, assignment):
        aligned = align_columns(uniques[centres[partition]].sequence, unique, config)
        if aligned is None:
            continue
        columns, _ = aligned
        np.add.at(transitions, (columns[:, 0], columns[:, 1], columns[:, 2]), unique.abundance)


def learn_errors(samples_uniques: List[List[Unique]], config: DenoiseConfig,
                 label: str = "reads") -> ErrorModel:
    """Learn an error model by alternating denoising and rate estimation.

    Samples are pooled in order until config.learn_nbases bases are reached.
    """
    selected = []
    nbases = 0
    for uniques in samples_uniques:
        if nbases >= config.learn_nbases:
            break
        selected.append(uniques)
        nbases += sum(u.abundance * len(u.sequence) for u in uniques)

    logging.info(f"Learning {label} error rates from {nbases} bases in {len(selected)} samples")

    shape = (4, 4, config.max_quality + 1)
    model = ErrorModel.from_phred(config.max_quality)
    for round_num in range(1, config.max_rounds + 1):
        transitions = np.zeros(shape)
        for uniques in tqdm(selected, desc=f"Error learning ({label}) round {round_num}"):
            if not uniques:
                continue
            centres, assignment = partition_uniques(uniques, model, config)
            count_transitions(uniques, centres, assignment, config, transitions)

        updated = ErrorModel.fit(transitions)
        change = updated.max_difference(model)
        model = updated
        logging.debug(f"Error learning ({label}) round {round_num}: max rate change {change:.3g}")
        if change < CONVERGENCE_TOLERANCE:
            logging.info(f"Error rates ({label}) converged after {round_num} rounds")
            break
    else:
        logging.info(f"Error rates ({label}) not converged after {config.max_rounds} rounds, "
                     f"using last estimate")

    return model
