#!/usr/bin/env python3

import argparse
import logging
import os
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Tuple

from tqdm import tqdm

from mhcvariants import __version__
from mhcvariants.config import PipelineConfig, add_filter_arguments, add_logging_arguments
from mhcvariants.denoise import denoise, dereplicate, learn_errors
from mhcvariants.filters import run_filter_pipeline
from mhcvariants.merge import merge_pairs
from mhcvariants.reads import filter_and_trim, filtered_paths, find_paired_fastq
from mhcvariants.summarize import (
    log_stage_reports,
    setup_logging,
    write_outputs,
    write_run_metadata,
)
from mhcvariants.table import VariantTable, build_variant_table, write_variant_table
from mhcvariants.types import (
    DegenerateLengthError,
    EmptyTableError,
    InputError,
    MergeResult,
    Sample,
    StageReport,
)


def map_samples(func: Callable, items: List, threads: int, desc: str) -> List:
    """Apply func to each item, in a thread pool when threads > 1."""
    if threads > 1 and len(items) > 1:
        with ThreadPoolExecutor(max_workers=threads) as executor:
            return list(tqdm(executor.map(func, items), total=len(items), desc=desc))
    return [func(item) for item in tqdm(items, desc=desc)]


class VariantPipeline:
    """Runs one analysis from paired FASTQ files to a filtered variant table."""

    def __init__(self, input_dir: str, output_dir: str, config: PipelineConfig):
        self.input_dir = input_dir
        self.output_dir = output_dir
        self.config = config
        self.filtered_dir = os.path.join(output_dir, "filtered")
        self.samples: List[Sample] = []

        os.makedirs(self.output_dir, exist_ok=True)

    def preprocess(self) -> None:
        """Discover samples and apply the hard read filters."""
        self.samples = find_paired_fastq(self.input_dir, self.config.forward_pattern,
                                         self.config.reverse_pattern)

        def run(sample: Sample) -> Tuple[int, int]:
            return filter_and_trim(sample, self.filtered_dir, self.config.filter_trim)

        results = map_samples(run, self.samples, self.config.threads, "Filtering reads")
        for sample, (reads_in, reads_out) in zip(self.samples, results):
            sample.raw_reads = reads_in
            sample.filtered_reads = reads_out
            sample.filtered_forward_path, sample.filtered_reverse_path = filtered_paths(sample, self.filtered_dir)
            if reads_in == 0 or reads_out / reads_in < self.config.collapse_fraction:
                logging.warning(f"Sample {sample.name}: quality collapse, only {reads_out}/{reads_in} "
                                f"read pairs passed filtering")

        total_in = sum(s.raw_reads for s in self.samples)
        total_out = sum(s.filtered_reads for s in self.samples)
        logging.info(f"Read filtering kept {total_out}/{total_in} read pairs across {len(self.samples)} samples")

    def denoise_and_merge(self) -> Dict[str, MergeResult]:
        """Learn error models, denoise each strand and merge pairs per sample."""
        active = [s for s in self.samples if s.filtered_reads]
        forward_uniques = map_samples(lambda s: dereplicate(s.filtered_forward_path), active,
                                      self.config.threads, "Dereplicating forward reads")
        reverse_uniques = map_samples(lambda s: dereplicate(s.filtered_reverse_path), active,
                                      self.config.threads, "Dereplicating reverse reads")

        denoise_config = self.config.denoise
        forward_model = learn_errors(forward_uniques, denoise_config, label="forward")
        reverse_model = learn_errors(reverse_uniques, denoise_config, label="reverse")

        def run(index: int) -> MergeResult:
            name = active[index].name
            forward = denoise(forward_uniques[index], forward_model, denoise_config, name)
            reverse = denoise(reverse_uniques[index], reverse_model, denoise_config, name)
            active[index].denoised_forward = forward.total_reads
            active[index].denoised_reverse = reverse.total_reads
            return merge_pairs(forward, reverse, self.config.merge)

        merges = map_samples(run, list(range(len(active))), self.config.threads, "Denoising samples")

        results = {}
        for sample, merge in zip(active, merges):
            sample.merged_reads = merge.merged_pairs
            if merge.merge_yield < self.config.collapse_fraction:
                logging.warning(f"Sample {sample.name}: merge failure, only {merge.merged_pairs}/"
                                f"{merge.total_pairs} pairs merged ({merge.merge_yield:.1%})")
            results[sample.name] = merge
        return results

    def build_table(self, merges: Dict[str, MergeResult]) -> VariantTable:
        """Assemble the unfiltered table; samples without merged reads get empty columns."""
        abundances = {}
        for sample in self.samples:
            merge = merges.get(sample.name)
            abundances[sample.name] = merge.abundances if merge is not None else {}
            if sample.merged_reads is None:
                sample.merged_reads = 0
        table = build_variant_table(abundances)
        write_variant_table(table, os.path.join(self.output_dir, "variant_table_unfiltered.csv"))
        return table

    def annotate_samples(self, final: VariantTable, reports: List[StageReport]) -> None:
        """Record post-filter read counts and failure status on each sample."""
        stages = {report.stage: report for report in reports}
        nonchimeric = stages['chimera'].sample_reads
        retained = stages['failed_samples'].sample_reads
        final_totals = final.sample_totals
        for sample in self.samples:
            sample.nonchimeric_reads = nonchimeric.get(sample.name, 0)
            sample.failed = sample.name not in retained
            sample.final_reads = int(final_totals.get(sample.name, 0))

    def run(self) -> Tuple[VariantTable, List[StageReport]]:
        self.preprocess()
        merges = self.denoise_and_merge()
        table = self.build_table(merges)
        filtered, reports = run_filter_pipeline(table, self.config.filters)
        self.annotate_samples(filtered, reports)
        log_stage_reports(reports)
        write_outputs(self.output_dir, filtered, reports, self.samples)
        return filtered, reports


def parse_arguments():
    parser = argparse.ArgumentParser(
        description="Infer and filter MHC amplicon sequence variants from paired-end reads")
    parser.add_argument("input_dir", help="Directory containing paired FASTQ files")
    parser.add_argument("-O", "--output-dir", default="variants",
                        help="Output directory for all files (default: variants)")
    parser.add_argument("--forward-pattern", default="_R1_001.fastq.gz",
                        help="File name suffix of forward reads (default: _R1_001.fastq.gz)")
    parser.add_argument("--reverse-pattern", default="_R2_001.fastq.gz",
                        help="File name suffix of reverse reads (default: _R2_001.fastq.gz)")

    reads = parser.add_argument_group("read filtering")
    reads.add_argument("--trunc-q", type=int, default=2,
                       help="Truncate reads at the first base with quality <= this (default: 2)")
    reads.add_argument("--trim-right-forward", type=int, default=0,
                       help="Bases trimmed from the 3' end of forward reads (default: 0)")
    reads.add_argument("--trim-right-reverse", type=int, default=0,
                       help="Bases trimmed from the 3' end of reverse reads (default: 0)")
    reads.add_argument("--min-length", type=int, default=20,
                       help="Minimum read length after trimming (default: 20)")
    reads.add_argument("--max-ee", type=float, default=0.1,
                       help="Maximum expected errors per read (default: 0.1)")

    dn = parser.add_argument_group("denoising and merging")
    dn.add_argument("--omega-a", type=float, default=1e-40,
                    help="Abundance p-value threshold for new variants (default: 1e-40)")
    dn.add_argument("--band-size", type=int, default=16,
                    help="Maximum edit distance between a read and its variant (default: 16)")
    dn.add_argument("--error-rounds", type=int, default=3,
                    help="Maximum error learning rounds (default: 3)")
    dn.add_argument("--min-overlap", type=int, default=12,
                    help="Minimum overlap for merging read pairs (default: 12)")
    dn.add_argument("--max-mismatch", type=int, default=0,
                    help="Maximum mismatches in the pair overlap (default: 0)")

    add_filter_arguments(parser)
    parser.add_argument("--threads", type=int, default=1, metavar="N",
                        help="Worker threads for per-sample steps (default: 1)")
    add_logging_arguments(parser)
    parser.add_argument("--version", action="version",
                        version=f"mhcvariants {__version__}",
                        help="Show program's version number and exit")
    return parser.parse_args()


def main():
    args = parse_arguments()
    setup_logging(args.log_level, args.log_file)

    try:
        config = PipelineConfig.from_args(args)
    except ValueError as e:
        logging.error(f"Invalid configuration: {e}")
        sys.exit(1)

    pipeline = VariantPipeline(args.input_dir, args.output_dir, config)
    write_run_metadata(args.output_dir, config.to_dict(), args.input_dir)

    try:
        filtered, _ = pipeline.run()
    except InputError as e:
        logging.error(f"Input error: {e}")
        sys.exit(1)
    except DegenerateLengthError as e:
        logging.error(f"{e} Unfiltered table written to "
                      f"{os.path.join(args.output_dir, 'variant_table_unfiltered.csv')}")
        sys.exit(1)
    except EmptyTableError as e:
        logging.error(f"{e}. Review thresholds and rerun with mhcvariants-filter.")
        sys.exit(1)

    logging.info(f"Final output: {filtered.n_variants} variants across {filtered.n_samples} samples "
                 f"in {args.output_dir}")


if __name__ == "__main__":
    main()
