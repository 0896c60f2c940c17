#!/usr/bin/env python3
"""
Output writers and the mhcvariants-filter command.

mhcvariants-filter re-runs only the filtering pipeline on an unfiltered
variant table written by a previous mhcvariants run, so thresholds can be
adjusted without repeating read filtering, denoising and merging.
"""

import argparse
import csv
import json
import logging
import os
import sys
from dataclasses import asdict
from datetime import datetime
from typing import Dict, List, Optional

from mhcvariants import __version__
from mhcvariants.config import FilterConfig, add_filter_arguments, add_logging_arguments
from mhcvariants.filters import run_filter_pipeline
from mhcvariants.table import (
    VariantTable,
    read_variant_table,
    write_sample_summary,
    write_variant_fasta,
    write_variant_table,
)
from mhcvariants.types import (
    DegenerateLengthError,
    EmptyTableError,
    InputError,
    Sample,
    StageReport,
)


TRACKING_FIELDS = [
    'name', 'raw_reads', 'filtered_reads', 'denoised_forward', 'denoised_reverse',
    'merged_reads', 'nonchimeric_reads', 'final_reads', 'failed',
]


def setup_logging(log_level: str, log_file: str = None):
    """Setup logging configuration with optional file output."""
    # Clear any existing handlers
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level))
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def write_stage_reports(reports: List[StageReport], output_file: str) -> None:
    fieldnames = ['stage', 'rows', 'samples', 'depth', 'retained_fraction']
    with open(output_file, 'w', newline='') as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for report in reports:
            writer.writerow(report.as_row())
    logging.debug(f"Wrote filter stage summary to {output_file}")


def write_read_tracking(samples: List[Sample], output_file: str) -> None:
    """Write per-sample read counts through every pipeline step."""
    with open(output_file, 'w', newline='') as f:
        writer = csv.DictWriter(f, fieldnames=TRACKING_FIELDS)
        writer.writeheader()
        for sample in samples:
            writer.writerow(sample.tracking_row())
    logging.info(f"Wrote read tracking for {len(samples)} samples to {output_file}")


def write_run_metadata(output_dir: str, parameters: Dict, input_path: str) -> None:
    """Write run metadata to JSON so results can be traced to their settings."""
    metadata = {
        "version": __version__,
        "timestamp": datetime.now().isoformat(),
        "input": os.path.abspath(input_path),
        "parameters": parameters,
    }
    metadata_file = os.path.join(output_dir, "run_metadata.json")
    with open(metadata_file, 'w') as f:
        json.dump(metadata, f, indent=2)
    logging.debug(f"Wrote run metadata to {metadata_file}")


def write_outputs(output_dir: str, table: VariantTable, reports: List[StageReport],
                  samples: Optional[List[Sample]] = None) -> None:
    """Write the filtered table and its companion files."""
    os.makedirs(output_dir, exist_ok=True)
    write_variant_table(table, os.path.join(output_dir, "variant_table.csv"))
    write_variant_fasta(table, os.path.join(output_dir, "variants.fasta"))
    write_sample_summary(table, os.path.join(output_dir, "sample_summary.csv"))
    write_stage_reports(reports, os.path.join(output_dir, "filter_stages.csv"))
    if samples is not None:
        write_read_tracking(samples, os.path.join(output_dir, "read_tracking.csv"))


def log_stage_reports(reports: List[StageReport]) -> None:
    for report in reports:
        logging.info(f"  {report.stage:<20} {report.rows:>6} variants {report.samples:>5} samples "
                     f"{report.depth:>10} reads ({report.retained_fraction:.1%} retained)")


def parse_arguments():
    parser = argparse.ArgumentParser(
        description="Filter a previously built variant table with new thresholds.")
    parser.add_argument("table", help="Unfiltered variant table CSV (variant_table_unfiltered.csv)")
    parser.add_argument("-O", "--output-dir", default="filtered_variants",
                        help="Output directory (default: filtered_variants)")
    add_filter_arguments(parser)
    add_logging_arguments(parser)
    parser.add_argument("--version", action="version", version=f"mhcvariants {__version__}")
    return parser.parse_args()


def main():
    """Load a variant table, run the filtering pipeline and write results."""
    args = parse_arguments()
    setup_logging(args.log_level, args.log_file)

    try:
        config = FilterConfig.from_args(args)
    except ValueError as e:
        logging.error(f"Invalid filter configuration: {e}")
        sys.exit(1)

    logging.info(f"Filtering {args.table} with min_sample_reads={config.min_sample_reads}, "
                 f"min_cell_support={config.min_cell_support}, "
                 f"min_relative_frequency={config.min_relative_frequency}, "
                 f"min_prevalence={config.min_prevalence}")

    try:
        table = read_variant_table(args.table)
        filtered, reports = run_filter_pipeline(table, config)
    except (InputError, DegenerateLengthError, EmptyTableError) as e:
        logging.error(str(e))
        sys.exit(1)

    log_stage_reports(reports)
    write_outputs(args.output_dir, filtered, reports)
    write_run_metadata(args.output_dir, {"filters": asdict(config)}, args.table)
    logging.info(f"Final output: {filtered.n_variants} variants in {args.output_dir}")


if __name__ == "__main__":
    main()
