"""Configuration for the variant calling pipeline."""

from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any


CHIMERA_METHODS = ('consensus', 'pooled', 'none')


@dataclass
class FilterTrimConfig:
    """Hard read filters applied to each mate before denoising.

    Attributes:
        trunc_q: Truncate reads at the first base with quality <= trunc_q (default: 2)
        trim_right_forward: Bases removed from the 3' end of forward reads (default: 0)
        trim_right_reverse: Bases removed from the 3' end of reverse reads (default: 0)
        min_length: Discard reads shorter than this after trimming (default: 20)
        max_n: Maximum ambiguous bases allowed (default: 0)
        max_ee: Maximum expected errors per read (default: 0.1)
    """
    trunc_q: int = 2
    trim_right_forward: int = 0
    trim_right_reverse: int = 0
    min_length: int = 20
    max_n: int = 0
    max_ee: float = 0.1


@dataclass
class DenoiseConfig:
    """Parameters for error model learning and denoising.

    Attributes:
        omega_a: Abundance p-value below which a unique seeds a new partition (default: 1e-40)
        band_size: Maximum edit distance considered between a unique and a centre (default: 16)
        indel_probability: Per-column probability assigned to alignment gaps (default: 1e-3)
        max_quality: Highest quality score tracked by the error model (default: 41)
        learn_nbases: Bases pooled across samples for error learning (default: 1e8)
        max_rounds: Maximum self-consistency rounds for error learning (default: 3)
        max_partitions: Safety cap on partitions per sample (default: 1000)
    """
    omega_a: float = 1e-40
    band_size: int = 16
    indel_probability: float = 1e-3
    max_quality: int = 41
    learn_nbases: int = 100_000_000
    max_rounds: int = 3
    max_partitions: int = 1000


@dataclass
class MergeConfig:
    """Overlap merging of forward and reverse denoised sequences."""
    min_overlap: int = 12
    max_mismatch: int = 0


@dataclass
class FilterConfig:
    """Thresholds for the variant filtering pipeline.

    Attributes:
        target_length: Amplicon length to keep; None selects the modal length
        length_dominance: Share of rows the modal length must exceed (default: 0.5)
        chimera_method: 'consensus', 'pooled' or 'none' (default: consensus)
        min_sample_reads: Samples with fewer reads are excluded (default: 1000)
        min_cell_support: Cells with fewer reads are zeroed (default: 100)
        min_relative_frequency: Cells below this share of their sample are zeroed (default: 0.05)
        min_prevalence: Variants seen in this many samples or fewer are dropped (default: 1)
        min_fold_parent_abundance: Bimera parents must be this much more abundant (default: 1.5)
        min_sample_fraction: Share of samples that must flag a bimera in consensus mode (default: 0.9)
        ignore_negatives: Unflagged samples ignored in consensus mode (default: 1)
    """
    target_length: Optional[int] = None
    length_dominance: float = 0.5
    chimera_method: str = 'consensus'
    min_sample_reads: int = 1000
    min_cell_support: int = 100
    min_relative_frequency: float = 0.05
    min_prevalence: int = 1
    min_fold_parent_abundance: float = 1.5
    min_sample_fraction: float = 0.9
    ignore_negatives: int = 1

    def __post_init__(self):
        if self.chimera_method not in CHIMERA_METHODS:
            raise ValueError(f"Unknown chimera method '{self.chimera_method}', "
                             f"expected one of {', '.join(CHIMERA_METHODS)}")
        if self.target_length is not None and self.target_length <= 0:
            raise ValueError(f"target_length must be positive, got {self.target_length}")
        for name in ('min_sample_reads', 'min_cell_support', 'min_prevalence', 'ignore_negatives'):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative, got {getattr(self, name)}")
        for name in ('length_dominance', 'min_relative_frequency', 'min_sample_fraction'):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1, got {value}")

    @classmethod
    def from_args(cls, args) -> 'FilterConfig':
        """Create config from command-line arguments."""
        defaults = cls()
        return cls(
            target_length=getattr(args, 'target_length', None),
            length_dominance=getattr(args, 'length_dominance', defaults.length_dominance),
            chimera_method=getattr(args, 'chimera_method', defaults.chimera_method),
            min_sample_reads=getattr(args, 'min_sample_reads', defaults.min_sample_reads),
            min_cell_support=getattr(args, 'min_cell_support', defaults.min_cell_support),
            min_relative_frequency=getattr(args, 'min_relative_frequency', defaults.min_relative_frequency),
            min_prevalence=getattr(args, 'min_prevalence', defaults.min_prevalence),
        )


def add_filter_arguments(parser) -> None:
    """Add variant filtering options shared by both command-line tools."""
    group = parser.add_argument_group("variant filtering")
    group.add_argument("--target-length", type=int, default=None,
                       help="Amplicon length to keep (default: modal length of the table)")
    group.add_argument("--length-dominance", type=float, default=0.5,
                       help="Share of variants the modal length must exceed (default: 0.5)")
    group.add_argument("--chimera-method", choices=CHIMERA_METHODS, default="consensus",
                       help="Bimera detection mode (default: consensus)")
    group.add_argument("--min-sample-reads", type=int, default=1000,
                       help="Exclude samples with fewer reads (default: 1000)")
    group.add_argument("--min-cell-support", type=int, default=100,
                       help="Zero cells supported by fewer reads (default: 100)")
    group.add_argument("--min-relative-frequency", type=float, default=0.05,
                       help="Zero cells below this fraction of their sample's reads (default: 0.05)")
    group.add_argument("--min-prevalence", type=int, default=1,
                       help="Drop variants found in this many samples or fewer (default: 1)")


def add_logging_arguments(parser) -> None:
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        help="Logging level (default: INFO)")
    parser.add_argument("--log-file", default=None,
                        help="Also write log messages to this file")


@dataclass
class PipelineConfig:
    """Complete configuration for one run, from raw reads to filtered table."""
    filter_trim: FilterTrimConfig = field(default_factory=FilterTrimConfig)
    denoise: DenoiseConfig = field(default_factory=DenoiseConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    filters: FilterConfig = field(default_factory=FilterConfig)
    forward_pattern: str = '_R1_001.fastq.gz'
    reverse_pattern: str = '_R2_001.fastq.gz'
    collapse_fraction: float = 0.1
    threads: int = 1

    @classmethod
    def from_args(cls, args) -> 'PipelineConfig':
        """Create config from command-line arguments of the full run."""
        filter_trim = FilterTrimConfig(
            trunc_q=args.trunc_q,
            trim_right_forward=args.trim_right_forward,
            trim_right_reverse=args.trim_right_reverse,
            min_length=args.min_length,
            max_ee=args.max_ee,
        )
        denoise = DenoiseConfig(
            omega_a=args.omega_a,
            band_size=args.band_size,
            max_rounds=args.error_rounds,
        )
        merge = MergeConfig(
            min_overlap=args.min_overlap,
            max_mismatch=args.max_mismatch,
        )
        return cls(
            filter_trim=filter_trim,
            denoise=denoise,
            merge=merge,
            filters=FilterConfig.from_args(args),
            forward_pattern=args.forward_pattern,
            reverse_pattern=args.reverse_pattern,
            threads=args.threads,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
