"""
mhcvariants: sequence variant inference and filtering for MHC amplicon reads.

Paired-end reads are quality filtered, denoised into sequence variants,
merged into full-length amplicons and tabulated per individual, then
filtered through an ordered series of abundance and prevalence thresholds.
"""

__version__ = "0.1.0"

from .core import main as mhcvariants_main
from .summarize import main as filter_main

__all__ = ["mhcvariants_main", "filter_main", "__version__"]
